'''
Authoritative entitlement store. Owns the question sets, the grants that give a user access to a
paid question set, the one-time redeem codes and the book-keeping rows of the purchase finalizer.

The functions in this file come in pairs, a `*_tx` variant that operates on an open
`base.SQLTransaction` and a variant that takes a connection and opens the transaction itself.
`DBEntitlementStore` wraps the latter behind the interface that the reconciler and finalizer
consume, opening a connection per operation and converting any SQLite failure into a
`StoreUnavailableError`.
'''
import traceback
import sqlite3
import os
import typing
import collections.abc
import dataclasses
import secrets
import logging

import base

log = logging.Logger("BACKEND")

class StoreUnavailableError(Exception):
    '''
    The authoritative store could not be reached or failed to answer. Covers network failures,
    timeouts, server errors and database errors alike, callers treat them identically.
    '''
    pass

@dataclasses.dataclass
class QuestionSet:
    id:                   str  = ''
    is_paid:              bool = False
    # Price in minor currency units (e.g. cents). Payments must match this exactly.
    price:                int  = 0
    trial_question_count: int  = 0
    total_question_count: int  = 0

    def to_dict(self) -> base.JSONObject:
        result: base.JSONObject = {
            'id':                   self.id,
            'is_paid':              self.is_paid,
            'price':                self.price,
            'trial_question_count': self.trial_question_count,
            'total_question_count': self.total_question_count,
        }
        return result

@dataclasses.dataclass
class Grant:
    '''
    A row in the grants table. Grants are never mutated, a newer grant for the same (user, set)
    supersedes an older one by carrying a later expiry. `expiry_unix_ts_ms` of None means the grant
    never expires.

    `origin_id` is the purchase transaction ID or the redeem code's origin label and is unique
    across the table, which is what makes finalizing a purchase idempotent.
    '''
    user_id:            str              = ''
    question_set_id:    str              = ''
    source:             base.GrantSource = base.GrantSource.Free
    expiry_unix_ts_ms:  int | None       = None
    origin_id:          str              = ''
    created_unix_ts_ms: int              = 0

    def to_dict(self) -> base.JSONObject:
        result: base.JSONObject = {
            'user_id':            self.user_id,
            'question_set_id':    self.question_set_id,
            'source':             int(self.source.value),
            'expiry_unix_ts_ms':  self.expiry_unix_ts_ms,
            'origin_id':          self.origin_id,
            'created_unix_ts_ms': self.created_unix_ts_ms,
        }
        return result

@dataclasses.dataclass
class FindGrantsResult:
    grants:     list[Grant] = dataclasses.field(default_factory=list)
    # Value of the store's grant generation counter at the time the grants were read
    generation: int         = 0

@dataclasses.dataclass
class InsertGrantResult:
    grant:    Grant = dataclasses.field(default_factory=Grant)
    # False when a grant with the same origin already existed, `grant` is then the existing row
    inserted: bool  = False

@dataclasses.dataclass
class GrantRequestRow:
    transaction_id:     str               = ''
    user_id:            str               = ''
    question_set_id:    str               = ''
    amount:             int               = 0
    attempt_state:      base.AttemptState = base.AttemptState.Pending
    attempts:           int               = 0
    last_error:         str               = ''
    updated_unix_ts_ms: int               = 0

@dataclasses.dataclass
class RedeemCodeRow:
    id:                     int        = 0
    code:                   str        = ''
    question_set_id:        str        = ''
    validity_days:          int        = 0
    code_expiry_unix_ts_ms: int        = 0
    used_by:                str | None = None
    used_unix_ts_ms:        int | None = None
    created_by:             str        = ''
    created_unix_ts_ms:     int        = 0

    def to_dict(self) -> base.JSONObject:
        result: base.JSONObject = {
            'id':                     self.id,
            'code':                   self.code,
            'question_set_id':        self.question_set_id,
            'validity_days':          self.validity_days,
            'code_expiry_unix_ts_ms': self.code_expiry_unix_ts_ms,
            'used_by':                self.used_by,
            'used_unix_ts_ms':        self.used_unix_ts_ms,
            'created_by':             self.created_by,
            'created_unix_ts_ms':     self.created_unix_ts_ms,
        }
        return result

@dataclasses.dataclass
class RedeemCodeResult:
    success: bool          = False
    code:    RedeemCodeRow = dataclasses.field(default_factory=RedeemCodeRow)
    grant:   Grant         = dataclasses.field(default_factory=Grant)

@dataclasses.dataclass
class PruneResult:
    success:                      bool = False
    already_done_by_someone_else: bool = False
    grant_requests:               int  = 0
    redeem_codes:                 int  = 0

@dataclasses.dataclass
class RuntimeRow:
    '''The runtime table stores some metadata used for book-keeping and operations of the DB tables

    grant_generation - Monotonically increasing counter that is bumped every time a grant is
    inserted. Readers receive the value together with the grants they asked for and record it in
    their local cache so that a decision can be traced back to the state of the store that
    produced it.

    last_prune_unix_ts_ms - Last time the maintenance job pruned the DB. Multiple processes may
    share the DB, the first one to claim a timestamp does the work.
    '''
    grant_generation:      int = 0
    last_prune_unix_ts_ms: int = 0

@dataclasses.dataclass
class SetupDBResult:
    """
    Class is returned by backend.setup_db() which opens the DB and maintains a connection to the DB
    via `sql_conn`. Caller must close `sql_conn` if they wish to release the connection from the DB.

    The connection is returned because tests use a transient in-memory DB that is wiped as soon as
    its last connection is closed. Callers of this API (tests and main entry point) explicitly close
    the DB when they are done with it.
    """
    path:     str                       = ''
    success:  bool                      = False
    runtime:  RuntimeRow                = dataclasses.field(default_factory=RuntimeRow)
    sql_conn: sqlite3.Connection | None = None

@dataclasses.dataclass
class OpenDBAtPath:
    """
    Open a pre-existing DB at the specified path. This class should be used in a `with` context to
    ensure that the connection established to the database is closed on scope exit, e.g.:

    with OpenDBAtPath(...) as db:
        # Use db.sql_conn
        pass

    `timeout_s` is how long SQLite waits on a locked DB before giving up with an error.
    """
    sql_conn: sqlite3.Connection
    def __init__(self, db_path: str, uri: bool = False, timeout_s: float = base.STORE_QUERY_TIMEOUT_S):
        self.sql_conn = sqlite3.connect(db_path, uri=uri, timeout=timeout_s)

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

GrantRowTuple: typing.TypeAlias = tuple[str, str, int, int | None, str, int]
GRANT_COLUMNS                   = 'user_id, question_set_id, source, expiry_unix_ts_ms, origin_id, created_unix_ts_ms'

RedeemCodeRowTuple: typing.TypeAlias = tuple[int, str, str, int, int, str | None, int | None, str, int]
REDEEM_CODE_COLUMNS                  = 'id, code, question_set_id, validity_days, code_expiry_unix_ts_ms, used_by, used_unix_ts_ms, created_by, created_unix_ts_ms'

def grant_from_row(row: GrantRowTuple) -> Grant:
    result = Grant(user_id            = row[0],
                   question_set_id    = row[1],
                   source             = base.GrantSource(row[2]),
                   expiry_unix_ts_ms  = row[3],
                   origin_id          = row[4],
                   created_unix_ts_ms = row[5])
    return result

def redeem_code_from_row(row: RedeemCodeRowTuple) -> RedeemCodeRow:
    result = RedeemCodeRow(id                     = row[0],
                           code                   = row[1],
                           question_set_id        = row[2],
                           validity_days          = row[3],
                           code_expiry_unix_ts_ms = row[4],
                           used_by                = row[5],
                           used_unix_ts_ms        = row[6],
                           created_by             = row[7],
                           created_unix_ts_ms     = row[8])
    return result

def redeem_code_origin_id(redeem_code_id: int) -> str:
    '''Origin of a grant created by a redeem code. Prefixed so it never collides with a payment
    transaction ID in the unique `origin_id` column.'''
    result = f'redeem_code:{redeem_code_id}'
    return result

def grant_log_label(grant: Grant) -> str:
    result = (f'user={base.safe_id(grant.user_id)}, set={grant.question_set_id}, '
              f'source={grant.source.name}, expiry={base.readable_unix_ts_ms(grant.expiry_unix_ts_ms)}, '
              f'origin={base.safe_id(grant.origin_id)}')
    return result

def get_runtime_tx(tx: base.SQLTransaction) -> RuntimeRow:
    assert tx.cursor is not None
    _                            = tx.cursor.execute('SELECT grant_generation, last_prune_unix_ts_ms FROM runtime')
    row                          = typing.cast(tuple[int, int], tx.cursor.fetchone())
    result: RuntimeRow           = RuntimeRow()
    result.grant_generation      = row[0]
    result.last_prune_unix_ts_ms = row[1]
    return result

def get_runtime(sql_conn: sqlite3.Connection) -> RuntimeRow:
    result: RuntimeRow = RuntimeRow()
    with base.SQLTransaction(sql_conn) as tx:
        result = get_runtime_tx(tx)
    return result

def db_info_string(sql_conn: sqlite3.Connection, db_path: str, err: base.ErrorSink) -> str:
    question_sets  = 0
    grants         = 0
    redeem_codes   = 0
    used_codes     = 0
    grant_requests = 0
    failed_grants  = 0
    db_size        = 0
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        try:
            _              = tx.cursor.execute('SELECT COUNT(*) FROM question_sets')
            question_sets  = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _              = tx.cursor.execute('SELECT COUNT(*) FROM grants')
            grants         = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _              = tx.cursor.execute('SELECT COUNT(*) FROM redeem_codes')
            redeem_codes   = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _              = tx.cursor.execute('SELECT COUNT(*) FROM redeem_codes WHERE used_by IS NOT NULL')
            used_codes     = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _              = tx.cursor.execute('SELECT COUNT(*) FROM grant_requests')
            grant_requests = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _              = tx.cursor.execute('SELECT COUNT(*) FROM grant_requests WHERE attempt_state = ?', (int(base.AttemptState.Failed.value),))
            failed_grants  = typing.cast(tuple[int], tx.cursor.fetchone())[0]
        except Exception as e:
            err.msg_list.append(f"Failed to retrieve DB metadata: {e}")

    result = ''
    if len(err.msg_list) == 0:
        if os.path.exists(db_path):
            db_size = os.stat(db_path).st_size
        runtime: RuntimeRow = get_runtime(sql_conn)
        result = (
            '  DB:                        {} ({})\n'.format(db_path, base.format_bytes(db_size)) +
            '  Sets/Grants:               {}/{}\n'.format(question_sets, grants) +
            '  Redeem Codes (Used):       {} ({})\n'.format(redeem_codes, used_codes) +
            '  Grant Requests (Failed):   {} ({})\n'.format(grant_requests, failed_grants) +
            '  Grant Generation:          {}\n'.format(runtime.grant_generation) +
            '  Last Prune:                {}'.format(base.readable_unix_ts_ms(runtime.last_prune_unix_ts_ms))
        )

    return result

def setup_db(path: str, uri: bool, err: base.ErrorSink) -> SetupDBResult:
    result: SetupDBResult = SetupDBResult()
    result.path           = path
    try:
        result.sql_conn = sqlite3.connect(path, uri=uri, check_same_thread=False)
    except Exception as e:
        err.msg_list.append(f'Failed to open/connect to DB at {path}: {e}')
        return result

    with base.SQLTransaction(result.sql_conn) as tx:
        sql_stmt: str = '''
            -- Quiz content that can be bought. Only the attributes that entitlement decisions
            -- depend on are stored here, the questions themselves live elsewhere.
            CREATE TABLE IF NOT EXISTS question_sets (
                id                   TEXT PRIMARY KEY NOT NULL,
                is_paid              INTEGER NOT NULL,
                price                INTEGER NOT NULL, -- Minor currency units
                trial_question_count INTEGER NOT NULL, -- 0 if the set is not paid
                total_question_count INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS grants (
                id                 INTEGER PRIMARY KEY NOT NULL,
                user_id            TEXT    NOT NULL,
                question_set_id    TEXT    NOT NULL,
                source             INTEGER NOT NULL, -- base.GrantSource
                -- NULL for a grant that never expires
                expiry_unix_ts_ms  INTEGER,

                -- Purchase transaction ID or redeem code origin label. The uniqueness constraint
                -- is the only thing that serialises two finalizers racing on the same payment,
                -- the loser of the race observes the conflict and adopts the winner's row.
                origin_id          TEXT    NOT NULL UNIQUE,
                created_unix_ts_ms INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS grants_user_set ON grants (user_id, question_set_id);

            CREATE TABLE IF NOT EXISTS redeem_codes (
                id                     INTEGER PRIMARY KEY NOT NULL,
                code                   TEXT    NOT NULL UNIQUE,
                question_set_id        TEXT    NOT NULL,
                validity_days          INTEGER NOT NULL,
                -- The code must be redeemed before this timestamp, it is unrelated to the expiry
                -- of the grant that redeeming it creates
                code_expiry_unix_ts_ms INTEGER NOT NULL,
                used_by                TEXT,
                used_unix_ts_ms        INTEGER,
                created_by             TEXT    NOT NULL,
                created_unix_ts_ms     INTEGER NOT NULL
            );

            -- Book-keeping of the purchase finalizer for each payment it has seen. A payment that
            -- succeeded but could not be turned into a grant stays in the Failed state here so that
            -- support staff can find it when the user gets in touch.
            CREATE TABLE IF NOT EXISTS grant_requests (
                transaction_id     TEXT PRIMARY KEY NOT NULL,
                user_id            TEXT    NOT NULL,
                question_set_id    TEXT    NOT NULL,
                amount             INTEGER NOT NULL,
                attempt_state      INTEGER NOT NULL, -- base.AttemptState
                attempts           INTEGER NOT NULL,
                last_error         TEXT    NOT NULL,
                updated_unix_ts_ms INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runtime (
                grant_generation      INTEGER NOT NULL, -- Monotonic counter bumped on every grant insert
                last_prune_unix_ts_ms INTEGER NOT NULL  -- Last time the maintenance job pruned the DB
            );

            CREATE TRIGGER IF NOT EXISTS increment_grant_generation_after_insert
            AFTER INSERT ON grants
            BEGIN
                UPDATE runtime
                SET    grant_generation = grant_generation + 1;
            END;
        '''

        assert tx.cursor is not None

        try:
            # NOTE: Bootstrap tables
            _ = tx.cursor.executescript(sql_stmt)
            _ = tx.cursor.execute('''PRAGMA journal_mode=WAL''')

            # NOTE: Version migration
            target_db_version = 1
            if 1:
                db_version: int = tx.cursor.execute('PRAGMA user_version').fetchone()[0]  # pyright: ignore[reportAny]

                # NOTE: v0 is the nil state, it means the DB has never been bootstrapped. All the
                # tables will have been created with the latest schema so we teleport to the target
                # version
                if db_version == 0:
                    db_version = target_db_version
                    _          = tx.cursor.execute(f'PRAGMA user_version = {db_version}')

                # NOTE: Verify that the DB was migrated to the target version
                assert db_version == target_db_version

            # NOTE: Initialise the runtime row (app global settings) with the default values
            if 1:
                _                  = tx.cursor.execute('SELECT EXISTS (SELECT 1 FROM runtime) as row_exists')
                runtime_row_exists = bool(typing.cast(tuple[int], tx.cursor.fetchone())[0])
                if not runtime_row_exists:
                    _ = tx.cursor.execute('INSERT INTO runtime (grant_generation, last_prune_unix_ts_ms) VALUES (0, 0)')

            result.success = True
        except Exception:
            err.msg_list.append(f"Failed to bootstrap DB tables: {traceback.format_exc()}")

    if result.success:
        result.runtime = get_runtime(result.sql_conn)
    else:
        result.sql_conn.close()

    return result

def verify_db(sql_conn: sqlite3.Connection, err: base.ErrorSink) -> bool:
    grants: list[Grant] = get_grants_list(sql_conn)
    for index, it in enumerate(grants):
        if len(it.user_id) == 0:
            err.msg_list.append(f'Grant #{index} has an empty user ID')
        if len(it.origin_id) == 0:
            err.msg_list.append(f'Grant #{index} has an empty origin ID')
        if it.expiry_unix_ts_ms is not None and it.expiry_unix_ts_ms < it.created_unix_ts_ms:
            err.msg_list.append(f'Grant #{index} ({grant_log_label(it)}) expires before it was created {base.readable_unix_ts_ms(it.created_unix_ts_ms)}')
        if it.source == base.GrantSource.RedeemCode and not it.origin_id.startswith('redeem_code:'):
            err.msg_list.append(f'Grant #{index} ({grant_log_label(it)}) came from a redeem code but its origin is not a redeem code')

    codes: list[RedeemCodeRow] = get_redeem_codes_list(sql_conn)
    for index, it in enumerate(codes):
        if (it.used_by is None) != (it.used_unix_ts_ms is None):
            err.msg_list.append(f'Redeem code #{index} has a partially set usage (used_by={it.used_by}, used={it.used_unix_ts_ms})')
        if it.validity_days < 1:
            err.msg_list.append(f'Redeem code #{index} has invalid validity days {it.validity_days}')

    result = len(err.msg_list) == 0
    return result

def add_question_set_tx(tx: base.SQLTransaction, question_set: QuestionSet):
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        INSERT INTO question_sets (id, is_paid, price, trial_question_count, total_question_count)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            is_paid              = excluded.is_paid,
            price                = excluded.price,
            trial_question_count = excluded.trial_question_count,
            total_question_count = excluded.total_question_count
    ''', (base.trim_id(question_set.id),
          int(question_set.is_paid),
          question_set.price,
          question_set.trial_question_count if question_set.is_paid else 0,
          question_set.total_question_count))

def add_question_set(sql_conn: sqlite3.Connection, question_set: QuestionSet):
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        add_question_set_tx(tx, question_set)

def get_question_set_tx(tx: base.SQLTransaction, question_set_id: str) -> QuestionSet | None:
    assert tx.cursor is not None
    _   = tx.cursor.execute('''
        SELECT id, is_paid, price, trial_question_count, total_question_count
        FROM   question_sets
        WHERE  id = ?
    ''', (base.trim_id(question_set_id),))
    row = typing.cast(tuple[str, int, int, int, int] | None, tx.cursor.fetchone())

    result: QuestionSet | None = None
    if row:
        result = QuestionSet(id                   = row[0],
                             is_paid              = bool(row[1]),
                             price                = row[2],
                             trial_question_count = row[3],
                             total_question_count = row[4])
    return result

def get_question_set(sql_conn: sqlite3.Connection, question_set_id: str) -> QuestionSet | None:
    result: QuestionSet | None = None
    with base.SQLTransaction(sql_conn) as tx:
        result = get_question_set_tx(tx, question_set_id)
    return result

def find_grants_tx(tx: base.SQLTransaction, user_id: str, question_set_id: str | None) -> FindGrantsResult:
    '''Retrieve every grant (expired or not) for the user, restricted to one question set unless
    `question_set_id` is None. The generation is read in the same transaction as the grants.'''
    assert tx.cursor is not None
    result = FindGrantsResult()
    if question_set_id is None:
        _ = tx.cursor.execute(f'SELECT {GRANT_COLUMNS} FROM grants WHERE user_id = ? ORDER BY id',
                              (base.trim_id(user_id),))
    else:
        _ = tx.cursor.execute(f'SELECT {GRANT_COLUMNS} FROM grants WHERE user_id = ? AND question_set_id = ? ORDER BY id',
                              (base.trim_id(user_id), base.trim_id(question_set_id)))

    rows = typing.cast(collections.abc.Iterator[GrantRowTuple], tx.cursor)
    for row in rows:
        result.grants.append(grant_from_row(row))

    result.generation = get_runtime_tx(tx).grant_generation
    return result

def find_grants(sql_conn: sqlite3.Connection, user_id: str, question_set_id: str | None) -> FindGrantsResult:
    result = FindGrantsResult()
    with base.SQLTransaction(sql_conn) as tx:
        result = find_grants_tx(tx, user_id, question_set_id)
    return result

def find_grant_by_origin_tx(tx: base.SQLTransaction, origin_id: str) -> Grant | None:
    assert tx.cursor is not None
    _   = tx.cursor.execute(f'SELECT {GRANT_COLUMNS} FROM grants WHERE origin_id = ?', (base.trim_id(origin_id),))
    row = typing.cast(GrantRowTuple | None, tx.cursor.fetchone())
    result = grant_from_row(row) if row else None
    return result

def find_grant_by_origin(sql_conn: sqlite3.Connection, origin_id: str) -> Grant | None:
    result: Grant | None = None
    with base.SQLTransaction(sql_conn) as tx:
        result = find_grant_by_origin_tx(tx, origin_id)
    return result

def get_grants_list(sql_conn: sqlite3.Connection) -> list[Grant]:
    result: list[Grant] = []
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _    = tx.cursor.execute(f'SELECT {GRANT_COLUMNS} FROM grants ORDER BY id')
        rows = typing.cast(list[GrantRowTuple], tx.cursor.fetchall())
        result = [grant_from_row(row) for row in rows]
    return result

def insert_grant_if_absent_tx(tx: base.SQLTransaction, grant: Grant) -> InsertGrantResult:
    '''
    Insert the grant keyed by its origin. If a grant with the same origin already exists the
    insert is a no-op and the existing grant is returned with `inserted` set to False.
    '''
    assert tx.cursor is not None
    result    = InsertGrantResult()
    origin_id = base.trim_id(grant.origin_id)
    assert len(origin_id) > 0, "Grants must have an origin to be idempotent"

    _ = tx.cursor.execute(f'''
        INSERT INTO grants ({GRANT_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (origin_id) DO NOTHING
    ''', (base.trim_id(grant.user_id),
          base.trim_id(grant.question_set_id),
          int(grant.source.value),
          grant.expiry_unix_ts_ms,
          origin_id,
          grant.created_unix_ts_ms))

    result.inserted = tx.cursor.rowcount == 1
    existing        = find_grant_by_origin_tx(tx, origin_id)
    assert existing is not None, "We just inserted or conflicted on the origin, a row must exist"
    result.grant    = existing

    if log.getEffectiveLevel() <= logging.INFO:
        label = 'Inserted' if result.inserted else 'Existing'
        log.info(f'{label} grant ({grant_log_label(result.grant)})')
    return result

def insert_grant_if_absent(sql_conn: sqlite3.Connection, grant: Grant) -> InsertGrantResult:
    result = InsertGrantResult()
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        result = insert_grant_if_absent_tx(tx, grant)
    return result

def upsert_grant_request(sql_conn: sqlite3.Connection, request: GrantRequestRow):
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('''
            INSERT INTO grant_requests (transaction_id, user_id, question_set_id, amount, attempt_state, attempts, last_error, updated_unix_ts_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (transaction_id) DO UPDATE SET
                attempt_state      = excluded.attempt_state,
                attempts           = excluded.attempts,
                last_error         = excluded.last_error,
                updated_unix_ts_ms = excluded.updated_unix_ts_ms
        ''', (base.trim_id(request.transaction_id),
              base.trim_id(request.user_id),
              base.trim_id(request.question_set_id),
              request.amount,
              int(request.attempt_state.value),
              request.attempts,
              request.last_error,
              request.updated_unix_ts_ms))

def get_grant_request(sql_conn: sqlite3.Connection, transaction_id: str) -> GrantRequestRow | None:
    result: GrantRequestRow | None = None
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _   = tx.cursor.execute('''
            SELECT transaction_id, user_id, question_set_id, amount, attempt_state, attempts, last_error, updated_unix_ts_ms
            FROM   grant_requests
            WHERE  transaction_id = ?
        ''', (base.trim_id(transaction_id),))
        row = typing.cast(tuple[str, str, str, int, int, int, str, int] | None, tx.cursor.fetchone())
        if row:
            result = GrantRequestRow(transaction_id     = row[0],
                                     user_id            = row[1],
                                     question_set_id    = row[2],
                                     amount             = row[3],
                                     attempt_state      = base.AttemptState(row[4]),
                                     attempts           = row[5],
                                     last_error         = row[6],
                                     updated_unix_ts_ms = row[7])
    return result

def make_redeem_code() -> str:
    result = ''.join(secrets.choice(base.REDEEM_CODE_ALPHABET) for _ in range(base.REDEEM_CODE_LENGTH))
    return result

def generate_redeem_codes(sql_conn:        sqlite3.Connection,
                          question_set_id: str,
                          validity_days:   int,
                          quantity:        int,
                          created_by:      str,
                          unix_ts_ms:      int,
                          err:             base.ErrorSink) -> list[RedeemCodeRow]:
    result: list[RedeemCodeRow] = []
    question_set_id             = base.trim_id(question_set_id)
    if validity_days < 1:
        err.msg_list.append(f'Redeem code validity must be at least 1 day, received {validity_days}')
    if quantity < 1:
        err.msg_list.append(f'Redeem code quantity must be at least 1, received {quantity}')
    if len(question_set_id) == 0:
        err.msg_list.append('Redeem codes must be generated for a question set, received an empty ID')
    if err.has():
        return result

    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        if get_question_set_tx(tx, question_set_id) is None:
            err.msg_list.append(f'Question set {question_set_id} does not exist')
            return result

        code_expiry_unix_ts_ms: int = unix_ts_ms + (validity_days * base.MILLISECONDS_IN_DAY)
        while len(result) < quantity:
            # NOTE: 36^8 codes, a collision is improbable but the UNIQUE constraint decides. On
            # conflict we just roll a new code.
            code = make_redeem_code()
            _    = tx.cursor.execute(f'''
                INSERT INTO redeem_codes (code, question_set_id, validity_days, code_expiry_unix_ts_ms, created_by, created_unix_ts_ms)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (code) DO NOTHING
                RETURNING {REDEEM_CODE_COLUMNS}
            ''', (code, question_set_id, validity_days, code_expiry_unix_ts_ms, base.trim_id(created_by), unix_ts_ms))
            row = typing.cast(RedeemCodeRowTuple | None, tx.cursor.fetchone())
            if row:
                result.append(redeem_code_from_row(row))

    log.info(f'Generated {len(result)} redeem code(s) (set={question_set_id}, validity={validity_days}d, by={base.safe_id(created_by)})')
    return result

def redeem_code(sql_conn:    sqlite3.Connection,
                code:        str,
                user_id:     str,
                unix_ts_ms:  int,
                validity_ms: int,
                err:         base.ErrorSink) -> RedeemCodeResult:
    '''
    Consume a one-time redeem code on behalf of the user, marking the code as used and inserting a
    grant for the code's question set in the same transaction. A code can only ever be consumed
    once, a concurrent redeem of the same code by someone else loses on the `used_by IS NULL`
    predicate and on the unique grant origin.
    '''
    result  = RedeemCodeResult()
    code    = base.trim_id(code)
    user_id = base.trim_id(user_id)
    if len(code) == 0:
        err.msg_list.append('Redeem code was empty')
    if len(user_id) == 0:
        err.msg_list.append('User ID was empty')
    if err.has():
        return result

    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _   = tx.cursor.execute(f'SELECT {REDEEM_CODE_COLUMNS} FROM redeem_codes WHERE code = ?', (code,))
        row = typing.cast(RedeemCodeRowTuple | None, tx.cursor.fetchone())
        if row is None:
            err.msg_list.append('Redeem code does not exist')
            return result

        row_code = redeem_code_from_row(row)
        if row_code.used_by is not None:
            err.msg_list.append(f'Redeem code was already used at {base.readable_unix_ts_ms(row_code.used_unix_ts_ms)}')
            return result
        if unix_ts_ms >= row_code.code_expiry_unix_ts_ms:
            err.msg_list.append(f'Redeem code expired at {base.readable_unix_ts_ms(row_code.code_expiry_unix_ts_ms)}')
            return result

        _ = tx.cursor.execute('''
            UPDATE redeem_codes
            SET    used_by = ?, used_unix_ts_ms = ?
            WHERE  id = ? AND used_by IS NULL
        ''', (user_id, unix_ts_ms, row_code.id))
        if tx.cursor.rowcount != 1:
            err.msg_list.append('Redeem code was already used')
            return result

        grant  = Grant(user_id            = user_id,
                       question_set_id    = row_code.question_set_id,
                       source             = base.GrantSource.RedeemCode,
                       expiry_unix_ts_ms  = unix_ts_ms + validity_ms,
                       origin_id          = redeem_code_origin_id(row_code.id),
                       created_unix_ts_ms = unix_ts_ms)
        insert = insert_grant_if_absent_tx(tx, grant)
        if not insert.inserted:
            # NOTE: Roll back the usage mark, the grant for this code belongs to someone else
            tx.cancel = True
            err.msg_list.append('Redeem code was already used')
            return result

        row_code.used_by         = user_id
        row_code.used_unix_ts_ms = unix_ts_ms
        result.code              = row_code
        result.grant             = insert.grant
        result.success           = True

    log.info(f'Redeemed code (code={base.safe_id(code)}, {grant_log_label(result.grant)})')
    return result

def get_redeem_codes_list(sql_conn: sqlite3.Connection) -> list[RedeemCodeRow]:
    result: list[RedeemCodeRow] = []
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute(f'SELECT {REDEEM_CODE_COLUMNS} FROM redeem_codes ORDER BY id')
        rows   = typing.cast(list[RedeemCodeRowTuple], tx.cursor.fetchall())
        result = [redeem_code_from_row(row) for row in rows]
    return result

def get_user_redeemed_codes(sql_conn: sqlite3.Connection, user_id: str) -> list[RedeemCodeRow]:
    result: list[RedeemCodeRow] = []
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute(f'SELECT {REDEEM_CODE_COLUMNS} FROM redeem_codes WHERE used_by = ? ORDER BY used_unix_ts_ms DESC',
                                   (base.trim_id(user_id),))
        rows   = typing.cast(list[RedeemCodeRowTuple], tx.cursor.fetchall())
        result = [redeem_code_from_row(row) for row in rows]
    return result

def delete_redeem_code(sql_conn: sqlite3.Connection, code: str, err: base.ErrorSink) -> bool:
    '''Delete a redeem code that was never redeemed. A used code backs a grant and is kept.'''
    result = False
    code   = base.trim_id(code)
    if len(code) == 0:
        err.msg_list.append('Redeem code was empty')
        return result

    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('DELETE FROM redeem_codes WHERE code = ? AND used_by IS NULL', (code,))
        if tx.cursor.rowcount == 1:
            result = True
        else:
            _   = tx.cursor.execute('SELECT used_by FROM redeem_codes WHERE code = ?', (code,))
            row = typing.cast(tuple[str | None] | None, tx.cursor.fetchone())
            if row is None:
                err.msg_list.append('Redeem code does not exist')
            else:
                err.msg_list.append('Cannot delete a redeem code that has been used')

    if result:
        log.info(f'Deleted redeem code (code={base.safe_id(code)})')
    return result

def prune_by_unix_ts_ms(sql_conn: sqlite3.Connection, unix_ts_ms: int, retention_ms: int = base.GRANT_REQUEST_RETENTION_MS) -> PruneResult:
    result = PruneResult()
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Exclusive) as tx:
        assert tx.cursor is not None
        # Retrieve the last prune time that was executed
        _ = tx.cursor.execute('''SELECT last_prune_unix_ts_ms FROM runtime''')
        last_prune_unix_ts_ms:        int  = typing.cast(tuple[int], tx.cursor.fetchone())[0]
        already_done_by_someone_else: bool = last_prune_unix_ts_ms >= unix_ts_ms
        log.info(f'Prune grant requests/redeem codes (pid={os.getpid()}, ts={base.readable_unix_ts_ms(unix_ts_ms)}, last_prune={last_prune_unix_ts_ms}, already_done_by_someone_else={already_done_by_someone_else})')
        if not already_done_by_someone_else:
            _ = tx.cursor.execute('''UPDATE runtime SET last_prune_unix_ts_ms = ?''', (unix_ts_ms,))

            # NOTE: Only committed requests are pruned, failed ones stay until support resolves them
            _ = tx.cursor.execute('''
                DELETE FROM grant_requests
                WHERE  attempt_state = ? AND ? - updated_unix_ts_ms >= ?
            ''', (int(base.AttemptState.Committed.value), unix_ts_ms, retention_ms))
            result.grant_requests = tx.cursor.rowcount

            _ = tx.cursor.execute('''
                DELETE FROM redeem_codes
                WHERE  used_by IS NULL AND ? >= code_expiry_unix_ts_ms
            ''', (unix_ts_ms,))
            result.redeem_codes = tx.cursor.rowcount

        result.already_done_by_someone_else = already_done_by_someone_else
        result.success                      = True
    return result

class EntitlementReader(typing.Protocol):
    '''Read side of the authoritative store as consumed by the reconciler. Every method raises
    `StoreUnavailableError` when the store cannot answer.'''
    def get_question_set(self, question_set_id: str) -> QuestionSet | None: ...
    def find_grants(self, user_id: str, question_set_id: str) -> FindGrantsResult: ...
    def find_grants_for_user(self, user_id: str) -> FindGrantsResult: ...

class EntitlementWriter(EntitlementReader, typing.Protocol):
    '''Write side of the authoritative store as consumed by the purchase finalizer.'''
    def find_grant_by_origin(self, origin_id: str) -> Grant | None: ...
    def insert_grant_if_absent(self, grant: Grant) -> InsertGrantResult: ...
    def record_grant_request(self, request: GrantRequestRow) -> None: ...

@dataclasses.dataclass
class DBEntitlementStore:
    '''
    Authoritative store backed by the SQLite DB at `db_path`. Each operation opens its own
    connection so the store can be shared freely between threads.
    '''
    db_path:   str   = ''
    db_uri:    bool  = False
    timeout_s: float = base.STORE_QUERY_TIMEOUT_S

    def open(self) -> OpenDBAtPath:
        result = OpenDBAtPath(db_path=self.db_path, uri=self.db_uri, timeout_s=self.timeout_s)
        return result

    def get_question_set(self, question_set_id: str) -> QuestionSet | None:
        try:
            with self.open() as db:
                return get_question_set(db.sql_conn, question_set_id)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f'Failed to get question set {question_set_id}: {e}') from e

    def find_grants(self, user_id: str, question_set_id: str) -> FindGrantsResult:
        try:
            with self.open() as db:
                return find_grants(db.sql_conn, user_id, question_set_id)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f'Failed to find grants for {base.safe_id(user_id)}: {e}') from e

    def find_grants_for_user(self, user_id: str) -> FindGrantsResult:
        try:
            with self.open() as db:
                return find_grants(db.sql_conn, user_id, question_set_id=None)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f'Failed to find grants for {base.safe_id(user_id)}: {e}') from e

    def find_grant_by_origin(self, origin_id: str) -> Grant | None:
        try:
            with self.open() as db:
                return find_grant_by_origin(db.sql_conn, origin_id)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f'Failed to find grant by origin {base.safe_id(origin_id)}: {e}') from e

    def insert_grant_if_absent(self, grant: Grant) -> InsertGrantResult:
        try:
            with self.open() as db:
                return insert_grant_if_absent(db.sql_conn, grant)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f'Failed to insert grant ({grant_log_label(grant)}): {e}') from e

    def record_grant_request(self, request: GrantRequestRow) -> None:
        try:
            with self.open() as db:
                upsert_grant_request(db.sql_conn, request)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f'Failed to record grant request {base.safe_id(request.transaction_id)}: {e}') from e
