'''
Local entitlement cache, persisted per device in its own SQLite file so that decisions survive a
restart. An entry is only a hint about the last decision the reconciler made from fresh data, the
reconciler replaces entries whole and never merges them. An entry is never replaced by a decision
made at an older store generation.
'''
import dataclasses
import logging
import sqlite3
import threading
import traceback
import typing

import base

log = logging.Logger("CACHE")

@dataclasses.dataclass
class CacheEntry:
    user_id:             str              = ''
    question_set_id:     str              = ''
    has_access:          bool             = False
    remaining_days:      int | None       = None
    reason:              base.GrantReason = base.GrantReason.NoGrant
    # Expiry of the grant backing the decision, None if there was no grant or it is permanent
    expiry_unix_ts_ms:   int | None       = None
    observed_unix_ts_ms: int              = 0
    source_generation:   int              = 0

CacheRowTuple: typing.TypeAlias = tuple[str, str, int, int | None, int, int | None, int, int]
CACHE_COLUMNS                   = 'user_id, question_set_id, has_access, remaining_days, reason, expiry_unix_ts_ms, observed_unix_ts_ms, source_generation'

def cache_entry_from_row(row: CacheRowTuple) -> CacheEntry:
    result = CacheEntry(user_id             = row[0],
                        question_set_id     = row[1],
                        has_access          = bool(row[2]),
                        remaining_days      = row[3],
                        reason              = base.GrantReason(row[4]),
                        expiry_unix_ts_ms   = row[5],
                        observed_unix_ts_ms = row[6],
                        source_generation   = row[7])
    return result

class LocalEntitlementCache:
    '''
    Holds one connection to the device's cache DB for the lifetime of the object. Access is
    serialised with a lock as the reconciler may be driven concurrently from the UI and from the
    change notifier thread. SQLite errors propagate to the caller.

    with LocalEntitlementCache(path) as cache:
        entry = cache.get(user_id, question_set_id)
    '''
    path:     str
    sql_conn: sqlite3.Connection
    lock:     threading.Lock

    def __init__(self, path: str, uri: bool = False):
        self.path     = path
        self.lock     = threading.Lock()
        self.sql_conn = sqlite3.connect(path, uri=uri, check_same_thread=False)
        try:
            with base.SQLTransaction(self.sql_conn) as tx:
                assert tx.cursor is not None
                _ = tx.cursor.executescript('''
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        user_id             TEXT    NOT NULL,
                        question_set_id     TEXT    NOT NULL,
                        has_access          INTEGER NOT NULL,
                        remaining_days      INTEGER,          -- NULL if permanent or no access
                        reason              INTEGER NOT NULL, -- base.GrantReason
                        expiry_unix_ts_ms   INTEGER,
                        observed_unix_ts_ms INTEGER NOT NULL, -- When the decision was made from fresh data
                        source_generation   INTEGER NOT NULL, -- Store generation the decision was made at
                        PRIMARY KEY (user_id, question_set_id)
                    );
                ''')
                _ = tx.cursor.execute('''PRAGMA journal_mode=WAL''')
        except Exception:
            log.error(f'Failed to bootstrap cache at {path}: {traceback.format_exc()}')
            self.sql_conn.close()
            raise

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.close()
        return False

    def close(self):
        with self.lock:
            self.sql_conn.close()

    def get(self, user_id: str, question_set_id: str) -> CacheEntry | None:
        result: CacheEntry | None = None
        with self.lock:
            with base.SQLTransaction(self.sql_conn) as tx:
                assert tx.cursor is not None
                _   = tx.cursor.execute(f'SELECT {CACHE_COLUMNS} FROM cache_entries WHERE user_id = ? AND question_set_id = ?',
                                        (base.trim_id(user_id), base.trim_id(question_set_id)))
                row = typing.cast(CacheRowTuple | None, tx.cursor.fetchone())
                if row:
                    result = cache_entry_from_row(row)
        return result

    def put(self, entry: CacheEntry) -> bool:
        '''Insert or overwrite the entry for (user, set). An existing entry written at a newer
        source generation is kept as is. Returns whether the entry was written.'''
        result: bool = False
        with self.lock:
            with base.SQLTransaction(self.sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
                assert tx.cursor is not None
                # NOTE: The generation check and the write are one statement so concurrent writers
                # can never move an entry back to an older generation
                _ = tx.cursor.execute(f'''
                    INSERT INTO cache_entries ({CACHE_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, question_set_id) DO UPDATE SET
                        has_access          = excluded.has_access,
                        remaining_days      = excluded.remaining_days,
                        reason              = excluded.reason,
                        expiry_unix_ts_ms   = excluded.expiry_unix_ts_ms,
                        observed_unix_ts_ms = excluded.observed_unix_ts_ms,
                        source_generation   = excluded.source_generation
                    WHERE excluded.source_generation >= cache_entries.source_generation
                ''', (base.trim_id(entry.user_id),
                      base.trim_id(entry.question_set_id),
                      int(entry.has_access),
                      entry.remaining_days,
                      int(entry.reason.value),
                      entry.expiry_unix_ts_ms,
                      entry.observed_unix_ts_ms,
                      entry.source_generation))
                result = tx.cursor.rowcount > 0

        if result and log.getEffectiveLevel() <= logging.INFO:
            log.info(f'Cached decision (user={base.safe_id(entry.user_id)}, set={entry.question_set_id}, access={entry.has_access}, reason={entry.reason.name}, gen={entry.source_generation}, observed={base.readable_unix_ts_ms(entry.observed_unix_ts_ms)})')
        return result

    def list_for_user(self, user_id: str) -> list[CacheEntry]:
        result: list[CacheEntry] = []
        with self.lock:
            with base.SQLTransaction(self.sql_conn) as tx:
                assert tx.cursor is not None
                _      = tx.cursor.execute(f'SELECT {CACHE_COLUMNS} FROM cache_entries WHERE user_id = ? ORDER BY question_set_id',
                                           (base.trim_id(user_id),))
                rows   = typing.cast(list[CacheRowTuple], tx.cursor.fetchall())
                result = [cache_entry_from_row(row) for row in rows]
        return result
