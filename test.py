'''
Testing module for the Quiz Entitlement Backend, testing internal and public APIs.

The backend tests call the DB APIs directly to test the outcome on the tables in the SQLite
database. The reconciler, finalizer and notifier tests drive those components against a real store
wrapped in `ScriptedStore` which can be told to fail particular operations to simulate an
unreachable backend.

The server tests spins up a local Flask instance as per
(https://flask.palletsprojects.com/en/stable/testing/#sending-requests-with-the-test-client) and
sends a request using the test client and we vet the request and response produced by hitting said
endpoint. The remote store tests serve the same app over a real socket with werkzeug.
'''

import ast
import flask
import json
import logging
import math
import pathlib
import socket
import sqlite3
import threading
import time
import traceback
import collections

import pytest
import werkzeug
import werkzeug.serving

import base
import backend
import cache
import finalizer
import notifier
import reconciler
import remote_store
import server
import trial_gate

T0_UNIX_TS_MS: int = 1_760_000_000_000

PAID_SET  = backend.QuestionSet(id='set-paid',  is_paid=True,  price=999, trial_question_count=3, total_question_count=10)
PAID_SET2 = backend.QuestionSet(id='set-paid2', is_paid=True,  price=499, trial_question_count=0, total_question_count=5)
FREE_SET  = backend.QuestionSet(id='set-free',  is_paid=False, price=0,   trial_question_count=0, total_question_count=8)

class ScriptedStore:
    '''
    Authoritative store that delegates to a real `DBEntitlementStore` but raises
    `StoreUnavailableError` for every operation named in `fail`, as if the backend were down.
    Counts calls per operation.
    '''
    def __init__(self, inner: backend.DBEntitlementStore, fail: set[str] | None = None, lookup_barrier: threading.Barrier | None = None):
        self.inner          = inner
        self.fail           = set(fail) if fail else set()
        self.lookup_barrier = lookup_barrier
        self.calls          = collections.Counter()

    def _call(self, name: str):
        self.calls[name] += 1
        if name in self.fail:
            raise backend.StoreUnavailableError(f'{name} timed out')

    def get_question_set(self, question_set_id: str) -> backend.QuestionSet | None:
        self._call('get_question_set')
        return self.inner.get_question_set(question_set_id)

    def find_grants(self, user_id: str, question_set_id: str) -> backend.FindGrantsResult:
        self._call('find_grants')
        return self.inner.find_grants(user_id, question_set_id)

    def find_grants_for_user(self, user_id: str) -> backend.FindGrantsResult:
        self._call('find_grants_for_user')
        return self.inner.find_grants_for_user(user_id)

    def find_grant_by_origin(self, origin_id: str) -> backend.Grant | None:
        self._call('find_grant_by_origin')
        result = self.inner.find_grant_by_origin(origin_id)
        if self.lookup_barrier:
            # NOTE: Hold every finalizer here until they have all seen the same (empty) store
            _ = self.lookup_barrier.wait(timeout=5)
        return result

    def insert_grant_if_absent(self, grant: backend.Grant) -> backend.InsertGrantResult:
        self._call('insert_grant_if_absent')
        return self.inner.insert_grant_if_absent(grant)

    def record_grant_request(self, request: backend.GrantRequestRow) -> None:
        self._call('record_grant_request')
        self.inner.record_grant_request(request)

class StoreContext:
    """
    Sets up a database with the quiz tables and the question sets used throughout the tests. This
    class is designed to be used in a `with` context such that the DB is closed on scope exit.

    For most tests this is an in-memory URI-style path (shared cache so that the store's per
    operation connections see the same DB). Tests that write from several threads at once use a
    file in pytest's `tmp_path` as the shared in-memory cache uses table locks that do not wait.
    """
    db:       backend.SetupDBResult
    sql_conn: sqlite3.Connection
    store:    backend.DBEntitlementStore

    def __init__(self, db_path: str, uri: bool):
        self.db_path = db_path
        self.uri     = uri

    def __enter__(self):
        err     = base.ErrorSink()
        self.db = backend.setup_db(path=self.db_path, uri=self.uri, err=err)
        assert len(err.msg_list) == 0, f'{err.msg_list}'
        assert self.db.sql_conn
        self.sql_conn = self.db.sql_conn
        for it in [PAID_SET, PAID_SET2, FREE_SET]:
            backend.add_question_set(self.sql_conn, it)
        self.store = backend.DBEntitlementStore(db_path=self.db_path, db_uri=self.uri)
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

class TestingContext(StoreContext):
    """
    StoreContext plus a flask instance that you can simulate HTTP requests to, to target the Quiz
    Entitlement Backend routes.
    """
    flask_app:    flask.Flask
    flask_client: werkzeug.Client
    hub:          notifier.PushHub

    def __enter__(self):
        _ = super().__enter__()
        self.hub          = notifier.PushHub()
        self.flask_app    = server.init(testing_mode       = True,
                                        db_path            = self.db_path,
                                        db_path_is_uri     = self.uri,
                                        push_hub           = self.hub,
                                        finalize_backoff_s = 0)
        self.flask_client = self.flask_app.test_client()
        return self

    def post(self, route: str, body: base.JSONObject) -> tuple[int, dict]:
        response = self.flask_client.post(route, data=json.dumps(body))
        result   = json.loads(response.data)
        assert isinstance(result, dict), f'Response was {response.data}'
        return (response.status_code, result)

def add_grant(sql_conn: sqlite3.Connection,
              user_id: str,
              question_set_id: str,
              expiry_unix_ts_ms: int | None,
              origin_id: str,
              source: base.GrantSource = base.GrantSource.Purchase) -> backend.Grant:
    grant  = backend.Grant(user_id            = user_id,
                           question_set_id    = question_set_id,
                           source             = source,
                           expiry_unix_ts_ms  = expiry_unix_ts_ms,
                           origin_id          = origin_id,
                           created_unix_ts_ms = T0_UNIX_TS_MS)
    result = backend.insert_grant_if_absent(sql_conn, grant)
    assert result.inserted
    return result.grant

def test_setup_db_is_reentrant():
    # Opening an existing DB a second time must not reset the runtime row or drop data
    with StoreContext('file:test_setup_db?mode=memory&cache=shared', uri=True) as ctx:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, None, 'tx-setup')
        err  = base.ErrorSink()
        db   = backend.setup_db(path=ctx.db_path, uri=True, err=err)
        assert len(err.msg_list) == 0, f'{err.msg_list}'
        assert db.sql_conn
        assert db.runtime.grant_generation                  == 1
        assert len(backend.get_grants_list(db.sql_conn))     == 1
        assert backend.verify_db(db.sql_conn, err),          err.build()
        info = backend.db_info_string(db.sql_conn, ctx.db_path, err)
        assert 'Sets/Grants:' in info and '3/1' in info, info
        db.sql_conn.close()

def test_question_set_roundtrip_and_trimmed_lookup():
    with StoreContext('file:test_question_set?mode=memory&cache=shared', uri=True) as ctx:
        question_set = ctx.store.get_question_set(' set-paid ')
        assert question_set == PAID_SET
        assert ctx.store.get_question_set('set-missing') is None

        # NOTE: A free set never carries trial questions
        backend.add_question_set(ctx.sql_conn, backend.QuestionSet(id='set-free2', is_paid=False, trial_question_count=4, total_question_count=4))
        free2 = ctx.store.get_question_set('set-free2')
        assert free2 is not None
        assert free2.trial_question_count == 0

def test_insert_grant_if_absent_is_keyed_by_origin():
    with StoreContext('file:test_insert_grant?mode=memory&cache=shared', uri=True) as ctx:
        first = backend.Grant(user_id='user-1', question_set_id=PAID_SET.id, source=base.GrantSource.Purchase,
                              expiry_unix_ts_ms=T0_UNIX_TS_MS + base.MILLISECONDS_IN_DAY, origin_id='tx-1', created_unix_ts_ms=T0_UNIX_TS_MS)
        inserted = ctx.store.insert_grant_if_absent(first)
        assert inserted.inserted
        assert inserted.grant == first

        # NOTE: Same origin, different payload, the original row wins and nothing is written
        second = backend.Grant(user_id='user-2', question_set_id=PAID_SET2.id, source=base.GrantSource.Purchase,
                               expiry_unix_ts_ms=None, origin_id=' tx-1 ', created_unix_ts_ms=T0_UNIX_TS_MS + 1)
        conflict = ctx.store.insert_grant_if_absent(second)
        assert not conflict.inserted
        assert conflict.grant == first

        found = ctx.store.find_grants('user-1', PAID_SET.id)
        assert len(found.grants) == 1
        assert found.generation  == 1
        assert len(ctx.store.find_grants('user-2', PAID_SET2.id).grants) == 0

def test_store_unavailable_on_sqlite_error(tmp_path):
    # Point the store at a path that cannot be opened
    store = backend.DBEntitlementStore(db_path=str(tmp_path / 'missing-dir' / 'store.db'))
    with pytest.raises(backend.StoreUnavailableError):
        _ = store.find_grants('user-1', PAID_SET.id)

    # A DB that exists but was never set up fails on the missing tables
    store = backend.DBEntitlementStore(db_path=str(tmp_path / 'empty.db'))
    with pytest.raises(backend.StoreUnavailableError):
        _ = store.get_question_set(PAID_SET.id)

def test_free_set_is_always_granted():
    # Free sets are granted regardless of grants, a cached denial or the store being down
    with StoreContext('file:test_free_set?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:

        local_cache.put(cache.CacheEntry(user_id='user-1', question_set_id=FREE_SET.id, has_access=False,
                                         reason=base.GrantReason.NoGrant, observed_unix_ts_ms=T0_UNIX_TS_MS))

        # Bump the store's generation so the free decision has a non-zero one to record
        add_grant(ctx.sql_conn, 'user-2', PAID_SET.id, None, 'tx-free-gen')
        add_grant(ctx.sql_conn, 'user-2', PAID_SET2.id, None, 'tx-free-gen2')

        store = ScriptedStore(ctx.store)
        rctx  = reconciler.ReconcilerContext(store=store, local_cache=local_cache)
        decision = reconciler.reconcile(rctx, 'user-1', FREE_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert decision.has_access
        assert decision.reason         == base.GrantReason.Free
        assert decision.remaining_days is None

        entry = local_cache.get('user-1', FREE_SET.id)
        assert entry is not None
        assert entry.has_access
        assert entry.reason            == base.GrantReason.Free
        assert entry.source_generation == 2

        # The generation is still recorded when the free set is reconciled in bulk
        _     = reconciler.reconcile_many(rctx, 'user-3', [FREE_SET.id], unix_ts_ms=T0_UNIX_TS_MS)
        entry = local_cache.get('user-3', FREE_SET.id)
        assert entry is not None
        assert entry.reason            == base.GrantReason.Free
        assert entry.source_generation == 2

        # Grants unreadable but the set is known to be free, granted without touching the cache
        store.fail = {'find_grants'}
        decision   = reconciler.reconcile(rctx, 'user-4', FREE_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert decision.has_access
        assert decision.reason == base.GrantReason.Free
        assert local_cache.get('user-4', FREE_SET.id) is None

        # Store down, the caller's copy of the set is enough to recognise it as free
        store.fail = {'get_question_set', 'find_grants'}
        decision   = reconciler.reconcile(rctx, 'user-1', FREE_SET.id, unix_ts_ms=T0_UNIX_TS_MS + 100 * base.MILLISECONDS_IN_DAY, question_set=FREE_SET)
        assert decision.has_access
        assert decision.reason == base.GrantReason.Free

        for index in range(FREE_SET.total_question_count):
            assert trial_gate.is_question_reachable(index, FREE_SET, reconciler.GrantDecision())

def test_no_grant_with_trial_questions():
    # A paid set with 3 trial questions out of 10 and no grant, only the first 3 questions are reachable
    with StoreContext('file:test_no_grant?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:

        rctx     = reconciler.ReconcilerContext(store=ctx.store, local_cache=local_cache)
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert not decision.has_access
        assert decision.reason == base.GrantReason.NoGrant

        reachable = [trial_gate.is_question_reachable(index, PAID_SET, decision) for index in range(PAID_SET.total_question_count)]
        assert reachable == [True] * 3 + [False] * 7
        assert not trial_gate.is_question_reachable(-1, PAID_SET, decision)

        assert trial_gate.first_gated_question_index(PAID_SET, decision) == 3
        assert trial_gate.clamp_question_navigation(8,  PAID_SET, decision) == 2
        assert trial_gate.clamp_question_navigation(1,  PAID_SET, decision) == 1
        assert trial_gate.clamp_question_navigation(-4, PAID_SET, decision) == 0

        entry = local_cache.get('user-1', PAID_SET.id)
        assert entry is not None
        assert not entry.has_access
        assert entry.reason              == base.GrantReason.NoGrant
        assert entry.observed_unix_ts_ms == T0_UNIX_TS_MS

def test_trial_gate_edges():
    denied  = reconciler.GrantDecision(has_access=False, reason=base.GrantReason.NoGrant)
    granted = reconciler.GrantDecision(has_access=True, reason=base.GrantReason.Purchase, remaining_days=3)

    # No trial questions gates every index
    assert not any(trial_gate.is_question_reachable(index, PAID_SET2, denied) for index in range(PAID_SET2.total_question_count))
    assert trial_gate.first_gated_question_index(PAID_SET2, denied)     == 0
    assert trial_gate.clamp_question_navigation(3, PAID_SET2, denied)   == 0

    # A trial covering the whole set makes it effectively free
    generous = backend.QuestionSet(id='set-generous', is_paid=True, price=1, trial_question_count=12, total_question_count=10)
    assert all(trial_gate.is_question_reachable(index, generous, denied) for index in range(generous.total_question_count))
    assert trial_gate.first_gated_question_index(generous, denied) is None

    # Granted access opens everything
    assert all(trial_gate.is_question_reachable(index, PAID_SET, granted) for index in range(PAID_SET.total_question_count))
    assert trial_gate.first_gated_question_index(PAID_SET, granted)    is None
    assert trial_gate.clamp_question_navigation(99, PAID_SET, granted) == PAID_SET.total_question_count - 1

def test_trial_gate_is_monotonic():
    denied = reconciler.GrantDecision()
    for trial_count in range(0, 6):
        question_set = backend.QuestionSet(id='set-mono', is_paid=True, price=1, trial_question_count=trial_count, total_question_count=5)
        for index in range(-2, 8):
            if trial_gate.is_question_reachable(index, question_set, denied):
                for earlier in range(0, index):
                    assert trial_gate.is_question_reachable(earlier, question_set, denied), f'trial={trial_count}, index={index}, earlier={earlier}'

def test_grant_selection():
    now = T0_UNIX_TS_MS
    def grant(expiry: int | None, source: base.GrantSource = base.GrantSource.Purchase) -> backend.Grant:
        return backend.Grant(user_id='user-1', question_set_id=PAID_SET.id, source=source, expiry_unix_ts_ms=expiry, origin_id=f'tx-{expiry}')

    expired   = grant(now - 1)
    exact     = grant(now)
    short     = grant(now + 2 * base.MILLISECONDS_IN_DAY + 1, base.GrantSource.RedeemCode)
    long      = grant(now + 10 * base.MILLISECONDS_IN_DAY)
    permanent = grant(None, base.GrantSource.Free)

    assert reconciler.select_grant([], now)                        is None
    assert reconciler.select_grant([expired, exact], now)          is None
    assert reconciler.select_grant([short, long, expired], now)    == long
    assert reconciler.select_grant([long, permanent, short], now)  == permanent
    assert reconciler.select_grant([permanent, long], now)         == permanent

    decision = reconciler.decision_from_grants([short], now)
    assert decision.has_access
    assert decision.reason         == base.GrantReason.RedeemCode
    assert decision.remaining_days == 3  # 2 days and 1ms, rounded up

    decision = reconciler.decision_from_grants([permanent], now)
    assert decision.has_access
    assert decision.reason         == base.GrantReason.Free
    assert decision.remaining_days is None

def test_later_purchase_extends_access():
    # Two payments for the same set both persist, the later expiry wins
    with StoreContext('file:test_later_purchase?mode=memory&cache=shared', uri=True) as ctx:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, T0_UNIX_TS_MS + 5  * base.MILLISECONDS_IN_DAY, 'tx-a')
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, T0_UNIX_TS_MS + 40 * base.MILLISECONDS_IN_DAY, 'tx-b')
        rctx     = reconciler.ReconcilerContext(store=ctx.store)
        decision = reconciler.reconcile(rctx, ' user-1 ', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert decision.has_access
        assert decision.reason            == base.GrantReason.Purchase
        assert decision.remaining_days    == 40
        assert decision.expiry_unix_ts_ms == T0_UNIX_TS_MS + 40 * base.MILLISECONDS_IN_DAY

def test_expired_grant_is_denied():
    # A grant that expired yesterday gives no access
    with StoreContext('file:test_expired_grant?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, T0_UNIX_TS_MS - base.MILLISECONDS_IN_DAY, 'tx-old')
        rctx     = reconciler.ReconcilerContext(store=ctx.store, local_cache=local_cache)
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert not decision.has_access
        assert decision.reason         == base.GrantReason.NoGrant
        assert decision.remaining_days is None

        # The grant expires exactly at the boundary as well
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS - base.MILLISECONDS_IN_DAY)
        assert not decision.has_access

def test_store_outage_falls_back_to_fresh_cache_only():
    # Granted an hour ago, the store then times out. Within the window the cached grant is replayed,
    # after 48h it is denied.
    with StoreContext('file:test_store_outage?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, T0_UNIX_TS_MS + 10 * base.MILLISECONDS_IN_DAY, 'tx-1')
        store = ScriptedStore(ctx.store)
        rctx  = reconciler.ReconcilerContext(store=store, local_cache=local_cache)

        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert decision.has_access
        assert decision.remaining_days == 10

        store.fail = {'find_grants'}
        one_hour_later = T0_UNIX_TS_MS + base.MILLISECONDS_IN_HOUR
        decision       = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=one_hour_later)
        assert decision.has_access
        assert decision.reason         == base.GrantReason.SourceUnavailable
        assert decision.remaining_days == 10

        # The fallback decision is not written back, the entry still dates from the real observation
        entry = local_cache.get('user-1', PAID_SET.id)
        assert entry is not None
        assert entry.observed_unix_ts_ms == T0_UNIX_TS_MS
        assert entry.reason              == base.GrantReason.Purchase

        # Exactly on the edge of the window is still trusted
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS + base.CACHE_STALENESS_WINDOW_MS)
        assert decision.has_access
        assert decision.remaining_days == 9

        store.fail = {'get_question_set', 'find_grants'}
        two_days_later = T0_UNIX_TS_MS + 48 * base.MILLISECONDS_IN_HOUR
        decision       = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=two_days_later, question_set=PAID_SET)
        assert not decision.has_access
        assert decision.reason == base.GrantReason.NoGrant

        # Nothing cached at all fails closed but reports that the store could not be asked
        decision = reconciler.reconcile(rctx, 'user-2', PAID_SET.id, unix_ts_ms=one_hour_later)
        assert not decision.has_access
        assert decision.reason         == base.GrantReason.SourceUnavailable
        assert decision.remaining_days is None
        assert local_cache.get('user-2', PAID_SET.id) is None

def test_store_outage_without_cache_entry_is_unknown_not_denied():
    with StoreContext('file:test_outage_no_entry?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, None, 'tx-no-entry')
        store = ScriptedStore(ctx.store, fail={'get_question_set', 'find_grants', 'find_grants_for_user'})

        # The user does own the set, the store is just down and nothing was ever cached
        rctx     = reconciler.ReconcilerContext(store=store, local_cache=local_cache)
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS, question_set=PAID_SET)
        assert not decision.has_access
        assert decision.reason == base.GrantReason.SourceUnavailable

        decisions = reconciler.reconcile_many(rctx, 'user-1', [PAID_SET.id, PAID_SET2.id], unix_ts_ms=T0_UNIX_TS_MS)
        assert all(not it.has_access for it in decisions.values())
        assert all(it.reason == base.GrantReason.SourceUnavailable for it in decisions.values())

        # No cache configured at all behaves the same
        rctx     = reconciler.ReconcilerContext(store=store)
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert not decision.has_access
        assert decision.reason == base.GrantReason.SourceUnavailable

        # Only a stale entry is reported as a plain denial
        assert reconciler.decision_from_cache(None, T0_UNIX_TS_MS, base.CACHE_STALENESS_WINDOW_MS).reason == base.GrantReason.SourceUnavailable
        stale = cache.CacheEntry(user_id='user-1', question_set_id=PAID_SET.id, has_access=True, reason=base.GrantReason.Purchase,
                                 observed_unix_ts_ms=T0_UNIX_TS_MS - base.CACHE_STALENESS_WINDOW_MS - 1)
        assert reconciler.decision_from_cache(stale, T0_UNIX_TS_MS, base.CACHE_STALENESS_WINDOW_MS).reason == base.GrantReason.NoGrant

def test_store_outage_replays_cached_denial_and_drops_expired_grant():
    with StoreContext('file:test_store_outage_denial?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, T0_UNIX_TS_MS + base.MILLISECONDS_IN_HOUR, 'tx-short')
        store = ScriptedStore(ctx.store)
        rctx  = reconciler.ReconcilerContext(store=store, local_cache=local_cache)
        assert reconciler.reconcile(rctx, 'user-1', PAID_SET.id,  unix_ts_ms=T0_UNIX_TS_MS).has_access
        assert not reconciler.reconcile(rctx, 'user-1', PAID_SET2.id, unix_ts_ms=T0_UNIX_TS_MS).has_access

        store.fail = {'get_question_set', 'find_grants'}
        later      = T0_UNIX_TS_MS + 2 * base.MILLISECONDS_IN_HOUR

        # Cached denial inside the window
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET2.id, unix_ts_ms=later)
        assert not decision.has_access
        assert decision.reason == base.GrantReason.SourceUnavailable

        # Cached grant that has since expired is not honoured
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=later)
        assert not decision.has_access
        assert decision.reason == base.GrantReason.SourceUnavailable

def test_fresh_data_overwrites_cache_unless_generation_is_newer():
    with StoreContext('file:test_generation?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        rctx = reconciler.ReconcilerContext(store=ctx.store, local_cache=local_cache)

        # A cached grant from a newer generation than the store reports (lagging replica). The
        # caller gets the fresh answer but the newer entry is kept.
        newer = cache.CacheEntry(user_id='user-1', question_set_id=PAID_SET.id, has_access=True, remaining_days=30,
                                 reason=base.GrantReason.Purchase, observed_unix_ts_ms=T0_UNIX_TS_MS - 1000, source_generation=50)
        local_cache.put(newer)
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert not decision.has_access
        assert local_cache.get('user-1', PAID_SET.id) == newer

        # Same generation overwrites, unchanged decisions still refresh the observation time
        _     = reconciler.reconcile(rctx, 'user-1', PAID_SET2.id, unix_ts_ms=T0_UNIX_TS_MS)
        _     = reconciler.reconcile(rctx, 'user-1', PAID_SET2.id, unix_ts_ms=T0_UNIX_TS_MS + 5)
        entry = local_cache.get('user-1', PAID_SET2.id)
        assert entry is not None
        assert not entry.has_access
        assert entry.source_generation   == 0
        assert entry.observed_unix_ts_ms == T0_UNIX_TS_MS + 5

        add_grant(ctx.sql_conn, 'user-1', PAID_SET2.id, None, 'tx-gen')
        _     = reconciler.reconcile(rctx, 'user-1', PAID_SET2.id, unix_ts_ms=T0_UNIX_TS_MS)
        entry = local_cache.get('user-1', PAID_SET2.id)
        assert entry is not None
        assert entry.has_access
        assert entry.source_generation == backend.get_runtime(ctx.sql_conn).grant_generation

def test_cache_put_never_moves_generation_backwards():
    with cache.LocalEntitlementCache(':memory:') as local_cache:
        granted = cache.CacheEntry(user_id='user-1', question_set_id=PAID_SET.id, has_access=True, remaining_days=5,
                                   reason=base.GrantReason.Purchase, observed_unix_ts_ms=T0_UNIX_TS_MS, source_generation=1)
        denied  = cache.CacheEntry(user_id='user-1', question_set_id=PAID_SET.id, has_access=False,
                                   reason=base.GrantReason.NoGrant, observed_unix_ts_ms=T0_UNIX_TS_MS + 10, source_generation=0)
        assert local_cache.put(granted)
        assert not local_cache.put(denied)
        assert local_cache.get('user-1', PAID_SET.id) == granted

        # Equal or newer generations overwrite
        denied.source_generation = 1
        assert local_cache.put(denied)
        assert local_cache.get('user-1', PAID_SET.id) == denied
        granted.source_generation = 2
        assert local_cache.put(granted)
        assert local_cache.get('user-1', PAID_SET.id) == granted

class LaggingStore(ScriptedStore):
    '''Answers `find_grants` with a result read earlier, like a reconcile that read the store before
    a grant was inserted but only writes the cache after a later reconcile did.'''
    def __init__(self, inner: backend.DBEntitlementStore, earlier: backend.FindGrantsResult):
        super().__init__(inner)
        self.earlier = earlier

    def find_grants(self, user_id: str, question_set_id: str) -> backend.FindGrantsResult:
        self._call('find_grants')
        return self.earlier

def test_slow_reconcile_cannot_overwrite_newer_cache_entry():
    with StoreContext('file:test_slow_reconcile?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        before = ctx.store.find_grants('user-1', PAID_SET.id)
        assert before.generation == 0
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, None, 'tx-slow')

        fast = reconciler.ReconcilerContext(store=ctx.store, local_cache=local_cache)
        assert reconciler.reconcile(fast, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS).has_access

        slow     = reconciler.ReconcilerContext(store=LaggingStore(ctx.store, before), local_cache=local_cache)
        decision = reconciler.reconcile(slow, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS + 1)
        assert not decision.has_access

        entry = local_cache.get('user-1', PAID_SET.id)
        assert entry is not None
        assert entry.has_access
        assert entry.source_generation   == 1
        assert entry.observed_unix_ts_ms == T0_UNIX_TS_MS

def test_cache_write_failure_does_not_fail_reconcile():
    with StoreContext('file:test_cache_failure?mode=memory&cache=shared', uri=True) as ctx:
        local_cache = cache.LocalEntitlementCache(':memory:')
        local_cache.close()
        rctx     = reconciler.ReconcilerContext(store=ctx.store, local_cache=local_cache)
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, None, 'tx-cache')
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert decision.has_access

def test_cache_persists_across_restart(tmp_path):
    path  = str(tmp_path / 'device-cache.db')
    entry = cache.CacheEntry(user_id='user-1', question_set_id=PAID_SET.id, has_access=True, remaining_days=4,
                             reason=base.GrantReason.RedeemCode, expiry_unix_ts_ms=T0_UNIX_TS_MS + 4 * base.MILLISECONDS_IN_DAY,
                             observed_unix_ts_ms=T0_UNIX_TS_MS, source_generation=7)
    with cache.LocalEntitlementCache(path) as local_cache:
        local_cache.put(entry)

    with cache.LocalEntitlementCache(path) as local_cache:
        assert local_cache.get(' user-1 ', PAID_SET.id) == entry
        assert local_cache.list_for_user('user-1')      == [entry]
        assert local_cache.get('user-2', PAID_SET.id)   is None

def test_reconcile_many_uses_one_grant_lookup():
    with StoreContext('file:test_reconcile_many?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET2.id, T0_UNIX_TS_MS + base.MILLISECONDS_IN_DAY, 'tx-many', base.GrantSource.RedeemCode)
        store     = ScriptedStore(ctx.store)
        rctx      = reconciler.ReconcilerContext(store=store, local_cache=local_cache)
        decisions = reconciler.reconcile_many(rctx, 'user-1', [PAID_SET.id, PAID_SET2.id, FREE_SET.id, ' set-paid '], unix_ts_ms=T0_UNIX_TS_MS)
        assert list(decisions.keys()) == [PAID_SET.id, PAID_SET2.id, FREE_SET.id]
        assert not decisions[PAID_SET.id].has_access
        assert decisions[PAID_SET2.id].reason == base.GrantReason.RedeemCode
        assert decisions[FREE_SET.id].reason  == base.GrantReason.Free
        assert store.calls['find_grants_for_user'] == 1
        assert store.calls['find_grants']          == 0
        assert len(local_cache.list_for_user('user-1')) == 3

        store.fail = {'get_question_set', 'find_grants_for_user'}
        decisions  = reconciler.reconcile_many(rctx, 'user-1', [PAID_SET2.id, FREE_SET.id], unix_ts_ms=T0_UNIX_TS_MS + 10,
                                               question_sets={FREE_SET.id: FREE_SET})
        assert decisions[PAID_SET2.id].reason == base.GrantReason.SourceUnavailable
        assert decisions[PAID_SET2.id].has_access
        assert decisions[FREE_SET.id].reason  == base.GrantReason.Free

def test_finalize_purchase_is_idempotent():
    with StoreContext('file:test_finalize_idempotent?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        hub  = notifier.PushHub()
        sub  = hub.subscribe('user-1')
        fctx = finalizer.FinalizerContext(store          = ctx.store,
                                          reconciler_ctx = reconciler.ReconcilerContext(store=ctx.store, local_cache=local_cache),
                                          publisher      = hub,
                                          backoff_base_s = 0)
        err    = base.ErrorSink()
        first  = finalizer.finalize_purchase(fctx, 'tx-1', 'user-1', PAID_SET.id, PAID_SET.price, err, unix_ts_ms=T0_UNIX_TS_MS)
        assert not err.has(), err.build()
        assert first.error    == finalizer.FinalizeError.Nil
        assert first.state    == base.AttemptState.Committed
        assert first.inserted
        assert not first.replayed
        assert first.grant is not None
        assert first.grant.source            == base.GrantSource.Purchase
        assert first.grant.origin_id         == 'tx-1'
        assert first.grant.expiry_unix_ts_ms == T0_UNIX_TS_MS + 180 * base.MILLISECONDS_IN_DAY

        # Committed refreshes the cache and tells the user's other sessions
        entry = local_cache.get('user-1', PAID_SET.id)
        assert entry is not None
        assert entry.has_access
        assert entry.remaining_days == 180
        event = sub.receive(timeout_s=0)
        assert event == notifier.GrantChanged(user_id='user-1', question_set_id=PAID_SET.id)

        generation = backend.get_runtime(ctx.sql_conn).grant_generation
        second     = finalizer.finalize_purchase(fctx, ' tx-1 ', 'user-1', PAID_SET.id, PAID_SET.price, err, unix_ts_ms=T0_UNIX_TS_MS + 5000)
        assert not err.has(), err.build()
        assert second.state == base.AttemptState.Committed
        assert second.replayed
        assert not second.inserted
        assert second.grant == first.grant
        assert backend.get_runtime(ctx.sql_conn).grant_generation == generation
        assert len(ctx.store.find_grants('user-1', PAID_SET.id).grants) == 1

        request = backend.get_grant_request(ctx.sql_conn, 'tx-1')
        assert request is not None
        assert request.attempt_state == base.AttemptState.Committed

def test_finalize_purchase_concurrent_same_transaction(tmp_path):
    # Two finalizers for tx-1 both see an empty store and race on the insert, exactly one grant
    # exists afterwards and both return it
    with StoreContext(str(tmp_path / 'store.db'), uri=False) as ctx:
        store   = ScriptedStore(ctx.store, lookup_barrier=threading.Barrier(2))
        fctx    = finalizer.FinalizerContext(store=store, backoff_base_s=0)
        results: list[finalizer.FinalizeResult] = []
        errors:  list[base.ErrorSink]           = []
        lock    = threading.Lock()

        def run():
            err    = base.ErrorSink()
            result = finalizer.finalize_purchase(fctx, 'tx-1', 'user-1', PAID_SET.id, PAID_SET.price, err, unix_ts_ms=T0_UNIX_TS_MS)
            with lock:
                results.append(result)
                errors.append(err)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for it in threads:
            it.start()
        for it in threads:
            it.join(timeout=10)

        assert len(results) == 2
        assert all(not it.has() for it in errors)
        assert all(it.state == base.AttemptState.Committed for it in results)
        assert results[0].grant == results[1].grant
        assert sum(1 for it in results if it.inserted) == 1
        assert len(backend.get_grants_list(ctx.sql_conn)) == 1

def test_finalize_different_transactions_both_persist():
    with StoreContext('file:test_finalize_two_tx?mode=memory&cache=shared', uri=True) as ctx:
        fctx = finalizer.FinalizerContext(store=ctx.store, backoff_base_s=0)
        err  = base.ErrorSink()
        _    = finalizer.finalize_purchase(fctx, 'tx-a', 'user-1', PAID_SET.id, PAID_SET.price, err, unix_ts_ms=T0_UNIX_TS_MS)
        _    = finalizer.finalize_purchase(fctx, 'tx-b', 'user-1', PAID_SET.id, PAID_SET.price, err, unix_ts_ms=T0_UNIX_TS_MS + base.MILLISECONDS_IN_DAY)
        assert not err.has(), err.build()
        assert len(ctx.store.find_grants('user-1', PAID_SET.id).grants) == 2

        decision = reconciler.reconcile(reconciler.ReconcilerContext(store=ctx.store), 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS + base.MILLISECONDS_IN_DAY)
        assert decision.expiry_unix_ts_ms == T0_UNIX_TS_MS + 181 * base.MILLISECONDS_IN_DAY

def test_finalize_rejects_empty_ids():
    with StoreContext('file:test_finalize_empty?mode=memory&cache=shared', uri=True) as ctx:
        store  = ScriptedStore(ctx.store)
        fctx   = finalizer.FinalizerContext(store=store, backoff_base_s=0)
        err    = base.ErrorSink()
        result = finalizer.finalize_purchase(fctx, '   ', 'user-1', PAID_SET.id, PAID_SET.price, err)
        assert err.has()
        assert result.grant is None
        assert sum(store.calls.values()) == 0

def test_finalize_store_unavailable():
    with StoreContext('file:test_finalize_unavailable?mode=memory&cache=shared', uri=True) as ctx:
        store  = ScriptedStore(ctx.store, fail={'find_grant_by_origin'})
        fctx   = finalizer.FinalizerContext(store=store, backoff_base_s=0)
        err    = base.ErrorSink()
        result = finalizer.finalize_purchase(fctx, 'tx-down', 'user-1', PAID_SET.id, PAID_SET.price, err, unix_ts_ms=T0_UNIX_TS_MS)
        assert not err.has()
        assert result.error   == finalizer.FinalizeError.StoreUnavailable
        assert result.state   == base.AttemptState.Failed
        assert result.message == finalizer.ACCESS_PENDING_MSG
        assert result.grant   is None
        assert store.calls['find_grant_by_origin']   == 3
        assert store.calls['insert_grant_if_absent'] == 0

        request = backend.get_grant_request(ctx.sql_conn, 'tx-down')
        assert request is not None
        assert request.attempt_state == base.AttemptState.Failed
        assert 'timed out' in request.last_error

def test_finalize_retries_exhausted():
    with StoreContext('file:test_finalize_retries?mode=memory&cache=shared', uri=True) as ctx:
        hub    = notifier.PushHub()
        sub    = hub.subscribe('user-1')
        store  = ScriptedStore(ctx.store, fail={'insert_grant_if_absent'})
        fctx   = finalizer.FinalizerContext(store=store, publisher=hub, backoff_base_s=0)
        err    = base.ErrorSink()
        result = finalizer.finalize_purchase(fctx, 'tx-2', 'user-1', PAID_SET.id, PAID_SET.price, err, unix_ts_ms=T0_UNIX_TS_MS)
        assert result.error    == finalizer.FinalizeError.RetriesExhausted
        assert result.state    == base.AttemptState.Failed
        assert result.attempts == 4  # 1 lookup and 3 inserts
        assert store.calls['insert_grant_if_absent'] == 3
        assert sub.receive(timeout_s=0) is None

        request = backend.get_grant_request(ctx.sql_conn, 'tx-2')
        assert request is not None
        assert request.attempt_state == base.AttemptState.Failed
        assert request.attempts      == 4

        # The store recovers and the payment is reported again, it now commits
        store.fail = set()
        result     = finalizer.finalize_purchase(fctx, 'tx-2', 'user-1', PAID_SET.id, PAID_SET.price, err, unix_ts_ms=T0_UNIX_TS_MS + 1000)
        assert result.state == base.AttemptState.Committed
        assert result.inserted

def test_finalize_insert_survives_interrupted_caller():
    # The insert runs on its own non-daemon thread and the caller only joins it
    ran: list[str] = []
    def slow() -> str:
        time.sleep(0.05)
        ran.append('done')
        return 'ok'
    assert finalizer.run_uncancellable(slow) == 'ok'
    assert ran == ['done']

    def broken():
        raise ValueError('insert blew up')
    with pytest.raises(ValueError):
        finalizer.run_uncancellable(broken)

def test_handle_payment_outcome():
    with StoreContext('file:test_payment_outcome?mode=memory&cache=shared', uri=True) as ctx:
        store = ScriptedStore(ctx.store)
        fctx  = finalizer.FinalizerContext(store=store, backoff_base_s=0)

        # Anything but success is ignored
        for status in [base.PaymentStatus.Pending, base.PaymentStatus.Failed]:
            err     = base.ErrorSink()
            outcome = finalizer.PaymentOutcome(transaction_id='tx-ignored', amount=PAID_SET.price, status=status, user_id='user-1', question_set_id=PAID_SET.id)
            assert finalizer.handle_payment_outcome(fctx, outcome, err) is None
            assert not err.has()
        assert store.calls['find_grant_by_origin'] == 0

        # Wrong amount, free set and unknown set are rejected before the state machine
        for question_set_id, amount in [(PAID_SET.id, PAID_SET.price + 1), (FREE_SET.id, 0), ('set-missing', 1)]:
            err     = base.ErrorSink()
            outcome = finalizer.PaymentOutcome(transaction_id='tx-bad', amount=amount, status=base.PaymentStatus.Succeeded, user_id='user-1', question_set_id=question_set_id)
            assert finalizer.handle_payment_outcome(fctx, outcome, err) is None
            assert err.has(), question_set_id
        assert store.calls['find_grant_by_origin'] == 0

        err     = base.ErrorSink()
        outcome = finalizer.PaymentOutcome(transaction_id='tx-good', amount=PAID_SET.price, status=base.PaymentStatus.Succeeded, user_id='user-1', question_set_id=PAID_SET.id)
        result  = finalizer.handle_payment_outcome(fctx, outcome, err, unix_ts_ms=T0_UNIX_TS_MS)
        assert not err.has(), err.build()
        assert result is not None
        assert result.state == base.AttemptState.Committed

        # Store down while validating, recorded as pending access
        store.fail = {'get_question_set'}
        outcome    = finalizer.PaymentOutcome(transaction_id='tx-later', amount=PAID_SET.price, status=base.PaymentStatus.Succeeded, user_id='user-1', question_set_id=PAID_SET.id)
        result     = finalizer.handle_payment_outcome(fctx, outcome, err, unix_ts_ms=T0_UNIX_TS_MS)
        assert result is not None
        assert result.error == finalizer.FinalizeError.StoreUnavailable
        request = backend.get_grant_request(ctx.sql_conn, 'tx-later')
        assert request is not None
        assert request.attempt_state == base.AttemptState.Failed

def test_payment_outcome_from_dict():
    err     = base.ErrorSink()
    outcome = finalizer.PaymentOutcome.from_dict({'transaction_id': ' tx-9 ', 'amount': 999, 'status': 1, 'user_id': 'user-1', 'question_set_id': 'set-paid'}, err)
    assert not err.has(), err.build()
    assert outcome.transaction_id == 'tx-9'
    assert outcome.status         == base.PaymentStatus.Succeeded

    err = base.ErrorSink()
    _   = finalizer.PaymentOutcome.from_dict({'transaction_id': 'tx-9', 'amount': '999', 'status': 7, 'user_id': 'user-1'}, err)
    assert len(err.msg_list) >= 3, err.msg_list

def test_push_hub_delivery():
    hub    = notifier.PushHub(queue_size=1)
    sub_a  = hub.subscribe('user-1')
    sub_b  = hub.subscribe('user-1')
    other  = hub.subscribe('user-2')
    event  = notifier.GrantChanged(user_id='user-1', question_set_id=PAID_SET.id)
    assert hub.publish('user-1', event) == 2
    assert other.receive(timeout_s=0) is None

    # At most once, a full queue drops the event
    assert hub.publish(' user-1 ', event) == 0
    assert sub_a.receive(timeout_s=0) == event
    assert sub_a.receive(timeout_s=0) is None

    hub.unsubscribe(sub_b)
    assert hub.publish('user-1', event) == 1

    assert hub.disconnect_user('user-1') == 1
    with pytest.raises(notifier.PushDisconnectedError):
        _ = sub_a.receive(timeout_s=0)
    assert hub.publish('user-1', event) == 0

    err = base.ErrorSink()
    assert notifier.GrantChanged.from_dict(event.to_dict(), err) == event
    assert not err.has()

def test_notifier_converges_on_reconnect():
    # An event published while the session was disconnected is lost, the reconnect reconcile still
    # brings the session up to date
    with StoreContext('file:test_notifier_reconnect?mode=memory&cache=shared', uri=True) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        hub  = notifier.PushHub()
        rctx = reconciler.ReconcilerContext(store=ctx.store, local_cache=local_cache)
        nctx = notifier.NotifierContext(hub=hub, reconciler_ctx=rctx, user_id='user-1')
        seen: list[tuple[str, bool, base.GrantReason]] = []
        notifier.add_observer(nctx, lambda user_id, question_set_id, decision: seen.append((question_set_id, decision.has_access, decision.reason)))
        notifier.open_question_set(nctx, PAID_SET.id)
        notifier.open_question_set(nctx, PAID_SET2.id)
        notifier.close_question_set(nctx, PAID_SET2.id)

        _ = notifier.connect(nctx)
        assert seen == [(PAID_SET.id, False, base.GrantReason.NoGrant)]

        assert hub.disconnect_user('user-1') == 1
        with pytest.raises(notifier.PushDisconnectedError):
            _ = notifier.pump(nctx, timeout_s=0)

        fctx = finalizer.FinalizerContext(store=ctx.store, publisher=hub, backoff_base_s=0)
        err  = base.ErrorSink()
        _    = finalizer.finalize_purchase(fctx, 'tx-offline', 'user-1', PAID_SET.id, PAID_SET.price, err)
        assert not err.has(), err.build()
        assert seen[-1] == (PAID_SET.id, False, base.GrantReason.NoGrant)

        _ = notifier.connect(nctx)
        assert seen[-1] == (PAID_SET.id, True, base.GrantReason.Purchase)
        assert nctx.connects == 2

        # Live events are reconciled and republished
        _        = finalizer.finalize_purchase(fctx, 'tx-live', 'user-1', PAID_SET2.id, PAID_SET2.price, err)
        decision = notifier.pump(nctx, timeout_s=1)
        assert decision is not None
        assert decision.has_access
        assert seen[-1] == (PAID_SET2.id, True, base.GrantReason.Purchase)

        # Events for someone else are ignored
        assert notifier.handle_grant_changed(nctx, notifier.GrantChanged(user_id='user-2', question_set_id=PAID_SET.id)) is None

def test_notifier_thread_reconnects(tmp_path):
    with StoreContext(str(tmp_path / 'notifier.db'), uri=False) as ctx, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        hub  = notifier.PushHub()
        rctx = reconciler.ReconcilerContext(store=ctx.store, local_cache=local_cache)
        nctx = notifier.init(hub, rctx, 'user-1')
        nctx.pump_timeout_s      = 0.05
        nctx.reconnect_backoff_s = 0.05

        calls     = threading.Semaphore(0)
        decisions: list[bool] = []
        def observer(user_id: str, question_set_id: str, decision: reconciler.GrantDecision):
            decisions.append(decision.has_access)
            calls.release()

        notifier.add_observer(nctx, observer)
        notifier.open_question_set(nctx, PAID_SET.id)
        assert nctx.thread
        nctx.thread.start()
        try:
            assert calls.acquire(timeout=5)  # connect
            assert decisions[-1] is False

            fctx = finalizer.FinalizerContext(store=ctx.store, publisher=hub, backoff_base_s=0)
            _    = finalizer.finalize_purchase(fctx, 'tx-thread', 'user-1', PAID_SET.id, PAID_SET.price, base.ErrorSink())
            assert calls.acquire(timeout=5)  # event
            assert decisions[-1] is True

            _ = hub.disconnect_user('user-1')
            assert calls.acquire(timeout=5)  # reconnect
            assert decisions[-1] is True
            assert nctx.connects == 2
        finally:
            notifier.stop(nctx, timeout_s=5)
        assert not nctx.thread.is_alive()

def test_redeem_codes():
    with StoreContext('file:test_redeem_codes?mode=memory&cache=shared', uri=True) as ctx:
        err   = base.ErrorSink()
        codes = backend.generate_redeem_codes(ctx.sql_conn, PAID_SET.id, validity_days=7, quantity=3, created_by='admin-1', unix_ts_ms=T0_UNIX_TS_MS, err=err)
        assert not err.has(), err.build()
        assert len(codes) == 3
        assert len({it.code for it in codes}) == 3
        for it in codes:
            assert len(it.code) == base.REDEEM_CODE_LENGTH
            assert all(ch in base.REDEEM_CODE_ALPHABET for ch in it.code)
            assert it.code_expiry_unix_ts_ms == T0_UNIX_TS_MS + 7 * base.MILLISECONDS_IN_DAY
            assert it.used_by is None

        redeemed = backend.redeem_code(ctx.sql_conn, f' {codes[0].code} ', 'user-1', T0_UNIX_TS_MS + 10, base.GRANT_VALIDITY_MS, err)
        assert not err.has(), err.build()
        assert redeemed.success
        assert redeemed.grant.source            == base.GrantSource.RedeemCode
        assert redeemed.grant.origin_id         == backend.redeem_code_origin_id(codes[0].id)
        assert redeemed.grant.expiry_unix_ts_ms == T0_UNIX_TS_MS + 10 + base.GRANT_VALIDITY_MS
        assert redeemed.code.used_by            == 'user-1'

        decision = reconciler.reconcile(reconciler.ReconcilerContext(store=ctx.store), 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS + 10)
        assert decision.reason         == base.GrantReason.RedeemCode
        assert decision.remaining_days == base.GRANT_VALIDITY_DAYS

        # Used, unknown and expired codes are rejected
        for code, user_id, unix_ts_ms in [(codes[0].code, 'user-1', T0_UNIX_TS_MS),
                                          (codes[0].code, 'user-2', T0_UNIX_TS_MS),
                                          ('ZZZZZZZZ',    'user-2', T0_UNIX_TS_MS),
                                          (codes[1].code, 'user-2', T0_UNIX_TS_MS + 7 * base.MILLISECONDS_IN_DAY)]:
            err    = base.ErrorSink()
            result = backend.redeem_code(ctx.sql_conn, code, user_id, unix_ts_ms, base.GRANT_VALIDITY_MS, err)
            assert err.has()
            assert not result.success

        assert [it.code for it in backend.get_user_redeemed_codes(ctx.sql_conn, 'user-1')] == [codes[0].code]
        assert backend.get_user_redeemed_codes(ctx.sql_conn, 'user-2') == []
        assert len(backend.get_redeem_codes_list(ctx.sql_conn)) == 3
        assert len(backend.get_grants_list(ctx.sql_conn))       == 1

        err = base.ErrorSink()
        assert backend.verify_db(ctx.sql_conn, err), err.build()

def test_generate_redeem_codes_validation():
    with StoreContext('file:test_redeem_validation?mode=memory&cache=shared', uri=True) as ctx:
        for question_set_id, validity_days, quantity in [(PAID_SET.id, 0, 1), (PAID_SET.id, 1, 0), ('set-missing', 1, 1), ('  ', 1, 1)]:
            err   = base.ErrorSink()
            codes = backend.generate_redeem_codes(ctx.sql_conn, question_set_id, validity_days, quantity, 'admin-1', T0_UNIX_TS_MS, err)
            assert err.has()
            assert codes == []
        assert backend.get_redeem_codes_list(ctx.sql_conn) == []

def test_prune():
    with StoreContext('file:test_prune?mode=memory&cache=shared', uri=True) as ctx:
        for transaction_id, state in [('tx-committed', base.AttemptState.Committed), ('tx-failed', base.AttemptState.Failed)]:
            backend.upsert_grant_request(ctx.sql_conn, backend.GrantRequestRow(transaction_id     = transaction_id,
                                                                               user_id            = 'user-1',
                                                                               question_set_id    = PAID_SET.id,
                                                                               amount             = PAID_SET.price,
                                                                               attempt_state      = state,
                                                                               attempts           = 1,
                                                                               updated_unix_ts_ms = T0_UNIX_TS_MS))

        err   = base.ErrorSink()
        codes = backend.generate_redeem_codes(ctx.sql_conn, PAID_SET.id, validity_days=1, quantity=2, created_by='admin-1', unix_ts_ms=T0_UNIX_TS_MS, err=err)
        _     = backend.redeem_code(ctx.sql_conn, codes[0].code, 'user-1', T0_UNIX_TS_MS, base.GRANT_VALIDITY_MS, err)
        assert not err.has(), err.build()

        # Too early, nothing is old enough
        result = backend.prune_by_unix_ts_ms(ctx.sql_conn, T0_UNIX_TS_MS + base.MILLISECONDS_IN_HOUR)
        assert result.success
        assert result.grant_requests == 0
        assert result.redeem_codes   == 0

        prune_unix_ts_ms = T0_UNIX_TS_MS + 31 * base.MILLISECONDS_IN_DAY
        result           = backend.prune_by_unix_ts_ms(ctx.sql_conn, prune_unix_ts_ms)
        assert result.success
        assert not result.already_done_by_someone_else
        assert result.grant_requests == 1
        assert result.redeem_codes   == 1
        assert backend.get_grant_request(ctx.sql_conn, 'tx-committed') is None
        assert backend.get_grant_request(ctx.sql_conn, 'tx-failed')    is not None
        assert [it.code for it in backend.get_redeem_codes_list(ctx.sql_conn)] == [codes[0].code]

        # Another process already did it
        result = backend.prune_by_unix_ts_ms(ctx.sql_conn, prune_unix_ts_ms)
        assert result.already_done_by_someone_else
        assert backend.get_runtime(ctx.sql_conn).last_prune_unix_ts_ms == prune_unix_ts_ms

def test_server_entitlement_flow():
    with TestingContext('file:test_server_db?mode=memory&cache=shared', uri=True) as ctx:
        sub = ctx.hub.subscribe('user-1')

        if 1: # Nothing owned yet
            status, body = ctx.post(server.ROUTE_CHECK_ACCESS, {'user_id': 'user-1', 'question_set_id': PAID_SET.id})
            assert status                                 == 200, body
            assert body['result']['has_access']           is False
            assert body['result']['reason']               == base.GrantReason.NoGrant.value
            assert body['result']['first_gated_question_index'] == 3

            status, body = ctx.post(server.ROUTE_CHECK_ACCESS, {'user_id': 'user-1', 'question_set_id': FREE_SET.id})
            assert status                       == 200, body
            assert body['result']['has_access'] is True
            assert body['result']['reason']     == base.GrantReason.Free.value

        if 1: # Pay for the set, then the provider reports the same payment again
            request = {'transaction_id': 'tx-1', 'amount': PAID_SET.price, 'status': base.PaymentStatus.Succeeded.value,
                       'user_id': 'user-1', 'question_set_id': PAID_SET.id}
            status, body = ctx.post(server.ROUTE_PAYMENT_OUTCOME, request)
            assert status                      == 200, body
            assert body['result']['finalized'] is True
            assert body['result']['inserted']  is True
            assert body['result']['grant']['origin_id'] == 'tx-1'
            assert sub.receive(timeout_s=0) == notifier.GrantChanged(user_id='user-1', question_set_id=PAID_SET.id)

            status, body = ctx.post(server.ROUTE_PAYMENT_OUTCOME, request)
            assert status                     == 200, body
            assert body['result']['replayed'] is True

            status, body = ctx.post(server.ROUTE_CHECK_ACCESS, {'user_id': 'user-1', 'question_set_id': PAID_SET.id})
            assert body['result']['has_access']     is True
            assert body['result']['reason']         == base.GrantReason.Purchase.value
            assert body['result']['remaining_days'] == base.GRANT_VALIDITY_DAYS
            assert body['result']['first_gated_question_index'] is None

        if 1: # Rejected payments
            status, body = ctx.post(server.ROUTE_PAYMENT_OUTCOME, {'transaction_id': 'tx-2', 'amount': 1, 'status': base.PaymentStatus.Succeeded.value,
                                                                  'user_id': 'user-1', 'question_set_id': PAID_SET.id})
            assert status == 400, body

            status, body = ctx.post(server.ROUTE_PAYMENT_OUTCOME, {'transaction_id': 'tx-3', 'amount': PAID_SET.price, 'status': base.PaymentStatus.Failed.value,
                                                                  'user_id': 'user-1', 'question_set_id': PAID_SET.id})
            assert status                      == 200, body
            assert body['result']['finalized'] is False

            status, body = ctx.post(server.ROUTE_PAYMENT_OUTCOME, {'transaction_id': 'tx-4'})
            assert status == 400, body

            response = ctx.flask_client.post(server.ROUTE_PAYMENT_OUTCOME, data=b'not json')
            assert response.status_code == 400

        if 1: # The grants as the remote store sees them
            status, body = ctx.post(server.ROUTE_FIND_GRANTS, {'user_id': 'user-1', 'question_set_id': PAID_SET.id})
            assert status                          == 200, body
            assert len(body['result']['grants'])   == 1
            assert body['result']['generation']    == 1

            status, body = ctx.post(server.ROUTE_FIND_GRANTS, {'user_id': 'user-1', 'all': True})
            assert len(body['result']['grants'])   == 1

            status, body = ctx.post(server.ROUTE_FIND_GRANTS, {'user_id': 'user-1'})
            assert status == 400, body

            status, body = ctx.post(server.ROUTE_GET_QUESTION_SET, {'question_set_id': PAID_SET.id})
            assert body['result']['question_set'] == PAID_SET.to_dict()
            status, body = ctx.post(server.ROUTE_GET_QUESTION_SET, {'question_set_id': 'set-missing'})
            assert body['result']['question_set'] is None

def test_server_payment_pending_when_store_fails(monkeypatch):
    def insert_unavailable(self, grant: backend.Grant) -> backend.InsertGrantResult:
        raise backend.StoreUnavailableError('database is locked')
    monkeypatch.setattr(backend.DBEntitlementStore, 'insert_grant_if_absent', insert_unavailable)

    with TestingContext('file:test_server_pending?mode=memory&cache=shared', uri=True) as ctx:
        status, body = ctx.post(server.ROUTE_PAYMENT_OUTCOME, {'transaction_id': 'tx-1', 'amount': PAID_SET.price, 'status': base.PaymentStatus.Succeeded.value,
                                                              'user_id': 'user-1', 'question_set_id': PAID_SET.id})
        assert status      == 202, body
        assert body['msg'] == finalizer.ACCESS_PENDING_MSG

        request = backend.get_grant_request(ctx.sql_conn, 'tx-1')
        assert request is not None
        assert request.attempt_state == base.AttemptState.Failed

def test_server_redeem_code_flow():
    with TestingContext('file:test_server_redeem?mode=memory&cache=shared', uri=True) as ctx:
        sub = ctx.hub.subscribe('user-1')

        status, body = ctx.post(server.ROUTE_GENERATE_REDEEM_CODES, {'question_set_id': PAID_SET2.id, 'validity_days': 30, 'quantity': 2, 'created_by': 'admin-1'})
        assert status                       == 200, body
        assert len(body['result']['codes']) == 2
        code = body['result']['codes'][0]['code']

        status, body = ctx.post(server.ROUTE_GENERATE_REDEEM_CODES, {'question_set_id': PAID_SET2.id, 'validity_days': 0, 'quantity': 2, 'created_by': 'admin-1'})
        assert status == 400, body

        status, body = ctx.post(server.ROUTE_REDEEM_CODE, {'code': code, 'user_id': 'user-1'})
        assert status                               == 200, body
        assert body['result']['grant']['source']    == base.GrantSource.RedeemCode.value
        assert body['result']['code']['used_by']    == 'user-1'
        assert sub.receive(timeout_s=0)             == notifier.GrantChanged(user_id='user-1', question_set_id=PAID_SET2.id)

        status, body = ctx.post(server.ROUTE_REDEEM_CODE, {'code': code, 'user_id': 'user-2'})
        assert status == 400, body

        status, body = ctx.post(server.ROUTE_GET_USER_REDEEMED_CODES, {'user_id': 'user-1'})
        assert [it['code'] for it in body['result']['codes']] == [code]

        status, body = ctx.post(server.ROUTE_LIST_REDEEM_CODES, {})
        assert len(body['result']['codes']) == 2

        status, body = ctx.post(server.ROUTE_CHECK_ACCESS, {'user_id': 'user-1', 'question_set_id': PAID_SET2.id})
        assert body['result']['reason'] == base.GrantReason.RedeemCode.value

class ServeApp:
    '''Serve a flask app over a real socket on an ephemeral port for the duration of a `with`'''
    def __init__(self, flask_app: flask.Flask):
        self.http_server = werkzeug.serving.make_server('127.0.0.1', 0, flask_app, threaded=True)
        self.thread      = threading.Thread(target=self.http_server.serve_forever, daemon=True)
        self.url         = f'http://127.0.0.1:{self.http_server.server_port}'

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.http_server.shutdown()
        self.http_server.server_close()
        return False

def unused_local_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        result = sock.getsockname()[1]
    return result

def test_remote_store(tmp_path, monkeypatch):
    with TestingContext(str(tmp_path / 'remote.db'), uri=False) as ctx, \
         ServeApp(ctx.flask_app) as served, \
         cache.LocalEntitlementCache(':memory:') as local_cache:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, T0_UNIX_TS_MS + 3 * base.MILLISECONDS_IN_DAY, 'tx-remote')

        store = remote_store.RemoteEntitlementStore(served.url, timeout_s=0.5)
        assert store.get_question_set(PAID_SET.id) == PAID_SET
        assert store.get_question_set('set-missing') is None

        found = store.find_grants('user-1', PAID_SET.id)
        assert found.generation == 1
        assert found.grants     == ctx.store.find_grants('user-1', PAID_SET.id).grants
        assert len(store.find_grants_for_user('user-1').grants) == 1

        rctx     = reconciler.ReconcilerContext(store=store, local_cache=local_cache)
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS)
        assert decision.has_access
        assert decision.remaining_days == 3

        # A slow store is as good as an unreachable one
        original_find_grants = backend.find_grants
        def slow_find_grants(*args, **kwargs):
            time.sleep(1.5)
            return original_find_grants(*args, **kwargs)
        monkeypatch.setattr(backend, 'find_grants', slow_find_grants)

        with pytest.raises(backend.StoreUnavailableError):
            _ = store.find_grants('user-1', PAID_SET.id)

        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, unix_ts_ms=T0_UNIX_TS_MS + base.MILLISECONDS_IN_HOUR)
        assert decision.has_access
        assert decision.reason == base.GrantReason.SourceUnavailable

def test_remote_store_unreachable():
    store = remote_store.RemoteEntitlementStore(f'http://127.0.0.1:{unused_local_port()}', timeout_s=0.5)
    with pytest.raises(backend.StoreUnavailableError):
        _ = store.get_question_set(PAID_SET.id)

    # Unreachable and nothing cached, access to paid content is denied as unknown
    with cache.LocalEntitlementCache(':memory:') as local_cache:
        rctx     = reconciler.ReconcilerContext(store=store, local_cache=local_cache)
        decision = reconciler.reconcile(rctx, 'user-1', PAID_SET.id, question_set=PAID_SET)
        assert not decision.has_access
        assert decision.reason == base.GrantReason.SourceUnavailable

def test_remote_store_rejects_bad_responses():
    app = flask.Flask(__name__)

    @app.route(server.ROUTE_FIND_GRANTS, methods=['POST'])
    def broken_find_grants():
        return flask.jsonify({'status': 200, 'result': {'generation': 'nope', 'grants': [1]}})

    @app.route(server.ROUTE_GET_QUESTION_SET, methods=['POST'])
    def failing_get_question_set():
        return server.html_bad_response(500, 'boom')

    with ServeApp(app) as served:
        store = remote_store.RemoteEntitlementStore(served.url, timeout_s=0.5)
        with pytest.raises(backend.StoreUnavailableError):
            _ = store.find_grants('user-1', PAID_SET.id)
        with pytest.raises(backend.StoreUnavailableError):
            _ = store.get_question_set(PAID_SET.id)

def test_base_helpers():
    assert base.trim_id('  tx-1\n') == 'tx-1'
    assert base.trim_id('')         == ''
    assert base.remaining_days_until(T0_UNIX_TS_MS + base.MILLISECONDS_IN_DAY, T0_UNIX_TS_MS)     == 1
    assert base.remaining_days_until(T0_UNIX_TS_MS + base.MILLISECONDS_IN_DAY + 1, T0_UNIX_TS_MS) == 2
    assert base.remaining_days_until(T0_UNIX_TS_MS + 1, T0_UNIX_TS_MS)                            == 1
    assert base.obfuscate('user-123456') == 'use…456'
    assert base.format_seconds(3661)     == '1h 1m 1s'
    assert math.isclose(base.FINALIZE_BACKOFF_BASE_S * (2 ** 2), 1.0)

    err = base.ErrorSink()
    assert base.json_dict_require_int({'amount': True}, 'amount', err) == 0
    assert err.has()
    err = base.ErrorSink()
    assert base.json_dict_optional_int({'expiry': None}, 'expiry', err) is None
    assert not err.has()

def test_server_add_question_set():
    with TestingContext('file:test_server_add_set?mode=memory&cache=shared', uri=True) as ctx:
        request = {'id': ' set-new ', 'is_paid': False, 'price': 0, 'trial_question_count': 5, 'total_question_count': 12}
        status, body = ctx.post(server.ROUTE_ADD_QUESTION_SET, request)
        assert status                                               == 200, body
        assert body['result']['question_set']['id']                 == 'set-new'
        assert body['result']['question_set']['trial_question_count'] == 0

        # Re-adding updates the set in place
        request.update({'is_paid': True, 'price': 250})
        status, body = ctx.post(server.ROUTE_ADD_QUESTION_SET, request)
        assert status == 200, body
        assert ctx.store.get_question_set('set-new') == backend.QuestionSet(id='set-new', is_paid=True, price=250, trial_question_count=5, total_question_count=12)

        for bad in [{'price': 0}, {'id': '  '}, {'total_question_count': -1}, {'is_paid': 1}]:
            status, body = ctx.post(server.ROUTE_ADD_QUESTION_SET, {**request, **bad})
            assert status == 400, f'{bad} => {body}'

def test_context_fields_do_not_shadow_their_modules():
    # A field named after the module in its own annotation breaks the class body at import
    assert reconciler.ReconcilerContext.__annotations__['local_cache']  == (cache.LocalEntitlementCache | None)
    assert finalizer.FinalizerContext.__annotations__['reconciler_ctx'] == (reconciler.ReconcilerContext | None)
    assert notifier.NotifierContext.__annotations__['reconciler_ctx']   == reconciler.ReconcilerContext

    with StoreContext('file:test_context_fields?mode=memory&cache=shared', uri=True) as ctx:
        rctx = reconciler.ReconcilerContext(store=ctx.store)
        assert rctx.local_cache is None
        assert finalizer.FinalizerContext(store=ctx.store).reconciler_ctx is None
        assert notifier.NotifierContext(hub=notifier.PushHub(), reconciler_ctx=rctx, user_id='user-1').reconciler_ctx is rctx

def test_every_module_logger_gets_handlers():
    # main starts the app on import, read the logger list from its source instead
    source = (pathlib.Path(__file__).parent / 'main.py').read_text(encoding='utf-8')
    func   = next(it for it in ast.parse(source).body if isinstance(it, ast.FunctionDef) and it.name == 'project_loggers')
    listed = {f'{it.value.id}.{it.attr}' for it in ast.walk(func) if isinstance(it, ast.Attribute) and isinstance(it.value, ast.Name)}
    for module in [backend, cache, finalizer, notifier, reconciler, remote_store, server]:
        assert isinstance(module.log, logging.Logger)
        assert f'{module.__name__}.log' in listed, f'{module.__name__} logger is not in main.project_loggers'

def test_missing_key_error_lists_keys_not_values():
    err = base.ErrorSink()
    _   = base.json_dict_require_str({'user_id': 'user-secret', 'amount': 5}, 'code', err)
    assert len(err.msg_list) == 1
    assert 'user_id, amount' in err.msg_list[0]
    assert 'user-secret'     not in err.msg_list[0]

def test_delete_redeem_code():
    with StoreContext('file:test_delete_redeem_code?mode=memory&cache=shared', uri=True) as ctx:
        err   = base.ErrorSink()
        codes = backend.generate_redeem_codes(ctx.sql_conn, PAID_SET.id, validity_days=7, quantity=2, created_by='admin-1', unix_ts_ms=T0_UNIX_TS_MS, err=err)
        _     = backend.redeem_code(ctx.sql_conn, codes[0].code, 'user-1', T0_UNIX_TS_MS, base.GRANT_VALIDITY_MS, err)
        assert not err.has(), err.build()

        # A used code backs a grant and stays
        assert not backend.delete_redeem_code(ctx.sql_conn, codes[0].code, err)
        assert err.msg_list == ['Cannot delete a redeem code that has been used']

        err = base.ErrorSink()
        assert backend.delete_redeem_code(ctx.sql_conn, f' {codes[1].code} ', err)
        assert not err.has(), err.build()
        assert [it.code for it in backend.get_redeem_codes_list(ctx.sql_conn)] == [codes[0].code]
        assert len(ctx.store.find_grants('user-1', PAID_SET.id).grants)       == 1

        for code in [codes[1].code, '  ']:
            err = base.ErrorSink()
            assert not backend.delete_redeem_code(ctx.sql_conn, code, err)
            assert err.has()

        # A deleted code can no longer be redeemed
        err = base.ErrorSink()
        assert not backend.redeem_code(ctx.sql_conn, codes[1].code, 'user-2', T0_UNIX_TS_MS, base.GRANT_VALIDITY_MS, err).success
        assert err.msg_list == ['Redeem code does not exist']

def test_server_delete_redeem_code():
    with TestingContext('file:test_server_delete_code?mode=memory&cache=shared', uri=True) as ctx:
        status, body = ctx.post(server.ROUTE_GENERATE_REDEEM_CODES, {'question_set_id': PAID_SET.id, 'validity_days': 3, 'quantity': 2, 'created_by': 'admin-1'})
        assert status == 200, body
        unused, used = [it['code'] for it in body['result']['codes']]

        status, body = ctx.post(server.ROUTE_REDEEM_CODE, {'code': used, 'user_id': 'user-1'})
        assert status == 200, body

        status, body = ctx.post(server.ROUTE_DELETE_REDEEM_CODE, {'code': unused})
        assert status                    == 200, body
        assert body['result']['deleted'] is True
        assert body['result']['code']    == unused

        for request in [{'code': unused}, {'code': used}, {}]:
            status, body = ctx.post(server.ROUTE_DELETE_REDEEM_CODE, request)
            assert status == 400, f'{request} => {body}'

        status, body = ctx.post(server.ROUTE_LIST_REDEEM_CODES, {})
        assert [it['code'] for it in body['result']['codes']] == [used]

        status, body = ctx.post(server.ROUTE_REDEEM_CODE, {'code': unused, 'user_id': 'user-2'})
        assert status == 400, body

def test_server_get_active_grants():
    with TestingContext('file:test_server_active_grants?mode=memory&cache=shared', uri=True) as ctx:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id,  T0_UNIX_TS_MS + 10 * base.MILLISECONDS_IN_DAY, 'tx-active')
        add_grant(ctx.sql_conn, 'user-1', PAID_SET2.id, T0_UNIX_TS_MS - base.MILLISECONDS_IN_DAY,      'tx-lapsed', base.GrantSource.RedeemCode)

        if 1: # Every set the user was ever granted
            status, body = ctx.post(server.ROUTE_GET_ACTIVE_GRANTS, {'user_id': ' user-1 ', 'unix_ts_ms': T0_UNIX_TS_MS})
            assert status                                    == 200, body
            assert set(body['result']['decisions'].keys())   == {PAID_SET.id, PAID_SET2.id}
            assert body['result']['decisions'][PAID_SET2.id]['has_access'] is False
            assert len(body['result']['active'])             == 1
            active = body['result']['active'][0]
            assert active['question_set_id'] == PAID_SET.id
            assert active['remaining_days']  == 10
            assert active['reason']          == base.GrantReason.Purchase.value

        if 1: # Explicit list, works as a batch access check
            status, body = ctx.post(server.ROUTE_GET_ACTIVE_GRANTS, {'user_id': 'user-1', 'unix_ts_ms': T0_UNIX_TS_MS,
                                                                    'question_set_ids': [FREE_SET.id, PAID_SET2.id, 'set-missing']})
            assert status == 200, body
            decisions = body['result']['decisions']
            assert decisions[FREE_SET.id]['reason']    == base.GrantReason.Free.value
            assert decisions[PAID_SET2.id]['reason']   == base.GrantReason.NoGrant.value
            assert decisions['set-missing']['reason']  == base.GrantReason.NoGrant.value
            assert [it['question_set_id'] for it in body['result']['active']] == [FREE_SET.id]

        if 1: # Nothing granted, nothing active
            status, body = ctx.post(server.ROUTE_GET_ACTIVE_GRANTS, {'user_id': 'user-2'})
            assert status == 200, body
            assert body['result'] == {'decisions': {}, 'active': []}

        for bad in [{'user_id': '  '}, {'user_id': 'user-1', 'question_set_ids': 'set-paid'}, {'user_id': 'user-1', 'question_set_ids': [1]}, {}]:
            status, body = ctx.post(server.ROUTE_GET_ACTIVE_GRANTS, bad)
            assert status == 400, f'{bad} => {body}'

def test_server_reports_source_unavailable_when_store_fails(monkeypatch):
    def grants_unavailable(self, *args) -> backend.FindGrantsResult:
        raise backend.StoreUnavailableError('database is locked')
    monkeypatch.setattr(backend.DBEntitlementStore, 'find_grants',          grants_unavailable)
    monkeypatch.setattr(backend.DBEntitlementStore, 'find_grants_for_user', grants_unavailable)

    with TestingContext('file:test_server_unavailable?mode=memory&cache=shared', uri=True) as ctx:
        add_grant(ctx.sql_conn, 'user-1', PAID_SET.id, None, 'tx-unavailable')

        status, body = ctx.post(server.ROUTE_CHECK_ACCESS, {'user_id': 'user-1', 'question_set_id': PAID_SET.id})
        assert status                       == 200, body
        assert body['result']['has_access'] is False
        assert body['result']['reason']     == base.GrantReason.SourceUnavailable.value

        # Free sets do not need the grants
        status, body = ctx.post(server.ROUTE_CHECK_ACCESS, {'user_id': 'user-1', 'question_set_id': FREE_SET.id})
        assert body['result']['reason'] == base.GrantReason.Free.value

        status, body = ctx.post(server.ROUTE_GET_ACTIVE_GRANTS, {'user_id': 'user-1'})
        assert status == 503, body

        status, body = ctx.post(server.ROUTE_GET_ACTIVE_GRANTS, {'user_id': 'user-1', 'question_set_ids': [PAID_SET.id]})
        assert status                                                 == 200, body
        assert body['result']['decisions'][PAID_SET.id]['reason']     == base.GrantReason.SourceUnavailable.value
        assert body['result']['active']                               == []
