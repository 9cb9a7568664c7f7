'''
The reconciler is the single authority that decides whether a user may see the full content of a
question set. It combines the authoritative store, which is the truth when it can be reached, with
the device's local cache, which is only trusted for a bounded window when the store cannot be
reached.

Decision order, first match wins:

  1. The question set is not paid, access is granted as Free.
  2. The store has a grant for (user, set) that is permanent or not yet expired, access is granted.
     The permanent grant wins, otherwise the grant with the latest expiry wins.
  3. The store could not be reached, the cached decision is replayed as SourceUnavailable if it was
     observed within the staleness window. Without any entry access is denied as SourceUnavailable
     so callers can tell "unknown" from "denied", a stale entry is denied as NoGrant.
  4. Access is denied as NoGrant.

Decisions made from fresh store data overwrite the cache entry unless the entry was written at a
newer store generation. Decisions replayed from the cache are never written back so the staleness
window keeps counting from the last real observation.
'''
import dataclasses
import logging
import sqlite3
import traceback

import base
import backend
import cache

log = logging.Logger("RECONCILE")

@dataclasses.dataclass
class GrantDecision:
    has_access:        bool             = False
    # Whole days left on the grant rounded up, None when there is no grant or it never expires
    remaining_days:    int | None       = None
    reason:            base.GrantReason = base.GrantReason.NoGrant
    expiry_unix_ts_ms: int | None       = None

    def to_dict(self) -> base.JSONObject:
        result: base.JSONObject = {
            'has_access':        self.has_access,
            'remaining_days':    self.remaining_days,
            'reason':            int(self.reason.value),
            'expiry_unix_ts_ms': self.expiry_unix_ts_ms,
        }
        return result

@dataclasses.dataclass
class ReconcilerContext:
    store:               backend.EntitlementReader
    # None on the server, where every decision is made from fresh data
    local_cache:         cache.LocalEntitlementCache | None = None
    staleness_window_ms: int                                = base.CACHE_STALENESS_WINDOW_MS

def select_grant(grants: list[backend.Grant], unix_ts_ms: int) -> backend.Grant | None:
    '''Pick the grant that gives the user the most access at `unix_ts_ms`. Expired grants are
    skipped, a permanent grant beats any finite one.'''
    result: backend.Grant | None = None
    for it in grants:
        if it.expiry_unix_ts_ms is not None and it.expiry_unix_ts_ms <= unix_ts_ms:
            continue
        if result is None:
            result = it
        elif result.expiry_unix_ts_ms is None:
            pass
        elif it.expiry_unix_ts_ms is None or it.expiry_unix_ts_ms > result.expiry_unix_ts_ms:
            result = it
    return result

def decision_from_grants(grants: list[backend.Grant], unix_ts_ms: int) -> GrantDecision:
    result = GrantDecision()
    grant  = select_grant(grants, unix_ts_ms)
    if grant:
        result.has_access        = True
        result.expiry_unix_ts_ms = grant.expiry_unix_ts_ms
        if grant.expiry_unix_ts_ms is not None:
            result.remaining_days = base.remaining_days_until(grant.expiry_unix_ts_ms, unix_ts_ms)
        match grant.source:
            case base.GrantSource.Free:
                result.reason = base.GrantReason.Free
            case base.GrantSource.Purchase:
                result.reason = base.GrantReason.Purchase
            case base.GrantSource.RedeemCode:
                result.reason = base.GrantReason.RedeemCode
    return result

def decision_from_cache(entry: cache.CacheEntry | None, unix_ts_ms: int, staleness_window_ms: int) -> GrantDecision:
    '''Fallback used when the store is unreachable. Fails closed on a missing or stale entry.'''
    result = GrantDecision(has_access=False, reason=base.GrantReason.SourceUnavailable)
    if entry is None:
        return result

    age_ms = unix_ts_ms - entry.observed_unix_ts_ms
    if age_ms > staleness_window_ms:
        result.reason = base.GrantReason.NoGrant
        return result

    if entry.has_access:
        if entry.expiry_unix_ts_ms is None:
            result.has_access     = True
            result.remaining_days = entry.remaining_days
        elif entry.expiry_unix_ts_ms > unix_ts_ms:
            # NOTE: Time has moved on since the entry was observed, recount the days left
            result.has_access        = True
            result.expiry_unix_ts_ms = entry.expiry_unix_ts_ms
            result.remaining_days    = base.remaining_days_until(entry.expiry_unix_ts_ms, unix_ts_ms)
    return result

def _write_cache(ctx: ReconcilerContext, user_id: str, question_set_id: str, decision: GrantDecision, generation: int, unix_ts_ms: int):
    if ctx.local_cache is None:
        return
    try:
        written = ctx.local_cache.put(cache.CacheEntry(user_id             = user_id,
                                                       question_set_id     = question_set_id,
                                                       has_access          = decision.has_access,
                                                       remaining_days      = decision.remaining_days,
                                                       reason              = decision.reason,
                                                       expiry_unix_ts_ms   = decision.expiry_unix_ts_ms,
                                                       observed_unix_ts_ms = unix_ts_ms,
                                                       source_generation   = generation))
        if not written:
            log.warning(f'Kept cache entry from a newer generation (user={base.safe_id(user_id)}, set={question_set_id}, gen={generation})')
    except sqlite3.Error:
        log.error(f'Failed to write cache entry (user={base.safe_id(user_id)}, set={question_set_id}): {traceback.format_exc()}')

def _fallback(ctx: ReconcilerContext, user_id: str, question_set_id: str, unix_ts_ms: int) -> GrantDecision:
    entry: cache.CacheEntry | None = None
    if ctx.local_cache:
        try:
            entry = ctx.local_cache.get(user_id, question_set_id)
        except sqlite3.Error:
            log.error(f'Failed to read cache entry (user={base.safe_id(user_id)}, set={question_set_id}): {traceback.format_exc()}')
    result = decision_from_cache(entry, unix_ts_ms, ctx.staleness_window_ms)
    log.warning(f'Store unavailable, decided from cache (user={base.safe_id(user_id)}, set={question_set_id}, cached={entry is not None}, access={result.has_access}, reason={result.reason.name})')
    return result

def _resolve_question_set(ctx: ReconcilerContext, question_set_id: str, question_set: backend.QuestionSet | None) -> tuple[backend.QuestionSet | None, bool]:
    '''Returns the question set and whether the store answered.'''
    try:
        from_store = ctx.store.get_question_set(question_set_id)
        return (from_store if from_store else question_set, True)
    except backend.StoreUnavailableError as e:
        log.warning(f'Failed to resolve question set {question_set_id}: {e}')
        return (question_set, False)

def _log_decision(user_id: str, question_set_id: str, decision: GrantDecision, unix_ts_ms: int):
    if log.getEffectiveLevel() <= logging.INFO:
        log.info(f'Reconciled (user={base.safe_id(user_id)}, set={question_set_id}, access={decision.has_access}, reason={decision.reason.name}, days={decision.remaining_days}, ts={base.readable_unix_ts_ms(unix_ts_ms)})')

def reconcile(ctx:             ReconcilerContext,
              user_id:         str,
              question_set_id: str,
              unix_ts_ms:      int | None                 = None,
              question_set:    backend.QuestionSet | None = None) -> GrantDecision:
    '''
    Decide whether `user_id` has access to `question_set_id` at `unix_ts_ms` (defaults to now).
    `question_set` is the caller's copy of the set, only used to recognise a free set when the store
    cannot be reached. Never raises for store or cache failures.
    '''
    user_id         = base.trim_id(user_id)
    question_set_id = base.trim_id(question_set_id)
    if unix_ts_ms is None:
        unix_ts_ms = base.now_unix_ts_ms()

    resolved, store_ok = _resolve_question_set(ctx, question_set_id, question_set)

    # NOTE: Grants are read for free sets too, the cache entry needs the store's generation
    found: backend.FindGrantsResult | None = None
    if store_ok:
        try:
            found = ctx.store.find_grants(user_id, question_set_id)
        except backend.StoreUnavailableError as e:
            log.warning(f'Failed to find grants (user={base.safe_id(user_id)}, set={question_set_id}): {e}')

    if resolved and not resolved.is_paid:
        result = GrantDecision(has_access=True, reason=base.GrantReason.Free)
        if found is not None:
            _write_cache(ctx, user_id, question_set_id, result, generation=found.generation, unix_ts_ms=unix_ts_ms)
        _log_decision(user_id, question_set_id, result, unix_ts_ms)
        return result

    if found is None:
        return _fallback(ctx, user_id, question_set_id, unix_ts_ms)

    result = decision_from_grants(found.grants, unix_ts_ms)
    _write_cache(ctx, user_id, question_set_id, result, generation=found.generation, unix_ts_ms=unix_ts_ms)
    _log_decision(user_id, question_set_id, result, unix_ts_ms)
    return result

def reconcile_many(ctx:              ReconcilerContext,
                   user_id:          str,
                   question_set_ids: list[str],
                   unix_ts_ms:       int | None                             = None,
                   question_sets:    dict[str, backend.QuestionSet] | None = None) -> dict[str, GrantDecision]:
    '''
    Reconcile several question sets for one user, fetching the user's grants in one round trip.
    Returns the decision keyed by the trimmed question set ID.
    '''
    user_id = base.trim_id(user_id)
    if unix_ts_ms is None:
        unix_ts_ms = base.now_unix_ts_ms()

    result: dict[str, GrantDecision] = {}
    found: backend.FindGrantsResult | None = None
    grants_ok: bool = True
    for raw_id in question_set_ids:
        question_set_id = base.trim_id(raw_id)
        if question_set_id in result:
            continue

        caller_set: backend.QuestionSet | None = None
        if question_sets:
            caller_set = question_sets.get(question_set_id, question_sets.get(raw_id))

        resolved, store_ok = _resolve_question_set(ctx, question_set_id, caller_set)
        if store_ok and grants_ok and found is None:
            try:
                found = ctx.store.find_grants_for_user(user_id)
            except backend.StoreUnavailableError as e:
                log.warning(f'Failed to find grants (user={base.safe_id(user_id)}): {e}')
                grants_ok = False

        if resolved and not resolved.is_paid:
            decision = GrantDecision(has_access=True, reason=base.GrantReason.Free)
            if store_ok and found is not None:
                _write_cache(ctx, user_id, question_set_id, decision, generation=found.generation, unix_ts_ms=unix_ts_ms)
            _log_decision(user_id, question_set_id, decision, unix_ts_ms)
            result[question_set_id] = decision
            continue

        if not store_ok or found is None:
            result[question_set_id] = _fallback(ctx, user_id, question_set_id, unix_ts_ms)
            continue

        grants   = [it for it in found.grants if it.question_set_id == question_set_id]
        decision = decision_from_grants(grants, unix_ts_ms)
        _write_cache(ctx, user_id, question_set_id, decision, generation=found.generation, unix_ts_ms=unix_ts_ms)
        _log_decision(user_id, question_set_id, decision, unix_ts_ms)
        result[question_set_id] = decision
    return result
