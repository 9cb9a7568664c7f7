'''
Purchase finalizer. Turns a successful payment into a grant in the authoritative store exactly once
no matter how many times, or from how many places at once, the payment is reported.

State machine of a grant request, keyed by the payment's transaction ID:

  Pending   -> Committed  A grant whose origin is the transaction ID already exists, it is returned
                          unchanged (replay)
  Pending   -> Reserving  No grant exists, we insert one under the store's unique origin constraint
  Reserving -> Committed  The insert won, or lost to a concurrent insert whose row is returned
  Any       -> Failed     The store kept failing after bounded retries

A payment is never rolled back. A Failed request is kept in the store for support staff and the
user is told that the payment succeeded but access is pending.

Once Committed, the reconciler refreshes the decision and the change notifier tells the user's other
sessions. Both are best-effort and never change the result.
'''
import dataclasses
import enum
import logging
import threading
import time
import traceback
import typing

import base
import backend
import notifier
import reconciler

log = logging.Logger('FINALIZE')

ACCESS_PENDING_MSG = 'Payment succeeded but access is pending, please contact support'

class FinalizeError(enum.IntEnum):
    Nil              = 0
    # The store could not be reached to look up the payment, nothing was attempted
    StoreUnavailable = 1
    # The grant could not be inserted after every attempt
    RetriesExhausted = 2

@dataclasses.dataclass
class PaymentOutcome:
    transaction_id:  str                = ''
    amount:          int                = 0
    status:          base.PaymentStatus = base.PaymentStatus.Pending
    user_id:         str                = ''
    question_set_id: str                = ''

    @staticmethod
    def from_dict(d: base.JSONObject, err: base.ErrorSink) -> 'PaymentOutcome':
        result                 = PaymentOutcome()
        result.transaction_id  = base.trim_id(base.json_dict_require_str(d, 'transaction_id', err))
        result.amount          = base.json_dict_require_int(d, 'amount', err)
        result.user_id         = base.trim_id(base.json_dict_require_str(d, 'user_id', err))
        result.question_set_id = base.trim_id(base.json_dict_require_str(d, 'question_set_id', err))
        status                 = base.json_dict_require_int_coerce_to_enum(d, 'status', base.PaymentStatus, err)
        if status is not None:
            result.status = base.PaymentStatus(status)
        return result

@dataclasses.dataclass
class FinalizeResult:
    grant:    backend.Grant | None = None
    error:    FinalizeError        = FinalizeError.Nil
    state:    base.AttemptState    = base.AttemptState.Pending
    # The grant already existed before this call
    replayed: bool                 = False
    # This call inserted the grant, False when it was a replay or lost the insert race
    inserted: bool                 = False
    attempts: int                  = 0
    message:  str                  = ''

@dataclasses.dataclass
class FinalizerContext:
    store:          backend.EntitlementWriter
    reconciler_ctx: reconciler.ReconcilerContext | None = None
    publisher:      notifier.PushHub | None             = None
    validity_ms:    int                                 = base.GRANT_VALIDITY_MS
    max_attempts:   int                                 = base.FINALIZE_MAX_ATTEMPTS
    backoff_base_s: float                               = base.FINALIZE_BACKOFF_BASE_S

T = typing.TypeVar('T')

def run_uncancellable(fn: typing.Callable[[], T]) -> T:
    '''
    Run `fn` on a dedicated non-daemon thread and wait for it. If the caller is interrupted while
    waiting, the thread still runs to completion and the interpreter will not exit before it does.
    '''
    outcome: dict[str, typing.Any] = {}
    def entry_point():
        try:
            outcome['result'] = fn()
        except BaseException as e:
            outcome['error'] = e

    thread = threading.Thread(target=entry_point, name='finalize-insert', daemon=False)
    thread.start()
    thread.join()
    if 'error' in outcome:
        raise outcome['error']
    return typing.cast(T, outcome['result'])

def _backoff(ctx: FinalizerContext, attempt: int):
    if attempt < ctx.max_attempts:
        time.sleep(ctx.backoff_base_s * (2 ** (attempt - 1)))

def _record(ctx: FinalizerContext, request: backend.GrantRequestRow, state: base.AttemptState, unix_ts_ms: int):
    request.attempt_state      = state
    request.updated_unix_ts_ms = unix_ts_ms
    try:
        ctx.store.record_grant_request(request)
    except backend.StoreUnavailableError as e:
        log.warning(f'Failed to record grant request state {state.name} (tx={base.safe_id(request.transaction_id)}): {e}')

def _insert_with_retries(ctx: FinalizerContext, grant: backend.Grant, request: backend.GrantRequestRow) -> backend.InsertGrantResult | None:
    for attempt in range(1, ctx.max_attempts + 1):
        request.attempts += 1
        try:
            return ctx.store.insert_grant_if_absent(grant)
        except backend.StoreUnavailableError as e:
            request.last_error = str(e)
            log.warning(f'Grant insert attempt {attempt}/{ctx.max_attempts} failed (tx={base.safe_id(grant.origin_id)}): {e}')
            _backoff(ctx, attempt)
    return None

def _after_commit(ctx: FinalizerContext, grant: backend.Grant, unix_ts_ms: int):
    if ctx.reconciler_ctx:
        try:
            _ = reconciler.reconcile(ctx.reconciler_ctx, grant.user_id, grant.question_set_id, unix_ts_ms=unix_ts_ms)
        except Exception:
            log.error(f'Reconcile after commit failed ({backend.grant_log_label(grant)}): {traceback.format_exc()}')
    if ctx.publisher:
        try:
            _ = ctx.publisher.publish(grant.user_id, notifier.GrantChanged(user_id=grant.user_id, question_set_id=grant.question_set_id))
        except Exception:
            log.error(f'Publishing grant change failed ({backend.grant_log_label(grant)}): {traceback.format_exc()}')

def finalize_purchase(ctx:             FinalizerContext,
                      transaction_id:  str,
                      user_id:         str,
                      question_set_id: str,
                      amount:          int,
                      err:             base.ErrorSink,
                      unix_ts_ms:      int | None = None) -> FinalizeResult:
    '''
    Idempotently create the purchase grant for the payment `transaction_id`. Malformed input is
    reported in `err` and nothing is attempted, store failures are reported in the result's
    `error`.
    '''
    result          = FinalizeResult()
    transaction_id  = base.trim_id(transaction_id)
    user_id         = base.trim_id(user_id)
    question_set_id = base.trim_id(question_set_id)
    if len(transaction_id) == 0:
        err.msg_list.append('Transaction ID was empty')
    if len(user_id) == 0:
        err.msg_list.append('User ID was empty')
    if len(question_set_id) == 0:
        err.msg_list.append('Question set ID was empty')
    if err.has():
        return result

    if unix_ts_ms is None:
        unix_ts_ms = base.now_unix_ts_ms()

    log.info(f'Finalize purchase (tx={base.safe_id(transaction_id)}, user={base.safe_id(user_id)}, set={question_set_id}, amount={amount})')
    request = backend.GrantRequestRow(transaction_id=transaction_id, user_id=user_id, question_set_id=question_set_id, amount=amount)

    # NOTE: Pending, look for a grant created by an earlier report of the same payment
    existing:  backend.Grant | None = None
    looked_up: bool                 = False
    for attempt in range(1, ctx.max_attempts + 1):
        request.attempts += 1
        try:
            existing  = ctx.store.find_grant_by_origin(transaction_id)
            looked_up = True
            break
        except backend.StoreUnavailableError as e:
            request.last_error = str(e)
            log.warning(f'Grant lookup attempt {attempt}/{ctx.max_attempts} failed (tx={base.safe_id(transaction_id)}): {e}')
            _backoff(ctx, attempt)

    result.attempts = request.attempts
    if not looked_up:
        result.state   = base.AttemptState.Failed
        result.error   = FinalizeError.StoreUnavailable
        result.message = ACCESS_PENDING_MSG
        _record(ctx, request, base.AttemptState.Failed, unix_ts_ms)
        log.error(f'Finalize failed, store unavailable (tx={base.safe_id(transaction_id)}, user={base.safe_id(user_id)}, set={question_set_id}): {request.last_error}')
        return result

    if existing:
        if existing.user_id != user_id or existing.question_set_id != question_set_id:
            log.warning(f'Replayed payment does not match its grant (tx={base.safe_id(transaction_id)}, user={base.safe_id(user_id)}, set={question_set_id}, grant=({backend.grant_log_label(existing)}))')
        result.grant    = existing
        result.state    = base.AttemptState.Committed
        result.replayed = True
        _record(ctx, request, base.AttemptState.Committed, unix_ts_ms)
        log.info(f'Finalize replayed ({backend.grant_log_label(existing)})')
        _after_commit(ctx, existing, unix_ts_ms)
        return result

    # NOTE: Reserving, from here on the insert runs to completion even if the caller goes away
    _record(ctx, request, base.AttemptState.Reserving, unix_ts_ms)
    grant  = backend.Grant(user_id            = user_id,
                           question_set_id    = question_set_id,
                           source             = base.GrantSource.Purchase,
                           expiry_unix_ts_ms  = unix_ts_ms + ctx.validity_ms,
                           origin_id          = transaction_id,
                           created_unix_ts_ms = unix_ts_ms)
    insert = run_uncancellable(lambda: _insert_with_retries(ctx, grant, request))

    result.attempts = request.attempts
    if insert is None:
        result.state   = base.AttemptState.Failed
        result.error   = FinalizeError.RetriesExhausted
        result.message = ACCESS_PENDING_MSG
        _record(ctx, request, base.AttemptState.Failed, unix_ts_ms)
        log.error(f'Finalize failed after {ctx.max_attempts} attempts (tx={base.safe_id(transaction_id)}, user={base.safe_id(user_id)}, set={question_set_id}): {request.last_error}')
        return result

    result.grant    = insert.grant
    result.inserted = insert.inserted
    result.state    = base.AttemptState.Committed
    request.last_error = ''
    _record(ctx, request, base.AttemptState.Committed, unix_ts_ms)
    log.info(f'Finalize committed (inserted={insert.inserted}, {backend.grant_log_label(insert.grant)})')
    _after_commit(ctx, insert.grant, unix_ts_ms)
    return result

def validate_payment_outcome(question_set: backend.QuestionSet | None, outcome: PaymentOutcome, err: base.ErrorSink):
    if question_set is None:
        err.msg_list.append(f'Question set {outcome.question_set_id} does not exist')
        return
    if not question_set.is_paid:
        err.msg_list.append(f'Question set {outcome.question_set_id} is free and cannot be purchased')
    if outcome.amount != question_set.price:
        err.msg_list.append(f'Payment amount {outcome.amount} does not match the price {question_set.price} of question set {outcome.question_set_id}')

def handle_payment_outcome(ctx: FinalizerContext, outcome: PaymentOutcome, err: base.ErrorSink, unix_ts_ms: int | None = None) -> FinalizeResult | None:
    '''
    Intake for payment outcomes reported by the payment provider. Only succeeded payments are
    finalized, anything else is logged and None is returned. The payment must be for a paid question
    set and match its price.
    '''
    if outcome.status != base.PaymentStatus.Succeeded:
        log.info(f'Ignoring payment outcome {outcome.status.name} (tx={base.safe_id(outcome.transaction_id)}, user={base.safe_id(outcome.user_id)}, set={outcome.question_set_id})')
        return None

    question_set: backend.QuestionSet | None = None
    try:
        question_set = ctx.store.get_question_set(outcome.question_set_id)
    except backend.StoreUnavailableError as e:
        # NOTE: The payment went through, record it so support can settle it later
        if unix_ts_ms is None:
            unix_ts_ms = base.now_unix_ts_ms()
        log.error(f'Failed to validate payment, store unavailable (tx={base.safe_id(outcome.transaction_id)}): {e}')
        request = backend.GrantRequestRow(transaction_id  = outcome.transaction_id,
                                          user_id         = outcome.user_id,
                                          question_set_id = outcome.question_set_id,
                                          amount          = outcome.amount,
                                          last_error      = str(e))
        _record(ctx, request, base.AttemptState.Failed, unix_ts_ms)
        result = FinalizeResult(error=FinalizeError.StoreUnavailable, state=base.AttemptState.Failed, message=ACCESS_PENDING_MSG)
        return result

    validate_payment_outcome(question_set, outcome, err)
    if err.has():
        log.warning(f'Rejected payment outcome (tx={base.safe_id(outcome.transaction_id)}): {err.build()}')
        return None

    result = finalize_purchase(ctx             = ctx,
                               transaction_id  = outcome.transaction_id,
                               user_id         = outcome.user_id,
                               question_set_id = outcome.question_set_id,
                               amount          = outcome.amount,
                               err             = err,
                               unix_ts_ms      = unix_ts_ms)
    return result
