'''
Change notifier. Live sessions of a user subscribe to the push hub and are told when one of their
grants changed (a purchase was finalized or a redeem code consumed on another device). On every
event the session re-runs the reconciler for the affected question set and hands the fresh decision
to its observers (the UI). When the connection drops, the session reconnects and reconciles every
question set it has open, since any events published while it was away are lost.

The hub is in-process and delivers at most once: each subscription has a bounded queue and an
event that does not fit is dropped. Consumers must never rely on receiving every event, the
reconcile on reconnect is what makes them converge.
'''
import collections.abc
import dataclasses
import logging
import queue
import threading
import traceback
import typing

import base
import reconciler

log = logging.Logger('NOTIFY')

SUBSCRIPTION_QUEUE_SIZE:      int   = 64
PUMP_TIMEOUT_S:               float = 0.5
RECONNECT_BACKOFF_S:          float = 0.5
RECONNECT_BACKOFF_MAX_S:      float = 8.0

@dataclasses.dataclass
class GrantChanged:
    user_id:         str = ''
    question_set_id: str = ''

    def to_dict(self) -> base.JSONObject:
        result: base.JSONObject = {'user_id': self.user_id, 'question_set_id': self.question_set_id}
        return result

    @staticmethod
    def from_dict(d: base.JSONObject, err: base.ErrorSink) -> 'GrantChanged':
        result = GrantChanged(user_id         = base.trim_id(base.json_dict_require_str(d, 'user_id', err)),
                              question_set_id = base.trim_id(base.json_dict_require_str(d, 'question_set_id', err)))
        return result

class PushDisconnectedError(Exception):
    pass

DecisionObserver: typing.TypeAlias = collections.abc.Callable[[str, str, reconciler.GrantDecision], None]

# NOTE: Queued into a subscription to wake up a consumer blocked on `receive` when it is disconnected
_DISCONNECTED = object()

class Subscription:
    user_id:   str
    queue:     queue.Queue
    connected: bool
    def __init__(self, user_id: str, queue_size: int):
        self.user_id   = user_id
        self.queue     = queue.Queue(maxsize=queue_size)
        self.connected = True

    def receive(self, timeout_s: float | None = None) -> GrantChanged | None:
        '''Block up to `timeout_s` for the next event. Returns None on timeout and raises
        `PushDisconnectedError` once the subscription was disconnected.'''
        if not self.connected:
            raise PushDisconnectedError(f'Subscription for {base.safe_id(self.user_id)} is disconnected')
        try:
            item = self.queue.get(timeout=timeout_s)
        except queue.Empty:
            item = None

        if item is _DISCONNECTED or not self.connected:
            raise PushDisconnectedError(f'Subscription for {base.safe_id(self.user_id)} was disconnected')
        result = item if isinstance(item, GrantChanged) else None
        return result

class PushHub:
    lock:          threading.Lock
    queue_size:    int
    subscriptions: dict[str, list[Subscription]]
    def __init__(self, queue_size: int = SUBSCRIPTION_QUEUE_SIZE):
        self.lock          = threading.Lock()
        self.queue_size    = queue_size
        self.subscriptions = {}

    def subscribe(self, user_id: str) -> Subscription:
        user_id = base.trim_id(user_id)
        result  = Subscription(user_id, self.queue_size)
        with self.lock:
            self.subscriptions.setdefault(user_id, []).append(result)
        log.info(f'Subscribed (user={base.safe_id(user_id)})')
        return result

    def unsubscribe(self, subscription: Subscription):
        subscription.connected = False
        with self.lock:
            subs = self.subscriptions.get(subscription.user_id, [])
            if subscription in subs:
                subs.remove(subscription)
            if len(subs) == 0:
                _ = self.subscriptions.pop(subscription.user_id, None)

    def publish(self, user_id: str, event: GrantChanged) -> int:
        '''Deliver the event to every live subscription of the user. Returns how many received it.'''
        user_id = base.trim_id(user_id)
        with self.lock:
            subs = list(self.subscriptions.get(user_id, []))

        result = 0
        for it in subs:
            try:
                it.queue.put_nowait(event)
                result += 1
            except queue.Full:
                log.warning(f'Dropped event, subscription queue is full (user={base.safe_id(user_id)}, set={event.question_set_id})')

        if log.getEffectiveLevel() <= logging.INFO:
            log.info(f'Published grant change (user={base.safe_id(user_id)}, set={event.question_set_id}, delivered={result}/{len(subs)})')
        return result

    def disconnect_user(self, user_id: str) -> int:
        '''Drop every connection of the user as if the network went away.'''
        user_id = base.trim_id(user_id)
        with self.lock:
            subs = self.subscriptions.pop(user_id, [])
        for it in subs:
            it.connected = False
            try:
                it.queue.put_nowait(_DISCONNECTED)
            except queue.Full:
                pass
        log.info(f'Disconnected {len(subs)} subscription(s) (user={base.safe_id(user_id)})')
        return len(subs)

@dataclasses.dataclass
class NotifierContext:
    hub:                     PushHub
    reconciler_ctx:          reconciler.ReconcilerContext
    user_id:                 str
    thread:                  threading.Thread | None  = None
    kill_thread:             bool                     = False
    sleep_event:             threading.Event          = dataclasses.field(default_factory=threading.Event)
    subscription:            Subscription | None      = None
    connects:                int                      = 0
    open_question_sets:      set[str]                 = dataclasses.field(default_factory=set)
    observers:               list[DecisionObserver]   = dataclasses.field(default_factory=list)
    lock:                    threading.Lock           = dataclasses.field(default_factory=threading.Lock)
    pump_timeout_s:          float                    = PUMP_TIMEOUT_S
    reconnect_backoff_s:     float                    = RECONNECT_BACKOFF_S
    reconnect_backoff_max_s: float                    = RECONNECT_BACKOFF_MAX_S

def init(hub: PushHub, reconciler_ctx: reconciler.ReconcilerContext, user_id: str) -> NotifierContext:
    # NOTE: Setup thread for caller to use
    result        = NotifierContext(hub=hub, reconciler_ctx=reconciler_ctx, user_id=base.trim_id(user_id))
    result.thread = threading.Thread(target=thread_entry_point, args=(result,), daemon=True)
    return result

def stop(context: NotifierContext, timeout_s: float | None = None):
    context.kill_thread = True
    context.sleep_event.set()
    if context.subscription:
        context.hub.unsubscribe(context.subscription)
    if context.thread and context.thread.is_alive():
        context.thread.join(timeout=timeout_s)

def open_question_set(context: NotifierContext, question_set_id: str):
    with context.lock:
        context.open_question_sets.add(base.trim_id(question_set_id))

def close_question_set(context: NotifierContext, question_set_id: str):
    with context.lock:
        context.open_question_sets.discard(base.trim_id(question_set_id))

def add_observer(context: NotifierContext, observer: DecisionObserver):
    with context.lock:
        context.observers.append(observer)

def _notify_observers(context: NotifierContext, question_set_id: str, decision: reconciler.GrantDecision):
    with context.lock:
        observers = list(context.observers)
    for it in observers:
        try:
            it(context.user_id, question_set_id, decision)
        except Exception:
            log.error(f'Decision observer failed (user={base.safe_id(context.user_id)}, set={question_set_id}): {traceback.format_exc()}')

def connect(context: NotifierContext) -> Subscription:
    '''
    Subscribe to the user's events and then re-reconcile every open question set. The subscription
    is made first so that a change landing between the two steps is seen by one or the other.
    '''
    context.subscription  = context.hub.subscribe(context.user_id)
    context.connects     += 1
    with context.lock:
        open_ids = sorted(context.open_question_sets)

    log.info(f'Connected (user={base.safe_id(context.user_id)}, connects={context.connects}, open_sets={len(open_ids)})')
    if len(open_ids):
        decisions = reconciler.reconcile_many(context.reconciler_ctx, context.user_id, open_ids)
        for question_set_id, decision in decisions.items():
            _notify_observers(context, question_set_id, decision)
    return context.subscription

def handle_grant_changed(context: NotifierContext, event: GrantChanged) -> reconciler.GrantDecision | None:
    '''Reconcile the pair named by the event and republish the decision. Events for other users
    are ignored.'''
    if base.trim_id(event.user_id) != context.user_id:
        log.warning(f'Ignoring grant change for another user (user={base.safe_id(event.user_id)}, set={event.question_set_id})')
        return None

    result = reconciler.reconcile(context.reconciler_ctx, context.user_id, event.question_set_id)
    _notify_observers(context, base.trim_id(event.question_set_id), result)
    return result

def pump(context: NotifierContext, timeout_s: float | None = None) -> reconciler.GrantDecision | None:
    '''Wait for and handle at most one event. Raises `PushDisconnectedError` if the connection
    dropped.'''
    if context.subscription is None:
        raise PushDisconnectedError('Not connected')
    event  = context.subscription.receive(timeout_s)
    result = handle_grant_changed(context, event) if event else None
    return result

def thread_entry_point(context: NotifierContext):
    backoff_s = context.reconnect_backoff_s
    while context.kill_thread == False:
        try:
            _ = connect(context)
            backoff_s = context.reconnect_backoff_s
            while context.kill_thread == False:
                _ = pump(context, context.pump_timeout_s)
        except PushDisconnectedError as e:
            if context.kill_thread:
                break
            log.warning(f'Push connection dropped, reconnecting in {base.format_seconds(backoff_s)}: {e}')
        except Exception:
            log.error(f'Change notifier failed, reconnecting in {base.format_seconds(backoff_s)}: {traceback.format_exc()}')

        if context.subscription:
            context.hub.unsubscribe(context.subscription)
            context.subscription = None
        _         = context.sleep_event.wait(backoff_s)
        backoff_s = min(backoff_s * 2, context.reconnect_backoff_max_s)

    log.info(f'Change notifier stopped (user={base.safe_id(context.user_id)})')
