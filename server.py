'''
This file is the HTTP layer which declares the functions that serve the routes
for interacting with the Quiz Entitlement Backend. These routes are registered
onto a Flask application which enable the endpoints for the server.

The role of this layer is to intercept and sanitize the HTTP request, extracting
the JSON into valid, strongly typed (to Python's best ability) types that can be
passed into the backend.

The backend is responsible for further validation of the request such as
consistency against the state of the DB. If successful the result is returned
back to this layer and piped back to the user in the HTTP response.
'''

import flask
import typing
import json
import logging

import base
import backend
import finalizer
import notifier
import reconciler
import trial_gate

log = logging.Logger('SERVER')

class GetJSONFromFlaskRequest:
    json:    dict[str, typing.Any] = {}
    err_msg: str                   = ''

# Keys stored in the flask app config dictionary that can be retrieved within
# a request to get the path to the SQLite DB to load and use for that request.
CONFIG_DB_PATH_KEY               = 'quiz_backend_db_path'
CONFIG_DB_PATH_IS_URI_KEY        = 'quiz_backend_db_path_is_uri'
CONFIG_PUSH_HUB_KEY              = 'quiz_backend_push_hub'
CONFIG_VALIDITY_MS_KEY           = 'quiz_backend_validity_ms'
CONFIG_FINALIZE_MAX_ATTEMPTS_KEY = 'quiz_backend_finalize_max_attempts'
CONFIG_FINALIZE_BACKOFF_S_KEY    = 'quiz_backend_finalize_backoff_s'

# Name of the endpoints exposed on the server
ROUTE_FIND_GRANTS                = '/find_grants'
ROUTE_GET_QUESTION_SET           = '/get_question_set'
ROUTE_ADD_QUESTION_SET           = '/add_question_set'
ROUTE_CHECK_ACCESS               = '/check_access'
ROUTE_GET_ACTIVE_GRANTS          = '/get_active_grants'
ROUTE_PAYMENT_OUTCOME            = '/payment_outcome'
ROUTE_REDEEM_CODE                = '/redeem_code'
ROUTE_GENERATE_REDEEM_CODES      = '/generate_redeem_codes'
ROUTE_LIST_REDEEM_CODES          = '/list_redeem_codes'
ROUTE_GET_USER_REDEEMED_CODES    = '/get_user_redeemed_codes'
ROUTE_DELETE_REDEEM_CODE         = '/delete_redeem_code'

# The object containing routes that you register onto a Flask app to turn it
# into an app that accepts Quiz Entitlement Backend client requests.
flask_blueprint = flask.Blueprint('quiz-entitlement-backend-blueprint', __name__)

def html_bad_response(http_status: int, msg: str | list[str]) -> flask.Response:
    result        = flask.jsonify({ 'status': http_status, 'msg': msg})
    result.status = http_status
    return result

def html_good_response(dict_result: typing.Any) -> flask.Response:
    result = flask.jsonify({ 'status': 200, 'result': dict_result})
    return result

def get_json_from_flask_request(request: flask.Request) -> GetJSONFromFlaskRequest:
    # Get JSON from request
    result: GetJSONFromFlaskRequest = GetJSONFromFlaskRequest()
    try:
        json_dict = typing.cast(dict[str, typing.Any] | None, json.loads(request.data))
        if not isinstance(json_dict, dict):
            result.err_msg = "JSON failed to be parsed into an object"
        else:
            result.json = json_dict
    except Exception as e:
        result.err_msg = str(e)

    return result

def init(testing_mode:          bool,
         db_path:               str,
         db_path_is_uri:        bool,
         push_hub:              notifier.PushHub | None = None,
         validity_days:         int                     = base.GRANT_VALIDITY_DAYS,
         finalize_max_attempts: int                     = base.FINALIZE_MAX_ATTEMPTS,
         finalize_backoff_s:    float                   = base.FINALIZE_BACKOFF_BASE_S) -> flask.Flask:
    result                                           = flask.Flask(__name__)
    result.config['TESTING']                         = testing_mode
    result.config[CONFIG_DB_PATH_KEY]                = db_path
    result.config[CONFIG_DB_PATH_IS_URI_KEY]         = db_path_is_uri
    result.config[CONFIG_PUSH_HUB_KEY]               = push_hub if push_hub else notifier.PushHub()
    result.config[CONFIG_VALIDITY_MS_KEY]            = validity_days * base.MILLISECONDS_IN_DAY
    result.config[CONFIG_FINALIZE_MAX_ATTEMPTS_KEY]  = finalize_max_attempts
    result.config[CONFIG_FINALIZE_BACKOFF_S_KEY]     = finalize_backoff_s
    result.register_blueprint(flask_blueprint)
    return result

def open_db_from_flask_request_context(flask_app: flask.Flask) -> backend.OpenDBAtPath:
    assert CONFIG_DB_PATH_KEY        in flask_app.config
    assert CONFIG_DB_PATH_IS_URI_KEY in flask_app.config
    db_path        = typing.cast(str, flask_app.config[CONFIG_DB_PATH_KEY])
    db_path_is_uri = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY])
    result         = backend.OpenDBAtPath(db_path, db_path_is_uri)
    return result

def store_from_flask_request_context(flask_app: flask.Flask) -> backend.DBEntitlementStore:
    result = backend.DBEntitlementStore(db_path = typing.cast(str, flask_app.config[CONFIG_DB_PATH_KEY]),
                                        db_uri  = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY]))
    return result

def push_hub_from_flask_request_context(flask_app: flask.Flask) -> notifier.PushHub:
    result = typing.cast(notifier.PushHub, flask_app.config[CONFIG_PUSH_HUB_KEY])
    return result

def finalizer_from_flask_request_context(flask_app: flask.Flask) -> finalizer.FinalizerContext:
    store  = store_from_flask_request_context(flask_app)
    result = finalizer.FinalizerContext(store          = store,
                                        reconciler_ctx = reconciler.ReconcilerContext(store=store),
                                        publisher      = push_hub_from_flask_request_context(flask_app),
                                        validity_ms    = typing.cast(int, flask_app.config[CONFIG_VALIDITY_MS_KEY]),
                                        max_attempts   = typing.cast(int, flask_app.config[CONFIG_FINALIZE_MAX_ATTEMPTS_KEY]),
                                        backoff_base_s = typing.cast(float, flask_app.config[CONFIG_FINALIZE_BACKOFF_S_KEY]))
    return result

@flask_blueprint.route(ROUTE_FIND_GRANTS, methods=['POST'])
def find_grants() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err             = base.ErrorSink()
    user_id         = base.trim_id(base.json_dict_require_str(get.json, 'user_id', err))
    question_set_id = base.json_dict_optional_str(get.json, 'question_set_id', err)
    all_sets        = base.json_dict_optional_bool(get.json, 'all', False, err)
    if not err.has():
        if len(user_id) == 0:
            err.msg_list.append('User ID was empty')
        if question_set_id is None and not all_sets:
            err.msg_list.append('Either a question set ID or "all" must be specified')
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        found = backend.find_grants(db.sql_conn, user_id, None if all_sets else question_set_id)

    result = html_good_response({'generation': found.generation, 'grants': [it.to_dict() for it in found.grants]})
    return result

@flask_blueprint.route(ROUTE_GET_QUESTION_SET, methods=['POST'])
def get_question_set() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err             = base.ErrorSink()
    question_set_id = base.json_dict_require_str(get.json, 'question_set_id', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        question_set = backend.get_question_set(db.sql_conn, question_set_id)

    result = html_good_response({'question_set': question_set.to_dict() if question_set else None})
    return result

@flask_blueprint.route(ROUTE_ADD_QUESTION_SET, methods=['POST'])
def add_question_set() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err          = base.ErrorSink()
    question_set = backend.QuestionSet(id                   = base.trim_id(base.json_dict_require_str(get.json, 'id', err)),
                                       is_paid              = base.json_dict_require_bool(get.json, 'is_paid', err),
                                       price                = base.json_dict_require_int(get.json, 'price', err),
                                       trial_question_count = base.json_dict_require_int(get.json, 'trial_question_count', err),
                                       total_question_count = base.json_dict_require_int(get.json, 'total_question_count', err))
    if not err.has():
        if len(question_set.id) == 0:
            err.msg_list.append('Question set ID was empty')
        if question_set.price < 0 or question_set.trial_question_count < 0 or question_set.total_question_count < 0:
            err.msg_list.append('Price and question counts must not be negative')
        if question_set.is_paid and question_set.price == 0:
            err.msg_list.append('A paid question set must have a price')
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        backend.add_question_set(db.sql_conn, question_set)
        stored = backend.get_question_set(db.sql_conn, question_set.id)

    assert stored is not None
    log.info(f'Stored question set ({stored.id}, paid={stored.is_paid}, price={stored.price}, trial={stored.trial_question_count}/{stored.total_question_count})')
    result = html_good_response({'question_set': stored.to_dict()})
    return result

@flask_blueprint.route(ROUTE_CHECK_ACCESS, methods=['POST'])
def check_access() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err             = base.ErrorSink()
    user_id         = base.trim_id(base.json_dict_require_str(get.json, 'user_id', err))
    question_set_id = base.trim_id(base.json_dict_require_str(get.json, 'question_set_id', err))
    unix_ts_ms      = base.json_dict_optional_int(get.json, 'unix_ts_ms', err)
    if not err.has() and (len(user_id) == 0 or len(question_set_id) == 0):
        err.msg_list.append('User ID and question set ID must not be empty')
    if err.has():
        return html_bad_response(400, err.msg_list)

    # NOTE: The server reads the store directly, there is no cache to fall back on so a store
    # failure is denied as SourceUnavailable
    store       = store_from_flask_request_context(flask.current_app)
    ctx          = reconciler.ReconcilerContext(store=store)
    decision     = reconciler.reconcile(ctx, user_id, question_set_id, unix_ts_ms=unix_ts_ms)
    result_dict  = decision.to_dict()

    try:
        question_set = store.get_question_set(question_set_id)
    except backend.StoreUnavailableError:
        question_set = None
    if question_set:
        result_dict['trial_question_count']       = question_set.trial_question_count
        result_dict['first_gated_question_index'] = trial_gate.first_gated_question_index(question_set, decision)

    result = html_good_response(result_dict)
    return result

@flask_blueprint.route(ROUTE_GET_ACTIVE_GRANTS, methods=['POST'])
def get_active_grants() -> flask.Response:
    '''
    Reconcile several question sets for a user at once. When `question_set_ids` is omitted every
    set the user has ever been granted is checked. Returns the decision per set and the subset the
    user currently has access to.
    '''
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err                                = base.ErrorSink()
    user_id                            = base.trim_id(base.json_dict_require_str(get.json, 'user_id', err))
    unix_ts_ms                         = base.json_dict_optional_int(get.json, 'unix_ts_ms', err)
    question_set_ids: list[str] | None = None
    if 'question_set_ids' in get.json:
        array = base.json_dict_require_array(get.json, 'question_set_ids', err)
        if all(isinstance(it, str) for it in array):
            question_set_ids = [typing.cast(str, it) for it in array]
        else:
            err.msg_list.append('Question set IDs must be strings')
    if not err.has() and len(user_id) == 0:
        err.msg_list.append('User ID was empty')
    if err.has():
        return html_bad_response(400, err.msg_list)

    store = store_from_flask_request_context(flask.current_app)
    if question_set_ids is None:
        try:
            found = store.find_grants_for_user(user_id)
        except backend.StoreUnavailableError as e:
            log.error(f'Failed to list grants (user={base.safe_id(user_id)}): {e}')
            return html_bad_response(503, 'Entitlements could not be verified, please try again')
        question_set_ids = list(dict.fromkeys(it.question_set_id for it in found.grants))

    ctx       = reconciler.ReconcilerContext(store=store)
    decisions = reconciler.reconcile_many(ctx, user_id, question_set_ids, unix_ts_ms=unix_ts_ms)
    active    = [{'question_set_id': key, **value.to_dict()} for key, value in decisions.items() if value.has_access]

    result = html_good_response({
        'decisions': {key: value.to_dict() for key, value in decisions.items()},
        'active':    active,
    })
    return result

@flask_blueprint.route(ROUTE_PAYMENT_OUTCOME, methods=['POST'])
def payment_outcome() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err     = base.ErrorSink()
    outcome = finalizer.PaymentOutcome.from_dict(get.json, err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    ctx               = finalizer_from_flask_request_context(flask.current_app)
    finalized         = finalizer.handle_payment_outcome(ctx, outcome, err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    if finalized is None:
        return html_good_response({'finalized': False, 'payment_status': int(outcome.status.value)})

    if finalized.error != finalizer.FinalizeError.Nil:
        # NOTE: The payment itself succeeded, the client is told access is pending rather than
        # that something failed
        log.warning(f'Payment accepted with access pending (tx={base.safe_id(outcome.transaction_id)}, error={finalized.error.name})')
        return html_bad_response(202, finalized.message)

    assert finalized.grant is not None
    result = html_good_response({
        'finalized': True,
        'grant':     finalized.grant.to_dict(),
        'replayed':  finalized.replayed,
        'inserted':  finalized.inserted,
    })
    return result

@flask_blueprint.route(ROUTE_REDEEM_CODE, methods=['POST'])
def redeem_code() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err     = base.ErrorSink()
    code    = base.json_dict_require_str(get.json, 'code', err)
    user_id = base.json_dict_require_str(get.json, 'user_id', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        redeemed = backend.redeem_code(sql_conn    = db.sql_conn,
                                       code        = code,
                                       user_id     = user_id,
                                       unix_ts_ms  = base.now_unix_ts_ms(),
                                       validity_ms = typing.cast(int, flask.current_app.config[CONFIG_VALIDITY_MS_KEY]),
                                       err         = err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    assert redeemed.success
    hub = push_hub_from_flask_request_context(flask.current_app)
    _   = hub.publish(redeemed.grant.user_id, notifier.GrantChanged(user_id=redeemed.grant.user_id, question_set_id=redeemed.grant.question_set_id))

    result = html_good_response({'grant': redeemed.grant.to_dict(), 'code': redeemed.code.to_dict()})
    return result

@flask_blueprint.route(ROUTE_GENERATE_REDEEM_CODES, methods=['POST'])
def generate_redeem_codes() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err             = base.ErrorSink()
    question_set_id = base.json_dict_require_str(get.json, 'question_set_id', err)
    validity_days   = base.json_dict_require_int(get.json, 'validity_days', err)
    quantity        = base.json_dict_require_int(get.json, 'quantity', err)
    created_by      = base.json_dict_require_str(get.json, 'created_by', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        codes = backend.generate_redeem_codes(sql_conn        = db.sql_conn,
                                              question_set_id = question_set_id,
                                              validity_days   = validity_days,
                                              quantity        = quantity,
                                              created_by      = created_by,
                                              unix_ts_ms      = base.now_unix_ts_ms(),
                                              err             = err)

    result = html_bad_response(400, err.msg_list) if err.has() else html_good_response({'codes': [it.to_dict() for it in codes]})
    return result

@flask_blueprint.route(ROUTE_LIST_REDEEM_CODES, methods=['POST'])
def list_redeem_codes() -> flask.Response:
    with open_db_from_flask_request_context(flask.current_app) as db:
        codes = backend.get_redeem_codes_list(db.sql_conn)
    result = html_good_response({'codes': [it.to_dict() for it in codes]})
    return result

@flask_blueprint.route(ROUTE_GET_USER_REDEEMED_CODES, methods=['POST'])
def get_user_redeemed_codes() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err     = base.ErrorSink()
    user_id = base.json_dict_require_str(get.json, 'user_id', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        codes = backend.get_user_redeemed_codes(db.sql_conn, user_id)

    result = html_good_response({'codes': [it.to_dict() for it in codes]})
    return result

@flask_blueprint.route(ROUTE_DELETE_REDEEM_CODE, methods=['POST'])
def delete_redeem_code() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err  = base.ErrorSink()
    code = base.json_dict_require_str(get.json, 'code', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        _ = backend.delete_redeem_code(db.sql_conn, code, err)

    result = html_bad_response(400, err.msg_list) if err.has() else html_good_response({'code': base.trim_id(code), 'deleted': True})
    return result
