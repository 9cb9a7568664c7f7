'''
Client side view of the authoritative store. Talks to the backend's JSON routes (see server.py)
and implements the read interface the reconciler consumes. Every request is bounded by a single
timeout and never retried, any failure to get a well formed answer is a `StoreUnavailableError` so
the reconciler falls back to the local cache.
'''
import json
import logging
import typing

import urllib3

import base
import backend
import server

log = logging.Logger('REMOTE')

def grant_from_dict(d: base.JSONObject, err: base.ErrorSink) -> backend.Grant:
    result                    = backend.Grant()
    result.user_id            = base.json_dict_require_str(d, 'user_id', err)
    result.question_set_id    = base.json_dict_require_str(d, 'question_set_id', err)
    source                    = base.json_dict_require_int_coerce_to_enum(d, 'source', base.GrantSource, err)
    result.expiry_unix_ts_ms  = base.json_dict_optional_int(d, 'expiry_unix_ts_ms', err)
    result.origin_id          = base.json_dict_require_str(d, 'origin_id', err)
    result.created_unix_ts_ms = base.json_dict_require_int(d, 'created_unix_ts_ms', err)
    if source is not None:
        result.source = base.GrantSource(source)
    return result

def question_set_from_dict(d: base.JSONObject, err: base.ErrorSink) -> backend.QuestionSet:
    result = backend.QuestionSet(id                   = base.json_dict_require_str(d, 'id', err),
                                 is_paid              = base.json_dict_require_bool(d, 'is_paid', err),
                                 price                = base.json_dict_require_int(d, 'price', err),
                                 trial_question_count = base.json_dict_require_int(d, 'trial_question_count', err),
                                 total_question_count = base.json_dict_require_int(d, 'total_question_count', err))
    return result

class RemoteEntitlementStore:
    base_url:  str
    timeout_s: float
    http:      urllib3.PoolManager

    def __init__(self, base_url: str, timeout_s: float = base.STORE_QUERY_TIMEOUT_S):
        self.base_url  = base_url.rstrip('/')
        self.timeout_s = timeout_s
        self.http      = urllib3.PoolManager(timeout=urllib3.Timeout(total=timeout_s), retries=False)

    def _post(self, route: str, request: base.JSONObject) -> base.JSONObject:
        url = self.base_url + route
        try:
            response = self.http.request(method  = 'POST',
                                         url     = url,
                                         body    = json.dumps(request).encode('utf-8'),
                                         headers = {'Content-Type': 'application/json'})
        except urllib3.exceptions.HTTPError as e:
            log.warning(f'Request to {url} failed: {e}')
            raise backend.StoreUnavailableError(f'Request to {url} failed: {e}') from e

        if response.status != 200:
            raise backend.StoreUnavailableError(f'Request to {url} returned HTTP {response.status}')

        try:
            body = json.loads(response.data)
        except ValueError as e:
            raise backend.StoreUnavailableError(f'Request to {url} returned malformed JSON: {e}') from e
        if not isinstance(body, dict):
            raise backend.StoreUnavailableError(f'Request to {url} returned a non-object body')

        err    = base.ErrorSink()
        status = base.json_dict_require_int(typing.cast(base.JSONObject, body), 'status', err)
        if not err.has() and status != 200:
            msg = body.get('msg', '')
            raise backend.StoreUnavailableError(f'Request to {url} failed with status {status}: {msg}')
        result = base.json_dict_require_obj(typing.cast(base.JSONObject, body), 'result', err)
        if err.has():
            raise backend.StoreUnavailableError(f'Request to {url} returned an unexpected body: {err.build()}')
        return result

    def _find_grants(self, request: base.JSONObject) -> backend.FindGrantsResult:
        body   = self._post(server.ROUTE_FIND_GRANTS, request)
        err    = base.ErrorSink()
        result = backend.FindGrantsResult()
        result.generation = base.json_dict_require_int(body, 'generation', err)
        for it in base.json_dict_require_array(body, 'grants', err):
            if isinstance(it, dict):
                result.grants.append(grant_from_dict(it, err))
            else:
                err.msg_list.append(f'Grant was not an object: {base.safe_dump_arbitrary_value_or_type(it)}')
        if err.has():
            raise backend.StoreUnavailableError(f'Malformed grants response: {err.build()}')
        return result

    def get_question_set(self, question_set_id: str) -> backend.QuestionSet | None:
        body = self._post(server.ROUTE_GET_QUESTION_SET, {'question_set_id': base.trim_id(question_set_id)})
        if body.get('question_set') is None:
            return None
        err    = base.ErrorSink()
        result = question_set_from_dict(base.json_dict_require_obj(body, 'question_set', err), err)
        if err.has():
            raise backend.StoreUnavailableError(f'Malformed question set response: {err.build()}')
        return result

    def find_grants(self, user_id: str, question_set_id: str) -> backend.FindGrantsResult:
        result = self._find_grants({'user_id': base.trim_id(user_id), 'question_set_id': base.trim_id(question_set_id)})
        return result

    def find_grants_for_user(self, user_id: str) -> backend.FindGrantsResult:
        result = self._find_grants({'user_id': base.trim_id(user_id), 'all': True})
        return result
