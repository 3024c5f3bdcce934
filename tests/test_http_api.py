import base64
import json
from datetime import timedelta

import pytest
from werkzeug.test import Client

from meshsidecar.actor_handlers import StateResponse, TransactionalOperation
from meshsidecar.http_api import (
    DEFAULT_CLOUD_EVENT_TYPE,
    Api,
    GetResponse,
    new_cloud_events_envelope,
)
from meshsidecar.http_server import build_router
from meshsidecar.http_types import RequestContext
from meshsidecar.messaging import DirectMessageResponse

ETAG = "`~!@#$%^&*()_+-={}[]|\\:\";'<>?,./'"


def _call(api, method, path, body=b"", headers=None):
    client = Client(build_router(api.endpoints(), "*"))
    return client.open(
        path, method=method, data=body, headers=headers or {}, content_type="application/json"
    )


def _error_code(resp):
    return json.loads(resp.data)["errorCode"]


def _with_retries(policy, attempt):
    tries = max(policy.threshold, 1)
    for n in range(tries):
        try:
            return attempt()
        except RuntimeError:
            if n == tries - 1:
                raise


class FakeStateStore:
    def __init__(self):
        self.retry_counter = 0
        self.keys = []
        self.deletes = []

    def get(self, req):
        self.keys.append(req.key)
        if req.key == "good-key":
            return GetResponse(data=b"life is good", etag=ETAG)
        return None

    def bulk_set(self, reqs):
        for req in reqs:
            self.set(req)

    def _attempt(self, limit):
        self.retry_counter += 1
        if self.retry_counter < limit:
            raise RuntimeError("Simulated failure")

    def set(self, req):
        if req.key == "good-key":
            if req.etag and req.etag != ETAG:
                raise ValueError("ETag mismatch")
            return
        if req.key == "failed-key":
            _with_retries(req.retry_policy, lambda: self._attempt(5))
            return
        raise KeyError("NOT FOUND")

    def delete(self, req):
        self.deletes.append(req)
        if req.key == "good-key":
            if req.etag and req.etag != ETAG:
                raise ValueError("ETag mismatch")
            return
        if req.key == "failed-key":
            _with_retries(req.retry_policy, lambda: self._attempt(3))
            return
        raise KeyError("NOT FOUND")


class FakeActors:
    def __init__(self, state=b""):
        self.calls = {}
        self.state = state

    def _record(self, name, req):
        self.calls.setdefault(name, []).append(req)

    def is_actor_hosted(self, req):
        self._record("is_actor_hosted", req)
        return True

    def save_state(self, req):
        self._record("save_state", req)

    def get_state(self, req):
        self._record("get_state", req)
        return StateResponse(data=self.state)

    def delete_state(self, req):
        self._record("delete_state", req)

    def transactional_state_operation(self, req):
        self._record("transactional_state_operation", req)


class FakeDirectMessaging:
    def __init__(self, response=None, error=None):
        self.calls = []
        self.response = response
        self.error = error

    def invoke(self, req):
        self.calls.append(req)
        if self.error:
            raise self.error
        return self.response


class FakePubSub:
    def __init__(self):
        self.published = []

    def publish(self, req):
        self.published.append(req)


@pytest.fixture
def store():
    return FakeStateStore()


@pytest.fixture
def state_api(store):
    return Api(state_store=store)


def test_endpoints_order_and_count():
    routes = [e.route for e in Api().endpoints()]
    assert routes[:4] == ["state/<key>", "state", "state/<key>", "publish/<topic>"]
    assert routes[-3:] == ["invoke/<id>/method/*", "metadata", "bindings/<name>"]
    assert len(routes) == 17


def test_set_headers_on_direct_message():
    dm = FakeDirectMessaging(response=DirectMessageResponse(data=b"x", metadata={}))
    api = Api(direct_messaging=dm)
    ctx = RequestContext(
        method="POST",
        path="/v1.0/invoke/app/method/m",
        params={"id": "app"},
        headers=[("H1", "v1"), ("H2", "v2")],
    )
    api.on_direct_message(ctx)
    assert dm.calls[0].metadata["headers"] == (
        "H1&__header_equals__&v1&__header_delim__&H2&__header_equals__&v2"
    )


@pytest.mark.parametrize("method", ["POST", "PUT"])
def test_output_binding_ok(method):
    sent = []
    api = Api(send_to_output_binding=lambda name, req: sent.append((name, req)))
    body = json.dumps({"data": "fake output"}).encode()
    resp = _call(api, method, "/v1.0/bindings/testbinding", body)
    assert resp.status_code == 200
    assert sent[0][0] == "testbinding"
    assert sent[0][1].data == b'"fake output"'


@pytest.mark.parametrize("method", ["POST", "PUT"])
def test_output_binding_error(method):
    def fail(name, req):
        raise RuntimeError("missing binding name")

    api = Api(send_to_output_binding=fail)
    body = json.dumps({"data": "fake output"}).encode()
    resp = _call(api, method, "/v1.0/bindings/notfound", body)
    assert resp.status_code == 500
    assert _error_code(resp) == "ERR_INVOKE_OUTPUT_BINDING"
    assert json.loads(resp.data)["message"] == (
        "error invoking output binding notfound: missing binding name"
    )


@pytest.mark.parametrize(
    "path,query",
    [
        ("/v1.0/invoke/fakeDaprID/method/fakeMethod", ""),
        ("/v1.0/invoke/fakeDaprID/method/fakeMethod?param1=val1&param2=val2", "param1=val1&param2=val2"),
    ],
)
def test_direct_messaging(path, query):
    response = DirectMessageResponse(
        data=b"fakeDirectMessageResponse",
        metadata={"http.status_code": "200", "headers": "X-Reply&__header_equals__&yes"},
    )
    dm = FakeDirectMessaging(response=response)
    api = Api(direct_messaging=dm)
    resp = _call(api, "POST", path, b"fakeData")
    assert resp.status_code == 200
    assert resp.data == b"fakeDirectMessageResponse"
    assert resp.headers.get("X-Reply") == "yes"
    assert len(dm.calls) == 1
    req = dm.calls[0]
    assert req.target == "fakeDaprID"
    assert req.method == "fakeMethod"
    assert req.data == b"fakeData"
    assert req.metadata["http.verb"] == "POST"
    assert req.metadata["http.query_string"] == query


def test_direct_messaging_error():
    api = Api(direct_messaging=FakeDirectMessaging(error=RuntimeError("boom")))
    resp = _call(api, "GET", "/v1.0/invoke/other/method/x")
    assert resp.status_code == 500
    assert _error_code(resp) == "ERR_DIRECT_INVOKE"


@pytest.mark.parametrize("method", ["POST", "PUT", "GET", "DELETE"])
def test_actor_runtime_not_initialized(method):
    api = Api()
    body = json.dumps({"data": "fakeData"}).encode()
    resp = _call(api, method, "/v1.0/actors/fakeActorType/fakeActorID/state/key1", body)
    assert resp.status_code == 400
    assert _error_code(resp) == "ERR_ACTOR_RUNTIME_NOT_FOUND"


@pytest.mark.parametrize("method", ["POST", "PUT"])
def test_save_actor_state(method):
    actors = FakeActors()
    api = Api()
    api.actor = actors
    body = json.dumps({"data": "fakeData"}).encode()
    resp = _call(api, method, "/v1.0/actors/fakeActorType/fakeActorID/state/key1", body)
    assert resp.status_code == 201
    saved = actors.calls["save_state"]
    assert len(saved) == 1
    assert saved[0].actor_id == "fakeActorID"
    assert saved[0].actor_type == "fakeActorType"
    assert saved[0].key == "key1"
    assert saved[0].value == {"data": "fakeData"}


@pytest.mark.parametrize("method", ["POST", "PUT"])
def test_save_byte_array_state(method):
    encoded = base64.b64encode(bytes([0x01, 0x02, 0x03, 0x06, 0x10])).decode()
    actors = FakeActors()
    api = Api(actor=actors)
    resp = _call(
        api, method, "/v1.0/actors/fakeActorType/fakeActorID/state/bytearray", json.dumps(encoded).encode()
    )
    assert resp.status_code == 201
    assert actors.calls["save_state"][0].value == encoded


@pytest.mark.parametrize("method", ["POST", "PUT"])
def test_save_object_with_byte_array_member(method):
    encoded = base64.b64encode(bytes([0x01, 0x02, 0x03, 0x06, 0x10])).decode()
    actors = FakeActors()
    api = Api(actor=actors)
    body = json.dumps({"data": "fakeData", "data2": encoded}).encode()
    resp = _call(api, method, "/v1.0/actors/fakeActorType/fakeActorID/state/bytearray", body)
    assert resp.status_code == 201
    assert actors.calls["save_state"][0].value == {"data": "fakeData", "data2": encoded}


@pytest.mark.parametrize("method", ["POST", "PUT"])
def test_save_actor_state_deserialization_error(method):
    actors = FakeActors()
    api = Api(actor=actors)
    resp = _call(api, method, "/v1.0/actors/fakeActorType/fakeActorID/state/key1", b'{"key":}')
    assert resp.status_code == 400
    assert _error_code(resp) == "ERR_DESERIALIZE_HTTP_BODY"
    assert "save_state" not in actors.calls


def test_get_actor_state():
    fake_data = json.dumps({"data": "fakeData"}).encode()
    actors = FakeActors(state=fake_data)
    api = Api(actor=actors)
    resp = _call(api, "GET", "/v1.0/actors/fakeActorType/fakeActorID/state/key1")
    assert resp.status_code == 200
    assert resp.data == fake_data
    assert len(actors.calls["get_state"]) == 1


def test_delete_actor_state():
    actors = FakeActors()
    api = Api(actor=actors)
    resp = _call(api, "DELETE", "/v1.0/actors/fakeActorType/fakeActorID/state/key1")
    assert resp.status_code == 200
    assert actors.calls["delete_state"][0].key == "key1"


def test_actor_transaction():
    value = {"data": "fakeData"}
    ops = [
        {"operation": "upsert", "request": {"key": "fakeKey1", "value": value}},
        {"operation": "delete", "request": {"key": "fakeKey1"}},
    ]
    actors = FakeActors()
    api = Api(actor=actors)
    resp = _call(api, "POST", "/v1.0/actors/fakeActorType/fakeActorID/state", json.dumps(ops).encode())
    assert resp.status_code == 201
    req = actors.calls["transactional_state_operation"][0]
    assert req.operations == [
        TransactionalOperation("upsert", {"key": "fakeKey1", "value": value}),
        TransactionalOperation("delete", {"key": "fakeKey1"}),
    ]


def test_get_state_not_found(state_api):
    assert _call(state_api, "GET", "/v1.0/state/bad-key").status_code == 204


def test_get_state_good_key(state_api):
    resp = _call(state_api, "GET", "/v1.0/state/good-key")
    assert resp.status_code == 200
    assert resp.headers.get("ETag") == ETAG
    assert resp.data == b"life is good"


@pytest.mark.parametrize("etag,status", [("", 201), (ETAG, 201), ("BAD ETAG", 500)])
def test_update_state(state_api, etag, status):
    body = json.dumps([{"key": "good-key", "etag": etag}]).encode()
    assert _call(state_api, "POST", "/v1.0/state", body).status_code == status


def test_post_state_malformed(state_api):
    resp = _call(state_api, "POST", "/v1.0/state", b"{not json")
    assert resp.status_code == 400
    assert _error_code(resp) == "ERR_MALFORMED_REQUEST"


def test_state_store_missing():
    resp = _call(Api(), "GET", "/v1.0/state/good-key")
    assert resp.status_code == 400
    assert _error_code(resp) == "ERR_STATE_STORE_NOT_FOUND"


@pytest.mark.parametrize("headers,status", [({}, 200), ({"If-Match": ETAG}, 200), ({"If-Match": "BAD ETAG"}, 500)])
def test_delete_state(state_api, headers, status):
    assert _call(state_api, "DELETE", "/v1.0/state/good-key", headers=headers).status_code == status


def test_delete_state_with_retries(state_api, store):
    path = "/v1.0/state/failed-key?retryInterval=100&retryPattern=linear&retryThreshold=3"
    resp = _call(state_api, "DELETE", path, headers={"If-Match": "BAD ETAG"})
    assert resp.status_code == 200
    assert store.retry_counter == 3
    policy = store.deletes[0].retry_policy
    assert policy.interval == timedelta(milliseconds=100)
    assert policy.pattern == "linear"
    assert policy.threshold == 3
    assert store.deletes[0].etag == "BAD ETAG"


def test_set_state_with_retries(state_api, store):
    body = json.dumps(
        [
            {
                "key": "failed-key",
                "etag": "BAD ETAG",
                "options": {"retryPolicy": {"interval": 100, "pattern": "linear", "threshold": 5}},
            }
        ]
    ).encode()
    resp = _call(state_api, "POST", "/v1.0/state", body)
    assert store.retry_counter == 5
    assert resp.status_code == 201


def test_state_key_prefixed_with_id(store):
    api = Api(dapr_id="app", state_store=store)
    resp = _call(api, "GET", "/v1.0/state/good-key")
    assert store.keys == ["app-good-key"]
    assert resp.status_code == 204


def test_publish_wraps_body_in_envelope():
    pubsub = FakePubSub()
    api = Api(dapr_id="app", pubsub=pubsub)
    resp = _call(api, "POST", "/v1.0/publish/mytopic", b'{"a":1}')
    assert resp.status_code == 200
    req = pubsub.published[0]
    assert req.topic == "mytopic"
    envelope = json.loads(req.data)
    assert envelope["data"] == {"a": 1}
    assert envelope["source"] == "app"
    assert envelope["type"] == DEFAULT_CLOUD_EVENT_TYPE


def test_publish_without_pubsub():
    resp = _call(Api(), "PUT", "/v1.0/publish/mytopic", b"{}")
    assert resp.status_code == 400
    assert _error_code(resp) == "ERR_PUB_SUB_NOT_FOUND"


def test_cloud_events_envelope_text_payload():
    envelope = new_cloud_events_envelope("id1", "src", "", b"plain words")
    assert envelope["data"] == "plain words"
    assert envelope["id"] == "id1"
    assert envelope["type"] == DEFAULT_CLOUD_EVENT_TYPE


def test_metadata_endpoint():
    resp = _call(Api(), "GET", "/v1.0/metadata")
    assert resp.status_code == 200
    assert resp.data == b""