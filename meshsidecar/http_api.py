"""HTTP handlers of the state, pub/sub, bindings and service invocation APIs."""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Protocol

from .actor_handlers import ActorHandlers
from .http_types import (
    API_VERSION_V1,
    DELETE,
    GET,
    HTTP_VERB,
    POST,
    PUT,
    QUERY_STRING,
    Endpoint,
    ErrorResponse,
    OutputBindingRequest,
    RequestContext,
    apply_headers,
    encode_headers,
    get_status_code_from_metadata,
    respond_empty,
    respond_with_error,
    respond_with_etagged_json,
    respond_with_json,
)
from .messaging import DirectMessageRequest, DirectMessageResponse

log = logging.getLogger(__name__)

ID_PARAM = "id"
TOPIC_PARAM = "topic"
NAME_PARAM = "name"
STATE_KEY_PARAM = "key"
CONSISTENCY_PARAM = "consistency"
CONCURRENCY_PARAM = "concurrency"
RETRY_INTERVAL_PARAM = "retryInterval"
RETRY_PATTERN_PARAM = "retryPattern"
RETRY_THRESHOLD_PARAM = "retryThreshold"

DEFAULT_CLOUD_EVENT_TYPE = "com.dapr.event.sent"
CLOUD_EVENTS_SPEC_VERSION = "0.3"

_ATOI = re.compile(r"[+-]?[0-9]+")


def _atoi(text: str) -> int:
    """Parse a decimal integer; anything unparsable counts as zero."""
    return int(text) if _ATOI.fullmatch(text) else 0


def _str_field(obj: dict, name: str) -> str:
    value = obj.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


def _int_field(obj: dict, name: str) -> int:
    value = obj.get(name)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {name!r} must be an integer")
    return value


def _str_map(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise ValueError("metadata must map strings to strings")
    return dict(value)


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, ensure_ascii=False, allow_nan=False, separators=(",", ":")).encode("utf-8")


@dataclass
class RetryPolicy:
    """How often and how fast a state operation is retried."""

    interval: timedelta = timedelta(0)
    threshold: int = 0
    pattern: str = ""

    @classmethod
    def from_dict(cls, obj: Any) -> "RetryPolicy":
        """Decode a policy whose interval is given in nanoseconds."""
        if obj is None:
            return cls()
        if not isinstance(obj, dict):
            raise ValueError("retry policy must be a JSON object")
        nanoseconds = _int_field(obj, "interval")
        return cls(
            interval=timedelta(microseconds=nanoseconds / 1000),
            threshold=_int_field(obj, "threshold"),
            pattern=_str_field(obj, "pattern"),
        )


@dataclass
class GetRequest:
    """A request to read one state key."""

    key: str
    consistency: str = ""


@dataclass
class GetResponse:
    """A stored state value with its ETag."""

    data: bytes = b""
    etag: str = ""


@dataclass
class SetRequest:
    """A request to store one state value."""

    key: str
    value: Any = None
    etag: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    concurrency: str = ""
    consistency: str = ""
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_dict(cls, obj: Any) -> "SetRequest":
        """Decode one item of a save-state request body."""
        if obj is None:
            return cls(key="")
        if not isinstance(obj, dict):
            raise ValueError("state item must be a JSON object")
        options = obj.get("options")
        if options is None:
            options = {}
        if not isinstance(options, dict):
            raise ValueError("state options must be a JSON object")
        return cls(
            key=_str_field(obj, "key"),
            value=obj.get("value"),
            etag=_str_field(obj, "etag"),
            metadata=_str_map(obj.get("metadata")),
            concurrency=_str_field(options, "concurrency"),
            consistency=_str_field(options, "consistency"),
            retry_policy=RetryPolicy.from_dict(options.get("retryPolicy")),
        )


@dataclass
class DeleteRequest:
    """A request to delete one state key."""

    key: str
    etag: str = ""
    concurrency: str = ""
    consistency: str = ""
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class PublishRequest:
    """A message to publish on a topic."""

    topic: str
    data: bytes = b""


@dataclass
class WriteRequest:
    """A payload sent to an output binding."""

    data: bytes = b""
    metadata: dict[str, str] | None = None


class _StateStore(Protocol):
    def get(self, req: GetRequest) -> GetResponse | None: ...
    def bulk_set(self, reqs: list[SetRequest]) -> None: ...
    def delete(self, req: DeleteRequest) -> None: ...


class _PubSub(Protocol):
    def publish(self, req: PublishRequest) -> None: ...


class _DirectMessaging(Protocol):
    def invoke(self, req: DirectMessageRequest) -> DirectMessageResponse: ...


def new_cloud_events_envelope(event_id: str, source: str, event_type: str, data: bytes) -> dict[str, Any]:
    """Wrap ``data`` in a CloudEvents envelope; JSON payloads are embedded as JSON."""
    try:
        payload: Any = json.loads(data)
        content_type = "application/json"
    except ValueError:
        payload = bytes(data).decode("utf-8", errors="replace")
        content_type = "text/plain"
    return {
        "id": event_id,
        "source": source,
        "type": event_type or DEFAULT_CLOUD_EVENT_TYPE,
        "specversion": CLOUD_EVENTS_SPEC_VERSION,
        "datacontenttype": content_type,
        "data": payload,
    }


class Api:
    """The sidecar HTTP API: state, pub/sub, actors, invocation, metadata and bindings."""

    def __init__(
        self,
        dapr_id: str = "",
        app_channel: Any = None,
        direct_messaging: _DirectMessaging | None = None,
        state_store: _StateStore | None = None,
        pubsub: _PubSub | None = None,
        actor: Any = None,
        send_to_output_binding: Callable[[str, WriteRequest], None] | None = None,
    ) -> None:
        self.dapr_id = dapr_id
        self.app_channel = app_channel
        self.direct_messaging = direct_messaging
        self.state_store = state_store
        self.pubsub = pubsub
        self.send_to_output_binding = send_to_output_binding
        self._actors = ActorHandlers(actor)
        self._endpoints = [
            *self.state_endpoints(),
            *self.pubsub_endpoints(),
            *self._actors.actor_endpoints(),
            *self.direct_messaging_endpoints(),
            *self.metadata_endpoints(),
            *self.bindings_endpoints(),
        ]

    @property
    def actor(self) -> Any:
        """The actor runtime, or None when actors are not available."""
        return self._actors.actor

    @actor.setter
    def actor(self, value: Any) -> None:
        self._actors.actor = value

    def endpoints(self) -> list[Endpoint]:
        """Return every registered endpoint."""
        return list(self._endpoints)

    def state_endpoints(self) -> list[Endpoint]:
        return [
            Endpoint([GET], "state/<key>", API_VERSION_V1, self.on_get_state),
            Endpoint([POST], "state", API_VERSION_V1, self.on_post_state),
            Endpoint([DELETE], "state/<key>", API_VERSION_V1, self.on_delete_state),
        ]

    def pubsub_endpoints(self) -> list[Endpoint]:
        return [Endpoint([POST, PUT], "publish/<topic>", API_VERSION_V1, self.on_publish)]

    def bindings_endpoints(self) -> list[Endpoint]:
        return [Endpoint([POST, PUT], "bindings/<name>", API_VERSION_V1, self.on_output_binding_message)]

    def direct_messaging_endpoints(self) -> list[Endpoint]:
        return [
            Endpoint([GET, POST, DELETE, PUT], "invoke/<id>/method/*", API_VERSION_V1, self.on_direct_message)
        ]

    def metadata_endpoints(self) -> list[Endpoint]:
        return [Endpoint([GET], "metadata", API_VERSION_V1, self.on_get_metadata)]

    def _state_key(self, key: str) -> str:
        return f"{self.dapr_id}-{key}" if self.dapr_id else key

    def _store(self, ctx: RequestContext) -> _StateStore | None:
        if self.state_store is None:
            respond_with_error(ctx, 400, ErrorResponse("ERR_STATE_STORE_NOT_FOUND"))
        return self.state_store

    def on_get_state(self, ctx: RequestContext) -> None:
        """Return a state value with its ETag; 204 when the key is absent."""
        store = self._store(ctx)
        if store is None:
            return
        req = GetRequest(
            key=self._state_key(ctx.param(STATE_KEY_PARAM)),
            consistency=ctx.query_arg(CONSISTENCY_PARAM),
        )
        try:
            resp = store.get(req)
        except Exception as exc:
            respond_with_error(ctx, 500, ErrorResponse("ERR_GET_STATE", str(exc)))
            return
        if resp is None:
            respond_with_error(ctx, 204, ErrorResponse("ERR_STATE_NOT_FOUND"))
            return
        respond_with_etagged_json(ctx, 200, resp.data, resp.etag)

    def on_post_state(self, ctx: RequestContext) -> None:
        """Store a list of state values."""
        store = self._store(ctx)
        if store is None:
            return
        try:
            items = json.loads(ctx.body)
            if items is None:
                items = []
            if not isinstance(items, list):
                raise ValueError("request body must be a JSON array")
            reqs = [SetRequest.from_dict(item) for item in items]
        except ValueError as exc:
            respond_with_error(ctx, 400, ErrorResponse("ERR_MALFORMED_REQUEST", str(exc)))
            return
        for req in reqs:
            req.key = self._state_key(req.key)
        try:
            store.bulk_set(reqs)
        except Exception as exc:
            respond_with_error(ctx, 500, ErrorResponse("ERR_SAVE_REQUEST", str(exc)))
            return
        respond_empty(ctx, 201)

    def on_delete_state(self, ctx: RequestContext) -> None:
        """Delete a state key, honouring If-Match and retry options from the query."""
        store = self._store(ctx)
        if store is None:
            return
        key = ctx.param(STATE_KEY_PARAM)
        retry_interval = ctx.query_arg(RETRY_INTERVAL_PARAM)
        retry_threshold = ctx.query_arg(RETRY_THRESHOLD_PARAM)
        req = DeleteRequest(
            key=key,
            etag=ctx.header("If-Match"),
            concurrency=ctx.query_arg(CONCURRENCY_PARAM),
            consistency=ctx.query_arg(CONSISTENCY_PARAM),
            retry_policy=RetryPolicy(
                interval=timedelta(milliseconds=_atoi(retry_interval) if retry_interval else 0),
                threshold=_atoi(retry_threshold) if retry_threshold else 0,
                pattern=ctx.query_arg(RETRY_PATTERN_PARAM),
            ),
        )
        try:
            store.delete(req)
        except Exception as exc:
            message = f"failed deleting state with key {key}: {exc}"
            respond_with_error(ctx, 500, ErrorResponse("ERR_DELETE_STATE", message))

    def on_publish(self, ctx: RequestContext) -> None:
        """Publish the request body, wrapped in a CloudEvents envelope, on a topic."""
        if self.pubsub is None:
            respond_with_error(ctx, 400, ErrorResponse("ERR_PUB_SUB_NOT_FOUND"))
            return
        envelope = new_cloud_events_envelope(
            str(uuid.uuid4()), self.dapr_id, DEFAULT_CLOUD_EVENT_TYPE, ctx.body
        )
        try:
            data = _dumps(envelope)
        except (TypeError, ValueError) as exc:
            respond_with_error(ctx, 500, ErrorResponse("ERR_CLOUD_EVENTS_SER", str(exc)))
            return
        try:
            self.pubsub.publish(PublishRequest(topic=ctx.param(TOPIC_PARAM), data=data))
        except Exception as exc:
            respond_with_error(ctx, 500, ErrorResponse("ERR_PUBLISH_MESSAGE", str(exc)))
            return
        respond_empty(ctx, 200)

    def on_output_binding_message(self, ctx: RequestContext) -> None:
        """Send the request's data and metadata to a named output binding."""
        name = ctx.param(NAME_PARAM)
        try:
            req = OutputBindingRequest.from_json(ctx.body)
        except ValueError as exc:
            message = f"can't deserialize request: {exc}"
            respond_with_error(ctx, 500, ErrorResponse("ERR_INVOKE_OUTPUT_BINDING", message))
            return
        try:
            data = _dumps(req.data)
        except (TypeError, ValueError) as exc:
            message = f"can't deserialize request data field: {exc}"
            respond_with_error(ctx, 500, ErrorResponse("ERR_INVOKE_OUTPUT_BINDING", message))
            return
        try:
            if self.send_to_output_binding is None:
                raise RuntimeError("output bindings are not configured")
            self.send_to_output_binding(name, WriteRequest(data=data, metadata=req.metadata))
        except Exception as exc:
            message = f"error invoking output binding {name}: {exc}"
            respond_with_error(ctx, 500, ErrorResponse("ERR_INVOKE_OUTPUT_BINDING", message))
            return
        respond_empty(ctx, 200)

    def on_direct_message(self, ctx: RequestContext) -> None:
        """Invoke a method of another application and relay its reply."""
        path = ctx.path
        method = path[path.find("method/") + 7:]
        req = DirectMessageRequest(
            target=ctx.param(ID_PARAM),
            method=method,
            metadata={HTTP_VERB: ctx.method, QUERY_STRING: ctx.query_string},
            data=ctx.body,
        )
        encode_headers(ctx, req.metadata)
        if self.direct_messaging is None:
            respond_with_error(
                ctx, 500, ErrorResponse("ERR_DIRECT_INVOKE", "direct messaging is not configured")
            )
            return
        try:
            resp = self.direct_messaging.invoke(req)
        except Exception as exc:
            respond_with_error(ctx, 500, ErrorResponse("ERR_DIRECT_INVOKE", str(exc)))
            return
        status = get_status_code_from_metadata(resp.metadata)
        apply_headers(resp.metadata, ctx)
        respond_with_json(ctx, status, resp.data)

    def on_get_metadata(self, ctx: RequestContext) -> None:
        """Reply 200 with an empty body; no metadata is exposed."""
        respond_empty(ctx, 200)