"""HTTP handlers of the actor API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .http_types import (
    API_VERSION_V1,
    DELETE,
    GET,
    POST,
    PUT,
    Endpoint,
    ErrorResponse,
    RequestContext,
    apply_headers,
    encode_headers,
    get_status_code_from_metadata,
    respond_empty,
    respond_with_error,
    respond_with_json,
    serialize_to_json,
)

log = logging.getLogger(__name__)

ACTOR_TYPE_PARAM = "actorType"
ACTOR_ID_PARAM = "actorId"
METHOD_PARAM = "method"
STATE_KEY_PARAM = "key"
NAME_PARAM = "name"

UPSERT = "upsert"
DELETE_OPERATION = "delete"


@dataclass
class ActorHostedRequest:
    actor_type: str
    actor_id: str


@dataclass
class CallRequest:
    actor_type: str
    actor_id: str
    method: str
    metadata: dict[str, str] = field(default_factory=dict)
    data: bytes = b""


@dataclass
class CallResponse:
    data: bytes = b""
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class SaveStateRequest:
    actor_type: str
    actor_id: str
    key: str
    value: Any = None


@dataclass
class GetStateRequest:
    actor_type: str
    actor_id: str
    key: str


@dataclass
class StateResponse:
    data: bytes = b""


@dataclass
class DeleteStateRequest:
    actor_type: str
    actor_id: str
    key: str


@dataclass
class TransactionalOperation:
    """One operation of an actor state transaction."""

    operation: str = ""
    request: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"operation": self.operation, "request": self.request}

    @classmethod
    def from_dict(cls, obj: Any) -> "TransactionalOperation":
        if obj is None:
            return cls()
        if not isinstance(obj, dict):
            raise ValueError("transactional operation must be a JSON object")
        operation = _string_field(obj, "operation")
        return cls(operation=operation, request=obj.get("request"))


@dataclass
class TransactionalRequest:
    actor_type: str
    actor_id: str
    operations: list[TransactionalOperation] = field(default_factory=list)


@dataclass
class CreateReminderRequest:
    name: str = ""
    actor_type: str = ""
    actor_id: str = ""
    data: Any = None
    due_time: str = ""
    period: str = ""


@dataclass
class CreateTimerRequest:
    name: str = ""
    actor_type: str = ""
    actor_id: str = ""
    data: Any = None
    due_time: str = ""
    period: str = ""
    callback: str = ""


@dataclass
class DeleteReminderRequest:
    name: str
    actor_type: str
    actor_id: str


@dataclass
class DeleteTimerRequest:
    name: str
    actor_type: str
    actor_id: str


@dataclass
class GetReminderRequest:
    name: str
    actor_type: str
    actor_id: str


class _Actors(Protocol):
    def call(self, req: CallRequest) -> CallResponse: ...
    def create_reminder(self, req: CreateReminderRequest) -> None: ...
    def create_timer(self, req: CreateTimerRequest) -> None: ...
    def delete_reminder(self, req: DeleteReminderRequest) -> None: ...
    def delete_timer(self, req: DeleteTimerRequest) -> None: ...
    def get_reminder(self, req: GetReminderRequest) -> Any: ...
    def is_actor_hosted(self, req: ActorHostedRequest) -> bool: ...
    def save_state(self, req: SaveStateRequest) -> None: ...
    def get_state(self, req: GetStateRequest) -> StateResponse: ...
    def delete_state(self, req: DeleteStateRequest) -> None: ...
    def transactional_state_operation(self, req: TransactionalRequest) -> None: ...


def _string_field(obj: dict, name: str) -> str:
    value = obj.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


def _parse_object(body: bytes) -> dict:
    obj = json.loads(body)
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ValueError("request body must be a JSON object")
    return obj


def _parse_operations(body: bytes) -> list[TransactionalOperation]:
    items = json.loads(body)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError("request body must be a JSON array")
    return [TransactionalOperation.from_dict(item) for item in items]


class ActorHandlers:
    """Serves the actor endpoints on top of an actor runtime."""

    def __init__(self, actor: _Actors | None = None) -> None:
        self.actor = actor

    def actor_endpoints(self) -> list[Endpoint]:
        """Return the actor routes and their handlers."""
        base = "actors/<actorType>/<actorId>"
        return [
            Endpoint([POST, PUT], f"{base}/state", API_VERSION_V1, self.on_actor_state_transaction),
            Endpoint([GET, POST, DELETE, PUT], f"{base}/method/<method>", API_VERSION_V1, self.on_direct_actor_message),
            Endpoint([POST, PUT], f"{base}/state/<key>", API_VERSION_V1, self.on_save_actor_state),
            Endpoint([GET], f"{base}/state/<key>", API_VERSION_V1, self.on_get_actor_state),
            Endpoint([DELETE], f"{base}/state/<key>", API_VERSION_V1, self.on_delete_actor_state),
            Endpoint([POST, PUT], f"{base}/reminders/<name>", API_VERSION_V1, self.on_create_actor_reminder),
            Endpoint([POST, PUT], f"{base}/timers/<name>", API_VERSION_V1, self.on_create_actor_timer),
            Endpoint([DELETE], f"{base}/reminders/<name>", API_VERSION_V1, self.on_delete_actor_reminder),
            Endpoint([DELETE], f"{base}/timers/<name>", API_VERSION_V1, self.on_delete_actor_timer),
            Endpoint([GET], f"{base}/reminders/<name>", API_VERSION_V1, self.on_get_actor_reminder),
        ]

    def _runtime(self, ctx: RequestContext) -> _Actors | None:
        if self.actor is None:
            respond_with_error(ctx, 400, ErrorResponse("ERR_ACTOR_RUNTIME_NOT_FOUND"))
        return self.actor

    @staticmethod
    def _ids(ctx: RequestContext) -> tuple[str, str]:
        return ctx.param(ACTOR_TYPE_PARAM), ctx.param(ACTOR_ID_PARAM)

    @staticmethod
    def _hosted(ctx: RequestContext, actor: _Actors, actor_type: str, actor_id: str) -> bool:
        if actor.is_actor_hosted(ActorHostedRequest(actor_type=actor_type, actor_id=actor_id)):
            return True
        respond_with_error(ctx, 400, ErrorResponse("ERR_ACTOR_INSTANCE_MISSING"))
        return False

    @staticmethod
    def _run(ctx: RequestContext, error_code: str, success_code: int, action) -> None:
        try:
            action()
        except Exception as exc:
            respond_with_error(ctx, 500, ErrorResponse(error_code, str(exc)))
        else:
            respond_empty(ctx, success_code)

    def on_actor_state_transaction(self, ctx: RequestContext) -> None:
        """Apply a batch of state operations to a hosted actor."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        if not self._hosted(ctx, actor, actor_type, actor_id):
            return
        try:
            operations = _parse_operations(ctx.body)
        except ValueError as exc:
            respond_with_error(ctx, 400, ErrorResponse("ERR_MALFORMED_REQUEST", str(exc)))
            return
        req = TransactionalRequest(actor_type=actor_type, actor_id=actor_id, operations=operations)
        self._run(ctx, "ERR_ACTOR_STATE_TRANSACTION", 201, lambda: actor.transactional_state_operation(req))

    def on_direct_actor_message(self, ctx: RequestContext) -> None:
        """Invoke a method on an actor."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        req = CallRequest(
            actor_type=actor_type,
            actor_id=actor_id,
            method=ctx.param(METHOD_PARAM),
            metadata={},
            data=ctx.body,
        )
        encode_headers(ctx, req.metadata)
        try:
            resp = actor.call(req)
        except Exception as exc:
            respond_with_error(ctx, 500, ErrorResponse("ERR_INVOKE_ACTOR", str(exc)))
            return
        status = get_status_code_from_metadata(resp.metadata)
        apply_headers(resp.metadata, ctx)
        respond_with_json(ctx, status, resp.data)

    def on_save_actor_state(self, ctx: RequestContext) -> None:
        """Save one state value of a hosted actor; the body must be JSON."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        if not self._hosted(ctx, actor, actor_type, actor_id):
            return
        try:
            value = json.loads(ctx.body)
        except ValueError as exc:
            respond_with_error(ctx, 400, ErrorResponse("ERR_DESERIALIZE_HTTP_BODY", str(exc)))
            return
        req = SaveStateRequest(
            actor_type=actor_type, actor_id=actor_id, key=ctx.param(STATE_KEY_PARAM), value=value
        )
        self._run(ctx, "ERR_ACTOR_SAVE_STATE", 201, lambda: actor.save_state(req))

    def on_get_actor_state(self, ctx: RequestContext) -> None:
        """Return one state value of an actor."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        req = GetStateRequest(actor_type=actor_type, actor_id=actor_id, key=ctx.param(STATE_KEY_PARAM))
        try:
            resp = actor.get_state(req)
        except Exception as exc:
            respond_with_error(ctx, 500, ErrorResponse("ERR_ACTOR_GET_STATE", str(exc)))
            return
        respond_with_json(ctx, 200, resp.data)

    def on_delete_actor_state(self, ctx: RequestContext) -> None:
        """Delete one state value of a hosted actor."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        if not self._hosted(ctx, actor, actor_type, actor_id):
            return
        req = DeleteStateRequest(actor_type=actor_type, actor_id=actor_id, key=ctx.param(STATE_KEY_PARAM))
        self._run(ctx, "ERR_ACTOR_DELETE_STATE", 200, lambda: actor.delete_state(req))

    def on_create_actor_reminder(self, ctx: RequestContext) -> None:
        """Register a reminder for an actor."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        try:
            obj = _parse_object(ctx.body)
            req = CreateReminderRequest(
                data=obj.get("data"),
                due_time=_string_field(obj, "dueTime"),
                period=_string_field(obj, "period"),
            )
        except ValueError as exc:
            respond_with_error(ctx, 400, ErrorResponse("ERR_MALFORMED_REQUEST", str(exc)))
            return
        req.name = ctx.param(NAME_PARAM)
        req.actor_type = actor_type
        req.actor_id = actor_id
        self._run(ctx, "ERR_CREATE_REMINDER", 200, lambda: actor.create_reminder(req))

    def on_create_actor_timer(self, ctx: RequestContext) -> None:
        """Register a timer for an actor."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        try:
            obj = _parse_object(ctx.body)
            req = CreateTimerRequest(
                data=obj.get("data"),
                due_time=_string_field(obj, "dueTime"),
                period=_string_field(obj, "period"),
                callback=_string_field(obj, "callback"),
            )
        except ValueError as exc:
            respond_with_error(ctx, 400, ErrorResponse("ERR_MALFORMED_REQUEST", str(exc)))
            return
        req.name = ctx.param(NAME_PARAM)
        req.actor_type = actor_type
        req.actor_id = actor_id
        self._run(ctx, "ERR_CREATE_TIMER", 200, lambda: actor.create_timer(req))

    def on_delete_actor_reminder(self, ctx: RequestContext) -> None:
        """Remove a reminder of an actor."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        req = DeleteReminderRequest(name=ctx.param(NAME_PARAM), actor_type=actor_type, actor_id=actor_id)
        self._run(ctx, "ERR_DELETE_REMINDER", 200, lambda: actor.delete_reminder(req))

    def on_delete_actor_timer(self, ctx: RequestContext) -> None:
        """Remove a timer of an actor."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        req = DeleteTimerRequest(name=ctx.param(NAME_PARAM), actor_type=actor_type, actor_id=actor_id)
        self._run(ctx, "ERR_DELETE_TIMER", 200, lambda: actor.delete_timer(req))

    def on_get_actor_reminder(self, ctx: RequestContext) -> None:
        """Return a reminder of an actor as JSON; a failed lookup yields null."""
        actor = self._runtime(ctx)
        if actor is None:
            return
        actor_type, actor_id = self._ids(ctx)
        req = GetReminderRequest(name=ctx.param(NAME_PARAM), actor_type=actor_type, actor_id=actor_id)
        try:
            resp = actor.get_reminder(req)
        except Exception as exc:
            log.debug("reminder lookup failed: %s", exc)
            resp = None
        try:
            body = serialize_to_json(resp)[:-1]
        except (TypeError, ValueError) as exc:
            respond_with_error(ctx, 500, ErrorResponse("ERR_ACTOR_GET_REMINDER", str(exc)))
            return
        respond_with_json(ctx, 200, body)