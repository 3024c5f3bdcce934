"""Direct service-to-service invocation, local or through a remote sidecar."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .runtime_config import DaprMode

REMOTE_CALL_TIMEOUT = 60.0


@dataclass
class DirectMessageRequest:
    """A request to invoke a method on an application."""

    target: str
    method: str
    metadata: dict[str, str] = field(default_factory=dict)
    data: bytes = b""
    from_id: str = ""


@dataclass
class DirectMessageResponse:
    """The result of invoking a method on an application."""

    data: bytes = b""
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class InvokeRequest:
    """A request handed to the local application channel."""

    method: str
    payload: bytes = b""
    metadata: dict[str, str] = field(default_factory=dict)


class _AppChannel(Protocol):
    def invoke_method(self, req: InvokeRequest) -> Any: ...


class _RemoteConnection(Protocol):
    def call_local(self, method: str, data: bytes, metadata: dict[str, str], timeout: float) -> Any: ...


class DirectMessaging:
    """Invokes the local app directly, or a remote app through its sidecar."""

    def __init__(
        self,
        dapr_id: str,
        namespace: str,
        port: int,
        mode: DaprMode | str,
        app_channel: _AppChannel | None,
        connection_factory: Callable[[str], _RemoteConnection],
        port_lookup: Callable[[str], int] | None = None,
    ) -> None:
        self._dapr_id = dapr_id
        self._namespace = namespace
        self._grpc_port = port
        self._mode = mode
        self._app_channel = app_channel
        self._connection_factory = connection_factory
        self._port_lookup = port_lookup

    def invoke(self, req: DirectMessageRequest) -> DirectMessageResponse:
        """Invoke the target of ``req``, locally when it names this sidecar."""
        if req.target == self._dapr_id:
            return self._invoke_local(req)
        return self._invoke_remote(req)

    def _invoke_local(self, req: DirectMessageRequest) -> DirectMessageResponse:
        if self._app_channel is None:
            raise RuntimeError("cannot invoke local endpoint: app channel not initialized")
        resp = self._app_channel.invoke_method(
            InvokeRequest(method=req.method, payload=req.data, metadata=req.metadata)
        )
        return DirectMessageResponse(data=resp.data, metadata=resp.metadata)

    def _invoke_remote(self, req: DirectMessageRequest) -> DirectMessageResponse:
        address = self.get_address(req.target)
        conn = self._connection_factory(address)
        resp = conn.call_local(
            method=req.method,
            data=req.data,
            metadata=req.metadata,
            timeout=REMOTE_CALL_TIMEOUT,
        )
        return DirectMessageResponse(data=resp.data, metadata=resp.metadata)

    def get_address(self, target: str) -> str:
        """Return the address of the sidecar serving ``target``."""
        try:
            mode = DaprMode(self._mode)
        except ValueError:
            mode = None

        if mode is DaprMode.KUBERNETES:
            return f"{target}-dapr.{self._namespace}.svc.cluster.local:{self._grpc_port}"
        if mode is DaprMode.STANDALONE:
            if self._port_lookup is None:
                raise RuntimeError("no port lookup configured for standalone mode")
            return f"localhost:{self._port_lookup(target)}"

        name = self._mode.value if isinstance(self._mode, DaprMode) else self._mode
        raise ValueError(f"remote calls not supported for {name} mode")