"""HTTP API of the operator serving components and configurations."""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

log = logging.getLogger(__name__)

HTTP_PORT = 6500
_JSON = "application/json"
_LINE_SEPARATORS = re.compile("[\u2028\u2029]")


class _OperatorClient(Protocol):
    def list_components(self) -> list[Any]: ...
    def list_configurations(self) -> list[Mapping[str, Any]]: ...


@dataclass
class TracingSpec:
    """Tracing settings of a configuration."""

    enabled: bool = False
    exporter_type: str = ""
    exporter_address: str = ""
    include_event: bool = False
    include_event_body: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "exporterType": self.exporter_type,
            "exporterAddress": self.exporter_address,
            "includeEvent": self.include_event,
            "includeEventBody": self.include_event_body,
        }

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any] | None) -> "TracingSpec":
        obj = obj or {}
        return cls(
            enabled=bool(obj.get("enabled", False)),
            exporter_type=obj.get("exporterType") or "",
            exporter_address=obj.get("exporterAddress") or "",
            include_event=bool(obj.get("includeEvent", False)),
            include_event_body=bool(obj.get("includeEventBody", False)),
        )


@dataclass
class ConfigurationSpec:
    """The specification part of a configuration."""

    tracing_spec: TracingSpec = field(default_factory=TracingSpec)

    def to_dict(self) -> dict[str, Any]:
        return {"tracing": self.tracing_spec.to_dict()}


@dataclass
class Configuration:
    """A configuration as returned to sidecars."""

    spec: ConfigurationSpec = field(default_factory=ConfigurationSpec)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form."""
        return {"spec": self.spec.to_dict()}


def _default(obj: Any) -> Any:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"object of type {type(obj).__name__} is not JSON serializable")


def encode_json(payload: Any) -> bytes:
    """Encode ``payload`` as JSON without HTML escaping, followed by a newline."""
    text = json.dumps(payload, default=_default, ensure_ascii=False, separators=(",", ":"))
    text = _LINE_SEPARATORS.sub(lambda m: f"\\u{ord(m.group()):04x}", text)
    return text.encode("utf-8") + b"\n"


def _error(code: int, message: str) -> tuple[int, bytes]:
    return code, encode_json({"error": message})


class ApiServer:
    """Serves /components and /configurations/<name> from the cluster client."""

    def __init__(self, client: _OperatorClient, host: str = "0.0.0.0", port: int = HTTP_PORT) -> None:
        self.client = client
        self._host = host
        self._port = port
        self._server = None
        self.ready = threading.Event()
        self._map = Map(
            [
                Rule("/components", endpoint="components", methods=["GET"]),
                Rule("/configurations/<name>", endpoint="configuration", methods=["GET"]),
            ]
        )

    @property
    def port(self) -> int:
        """The port served on; the bound port once running."""
        return self._server.server_port if self._server is not None else self._port

    def get_components(self) -> tuple[int, bytes]:
        """Return the status code and JSON body listing all components."""
        try:
            components = self.client.list_components()
        except Exception as exc:
            message = f"error getting components: {exc}"
            log.error("%s", message)
            return _error(500, message)
        return 200, encode_json(list(components))

    def get_configuration(self, name: str) -> tuple[int, bytes]:
        """Return the status code and JSON body of the named configuration, or null."""
        try:
            configs = self.client.list_configurations()
        except Exception as exc:
            log.error("Error getting configuration: %s", exc)
            return _error(500, f"Error getting configurations from kube-client: {exc}")
        for config in configs:
            if ((config or {}).get("metadata") or {}).get("name") == name:
                spec = (config.get("spec") or {})
                result = Configuration(ConfigurationSpec(TracingSpec.from_dict(spec.get("tracing"))))
                return 200, encode_json(result)
        return 200, encode_json(None)

    def __call__(self, environ, start_response):
        adapter = self._map.bind_to_environ(environ)
        try:
            endpoint, args = adapter.match()
        except HTTPException as exc:
            return exc.get_response(environ)(environ, start_response)
        Request(environ)
        if endpoint == "components":
            status, body = self.get_components()
        else:
            status, body = self.get_configuration(args["name"])
        return Response(body, status=status, content_type=_JSON)(environ, start_response)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Serve until ``stop_event`` is set or the server fails."""
        try:
            self._server = make_server(self._host, self._port, self, threaded=True)
        except Exception as exc:
            log.error("API Server error: %s", exc)
            return
        server = self._server
        done = threading.Event()

        if stop_event is not None:
            def _watch() -> None:
                while not done.is_set():
                    if stop_event.wait(0.1):
                        log.info("API server is shutting down")
                        server.shutdown()
                        return

            threading.Thread(target=_watch, name="operator-api-stop", daemon=True).start()

        self.ready.set()
        try:
            server.serve_forever()
        except Exception as exc:
            log.error("API Server error: %s", exc)
        finally:
            done.set()
            server.server_close()