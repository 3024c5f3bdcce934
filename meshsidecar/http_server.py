"""WSGI routing for the sidecar HTTP API and the server that hosts it."""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from typing import Iterable

from werkzeug.exceptions import HTTPException
from werkzeug.routing import BaseConverter, Map, Rule
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from .http_types import Endpoint, RequestContext, ServerConfig

log = logging.getLogger(__name__)

_WILDCARD = "<rest:wildcard>"


class _RestConverter(BaseConverter):
    """Matches the rest of the path, slashes included, possibly empty."""

    regex = ".*"
    part_isolating = False
    weight = 200


def _to_rule(path: str) -> str:
    return path.replace("*", _WILDCARD)


class Router:
    """A WSGI application dispatching requests to API endpoints, with CORS support."""

    def __init__(self, endpoints: Iterable[Endpoint], allowed_origins: Iterable[str] = ("*",)) -> None:
        endpoints = list(endpoints)
        self._handlers = [e.handler for e in endpoints]
        self._allowed_origins = list(allowed_origins)
        self._map = Map(
            [Rule(_to_rule(e.path), endpoint=i, methods=e.methods) for i, e in enumerate(endpoints)],
            converters={"rest": _RestConverter},
        )

    def _origin_allowed(self, origin: str) -> bool:
        return "*" in self._allowed_origins or origin in self._allowed_origins

    def __call__(self, environ, start_response):
        request = Request(environ)
        origin = request.headers.get("Origin", "")
        cors = (
            [("Access-Control-Allow-Origin", origin), ("Vary", "Origin")]
            if origin and self._origin_allowed(origin)
            else []
        )

        requested_method = request.headers.get("Access-Control-Request-Method", "")
        if request.method == "OPTIONS" and origin and requested_method:
            response = Response(status=200)
            if cors:
                response.headers["Access-Control-Allow-Methods"] = requested_method
                requested_headers = request.headers.get("Access-Control-Request-Headers", "")
                if requested_headers:
                    response.headers["Access-Control-Allow-Headers"] = requested_headers
        else:
            adapter = self._map.bind_to_environ(environ)
            try:
                index, params = adapter.match()
            except HTTPException as exc:
                response = exc.get_response(environ)
            else:
                response = self._dispatch(request, index, params)

        for name, value in cors:
            response.headers[name] = value
        return response(environ, start_response)

    def _dispatch(self, request: Request, index: int, params: dict) -> Response:
        ctx = RequestContext(
            method=request.method,
            path=request.path,
            body=request.get_data(),
            params={k: str(v) for k, v in params.items()},
            query_string=request.query_string.decode("latin-1"),
            headers=list(request.headers.items()),
        )
        try:
            self._handlers[index](ctx)
        except Exception:
            log.exception("handler for %s %s failed", request.method, request.path)
            return Response("internal server error", status=500, mimetype="text/plain")
        return Response(
            ctx.response.body,
            status=ctx.response.status_code,
            headers=list(ctx.response.headers.items()),
        )


def build_router(endpoints: Iterable[Endpoint], allowed_origins: str | Iterable[str]) -> Router:
    """Build a router; ``allowed_origins`` may be a comma separated string."""
    if isinstance(allowed_origins, str):
        allowed_origins = allowed_origins.split(",")
    return Router(endpoints, allowed_origins)


def _profile_app(environ, start_response):
    names = {t.ident: t.name for t in threading.enumerate()}
    chunks = [
        f"thread {names.get(ident, ident)}:\n" + "".join(traceback.format_stack(frame))
        for ident, frame in sys._current_frames().items()
    ]
    body = "\n".join(chunks).encode("utf-8")
    start_response(
        "200 OK",
        [("Content-Type", "text/plain; charset=utf-8"), ("Content-Length", str(len(body)))],
    )
    return [body]


class HttpServer:
    """Serves the API endpoints, and optionally a thread-stack profile, in the background."""

    def __init__(self, api, config: ServerConfig, host: str = "0.0.0.0") -> None:
        self._api = api
        self._config = config
        self._host = host
        self._server = None
        self._profile_server = None
        self._threads: list[threading.Thread] = []

    @property
    def port(self) -> int:
        """The port the API is served on."""
        return self._server.server_port if self._server is not None else self._config.port

    @property
    def profile_port(self) -> int:
        """The port the profile is served on."""
        if self._profile_server is not None:
            return self._profile_server.server_port
        return self._config.profile_port

    def start_non_blocking(self) -> None:
        """Bind the listening sockets and serve requests on background threads."""
        if self._server is not None:
            raise RuntimeError("server already started")
        router = build_router(self._api.endpoints(), self._config.allowed_origins)
        self._server = make_server(self._host, self._config.port, router, threaded=True)
        servers = [("api", self._server)]
        if self._config.enable_profiling:
            self._profile_server = make_server(
                self._host, self._config.profile_port, _profile_app, threaded=True
            )
            log.info("starting profiling server on port %s", self._profile_server.server_port)
            servers.append(("profile", self._profile_server))
        for name, server in servers:
            thread = threading.Thread(target=server.serve_forever, name=f"http-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def shutdown(self) -> None:
        """Stop serving and close the sockets."""
        for server in (self._server, self._profile_server):
            if server is not None:
                server.shutdown()
                server.server_close()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        self._server = None
        self._profile_server = None