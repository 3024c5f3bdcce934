"""Admission webhook that injects the sidecar container into pods."""

from __future__ import annotations

import base64
import json
import logging
import threading
from typing import Any

from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from .injector_config import InjectorConfig
from .pod_patch import get_pod_patch_operations

log = logging.getLogger(__name__)

PORT = 4000
_JSON = "application/json"
_TEXT = "text/plain; charset=utf-8"


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


class Injector:
    """Serves the mutating admission webhook on /mutate."""

    def __init__(self, config: InjectorConfig, host: str = "", port: int = PORT) -> None:
        self.config = config
        self._host = host
        self._port = port

    @property
    def address(self) -> str:
        """The address the webhook listens on."""
        return f"{self._host}:{self._port}"

    def handle_admission(self, body: bytes, content_type: str) -> tuple[int, bytes]:
        """Answer one admission review; returns the status code and the response body."""
        body = bytes(body or b"")
        if not body:
            log.error("empty body")
            return 400, b"empty body\n"
        if content_type != _JSON:
            log.error("Content-Type=%s, expect application/json", content_type)
            return 415, b"invalid Content-Type, expect `application/json`\n"

        request: Any = None
        try:
            review = json.loads(body)
            if not isinstance(review, dict):
                raise ValueError("admission review must be a JSON object")
            request = review.get("request")
            if not isinstance(request, dict):
                request = None
                raise ValueError("admission review has no request")
            kind_obj = request.get("kind")
            kind = kind_obj.get("kind", "") if isinstance(kind_obj, dict) else ""
            if kind != "Pod":
                raise ValueError(f"invalid kind for review: {review.get('kind', '')}")
            patch_ops = get_pod_patch_operations(review, self.config.namespace, self.config.sidecar_image)
        except ValueError as exc:
            log.error("%s", exc)
            result: dict[str, Any] = {
                "allowed": False,
                "status": {"metadata": {}, "message": str(exc)},
            }
        else:
            if not patch_ops:
                result = {"allowed": True}
            else:
                patch = _dumps([op.to_dict() for op in patch_ops])
                log.info("AdmissionResponse: patch=%s", patch.decode("utf-8"))
                result = {
                    "allowed": True,
                    "patch": base64.b64encode(patch).decode("ascii"),
                    "patchType": "JSONPatch",
                }

        uid = request.get("uid", "") if request is not None else ""
        response = {"uid": uid, **result}
        try:
            encoded = _dumps({"response": response})
        except (TypeError, ValueError) as exc:
            log.error("can't encode response: %s", exc)
            return 500, f"could not encode response: {exc}\n".encode("utf-8")
        log.info("ready to write response ...")
        return 200, encoded

    def __call__(self, environ, start_response):
        request = Request(environ)
        if request.path != "/mutate":
            response = Response("404 page not found\n", status=404, content_type=_TEXT)
        else:
            status, body = self.handle_admission(
                request.get_data(), request.headers.get("Content-Type", "")
            )
            response = Response(body, status=status, content_type=_JSON if status == 200 else _TEXT)
        return response(environ, start_response)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Serve over TLS until ``stop_event`` is set or the server fails."""
        try:
            server = make_server(
                self._host or "0.0.0.0",
                self._port,
                self,
                threaded=True,
                ssl_context=(self.config.tls_cert_file, self.config.tls_key_file),
            )
        except Exception as exc:
            log.error("Sidecar injector error: %s", exc)
            return

        if stop_event is not None:
            def _watch() -> None:
                stop_event.wait()
                log.info("Sidecar injector is shutting down")
                server.shutdown()

            threading.Thread(target=_watch, name="injector-stop", daemon=True).start()

        log.info("Sidecar injector is listening on %s, patching Dapr-enabled pods", self.address)
        try:
            server.serve_forever()
        except Exception as exc:
            log.error("Sidecar injector error: %s", exc)
        finally:
            server.server_close()