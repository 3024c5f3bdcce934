"""Shared types and response helpers of the sidecar HTTP API."""

from __future__ import annotations

import base64
import json
import re
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Callable, Mapping
from urllib.parse import parse_qs

API_VERSION_V1 = "v1.0"

GET = "GET"
POST = "POST"
PUT = "PUT"
DELETE = "DELETE"

HTTP_STATUS_CODE = "http.status_code"
HTTP_VERB = "http.verb"
QUERY_STRING = "http.query_string"

JSON_CONTENT_TYPE = "application/json"
HEADER_EQUALS = "&__header_equals__&"
HEADER_DELIM = "&__header_delim__&"

_DEFAULT_STATUS = 200
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_ATOI = re.compile(r"[+-]?[0-9]+")
_ALWAYS_ESCAPED = re.compile("[\u2028\u2029]")
_HTML_ESCAPED = re.compile("[<>&\u2028\u2029]")


def _escape(match: re.Match) -> str:
    return f"\\u{ord(match.group()):04x}"


def _default(obj: Any) -> Any:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if is_dataclass(obj) and not isinstance(obj, type):
        return asdict(obj)
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    raise TypeError(f"object of type {type(obj).__name__} is not JSON serializable")


def _dumps(obj: Any, escape_html: bool) -> bytes:
    text = json.dumps(
        obj,
        default=_default,
        ensure_ascii=False,
        allow_nan=False,
        separators=(",", ":"),
    )
    pattern = _HTML_ESCAPED if escape_html else _ALWAYS_ESCAPED
    return pattern.sub(_escape, text).encode("utf-8")


@dataclass
class ServerConfig:
    """Settings of the sidecar HTTP server."""

    allowed_origins: str
    dapr_id: str
    host_address: str
    port: int
    profile_port: int
    enable_profiling: bool = False


@dataclass
class HttpResponse:
    """The response being built for a request."""

    status_code: int = _DEFAULT_STATUS
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def set_header(self, name: str, value: str) -> None:
        """Set ``name`` to ``value``, replacing any header of the same name."""
        lname = name.lower()
        for existing in [k for k in self.headers if k.lower() == lname]:
            del self.headers[existing]
        self.headers[name] = value

    def header(self, name: str) -> str:
        """Return the value of header ``name``, or an empty string."""
        lname = name.lower()
        return next((v for k, v in self.headers.items() if k.lower() == lname), "")


@dataclass
class RequestContext:
    """An incoming request with its route parameters and the response to fill."""

    method: str = GET
    path: str = "/"
    body: bytes = b""
    params: dict[str, str] = field(default_factory=dict)
    query_string: str = ""
    headers: list[tuple[str, str]] = field(default_factory=list)
    response: HttpResponse = field(default_factory=HttpResponse)

    def param(self, name: str) -> str:
        """Return route parameter ``name``, or an empty string."""
        return self.params.get(name, "")

    def query_arg(self, name: str) -> str:
        """Return the first value of query argument ``name``, or an empty string."""
        values = parse_qs(self.query_string, keep_blank_values=True).get(name)
        return values[0] if values else ""

    def header(self, name: str) -> str:
        """Return the first value of request header ``name``, or an empty string."""
        lname = name.lower()
        return next((v for k, v in self.headers if k.lower() == lname), "")


@dataclass
class Endpoint:
    """Route information for one API handler."""

    methods: list[str]
    route: str
    version: str
    handler: Callable[[RequestContext], None]

    @property
    def path(self) -> str:
        """The full route pattern, including the version prefix."""
        return f"/{self.version}/{self.route}"


@dataclass
class ErrorResponse:
    """An error returned to API callers."""

    error_code: str
    message: str = ""

    def to_json(self) -> bytes:
        """Encode the error as a JSON object."""
        return _dumps({"errorCode": self.error_code, "message": self.message}, escape_html=True)


@dataclass
class OutputBindingRequest:
    """A request to invoke an output binding."""

    data: Any = None
    metadata: dict[str, str] | None = None

    @classmethod
    def from_json(cls, raw: bytes | str) -> "OutputBindingRequest":
        """Decode a request; raises ValueError on malformed input."""
        obj = json.loads(raw)
        if obj is None:
            return cls()
        if not isinstance(obj, dict):
            raise ValueError("output binding request must be a JSON object")
        metadata = obj.get("metadata")
        if metadata is not None:
            if not isinstance(metadata, dict) or not all(
                isinstance(v, str) for v in metadata.values()
            ):
                raise ValueError("output binding metadata must map strings to strings")
        return cls(data=obj.get("data"), metadata=metadata)

    def to_json(self) -> bytes:
        """Encode the request as a JSON object."""
        return _dumps({"metadata": self.metadata, "data": self.data}, escape_html=True)


def respond_with_json(ctx: RequestContext, code: int, body: bytes) -> None:
    """Reply with a JSON body."""
    ctx.response.set_header("Content-Type", JSON_CONTENT_TYPE)
    ctx.response.status_code = code
    ctx.response.body = bytes(body) if body is not None else b""


def respond_with_etagged_json(ctx: RequestContext, code: int, body: bytes, etag: str) -> None:
    """Reply with a JSON body and an ETag header."""
    ctx.response.set_header("Content-Type", JSON_CONTENT_TYPE)
    ctx.response.set_header("ETag", etag)
    ctx.response.status_code = code
    ctx.response.body = bytes(body) if body is not None else b""


def respond_with_string(ctx: RequestContext, code: int, body: str) -> None:
    """Reply with a text body labelled as JSON."""
    ctx.response.set_header("Content-Type", JSON_CONTENT_TYPE)
    ctx.response.status_code = code
    ctx.response.body = body.encode("utf-8")


def respond_with_error(ctx: RequestContext, code: int, error: ErrorResponse) -> None:
    """Reply with an encoded error."""
    respond_with_json(ctx, code, error.to_json())


def respond_empty(ctx: RequestContext, code: int) -> None:
    """Reply with no body."""
    ctx.response.body = b""
    ctx.response.status_code = code


def serialize_to_json(obj: Any) -> bytes:
    """Encode ``obj`` as JSON without HTML escaping, followed by a newline."""
    return _dumps(obj, escape_html=False) + b"\n"


def get_status_code_from_metadata(metadata: Mapping[str, str] | None) -> int:
    """Return the HTTP status code carried in ``metadata``, or 200."""
    code = (metadata or {}).get(HTTP_STATUS_CODE, "")
    if code and _ATOI.fullmatch(code):
        value = int(code)
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
    return _DEFAULT_STATUS


def encode_headers(ctx: RequestContext, metadata: dict[str, str]) -> None:
    """Store the request headers of ``ctx`` in ``metadata`` under "headers"."""
    headers = [f"{key}{HEADER_EQUALS}{value}" for key, value in ctx.headers]
    if headers:
        metadata["headers"] = HEADER_DELIM.join(headers)


def apply_headers(metadata: Mapping[str, str] | None, ctx: RequestContext) -> None:
    """Set the headers encoded in ``metadata`` on the response of ``ctx``."""
    if metadata is None or "headers" not in metadata:
        return
    for entry in metadata["headers"].split(HEADER_DELIM):
        parts = entry.split(HEADER_EQUALS)
        if len(parts) < 2:
            raise ValueError(f"malformed header entry: {entry!r}")
        ctx.response.set_header(parts[0], parts[1])