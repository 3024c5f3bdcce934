import base64
import json

import pytest

from meshsidecar.http_types import (
    API_VERSION_V1,
    HTTP_STATUS_CODE,
    JSON_CONTENT_TYPE,
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
    respond_with_string,
    serialize_to_json,
)


def test_encode_headers_joins_request_headers():
    ctx = RequestContext(headers=[("H1", "v1"), ("H2", "v2")])
    metadata = {}
    encode_headers(ctx, metadata)
    assert metadata["headers"] == "H1&__header_equals__&v1&__header_delim__&H2&__header_equals__&v2"


def test_encode_headers_without_headers_leaves_metadata_alone():
    metadata = {"x": "y"}
    encode_headers(RequestContext(), metadata)
    assert metadata == {"x": "y"}


def test_apply_headers_round_trip():
    source = RequestContext(headers=[("X-One", "1"), ("X-Two", "2")])
    metadata = {}
    encode_headers(source, metadata)
    target = RequestContext()
    apply_headers(metadata, target)
    assert target.response.headers == {"X-One": "1", "X-Two": "2"}


def test_apply_headers_with_no_metadata():
    ctx = RequestContext()
    apply_headers(None, ctx)
    apply_headers({"other": "value"}, ctx)
    assert ctx.response.headers == {}


def test_apply_headers_rejects_malformed_entry():
    with pytest.raises(ValueError):
        apply_headers({"headers": "no-separator"}, RequestContext())


@pytest.mark.parametrize(
    "metadata, expected",
    [
        ({HTTP_STATUS_CODE: "404"}, 404),
        ({HTTP_STATUS_CODE: "201"}, 201),
        ({}, 200),
        (None, 200),
        ({HTTP_STATUS_CODE: "abc"}, 200),
        ({HTTP_STATUS_CODE: " 404"}, 200),
        ({HTTP_STATUS_CODE: ""}, 200),
    ],
)
def test_get_status_code_from_metadata(metadata, expected):
    assert get_status_code_from_metadata(metadata) == expected


def test_error_response_to_json_round_trip():
    err = ErrorResponse("ERR_STATE_STORE_NOT_FOUND", "missing")
    assert json.loads(err.to_json()) == {"errorCode": "ERR_STATE_STORE_NOT_FOUND", "message": "missing"}


def test_error_response_escapes_html():
    err = ErrorResponse("ERR_X", "<a & b>")
    raw = err.to_json()
    assert b"<" not in raw and b"&" not in raw
    assert json.loads(raw)["message"] == "<a & b>"


def test_serialize_to_json_does_not_escape_html():
    raw = serialize_to_json({"tag": "<b>&"})
    assert raw.endswith(b"\n")
    assert b"<b>&" in raw
    assert json.loads(raw) == {"tag": "<b>&"}


def test_serialize_to_json_encodes_bytes_as_base64():
    data = bytes([1, 2, 3, 6, 16])
    assert json.loads(serialize_to_json(data)) == base64.b64encode(data).decode()


def test_serialize_to_json_rejects_nan():
    with pytest.raises(ValueError):
        serialize_to_json(float("nan"))


def test_respond_with_json():
    ctx = RequestContext()
    respond_with_json(ctx, 201, b'{"a":1}')
    assert ctx.response.status_code == 201
    assert ctx.response.header("content-type") == JSON_CONTENT_TYPE
    assert ctx.response.body == b'{"a":1}'


def test_respond_with_etagged_json():
    etag = "`~!@#$%^&*()_+-={}[]|\\:\";'<>?,./'"
    ctx = RequestContext()
    respond_with_etagged_json(ctx, 200, b"life is good", etag)
    assert ctx.response.header("ETag") == etag
    assert ctx.response.body == b"life is good"
    assert ctx.response.status_code == 200


def test_respond_with_string():
    ctx = RequestContext()
    respond_with_string(ctx, 200, "fake output")
    assert ctx.response.body == b"fake output"
    assert ctx.response.header("Content-Type") == JSON_CONTENT_TYPE


def test_respond_with_error():
    ctx = RequestContext()
    respond_with_error(ctx, 500, ErrorResponse("ERR_INVOKE_OUTPUT_BINDING", "boom"))
    assert ctx.response.status_code == 500
    assert json.loads(ctx.response.body)["errorCode"] == "ERR_INVOKE_OUTPUT_BINDING"


def test_respond_empty_clears_body():
    ctx = RequestContext()
    respond_with_json(ctx, 200, b"[1]")
    respond_empty(ctx, 204)
    assert ctx.response.body == b""
    assert ctx.response.status_code == 204


def test_output_binding_request_round_trip():
    req = OutputBindingRequest(data="fake output", metadata={"k": "v"})
    assert OutputBindingRequest.from_json(req.to_json()) == req


def test_output_binding_request_null_metadata():
    req = OutputBindingRequest.from_json(b'{"data": "fake output"}')
    assert req.metadata is None
    assert req.data == "fake output"


@pytest.mark.parametrize("raw", [b"[1]", b'{"metadata": {"k": 1}}', b"{bad"])
def test_output_binding_request_rejects_malformed(raw):
    with pytest.raises(ValueError):
        OutputBindingRequest.from_json(raw)


def test_request_context_lookups():
    ctx = RequestContext(
        query_string="param1=val1&param2=val2",
        params={"key": "k1"},
        headers=[("If-Match", "etag1")],
    )
    assert ctx.query_arg("param1") == "val1"
    assert ctx.query_arg("missing") == ""
    assert ctx.param("key") == "k1"
    assert ctx.param("other") == ""
    assert ctx.header("if-match") == "etag1"


def test_endpoint_path():
    endpoint = Endpoint(methods=["GET"], route="state/<key>", version=API_VERSION_V1, handler=lambda ctx: None)
    assert endpoint.path == "/v1.0/state/<key>"