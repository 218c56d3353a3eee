import json

import pytest
from pydantic import ValidationError

from mcp_supervisor.errors import EncodingFailed, InvalidResponse
from mcp_supervisor.protocol import (NO_TEXT_CONTENT, PROTOCOL_VERSION, JSONRPCResponse, decode_message,
                                     encode_notification, encode_request, initialize_params, parse_resources,
                                     parse_tools, render_tool_result)


def response(result=None, error=None, id=1):
    return JSONRPCResponse(id=id, result=result, error=error)


class TestEncoding:

    def test_request_is_one_line_without_null_params(self):
        raw = encode_request(1, "tools/list")
        assert raw.endswith(b"\n") and raw.count(b"\n") == 1
        assert json.loads(raw) == {"jsonrpc": "2.0", "id": 1, "method": "tools/list"}

    def test_request_with_params(self):
        raw = encode_request(5, "tools/call", {"name": "echo", "arguments": {"text": "ü"}})
        assert json.loads(raw)["params"] == {"name": "echo", "arguments": {"text": "ü"}}

    def test_notification_has_no_id(self):
        message = json.loads(encode_notification("notifications/initialized"))
        assert message == {"jsonrpc": "2.0", "method": "notifications/initialized", "params": {}}

    def test_unserializable_params(self):
        with pytest.raises(EncodingFailed):
            encode_request(1, "tools/call", {"arguments": object()})

    def test_initialize_params(self):
        params = initialize_params()
        assert params["protocolVersion"] == PROTOCOL_VERSION
        assert params["capabilities"] == {"roots": {"list_changed": True}, "sampling": {}}
        assert params["clientInfo"]["name"] == "mcp-supervisor"


class TestDecoding:

    def test_error_defaults(self):
        message = decode_message(b'{"id": 4, "error": {}}')
        assert message.error.code == -1
        assert message.error.message == "Unknown error"
        assert not message.success

    @pytest.mark.parametrize("line", [b"nope", b"[1]", b'"text"'])
    def test_malformed_lines_raise_validation_error(self, line):
        with pytest.raises(ValidationError):
            decode_message(line)


class TestDiscovery:

    def test_malformed_tool_is_skipped(self):
        resp = response({"tools": [
            {"name": "search", "description": "Search", "inputSchema": {"type": "object", "properties": {}}},
            {"name": "broken", "description": "no schema"},
        ]})
        tools = parse_tools(resp, "web")
        assert [t.name for t in tools] == ["search"]
        assert tools[0].server_name == "web"

    def test_missing_tools_array_fails_the_call(self):
        with pytest.raises(InvalidResponse):
            parse_tools(response({"items": []}), "web")

    def test_error_response_fails_the_call(self):
        with pytest.raises(InvalidResponse, match="Method not found"):
            parse_tools(decode_message(b'{"id":1,"error":{"code":-32601,"message":"Method not found"}}'), "web")

    def test_resources_without_uri_or_name_are_skipped(self):
        resp = response({"resources": [
            {"uri": "file:///a", "name": "a", "mimeType": "text/plain"},
            {"name": "no-uri"},
            {"uri": "file:///no-name"},
            "junk",
        ]})
        resources = parse_resources(resp, "fs")
        assert len(resources) == 1
        assert resources[0].mime_type == "text/plain"
        assert resources[0].to_dict()["server"] == "fs"


class TestRenderToolResult:

    def test_text_items_joined_with_newlines(self):
        result = {"content": [{"type": "text", "text": "A"}, {"type": "text", "text": "B"}]}
        assert render_tool_result(response(result)) == "A\nB"

    def test_placeholders_for_images_and_resources(self):
        result = {"content": [
            {"type": "text", "text": "see"},
            {"type": "image", "mimeType": "image/png", "data": "..."},
            {"type": "resource", "resource": {"uri": "file:///x"}},
            {"type": "audio"},
        ]}
        assert render_tool_result(response(result)) == "see\n[Image: image/png]\n[Resource: file:///x]"

    def test_string_content(self):
        assert render_tool_result(response({"content": "plain"})) == "plain"

    def test_empty_content(self):
        assert render_tool_result(response({"content": []})) == NO_TEXT_CONTENT

    def test_unrecognized_shape_is_reserialized(self):
        assert json.loads(render_tool_result(response({"value": 42}))) == {"value": 42}

    def test_is_error_with_text(self):
        result = {"isError": True, "content": [{"type": "text", "text": "disk full"}]}
        assert render_tool_result(response(result)) == "Error: disk full"

    def test_is_error_without_text(self):
        assert render_tool_result(response({"isError": True, "content": []})) == \
            "Error: Tool execution failed (unknown error)"

    def test_protocol_error_raises(self):
        with pytest.raises(InvalidResponse):
            render_tool_result(decode_message(b'{"id":1,"error":{"message":"boom"}}'))

    def test_non_object_result_raises(self):
        with pytest.raises(InvalidResponse):
            render_tool_result(response(["a"]))
