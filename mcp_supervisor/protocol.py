# protocol.py – line-delimited JSON-RPC framing and MCP discovery/result decoding
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import EncodingFailed, InvalidResponse

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------- constants
PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME      = "mcp-supervisor"
CLIENT_VERSION   = "0.4.0"
JSONRPC_VERSION  = "2.0"

NO_TEXT_CONTENT   = "Tool executed successfully but returned no text content."
UNKNOWN_TOOL_FAIL = "Tool execution failed (unknown error)"

JSONValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]


def initialize_params(client_name: str = CLIENT_NAME, client_version: str = CLIENT_VERSION) -> Dict[str, Any]:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {
            "roots": {"list_changed": True},
            "sampling": {},
        },
        "clientInfo": {"name": client_name, "version": client_version},
    }


# -------------------------------------------------------------------- encoding
def _dump_line(message: Dict[str, Any]) -> bytes:
    try:
        return json.dumps(message, ensure_ascii=False).encode("utf-8") + b"\n"
    except (TypeError, ValueError) as e:
        raise EncodingFailed(str(e)) from e


def encode_request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> bytes:
    message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return _dump_line(message)


def encode_notification(method: str, params: Optional[Dict[str, Any]] = None) -> bytes:
    return _dump_line({"jsonrpc": JSONRPC_VERSION, "method": method, "params": params or {}})


# -------------------------------------------------------------------- wire models
class JSONRPCErrorObject(BaseModel):
    code: int = -1
    message: str = "Unknown error"
    data: Any = None


class JSONRPCResponse(BaseModel):
    """One inbound line. `method` is only set for server-initiated traffic."""
    jsonrpc: Optional[str] = JSONRPC_VERSION
    id: Optional[Union[int, str]] = None
    method: Optional[str] = None
    result: Any = None
    error: Optional[JSONRPCErrorObject] = None

    @property
    def success(self) -> bool:
        return self.error is None


def decode_message(line: Union[bytes, str]) -> JSONRPCResponse:
    """Parse one framed line; raises pydantic.ValidationError on anything malformed."""
    return JSONRPCResponse.model_validate_json(line)


class InputSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    properties: Optional[Dict[str, Any]] = None
    required: Optional[List[str]] = None
    items: Optional[Any] = None

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.properties is not None:
            out["properties"] = self.properties
        if self.required is not None:
            out["required"] = list(self.required)
        if self.items is not None:
            out["items"] = self.items
        return out


class Tool(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    description: str
    input_schema: InputSchema = Field(alias="inputSchema")
    server_name: str = ""

    def to_openai_function(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema.to_json(),
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema.to_json(),
            "server": self.server_name,
        }


class Resource(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    server_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
            "server": self.server_name,
        }


# -------------------------------------------------------------------- discovery
def _result_object(response: JSONRPCResponse, what: str) -> Dict[str, Any]:
    if response.error is not None:
        raise InvalidResponse(f"{what}: {response.error.message}")
    if not isinstance(response.result, dict):
        raise InvalidResponse(f"Failed to parse {what}")
    return response.result


def parse_tools(response: JSONRPCResponse, server_name: str) -> List[Tool]:
    """
    Decode a tools/list response. A malformed descriptor is skipped with a
    warning; only a malformed envelope fails the whole call.
    """
    result = _result_object(response, "tools list")
    raw_tools = result.get("tools")
    if not isinstance(raw_tools, list):
        raise InvalidResponse("Failed to parse tools list")

    tools: List[Tool] = []
    for index, raw in enumerate(raw_tools):
        if not isinstance(raw, dict):
            logger.warning(f"{server_name}: skipping tool #{index}: not an object")
            continue
        try:
            tools.append(Tool.model_validate({**raw, "server_name": server_name}))
        except ValidationError as e:
            label = raw.get("name", f"#{index}")
            logger.warning(f"{server_name}: skipping invalid tool {label}: {e.error_count()} validation error(s)")
    return tools


def parse_resources(response: JSONRPCResponse, server_name: str) -> List[Resource]:
    result = _result_object(response, "resources list")
    raw_resources = result.get("resources")
    if not isinstance(raw_resources, list):
        raise InvalidResponse("Failed to parse resources list")

    resources: List[Resource] = []
    for raw in raw_resources:
        if not isinstance(raw, dict):
            continue
        try:
            resources.append(Resource.model_validate({**raw, "server_name": server_name}))
        except ValidationError:
            logger.debug(f"{server_name}: skipping invalid resource {raw!r}")
    return resources


# -------------------------------------------------------------------- tools/call results
def _content_texts(content: List[Any]) -> List[str]:
    return [
        item["text"] for item in content
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
    ]


def _render_item(item: Any) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    kind = item.get("type")
    if kind == "text" and isinstance(item.get("text"), str):
        return item["text"]
    if kind == "image" and isinstance(item.get("mimeType"), str):
        return f"[Image: {item['mimeType']}]"
    if kind == "resource":
        resource = item.get("resource")
        if isinstance(resource, dict) and isinstance(resource.get("uri"), str):
            return f"[Resource: {resource['uri']}]"
    return None


def render_tool_result(response: JSONRPCResponse) -> str:
    """Flatten a tools/call result into the text handed back to callers."""
    if response.error is not None:
        raise InvalidResponse(response.error.message)
    result = response.result
    if not isinstance(result, dict):
        raise InvalidResponse("Failed to parse tool call result")

    content = result.get("content")
    if result.get("isError"):
        if isinstance(content, list):
            texts = _content_texts(content)
            if texts:
                return "Error: " + "\n".join(texts)
        elif isinstance(content, str) and content:
            return "Error: " + content
        return "Error: " + UNKNOWN_TOOL_FAIL

    if isinstance(content, list):
        rendered = [r for r in (_render_item(item) for item in content) if r is not None]
        joined = "\n".join(rendered)
        return joined if joined else NO_TEXT_CONTENT
    if isinstance(content, str):
        return content
    return json.dumps(result, ensure_ascii=False)
