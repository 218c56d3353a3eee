"""
OpenAI-style function export for discovered tools.

Vertex AI / Gemini reject several JSON Schema constructs that MCP servers
happily emit:
- array types like ["object", "null"] ("Proto field is not repeating")
- nesting beyond ~6-9 levels
- anyOf / oneOf
- most string formats (only "enum" and "date-time" survive)
`sanitize_parameters` rewrites a schema into that subset.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List

from .protocol import Tool

MAX_SCHEMA_DEPTH  = 6
SUPPORTED_FORMATS = ("enum", "date-time")


def function_schema(tools: Iterable[Tool], sanitize: bool = False) -> List[Dict[str, Any]]:
    out = []
    for tool in tools:
        entry = tool.to_openai_function()
        if sanitize:
            entry["function"]["parameters"] = sanitize_parameters(entry["function"]["parameters"])
        out.append(entry)
    return out


def sanitize_parameters(schema: Any, max_depth: int = MAX_SCHEMA_DEPTH) -> Any:
    return _sanitize(schema, max_depth, 0)


def _sanitize(schema: Any, max_depth: int, depth: int) -> Any:
    if depth >= max_depth:
        return {"type": "string", "description": "Complex nested data (simplified for compatibility)"}
    if not isinstance(schema, dict):
        return schema

    out: Dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, list):
            out[key] = _first_concrete_type(value)
        elif key == "format":
            if value in SUPPORTED_FORMATS:
                out[key] = value
        elif key in ("anyOf", "oneOf"):
            out.update(_collapse_union(value, max_depth, depth))
        elif key == "properties" and isinstance(value, dict):
            out[key] = {name: _sanitize(prop, max_depth, depth + 1) for name, prop in value.items()}
        elif isinstance(value, dict):
            out[key] = _sanitize(value, max_depth, depth + 1)
        elif isinstance(value, list):
            out[key] = [_sanitize(v, max_depth, depth + 1) if isinstance(v, dict) else v for v in value]
        else:
            out[key] = value
    return out


def _first_concrete_type(types: list) -> str:
    for t in types:
        if t != "null":
            return t
    return "string"


def _collapse_union(options: Any, max_depth: int, depth: int) -> Dict[str, Any]:
    if isinstance(options, list) and options and isinstance(options[0], dict):
        return _sanitize(options[0], max_depth, depth)
    return {"type": "string", "description": "Union type (simplified for compatibility)"}
