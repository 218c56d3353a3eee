#!/usr/bin/env python3
"""
Line-delimited JSON-RPC MCP server used by the integration tests.

usage: fake_mcp_server.py [normal|reverse|silent|init-error]

normal      answers everything immediately
reverse     holds tools/call requests until two are pending, then answers the newest first
silent      reads stdin and never answers
init-error  rejects initialize with a JSON-RPC error
"""
import json
import sys

MODE = sys.argv[1] if len(sys.argv) > 1 else "normal"

TOOLS = [
    {"name": "echo", "description": "Echo text back",
     "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}},
    {"name": "search", "description": "Search for a query",
     "inputSchema": {"type": "object", "properties": {"query": {"type": "string"}}}},
    {"name": "broken", "description": "Missing its input schema"},
]

RESOURCES = [
    {"uri": "file:///notes.txt", "name": "notes.txt", "mimeType": "text/plain"},
    {"name": "no-uri"},
]


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def result(request_id, payload):
    send({"jsonrpc": "2.0", "id": request_id, "result": payload})


def text(request_id, value):
    result(request_id, {"content": [{"type": "text", "text": value}]})


def call_tool(request_id, params):
    name = params.get("name")
    args = params.get("arguments") or {}
    if name == "echo":
        text(request_id, args.get("text", ""))
    elif name == "search":
        text(request_id, "result:" + args.get("query", ""))
    elif name == "split":
        result(request_id, {"content": [{"type": "text", "text": "A"}, {"type": "text", "text": "B"}]})
    elif name == "complain":
        sys.stderr.write("warning: something FAILED downstream\n")
        sys.stderr.flush()
        text(request_id, "ok")
    elif name == "hang":
        pass
    elif name == "crash":
        sys.exit(3)
    else:
        result(request_id, {"isError": True, "content": [{"type": "text", "text": f"unknown tool {name}"}]})


def main():
    held = []
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        method = message.get("method")
        request_id = message.get("id")
        if MODE == "silent" or request_id is None:
            continue

        if method == "initialize":
            if MODE == "init-error":
                send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32600, "message": "unsupported client"}})
                continue
            # noise a client has to survive
            sys.stdout.write("this is not json\n")
            send({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})
            result(request_id, {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "1.0"},
            })
        elif method == "tools/list":
            result(request_id, {"tools": TOOLS})
        elif method == "resources/list":
            result(request_id, {"resources": RESOURCES})
        elif method == "tools/call":
            if MODE == "reverse":
                held.append((request_id, message.get("params") or {}))
                if len(held) == 2:
                    for rid, params in reversed(held):
                        call_tool(rid, params)
                    held = []
            else:
                call_tool(request_id, message.get("params") or {})
        else:
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Method not found"}})


if __name__ == "__main__":
    main()
