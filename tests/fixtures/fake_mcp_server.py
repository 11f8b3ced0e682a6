"""Minimal MCP server speaking newline-delimited JSON-RPC on stdio.

Behaviour switches (environment):
    FAKE_MCP_EXIT_ON_START=<code>  exit before answering anything
    FAKE_MCP_SILENT=1              never answer initialize
"""

import json
import os
import sys
import time

TOOLS_PAGE_1 = [
    {"name": "echo", "description": "Echo text back", "inputSchema": {"type": "object"}},
]
TOOLS_PAGE_2 = [
    {"name": "crash", "description": "Exit the process", "inputSchema": {"type": "object"}},
    {"name": "fail", "description": "Report a tool error", "inputSchema": {"type": "object"}},
    {"name": "sleep", "description": "Sleep, then answer", "inputSchema": {"type": "object"}},
]
RESOURCES = [{"uri": "file:///readme.md", "name": "readme", "mimeType": "text/markdown"}]


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def result(request_id, value):
    send({"jsonrpc": "2.0", "id": request_id, "result": value})


def error(request_id, code, message):
    send({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})


def call_tool(request_id, params):
    name = params.get("name")
    arguments = params.get("arguments") or {}
    if name == "echo":
        text = str(arguments.get("text", ""))
        result(request_id, {"content": [{"type": "text", "text": text}], "structuredContent": {"text": text}})
    elif name == "crash":
        sys.stderr.write("fatal: crash tool invoked\n")
        sys.stderr.flush()
        os._exit(int(arguments.get("code", 7)))
    elif name == "fail":
        result(request_id, {"content": [{"type": "text", "text": "tool failed"}], "isError": True})
    elif name == "sleep":
        time.sleep(float(arguments.get("seconds", 0.1)))
        result(request_id, {"content": [{"type": "text", "text": "awake"}]})
    else:
        error(request_id, -32602, f"Unknown tool: {name}")


def main():
    exit_code = os.environ.get("FAKE_MCP_EXIT_ON_START")
    if exit_code:
        sys.stderr.write("fatal: refusing to start\n")
        sys.stderr.flush()
        sys.exit(int(exit_code))

    sys.stderr.write("fake server starting\n")
    sys.stderr.flush()
    # Not JSON-RPC: must be treated as plain output
    sys.stdout.write("fake server banner\n")
    sys.stdout.flush()

    silent = os.environ.get("FAKE_MCP_SILENT") == "1"
    while True:
        line = sys.stdin.readline()
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        method = message.get("method")
        request_id = message.get("id")
        if request_id is None:
            continue
        if method == "initialize":
            if silent:
                continue
            result(request_id, {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
                "serverInfo": {"name": "fake-mcp", "version": "1.0.0"},
            })
        elif method == "ping":
            result(request_id, {})
        elif method == "tools/list":
            cursor = (message.get("params") or {}).get("cursor")
            if cursor == "page-2":
                result(request_id, {"tools": TOOLS_PAGE_2})
            else:
                result(request_id, {"tools": TOOLS_PAGE_1, "nextCursor": "page-2"})
        elif method == "resources/list":
            result(request_id, {"resources": RESOURCES})
        elif method == "prompts/list":
            error(request_id, -32601, "Method not found: prompts/list")
        elif method == "tools/call":
            call_tool(request_id, message.get("params") or {})
        else:
            error(request_id, -32601, f"Method not found: {method}")


if __name__ == "__main__":
    main()
