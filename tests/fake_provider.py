"""Stdio context provider used by the test suite.

Behaviour is selected through environment variables so each test can spawn
exactly the provider it needs:

    FAKE_MODE            normal | exit_on_initialize | bad_version | silent_initialize | no_ping
                         | nested_list (answers tools/list with an undecodable line)
    FAKE_TOOLS           JSON list of tool names to advertise (default: all)
    FAKE_CONTEXT         JSON object returned by get_context
    FAKE_CONTEXT_DELAY   seconds get_context sleeps before answering
    FAKE_CACHE_TTL       cacheTtlSeconds hint attached to get_context results
    FAKE_CALL_LOG        file that receives one line per tools/call
    FAKE_CRASH_MARKER    if this file exists at startup, exit immediately
    FAKE_PAGE_SIZE       split tools/list into pages of this size
"""

import json
import os
import sys
import threading
import time

_WRITE_LOCK = threading.Lock()

MODE = os.environ.get("FAKE_MODE", "normal")
CONTEXT = json.loads(os.environ.get("FAKE_CONTEXT", '{"branch": "main", "dirty": false}'))
CONTEXT_DELAY = float(os.environ.get("FAKE_CONTEXT_DELAY", "0"))
CACHE_TTL = os.environ.get("FAKE_CACHE_TTL")
CALL_LOG = os.environ.get("FAKE_CALL_LOG")
CRASH_MARKER = os.environ.get("FAKE_CRASH_MARKER")
PAGE_SIZE = int(os.environ.get("FAKE_PAGE_SIZE", "0"))

ALL_TOOLS = [
    {
        "name": "get_context",
        "description": "Workspace context",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "get_active_file",
        "description": "File open in the editor",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "echo",
        "description": "Echo text back",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "slow",
        "description": "Answers after a long time",
        "inputSchema": {"type": "object", "properties": {"seconds": {"type": "number"}}},
    },
    {
        "name": "fail",
        "description": "Always fails",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "crash",
        "description": "Exits the provider process",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "notify_change",
        "description": "Sends tools/list_changed",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def _advertised_tools():
    names = os.environ.get("FAKE_TOOLS")
    if not names:
        return ALL_TOOLS
    wanted = json.loads(names)
    return [tool for tool in ALL_TOOLS if tool["name"] in wanted]


def send(message):
    with _WRITE_LOCK:
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()


def reply(msg_id, result):
    send({"jsonrpc": "2.0", "id": msg_id, "result": result})


def reply_error(msg_id, code, message):
    send({"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}})


def text_result(text):
    return {"content": [{"type": "text", "text": text}], "isError": False}


def log_call(name):
    if CALL_LOG:
        with open(CALL_LOG, "a", encoding="utf-8") as f:
            f.write(name + "\n")


def handle_call(msg_id, params):
    name = params.get("name")
    arguments = params.get("arguments") or {}
    log_call(name)
    if name not in {tool["name"] for tool in _advertised_tools()}:
        reply_error(msg_id, -32601, f"Unknown tool: {name}")
    elif name == "echo":
        reply(msg_id, text_result(arguments.get("text", "")))
    elif name == "get_context":
        if CONTEXT_DELAY:
            time.sleep(CONTEXT_DELAY)
        result = text_result(json.dumps(CONTEXT))
        if CACHE_TTL:
            result["_meta"] = {"cacheTtlSeconds": float(CACHE_TTL)}
        reply(msg_id, result)
    elif name == "get_active_file":
        reply(msg_id, text_result(json.dumps({"path": "/work/project/main.py", "language": "python"})))
    elif name == "slow":
        time.sleep(float(arguments.get("seconds", 30)))
        reply(msg_id, text_result("finally"))
    elif name == "fail":
        reply_error(msg_id, -32603, "boom")
    elif name == "crash":
        if CRASH_MARKER:
            open(CRASH_MARKER, "w").close()
        sys.stdout.flush()
        os._exit(3)
    elif name == "notify_change":
        send({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
        reply(msg_id, text_result("ok"))


def handle_list(msg_id, params):
    tools = _advertised_tools()
    if not PAGE_SIZE:
        reply(msg_id, {"tools": tools})
        return
    start = int((params or {}).get("cursor") or 0)
    page = tools[start:start + PAGE_SIZE]
    result = {"tools": page}
    if start + PAGE_SIZE < len(tools):
        result["nextCursor"] = str(start + PAGE_SIZE)
    reply(msg_id, result)


def handle(message):
    method = message.get("method")
    msg_id = message.get("id")
    params = message.get("params") or {}
    if msg_id is None:
        return
    if method == "initialize":
        if MODE == "exit_on_initialize":
            sys.exit(1)
        if MODE == "silent_initialize":
            return
        version = "1999-01-01" if MODE == "bad_version" else params.get("protocolVersion")
        reply(msg_id, {
            "protocolVersion": version,
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": {"name": "fake-provider", "version": "1.0"},
        })
    elif method == "ping":
        if MODE == "no_ping":
            reply_error(msg_id, -32601, "Method not found: ping")
        else:
            reply(msg_id, {})
    elif method == "tools/list":
        if MODE == "nested_list":
            with _WRITE_LOCK:
                sys.stdout.write("[" * 200000 + "]" * 200000 + "\n")
                sys.stdout.flush()
            return
        handle_list(msg_id, params)
    elif method == "tools/call":
        threading.Thread(target=handle_call, args=(msg_id, params), daemon=True).start()
    else:
        reply_error(msg_id, -32601, f"Method not found: {method}")


def main():
    if CRASH_MARKER and os.path.exists(CRASH_MARKER):
        sys.exit(2)
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except ValueError:
            continue
        handle(message)


if __name__ == "__main__":
    main()
