"""
engine.py — Inventory tool-execution server
Communicates with the agent via JSON over stdin/stdout.
Each request:  { "id": <int>, "type": <str>, "payload": <dict> }
Each response: { "id": <int>, "result": <any>, "error": <str|null> }

Request types:
  - ping:        liveness check
  - tools/list:  server-side tools, advertised from the tool registry
  - tools/call:  { "toolName": <str>, "arguments": <dict> }
                 → { "content": [{ "type": "text", "text": <str> }], "isError"?: true }

stdout carries protocol lines only; all diagnostics go to stderr.
"""

import sys
import json
import traceback
import os

# Append engine dir to path for sibling imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from tools import ToolRegistry

VERSION = "1.0.0"

# Lazy-loaded (retention manager builds commerce clients from config)
_registry = None
_handlers = None


def get_registry():
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def get_handlers():
    global _handlers
    if _handlers is None:
        from commerce import CommerceClient
        from handlers import ToolHandlers
        from snapshots import SnapshotRetentionManager
        retention = SnapshotRetentionManager(fetcher=CommerceClient())
        _handlers = ToolHandlers(get_registry(), retention)
    return _handlers


def handle_request(req):
    """Route a request to the appropriate handler."""
    req_type = req.get("type", "")
    payload = req.get("payload") or {}

    if req_type == "ping":
        return {"status": "ok", "version": VERSION}

    elif req_type == "tools/list":
        return {"tools": get_registry().server_tools()}

    elif req_type == "tools/call":
        return get_handlers().call(payload.get("toolName", ""), payload.get("arguments"))

    else:
        raise ValueError(f"Unknown request type: {req_type}")


def _write(resp):
    sys.stdout.write(json.dumps(resp) + "\n")
    sys.stdout.flush()


def main():
    """Main loop: read JSON lines from stdin, write JSON lines to stdout."""
    # Signal ready
    _write({"id": 0, "result": {"status": "ready"}, "error": None})

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            req = json.loads(line)
        except json.JSONDecodeError as e:
            _write({"id": -1, "result": None, "error": f"Invalid JSON: {e}"})
            continue

        req_id = req.get("id", -1)
        try:
            result = handle_request(req)
            resp = {"id": req_id, "result": result, "error": None}
        except Exception as e:
            resp = {"id": req_id, "result": None, "error": f"{type(e).__name__}: {e}"}
            print(f"[ENGINE ERROR] {traceback.format_exc()}", file=sys.stderr)

        _write(resp)


if __name__ == "__main__":
    main()
