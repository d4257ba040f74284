"""
telemetry.py — stderr diagnostics

stdout of the execution server carries protocol lines, so every diagnostic
in this project goes to stderr:
  - log(tag, message): human-readable "[Tag] message" line
  - emit_log(event, **fields): one JSON object per line for metrics scraping
"""

import json
import sys
import time
from typing import Any, Dict


def log(tag: str, message: str) -> None:
    print(f"[{tag}] {message}", file=sys.stderr, flush=True)


def emit_log(event: str, **fields: Any) -> None:
    """Emit a structured metrics log line to stderr. None and empty-string fields are omitted."""
    entry: Dict[str, Any] = {"_inv_log": event, "ts": int(time.time())}
    for key, value in fields.items():
        if value is None or value == "":
            continue
        entry[key] = value
    print(json.dumps(entry, default=str, ensure_ascii=False), file=sys.stderr, flush=True)
