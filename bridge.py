"""
bridge.py — Execution Bridge

Stdio client for engine.py. One subprocess per bridge instance, started
lazily on the first call; one request in flight at a time.

Provides:
- connect(): idempotent; spawns the server and waits for its ready line
- call_tool(name, arguments) → str: first text segment of the result
- list_tools(), ping()
- disconnect(): closes both pipes and reaps the process; no-op when closed
"""

import json
import os
import subprocess
import sys
import threading
from typing import Any, Dict, List, Optional, Tuple

import config
from errors import ProtocolError, TransportError
from telemetry import log


class ExecutionBridge:

    def __init__(self, command: Optional[List[str]] = None, env: Optional[Dict[str, str]] = None,
                 cwd: Optional[str] = None):
        self._command = command or [sys.executable, "-u", os.path.abspath(config.ENGINE_SCRIPT)]
        self._env = env
        self._cwd = cwd
        self._proc: Optional[subprocess.Popen] = None
        self._next_id = 1
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def connect(self) -> None:
        if self._proc is not None:
            if self._proc.poll() is None:
                return
            raise TransportError(f"Execution server exited with code {self._proc.returncode}")

        env = dict(os.environ) if self._env is None else self._env
        try:
            self._proc = subprocess.Popen(
                self._command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                bufsize=1,
                env=env,
                cwd=self._cwd,
            )
        except OSError as e:
            raise TransportError(f"Cannot start execution server: {e}") from e

        ready = self._read_line()
        if ready.get("id") != 0 or (ready.get("result") or {}).get("status") != "ready":
            self.disconnect()
            raise ProtocolError(f"Expected ready line from execution server, got: {ready}")
        log("Bridge", f"Connected to execution server (pid {self._proc.pid})")

    def disconnect(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        for stream in (proc.stdin, proc.stdout):
            try:
                if stream:
                    stream.close()
            except OSError:
                pass  # already broken
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *exc):
        self.disconnect()

    # ── Wire ──────────────────────────────────────────────────────────────────

    def _read_line(self) -> Dict[str, Any]:
        line = self._proc.stdout.readline()
        if not line:
            raise TransportError("Execution server closed the connection")
        try:
            return json.loads(line)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Malformed line from execution server: {line[:200]!r}") from e

    def request(self, req_type: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Send one request and block until the response with the same id arrives."""
        with self._lock:
            self.connect()
            req_id = self._next_id
            self._next_id += 1
            try:
                self._proc.stdin.write(json.dumps({"id": req_id, "type": req_type, "payload": payload or {}}) + "\n")
                self._proc.stdin.flush()
            except (BrokenPipeError, OSError) as e:
                raise TransportError(f"Execution server pipe closed: {e}") from e

            while True:
                resp = self._read_line()
                if resp.get("id") == req_id:
                    break
                log("Bridge", f"Ignoring uncorrelated response id={resp.get('id')}")

        if resp.get("error"):
            raise ProtocolError(f"Execution server error: {resp['error']}")
        return resp.get("result")

    def ping(self) -> Dict[str, Any]:
        return self.request("ping")

    def list_tools(self) -> List[Dict[str, Any]]:
        result = self.request("tools/list")
        return (result or {}).get("tools", [])

    def invoke(self, name: str, arguments: Dict[str, Any]) -> Tuple[str, bool]:
        """Returns (first text segment, isError flag)."""
        result = self.request("tools/call", {"toolName": name, "arguments": arguments})
        content = result.get("content") if isinstance(result, dict) else None
        if not content or not isinstance(content, list):
            raise ProtocolError(f"Tool {name} returned no content")
        first = content[0]
        if not isinstance(first, dict) or first.get("type") != "text" or not isinstance(first.get("text"), str):
            raise ProtocolError(f"Tool {name} returned a non-text segment: {first!r}")
        return first["text"], bool(result.get("isError", False))

    def call_tool(self, name: str, arguments: Dict[str, Any]) -> str:
        return self.invoke(name, arguments)[0]
