"""
agent.py — Inventory agent (conversation orchestrator)

Drives one turn of the tool-calling protocol:
  1. Submit the user message + tool specs to the language-model provider
  2. If the model calls tools → validate all, dispatch one by one in emitted
     order, submit every result together
  3. Repeat until a final answer (at most MAX_TOOL_ROUNDS tool rounds)

data_operations / analytics run in the execution server (engine.py) through
the bridge; search runs here through the semantic index. A search that
answers SYNC_REQUIRED triggers one sync + index update and is retried once.

chat() always returns a string. Failures come back as "Error: ...".
"""

import json
from typing import Any, Callable, Dict, Optional

import config
from bridge import ExecutionBridge
from errors import IndexUpdateFailed, InventoryError, ProviderError
from llm import RawToolCall, build_provider
from models import (
    ConversationRun, InventorySnapshotFile, RunStatus, SnapshotFormat,
    ToolCallRequest, ToolCallResult, ToolName,
)
from semantic import SemanticIndex, is_sync_required
from snapshots import SnapshotRetentionManager
from state import ConversationState, FileStateStore
from telemetry import emit_log, log
from tools import RUNS_IN_AGENT, ToolRegistry


SYSTEM_PROMPT = (
    "You are an inventory management assistant for an online store. "
    "You sync product inventory from the store, answer exact questions with analytics, "
    "and find products by description with search. "
    "Report numbers exactly as the tools return them.\n\n"
)

SYNC_ARGS = {"operation": "sync"}


class InventoryAgent:
    """
    Explicitly wired orchestrator. Every collaborator can be injected;
    defaults are built from config.
    """

    def __init__(
        self,
        registry: Optional[ToolRegistry] = None,
        bridge=None,
        provider=None,
        index: Optional[SemanticIndex] = None,
        retention: Optional[SnapshotRetentionManager] = None,
        state_store=None,
        max_rounds: Optional[int] = None,
    ):
        self.registry = registry or ToolRegistry()
        self.bridge = bridge or ExecutionBridge()
        self.provider = provider or build_provider()
        # Separate responder instance: a search runs while the chat run is open
        self.index = index or SemanticIndex(responder=build_provider())
        # Read-only here (latest keeper lookups); the server owns refreshes
        self.retention = retention or SnapshotRetentionManager()
        self.store = state_store or FileStateStore(config.AGENT_STATE_FILE)
        self.max_rounds = config.MAX_TOOL_ROUNDS if max_rounds is None else max_rounds
        self.state: ConversationState = self.store.load()

        self._local: Dict[ToolName, Callable[[Dict[str, Any]], ToolCallResult]] = {
            ToolName.SEARCH: self._search,
        }
        unhandled = [t.value for t in self.registry.tools_for(RUNS_IN_AGENT) if t not in self._local]
        if unhandled:
            raise RuntimeError(f"Agent tools without a handler: {', '.join(unhandled)}")

    @property
    def system_prompt(self) -> str:
        return SYSTEM_PROMPT + self.registry.instructions()

    # ── Public API ────────────────────────────────────────────────────────────

    def chat(self, message: str) -> str:
        mark = len(self.state.history)
        try:
            return self._run(message)
        except Exception as e:
            emit_log("run_failed", error=str(e))
            log("Agent", f"Run failed: {type(e).__name__}: {e}")
            # Half-finished turn never stays in the transcript
            del self.state.history[mark:]
            abandon = getattr(self.provider, "abandon", None)
            if abandon is not None:
                try:
                    abandon(self.state)
                except InventoryError as cancel_err:
                    log("Agent", f"Could not abandon run: {cancel_err}")
            return f"Error: {e}"
        finally:
            self._save_state()

    def _save_state(self) -> None:
        try:
            self.store.save(self.state)
        except Exception as e:
            emit_log("state_save_failed", error=str(e))
            log("Agent", f"Could not save conversation state: {type(e).__name__}: {e}")

    def reset(self) -> None:
        """Clear history and thread, delete persisted state for agent and search."""
        self.state = ConversationState()
        self.store.clear()
        self.index.reset()
        log("Agent", "Conversation reset")

    def close(self) -> None:
        self.bridge.disconnect()

    # ── Run state machine ─────────────────────────────────────────────────────

    def _run(self, message: str) -> str:
        run = ConversationRun(status=RunStatus.PENDING)
        step = self.provider.start(
            self.state, message, system=self.system_prompt, tools=self.registry.provider_tools()
        )

        while True:
            run.status = step.status
            if step.status == RunStatus.COMPLETED:
                return step.text

            if step.status != RunStatus.REQUIRES_TOOL_OUTPUTS:
                raise ProviderError(f"Run ended with status {step.status.value}: {step.text}")

            run.rounds += 1
            if run.rounds > self.max_rounds:
                raise ProviderError(f"No final answer after {self.max_rounds} tool rounds")

            run.pending_calls = [self._validate(call) for call in step.calls]
            run.results = [self._dispatch(request) for request in run.pending_calls]
            step = self.provider.submit(self.state, run.results)

    def _validate(self, call: RawToolCall) -> ToolCallRequest:
        name, args = self.registry.validate(call.name, call.arguments)
        return ToolCallRequest(name=name, arguments=args, call_id=call.call_id)

    def _dispatch(self, request: ToolCallRequest) -> ToolCallResult:
        log("Agent", f"Tool call: {request.name.value}({json.dumps(request.arguments, ensure_ascii=False)[:100]})")
        emit_log("tool_dispatched", tool=request.name.value, call_id=request.call_id)

        if self.registry.runs_in(request.name) == RUNS_IN_AGENT:
            result = self._local[request.name](request.arguments)
        else:
            result = self._remote(request)

        if result.is_error:
            emit_log("tool_failed", tool=request.name.value, error=result.output[:200])
        return result.model_copy(update={"call_id": request.call_id})

    # ── Server tools ──────────────────────────────────────────────────────────

    def _markdown_keeper(self) -> Optional[InventorySnapshotFile]:
        return self.retention.latest(SnapshotFormat.MARKDOWN)

    def _remote(self, request: ToolCallRequest) -> ToolCallResult:
        is_sync = request.name == ToolName.DATA_OPERATIONS and request.arguments.get("operation") == "sync"
        before = self._markdown_keeper() if is_sync else None

        output, is_error = self.bridge.invoke(request.name.value, request.arguments)

        if is_sync and not is_error:
            after = self._markdown_keeper()
            if after is not None and (before is None or after.path != before.path or not self.index.has_index()):
                try:
                    self.index.update_index(after.path)
                except IndexUpdateFailed as e:
                    output += f"\n(Search index not updated: {e})"
        return ToolCallResult(name=request.name.value, output=output, is_error=is_error)

    # ── Agent-side tools ──────────────────────────────────────────────────────

    def _search(self, args: Dict[str, Any]) -> ToolCallResult:
        name = ToolName.SEARCH.value
        query = args["query"]
        try:
            output = self.index.search(query)
            if not is_sync_required(output):
                return ToolCallResult(name=name, output=output)

            log("Agent", "Search index missing, syncing inventory first")
            sync_text, sync_failed = self.bridge.invoke(ToolName.DATA_OPERATIONS.value, SYNC_ARGS)
            if sync_failed:
                return ToolCallResult(name=name, output=f"Search needs an inventory sync, which failed: {sync_text}",
                                      is_error=True)
            keeper = self._markdown_keeper()
            if keeper is None:
                return ToolCallResult(
                    name=name, is_error=True,
                    output="Search needs a markdown snapshot; add md to INVENTORY_FORMATS and sync again.",
                )
            self.index.update_index(keeper.path)

            output = self.index.search(query)
            return ToolCallResult(name=name, output=output, is_error=is_sync_required(output))
        except (IndexUpdateFailed, ProviderError) as e:
            return ToolCallResult(name=name, output=f"Search error: {e}", is_error=True)
