"""
llm.py — Language-model providers

Three provider shapes, one step contract. Every provider exposes:

  start(state, message, system, tools)  → ProviderStep
  submit(state, results)                → ProviderStep

ProviderStep.status is COMPLETED (text holds the answer), REQUIRES_TOOL_OUTPUTS
(calls holds the model's tool calls, in emitted order) or FAILED.

  OllamaChatProvider     Ollama native /api/chat
  OpenAIChatProvider     /chat/completions with tools + tool_choice "auto"
                         (OpenAI or any compatible endpoint, e.g. Groq)
  AssistantsProvider     assistant / thread / run API with polling and
                         submit_tool_outputs

Chat providers keep the message transcript in state.history; the run-based
provider keeps it server-side in state.thread_id.
"""

import json
import time
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel, Field

import config
from errors import ProviderError
from models import RunStatus, ToolCallResult
from state import ConversationState
from telemetry import log


HISTORY_TURNS = 6  # user turns kept in the prompt window
ASSISTANT_NAME = "Inventory Assistant"
MODEL_PREFERENCE = ["qwen2.5:7b", "qwen3:8b", "llama3.2:3b", "phi3:mini"]


class RawToolCall(BaseModel):
    """A tool call as the model emitted it, before validation."""

    call_id: Optional[str] = None
    name: str
    arguments: Any = None


class ProviderStep(BaseModel):

    status: RunStatus
    text: str = ""
    calls: List[RawToolCall] = Field(default_factory=list)


def _parse_arguments(raw: Any) -> Any:
    # Chat-completions send a JSON string, Ollama a dict
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def history_window(history: List[Dict[str, Any]], turns: int = HISTORY_TURNS) -> List[Dict[str, Any]]:
    """Last `turns` user turns, cut on user-message boundaries so tool messages stay paired."""
    starts = [i for i, m in enumerate(history) if m.get("role") == "user"]
    if len(starts) <= turns:
        return list(history)
    return history[starts[-turns]:]


def _post(url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None,
          label: str = "LLM") -> Dict[str, Any]:
    try:
        r = requests.post(url, json=payload, headers=headers, timeout=config.LLM_TIMEOUT)
    except requests.exceptions.Timeout:
        raise ProviderError(f"{label} request timed out") from None
    except requests.exceptions.ConnectionError:
        raise ProviderError(f"Cannot connect to {label} — is it running?") from None
    if r.status_code != 200:
        raise ProviderError(f"{label} HTTP {r.status_code}: {r.text[:200]}")
    return r.json()


# ── Chat-style providers ──────────────────────────────────────────────────────

class _ChatProvider:
    """Shared transcript handling for stateless chat endpoints."""

    label = "LLM"

    def __init__(self):
        self._system = ""
        self._tools: Optional[List[Dict[str, Any]]] = None

    def start(self, state: ConversationState, message: str, system: str = "",
              tools: Optional[List[Dict[str, Any]]] = None) -> ProviderStep:
        self._system = system
        self._tools = tools
        state.history.append({"role": "user", "content": message})
        return self._step(state)

    def submit(self, state: ConversationState, results: List[ToolCallResult]) -> ProviderStep:
        for r in results:
            state.history.append(self._tool_message(r))
        return self._step(state)

    def abandon(self, state: ConversationState) -> None:
        """Nothing is held server-side; the caller trims state.history."""

    def _messages(self, state: ConversationState) -> List[Dict[str, Any]]:
        messages = [{"role": "system", "content": self._system}] if self._system else []
        return messages + history_window(state.history)

    def _step(self, state: ConversationState) -> ProviderStep:
        message = self._complete(self._messages(state))
        state.history.append(message)
        calls = [
            RawToolCall(
                call_id=tc.get("id") or f"call_{i}",
                name=tc.get("function", {}).get("name", ""),
                arguments=_parse_arguments(tc.get("function", {}).get("arguments")),
            )
            for i, tc in enumerate(message.get("tool_calls") or [])
        ]
        if calls:
            return ProviderStep(status=RunStatus.REQUIRES_TOOL_OUTPUTS, calls=calls)
        return ProviderStep(status=RunStatus.COMPLETED, text=(message.get("content") or "").strip())

    def _complete(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        raise NotImplementedError

    def _tool_message(self, result: ToolCallResult) -> Dict[str, Any]:
        raise NotImplementedError


class OllamaChatProvider(_ChatProvider):

    label = "Ollama"

    def __init__(self, base_url: str = "", model: str = "", max_tokens: int = 1024):
        super().__init__()
        self._base = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or config.OLLAMA_MODEL
        self._max_tokens = max_tokens

    def _select_model(self) -> str:
        """First installed model from MODEL_PREFERENCE; the top preference when none is found."""
        try:
            r = requests.get(f"{self._base}/api/tags", timeout=5)
            if r.status_code == 200:
                available = [m["name"] for m in r.json().get("models", [])]
                for model in MODEL_PREFERENCE:
                    if model in available:
                        log("Ollama", f"Selected model: {model}")
                        return model
        except requests.RequestException as e:
            log("Ollama", f"Model listing failed: {e}")
        return MODEL_PREFERENCE[0]

    def _complete(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not self.model:
            self.model = self._select_model()
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {
                "temperature": 0.3,
                "num_predict": self._max_tokens,
            },
        }
        if self._tools:
            payload["tools"] = self._tools
        body = _post(f"{self._base}/api/chat", payload, label=self.label)
        if "error" in body:
            raise ProviderError(f"Ollama error: {body['error']}")
        return body.get("message", {})

    def _tool_message(self, result: ToolCallResult) -> Dict[str, Any]:
        return {"role": "tool", "tool_name": result.name, "content": result.output}


class OpenAIChatProvider(_ChatProvider):

    label = "OpenAI"

    def __init__(self, base_url: str = "", api_key: str = "", model: str = ""):
        super().__init__()
        self._base = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key or config.OPENAI_API_KEY}",
            "Content-Type": "application/json",
        }
        self.model = model or config.OPENAI_MODEL

    def _complete(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "messages": messages}
        if self._tools:
            payload["tools"] = self._tools
            payload["tool_choice"] = "auto"
        body = _post(f"{self._base}/chat/completions", payload, self._headers, label=self.label)
        choices = body.get("choices") or []
        if not choices:
            raise ProviderError(f"OpenAI returned no choices: {str(body)[:200]}")
        message = dict(choices[0].get("message") or {})
        message.setdefault("role", "assistant")
        return message

    def _tool_message(self, result: ToolCallResult) -> Dict[str, Any]:
        return {"role": "tool", "tool_call_id": result.call_id, "content": result.output}


# ── Run-based provider ────────────────────────────────────────────────────────

class AssistantsProvider:
    """
    Assistant / thread / run API. The assistant is looked up by name and
    reused; the thread id lives in state.thread_id so the conversation
    survives restarts.
    """

    TERMINAL_FAILURES = ("failed", "cancelled", "expired", "incomplete")
    IN_FLIGHT = ("queued", "in_progress", "cancelling")

    def __init__(self, base_url: str = "", api_key: str = "", model: str = "",
                 name: str = ASSISTANT_NAME, session: Optional[requests.Session] = None,
                 poll_interval: Optional[float] = None, poll_timeout: Optional[float] = None):
        self._base = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key or config.OPENAI_API_KEY}",
            "Content-Type": "application/json",
            "OpenAI-Beta": "assistants=v2",
        }
        self.model = model or config.OPENAI_MODEL
        self.name = name
        self._session = session or requests.Session()
        self._poll_interval = config.RUN_POLL_INTERVAL if poll_interval is None else poll_interval
        self._poll_timeout = config.RUN_POLL_TIMEOUT if poll_timeout is None else poll_timeout
        self._run_id: Optional[str] = None

    def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
              params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            r = self._session.request(method, f"{self._base}{path}", json=payload, params=params,
                                      headers=self._headers, timeout=config.LLM_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Assistants API request failed: {e}") from e
        if r.status_code != 200:
            raise ProviderError(f"Assistants API HTTP {r.status_code}: {r.text[:200]}")
        return r.json()

    def _ensure_assistant(self, state: ConversationState, system: str,
                          tools: Optional[List[Dict[str, Any]]]) -> str:
        if state.assistant_id:
            return state.assistant_id
        listing = self._call("GET", "/assistants", params={"limit": 100})
        for assistant in listing.get("data", []):
            if assistant.get("name") == self.name:
                log("Assistants", f"Reusing assistant {assistant['id']}")
                state.assistant_id = assistant["id"]
                return state.assistant_id
        created = self._call("POST", "/assistants", {
            "name": self.name,
            "model": self.model,
            "instructions": system,
            "tools": tools or [],
        })
        log("Assistants", f"Created assistant {created['id']}")
        state.assistant_id = created["id"]
        return state.assistant_id

    def _ensure_thread(self, state: ConversationState) -> str:
        if not state.thread_id:
            state.thread_id = self._call("POST", "/threads", {})["id"]
            log("Assistants", f"Created thread {state.thread_id}")
        return state.thread_id

    def start(self, state: ConversationState, message: str, system: str = "",
              tools: Optional[List[Dict[str, Any]]] = None) -> ProviderStep:
        assistant_id = self._ensure_assistant(state, system, tools)
        thread_id = self._ensure_thread(state)
        self._call("POST", f"/threads/{thread_id}/messages", {"role": "user", "content": message})
        state.history.append({"role": "user", "content": message})

        run_request: Dict[str, Any] = {"assistant_id": assistant_id}
        if system:
            run_request["instructions"] = system
        # Explicit tool override; an empty list disables tools for this run
        if tools is not None:
            run_request["tools"] = tools
        run = self._call("POST", f"/threads/{thread_id}/runs", run_request)
        return self._await(state, run)

    def submit(self, state: ConversationState, results: List[ToolCallResult]) -> ProviderStep:
        if not state.thread_id or not self._run_id:
            raise ProviderError("No run is waiting for tool outputs")
        run = self._call(
            "POST",
            f"/threads/{state.thread_id}/runs/{self._run_id}/submit_tool_outputs",
            {"tool_outputs": [{"tool_call_id": r.call_id, "output": r.output} for r in results]},
        )
        return self._await(state, run)

    def abandon(self, state: ConversationState) -> None:
        """Cancel a run left waiting for tool outputs; the thread rejects new messages otherwise."""
        run_id, self._run_id = self._run_id, None
        if run_id and state.thread_id:
            self._call("POST", f"/threads/{state.thread_id}/runs/{run_id}/cancel", {})
            log("Assistants", f"Cancelled run {run_id}")

    def _await(self, state: ConversationState, run: Dict[str, Any]) -> ProviderStep:
        self._run_id = run["id"]
        deadline = time.monotonic() + self._poll_timeout
        while run.get("status") in self.IN_FLIGHT:
            if time.monotonic() > deadline:
                raise ProviderError(f"Run {self._run_id} did not finish within {self._poll_timeout}s")
            time.sleep(self._poll_interval)
            run = self._call("GET", f"/threads/{state.thread_id}/runs/{self._run_id}")

        status = run.get("status")
        if status == "requires_action":
            tool_calls = (run.get("required_action") or {}).get("submit_tool_outputs", {}).get("tool_calls", [])
            calls = [
                RawToolCall(
                    call_id=tc.get("id"),
                    name=tc.get("function", {}).get("name", ""),
                    arguments=_parse_arguments(tc.get("function", {}).get("arguments")),
                )
                for tc in tool_calls
            ]
            return ProviderStep(status=RunStatus.REQUIRES_TOOL_OUTPUTS, calls=calls)

        if status == "completed":
            self._run_id = None
            text = self._latest_reply(state.thread_id)
            state.history.append({"role": "assistant", "content": text})
            return ProviderStep(status=RunStatus.COMPLETED, text=text)

        self._run_id = None
        reason = (run.get("last_error") or {}).get("message") or f"run status {status}"
        return ProviderStep(status=RunStatus.FAILED, text=reason)

    def _latest_reply(self, thread_id: str) -> str:
        listing = self._call("GET", f"/threads/{thread_id}/messages", params={"limit": 1, "order": "desc"})
        for message in listing.get("data", []):
            parts = [
                c.get("text", {}).get("value", "")
                for c in message.get("content", [])
                if c.get("type") == "text"
            ]
            return "\n".join(p for p in parts if p).strip()
        return ""


PROVIDERS = {
    "ollama": OllamaChatProvider,
    "openai": OpenAIChatProvider,
    "assistants": AssistantsProvider,
}


def build_provider(name: str = ""):
    name = (name or config.LLM_PROVIDER).lower()
    if name not in PROVIDERS:
        raise ProviderError(f"Unknown LLM_PROVIDER '{name}'. Valid: {', '.join(PROVIDERS)}")
    return PROVIDERS[name]()
