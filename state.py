"""
state.py — Persisted conversation state

ConversationState {thread_id?, history} is loaded and saved through a
storage port so the orchestrator and the semantic index never touch the
filesystem directly:

  FileStateStore(path)   JSON file; missing or corrupt file → empty state
  MemoryStateStore()     in-process, for tests
"""

import json
import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from telemetry import log


class ConversationState(BaseModel):

    thread_id: Optional[str] = None
    assistant_id: Optional[str] = None
    history: List[Dict[str, Any]] = Field(default_factory=list)


class FileStateStore:

    def __init__(self, path: str):
        self.path = path

    def load(self) -> ConversationState:
        if not os.path.exists(self.path):
            return ConversationState()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return ConversationState.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            log("State", f"Ignoring unreadable state file {self.path}: {e}")
            return ConversationState()

    def save(self, state: ConversationState) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.model_dump(mode="json"), f, ensure_ascii=False)
        os.replace(tmp, self.path)

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


class MemoryStateStore:

    def __init__(self, state: Optional[ConversationState] = None):
        self.state = state

    def load(self) -> ConversationState:
        return self.state.model_copy(deep=True) if self.state else ConversationState()

    def save(self, state: ConversationState) -> None:
        self.state = state.model_copy(deep=True)

    def clear(self) -> None:
        self.state = None
