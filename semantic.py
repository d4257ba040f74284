"""
semantic.py — Semantic Index Bridge

Keeps the vector index in step with the markdown snapshot and answers
natural-language product searches.

- update_index(path): replace every indexed document with the sections of
  one markdown snapshot (delete-all-then-upload)
- search(query): SYNC_REQUIRED sentinel until an index exists; otherwise the
  retrieved product sections, phrased by the search responder over one
  persistent search thread when a responder is configured
- reset(): forget the search thread
"""

import os

import config
from errors import IndexUpdateFailed, ProviderError
from llm import history_window
from models import RunStatus
from rag import HybridRetriever, split_snapshot
from state import ConversationState, FileStateStore
from telemetry import emit_log, log
from vectors import VectorStore


SYNC_REQUIRED_PREFIX = "SYNC_REQUIRED:"
SYNC_REQUIRED = (
    f"{SYNC_REQUIRED_PREFIX} No inventory data found. "
    "Please run data_operations sync first, then retry the search."
)

SEARCH_SYSTEM = (
    "You answer product search questions using only the inventory records provided. "
    "Quote titles, SKUs, quantities and prices exactly as given. "
    "Earlier questions in this thread may narrow what the user is looking for."
)


def is_sync_required(result: str) -> bool:
    return result.startswith(SYNC_REQUIRED_PREFIX)


class SemanticIndex:

    def __init__(self, retriever=None, responder=None, state_store=None, n_results: int = 5):
        if retriever is None:
            retriever = HybridRetriever(
                VectorStore(config.VECTOR_DIR),
                bm25_path=os.path.join(config.VECTOR_DIR, HybridRetriever.BM25_FILE),
            )
        if state_store is None:
            state_store = FileStateStore(config.SEARCH_STATE_FILE)
        self._retriever = retriever
        self._responder = responder
        self._store = state_store
        self._n_results = n_results

    def has_index(self) -> bool:
        return self._retriever.exists()

    def update_index(self, snapshot_path: str) -> int:
        try:
            with open(snapshot_path, "r", encoding="utf-8") as f:
                docs = split_snapshot(f.read(), source=snapshot_path)
            count = self._retriever.rebuild(docs)
        except Exception as e:
            raise IndexUpdateFailed(f"Index update failed for {snapshot_path}: {e}") from e
        emit_log("index_updated", path=snapshot_path, documents=count)
        return count

    def search(self, query: str) -> str:
        if not self._retriever.exists():
            emit_log("sync_required", query=query[:80])
            return SYNC_REQUIRED

        hits = self._retriever.hybrid_search(query, n_results=self._n_results)
        if not hits:
            return f"No products matched '{query}'."
        context = "\n\n".join(h["text"] for h in hits)
        if self._responder is None:
            return f"Found {len(hits)} matching products:\n\n{context}"

        state = self._store.load()
        step = self._responder.start(
            state,
            f"Inventory records:\n\n{context}\n\nQuestion: {query}",
            system=SEARCH_SYSTEM,
            tools=[],
        )
        state.history = history_window(state.history)
        self._store.save(state)
        if step.status != RunStatus.COMPLETED:
            raise ProviderError(f"Search responder failed: {step.text or step.status.value}")
        return step.text or context

    def thread(self) -> ConversationState:
        return self._store.load()

    def reset(self) -> None:
        self._store.clear()
        log("Search", "Search thread reset")
