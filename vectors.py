"""
vectors.py — ChromaDB Vector Store

Local persistent semantic index over snapshot product documents.
Stores embeddings in VECTOR_DIR (default ./.vectors).

Documents: { doc_id, text, extra_meta? }
Metadata always includes: doc_id (str), source (snapshot path)

Features:
  - Lazy client: importing this file does not load chromadb
  - exists() never creates the collection, so "never indexed" stays observable
  - reset() drops and recreates the collection (full replace, not incremental)
  - drop() removes it outright after a failed rebuild
  - Embeddings via Ollama nomic-embed-text when available, ChromaDB default otherwise
"""

import os
import unicodedata
from typing import List, Dict, Any, Optional

import requests

import config
from telemetry import log


class VectorStore:

    COLLECTION_NAME = "inventory_products"
    BATCH_SIZE = 50
    MAX_DOC_CHARS = 2000

    def __init__(self, db_dir: str = ""):
        self._db_dir = db_dir or config.VECTOR_DIR
        self._client = None
        self._collection = None

    def _ensure_client(self):
        if self._client is None:
            import chromadb
            os.makedirs(self._db_dir, exist_ok=True)
            self._client = chromadb.PersistentClient(path=self._db_dir)
        return self._client

    def _ensure(self):
        """Open (or create) the collection on first use."""
        if self._collection is not None:
            return
        self._collection = self._ensure_client().get_or_create_collection(
            name=self.COLLECTION_NAME,
            metadata={"hnsw:space": "cosine"},
            embedding_function=_embedding_function(),
        )

    def exists(self) -> bool:
        if self._collection is not None:
            return True
        try:
            self._ensure_client().get_collection(
                name=self.COLLECTION_NAME, embedding_function=_embedding_function()
            )
        except Exception:
            # chromadb raises ValueError / NotFoundError depending on version
            return False
        return True

    def reset(self) -> None:
        """Drop every document: delete the collection and create it empty."""
        self.drop()
        self._ensure()

    def batch_upsert(self, documents: List[Dict[str, Any]]) -> int:
        """
        Bulk index documents. Each doc: { doc_id, text, extra_meta? }
        Returns the number of documents written. Store errors propagate.
        """
        if not documents:
            return 0
        self._ensure()
        indexed = 0
        batch_ids, batch_docs, batch_metas = [], [], []

        for doc in documents:
            text = unicodedata.normalize("NFKD", str(doc.get("text") or ""))
            doc_id = str(doc.get("doc_id", ""))
            if not text.strip() or not doc_id:
                continue
            meta = {"doc_id": doc_id}
            for k, v in (doc.get("extra_meta") or {}).items():
                meta[k] = str(v) if v is not None else ""

            batch_ids.append(doc_id)
            batch_docs.append(text[:self.MAX_DOC_CHARS])
            batch_metas.append(meta)

            if len(batch_ids) >= self.BATCH_SIZE:
                self._collection.upsert(ids=batch_ids, documents=batch_docs, metadatas=batch_metas)
                indexed += len(batch_ids)
                batch_ids, batch_docs, batch_metas = [], [], []

        if batch_ids:
            self._collection.upsert(ids=batch_ids, documents=batch_docs, metadatas=batch_metas)
            indexed += len(batch_ids)
        return indexed

    def query(self, text: str, n_results: int = 5) -> List[Dict[str, Any]]:
        """Semantic search. Returns [{doc_id, text, distance, metadata}] best first."""
        if not text or not text.strip():
            return []
        self._ensure()
        count = self._collection.count()
        if count == 0:
            return []
        results = self._collection.query(
            query_texts=[str(text)],
            n_results=min(n_results, count),
            include=["documents", "metadatas", "distances"],
        )

        output = []
        if results and results.get("ids"):
            ids = results["ids"][0]
            docs = results["documents"][0]
            metas = results["metadatas"][0]
            dists = results["distances"][0]
            for i, doc_id in enumerate(ids):
                output.append({
                    "doc_id": doc_id,
                    "text": docs[i],
                    "distance": dists[i],
                    "metadata": metas[i],
                })
        return output

    def drop(self) -> None:
        """Delete the collection so exists() reports False until the next reset()."""
        client = self._ensure_client()
        self._collection = None
        if self.exists():
            client.delete_collection(self.COLLECTION_NAME)


# ── Embeddings ────────────────────────────────────────────────────────────────

_ef = None


def _embedding_function():
    global _ef
    if _ef is None:
        _ef = _make_embedding_function()
    return _ef


def _make_embedding_function():
    from chromadb import Documents, EmbeddingFunction, Embeddings
    from chromadb.utils import embedding_functions

    class NomicOllamaEF(EmbeddingFunction):
        """Calls Ollama /api/embed with nomic-embed-text; ChromaDB default when unavailable."""
        MODEL = "nomic-embed-text"
        _available: Optional[bool] = None

        def __init__(self):
            self._base = config.OLLAMA_BASE_URL.rstrip("/")
            self._fallback = None

        def name(self) -> str:
            return "NomicOllamaEmbeddings"

        def _check_available(self) -> bool:
            if NomicOllamaEF._available is not None:
                return NomicOllamaEF._available
            try:
                tags = requests.get(f"{self._base}/api/tags", timeout=2).json()
                models = [m.get("name", "") for m in tags.get("models", [])]
                NomicOllamaEF._available = any(self.MODEL in m for m in models)
            except requests.RequestException:
                NomicOllamaEF._available = False
            if NomicOllamaEF._available:
                log("VectorStore", "Using nomic-embed-text for embeddings")
            else:
                log("VectorStore", "nomic-embed-text not found — falling back to default embeddings")
            return NomicOllamaEF._available

        def _default(self, input: Documents) -> Embeddings:
            if self._fallback is None:
                self._fallback = embedding_functions.DefaultEmbeddingFunction()
            return self._fallback(input)

        def __call__(self, input: Documents) -> Embeddings:
            if not self._check_available():
                return self._default(input)
            try:
                resp = requests.post(
                    f"{self._base}/api/embed",
                    json={"model": self.MODEL, "input": list(input)},
                    timeout=30,
                )
                resp.raise_for_status()
                # Ollama returns {"embeddings": [[...], ...]}
                return resp.json().get("embeddings", [])
            except requests.RequestException as e:
                log("VectorStore", f"nomic embed error: {e} — falling back")
                NomicOllamaEF._available = False
                return self._default(input)

    return NomicOllamaEF()
