"""
rag.py — Product retrieval over the markdown snapshot

Each product section of the snapshot becomes one document, indexed twice:
  - ChromaDB vectors for descriptive queries ("something blue for coffee")
  - a BM25 keyword corpus for literal ones (SKUs, variant names, product IDs)

hybrid_search() merges both rankings into one list, best first.

The keyword corpus is pickled beside the vector store on every rebuild and
read back by the constructor.
"""

import os
import pickle
import re
from typing import Any, Dict, List, Optional, Tuple

from rank_bm25 import BM25Okapi

from telemetry import log


SECTION_SEPARATOR = "---"


def split_snapshot(markdown: str, source: str = "") -> List[Dict[str, Any]]:
    """One document per product section of a markdown snapshot."""
    docs = []
    for i, section in enumerate(markdown.split(SECTION_SEPARATOR)):
        text = section.strip()
        if not text:
            continue
        m = re.search(r"^ID:\s*(.+)$", text, re.MULTILINE)
        doc_id = m.group(1).strip() if m else f"section_{i}"
        docs.append({"doc_id": doc_id, "text": text, "extra_meta": {"source": source}})
    return docs


class HybridRetriever:
    """Vector store plus an in-memory BM25 corpus over the same product documents."""

    BM25_FILE = "bm25_index.pkl"

    def __init__(self, vector_store, bm25_path: Optional[str] = None):
        self._vs = vector_store
        self._bm25_path = bm25_path
        self._bm25 = None
        self._corpus_tokens: List[List[str]] = []
        self._corpus_docs: List[Dict[str, Any]] = []
        if bm25_path:
            self.load_bm25(bm25_path)

    def exists(self) -> bool:
        """True once a rebuild has completed."""
        return self._vs.exists()

    def rebuild(self, documents: List[Dict[str, Any]]) -> int:
        """
        Replace every indexed document (vector + keyword) with `documents`.
        A failed rebuild leaves no index behind, so exists() is False again.
        """
        try:
            self._vs.reset()
            count = self._vs.batch_upsert(documents)
        except Exception:
            self._discard()
            raise
        self.build_bm25_index(documents)
        if self._bm25_path:
            self.save_bm25(self._bm25_path)
        return count

    def _discard(self) -> None:
        self._bm25 = None
        self._corpus_tokens = []
        self._corpus_docs = []
        if self._bm25_path and os.path.exists(self._bm25_path):
            try:
                os.remove(self._bm25_path)
            except OSError as e:
                log("RAG", f"Could not remove keyword index {self._bm25_path}: {e}")
        try:
            self._vs.drop()
        except Exception as e:
            log("RAG", f"Could not drop vector collection: {e}")

    def build_bm25_index(self, documents: List[Dict[str, Any]]) -> int:
        """Tokenize each product section into the keyword corpus. Returns the corpus size."""
        self._corpus_tokens = []
        self._corpus_docs = []
        self._bm25 = None

        for doc in documents:
            tokens = self._tokenize(doc.get("text", ""))
            if tokens:
                self._corpus_tokens.append(tokens)
                self._corpus_docs.append(doc)

        if self._corpus_tokens:
            self._bm25 = BM25Okapi(self._corpus_tokens)
            log("RAG", f"Keyword index: {len(self._corpus_tokens)} products")

        return len(self._corpus_tokens)

    def save_bm25(self, path: str) -> bool:
        """Write the product token corpus next to the vector store."""
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "wb") as f:
                pickle.dump(
                    {"corpus_tokens": self._corpus_tokens, "corpus_docs": self._corpus_docs},
                    f, protocol=pickle.HIGHEST_PROTOCOL,
                )
        except OSError as e:
            log("RAG", f"Keyword index not saved to {path}: {e}")
            return False
        return True

    def load_bm25(self, path: str) -> bool:
        """Restore the product corpus written by save_bm25. Missing or unreadable file → False."""
        if not os.path.exists(path):
            return False
        try:
            with open(path, "rb") as f:
                data = pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError) as e:
            log("RAG", f"Ignoring unreadable keyword index {path}: {e}")
            return False
        self._corpus_tokens = data.get("corpus_tokens", [])
        self._corpus_docs = data.get("corpus_docs", [])
        if not self._corpus_tokens:
            return False
        self._bm25 = BM25Okapi(self._corpus_tokens)
        return True

    @staticmethod
    def _tokenize(text: str) -> List[str]:
        # SKU "RM-1" → ["rm"]; single characters carry no signal
        return [w for w in re.split(r"\W+", text.lower()) if len(w) > 1]

    def _keyword_scores(self, query: str, limit: int) -> List[Tuple[Dict[str, Any], float]]:
        """Corpus docs with a positive BM25 score, normalised to the best match."""
        tokens = self._tokenize(query)
        if self._bm25 is None or not tokens:
            return []
        scores = self._bm25.get_scores(tokens)
        best = max(scores)
        if best <= 0:
            return []
        order = sorted(range(len(scores)), key=lambda i: scores[i], reverse=True)[:limit]
        return [(self._corpus_docs[i], scores[i] / best) for i in order if scores[i] > 0]

    def hybrid_search(
        self,
        query: str,
        n_results: int = 5,
        bm25_weight: float = 0.3,
        vector_weight: float = 0.7,
    ) -> List[Dict[str, Any]]:
        """Products ranked by vector_weight * similarity + bm25_weight * keyword score."""
        merged: Dict[str, Dict[str, Any]] = {}

        try:
            hits = self._vs.query(query, n_results=n_results * 2)
        except Exception as e:
            log("RAG", f"Vector query failed, keyword results only: {e}")
            hits = []
        for i, hit in enumerate(hits):
            # cosine distance 0 = identical
            similarity = max(0.0, 1.0 - hit.get("distance", 1.0))
            merged[hit.get("doc_id", f"v_{i}")] = {**hit, "vector_score": similarity, "bm25_score": 0.0}

        for i, (doc, score) in enumerate(self._keyword_scores(query, n_results * 2)):
            doc_id = doc.get("doc_id", f"b_{i}")
            entry = merged.setdefault(doc_id, {
                "doc_id": doc_id,
                "text": doc.get("text", ""),
                "metadata": doc.get("extra_meta", {}),
                "distance": 1.0,
                "vector_score": 0.0,
            })
            entry["bm25_score"] = score

        for entry in merged.values():
            entry["combined_score"] = vector_weight * entry["vector_score"] + bm25_weight * entry["bm25_score"]
        return sorted(merged.values(), key=lambda e: e["combined_score"], reverse=True)[:n_results]

    @property
    def bm25_ready(self) -> bool:
        return self._bm25 is not None and len(self._corpus_tokens) > 0
