"""Query engine: lexical, vector similarity and hybrid note search."""

import logging
import re
import sqlite3
from pathlib import Path

import numpy as np

from vault_mcp.graph import GraphViewData
from vault_mcp.indexer.database import Database
from vault_mcp.indexer.embedding import EmbeddingError, EmbeddingProvider, decode_vector
from vault_mcp.indexer.models import (
    Backlink,
    IndexingMeta,
    LexicalHit,
    SemanticNoteEntry,
    SimilarityHit,
)

logger = logging.getLogger(__name__)

# Hybrid ranking weights for search_notes
VECTOR_WEIGHT = 0.7
BM25_WEIGHT = 0.3
MIN_FINAL_SCORE = 0.05

# Lexical candidates fetched per requested hybrid result
LEXICAL_CANDIDATE_FACTOR = 5

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


def build_fts_query(query: str, match_all: bool = True) -> str | None:
    """Turn free text into a safe FTS5 query of quoted prefix terms.

    Quoting every term keeps FTS5 operators and punctuation in user input
    from being parsed as syntax. Returns None when there is nothing to match.
    """
    tokens = TOKEN_PATTERN.findall(query)
    if not tokens:
        return None
    terms = [f'"{token}"*' for token in tokens]
    return (" AND " if match_all else " OR ").join(terms)


def min_max_normalize(scores: dict[int, float]) -> dict[int, float]:
    """Scale scores to [0, 1]. A zero span maps everything to 1.0."""
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    span = high - low
    if span <= 0:
        return {key: 1.0 for key in scores}
    return {key: (value - low) / span for key, value in scores.items()}


def _epoch_ms(value: float) -> int:
    return int(value * 1000)


class QueryEngine:
    """Read-only queries over one vault's index."""

    def __init__(
        self,
        db: Database,
        vault_id: int,
        vault_root: Path,
        embedder: EmbeddingProvider | None = None,
    ):
        self.db = db
        self.vault_id = vault_id
        self.vault_root = vault_root
        self.embedder = embedder

    # Lexical

    def lexical_search(self, query: str, limit: int = 20, match_all: bool = True) -> list[LexicalHit]:
        """
        Full-text search over document content.

        Args:
            query: Free text; each word matches as a prefix.
            limit: Maximum number of results.
            match_all: Require every word (AND) instead of any word (OR).

        Returns:
            Hits ordered by BM25 relevance, with ``>>>match<<<`` snippets.
        """
        match_query = build_fts_query(query, match_all=match_all)
        if match_query is None or limit <= 0:
            return []
        try:
            return self.db.search_fts(self.vault_id, match_query, limit=limit)
        except sqlite3.OperationalError as e:
            logger.warning("Full-text query failed for %r: %s", query, e)
            return []

    # Similarity

    def _best_segment_scores(
        self,
        query_vec: np.ndarray,
        model: str,
        exclude_doc_id: int | None = None,
    ) -> dict[int, tuple[str, float, int]]:
        """Best cosine similarity per document for one embedding model."""
        dim = int(query_vec.shape[0])
        rows = self.db.iter_embedding_rows(self.vault_id, model, dim)
        doc_ids: list[int] = []
        paths: dict[int, str] = {}
        ordinals: list[int] = []
        vectors: list[np.ndarray] = []
        for row in rows:
            if row["doc_id"] == exclude_doc_id:
                continue
            try:
                vec = decode_vector(bytes(row["vec"]), row["dim"])
            except ValueError:
                logger.debug("Skipping invalid vector for %s", row["rel_path"])
                continue
            doc_ids.append(row["doc_id"])
            paths[row["doc_id"]] = row["rel_path"]
            ordinals.append(row["ordinal"])
            vectors.append(vec)
        if not vectors:
            return {}

        matrix = np.vstack(vectors)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        sims = (matrix @ query_vec) / norms

        best: dict[int, tuple[str, float, int]] = {}
        for doc_id, ordinal, sim in zip(doc_ids, ordinals, sims.tolist()):
            current = best.get(doc_id)
            if current is None or sim > current[1]:
                best[doc_id] = (paths[doc_id], sim, ordinal)
        return best

    def similarity_search(
        self,
        query: str,
        limit: int = 10,
        embedder: EmbeddingProvider | None = None,
    ) -> list[SimilarityHit]:
        """
        Rank documents by their best-matching segment.

        Only vectors produced by the same model and with the same dimension
        as the query vector are compared. Returns an empty list when no
        provider is configured, nothing matching is stored, or the provider
        fails.
        """
        embedder = embedder or self.embedder
        if embedder is None or not query.strip() or limit <= 0:
            return []
        model = embedder.model_id
        if not self.db.count_embeddings(self.vault_id, model):
            logger.debug("No stored embeddings for model %s", model)
            return []
        try:
            query_vec = embedder.embed(query)
        except EmbeddingError as e:
            logger.warning("Query embedding failed: %s", e)
            return []

        best = self._best_segment_scores(query_vec, model)
        hits = [
            SimilarityHit(doc_id=doc_id, rel_path=path, similarity=sim, best_ordinal=ordinal)
            for doc_id, (path, sim, ordinal) in best.items()
        ]
        hits.sort(key=lambda h: (-h.similarity, h.rel_path))
        return hits[:limit]

    # Hybrid note search

    def search_notes(
        self,
        query: str,
        limit: int = 20,
        embedder: EmbeddingProvider | None = None,
    ) -> list[SemanticNoteEntry]:
        """
        Hybrid note search used by the query boundary.

        Vector similarity and BM25 are each min-max normalized across the
        candidates and combined as ``0.7 * vector + 0.3 * bm25``. Candidates
        scoring below 0.05 are dropped. Without comparable vectors the result
        is empty.
        """
        if limit <= 0:
            return []
        vector_hits = self.similarity_search(query, limit=1_000_000, embedder=embedder)
        if not vector_hits:
            return []
        lexical_hits = self.lexical_search(
            query, limit=max(limit * LEXICAL_CANDIDATE_FACTOR, 50), match_all=False
        )

        paths = {h.doc_id: h.rel_path for h in vector_hits}
        paths.update({h.doc_id: h.rel_path for h in lexical_hits})
        vector_norm = min_max_normalize({h.doc_id: h.similarity for h in vector_hits})
        bm25_norm = min_max_normalize({h.doc_id: h.bm25_score for h in lexical_hits})

        scored: list[tuple[float, str]] = []
        for doc_id, rel_path in paths.items():
            final = VECTOR_WEIGHT * vector_norm.get(doc_id, 0.0) + BM25_WEIGHT * bm25_norm.get(
                doc_id, 0.0
            )
            if final >= MIN_FINAL_SCORE:
                scored.append((final, rel_path))
        scored.sort(key=lambda item: (-item[0], item[1]))

        entries: list[SemanticNoteEntry] = []
        for final, rel_path in scored:
            abs_path = self.vault_root / rel_path
            try:
                stat = abs_path.stat()
            except OSError:
                # Gone from disk since it was indexed
                continue
            created = getattr(stat, "st_birthtime", stat.st_ctime)
            entries.append(
                SemanticNoteEntry(
                    path=str(abs_path),
                    name=abs_path.name,
                    similarity=final,
                    created_at=_epoch_ms(created),
                    modified_at=_epoch_ms(stat.st_mtime),
                )
            )
            if len(entries) >= limit:
                break
        return entries

    # Note relations

    def related_notes(self, rel_path: str, limit: int = 10) -> list[SimilarityHit]:
        """
        Notes most similar to ``rel_path``.

        The note's segment vectors are averaged and compared against other
        notes' segments of the same model and dimension. The note itself is
        excluded and only positive similarities are returned.
        """
        doc = self.db.get_document(self.vault_id, rel_path)
        if doc is None or doc.id is None or not doc.last_embedding_model or limit <= 0:
            return []
        own: list[np.ndarray] = []
        for embedding in self.db.get_embeddings(doc.id).values():
            if embedding.model != doc.last_embedding_model or not embedding.is_valid:
                continue
            own.append(decode_vector(embedding.vec, embedding.dim))
        if not own or len({v.shape[0] for v in own}) != 1:
            return []

        centroid = np.mean(np.vstack(own), axis=0)
        norm = float(np.linalg.norm(centroid))
        if norm == 0.0:
            return []
        centroid = centroid / norm

        best = self._best_segment_scores(centroid, doc.last_embedding_model, exclude_doc_id=doc.id)
        hits = [
            SimilarityHit(doc_id=doc_id, rel_path=path, similarity=sim, best_ordinal=ordinal)
            for doc_id, (path, sim, ordinal) in best.items()
            if sim > 0
        ]
        hits.sort(key=lambda h: (-h.similarity, h.rel_path))
        return hits[:limit]

    def backlinks(self, rel_path: str) -> list[Backlink]:
        """Notes linking to ``rel_path``, ordered by path."""
        doc = self.db.get_document(self.vault_id, rel_path)
        if doc is None or doc.id is None:
            return []
        return self.db.get_backlinks(doc.id)

    def graph(self) -> GraphViewData:
        return self.db.get_graph_view_data(self.vault_id)

    def indexing_meta(self) -> IndexingMeta:
        return self.db.get_indexing_meta(self.vault_id, str(self.vault_root))
