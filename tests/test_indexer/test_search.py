"""Tests for the query engine."""

from pathlib import Path

import numpy as np
import pytest

from vault_mcp.indexer import Indexer, QueryEngine
from vault_mcp.indexer.database import Database
from vault_mcp.indexer.embedding import encode_vector
from vault_mcp.indexer.models import SegmentUpdate
from vault_mcp.indexer.search import build_fts_query, min_max_normalize


@pytest.fixture
def indexer(vault: Path, db_path: Path, embedder, write_note):
    write_note("apple.md", "Apples are crunchy fruit")
    write_note("banana.md", "Bananas are soft fruit")
    write_note("index.md", "Shopping list: [[apple]] and [[cherry]]")
    idx = Indexer(vault_root=vault, db_path=db_path, embedder=embedder)
    idx.initialize()
    idx.reindex()
    yield idx
    idx.close()


@pytest.fixture
def engine(indexer: Indexer, embedder) -> QueryEngine:
    return QueryEngine(indexer.db, indexer.vault_id, indexer.vault_root, embedder)


class TestBuildFtsQuery:
    def test_and_terms(self):
        assert build_fts_query("hello, world!") == '"hello"* AND "world"*'

    def test_or_terms(self):
        assert build_fts_query("hello world", match_all=False) == '"hello"* OR "world"*'

    def test_nothing_to_match(self):
        assert build_fts_query("  !!! ") is None


class TestMinMaxNormalize:
    def test_scales(self):
        assert min_max_normalize({1: 2.0, 2: 4.0, 3: 3.0}) == {1: 0.0, 2: 1.0, 3: 0.5}

    def test_zero_span(self):
        assert min_max_normalize({1: 0.3, 2: 0.3}) == {1: 1.0, 2: 1.0}

    def test_empty(self):
        assert min_max_normalize({}) == {}


class TestLexicalSearch:
    def test_prefix_match_with_snippet(self, engine: QueryEngine):
        hits = engine.lexical_search("crunch")
        assert [h.rel_path for h in hits] == ["apple.md"]
        assert ">>>crunchy<<<" in hits[0].snippet

    def test_all_words_required_by_default(self, engine: QueryEngine):
        assert engine.lexical_search("crunchy soft") == []
        paths = {h.rel_path for h in engine.lexical_search("crunchy soft", match_all=False)}
        assert paths == {"apple.md", "banana.md"}

    def test_query_syntax_is_escaped(self, engine: QueryEngine):
        hits = engine.lexical_search('fruit"*(')
        assert {h.rel_path for h in hits} == {"apple.md", "banana.md"}

    def test_empty_query(self, engine: QueryEngine):
        assert engine.lexical_search("  ") == []

    def test_limit(self, engine: QueryEngine):
        assert len(engine.lexical_search("fruit", limit=1)) == 1


class TestSimilaritySearch:
    def test_best_match_first(self, engine: QueryEngine):
        hits = engine.similarity_search("crunchy apples")
        assert hits[0].rel_path == "apple.md"
        assert hits[0].similarity == pytest.approx(np.sqrt(0.5), abs=1e-5)
        assert hits[0].best_ordinal == 0

    def test_other_model_returns_nothing(self, engine: QueryEngine, embedder_factory):
        other = embedder_factory(model="other")
        assert engine.similarity_search("crunchy apples", embedder=other) == []
        assert other.calls == 0

    def test_other_dimension_returns_nothing(self, engine: QueryEngine, embedder_factory):
        assert engine.similarity_search("crunchy apples", embedder=embedder_factory(dim=32)) == []

    def test_without_embedder(self, indexer: Indexer):
        engine = QueryEngine(indexer.db, indexer.vault_id, indexer.vault_root)
        assert engine.similarity_search("apples") == []

    def test_blank_query(self, engine: QueryEngine):
        assert engine.similarity_search("   ") == []

    def test_provider_failure(self, engine: QueryEngine, embedder):
        embedder.fail = True
        assert engine.similarity_search("apples") == []


class TestSearchNotes:
    def test_hybrid_ranking(self, engine: QueryEngine, vault: Path):
        entries = engine.search_notes("crunchy apples")

        assert [e.name for e in entries] == ["apple.md"]
        entry = entries[0]
        assert entry.path == str(vault / "apple.md")
        assert entry.similarity == pytest.approx(1.0)
        assert entry.modified_at > 0
        assert entry.created_at > 0
        assert entry.to_dict()["modifiedAt"] == entry.modified_at

    def test_sorted_and_limited(self, engine: QueryEngine):
        entries = engine.search_notes("fruit")
        assert {e.name for e in entries} == {"apple.md", "banana.md"}
        scores = [e.similarity for e in entries]
        assert scores == sorted(scores, reverse=True)
        assert all(0.05 <= s <= 1.0 for s in scores)
        assert len(engine.search_notes("fruit", limit=1)) == 1

    def test_skips_files_missing_on_disk(self, engine: QueryEngine, vault: Path):
        (vault / "banana.md").unlink()
        assert [e.name for e in engine.search_notes("fruit")] == ["apple.md"]

    def test_no_comparable_vectors(self, engine: QueryEngine, embedder_factory):
        assert engine.search_notes("fruit", embedder=embedder_factory(model="other")) == []

    def test_without_embedder(self, indexer: Indexer):
        engine = QueryEngine(indexer.db, indexer.vault_id, indexer.vault_root)
        assert engine.search_notes("fruit") == []


class TestRelatedNotes:
    @pytest.fixture
    def vector_engine(self, tmp_path: Path):
        db = Database(tmp_path / "vectors.db")
        db.initialize()
        vault_id = db.get_or_create_vault(str(tmp_path))
        ids = db.insert_placeholder_documents(vault_id, ["a.md", "b.md", "c.md", "d.md", "e.md"])
        vectors = {
            "a.md": ("fake:bag", [1.0, 0.0]),
            "b.md": ("fake:bag", [0.8, 0.6]),
            "c.md": ("fake:bag", [-1.0, 0.0]),
            "d.md": ("other:model", [1.0, 0.0]),
        }
        for rel_path, (model, values) in vectors.items():
            db.apply_document_sync(
                ids[rel_path],
                content=rel_path,
                last_hash=rel_path,
                chunking_version=1,
                source_size=1,
                source_mtime=1,
                embedding_model=model,
                embedding_dim=2,
                segment_count=1,
                segment_updates=[
                    SegmentUpdate(0, rel_path, encode_vector(np.array(values, dtype=np.float32)))
                ],
                full_rebuild=False,
            )
        yield QueryEngine(db, vault_id, tmp_path)
        db.close()

    def test_positive_same_model_neighbours_only(self, vector_engine: QueryEngine):
        hits = vector_engine.related_notes("a.md")
        assert [h.rel_path for h in hits] == ["b.md"]
        assert hits[0].similarity == pytest.approx(0.8)

    def test_unknown_note(self, vector_engine: QueryEngine):
        assert vector_engine.related_notes("missing.md") == []

    def test_note_without_vectors(self, vector_engine: QueryEngine):
        assert vector_engine.related_notes("e.md") == []


class TestNoteRelations:
    def test_backlinks(self, engine: QueryEngine):
        assert [b.rel_path for b in engine.backlinks("apple.md")] == ["index.md"]
        assert engine.backlinks("banana.md") == []
        assert engine.backlinks("missing.md") == []

    def test_graph(self, engine: QueryEngine):
        graph = engine.graph()
        assert {n.rel_path for n in graph.nodes} == {"apple.md", "banana.md", "index.md", "cherry"}
        assert sum(1 for e in graph.edges if e.unresolved) == 1
        assert len(graph.edges) == 2

    def test_indexing_meta(self, engine: QueryEngine, vault: Path):
        meta = engine.indexing_meta()
        assert meta.vault_root == str(vault)
        assert meta.doc_count == 3
        assert meta.indexed_doc_count == 3
        assert meta.segment_count == 3
        assert meta.embedding_model == "fake:bag"
        assert meta.chunking_version == 1
