"""Tests for the incremental Indexer."""

import os
from concurrent.futures import Future
from pathlib import Path

import pytest

from vault_mcp.indexer import FileInfo, Indexer, OutcomeStatus
from vault_mcp.indexer.links import LinkResolver

SECTION_ONE = "# One\n\n" + " ".join(f"apple{i}" for i in range(50))
SECTION_TWO = "# Two\n\n" + " ".join(f"cherry{i}" for i in range(50))


@pytest.fixture
def make_indexer(vault: Path, db_path: Path):
    created: list[Indexer] = []

    def _make(embedder=None, max_workers: int = 2) -> Indexer:
        idx = Indexer(vault_root=vault, db_path=db_path, embedder=embedder, max_workers=max_workers)
        idx.initialize()
        created.append(idx)
        return idx

    yield _make
    for idx in created:
        idx.close()


@pytest.fixture
def indexer(make_indexer, embedder) -> Indexer:
    return make_indexer(embedder)


def statuses(report) -> dict[str, OutcomeStatus]:
    return {o.rel_path: o.status for o in report.outcomes}


def doc_id(indexer: Indexer, rel_path: str) -> int:
    doc = indexer.db.get_document(indexer.vault_id, rel_path)
    assert doc is not None, rel_path
    return doc.id


def touch(path: Path) -> None:
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))


def snapshot(indexer: Indexer) -> dict:
    db = indexer.db
    state = {}
    for doc in db.list_documents(indexer.vault_id, with_content=True):
        state[doc.rel_path] = (
            doc,
            db.get_segments(doc.id),
            db.get_embeddings(doc.id),
            db.get_links(doc.id),
            db.get_wiki_keys(doc.id),
            db.get_fts_content(doc.id),
        )
    return state


class TestIndexerSetup:
    def test_rejects_empty_pool(self, vault: Path, db_path: Path):
        with pytest.raises(ValueError):
            Indexer(vault_root=vault, db_path=db_path, max_workers=0)

    def test_initialize_registers_vault(self, indexer: Indexer, vault: Path):
        vault_row = indexer.db.get_vault(str(vault.resolve()))
        assert vault_row is not None
        assert vault_row.id == indexer.vault_id

    def test_reindex_initializes_lazily(self, vault: Path, db_path: Path, write_note):
        write_note("a.md", "alpha")
        idx = Indexer(vault_root=vault, db_path=db_path)
        try:
            report = idx.reindex()
            assert statuses(report) == {"a.md": OutcomeStatus.REINDEXED}
        finally:
            idx.close()


class TestReindex:
    def test_first_pass_indexes_everything(self, indexer: Indexer, write_note):
        write_note("a.md", "# A\n\nAlpha text linking [[b]]")
        write_note("b.md", "# B\n\nBeta text")

        report = indexer.reindex()

        assert statuses(report) == {
            "a.md": OutcomeStatus.REINDEXED,
            "b.md": OutcomeStatus.REINDEXED,
        }
        assert report.files_discovered == 2
        assert report.docs_inserted == 2
        assert report.embeddings_written == 2
        link = indexer.db.get_links(doc_id(indexer, "a.md"))[0]
        assert link.target_path == "b.md"
        assert link.target_doc_id == doc_id(indexer, "b.md")

    def test_content_and_fts_match(self, indexer: Indexer, write_note):
        write_note("a.md", "---\ntitle: Plans\n---\n# Body\n\ntext")
        indexer.reindex()

        doc = indexer.db.get_document(indexer.vault_id, "a.md")
        assert doc.content == "Plans\n\n# Body\n\ntext"
        assert indexer.db.get_fts_content(doc.id) == doc.content
        assert doc.last_embedding_model == "fake:bag"
        assert doc.last_embedding_dim == 128

    def test_second_pass_is_idempotent(self, indexer: Indexer, embedder, write_note):
        write_note("a.md", f"{SECTION_ONE}\n\n{SECTION_TWO}\n\n[[b]] [[missing]]")
        write_note("b.md", "# B\n\nBeta [a](a.md)")
        indexer.reindex()
        before = snapshot(indexer)
        calls = embedder.calls

        report = indexer.reindex()

        assert set(statuses(report).values()) == {OutcomeStatus.UNCHANGED}
        assert report.segments_written == 0
        assert report.embeddings_written == 0
        assert embedder.calls == calls
        assert snapshot(indexer) == before

    def test_touched_file_is_unchanged(self, indexer: Indexer, write_note):
        path = write_note("a.md", "alpha")
        indexer.reindex()
        touch(path)

        report = indexer.reindex()

        assert statuses(report) == {"a.md": OutcomeStatus.UNCHANGED}
        doc = indexer.db.get_document(indexer.vault_id, "a.md")
        assert doc.last_source_mtime == path.stat().st_mtime_ns

    def test_only_modified_note_is_reindexed(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        path = write_note("b.md", "beta")
        indexer.reindex()

        path.write_text("beta, revised and longer", encoding="utf-8")
        report = indexer.reindex()

        assert statuses(report) == {
            "a.md": OutcomeStatus.UNCHANGED,
            "b.md": OutcomeStatus.REINDEXED,
        }
        doc = indexer.db.get_document(indexer.vault_id, "b.md")
        assert doc.content == "beta, revised and longer"

    def test_unchanged_segment_keeps_its_embedding(self, indexer: Indexer, embedder, write_note):
        path = write_note("a.md", f"{SECTION_ONE}\n\n{SECTION_TWO}")
        indexer.reindex()
        a_id = doc_id(indexer, "a.md")
        before = indexer.db.get_embeddings(a_id)
        assert set(before) == {0, 1}
        embedder.texts_embedded.clear()

        path.write_text(f"{SECTION_ONE}\n\n{SECTION_TWO.replace('cherry', 'pear')}", encoding="utf-8")
        report = indexer.reindex()

        outcome = report.by_path()["a.md"]
        assert outcome.status == OutcomeStatus.REINDEXED
        assert outcome.segments_written == 1
        assert outcome.embeddings_written == 1
        after = indexer.db.get_embeddings(a_id)
        assert after[0].id == before[0].id
        assert after[0].vec == before[0].vec
        assert after[1].vec != before[1].vec
        assert len(embedder.texts_embedded) == 1
        assert embedder.texts_embedded[0].startswith("# Two")

    def test_shrinking_note_prunes_segments(self, indexer: Indexer, write_note):
        path = write_note("a.md", f"{SECTION_ONE}\n\n{SECTION_TWO}")
        indexer.reindex()
        path.write_text(SECTION_ONE, encoding="utf-8")

        indexer.reindex()

        a_id = doc_id(indexer, "a.md")
        assert [s.ordinal for s in indexer.db.get_segments(a_id)] == [0]
        assert set(indexer.db.get_embeddings(a_id)) == {0}

    def test_deleted_note_is_removed(self, indexer: Indexer, vault: Path, write_note):
        write_note("a.md", "links to [b](b.md)")
        write_note("b.md", "beta")
        indexer.reindex()
        b_id = doc_id(indexer, "b.md")

        (vault / "b.md").unlink()
        report = indexer.reindex()

        assert statuses(report)["b.md"] == OutcomeStatus.REMOVED
        assert report.docs_deleted == 1
        assert indexer.db.get_document(indexer.vault_id, "b.md") is None
        assert indexer.db.get_segments(b_id) == []
        links = indexer.db.get_links(doc_id(indexer, "a.md"))
        assert [(link.target_path, link.target_doc_id) for link in links] == [("b.md", None)]

    def test_force_full_rebuilds(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        write_note("b.md", "beta")
        indexer.reindex()

        report = indexer.reindex(force_full=True)

        assert set(statuses(report).values()) == {OutcomeStatus.REINDEXED}
        assert report.embeddings_written == 2

    def test_chunking_version_change_rebuilds(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        indexer.reindex()
        with indexer.db._write_cursor() as cursor:
            cursor.execute("UPDATE doc SET chunking_version = 0")

        report = indexer.reindex()

        assert statuses(report) == {"a.md": OutcomeStatus.REINDEXED}

    def test_noncontiguous_ordinals_trigger_full_rebuild(self, indexer: Indexer, write_note):
        path = write_note("a.md", f"{SECTION_ONE}\n\n{SECTION_TWO}")
        indexer.reindex()
        a_id = doc_id(indexer, "a.md")
        with indexer.db._write_cursor() as cursor:
            cursor.execute(
                "UPDATE segment SET ordinal = 10 WHERE doc_id = ? AND ordinal = 0", (a_id,)
            )
        # Matching size and mtime skip the note before any consistency check
        touch(path)

        report = indexer.reindex()

        outcome = report.by_path()["a.md"]
        assert outcome.status == OutcomeStatus.REINDEXED
        assert outcome.embeddings_written == 2
        assert [s.ordinal for s in indexer.db.get_segments(a_id)] == [0, 1]
        assert set(indexer.db.get_embeddings(a_id)) == {0, 1}

    @pytest.mark.parametrize(
        "damage",
        [
            "DELETE FROM embedding WHERE segment_id = "
            "(SELECT id FROM segment WHERE doc_id = ? AND ordinal = 1)",
            "UPDATE embedding SET vec = X'00' WHERE segment_id = "
            "(SELECT id FROM segment WHERE doc_id = ? AND ordinal = 1)",
        ],
        ids=["missing", "truncated"],
    )
    def test_broken_embedding_is_repaired(self, indexer: Indexer, embedder, write_note, damage: str):
        path = write_note("a.md", f"{SECTION_ONE}\n\n{SECTION_TWO}")
        indexer.reindex()
        a_id = doc_id(indexer, "a.md")
        before = indexer.db.get_embeddings(a_id)
        with indexer.db._write_cursor() as cursor:
            cursor.execute(damage, (a_id,))
        # Matching size and mtime skip the note before any consistency check
        touch(path)
        embedder.texts_embedded.clear()

        report = indexer.reindex()

        outcome = report.by_path()["a.md"]
        assert outcome.status == OutcomeStatus.REINDEXED
        assert outcome.embeddings_written == 1
        after = indexer.db.get_embeddings(a_id)
        assert set(after) == {0, 1}
        assert all(e.is_valid for e in after.values())
        assert after[0].vec == before[0].vec
        assert len(embedder.texts_embedded) == 1
        assert embedder.texts_embedded[0].startswith("# Two")

    def test_report_to_dict(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        data = indexer.reindex().to_dict()
        assert data["filesDiscovered"] == 1
        assert data["reindexed"] == 1
        assert data["failures"] == []
        assert data["coalesced"] is False


class TestLinkResolutionAcrossPasses:
    def test_wiki_link_resolves_when_target_appears(self, indexer: Indexer, write_note):
        write_note("index.md", "See [[docs/guide]]")
        indexer.reindex()
        index_id = doc_id(indexer, "index.md")
        link = indexer.db.get_links(index_id)[0]
        assert (link.target_path, link.target_doc_id) == ("docs/guide", None)

        write_note("docs/guide.md", "# Guide")
        report = indexer.reindex()

        assert statuses(report)["index.md"] == OutcomeStatus.UNCHANGED
        link = indexer.db.get_links(index_id)[0]
        assert link.target_path == "docs/guide.md"
        assert link.target_doc_id == doc_id(indexer, "docs/guide.md")

    def test_markdown_link_binds_when_target_appears(self, indexer: Indexer, write_note):
        write_note("index.md", "See [g](notes/g.md)")
        indexer.reindex()

        write_note("notes/g.md", "# G")
        indexer.reindex()

        link = indexer.db.get_links(doc_id(indexer, "index.md"))[0]
        assert link.target_doc_id == doc_id(indexer, "notes/g.md")

    def test_wiki_link_falls_back_after_delete(self, indexer: Indexer, vault: Path, write_note):
        write_note("index.md", "See [[guide]]")
        write_note("docs/guide.md", "docs guide")
        write_note("notes/guide.md", "notes guide")
        indexer.reindex()
        index_id = doc_id(indexer, "index.md")
        assert indexer.db.get_links(index_id)[0].target_path == "docs/guide.md"

        (vault / "docs" / "guide.md").unlink()
        indexer.reindex()

        link = indexer.db.get_links(index_id)[0]
        assert link.target_path == "notes/guide.md"
        assert link.target_doc_id == doc_id(indexer, "notes/guide.md")


class TestFailures:
    def test_embedding_failure_leaves_document_stale(self, indexer: Indexer, embedder, write_note):
        write_note("a.md", "alpha")
        embedder.fail = True

        report = indexer.reindex()

        outcome = report.by_path()["a.md"]
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.reason.startswith("embedding error")
        assert report.to_dict()["failures"] == [outcome.to_dict()]
        assert indexer.db.get_document(indexer.vault_id, "a.md").last_hash is None

        embedder.fail = False
        assert statuses(indexer.reindex()) == {"a.md": OutcomeStatus.REINDEXED}

    def test_unreadable_file_fails_alone(self, indexer: Indexer, vault: Path, write_note):
        write_note("good.md", "fine")
        (vault / "bad.md").write_bytes(b"\xff\xfe\xfa not utf-8")

        report = indexer.reindex()

        assert report.by_path()["good.md"].status == OutcomeStatus.REINDEXED
        bad = report.by_path()["bad.md"]
        assert bad.status == OutcomeStatus.FAILED
        assert bad.reason.startswith("read error")

    def test_vanished_file_is_removed(self, indexer: Indexer, vault: Path):
        indexer.db.insert_placeholder_documents(indexer.vault_id, ["ghost.md"])
        doc = indexer.db.get_document(indexer.vault_id, "ghost.md")
        info = FileInfo(path=vault / "ghost.md", rel_path="ghost.md", size=1, mtime_ns=1)

        outcome = indexer._sync_document(info, doc, False, False, LinkResolver({}))

        assert outcome.status == OutcomeStatus.REMOVED
        assert indexer.db.get_document(indexer.vault_id, "ghost.md") is None


class TestEmbeddingModels:
    def test_without_embedder(self, make_indexer, write_note):
        write_note("a.md", "alpha")
        idx = make_indexer(None)

        report = idx.reindex()

        assert statuses(report) == {"a.md": OutcomeStatus.REINDEXED}
        a_id = doc_id(idx, "a.md")
        assert len(idx.db.get_segments(a_id)) == 1
        assert idx.db.get_embeddings(a_id) == {}
        assert idx.db.get_document_by_id(a_id).last_embedding_model is None
        assert statuses(idx.reindex()) == {"a.md": OutcomeStatus.UNCHANGED}

    def test_model_change_reembeds(self, make_indexer, embedder_factory, write_note):
        write_note("a.md", "alpha")
        first = make_indexer(embedder_factory(model="bag"))
        first.reindex()
        first.close()

        second = make_indexer(embedder_factory(model="bag2"))
        report = second.reindex()

        assert statuses(report) == {"a.md": OutcomeStatus.REINDEXED}
        a_id = doc_id(second, "a.md")
        assert {e.model for e in second.db.get_embeddings(a_id).values()} == {"fake:bag2"}

    def test_dimension_change_reembeds(self, make_indexer, embedder_factory, write_note):
        write_note("a.md", "alpha")
        first = make_indexer(embedder_factory(dim=128))
        first.reindex()
        first.close()

        second = make_indexer(embedder_factory(dim=64))
        report = second.reindex()

        assert statuses(report) == {"a.md": OutcomeStatus.REINDEXED}
        assert second.db.get_document(second.vault_id, "a.md").last_embedding_dim == 64


class TestConcurrencyControls:
    def test_concurrent_request_is_coalesced(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        indexer._pass_lock.acquire()
        try:
            report = indexer.reindex()
        finally:
            indexer._pass_lock.release()

        assert report.coalesced
        assert report.outcomes == []

    def test_abort_stops_scheduling(self, make_indexer, embedder, write_note):
        for name in ("a.md", "b.md", "c.md"):
            write_note(name, f"note {name}")
        idx = make_indexer(embedder, max_workers=1)
        original = embedder.embed_batch

        def aborting(texts):
            idx.abort()
            return original(texts)

        embedder.embed_batch = aborting
        report = idx.reindex()

        assert report.aborted
        assert statuses(report) == {"a.md": OutcomeStatus.REINDEXED}

        embedder.embed_batch = original
        report = idx.reindex()
        assert statuses(report) == {
            "a.md": OutcomeStatus.UNCHANGED,
            "b.md": OutcomeStatus.REINDEXED,
            "c.md": OutcomeStatus.REINDEXED,
        }


    def test_abort_before_pass_applies_to_next_pass(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        indexer.abort()

        report = indexer.reindex()

        assert report.aborted
        assert report.outcomes == []
        assert statuses(indexer.reindex()) == {"a.md": OutcomeStatus.REINDEXED}

    def test_initialize_clears_pending_abort(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        indexer.close()
        indexer.initialize()

        report = indexer.reindex()

        assert not report.aborted
        assert statuses(report) == {"a.md": OutcomeStatus.REINDEXED}

    def test_cancelled_documents_are_reported_as_aborted(
        self, indexer: Indexer, monkeypatch, write_note
    ):
        for name in ("a.md", "b.md", "c.md"):
            write_note(name, f"note {name}")

        class PartlyCancelledExecutor:
            """Runs documents inline, except b.md which is cancelled."""

            def submit(self, fn, info, *args):
                future = Future()
                if info.rel_path == "b.md":
                    future.cancel()
                else:
                    future.set_result(fn(info, *args))
                return future

        monkeypatch.setattr(indexer, "_get_executor", PartlyCancelledExecutor)
        report = indexer.reindex()

        assert report.aborted
        assert report.count(OutcomeStatus.FAILED) == 0
        assert statuses(report) == {
            "a.md": OutcomeStatus.REINDEXED,
            "c.md": OutcomeStatus.REINDEXED,
        }

    def test_locks_of_removed_paths_are_dropped(self, indexer: Indexer, vault: Path, write_note):
        for name in ("a.md", "b.md", "c.md"):
            write_note(name, f"note {name}")
        indexer.reindex()
        assert {"a.md", "b.md", "c.md"} <= set(indexer._doc_locks)

        (vault / "a.md").unlink()
        indexer.delete_note("a.md")
        (vault / "b.md").rename(vault / "moved.md")
        indexer.rename_note("b.md", "moved.md")
        (vault / "c.md").unlink()
        indexer.reindex()

        assert not {"a.md", "b.md", "c.md"} & set(indexer._doc_locks)


class TestIndexNote:
    def test_indexes_one_note_only(self, indexer: Indexer, vault: Path, write_note):
        write_note("a.md", "alpha")
        write_note("b.md", "beta")
        indexer.reindex()
        (vault / "b.md").unlink()
        write_note("c.md", "gamma")

        outcome = indexer.index_note("c.md")

        assert outcome.status == OutcomeStatus.REINDEXED
        assert indexer.db.get_document(indexer.vault_id, "c.md") is not None
        assert indexer.db.get_document(indexer.vault_id, "b.md") is not None

    def test_absolute_path(self, indexer: Indexer, write_note):
        path = write_note("sub/a.md", "alpha")
        assert indexer.index_note(str(path)).rel_path == "sub/a.md"

    def test_unchanged(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        indexer.index_note("a.md")
        assert indexer.index_note("a.md").status == OutcomeStatus.UNCHANGED

    def test_missing_file_removes_note(self, indexer: Indexer, vault: Path, write_note):
        write_note("a.md", "alpha")
        indexer.reindex()
        (vault / "a.md").unlink()

        assert indexer.index_note("a.md").status == OutcomeStatus.REMOVED
        assert indexer.db.get_document(indexer.vault_id, "a.md") is None

    def test_new_note_resolves_pending_links(self, indexer: Indexer, write_note):
        write_note("index.md", "See [[fresh]]")
        indexer.reindex()
        write_note("fresh.md", "# Fresh")

        indexer.index_note("fresh.md")

        link = indexer.db.get_links(doc_id(indexer, "index.md"))[0]
        assert link.target_doc_id == doc_id(indexer, "fresh.md")

    def test_outside_vault(self, indexer: Indexer, vault: Path):
        with pytest.raises(ValueError, match="outside workspace"):
            indexer.index_note(str(vault.parent / "elsewhere.md"))
        with pytest.raises(ValueError, match="outside workspace"):
            indexer.index_note("../elsewhere.md")

    def test_not_markdown(self, indexer: Indexer):
        with pytest.raises(ValueError, match="Not a markdown file"):
            indexer.index_note("image.png")


class TestDeleteAndRename:
    def test_delete_note(self, indexer: Indexer, write_note):
        write_note("a.md", "links to [b](b.md)")
        write_note("b.md", "beta")
        indexer.reindex()

        assert indexer.delete_note("b.md") is True
        assert indexer.delete_note("b.md") is False
        link = indexer.db.get_links(doc_id(indexer, "a.md"))[0]
        assert link.target_doc_id is None

    def test_rename_keeps_document_id(self, indexer: Indexer, vault: Path, write_note):
        write_note("old.md", "body")
        write_note("src.md", "see [o](old.md)")
        indexer.reindex()
        old_id = doc_id(indexer, "old.md")
        (vault / "old.md").rename(vault / "new.md")

        assert indexer.rename_note("old.md", "new.md") is True

        assert doc_id(indexer, "new.md") == old_id
        assert indexer.db.get_document(indexer.vault_id, "old.md") is None
        link = indexer.db.get_links(doc_id(indexer, "src.md"))[0]
        assert (link.target_path, link.target_doc_id) == ("new.md", old_id)
        assert statuses(indexer.reindex())["new.md"] == OutcomeStatus.UNCHANGED

    def test_rename_missing(self, indexer: Indexer):
        assert indexer.rename_note("nope.md", "other.md") is False

    def test_rename_onto_indexed_note(self, indexer: Indexer, write_note):
        write_note("a.md", "alpha")
        write_note("b.md", "beta")
        indexer.reindex()
        with pytest.raises(ValueError, match="already indexed"):
            indexer.rename_note("a.md", "b.md")
