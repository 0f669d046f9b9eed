"""Incremental indexer that keeps the SQLite index in sync with the vault."""

import logging
import threading
from collections.abc import Iterator
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path

from vault_mcp.indexer.chunker import CHUNKING_VERSION, TextChunk, chunk_document
from vault_mcp.indexer.database import Database
from vault_mcp.indexer.embedding import EmbeddingError, EmbeddingProvider, encode_vector
from vault_mcp.indexer.links import LinkResolver, parse_links, path_query_keys
from vault_mcp.indexer.models import (
    ContentFingerprint,
    Document,
    DocumentOutcome,
    Embedding,
    IndexReport,
    OutcomeStatus,
    SegmentUpdate,
)
from vault_mcp.indexer.parser import format_indexing_text
from vault_mcp.indexer.walker import FileInfo, is_markdown, stat_file, to_rel_path, walk_vault

logger = logging.getLogger(__name__)

# Texts sent to the embedding provider per request
EMBED_BATCH_SIZE = 32


class Indexer:
    """
    Incremental indexer for one vault.

    The filesystem is always the source of truth. SQLite is a derived index
    that can be regenerated at any time.

    Thread Safety:
        Only one reindex pass runs at a time; a request that arrives while a
        pass is running is coalesced into it and returns immediately.
        Documents within a pass are processed by a bounded worker pool, and
        every write for a given path holds that path's lock, so a document is
        never re-chunked twice concurrently. Each document's write is a single
        transaction, so readers never see a half-written document.
    """

    def __init__(
        self,
        vault_root: Path,
        db_path: Path,
        embedder: EmbeddingProvider | None = None,
        max_workers: int = 4,
    ):
        """
        Initialize the indexer.

        Args:
            vault_root: Path to the vault directory
            db_path: Path to the SQLite database file
            embedder: Embedding provider, or None for lexical-only indexing
            max_workers: Size of the per-document worker pool
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.vault_root = vault_root
        self.db = Database(db_path)
        self.embedder = embedder
        self.max_workers = max_workers
        self.vault_id: int | None = None
        self._initialized = False
        self._pass_lock = threading.Lock()
        self._abort = threading.Event()
        self._doc_locks: dict[str, threading.Lock] = {}
        self._doc_locks_guard = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    def initialize(self) -> None:
        """Initialize the database schema and register the vault."""
        self.db.initialize()
        self.vault_id = self.db.get_or_create_vault(str(self._root()))
        self._abort.clear()
        self._initialized = True

    def close(self) -> None:
        """Abort any running pass and close database connections."""
        self.abort()
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        self.db.close()
        self._initialized = False

    def abort(self) -> None:
        """Stop scheduling documents in the running pass.

        Documents already being written still complete atomically. If no
        pass is running, the next pass is aborted instead.
        """
        self._abort.set()

    def _ensure_initialized(self) -> None:
        """Ensure the database is initialized."""
        if not self._initialized:
            self.initialize()

    def _require_vault_id(self) -> int:
        self._ensure_initialized()
        if self.vault_id is None:
            raise RuntimeError(f"No vault registered for {self.vault_root}")
        return self.vault_id

    def _root(self) -> Path:
        return self.vault_root.expanduser().resolve()

    @property
    def embedding_model(self) -> str | None:
        return self.embedder.model_id if self.embedder else None

    @contextmanager
    def _doc_lock(self, rel_path: str) -> Iterator[None]:
        with self._doc_locks_guard:
            lock = self._doc_locks.setdefault(rel_path, threading.Lock())
        with lock:
            yield

    def _drop_doc_lock(self, rel_path: str) -> None:
        """Forget the lock of a path that is no longer indexed."""
        with self._doc_locks_guard:
            lock = self._doc_locks.get(rel_path)
            if lock is not None and not lock.locked():
                del self._doc_locks[rel_path]

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="vault-index"
            )
        return self._executor

    # Full pass

    def reindex(self, force_full: bool = False) -> IndexReport:
        """
        Bring the index up to date with the vault.

        Args:
            force_full: Re-chunk and re-embed every document even if unchanged.

        Returns:
            IndexReport with one outcome per document touched. If a pass is
            already running, returns at once with ``coalesced`` set.
        """
        self._ensure_initialized()
        if not self._pass_lock.acquire(blocking=False):
            logger.info("Reindex already in progress, request coalesced")
            return IndexReport(coalesced=True)
        try:
            report = self._run_pass(force_full)
        finally:
            # An abort requested before the pass started applies to it
            self._abort.clear()
            self._pass_lock.release()

        logger.info(
            "Reindex complete: %d files, %d reindexed, %d unchanged, %d failed, %d removed%s",
            report.files_discovered,
            report.count(OutcomeStatus.REINDEXED),
            report.count(OutcomeStatus.UNCHANGED),
            report.count(OutcomeStatus.FAILED),
            report.count(OutcomeStatus.REMOVED),
            " (aborted)" if report.aborted else "",
        )
        return report

    def _run_pass(self, force_full: bool) -> IndexReport:
        vault_id = self._require_vault_id()
        root = self._root()
        logger.debug("Starting reindex of %s (force_full=%s)", root, force_full)
        report = IndexReport()

        files = list(walk_vault(root))
        report.files_discovered = len(files)
        on_disk = {info.rel_path for info in files}
        existing = {doc.rel_path: doc for doc in self.db.list_documents(vault_id)}

        affected_keys: set[str] = set()

        removed = [doc for path, doc in existing.items() if path not in on_disk]
        for doc in removed:
            with self._doc_lock(doc.rel_path):
                self.db.delete_document(doc.id)  # type: ignore[arg-type]
            self._drop_doc_lock(doc.rel_path)
            affected_keys.update(path_query_keys(doc.rel_path))
            report.outcomes.append(DocumentOutcome(doc.rel_path, OutcomeStatus.REMOVED))
        report.docs_deleted = len(removed)

        new_paths = [info.rel_path for info in files if info.rel_path not in existing]
        inserted = self.db.insert_placeholder_documents(vault_id, new_paths)
        report.docs_inserted = len(inserted)
        if inserted:
            for rel_path in inserted:
                affected_keys.update(path_query_keys(rel_path))
            bound = self.db.bind_unresolved_links(vault_id, inserted)
            if bound:
                logger.debug("Bound %d unresolved links to new documents", bound)

        refresh_ids = self.db.get_sources_for_wiki_keys(vault_id, affected_keys)
        doc_paths = self.db.get_document_paths(vault_id)
        resolver = LinkResolver(doc_paths)

        executor = self._get_executor()
        futures: list[tuple[FileInfo, Future]] = []
        for info in files:
            doc = existing.get(info.rel_path)
            if doc is None:
                doc = Document(
                    id=doc_paths.get(info.rel_path),
                    vault_id=vault_id,
                    rel_path=info.rel_path,
                )
            futures.append(
                (
                    info,
                    executor.submit(
                        self._process_scheduled,
                        info,
                        doc,
                        force_full,
                        doc.id in refresh_ids,
                        resolver,
                    ),
                )
            )

        for info, future in futures:
            try:
                outcome = future.result()
            except CancelledError:
                # The pool was shut down by close() before this document ran
                outcome = None
            except Exception as e:
                logger.exception("Unexpected error indexing %s", info.rel_path)
                outcome = DocumentOutcome(info.rel_path, OutcomeStatus.FAILED, reason=str(e))
            if outcome is None:
                report.aborted = True
                continue
            report.outcomes.append(outcome)
            report.segments_written += outcome.segments_written
            report.embeddings_written += outcome.embeddings_written
            report.links_written += outcome.links_written
        return report

    def _process_scheduled(
        self,
        info: FileInfo,
        doc: Document,
        force_full: bool,
        refresh_links: bool,
        resolver: LinkResolver,
    ) -> DocumentOutcome | None:
        if self._abort.is_set():
            return None
        with self._doc_lock(info.rel_path):
            return self._sync_document(info, doc, force_full, refresh_links, resolver)

    # Per-document sync

    def _model_matches(self, model: str | None, dim: int | None) -> bool:
        if model != self.embedding_model:
            return False
        target_dim = self.embedder.dimensions if self.embedder else None
        return target_dim is None or dim is None or dim == target_dim

    def _embedding_usable(self, embedding: Embedding | None) -> bool:
        return (
            embedding is not None
            and embedding.is_valid
            and self._model_matches(embedding.model, embedding.dim)
        )

    def _needs_repair(self, doc_id: int) -> bool:
        """True if stored segments are inconsistent or miss a usable embedding."""
        segments = self.db.get_segments(doc_id)
        if [s.ordinal for s in segments] != list(range(len(segments))):
            return True
        embeddings = self.db.get_embeddings(doc_id)
        if self.embedder is None:
            return bool(embeddings)
        return any(not self._embedding_usable(embeddings.get(s.ordinal)) for s in segments)

    def _sync_document(
        self,
        info: FileInfo,
        doc: Document,
        force_full: bool,
        refresh_links: bool,
        resolver: LinkResolver,
    ) -> DocumentOutcome:
        """Bring one document up to date. Caller holds the document lock."""
        rel_path = info.rel_path
        if doc.id is None:
            # Deleted concurrently after discovery
            return DocumentOutcome(rel_path, OutcomeStatus.REMOVED)

        model_ok = self._model_matches(doc.last_embedding_model, doc.last_embedding_dim)
        version_ok = doc.chunking_version == CHUNKING_VERSION
        stat_ok = (
            doc.last_source_size == info.size and doc.last_source_mtime == info.mtime_ns
        )
        if (
            not force_full
            and not refresh_links
            and doc.last_hash is not None
            and version_ok
            and model_ok
            and stat_ok
        ):
            logger.debug("Skipping unchanged %s (stat match)", rel_path)
            return DocumentOutcome(rel_path, OutcomeStatus.UNCHANGED)

        try:
            data = info.path.read_bytes()
            text = data.decode("utf-8")
        except FileNotFoundError:
            logger.info("File vanished before indexing: %s", rel_path)
            self.db.delete_document(doc.id)
            return DocumentOutcome(rel_path, OutcomeStatus.REMOVED)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read %s: %s", rel_path, e)
            return DocumentOutcome(rel_path, OutcomeStatus.FAILED, reason=f"read error: {e}")

        fingerprint = ContentFingerprint.of_bytes(data)
        if (
            not force_full
            and fingerprint.matches(doc.last_hash)
            and version_ok
            and model_ok
            and not self._needs_repair(doc.id)
        ):
            if not stat_ok:
                self.db.update_document_stat(doc.id, info.size, info.mtime_ns)
            links_written = 0
            if refresh_links:
                links, keys = resolver.resolve(rel_path, parse_links(text))
                links_written = self.db.replace_links(doc.id, links, keys)
                logger.debug("Refreshed links of %s", rel_path)
            return DocumentOutcome(
                rel_path, OutcomeStatus.UNCHANGED, links_written=links_written
            )

        try:
            return self._write_document(info, doc, text, fingerprint, force_full, resolver)
        except EmbeddingError as e:
            logger.warning("Embedding failed for %s: %s", rel_path, e)
            return DocumentOutcome(rel_path, OutcomeStatus.FAILED, reason=f"embedding error: {e}")
        except LookupError:
            return DocumentOutcome(rel_path, OutcomeStatus.REMOVED)

    def _plan_segments(
        self, doc: Document, chunks: list[TextChunk], full_rebuild: bool
    ) -> tuple[list[SegmentUpdate], list[tuple[SegmentUpdate, str]]]:
        """Diff new chunks against stored segments by ordinal and hash."""
        stored = {} if full_rebuild else {s.ordinal: s for s in self.db.get_segments(doc.id)}  # type: ignore[arg-type]
        embeddings = {} if full_rebuild else self.db.get_embeddings(doc.id)  # type: ignore[arg-type]

        updates: list[SegmentUpdate] = []
        to_embed: list[tuple[SegmentUpdate, str]] = []
        for chunk in chunks:
            digest = chunk.fingerprint.digest
            segment = stored.get(chunk.ordinal)
            embedding = embeddings.get(chunk.ordinal)
            if segment is not None and segment.last_hash == digest:
                if self.embedder is None and embedding is None:
                    continue
                if self.embedder is not None and self._embedding_usable(embedding):
                    continue
            update = SegmentUpdate(ordinal=chunk.ordinal, last_hash=digest)
            updates.append(update)
            if self.embedder is not None:
                to_embed.append((update, chunk.text))
        return updates, to_embed

    def _embed(self, to_embed: list[tuple[SegmentUpdate, str]]) -> None:
        if self.embedder is None:
            raise EmbeddingError("No embedding provider configured")
        for start in range(0, len(to_embed), EMBED_BATCH_SIZE):
            batch = to_embed[start : start + EMBED_BATCH_SIZE]
            vectors = self.embedder.embed_batch([text for _, text in batch])
            if len(vectors) != len(batch):
                raise EmbeddingError(f"Expected {len(batch)} vectors, got {len(vectors)}")
            for (update, _), vector in zip(batch, vectors):
                update.vec = encode_vector(vector)

    def _write_document(
        self,
        info: FileInfo,
        doc: Document,
        text: str,
        fingerprint: ContentFingerprint,
        force_full: bool,
        resolver: LinkResolver,
    ) -> DocumentOutcome:
        rel_path = info.rel_path
        if doc.id is None:
            raise LookupError(f"Document is no longer indexed: {rel_path}")
        index_text = format_indexing_text(text, rel_path)
        chunks = chunk_document(index_text)

        stored_ordinals = [s.ordinal for s in self.db.get_segments(doc.id)]
        full_rebuild = (
            force_full
            or doc.chunking_version != CHUNKING_VERSION
            or stored_ordinals != list(range(len(stored_ordinals)))
        )
        updates, to_embed = self._plan_segments(doc, chunks, full_rebuild)

        # Vectors are produced before the write transaction opens
        if to_embed:
            self._embed(to_embed)

        embedding_dim = None
        if self.embedder is not None:
            embedding_dim = self.embedder.dimensions or doc.last_embedding_dim

        links, keys = resolver.resolve(rel_path, parse_links(text))
        segments_written, embeddings_written = self.db.apply_document_sync(
            doc.id,
            content=index_text,
            last_hash=fingerprint.digest,
            chunking_version=CHUNKING_VERSION,
            source_size=info.size,
            source_mtime=info.mtime_ns,
            embedding_model=self.embedding_model,
            embedding_dim=embedding_dim,
            segment_count=len(chunks),
            segment_updates=updates,
            full_rebuild=full_rebuild,
            links=links,
            wiki_keys=keys,
        )
        logger.debug(
            "Indexed %s: %d chunks, %d segments written, %d embeddings written",
            rel_path,
            len(chunks),
            segments_written,
            embeddings_written,
        )
        return DocumentOutcome(
            rel_path,
            OutcomeStatus.REINDEXED,
            segments_written=segments_written,
            embeddings_written=embeddings_written,
            links_written=len(links),
        )

    # Single-note operations

    def _rel_path_for(self, path: str | Path) -> str:
        """Validate that ``path`` is a Markdown file inside the vault."""
        root = self._root()
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = root / candidate
        resolved = candidate.resolve()
        if resolved == root or not resolved.is_relative_to(root):
            raise ValueError(f"Path is outside workspace: {path}")
        if not is_markdown(resolved):
            raise ValueError(f"Not a markdown file: {path}")
        return to_rel_path(root, resolved)

    def _refresh_sources(self, keys: set[str], extra_ids: set[int] | None = None) -> int:
        """Re-resolve links of documents that referenced any of ``keys``."""
        vault_id = self._require_vault_id()
        doc_ids = self.db.get_sources_for_wiki_keys(vault_id, keys) | (extra_ids or set())
        if not doc_ids:
            return 0
        resolver = LinkResolver(self.db.get_document_paths(vault_id))
        root = self._root()
        refreshed = 0
        for doc_id in sorted(doc_ids):
            doc = self.db.get_document_by_id(doc_id)
            if doc is None:
                continue
            with self._doc_lock(doc.rel_path):
                try:
                    text = (root / doc.rel_path).read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning("Cannot refresh links of %s: %s", doc.rel_path, e)
                    continue
                links, link_keys = resolver.resolve(doc.rel_path, parse_links(text))
                self.db.replace_links(doc_id, links, link_keys)
                refreshed += 1
        return refreshed

    def index_note(self, path: str | Path) -> DocumentOutcome:
        """
        Index a single note without touching any other document's content.

        Args:
            path: Absolute path, or path relative to the vault root.

        Raises:
            ValueError: If the path is outside the vault or not a Markdown file.
        """
        vault_id = self._require_vault_id()
        rel_path = self._rel_path_for(path)
        root = self._root()
        abs_path = root / rel_path

        try:
            info = stat_file(root, abs_path)
        except FileNotFoundError:
            self.delete_note(rel_path)
            return DocumentOutcome(rel_path, OutcomeStatus.REMOVED)

        inserted = self.db.insert_placeholder_documents(vault_id, [rel_path])
        if inserted:
            self.db.bind_unresolved_links(vault_id, inserted)
        doc = self.db.get_document(vault_id, rel_path)
        if doc is None:
            return DocumentOutcome(rel_path, OutcomeStatus.REMOVED)

        resolver = LinkResolver(self.db.get_document_paths(vault_id))
        with self._doc_lock(rel_path):
            outcome = self._sync_document(info, doc, False, False, resolver)

        if inserted:
            self._refresh_sources(set(path_query_keys(rel_path)))
        return outcome

    def delete_note(self, path: str | Path) -> bool:
        """Remove a note from the index. Returns False if it was not indexed.

        Links pointing at the note become unresolved; notes that referenced
        it by a short name are re-resolved in case another note now matches.
        """
        vault_id = self._require_vault_id()
        rel_path = self._rel_path_for(path)
        try:
            with self._doc_lock(rel_path):
                doc = self.db.get_document(vault_id, rel_path)
                if doc is None or doc.id is None:
                    return False
                self.db.delete_document(doc.id)
        finally:
            self._drop_doc_lock(rel_path)
        logger.info("Deleted %s from index", rel_path)
        self._refresh_sources(set(path_query_keys(rel_path)))
        return True

    def rename_note(self, old_path: str | Path, new_path: str | Path) -> bool:
        """Move an indexed note to a new path, keeping its document ID.

        Returns False if ``old_path`` is not indexed.

        Raises:
            ValueError: If either path is invalid or ``new_path`` is already indexed.
        """
        vault_id = self._require_vault_id()
        old_rel = self._rel_path_for(old_path)
        new_rel = self._rel_path_for(new_path)
        if old_rel == new_rel:
            return self.db.get_document(vault_id, old_rel) is not None

        first, second = sorted((old_rel, new_rel))
        try:
            with self._doc_lock(first), self._doc_lock(second):
                doc = self.db.get_document(vault_id, old_rel)
                if doc is None or doc.id is None:
                    return False
                if self.db.get_document(vault_id, new_rel) is not None:
                    raise ValueError(f"Target path already indexed: {new_rel}")
                self.db.rename_document(doc.id, new_rel)
                self.db.bind_unresolved_links(vault_id, {new_rel: doc.id})
        finally:
            self._drop_doc_lock(old_rel)

        logger.info("Renamed %s to %s", old_rel, new_rel)
        keys = set(path_query_keys(old_rel)) | set(path_query_keys(new_rel))
        self._refresh_sources(keys, extra_ids={doc.id})
        return True
