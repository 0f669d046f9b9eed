"""SQLite database management for the vault index.

The index is disposable: everything in it can be rebuilt from the vault.

The full-text shadow (``doc_fts``) is a plain FTS5 table keyed by ``doc.id``.
It is written explicitly next to every document insert, update and delete,
inside the same transaction, so no trigger is involved. Foreign keys carry no
cascade rules either: deletes remove owned rows first and null incoming link
targets before the document row goes.
"""

import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from vault_mcp.graph import GraphEdge, GraphNode, GraphViewData
from vault_mcp.indexer.models import (
    Backlink,
    Document,
    Embedding,
    IndexingMeta,
    LexicalHit,
    Link,
    Segment,
    SegmentUpdate,
    Vault,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

SCHEMA_SQL = """
-- vaultMCP Index Schema v1
-- This index is disposable: it regenerates from the vault

PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS vault (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_root  TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS doc (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    vault_id              INTEGER NOT NULL REFERENCES vault(id),
    rel_path              TEXT NOT NULL,
    content               TEXT NOT NULL DEFAULT '',
    chunking_version      INTEGER NOT NULL DEFAULT 0,
    last_hash             TEXT,
    last_source_size      INTEGER,
    last_source_mtime     INTEGER,
    last_embedding_model  TEXT,
    last_embedding_dim    INTEGER,
    UNIQUE (vault_id, rel_path)
);

CREATE TABLE IF NOT EXISTS segment (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    doc_id     INTEGER NOT NULL REFERENCES doc(id),
    ordinal    INTEGER NOT NULL,
    last_hash  TEXT NOT NULL,
    UNIQUE (doc_id, ordinal)
);

CREATE TABLE IF NOT EXISTS embedding (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_id  INTEGER NOT NULL UNIQUE REFERENCES segment(id),
    model       TEXT NOT NULL,
    dim         INTEGER NOT NULL,
    vec         BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS link (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    source_doc_id  INTEGER NOT NULL REFERENCES doc(id),
    target_doc_id  INTEGER REFERENCES doc(id),
    target_path    TEXT NOT NULL,
    target_anchor  TEXT,
    alias          TEXT,
    is_embed       INTEGER NOT NULL DEFAULT 0,
    is_wiki        INTEGER NOT NULL DEFAULT 0,
    is_external    INTEGER NOT NULL DEFAULT 0,
    UNIQUE (source_doc_id, target_path)
);

CREATE INDEX IF NOT EXISTS idx_link_target_doc ON link(target_doc_id);
CREATE INDEX IF NOT EXISTS idx_link_target_path ON link(target_path);

CREATE TABLE IF NOT EXISTS wiki_link_ref (
    source_doc_id  INTEGER NOT NULL REFERENCES doc(id),
    query_key      TEXT NOT NULL,
    UNIQUE (source_doc_id, query_key)
);

CREATE INDEX IF NOT EXISTS idx_wiki_link_ref_key ON wiki_link_ref(query_key);

CREATE VIRTUAL TABLE IF NOT EXISTS doc_fts USING fts5(content);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);

INSERT OR REPLACE INTO meta (key, value) VALUES ('schema_version', '1');
"""


class Database:
    """SQLite database for the vault index."""

    # Snippet configuration for FTS5 search results
    SNIPPET_COLUMN_INDEX = 0  # content is the only column in doc_fts
    SNIPPET_HIGHLIGHT_START = ">>>"
    SNIPPET_HIGHLIGHT_END = "<<<"
    SNIPPET_ELLIPSIS = "..."
    SNIPPET_MAX_TOKENS = 32

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = db_path
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    @contextmanager
    def _read_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for read operations."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @contextmanager
    def _write_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for write operations with locking.

        Everything executed on the cursor commits as one transaction, or is
        rolled back if the block raises.
        """
        with self._write_lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def initialize(self) -> None:
        """Initialize the database schema."""
        with self._write_cursor() as cursor:
            cursor.executescript(SCHEMA_SQL)

    def close(self) -> None:
        """Close every connection opened by this instance."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # Vault operations

    def get_or_create_vault(self, workspace_root: str) -> int:
        """Get or create a vault, returning its ID."""
        with self._write_cursor() as cursor:
            cursor.execute("SELECT id FROM vault WHERE workspace_root = ?", (workspace_root,))
            row = cursor.fetchone()
            if row:
                return row["id"]
            cursor.execute("INSERT INTO vault (workspace_root) VALUES (?)", (workspace_root,))
            return cursor.lastrowid  # type: ignore

    def get_vault(self, workspace_root: str) -> Vault | None:
        """Get a vault by its root path."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT * FROM vault WHERE workspace_root = ?", (workspace_root,))
            row = cursor.fetchone()
            if row:
                return Vault(id=row["id"], workspace_root=row["workspace_root"])
            return None

    def delete_vault(self, vault_id: int) -> int:
        """Delete a vault and every document it owns. Returns documents deleted."""
        with self._write_cursor() as cursor:
            cursor.execute("SELECT id FROM doc WHERE vault_id = ?", (vault_id,))
            doc_ids = [row["id"] for row in cursor.fetchall()]
            self._delete_document_rows(cursor, doc_ids)
            cursor.execute("DELETE FROM vault WHERE id = ?", (vault_id,))
            return len(doc_ids)

    # Document reads

    def get_document(self, vault_id: int, rel_path: str) -> Document | None:
        """Get a document by its relative path."""
        with self._read_cursor() as cursor:
            cursor.execute(
                "SELECT * FROM doc WHERE vault_id = ? AND rel_path = ?",
                (vault_id, rel_path),
            )
            row = cursor.fetchone()
            return self._row_to_document(row) if row else None

    def get_document_by_id(self, doc_id: int) -> Document | None:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT * FROM doc WHERE id = ?", (doc_id,))
            row = cursor.fetchone()
            return self._row_to_document(row) if row else None

    def list_documents(self, vault_id: int, with_content: bool = False) -> list[Document]:
        """List documents of a vault ordered by path.

        Content is only loaded when asked for; the staleness pre-filter only
        needs the bookkeeping columns.
        """
        columns = "*" if with_content else (
            "id, vault_id, rel_path, '' AS content, chunking_version, last_hash, "
            "last_source_size, last_source_mtime, last_embedding_model, last_embedding_dim"
        )
        with self._read_cursor() as cursor:
            cursor.execute(
                f"SELECT {columns} FROM doc WHERE vault_id = ? ORDER BY rel_path",
                (vault_id,),
            )
            return [self._row_to_document(row) for row in cursor.fetchall()]

    def get_document_paths(self, vault_id: int) -> dict[str, int]:
        """Map every indexed relative path to its document ID."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT id, rel_path FROM doc WHERE vault_id = ?", (vault_id,))
            return {row["rel_path"]: row["id"] for row in cursor.fetchall()}

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        """Convert a database row to a Document."""
        return Document(
            id=row["id"],
            vault_id=row["vault_id"],
            rel_path=row["rel_path"],
            content=row["content"],
            chunking_version=row["chunking_version"],
            last_hash=row["last_hash"],
            last_source_size=row["last_source_size"],
            last_source_mtime=row["last_source_mtime"],
            last_embedding_model=row["last_embedding_model"],
            last_embedding_dim=row["last_embedding_dim"],
        )

    # Segment and embedding reads

    def get_segments(self, doc_id: int) -> list[Segment]:
        """Get all segments for a document in ordinal order."""
        with self._read_cursor() as cursor:
            cursor.execute(
                "SELECT * FROM segment WHERE doc_id = ? ORDER BY ordinal",
                (doc_id,),
            )
            return [
                Segment(
                    id=row["id"],
                    doc_id=row["doc_id"],
                    ordinal=row["ordinal"],
                    last_hash=row["last_hash"],
                )
                for row in cursor.fetchall()
            ]

    def get_embeddings(self, doc_id: int) -> dict[int, Embedding]:
        """Get embeddings for a document keyed by segment ordinal."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT s.ordinal, e.* FROM embedding e
                JOIN segment s ON e.segment_id = s.id
                WHERE s.doc_id = ?""",
                (doc_id,),
            )
            return {
                row["ordinal"]: Embedding(
                    id=row["id"],
                    segment_id=row["segment_id"],
                    model=row["model"],
                    dim=row["dim"],
                    vec=bytes(row["vec"]),
                )
                for row in cursor.fetchall()
            }

    def iter_embedding_rows(
        self, vault_id: int, model: str, dim: int | None = None
    ) -> list[sqlite3.Row]:
        """Rows of (doc_id, rel_path, ordinal, dim, vec) for one embedding model."""
        query = """
            SELECT d.id AS doc_id, d.rel_path, s.ordinal, e.dim, e.vec
            FROM embedding e
            JOIN segment s ON e.segment_id = s.id
            JOIN doc d ON s.doc_id = d.id
            WHERE d.vault_id = ? AND e.model = ? AND d.last_embedding_model = ?
        """
        params: list = [vault_id, model, model]
        if dim is not None:
            query += " AND e.dim = ?"
            params.append(dim)
        with self._read_cursor() as cursor:
            cursor.execute(query, params)
            return cursor.fetchall()

    def count_embeddings(self, vault_id: int, model: str) -> int:
        """Number of stored vectors for one embedding model in a vault."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT COUNT(*) AS n FROM embedding e
                JOIN segment s ON e.segment_id = s.id
                JOIN doc d ON s.doc_id = d.id
                WHERE d.vault_id = ? AND e.model = ?""",
                (vault_id, model),
            )
            return cursor.fetchone()["n"]

    # Link reads

    def get_links(self, doc_id: int) -> list[Link]:
        """Get outgoing links of a document ordered by target path."""
        with self._read_cursor() as cursor:
            cursor.execute(
                "SELECT * FROM link WHERE source_doc_id = ? ORDER BY target_path",
                (doc_id,),
            )
            return [self._row_to_link(row) for row in cursor.fetchall()]

    def get_wiki_keys(self, doc_id: int) -> set[str]:
        with self._read_cursor() as cursor:
            cursor.execute(
                "SELECT query_key FROM wiki_link_ref WHERE source_doc_id = ?",
                (doc_id,),
            )
            return {row["query_key"] for row in cursor.fetchall()}

    def get_sources_for_wiki_keys(self, vault_id: int, keys: Iterable[str]) -> set[int]:
        """IDs of documents whose wiki links used any of the given query keys."""
        keys = sorted(set(keys))
        if not keys:
            return set()
        found: set[int] = set()
        with self._read_cursor() as cursor:
            # Stay under SQLite's bound-parameter limit
            for start in range(0, len(keys), 500):
                batch = keys[start : start + 500]
                placeholders = ", ".join("?" for _ in batch)
                cursor.execute(
                    f"""SELECT DISTINCT r.source_doc_id FROM wiki_link_ref r
                    JOIN doc d ON r.source_doc_id = d.id
                    WHERE d.vault_id = ? AND r.query_key IN ({placeholders})""",
                    [vault_id, *batch],
                )
                found.update(row["source_doc_id"] for row in cursor.fetchall())
        return found

    def get_backlinks(self, doc_id: int) -> list[Backlink]:
        """Distinct documents linking to ``doc_id``, ordered by path."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT DISTINCT d.id, d.rel_path FROM link l
                JOIN doc d ON l.source_doc_id = d.id
                WHERE l.target_doc_id = ? AND l.source_doc_id != ?
                ORDER BY d.rel_path""",
                (doc_id, doc_id),
            )
            return [Backlink(doc_id=row["id"], rel_path=row["rel_path"]) for row in cursor.fetchall()]

    def _row_to_link(self, row: sqlite3.Row) -> Link:
        return Link(
            id=row["id"],
            source_doc_id=row["source_doc_id"],
            target_doc_id=row["target_doc_id"],
            target_path=row["target_path"],
            target_anchor=row["target_anchor"],
            alias=row["alias"],
            is_embed=bool(row["is_embed"]),
            is_wiki=bool(row["is_wiki"]),
            is_external=bool(row["is_external"]),
        )

    # Document writes

    def insert_placeholder_documents(self, vault_id: int, rel_paths: Iterable[str]) -> dict[str, int]:
        """Insert empty rows for newly discovered documents.

        Placeholders have no hash, so the next sync always treats them as
        stale. Inserting them up front lets links between new documents
        resolve within the same pass. Returns IDs of the rows inserted.
        """
        inserted: dict[str, int] = {}
        with self._write_cursor() as cursor:
            for rel_path in rel_paths:
                cursor.execute(
                    """INSERT INTO doc (vault_id, rel_path, content, chunking_version)
                    VALUES (?, ?, '', 0)
                    ON CONFLICT(vault_id, rel_path) DO NOTHING""",
                    (vault_id, rel_path),
                )
                if cursor.rowcount:
                    doc_id = cursor.lastrowid
                    cursor.execute(
                        "INSERT INTO doc_fts (rowid, content) VALUES (?, '')", (doc_id,)
                    )
                    inserted[rel_path] = doc_id  # type: ignore[assignment]
        return inserted

    def update_document_stat(self, doc_id: int, size: int, mtime_ns: int) -> None:
        """Refresh the stat pre-filter columns only."""
        with self._write_cursor() as cursor:
            cursor.execute(
                "UPDATE doc SET last_source_size = ?, last_source_mtime = ? WHERE id = ?",
                (size, mtime_ns, doc_id),
            )

    def apply_document_sync(
        self,
        doc_id: int,
        *,
        content: str,
        last_hash: str,
        chunking_version: int,
        source_size: int | None,
        source_mtime: int | None,
        embedding_model: str | None,
        embedding_dim: int | None,
        segment_count: int,
        segment_updates: list[SegmentUpdate],
        full_rebuild: bool,
        links: list[Link] | None = None,
        wiki_keys: Iterable[str] | None = None,
    ) -> tuple[int, int]:
        """Write one document's new state as a single transaction.

        Content and its full-text shadow, changed segments and their vectors,
        pruning of surplus ordinals and (optionally) the outgoing links are
        committed together, so readers never see a half-written document.

        Returns:
            Tuple of (segments written, embeddings written).
        """
        segments_written = 0
        embeddings_written = 0
        with self._write_cursor() as cursor:
            cursor.execute(
                """UPDATE doc SET
                    content = ?,
                    chunking_version = ?,
                    last_hash = ?,
                    last_source_size = ?,
                    last_source_mtime = ?,
                    last_embedding_model = ?,
                    last_embedding_dim = ?
                WHERE id = ?""",
                (
                    content,
                    chunking_version,
                    last_hash,
                    source_size,
                    source_mtime,
                    embedding_model,
                    embedding_dim,
                    doc_id,
                ),
            )
            if cursor.rowcount == 0:
                raise LookupError(f"Document {doc_id} does not exist")
            self._write_fts(cursor, doc_id, content)

            if full_rebuild:
                self._delete_segments(cursor, doc_id, from_ordinal=0)

            for update in segment_updates:
                cursor.execute(
                    """INSERT INTO segment (doc_id, ordinal, last_hash) VALUES (?, ?, ?)
                    ON CONFLICT(doc_id, ordinal) DO UPDATE SET last_hash = excluded.last_hash""",
                    (doc_id, update.ordinal, update.last_hash),
                )
                cursor.execute(
                    "SELECT id FROM segment WHERE doc_id = ? AND ordinal = ?",
                    (doc_id, update.ordinal),
                )
                segment_id = cursor.fetchone()["id"]
                segments_written += 1
                if update.vec is not None and embedding_model and embedding_dim:
                    cursor.execute(
                        """INSERT INTO embedding (segment_id, model, dim, vec) VALUES (?, ?, ?, ?)
                        ON CONFLICT(segment_id) DO UPDATE SET
                            model = excluded.model, dim = excluded.dim, vec = excluded.vec""",
                        (segment_id, embedding_model, embedding_dim, update.vec),
                    )
                    embeddings_written += 1
                else:
                    # The old vector no longer describes this segment
                    cursor.execute("DELETE FROM embedding WHERE segment_id = ?", (segment_id,))

            self._delete_segments(cursor, doc_id, from_ordinal=segment_count)

            if links is not None:
                self._replace_links(cursor, doc_id, links, wiki_keys or ())
        return segments_written, embeddings_written

    def replace_links(self, doc_id: int, links: list[Link], wiki_keys: Iterable[str]) -> int:
        """Atomically replace all outgoing links of a document."""
        with self._write_cursor() as cursor:
            return self._replace_links(cursor, doc_id, links, wiki_keys)

    def bind_unresolved_links(self, vault_id: int, targets: dict[str, int]) -> int:
        """Point unresolved links at newly available documents.

        ``targets`` maps a link ``target_path`` to the document it now
        resolves to. Returns the number of links bound.
        """
        bound = 0
        with self._write_cursor() as cursor:
            for target_path, doc_id in targets.items():
                cursor.execute(
                    """UPDATE link SET target_doc_id = ?
                    WHERE target_doc_id IS NULL AND is_external = 0 AND target_path = ?
                    AND source_doc_id IN (SELECT id FROM doc WHERE vault_id = ?)""",
                    (doc_id, target_path, vault_id),
                )
                bound += cursor.rowcount
        return bound

    def rename_document(self, doc_id: int, new_rel_path: str) -> None:
        """Move a document to a new path, keeping its ID and rows.

        Incoming links whose stored target was the old path follow the move.
        """
        with self._write_cursor() as cursor:
            cursor.execute("SELECT vault_id, rel_path FROM doc WHERE id = ?", (doc_id,))
            row = cursor.fetchone()
            if row is None:
                raise LookupError(f"Document {doc_id} does not exist")
            cursor.execute("UPDATE doc SET rel_path = ? WHERE id = ?", (new_rel_path, doc_id))
            cursor.execute(
                "UPDATE link SET target_path = ? WHERE target_doc_id = ? AND target_path = ?",
                (new_rel_path, doc_id, row["rel_path"]),
            )

    def delete_document(self, doc_id: int) -> None:
        """Delete a document with its owned rows, keeping incoming links as unresolved."""
        with self._write_cursor() as cursor:
            self._delete_document_rows(cursor, [doc_id])

    def delete_documents(self, doc_ids: Iterable[int]) -> int:
        doc_ids = list(doc_ids)
        if not doc_ids:
            return 0
        with self._write_cursor() as cursor:
            self._delete_document_rows(cursor, doc_ids)
        return len(doc_ids)

    # Write helpers (must run inside a write cursor)

    def _write_fts(self, cursor: sqlite3.Cursor, doc_id: int, content: str) -> None:
        cursor.execute("DELETE FROM doc_fts WHERE rowid = ?", (doc_id,))
        cursor.execute("INSERT INTO doc_fts (rowid, content) VALUES (?, ?)", (doc_id, content))

    def _delete_segments(self, cursor: sqlite3.Cursor, doc_id: int, from_ordinal: int) -> None:
        cursor.execute(
            """DELETE FROM embedding WHERE segment_id IN (
                SELECT id FROM segment WHERE doc_id = ? AND ordinal >= ?)""",
            (doc_id, from_ordinal),
        )
        cursor.execute(
            "DELETE FROM segment WHERE doc_id = ? AND ordinal >= ?",
            (doc_id, from_ordinal),
        )

    def _replace_links(
        self,
        cursor: sqlite3.Cursor,
        doc_id: int,
        links: list[Link],
        wiki_keys: Iterable[str],
    ) -> int:
        cursor.execute("DELETE FROM link WHERE source_doc_id = ?", (doc_id,))
        cursor.executemany(
            """INSERT INTO link
            (source_doc_id, target_doc_id, target_path, target_anchor, alias,
             is_embed, is_wiki, is_external)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_doc_id, target_path) DO NOTHING""",
            [
                (
                    doc_id,
                    link.target_doc_id,
                    link.target_path,
                    link.target_anchor,
                    link.alias,
                    int(link.is_embed),
                    int(link.is_wiki),
                    int(link.is_external),
                )
                for link in links
            ],
        )
        cursor.execute("DELETE FROM wiki_link_ref WHERE source_doc_id = ?", (doc_id,))
        cursor.executemany(
            "INSERT OR IGNORE INTO wiki_link_ref (source_doc_id, query_key) VALUES (?, ?)",
            [(doc_id, key) for key in sorted(set(wiki_keys))],
        )
        return len(links)

    def _delete_document_rows(self, cursor: sqlite3.Cursor, doc_ids: list[int]) -> None:
        """Two-phase delete: owned rows first, then null dangling references."""
        for doc_id in doc_ids:
            self._delete_segments(cursor, doc_id, from_ordinal=0)
            cursor.execute("DELETE FROM link WHERE source_doc_id = ?", (doc_id,))
            cursor.execute("DELETE FROM wiki_link_ref WHERE source_doc_id = ?", (doc_id,))
            cursor.execute(
                "UPDATE link SET target_doc_id = NULL WHERE target_doc_id = ?", (doc_id,)
            )
            cursor.execute("DELETE FROM doc_fts WHERE rowid = ?", (doc_id,))
            cursor.execute("DELETE FROM doc WHERE id = ?", (doc_id,))

    # Search operations

    def search_fts(self, vault_id: int, match_query: str, limit: int = 20) -> list[LexicalHit]:
        """
        Run an FTS5 MATCH query against the full-text shadow.

        Results are ordered by BM25 (lower is better in SQLite, so the score
        is negated to make higher mean more relevant).
        """
        snippet_func = (
            f"snippet(doc_fts, {self.SNIPPET_COLUMN_INDEX}, "
            f"'{self.SNIPPET_HIGHLIGHT_START}', '{self.SNIPPET_HIGHLIGHT_END}', "
            f"'{self.SNIPPET_ELLIPSIS}', {self.SNIPPET_MAX_TOKENS})"
        )
        with self._read_cursor() as cursor:
            cursor.execute(
                f"""SELECT d.id AS doc_id, d.rel_path,
                    {snippet_func} AS snippet,
                    bm25(doc_fts) AS bm25_score
                FROM doc_fts
                JOIN doc d ON doc_fts.rowid = d.id
                WHERE doc_fts MATCH ? AND d.vault_id = ?
                ORDER BY bm25(doc_fts)
                LIMIT ?""",
                (match_query, vault_id, limit),
            )
            return [
                LexicalHit(
                    doc_id=row["doc_id"],
                    rel_path=row["rel_path"],
                    snippet=row["snippet"],
                    bm25_score=-row["bm25_score"],
                )
                for row in cursor.fetchall()
            ]

    def get_fts_content(self, doc_id: int) -> str | None:
        """Read back the full-text shadow of a document."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT content FROM doc_fts WHERE rowid = ?", (doc_id,))
            row = cursor.fetchone()
            return row["content"] if row else None

    # Graph and stats

    def get_graph_view_data(self, vault_id: int) -> GraphViewData:
        """Project documents and links into a graph snapshot.

        Documents become ``doc:<id>`` nodes, unresolved targets become
        ``unresolved:<target_path>`` ghost nodes. External links are left
        out and duplicate edges collapse to one.
        """
        with self._read_cursor() as cursor:
            cursor.execute(
                "SELECT id, rel_path FROM doc WHERE vault_id = ? ORDER BY rel_path",
                (vault_id,),
            )
            docs = cursor.fetchall()
            cursor.execute(
                """SELECT l.source_doc_id, l.target_doc_id, l.target_path FROM link l
                JOIN doc d ON l.source_doc_id = d.id
                WHERE d.vault_id = ? AND l.is_external = 0
                ORDER BY d.rel_path, l.target_path""",
                (vault_id,),
            )
            links = cursor.fetchall()

        nodes = [
            GraphNode(
                id=f"doc:{row['id']}",
                rel_path=row["rel_path"],
                file_name=row["rel_path"].rsplit("/", 1)[-1],
                unresolved=False,
            )
            for row in docs
        ]
        ghost_ids: set[str] = set()
        edges: list[GraphEdge] = []
        seen: set[tuple[str, str]] = set()
        for row in links:
            source = f"doc:{row['source_doc_id']}"
            if row["target_doc_id"] is not None:
                target = f"doc:{row['target_doc_id']}"
                unresolved = False
            else:
                target = f"unresolved:{row['target_path']}"
                unresolved = True
                if target not in ghost_ids:
                    ghost_ids.add(target)
                    nodes.append(
                        GraphNode(
                            id=target,
                            rel_path=row["target_path"],
                            file_name=row["target_path"].rsplit("/", 1)[-1],
                            unresolved=True,
                        )
                    )
            if (source, target) in seen:
                continue
            seen.add((source, target))
            edges.append(GraphEdge(source=source, target=target, unresolved=unresolved))
        return GraphViewData(nodes=nodes, edges=edges)

    def get_indexing_meta(self, vault_id: int, vault_root: str) -> IndexingMeta:
        """Counts describing how much of the vault is indexed."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT COUNT(*) AS n FROM doc WHERE vault_id = ?", (vault_id,))
            doc_count = cursor.fetchone()["n"]
            cursor.execute(
                """SELECT COUNT(DISTINCT d.id) AS n FROM doc d
                JOIN segment s ON s.doc_id = d.id AND s.ordinal = 0
                JOIN embedding e ON e.segment_id = s.id
                WHERE d.vault_id = ?""",
                (vault_id,),
            )
            indexed = cursor.fetchone()["n"]
            cursor.execute(
                """SELECT COUNT(*) AS n FROM segment s
                JOIN doc d ON s.doc_id = d.id WHERE d.vault_id = ?""",
                (vault_id,),
            )
            segment_count = cursor.fetchone()["n"]
            cursor.execute(
                """SELECT last_embedding_model, COUNT(*) AS n FROM doc
                WHERE vault_id = ? AND last_embedding_model IS NOT NULL
                GROUP BY last_embedding_model ORDER BY n DESC LIMIT 1""",
                (vault_id,),
            )
            row = cursor.fetchone()
            cursor.execute(
                "SELECT MAX(chunking_version) AS version FROM doc WHERE vault_id = ?",
                (vault_id,),
            )
            version = cursor.fetchone()["version"] or 0
        return IndexingMeta(
            vault_root=vault_root,
            doc_count=doc_count,
            indexed_doc_count=indexed,
            segment_count=segment_count,
            embedding_model=row["last_embedding_model"] if row else None,
            chunking_version=version,
        )
