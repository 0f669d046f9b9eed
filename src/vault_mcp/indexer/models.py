"""Data models for the indexer."""

import hashlib
from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class ContentFingerprint:
    """SHA-256 fingerprint of a piece of text or a file's bytes.

    Staleness checks compare fingerprints before any chunking or embedding
    work is done.
    """

    digest: str

    @classmethod
    def of(cls, text: str) -> "ContentFingerprint":
        return cls.of_bytes(text.encode("utf-8"))

    @classmethod
    def of_bytes(cls, data: bytes) -> "ContentFingerprint":
        return cls(hashlib.sha256(data).hexdigest())

    def matches(self, stored: str | None) -> bool:
        """Check against a digest read back from the store."""
        return stored is not None and stored == self.digest

    def __str__(self) -> str:
        return self.digest


@dataclass
class Vault:
    """Represents an indexed vault (one root directory)."""

    id: int | None = None
    workspace_root: str = ""


@dataclass
class Document:
    """Represents a document in the index."""

    id: int | None = None
    vault_id: int = 0
    rel_path: str = ""  # Relative to the vault root, "/"-separated
    content: str = ""
    chunking_version: int = 0
    last_hash: str | None = None
    last_source_size: int | None = None
    last_source_mtime: int | None = None  # nanoseconds
    last_embedding_model: str | None = None
    last_embedding_dim: int | None = None


@dataclass
class Segment:
    """Represents one chunk of a document."""

    id: int | None = None
    doc_id: int = 0
    ordinal: int = 0
    last_hash: str = ""


@dataclass
class Embedding:
    """Vector for a single segment."""

    id: int | None = None
    segment_id: int = 0
    model: str = ""
    dim: int = 0
    vec: bytes = b""

    @property
    def is_valid(self) -> bool:
        return self.dim > 0 and len(self.vec) == self.dim * 4


@dataclass
class Link:
    """A directed reference from a source document to a target."""

    id: int | None = None
    source_doc_id: int = 0
    target_doc_id: int | None = None  # None means unresolved
    target_path: str = ""
    target_anchor: str | None = None
    alias: str | None = None
    is_embed: bool = False
    is_wiki: bool = False
    is_external: bool = False


@dataclass
class SegmentUpdate:
    """A segment to write, with its vector when one was produced."""

    ordinal: int
    last_hash: str
    vec: bytes | None = None


class OutcomeStatus(str, Enum):
    UNCHANGED = "unchanged"
    REINDEXED = "reindexed"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass
class DocumentOutcome:
    """Result of indexing one document."""

    rel_path: str
    status: OutcomeStatus
    reason: str | None = None
    segments_written: int = 0
    embeddings_written: int = 0
    links_written: int = 0

    def to_dict(self) -> dict:
        data: dict = {"path": self.rel_path, "status": self.status.value}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class IndexReport:
    """Per-document outcomes and counters for one reindex pass."""

    outcomes: list[DocumentOutcome] = field(default_factory=list)
    files_discovered: int = 0
    docs_inserted: int = 0
    docs_deleted: int = 0
    segments_written: int = 0
    embeddings_written: int = 0
    links_written: int = 0
    aborted: bool = False
    coalesced: bool = False

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def by_path(self) -> dict[str, DocumentOutcome]:
        return {o.rel_path: o for o in self.outcomes}

    def to_dict(self) -> dict:
        return {
            "filesDiscovered": self.files_discovered,
            "unchanged": self.count(OutcomeStatus.UNCHANGED),
            "reindexed": self.count(OutcomeStatus.REINDEXED),
            "failed": self.count(OutcomeStatus.FAILED),
            "removed": self.count(OutcomeStatus.REMOVED),
            "docsInserted": self.docs_inserted,
            "docsDeleted": self.docs_deleted,
            "segmentsWritten": self.segments_written,
            "embeddingsWritten": self.embeddings_written,
            "linksWritten": self.links_written,
            "aborted": self.aborted,
            "coalesced": self.coalesced,
            "failures": [
                o.to_dict() for o in self.outcomes if o.status == OutcomeStatus.FAILED
            ],
        }


@dataclass
class LexicalHit:
    """A full-text match with its snippet."""

    doc_id: int
    rel_path: str
    snippet: str
    bm25_score: float


@dataclass
class SimilarityHit:
    """A document ranked by its best-matching segment."""

    doc_id: int
    rel_path: str
    similarity: float
    best_ordinal: int = 0


@dataclass
class SemanticNoteEntry:
    """One entry returned by the note search boundary command."""

    path: str
    name: str
    similarity: float
    created_at: int | None = None  # epoch milliseconds
    modified_at: int | None = None

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "name": self.name,
            "similarity": round(self.similarity, 4),
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }


@dataclass
class Backlink:
    """A document that links to another one."""

    doc_id: int
    rel_path: str


@dataclass
class IndexingMeta:
    """Summary of the index state for a vault."""

    vault_root: str
    doc_count: int
    indexed_doc_count: int
    segment_count: int
    embedding_model: str | None
    chunking_version: int

    def to_dict(self) -> dict:
        return {
            "vaultRoot": self.vault_root,
            "docCount": self.doc_count,
            "indexedDocCount": self.indexed_doc_count,
            "segmentCount": self.segment_count,
            "embeddingModel": self.embedding_model,
            "chunkingVersion": self.chunking_version,
        }
