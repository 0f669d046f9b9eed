"""
Indexer module for vaultMCP.

This module keeps a SQLite index (full-text shadow, segments, embeddings and
the link graph) incrementally in sync with a vault of Markdown notes.
"""

from vault_mcp.indexer.chunker import CHUNKING_VERSION, TextChunk, chunk_document, segment
from vault_mcp.indexer.database import Database
from vault_mcp.indexer.indexer import Indexer
from vault_mcp.indexer.models import (
    ContentFingerprint,
    Document,
    DocumentOutcome,
    IndexReport,
    Link,
    OutcomeStatus,
)
from vault_mcp.indexer.search import QueryEngine
from vault_mcp.indexer.walker import FileInfo, walk_vault

__all__ = [
    "CHUNKING_VERSION",
    "ContentFingerprint",
    "Database",
    "Document",
    "DocumentOutcome",
    "FileInfo",
    "IndexReport",
    "Indexer",
    "Link",
    "OutcomeStatus",
    "QueryEngine",
    "TextChunk",
    "chunk_document",
    "segment",
    "walk_vault",
]
