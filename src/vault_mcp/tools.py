"""MCP tools for vaultMCP server.

This module defines the tools exposed by the MCP server:
- search_notes: Hybrid semantic + full-text note search (the query boundary)
- search_text: Full-text search with highlighted snippets
- get_backlinks / get_related_notes: Link and similarity neighbours of a note
- get_graph: Link graph snapshot with render hints
- reindex_vault / index_note: Incremental indexing
- get_indexing_meta: Index statistics
"""

import logging
from pathlib import Path, PurePosixPath

from fastmcp import FastMCP

from vault_mcp.config import get_config
from vault_mcp.graph import (
    get_graph_degrade_profile,
    get_node_open_action,
    get_node_visual_state,
    sample_edges_for_render,
    to_render_nodes,
)
from vault_mcp.indexer import Indexer, QueryEngine
from vault_mcp.indexer.embedding import (
    EmbeddingError,
    EmbeddingProvider,
    create_embedding_provider,
    make_model_id,
)

logger = logging.getLogger(__name__)


def register_tools(mcp: FastMCP, indexer: Indexer, engine: QueryEngine) -> None:
    """Register all tools with the FastMCP server.

    Args:
        mcp: FastMCP server instance
        indexer: Indexer for the configured vault
        engine: Query engine over the same index
    """
    vault_root = engine.vault_root.expanduser().resolve()

    def to_rel_path(path: str) -> str:
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            try:
                return candidate.resolve().relative_to(vault_root).as_posix()
            except ValueError:
                return candidate.as_posix()
        return PurePosixPath(path.replace("\\", "/")).as_posix().lstrip("/")

    def resolve_embedder(provider: str | None, model: str | None) -> EmbeddingProvider | None:
        if not provider or not model:
            return None
        if engine.embedder is not None and engine.embedder.model_id == make_model_id(provider, model):
            return engine.embedder
        try:
            return create_embedding_provider(provider, model, get_config().ollama_host)
        except EmbeddingError as e:
            logger.warning("Cannot use embedding provider %s: %s", provider, e)
            return None

    @mcp.tool()
    def search_notes(
        workspace_path: str,
        query: str,
        embedding_provider: str | None = None,
        embedding_model: str | None = None,
        limit: int = 20,
    ) -> list[dict]:
        """Find notes semantically related to a query.

        Combines embedding similarity (70%) with full-text relevance (30%).
        Returns an empty list when the workspace is not the indexed vault,
        or when no embeddings exist for the given provider and model.

        Args:
            workspace_path: Absolute path of the vault to search
            query: Natural language query
            embedding_provider: Embedding provider id (e.g. "ollama")
            embedding_model: Embedding model name
            limit: Maximum number of results (default: 20)

        Returns:
            List of notes with:
            - path: Absolute path of the note
            - name: File name
            - similarity: Combined score between 0 and 1
            - createdAt / modifiedAt: File timestamps in epoch milliseconds
        """
        if Path(workspace_path).expanduser().resolve() != vault_root:
            logger.info("search_notes called for unknown workspace %s", workspace_path)
            return []
        embedder = resolve_embedder(embedding_provider, embedding_model)
        if embedder is None:
            return []
        return [entry.to_dict() for entry in engine.search_notes(query, limit=limit, embedder=embedder)]

    @mcp.tool()
    def search_text(query: str, limit: int = 20) -> list[dict]:
        """Full-text search across all notes.

        Every word in the query must appear (prefix match).

        Args:
            query: Search words
            limit: Maximum number of results (default: 20)

        Returns:
            List of results with:
            - path: Note path relative to the vault
            - snippet: Contextual snippet with matches highlighted (>>>match<<<)
            - score: Relevance score (higher is better)
        """
        return [
            {
                "path": hit.rel_path,
                "snippet": hit.snippet,
                "score": round(hit.bm25_score, 4),
            }
            for hit in engine.lexical_search(query, limit=limit)
        ]

    @mcp.tool()
    def get_backlinks(path: str) -> list[dict]:
        """List notes that link to a note.

        Args:
            path: Note path, relative to the vault or absolute

        Returns:
            List of {path} entries ordered by path.
        """
        return [{"path": b.rel_path} for b in engine.backlinks(to_rel_path(path))]

    @mcp.tool()
    def get_related_notes(path: str, limit: int = 10) -> list[dict]:
        """List notes whose content is most similar to a note.

        Args:
            path: Note path, relative to the vault or absolute
            limit: Maximum number of results (default: 10)

        Returns:
            List of {path, similarity} entries, most similar first.
        """
        return [
            {"path": hit.rel_path, "similarity": round(hit.similarity, 4)}
            for hit in engine.related_notes(to_rel_path(path), limit=limit)
        ]

    @mcp.tool()
    def get_graph(max_edges: int | None = None) -> dict:
        """Get the note link graph with rendering hints.

        Unresolved link targets appear as ghost nodes. For large graphs the
        degrade profile caps how many edges are returned, keeping edges to
        unresolved targets first.

        Args:
            max_edges: Optional extra cap on returned edges

        Returns:
            Dict with nodes (with degree, visualState and openAction), edges,
            totalEdges and the degrade profile.
        """
        graph = engine.graph()
        profile = get_graph_degrade_profile(len(graph.nodes), len(graph.edges))
        limit = profile.edge_render_limit
        if max_edges is not None:
            limit = min(limit, max_edges)
        nodes = []
        for node in to_render_nodes(graph):
            data = node.to_dict()
            data["visualState"] = get_node_visual_state(node)
            data["openAction"] = get_node_open_action(node).to_dict()
            nodes.append(data)
        return {
            "nodes": nodes,
            "edges": [e.to_dict() for e in sample_edges_for_render(graph.edges, limit)],
            "totalEdges": len(graph.edges),
            "profile": profile.to_dict(),
        }

    @mcp.tool()
    def reindex_vault(force_full: bool = False) -> dict:
        """Bring the index up to date with the vault.

        Only changed notes are re-chunked and re-embedded. If a reindex is
        already running the request is coalesced into it.

        Args:
            force_full: Rebuild every note even if unchanged

        Returns:
            Summary counts and per-note failures.
        """
        return indexer.reindex(force_full=force_full).to_dict()

    @mcp.tool()
    def index_note(path: str) -> dict:
        """Index (or re-index) a single note.

        Args:
            path: Note path, relative to the vault or absolute

        Returns:
            Dict with path and status (unchanged, reindexed, failed, removed),
            or an error message for invalid paths.
        """
        try:
            return indexer.index_note(path).to_dict()
        except ValueError as e:
            return {"path": path, "error": str(e)}

    @mcp.tool()
    def get_indexing_meta() -> dict:
        """Get statistics about the vault index.

        Returns:
            Dict with vaultRoot, docCount, indexedDocCount (notes with
            embeddings), segmentCount, embeddingModel and chunkingVersion.
        """
        return engine.indexing_meta().to_dict()
