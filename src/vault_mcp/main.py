"""Main entry point for vaultmcp MCP server."""

import argparse
import logging
import sys

from fastmcp import FastMCP

from vault_mcp.config import Config
from vault_mcp.indexer import Indexer, QueryEngine
from vault_mcp.indexer.embedding import create_embedding_provider
from vault_mcp.indexer.models import OutcomeStatus
from vault_mcp.sync import SyncManager
from vault_mcp.tools import register_tools

logger = logging.getLogger(__name__)


def create_indexer(config: Config) -> Indexer:
    """Build and initialize the indexer for the configured vault."""
    embedder = create_embedding_provider(
        config.embedding_provider, config.embedding_model, config.ollama_host
    )
    indexer = Indexer(
        config.vault_root,
        config.vault_db,
        embedder=embedder,
        max_workers=config.index_workers,
    )
    indexer.initialize()
    return indexer


def create_server(config: Config, indexer: Indexer | None = None) -> FastMCP:
    """Create and configure the MCP server with all components.

    Args:
        config: Configuration instance with all settings.
        indexer: Optional pre-built indexer; one is created from config if omitted.
    """
    mcp = FastMCP(
        name="vaultMCP",
        instructions=(
            "vaultMCP indexes a vault of Markdown notes. Use search_notes for "
            "semantic search, search_text for exact words, get_backlinks and "
            "get_related_notes to explore around a note, and get_graph for the "
            "link graph including unresolved links."
        ),
    )

    logger.info("Initializing index at %s", config.vault_db)
    if indexer is None:
        indexer = create_indexer(config)
    if indexer.vault_id is None:
        raise RuntimeError("Indexer must be initialized before creating the server")

    engine = QueryEngine(indexer.db, indexer.vault_id, indexer.vault_root, indexer.embedder)

    # Check if an initial index is needed (empty database)
    if engine.indexing_meta().doc_count == 0:
        logger.info("Index is empty, performing initial index...")
        report = indexer.reindex()
        logger.info(
            "Initial index complete: %d documents indexed",
            report.count(OutcomeStatus.REINDEXED),
        )

    logger.info("Registering tools...")
    register_tools(mcp, indexer, engine)

    logger.info("Server configured successfully")
    return mcp


def main() -> None:
    """Main function - starts the MCP server."""
    # Configure logging here to avoid side effects on import
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="vaultMCP - MCP server for Markdown vaults")
    parser.add_argument(
        "--reindex",
        action="store_true",
        help="Bring the index up to date before starting",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="With --reindex, rebuild every note even if unchanged",
    )
    args = parser.parse_args()

    config = Config.from_env()

    # Print startup banner
    logger.info("=" * 50)
    logger.info("vaultMCP starting...")
    logger.info("  VAULT_ROOT: %s", config.vault_root)
    logger.info("  VAULT_PORT: %s", config.vault_port)
    logger.info("  VAULT_DB:   %s", config.vault_db)
    logger.info(
        "  EMBEDDINGS: %s",
        f"{config.embedding_provider}:{config.embedding_model}"
        if config.embeddings_enabled
        else "disabled",
    )
    logger.info("  SYNC:       %s", f"every {config.sync_interval}s" if config.sync_interval else "disabled")
    logger.info("=" * 50)

    sync_manager: SyncManager | None = None
    try:
        indexer = create_indexer(config)

        if args.reindex:
            logger.info("Reindex requested (force=%s)...", args.force)
            report = indexer.reindex(force_full=args.force)
            logger.info("Reindex complete: %s", report.to_dict())

        mcp = create_server(config, indexer)

        if config.sync_interval > 0:
            sync_manager = SyncManager(indexer, config.sync_interval)
            sync_manager.start()

        logger.info("Starting MCP server on port %s...", config.vault_port)
        mcp.run(transport="sse", host="0.0.0.0", port=config.vault_port)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)
    except Exception:
        logger.exception("Server error")
        sys.exit(1)
    finally:
        if sync_manager is not None:
            sync_manager.stop()


if __name__ == "__main__":
    main()
