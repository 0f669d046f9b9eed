"""vaultMCP - incremental index and link graph for a Markdown vault, served over MCP."""

__version__ = "0.1.0"
