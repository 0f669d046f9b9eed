"""Configuration module for vaultmcp.

Loads configuration from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path


def _int_from_env(name: str, default: str, minimum: int, maximum: int | None = None) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
        if value < minimum or (maximum is not None and value > maximum):
            upper = "" if maximum is None else f" and {maximum}"
            raise ValueError(f"Value must be at least {minimum}{upper}, got {value}")
    except ValueError as e:
        raise ValueError(f"Invalid {name} value '{raw}': {e}") from e
    return value


@dataclass
class Config:
    """Application configuration."""

    vault_root: Path
    vault_port: int
    vault_db: Path
    embedding_provider: str | None
    embedding_model: str | None
    ollama_host: str
    index_workers: int
    sync_interval: int

    @property
    def embeddings_enabled(self) -> bool:
        """True when both a provider and a model are configured."""
        return bool(self.embedding_provider and self.embedding_model)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        default_root = str(Path.home() / "notes")
        vault_root = Path(os.getenv("VAULT_ROOT", default_root)).expanduser()

        port_str = os.getenv("VAULT_PORT", "8080")
        try:
            vault_port = int(port_str)
            if not 1 <= vault_port <= 65535:
                raise ValueError(f"Port must be between 1 and 65535, got {vault_port}")
        except ValueError as e:
            raise ValueError(f"Invalid VAULT_PORT value '{port_str}': {e}") from e

        default_db = str(vault_root / ".vaultmcp" / "index.db")
        vault_db = Path(os.getenv("VAULT_DB", default_db)).expanduser()

        # Empty strings count as unset so a blank export disables embeddings
        embedding_provider = os.getenv("VAULT_EMBEDDING_PROVIDER") or None
        embedding_model = os.getenv("VAULT_EMBEDDING_MODEL") or None
        ollama_host = os.getenv("OLLAMA_HOST", "http://localhost:11434").rstrip("/")

        index_workers = _int_from_env("VAULT_INDEX_WORKERS", "4", minimum=1, maximum=64)
        sync_interval = _int_from_env("VAULT_SYNC_INTERVAL", "0", minimum=0)

        return cls(
            vault_root=vault_root,
            vault_port=vault_port,
            vault_db=vault_db,
            embedding_provider=embedding_provider,
            embedding_model=embedding_model,
            ollama_host=ollama_host,
            index_workers=index_workers,
            sync_interval=sync_interval,
        )


# Global config instance (lazy loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _config
    _config = None
