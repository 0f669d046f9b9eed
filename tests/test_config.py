"""Tests for config module."""

from pathlib import Path

import pytest

from vault_mcp.config import Config, get_config, reset_config


def test_config_defaults():
    """Test config loads with defaults when no env vars set."""
    config = Config.from_env()
    assert config.vault_root == Path.home() / "notes"
    assert config.vault_port == 8080
    assert config.vault_db == Path.home() / "notes" / ".vaultmcp" / "index.db"
    assert config.embedding_provider is None
    assert config.embedding_model is None
    assert config.ollama_host == "http://localhost:11434"
    assert config.index_workers == 4
    assert config.sync_interval == 0
    assert not config.embeddings_enabled


def test_config_from_env(monkeypatch):
    """Test config loads from environment variables."""
    monkeypatch.setenv("VAULT_ROOT", "/custom/vault")
    monkeypatch.setenv("VAULT_PORT", "9000")
    monkeypatch.setenv("VAULT_DB", "/custom/db.sqlite")
    monkeypatch.setenv("VAULT_EMBEDDING_PROVIDER", "ollama")
    monkeypatch.setenv("VAULT_EMBEDDING_MODEL", "nomic-embed-text")
    monkeypatch.setenv("OLLAMA_HOST", "http://gpu-box:11434/")

    config = Config.from_env()
    assert config.vault_root == Path("/custom/vault")
    assert config.vault_port == 9000
    assert config.vault_db == Path("/custom/db.sqlite")
    assert config.embedding_provider == "ollama"
    assert config.embedding_model == "nomic-embed-text"
    assert config.ollama_host == "http://gpu-box:11434"
    assert config.embeddings_enabled


def test_config_db_follows_root(monkeypatch):
    """Test the default index lives inside the vault's hidden folder."""
    monkeypatch.setenv("VAULT_ROOT", "/data/vault")
    config = Config.from_env()
    assert config.vault_db == Path("/data/vault/.vaultmcp/index.db")


def test_config_from_env_creates_new_instances():
    """Test Config.from_env() creates new instances each time."""
    config1 = Config.from_env()
    config2 = Config.from_env()
    assert config1 is not config2


def test_config_tilde_expansion(monkeypatch):
    """Test config expands tilde in paths."""
    monkeypatch.setenv("VAULT_ROOT", "~/custom/vault")
    config = Config.from_env()
    assert "~" not in str(config.vault_root)
    assert config.vault_root.is_absolute()


def test_config_invalid_port_non_numeric(monkeypatch):
    """Test config raises error for non-numeric port."""
    monkeypatch.setenv("VAULT_PORT", "not_a_number")
    with pytest.raises(ValueError, match="Invalid VAULT_PORT"):
        Config.from_env()


def test_config_invalid_port_out_of_range(monkeypatch):
    """Test config raises error for port out of valid range."""
    monkeypatch.setenv("VAULT_PORT", "70000")
    with pytest.raises(ValueError, match="Port must be between 1 and 65535"):
        Config.from_env()


def test_config_blank_embedding_settings_disable_embeddings(monkeypatch):
    """Test empty provider/model values count as unset."""
    monkeypatch.setenv("VAULT_EMBEDDING_PROVIDER", "")
    monkeypatch.setenv("VAULT_EMBEDDING_MODEL", "nomic-embed-text")
    config = Config.from_env()
    assert config.embedding_provider is None
    assert not config.embeddings_enabled


def test_config_sync_interval_from_env(monkeypatch):
    """Test sync_interval loads from environment."""
    monkeypatch.setenv("VAULT_SYNC_INTERVAL", "60")
    config = Config.from_env()
    assert config.sync_interval == 60


def test_config_sync_interval_invalid_non_numeric(monkeypatch):
    """Test config raises error for non-numeric sync interval."""
    monkeypatch.setenv("VAULT_SYNC_INTERVAL", "soon")
    with pytest.raises(ValueError, match="Invalid VAULT_SYNC_INTERVAL"):
        Config.from_env()


def test_config_sync_interval_negative(monkeypatch):
    """Test config raises error for negative sync interval."""
    monkeypatch.setenv("VAULT_SYNC_INTERVAL", "-5")
    with pytest.raises(ValueError, match="Invalid VAULT_SYNC_INTERVAL"):
        Config.from_env()


def test_config_index_workers_from_env(monkeypatch):
    """Test index_workers loads from environment."""
    monkeypatch.setenv("VAULT_INDEX_WORKERS", "8")
    assert Config.from_env().index_workers == 8


@pytest.mark.parametrize("value", ["0", "65", "many"])
def test_config_index_workers_invalid(monkeypatch, value):
    """Test config rejects worker counts outside 1..64."""
    monkeypatch.setenv("VAULT_INDEX_WORKERS", value)
    with pytest.raises(ValueError, match="Invalid VAULT_INDEX_WORKERS"):
        Config.from_env()


def test_get_config_is_cached(monkeypatch):
    """Test get_config() returns the same instance until reset."""
    first = get_config()
    assert get_config() is first

    monkeypatch.setenv("VAULT_PORT", "9999")
    assert get_config().vault_port == first.vault_port

    reset_config()
    assert get_config().vault_port == 9999
