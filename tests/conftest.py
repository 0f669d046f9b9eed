"""Shared fixtures for vaultMCP tests."""

import re
import threading
from pathlib import Path

import numpy as np
import pytest

from vault_mcp.config import reset_config
from vault_mcp.indexer.embedding import EmbeddingError, make_model_id

WORD_PATTERN = re.compile(r"\w+")

CONFIG_ENV_VARS = (
    "VAULT_ROOT",
    "VAULT_PORT",
    "VAULT_DB",
    "VAULT_EMBEDDING_PROVIDER",
    "VAULT_EMBEDDING_MODEL",
    "OLLAMA_HOST",
    "VAULT_INDEX_WORKERS",
    "VAULT_SYNC_INTERVAL",
)


class FakeEmbedding:
    """Deterministic bag-of-words embedder.

    Every distinct word gets its own axis (in first-seen order), so two texts
    only have a positive similarity when they share a word.
    """

    def __init__(self, provider: str = "fake", model: str = "bag", dim: int = 128):
        self.provider = provider
        self.model = model
        self.dim = dim
        self.fail = False
        self.calls = 0
        self.texts_embedded: list[str] = []
        self._vocab: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def dimensions(self) -> int:
        return self.dim

    @property
    def model_id(self) -> str:
        return make_model_id(self.provider, self.model)

    def _axis(self, word: str) -> int:
        with self._lock:
            if word not in self._vocab:
                self._vocab[word] = len(self._vocab) % self.dim
            return self._vocab[word]

    def embed(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        self.calls += 1
        if self.fail:
            raise EmbeddingError("provider unavailable")
        vectors = []
        for text in texts:
            self.texts_embedded.append(text)
            vec = np.zeros(self.dim, dtype=np.float32)
            for word in WORD_PATTERN.findall(text.lower()):
                vec[self._axis(word)] += 1.0
            if not vec.any():
                vec[self.dim - 1] = 1.0
            vectors.append(vec / np.linalg.norm(vec))
        return vectors


@pytest.fixture(autouse=True)
def clean_config_env(monkeypatch):
    """Keep host environment variables out of every test."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def embedder() -> FakeEmbedding:
    return FakeEmbedding()


@pytest.fixture
def embedder_factory():
    return FakeEmbedding


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "index" / "index.db"


@pytest.fixture
def write_note(vault: Path):
    """Write a note into the vault, creating parent folders."""

    def _write(rel_path: str, content: str) -> Path:
        path = vault / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write
