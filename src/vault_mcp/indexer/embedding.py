"""Embedding providers and vector encoding.

The embedding model is an external capability: text in, vector out. Vectors
are L2-normalized and stored as little-endian float32 bytes, so cosine
similarity reduces to a dot product.
"""

import logging
from typing import Protocol, runtime_checkable

import httpx
import numpy as np

logger = logging.getLogger(__name__)

# Seconds to wait for the embedding server
EMBED_TIMEOUT = 60.0

VECTOR_DTYPE = np.dtype("<f4")


class EmbeddingError(Exception):
    """Raised when the embedding provider cannot produce a usable vector."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol for embedding providers.

    Implementations convert text into fixed-dimension float vectors
    suitable for similarity search.
    """

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text string into a normalized vector."""
        ...

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Embed multiple texts into normalized vectors."""
        ...

    @property
    def dimensions(self) -> int | None:
        """Number of dimensions, or None until the first vector is seen."""
        ...

    @property
    def model_id(self) -> str:
        """Stored model identifier, ``<provider>:<model>``."""
        ...


def make_model_id(provider: str, model: str) -> str:
    return f"{provider.strip().lower()}:{model.strip()}"


def normalize(vector) -> np.ndarray:
    """L2-normalize a vector, rejecting empty, zero or non-finite input."""
    arr = np.asarray(vector, dtype=np.float32)
    if arr.ndim != 1 or arr.size == 0:
        raise EmbeddingError(f"Expected a non-empty 1-D vector, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise EmbeddingError("Vector contains non-finite values")
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        raise EmbeddingError("Vector has zero magnitude")
    return arr / norm


def encode_vector(vector: np.ndarray) -> bytes:
    """Serialize a vector as little-endian float32 bytes."""
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def decode_vector(data: bytes, dim: int) -> np.ndarray:
    """Deserialize stored vector bytes. Raises ValueError if the length is off."""
    if dim <= 0 or len(data) != dim * VECTOR_DTYPE.itemsize:
        raise ValueError(f"Invalid vector: {len(data)} bytes for dim {dim}")
    return np.frombuffer(data, dtype=VECTOR_DTYPE).astype(np.float32)


class OllamaEmbedding:
    """Embedding provider backed by the Ollama HTTP API."""

    provider = "ollama"

    def __init__(
        self,
        model: str,
        host: str = "http://localhost:11434",
        timeout: float = EMBED_TIMEOUT,
        client: httpx.Client | None = None,
    ):
        self.model = model
        self.host = host.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._dimensions: int | None = None

    @property
    def dimensions(self) -> int | None:
        return self._dimensions

    @property
    def model_id(self) -> str:
        return make_model_id(self.provider, self.model)

    def embed(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        payload = {"model": self.model, "input": texts}
        url = f"{self.host}/api/embed"
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise EmbeddingError(f"Embedding request to {url} timed out") from e
        except httpx.RequestError as e:
            raise EmbeddingError(f"Embedding request to {url} failed: {e}") from e

        if response.status_code != 200:
            raise EmbeddingError(f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            embeddings = response.json()["embeddings"]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError("Malformed embedding response") from e
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise EmbeddingError(
                f"Expected {len(texts)} embeddings, got "
                f"{len(embeddings) if isinstance(embeddings, list) else 'none'}"
            )

        vectors = [normalize(v) for v in embeddings]
        dims = {v.shape[0] for v in vectors}
        if len(dims) != 1 or (self._dimensions is not None and self._dimensions not in dims):
            raise EmbeddingError(f"Inconsistent embedding dimensions: {sorted(dims)}")
        self._dimensions = dims.pop()
        return vectors


PROVIDERS = {
    "ollama": OllamaEmbedding,
}


def create_embedding_provider(
    provider: str | None,
    model: str | None,
    host: str = "http://localhost:11434",
) -> EmbeddingProvider | None:
    """Build the configured provider, or None when embeddings are disabled.

    Raises:
        EmbeddingError: If the provider id is not supported.
    """
    if not provider or not model:
        return None
    key = provider.strip().lower()
    if key not in PROVIDERS:
        raise EmbeddingError(
            f"Unsupported embedding provider '{provider}'. "
            f"Supported: {', '.join(sorted(PROVIDERS))}"
        )
    logger.debug("Using embedding provider %s with model %s", key, model)
    return PROVIDERS[key](model=model, host=host)
