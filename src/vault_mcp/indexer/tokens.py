"""Token counting against a single fixed tokenizer.

Chunk budgets (``MAX_TOKENS`` / ``MIN_TOKENS``) are always interpreted
against :func:`count_tokens`, so changing the encoding here requires a new
chunking version.
"""

from functools import lru_cache

import tiktoken

ENCODING_NAME = "cl100k_base"

MAX_TOKENS = 512
MIN_TOKENS = 64

_ENC = tiktoken.get_encoding(ENCODING_NAME)


def encode(text: str) -> list[int]:
    """Encode text into token ids (special tokens are treated as plain text)."""
    return _ENC.encode_ordinary(text)


def decode(tokens: list[int]) -> str:
    """Decode token ids back into text."""
    return _ENC.decode(tokens)


def decode_strict(tokens: list[int]) -> str | None:
    """Decode token ids, returning None if they split a UTF-8 sequence."""
    try:
        return _ENC.decode_bytes(tokens).decode("utf-8")
    except UnicodeDecodeError:
        return None


@lru_cache(maxsize=4096)
def count_tokens(text: str) -> int:
    """Count tokens in text using the cl100k_base encoding."""
    if not text:
        return 0
    return len(_ENC.encode_ordinary(text))
