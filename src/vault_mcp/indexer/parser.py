"""Parser for YAML frontmatter and the text fed to the index."""

import logging
import re
from datetime import date, datetime

import yaml

logger = logging.getLogger(__name__)

FRONTMATTER_PATTERN = re.compile(
    r"\A---[ \t]*\r?\n(.*?)\r?\n(?:---|\.\.\.)[ \t]*(?:\r?\n|\Z)", re.DOTALL
)
EMPTY_FRONTMATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(?:---|\.\.\.)[ \t]*(?:\r?\n|\Z)")


def split_frontmatter(content: str) -> tuple[str | None, str]:
    """Split content into (raw frontmatter, body).

    Returns None for the frontmatter when the document has none.
    """
    match = FRONTMATTER_PATTERN.match(content)
    if match:
        return match.group(1), content[match.end() :]
    match = EMPTY_FRONTMATTER_PATTERN.match(content)
    if match:
        return "", content[match.end() :]
    return None, content


def parse_frontmatter(content: str, file_path: str = "") -> tuple[dict, str]:
    """
    Parse YAML frontmatter from markdown content.

    Args:
        content: The full markdown content
        file_path: Relative path, only used in log messages

    Returns:
        Tuple of (frontmatter mapping, content_without_frontmatter). The
        mapping is empty when there is no frontmatter or it is not valid YAML.
    """
    raw, body = split_frontmatter(content)
    if raw is None:
        return {}, content
    try:
        data = yaml.safe_load(raw) if raw.strip() else {}
    except yaml.YAMLError as e:
        logger.debug("Invalid YAML frontmatter in %s: %s", file_path, e)
        return {}, body
    if not isinstance(data, dict):
        return {}, body
    return data, body


def strip_frontmatter(content: str) -> str:
    """Remove YAML frontmatter from content."""
    return split_frontmatter(content)[1]


def _flatten_values(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, dict):
        out: list[str] = []
        for item in value.values():
            out.extend(_flatten_values(item))
        return out
    if isinstance(value, (list, tuple, set)):
        out = []
        for item in value:
            out.extend(_flatten_values(item))
        return out
    if isinstance(value, (datetime, date)):
        return [value.isoformat()]
    text = str(value).strip()
    return [text] if text else []


def format_indexing_text(content: str, file_path: str = "") -> str:
    """Build the text that is stored, full-text indexed and segmented.

    Frontmatter keys are dropped and their values are kept on a single line
    ahead of the body, so titles and tags remain searchable without YAML
    syntax leaking into embeddings.
    """
    raw, body = split_frontmatter(content)
    if raw is None:
        return content.strip()

    metadata, _ = parse_frontmatter(content, file_path)
    values = " ".join(_flatten_values(metadata))
    body = body.strip()
    if values and body:
        return f"{values}\n\n{body}"
    return values or body
