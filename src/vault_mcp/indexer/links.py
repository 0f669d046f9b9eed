"""Link parsing and resolution.

Wiki links (``[[target#anchor|alias]]``, ``![[embed]]``) are resolved by
trying the exact vault path first and then any document whose path ends
with the target, so a bare file name works. Conventional Markdown links are
resolved relative to the linking note. Anything that does not resolve is
kept as an unresolved link so it shows up as a ghost node.
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from urllib.parse import unquote

from vault_mcp.indexer.models import Link
from vault_mcp.indexer.parser import strip_frontmatter

logger = logging.getLogger(__name__)

# A closing fence uses the opening character, at least as many times
FENCED_CODE_PATTERN = re.compile(
    r"^ {0,3}(?P<fence>(?P<char>[`~])(?P=char){2,})[^\n]*\n.*?"
    r"(?:^ {0,3}(?P=fence)(?P=char)*[ \t]*$|\Z)",
    re.MULTILINE | re.DOTALL,
)
INLINE_CODE_PATTERN = re.compile(r"(`+)(?!`).+?(?<!`)\1(?!`)", re.DOTALL)
WIKI_LINK_PATTERN = re.compile(r"(!?)\[\[([^\[\]\n]+?)\]\]")
MARKDOWN_LINK_PATTERN = re.compile(
    r"(!?)\[((?:[^\[\]]|\[[^\[\]]*\])*)\]\(\s*(<[^>\n]*>|[^()\s]+(?:\([^()\s]*\)[^()\s]*)*)"
    r"(?:\s+(?:\"[^\"]*\"|'[^']*'|\([^)]*\)))?\s*\)"
)
SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]+:")
DRIVE_PATTERN = re.compile(r"^[a-zA-Z]:[\\/]")
MARKDOWN_SUFFIX_PATTERN = re.compile(r"\.(md|markdown)$", re.IGNORECASE)

# Tried in order when a target has no extension
NOTE_SUFFIXES = (".md", ".markdown")


@dataclass
class LinkRef:
    """One link occurrence as written in a note."""

    target: str
    anchor: str | None = None
    alias: str | None = None
    is_embed: bool = False
    is_wiki: bool = False
    is_external: bool = False


def is_external_target(target: str) -> bool:
    """URL schemes, protocol-relative URLs and drive paths point outside the vault."""
    return bool(
        SCHEME_PATTERN.match(target) or target.startswith("//") or DRIVE_PATTERN.match(target)
    )


def strip_markdown_suffix(path: str) -> str:
    return MARKDOWN_SUFFIX_PATTERN.sub("", path)


def normalize_wiki_target(target: str) -> str:
    """Normalize a wiki target: "/" separators, no leading "./" or "/", no .md."""
    path = target.strip().replace("\\", "/")
    path = re.sub(r"/{2,}", "/", path)
    while path.startswith("./"):
        path = path[2:]
    path = path.lstrip("/")
    return strip_markdown_suffix(path).strip()


def path_query_keys(rel_path: str) -> list[str]:
    """Every lowercased, extension-less path suffix of a document path.

    ``Docs/Guide.md`` yields ``["docs/guide", "guide"]``. A wiki link whose
    normalized target equals one of these keys can resolve to the document.
    """
    parts = strip_markdown_suffix(rel_path).lower().split("/")
    return ["/".join(parts[i:]) for i in range(len(parts)) if parts[i]]


def _blank_out(match: re.Match) -> str:
    # Keep newlines so nothing after the code shifts lines
    return re.sub(r"[^\n]", " ", match.group(0))


def strip_code(content: str) -> str:
    """Blank out fenced and inline code so links inside them are ignored."""
    content = FENCED_CODE_PATTERN.sub(_blank_out, content)
    return INLINE_CODE_PATTERN.sub(_blank_out, content)


def _split_anchor(target: str) -> tuple[str, str | None]:
    positions = [pos for pos in (target.find("#"), target.find("^")) if pos >= 0]
    if not positions:
        return target, None
    pos = min(positions)
    anchor = target[pos + 1 :].strip() or None
    return target[:pos], anchor


def parse_links(content: str) -> list[LinkRef]:
    """Extract wiki and Markdown link references in document order."""
    text = strip_code(strip_frontmatter(content))
    found: list[tuple[int, LinkRef]] = []

    for match in WIKI_LINK_PATTERN.finditer(text):
        inner = match.group(2).replace("\\|", "|")
        target, _, alias = inner.partition("|")
        target, anchor = _split_anchor(target)
        target = target.strip()
        if not target:
            # [[#heading]] points inside the same note
            continue
        found.append(
            (
                match.start(),
                LinkRef(
                    target=target,
                    anchor=anchor,
                    alias=alias.strip() or None,
                    is_embed=bool(match.group(1)),
                    is_wiki=True,
                    is_external="://" in target,
                ),
            )
        )

    # Wiki links are removed before scanning so [[a]](b) is not read twice
    masked = WIKI_LINK_PATTERN.sub(_blank_out, text)
    for match in MARKDOWN_LINK_PATTERN.finditer(masked):
        raw = match.group(3)
        if raw.startswith("<") and raw.endswith(">"):
            raw = raw[1:-1].strip()
        if not raw or raw.startswith("#"):
            continue
        alias = match.group(2).strip() or None
        if is_external_target(raw):
            found.append(
                (
                    match.start(),
                    LinkRef(target=raw, alias=alias, is_embed=bool(match.group(1)), is_external=True),
                )
            )
            continue
        target, anchor = _split_anchor(raw)
        target = unquote(target.split("?", 1)[0]).strip()
        if not target:
            continue
        found.append(
            (
                match.start(),
                LinkRef(target=target, anchor=anchor, alias=alias, is_embed=bool(match.group(1))),
            )
        )

    found.sort(key=lambda item: item[0])
    return [ref for _, ref in found]


class LinkResolver:
    """Resolves link references against the set of indexed document paths."""

    def __init__(self, doc_paths: dict[str, int]):
        """
        Args:
            doc_paths: Mapping of relative path to document ID for the vault.
        """
        self._doc_paths = doc_paths
        self._lower_paths: dict[str, list[str]] = {}
        self._by_key: dict[str, list[str]] = {}
        for rel_path in doc_paths:
            self._lower_paths.setdefault(rel_path.lower(), []).append(rel_path)
            for key in path_query_keys(rel_path):
                self._by_key.setdefault(key, []).append(rel_path)

    @staticmethod
    def _best(paths: list[str]) -> str:
        # Shortest path wins, then alphabetical, so resolution is stable
        return min(paths, key=lambda p: (len(p), p))

    def resolve_wiki(self, target: str) -> tuple[str, int | None, str]:
        """Resolve a wiki target.

        Returns:
            Tuple of (target_path, target_doc_id, query_key). Unresolved
            targets keep the normalized token as their path.
        """
        normalized = normalize_wiki_target(target)
        key = normalized.lower()
        if not normalized:
            return target.strip(), None, key

        # 1. exact relative path (case-sensitive, then case-insensitive)
        for suffix in NOTE_SUFFIXES:
            exact = normalized + suffix
            if exact in self._doc_paths:
                return exact, self._doc_paths[exact], key
        if normalized in self._doc_paths:
            return normalized, self._doc_paths[normalized], key
        insensitive = [
            p
            for suffix in NOTE_SUFFIXES
            for p in self._lower_paths.get(key + suffix, [])
        ]
        if insensitive:
            best = self._best(insensitive)
            return best, self._doc_paths[best], key

        # 2. path suffix / bare file name
        candidates = self._by_key.get(key)
        if candidates:
            best = self._best(candidates)
            return best, self._doc_paths[best], key

        # 3. unresolved ghost
        return normalized, None, key

    def resolve_markdown(self, source_path: str, target: str) -> tuple[str, int | None] | None:
        """Resolve a local Markdown link relative to the source note.

        Returns None for links that leave the vault or point at non-note files.
        """
        path = target.replace("\\", "/")
        if path.startswith("/"):
            joined = path.lstrip("/")
        else:
            joined = posixpath.join(posixpath.dirname(source_path), path)
        normalized = posixpath.normpath(joined)
        if normalized == "." or normalized.startswith("../") or normalized == "..":
            logger.debug("Ignoring link outside vault in %s: %s", source_path, target)
            return None

        suffix = posixpath.splitext(normalized)[1].lower()
        if not suffix:
            normalized += ".md"
        elif suffix not in NOTE_SUFFIXES:
            return None

        if normalized in self._doc_paths:
            return normalized, self._doc_paths[normalized]
        insensitive = self._lower_paths.get(normalized.lower())
        if insensitive:
            best = self._best(insensitive)
            return best, self._doc_paths[best]
        return normalized, None

    def resolve(self, source_path: str, refs: list[LinkRef]) -> tuple[list[Link], set[str]]:
        """Turn parsed references into Link rows and wiki query keys.

        Links are deduplicated on target path, first occurrence wins.
        """
        links: list[Link] = []
        wiki_keys: set[str] = set()
        seen: set[str] = set()

        for ref in refs:
            if ref.is_external:
                target_path, target_doc_id = ref.target, None
            elif ref.is_wiki:
                target_path, target_doc_id, key = self.resolve_wiki(ref.target)
                if key:
                    wiki_keys.add(key)
            else:
                resolved = self.resolve_markdown(source_path, ref.target)
                if resolved is None:
                    continue
                target_path, target_doc_id = resolved

            if not target_path or target_path in seen:
                continue
            seen.add(target_path)
            links.append(
                Link(
                    target_doc_id=target_doc_id,
                    target_path=target_path,
                    target_anchor=ref.anchor,
                    alias=ref.alias,
                    is_embed=ref.is_embed,
                    is_wiki=ref.is_wiki,
                    is_external=ref.is_external,
                )
            )
        return links, wiki_keys


def resolve_links(
    source_path: str, content: str, doc_paths: dict[str, int]
) -> tuple[list[Link], set[str]]:
    """Parse a note's content and resolve its links against ``doc_paths``."""
    return LinkResolver(doc_paths).resolve(source_path, parse_links(content))
