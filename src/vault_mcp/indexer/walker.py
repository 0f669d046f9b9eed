"""File walker for discovering Markdown notes in a vault."""

import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

MARKDOWN_SUFFIXES = {".md", ".markdown"}


@dataclass
class FileInfo:
    """Information about a discovered file.

    Only stat data is collected here; content is read (and hashed) by the
    indexer after the stat pre-filter.
    """

    path: Path  # Absolute path
    rel_path: str  # Relative to the vault root, always "/"-separated
    size: int
    mtime_ns: int

    @property
    def filename(self) -> str:
        return self.path.name


def is_markdown(path: Path | str) -> bool:
    return Path(path).suffix.lower() in MARKDOWN_SUFFIXES


def to_rel_path(vault_root: Path, path: Path) -> str:
    """Relative path of a file inside the vault, "/"-separated."""
    return path.relative_to(vault_root).as_posix()


def stat_file(vault_root: Path, path: Path) -> FileInfo:
    """Build a FileInfo for one file. Raises OSError if it cannot be stat'ed."""
    stat = path.stat()
    return FileInfo(
        path=path,
        rel_path=to_rel_path(vault_root, path),
        size=stat.st_size,
        mtime_ns=stat.st_mtime_ns,
    )


def walk_vault(vault_root: Path) -> Iterator[FileInfo]:
    """
    Walk the vault and yield FileInfo for each Markdown file.

    Hidden files and directories (including the index directory itself)
    are skipped. Results are sorted by relative path.
    """
    if not vault_root.is_dir():
        return

    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(vault_root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in filenames:
            if name.startswith("."):
                continue
            file_path = Path(dirpath) / name
            if is_markdown(file_path) and file_path.is_file():
                found.append(file_path)

    for file_path in sorted(found, key=lambda p: to_rel_path(vault_root, p)):
        try:
            yield stat_file(vault_root, file_path)
        except FileNotFoundError:
            # Removed between listing and stat
            continue
