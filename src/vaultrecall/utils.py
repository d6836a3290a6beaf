from __future__ import annotations

import re
from pathlib import Path, PurePosixPath

WIKILINK_RE = re.compile(r"\[\[([^\]|#]+)(#[^\]|]+)?(\|[^\]]+)?\]\]")


def parse_wikilinks(text: str) -> list[str]:
    """Link targets of every [[target#heading|alias]] in text."""
    return [m.group(1).strip() for m in WIKILINK_RE.finditer(text)]


def safe_read_text(path: Path, max_bytes: int = 10_000_000) -> str:
    b = path.read_bytes()
    if len(b) > max_bytes:
        raise ValueError(f"File too large for text read: {path} ({len(b)} bytes)")
    return b.decode("utf-8", errors="replace")


def relpath(root: Path, path: Path) -> str:
    return str(path.resolve().relative_to(root.resolve())).replace("\\", "/")


def basename_of(path: str) -> str:
    """File name without directory or extension."""
    return PurePosixPath(path).stem


def is_excluded(path: str, exclude_folders: list[str] | tuple[str, ...]) -> bool:
    """Path-prefix match against excluded folders ("Archive" excludes "Archive/x.md")."""
    return any(path == folder or path.startswith(folder + "/") for folder in exclude_folders)
