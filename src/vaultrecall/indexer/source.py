from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol

from ..models import DocumentInfo
from ..utils import basename_of, parse_wikilinks, relpath, safe_read_text

logger = logging.getLogger(__name__)


class DocumentSource(Protocol):
    """Where notes come from.

    Paths are vault-relative with forward slashes. `read_cached` may serve a
    previously read copy; `read_fresh` always goes to the backing storage.
    """

    def list_documents(self) -> list[DocumentInfo]:
        ...

    def get_document(self, path: str) -> Optional[DocumentInfo]:
        ...

    def read_cached(self, path: str) -> str:
        ...

    def read_fresh(self, path: str) -> str:
        ...

    def outbound_links(self, path: str) -> list[str]:
        """Vault paths this document links to, unresolvable links omitted."""
        ...


class VaultSource:
    """DocumentSource over a directory of notes.

    Hidden files and folders (".obsidian", ".trash", ...) are skipped. Reads
    are cached and revalidated against the file's mtime and size.
    """

    def __init__(self, root: Path, extensions: list[str] | tuple[str, ...] = (".md",)):
        self.root = Path(root)
        self.extensions = tuple(e.lower() for e in extensions)
        self._cache: dict[str, tuple[int, int, str]] = {}
        self._paths: set[str] = set()
        self._by_name: dict[str, list[str]] = {}

    def _abs(self, path: str) -> Path:
        return self.root / PurePosixPath(path)

    def _eligible(self, rel: str) -> bool:
        parts = rel.split("/")
        if any(p.startswith(".") for p in parts):
            return False
        return rel.lower().endswith(self.extensions)

    def _info(self, rel: str, p: Path) -> DocumentInfo:
        return DocumentInfo(path=rel, basename=basename_of(rel), mtime=p.stat().st_mtime)

    def _remember(self, rel: str) -> None:
        if rel not in self._paths:
            self._paths.add(rel)
            self._by_name.setdefault(basename_of(rel).lower(), []).append(rel)

    def _forget(self, rel: str) -> None:
        self._cache.pop(rel, None)
        if rel in self._paths:
            self._paths.discard(rel)
            names = self._by_name.get(basename_of(rel).lower(), [])
            if rel in names:
                names.remove(rel)

    def list_documents(self) -> list[DocumentInfo]:
        docs: list[DocumentInfo] = []
        for p in self.root.rglob("*"):
            if not p.is_file():
                continue
            rel = relpath(self.root, p)
            if self._eligible(rel):
                docs.append(self._info(rel, p))
        docs.sort(key=lambda d: d.path)

        self._paths = set()
        self._by_name = {}
        for d in docs:
            self._remember(d.path)
        return docs

    def get_document(self, path: str) -> Optional[DocumentInfo]:
        p = self._abs(path)
        if not p.is_file() or not self._eligible(path):
            self._forget(path)
            return None
        self._remember(path)
        return self._info(path, p)

    def read_cached(self, path: str) -> str:
        p = self._abs(path)
        st = p.stat()
        hit = self._cache.get(path)
        if hit is not None and hit[0] == st.st_mtime_ns and hit[1] == st.st_size:
            return hit[2]
        return self.read_fresh(path)

    def read_fresh(self, path: str) -> str:
        p = self._abs(path)
        st = p.stat()
        text = safe_read_text(p)
        self._cache[path] = (st.st_mtime_ns, st.st_size, text)
        self._remember(path)
        return text

    def outbound_links(self, path: str) -> list[str]:
        try:
            text = self.read_cached(path)
        except OSError as e:
            logger.debug(f"No links for {path}: {e}")
            return []
        if not self._paths:
            self.list_documents()

        out: list[str] = []
        for target in parse_wikilinks(text):
            resolved = self.resolve_link(target, path)
            if resolved and resolved not in out:
                out.append(resolved)
        return out

    def resolve_link(self, target: str, from_path: str = "") -> Optional[str]:
        """Resolve a [[link]] target to a known document path.

        Tries the target as a vault path (with and without a default
        extension), then relative to the linking note's folder, then by file
        name.
        """
        target = target.strip().replace("\\", "/").lstrip("/")
        if not target:
            return None
        candidates = [target]
        if not target.lower().endswith(self.extensions):
            candidates = [target + ext for ext in self.extensions]

        folder = PurePosixPath(from_path).parent.as_posix() if from_path else "."
        for c in candidates:
            if c in self._paths:
                return c
            if folder != ".":
                rel = f"{folder}/{c}"
                if rel in self._paths:
                    return rel

        names = self._by_name.get(basename_of(candidates[0]).lower())
        if names:
            return sorted(names)[0]
        return None
