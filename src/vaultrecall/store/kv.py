from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Path-addressed persistence for JSON payloads.

    Keys are relative, forward-slash separated names such as
    "vectors-meta.json".
    """

    def exists(self, key: str) -> bool:
        ...

    def read_json(self, key: str) -> Any:
        ...

    def write_json(self, key: str, data: Any) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def mkdir(self, key: str = "") -> None:
        ...


class JsonFileStore:
    """KeyValueStore backed by files under one directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        p = (self.root / key).resolve()
        root = self.root.resolve()
        if p != root and root not in p.parents:
            raise ValueError(f"Key escapes store root: {key}")
        return p

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def read_json(self, key: str) -> Any:
        """Decode a stored payload. Raises FileNotFoundError or json.JSONDecodeError."""
        with open(self._path(key), "r", encoding="utf-8") as f:
            return json.load(f)

    def write_json(self, key: str, data: Any) -> None:
        """Write atomically: a reader never sees a half-written file."""
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, separators=(",", ":"))
            os.replace(temp_path, path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        path = self._path(key)
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)

    def mkdir(self, key: str = "") -> None:
        self._path(key).mkdir(parents=True, exist_ok=True)
