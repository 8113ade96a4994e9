"""State store backends.

``JsonFileStateStore`` keeps one pretty-printed JSON file per record
(``<root>/<namespace>/<key>.json``) and writes through a temp file plus
``os.replace`` so a concurrent reader sees either the old or the new
record.  ``InMemoryStateStore`` round-trips records through JSON as well,
so tests exercise the same serialisation rules.
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pipeline_core.exceptions_unified import StateCorruptedError, StatePersistenceError

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _check_name(value: str, what: str, allow_empty: bool = False) -> None:
    if allow_empty and value == "":
        return
    parts = value.split("/") if what == "namespace" else [value]
    if not all(_KEY_PATTERN.match(p) for p in parts):
        raise ValueError(f"Invalid {what}: {value!r}")


class JsonFileStateStore:
    """File-backed store rooted at *root* (created lazily on first write)."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def path_for(self, namespace: str, key: str) -> Path:
        _check_name(namespace, "namespace", allow_empty=True)
        _check_name(key, "key")
        base = self.root / namespace if namespace else self.root
        return base / f"{key}.json"

    def save(self, namespace: str, key: str, record: Dict[str, Any]) -> None:
        path = self.path_for(namespace, key)
        try:
            payload = json.dumps(record, indent=2, default=str)
        except (TypeError, ValueError) as exc:
            raise StatePersistenceError("save", str(path), f"record is not serializable: {exc}") from exc

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Atomic write: write to temp file then rename
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{key}.", suffix=".tmp")
        except OSError as exc:
            raise StatePersistenceError("save", str(path), str(exc)) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.write("\n")
            os.replace(tmp_path, path)
        except OSError as exc:
            # Clean up temp file on failure
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StatePersistenceError("save", str(path), str(exc)) from exc

        logger.debug("Saved state record %s", path)

    def load(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(namespace, key)
        if not path.exists():
            return None
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StatePersistenceError("load", str(path), str(exc)) from exc
        try:
            record = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StateCorruptedError(self._label(namespace, key), f"invalid JSON: {exc}") from exc
        if not isinstance(record, dict):
            raise StateCorruptedError(self._label(namespace, key), "record is not an object")
        return record

    def exists(self, namespace: str, key: str) -> bool:
        return self.path_for(namespace, key).exists()

    def delete(self, namespace: str, key: str) -> bool:
        path = self.path_for(namespace, key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StatePersistenceError("delete", str(path), str(exc)) from exc
        return True

    def list_keys(self, namespace: str) -> List[str]:
        _check_name(namespace, "namespace", allow_empty=True)
        base = self.root / namespace if namespace else self.root
        if not base.is_dir():
            return []
        return sorted(p.stem for p in base.glob("*.json") if not p.name.startswith("."))

    @staticmethod
    def _label(namespace: str, key: str) -> str:
        return f"{namespace}/{key}" if namespace else key


class InMemoryStateStore:
    """Process-local store with the same contract as ``JsonFileStateStore``."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], str] = {}

    def save(self, namespace: str, key: str, record: Dict[str, Any]) -> None:
        _check_name(namespace, "namespace", allow_empty=True)
        _check_name(key, "key")
        try:
            self._records[(namespace, key)] = json.dumps(record, default=str)
        except (TypeError, ValueError) as exc:
            raise StatePersistenceError("save", f"{namespace}/{key}", str(exc)) from exc

    def load(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        raw = self._records.get((namespace, key))
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateCorruptedError(f"{namespace}/{key}", f"invalid JSON: {exc}") from exc
        if not isinstance(record, dict):
            raise StateCorruptedError(f"{namespace}/{key}", "record is not an object")
        return record

    def exists(self, namespace: str, key: str) -> bool:
        return (namespace, key) in self._records

    def delete(self, namespace: str, key: str) -> bool:
        return self._records.pop((namespace, key), None) is not None

    def list_keys(self, namespace: str) -> List[str]:
        return sorted(k for ns, k in self._records if ns == namespace)

    def put_raw(self, namespace: str, key: str, raw: str) -> None:
        """Store *raw* text verbatim (used to simulate corrupted records)."""
        self._records[(namespace, key)] = raw
