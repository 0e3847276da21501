"""Path-addressed JSON document store persisted to a single file.

The whole tree lives in memory and is rewritten to disk after every
mutation. Nodes are either mappings (``dict``) or leaf JSON values.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from enum import StrEnum
from pathlib import Path
from typing import Any

from phonebackend.exceptions import InvalidBodyError, InvalidPathError, PathConflictError

_logger = logging.getLogger(__name__)


class CoercionPolicy(StrEnum):
    """What ``set`` does when an intermediate path node is not a mapping."""

    OVERWRITE = "overwrite"
    REJECT = "reject"


def split_path(path: str) -> list[str]:
    """Split ``path`` on ``/`` dropping empty segments."""
    return [part for part in path.split("/") if part]


class PathStore:
    """In-memory document tree with whole-file JSON persistence.

    Not thread-safe; the agent drives it from a single event loop.
    """

    def __init__(
        self,
        path: Path,
        *,
        coercion: CoercionPolicy = CoercionPolicy.OVERWRITE,
    ) -> None:
        self._path = path
        self._coercion = coercion
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def coercion(self) -> CoercionPolicy:
        return self._coercion

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            _logger.warning("Store file %s is unreadable, starting empty", self._path, exc_info=True)
            return {}
        if not isinstance(data, dict):
            _logger.warning("Store file %s does not hold an object, starting empty", self._path)
            return {}
        return data

    def _commit(self, data: dict[str, Any]) -> None:
        """Persist ``data`` and make it the current tree.

        The in-memory tree only changes once the file has been replaced.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f"{self._path.name}.tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        finally:
            tmp.unlink(missing_ok=True)
        self._data = data

    def reload(self) -> None:
        """Discard in-memory state and re-read the backing file."""
        self._data = self._load()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get(self, path: str) -> Any:
        """Return the value at ``path`` or ``None`` when any segment is missing."""
        current: Any = self._data
        for part in split_path(path):
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]
        return copy.deepcopy(current)

    def set(self, path: str, value: Any) -> None:
        """Write ``value`` at ``path``, creating intermediate mappings."""
        parts = split_path(path)
        if not parts:
            raise InvalidPathError("Cannot write to the root path", path=path)

        if self._coercion is CoercionPolicy.REJECT:
            self._check_writable(parts, path)

        # Writes go to a copy of the spine; _commit swaps it in.
        root = dict(self._data)
        current = root
        for part in parts[:-1]:
            child = current.get(part)
            if isinstance(child, dict):
                child = dict(child)
            else:
                if child is not None:
                    _logger.debug("Replacing non-object node %r while writing %s", part, path)
                child = {}
            current[part] = child
            current = child

        current[parts[-1]] = copy.deepcopy(value)
        self._commit(root)

    def _check_writable(self, parts: list[str], path: str) -> None:
        current: Any = self._data
        for part in parts[:-1]:
            if part not in current:
                return
            current = current[part]
            if not isinstance(current, dict):
                raise PathConflictError(f"Path segment {part!r} is not an object", path=path)

    def merge(self, path: str, partial: Any) -> dict[str, Any] | None:
        """Shallow-merge ``partial`` over the object at ``path``.

        Returns the merged object, or ``None`` when nothing is stored there.
        """
        existing = self.get(path)
        if existing is None:
            return None
        if not isinstance(existing, dict):
            raise PathConflictError("Cannot merge into a non-object value", path=path)
        if partial is None:
            partial = {}
        if not isinstance(partial, dict):
            raise InvalidBodyError("Request body must be a JSON object", path=path)

        merged = {**existing, **partial}
        self.set(path, merged)
        return copy.deepcopy(merged)

    def delete(self, path: str) -> bool:
        """Remove the entry at ``path``.

        Returns ``False`` without touching the tree when the entry or any
        ancestor is missing; otherwise removes it, persists and returns ``True``.
        """
        parts = split_path(path)
        if not parts:
            raise InvalidPathError("Cannot delete the root path", path=path)

        root = dict(self._data)
        current = root
        for part in parts[:-1]:
            child = current.get(part)
            if not isinstance(child, dict):
                return False
            child = dict(child)
            current[part] = child
            current = child
        if parts[-1] not in current:
            return False

        del current[parts[-1]]
        self._commit(root)
        return True

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the whole tree."""
        return copy.deepcopy(self._data)
