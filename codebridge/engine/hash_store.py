"""Per-project content hash index.

Maps relative path -> sha256 hex of the last content synced for that
path. Lives only as long as the process; after a restart the index is
rebuilt from the next hydration.
"""
from __future__ import annotations

import hashlib


def hash_content(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class HashStore:
    """Explicit map of project id -> {relative path -> content hash}."""

    def __init__(self) -> None:
        self._indexes: dict[str, dict[str, str]] = {}

    def index_for(self, project_id: str) -> dict[str, str]:
        """Return the project's index, creating it empty on first use."""
        return self._indexes.setdefault(project_id, {})

    def get(self, project_id: str, path: str) -> str | None:
        return self._indexes.get(project_id, {}).get(path)

    def set(self, project_id: str, path: str, content_hash: str) -> None:
        self.index_for(project_id)[path] = content_hash

    def remove(self, project_id: str, path: str) -> None:
        self._indexes.get(project_id, {}).pop(path, None)

    def paths(self, project_id: str) -> set[str]:
        return set(self._indexes.get(project_id, {}))

    def is_changed(self, project_id: str, path: str, content_hash: str) -> bool:
        """A path is changed when it has no stored hash or a different one."""
        return self.get(project_id, path) != content_hash

    def reset(self, project_id: str, entries: dict[str, str] | None = None) -> None:
        """Replace the project's index wholesale."""
        self._indexes[project_id] = dict(entries or {})

    def discard(self, project_id: str) -> None:
        self._indexes.pop(project_id, None)

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._indexes
