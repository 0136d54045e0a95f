"""Durable project file store.

The bridge only needs two operations from the store: list a project's
files and write one file back. ``ProjectStore`` is that seam; two
implementations ship here:

- ``InMemoryProjectStore``: dict-backed, for tests and ephemeral use.
- ``FilesystemProjectStore``: one directory per project under a root,
  written atomically (temp file + fsync + rename).
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from codebridge.engine.hash_store import hash_content
from codebridge.engine.models import FileRecord
from codebridge.engine.sanitizer import sanitize_path, validate_project_id

logger = logging.getLogger(__name__)


@runtime_checkable
class ProjectStore(Protocol):
    async def list_files(self, project_id: str) -> list[FileRecord]: ...

    async def write_file(self, project_id: str, path: str, content: str) -> None: ...


def make_record(path: str, content: str) -> FileRecord:
    data = content.encode("utf-8")
    return FileRecord(
        path=path,
        content=content,
        content_hash=hash_content(data),
        size=len(data),
    )


class InMemoryProjectStore:
    """Dict-backed store. ``writes`` records every write in order."""

    def __init__(self, files: dict[str, dict[str, str]] | None = None) -> None:
        self._files: dict[str, dict[str, str]] = {
            pid: dict(entries) for pid, entries in (files or {}).items()
        }
        self.writes: list[tuple[str, str]] = []

    async def list_files(self, project_id: str) -> list[FileRecord]:
        entries = self._files.get(project_id, {})
        return [make_record(path, content) for path, content in sorted(entries.items())]

    async def write_file(self, project_id: str, path: str, content: str) -> None:
        clean = sanitize_path(path)
        if not clean:
            raise ValueError(f"Invalid file path: {path!r}")
        self._files.setdefault(project_id, {})[clean] = content
        self.writes.append((project_id, clean))

    def get(self, project_id: str, path: str) -> str | None:
        return self._files.get(project_id, {}).get(path)


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync so the rename is durable."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Some filesystems do not support directory fsync.
        pass


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write ``content`` to ``path`` via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class FilesystemProjectStore:
    """Projects as directories under ``root``; every path is sanitized."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _project_dir(self, project_id: str) -> Path:
        return self._root / validate_project_id(project_id)

    def _list_sync(self, project_id: str) -> list[FileRecord]:
        project_dir = self._project_dir(project_id)
        if not project_dir.is_dir():
            return []
        records: list[FileRecord] = []
        for dirpath, dirnames, filenames in os.walk(project_dir):
            dirnames.sort()
            for name in sorted(filenames):
                if name.startswith(".") and name.endswith(".tmp"):
                    continue
                full = Path(dirpath) / name
                rel = full.relative_to(project_dir).as_posix()
                try:
                    content = full.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError) as exc:
                    logger.warning("Skipping unreadable store file %s/%s: %s", project_id, rel, exc)
                    continue
                records.append(make_record(rel, content))
        return records

    async def list_files(self, project_id: str) -> list[FileRecord]:
        return await asyncio.to_thread(self._list_sync, project_id)

    async def write_file(self, project_id: str, path: str, content: str) -> None:
        clean = sanitize_path(path)
        if not clean:
            raise ValueError(f"Invalid file path: {path!r}")
        target = self._project_dir(project_id) / clean
        await asyncio.to_thread(atomic_write_text, target, content)
        logger.debug("Stored %s/%s (%d chars)", project_id, clean, len(content))
