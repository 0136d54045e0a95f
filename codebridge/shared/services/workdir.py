"""Ephemeral per-project working directories.

Each project gets ``<root>/<project_id>``. The directory is materialized
from the durable store before a run and removed afterwards. Removal
failures are logged and the leftover tree is cleared on the next
hydrate for the same project.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from codebridge.engine.errors import HydrationError, ValidationError
from codebridge.engine.models import FileRecord
from codebridge.engine.sanitizer import sanitize_path, validate_project_id
from codebridge.shared.services.project_store import ProjectStore

logger = logging.getLogger(__name__)


def is_skipped_path(rel_path: str, skip_dirs: Iterable[str]) -> bool:
    """True when any segment of ``rel_path`` is in ``skip_dirs``."""
    skip = set(skip_dirs)
    return any(segment in skip for segment in rel_path.split("/"))


class WorkingDirectoryManager:
    """Creates and destroys project working directories under one root."""

    def __init__(
        self,
        root: Path | str,
        store: ProjectStore,
        skip_dirs: Iterable[str] = (),
    ) -> None:
        self._root = Path(root)
        self._store = store
        self._skip_dirs = frozenset(skip_dirs)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def skip_dirs(self) -> frozenset[str]:
        return self._skip_dirs

    def root_for(self, project_id: str) -> Path:
        return self._root / validate_project_id(project_id)

    def exists(self, project_id: str) -> bool:
        return self.root_for(project_id).is_dir()

    async def hydrate(self, project_id: str) -> tuple[Path, list[FileRecord]]:
        """Materialize the project's files. Returns the root and the records written."""
        work_dir = self.root_for(project_id)
        if work_dir.exists():
            logger.info("Removing stale working directory %s before hydrate", work_dir)
            await asyncio.to_thread(shutil.rmtree, work_dir, ignore_errors=True)

        try:
            records = await self._store.list_files(project_id)
        except Exception as exc:
            raise HydrationError(f"Could not list files for project {project_id}: {exc}") from exc

        try:
            written = await asyncio.to_thread(self._write_records, work_dir, records)
        except OSError as exc:
            raise HydrationError(f"Could not write working directory {work_dir}: {exc}") from exc

        logger.info(
            "Hydrated project=%s dir=%s files=%d skipped=%d",
            project_id, work_dir, len(written), len(records) - len(written),
        )
        return work_dir, written

    def _write_records(self, work_dir: Path, records: list[FileRecord]) -> list[FileRecord]:
        work_dir.mkdir(parents=True, exist_ok=True)
        written: list[FileRecord] = []
        seen: set[str] = set()
        for record in records:
            rel = sanitize_path(record.path)
            if not rel:
                continue
            if rel in seen:
                logger.warning("Duplicate path after sanitization: %r", record.path)
                continue
            if is_skipped_path(rel, self._skip_dirs):
                logger.debug("Skipping excluded path %s", rel)
                continue
            target = work_dir / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(record.content or "", encoding="utf-8", newline="")
            seen.add(rel)
            if rel != record.path:
                record = FileRecord(
                    path=rel,
                    content=record.content,
                    content_hash=record.content_hash,
                    size=record.size,
                )
            written.append(record)
        return written

    async def teardown(self, project_id: str) -> bool:
        """Remove the project's working directory. Never raises."""
        try:
            work_dir = self.root_for(project_id)
        except ValidationError:
            logger.error("Teardown called with invalid project id %r", project_id)
            return False
        if not work_dir.exists():
            return True
        try:
            await asyncio.to_thread(shutil.rmtree, work_dir)
        except OSError as exc:
            logger.warning(
                "Failed to remove working directory %s (will retry on next hydrate): %s",
                work_dir, exc,
            )
            return False
        logger.info("Cleaned up working directory %s", work_dir)
        return True

    def prune_stale(self, active_project_ids: Iterable[str] = ()) -> int:
        """Remove leftover project directories not owned by an active session."""
        if not self._root.is_dir():
            return 0
        active = set(active_project_ids)
        removed = 0
        for child in self._root.iterdir():
            if not child.is_dir() or child.name in active:
                continue
            shutil.rmtree(child, ignore_errors=True)
            if not child.exists():
                removed += 1
        if removed:
            logger.info("Pruned %d stale working director%s under %s",
                        removed, "y" if removed == 1 else "ies", self._root)
        return removed
