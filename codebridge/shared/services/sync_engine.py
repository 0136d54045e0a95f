"""Working directory <-> durable store synchronization.

``download`` hydrates a project's working directory and seeds its hash
index. ``reconcile`` walks the directory after a run, hashes every file,
and uploads only the files whose hash differs from the index.

Paths that disappear from the working directory are reported as deleted
and dropped from the index. They are not removed from the durable store:
the store interface has no delete operation.

Files are indexed and reported under their sanitized store path. Two
local files that sanitize to the same path are uploaded once; the later
one is reported as a failure.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from codebridge.engine.hash_store import HashStore, hash_content
from codebridge.engine.models import FileRecord, SyncFailure, SyncReport
from codebridge.engine.sanitizer import sanitize_path
from codebridge.shared.services.project_store import ProjectStore
from codebridge.shared.services.workdir import WorkingDirectoryManager

logger = logging.getLogger(__name__)

_HASH_BLOCK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class _ScannedFile:
    # rel_path is the sanitized store path; local_path is the name on disk.
    rel_path: str
    local_path: str
    content_hash: str | None
    size: int
    error: str | None = None


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for block in iter(lambda: fh.read(_HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def scan_tree(root: Path, skip_dirs: frozenset[str]) -> list[_ScannedFile]:
    """Walk ``root`` and hash every regular file. Symlinks are not followed.

    Each entry carries the sanitized path the store would use; a file
    whose name sanitizes to nothing is returned with an error.
    """
    scanned: list[_ScannedFile] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in skip_dirs)
        for name in sorted(filenames):
            if name in skip_dirs:
                continue
            full = Path(dirpath) / name
            rel = full.relative_to(root).as_posix()
            if full.is_symlink() or not full.is_file():
                continue
            clean = sanitize_path(rel)
            if not clean:
                scanned.append(_ScannedFile(
                    clean, rel, None, 0, error="path is empty after sanitizing",
                ))
                continue
            try:
                size = full.stat().st_size
                scanned.append(_ScannedFile(clean, rel, _hash_file(full), size))
            except OSError as exc:
                scanned.append(_ScannedFile(clean, rel, None, 0, error=f"read failed: {exc}"))
    return scanned


class SyncEngine:
    """Moves project files between the durable store and working directories."""

    def __init__(
        self,
        store: ProjectStore,
        workdirs: WorkingDirectoryManager,
        hash_store: HashStore | None = None,
        *,
        max_file_size: int = 10 * 1024 * 1024,
    ) -> None:
        self._store = store
        self._workdirs = workdirs
        self._hashes = hash_store or HashStore()
        self._max_file_size = max_file_size

    @property
    def hash_store(self) -> HashStore:
        return self._hashes

    async def download(self, project_id: str) -> tuple[Path, list[FileRecord]]:
        """Hydrate the working directory and reset the project's hash index."""
        work_dir, records = await self._workdirs.hydrate(project_id)
        self._hashes.reset(
            project_id,
            {r.path: hash_content((r.content or "").encode("utf-8")) for r in records},
        )
        return work_dir, records

    async def reconcile(self, project_id: str, work_dir: Path | str) -> SyncReport:
        """Upload files whose content changed since the last sync.

        Per-file failures are collected in the report; they never abort
        the remaining uploads.
        """
        work_dir = Path(work_dir)
        scanned = await asyncio.to_thread(scan_tree, work_dir, self._workdirs.skip_dirs)
        report = SyncReport(scanned=len(scanned))
        # sanitized path -> local path that claimed it
        claimed: dict[str, str] = {}

        for entry in scanned:
            if not entry.rel_path:
                report.failed.append(SyncFailure(entry.local_path, entry.error or "invalid path"))
                continue
            if entry.rel_path in claimed:
                report.failed.append(SyncFailure(
                    entry.local_path,
                    f"collides with {claimed[entry.rel_path]} as {entry.rel_path}",
                ))
                continue
            claimed[entry.rel_path] = entry.local_path
            if entry.error is not None:
                report.failed.append(SyncFailure(entry.rel_path, entry.error))
                continue
            if not self._hashes.is_changed(project_id, entry.rel_path, entry.content_hash):
                continue
            if entry.size > self._max_file_size:
                report.failed.append(SyncFailure(
                    entry.rel_path,
                    f"file too large ({entry.size} bytes > {self._max_file_size})",
                ))
                continue
            try:
                data = await asyncio.to_thread((work_dir / entry.local_path).read_bytes)
                content = data.decode("utf-8")
            except UnicodeDecodeError:
                report.failed.append(SyncFailure(entry.rel_path, "binary content is not supported"))
                continue
            except OSError as exc:
                report.failed.append(SyncFailure(entry.rel_path, f"read failed: {exc}"))
                continue
            try:
                await self._store.write_file(project_id, entry.rel_path, content)
            except Exception as exc:
                logger.warning(
                    "Upload failed project=%s path=%s: %s", project_id, entry.rel_path, exc,
                )
                report.failed.append(SyncFailure(entry.rel_path, f"upload failed: {exc}"))
                continue
            self._hashes.set(project_id, entry.rel_path, entry.content_hash)
            report.changed.append(entry.rel_path)

        for missing in sorted(self._hashes.paths(project_id) - set(claimed)):
            self._hashes.remove(project_id, missing)
            report.deleted.append(missing)

        report.changed.sort()
        logger.info(
            "Reconciled project=%s scanned=%d changed=%d failed=%d deleted=%d",
            project_id, report.scanned, len(report.changed),
            len(report.failed), len(report.deleted),
        )
        return report
