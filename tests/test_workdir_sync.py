from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from codebridge.engine.errors import HydrationError
from codebridge.shared.services.project_store import (
    FilesystemProjectStore,
    InMemoryProjectStore,
    atomic_write_text,
)
from codebridge.shared.services.sync_engine import SyncEngine, scan_tree
from codebridge.shared.services.workdir import WorkingDirectoryManager, is_skipped_path

SKIP = (".git", "node_modules")


def _build(tmpdir: str, files: dict[str, str] | None = None, *, max_file_size: int = 10 * 1024 * 1024):
    store = InMemoryProjectStore({"proj": dict(files or {})})
    workdirs = WorkingDirectoryManager(Path(tmpdir) / "work", store, SKIP)
    engine = SyncEngine(store, workdirs, max_file_size=max_file_size)
    return store, workdirs, engine


class _FailingStore(InMemoryProjectStore):
    def __init__(self, files, fail_paths=(), fail_list=False):
        super().__init__(files)
        self._fail_paths = set(fail_paths)
        self._fail_list = fail_list

    async def list_files(self, project_id):
        if self._fail_list:
            raise ConnectionError("store unavailable")
        return await super().list_files(project_id)

    async def write_file(self, project_id, path, content):
        if path in self._fail_paths:
            raise ConnectionError("write refused")
        await super().write_file(project_id, path, content)


def test_is_skipped_path() -> None:
    assert is_skipped_path(".git/config", SKIP)
    assert is_skipped_path("web/node_modules/x/index.js", SKIP)
    assert not is_skipped_path("src/git.py", SKIP)


@pytest.mark.asyncio
async def test_hydrate_writes_sanitized_files_and_skips_excluded() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        _, workdirs, _ = _build(tmpdir, {
            "README.md": "# hi\n",
            "src/app.py": "print('x')\r\n",
            "../escape.txt": "nope",
            ".git/HEAD": "ref: refs/heads/main",
        })
        root, written = await workdirs.hydrate("proj")

        assert root == Path(tmpdir) / "work" / "proj"
        assert (root / "README.md").read_text(encoding="utf-8") == "# hi\n"
        # line endings are preserved byte for byte
        assert (root / "src" / "app.py").read_bytes() == b"print('x')\r\n"
        assert (root / "escape.txt").exists()
        assert not (Path(tmpdir) / "work" / "escape.txt").exists()
        assert not (root / ".git").exists()
        assert sorted(r.path for r in written) == ["README.md", "escape.txt", "src/app.py"]


@pytest.mark.asyncio
async def test_hydrate_clears_stale_directory() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        _, workdirs, _ = _build(tmpdir, {"a.txt": "a"})
        stale = Path(tmpdir) / "work" / "proj"
        stale.mkdir(parents=True)
        (stale / "leftover.txt").write_text("old", encoding="utf-8")

        root, _ = await workdirs.hydrate("proj")

        assert not (root / "leftover.txt").exists()
        assert (root / "a.txt").exists()


@pytest.mark.asyncio
async def test_hydrate_store_failure_raises_hydration_error() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _FailingStore({"proj": {}}, fail_list=True)
        workdirs = WorkingDirectoryManager(Path(tmpdir) / "work", store, SKIP)
        with pytest.raises(HydrationError) as exc_info:
            await workdirs.hydrate("proj")
        assert exc_info.value.code == "HYDRATION_FAILED"


@pytest.mark.asyncio
async def test_teardown_is_idempotent() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        _, workdirs, _ = _build(tmpdir, {"a.txt": "a"})
        root, _ = await workdirs.hydrate("proj")
        assert await workdirs.teardown("proj") is True
        assert not root.exists()
        assert await workdirs.teardown("proj") is True
        assert await workdirs.teardown("../bad/id") is False


def test_prune_stale_keeps_active_projects() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        _, workdirs, _ = _build(tmpdir)
        for name in ("old1", "old2", "live"):
            (workdirs.root / name).mkdir(parents=True)
        assert workdirs.prune_stale({"live"}) == 2
        assert [p.name for p in workdirs.root.iterdir()] == ["live"]


@pytest.mark.asyncio
async def test_reconcile_uploads_only_modified_files() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store, _, engine = _build(tmpdir, {
            "a.txt": "alpha",
            "b.txt": "beta",
            "c.txt": "gamma",
            "d.txt": "delta",
            "e.txt": "epsilon",
        })
        root, _ = await engine.download("proj")
        (root / "a.txt").write_text("alpha v2", encoding="utf-8")
        (root / "b.txt").write_text("beta v2", encoding="utf-8")

        report = await engine.reconcile("proj", root)

        assert report.changed == ["a.txt", "b.txt"]
        assert report.failed == []
        assert report.deleted == []
        assert report.scanned == 5
        assert sorted(path for _, path in store.writes) == ["a.txt", "b.txt"]
        assert store.get("proj", "a.txt") == "alpha v2"


@pytest.mark.asyncio
async def test_reconcile_untouched_tree_reports_nothing() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store, _, engine = _build(tmpdir, {"README.md": "# readme\n"})
        root, _ = await engine.download("proj")
        report = await engine.reconcile("proj", root)
        assert report.changed == []
        assert store.writes == []
        # A second pass after the first still finds nothing
        assert (await engine.reconcile("proj", root)).changed == []


@pytest.mark.asyncio
async def test_reconcile_new_files_skip_dirs_and_deletions() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store, _, engine = _build(tmpdir, {"keep.txt": "k", "gone.txt": "g"})
        root, _ = await engine.download("proj")
        (root / "gone.txt").unlink()
        (root / "pkg").mkdir()
        (root / "pkg" / "new.py").write_text("x = 1\n", encoding="utf-8")
        (root / "node_modules").mkdir()
        (root / "node_modules" / "dep.js").write_text("ignored", encoding="utf-8")

        report = await engine.reconcile("proj", root)

        assert report.changed == ["pkg/new.py"]
        assert report.deleted == ["gone.txt"]
        assert "gone.txt" not in engine.hash_store.paths("proj")
        assert store.get("proj", "node_modules/dep.js") is None


@pytest.mark.asyncio
async def test_reconcile_collects_partial_failures() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _FailingStore({"proj": {"ok.txt": "1", "bad.txt": "2"}}, fail_paths={"bad.txt"})
        workdirs = WorkingDirectoryManager(Path(tmpdir) / "work", store, SKIP)
        engine = SyncEngine(store, workdirs, max_file_size=64)
        root, _ = await engine.download("proj")
        (root / "ok.txt").write_text("changed", encoding="utf-8")
        (root / "bad.txt").write_text("changed", encoding="utf-8")
        (root / "big.txt").write_text("x" * 100, encoding="utf-8")
        (root / "blob.bin").write_bytes(b"\xff\xfe\x00\x01")

        report = await engine.reconcile("proj", root)

        assert report.changed == ["ok.txt"]
        assert report.partial
        failures = {f.path: f.error for f in report.failed}
        assert set(failures) == {"bad.txt", "big.txt", "blob.bin"}
        assert failures["bad.txt"].startswith("upload failed")
        assert "too large" in failures["big.txt"]
        assert "binary" in failures["blob.bin"]
        # failed uploads stay changed for the next pass
        retry = await engine.reconcile("proj", root)
        assert "bad.txt" in {f.path for f in retry.failed}
        assert retry.changed == []


def test_scan_tree_ignores_symlinks() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "real.txt").write_text("r", encoding="utf-8")
        (root / "link.txt").symlink_to(root / "real.txt")
        scanned = scan_tree(root, frozenset())
        assert [s.rel_path for s in scanned] == ["real.txt"]


@pytest.mark.asyncio
async def test_reconcile_keys_on_sanitized_paths_and_reports_collisions() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store, _, engine = _build(tmpdir, {"README.md": "# readme\n"})
        root, _ = await engine.download("proj")
        (root / "notes..md").write_text("n", encoding="utf-8")
        (root / "a:b.txt").write_text("first", encoding="utf-8")
        (root / "ab.txt").write_text("second", encoding="utf-8")
        (root / ":::").write_text("nameless", encoding="utf-8")

        report = await engine.reconcile("proj", root)

        assert report.changed == ["ab.txt", "notesmd"]
        assert sorted(path for _, path in store.writes) == ["ab.txt", "notesmd"]
        assert store.get("proj", "ab.txt") == "first"
        failures = {f.path: f.error for f in report.failed}
        assert failures == {
            ":::": "path is empty after sanitizing",
            "ab.txt": "collides with a:b.txt as ab.txt",
        }
        assert engine.hash_store.paths("proj") == {"README.md", "ab.txt", "notesmd"}
        # The index matches the store, so nothing reads as deleted or changed later
        again = await engine.reconcile("proj", root)
        assert again.changed == []
        assert again.deleted == []


@pytest.mark.asyncio
async def test_filesystem_store_round_trip() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = FilesystemProjectStore(Path(tmpdir) / "store")
        await store.write_file("proj", "docs/guide.md", "hello\n")
        await store.write_file("proj", "../../outside.txt", "contained")
        records = await store.list_files("proj")
        assert sorted(r.path for r in records) == ["docs/guide.md", "outside.txt"]
        assert not (Path(tmpdir) / "outside.txt").exists()
        assert await store.list_files("unknown") == []


def test_atomic_write_text_replaces_content() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        target = Path(tmpdir) / "nested" / "file.txt"
        atomic_write_text(target, "one")
        atomic_write_text(target, "two")
        assert target.read_text(encoding="utf-8") == "two"
        assert [p.name for p in target.parent.iterdir()] == ["file.txt"]
