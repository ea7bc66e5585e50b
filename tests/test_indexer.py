"""Unit tests for codeintel.indexer."""

import asyncio
import time

import pytest
import pytest_asyncio

from codeintel.embeddings import EmbeddingService
from codeintel.indexer import (
    Indexer,
    collect_files,
    compute_md5,
    is_binary,
    load_gitignore,
    should_index,
)
from codeintel.parser import ParserAdapter
from codeintel.storage import Catalog, ShardStore
from codeintel.store import VectorStore

from conftest import FailingEmbedder, HashingEmbedder


async def _make_indexer(index_dir, embedder, debounce=0.01, workers=2):
    catalog = Catalog(index_dir / "catalog.db")
    await catalog.open()
    indexer = Indexer(
        ParserAdapter(),
        EmbeddingService(embedder, catalog),
        VectorStore(),
        catalog,
        ShardStore(index_dir / "shards"),
        debounce=debounce,
        workers=workers,
    )
    indexer.start()
    return indexer


async def _close(indexer):
    await indexer.stop()
    await indexer.catalog.close()


async def _index_project(indexer, root):
    events = []
    async for progress in indexer.index_project(str(root)):
        events.append(progress)
    return events


class ExplodingEmbedder(HashingEmbedder):
    """Raises an unexpected error for any batch mentioning ``explode``."""

    def embed_batch(self, texts):
        if any("explode" in t for t in texts):
            raise RuntimeError("CUDA out of memory")
        return super().embed_batch(texts)


def _names(indexer, path):
    return sorted(b.name for b in indexer.store.blocks_for_file(str(path)) if b.name)


@pytest_asyncio.fixture
async def indexer(tmp_path, embedder):
    instance = await _make_indexer(tmp_path / "index", embedder)
    yield instance
    await _close(instance)


class TestFileCollection:
    def test_collect_respects_rules(self, project):
        (project / ".gitignore").write_text("ignored.py\n")
        (project / "ignored.py").write_text("x = 1\n")
        (project / "node_modules").mkdir()
        (project / "node_modules" / "dep.js").write_text("var a;\n")
        (project / ".hidden").mkdir()
        (project / ".hidden" / "secret.py").write_text("x = 1\n")
        (project / "data.json").write_text("{}")
        (project / "blob.py").write_bytes(b"\x00\x01\x02")

        files = collect_files(str(project))

        root = project.resolve()
        assert files == sorted(
            str(root / p)
            for p in ("notes.txt", "src/math_utils.py", "src/shapes.py", "web/greet.js")
        )

    def test_should_index_outside_folder(self, project, tmp_path):
        assert not should_index(str(tmp_path / "elsewhere.py"), str(project), None)

    def test_gitignore_missing(self, tmp_path):
        assert load_gitignore(str(tmp_path)) is None

    def test_gitignore_patterns(self, tmp_path):
        (tmp_path / ".gitignore").write_text("*.gen.py\nbuild/\n")
        spec = load_gitignore(str(tmp_path))
        assert spec.match_file("a.gen.py")
        assert not spec.match_file("a.py")

    def test_is_binary(self, tmp_path):
        text_file = tmp_path / "a.py"
        text_file.write_text("print('hi')\n")
        blob = tmp_path / "b.bin"
        blob.write_bytes(b"abc\x00def")
        assert not is_binary(str(text_file))
        assert is_binary(str(blob))
        assert is_binary(str(tmp_path / "missing"))

    def test_compute_md5(self, tmp_path):
        path = tmp_path / "a.py"
        path.write_text("hello")
        assert compute_md5(str(path)) == "5d41402abc4b2a76b9719d911017c592"
        assert compute_md5(str(tmp_path / "missing")) == ""


class TestIndexProject:
    @pytest.mark.asyncio
    async def test_progress_and_blocks(self, indexer, project):
        events = await _index_project(indexer, project)

        assert events[0].files_indexed == 0
        assert events[-1].files_indexed == events[-1].total_files == 4
        assert events[-1].errors == []
        assert events[-1].done
        root = project.resolve()
        assert _names(indexer, root / "src" / "math_utils.py") == [
            "add_numbers",
            "math_utils",
            "multiply_numbers",
        ]
        assert "greet" in _names(indexer, root / "web" / "greet.js")

    @pytest.mark.asyncio
    async def test_reindex_unchanged_is_idempotent(self, indexer, project, embedder):
        await _index_project(indexer, project)
        calls = embedder.calls
        blocks = len(indexer.store)

        await _index_project(indexer, project)

        assert embedder.calls == calls
        assert len(indexer.store) == blocks
        path = str(project.resolve() / "src" / "shapes.py")
        assert await indexer.index_file(path, str(project.resolve())) is None

    @pytest.mark.asyncio
    async def test_deleted_files_dropped_on_reindex(self, indexer, project):
        await _index_project(indexer, project)
        (project / "notes.txt").unlink()

        await _index_project(indexer, project)

        assert str(project.resolve() / "notes.txt") not in indexer.store.file_paths()

    @pytest.mark.asyncio
    async def test_unreadable_file_is_isolated(self, indexer, project):
        (project / "src" / "latin1.py").write_bytes(b"name = '\xe9'\n")

        events = await _index_project(indexer, project)

        assert events[-1].files_indexed == 4
        assert [e.path for e in events[-1].errors] == [
            str(project.resolve() / "src" / "latin1.py")
        ]
        assert indexer.errors

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, tmp_path, project):
        (project / "src" / "bad.py").write_text("def explode():\n    return 1\n")
        indexer = await _make_indexer(tmp_path / "index", ExplodingEmbedder())
        try:
            events = await _index_project(indexer, project)

            assert events[-1].done
            assert events[-1].files_indexed == 4
            assert [e.path for e in events[-1].errors] == [
                str(project.resolve() / "src" / "bad.py")
            ]
            assert "CUDA out of memory" in events[-1].errors[0].error
        finally:
            await _close(indexer)


class TestScheduling:
    @pytest.mark.asyncio
    async def test_change_visible_after_wait(self, indexer, project):
        await _index_project(indexer, project)
        root = project.resolve()
        path = str(root / "src" / "math_utils.py")

        indexer.schedule(
            path, str(root), "def subtract_numbers(a, b):\n    return a - b\n"
        )
        assert indexer.is_pending(path)
        assert await indexer.wait_indexed(path, timeout=5)

        assert _names(indexer, path) == ["math_utils", "subtract_numbers"]
        assert indexer.pending == 0

    @pytest.mark.asyncio
    async def test_rapid_changes_coalesce(self, tmp_path, embedder, project):
        indexer = await _make_indexer(tmp_path / "index", embedder, debounce=0.2)
        try:
            await _index_project(indexer, project)
            root = project.resolve()
            path = str(root / "src" / "math_utils.py")
            version = indexer.version(path)

            for i in range(5):
                indexer.schedule(path, str(root), f"def step_{i}():\n    return {i}\n")
                await asyncio.sleep(0.01)
            assert await indexer.wait_indexed(path, timeout=5)

            assert indexer.version(path) == version + 1
            assert _names(indexer, path) == ["math_utils", "step_4"]
            assert not any("step_2" in t for t in embedder.texts)
        finally:
            await _close(indexer)

    @pytest.mark.asyncio
    async def test_embedding_failure_keeps_previous_version(self, indexer, project):
        await _index_project(indexer, project)
        root = project.resolve()
        path = str(root / "src" / "math_utils.py")
        indexer.embeddings.embedder = FailingEmbedder()

        indexer.schedule(path, str(root), "def brand_new():\n    return 0\n")
        assert await indexer.wait_indexed(path, timeout=5) is False

        assert "add_numbers" in _names(indexer, path)
        assert indexer.errors[-1].path == path

    @pytest.mark.asyncio
    async def test_worker_survives_unexpected_error(self, tmp_path, project):
        indexer = await _make_indexer(tmp_path / "index", ExplodingEmbedder(), workers=1)
        try:
            await _index_project(indexer, project)
            root = project.resolve()
            bad = str(root / "src" / "math_utils.py")
            good = str(root / "src" / "shapes.py")

            indexer.schedule(bad, str(root), "def explode():\n    return 0\n")
            assert await indexer.wait_indexed(bad, timeout=5) is False

            indexer.schedule(good, str(root), "def still_indexed():\n    return 1\n")
            assert await indexer.wait_indexed(good, timeout=5) is True
            assert "still_indexed" in _names(indexer, good)
            assert "add_numbers" in _names(indexer, bad)
        finally:
            await _close(indexer)

    @pytest.mark.asyncio
    async def test_wait_for_idle_file(self, indexer):
        assert await indexer.wait_indexed("/never/seen.py") is True

    @pytest.mark.asyncio
    async def test_remove_file(self, indexer, project):
        await _index_project(indexer, project)
        root = project.resolve()
        path = str(root / "web" / "greet.js")

        await indexer.remove_file(path)

        assert path not in indexer.store.file_paths()
        assert await indexer.catalog.get_file(path) is None
        assert not indexer.shards.shard_path(path).exists()


class TestRestore:
    @pytest.mark.asyncio
    async def test_restart_serves_persisted_index(self, tmp_path, project):
        first = await _make_indexer(tmp_path / "index", HashingEmbedder())
        await _index_project(first, project)
        blocks = len(first.store)
        await _close(first)

        embedder = HashingEmbedder()
        second = await _make_indexer(tmp_path / "index", embedder)
        try:
            report = await second.restore()

            assert report.loaded == 4
            assert report.rebuilt == report.stale == report.removed == []
            assert len(second.store) == blocks
            assert embedder.calls == 0
        finally:
            await _close(second)

    @pytest.mark.asyncio
    async def test_corrupted_shard_is_rebuilt(self, tmp_path, project):
        first = await _make_indexer(tmp_path / "index", HashingEmbedder())
        await _index_project(first, project)
        path = str(project.resolve() / "src" / "shapes.py")
        shard = first.shards.shard_path(path)
        await _close(first)
        raw = bytearray(shard.read_bytes())
        raw[-3] ^= 0xFF
        shard.write_bytes(bytes(raw))

        second = await _make_indexer(tmp_path / "index", HashingEmbedder())
        try:
            report = await second.restore()

            assert report.rebuilt == [path]
            assert report.loaded == 3
            assert "area" in _names(second, path)
            second.shards.read(shard)
        finally:
            await _close(second)

    @pytest.mark.asyncio
    async def test_changed_and_deleted_files_reconciled(self, tmp_path, project):
        first = await _make_indexer(tmp_path / "index", HashingEmbedder())
        await _index_project(first, project)
        await _close(first)
        root = project.resolve()
        changed = str(root / "src" / "math_utils.py")
        deleted = str(root / "notes.txt")
        (root / "src" / "math_utils.py").write_text("def divide_numbers(a, b):\n    return a / b\n")
        (root / "notes.txt").unlink()

        second = await _make_indexer(tmp_path / "index", HashingEmbedder())
        try:
            report = await second.restore()
            await second.drain()

            assert report.stale == [changed]
            assert report.removed == [deleted]
            assert deleted not in second.store.file_paths()
            assert _names(second, changed) == ["divide_numbers", "math_utils"]
        finally:
            await _close(second)

    @pytest.mark.asyncio
    async def test_model_upgrade_re_embeds(self, tmp_path, project):
        first = await _make_indexer(tmp_path / "index", HashingEmbedder())
        await _index_project(first, project)
        await _close(first)

        upgraded = HashingEmbedder(model_version="test/hashing-v2")
        second = await _make_indexer(tmp_path / "index", upgraded)
        try:
            report = await second.restore()
            await second.drain()

            assert len(report.stale) == 4
            # Vectors from the old model are never loaded into the store
            assert report.loaded == 0
            assert upgraded.calls > 0
            assert len(second.store.file_paths()) == 4
        finally:
            await _close(second)

    @pytest.mark.asyncio
    async def test_orphan_shards_deleted(self, tmp_path, project):
        first = await _make_indexer(tmp_path / "index", HashingEmbedder())
        await _index_project(first, project)
        orphan = first.shards.root / "deadbeef.shard"
        orphan.write_bytes(b"junk")
        await _close(first)

        second = await _make_indexer(tmp_path / "index", HashingEmbedder())
        try:
            await second.restore()
            assert not orphan.exists()
        finally:
            await _close(second)


class TestWatch:
    @pytest.mark.asyncio
    async def test_new_file_is_indexed(self, indexer, project):
        await _index_project(indexer, project)
        root = project.resolve()
        observer = indexer.watch(str(root))
        try:
            new_file = root / "src" / "fresh.py"
            new_file.write_text("def fresh_function():\n    return 1\n")

            deadline = time.monotonic() + 10
            while str(new_file) not in indexer.store.file_paths():
                assert time.monotonic() < deadline, "watcher never indexed the file"
                await asyncio.sleep(0.05)
            assert "fresh_function" in _names(indexer, new_file)
        finally:
            observer.stop()
            observer.join()

    @pytest.mark.asyncio
    async def test_watch_requires_directory(self, indexer, tmp_path):
        with pytest.raises(ValueError):
            indexer.watch(str(tmp_path / "missing"))
