"""Background indexing: file collection, workers, debounce, restart and watch.

Pipeline per file:
    1. Read the text (or take the editor's live text) and hash it (MD5).
       Unchanged files are skipped, which makes re-indexing idempotent.
    2. Parse with the Parser Adapter in a worker thread. Live edits reuse
       the previous tree (incremental re-parse).
    3. Embed every block's enriched text through the embedding cache.
    4. Swap the file's entries in the vector store in one step, then persist
       the shard and the catalog row.

Indexing never runs on the completion path: changes go through a debounced
``asyncio.Queue`` drained by worker tasks. A failure in one file is logged
and reported; it never stops the others, and the previous version of that
file stays searchable.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
from collections import deque
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import pathspec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from codeintel.embeddings import EmbeddingService, build_enriched_text
from codeintel.errors import EmbeddingUnavailable, IndexCorruption, ParseError
from codeintel.models import EntryMetadata, FileError, IndexProgress, SourceFile
from codeintel.parser import ParserAdapter, ParseResult, read_source
from codeintel.storage import Catalog, ShardData, ShardEntry, ShardStore
from codeintel.store import VectorStore

logger = logging.getLogger(__name__)

# ── File Collection ──────────────────────────────────────────────────────

# Maximum number of files to index per project
MAX_FILES = 20000

# Directories never descended into
_SKIP_DIRS = {
    "node_modules",
    "venv",
    ".venv",
    "env",
    "__pycache__",
    ".git",
    ".svn",
    ".hg",
    "dist",
    "build",
    ".next",
    "target",
    "bin",
    "obj",
    "vendor",
    ".tox",
    "coverage",
    ".cache",
    ".pytest_cache",
    ".mypy_cache",
    ".eggs",
    "log",
    "logs",
}

# File extensions to skip (binary/generated/data)
_SKIP_EXTENSIONS = {
    ".pyc",
    ".pyo",
    ".so",
    ".dylib",
    ".dll",
    ".exe",
    ".o",
    ".a",
    ".class",
    ".jar",
    ".zip",
    ".tar",
    ".gz",
    ".7z",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".ico",
    ".svg",
    ".webp",
    ".mp3",
    ".mp4",
    ".pdf",
    ".woff",
    ".woff2",
    ".ttf",
    ".db",
    ".sqlite",
    ".sqlite3",
    ".lock",
    ".map",
    ".log",
    ".json",
    ".csv",
    ".shard",
}

# Recent per-file failures kept for status reporting
_MAX_RECENT_ERRORS = 100
# Failures that are reported without a traceback
_EXPECTED_ERRORS = (ParseError, EmbeddingUnavailable, ValueError, OSError)


def load_gitignore(folder: str) -> pathspec.PathSpec | None:
    """Load .gitignore patterns from *folder*, or None if there are none."""
    gitignore_path = Path(folder) / ".gitignore"
    if not gitignore_path.is_file():
        return None
    try:
        patterns = gitignore_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return None
    return pathspec.GitIgnoreSpec.from_lines(patterns)


def is_binary(path: str) -> bool:
    """Check if file is binary by looking for null bytes in first 8KB."""
    try:
        with open(path, "rb") as f:
            return b"\x00" in f.read(8192)
    except OSError:
        return True  # Can't read = treat as binary


def compute_md5(path: str) -> str:
    """MD5 of a file's bytes; empty string if it cannot be read."""
    hasher = hashlib.md5()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                hasher.update(chunk)
    except OSError:
        return ""
    return hasher.hexdigest()


def text_md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def should_index(file_path: str, folder: str, gitignore: pathspec.PathSpec | None) -> bool:
    """Apply the collection rules to a single path below *folder*."""
    path = Path(file_path)
    if path.name.startswith("."):
        return False
    if path.suffix.lower() in _SKIP_EXTENSIONS:
        return False
    if path.is_symlink():
        return False
    try:
        rel_path = path.relative_to(folder)
    except ValueError:
        return False
    for part in rel_path.parts[:-1]:
        if part in _SKIP_DIRS or part.startswith("."):
            return False
    if gitignore and gitignore.match_file(str(rel_path)):
        return False
    if path.is_file() and is_binary(str(path)):
        return False
    return True


def collect_files(folder: str) -> list[str]:
    """Collect all indexable files below *folder*, respecting .gitignore.

    Skips hidden entries, symlinks, binaries, build/dependency directories
    and data formats. Returns at most MAX_FILES absolute paths, sorted.
    """
    folder_path = Path(folder).resolve()
    gitignore = load_gitignore(str(folder_path))
    files: list[str] = []

    for root, dirs, filenames in os.walk(folder_path, followlinks=False):
        dirs[:] = [
            d
            for d in dirs
            if d not in _SKIP_DIRS
            and not d.startswith(".")
            and not (Path(root) / d).is_symlink()
        ]
        for filename in filenames:
            if len(files) >= MAX_FILES:
                logger.warning("File limit reached (%d) in %s", MAX_FILES, folder)
                return sorted(files)
            full_path = str(Path(root) / filename)
            if should_index(full_path, str(folder_path), gitignore):
                files.append(full_path)

    return sorted(files)


# ── Indexer ──────────────────────────────────────────────────────────────


@dataclass
class RestoreReport:
    """Outcome of loading the persisted index at start-up."""

    loaded: int = 0
    stale: list[str] = field(default_factory=list)
    rebuilt: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


class Indexer:
    """Keeps the vector store in sync with the files of one or more projects."""

    def __init__(
        self,
        parser: ParserAdapter,
        embeddings: EmbeddingService,
        store: VectorStore,
        catalog: Catalog,
        shards: ShardStore,
        workers: int = 2,
        debounce: float = 0.3,
    ) -> None:
        self.parser = parser
        self.embeddings = embeddings
        self.store = store
        self.catalog = catalog
        self.shards = shards
        self.worker_count = max(1, workers)
        self.debounce = debounce
        self.errors: deque[FileError] = deque(maxlen=_MAX_RECENT_ERRORS)

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._queued: set[str] = set()
        self._active: set[str] = set()
        self._latest: dict[str, tuple[str, str | None]] = {}  # path -> (project, text)
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._status: dict[str, bool] = {}  # last outcome per path
        self._path_locks: dict[str, asyncio.Lock] = {}
        self._versions: dict[str, int] = {}
        self._parsed: dict[str, ParseResult] = {}

    # ── Worker lifecycle ───────────────────────────────────────────────

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"codeintel-indexer-{i}")
            for i in range(self.worker_count)
        ]

    async def stop(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        for path in list(self._waiters):
            self._resolve(path, False)

    @property
    def pending(self) -> int:
        """Files waiting for or undergoing re-indexing."""
        return len(set(self._timers) | self._queued | self._active)

    def is_pending(self, path: str) -> bool:
        return path in self._timers or path in self._queued or path in self._active

    def version(self, path: str) -> int:
        return self._versions.get(path, 0)

    # ── Scheduling ─────────────────────────────────────────────────────

    def schedule(
        self,
        path: str,
        project: str,
        text: str | None = None,
        delay: float | None = None,
    ) -> None:
        """Queue *path* for re-indexing after the debounce delay.

        Calls for the same path within the delay coalesce; the newest text
        wins. ``text=None`` reads the file from disk.
        """
        self._latest[path] = (project, text)
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        delay = self.debounce if delay is None else delay
        loop = asyncio.get_running_loop()
        if delay <= 0:
            self._enqueue(path)
        else:
            self._timers[path] = loop.call_later(delay, self._enqueue, path)

    def _enqueue(self, path: str) -> None:
        self._timers.pop(path, None)
        if path in self._queued:
            return
        self._queued.add(path)
        self._queue.put_nowait(path)

    async def _worker(self) -> None:
        while True:
            path = await self._queue.get()
            self._queued.discard(path)
            job = self._latest.pop(path, None)
            if job is None:
                self._queue.task_done()
                continue
            project, text = job
            self._active.add(path)
            ok = False
            try:
                await self.index_file(path, project, text)
                ok = True
            except Exception as e:
                if not isinstance(e, _EXPECTED_ERRORS):
                    logger.exception("Unexpected error indexing %s", path)
                self._record_error(path, e)
            finally:
                self._active.discard(path)
                self._queue.task_done()
            if not self.is_pending(path) and path not in self._latest:
                self._resolve(path, ok)

    def _record_error(self, path: str, error: Exception) -> FileError:
        logger.warning("Indexing failed for %s: %s", path, error)
        failure = FileError(path=path, error=str(error))
        self.errors.append(failure)
        self._status[path] = False
        return failure

    def _resolve(self, path: str, ok: bool) -> None:
        self._status[path] = ok
        for future in self._waiters.pop(path, []):
            if not future.done():
                future.set_result(ok)

    async def wait_indexed(self, path: str, timeout: float | None = None) -> bool:
        """Wait until no re-index of *path* is pending.

        Returns True if the last attempt succeeded. After it returns True,
        searches reflect the file's latest submitted text.
        """
        if not self.is_pending(path) and path not in self._latest:
            return self._status.get(path, True)
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(path, []).append(future)
        return await asyncio.wait_for(future, timeout)

    async def drain(self) -> None:
        """Wait until every scheduled file has been processed."""
        while self._timers or self._queued or self._active or self._latest:
            paths = set(self._timers) | self._queued | self._active | set(self._latest)
            await asyncio.gather(*(self.wait_indexed(p) for p in paths))

    # ── Single file ────────────────────────────────────────────────────

    def _lock_for(self, path: str) -> asyncio.Lock:
        lock = self._path_locks.get(path)
        if lock is None:
            lock = self._path_locks[path] = asyncio.Lock()
        return lock

    def _parse(self, path: str, text: str, incremental: bool) -> ParseResult:
        prior = self._parsed.pop(path, None) if incremental else None
        return self.parser.parse(path, text, prior=prior)

    async def index_file(
        self,
        path: str,
        project: str,
        text: str | None = None,
        force: bool = False,
    ) -> int | None:
        """Index one file now.

        Returns the number of blocks stored, or None if the file was
        unchanged since it was last indexed.

        Raises:
            ParseError: If the file cannot be read or parsed.
            EmbeddingUnavailable: If any block could not be embedded; the
                previous version of the file stays in the index.
        """
        async with self._lock_for(path):
            live = text is not None
            if text is None:
                text = await asyncio.to_thread(read_source, path)
            digest = text_md5(text)

            if not force:
                existing = await self.catalog.get_file(path)
                if (
                    existing is not None
                    and existing.content_hash == digest
                    and self.store.entries_for_file(path)
                ):
                    logger.debug("Skipping unchanged %s", path)
                    return None

            parsed = await asyncio.to_thread(self._parse, path, text, live)
            for warning in parsed.warnings:
                logger.debug("Partial parse: %s", warning)

            module = parsed.module_block
            imports = module.symbols if module else ()
            texts = [build_enriched_text(b, imports) for b in parsed.blocks]
            outcomes = await self.embeddings.embed_many(texts)
            failures = [o for o in outcomes if isinstance(o, EmbeddingUnavailable)]
            if failures:
                raise EmbeddingUnavailable(
                    f"{len(failures)} of {len(texts)} block(s) in {path} "
                    f"could not be embedded: {failures[0]}"
                )

            now = time.time()
            entries: list[tuple[np.ndarray, EntryMetadata]] = []
            for block, vector in zip(parsed.blocks, outcomes):
                # Unchanged blocks keep their original modification time
                modified_at = self.store.modified_at(block.id) or now
                entries.append(
                    (vector, EntryMetadata(block=block, project=project, modified_at=modified_at))
                )

            await self.store.replace_file(path, entries)
            version = self._versions.get(path, 0) + 1
            self._versions[path] = version
            if live:
                self._parsed[path] = parsed

            await asyncio.to_thread(
                self.shards.write,
                ShardData(
                    path=path,
                    project=project,
                    content_hash=digest,
                    model_version=self.embeddings.model_version,
                    entries=[ShardEntry(metadata=m, vector=v) for v, m in entries],
                ),
            )
            await self.catalog.save_file(
                SourceFile(
                    path=path,
                    content_hash=digest,
                    language=parsed.language,
                    version=version,
                    indexed_at=now,
                ),
                project,
            )
            logger.debug("Indexed %s v%d: %d block(s)", path, version, len(entries))
            self._status[path] = True
            return len(entries)

    async def remove_file(self, path: str) -> None:
        """Drop a deleted file from the index and from disk storage."""
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        self._latest.pop(path, None)
        async with self._lock_for(path):
            await self.store.drop_file(path)
            await asyncio.to_thread(self.shards.delete, path)
            await self.catalog.delete_file(path)
            self._parsed.pop(path, None)
            self._versions.pop(path, None)
        logger.info("Removed %s from index", path)
        self._resolve(path, True)

    # ── Whole project ──────────────────────────────────────────────────

    async def index_project(self, root: str) -> AsyncGenerator[IndexProgress, None]:
        """Index every collectable file under *root*, yielding progress.

        Files no longer present are removed from the index at the end.
        """
        project = str(Path(root).resolve())
        files = await asyncio.to_thread(collect_files, project)
        total = len(files)
        errors: list[FileError] = []
        indexed = 0
        yield IndexProgress(files_indexed=0, total_files=total)

        semaphore = asyncio.Semaphore(self.worker_count)

        async def run(path: str) -> tuple[str, Exception | None]:
            async with semaphore:
                try:
                    await self.index_file(path, project)
                except Exception as e:
                    if not isinstance(e, _EXPECTED_ERRORS):
                        logger.exception("Unexpected error indexing %s", path)
                    return path, e
                return path, None

        tasks = [asyncio.create_task(run(p)) for p in files]
        try:
            for finished in asyncio.as_completed(tasks):
                path, error = await finished
                if error is None:
                    indexed += 1
                else:
                    errors.append(self._record_error(path, error))
                yield IndexProgress(
                    files_indexed=indexed,
                    total_files=total,
                    errors=list(errors),
                    current_path=path,
                )
        finally:
            for task in tasks:
                task.cancel()

        present = set(files)
        for source in await self.catalog.list_files(project):
            if source.path not in present:
                await self.remove_file(source.path)

    # ── Restart ────────────────────────────────────────────────────────

    async def restore(self) -> RestoreReport:
        """Load persisted shards and reconcile them with the files on disk.

        Valid shards are served immediately. Files changed since they were
        indexed (or embedded with another model version) are queued for
        re-indexing. Corrupted or missing shards are rebuilt from source
        before this returns; files that no longer exist are dropped.
        """
        report = RestoreReport()
        projects = await self.catalog.file_projects()
        sources = await self.catalog.list_files()
        known = {s.path for s in sources}
        rebuild: list[tuple[str, str]] = []

        for source in sources:
            project = projects.get(source.path, "")
            self._versions[source.path] = source.version
            shard_file = self.shards.shard_path(source.path)
            if not shard_file.is_file():
                logger.warning("Missing index shard for %s", source.path)
                rebuild.append((source.path, project))
                continue
            try:
                shard = await asyncio.to_thread(self.shards.read, shard_file)
                if shard.path != source.path:
                    raise IndexCorruption(str(shard_file), "shard belongs to another file")
            except IndexCorruption as e:
                logger.warning("%s; rebuilding from source", e)
                rebuild.append((source.path, project))
                continue

            if shard.model_version != self.embeddings.model_version:
                # Vectors from another model are not comparable; re-embed lazily
                report.stale.append(source.path)
                self.schedule(source.path, project, delay=0)
                continue
            try:
                await self.store.replace_file(
                    source.path, [(e.vector, e.metadata) for e in shard.entries]
                )
            except ValueError as e:
                logger.warning("Unusable shard for %s: %s", source.path, e)
                rebuild.append((source.path, project))
                continue
            report.loaded += 1

            current = await asyncio.to_thread(compute_md5, source.path)
            if not current:
                report.removed.append(source.path)
                await self.remove_file(source.path)
            elif current != source.content_hash:
                report.stale.append(source.path)
                self.schedule(source.path, project, delay=0)

        for path, project in rebuild:
            if not os.path.isfile(path):
                report.removed.append(path)
                await self.remove_file(path)
                continue
            try:
                await self.index_file(path, project, force=True)
            except Exception as e:
                if not isinstance(e, _EXPECTED_ERRORS):
                    logger.exception("Unexpected error indexing %s", path)
                self._record_error(path, e)
                continue
            report.rebuilt.append(path)

        # Shards with no catalog row are leftovers of an interrupted delete
        expected = {self.shards.shard_path(p) for p in known}
        for shard_file in self.shards.list_shards():
            if shard_file not in expected:
                logger.debug("Deleting orphan shard %s", shard_file.name)
                shard_file.unlink(missing_ok=True)

        logger.info(
            "Index restored: %d file(s) loaded, %d stale, %d rebuilt, %d removed",
            report.loaded,
            len(report.stale),
            len(report.rebuilt),
            len(report.removed),
        )
        return report

    # ── Watching ───────────────────────────────────────────────────────

    def watch(
        self,
        root: str,
        on_event: Callable[[str, str], None] | None = None,
    ) -> Any:
        """Start a watchdog observer that feeds changes under *root* into the queue.

        Returns the observer (call ``.stop()`` and ``.join()`` to stop watching).

        Raises:
            ValueError: If *root* is not a directory.
        """
        folder_path = Path(root).resolve()
        if not folder_path.is_dir():
            raise ValueError(f"Not a directory: {root}")
        project = str(folder_path)
        gitignore = load_gitignore(project)
        loop = asyncio.get_running_loop()
        indexer = self

        def changed(path: str) -> None:
            indexer.schedule(path, project)

        def deleted(path: str) -> None:
            loop.create_task(indexer.remove_file(path))

        class ChangeHandler(FileSystemEventHandler):
            def _handle(self, event: Any, event_type: str) -> None:
                if event.is_directory:
                    return
                src_path = os.fsdecode(event.src_path)
                dest_path = getattr(event, "dest_path", None)
                dest_path = os.fsdecode(dest_path) if dest_path else None

                if event_type in ("deleted", "moved"):
                    if src_path in indexer.store.file_paths():
                        loop.call_soon_threadsafe(deleted, src_path)
                    if event_type == "moved" and dest_path:
                        if should_index(dest_path, project, gitignore):
                            loop.call_soon_threadsafe(changed, dest_path)
                            if on_event is not None:
                                on_event("created", dest_path)
                        return
                elif should_index(src_path, project, gitignore):
                    loop.call_soon_threadsafe(changed, src_path)
                else:
                    return
                if on_event is not None:
                    on_event(event_type, src_path)

            def on_created(self, event: Any) -> None:
                self._handle(event, "created")

            def on_modified(self, event: Any) -> None:
                self._handle(event, "modified")

            def on_deleted(self, event: Any) -> None:
                self._handle(event, "deleted")

            def on_moved(self, event: Any) -> None:
                self._handle(event, "moved")

        observer = Observer()
        observer.daemon = True
        observer.schedule(ChangeHandler(), project, recursive=True)
        observer.start()
        logger.info("Watching %s for changes", project)
        return observer
