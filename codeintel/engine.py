"""Engine façade: the single entry point used by editors and the CLI.

An engine instance owns its parser, vector store, embedding cache, catalog
and orchestrator. Nothing is global, so several engines (with different
index directories) can coexist in one process::

    async with CodeIntelEngine(load_settings()) as engine:
        async for progress in engine.index_project("."):
            ...
        result = await engine.request_completion(
            "src/app.js", Position(10, 4), CompletionLevel.LINE
        )
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import numpy as np

from codeintel.config import EngineSettings, load_settings
from codeintel.context import ContextAssembler, Document
from codeintel.embeddings import (
    Embedder,
    EmbeddingService,
    SentenceTransformerEmbedder,
)
from codeintel.errors import EmbeddingUnavailable, ParseError
from codeintel.history import SessionHistory, UserPattern, load_patterns
from codeintel.indexer import Indexer, RestoreReport
from codeintel.models import (
    CompletionLevel,
    CompletionRequest,
    CompletionResult,
    CompletionState,
    FailureReason,
    IndexProgress,
    Position,
    SearchFilter,
    SearchResult,
    Selection,
)
from codeintel.oracle import CompletionOracle, build_oracle
from codeintel.orchestrator import CompletionOrchestrator, ProgressCallback
from codeintel.parser import ParserAdapter, read_source
from codeintel.storage import Catalog, ShardStore
from codeintel.store import VectorStore

logger = logging.getLogger(__name__)


def _resolve(path: str | os.PathLike) -> str:
    return str(Path(path).resolve())


class CodeIntelEngine:
    """Incremental semantic index plus multi-level completion."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        embedder: Embedder | None = None,
        oracle: CompletionOracle | None = None,
        parser: ParserAdapter | None = None,
        patterns: list[UserPattern] | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        index_dir = Path(self.settings.index_dir)
        self.parser = parser or ParserAdapter()
        self.catalog = Catalog(index_dir / "catalog.db")
        self.shards = ShardStore(index_dir / "shards")
        self.embeddings = EmbeddingService(
            embedder or SentenceTransformerEmbedder(self.settings.embedding_model),
            self.catalog,
            timeout=self.settings.embed_timeout,
        )
        self.store = VectorStore(
            ann_threshold=self.settings.ann_threshold,
            hnsw_m=self.settings.hnsw_m,
            ef_search=self.settings.hnsw_ef_search,
        )
        self.indexer = Indexer(
            self.parser,
            self.embeddings,
            self.store,
            self.catalog,
            self.shards,
            workers=self.settings.index_workers,
            debounce=self.settings.debounce_seconds,
        )
        self.history = SessionHistory(self.settings.history_size)
        self.assembler = ContextAssembler(
            self.store,
            self.embeddings,
            history=self.history,
            patterns=load_patterns() if patterns is None else patterns,
            top_k=self.settings.top_k,
            window_lines=self.settings.context_window_lines,
        )
        self.oracle = oracle or build_oracle(self.settings)
        self.orchestrator = CompletionOrchestrator(
            self.assembler,
            self.oracle,
            self.parser,
            self.settings,
            load_document=self._document_for,
        )
        self.projects: set[str] = set()
        self._texts: dict[str, str] = {}  # live editor text per file
        self._documents: dict[str, Document] = {}
        self._document_locks: dict[str, asyncio.Lock] = {}
        self._observers: list[Any] = []
        self._started = False

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def start(self) -> RestoreReport:
        """Open storage, start the index workers and load the persisted index.

        Changed files are re-queued while the stale index keeps serving;
        corrupted shards are rebuilt before this returns.
        """
        if self._started:
            return RestoreReport()
        await self.catalog.open()
        self.indexer.start()
        self._started = True
        report = await self.indexer.restore()
        self.projects.update(p for p in (await self.catalog.file_projects()).values() if p)
        return report

    async def close(self) -> None:
        for observer in self._observers:
            observer.stop()
        for observer in self._observers:
            await asyncio.to_thread(observer.join, 5.0)
        self._observers.clear()
        await self.orchestrator.cancel_all()
        await self.indexer.stop()
        await self.catalog.close()
        self._started = False

    async def __aenter__(self) -> CodeIntelEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _ensure_started(self) -> None:
        if not self._started:
            await self.start()

    def project_for(self, path: str) -> str:
        """Registered project root containing *path* (deepest wins)."""
        matches = [p for p in self.projects if path == p or path.startswith(p + os.sep)]
        if matches:
            return max(matches, key=len)
        return str(Path(path).parent)

    # ── Indexing ───────────────────────────────────────────────────────

    async def index_project(self, root: str) -> AsyncGenerator[IndexProgress, None]:
        """Index a project, yielding :class:`IndexProgress` per file."""
        await self._ensure_started()
        self.projects.add(_resolve(root))
        async for progress in self.indexer.index_project(root):
            yield progress

    def on_file_changed(self, path: str, new_content: str) -> None:
        """Record an editor change; re-indexing happens in the background.

        Must be called from the engine's event loop. Returns immediately.
        """
        path = _resolve(path)
        old = self._texts.get(path)
        if old is None and path in self._documents:
            old = self._documents[path].text
        if old is not None and old != new_content:
            self.history.record_edit(path, old, new_content)
        self._texts[path] = new_content
        self.indexer.schedule(path, self.project_for(path), new_content)

    async def on_file_deleted(self, path: str) -> None:
        path = _resolve(path)
        self._texts.pop(path, None)
        self._documents.pop(path, None)
        self.history.forget(path)
        await self._ensure_started()
        await self.indexer.remove_file(path)

    async def wait_indexed(self, path: str, timeout: float | None = None) -> bool:
        """Resolve once the latest change to *path* is searchable."""
        return await self.indexer.wait_indexed(_resolve(path), timeout)

    async def watch(self, root: str) -> Any:
        """Follow file-system changes under *root* until :meth:`close`."""
        await self._ensure_started()
        project = _resolve(root)
        self.projects.add(project)
        observer = self.indexer.watch(project)
        self._observers.append(observer)
        return observer

    # ── Documents ──────────────────────────────────────────────────────

    async def _document_for(self, path: str) -> Document:
        """Parsed live text of *path*, falling back to disk (or empty if new)."""
        lock = self._document_locks.setdefault(path, asyncio.Lock())
        async with lock:
            text = self._texts.get(path)
            if text is None:
                if os.path.isfile(path):
                    text = await asyncio.to_thread(read_source, path)
                else:
                    text = ""
            current = self._documents.get(path)
            if current is not None and current.text == text:
                return current
            prior = current.parsed if current is not None else None
            parsed = await asyncio.to_thread(self.parser.parse, path, text, prior)
            document = Document(path=path, text=text, parsed=parsed)
            self._documents[path] = document
            return document

    # ── Completion ─────────────────────────────────────────────────────

    async def request_completion(
        self,
        file: str,
        position: Position | tuple[int, int],
        level: CompletionLevel | str,
        selection: Selection | None = None,
        progress: ProgressCallback | None = None,
    ) -> CompletionResult:
        """Complete at *position* in *file*.

        A newer request for the same file and level cancels this one, in
        which case the result state is CANCELLED.
        """
        await self._ensure_started()
        path = _resolve(file)
        if not isinstance(position, Position):
            position = Position(*position)
        request = CompletionRequest(
            file=path,
            position=position,
            level=CompletionLevel(level),
            selection=selection,
        )
        if path not in self._texts and not os.path.isfile(path):
            return CompletionResult(
                request_id=request.request_id,
                state=CompletionState.FAILED,
                reason=FailureReason.UNKNOWN_FILE,
                message=f"Unknown file: {file}",
            )
        try:
            document = await self._document_for(path)
        except ParseError as e:
            return CompletionResult(
                request_id=request.request_id,
                state=CompletionState.FAILED,
                reason=FailureReason.UNKNOWN_FILE,
                message=str(e),
            )
        return await self.orchestrator.complete(
            request, document, self.project_for(path), progress
        )

    # ── Search ─────────────────────────────────────────────────────────

    async def _query_vector(self, query: str | np.ndarray) -> np.ndarray:
        if not isinstance(query, str):
            return np.asarray(query, dtype=np.float32)
        try:
            return await asyncio.wait_for(
                self.embeddings.embed_one(query), self.settings.search_deadline
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingUnavailable(
                f"Query not embedded within {self.settings.search_deadline}s"
            ) from e

    async def search(
        self,
        query: str | np.ndarray,
        filters: SearchFilter | None = None,
        k: int | None = None,
    ) -> list[SearchResult]:
        """Blocks most similar to a text or vector query, best first.

        Raises:
            EmbeddingUnavailable: If a text query cannot be embedded in time.
            ValueError: If a vector query has the wrong dimension.
        """
        await self._ensure_started()
        vector = await self._query_vector(query)
        hits = self.store.query(vector, k or self.settings.top_k, filters)
        results = []
        for block_id, similarity in hits:
            entry = self.store.get(block_id)
            if entry is not None:
                results.append(SearchResult(block=entry[1].block, similarity=similarity))
        return results

    async def suggest_related_files(
        self, current_file: str, limit: int = 5
    ) -> list[tuple[str, float]]:
        """Other files of the project ranked by similarity to *current_file*.

        Each file is scored by its best block against the centroid of the
        current file's vectors.
        """
        await self._ensure_started()
        path = _resolve(current_file)
        entries = self.store.entries_for_file(path)
        if not entries:
            return []
        centroid = np.mean(np.vstack([v for v, _ in entries]), axis=0)
        own_ids = frozenset(m.block.id for _, m in entries)
        hits = self.store.query(
            centroid,
            max(limit, 1) * 8,
            SearchFilter(project=self.project_for(path), exclude_ids=own_ids),
        )
        scores: dict[str, float] = {}
        for block_id, similarity in hits:
            entry = self.store.get(block_id)
            if entry is None or entry[1].path == path:
                continue
            file_path = entry[1].path
            scores[file_path] = max(scores.get(file_path, -1.0), similarity)
        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return ranked[:limit]

    # ── Status ─────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        stats = self.store.stats()
        return {
            "started": self._started,
            "projects": sorted(self.projects),
            "embedding_model": self.embeddings.model_version,
            "oracle": self.settings.oracle,
            "llm_model": self.settings.model_name or "(backend default)",
            "files_indexed": stats["files"],
            "blocks_indexed": stats["blocks"],
            "dimension": stats["dimension"],
            "search_mode": stats["mode"],
            "pending_reindex": self.indexer.pending,
            "pending_completions": self.orchestrator.pending,
            "recent_errors": [f"{e.path}: {e.error}" for e in self.indexer.errors],
        }
