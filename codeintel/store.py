"""Sharded in-memory vector store with exact and graph-based ANN search.

Each source file is one shard. A shard's contents are an immutable snapshot
(ids, normalized vector matrix, metadata) replaced by a single assignment
under the shard's writer lock, so readers see either the old or the new
version of a file and never a mix. Writers to different files never
contend and readers never lock.

Below ``ann_threshold`` live vectors queries scan every matching shard
exactly. Above it a FAISS HNSW graph answers queries; removals are
tombstoned and every graph hit is re-validated and rescored against the
current shard snapshots, so removed ids are never returned and a hit always
carries the similarity of its live vector. Queries run on the event loop
that owns the store; only graph builds go to a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

import faiss
import numpy as np

from codeintel.models import EntryMetadata, SearchFilter, SemanticBlock

logger = logging.getLogger(__name__)

# Rebuild the graph once this fraction of its labels are tombstones
_TOMBSTONE_REBUILD_RATIO = 0.25
# Graph oversampling factor for filtered queries
_OVERSAMPLE = 4


def _normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector.copy()
    return vector / norm


@dataclass(frozen=True)
class _Snapshot:
    """Immutable contents of one shard."""

    ids: tuple[str, ...] = ()
    matrix: np.ndarray = field(
        default_factory=lambda: np.zeros((0, 0), dtype=np.float32)
    )
    metadata: tuple[EntryMetadata, ...] = ()

    def index_of(self, block_id: str) -> int | None:
        try:
            return self.ids.index(block_id)
        except ValueError:
            return None

    @classmethod
    def build(
        cls, items: Iterable[tuple[str, np.ndarray, EntryMetadata]], dim: int
    ) -> _Snapshot:
        rows = list(items)
        if not rows:
            return cls(matrix=np.zeros((0, dim), dtype=np.float32))
        return cls(
            ids=tuple(r[0] for r in rows),
            matrix=np.vstack([r[1] for r in rows]).astype(np.float32),
            metadata=tuple(r[2] for r in rows),
        )


class _Shard:
    def __init__(self, path: str):
        self.path = path
        self.lock = asyncio.Lock()
        self.snapshot = _Snapshot()


class VectorStore:
    """Nearest-neighbour index over semantic blocks, sharded per file."""

    def __init__(
        self,
        ann_threshold: int = 20000,
        hnsw_m: int = 32,
        ef_search: int = 64,
    ) -> None:
        self.ann_threshold = ann_threshold
        self.hnsw_m = hnsw_m
        self.ef_search = ef_search
        self.dimension: int | None = None
        self._shards: dict[str, _Shard] = {}
        self._locations: dict[str, str] = {}  # block id -> shard path
        # Graph index state
        self._ann: faiss.Index | None = None
        self._ann_building = False
        self._label_to_id: dict[int, str] = {}
        self._id_to_label: dict[str, int] = {}
        self._next_label = 0
        self._tombstones = 0
        # Ids written while a graph build runs in a worker thread
        self._dirty: set[str] = set()

    # ── Introspection ───────────────────────────────────────────────────

    def __len__(self) -> int:
        return sum(len(s.snapshot.ids) for s in self._shards.values())

    def __contains__(self, block_id: str) -> bool:
        return self.get(block_id) is not None

    @property
    def mode(self) -> str:
        return "hnsw" if self._ann is not None else "exact"

    def file_paths(self) -> list[str]:
        return sorted(p for p, s in self._shards.items() if s.snapshot.ids)

    def get(self, block_id: str) -> tuple[np.ndarray, EntryMetadata] | None:
        path = self._locations.get(block_id)
        if path is None:
            return None
        snapshot = self._shards[path].snapshot
        i = snapshot.index_of(block_id)
        if i is None:
            return None
        return snapshot.matrix[i], snapshot.metadata[i]

    def entries_for_file(self, path: str) -> list[tuple[np.ndarray, EntryMetadata]]:
        shard = self._shards.get(path)
        if shard is None:
            return []
        snapshot = shard.snapshot
        return [(snapshot.matrix[i], m) for i, m in enumerate(snapshot.metadata)]

    def blocks_for_file(self, path: str) -> list[SemanticBlock]:
        return [m.block for _, m in self.entries_for_file(path)]

    def modified_at(self, block_id: str) -> float:
        entry = self.get(block_id)
        return entry[1].modified_at if entry else 0.0

    def find_by_name(
        self, names: Iterable[str], project: str | None = None
    ) -> list[SemanticBlock]:
        """Blocks whose symbol name is in *names*, ordered by path then line."""
        wanted = set(names)
        if not wanted:
            return []
        found: list[SemanticBlock] = []
        for shard in list(self._shards.values()):
            for meta in shard.snapshot.metadata:
                if project is not None and meta.project != project:
                    continue
                if meta.block.name in wanted:
                    found.append(meta.block)
        found.sort(key=lambda b: (b.path, b.line_start, b.id))
        return found

    def stats(self) -> dict[str, int | str | None]:
        return {
            "files": len(self.file_paths()),
            "blocks": len(self),
            "dimension": self.dimension,
            "mode": self.mode,
            "tombstones": self._tombstones,
        }

    # ── Writes ──────────────────────────────────────────────────────────

    def _shard(self, path: str) -> _Shard:
        shard = self._shards.get(path)
        if shard is None:
            shard = self._shards[path] = _Shard(path)
        return shard

    def _check_dimension(self, vector: np.ndarray) -> None:
        dim = int(np.asarray(vector).reshape(-1).shape[0])
        if self.dimension is None or len(self) == 0:
            if self.dimension != dim:
                self._drop_ann()
            self.dimension = dim
        elif dim != self.dimension:
            raise ValueError(
                f"Vector dimension {dim} does not match index dimension "
                f"{self.dimension}"
            )

    async def upsert(
        self, block_id: str, vector: np.ndarray, metadata: EntryMetadata
    ) -> None:
        """Insert or atomically replace one entry."""
        self._check_dimension(vector)
        shard = self._shard(metadata.path)
        async with shard.lock:
            old = shard.snapshot
            items = [
                (bid, old.matrix[i], old.metadata[i])
                for i, bid in enumerate(old.ids)
                if bid != block_id
            ]
            normalized = _normalize(vector)
            items.append((block_id, normalized, metadata))
            shard.snapshot = _Snapshot.build(items, self.dimension or 0)
            self._locations[block_id] = shard.path
            self._ann_replace([block_id], [], {block_id: normalized})
        await self._maybe_build_ann()

    async def remove(self, block_id: str) -> bool:
        """Remove an entry. Returns False if it was not present."""
        path = self._locations.get(block_id)
        if path is None:
            return False
        shard = self._shards[path]
        async with shard.lock:
            old = shard.snapshot
            if old.index_of(block_id) is None:
                return False
            shard.snapshot = _Snapshot.build(
                (
                    (bid, old.matrix[i], old.metadata[i])
                    for i, bid in enumerate(old.ids)
                    if bid != block_id
                ),
                self.dimension or 0,
            )
            self._locations.pop(block_id, None)
            self._ann_replace([], [block_id], {})
        await self._maybe_build_ann()
        return True

    async def replace_file(
        self, path: str, entries: list[tuple[np.ndarray, EntryMetadata]]
    ) -> None:
        """Atomically swap all entries of one file.

        Stale ids disappear in the same assignment that makes the new ones
        visible.
        """
        for vector, _ in entries:
            self._check_dimension(vector)
        shard = self._shard(path)
        async with shard.lock:
            old = shard.snapshot
            old_ids = set(old.ids)
            rows: dict[str, tuple[str, np.ndarray, EntryMetadata]] = {}
            for vector, meta in entries:
                if meta.path != path:
                    raise ValueError(f"Entry for {meta.path} in shard {path}")
                rows[meta.block.id] = (meta.block.id, _normalize(vector), meta)
            shard.snapshot = _Snapshot.build(rows.values(), self.dimension or 0)
            removed = old_ids - rows.keys()
            for block_id in removed:
                self._locations.pop(block_id, None)
            for block_id in rows:
                self._locations[block_id] = path
            # New ids, plus kept ids whose vector changed
            added = [
                bid
                for bid in rows
                if bid not in old_ids
                or not np.array_equal(old.matrix[old.index_of(bid)], rows[bid][1])
            ]
            self._ann_replace(added, list(removed), {b: rows[b][1] for b in added})
        await self._maybe_build_ann()

    async def drop_file(self, path: str) -> None:
        await self.replace_file(path, [])
        shard = self._shards.get(path)
        if shard is not None and not shard.snapshot.ids:
            self._shards.pop(path, None)

    # ── Graph index ─────────────────────────────────────────────────────

    def _drop_ann(self) -> None:
        self._ann = None
        self._label_to_id.clear()
        self._id_to_label.clear()
        self._tombstones = 0

    def _ann_replace(
        self, added: list[str], removed: list[str], vectors: dict[str, np.ndarray]
    ) -> None:
        if self._ann_building:
            self._dirty.update(added)
        if self._ann is None:
            return
        for block_id in removed:
            label = self._id_to_label.pop(block_id, None)
            if label is not None:
                self._label_to_id.pop(label, None)
                self._tombstones += 1
        # Upserts of an existing id tombstone the previous label
        for block_id in added:
            label = self._id_to_label.pop(block_id, None)
            if label is not None:
                self._label_to_id.pop(label, None)
                self._tombstones += 1
        if added:
            labels = np.arange(
                self._next_label, self._next_label + len(added), dtype=np.int64
            )
            self._next_label += len(added)
            matrix = np.vstack([vectors[b] for b in added]).astype(np.float32)
            self._ann.add_with_ids(matrix, labels)
            for label, block_id in zip(labels.tolist(), added):
                self._label_to_id[label] = block_id
                self._id_to_label[block_id] = label

    def _build_ann_sync(
        self, ids: list[str], matrix: np.ndarray
    ) -> tuple[faiss.Index, dict[int, str]]:
        dim = matrix.shape[1]
        graph = faiss.IndexHNSWFlat(dim, self.hnsw_m, faiss.METRIC_INNER_PRODUCT)
        graph.hnsw.efSearch = self.ef_search
        index = faiss.IndexIDMap(graph)
        labels = np.arange(len(ids), dtype=np.int64)
        index.add_with_ids(matrix, labels)
        return index, dict(zip(labels.tolist(), ids))

    async def _maybe_build_ann(self) -> None:
        live = len(self)
        if live < self.ann_threshold:
            if self._ann is not None:
                logger.info("Index shrank below ANN threshold, using exact search")
                self._drop_ann()
            return
        stale = self._ann is not None and self._tombstones > _TOMBSTONE_REBUILD_RATIO * (
            len(self._label_to_id) + self._tombstones
        )
        if (self._ann is not None and not stale) or self._ann_building:
            return

        self._ann_building = True
        self._dirty = set()
        try:
            ids: list[str] = []
            blocks: list[np.ndarray] = []
            for shard in list(self._shards.values()):
                snapshot = shard.snapshot
                if snapshot.ids:
                    ids.extend(snapshot.ids)
                    blocks.append(snapshot.matrix)
            matrix = np.vstack(blocks).astype(np.float32)
            logger.info("Building HNSW index over %d vectors", len(ids))
            index, label_to_id = await asyncio.to_thread(
                self._build_ann_sync, ids, matrix
            )
            self._ann = index
            self._label_to_id = label_to_id
            self._id_to_label = {b: label for label, b in label_to_id.items()}
            self._next_label = len(ids)
            self._tombstones = 0
            # Entries written during the build are caught up here
            dirty, self._dirty = self._dirty, set()
            missing = [
                b for b in self._locations if b not in self._id_to_label or b in dirty
            ]
            gone = [b for b in self._id_to_label if b not in self._locations]
            if missing or gone:
                vectors = {}
                for block_id in missing:
                    entry = self.get(block_id)
                    if entry is not None:
                        vectors[block_id] = entry[0]
                self._ann_replace(list(vectors), gone, vectors)
        finally:
            self._ann_building = False
            self._dirty = set()

    # ── Queries ─────────────────────────────────────────────────────────

    def query(
        self,
        vector: np.ndarray,
        k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[tuple[str, float]]:
        """Return up to *k* ``(block_id, cosine similarity)`` pairs.

        Ordered by descending similarity; ties go to the most recently
        modified block, then the lexicographically smallest id.
        """
        if k <= 0 or self.dimension is None or len(self) == 0:
            return []
        q = _normalize(vector)
        if q.shape[0] != self.dimension:
            raise ValueError(
                f"Query dimension {q.shape[0]} does not match index "
                f"dimension {self.dimension}"
            )
        search_filter = search_filter or SearchFilter()
        # One consistent view of every shard for the whole query
        snapshots = {path: s.snapshot for path, s in list(self._shards.items())}

        hits: list[tuple[float, EntryMetadata]] | None = None
        if self._ann is not None:
            hits = self._query_ann(q, k, search_filter, snapshots)
        if hits is None:
            hits = self._query_exact(q, search_filter, snapshots)

        hits.sort(
            key=lambda h: (-round(h[0], 6), -h[1].modified_at, h[1].block.id)
        )
        return [(meta.block.id, float(sim)) for sim, meta in hits[:k]]

    def _query_exact(
        self,
        q: np.ndarray,
        search_filter: SearchFilter,
        snapshots: dict[str, _Snapshot],
    ) -> list[tuple[float, EntryMetadata]]:
        hits: list[tuple[float, EntryMetadata]] = []
        for path, snapshot in snapshots.items():
            if not snapshot.ids:
                continue
            if search_filter.path_prefix and not path.startswith(
                search_filter.path_prefix
            ):
                continue
            scores = snapshot.matrix @ q
            for i, meta in enumerate(snapshot.metadata):
                if search_filter.matches(meta):
                    hits.append((float(scores[i]), meta))
        return hits

    def _query_ann(
        self,
        q: np.ndarray,
        k: int,
        search_filter: SearchFilter,
        snapshots: dict[str, _Snapshot],
    ) -> list[tuple[float, EntryMetadata]] | None:
        """Graph search; None means fall back to an exact scan."""
        assert self._ann is not None
        total = len(self._label_to_id) + self._tombstones
        fetch = min(total, k * _OVERSAMPLE + self._tombstones)
        if fetch <= 0:
            return []
        _, labels = self._ann.search(q.reshape(1, -1), fetch)
        hits: list[tuple[float, EntryMetadata]] = []
        for label in labels[0].tolist():
            if label < 0:
                continue
            block_id = self._label_to_id.get(label)
            if block_id is None:
                continue
            path = self._locations.get(block_id)
            snapshot = snapshots.get(path) if path else None
            i = snapshot.index_of(block_id) if snapshot else None
            if snapshot is None or i is None:
                continue
            meta = snapshot.metadata[i]
            if search_filter.matches(meta):
                # Score against the live vector, not the graph copy
                hits.append((float(snapshot.matrix[i] @ q), meta))
        if len(hits) < k and fetch < total:
            # Restrictive filter: the oversampled graph hits ran out
            return None
        return hits
