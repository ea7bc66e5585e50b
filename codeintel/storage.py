"""Durable storage: SQLite catalog plus checksummed per-file index shards.

Catalog schema:
    - files: one row per indexed source file (content hash, language,
      version, project) used for change detection across restarts
    - embeddings: vector cache keyed by (content hash, model version)

Shard files live under ``<index dir>/shards`` (one per source file) and
hold the file's blocks and vectors. Each starts with a magic header carrying
a SHA-256 checksum of the payload; a mismatch on load raises
:class:`IndexCorruption` so the shard can be rebuilt from source.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import aiosqlite
import numpy as np

from codeintel.errors import IndexCorruption
from codeintel.models import EntryMetadata, SemanticBlock, SourceFile

logger = logging.getLogger(__name__)

SHARD_MAGIC = b"CODEINTEL-SHARD/1"
SHARD_SUFFIX = ".shard"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    file_path TEXT PRIMARY KEY,
    file_md5 TEXT NOT NULL,
    language TEXT,
    project TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    indexed_at REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS embeddings (
    content_hash TEXT NOT NULL,
    model_version TEXT NOT NULL,
    vector BLOB NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (content_hash, model_version)
);

CREATE INDEX IF NOT EXISTS idx_files_project ON files(project);
CREATE INDEX IF NOT EXISTS idx_files_md5 ON files(file_md5);
"""


# ── Catalog ──────────────────────────────────────────────────────────────


class Catalog:
    """Async SQLite catalog of indexed files and cached embeddings."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self.db_path))
        await conn.executescript(_SCHEMA)
        await conn.commit()
        self._conn = conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Catalog is not open")
        return self._conn

    # -- files --

    async def get_file(self, file_path: str) -> SourceFile | None:
        async with self.conn.execute(
            "SELECT file_path, file_md5, language, version, indexed_at "
            "FROM files WHERE file_path = ?",
            (file_path,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return SourceFile(
            path=row[0],
            content_hash=row[1],
            language=row[2],
            version=row[3],
            indexed_at=row[4],
        )

    async def list_files(self, project: str | None = None) -> list[SourceFile]:
        query = "SELECT file_path, file_md5, language, version, indexed_at FROM files"
        params: tuple = ()
        if project is not None:
            query += " WHERE project = ?"
            params = (project,)
        async with self.conn.execute(query + " ORDER BY file_path", params) as cursor:
            rows = [row async for row in cursor]
        return [
            SourceFile(
                path=r[0],
                content_hash=r[1],
                language=r[2],
                version=r[3],
                indexed_at=r[4],
            )
            for r in rows
        ]

    async def file_projects(self) -> dict[str, str]:
        """Map of file path to the project it was indexed under."""
        async with self.conn.execute("SELECT file_path, project FROM files") as cursor:
            return {row[0]: row[1] async for row in cursor}

    async def save_file(self, source: SourceFile, project: str) -> None:
        await self.conn.execute(
            "INSERT OR REPLACE INTO files "
            "(file_path, file_md5, language, project, version, indexed_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                source.path,
                source.content_hash,
                source.language,
                project,
                source.version,
                source.indexed_at,
            ),
        )
        await self.conn.commit()

    async def delete_file(self, file_path: str) -> None:
        await self.conn.execute("DELETE FROM files WHERE file_path = ?", (file_path,))
        await self.conn.commit()

    # -- embeddings --

    async def get_embeddings(
        self, hashes: list[str], model_version: str
    ) -> dict[str, np.ndarray]:
        """Fetch cached vectors for *hashes* under *model_version*."""
        found: dict[str, np.ndarray] = {}
        unique = list(dict.fromkeys(hashes))
        # SQLite caps bound parameters; query in slices
        for i in range(0, len(unique), 500):
            batch = unique[i : i + 500]
            placeholders = ",".join("?" for _ in batch)
            async with self.conn.execute(
                f"SELECT content_hash, vector FROM embeddings "
                f"WHERE model_version = ? AND content_hash IN ({placeholders})",
                (model_version, *batch),
            ) as cursor:
                async for row in cursor:
                    found[row[0]] = np.frombuffer(row[1], dtype=np.float32).copy()
        return found

    async def put_embeddings(
        self, vectors: dict[str, np.ndarray], model_version: str
    ) -> None:
        if not vectors:
            return
        await self.conn.executemany(
            "INSERT OR REPLACE INTO embeddings (content_hash, model_version, vector) "
            "VALUES (?, ?, ?)",
            [
                (h, model_version, np.asarray(v, dtype=np.float32).tobytes())
                for h, v in vectors.items()
            ],
        )
        await self.conn.commit()

    async def prune_embeddings(self, keep_model_version: str) -> int:
        """Delete cached vectors of other model versions. Returns count removed."""
        cursor = await self.conn.execute(
            "DELETE FROM embeddings WHERE model_version != ?", (keep_model_version,)
        )
        await self.conn.commit()
        return cursor.rowcount


# ── Shard files ──────────────────────────────────────────────────────────


@dataclass
class ShardEntry:
    metadata: EntryMetadata
    vector: np.ndarray


@dataclass
class ShardData:
    """Contents of one persisted shard."""

    path: str
    project: str
    content_hash: str
    model_version: str
    entries: list[ShardEntry] = field(default_factory=list)


def _encode_vector(vector: np.ndarray) -> str:
    return base64.b64encode(np.asarray(vector, dtype=np.float32).tobytes()).decode(
        "ascii"
    )


def _decode_vector(data: str) -> np.ndarray:
    return np.frombuffer(base64.b64decode(data), dtype=np.float32).copy()


class ShardStore:
    """Reads and writes one shard file per indexed source file."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def shard_path(self, file_path: str) -> Path:
        digest = hashlib.sha1(file_path.encode("utf-8")).hexdigest()
        return self.root / f"{digest}{SHARD_SUFFIX}"

    def list_shards(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(self.root.glob(f"*{SHARD_SUFFIX}"))

    def write(self, shard: ShardData) -> Path:
        """Write a shard atomically (temp file + rename)."""
        payload = json.dumps(
            {
                "path": shard.path,
                "project": shard.project,
                "content_hash": shard.content_hash,
                "model_version": shard.model_version,
                "entries": [
                    {
                        "block": e.metadata.block.to_dict(),
                        "modified_at": e.metadata.modified_at,
                        "vector": _encode_vector(e.vector),
                    }
                    for e in shard.entries
                ],
            },
            sort_keys=True,
        ).encode("utf-8")
        checksum = hashlib.sha256(payload).hexdigest().encode("ascii")
        target = self.shard_path(shard.path)
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(SHARD_MAGIC + b" " + checksum + b"\n" + payload)
            os.replace(tmp_path, target)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return target

    def read(self, shard_file: Path) -> ShardData:
        """Load and verify a shard.

        Raises:
            IndexCorruption: On a bad header, checksum mismatch or bad payload.
        """
        try:
            raw = Path(shard_file).read_bytes()
        except OSError as e:
            raise IndexCorruption(str(shard_file), f"unreadable: {e}") from e

        header, sep, payload = raw.partition(b"\n")
        parts = header.split(b" ")
        if not sep or len(parts) != 2 or parts[0] != SHARD_MAGIC:
            raise IndexCorruption(str(shard_file), "bad header")
        if hashlib.sha256(payload).hexdigest().encode("ascii") != parts[1]:
            raise IndexCorruption(str(shard_file), "checksum mismatch")

        try:
            data = json.loads(payload.decode("utf-8"))
            project = data["project"]
            entries = [
                ShardEntry(
                    metadata=EntryMetadata(
                        block=SemanticBlock.from_dict(item["block"]),
                        project=project,
                        modified_at=float(item.get("modified_at", 0.0)),
                    ),
                    vector=_decode_vector(item["vector"]),
                )
                for item in data["entries"]
            ]
            return ShardData(
                path=data["path"],
                project=project,
                content_hash=data["content_hash"],
                model_version=data["model_version"],
                entries=entries,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise IndexCorruption(str(shard_file), f"bad payload: {e}") from e

    def delete(self, file_path: str) -> None:
        try:
            self.shard_path(file_path).unlink()
        except FileNotFoundError:
            pass

