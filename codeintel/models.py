"""Shared data model for the index and the completion subsystem."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ── Blocks ───────────────────────────────────────────────────────────────


class BlockKind(str, Enum):
    """Closed set of semantic block kinds."""

    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    MODULE = "module"
    IMPORT = "import"
    OTHER = "other"


def make_block_id(path: str, byte_start: int, byte_end: int, text: str) -> str:
    """Content-addressed block id: hash of path, byte range and content."""
    hasher = hashlib.sha1()
    hasher.update(path.encode("utf-8"))
    hasher.update(f"\x00{byte_start}:{byte_end}\x00".encode("ascii"))
    hasher.update(text.encode("utf-8"))
    return hasher.hexdigest()


def content_hash(text: str) -> str:
    """Hash used to key cached embeddings."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SemanticBlock:
    """A parsed syntactic unit used as the indexing granularity.

    Blocks are immutable. When the underlying text changes the parser
    produces new blocks with new ids and the old ones are removed from the
    index. ``parent_id`` is a weak back-reference resolved by lookup.
    """

    id: str
    path: str
    kind: BlockKind
    byte_start: int
    byte_end: int
    line_start: int
    line_end: int
    text: str
    language: str | None = None
    name: str | None = None
    parent_id: str | None = None
    symbols: tuple[str, ...] = ()
    partial: bool = False

    @property
    def content_hash(self) -> str:
        return content_hash(self.text)

    @property
    def label(self) -> str:
        """Short human-readable description for prompts and logs."""
        name = self.name or self.kind.value
        return f"{self.path}:{self.line_start}-{self.line_end} {self.kind.value} {name}"

    def contains(self, offset: int) -> bool:
        """True if the byte offset falls inside this block (end inclusive)."""
        return self.byte_start <= offset <= self.byte_end

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "kind": self.kind.value,
            "byte_start": self.byte_start,
            "byte_end": self.byte_end,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "text": self.text,
            "language": self.language,
            "name": self.name,
            "parent_id": self.parent_id,
            "symbols": list(self.symbols),
            "partial": self.partial,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SemanticBlock:
        return cls(
            id=data["id"],
            path=data["path"],
            kind=BlockKind(data["kind"]),
            byte_start=int(data["byte_start"]),
            byte_end=int(data["byte_end"]),
            line_start=int(data["line_start"]),
            line_end=int(data["line_end"]),
            text=data["text"],
            language=data.get("language"),
            name=data.get("name"),
            parent_id=data.get("parent_id"),
            symbols=tuple(data.get("symbols") or ()),
            partial=bool(data.get("partial", False)),
        )


@dataclass
class SourceFile:
    """Engine-owned record of a file's last indexed state."""

    path: str
    content_hash: str
    language: str | None
    version: int = 0
    indexed_at: float = 0.0


# ── Completion ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Position:
    """Zero-based cursor position."""

    line: int
    column: int


@dataclass(frozen=True)
class Selection:
    start: Position
    end: Position


class CompletionLevel(str, Enum):
    LINE = "line"
    BLOCK = "block"
    COMPONENT = "component"
    FEATURE = "feature"


class CompletionState(str, Enum):
    IDLE = "idle"
    CONTEXT_BUILDING = "context_building"
    MODEL_INVOCATION = "model_invocation"
    POST_PROCESSING = "post_processing"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    """Typed reason attached to a failed completion."""

    MODEL_UNAVAILABLE = "model_unavailable"
    MODEL_TIMEOUT = "model_timeout"
    BUDGET_EXCEEDED = "budget_exceeded"
    INVALID_PLAN = "invalid_plan"
    UNKNOWN_FILE = "unknown_file"


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class CompletionRequest:
    """One user-triggered completion request."""

    file: str
    position: Position
    level: CompletionLevel
    selection: Selection | None = None
    request_id: str = field(default_factory=_new_id)


@dataclass
class CompletionCandidate:
    """A ranked continuation proposed for a request."""

    text: str
    level: CompletionLevel
    confidence: float
    alternatives: list[str] = field(default_factory=list)
    provenance: list[str] = field(default_factory=list)
    language: str | None = None
    target_file: str | None = None
    target_symbol: str | None = None
    id: str = field(default_factory=_new_id)


@dataclass
class CompletionResult:
    """Terminal outcome of a completion request."""

    request_id: str
    state: CompletionState
    candidates: list[CompletionCandidate] = field(default_factory=list)
    reason: FailureReason | None = None
    message: str = ""

    @property
    def delivered(self) -> bool:
        return self.state is CompletionState.DELIVERED

    @property
    def failed(self) -> bool:
        return self.state is CompletionState.FAILED

    @property
    def cancelled(self) -> bool:
        return self.state is CompletionState.CANCELLED


# ── Search & indexing ────────────────────────────────────────────────────


@dataclass(frozen=True)
class EntryMetadata:
    """Metadata stored next to each vector in the index."""

    block: SemanticBlock
    project: str
    modified_at: float = 0.0

    @property
    def path(self) -> str:
        return self.block.path


@dataclass(frozen=True)
class SearchFilter:
    """Metadata filter applied to nearest-neighbour queries."""

    project: str | None = None
    language: str | None = None
    kinds: frozenset[BlockKind] | None = None
    path_prefix: str | None = None
    exclude_ids: frozenset[str] = frozenset()

    def matches(self, metadata: EntryMetadata) -> bool:
        block = metadata.block
        if block.id in self.exclude_ids:
            return False
        if self.project is not None and metadata.project != self.project:
            return False
        if self.language is not None and block.language != self.language:
            return False
        if self.kinds is not None and block.kind not in self.kinds:
            return False
        if self.path_prefix is not None and not block.path.startswith(
            self.path_prefix
        ):
            return False
        return True


@dataclass
class SearchResult:
    block: SemanticBlock
    similarity: float


@dataclass
class FileError:
    """A per-file indexing failure."""

    path: str
    error: str


@dataclass
class IndexProgress:
    """Progress event streamed while indexing a project."""

    files_indexed: int
    total_files: int
    errors: list[FileError] = field(default_factory=list)
    current_path: str | None = None

    @property
    def done(self) -> bool:
        return self.files_indexed + len(self.errors) >= self.total_files
