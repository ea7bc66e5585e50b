"""Context assembly for completion requests.

Merges, under a character budget and in priority order:

1. immediate syntactic context (enclosing block + surrounding lines)
2. blocks defining directly-imported symbols
3. nearest-neighbour blocks retrieved from the vector store
4. recent-edit session history
5. user-pattern snippets

Lowest-priority material is dropped first; every dropped item is recorded
so callers can see what did not fit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from codeintel.embeddings import EmbeddingService
from codeintel.errors import BudgetExceeded, EmbeddingUnavailable
from codeintel.history import SessionHistory, UserPattern
from codeintel.models import (
    BlockKind,
    CompletionRequest,
    SearchFilter,
    SemanticBlock,
)
from codeintel.parser import ParseResult, enclosing_block, position_to_offset
from codeintel.store import VectorStore

logger = logging.getLogger(__name__)

IMMEDIATE = "immediate"
IMPORTS = "imports"
NEIGHBORS = "neighbors"
HISTORY = "history"
PATTERNS = "patterns"

PRIORITY = (IMMEDIATE, IMPORTS, NEIGHBORS, HISTORY, PATTERNS)

CURSOR_MARK = "<|cursor|>"

# Characters of immediate context embedded for retrieval
_QUERY_CHARS = 2000

_RETRIEVABLE_KINDS = frozenset(
    {
        BlockKind.FUNCTION,
        BlockKind.METHOD,
        BlockKind.CLASS,
        BlockKind.MODULE,
        BlockKind.OTHER,
    }
)


@dataclass
class Document:
    """Live text of an open file and its latest parse."""

    path: str
    text: str
    parsed: ParseResult

    @property
    def language(self) -> str | None:
        return self.parsed.language


@dataclass
class ContextSection:
    category: str
    label: str
    text: str
    block_id: str | None = None
    similarity: float | None = None

    def render(self) -> str:
        return f"### {self.category}: {self.label}\n```\n{self.text}\n```\n"


@dataclass
class DroppedItem:
    category: str
    label: str
    block_id: str | None = None


@dataclass
class AssembledContext:
    """Budgeted context for one completion call."""

    path: str
    language: str | None
    budget: int
    prefix: str
    suffix: str
    line_prefix: str
    cursor_offset: int
    enclosing: SemanticBlock | None = None
    sections: list[ContextSection] = field(default_factory=list)
    dropped: list[DroppedItem] = field(default_factory=list)
    immediate_truncated: bool = False
    truncation: float = 0.0
    degraded: list[str] = field(default_factory=list)

    @property
    def immediate_text(self) -> str:
        return f"### {IMMEDIATE}: {self.path}\n{self.prefix}{CURSOR_MARK}{self.suffix}\n"

    @property
    def text(self) -> str:
        return "".join(s.render() for s in self.sections) + self.immediate_text

    @property
    def size(self) -> int:
        return len(self.text)

    @property
    def provenance(self) -> list[str]:
        """Contributing block ids, enclosing block first."""
        ids: list[str] = []
        if self.enclosing is not None:
            ids.append(self.enclosing.id)
        for section in self.sections:
            if section.block_id and section.block_id not in ids:
                ids.append(section.block_id)
        return ids

    @property
    def categories(self) -> list[str]:
        used = {s.category for s in self.sections} | {IMMEDIATE}
        return [c for c in PRIORITY if c in used]

    @property
    def dropped_categories(self) -> list[str]:
        dropped = {d.category for d in self.dropped}
        if self.immediate_truncated:
            dropped.add(IMMEDIATE)
        return [c for c in PRIORITY if c in dropped]

    @property
    def mean_similarity(self) -> float | None:
        sims = [
            s.similarity
            for s in self.sections
            if s.category == NEIGHBORS and s.similarity is not None
        ]
        if not sims:
            return None
        return sum(sims) / len(sims)


def _fit_immediate(
    prefix: str, suffix: str, line_prefix: str, room: int
) -> tuple[str, str, bool]:
    """Trim the window around the cursor to *room* characters.

    The current line's prefix is required; beyond it preceding text is kept
    before following text.
    """
    if len(prefix) + len(suffix) <= room:
        return prefix, suffix, False
    if len(line_prefix) > room:
        raise BudgetExceeded(budget=room, required=len(line_prefix))
    keep_prefix = min(len(prefix), max(room - min(len(suffix), room // 4), len(line_prefix)))
    keep_prefix = min(keep_prefix, room)
    new_prefix = prefix[len(prefix) - keep_prefix :]
    new_suffix = suffix[: max(room - len(new_prefix), 0)]
    return new_prefix, new_suffix, True


class ContextAssembler:
    """Builds :class:`AssembledContext` objects for completion requests."""

    def __init__(
        self,
        store: VectorStore,
        embeddings: EmbeddingService,
        history: SessionHistory | None = None,
        patterns: list[UserPattern] | None = None,
        top_k: int = 8,
        window_lines: int = 20,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.history = history or SessionHistory()
        self.patterns = list(patterns or [])
        self.top_k = top_k
        self.window_lines = window_lines

    # ── Step 1: immediate context ───────────────────────────────────────

    def immediate(
        self, document: Document, request: CompletionRequest
    ) -> tuple[str, str, str, int, SemanticBlock | None]:
        """Prefix window, suffix window, current line prefix, byte offset and
        enclosing block. No index access."""
        text = document.text
        offset = position_to_offset(text, request.position)
        source = document.parsed.source
        enclosing = enclosing_block(document.parsed.blocks, offset, source)
        char_offset = len(source[:offset].decode("utf-8", errors="replace"))

        before = text[:char_offset]
        after = text[char_offset:]
        line_prefix = before.rsplit("\n", 1)[-1]

        before_lines = before.split("\n")
        start_line = max(len(before_lines) - 1 - self.window_lines, 0)
        if enclosing is not None:
            # Always reach back to the start of the enclosing block
            start_line = min(start_line, enclosing.line_start - 1)
        prefix = "\n".join(before_lines[start_line:])
        suffix = "\n".join(after.split("\n")[: self.window_lines + 1])
        return prefix, suffix, line_prefix, offset, enclosing

    # ── Steps 2-5 ───────────────────────────────────────────────────────

    def _import_sections(
        self, document: Document, project: str
    ) -> list[ContextSection]:
        module = document.parsed.module_block
        names = list(module.symbols) if module else []
        sections: list[ContextSection] = []
        for block in self.store.find_by_name(names, project):
            if block.path == document.path or block.kind is BlockKind.IMPORT:
                continue
            sections.append(
                ContextSection(IMPORTS, block.label, block.text, block_id=block.id)
            )
        return sections

    async def _neighbor_sections(
        self,
        document: Document,
        query_text: str,
        offset: int,
        project: str,
        restrict_language: bool,
        skip_ids: set[str],
        degraded: list[str],
    ) -> list[ContextSection]:
        exclude = set(skip_ids)
        for block in document.parsed.blocks:
            if block.contains(offset):
                exclude.add(block.id)
        for block in self.store.blocks_for_file(document.path):
            if block.contains(offset):
                exclude.add(block.id)

        try:
            vector = await self.embeddings.embed_one(query_text[-_QUERY_CHARS:])
        except EmbeddingUnavailable as e:
            logger.warning("Neighbour retrieval skipped: %s", e)
            degraded.append(NEIGHBORS)
            return []

        search_filter = SearchFilter(
            project=project,
            language=document.language if restrict_language else None,
            kinds=_RETRIEVABLE_KINDS,
            exclude_ids=frozenset(exclude),
        )
        try:
            hits = self.store.query(vector, self.top_k, search_filter)
        except ValueError as e:
            # Query embedded with a different model than the index
            logger.warning("Neighbour retrieval skipped: %s", e)
            degraded.append(NEIGHBORS)
            return []

        sections = []
        for block_id, similarity in hits:
            entry = self.store.get(block_id)
            if entry is None:
                continue
            block = entry[1].block
            sections.append(
                ContextSection(
                    NEIGHBORS,
                    block.label,
                    block.text,
                    block_id=block.id,
                    similarity=similarity,
                )
            )
        return sections

    def _history_sections(self) -> list[ContextSection]:
        return [
            ContextSection(HISTORY, f"recent edit in {r.path}", r.snippet)
            for r in self.history.recent()
        ]

    def _pattern_sections(self) -> list[ContextSection]:
        return [ContextSection(PATTERNS, p.name, p.text) for p in self.patterns]

    # ── Assembly ────────────────────────────────────────────────────────

    async def assemble(
        self,
        request: CompletionRequest,
        document: Document,
        project: str,
        budget: int,
        restrict_language: bool = False,
    ) -> AssembledContext:
        """Assemble context for *request* within *budget* characters.

        Raises:
            BudgetExceeded: If not even the current line fits the budget.
        """
        prefix, suffix, line_prefix, offset, enclosing = self.immediate(
            document, request
        )
        context = AssembledContext(
            path=document.path,
            language=document.language,
            budget=budget,
            prefix="",
            suffix="",
            line_prefix=line_prefix,
            cursor_offset=offset,
            enclosing=enclosing,
        )
        overhead = len(context.immediate_text)
        if overhead + len(line_prefix) > budget:
            raise BudgetExceeded(budget=budget, required=overhead + len(line_prefix))

        context.prefix, context.suffix, context.immediate_truncated = _fit_immediate(
            prefix, suffix, line_prefix, budget - overhead
        )
        offered = len(prefix) + len(suffix)
        dropped_chars = offered - len(context.prefix) - len(context.suffix)

        imports = self._import_sections(document, project)
        skip_ids = {s.block_id for s in imports if s.block_id}
        if enclosing is not None:
            skip_ids.add(enclosing.id)
        neighbors = await self._neighbor_sections(
            document,
            prefix + suffix,
            offset,
            project,
            restrict_language,
            skip_ids,
            context.degraded,
        )
        candidates = imports + neighbors + self._history_sections()
        candidates += self._pattern_sections()

        used = context.size
        overflowed = False
        for section in candidates:
            rendered = len(section.render())
            offered += rendered
            if not overflowed and used + rendered <= budget:
                context.sections.append(section)
                used += rendered
                continue
            # Everything after the first overflow is lower or equal priority
            overflowed = True
            dropped_chars += rendered
            context.dropped.append(
                DroppedItem(section.category, section.label, section.block_id)
            )

        context.truncation = dropped_chars / offered if offered else 0.0
        if context.dropped or context.immediate_truncated:
            logger.debug(
                "Context for %s over budget (%d chars): dropped %s",
                document.path,
                budget,
                ", ".join(context.dropped_categories),
            )
        return context
