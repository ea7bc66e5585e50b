"""Unit tests for codeintel.context."""

import pytest

from codeintel.context import (
    CURSOR_MARK,
    HISTORY,
    IMMEDIATE,
    IMPORTS,
    NEIGHBORS,
    PATTERNS,
    ContextAssembler,
    Document,
)
from codeintel.embeddings import EmbeddingService
from codeintel.errors import BudgetExceeded
from codeintel.history import SessionHistory, UserPattern
from codeintel.models import (
    BlockKind,
    CompletionLevel,
    CompletionRequest,
    EntryMetadata,
    Position,
)
from codeintel.parser import ParserAdapter
from codeintel.store import VectorStore

from conftest import FailingEmbedder, HashingEmbedder

PROJECT = "/proj"

HELPERS = """def parse_config(path):
    with open(path) as f:
        return f.read()


def unrelated_banana():
    return "banana"
"""

MAIN = """from helpers import parse_config


def load_settings(path):
    raw = parse_config(path)
    return raw
"""


async def _index(store, embedder, parser, path, text):
    parsed = parser.parse(path, text)
    await store.replace_file(
        path,
        [
            (embedder.embed(b.text), EntryMetadata(block=b, project=PROJECT))
            for b in parsed.blocks
            if b.kind is not BlockKind.IMPORT
        ],
    )
    return parsed


def _document(parser, path, text):
    return Document(path=path, text=text, parsed=parser.parse(path, text))


def _request(path, line, column, level=CompletionLevel.LINE):
    return CompletionRequest(file=path, position=Position(line, column), level=level)


@pytest.fixture
def parser():
    return ParserAdapter()


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def store():
    return VectorStore()


class TestImmediateContext:
    def test_prefix_suffix_and_line_prefix(self, parser, store, embedder):
        assembler = ContextAssembler(store, EmbeddingService(embedder))
        document = _document(parser, "/proj/main.py", MAIN)

        prefix, suffix, line_prefix, offset, enclosing = assembler.immediate(
            document, _request("/proj/main.py", 4, 10)
        )

        assert line_prefix == "    raw = "
        assert prefix.endswith("    raw = ")
        assert suffix.startswith("parse_config(path)")
        assert enclosing.name == "load_settings"
        assert offset == MAIN.index("parse_config(path)\n")

    def test_window_reaches_enclosing_start(self, parser, store, embedder):
        body = "".join(f"    x{i} = {i}\n" for i in range(40))
        text = "import os\n\n\ndef big():\n" + body
        assembler = ContextAssembler(store, EmbeddingService(embedder), window_lines=5)
        document = _document(parser, "/proj/big.py", text)

        prefix, *_ = assembler.immediate(document, _request("/proj/big.py", 40, 4))

        assert prefix.startswith("def big():")


class TestAssemble:
    @pytest.mark.asyncio
    async def test_all_categories_in_priority_order(self, parser, store, embedder):
        await _index(store, embedder, parser, "/proj/helpers.py", HELPERS)
        await _index(store, embedder, parser, "/proj/main.py", MAIN)
        history = SessionHistory()
        history.record_edit("/proj/other.py", "", "value = compute()\n")
        assembler = ContextAssembler(
            store,
            EmbeddingService(embedder),
            history=history,
            patterns=[UserPattern("guard", "if not path:\n    return None")],
        )
        document = _document(parser, "/proj/main.py", MAIN)

        context = await assembler.assemble(
            _request("/proj/main.py", 4, 10), document, PROJECT, budget=10_000
        )

        assert context.categories == [IMMEDIATE, IMPORTS, NEIGHBORS, HISTORY, PATTERNS]
        assert context.dropped == []
        assert context.truncation == 0.0
        assert CURSOR_MARK in context.text
        imported = [s for s in context.sections if s.category == IMPORTS]
        assert [s.label.split()[-1] for s in imported] == ["parse_config"]

    @pytest.mark.asyncio
    async def test_enclosing_and_imported_blocks_not_repeated(self, parser, store, embedder):
        await _index(store, embedder, parser, "/proj/helpers.py", HELPERS)
        main = await _index(store, embedder, parser, "/proj/main.py", MAIN)
        assembler = ContextAssembler(store, EmbeddingService(embedder))
        document = Document("/proj/main.py", MAIN, main)

        context = await assembler.assemble(
            _request("/proj/main.py", 4, 10), document, PROJECT, budget=10_000
        )

        neighbor_ids = [s.block_id for s in context.sections if s.category == NEIGHBORS]
        import_ids = [s.block_id for s in context.sections if s.category == IMPORTS]
        assert context.enclosing.id not in neighbor_ids
        assert not set(import_ids) & set(neighbor_ids)
        assert context.provenance[0] == context.enclosing.id
        assert len(context.provenance) == len(set(context.provenance))

    @pytest.mark.asyncio
    async def test_lowest_priority_dropped_first(self, parser, store, embedder):
        await _index(store, embedder, parser, "/proj/helpers.py", HELPERS)
        history = SessionHistory()
        history.record_edit("/proj/other.py", "", "value = compute()\n")
        assembler = ContextAssembler(
            store,
            EmbeddingService(embedder),
            history=history,
            patterns=[UserPattern("big", "x" * 5000)],
        )
        document = _document(parser, "/proj/main.py", MAIN)

        context = await assembler.assemble(
            _request("/proj/main.py", 4, 10), document, PROJECT, budget=2000
        )

        assert context.dropped_categories == [PATTERNS]
        assert IMPORTS in context.categories
        assert context.size <= 2000
        assert 0.0 < context.truncation < 1.0

    @pytest.mark.asyncio
    async def test_tiny_budget_keeps_current_line(self, parser, store, embedder):
        await _index(store, embedder, parser, "/proj/helpers.py", HELPERS)
        assembler = ContextAssembler(store, EmbeddingService(embedder))
        document = _document(parser, "/proj/main.py", MAIN)
        request = _request("/proj/main.py", 4, 10)
        overhead = len(f"### {IMMEDIATE}: /proj/main.py\n{CURSOR_MARK}\n")

        context = await assembler.assemble(
            request, document, PROJECT, budget=overhead + len("    raw = ") + 5
        )

        assert context.sections == []
        assert context.immediate_truncated
        assert context.prefix.endswith("    raw = ")
        assert IMMEDIATE in context.dropped_categories

    @pytest.mark.asyncio
    async def test_budget_exceeded_when_line_does_not_fit(self, parser, store, embedder):
        assembler = ContextAssembler(store, EmbeddingService(embedder))
        document = _document(parser, "/proj/main.py", MAIN)

        with pytest.raises(BudgetExceeded):
            await assembler.assemble(
                _request("/proj/main.py", 4, 10), document, PROJECT, budget=20
            )

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades_to_no_neighbors(self, parser, store, embedder):
        await _index(store, embedder, parser, "/proj/helpers.py", HELPERS)
        assembler = ContextAssembler(store, EmbeddingService(FailingEmbedder()))
        document = _document(parser, "/proj/main.py", MAIN)

        context = await assembler.assemble(
            _request("/proj/main.py", 4, 10), document, PROJECT, budget=10_000
        )

        assert context.degraded == [NEIGHBORS]
        assert NEIGHBORS not in context.categories
        assert IMPORTS in context.categories

    @pytest.mark.asyncio
    async def test_restrict_language(self, parser, store, embedder):
        await _index(store, embedder, parser, "/proj/helpers.py", HELPERS)
        await _index(
            store,
            embedder,
            parser,
            "/proj/web/config.js",
            "function parseConfig(path) {\n  return path;\n}\n",
        )
        assembler = ContextAssembler(store, EmbeddingService(embedder))
        document = _document(parser, "/proj/main.py", MAIN)

        context = await assembler.assemble(
            _request("/proj/main.py", 4, 10),
            document,
            PROJECT,
            budget=10_000,
            restrict_language=True,
        )

        assert all(
            not s.label.startswith("/proj/web/")
            for s in context.sections
            if s.category == NEIGHBORS
        )
