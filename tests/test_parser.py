"""Unit tests for codeintel.parser."""

import pytest

from codeintel.errors import ParseError
from codeintel.models import BlockKind, Position
from codeintel.parser import (
    ParserAdapter,
    compute_edit,
    detect_language,
    enclosing_block,
    import_symbols,
    position_to_offset,
    read_source,
    statement_terminator,
)

PY_SOURCE = '''import os
from pathlib import Path


def hello(name: str) -> str:
    """Say hello."""
    return greet(name)


class Greeter:
    def greet(self, name: str) -> str:
        return hello(name)
'''

JS_SOURCE = """import { something, other as alias } from 'somewhere';

function greet(name) {
  return `Hello, ${name}!`;
}

class App {
  run() {
    console.log(greet('app'));
  }
}

const double = (x) => x * 2;
const limit = 10;
"""


@pytest.fixture
def adapter():
    return ParserAdapter()


def _by_name(blocks):
    return {b.name: b for b in blocks if b.name}


class TestDetectLanguage:
    def test_known_extensions(self):
        assert detect_language("a/b.py") == "python"
        assert detect_language("x.js") == "javascript"
        assert detect_language("x.ts") == "typescript"
        assert detect_language("main.go") == "go"
        assert detect_language("lib.rs") == "rust"

    def test_unknown_extension(self):
        assert detect_language("notes.txt") is None

    def test_terminators(self):
        assert statement_terminator("javascript") == ";"
        assert statement_terminator("rust") == ";"
        assert statement_terminator("python") is None
        assert statement_terminator(None) is None


class TestPythonExtraction:
    def test_blocks_and_kinds(self, adapter):
        result = adapter.parse("/p/mod.py", PY_SOURCE)
        names = _by_name(result.blocks)
        assert names["hello"].kind is BlockKind.FUNCTION
        assert names["Greeter"].kind is BlockKind.CLASS
        assert names["greet"].kind is BlockKind.METHOD
        assert names["greet"].parent_id == names["Greeter"].id
        assert sum(1 for b in result.blocks if b.kind is BlockKind.IMPORT) == 2
        assert result.warnings == []

    def test_module_block_lists_imports(self, adapter):
        result = adapter.parse("/p/mod.py", PY_SOURCE)
        module = result.module_block
        assert module is not None
        assert module.kind is BlockKind.MODULE
        assert "os" in module.symbols
        assert "Path" in module.symbols
        assert "def hello(name: str) -> str:" in module.text

    def test_function_records_calls(self, adapter):
        result = adapter.parse("/p/mod.py", PY_SOURCE)
        assert "greet" in _by_name(result.blocks)["hello"].symbols

    def test_line_numbers_are_one_based(self, adapter):
        result = adapter.parse("/p/mod.py", PY_SOURCE)
        hello = _by_name(result.blocks)["hello"]
        assert hello.line_start == 5
        assert hello.line_end == 7
        assert hello.text.startswith("def hello")

    def test_ids_are_content_addressed(self, adapter):
        first = adapter.parse("/p/mod.py", PY_SOURCE)
        second = adapter.parse("/p/mod.py", PY_SOURCE)
        assert [b.id for b in first.blocks] == [b.id for b in second.blocks]
        other_path = adapter.parse("/p/other.py", PY_SOURCE)
        assert _by_name(first.blocks)["hello"].id != _by_name(other_path.blocks)["hello"].id


class TestJavaScriptExtraction:
    def test_blocks(self, adapter):
        result = adapter.parse("/p/app.js", JS_SOURCE)
        names = _by_name(result.blocks)
        assert names["greet"].kind is BlockKind.FUNCTION
        assert names["App"].kind is BlockKind.CLASS
        assert names["run"].kind is BlockKind.METHOD
        assert names["double"].kind is BlockKind.FUNCTION
        # Plain constants are not functions
        assert "limit" not in names

    def test_import_symbols(self, adapter):
        result = adapter.parse("/p/app.js", JS_SOURCE)
        assert result.module_block.symbols == ("something", "other")


class TestImportSymbols:
    def test_python_forms(self):
        assert import_symbols("python", "import os, sys") == ["os", "sys"]
        assert import_symbols("python", "from a.b import c as d, e") == ["c", "e"]
        assert import_symbols("python", "from x import *") == []

    def test_javascript_default_and_namespace(self):
        assert import_symbols("javascript", "import React from 'react';") == ["React"]
        assert import_symbols("javascript", "import * as fs from 'fs';") == ["fs"]

    def test_rust_group(self):
        assert import_symbols("rust", "use std::collections::{HashMap, HashSet};") == [
            "HashMap",
            "HashSet",
        ]


class TestPartialParse:
    def test_broken_region_is_skipped_not_fatal(self, adapter):
        source = (
            "def good():\n"
            "    return 1\n"
            "\n"
            "def broken(:\n"
            "    return (\n"
        )
        result = adapter.parse("/p/broken.py", source)
        assert result.warnings
        assert "good" in _by_name(result.blocks)
        assert all(w.path == "/p/broken.py" for w in result.warnings)

    def test_unterminated_js_function_yields_partial_block(self, adapter):
        source = "function add(a, b) { return a + "
        result = adapter.parse("/p/add.js", source)
        add = _by_name(result.blocks).get("add")
        assert add is not None
        assert add.partial
        assert result.warnings

    def test_error_count(self, adapter):
        assert adapter.error_count("python", "x = 1\n") == 0
        assert adapter.has_syntax_errors("python", "def f(:\n")
        assert adapter.error_count(None, "anything") == 0


class TestUnsupportedLanguage:
    def test_chunks_by_lines(self, adapter):
        text = "".join(f"line {i}\n" for i in range(120))
        result = adapter.parse("/p/notes.txt", text)
        assert result.tree is None
        kinds = [b.kind for b in result.blocks]
        assert kinds[0] is BlockKind.MODULE
        assert kinds.count(BlockKind.OTHER) == 3


class TestIncremental:
    def test_compute_edit(self):
        edit = compute_edit(b"abc\ndef", b"abc\ndXef")
        assert edit.start_byte == 5
        assert edit.old_end_byte == 5
        assert edit.new_end_byte == 6
        assert edit.start_point == (1, 1)
        assert compute_edit(b"same", b"same") is None

    def test_reparse_reuses_prior_tree(self, adapter):
        first = adapter.parse("/p/mod.py", PY_SOURCE)
        changed = PY_SOURCE.replace("return greet(name)", "return greet(name.upper())")
        second = adapter.parse("/p/mod.py", changed, prior=first)
        assert second.incremental
        fresh = adapter.parse("/p/mod.py", changed)
        assert [b.id for b in second.blocks] == [b.id for b in fresh.blocks]
        assert _by_name(second.blocks)["hello"].id != _by_name(first.blocks)["hello"].id
        # Untouched blocks keep their text
        assert _by_name(second.blocks)["Greeter"].text == _by_name(first.blocks)["Greeter"].text


class TestPositions:
    def test_position_to_offset(self):
        text = "ab\ncdé\nf"
        assert position_to_offset(text, Position(0, 0)) == 0
        assert position_to_offset(text, Position(1, 2)) == 5
        assert position_to_offset(text, Position(1, 3)) == 7  # after the 2-byte é
        assert position_to_offset(text, Position(9, 9)) == len(text.encode("utf-8"))

    def test_enclosing_block_is_innermost(self, adapter):
        result = adapter.parse("/p/mod.py", PY_SOURCE)
        offset = position_to_offset(PY_SOURCE, Position(11, 12))
        block = enclosing_block(result.blocks, offset, result.source)
        assert block.name == "greet"

    def test_enclosing_block_outside_definitions(self, adapter):
        result = adapter.parse("/p/mod.py", PY_SOURCE)
        assert enclosing_block(result.blocks, 0, result.source) is None


class TestReadSource:
    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(ParseError) as info:
            read_source(str(tmp_path / "missing.py"))
        assert info.value.fatal

    def test_binary_content_is_fatal(self, tmp_path):
        path = tmp_path / "blob.py"
        path.write_bytes(b"\xff\xfe\x00\x01")
        with pytest.raises(ParseError):
            read_source(str(path))
