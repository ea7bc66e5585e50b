"""Parser adapter: file text -> semantic blocks, with incremental re-parse.

Source files are parsed with tree-sitter and walked to extract functions,
methods, classes and imports. Every file also gets a MODULE block holding an
overview (imports + declaration signatures). Languages without a grammar are
chunked into fixed line windows.

Malformed syntax never fails a whole file: well-formed blocks around the
broken region are kept, declarations touched by the error are kept as
``partial`` blocks when their name can be recovered, and one
:class:`PartialParseWarning` is emitted per broken region.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import tree_sitter_go
import tree_sitter_javascript
import tree_sitter_python
import tree_sitter_rust
import tree_sitter_typescript
from tree_sitter import Language, Node, Parser, Tree

from codeintel.errors import ParseError, PartialParseWarning
from codeintel.models import BlockKind, Position, SemanticBlock, make_block_id

logger = logging.getLogger(__name__)

# Lines per OTHER block for files without a grammar
LINE_CHUNK_SIZE = 50

# Language detection by extension
_EXTENSION_TO_LANGUAGE = {
    ".py": "python",
    ".pyw": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",  # TSX needs special parser
    ".mts": "typescript",
    ".cts": "typescript",
    ".go": "go",
    ".rs": "rust",
}

_LANGUAGE_LOADERS: dict[str, Callable[[], Any]] = {
    "python": tree_sitter_python.language,
    "javascript": tree_sitter_javascript.language,
    "typescript": tree_sitter_typescript.language_typescript,
    "tsx": tree_sitter_typescript.language_tsx,
    "go": tree_sitter_go.language,
    "rust": tree_sitter_rust.language,
}


def detect_language(path: str) -> str | None:
    """Detect language from file extension."""
    return _EXTENSION_TO_LANGUAGE.get(Path(path).suffix.lower())


# ── Language node tables ─────────────────────────────────────────────────


@dataclass(frozen=True)
class _Grammar:
    """Node types that map onto block kinds for one language."""

    functions: frozenset[str]
    classes: frozenset[str]
    imports: frozenset[str]
    calls: frozenset[str]
    # Statement terminator used by line-level completion
    terminator: str | None = None


_JS_GRAMMAR = _Grammar(
    functions=frozenset(
        {
            "function_declaration",
            "generator_function_declaration",
            "method_definition",
            "lexical_declaration",
            "variable_declaration",
        }
    ),
    classes=frozenset(
        {
            "class_declaration",
            "abstract_class_declaration",
            "interface_declaration",
        }
    ),
    imports=frozenset({"import_statement"}),
    calls=frozenset({"call_expression"}),
    terminator=";",
)

_GRAMMARS: dict[str, _Grammar] = {
    "python": _Grammar(
        functions=frozenset({"function_definition"}),
        classes=frozenset({"class_definition"}),
        imports=frozenset({"import_statement", "import_from_statement"}),
        calls=frozenset({"call"}),
    ),
    "javascript": _JS_GRAMMAR,
    "typescript": _JS_GRAMMAR,
    "tsx": _JS_GRAMMAR,
    "go": _Grammar(
        functions=frozenset({"function_declaration", "method_declaration"}),
        classes=frozenset({"type_declaration"}),
        imports=frozenset({"import_declaration"}),
        calls=frozenset({"call_expression"}),
    ),
    "rust": _Grammar(
        functions=frozenset({"function_item"}),
        classes=frozenset(
            {"struct_item", "enum_item", "trait_item", "impl_item", "mod_item"}
        ),
        imports=frozenset({"use_declaration"}),
        calls=frozenset({"call_expression", "macro_invocation"}),
        terminator=";",
    ),
}


def statement_terminator(language: str | None) -> str | None:
    grammar = _GRAMMARS.get(language or "")
    return grammar.terminator if grammar else None


# Lexical recovery of declaration names inside ERROR regions
_RECOVERY_PATTERNS: dict[str, list[tuple[re.Pattern[str], BlockKind]]] = {
    "python": [
        (re.compile(r"^\s*(?:async\s+)?def\s+([A-Za-z_]\w*)", re.M), BlockKind.FUNCTION),
        (re.compile(r"^\s*class\s+([A-Za-z_]\w*)", re.M), BlockKind.CLASS),
    ],
    "javascript": [
        (
            re.compile(r"\b(?:async\s+)?function\s*\*?\s*([A-Za-z_$][\w$]*)"),
            BlockKind.FUNCTION,
        ),
        (re.compile(r"\bclass\s+([A-Za-z_$][\w$]*)"), BlockKind.CLASS),
        (
            re.compile(r"\b(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*=\s*(?:async\s*)?\("),
            BlockKind.FUNCTION,
        ),
    ],
    "go": [
        (re.compile(r"\bfunc\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)"), BlockKind.FUNCTION),
        (re.compile(r"\btype\s+([A-Za-z_]\w*)"), BlockKind.CLASS),
    ],
    "rust": [
        (re.compile(r"\bfn\s+([A-Za-z_]\w*)"), BlockKind.FUNCTION),
        (re.compile(r"\b(?:struct|enum|trait)\s+([A-Za-z_]\w*)"), BlockKind.CLASS),
    ],
}
_RECOVERY_PATTERNS["typescript"] = _RECOVERY_PATTERNS["javascript"]
_RECOVERY_PATTERNS["tsx"] = _RECOVERY_PATTERNS["javascript"]


# ── Results ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EditDelta:
    """A single text edit expressed in byte offsets and (row, column) points."""

    start_byte: int
    old_end_byte: int
    new_end_byte: int
    start_point: tuple[int, int]
    old_end_point: tuple[int, int]
    new_end_point: tuple[int, int]


@dataclass
class ParseResult:
    """Output of :meth:`ParserAdapter.parse`.

    ``tree`` is ``None`` for languages parsed without a grammar. Passing a
    result back as ``prior`` consumes its tree (it is edited in place).
    """

    path: str
    language: str | None
    source: bytes
    tree: Tree | None
    blocks: list[SemanticBlock] = field(default_factory=list)
    warnings: list[PartialParseWarning] = field(default_factory=list)
    incremental: bool = False

    @property
    def module_block(self) -> SemanticBlock | None:
        for block in self.blocks:
            if block.kind is BlockKind.MODULE:
                return block
        return None


# ── Helpers ──────────────────────────────────────────────────────────────


def _point_at(source: bytes, offset: int) -> tuple[int, int]:
    row = source.count(b"\n", 0, offset)
    line_start = source.rfind(b"\n", 0, offset) + 1
    return row, offset - line_start


def compute_edit(old: bytes, new: bytes) -> EditDelta | None:
    """Derive a single edit from the common prefix and suffix of two texts.

    Returns None when the texts are identical.
    """
    if old == new:
        return None
    limit = min(len(old), len(new))
    prefix = 0
    while prefix < limit and old[prefix] == new[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < limit - prefix
        and old[len(old) - 1 - suffix] == new[len(new) - 1 - suffix]
    ):
        suffix += 1
    old_end = len(old) - suffix
    new_end = len(new) - suffix
    return EditDelta(
        start_byte=prefix,
        old_end_byte=old_end,
        new_end_byte=new_end,
        start_point=_point_at(old, prefix),
        old_end_point=_point_at(old, old_end),
        new_end_point=_point_at(new, new_end),
    )


def position_to_offset(text: str, position: Position) -> int:
    """Convert a zero-based (line, column) position to a UTF-8 byte offset.

    Positions past the end of a line or of the file are clamped.
    """
    lines = text.split("\n")
    line = min(max(position.line, 0), len(lines) - 1)
    offset = sum(len(lines[i].encode("utf-8")) + 1 for i in range(line))
    column = min(max(position.column, 0), len(lines[line]))
    return offset + len(lines[line][:column].encode("utf-8"))


def enclosing_block(
    blocks: list[SemanticBlock], offset: int, source: bytes | None = None
) -> SemanticBlock | None:
    """Return the innermost function/method/class block containing *offset*.

    An unterminated (``partial``) block also encloses a cursor separated
    from its end only by whitespace, which is where typing happens.
    """
    best: SemanticBlock | None = None
    for block in blocks:
        if block.kind in (BlockKind.MODULE, BlockKind.IMPORT):
            continue
        inside = block.contains(offset)
        if not inside and block.partial and source is not None:
            inside = block.byte_end <= offset and not source[
                block.byte_end : offset
            ].strip()
        if not inside:
            continue
        if best is None or (block.byte_end - block.byte_start) < (
            best.byte_end - best.byte_start
        ):
            best = block
    return best


def _node_text(node: Node, source: bytes) -> str:
    return source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")


def _iter_tree(node: Node):
    """Iterate over all nodes in tree."""
    yield node
    for child in node.children:
        yield from _iter_tree(child)


def _last_segment(name: str) -> str:
    return re.split(r"\.|::", name.strip())[-1]


_PY_FROM_IMPORT = re.compile(r"^\s*from\s+[\w.]+\s+import\s+\(?([^)]*)\)?", re.S)
_PY_IMPORT = re.compile(r"^\s*import\s+(.+)$", re.S)
_JS_BRACES = re.compile(r"\{([^}]*)\}")
_JS_DEFAULT = re.compile(r"^\s*import\s+([A-Za-z_$][\w$]*)")
_JS_NAMESPACE = re.compile(r"\*\s+as\s+([A-Za-z_$][\w$]*)")
_GO_PATH = re.compile(r'"([^"]+)"')


def import_symbols(language: str | None, text: str) -> list[str]:
    """Extract the names an import statement brings into scope."""
    names: list[str] = []
    if language == "python":
        match = _PY_FROM_IMPORT.match(text)
        if match:
            parts = match.group(1).split(",")
        else:
            match = _PY_IMPORT.match(text)
            parts = match.group(1).split(",") if match else []
        for part in parts:
            part = part.strip()
            if part and part != "*":
                names.append(part.split()[0])
    elif language in ("javascript", "typescript", "tsx"):
        for group in _JS_BRACES.findall(text):
            for part in group.split(","):
                part = part.strip()
                if part:
                    names.append(part.split()[0])
        default = _JS_DEFAULT.match(text)
        if default and default.group(1) not in ("type", "from"):
            names.append(default.group(1))
        names.extend(_JS_NAMESPACE.findall(text))
    elif language == "go":
        names.extend(path.rsplit("/", 1)[-1] for path in _GO_PATH.findall(text))
    elif language == "rust":
        body = text.strip().removeprefix("pub ").removeprefix("use").strip(" ;")
        group = _JS_BRACES.search(body)
        if group:
            names.extend(
                _last_segment(p) for p in group.group(1).split(",") if p.strip()
            )
        elif body:
            names.append(_last_segment(body.split(" as ")[-1]))
    return [n for n in dict.fromkeys(names) if n and n != "self"]


# ── Extraction ───────────────────────────────────────────────────────────


class _Extractor:
    """Walks one tree and collects blocks and warnings."""

    def __init__(self, path: str, language: str, source: bytes, tree: Tree):
        self.path = path
        self.language = language
        self.source = source
        self.tree = tree
        self.grammar = _GRAMMARS[language]
        self.blocks: list[SemanticBlock] = []
        self.warnings: list[PartialParseWarning] = []
        self.module_id = ""

    def run(self) -> None:
        root = self.tree.root_node
        imports = [n for n in root.children if n.type in self.grammar.imports]
        module = self._module_block(root, imports)
        self.module_id = module.id
        self.blocks.append(module)
        for child in root.children:
            self._visit(child, parent_id=module.id, in_class=False)
        if root.has_error:
            self._collect_warnings(root)

    # -- blocks --

    def _make(
        self,
        node: Node,
        kind: BlockKind,
        parent_id: str | None,
        name: str | None,
        symbols: list[str],
        partial: bool = False,
        start_byte: int | None = None,
    ) -> SemanticBlock:
        start = node.start_byte if start_byte is None else start_byte
        end = node.end_byte
        text = self.source[start:end].decode("utf-8", errors="replace")
        return SemanticBlock(
            id=make_block_id(self.path, start, end, text),
            path=self.path,
            kind=kind,
            byte_start=start,
            byte_end=end,
            line_start=self.source.count(b"\n", 0, start) + 1,
            line_end=node.end_point[0] + 1,
            text=text,
            language=self.language,
            name=name,
            parent_id=parent_id,
            symbols=tuple(symbols),
            partial=partial,
        )

    def _module_block(self, root: Node, imports: list[Node]) -> SemanticBlock:
        lines = [_node_text(n, self.source).strip() for n in imports]
        symbols: list[str] = []
        for text in lines:
            symbols.extend(import_symbols(self.language, text))
        for node in root.children:
            definition = self._unwrap(node)
            if (
                definition.type in self.grammar.functions
                or definition.type in self.grammar.classes
            ):
                lines.append(_node_text(node, self.source).splitlines()[0])
        overview = "\n".join(lines)
        end = len(self.source)
        return SemanticBlock(
            id=make_block_id(self.path, 0, end, overview),
            path=self.path,
            kind=BlockKind.MODULE,
            byte_start=0,
            byte_end=end,
            line_start=1,
            line_end=max(root.end_point[0] + 1, 1),
            text=overview,
            language=self.language,
            name=Path(self.path).stem,
            symbols=tuple(dict.fromkeys(symbols)),
        )

    def _unwrap(self, node: Node) -> Node:
        if node.type == "decorated_definition":
            definition = node.child_by_field_name("definition")
            if definition is not None:
                return definition
        if node.type == "export_statement":
            declaration = node.child_by_field_name("declaration")
            if declaration is not None:
                return declaration
        return node

    def _name(self, node: Node) -> str | None:
        name_node = node.child_by_field_name("name")
        if name_node is None and node.type == "impl_item":
            name_node = node.child_by_field_name("type")
        if name_node is None and node.type == "type_declaration":
            for child in node.children:
                if child.type == "type_spec":
                    name_node = child.child_by_field_name("name")
                    break
        if name_node is None:
            return None
        return _node_text(name_node, self.source)

    def _declared_function(self, node: Node) -> tuple[str | None, bool]:
        """Name and validity of ``const f = () => ...`` style declarations."""
        if node.type not in ("lexical_declaration", "variable_declaration"):
            return self._name(node), True
        for child in node.children:
            if child.type != "variable_declarator":
                continue
            value = child.child_by_field_name("value")
            if value is not None and value.type in (
                "arrow_function",
                "function_expression",
                "function",
            ):
                name_node = child.child_by_field_name("name")
                if name_node is not None:
                    return _node_text(name_node, self.source), True
        return None, False

    def _calls(self, node: Node) -> list[str]:
        calls: list[str] = []
        for child in _iter_tree(node):
            if child.type in self.grammar.calls:
                target = child.child_by_field_name(
                    "function"
                ) or child.child_by_field_name("macro")
                if target is not None:
                    calls.append(_last_segment(_node_text(target, self.source)))
        return list(dict.fromkeys(c for c in calls if c))

    def _visit(self, node: Node, parent_id: str, in_class: bool) -> None:
        definition = self._unwrap(node)
        kind_type = definition.type

        if node.type == "ERROR" or node.is_error:
            self._visit_error(node, parent_id, in_class)
            return

        if kind_type in self.grammar.imports:
            text = _node_text(definition, self.source)
            self.blocks.append(
                self._make(
                    node,
                    BlockKind.IMPORT,
                    parent_id,
                    None,
                    import_symbols(self.language, text),
                )
            )
            return

        if kind_type in self.grammar.classes:
            name = self._name(definition)
            block = self._make(
                node,
                BlockKind.CLASS,
                parent_id,
                name,
                [],
                partial=definition.has_error,
            )
            self.blocks.append(block)
            body = definition.child_by_field_name("body")
            for child in (body or definition).children:
                self._visit(child, parent_id=block.id, in_class=True)
            return

        if kind_type in self.grammar.functions:
            name, is_function = self._declared_function(definition)
            if is_function:
                kind = (
                    BlockKind.METHOD
                    if in_class or kind_type == "method_declaration"
                    else BlockKind.FUNCTION
                )
                self.blocks.append(
                    self._make(
                        node,
                        kind,
                        parent_id,
                        name,
                        self._calls(definition),
                        partial=definition.has_error,
                    )
                )
                return

        # Recurse into other nodes (blocks, statements, export wrappers)
        for child in node.children:
            self._visit(child, parent_id, in_class)

    def _visit_error(self, node: Node, parent_id: str, in_class: bool) -> None:
        before = len(self.blocks)
        for child in node.children:
            self._visit(child, parent_id, in_class)
        if len(self.blocks) > before:
            return
        text = _node_text(node, self.source)
        for pattern, kind in _RECOVERY_PATTERNS.get(self.language, []):
            match = pattern.search(text)
            if match is None:
                continue
            if kind is BlockKind.FUNCTION and in_class:
                kind = BlockKind.METHOD
            start = node.start_byte + len(text[: match.start()].encode("utf-8"))
            # Skip leading whitespace captured by multiline patterns
            while start < node.end_byte and self.source[start : start + 1].isspace():
                start += 1
            self.blocks.append(
                self._make(
                    node,
                    kind,
                    parent_id,
                    match.group(1),
                    [],
                    partial=True,
                    start_byte=start,
                )
            )
            return

    # -- warnings --

    def _collect_warnings(self, root: Node) -> None:
        stack = [root]
        while stack:
            node = stack.pop()
            if node.is_error or node.type == "ERROR" or node.is_missing:
                message = (
                    f"missing {node.type}" if node.is_missing else "syntax error"
                )
                self.warnings.append(
                    PartialParseWarning(
                        path=self.path,
                        line_start=node.start_point[0] + 1,
                        line_end=node.end_point[0] + 1,
                        message=message,
                    )
                )
                continue
            if node.has_error:
                stack.extend(reversed(node.children))
        if not self.warnings:
            self.warnings.append(
                PartialParseWarning(
                    path=self.path,
                    line_start=1,
                    line_end=root.end_point[0] + 1,
                )
            )
        self.warnings.sort(key=lambda w: (w.line_start, w.line_end))


def _chunk_by_lines(
    path: str, content: str, language: str | None, chunk_size: int = LINE_CHUNK_SIZE
) -> list[SemanticBlock]:
    """Fallback: MODULE block plus fixed line windows for unsupported languages."""
    source = content.encode("utf-8")
    lines = content.splitlines(keepends=True)
    overview = "".join(lines[:10])
    module = SemanticBlock(
        id=make_block_id(path, 0, len(source), overview),
        path=path,
        kind=BlockKind.MODULE,
        byte_start=0,
        byte_end=len(source),
        line_start=1,
        line_end=max(len(lines), 1),
        text=overview,
        language=language,
        name=Path(path).stem,
    )
    blocks = [module]
    offset = 0
    for i in range(0, len(lines), chunk_size):
        text = "".join(lines[i : i + chunk_size])
        size = len(text.encode("utf-8"))
        if text.strip():
            blocks.append(
                SemanticBlock(
                    id=make_block_id(path, offset, offset + size, text),
                    path=path,
                    kind=BlockKind.OTHER,
                    byte_start=offset,
                    byte_end=offset + size,
                    line_start=i + 1,
                    line_end=min(i + chunk_size, len(lines)),
                    text=text,
                    language=language,
                    parent_id=module.id,
                )
            )
        offset += size
    return blocks


# ── Adapter ──────────────────────────────────────────────────────────────


class ParserAdapter:
    """Turns file text into semantic blocks.

    Safe to call from several worker threads: languages are loaded once and
    a fresh ``Parser`` is created per call.
    """

    def __init__(self) -> None:
        self._languages: dict[str, Language] = {}
        self._lock = threading.Lock()

    def supports(self, language: str | None) -> bool:
        return language in _LANGUAGE_LOADERS

    def _parser(self, language: str) -> Parser:
        with self._lock:
            lang_obj = self._languages.get(language)
            if lang_obj is None:
                lang_obj = Language(_LANGUAGE_LOADERS[language]())
                self._languages[language] = lang_obj
        return Parser(lang_obj)

    def parse(
        self,
        path: str,
        content: str,
        prior: ParseResult | None = None,
        edit: EditDelta | None = None,
    ) -> ParseResult:
        """Parse *content* and extract its blocks.

        With a *prior* result of the same language the previous tree is
        edited and reused (incremental re-parse). When *edit* is omitted the
        delta is derived from the two texts.

        Raises:
            ParseError: If the file cannot be parsed at all.
        """
        language = detect_language(path)
        source = content.encode("utf-8")

        if not self.supports(language):
            return ParseResult(
                path=path,
                language=language,
                source=source,
                tree=None,
                blocks=_chunk_by_lines(path, content, language),
            )

        assert language is not None
        parser = self._parser(language)
        old_tree = None
        if prior is not None and prior.tree is not None and prior.language == language:
            if edit is None:
                edit = compute_edit(prior.source, source)
            if edit is not None:
                prior.tree.edit(
                    start_byte=edit.start_byte,
                    old_end_byte=edit.old_end_byte,
                    new_end_byte=edit.new_end_byte,
                    start_point=edit.start_point,
                    old_end_point=edit.old_end_point,
                    new_end_point=edit.new_end_point,
                )
            old_tree = prior.tree

        try:
            tree = parser.parse(source, old_tree) if old_tree else parser.parse(source)
        except (ValueError, RuntimeError) as e:
            raise ParseError(path, str(e)) from e

        extractor = _Extractor(path, language, source, tree)
        extractor.run()
        if extractor.warnings:
            logger.debug(
                "Partial parse of %s: %d broken region(s)",
                path,
                len(extractor.warnings),
            )
        return ParseResult(
            path=path,
            language=language,
            source=source,
            tree=tree,
            blocks=extractor.blocks,
            warnings=extractor.warnings,
            incremental=old_tree is not None,
        )

    def error_count(self, language: str | None, text: str) -> int:
        """Number of broken regions in *text*; 0 for unsupported languages."""
        if not self.supports(language):
            return 0
        assert language is not None
        tree = self._parser(language).parse(text.encode("utf-8"))
        if not tree.root_node.has_error:
            return 0
        extractor = _Extractor("<fragment>", language, text.encode("utf-8"), tree)
        extractor._collect_warnings(tree.root_node)
        return len(extractor.warnings)

    def has_syntax_errors(self, language: str | None, text: str) -> bool:
        return self.error_count(language, text) > 0


def read_source(path: str) -> str:
    """Read a file as UTF-8 text.

    Raises:
        ParseError: (fatal) if the file is unreadable or not valid UTF-8.
    """
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(path, str(e)) from e
