import argparse
import asyncio
import logging
from datetime import datetime
from pathlib import Path

from codeintel.config import (
    _DEFAULTS,
    _get,
    _load_file_config,
    load_settings,
    set_config_value,
)
from codeintel.engine import CodeIntelEngine
from codeintel.errors import EmbeddingUnavailable
from codeintel.history import UserPattern, load_patterns, save_patterns
from codeintel.models import CompletionLevel, Position, SearchFilter

logger = logging.getLogger(__name__)


def setup_logging() -> str:
    """Configure file logging. Returns the log file path."""
    log_dir = Path("log")
    log_dir.mkdir(exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = log_dir / f"codeintel-{timestamp}.log"
    logging.basicConfig(
        filename=str(log_file),
        level=logging.DEBUG,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    # Third-party chatter
    for name in ("httpx", "httpcore", "openai", "watchdog", "sentence_transformers"):
        logging.getLogger(name).setLevel(logging.WARNING)
    return str(log_file)


def _make_engine(args: argparse.Namespace) -> CodeIntelEngine:
    return CodeIntelEngine(load_settings(args.index_dir))


# ── Commands ─────────────────────────────────────────────────────────────


async def _index(engine: CodeIntelEngine, args: argparse.Namespace) -> int:
    last = None
    async for progress in engine.index_project(args.root):
        last = progress
        if progress.current_path and args.verbose:
            print(f"  [{progress.files_indexed}/{progress.total_files}] {progress.current_path}")
    if last is None:
        return 0
    for error in last.errors:
        print(f"! {error.path}: {error.error}")
    print(
        f"Indexed {last.files_indexed}/{last.total_files} file(s), "
        f"{len(last.errors)} error(s)"
    )
    return 1 if last.errors else 0


async def _search(engine: CodeIntelEngine, args: argparse.Namespace) -> int:
    if args.reindex:
        async for _ in engine.index_project(args.root):
            pass
    search_filter = SearchFilter(
        project=str(Path(args.root).resolve()), language=args.language
    )
    try:
        results = await engine.search(args.query, search_filter, k=args.k)
    except EmbeddingUnavailable as e:
        print(f"Search failed: {e}")
        return 1
    if not results:
        print("No matches.")
        return 0
    for result in results:
        print(f"{result.similarity:.3f}  {result.block.label}")
    return 0


async def _complete(engine: CodeIntelEngine, args: argparse.Namespace) -> int:
    engine.projects.add(str(Path(args.root).resolve()))

    def report(done: int, total: int) -> None:
        print(f"  plan: {done}/{total}")

    result = await engine.request_completion(
        args.file,
        Position(args.line, args.column),
        CompletionLevel(args.level),
        progress=report,
    )
    if not result.delivered:
        reason = result.reason.value if result.reason else result.state.value
        print(f"Completion {result.state.value} ({reason}): {result.message}")
        return 1
    if not result.candidates:
        print("No suggestion.")
        return 0
    for candidate in result.candidates:
        target = candidate.target_file or args.file
        print(f"--- {target} {candidate.target_symbol or ''} (confidence {candidate.confidence:.2f})")
        print(candidate.text)
    return 0


async def _watch(engine: CodeIntelEngine, args: argparse.Namespace) -> int:
    async for _ in engine.index_project(args.root):
        pass
    await engine.watch(args.root)
    print(f"Watching {args.root} (Ctrl+C to stop)")
    await asyncio.Event().wait()
    return 0


async def _status(engine: CodeIntelEngine, args: argparse.Namespace) -> int:
    for key, value in engine.status().items():
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value) or "-"
        print(f"{key:20} {value}")
    return 0


async def _prune(engine: CodeIntelEngine, args: argparse.Namespace) -> int:
    removed = await engine.catalog.prune_embeddings(engine.embeddings.model_version)
    print(f"Removed {removed} cached embedding(s) of other models")
    return 0


_COMMANDS = {
    "index": _index,
    "search": _search,
    "complete": _complete,
    "watch": _watch,
    "status": _status,
    "prune": _prune,
}


# ── Commands without an engine ───────────────────────────────────────────


def _config(args: argparse.Namespace) -> int:
    if args.key is None:
        for key, value in sorted(_load_file_config().items()):
            print(f"{key:20} {value}")
        return 0
    if args.key not in _DEFAULTS:
        print(f"Unknown setting: {args.key}")
        return 1
    if args.value is None:
        print(_get(args.key))
        return 0
    path = set_config_value(args.key, args.value)
    print(f"Saved {args.key} to {path}")
    return 0


def _patterns(args: argparse.Namespace) -> int:
    patterns = load_patterns()
    if args.action == "add":
        if not args.name or not args.text:
            print("patterns add needs a name and a text")
            return 1
        patterns = [p for p in patterns if p.name != args.name]
        patterns.append(UserPattern(name=args.name, text=args.text))
        path = save_patterns(patterns)
        print(f"Saved {len(patterns)} pattern(s) to {path}")
        return 0
    if args.action == "remove":
        kept = [p for p in patterns if p.name != args.name]
        if len(kept) == len(patterns):
            print(f"No pattern named {args.name}")
            return 1
        save_patterns(kept)
        print(f"Removed {args.name}")
        return 0
    if not patterns:
        print("No patterns.")
    for pattern in patterns:
        print(f"{pattern.name}: {pattern.text}")
    return 0


_LOCAL_COMMANDS = {
    "config": _config,
    "patterns": _patterns,
}


async def run(args: argparse.Namespace) -> int:
    async with _make_engine(args) as engine:
        return await _COMMANDS[args.command](engine, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="codeintel - semantic code index and multi-level completion"
    )
    parser.add_argument(
        "--log",
        action="store_true",
        help="Enable logging to log/codeintel-{datetime}.log",
    )
    parser.add_argument(
        "--index-dir",
        default=None,
        help="Index directory (default: ~/.codeintel/index)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    index = commands.add_parser("index", help="Index a project")
    index.add_argument("root")
    index.add_argument("-v", "--verbose", action="store_true")

    search = commands.add_parser("search", help="Semantic search in a project")
    search.add_argument("root")
    search.add_argument("query")
    search.add_argument("-k", type=int, default=10)
    search.add_argument("--language", default=None)
    search.add_argument(
        "--reindex", action="store_true", help="Bring the index up to date first"
    )

    complete = commands.add_parser("complete", help="Complete at a position")
    complete.add_argument("root")
    complete.add_argument("file")
    complete.add_argument("line", type=int, help="Zero-based line")
    complete.add_argument("column", type=int, help="Zero-based column")
    complete.add_argument(
        "--level",
        choices=[level.value for level in CompletionLevel],
        default=CompletionLevel.LINE.value,
    )

    watch = commands.add_parser("watch", help="Index a project and follow changes")
    watch.add_argument("root")

    commands.add_parser("status", help="Show index status")
    commands.add_parser(
        "prune", help="Drop cached embeddings made by other models"
    )

    settings = commands.add_parser("config", help="Show or change settings")
    settings.add_argument("key", nargs="?")
    settings.add_argument("value", nargs="?")

    patterns = commands.add_parser("patterns", help="Manage completion patterns")
    patterns.add_argument(
        "action", nargs="?", choices=["list", "add", "remove"], default="list"
    )
    patterns.add_argument("name", nargs="?")
    patterns.add_argument("text", nargs="?")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.log:
        log_file = setup_logging()
        print(f"Logging to: {log_file}")

    if args.command in _LOCAL_COMMANDS:
        return _LOCAL_COMMANDS[args.command](args)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
