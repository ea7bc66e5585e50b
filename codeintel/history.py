"""Recent-edit session history and learned user-pattern snippets.

Session history is in-memory and bounded (last MAX_HISTORY edits). User
patterns are optional snippets stored as YAML in the data directory::

    - name: guard clause
      text: |
        if not value:
            return None
"""

from __future__ import annotations

import difflib
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path

import yaml

from codeintel.config import config_dir

MAX_HISTORY = 20
# Lines of diff kept per recorded edit
MAX_EDIT_LINES = 12


@dataclass(frozen=True)
class EditRecord:
    path: str
    snippet: str
    timestamp: float


@dataclass(frozen=True)
class UserPattern:
    name: str
    text: str


def _edit_snippet(old: str, new: str) -> str:
    """Changed lines of an edit in unified-diff form (no headers)."""
    lines = [
        line
        for line in difflib.unified_diff(
            old.splitlines(), new.splitlines(), lineterm="", n=0
        )
        if not line.startswith(("---", "+++", "@@"))
    ]
    return "\n".join(lines[:MAX_EDIT_LINES])


class SessionHistory:
    """Bounded log of the most recent edits, newest last."""

    def __init__(self, max_entries: int = MAX_HISTORY):
        self._entries: deque[EditRecord] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def record_edit(self, path: str, old: str, new: str) -> EditRecord | None:
        """Record an edit. Returns None when nothing changed."""
        snippet = _edit_snippet(old, new)
        if not snippet.strip():
            return None
        # Don't add duplicates of the last entry
        if self._entries and self._entries[-1].path == path and (
            self._entries[-1].snippet == snippet
        ):
            return self._entries[-1]
        record = EditRecord(path=path, snippet=snippet, timestamp=time.time())
        self._entries.append(record)
        return record

    def forget(self, path: str) -> None:
        self._entries = deque(
            (e for e in self._entries if e.path != path),
            maxlen=self._entries.maxlen,
        )

    def recent(self, limit: int | None = None) -> list[EditRecord]:
        """Most recent edits, newest first."""
        entries = list(reversed(self._entries))
        return entries if limit is None else entries[:limit]


def _patterns_file() -> Path:
    """Return the path to the user patterns file."""
    return config_dir() / "patterns.yml"


def load_patterns(path: Path | None = None) -> list[UserPattern]:
    """Load user patterns from disk.

    Returns an empty list if the file is missing or malformed.
    """
    path = path or _patterns_file()
    if not path.is_file():
        return []
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return []
    if not isinstance(data, list):
        return []
    patterns: list[UserPattern] = []
    for i, item in enumerate(data):
        if isinstance(item, str) and item.strip():
            patterns.append(UserPattern(name=f"pattern-{i + 1}", text=item))
        elif isinstance(item, dict) and isinstance(item.get("text"), str):
            patterns.append(
                UserPattern(name=str(item.get("name") or f"pattern-{i + 1}"), text=item["text"])
            )
    return patterns


def save_patterns(patterns: list[UserPattern], path: Path | None = None) -> Path:
    """Save user patterns to disk, creating the data directory if needed."""
    path = path or _patterns_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(
            [{"name": p.name, "text": p.text} for p in patterns], sort_keys=False
        ),
        encoding="utf-8",
    )
    return path
