"""Error taxonomy for the code intelligence engine.

Indexing errors are isolated per file; model errors are surfaced to the
caller as typed failures; index corruption triggers a shard rebuild.
"""

from __future__ import annotations

from dataclasses import dataclass


class CodeIntelError(Exception):
    """Base class for all engine errors."""

    pass


class ParseError(CodeIntelError):
    """Raised when a file cannot be parsed at all.

    Partial failures never raise; they are reported as
    :class:`PartialParseWarning` records alongside the recovered blocks.
    """

    def __init__(self, path: str, message: str, fatal: bool = True):
        self.path = path
        self.fatal = fatal
        super().__init__(f"Failed to parse {path}: {message}")


@dataclass(frozen=True)
class PartialParseWarning:
    """A malformed region that was skipped while parsing a file."""

    path: str
    line_start: int
    line_end: int
    message: str = "syntax error"

    def __str__(self) -> str:
        return f"{self.path}:{self.line_start}-{self.line_end}: {self.message}"


class EmbeddingUnavailable(CodeIntelError):
    """The embedding model could not be loaded or failed for an input."""

    pass


class IndexCorruption(CodeIntelError):
    """A persisted index shard failed its integrity check."""

    def __init__(self, shard_path: str, reason: str):
        self.shard_path = shard_path
        self.reason = reason
        super().__init__(f"Corrupted index shard {shard_path}: {reason}")


class ModelUnavailable(CodeIntelError):
    """The completion oracle could not be reached or returned an error."""

    pass


class ModelTimeout(CodeIntelError):
    """The completion oracle did not answer before the deadline."""

    pass


class BudgetExceeded(CodeIntelError):
    """Context assembly had to drop material required for the request."""

    def __init__(self, budget: int, required: int):
        self.budget = budget
        self.required = required
        super().__init__(
            f"Required context ({required} chars) exceeds budget ({budget} chars)"
        )


class InvalidPlan(CodeIntelError):
    """The oracle's structural plan could not be parsed or validated."""

    pass


class InvalidTransition(CodeIntelError):
    """A completion task attempted an illegal state transition."""

    pass
