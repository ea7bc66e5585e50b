"""TabX completion orchestrator.

Every request runs through a small state machine::

    IDLE → CONTEXT_BUILDING → MODEL_INVOCATION → POST_PROCESSING
         → DELIVERED | FAILED | CANCELLED

Line and Block requests make one oracle call. Component and Feature requests
use a two-phase protocol: the oracle first returns a JSON plan of
``{file, symbol, instruction}`` targets, then each target is completed in
plan order with its own assembled context. Component plans are restricted to
the current file.

At most one request per (file, level) is in flight; a newer request cancels
and replaces the pending one, whose caller receives a CANCELLED result.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from codeintel.config import EngineSettings
from codeintel.context import AssembledContext, ContextAssembler, Document
from codeintel.errors import (
    BudgetExceeded,
    InvalidPlan,
    InvalidTransition,
    ModelTimeout,
    ModelUnavailable,
)
from codeintel.models import (
    CompletionCandidate,
    CompletionLevel,
    CompletionRequest,
    CompletionResult,
    CompletionState,
    FailureReason,
    Position,
    Selection,
)
from codeintel.oracle import CompletionOracle, OracleOptions, parse_json, strip_fences
from codeintel.parser import (
    ParserAdapter,
    position_to_offset,
    read_source,
    statement_terminator,
)
from codeintel.prompt import LLMPrompt, load_prompt

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
DocumentLoader = Callable[[str], Awaitable[Document]]

_TRANSITIONS: dict[CompletionState, frozenset[CompletionState]] = {
    CompletionState.IDLE: frozenset(
        {CompletionState.CONTEXT_BUILDING, CompletionState.CANCELLED}
    ),
    CompletionState.CONTEXT_BUILDING: frozenset(
        {
            CompletionState.MODEL_INVOCATION,
            CompletionState.FAILED,
            CompletionState.CANCELLED,
        }
    ),
    CompletionState.MODEL_INVOCATION: frozenset(
        {
            CompletionState.POST_PROCESSING,
            CompletionState.FAILED,
            CompletionState.CANCELLED,
        }
    ),
    CompletionState.POST_PROCESSING: frozenset(
        {
            CompletionState.DELIVERED,
            CompletionState.FAILED,
            CompletionState.CANCELLED,
        }
    ),
    CompletionState.DELIVERED: frozenset(),
    CompletionState.FAILED: frozenset(),
    CompletionState.CANCELLED: frozenset(),
}

_MAX_TOKENS = {
    CompletionLevel.LINE: 64,
    CompletionLevel.BLOCK: 512,
    CompletionLevel.COMPONENT: 1024,
    CompletionLevel.FEATURE: 1024,
}

# Samples requested per call; extra samples become alternatives
_SAMPLES = {
    CompletionLevel.LINE: 3,
    CompletionLevel.BLOCK: 2,
    CompletionLevel.COMPONENT: 1,
    CompletionLevel.FEATURE: 1,
}

_BRACE_LANGUAGES = frozenset({"javascript", "typescript", "tsx", "go", "rust"})

# Longest completion scanned line by line for structural completeness
_STRUCTURE_SCAN_LINES = 200


# ---------------------------------------------------------------------------
# Request lifecycle
# ---------------------------------------------------------------------------


class CancellationToken:
    """Set when a request is superseded."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class CompletionTask:
    """State machine for a single completion request."""

    def __init__(self, request: CompletionRequest):
        self.request = request
        self.state = CompletionState.IDLE
        self.history: list[CompletionState] = [CompletionState.IDLE]

    def transition(self, new_state: CompletionState) -> None:
        """Move to *new_state*.

        Raises:
            InvalidTransition: If the move is not allowed from the current state.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Request {self.request.request_id}: "
                f"{self.state.value} -> {new_state.value} is not allowed"
            )
        logger.debug(
            "Completion %s (%s %s): %s -> %s",
            self.request.request_id[:8],
            self.request.level.value,
            self.request.file,
            self.state.value,
            new_state.value,
        )
        self.state = new_state
        self.history.append(new_state)

    def deliver(self, candidates: list[CompletionCandidate]) -> CompletionResult:
        self.transition(CompletionState.DELIVERED)
        return CompletionResult(
            request_id=self.request.request_id,
            state=CompletionState.DELIVERED,
            candidates=candidates,
        )

    def fail(self, reason: FailureReason, message: str) -> CompletionResult:
        self.transition(CompletionState.FAILED)
        logger.info(
            "Completion %s failed (%s): %s",
            self.request.request_id[:8],
            reason.value,
            message,
        )
        return CompletionResult(
            request_id=self.request.request_id,
            state=CompletionState.FAILED,
            reason=reason,
            message=message,
        )

    def cancel(self) -> CompletionResult:
        if self.state not in (CompletionState.DELIVERED, CompletionState.CANCELLED):
            self.transition(CompletionState.CANCELLED)
        return cancelled_result(self.request)


def cancelled_result(request: CompletionRequest) -> CompletionResult:
    return CompletionResult(
        request_id=request.request_id,
        state=CompletionState.CANCELLED,
        message="superseded by a newer request",
    )


@dataclass
class _Inflight:
    request_id: str
    task: asyncio.Task
    token: CancellationToken

    def cancel(self) -> None:
        self.token.cancel()
        if not self.task.done():
            self.task.cancel()


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlanTarget:
    file: str  # Absolute path
    symbol: str
    instruction: str = ""


@dataclass
class CompletionPlan:
    targets: list[PlanTarget] = field(default_factory=list)
    raw: str = ""

    def describe(self, project: str, done: int = 0) -> str:
        lines = []
        for i, target in enumerate(self.targets):
            mark = "x" if i < done else " "
            rel = os.path.relpath(target.file, project)
            lines.append(f"[{mark}] {i + 1}. {rel} :: {target.symbol}: {target.instruction}")
        return "\n".join(lines)


def _resolve_target_path(project: str, file: str) -> str | None:
    """Absolute path of a plan file, or None if it leaves the project."""
    root = os.path.abspath(project)
    path = os.path.abspath(os.path.join(root, file))
    if path != root and not path.startswith(root + os.sep):
        return None
    return path


def parse_plan(
    raw: str,
    project: str,
    current_file: str,
    max_targets: int,
    restrict_to_file: bool = False,
) -> CompletionPlan:
    """Validate the oracle's phase-one output.

    Accepts a JSON array of targets, or an object holding one under
    ``targets``/``steps``/``plan``. Targets outside the project (and, when
    *restrict_to_file* is set, outside *current_file*) are discarded; the
    rest are capped at *max_targets*.

    Raises:
        InvalidPlan: If no usable target remains.
    """
    data = parse_json(raw)
    if isinstance(data, dict):
        for key in ("targets", "steps", "plan"):
            if isinstance(data.get(key), list):
                data = data[key]
                break
    if not isinstance(data, list):
        raise InvalidPlan("Plan is not a JSON array of targets")

    current = os.path.abspath(current_file)
    targets: list[PlanTarget] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        file = item.get("file")
        symbol = item.get("symbol")
        if not isinstance(file, str) or not file.strip():
            continue
        if not isinstance(symbol, str) or not symbol.strip():
            continue
        path = _resolve_target_path(project, file.strip())
        if path is None:
            logger.warning("Dropping plan target outside the project: %s", file)
            continue
        if restrict_to_file and path != current:
            logger.debug("Dropping plan target for another file: %s", file)
            continue
        instruction = item.get("instruction")
        targets.append(
            PlanTarget(
                file=path,
                symbol=symbol.strip(),
                instruction=instruction.strip() if isinstance(instruction, str) else "",
            )
        )

    if not targets:
        raise InvalidPlan("Plan contains no usable targets")
    if len(targets) > max_targets:
        logger.info("Plan truncated from %d to %d targets", len(targets), max_targets)
        targets = targets[:max_targets]
    return CompletionPlan(targets=targets, raw=raw)


# ---------------------------------------------------------------------------
# Stop conditions & scoring
# ---------------------------------------------------------------------------


def stop_line(text: str, language: str | None, line_prefix: str = "") -> str:
    """Cut a line completion at the newline or the statement terminator.

    The terminator only ends the statement outside parentheses, so the
    header of a ``for (...; ...; ...)`` loop is kept whole.
    """
    text = text.split("\n", 1)[0]
    terminator = statement_terminator(language)
    if terminator:
        depth = line_prefix.count("(") - line_prefix.count(")")
        for i, ch in enumerate(text):
            if ch in "([":
                depth += 1
            elif ch in ")]":
                depth -= 1
            elif ch == terminator and depth <= 0:
                return text[: i + 1]
    return text.rstrip()


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def stop_block(text: str, context: AssembledContext, document: Document) -> str:
    """Cut a block completion at the end of the enclosing block."""
    enclosing = context.enclosing
    if context.language in _BRACE_LANGUAGES:
        opened = ""
        if enclosing is not None:
            opened = document.parsed.source[
                enclosing.byte_start : context.cursor_offset
            ].decode("utf-8", errors="replace")
        depth = opened.count("{") - opened.count("}")
        for i, ch in enumerate(text):
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[: i + 1]
                if depth < 0:
                    return text[:i].rstrip()
        return text.rstrip()

    if enclosing is None:
        return text.rstrip()
    # Indentation-scoped languages: stop at the first dedent to the header
    header = document.text.split("\n")[enclosing.line_start - 1]
    base = _indent(header)
    lines = text.split("\n")
    kept = [lines[0]]
    for line in lines[1:]:
        if line.strip() and _indent(line) <= base:
            break
        kept.append(line)
    return "\n".join(kept).rstrip()


def selected_text(document: Document, selection: Selection | None) -> str:
    if selection is None:
        return ""
    source = document.parsed.source
    start = position_to_offset(document.text, selection.start)
    end = position_to_offset(document.text, selection.end)
    start, end = min(start, end), max(start, end)
    return source[start:end].decode("utf-8", errors="replace")


def splice(document: Document, offset: int, text: str) -> str:
    """Document text with *text* inserted at byte *offset*."""
    source = document.parsed.source
    return (source[:offset] + text.encode("utf-8") + source[offset:]).decode(
        "utf-8", errors="replace"
    )


def score_confidence(
    likelihood: float | None,
    mean_similarity: float | None,
    syntax_ok: bool,
    truncation: float,
) -> float:
    """Confidence in [0, 1].

    The oracle's likelihood wins when reported. Otherwise blend neighbour
    similarity with syntax validity of the spliced text, minus a penalty
    for context that had to be dropped.
    """
    if likelihood is not None:
        value = likelihood
    else:
        similarity = mean_similarity if mean_similarity is not None else 0.5
        value = 0.45 * similarity + 0.45 * (1.0 if syntax_ok else 0.0) + 0.10
        value -= 0.3 * truncation
    return min(max(value, 0.0), 1.0)


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class CompletionOrchestrator:
    """Runs completion requests against an oracle with assembled context."""

    def __init__(
        self,
        assembler: ContextAssembler,
        oracle: CompletionOracle,
        parser: ParserAdapter,
        settings: EngineSettings,
        load_document: DocumentLoader | None = None,
    ) -> None:
        self.assembler = assembler
        self.oracle = oracle
        self.parser = parser
        self.settings = settings
        self.load_document = load_document or self._load_from_disk
        self._inflight: dict[tuple[str, CompletionLevel], _Inflight] = {}

    @property
    def pending(self) -> int:
        return sum(1 for h in self._inflight.values() if not h.task.done())

    async def complete(
        self,
        request: CompletionRequest,
        document: Document,
        project: str,
        progress: ProgressCallback | None = None,
    ) -> CompletionResult:
        """Run *request*, superseding any pending one for the same file and level."""
        key = (request.file, request.level)
        previous = self._inflight.get(key)
        if previous is not None:
            logger.debug(
                "Request %s supersedes %s",
                request.request_id[:8],
                previous.request_id[:8],
            )
            previous.cancel()

        token = CancellationToken()
        task = asyncio.create_task(
            self._run(request, document, project, token, progress)
        )
        handle = _Inflight(request.request_id, task, token)
        self._inflight[key] = handle
        try:
            result = await task
        except asyncio.CancelledError:
            if token.cancelled:
                return cancelled_result(request)
            raise
        finally:
            if self._inflight.get(key) is handle:
                del self._inflight[key]

        if token.cancelled and not result.cancelled:
            # Finished after being superseded; discard
            return cancelled_result(request)
        return result

    async def cancel_all(self) -> None:
        handles = list(self._inflight.values())
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def _run(
        self,
        request: CompletionRequest,
        document: Document,
        project: str,
        token: CancellationToken,
        progress: ProgressCallback | None,
    ) -> CompletionResult:
        state = CompletionTask(request)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.deadline_for(request.level)
        try:
            state.transition(CompletionState.CONTEXT_BUILDING)
            context = await self._assemble(request, document, project, deadline)
            if token.cancelled:
                return state.cancel()

            state.transition(CompletionState.MODEL_INVOCATION)
            if request.level in (CompletionLevel.LINE, CompletionLevel.BLOCK):
                candidates = await self._single_call(
                    state, request, document, context, deadline
                )
            else:
                candidates = await self._two_phase(
                    state, request, document, project, context, deadline, token, progress
                )
            if token.cancelled:
                return state.cancel()
            return state.deliver(candidates)
        except asyncio.CancelledError:
            if token.cancelled:
                return state.cancel()
            raise
        except BudgetExceeded as e:
            return state.fail(FailureReason.BUDGET_EXCEEDED, str(e))
        except ModelTimeout as e:
            return state.fail(FailureReason.MODEL_TIMEOUT, str(e))
        except ModelUnavailable as e:
            return state.fail(FailureReason.MODEL_UNAVAILABLE, str(e))
        except InvalidPlan as e:
            return state.fail(FailureReason.INVALID_PLAN, str(e))

    @staticmethod
    def _remaining(deadline: float) -> float:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise ModelTimeout("Completion deadline expired")
        return remaining

    async def _assemble(
        self,
        request: CompletionRequest,
        document: Document,
        project: str,
        deadline: float,
    ) -> AssembledContext:
        try:
            return await asyncio.wait_for(
                self.assembler.assemble(
                    request,
                    document,
                    project,
                    self.settings.budget_for(request.level),
                ),
                timeout=self._remaining(deadline),
            )
        except asyncio.TimeoutError as e:
            raise ModelTimeout("Deadline expired while building context") from e

    async def _invoke(
        self,
        prompt: LLMPrompt,
        values: dict[str, str],
        level: CompletionLevel,
        deadline: float,
        samples: int = 1,
    ):
        messages: list[BaseMessage] = [
            SystemMessage(content=prompt.system),
            HumanMessage(content=prompt.render(**values)),
        ]
        remaining = self._remaining(deadline)
        options = OracleOptions(
            max_tokens=_MAX_TOKENS[level],
            stop=["\n"] if level is CompletionLevel.LINE else [],
            n=samples,
            timeout=remaining,
            model_type=prompt.model,
        )
        try:
            return await asyncio.wait_for(
                self.oracle.complete(messages, options), timeout=remaining
            )
        except asyncio.TimeoutError as e:
            raise ModelTimeout(f"Oracle did not answer within {remaining:.2f}s") from e

    # ── Line & Block ───────────────────────────────────────────────────

    def _apply_stop(
        self,
        level: CompletionLevel,
        text: str,
        context: AssembledContext,
        document: Document,
    ) -> str:
        text = strip_fences(text)
        if level is CompletionLevel.LINE:
            return stop_line(text, context.language, context.line_prefix)
        return stop_block(text, context, document)

    async def _syntax_ok(self, document: Document, offset: int, text: str) -> bool:
        """True if splicing *text* adds no syntax errors to the document."""
        language = document.language
        if not self.parser.supports(language):
            return True

        def check() -> bool:
            spliced = splice(document, offset, text)
            if not self.parser.has_syntax_errors(language, spliced):
                return True
            before = self.parser.error_count(language, document.text)
            return self.parser.error_count(language, spliced) <= before

        return await asyncio.to_thread(check)

    async def _single_call(
        self,
        state: CompletionTask,
        request: CompletionRequest,
        document: Document,
        context: AssembledContext,
        deadline: float,
    ) -> list[CompletionCandidate]:
        level = request.level
        prompt = load_prompt("completion", level.value)
        values = {"language": context.language or "text", "context": context.text}
        if level is CompletionLevel.BLOCK:
            values["enclosing"] = context.enclosing.label if context.enclosing else "none"
        response = await self._invoke(
            prompt, values, level, deadline, samples=_SAMPLES[level]
        )

        state.transition(CompletionState.POST_PROCESSING)
        primary = self._apply_stop(level, response.text, context, document)
        alternatives = []
        for alt in response.alternatives:
            alt = self._apply_stop(level, alt, context, document)
            if alt.strip() and alt != primary and alt not in alternatives:
                alternatives.append(alt)
        if not primary.strip():
            if not alternatives:
                return []
            primary = alternatives.pop(0)

        syntax_ok = await self._syntax_ok(document, context.cursor_offset, primary)
        confidence = score_confidence(
            response.likelihood,
            context.mean_similarity,
            syntax_ok,
            context.truncation,
        )
        return [
            CompletionCandidate(
                text=primary,
                level=level,
                confidence=confidence,
                alternatives=alternatives,
                provenance=context.provenance,
                language=context.language,
                target_file=request.file,
                target_symbol=context.enclosing.name if context.enclosing else None,
            )
        ]

    # ── Component & Feature ────────────────────────────────────────────

    async def _load_from_disk(self, path: str) -> Document:
        """Document for a plan target; empty when the file does not exist yet."""

        def load() -> Document:
            text = read_source(path) if os.path.isfile(path) else ""
            return Document(path=path, text=text, parsed=self.parser.parse(path, text))

        return await asyncio.to_thread(load)

    def _structural_stop(self, document: Document, offset: int, text: str) -> str:
        """Longest line prefix of *text* that adds no syntax errors to the document.

        Trailing chatter after the last complete structure is dropped. When no
        prefix is complete the text is returned as is.
        """
        language = document.language
        if not self.parser.supports(language):
            return text.rstrip()
        baseline = self.parser.error_count(language, document.text)
        lines = text.split("\n")[:_STRUCTURE_SCAN_LINES]
        complete = ""
        for end in range(1, len(lines) + 1):
            candidate = "\n".join(lines[:end])
            if not candidate.strip():
                continue
            spliced = splice(document, offset, candidate)
            if self.parser.error_count(language, spliced) <= baseline:
                complete = candidate
        return complete.rstrip() if complete.strip() else text.rstrip()

    @staticmethod
    def _target_position(document: Document, symbol: str) -> Position:
        """Cursor for a plan target: end of the named block, else end of file."""
        lines = document.text.split("\n")
        for block in document.parsed.blocks:
            if block.name == symbol and block.line_end - 1 < len(lines):
                row = block.line_end - 1
                return Position(line=row, column=len(lines[row]))
        return Position(line=len(lines) - 1, column=len(lines[-1]))

    async def _plan(
        self,
        request: CompletionRequest,
        document: Document,
        project: str,
        context: AssembledContext,
        deadline: float,
    ) -> CompletionPlan:
        restrict = request.level is CompletionLevel.COMPONENT
        rel_path = os.path.relpath(document.path, project)
        if restrict:
            scope = f"Only plan changes to {rel_path}."
        else:
            scope = "The plan may touch several files, including new ones."
        selected = selected_text(document, request.selection)
        if selected:
            scope += f"\nFocus on the selected code:\n{selected}"
        response = await self._invoke(
            load_prompt("completion", "plan"),
            {
                "project": project,
                "path": rel_path,
                "language": context.language or "text",
                "max_targets": str(self.settings.max_plan_targets),
                "scope": scope,
                "context": context.text,
            },
            request.level,
            deadline,
        )
        plan = parse_plan(
            response.text,
            project,
            document.path,
            self.settings.max_plan_targets,
            restrict_to_file=restrict,
        )
        logger.info(
            "Plan for %s (%s): %d target(s)",
            rel_path,
            request.level.value,
            len(plan.targets),
        )
        return plan

    async def _two_phase(
        self,
        state: CompletionTask,
        request: CompletionRequest,
        document: Document,
        project: str,
        context: AssembledContext,
        deadline: float,
        token: CancellationToken,
        progress: ProgressCallback | None,
    ) -> list[CompletionCandidate]:
        plan = await self._plan(request, document, project, context, deadline)
        total = len(plan.targets)
        if progress is not None:
            progress(0, total)

        # Component targets all live in the current file
        prompt_name = "component" if request.level is CompletionLevel.COMPONENT else "target"
        prompt = load_prompt("completion", prompt_name)
        outputs: list[tuple[PlanTarget, Document, AssembledContext, str, float | None]] = []
        for i, target in enumerate(plan.targets):
            if token.cancelled:
                break
            if target.file == os.path.abspath(document.path):
                target_doc = document
            else:
                target_doc = await self.load_document(target.file)
            if target_doc is document and request.level is CompletionLevel.COMPONENT:
                target_request = request
            else:
                target_request = CompletionRequest(
                    file=target.file,
                    position=self._target_position(target_doc, target.symbol),
                    level=request.level,
                    request_id=request.request_id,
                )
            target_context = await self._assemble(
                target_request, target_doc, project, deadline
            )
            response = await self._invoke(
                prompt,
                {
                    "language": target_context.language or "text",
                    "path": os.path.relpath(target.file, project),
                    "symbol": target.symbol,
                    "enclosing": target.symbol,
                    "instruction": target.instruction or "Implement it.",
                    "plan": plan.describe(project, done=i),
                    "context": target_context.text,
                },
                request.level,
                deadline,
            )
            outputs.append(
                (
                    target,
                    target_doc,
                    target_context,
                    strip_fences(response.text),
                    response.likelihood,
                )
            )
            if progress is not None:
                progress(i + 1, total)

        state.transition(CompletionState.POST_PROCESSING)
        if request.level is CompletionLevel.COMPONENT:
            candidate = await self._component_candidate(
                request, document, context, outputs
            )
            return [candidate] if candidate is not None else []

        candidates = []
        for target, target_doc, target_context, text, likelihood in outputs:
            text = text.rstrip()
            if not text.strip():
                continue
            syntax_ok = await self._syntax_ok(
                target_doc, target_context.cursor_offset, text
            )
            candidates.append(
                CompletionCandidate(
                    text=text,
                    level=request.level,
                    confidence=score_confidence(
                        likelihood,
                        target_context.mean_similarity,
                        syntax_ok,
                        target_context.truncation,
                    ),
                    provenance=target_context.provenance,
                    language=target_context.language,
                    target_file=target.file,
                    target_symbol=target.symbol,
                )
            )
        return candidates

    async def _component_candidate(
        self,
        request: CompletionRequest,
        document: Document,
        context: AssembledContext,
        outputs: list,
    ) -> CompletionCandidate | None:
        """Join the per-target outputs into one structurally complete insertion."""
        joined = "\n".join(text.strip("\n") for _, _, _, text, _ in outputs if text.strip())
        text = await asyncio.to_thread(
            self._structural_stop, document, context.cursor_offset, joined
        )
        if not text.strip():
            return None
        syntax_ok = await self._syntax_ok(document, context.cursor_offset, text)
        likelihoods = [o[4] for o in outputs if o[4] is not None]
        provenance = list(context.provenance)
        for _, _, target_context, _, _ in outputs:
            for block_id in target_context.provenance:
                if block_id not in provenance:
                    provenance.append(block_id)
        return CompletionCandidate(
            text=text,
            level=request.level,
            confidence=score_confidence(
                _mean(likelihoods),
                context.mean_similarity,
                syntax_ok,
                context.truncation,
            ),
            provenance=provenance,
            language=context.language,
            target_file=request.file,
            target_symbol=context.enclosing.name if context.enclosing else None,
        )
