"""Text-completion oracle adapters.

The orchestrator only depends on :class:`CompletionOracle`. Two adapters are
provided:

- :class:`OpenAIOracle` uses the raw OpenAI client against any compatible
  endpoint (LM Studio, vLLM, ...) and reports a likelihood from token
  log-probabilities when the backend returns them.
- :class:`ChatModelOracle` goes through LangChain's ``init_chat_model`` and
  reports no likelihood.

Provider errors are mapped to :class:`ModelUnavailable` and timeouts to
:class:`ModelTimeout`; nothing here invents a response.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai
from langchain.chat_models import init_chat_model
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from openai import AsyncOpenAI

from codeintel.config import EngineSettings
from codeintel.errors import ModelTimeout, ModelUnavailable

logger = logging.getLogger(__name__)


@dataclass
class OracleOptions:
    max_tokens: int = 256
    stop: list[str] = field(default_factory=list)
    temperature: float = 0.2
    n: int = 1  # Number of alternatives requested
    timeout: float | None = None
    model_type: str = "instruction"  # "instruction" or "reasoning"


@dataclass
class OracleResponse:
    text: str
    likelihood: float | None = None
    alternatives: list[str] = field(default_factory=list)


class CompletionOracle(Protocol):
    async def complete(
        self, messages: list[BaseMessage], options: OracleOptions
    ) -> OracleResponse: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def coerce_response_text(content) -> str:
    """Convert LLM response content to a string."""
    if content is None:
        return ""
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return str(content)


def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    stripped = text.strip("\n")
    if stripped.lstrip().startswith("```"):
        stripped = stripped.lstrip().split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
        return stripped.rstrip("\n")
    return text


def parse_json(raw: str) -> dict | list | None:
    """Parse JSON from a response, tolerating markdown fences and preamble text.

    Tries three strategies in order:
    1. Direct parse (response is pure JSON)
    2. Strip markdown fences and parse
    3. Find JSON within free-text (for chain-of-thought responses)
    """
    text = raw.strip()

    # Strategy 1: Direct parse
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Strategy 2: Strip markdown fences
    try:
        return json.loads(strip_fences(text).strip())
    except json.JSONDecodeError:
        pass

    # Strategy 3: Find JSON within free-text
    fence_match = re.search(r"```(?:json)?\s*\n(.*?)```", text, re.DOTALL)
    if fence_match:
        try:
            return json.loads(fence_match.group(1).strip())
        except json.JSONDecodeError:
            pass

    for i, ch in enumerate(text):
        if ch in "{[":
            closing = "}" if ch == "{" else "]"
            for j in range(len(text) - 1, i, -1):
                if text[j] == closing:
                    try:
                        return json.loads(text[i : j + 1])
                    except json.JSONDecodeError:
                        continue
    return None


def _to_openai_messages(messages: list[BaseMessage]) -> list[dict[str, str]]:
    """Convert LangChain messages to OpenAI format."""
    converted = []
    for msg in messages:
        if isinstance(msg, SystemMessage):
            role = "system"
        elif isinstance(msg, HumanMessage):
            role = "user"
        else:
            role = "assistant"
        converted.append({"role": role, "content": str(msg.content)})
    return converted


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class OpenAIOracle:
    """Chat completions over the OpenAI API with log-probability likelihood."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str = "",
        client: AsyncOpenAI | None = None,
        reasoning_model: str = "",
    ) -> None:
        self.model = model or "default"
        self.reasoning_model = reasoning_model
        self.client = client or AsyncOpenAI(base_url=base_url, api_key=api_key)

    async def complete(
        self, messages: list[BaseMessage], options: OracleOptions
    ) -> OracleResponse:
        request: dict[str, Any] = {
            "model": self._model_for(options.model_type),
            "messages": _to_openai_messages(messages),
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "n": max(1, options.n),
            "logprobs": True,
        }
        if options.stop:
            request["stop"] = options.stop[:4]  # API limit
        if options.timeout is not None:
            request["timeout"] = options.timeout
        try:
            response = await self.client.chat.completions.create(**request)
        except openai.APITimeoutError as e:
            raise ModelTimeout(str(e)) from e
        except openai.OpenAIError as e:
            raise ModelUnavailable(str(e)) from e

        if not response.choices:
            raise ModelUnavailable("Model returned no choices")
        texts = [coerce_response_text(c.message.content) for c in response.choices]
        return OracleResponse(
            text=texts[0],
            likelihood=self._likelihood(response.choices[0]),
            alternatives=texts[1:],
        )

    def _model_for(self, model_type: str) -> str:
        if model_type == "reasoning" and self.reasoning_model:
            return self.reasoning_model
        return self.model

    @staticmethod
    def _likelihood(choice: Any) -> float | None:
        """Geometric-mean token probability of a choice, if reported."""
        logprobs = getattr(choice, "logprobs", None)
        content = getattr(logprobs, "content", None) if logprobs else None
        if not content:
            return None
        values = [t.logprob for t in content if t.logprob is not None]
        if not values:
            return None
        return math.exp(sum(values) / len(values))


class ChatModelOracle:
    """Any LangChain chat model; no likelihood is reported."""

    def __init__(self, llm: Any, reasoning_llm: Any | None = None) -> None:
        self.llm = llm
        self.reasoning_llm = reasoning_llm

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> ChatModelOracle:
        def make(model_type: str) -> Any:
            return init_chat_model(
                model=settings.model_for(model_type) or "default",
                model_provider=settings.model_provider,
                base_url=settings.base_url,
                api_key=settings.api_key,
            )

        reasoning = make("reasoning") if settings.reasoning_model_name else None
        return cls(make("instruction"), reasoning)

    async def complete(
        self, messages: list[BaseMessage], options: OracleOptions
    ) -> OracleResponse:
        base = self.llm
        if options.model_type == "reasoning" and self.reasoning_llm is not None:
            base = self.reasoning_llm
        llm = base.bind(
            stop=options.stop or None,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
        )
        try:
            invocation = llm.ainvoke(messages)
            if options.timeout is not None:
                response = await asyncio.wait_for(invocation, options.timeout)
            else:
                response = await invocation
        except asyncio.TimeoutError as e:
            raise ModelTimeout("Chat model timed out") from e
        except Exception as e:  # provider SDKs raise their own hierarchies
            raise ModelUnavailable(f"Chat model failed: {e}") from e
        return OracleResponse(text=coerce_response_text(response.content))


def build_oracle(settings: EngineSettings) -> CompletionOracle:
    """Create the oracle selected by ``settings.oracle``."""
    if settings.oracle == "chat":
        return ChatModelOracle.from_settings(settings)
    return OpenAIOracle(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model_for("instruction"),
        reasoning_model=settings.reasoning_model_name,
    )
