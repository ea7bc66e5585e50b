"""Shared fixtures: deterministic embedder, scripted oracle and engine."""

import asyncio
import hashlib
import re

import numpy as np
import pytest
import pytest_asyncio

from codeintel.config import EngineSettings
from codeintel.engine import CodeIntelEngine
from codeintel.errors import EmbeddingUnavailable, ModelUnavailable
from codeintel.models import CompletionLevel
from codeintel.oracle import OracleResponse

DIM = 64

_TOKEN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")


class HashingEmbedder:
    """Bag-of-tokens feature hashing: same text, same vector; shared words, close vectors."""

    def __init__(self, dim: int = DIM, model_version: str = "test/hashing-v1"):
        self.dim = dim
        self.model_version = model_version
        self.calls = 0
        self.texts: list[str] = []

    def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        self.texts.append(text)
        vector = np.zeros(self.dim, dtype=np.float32)
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self.dim
            vector[index] += 1.0 if digest[4] % 2 == 0 else -1.0
        if not vector.any():
            vector[0] = 1.0
        return vector

    def embed_batch(self, texts):
        return [self.embed(t) for t in texts]


class FailingEmbedder:
    model_version = "test/failing"

    def embed(self, text):
        raise EmbeddingUnavailable("model offline")

    def embed_batch(self, texts):
        return [EmbeddingUnavailable("model offline") for _ in texts]


class ScriptedOracle:
    """Returns queued responses in order; records every call."""

    def __init__(self, responses=None, delay: float = 0.0, error: Exception | None = None):
        self.responses = list(responses or [])
        self.delay = delay
        self.error = error
        self.calls = []

    async def complete(self, messages, options):
        self.calls.append((messages, options))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if not self.responses:
            raise ModelUnavailable("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, str):
            return OracleResponse(text=response)
        return response

    def prompt_text(self, call: int = -1) -> str:
        messages, _ = self.calls[call]
        return "\n".join(str(m.content) for m in messages)


def make_settings(index_dir, **overrides) -> EngineSettings:
    settings = EngineSettings(
        index_dir=index_dir,
        debounce_seconds=0.01,
        deadlines={
            CompletionLevel.LINE: 5.0,
            CompletionLevel.BLOCK: 5.0,
            CompletionLevel.COMPONENT: 10.0,
            CompletionLevel.FEATURE: 10.0,
        },
        embed_timeout=10.0,
        search_deadline=10.0,
    )
    return settings.with_overrides(**overrides) if overrides else settings


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path / "index")


@pytest.fixture
def project(tmp_path):
    """A small multi-language project."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "math_utils.py").write_text(
        "import os\n"
        "\n"
        "\n"
        "def add_numbers(a, b):\n"
        "    return a + b\n"
        "\n"
        "\n"
        "def multiply_numbers(a, b):\n"
        "    return a * b\n"
    )
    (root / "src" / "shapes.py").write_text(
        "from src.math_utils import multiply_numbers\n"
        "\n"
        "\n"
        "class Rectangle:\n"
        "    def __init__(self, width, height):\n"
        "        self.width = width\n"
        "        self.height = height\n"
        "\n"
        "    def area(self):\n"
        "        return multiply_numbers(self.width, self.height)\n"
    )
    (root / "web").mkdir()
    (root / "web" / "greet.js").write_text(
        "function greet(name) {\n"
        "  return `Hello, ${name}!`;\n"
        "}\n"
    )
    (root / "notes.txt").write_text("Remember to parse the config file.\n")
    return root


@pytest_asyncio.fixture
async def engine(settings, embedder, oracle):
    instance = CodeIntelEngine(settings, embedder=embedder, oracle=oracle, patterns=[])
    await instance.start()
    yield instance
    await instance.close()


async def index_all(engine, root):
    progress = []
    async for event in engine.index_project(str(root)):
        progress.append(event)
    return progress
