"""Embedding generator boundary and the (content hash, model version) cache.

The engine only depends on the :class:`Embedder` contract. The default
implementation wraps a local sentence-transformers model; tests inject their
own deterministic embedder.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import warnings
from typing import Any, Protocol, Union

import numpy as np

from codeintel.errors import EmbeddingUnavailable
from codeintel.models import SemanticBlock, content_hash
from codeintel.storage import Catalog

logger = logging.getLogger(__name__)

# Default model - small, fast, good quality
DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"

EmbedOutcome = Union[np.ndarray, EmbeddingUnavailable]


class Embedder(Protocol):
    """Text -> fixed-dimension vector.

    Identical (text, model_version) must give the same vector.
    """

    model_version: str

    def embed(self, text: str) -> np.ndarray: ...

    def embed_batch(self, texts: list[str]) -> list[EmbedOutcome]: ...


class SentenceTransformerEmbedder:
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "") -> None:
        self.model_name = model_name or DEFAULT_EMBEDDING_MODEL
        self.model_version = f"sentence-transformers/{self.model_name}"
        self._model: Any = None
        self._lock = threading.Lock()

    def _get_model(self) -> Any:
        """Get or initialize the embedding model (downloads on first use)."""
        with self._lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                # Suppress harmless transformer library warnings
                warnings.filterwarnings("ignore", message=".*position_ids.*")
                logging.getLogger("transformers.modeling_utils").setLevel(
                    logging.ERROR
                )
                try:
                    self._model = SentenceTransformer(self.model_name)
                except Exception as e:
                    raise EmbeddingUnavailable(
                        f"Failed to load embedding model '{self.model_name}': {e}"
                    ) from e
            return self._model

    def embed(self, text: str) -> np.ndarray:
        model = self._get_model()
        try:
            embedding = model.encode(text, convert_to_numpy=True)
        except Exception as e:
            raise EmbeddingUnavailable(str(e)) from e
        return embedding.astype(np.float32)

    def embed_batch(self, texts: list[str]) -> list[EmbedOutcome]:
        """Embed multiple texts in a batch, preserving order."""
        if not texts:
            return []
        model = self._get_model()
        try:
            embeddings = model.encode(
                texts, convert_to_numpy=True, show_progress_bar=False
            )
        except Exception as e:
            logger.warning("Batch embedding failed, retrying one by one: %s", e)
            results: list[EmbedOutcome] = []
            for text in texts:
                try:
                    results.append(self.embed(text))
                except EmbeddingUnavailable as item_error:
                    results.append(item_error)
            return results
        return [emb.astype(np.float32) for emb in embeddings]


def build_enriched_text(block: SemanticBlock, imports: tuple[str, ...] = ()) -> str:
    """Build enriched text for embedding from a block."""
    parts = [f"File: {block.path}"]
    if imports:
        parts.append(f"Imports: {', '.join(imports[:5])}")
    type_label = block.kind.value.capitalize()
    if block.name:
        parts.append(f"{type_label}: {block.name}")
    else:
        parts.append(f"Type: {type_label}")
    parts.append("")  # Empty line before code
    parts.append(block.text)
    return "\n".join(parts)


class EmbeddingService:
    """Cached, non-blocking access to an :class:`Embedder`.

    Vectors are cached in memory and in the catalog under
    ``(content_hash(text), model_version)``. After a model upgrade the
    cache simply misses and entries are re-embedded lazily.
    """

    def __init__(
        self,
        embedder: Embedder,
        catalog: Catalog | None = None,
        timeout: float = 30.0,
        memory_limit: int = 50_000,
    ) -> None:
        self.embedder = embedder
        self.catalog = catalog
        self.timeout = timeout
        self.memory_limit = memory_limit
        self._memory: dict[tuple[str, str], np.ndarray] = {}

    @property
    def model_version(self) -> str:
        return self.embedder.model_version

    def _remember(self, key: tuple[str, str], vector: np.ndarray) -> None:
        if len(self._memory) >= self.memory_limit:
            # Drop the oldest insertion
            self._memory.pop(next(iter(self._memory)))
        self._memory[key] = vector

    async def embed_many(self, texts: list[str]) -> list[EmbedOutcome]:
        """Embed *texts*, serving cache hits and batching misses.

        Returns one vector or :class:`EmbeddingUnavailable` per input, in
        order. Never raises for per-item failures.
        """
        version = self.model_version
        hashes = [content_hash(t) for t in texts]
        results: list[EmbedOutcome | None] = [None] * len(texts)

        missing: list[int] = []
        for i, h in enumerate(hashes):
            cached = self._memory.get((h, version))
            if cached is not None:
                results[i] = cached
            else:
                missing.append(i)

        if missing and self.catalog is not None:
            stored = await self.catalog.get_embeddings(
                [hashes[i] for i in missing], version
            )
            still_missing = []
            for i in missing:
                vector = stored.get(hashes[i])
                if vector is not None:
                    results[i] = vector
                    self._remember((hashes[i], version), vector)
                else:
                    still_missing.append(i)
            missing = still_missing

        if missing:
            # Embed each distinct text once
            unique: dict[str, int] = {}
            for i in missing:
                unique.setdefault(hashes[i], i)
            batch = [texts[i] for i in unique.values()]
            try:
                outcomes = await asyncio.wait_for(
                    asyncio.to_thread(self.embedder.embed_batch, batch),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                outcomes = [
                    EmbeddingUnavailable("embedding timed out") for _ in batch
                ]
            except EmbeddingUnavailable as e:
                outcomes = [e for _ in batch]

            fresh: dict[str, np.ndarray] = {}
            by_hash: dict[str, EmbedOutcome] = {}
            for h, outcome in zip(unique.keys(), outcomes):
                by_hash[h] = outcome
                if isinstance(outcome, np.ndarray):
                    vector = np.asarray(outcome, dtype=np.float32)
                    by_hash[h] = vector
                    fresh[h] = vector
                    self._remember((h, version), vector)
            for i in missing:
                results[i] = by_hash[hashes[i]]
            if fresh and self.catalog is not None:
                await self.catalog.put_embeddings(fresh, version)

        return [r if r is not None else EmbeddingUnavailable("missing") for r in results]

    async def embed_one(self, text: str) -> np.ndarray:
        """Embed a single text.

        Raises:
            EmbeddingUnavailable: If the embedder fails or times out.
        """
        (outcome,) = await self.embed_many([text])
        if isinstance(outcome, EmbeddingUnavailable):
            raise outcome
        return outcome
