"""Embedding backends and the retrying, bounded-concurrency embedding client."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol, Sequence

import httpx
import numpy as np

from filescout.config import DEFAULT_DIMENSION, DEFAULT_MODEL, DEFAULT_OLLAMA_URL
from filescout.errors import EmbeddingUnavailable

if TYPE_CHECKING:
    from filescout.config import AppConfig

DEFAULT_LOCAL_MODEL = "sentence-transformers/all-mpnet-base-v2"

logger = logging.getLogger(__name__)


class EmbeddingBackend(Protocol):
    """Transport that turns one text into one raw vector."""

    dimension: int

    def embed_one(self, text: str) -> Sequence[float]: ...

    def close(self) -> None: ...


def _to_vector(values: object, dimension: int | None) -> np.ndarray:
    try:
        vector = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise EmbeddingUnavailable(f"Non-numeric embedding: {exc}") from exc
    if vector.ndim != 1 or vector.size == 0:
        raise EmbeddingUnavailable(f"Malformed embedding with shape {vector.shape}")
    if dimension is not None and vector.shape[0] != dimension:
        raise EmbeddingUnavailable(
            f"Embedding dimension {vector.shape[0]} does not match {dimension}"
        )
    if not np.all(np.isfinite(vector)):
        raise EmbeddingUnavailable("Embedding contains non-finite values")
    return vector


class OllamaBackend:
    """HTTP backend for an Ollama-compatible ``/api/embeddings`` endpoint."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        model: str = DEFAULT_MODEL,
        *,
        dimension: int = DEFAULT_DIMENSION,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.model = model
        self.dimension = dimension
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def embed_one(self, text: str) -> np.ndarray:
        try:
            response = self._client.post(
                "/api/embeddings", json={"model": self.model, "prompt": text}
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise EmbeddingUnavailable(f"Embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingUnavailable(f"Invalid JSON from embedding service: {exc}") from exc
        if not isinstance(payload, dict) or "embedding" not in payload:
            raise EmbeddingUnavailable("Embedding response has no 'embedding' field")
        return _to_vector(payload["embedding"], self.dimension)

    def close(self) -> None:
        self._client.close()


def _pick_device() -> str | None:
    """Prefer CUDA, then Apple MPS; None lets sentence-transformers choose."""
    try:
        import torch
    except ImportError:
        return None
    if torch.cuda.is_available():
        logger.debug("CUDA GPU detected: %s", torch.cuda.get_device_name(0))
        return "cuda"
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        logger.debug("Apple MPS GPU detected")
        return "mps"
    return None


@dataclass(slots=True)
class LocalModelConfig:
    model_name: str = DEFAULT_LOCAL_MODEL
    device: str | None = None


class SentenceTransformerBackend:
    """In-process backend wrapping ``SentenceTransformer``.

    The model is loaded on first use so that constructing a client stays cheap.
    """

    def __init__(self, config: LocalModelConfig | None = None) -> None:
        self.config = config or LocalModelConfig()
        self._model = None
        self._dimension: int | None = None
        self._load_lock = threading.Lock()

    def _load(self):
        with self._load_lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                device = self.config.device or _pick_device()
                try:
                    self._model = SentenceTransformer(self.config.model_name, device=device)
                except Exception as exc:
                    raise EmbeddingUnavailable(
                        f"Cannot load model {self.config.model_name}: {exc}"
                    ) from exc
                self._dimension = int(self._model.get_sentence_embedding_dimension())
                logger.info("Loaded %s (dimension %d)", self.config.model_name, self._dimension)
            return self._model

    @property
    def dimension(self) -> int:
        self._load()
        return int(self._dimension)

    def embed_one(self, text: str) -> np.ndarray:
        model = self._load()
        try:
            vector = model.encode(
                [text], show_progress_bar=False, convert_to_numpy=True
            )[0]
        except Exception as exc:
            raise EmbeddingUnavailable(f"Local embedding failed: {exc}") from exc
        return _to_vector(vector, self._dimension)

    def close(self) -> None:
        self._model = None


class EmbeddingClient:
    """Normalized embeddings with bounded fan-out and per-item retries.

    Only ``EmbeddingUnavailable`` is retried, ``retries`` extra times with an
    exponential backoff of ``backoff * 2 ** attempt`` seconds.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        *,
        concurrency: int = 4,
        retries: int = 2,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.concurrency = max(1, concurrency)
        self.retries = max(0, retries)
        self.backoff = backoff
        self._sleep = sleep
        self._executor: ThreadPoolExecutor | None = None

    @classmethod
    def from_config(cls, config: "AppConfig") -> "EmbeddingClient":
        if config.embedding_backend == "local":
            model_name = config.embedding_model
            if model_name == DEFAULT_MODEL:
                model_name = DEFAULT_LOCAL_MODEL
            backend: EmbeddingBackend = SentenceTransformerBackend(
                LocalModelConfig(model_name=model_name)
            )
        else:
            backend = OllamaBackend(
                config.embedding_url,
                config.embedding_model,
                dimension=config.embedding_dimension,
                timeout=config.embedding_timeout,
            )
        return cls(
            backend,
            concurrency=config.embedding_concurrency,
            retries=config.embedding_retries,
            backoff=config.embedding_backoff,
        )

    @property
    def dimension(self) -> int:
        return self.backend.dimension

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.concurrency, thread_name_prefix="embedding"
            )
        return self._executor

    @staticmethod
    def normalize(vector: np.ndarray) -> np.ndarray:
        """Scale to unit length. A zero vector is returned unchanged."""
        vector = np.asarray(vector, dtype=np.float32)
        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            return vector
        return (vector / norm).astype(np.float32, copy=False)

    def embed(self, text: str) -> np.ndarray:
        attempt = 0
        while True:
            try:
                return self.normalize(self.backend.embed_one(text))
            except EmbeddingUnavailable as exc:
                if attempt >= self.retries:
                    raise
                delay = self.backoff * 2**attempt
                logger.debug(
                    "Embedding attempt %d failed (%s); retrying in %.2fs", attempt + 1, exc, delay
                )
                self._sleep(delay)
                attempt += 1

    def _try_embed(self, text: str) -> Optional[np.ndarray]:
        try:
            return self.embed(text)
        except EmbeddingUnavailable as exc:
            logger.warning("Embedding unavailable after %d attempts: %s", self.retries + 1, exc)
            return None

    def try_embed_batch(self, texts: Sequence[str]) -> List[Optional[np.ndarray]]:
        """Embed each text independently; a failed item yields None."""
        texts = list(texts)
        if not texts:
            return []
        if len(texts) == 1 or self.concurrency == 1:
            return [self._try_embed(text) for text in texts]
        return list(self._get_executor().map(self._try_embed, texts))

    def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed all texts in order, raising if any of them failed."""
        results = self.try_embed_batch(texts)
        failed = sum(1 for vector in results if vector is None)
        if failed:
            raise EmbeddingUnavailable(f"{failed} of {len(results)} embeddings failed")
        return results  # type: ignore[return-value]

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self.backend.close()
