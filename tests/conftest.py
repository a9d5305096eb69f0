"""Shared fixtures: a deterministic embedding backend and a temporary store."""

from __future__ import annotations

import hashlib
import os
import threading
from pathlib import Path
from typing import Callable, List

import numpy as np
import pytest

from filescout.config import AppConfig
from filescout.embedding.encoder import EmbeddingClient
from filescout.errors import EmbeddingUnavailable
from filescout.index.storage import SQLiteFileStore
from filescout.ingestion.categorizer import categorize
from filescout.models import ScanCandidate, ScanDecision
from filescout.utils.text import tokenize

DIMENSION = 512


class FakeBackend:
    """Bag-of-words embeddings: one hashed bucket per distinct token."""

    def __init__(self, dimension: int = DIMENSION) -> None:
        self.dimension = dimension
        self.fail = False
        self.calls: List[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def embed_one(self, text: str) -> np.ndarray:
        with self._lock:
            self.calls.append(text)
        if self.fail:
            raise EmbeddingUnavailable("backend is down")
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in set(tokenize(text)):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "little") % self.dimension] = 1.0
        if not vector.any():
            vector[0] = 1.0
        return vector

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def client(backend: FakeBackend) -> EmbeddingClient:
    embedding_client = EmbeddingClient(backend, concurrency=2, retries=0, sleep=lambda _: None)
    yield embedding_client
    embedding_client.close()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(db_path=tmp_path / "index.db", embedding_dimension=DIMENSION)


@pytest.fixture
def store(config: AppConfig) -> SQLiteFileStore:
    file_store = SQLiteFileStore(config.db_path, dimension=DIMENSION)
    yield file_store
    file_store.close()


@pytest.fixture
def make_candidate() -> Callable[..., ScanCandidate]:
    """Build a candidate from a file on disk, the way the scanner does."""

    def factory(
        path: Path, decision: ScanDecision = ScanDecision.FULL_CONTENT
    ) -> ScanCandidate:
        stat = os.stat(path)
        return ScanCandidate(
            path=Path(path),
            category=categorize(Path(path).suffix),
            decision=decision,
            size=stat.st_size,
            created_at=stat.st_ctime,
            modified_at=stat.st_mtime,
        )

    return factory
