"""
corpus_store.py
---------------
Corpus embedding lookup: precomputed matrix first, then an in-memory cache,
then on-demand embedding.

Storage:
  _precomputed:  EmbeddingMatrix loaded at init, row i <-> _precomputed_texts[i]
  _cache:        OrderedDict[CacheValidityKey, EmbeddingMatrix], LRU-bounded

Lookup keys are CacheValidityKey (length, first, last). This is an O(1)
structural check, not a content hash; see models.CacheValidityKey.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Sequence

import numpy as np

from trait_matcher.embedder import Embedder
from trait_matcher.errors import ArtifactFormatError, CorpusMismatchError
from trait_matcher.models import CacheValidityKey, EmbeddingMatrix
from utils.logger import get_logger

logger = get_logger(__name__)

_FLOAT32_LE = np.dtype("<f4")


def matrix_from_buffer(buffer: bytes | bytearray | memoryview, rows: int, dims: int) -> EmbeddingMatrix:
    """Wrap a raw little-endian float32 buffer as an (rows, dims) matrix without copying."""
    expected = rows * dims * _FLOAT32_LE.itemsize
    if len(buffer) != expected:
        raise ArtifactFormatError(
            f"Embedding buffer is {len(buffer)} bytes, expected {expected} ({rows} x {dims} float32)"
        )
    data = np.frombuffer(buffer, dtype=_FLOAT32_LE).reshape(rows, dims)
    return EmbeddingMatrix(data)


class CorpusStore:
    def __init__(self, embedder: Embedder, dims: int = 512, cache_size: int = 4):
        self.embedder = embedder
        self.dims = dims
        self.cache_size = cache_size
        self._precomputed: EmbeddingMatrix | None = None
        self._precomputed_texts: list[str] = []
        self._precomputed_key: CacheValidityKey | None = None
        self._cache: OrderedDict[CacheValidityKey, EmbeddingMatrix] = OrderedDict()

    # ── Precomputed corpus ───────────────────────────────────────
    def load_precomputed(
        self,
        texts: Sequence[str],
        buffer: bytes | bytearray | memoryview,
        dims: int,
    ) -> None:
        """Adopt the precomputed matrix. The buffer is wrapped, not copied."""
        matrix = matrix_from_buffer(buffer, len(texts), dims)
        self._precomputed = matrix
        self._precomputed_texts = list(texts)
        self._precomputed_key = CacheValidityKey.of(self._precomputed_texts)
        self.dims = dims
        logger.info(f"Precomputed corpus loaded: {matrix.rows} traits x {dims} dims")

    @property
    def precomputed_texts(self) -> list[str]:
        return list(self._precomputed_texts)

    def _match_precomputed(self, key: CacheValidityKey) -> EmbeddingMatrix:
        if self._precomputed is None or self._precomputed_key != key:
            raise CorpusMismatchError(f"No precomputed matrix for corpus of length {key.length}")
        return self._precomputed

    # ── Lookup ───────────────────────────────────────────────────
    def get_corpus_embeddings(self, texts: Sequence[str]) -> EmbeddingMatrix:
        """
        Return an EmbeddingMatrix with exactly len(texts) rows.

        Order of preference:
          1. the precomputed matrix, if its key matches (no model call)
          2. a cached on-demand matrix with a matching key
          3. embed the whole corpus in one batch and cache it
        """
        if not texts:
            return EmbeddingMatrix.empty(self.dims)

        key = CacheValidityKey.of(texts)
        try:
            return self._match_precomputed(key)
        except CorpusMismatchError:
            pass

        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        logger.info(f"Corpus not precomputed, embedding {len(texts)} texts")
        matrix = EmbeddingMatrix(self.embedder.embed_batch(texts))
        if matrix.rows != len(texts):
            raise ValueError(f"Embedder returned {matrix.rows} rows for {len(texts)} texts")

        self._cache[key] = matrix
        while len(self._cache) > self.cache_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"Evicted cached corpus of length {evicted.length}")
        return matrix

    @property
    def cached_corpora(self) -> int:
        return len(self._cache)
