"""
embedder.py
-----------
Local Chinese sentence embeddings via sentence-transformers.

No network calls, ever: weights are read from a local directory and the model
hub is never contacted (offline use and privacy both depend on this).

MODEL: bge-small-zh-v1.5
  - 512-dimensional embeddings
  - token embeddings are mean-pooled, then L2-normalised, so cosine similarity
    between two outputs is a plain dot product
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

import numpy as np

from trait_matcher.errors import ModelLoadError
from utils.logger import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[float, str], None]


class EncoderModel(Protocol):
    def encode(self, sentences: Any, **kwargs: Any) -> np.ndarray: ...


ModelFactory = Callable[[Path, str, ProgressCallback], EncoderModel]


def build_sentence_transformer(
    model_path: Path, device: str, on_progress: ProgressCallback
) -> EncoderModel:
    """Assemble transformer -> mean pooling -> normalize from local files only."""
    if not model_path.is_dir():
        raise FileNotFoundError(f"Model directory not found: {model_path}")

    from sentence_transformers import SentenceTransformer, models

    on_progress(0, "Loading tokenizer and weights")
    local_only = {"local_files_only": True}
    transformer = models.Transformer(
        str(model_path),
        model_args=local_only,
        tokenizer_args=local_only,
        config_args=local_only,
    )
    on_progress(70, "Building pooling layers")
    pooling = models.Pooling(
        transformer.get_word_embedding_dimension(),
        pooling_mode="mean",
    )
    model = SentenceTransformer(
        modules=[transformer, pooling, models.Normalize()],
        device=device,
    )
    on_progress(90, "Warming up")
    model.encode(["预热"], show_progress_bar=False)
    return model


class Embedder:
    """
    Wrapper around a SentenceTransformer model with a simple interface.

    The model is built lazily, exactly once. Concurrent first callers share one
    in-flight Future; if building fails every waiter sees ModelLoadError and the
    next call starts a fresh attempt.
    """

    def __init__(
        self,
        model_path: Path | str,
        device: str = "cpu",
        batch_size: int = 100,
        model_factory: ModelFactory | None = None,
    ):
        self.model_path = Path(model_path)
        self.device = device
        self.batch_size = batch_size
        self._model_factory = model_factory or build_sentence_transformer
        self._lock = threading.Lock()
        self._loading: Future | None = None

    @property
    def is_loaded(self) -> bool:
        future = self._loading
        return future is not None and future.done() and future.exception() is None

    def load(self, on_progress: ProgressCallback | None = None) -> EncoderModel:
        """Return the loaded model, building it on first use. Progress is 0-100."""
        report = on_progress or (lambda _p, _m: None)
        with self._lock:
            future = self._loading
            owner = future is None
            if owner:
                future = self._loading = Future()

        if not owner:
            model = future.result()
            report(100, "Model ready")
            return model

        logger.info(f"Loading embedding model from {self.model_path} on {self.device}")
        try:
            model = self._model_factory(self.model_path, self.device, report)
        except Exception as exc:
            with self._lock:
                self._loading = None
            error = ModelLoadError(f"Failed to load embedding model from {self.model_path}: {exc}")
            error.__cause__ = exc
            future.set_exception(error)
            logger.error(f"Embedding model load failed: {exc}")
            raise error from exc

        future.set_result(model)
        report(100, "Model ready")
        logger.info("Embedding model loaded")
        return model

    def embed(self, text: str) -> np.ndarray:
        """Embed a single string. Returns a unit-norm float32 vector."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        """
        Embed a list of texts in one pass. Returns an (N, D) float32 matrix
        whose rows are unit-norm.

        An empty input returns a (0, 0) matrix without touching the model.
        """
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        model = self.load()
        vecs = model.encode(
            list(texts),
            batch_size=self.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return normalize_rows(np.asarray(vecs, dtype=np.float32).reshape(len(texts), -1))


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise each row; all-zero rows are left as zeros."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (matrix / norms).astype(np.float32, copy=False)
