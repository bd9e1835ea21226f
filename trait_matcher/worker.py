"""
worker.py
---------
Background execution context for model loading, embedding and ranking.

One daemon thread drains a FIFO inbox, handling one message at a time to
completion. The embedder and the corpus store live only here; the
coordinator reaches them exclusively through messages.

Every handler failure becomes an "error" reply carrying the request's
correlation id, so exactly one pending caller is rejected.
"""

from __future__ import annotations

import queue
import threading
import time
from typing import Any, Callable

from pydantic import BaseModel

from trait_matcher.corpus_store import CorpusStore
from trait_matcher.embedder import Embedder
from trait_matcher.errors import TraitMatcherError, WorkerProtocolError
from trait_matcher.models import SimilarityResult
from trait_matcher.protocol import (
    ErrorReply,
    InitCompleteReply,
    InitRequest,
    ProgressReply,
    SearchBatchReply,
    SearchBatchRequest,
    SearchReply,
    SearchRequest,
    correlation_id,
    parse_request,
)
from trait_matcher.ranker import rank, rank_batch
from utils.logger import get_logger, set_correlation_id

logger = get_logger(__name__)

PostMessage = Callable[[dict[str, Any]], None]

_STOP = object()


class SemanticWorker:
    def __init__(
        self,
        post: PostMessage,
        embedder: Embedder,
        dims: int = 512,
        cache_size: int = 4,
    ):
        self._post = post
        self.embedder = embedder
        self.store = CorpusStore(embedder, dims=dims, cache_size=cache_size)
        self._ready = False
        self._inbox: queue.Queue[Any] = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="trait-matcher-worker", daemon=True)

    # ── Lifecycle ────────────────────────────────────────────────
    def start(self) -> None:
        self._thread.start()

    def post_message(self, message: dict[str, Any]) -> None:
        """Enqueue a request. Ownership of any buffer inside moves to the worker."""
        self._inbox.put(message)

    def close(self, timeout: float | None = None) -> None:
        self._inbox.put(_STOP)
        if self._thread.is_alive():
            self._thread.join(timeout)

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        while True:
            raw = self._inbox.get()
            if raw is _STOP:
                break
            self.handle(raw)

    # ── Dispatch ─────────────────────────────────────────────────
    def handle(self, raw: Any) -> None:
        cid = correlation_id(raw)
        set_correlation_id("" if cid is None else str(cid))
        t0 = time.perf_counter()
        try:
            request = parse_request(raw)
            if isinstance(request, InitRequest):
                self._handle_init(request)
            elif isinstance(request, SearchRequest):
                self._handle_search(request)
            elif isinstance(request, SearchBatchRequest):
                self._handle_search_batch(request)
            logger.debug(
                f"Handled {request.type}",
                extra={"duration_ms": (time.perf_counter() - t0) * 1000},
            )
        except Exception as exc:
            error_type = type(exc).__name__ if isinstance(exc, TraitMatcherError) else "WorkerProtocolError"
            logger.error(f"Worker request failed: {exc}", exc_info=not isinstance(exc, TraitMatcherError))
            self._reply(ErrorReply(id=cid, error=str(exc), error_type=error_type))
        finally:
            set_correlation_id("")

    def _reply(self, reply: BaseModel) -> None:
        try:
            self._post(reply.model_dump())
        except RuntimeError as exc:
            # Coordinator's event loop is gone; nobody is left to receive this.
            logger.warning(f"Dropped {reply.type} reply: {exc}")

    # ── Handlers ─────────────────────────────────────────────────
    def _handle_init(self, request: InitRequest) -> None:
        payload = request.payload
        if payload.embeddings is not None:
            self.store.load_precomputed(
                [entry.trait for entry in payload.traits],
                payload.embeddings,
                payload.dims,
            )
        else:
            self.store.dims = payload.dims

        def relay(progress: float, message: str) -> None:
            self._reply(ProgressReply(id=request.id, progress=progress, message=message))

        self.embedder.load(on_progress=relay)
        self._ready = True
        self._reply(InitCompleteReply(id=request.id))

    def _require_ready(self) -> None:
        if not self._ready:
            raise WorkerProtocolError("Worker not initialized; send init first")

    def _handle_search(self, request: SearchRequest) -> None:
        self._require_ready()
        query, corpus = request.payload.query, request.payload.corpus
        results: list[SimilarityResult] = []
        if query.strip() and corpus:
            query_vector = self.embedder.embed(query)
            matrix = self.store.get_corpus_embeddings(corpus)
            results = rank(query_vector, matrix, corpus)
        self._reply(SearchReply(id=request.id, payload=results))

    def _handle_search_batch(self, request: SearchBatchRequest) -> None:
        self._require_ready()
        queries, corpus = request.payload.queries, request.payload.corpus
        all_results: list[list[SimilarityResult]] = [[] for _ in queries]
        live = [i for i, query in enumerate(queries) if query.strip()]
        if live and corpus:
            # One corpus pass serves every query in the batch.
            query_vectors = self.embedder.embed_batch([queries[i] for i in live])
            matrix = self.store.get_corpus_embeddings(corpus)
            for i, results in zip(live, rank_batch(query_vectors, matrix, corpus)):
                all_results[i] = results
        self._reply(SearchBatchReply(id=request.id, payload=all_results))
