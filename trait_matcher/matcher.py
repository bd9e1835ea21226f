"""
matcher.py
----------
Foreground coordinator: the only entry point the UI layer talks to.

It owns the staged initialization pipeline and the request/reply bookkeeping
for the background worker. It never embeds or ranks anything itself.

Initialization stages and their share of the overall progress bar:
  1. data     0-15   fetch trait metadata + embedding binary (retry/backoff)
  2. model   15-85   hand the binary to the worker, worker loads the model
  3. final   85-100  mark READY

ensure_ready() is coalesced: concurrent callers attach to the one in-flight
initialization and all of them receive its progress and its outcome.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Sequence

from config.settings import settings
from trait_matcher.artifacts import decode_metadata
from trait_matcher.corpus_store import matrix_from_buffer
from trait_matcher.embedder import Embedder, ProgressCallback
from trait_matcher.errors import WorkerProtocolError, error_from_reply
from trait_matcher.fetcher import ArtifactFetcher
from trait_matcher.identifier import FamilyMatch, score_families, split_query
from trait_matcher.judge import Verdict, VerdictReason, judge_answer
from trait_matcher.models import InitializationState, SimilarityResult, TraitCorpusEntry, TraitMetadata
from trait_matcher.protocol import (
    ErrorReply,
    InitCompleteReply,
    ProgressReply,
    correlation_id,
    parse_reply,
)
from trait_matcher.worker import PostMessage, SemanticWorker
from utils.logger import get_logger, log_call

logger = get_logger(__name__)

READY_MESSAGE = "AI system ready"

WorkerFactory = Callable[[PostMessage], SemanticWorker]


def default_worker_factory(post: PostMessage) -> SemanticWorker:
    embedder = Embedder(
        settings.embedding_model_path,
        device=settings.embedding_device,
        batch_size=settings.embedding_batch_size,
    )
    return SemanticWorker(
        post,
        embedder,
        dims=settings.embedding_dims,
        cache_size=settings.corpus_cache_size,
    )


class TraitMatcher:
    """Coordinates preload, initialization and search requests to one worker.

    Bound to the event loop that first sends it a request.
    """

    def __init__(
        self,
        fetcher: ArtifactFetcher | None = None,
        worker_factory: WorkerFactory | None = None,
        traits_artifact: str | None = None,
        embeddings_artifact: str | None = None,
        identifier_min_score: float | None = None,
        quiz_min_score: float | None = None,
    ):
        self.fetcher = fetcher or ArtifactFetcher(
            settings.artifacts_base,
            retries=settings.fetch_retries,
            backoff_seconds=settings.fetch_backoff_seconds,
        )
        self._worker_factory = worker_factory or default_worker_factory
        self.traits_artifact = traits_artifact or settings.traits_artifact
        self.embeddings_artifact = embeddings_artifact or settings.embeddings_artifact
        self.identifier_min_score = (
            settings.identifier_min_score if identifier_min_score is None else identifier_min_score
        )
        self.quiz_min_score = settings.quiz_min_score if quiz_min_score is None else quiz_min_score

        self.state = InitializationState.UNINITIALIZED
        self._worker: SemanticWorker | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ids = itertools.count()
        self._pending: dict[int, asyncio.Future] = {}
        self._progress_handlers: dict[int, ProgressCallback] = {}

        self._data_loaded = False
        self._data_task: asyncio.Task | None = None
        self._init_task: asyncio.Task | None = None
        self._metadata: TraitMetadata | None = None
        self._embeddings_buffer: bytes | None = None
        self._listeners: list[ProgressCallback] = []

    # ── Worker plumbing ──────────────────────────────────────────
    def _get_worker(self) -> SemanticWorker:
        if self._worker is None:
            self._loop = asyncio.get_running_loop()
            self._worker = self._worker_factory(self._post_from_worker)
            self._worker.start()
        return self._worker

    def _post_from_worker(self, message: dict[str, Any]) -> None:
        # Runs on the worker thread.
        self._loop.call_soon_threadsafe(self._on_message, message)

    def _on_message(self, raw: dict[str, Any]) -> None:
        try:
            reply = parse_reply(raw)
        except WorkerProtocolError as exc:
            cid = correlation_id(raw)
            future = self._pending.pop(cid, None) if cid is not None else None
            if future is None:
                logger.warning(f"Ignoring malformed worker message: {exc}")
                return
            self._progress_handlers.pop(cid, None)
            if not future.done():
                future.set_exception(exc)
            return

        if isinstance(reply, ProgressReply):
            handler = self._progress_handlers.get(reply.id)
            if handler is not None:
                handler(reply.progress, reply.message)
            return

        future = self._pending.pop(reply.id, None) if reply.id is not None else None
        if future is None:
            logger.debug(f"Ignoring stray {reply.type} reply for id {reply.id}")
            return
        self._progress_handlers.pop(reply.id, None)
        if future.done():
            # Caller stopped waiting; the result is dropped.
            return

        if isinstance(reply, ErrorReply):
            future.set_exception(error_from_reply(reply.error_type, reply.error))
        elif isinstance(reply, InitCompleteReply):
            future.set_result(None)
        else:
            future.set_result(reply.payload)

    async def _send(
        self,
        type_: str,
        payload: dict[str, Any],
        on_progress: ProgressCallback | None = None,
    ) -> Any:
        worker = self._get_worker()
        request_id = next(self._ids)
        future = self._loop.create_future()
        self._pending[request_id] = future
        if on_progress is not None:
            self._progress_handlers[request_id] = on_progress
        worker.post_message({"type": type_, "id": request_id, "payload": payload})
        return await future

    # ── Progress fan-out ─────────────────────────────────────────
    def _emit(self, progress: float, message: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(progress, message)
            except Exception:
                logger.exception("Progress callback raised")

    def _relay_model_progress(self, progress: float, message: str) -> None:
        self._emit(15 + progress * 0.70, f"Stage 2/3: {message}")

    # ── Stage 1: data ────────────────────────────────────────────
    @property
    def data_loaded(self) -> bool:
        return self._data_loaded

    @property
    def traits(self) -> list[TraitCorpusEntry]:
        """The precomputed corpus; empty until stage 1 has completed."""
        return list(self._metadata.traits) if self._metadata else []

    async def preload_data(self) -> None:
        """Fetch both artifacts once. Concurrent callers share one fetch."""
        if self._data_loaded:
            return
        if self._data_task is None:
            self._data_task = asyncio.ensure_future(self._load_data())
        await asyncio.shield(self._data_task)

    async def _load_data(self) -> None:
        logger.info("Starting trait data preloading...")
        if self.state in (InitializationState.UNINITIALIZED, InitializationState.FAILED):
            self.state = InitializationState.DATA_LOADING
        try:
            raw_metadata, buffer = await self.fetcher.fetch_all(
                self.traits_artifact, self.embeddings_artifact
            )
            metadata = decode_metadata(raw_metadata)
            # Validate sizes now so a bad pair fails in stage 1, not inside the worker.
            matrix_from_buffer(buffer, len(metadata.traits), metadata.dims)
        except Exception as exc:
            self._data_task = None
            self.state = InitializationState.FAILED
            logger.error(f"Trait data preloading failed: {exc}")
            raise

        self._metadata = metadata
        self._embeddings_buffer = buffer
        self._data_loaded = True
        if self.state is InitializationState.DATA_LOADING:
            self.state = InitializationState.DATA_LOADED
        logger.info(f"Trait data preloaded: {len(metadata.traits)} traits, {metadata.dims} dims")

    # ── Stages 2 + 3 ─────────────────────────────────────────────
    @log_call
    async def ensure_ready(self, on_progress: ProgressCallback | None = None) -> None:
        """
        Bring the system to READY, or join the initialization already running.

        Safe to call concurrently and repeatedly. When already READY it returns
        at once, still reporting (100, READY_MESSAGE) to on_progress. On failure
        the state becomes FAILED and the next call starts over.
        """
        if self.state is InitializationState.READY:
            if on_progress is not None:
                on_progress(100, READY_MESSAGE)
            return

        if on_progress is not None:
            self._listeners.append(on_progress)
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        logger.info("Initializing trait matcher...")
        try:
            if not self._data_loaded:
                self.state = InitializationState.DATA_LOADING
                self._emit(5, "Stage 1/3: loading trait data...")
                await self.preload_data()
            self.state = InitializationState.DATA_LOADED
            self._emit(15, "Stage 1/3: trait data loaded")

            self.state = InitializationState.MODEL_LOADING
            metadata = self._metadata
            # Ownership of the buffer moves to the worker; drop ours before sending.
            buffer, self._embeddings_buffer = self._embeddings_buffer, None
            await self._send(
                "init",
                {"traits": metadata.traits, "embeddings": buffer, "dims": metadata.dims},
                on_progress=self._relay_model_progress,
            )
            del buffer

            self._emit(85, "Stage 3/3: finalizing")
            self.state = InitializationState.READY
            self._emit(100, READY_MESSAGE)
            logger.info("Trait matcher fully initialized")
        except BaseException as exc:
            self.state = InitializationState.FAILED
            self._init_task = None
            if self._embeddings_buffer is None:
                # The buffer is gone (handed over or never fetched): refetch next time.
                self._data_loaded = False
                self._data_task = None
                self._metadata = None
            logger.error(f"Trait matcher initialization failed: {exc!r}")
            raise
        finally:
            self._listeners.clear()

    # ── Queries ──────────────────────────────────────────────────
    @log_call
    async def search(self, query: str, corpus: Sequence[str]) -> list[SimilarityResult]:
        if not query.strip() or not corpus:
            return []
        await self.ensure_ready()
        return await self._send("search", {"query": query, "corpus": list(corpus)})

    @log_call
    async def search_batch(
        self, queries: Sequence[str], corpus: Sequence[str]
    ) -> list[list[SimilarityResult]]:
        if not queries:
            return []
        if not corpus or not any(q.strip() for q in queries):
            return [[] for _ in queries]
        await self.ensure_ready()
        return await self._send(
            "searchBatch", {"queries": list(queries), "corpus": list(corpus)}
        )

    @log_call
    async def identify(self, query: str, min_score: float | None = None) -> list[FamilyMatch]:
        """Rank families for a free-text description, one vote per query segment."""
        segments = split_query(query)
        if not segments:
            return []
        await self.ensure_ready()
        traits = self.traits
        results = await self.search_batch(segments, [entry.trait for entry in traits])
        threshold = self.identifier_min_score if min_score is None else min_score
        return score_families(results, traits, threshold)

    @log_call
    async def judge(self, answer: str, expected_answers: Sequence[str]) -> Verdict:
        """Judge a quiz answer: rules first, semantic similarity only if they cannot decide."""
        verdict = judge_answer(answer, expected_answers, ranked=None, min_score=self.quiz_min_score)
        if verdict.reason is not VerdictReason.BELOW_THRESHOLD:
            return verdict
        expected = [e for e in expected_answers if e.strip()]
        ranked = await self.search(answer, expected)
        return judge_answer(answer, expected, ranked=ranked, min_score=self.quiz_min_score)

    # ── Shutdown ─────────────────────────────────────────────────
    async def close(self) -> None:
        """Stop the worker. Pending requests fail; the next call re-initializes."""
        worker, self._worker = self._worker, None
        if worker is not None:
            await asyncio.to_thread(worker.close, 5.0)
        for future in self._pending.values():
            if not future.done():
                future.set_exception(WorkerProtocolError("Worker closed before replying"))
        self._pending.clear()
        self._progress_handlers.clear()
        self.state = InitializationState.UNINITIALIZED
        self._init_task = None
        self._data_task = None
        self._data_loaded = False
        self._metadata = None
        self._embeddings_buffer = None


_shared: TraitMatcher | None = None


def get_matcher() -> TraitMatcher:
    """Process-wide coordinator built from settings."""
    global _shared
    if _shared is None:
        _shared = TraitMatcher()
    return _shared


async def ensure_ready(on_progress: ProgressCallback | None = None) -> None:
    await get_matcher().ensure_ready(on_progress)


async def search(query: str, corpus: Sequence[str]) -> list[SimilarityResult]:
    return await get_matcher().search(query, corpus)


async def search_batch(queries: Sequence[str], corpus: Sequence[str]) -> list[list[SimilarityResult]]:
    return await get_matcher().search_batch(queries, corpus)
