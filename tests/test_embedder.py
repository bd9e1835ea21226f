from __future__ import annotations

import threading
from pathlib import Path

import numpy as np
import pytest

from tests.conftest import FAKE_DIMS, FakeModelFactory
from trait_matcher.embedder import Embedder, build_sentence_transformer, normalize_rows
from trait_matcher.errors import ModelLoadError


def test_vectors_are_unit_norm(embedder):
    vectors = embedder.embed_batch(["叶对生", "茎四棱形", "蝶形花冠，荚果"])
    assert vectors.shape == (3, FAKE_DIMS)
    assert vectors.dtype == np.float32
    norms = np.linalg.norm(vectors, axis=1)
    assert np.all(np.abs(norms - 1) < 1e-4)


def test_single_embed_matches_batch_row(embedder):
    single = embedder.embed("叶对生")
    batch = embedder.embed_batch(["茎四棱形", "叶对生"])
    assert single.shape == (FAKE_DIMS,)
    np.testing.assert_allclose(single, batch[1], atol=1e-6)


def test_embedding_is_deterministic(embedder):
    first = embedder.embed("花冠唇形")
    second = embedder.embed("花冠唇形")
    np.testing.assert_array_equal(first, second)


def test_self_similarity_is_one(embedder):
    vector = embedder.embed("羽状复叶")
    assert float(vector @ vector) == pytest.approx(1.0, abs=1e-5)


def test_model_is_built_lazily_and_once(model_factory):
    embedder = Embedder("unused", model_factory=model_factory)
    assert model_factory.builds == 0
    assert not embedder.is_loaded

    embedder.embed("草本")
    embedder.embed_batch(["灌木", "乔木"])

    assert model_factory.builds == 1
    assert embedder.is_loaded


def test_concurrent_first_calls_share_one_load():
    factory = FakeModelFactory(delay=0.05)
    embedder = Embedder("unused", model_factory=factory)
    errors: list[BaseException] = []

    def worker():
        try:
            embedder.embed("叶互生")
        except BaseException as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert factory.builds == 1


def test_load_failure_raises_model_load_error_and_allows_retry():
    factory = FakeModelFactory(fail_times=1)
    embedder = Embedder("unused", model_factory=factory)

    with pytest.raises(ModelLoadError, match="corrupt"):
        embedder.embed("叶对生")
    assert not embedder.is_loaded

    vector = embedder.embed("叶对生")
    assert vector.shape == (FAKE_DIMS,)
    assert factory.builds == 2


def test_concurrent_waiters_all_see_the_failure():
    factory = FakeModelFactory(fail_times=1, delay=0.05)
    embedder = Embedder("unused", model_factory=factory)
    outcomes: list[str] = []
    lock = threading.Lock()

    def worker():
        try:
            embedder.load()
            result = "ok"
        except ModelLoadError:
            result = "failed"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # Waiters that joined the failing load fail with it; late arrivals retry.
    assert "failed" in outcomes
    assert factory.builds <= 2


def test_load_reports_progress_up_to_100(model_factory):
    embedder = Embedder("unused", model_factory=model_factory)
    seen: list[tuple[float, str]] = []
    embedder.load(on_progress=lambda p, m: seen.append((p, m)))
    assert seen[0][0] == 0
    assert seen[-1] == (100, "Model ready")

    seen.clear()
    embedder.load(on_progress=lambda p, m: seen.append((p, m)))
    assert seen == [(100, "Model ready")]


def test_empty_batch_does_not_load_model(model_factory):
    embedder = Embedder("unused", model_factory=model_factory)
    assert embedder.embed_batch([]).shape == (0, 0)
    assert model_factory.builds == 0


def test_missing_model_directory_is_a_model_load_error(tmp_path: Path):
    embedder = Embedder(tmp_path / "no-such-model")
    with pytest.raises(ModelLoadError):
        embedder.load()


def test_build_sentence_transformer_rejects_missing_path(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        build_sentence_transformer(tmp_path / "missing", "cpu", lambda p, m: None)


def test_normalize_rows_leaves_zero_rows():
    matrix = np.array([[3.0, 4.0], [0.0, 0.0]], dtype=np.float32)
    out = normalize_rows(matrix)
    np.testing.assert_allclose(out[0], [0.6, 0.8], atol=1e-6)
    np.testing.assert_array_equal(out[1], [0.0, 0.0])
