from __future__ import annotations

import numpy as np
import pytest

from trait_matcher.embedder import normalize_rows
from trait_matcher.models import EmbeddingMatrix
from trait_matcher.ranker import cosine_scores, rank, rank_batch


def _unit_rows(rows: int, dims: int, seed: int = 7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return normalize_rows(rng.normal(size=(rows, dims)).astype(np.float32))


def test_rank_is_sorted_descending():
    corpus = EmbeddingMatrix(_unit_rows(20, 16))
    texts = [f"trait-{i}" for i in range(20)]
    query = _unit_rows(1, 16, seed=11)[0]

    results = rank(query, corpus, texts)

    assert len(results) == 20
    scores = [r.score for r in results]
    assert scores == sorted(scores, reverse=True)
    assert {r.corpus_index for r in results} == set(range(20))
    for r in results:
        assert r.text == texts[r.corpus_index]
        assert -1.0 - 1e-5 <= r.score <= 1.0 + 1e-5


def test_exact_ties_keep_corpus_order():
    row = np.array([1.0, 0.0], dtype=np.float32)
    other = np.array([0.0, 1.0], dtype=np.float32)
    corpus = EmbeddingMatrix(np.stack([other, row, other, row, row]))
    texts = ["a", "b", "c", "d", "e"]

    results = rank(row, corpus, texts)

    assert [r.corpus_index for r in results] == [1, 3, 4, 0, 2]


def test_self_similarity():
    rows = _unit_rows(5, 32)
    results = rank(rows[3], EmbeddingMatrix(rows), list("abcde"))
    assert results[0].corpus_index == 3
    assert results[0].score == pytest.approx(1.0, abs=1e-5)


def test_batch_of_one_equals_single_rank():
    corpus = EmbeddingMatrix(_unit_rows(12, 8))
    texts = [str(i) for i in range(12)]
    query = _unit_rows(1, 8, seed=3)

    assert rank_batch(query, corpus, texts) == [rank(query[0], corpus, texts)]


def test_batch_ranks_each_query_independently():
    corpus_rows = _unit_rows(6, 8)
    corpus = EmbeddingMatrix(corpus_rows)
    texts = list("abcdef")

    batch = rank_batch(corpus_rows[[2, 5]], corpus, texts)

    assert [results[0].corpus_index for results in batch] == [2, 5]
    assert batch[1] == rank(corpus_rows[5], corpus, texts)


def test_empty_corpus_gives_empty_results():
    corpus = EmbeddingMatrix.empty(8)
    assert rank(_unit_rows(1, 8)[0], corpus, []) == []
    assert rank_batch(_unit_rows(3, 8), corpus, []) == [[], [], []]


def test_text_count_must_match_rows():
    corpus = EmbeddingMatrix(_unit_rows(3, 4))
    with pytest.raises(ValueError, match="3 rows"):
        rank(_unit_rows(1, 4)[0], corpus, ["a", "b"])


def test_dimension_mismatch_is_rejected():
    corpus = EmbeddingMatrix(_unit_rows(3, 4))
    with pytest.raises(ValueError, match="dimensionality"):
        cosine_scores(_unit_rows(1, 5), corpus)


def test_cosine_scores_shape():
    corpus = EmbeddingMatrix(_unit_rows(7, 4))
    assert cosine_scores(_unit_rows(3, 4), corpus).shape == (3, 7)
