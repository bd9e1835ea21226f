"""
ranker.py
---------
Cosine-similarity ranking of query vectors against a corpus embedding matrix.

Both sides are unit-normalised by the embedder, so:
  cos(θ) = (A · B) / (||A|| × ||B||) = A · B

The ranker never filters. It returns the full corpus, best first, and leaves
the cutoff to the caller: the identifier keeps scores >= 0.3, the quiz judge
wants >= 0.4 plus keyword rules (see judge.py). Keeping thresholds out of here
lets each feature pick its own policy.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from trait_matcher.models import EmbeddingMatrix, SimilarityResult


def cosine_scores(query_vectors: np.ndarray, corpus: EmbeddingMatrix) -> np.ndarray:
    """(Q, D) x (N, D) -> (Q, N) similarity matrix. O(Q×N×D)."""
    queries = np.atleast_2d(np.asarray(query_vectors, dtype=np.float32))
    if queries.shape[1] != corpus.dims:
        raise ValueError(
            f"Query dimensionality {queries.shape[1]} does not match corpus dimensionality {corpus.dims}"
        )
    return queries @ corpus.data.T


def rank(
    query_vector: np.ndarray,
    corpus: EmbeddingMatrix,
    corpus_texts: Sequence[str],
) -> list[SimilarityResult]:
    """Rank every corpus row against one query, highest score first."""
    return rank_batch(np.atleast_2d(query_vector), corpus, corpus_texts)[0]


def rank_batch(
    query_vectors: np.ndarray,
    corpus: EmbeddingMatrix,
    corpus_texts: Sequence[str],
) -> list[list[SimilarityResult]]:
    """
    Rank every corpus row against each query in one matrix multiply.

    Sort is descending by score and stable, so exact ties keep corpus order.
    """
    if corpus.rows != len(corpus_texts):
        raise ValueError(
            f"Corpus matrix has {corpus.rows} rows but {len(corpus_texts)} texts were given"
        )
    queries = np.atleast_2d(np.asarray(query_vectors, dtype=np.float32))
    if corpus.rows == 0:
        return [[] for _ in range(queries.shape[0])]

    scores = cosine_scores(queries, corpus)
    ranked: list[list[SimilarityResult]] = []
    for row in scores:
        order = np.argsort(-row, kind="stable")
        ranked.append([
            SimilarityResult(corpus_index=int(i), score=float(row[i]), text=corpus_texts[i])
            for i in order
        ])
    return ranked
