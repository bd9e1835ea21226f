"""Offline batch job: family dataset -> trait corpus -> precomputed artifacts."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from pydantic import TypeAdapter, ValidationError

from trait_matcher.artifacts import save_artifacts
from trait_matcher.embedder import Embedder
from trait_matcher.errors import ArtifactFormatError
from trait_matcher.models import EmbeddingMatrix, FamilyRecord
from trait_matcher.segmentation import build_corpus
from utils.logger import get_logger

logger = get_logger(__name__)

_FAMILIES = TypeAdapter(list[FamilyRecord])


@dataclass
class PrecomputeSummary:
    families: int
    traits: int
    dims: int
    batches: int
    traits_path: Path
    embeddings_path: Path
    duration_s: float


def load_families(path: Path) -> list[FamilyRecord]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ArtifactFormatError(f"{path} is not valid JSON: {exc}") from exc
    if isinstance(raw, dict) and "families" in raw:
        raw = raw["families"]
    try:
        return _FAMILIES.validate_python(raw)
    except ValidationError as exc:
        raise ArtifactFormatError(f"{path} does not contain family records: {exc}") from exc


def precompute(
    families_path: Path,
    out_dir: Path,
    embedder: Embedder,
    batch_size: int = 100,
    dims: int = 512,
    traits_name: str = "precomputedTraits.json",
    embeddings_name: str = "precomputedEmbeddings.bin",
) -> PrecomputeSummary:
    """
    Embed every trait phrase once and write both artifacts in matching row order.

    Embedding runs in fixed-size batches to bound peak memory. `dims` is only
    used when the corpus is empty; otherwise the model's output width is recorded.
    """
    t0 = time.perf_counter()
    families = load_families(families_path)
    corpus = build_corpus(families)
    texts = [entry.trait for entry in corpus]
    logger.info(f"Generating embeddings for {len(texts)} traits from {len(families)} families")

    total_batches = (len(texts) + batch_size - 1) // batch_size
    blocks: list[np.ndarray] = []
    for n, start in enumerate(range(0, len(texts), batch_size), 1):
        logger.info(f"Processing batch {n}/{total_batches}")
        blocks.append(embedder.embed_batch(texts[start : start + batch_size]))

    if blocks:
        matrix = EmbeddingMatrix(np.vstack(blocks))
    else:
        matrix = EmbeddingMatrix.empty(dims)

    traits_path, embeddings_path = save_artifacts(
        out_dir, corpus, matrix, traits_name=traits_name, embeddings_name=embeddings_name
    )
    duration = time.perf_counter() - t0
    logger.info(
        f"Saved {matrix.rows} x {matrix.dims} embeddings",
        extra={"duration_ms": duration * 1000, "extra_data": {"traits": str(traits_path), "embeddings": str(embeddings_path)}},
    )
    return PrecomputeSummary(
        families=len(families),
        traits=len(corpus),
        dims=matrix.dims,
        batches=total_batches,
        traits_path=traits_path,
        embeddings_path=embeddings_path,
        duration_s=duration,
    )
