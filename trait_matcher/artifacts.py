"""Reading and writing the precomputed trait artifacts.

Two files travel together:
  precomputedTraits.json      {"traits": [{"familyId", "trait"}, ...], "dims": D}
  precomputedEmbeddings.bin   N x D little-endian float32, row-major

Row i of the binary is the embedding of traits[i]. Nothing inside the binary
records that pairing, so the two files must always be written together.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Sequence

import numpy as np
from pydantic import ValidationError

from trait_matcher.errors import ArtifactFormatError
from trait_matcher.models import EmbeddingMatrix, TraitCorpusEntry, TraitMetadata


def encode_metadata(traits: Sequence[TraitCorpusEntry], dims: int) -> bytes:
    doc = {
        "traits": [entry.model_dump(by_alias=True) for entry in traits],
        "dims": dims,
    }
    return json.dumps(doc, ensure_ascii=False).encode("utf-8")


def decode_metadata(raw: bytes | str) -> TraitMetadata:
    try:
        return TraitMetadata.model_validate_json(raw)
    except ValidationError as exc:
        raise ArtifactFormatError(f"Invalid trait metadata: {exc}") from exc


def encode_embeddings(matrix: EmbeddingMatrix) -> bytes:
    return np.ascontiguousarray(matrix.data, dtype="<f4").tobytes()


def save_artifacts(
    out_dir: Path,
    traits: Sequence[TraitCorpusEntry],
    matrix: EmbeddingMatrix,
    traits_name: str = "precomputedTraits.json",
    embeddings_name: str = "precomputedEmbeddings.bin",
) -> tuple[Path, Path]:
    if matrix.rows != len(traits):
        raise ArtifactFormatError(
            f"Refusing to write {len(traits)} traits with a {matrix.rows}-row matrix"
        )
    out_dir.mkdir(parents=True, exist_ok=True)
    traits_path = out_dir / traits_name
    embeddings_path = out_dir / embeddings_name
    traits_path.write_bytes(encode_metadata(traits, matrix.dims))
    embeddings_path.write_bytes(encode_embeddings(matrix))
    return traits_path, embeddings_path
