from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


class TraitCorpusEntry(BaseModel):
    """One trait phrase tied to a plant family, e.g. ("lamiaceae", "茎四棱形")."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    family_id: str = Field(alias="familyId")
    trait: str

    @field_validator("trait")
    @classmethod
    def _strip_trait(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("trait must be non-empty after trimming")
        return value


class TraitMetadata(BaseModel):
    """Contents of the trait metadata artifact; row i pairs with binary row i."""

    model_config = ConfigDict(populate_by_name=True)

    traits: list[TraitCorpusEntry]
    dims: int = Field(gt=0)

    def texts(self) -> list[str]:
        return [entry.trait for entry in self.traits]


class FamilyRecord(BaseModel):
    """A plant family as exported by the content layer. Unknown fields are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    chinese_name: str = Field(default="", alias="chineseName")
    identification_module: str = Field(default="", alias="identificationModule")
    memory_module: str = Field(default="", alias="memoryModule")


@dataclass(frozen=True)
class SimilarityResult:
    corpus_index: int
    score: float  # cosine similarity in [-1, 1]
    text: str


@dataclass(frozen=True)
class CacheValidityKey:
    """Cheap structural fingerprint of a corpus: (length, first text, last text).

    Not a content hash. Two corpora that share length and both endpoints alias
    to the same key; the reference corpus is static per deployment, so the O(1)
    check is what we want on every search.
    """

    length: int
    first: str
    last: str

    @classmethod
    def of(cls, texts: Sequence[str]) -> "CacheValidityKey":
        if not texts:
            return cls(0, "", "")
        return cls(len(texts), texts[0], texts[-1])


@dataclass(frozen=True)
class EmbeddingMatrix:
    """N x D float32 matrix; row i is the embedding of corpus entry i."""

    data: np.ndarray

    def __post_init__(self):
        if self.data.ndim != 2:
            raise ValueError(f"Embedding matrix must be 2-D, got shape {self.data.shape}")

    @classmethod
    def empty(cls, dims: int) -> "EmbeddingMatrix":
        return cls(np.zeros((0, dims), dtype=np.float32))

    @property
    def rows(self) -> int:
        return int(self.data.shape[0])

    @property
    def dims(self) -> int:
        return int(self.data.shape[1])

    def row(self, index: int) -> np.ndarray:
        return self.data[index]


class InitializationState(Enum):
    UNINITIALIZED = "uninitialized"
    DATA_LOADING = "data_loading"
    DATA_LOADED = "data_loaded"
    MODEL_LOADING = "model_loading"
    READY = "ready"
    FAILED = "failed"
