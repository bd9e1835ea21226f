from __future__ import annotations

import json
import threading
import time
import zlib
from pathlib import Path

import numpy as np
import pytest

from trait_matcher.embedder import Embedder
from trait_matcher.fetcher import ArtifactFetcher
from trait_matcher.matcher import TraitMatcher
from trait_matcher.precompute import precompute
from trait_matcher.worker import SemanticWorker

FAKE_DIMS = 256

FAMILIES = [
    {
        "id": "lamiaceae",
        "chineseName": "唇形科",
        "identificationModule": "草本或灌木，常含芳香油；茎四棱形，叶对生；花冠唇形。",
        "memoryModule": "四棱茎，叶对生，唇形花冠。",
    },
    {
        "id": "rosaceae",
        "chineseName": "蔷薇科",
        "identificationModule": "乔木、灌木或草本；叶互生，常有托叶；花瓣5，雄蕊多数。",
        "memoryModule": "五瓣花，托叶常在。",
    },
    {
        "id": "fabaceae",
        "chineseName": "豆科",
        "identificationModule": "叶常为羽状复叶，互生；蝶形花冠，荚果。",
        "memoryModule": "蝶形花,荚果",
    },
]


class FakeModel:
    """Deterministic bag of character unigrams and bigrams, hashed into FAKE_DIMS buckets.

    Output rows are deliberately not normalized.
    """

    def __init__(self, dims: int = FAKE_DIMS):
        self.dims = dims
        self.encode_calls = 0
        self.encoded_texts: list[str] = []

    def encode(self, sentences, **kwargs):
        self.encode_calls += 1
        if isinstance(sentences, str):
            sentences = [sentences]
        self.encoded_texts.extend(sentences)
        out = np.zeros((len(sentences), self.dims), dtype=np.float32)
        for row, text in enumerate(sentences):
            for ch in text:
                out[row, zlib.crc32(ch.encode("utf-8")) % self.dims] += 1.0
            for a, b in zip(text, text[1:]):
                out[row, zlib.crc32((a + b).encode("utf-8")) % self.dims] += 1.5
        return out


class FakeModelFactory:
    """Counts model builds; can be told to fail the first N builds."""

    def __init__(self, fail_times: int = 0, delay: float = 0.0):
        self.fail_times = fail_times
        self.delay = delay
        self.builds = 0
        self.model = FakeModel()
        self._lock = threading.Lock()

    def __call__(self, model_path: Path, device: str, on_progress):
        with self._lock:
            self.builds += 1
            attempt = self.builds
        on_progress(0, "Loading tokenizer and weights")
        if self.delay:
            time.sleep(self.delay)
        if attempt <= self.fail_times:
            raise OSError("weights file is corrupt")
        on_progress(70, "Building pooling layers")
        return self.model


class CountingFetcher(ArtifactFetcher):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fetches: list[str] = []

    async def fetch_bytes(self, name: str) -> bytes:
        self.fetches.append(name)
        return await super().fetch_bytes(name)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def model_factory() -> FakeModelFactory:
    return FakeModelFactory()


@pytest.fixture
def embedder(model_factory: FakeModelFactory) -> Embedder:
    return Embedder("unused-model-path", model_factory=model_factory, batch_size=4)


@pytest.fixture
def families_path(tmp_path: Path) -> Path:
    path = tmp_path / "plantFamilies.json"
    path.write_text(json.dumps(FAMILIES, ensure_ascii=False), encoding="utf-8")
    return path


@pytest.fixture
def artifacts_dir(tmp_path: Path, families_path: Path) -> Path:
    out = tmp_path / "artifacts"
    builder = Embedder("unused-model-path", model_factory=FakeModelFactory(), batch_size=4)
    precompute(families_path, out, builder, batch_size=4, dims=FAKE_DIMS)
    return out


def make_matcher(
    artifacts_dir: Path,
    factory: FakeModelFactory,
    fetcher: ArtifactFetcher | None = None,
) -> TraitMatcher:
    embedder = Embedder("unused-model-path", model_factory=factory, batch_size=4)
    return TraitMatcher(
        fetcher=fetcher or CountingFetcher(artifacts_dir, sleep=no_sleep),
        worker_factory=lambda post: SemanticWorker(post, embedder, dims=FAKE_DIMS),
        traits_artifact="precomputedTraits.json",
        embeddings_artifact="precomputedEmbeddings.bin",
        identifier_min_score=0.3,
        quiz_min_score=0.4,
    )
