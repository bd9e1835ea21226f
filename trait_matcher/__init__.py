"""Semantic trait matching: embed plant-feature text and rank it against a trait corpus."""

from trait_matcher.errors import (
    ArtifactFormatError,
    ModelLoadError,
    NetworkFetchError,
    TraitMatcherError,
    WorkerProtocolError,
)
from trait_matcher.matcher import TraitMatcher, ensure_ready, get_matcher, search, search_batch
from trait_matcher.models import InitializationState, SimilarityResult, TraitCorpusEntry

__all__ = [
    "ArtifactFormatError",
    "InitializationState",
    "ModelLoadError",
    "NetworkFetchError",
    "SimilarityResult",
    "TraitCorpusEntry",
    "TraitMatcher",
    "TraitMatcherError",
    "WorkerProtocolError",
    "ensure_ready",
    "get_matcher",
    "search",
    "search_batch",
]
