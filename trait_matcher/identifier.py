"""Free-text plant identification on top of ranked trait matches."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Sequence

from trait_matcher.judge import IDENTIFIER_MIN_SCORE, filter_matches
from trait_matcher.models import SimilarityResult, TraitCorpusEntry
from trait_matcher.segmentation import unique_in_order

_QUERY_DELIMITERS = re.compile(r"[。；，,;、\s]+")


@dataclass
class FamilyMatch:
    family_id: str
    score: float = 0.0
    matched_traits: list[str] = field(default_factory=list)


def split_query(query: str) -> list[str]:
    """'叶对生，茎四棱形 唇形花冠' -> ['叶对生', '茎四棱形', '唇形花冠']"""
    return unique_in_order(part for part in _QUERY_DELIMITERS.split(query) if part)


def score_families(
    segment_results: Sequence[Sequence[SimilarityResult]],
    traits: Sequence[TraitCorpusEntry],
    min_score: float = IDENTIFIER_MIN_SCORE,
) -> list[FamilyMatch]:
    """
    Each query segment votes once per family with that family's best trait
    score (if it clears min_score). Families are ordered by summed score.
    """
    matches: dict[str, FamilyMatch] = {}
    for results in segment_results:
        seen: set[str] = set()
        for result in filter_matches(results, min_score):
            family_id = traits[result.corpus_index].family_id
            if family_id in seen:
                continue
            seen.add(family_id)
            match = matches.setdefault(family_id, FamilyMatch(family_id))
            match.score += result.score
            match.matched_traits.append(result.text)
    return sorted(matches.values(), key=lambda m: (-m.score, m.family_id))
