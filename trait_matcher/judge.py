"""Answer-judging and match-threshold policy.

The ranker never cuts off results; the features that consume it decide what
counts as a match. All of those decisions live here so every caller applies
the same rules:

  - free-text identifier keeps traits scoring >= IDENTIFIER_MIN_SCORE
  - quiz judge accepts an answer when, in order:
      1. it is not empty
      2. it is not pure ASCII letters/digits (the quiz is in Chinese)
      3. single-character answers match an expected answer exactly
      4. it contains, or is contained in, an expected answer
      5. its best semantic score against the expected answers >= QUIZ_MIN_SCORE

The numeric thresholds are provisional; they need sign-off from whoever owns
the quiz content.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from trait_matcher.models import SimilarityResult

IDENTIFIER_MIN_SCORE = 0.3
QUIZ_MIN_SCORE = 0.4

_ASCII_ONLY = re.compile(r"^[A-Za-z0-9\s]+$")


class VerdictReason(Enum):
    EMPTY = "empty"
    ASCII_ONLY = "ascii_only"
    EXACT = "exact"
    SINGLE_CHAR_MISMATCH = "single_char_mismatch"
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    BELOW_THRESHOLD = "below_threshold"


@dataclass(frozen=True)
class Verdict:
    correct: bool
    reason: VerdictReason
    score: float = 0.0
    matched: str | None = None


def filter_matches(
    results: Sequence[SimilarityResult], min_score: float = IDENTIFIER_MIN_SCORE
) -> list[SimilarityResult]:
    return [r for r in results if r.score >= min_score]


def judge_answer(
    answer: str,
    expected_answers: Sequence[str],
    ranked: Sequence[SimilarityResult] | None = None,
    min_score: float = QUIZ_MIN_SCORE,
) -> Verdict:
    """Decide whether a quiz answer is correct.

    `ranked` is the answer ranked against `expected_answers`, best first. Pass
    None to apply the rule-based steps only.
    """
    text = answer.strip()
    expected = [e.strip() for e in expected_answers if e.strip()]
    if not text:
        return Verdict(False, VerdictReason.EMPTY)
    if _ASCII_ONLY.match(text):
        return Verdict(False, VerdictReason.ASCII_ONLY)

    lowered = text.lower()
    for candidate in expected:
        if lowered == candidate.lower():
            return Verdict(True, VerdictReason.EXACT, 1.0, candidate)

    if len(text) == 1:
        return Verdict(False, VerdictReason.SINGLE_CHAR_MISMATCH)

    for candidate in expected:
        c = candidate.lower()
        if c in lowered or lowered in c:
            return Verdict(True, VerdictReason.KEYWORD, 1.0, candidate)

    if ranked:
        best = ranked[0]
        if best.score >= min_score:
            return Verdict(True, VerdictReason.SEMANTIC, best.score, best.text)
        return Verdict(False, VerdictReason.BELOW_THRESHOLD, best.score, best.text)
    return Verdict(False, VerdictReason.BELOW_THRESHOLD)
