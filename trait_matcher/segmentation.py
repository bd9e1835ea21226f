"""
segmentation.py
---------------
Splitting family descriptions into short trait phrases.

A family's description is a run of clauses such as
  "草本，稀灌木；茎常四棱形。叶对生"
and every clause is treated as one candidate trait. We split on sentence and
clause punctuation only (。；，,). Splitting finer than that produces fragments
too short to embed meaningfully.
"""

from __future__ import annotations

import re
from typing import Iterable

from trait_matcher.models import FamilyRecord, TraitCorpusEntry

TRAIT_DELIMITERS = re.compile(r"[。；，,]")


def split_traits(text: str) -> list[str]:
    """Split text on trait delimiters; trims each piece and drops empties."""
    if not text:
        return []
    return [part.strip() for part in TRAIT_DELIMITERS.split(text) if part.strip()]


def unique_in_order(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def family_traits(family: FamilyRecord) -> list[str]:
    """Identification traits first, then memory aids, deduplicated in first-seen order."""
    return unique_in_order(
        split_traits(family.identification_module) + split_traits(family.memory_module)
    )


def build_corpus(families: Iterable[FamilyRecord]) -> list[TraitCorpusEntry]:
    """Flatten families into corpus entries. Order: family order, then trait order."""
    corpus: list[TraitCorpusEntry] = []
    for family in families:
        corpus.extend(
            TraitCorpusEntry(family_id=family.id, trait=trait)
            for trait in family_traits(family)
        )
    return corpus
