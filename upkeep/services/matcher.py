"""Fuzzy matching of sparse custom exercises against the curated library.

Matching is a cascade of strategies evaluated in a fixed order. Each strategy
returns one of three results:

* ``Matched``   - a single confident library target, which ends the cascade
* ``Ambiguous`` - more than one candidate, treated as no match for that stage
* ``NoMatch``   - nothing found at that stage

Only ``Matched`` short-circuits; the other two fall through to the next stage.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlmodel import Session, select

from upkeep.models import Exercise

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "with", "and", "or", "for", "to", "in", "on", "of",
        "barbell", "dumbbell", "db", "bb", "cable", "machine", "seated", "standing",
        "incline", "decline", "smith", "band", "kettlebell", "kb",
    }
)

_TRAILING_QUALIFIER = re.compile(r"\s*\([^()]*\)\s*$")
_NON_LETTERS = re.compile(r"[^a-zA-Z]")


@dataclass(frozen=True)
class LibraryEntry:
    id: int
    name: str
    synonyms: tuple[str, ...] = ()


@dataclass(frozen=True)
class NoMatch:
    stage: str | None = None


@dataclass(frozen=True)
class Ambiguous:
    stage: str
    candidate_ids: tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Matched:
    library_id: int
    library_name: str
    stage: str


MatchResult = NoMatch | Ambiguous | Matched
Strategy = Callable[[str, list[LibraryEntry]], MatchResult]


# ---------------------------------------------------------------------------
# Name handling
# ---------------------------------------------------------------------------


def normalize_name(name: str) -> str:
    """Strip trailing parenthetical qualifiers such as "(band)" and trim."""
    stripped = name.strip()
    while True:
        shorter = _TRAILING_QUALIFIER.sub("", stripped)
        if shorter == stripped:
            return stripped
        stripped = shorter.strip()


def extract_keywords(name: str) -> list[str]:
    """Return the distinctive lowercase words of a name, minus stop words."""
    keywords = []
    for token in name.split():
        word = _NON_LETTERS.sub("", token).lower()
        if len(word) >= 3 and word not in STOP_WORDS:
            keywords.append(word)
    return keywords


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _single(stage: str, candidates: list[LibraryEntry]) -> MatchResult:
    if not candidates:
        return NoMatch(stage)
    if len(candidates) > 1:
        return Ambiguous(stage, tuple(c.id for c in candidates))
    return Matched(candidates[0].id, candidates[0].name, stage)


def exact_stage(normalized: str, library: list[LibraryEntry]) -> MatchResult:
    target = normalized.lower()
    for entry in library:
        if entry.name.lower() == target:
            return Matched(entry.id, entry.name, "exact")
    return NoMatch("exact")


def partial_stage(normalized: str, library: list[LibraryEntry]) -> MatchResult:
    target = normalized.lower()
    if not target:
        return NoMatch("partial")
    candidates = [
        entry
        for entry in library
        if entry.name and (entry.name.lower() in target or target in entry.name.lower())
    ]
    return _single("partial", candidates)


def synonym_stage(normalized: str, library: list[LibraryEntry]) -> MatchResult:
    for entry in library:
        if normalized in entry.synonyms:
            return Matched(entry.id, entry.name, "synonym")
    return NoMatch("synonym")


def keyword_stage(normalized: str, library: list[LibraryEntry]) -> MatchResult:
    keywords = extract_keywords(normalized)
    if not keywords:
        return NoMatch("keyword")
    candidates = [
        entry for entry in library if all(kw in entry.name.lower() for kw in keywords)
    ]
    return _single("keyword", candidates)


STRATEGIES: list[Strategy] = [exact_stage, partial_stage, synonym_stage, keyword_stage]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_library(session: Session, exclude_id: int | None = None) -> list[LibraryEntry]:
    """Return every rich library entry (curated and illustrated), ordered by id."""
    statement = (
        select(Exercise)
        .where(Exercise.is_custom == False)  # noqa: E712
        .where(Exercise.image_url.is_not(None))
        .order_by(Exercise.id)
    )
    if exclude_id is not None:
        statement = statement.where(Exercise.id != exclude_id)
    return [
        LibraryEntry(id=e.id, name=e.name, synonyms=tuple(e.synonyms or ()))
        for e in session.exec(statement).all()
    ]


def match_against(
    name: str, library: list[LibraryEntry], strategies: list[Strategy] = STRATEGIES
) -> MatchResult:
    """Run the strategy cascade for ``name`` over an already-loaded library."""
    normalized = normalize_name(name)
    result: MatchResult = NoMatch()
    for strategy in strategies:
        result = strategy(normalized, library)
        if isinstance(result, Matched):
            return result
    return result


def match_orphan(name: str, orphan_id: int, session: Session) -> MatchResult:
    """Find at most one rich library exercise that ``name`` confidently refers to."""
    return match_against(name, load_library(session, exclude_id=orphan_id))
