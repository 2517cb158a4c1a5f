"""
Fuzzy string matching for kennel tags and hasher names.

Kennel tags and hasher names arrive in many spellings:
- "Brooklyn H3" vs "brooklyn  h3" (case, spacing)
- "NYCH3" vs "NYC H3" (typos, missing spaces)
- "Queens" vs "Queens Black Knights H3" (abbreviated forms)

Scores are normalized Levenshtein similarity in [0, 1] computed with
rapidfuzz. Ranking adds a small boost when one name contains the other
so that short forms still surface their full kennel.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein


# Added to a candidate's score when one name contains the other
CONTAINMENT_BOOST = 0.3

# Ranked matches at or below this score are dropped
MIN_RANK_SCORE = 0.2


@dataclass
class FuzzyCandidate:
    """A kennel (or hasher) that can be ranked against a query."""
    id: int
    short_name: str
    full_name: Optional[str] = None
    aliases: list[str] = field(default_factory=list)

    def names(self) -> list[str]:
        """All names for this candidate, normalized."""
        names = [normalize(self.short_name)]
        if self.full_name:
            names.append(normalize(self.full_name))
        names.extend(normalize(a) for a in self.aliases if a)
        return [n for n in names if n]


@dataclass
class FuzzyMatch:
    """One ranked candidate."""
    id: int
    short_name: str
    score: float

    def __repr__(self) -> str:
        return f"<FuzzyMatch(id={self.id}, name='{self.short_name}', score={self.score:.2f})>"


def normalize(text: Optional[str]) -> str:
    """
    Normalize text for comparison: lowercase, collapse whitespace, trim.

    Examples:
        >>> normalize("  Brooklyn   H3 ")
        'brooklyn h3'
        >>> normalize(None)
        ''
    """
    if not text:
        return ""
    return " ".join(text.lower().split())


def score(a: Optional[str], b: Optional[str]) -> float:
    """
    Similarity of two strings from 0.0 (nothing in common) to 1.0 (equal).

    Both inputs are normalized first. An empty input scores 0.0.
    The result is 1 - levenshtein_distance / max(len(a), len(b)),
    which is symmetric in its arguments.

    Examples:
        >>> score("Brooklyn H3", "brooklyn h3")
        1.0
        >>> score("", "anything")
        0.0
    """
    na = normalize(a)
    nb = normalize(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    return Levenshtein.normalized_similarity(na, nb)


def top_matches(
    query: str,
    candidates: Iterable[FuzzyCandidate],
    limit: int = 5,
) -> list[FuzzyMatch]:
    """
    Rank candidates by similarity to a query.

    Each candidate is scored on its best name (short name, full name or
    alias). A name that contains the query, or is contained by it, gets
    CONTAINMENT_BOOST added; scores are capped at 1.0. Candidates scoring
    MIN_RANK_SCORE or less are dropped.

    Args:
        query: Free-text tag or name to look up
        candidates: Kennels or hashers to rank
        limit: Maximum number of matches returned

    Returns:
        Matches sorted by score, highest first
    """
    normalized = normalize(query)
    if not normalized:
        return []

    ranked = []
    for candidate in candidates:
        best = 0.0
        for name in candidate.names():
            if name == normalized:
                best = 1.0
                break

            boost = CONTAINMENT_BOOST if (normalized in name or name in normalized) else 0.0
            similarity = Levenshtein.normalized_similarity(name, normalized)
            best = max(best, similarity + boost)

        best = min(best, 1.0)
        if best > MIN_RANK_SCORE:
            ranked.append(FuzzyMatch(id=candidate.id, short_name=candidate.short_name, score=best))

    ranked.sort(key=lambda m: m.score, reverse=True)
    return ranked[:limit]
