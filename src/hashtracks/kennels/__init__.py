"""
Kennel identity management module.

Scraped events only name their kennel with free text. This module turns
that text into canonical kennel records and keeps those records clean.

Key components:
- fuzzy: Levenshtein similarity and candidate ranking
- TagResolver: Tag -> kennel ID with a per-operation cache
- KennelService: Kennel/alias/source-link creation with collision checks
- KennelMergeService: Fold a duplicate kennel into another

The resolution strategy (in priority order):
1. Exact short name or kennel code (case-insensitive)
2. Alias match (case-insensitive)
3. Per-source regex patterns, then the source's default tag
4. Unmatched (reported as an UNMATCHED_TAGS alert)
"""

from hashtracks.kennels.fuzzy import FuzzyCandidate, FuzzyMatch, score, top_matches
from hashtracks.kennels.resolver import TagResolution, TagResolver
from hashtracks.kennels.service import KennelData, KennelService, KennelValidationError
from hashtracks.kennels.merge import KennelMergeResult, KennelMergeService

__all__ = [
    "FuzzyCandidate",
    "FuzzyMatch",
    "score",
    "top_matches",
    "TagResolution",
    "TagResolver",
    "KennelData",
    "KennelService",
    "KennelValidationError",
    "KennelMergeResult",
    "KennelMergeService",
]
