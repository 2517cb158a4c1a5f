"""
Kennel tag resolution.

Every scraped event carries a free-text kennel tag ("BrH3", "Brooklyn",
"Queens Black Knights"). The resolver turns that tag into a canonical
kennel ID.

Resolution order (first hit wins):
1. Exact short name or kennel code (case-insensitive). When several
   kennels share a short name across regions, the one linked to the
   source wins.
2. Case-insensitive alias match
3. The source's ordered kennel_patterns, then its default_kennel_tag,
   retrying steps 1-2 with the mapped tag
4. Unmatched

Results (misses included) are cached per (tag, source) for the lifetime
of the resolver. Any code that creates kennels, aliases or source links
and then resolves again in the same operation must call clear_cache()
first.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from hashtracks.db.models import Kennel, KennelAlias, Source, SourceKennel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagResolution:
    """Outcome of resolving one kennel tag."""
    kennel_id: Optional[int]
    matched: bool
    match_type: str = "none"  # 'exact', 'alias', 'pattern', 'default', 'none'

    def __repr__(self) -> str:
        return f"<TagResolution(kennel_id={self.kennel_id}, type='{self.match_type}')>"


UNMATCHED = TagResolution(kennel_id=None, matched=False)


@dataclass
class SourcePatterns:
    """Compiled kennel pattern config for one source."""
    patterns: list[tuple[re.Pattern, str]]
    default_tag: Optional[str]


def load_source_patterns(config: Optional[dict]) -> SourcePatterns:
    """
    Compile kennel_patterns from a source config.

    Invalid regexes are logged and skipped so one bad pattern does not
    break resolution for the rest of the source.
    """
    config = config or {}
    compiled = []
    for entry in config.get("kennel_patterns") or []:
        if not isinstance(entry, (list, tuple)) or len(entry) != 2:
            logger.warning("Ignoring malformed kennel pattern entry: %r", entry)
            continue
        pattern, tag = entry
        try:
            compiled.append((re.compile(pattern, re.IGNORECASE), tag))
        except re.error as e:
            logger.warning("Ignoring invalid kennel pattern %r: %s", pattern, e)

    default_tag = config.get("default_kennel_tag") or None
    return SourcePatterns(patterns=compiled, default_tag=default_tag)


class TagResolver:
    """
    Resolve raw kennel tags to kennel IDs with a per-instance cache.

    Usage:
        resolver = TagResolver(session)
        result = resolver.resolve("Brooklyn H3", source_id=source.id)
        if result.matched:
            event.kennel_id = result.kennel_id
    """

    def __init__(self, db: Session):
        self.db = db
        self._cache: dict[tuple[str, Optional[int]], TagResolution] = {}
        self._source_patterns: dict[int, SourcePatterns] = {}

    # =========================================================================
    # Main Public Methods
    # =========================================================================

    def resolve(self, tag: Optional[str], source_id: Optional[int] = None) -> TagResolution:
        """
        Resolve a kennel tag.

        Args:
            tag: Raw kennel tag from a source
            source_id: Source that reported the tag (enables disambiguation
                       and per-source pattern mapping)

        Returns:
            TagResolution; kennel_id is None when nothing matched
        """
        normalized = (tag or "").strip()
        if not normalized:
            return UNMATCHED

        cache_key = (normalized.lower(), source_id)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        result = self._resolve_uncached(normalized, source_id)
        self._cache[cache_key] = result

        if not result.matched:
            logger.debug("Unmatched kennel tag %r (source=%s)", normalized, source_id)
        return result

    def clear_cache(self) -> None:
        """Drop cached resolutions and source pattern configs."""
        self._cache.clear()
        self._source_patterns.clear()

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    def _resolve_uncached(self, tag: str, source_id: Optional[int]) -> TagResolution:
        kennel_id = self._match_direct(tag, source_id)
        if kennel_id is not None:
            return TagResolution(kennel_id, True, "exact")

        kennel_id = self._match_alias(tag)
        if kennel_id is not None:
            return TagResolution(kennel_id, True, "alias")

        if source_id is None:
            return UNMATCHED

        patterns = self._get_source_patterns(source_id)
        for pattern, mapped_tag in patterns.patterns:
            if pattern.search(tag):
                kennel_id = self._match_mapped(mapped_tag, source_id)
                if kennel_id is not None:
                    return TagResolution(kennel_id, True, "pattern")
                # First matching pattern decides; a dangling target is a miss
                return UNMATCHED

        if patterns.default_tag:
            kennel_id = self._match_mapped(patterns.default_tag, source_id)
            if kennel_id is not None:
                return TagResolution(kennel_id, True, "default")

        return UNMATCHED

    def _match_mapped(self, tag: str, source_id: Optional[int]) -> Optional[int]:
        kennel_id = self._match_direct(tag, source_id)
        if kennel_id is None:
            kennel_id = self._match_alias(tag)
        return kennel_id

    def _match_direct(self, tag: str, source_id: Optional[int]) -> Optional[int]:
        """Match short_name or kennel_code, preferring source-linked kennels."""
        lowered = tag.lower()
        name_match = or_(
            func.lower(Kennel.short_name) == lowered,
            func.lower(Kennel.kennel_code) == lowered,
        )

        if source_id is not None:
            linked = self.db.scalar(
                select(Kennel.id)
                .join(SourceKennel, SourceKennel.kennel_id == Kennel.id)
                .where(name_match, SourceKennel.source_id == source_id)
                .order_by(Kennel.id)
                .limit(1)
            )
            if linked is not None:
                return linked

        return self.db.scalar(
            select(Kennel.id).where(name_match).order_by(Kennel.id).limit(1)
        )

    def _match_alias(self, tag: str) -> Optional[int]:
        return self.db.scalar(
            select(KennelAlias.kennel_id)
            .where(func.lower(KennelAlias.alias) == tag.lower())
            .limit(1)
        )

    def _get_source_patterns(self, source_id: int) -> SourcePatterns:
        patterns = self._source_patterns.get(source_id)
        if patterns is None:
            config = self.db.scalar(select(Source.config).where(Source.id == source_id))
            patterns = load_source_patterns(config)
            self._source_patterns[source_id] = patterns
        return patterns
