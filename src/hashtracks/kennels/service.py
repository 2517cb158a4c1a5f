"""
Kennel creation and identity helpers.

Kennels are created from several places (alert repair, scripts) and all
of them must agree on how identifiers are derived and which collisions
are rejected:
- kennel_code: lowercase alphanumeric with hyphens ("NYC H3" -> "nyc-h3")
- slug: lowercase, parentheses stripped, whitespace to hyphens
- (short_name, region) must be unique
- alias text is unique case-insensitively across all kennels

Nothing here commits; callers own the transaction.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from hashtracks.config import settings
from hashtracks.db.models import Kennel, KennelAlias, SourceKennel
from hashtracks.kennels.fuzzy import FuzzyCandidate, FuzzyMatch, top_matches

logger = logging.getLogger(__name__)


class KennelValidationError(ValueError):
    """A kennel, alias or source link could not be created."""
    pass


@dataclass
class KennelData:
    """Caller-supplied fields for a new kennel."""
    short_name: str
    full_name: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    website: Optional[str] = None


def to_slug(short_name: str) -> str:
    """
    URL-safe slug from a short name.

    Examples:
        >>> to_slug("Drinking Practice (NYC)")
        'drinking-practice-nyc'
    """
    slug = short_name.lower()
    slug = re.sub(r"[()]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def to_kennel_code(short_name: str) -> str:
    """
    Permanent kennel code from a short name.

    Examples:
        >>> to_kennel_code("Bos Moon")
        'bos-moon'
        >>> to_kennel_code("Special (NYC)")
        'special-nyc'
    """
    code = re.sub(r"[^a-z0-9]+", "-", short_name.lower())
    return code.strip("-")


class KennelService:
    """
    Create kennels, aliases and source links with collision checks.

    Usage:
        service = KennelService(session)
        kennel = service.create_kennel(KennelData(short_name="QBK"), seed_alias="Queens")
        service.link_to_source(source.id, kennel.id)
        session.commit()
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Main Public Methods
    # =========================================================================

    def create_kennel(self, data: KennelData, seed_alias: Optional[str] = None) -> Kennel:
        """
        Create a kennel and optionally a seed alias.

        The seed alias is skipped when it equals the short name.

        Raises:
            KennelValidationError: blank short name, identifier or
                (short_name, region) collision, or duplicate alias
        """
        short_name = (data.short_name or "").strip()
        if not short_name:
            raise KennelValidationError("Short name is required")

        region = (data.region or "").strip() or "Unknown"
        slug = to_slug(short_name)
        kennel_code = to_kennel_code(short_name)
        if not slug or not kennel_code:
            raise KennelValidationError(f"Short name \"{short_name}\" has no usable characters")

        existing = self.db.scalar(
            select(Kennel).where(
                or_(
                    Kennel.kennel_code == kennel_code,
                    Kennel.slug == slug,
                    (func.lower(Kennel.short_name) == short_name.lower()) & (Kennel.region == region),
                )
            ).limit(1)
        )
        if existing is not None:
            raise KennelValidationError(f"Kennel \"{short_name}\" already exists")

        alias_text = (seed_alias or "").strip()
        if alias_text and alias_text != short_name:
            if self.find_alias(alias_text) is not None:
                raise KennelValidationError(f"Alias \"{alias_text}\" already exists")

        kennel = Kennel(
            kennel_code=kennel_code,
            short_name=short_name,
            slug=slug,
            full_name=(data.full_name or "").strip() or short_name,
            region=region,
            country=data.country,
            website=data.website,
        )
        self.db.add(kennel)
        self.db.flush()

        if alias_text and alias_text != short_name:
            self.db.add(KennelAlias(kennel_id=kennel.id, alias=alias_text))
            self.db.flush()

        logger.info("Created kennel %s (code=%s, region=%s)", short_name, kennel_code, region)
        return kennel

    def add_alias(self, kennel_id: int, alias: str) -> KennelAlias:
        """
        Attach an alias to a kennel.

        Raises:
            KennelValidationError: blank alias, unknown kennel, or the alias
                already exists for any kennel (case-insensitive)
        """
        alias_text = (alias or "").strip()
        if not alias_text:
            raise KennelValidationError("Alias is required")
        if self.db.get(Kennel, kennel_id) is None:
            raise KennelValidationError("Kennel not found")
        if self.find_alias(alias_text) is not None:
            raise KennelValidationError(f"Alias \"{alias_text}\" already exists")

        row = KennelAlias(kennel_id=kennel_id, alias=alias_text)
        self.db.add(row)
        self.db.flush()
        return row

    def link_to_source(self, source_id: int, kennel_id: int) -> SourceKennel:
        """
        Allow a source to emit events for a kennel.

        Raises:
            KennelValidationError: the link already exists
        """
        if self.is_linked(source_id, kennel_id):
            raise KennelValidationError("Kennel is already linked to this source")

        link = SourceKennel(source_id=source_id, kennel_id=kennel_id)
        self.db.add(link)
        self.db.flush()
        return link

    def find_alias(self, alias: str) -> Optional[KennelAlias]:
        """Case-insensitive alias lookup across all kennels."""
        return self.db.scalar(
            select(KennelAlias).where(func.lower(KennelAlias.alias) == alias.strip().lower()).limit(1)
        )

    def is_linked(self, source_id: int, kennel_id: int) -> bool:
        return self.db.scalar(
            select(SourceKennel.id).where(
                SourceKennel.source_id == source_id,
                SourceKennel.kennel_id == kennel_id,
            )
        ) is not None

    def linked_kennel_ids(self, source_id: int) -> set[int]:
        return set(
            self.db.scalars(
                select(SourceKennel.kennel_id).where(SourceKennel.source_id == source_id)
            )
        )

    def find_similar_kennels(
        self,
        name: str,
        threshold: Optional[float] = None,
        limit: int = 3,
    ) -> list[FuzzyMatch]:
        """
        Existing kennels that look like `name`.

        Used as a non-blocking warning before creating a kennel, so an
        admin notices "Brooklyn H3" already exists before adding "Brooklyn".

        Args:
            name: Proposed short name (or raw tag)
            threshold: Minimum score, exclusive (default: settings.similar_kennel_threshold)
            limit: Maximum number of kennels returned
        """
        if threshold is None:
            threshold = settings.similar_kennel_threshold

        kennels = self.db.scalars(select(Kennel).options(selectinload(Kennel.aliases))).all()
        candidates = [
            FuzzyCandidate(
                id=k.id,
                short_name=k.short_name,
                full_name=k.full_name,
                aliases=[a.alias for a in k.aliases],
            )
            for k in kennels
        ]
        matches = top_matches(name, candidates, limit=limit)
        return [m for m in matches if m.score > threshold]
