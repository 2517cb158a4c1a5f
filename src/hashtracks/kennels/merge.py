"""
Kennel merge service.

Duplicate kennels happen: a source reports "Brooklyn" before anyone
notices "BrH3" already exists. Merging folds the source kennel into the
target and deletes it.

Merge flow:
1. Validate (not the same kennel, both exist)
2. Detect conflicts: both kennels have an event on the same date.
   Conflicts block execution; they are never auto-resolved.
3. Preview (default): return dependent-row counts and conflicts only
4. Execute, in one transaction:
   - role memberships under both kennels keep the higher role
   - roster entries with the same hash name (case-insensitive) are
     combined onto the target's entry; attendance is moved over
   - source links the target already has are dropped
   - every remaining row in KENNEL_OWNERSHIP is reassigned or deleted
   - the source kennel is deleted

After a successful merge no row references the source kennel.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from hashtracks.db.models import (
    Event,
    Kennel,
    KennelAlias,
    KennelAttendance,
    KennelHasher,
    MismanRequest,
    RosterGroupKennel,
    SourceKennel,
    UserKennel,
)

logger = logging.getLogger(__name__)


ROLE_RANK = {"ADMIN": 3, "MISMAN": 2, "MEMBER": 1}

# Optional roster fields compared and folded when entries are combined
ROSTER_OPTIONAL_FIELDS = ("nerd_name", "email", "phone", "notes")

# Every table with a kennel_id column and what a merge does with its rows.
# 'reassign' moves rows to the target; 'delete' drops the source's rows.
KENNEL_OWNERSHIP = (
    ("events", Event, "reassign"),
    ("memberships", UserKennel, "reassign"),
    ("roster_entries", KennelHasher, "reassign"),
    ("misman_requests", MismanRequest, "reassign"),
    ("source_links", SourceKennel, "reassign"),
    ("aliases", KennelAlias, "delete"),
    ("roster_group", RosterGroupKennel, "delete"),
)


@dataclass
class MergeConflict:
    """A blocking conflict between the two kennels."""
    type: str  # 'event_date'
    message: str
    details: list[str] = field(default_factory=list)


@dataclass
class KennelMergePreview:
    """What a merge would do, without doing it."""
    source: dict[str, Any]
    target: dict[str, Any]
    counts: dict[str, int]
    conflicts: list[MergeConflict] = field(default_factory=list)


@dataclass
class KennelMergeResult:
    """Outcome of a merge or preview request."""
    success: bool
    error: Optional[str] = None
    preview: Optional[KennelMergePreview] = None

    def __repr__(self) -> str:
        return f"<KennelMergeResult(success={self.success}, error={self.error!r})>"


class KennelMergeService:
    """
    Merge one kennel into another.

    Usage:
        service = KennelMergeService(session)
        result = service.merge(source_id, target_id)            # preview
        if result.success and not result.preview.conflicts:
            result = service.merge(source_id, target_id, preview=False)
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Main Public Methods
    # =========================================================================

    def merge(self, source_id: int, target_id: int, preview: bool = True) -> KennelMergeResult:
        """
        Preview or execute merging source_id into target_id.

        Execution commits on success and rolls back everything on failure.

        Returns:
            KennelMergeResult; error is set on validation failure, on
            conflicts during execution, or when the transaction failed
        """
        if source_id == target_id:
            return KennelMergeResult(success=False, error="Cannot merge a kennel with itself")

        source = self.db.get(Kennel, source_id)
        if source is None:
            return KennelMergeResult(success=False, error="Source kennel not found")
        target = self.db.get(Kennel, target_id)
        if target is None:
            return KennelMergeResult(success=False, error="Target kennel not found")

        conflicts = self._detect_conflicts(source_id, target_id)

        if preview:
            return KennelMergeResult(
                success=True,
                preview=KennelMergePreview(
                    source=self._identity(source),
                    target=self._identity(target),
                    counts=self._dependent_counts(source_id),
                    conflicts=conflicts,
                ),
            )

        if conflicts:
            return KennelMergeResult(
                success=False,
                error="Cannot proceed with merge due to conflicts. Please resolve manually.",
            )

        source_name = source.short_name
        target_name = target.short_name
        try:
            self._merge_memberships(source_id, target_id)
            self._merge_roster_entries(source_id, target_id)
            self._drop_duplicate_source_links(source_id, target_id)
            self._apply_ownership(source_id, target_id)
            self.db.execute(delete(Kennel).where(Kennel.id == source_id))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error("Kennel merge %s -> %s failed: %s", source_id, target_id, e)
            return KennelMergeResult(success=False, error=f"Merge failed: {e}")

        self.db.expire_all()
        logger.info("Merged kennel %s into %s", source_name, target_name)
        return KennelMergeResult(success=True)

    # =========================================================================
    # Preview Helpers
    # =========================================================================

    @staticmethod
    def _identity(kennel: Kennel) -> dict[str, Any]:
        return {"id": kennel.id, "short_name": kennel.short_name, "slug": kennel.slug}

    def _dependent_counts(self, kennel_id: int) -> dict[str, int]:
        counts = {}
        for name, model, _ in KENNEL_OWNERSHIP:
            if name == "roster_group":
                continue
            counts[name] = self.db.scalar(
                select(func.count()).select_from(model).where(model.kennel_id == kennel_id)
            ) or 0
        return counts

    def _detect_conflicts(self, source_id: int, target_id: int) -> list[MergeConflict]:
        source_dates = select(Event.date).where(Event.kennel_id == source_id)
        shared = self.db.scalars(
            select(Event.date)
            .where(Event.kennel_id == target_id, Event.date.in_(source_dates))
            .order_by(Event.date)
        ).all()

        if not shared:
            return []
        return [
            MergeConflict(
                type="event_date",
                message=f"{len(shared)} event(s) have conflicting dates",
                details=[d.isoformat() for d in shared],
            )
        ]

    # =========================================================================
    # Execution Helpers
    # =========================================================================

    def _merge_memberships(self, source_id: int, target_id: int) -> None:
        """Where a user belongs to both kennels keep the higher role."""
        source_rows = self.db.scalars(
            select(UserKennel).where(UserKennel.kennel_id == source_id)
        ).all()

        for row in source_rows:
            existing = self.db.scalar(
                select(UserKennel).where(
                    UserKennel.user_id == row.user_id,
                    UserKennel.kennel_id == target_id,
                )
            )
            if existing is None:
                continue
            if ROLE_RANK.get(row.role, 0) > ROLE_RANK.get(existing.role, 0):
                existing.role = row.role
            self.db.delete(row)

        self.db.flush()

    def _merge_roster_entries(self, source_id: int, target_id: int) -> None:
        """
        Combine roster entries that share a hash name.

        The target's entry is kept. When the source entry has more of the
        optional fields filled in, its values take precedence; otherwise
        only the target's blank fields are filled from the source.
        """
        source_rows = self.db.scalars(
            select(KennelHasher).where(KennelHasher.kennel_id == source_id)
        ).all()

        for row in source_rows:
            if not row.hash_name:
                continue
            existing = self.db.scalar(
                select(KennelHasher)
                .where(
                    KennelHasher.kennel_id == target_id,
                    func.lower(KennelHasher.hash_name) == row.hash_name.lower(),
                )
                .order_by(KennelHasher.id)
                .limit(1)
            )
            if existing is None:
                continue

            source_wins = _populated_count(row) > _populated_count(existing)
            for name in ROSTER_OPTIONAL_FIELDS:
                source_value = getattr(row, name)
                target_value = getattr(existing, name)
                if source_wins:
                    setattr(existing, name, source_value or target_value)
                else:
                    setattr(existing, name, target_value or source_value)

            self._move_attendance(row.id, existing.id)
            self.db.delete(row)

        self.db.flush()

    def _move_attendance(self, from_hasher_id: int, to_hasher_id: int) -> None:
        """Move attendance unless the kept entry already attended that event."""
        already = set(
            self.db.scalars(
                select(KennelAttendance.event_id).where(
                    KennelAttendance.kennel_hasher_id == to_hasher_id
                )
            )
        )
        rows = self.db.scalars(
            select(KennelAttendance).where(KennelAttendance.kennel_hasher_id == from_hasher_id)
        ).all()

        for attendance in rows:
            if attendance.event_id in already:
                self.db.delete(attendance)
            else:
                attendance.kennel_hasher_id = to_hasher_id
        self.db.flush()

    def _drop_duplicate_source_links(self, source_id: int, target_id: int) -> None:
        target_sources = select(SourceKennel.source_id).where(SourceKennel.kennel_id == target_id)
        self.db.execute(
            delete(SourceKennel)
            .where(SourceKennel.kennel_id == source_id, SourceKennel.source_id.in_(target_sources))
            .execution_options(synchronize_session=False)
        )

    def _apply_ownership(self, source_id: int, target_id: int) -> None:
        for name, model, action in KENNEL_OWNERSHIP:
            if action == "reassign":
                stmt = (
                    update(model)
                    .where(model.kennel_id == source_id)
                    .values(kennel_id=target_id)
                )
            else:
                stmt = delete(model).where(model.kennel_id == source_id)
            result = self.db.execute(stmt.execution_options(synchronize_session=False))
            logger.debug("Merge %s: %s %d row(s)", name, action, result.rowcount)


def _populated_count(hasher: KennelHasher) -> int:
    return sum(1 for name in ROSTER_OPTIONAL_FIELDS if getattr(hasher, name))
