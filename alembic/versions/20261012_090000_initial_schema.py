"""Initial schema: kennels, sources, events, scrape health, rosters

Revision ID: 4e1a7c2b9d30
Revises:
Create Date: 2026-10-12 09:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic.
revision: str = "4e1a7c2b9d30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json():
    return postgresql.JSONB(astext_type=sa.Text())


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade() -> None:
    # --- Kennels -------------------------------------------------------------
    op.create_table(
        "kennels",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kennel_code", sa.String(length=100), nullable=False),
        sa.Column("short_name", sa.String(length=100), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("region", sa.String(length=100), nullable=False, server_default="Unknown"),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("website", sa.String(length=500), nullable=True),
        sa.Column("founded_year", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kennel_code"),
        sa.UniqueConstraint("slug"),
        sa.UniqueConstraint("short_name", "region", name="uq_kennel_short_name_region"),
    )
    op.create_index("idx_kennels_short_name", "kennels", ["short_name"], unique=False)

    op.create_table(
        "kennel_aliases",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kennel_id", sa.Integer(), nullable=False),
        sa.Column("alias", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["kennel_id"], ["kennels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_kennel_aliases_alias_lower",
        "kennel_aliases",
        [sa.text("lower(alias)")],
        unique=True,
    )
    op.create_index("idx_kennel_aliases_kennel", "kennel_aliases", ["kennel_id"], unique=False)

    # --- Sources -------------------------------------------------------------
    op.create_table(
        "sources",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(length=1000), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("trust_level", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("config", _json(), nullable=True),
        sa.Column("scrape_days", sa.Integer(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("health_status", sa.String(length=20), nullable=False, server_default="UNKNOWN"),
        sa.Column("last_scrape_at", sa.DateTime(), nullable=True),
        sa.Column("last_success_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.CheckConstraint("trust_level >= 1 AND trust_level <= 10", name="ck_source_trust_range"),
    )

    op.create_table(
        "source_kennels",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("kennel_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["source_id"], ["sources.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["kennel_id"], ["kennels.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_id", "kennel_id", name="uq_source_kennel"),
    )
    op.create_index("idx_source_kennels_kennel", "source_kennels", ["kennel_id"], unique=False)

    # --- Events --------------------------------------------------------------
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kennel_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("run_number", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("hares_text", sa.String(length=500), nullable=True),
        sa.Column("location_name", sa.String(length=500), nullable=True),
        sa.Column("location_address", sa.String(length=1000), nullable=True),
        sa.Column("start_time", sa.String(length=5), nullable=True),
        sa.Column("source_url", sa.String(length=1000), nullable=True),
        sa.Column("trust_level", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="CONFIRMED"),
        sa.Column("is_manual_entry", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["kennel_id"], ["kennels.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kennel_id", "date", name="uq_event_kennel_date"),
    )
    op.create_index("idx_events_kennel_run_number", "events", ["kennel_id", "run_number"], unique=False)
    op.create_index("idx_events_date", "events", ["date"], unique=False)

    op.create_table(
        "raw_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("raw_data", _json(), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("event_id", sa.Integer(), nullable=True),
        sa.Column("scraped_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["source_id"], ["sources.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_raw_events_source_fingerprint", "raw_events", ["source_id", "fingerprint"], unique=False
    )
    op.create_index("idx_raw_events_event", "raw_events", ["event_id"], unique=False)

    # --- Scrape health -------------------------------------------------------
    op.create_table(
        "scrape_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("forced", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("started_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("events_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_cancelled", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unmatched_tags", _json(), nullable=False),
        sa.Column("blocked_tags", _json(), nullable=False),
        sa.Column("errors", _json(), nullable=False),
        sa.Column("fill_rate_title", sa.Integer(), nullable=True),
        sa.Column("fill_rate_location", sa.Integer(), nullable=True),
        sa.Column("fill_rate_hares", sa.Integer(), nullable=True),
        sa.Column("fill_rate_start_time", sa.Integer(), nullable=True),
        sa.Column("fill_rate_run_number", sa.Integer(), nullable=True),
        sa.Column("structure_hash", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["source_id"], ["sources.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_scrape_logs_source_started", "scrape_logs", ["source_id", "started_at"], unique=False
    )
    op.create_index(
        "idx_scrape_logs_source_status", "scrape_logs", ["source_id", "status"], unique=False
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("scrape_log_id", sa.Integer(), nullable=True),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="OPEN"),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("context", _json(), nullable=True),
        sa.Column("snoozed_until", sa.DateTime(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by", sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["source_id"], ["sources.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["scrape_log_id"], ["scrape_logs.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_alerts_source_type_status", "alerts", ["source_id", "type", "status"], unique=False
    )
    op.create_index("idx_alerts_status_created", "alerts", ["status", "created_at"], unique=False)

    op.create_table(
        "alert_repair_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("alert_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("details", _json(), nullable=False),
        sa.Column("result", sa.String(length=10), nullable=False),
        sa.Column("result_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["alert_id"], ["alerts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("alert_id", "sequence", name="uq_alert_repair_sequence"),
    )

    # --- Memberships ---------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("hash_name", sa.String(length=255), nullable=True),
        sa.Column("nerd_name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "user_kennels",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kennel_id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="MEMBER"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["kennel_id"], ["kennels.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "kennel_id", name="uq_user_kennel"),
    )

    op.create_table(
        "misman_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kennel_id", sa.Integer(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["kennel_id"], ["kennels.id"]),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- Rosters -------------------------------------------------------------
    op.create_table(
        "roster_groups",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "roster_group_kennels",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("kennel_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["group_id"], ["roster_groups.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["kennel_id"], ["kennels.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kennel_id"),
    )

    op.create_table(
        "kennel_hashers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("roster_group_id", sa.Integer(), nullable=True),
        sa.Column("kennel_id", sa.Integer(), nullable=True),
        sa.Column("hash_name", sa.String(length=255), nullable=True),
        sa.Column("nerd_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["roster_group_id"], ["roster_groups.id"]),
        sa.ForeignKeyConstraint(["kennel_id"], ["kennels.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_kennel_hashers_group", "kennel_hashers", ["roster_group_id"], unique=False)
    op.create_index("idx_kennel_hashers_kennel", "kennel_hashers", ["kennel_id"], unique=False)

    op.create_table(
        "kennel_attendance",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kennel_hasher_id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("hared", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("recorded_by", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["kennel_hasher_id"], ["kennel_hashers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kennel_hasher_id", "event_id", name="uq_attendance_hasher_event"),
    )
    op.create_index("idx_kennel_attendance_event", "kennel_attendance", ["event_id"], unique=False)


def downgrade() -> None:
    for table in (
        "kennel_attendance",
        "kennel_hashers",
        "roster_group_kennels",
        "roster_groups",
        "misman_requests",
        "user_kennels",
        "users",
        "alert_repair_entries",
        "alerts",
        "scrape_logs",
        "raw_events",
        "events",
        "source_kennels",
        "sources",
        "kennel_aliases",
        "kennels",
    ):
        op.drop_table(table)
