"""initial schema

Revision ID: 0001
Revises:
Create Date: 2024-01-15 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

JSONB = postgresql.JSONB(none_as_null=True)

ENTITY_TYPES = ("EVENT", "VENUE", "ARTIST")
EVENT_STATES = (
    "MANUAL_DRAFT", "SCRAPED_DRAFT", "APPROVED_PENDING_DETAILS",
    "READY_TO_PUBLISH", "PUBLISHED", "REJECTED", "CANCELED",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _link_table(name: str, canonical_table: str, canonical_key: str):
    op.create_table(
        name,
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "raw_record_id", sa.BigInteger(),
            sa.ForeignKey("raw_records.id", ondelete="CASCADE"),
            nullable=False, unique=True
        ),
        sa.Column(
            canonical_key, sa.BigInteger(),
            sa.ForeignKey(f"{canonical_table}.id", ondelete="CASCADE"),
            nullable=False
        ),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(f"ix_{name}_{canonical_key}", name, [canonical_key])
    op.create_index(
        f"uq_{name}_one_primary", name, [canonical_key],
        unique=True, postgresql_where=sa.text("is_primary")
    )


def upgrade():
    entity_type = postgresql.ENUM(*ENTITY_TYPES, name="entity_type")
    event_state = postgresql.ENUM(*EVENT_STATES, name="event_state")

    # ========== Raw records ==========
    op.create_table(
        "raw_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", entity_type, nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("label", sa.String(500), nullable=False),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("data", JSONB, nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("has_changes", sa.Boolean(), nullable=False),
        sa.Column("changes", JSONB, nullable=True),
        sa.Column("dismissed", sa.Boolean(), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("entity_type", "source", "source_id", name="uq_raw_records_source_key"),
    )
    op.create_index("ix_raw_records_entity_type", "raw_records", ["entity_type"])
    op.create_index("ix_raw_records_source", "raw_records", ["source"])
    op.create_index("ix_raw_records_city", "raw_records", ["city"])
    op.create_index("ix_raw_records_has_changes", "raw_records", ["has_changes"])
    op.create_index("idx_raw_records_type_city", "raw_records", ["entity_type", "city"])
    op.create_index("idx_raw_records_pending", "raw_records", ["entity_type", "has_changes", "dismissed"])

    # ========== Canonical records ==========
    op.create_table(
        "venues",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("content_url", sa.String(1000), nullable=True),
        sa.Column("has_pending_changes", sa.Boolean(), nullable=False),
        sa.Column("field_provenance", JSONB, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_venues_name", "venues", ["name"])
    op.create_index("ix_venues_city", "venues", ["city"])
    op.create_index("ix_venues_created_at", "venues", ["created_at"])

    op.create_table(
        "artists",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("genres", JSONB, nullable=True),
        sa.Column("image_url", sa.String(1000), nullable=True),
        sa.Column("content_url", sa.String(1000), nullable=True),
        sa.Column("has_pending_changes", sa.Boolean(), nullable=False),
        sa.Column("field_provenance", JSONB, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_artists_name", "artists", ["name"])
    op.create_index("ix_artists_created_at", "artists", ["created_at"])

    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("start_time", sa.Time(), nullable=True),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "venue_id", sa.BigInteger(),
            sa.ForeignKey("venues.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("venue_name", sa.String(255), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("flyer_url", sa.String(1000), nullable=True),
        sa.Column("content_url", sa.String(1000), nullable=True),
        sa.Column("state", event_state, nullable=False),
        sa.Column("has_pending_changes", sa.Boolean(), nullable=False),
        sa.Column("field_provenance", JSONB, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_events_title", "events", ["title"])
    op.create_index("ix_events_date", "events", ["date"])
    op.create_index("ix_events_venue_id", "events", ["venue_id"])
    op.create_index("ix_events_city", "events", ["city"])
    op.create_index("ix_events_state", "events", ["state"])
    op.create_index("ix_events_has_pending_changes", "events", ["has_pending_changes"])
    op.create_index("ix_events_created_at", "events", ["created_at"])
    op.create_index("idx_events_date_city", "events", ["date", "city"])
    op.create_index("idx_events_state_date", "events", ["state", "date"])

    op.create_table(
        "event_artists",
        sa.Column(
            "event_id", sa.BigInteger(),
            sa.ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column(
            "artist_id", sa.BigInteger(),
            sa.ForeignKey("artists.id", ondelete="CASCADE"), primary_key=True
        ),
    )

    # ========== Links ==========
    _link_table("event_links", "events", "event_id")
    _link_table("venue_links", "venues", "venue_id")
    _link_table("artist_links", "artists", "artist_id")

    # ========== Workflow history ==========
    op.create_table(
        "state_transitions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.BigInteger(), nullable=False),
        sa.Column("previous_state", sa.String(40), nullable=True),
        sa.Column("new_state", sa.String(40), nullable=False),
        sa.Column("actor", sa.String(100), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("context", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("idx_state_transitions_event", "state_transitions", ["event_id", "created_at"])

    # ========== Sync jobs ==========
    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("phase", sa.String(20), nullable=False),
        sa.Column("cities", JSONB, nullable=False),
        sa.Column("sources", JSONB, nullable=False),
        sa.Column("enrich_after", sa.Boolean(), nullable=False),
        sa.Column("dedupe_after", sa.Boolean(), nullable=False),
        sa.Column("requested_by", sa.String(100), nullable=True),
        sa.Column("current_city", sa.String(100), nullable=True),
        sa.Column("current_source", sa.String(50), nullable=True),
        sa.Column("percent", sa.Float(), nullable=False),
        sa.Column("results", JSONB, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("heartbeat_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_sync_jobs_started_at", "sync_jobs", ["started_at"])
    op.create_index(
        "uq_sync_jobs_one_running", "sync_jobs", ["status"],
        unique=True, postgresql_where=sa.text("status = 'running'")
    )

    op.create_table(
        "source_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "sync_job_id", sa.BigInteger(),
            sa.ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=True
        ),
        sa.Column("city", sa.String(100), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("records_fetched", sa.Integer(), nullable=False),
        sa.Column("records_inserted", sa.Integer(), nullable=False),
        sa.Column("records_updated", sa.Integer(), nullable=False),
        sa.Column("records_unchanged", sa.Integer(), nullable=False),
        sa.Column("records_failed", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", JSONB, nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
    )
    op.create_index("ix_source_runs_sync_job_id", "source_runs", ["sync_job_id"])
    op.create_index("idx_source_runs_source_started", "source_runs", ["source", "city", "started_at"])


def downgrade():
    op.drop_table("source_runs")
    op.drop_table("sync_jobs")
    op.drop_table("state_transitions")
    op.drop_table("artist_links")
    op.drop_table("venue_links")
    op.drop_table("event_links")
    op.drop_table("event_artists")
    op.drop_table("events")
    op.drop_table("artists")
    op.drop_table("venues")
    op.drop_table("raw_records")
    sa.Enum(name="event_state").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="entity_type").drop(op.get_bind(), checkfirst=True)
