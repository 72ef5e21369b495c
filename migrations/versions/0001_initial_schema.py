"""Initial schema: user_preferences, notes, itineraries.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

itineraries carries the three store-level guarantees the generation
lifecycle relies on:
- uq_itineraries_user_request: one row per (user, idempotency key)
- uq_itineraries_note_version: versions are unique per note
- uq_itineraries_user_active:  at most one pending/running row per user
  (partial unique index; SQLite >= 3.8 and PostgreSQL both support it)
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE = sa.text("status IN ('pending', 'running') AND deleted_at IS NULL")


def upgrade() -> None:
    op.create_table(
        "user_preferences",
        sa.Column("user_id", sa.String(36), primary_key=True),
        sa.Column("terrain", sa.String(20), nullable=False),
        sa.Column("road_type", sa.String(20), nullable=False),
        sa.Column("typical_duration_h", sa.Float(), nullable=False),
        sa.Column("typical_distance_km", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("typical_duration_h > 0", name="ck_prefs_duration_positive"),
        sa.CheckConstraint("typical_distance_km > 0", name="ck_prefs_distance_positive"),
    )

    op.create_table(
        "notes",
        sa.Column("note_id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("title", sa.String(120), nullable=False),
        sa.Column("note_text", sa.Text(), nullable=False),
        sa.Column("trip_prefs", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notes_user_id", "notes", ["user_id"])

    op.create_table(
        "itineraries",
        sa.Column("itinerary_id", sa.String(36), primary_key=True),
        sa.Column("note_id", sa.String(36), sa.ForeignKey("notes.note_id"), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("request_id", sa.String(36), nullable=False),
        sa.Column("route_geojson", sa.JSON(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("total_distance_km", sa.Float(), nullable=True),
        sa.Column("total_duration_h", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "request_id", name="uq_itineraries_user_request"),
        sa.UniqueConstraint("note_id", "version", name="uq_itineraries_note_version"),
        sa.CheckConstraint("version > 0", name="ck_itineraries_version_positive"),
    )
    op.create_index("ix_itineraries_note_id", "itineraries", ["note_id"])
    op.create_index("ix_itineraries_user_status", "itineraries", ["user_id", "status"])
    op.create_index(
        "uq_itineraries_user_active", "itineraries", ["user_id"], unique=True,
        sqlite_where=_ACTIVE, postgresql_where=_ACTIVE,
    )


def downgrade() -> None:
    op.drop_index("uq_itineraries_user_active", table_name="itineraries")
    op.drop_index("ix_itineraries_user_status", table_name="itineraries")
    op.drop_index("ix_itineraries_note_id", table_name="itineraries")
    op.drop_table("itineraries")
    op.drop_index("ix_notes_user_id", table_name="notes")
    op.drop_table("notes")
    op.drop_table("user_preferences")
