"""
SQLAlchemy ORM models for VibeRide.

Three models:
  UserPreferences — a rider's default riding profile (one row per user)
  Note            — free-text trip note; input for itinerary generation
  Itinerary       — one AI-generated route version for a note

Notes and preferences are owned by the CRUD side of the app; the
itinerary lifecycle only reads them.

Default database: SQLite (viberide.db).
Production: set DATABASE_URL env var to a PostgreSQL connection string and the
app will use that instead — no code changes required.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, CheckConstraint, Column, DateTime, Float, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import declarative_base


def _utcnow():
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def iso_utc(value):
    """ISO-8601 with an explicit UTC offset; SQLite hands back naive datetimes."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# db is kept as a module-level name so external imports (database.py, manage.py,
# migrations/env.py) can reference db.metadata for table creation.
db = declarative_base()


# ---------------------------------------------------------------------------
# Itinerary status
# ---------------------------------------------------------------------------

STATUS_PENDING   = 'pending'
STATUS_RUNNING   = 'running'
STATUS_COMPLETED = 'completed'
STATUS_FAILED    = 'failed'
STATUS_CANCELLED = 'cancelled'

ALL_STATUSES      = (STATUS_PENDING, STATUS_RUNNING, STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)
ACTIVE_STATUSES   = (STATUS_PENDING, STATUS_RUNNING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_cancellable(status: str) -> bool:
    return status in ACTIVE_STATUSES


# ---------------------------------------------------------------------------
# UserPreferences
# ---------------------------------------------------------------------------

class UserPreferences(db):
    __tablename__ = 'user_preferences'

    user_id             = Column(String(36), primary_key=True)
    terrain             = Column(String(20), nullable=False)   # 'paved' | 'gravel' | 'mixed'
    road_type           = Column(String(20), nullable=False)   # 'scenic' | 'twisty' | 'highway'
    typical_duration_h  = Column(Float, nullable=False)
    typical_distance_km = Column(Float, nullable=False)
    created_at          = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at          = Column(DateTime(timezone=True), nullable=False, default=_utcnow,
                                 onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint('typical_duration_h > 0', name='ck_prefs_duration_positive'),
        CheckConstraint('typical_distance_km > 0', name='ck_prefs_distance_positive'),
    )

    def to_dict(self):
        return {
            'user_id':             self.user_id,
            'terrain':             self.terrain,
            'road_type':           self.road_type,
            'typical_duration_h':  self.typical_duration_h,
            'typical_distance_km': self.typical_distance_km,
        }

    def __repr__(self):
        return f'<UserPreferences {self.user_id} {self.terrain}/{self.road_type}>'


# ---------------------------------------------------------------------------
# Note
# ---------------------------------------------------------------------------

class Note(db):
    __tablename__ = 'notes'

    note_id     = Column(String(36), primary_key=True, default=_uuid)
    user_id     = Column(String(36), nullable=False, index=True)
    title       = Column(String(120), nullable=False)
    note_text   = Column(Text, nullable=False)
    trip_prefs  = Column(JSON, nullable=False, default=dict)   # per-trip overrides of UserPreferences
    created_at  = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at  = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at  = Column(DateTime(timezone=True), nullable=True)   # soft-delete

    def __repr__(self):
        return f'<Note {self.note_id[:8]} {self.title!r}>'


# ---------------------------------------------------------------------------
# Itinerary
# ---------------------------------------------------------------------------

_ACTIVE_PREDICATE = text("status IN ('pending', 'running') AND deleted_at IS NULL")


class Itinerary(db):
    __tablename__ = 'itineraries'

    itinerary_id = Column(String(36), primary_key=True, default=_uuid)
    note_id      = Column(String(36), ForeignKey('notes.note_id'), nullable=False, index=True)
    user_id      = Column(String(36), nullable=False)
    version      = Column(Integer, nullable=False)
    status       = Column(String(20), nullable=False, default=STATUS_PENDING)
    request_id   = Column(String(36), nullable=False)   # client idempotency key

    # ── Route payload ────────────────────────────────────────────────────────
    # GeoJSON FeatureCollection once completed; a placeholder collection
    # (no features) while pending and after a failure.
    route_geojson = Column(JSON, nullable=False)

    # ── Derived display fields (copied from route_geojson.properties) ───────
    title             = Column(Text,  nullable=True)
    total_distance_km = Column(Float, nullable=True)
    total_duration_h  = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)   # soft-delete

    __table_args__ = (
        UniqueConstraint('user_id', 'request_id', name='uq_itineraries_user_request'),
        UniqueConstraint('note_id', 'version', name='uq_itineraries_note_version'),
        CheckConstraint('version > 0', name='ck_itineraries_version_positive'),
        # Single-flight: at most one pending/running itinerary per user.
        Index('uq_itineraries_user_active', 'user_id', unique=True,
              sqlite_where=_ACTIVE_PREDICATE, postgresql_where=_ACTIVE_PREDICATE),
        Index('ix_itineraries_user_status', 'user_id', 'status'),
    )

    def to_start_dict(self):
        """Identifying fields returned by intake (first call and replays alike)."""
        return {
            'itinerary_id': self.itinerary_id,
            'note_id':      self.note_id,
            'version':      self.version,
            'status':       self.status,
            'request_id':   self.request_id,
            'created_at':   iso_utc(self.created_at),
        }

    def to_dict(self, include_route=True):
        d = {
            'itinerary_id':      self.itinerary_id,
            'note_id':           self.note_id,
            'user_id':           self.user_id,
            'version':           self.version,
            'status':            self.status,
            'title':             self.title,
            'total_distance_km': self.total_distance_km,
            'total_duration_h':  self.total_duration_h,
            'request_id':        self.request_id,
            'created_at':        iso_utc(self.created_at),
            'updated_at':        iso_utc(self.updated_at),
        }
        if include_route:
            d['route_geojson'] = self.route_geojson
        return d

    def __repr__(self):
        return f'<Itinerary {self.itinerary_id[:8]} note={self.note_id[:8]} v{self.version} status={self.status}>'
