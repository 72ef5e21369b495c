"""
schemas.py — Pydantic v2 request models for VibeRide.

Validation errors are turned into HTTP 400 {'error': 'validation_failed', ...}
by the RequestValidationError handler in app.py.
"""

from datetime import datetime, timezone
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ItineraryStatus = Literal['pending', 'running', 'completed', 'failed', 'cancelled']


# ── Itinerary generation ──────────────────────────────────────────────────────

class GenerateItineraryRequest(BaseModel):
    """POST /notes/{note_id}/itineraries body."""
    model_config = ConfigDict(extra='forbid')

    request_id: UUID   # client idempotency key


# ── Analytics ─────────────────────────────────────────────────────────────────

class StatsWindow(BaseModel):
    """Optional [from, to) window over itinerary created_at."""
    start: datetime | None = Field(default=None, alias='from')
    end:   datetime | None = Field(default=None, alias='to')

    model_config = ConfigDict(populate_by_name=True)

    @field_validator('start', 'end')
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode='after')
    def ordered(self):
        if self.start and self.end and self.start > self.end:
            raise ValueError("'from' must not be after 'to'")
        return self
