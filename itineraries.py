"""
itineraries.py — Itinerary generation router for VibeRide (FastAPI)

Routes (all require authentication, all scoped to the caller):
  POST   /notes/{note_id}/itineraries      — start a generation (202, idempotent on request_id)
  GET    /notes/{note_id}/itineraries      — list versions for a note (?status=&limit=)
  GET    /itineraries/{id}                 — full itinerary incl. route_geojson
  GET    /itineraries/{id}/status          — lightweight polling view
  POST   /itineraries/{id}/cancel          — pending | running → cancelled
  DELETE /itineraries/{id}                 — soft-delete a finished itinerary

Business failures surface as LifecycleError and are rendered by the handler
in app.py; this module only adds the rate limit and request plumbing.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

import lifecycle
from auth import CurrentUser, check_user_rate_limit, get_current_user
from database import get_db
from schemas import GenerateItineraryRequest, ItineraryStatus
from worker import GenerationQueue

logger = logging.getLogger(__name__)

itineraries_router = APIRouter(tags=['itineraries'])


# ── Helpers ───────────────────────────────────────────────────────────────────

def get_generation_queue(request: Request) -> GenerationQueue:
    queue = getattr(request.app.state, 'generation_queue', None)
    if queue is None:
        raise HTTPException(status_code=503, detail='Generation queue is not running')
    return queue


# ── Routes ────────────────────────────────────────────────────────────────────

@itineraries_router.post('/notes/{note_id}/itineraries', status_code=202)
async def start_generation(
    note_id: str,
    body: GenerateItineraryRequest,
    db: Session = Depends(get_db),
    queue: GenerationQueue = Depends(get_generation_queue),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Create a pending itinerary version for the note and queue its generation.

    The response comes back before the route planner is called; clients poll
    GET /itineraries/{id}/status.  Re-sending the same request_id returns the
    itinerary created by the first call instead of starting another.
    """
    # Per-user rate limit, checked before intake
    allowed, retry_after = check_user_rate_limit(current_user.id, 'generate')
    if not allowed:
        logger.warning('Rate limit hit: user=%s generate retry_after=%ds',
                       current_user.id[:8], retry_after)
        raise HTTPException(
            status_code=429,
            detail=f'Too many requests. Please wait {retry_after} seconds before trying again.',
            headers={'Retry-After': str(retry_after)},
        )

    return await lifecycle.start(db, current_user.id, note_id, body.request_id, queue)


@itineraries_router.get('/notes/{note_id}/itineraries')
async def list_itineraries(
    note_id: str,
    status: ItineraryStatus | None = Query(default=None),
    limit: int = Query(default=lifecycle.DEFAULT_LIST_LIMIT, ge=1, le=lifecycle.MAX_LIST_LIMIT),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """GET /notes/{id}/itineraries — newest version first, without route payloads."""
    rows = await lifecycle.list_by_note(db, current_user.id, note_id, status=status, limit=limit)
    return {'data': rows}


@itineraries_router.get('/itineraries/{itinerary_id}')
async def get_itinerary(
    itinerary_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await lifecycle.get(db, current_user.id, itinerary_id)


@itineraries_router.get('/itineraries/{itinerary_id}/status')
async def get_itinerary_status(
    itinerary_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """GET /itineraries/{id}/status — route_geojson only once completed."""
    return await lifecycle.get_status(db, current_user.id, itinerary_id)


@itineraries_router.post('/itineraries/{itinerary_id}/cancel')
async def cancel_itinerary(
    itinerary_id: str,
    db: Session = Depends(get_db),
    queue: GenerationQueue = Depends(get_generation_queue),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await lifecycle.cancel(db, current_user.id, itinerary_id, queue)


@itineraries_router.delete('/itineraries/{itinerary_id}')
async def delete_itinerary(
    itinerary_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """DELETE /itineraries/{id} — soft-delete; only completed, failed or cancelled rows."""
    return await lifecycle.delete(db, current_user.id, itinerary_id)
