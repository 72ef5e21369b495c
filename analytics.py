"""
analytics.py — Generation statistics for internal dashboards (service role only).

GET /analytics/generations/stats[?from=ISO&to=ISO]

Aggregates over itineraries created in the window, soft-deleted rows
included (they still cost a generation):

  totals            count per status + overall
  failure_rate      failed / (completed + failed)
  completion_time   avg and p95 seconds from created_at to updated_at of completed rows
  per_user          mean / median generations per user, users with >= 3
"""

import logging
import math
import statistics
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from auth import CurrentUser, require_service_role
from database import get_db
from errors import ErrorKind, LifecycleError
from models import ALL_STATUSES, STATUS_COMPLETED, STATUS_FAILED, Itinerary
from schemas import StatsWindow

logger = logging.getLogger(__name__)

analytics_router = APIRouter(prefix='/analytics', tags=['analytics'])

HEAVY_USER_THRESHOLD = 3


def _percentile(values: list[float], pct: float) -> float | None:
    """Nearest-rank percentile; None for an empty list."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def generation_stats(db: Session, start: datetime | None = None, end: datetime | None = None) -> dict:
    window = []
    if start is not None:
        window.append(Itinerary.created_at >= start)
    if end is not None:
        window.append(Itinerary.created_at < end)

    try:
        by_status = dict(db.execute(
            select(Itinerary.status, func.count()).where(*window).group_by(Itinerary.status)
        ).all())
        completed = db.execute(
            select(Itinerary.created_at, Itinerary.updated_at)
            .where(Itinerary.status == STATUS_COMPLETED, *window)
        ).all()
        per_user = db.scalars(
            select(func.count()).select_from(Itinerary)
            .where(*window).group_by(Itinerary.user_id)
        ).all()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error('Generation stats query failed: %s', exc)
        raise LifecycleError(ErrorKind.STORAGE_FAILURE, 'Failed to compute generation stats') from exc

    totals = {status: by_status.get(status, 0) for status in ALL_STATUSES}
    totals['total'] = sum(by_status.values())

    finished = totals[STATUS_COMPLETED] + totals[STATUS_FAILED]
    failure_rate = round(totals[STATUS_FAILED] / finished, 4) if finished else None

    durations = [
        (_as_utc(updated) - _as_utc(created)).total_seconds()
        for created, updated in completed
    ]
    avg = round(statistics.fmean(durations), 2) if durations else None
    p95 = _percentile(durations, 95)

    return {
        'window': {
            'from': start.isoformat() if start else None,
            'to':   end.isoformat() if end else None,
        },
        'totals':       totals,
        'failure_rate': failure_rate,
        'completion_time_seconds': {
            'avg': avg,
            'p95': round(p95, 2) if p95 is not None else None,
        },
        'per_user': {
            'users':  len(per_user),
            'mean':   round(statistics.fmean(per_user), 2) if per_user else None,
            'median': statistics.median(per_user) if per_user else None,
            f'users_with_{HEAVY_USER_THRESHOLD}_or_more': sum(
                1 for n in per_user if n >= HEAVY_USER_THRESHOLD),
        },
    }


@analytics_router.get('/generations/stats')
async def get_generation_stats(
    start: str | None = Query(default=None, alias='from'),
    end: str | None = Query(default=None, alias='to'),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_service_role),
):
    """GET /analytics/generations/stats — service role only."""
    try:
        window = StatsWindow.model_validate({'from': start, 'to': end})
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc

    stats = await run_in_threadpool(generation_stats, db, window.start, window.end)
    logger.info('Generation stats served: total=%d window=%s..%s',
                stats['totals']['total'], start or '-', end or '-')
    return stats
