"""
lifecycle.py — Itinerary generation lifecycle.

Operations (all scoped to the calling user):
  start()      — intake: note + profile checks, idempotent replay, single-flight
                 gate, versioned insert of a 'pending' row, hand-off to the
                 generation queue.  Returns immediately.
  list_by_note()
  get()
  get_status() — status-shaped view for polling clients
  cancel()     — pending | running → cancelled
  delete()     — terminal → soft-deleted
  run_generation() — the detached transition pending → running → completed | failed

State machine:

    pending ──► running ──► completed
       │           │  └───► failed
       └───────────┴──────► cancelled        (owner)
    completed | failed | cancelled ──► soft-deleted (owner)

Every write after intake is a conditional UPDATE on the row's current status,
so the store's per-row atomicity is the only mutual exclusion:
  - pending → running only if still pending
  - running → completed/failed only if still running (a cancelled row stays
    cancelled; the late write is skipped, not an error)
  - cancel only if pending/running, delete only if terminal and not deleted

The sync helpers take a Session and run in a threadpool; the async wrappers
are what routers and the queue call.
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased
from starlette.concurrency import run_in_threadpool

from database import SessionLocal
from errors import GENERIC_FAILURE_MESSAGE, ErrorKind, LifecycleError, not_found
from models import (
    ACTIVE_STATUSES, ALL_STATUSES, STATUS_CANCELLED, STATUS_COMPLETED,
    STATUS_FAILED, STATUS_PENDING, STATUS_RUNNING, TERMINAL_STATUSES,
    Itinerary, Note, UserPreferences, is_cancellable, is_terminal, iso_utc,
)
from route_validation import (
    extract_summary, failed_route, feature_counts, placeholder_route, validate_route,
)
from synthesis import build_context, parse_route_text

logger = logging.getLogger(__name__)

MAX_INSERT_ATTEMPTS = 3
DEFAULT_LIST_LIMIT  = 20
MAX_LIST_LIMIT      = 100

# run_generation() outcomes besides 'completed' / 'failed'
OUTCOME_SKIPPED = 'skipped'   # row left the expected state mid-flight
OUTCOME_ERROR   = 'error'     # failure could not be persisted


def _now():
    return datetime.now(timezone.utc)


@contextmanager
def _storage_errors(db: Session, action: str):
    """Turn unexpected SQLAlchemy errors into STORAGE_FAILURE."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error('Storage error while trying to %s: %s', action, exc)
        raise LifecycleError(ErrorKind.STORAGE_FAILURE, f'Failed to {action}') from exc


_PAST_TENSE = {'cancel': 'cancelled', 'delete': 'deleted'}


def _invalid_state(action: str, status: str, allowed: tuple) -> LifecycleError:
    return LifecycleError(
        ErrorKind.INVALID_STATE,
        f"Cannot {action} itinerary with status '{status}'. "
        f"Only {' or '.join(allowed)} itineraries can be {_PAST_TENSE[action]}.",
        status=status,
    )


# ---------------------------------------------------------------------------
# Lookups: each returns a row or raises NOT_FOUND (absent, deleted and
# not-owned are indistinguishable to the caller)
# ---------------------------------------------------------------------------

def _owned_note(db: Session, user_id: str, note_id: str) -> Note:
    note = db.get(Note, note_id)
    if note is None or note.deleted_at is not None or note.user_id != user_id:
        raise not_found('Note')
    return note


def _owned_itinerary(db: Session, user_id: str, itinerary_id: str) -> Itinerary:
    stmt = (
        select(Itinerary)
        .where(Itinerary.itinerary_id == itinerary_id,
               Itinerary.user_id == user_id,
               Itinerary.deleted_at.is_(None))
        .execution_options(populate_existing=True)
    )
    row = db.scalar(stmt)
    if row is None:
        raise not_found()
    return row


def _find_by_request_id(db: Session, user_id: str, request_id: str) -> Itinerary | None:
    return db.scalar(
        select(Itinerary)
        .where(Itinerary.user_id == user_id, Itinerary.request_id == request_id)
        .execution_options(populate_existing=True)
    )


def _ensure_no_active(db: Session, user_id: str) -> None:
    active = db.scalar(
        select(Itinerary)
        .where(Itinerary.user_id == user_id,
               Itinerary.status.in_(ACTIVE_STATUSES),
               Itinerary.deleted_at.is_(None))
        .limit(1)
    )
    if active is not None:
        raise LifecycleError(
            ErrorKind.CONFLICT,
            'Another itinerary generation is already in progress',
            active_request_id=active.request_id,
        )


def _next_version(note_id: str):
    """Correlated sub-select evaluated inside the INSERT itself."""
    prior = aliased(Itinerary)
    return (
        select(func.coalesce(func.max(prior.version), 0) + 1)
        .where(prior.note_id == note_id)
        .correlate(None)
        .scalar_subquery()
    )


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

def _start_generation(db: Session, user_id: str, note_id: str, request_id: str) -> tuple[Itinerary, bool]:
    """Return (itinerary, created).  created=False means an idempotent replay."""
    with _storage_errors(db, 'start generation'):
        _owned_note(db, user_id, note_id)

        if db.get(UserPreferences, user_id) is None:
            raise LifecycleError(
                ErrorKind.PRECONDITION_FAILED,
                'User preferences must be completed before generating itineraries',
            )

        existing = _find_by_request_id(db, user_id, request_id)
        if existing is not None:
            logger.info('Idempotent replay: request=%s → itinerary=%s',
                        request_id[:8], existing.itinerary_id[:8])
            return existing, False

        _ensure_no_active(db, user_id)

        for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
            itinerary = Itinerary(
                note_id       = note_id,
                user_id       = user_id,
                version       = _next_version(note_id),
                status        = STATUS_PENDING,
                route_geojson = placeholder_route(),
                request_id    = request_id,
            )
            db.add(itinerary)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                # Whoever won the race decides what this call returns.
                existing = _find_by_request_id(db, user_id, request_id)
                if existing is not None:
                    logger.info('Concurrent duplicate: request=%s → itinerary=%s',
                                request_id[:8], existing.itinerary_id[:8])
                    return existing, False
                _ensure_no_active(db, user_id)
                logger.warning('Version collision on note=%s (attempt %d/%d): %s',
                               note_id[:8], attempt, MAX_INSERT_ATTEMPTS, exc.orig)
                continue
            db.refresh(itinerary)
            return itinerary, True

    raise LifecycleError(ErrorKind.STORAGE_FAILURE, 'Failed to allocate an itinerary version')


async def start(db: Session, user_id: str, note_id: str, request_id, queue) -> dict:
    """Create (or replay) a pending itinerary and queue its generation."""
    request_id = str(request_id)
    itinerary, created = await run_in_threadpool(
        _start_generation, db, user_id, note_id, request_id)
    if created:
        queue.submit(itinerary.itinerary_id)
        logger.info('Generation queued: itinerary=%s note=%s v%d user=%s',
                    itinerary.itinerary_id[:8], note_id[:8], itinerary.version, user_id[:8])
    return itinerary.to_start_dict()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def _list_by_note(db: Session, user_id: str, note_id: str,
                  status: str | None, limit: int) -> list[dict]:
    if status is not None and status not in ALL_STATUSES:
        raise LifecycleError(ErrorKind.VALIDATION_FAILED,
                             f'Unknown itinerary status: {status!r}', status=status)
    limit = max(1, min(limit, MAX_LIST_LIMIT))

    with _storage_errors(db, 'list itineraries'):
        _owned_note(db, user_id, note_id)
        stmt = select(Itinerary).where(
            Itinerary.note_id == note_id,
            Itinerary.user_id == user_id,
            Itinerary.deleted_at.is_(None),
        )
        if status is not None:
            stmt = stmt.where(Itinerary.status == status)
        stmt = stmt.order_by(Itinerary.version.desc()).limit(limit)
        rows = db.scalars(stmt.execution_options(populate_existing=True)).all()
    return [row.to_dict(include_route=False) for row in rows]


async def list_by_note(db: Session, user_id: str, note_id: str,
                       status: str | None = None, limit: int = DEFAULT_LIST_LIMIT) -> list[dict]:
    return await run_in_threadpool(_list_by_note, db, user_id, note_id, status, limit)


def _get(db: Session, user_id: str, itinerary_id: str) -> dict:
    with _storage_errors(db, 'fetch itinerary'):
        return _owned_itinerary(db, user_id, itinerary_id).to_dict()


async def get(db: Session, user_id: str, itinerary_id: str) -> dict:
    return await run_in_threadpool(_get, db, user_id, itinerary_id)


def project_status(row: Itinerary) -> dict:
    """
    Minimal polling view.  Only a completed row pays for the full route;
    a cancelled row adds cancelled_at (its last update).
    """
    view = {'itinerary_id': row.itinerary_id, 'status': row.status}
    if row.status == STATUS_COMPLETED:
        view['route_geojson'] = row.route_geojson
    elif row.status == STATUS_CANCELLED:
        view['cancelled_at'] = iso_utc(row.updated_at)
    elif row.status not in (STATUS_PENDING, STATUS_RUNNING, STATUS_FAILED):
        raise ValueError(f'Unknown itinerary status: {row.status!r}')
    return view


def _get_status(db: Session, user_id: str, itinerary_id: str) -> dict:
    with _storage_errors(db, 'fetch itinerary status'):
        row = _owned_itinerary(db, user_id, itinerary_id)
    return project_status(row)


async def get_status(db: Session, user_id: str, itinerary_id: str) -> dict:
    return await run_in_threadpool(_get_status, db, user_id, itinerary_id)


# ---------------------------------------------------------------------------
# Owner-triggered transitions
# ---------------------------------------------------------------------------

def _cancel(db: Session, user_id: str, itinerary_id: str) -> dict:
    with _storage_errors(db, 'cancel itinerary'):
        row = _owned_itinerary(db, user_id, itinerary_id)
        if not is_cancellable(row.status):
            raise _invalid_state('cancel', row.status, ACTIVE_STATUSES)

        cancelled_at = _now()
        result = db.execute(
            update(Itinerary)
            .where(Itinerary.itinerary_id == itinerary_id,
                   Itinerary.user_id == user_id,
                   Itinerary.deleted_at.is_(None),
                   Itinerary.status.in_(ACTIVE_STATUSES))
            .values(status=STATUS_CANCELLED, updated_at=cancelled_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        if result.rowcount == 0:
            # The job finished (or the row vanished) between read and write.
            row = _owned_itinerary(db, user_id, itinerary_id)
            raise _invalid_state('cancel', row.status, ACTIVE_STATUSES)

    return {
        'itinerary_id': itinerary_id,
        'status':       STATUS_CANCELLED,
        'cancelled_at': iso_utc(cancelled_at),
    }


async def cancel(db: Session, user_id: str, itinerary_id: str, queue=None) -> dict:
    """Mark the row cancelled; also stop its job if it is in flight here."""
    result = await run_in_threadpool(_cancel, db, user_id, itinerary_id)
    if queue is not None and queue.cancel(itinerary_id):
        logger.info('Cancelled in-flight job for itinerary=%s', itinerary_id[:8])
    logger.info('Itinerary cancelled: itinerary=%s user=%s', itinerary_id[:8], user_id[:8])
    return result


def _delete(db: Session, user_id: str, itinerary_id: str) -> dict:
    with _storage_errors(db, 'delete itinerary'):
        row = _owned_itinerary(db, user_id, itinerary_id)
        if not is_terminal(row.status):
            raise _invalid_state('delete', row.status, TERMINAL_STATUSES)

        deleted_at = _now()
        result = db.execute(
            update(Itinerary)
            .where(Itinerary.itinerary_id == itinerary_id,
                   Itinerary.user_id == user_id,
                   Itinerary.deleted_at.is_(None),
                   Itinerary.status.in_(TERMINAL_STATUSES))
            .values(deleted_at=deleted_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        if result.rowcount == 0:
            raise not_found()

    return {'itinerary_id': itinerary_id, 'deleted_at': iso_utc(deleted_at)}


async def delete(db: Session, user_id: str, itinerary_id: str) -> dict:
    result = await run_in_threadpool(_delete, db, user_id, itinerary_id)
    logger.info('Itinerary soft-deleted: itinerary=%s user=%s', itinerary_id[:8], user_id[:8])
    return result


# ---------------------------------------------------------------------------
# Detached generation (pending → running → completed | failed)
# ---------------------------------------------------------------------------

def _transition(db: Session, itinerary_id: str, from_status: str, **values) -> bool:
    """Conditional single-row update; False when the row is no longer in from_status."""
    with _storage_errors(db, f'update itinerary from {from_status}'):
        result = db.execute(
            update(Itinerary)
            .where(Itinerary.itinerary_id == itinerary_id,
                   Itinerary.status == from_status,
                   Itinerary.deleted_at.is_(None))
            .values(updated_at=_now(), **values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    return result.rowcount == 1


def _load_context(db: Session, itinerary_id: str):
    with _storage_errors(db, 'load generation context'):
        itinerary = db.get(Itinerary, itinerary_id)
        note = db.get(Note, itinerary.note_id) if itinerary is not None else None
        if note is None:
            raise not_found('Note')
        prefs = db.get(UserPreferences, itinerary.user_id)
    return build_context(note, prefs)


async def _record_failure(db: Session, itinerary_id: str, message: str) -> str:
    try:
        written = await run_in_threadpool(
            _transition, db, itinerary_id, STATUS_RUNNING,
            status=STATUS_FAILED, route_geojson=failed_route(message),
        )
    except LifecycleError as exc:
        # Row stays 'running' until `manage.py reap-stale` picks it up.
        logger.error('itinerary=%s: could not record failure: %s', itinerary_id[:8], exc.message)
        return OUTCOME_ERROR
    if not written:
        logger.info('itinerary=%s: left running before failure was recorded — skipped',
                    itinerary_id[:8])
        return OUTCOME_SKIPPED
    return STATUS_FAILED


async def run_generation(itinerary_id: str, synthesizer, session_factory=None) -> str:
    """
    Drive one itinerary from pending to a terminal state.

    Runs detached from any request: every error is captured into the row's
    'failed' state and logged, never raised.  Returns the outcome
    ('completed', 'failed', 'skipped' or 'error').  asyncio.CancelledError is the only
    exception that escapes; the queue uses it to abandon cancelled jobs.
    """
    tag = itinerary_id[:8]
    db = await run_in_threadpool(session_factory or SessionLocal)
    try:
        try:
            started = await run_in_threadpool(
                _transition, db, itinerary_id, STATUS_PENDING, status=STATUS_RUNNING)
        except LifecycleError as exc:
            logger.error('itinerary=%s: could not start generation: %s', tag, exc.message)
            return OUTCOME_ERROR
        if not started:
            logger.info('itinerary=%s: no longer pending — generation skipped', tag)
            return OUTCOME_SKIPPED
        logger.info('itinerary=%s: generation running', tag)

        try:
            context = await run_in_threadpool(_load_context, db, itinerary_id)
            result = await synthesizer.synthesize(context)
            if result.truncated:
                logger.error('itinerary=%s: route planner output truncated (%d chars)',
                             tag, len(result.content))
                raise LifecycleError(ErrorKind.UPSTREAM_FAILURE,
                                     'Route planner response was truncated', truncated=True)

            route = parse_route_text(result.content)
            try:
                validate_route(route)
            except LifecycleError as exc:
                logger.warning('itinerary=%s: route rejected (%s): %.500r', tag, exc.message, route)
                raise
            summary = extract_summary(route)

            written = await run_in_threadpool(
                _transition, db, itinerary_id, STATUS_RUNNING,
                status            = STATUS_COMPLETED,
                route_geojson     = route,
                title             = summary.title,
                total_distance_km = summary.total_distance_km,
                total_duration_h  = summary.total_duration_h,
            )
        except asyncio.CancelledError:
            raise
        except LifecycleError as exc:
            logger.error('itinerary=%s: generation failed [%s] %s',
                         tag, exc.kind.value, exc.message)
            return await _record_failure(db, itinerary_id, exc.user_message())
        except Exception as exc:
            logger.error('itinerary=%s: generation crashed: %s', tag, exc, exc_info=True)
            return await _record_failure(db, itinerary_id, GENERIC_FAILURE_MESSAGE)

        if not written:
            logger.info('itinerary=%s: cancelled while running — completed route discarded', tag)
            return OUTCOME_SKIPPED

        lines, points = feature_counts(route)
        logger.info('itinerary=%s: completed — %r %.1f km %.1f h (%d segments, %d waypoints, %d highlights)',
                    tag, summary.title, summary.total_distance_km, summary.total_duration_h,
                    lines, points, len(summary.highlights))
        return STATUS_COMPLETED
    finally:
        await run_in_threadpool(db.close)


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

def reap_stale(db: Session, older_than: timedelta) -> list[str]:
    """
    Fail pending/running itineraries untouched for longer than ``older_than``.

    Jobs live in process memory, so a restart orphans their rows, and an
    orphaned active row blocks its owner's next start() with CONFLICT.
    """
    cutoff = _now() - older_than
    stale = (Itinerary.status.in_(ACTIVE_STATUSES),
             Itinerary.deleted_at.is_(None),
             Itinerary.updated_at < cutoff)
    reaped = []
    with _storage_errors(db, 'reap stale generations'):
        ids = db.scalars(select(Itinerary.itinerary_id).where(*stale)).all()
        for itinerary_id in ids:
            result = db.execute(
                update(Itinerary)
                .where(Itinerary.itinerary_id == itinerary_id, *stale)
                .values(status=STATUS_FAILED,
                        route_geojson=failed_route(GENERIC_FAILURE_MESSAGE),
                        updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                reaped.append(itinerary_id)
        db.commit()
    if reaped:
        logger.warning('Reaped %d stale generation(s) older than %s', len(reaped), older_than)
    return reaped
