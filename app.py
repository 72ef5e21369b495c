#!/usr/bin/env python3
"""
VibeRide — Itinerary generation backend (FastAPI, async)

- Riders write trip notes; POST /notes/{id}/itineraries turns a note into a
  GeoJSON motorcycle route generated by Claude (AsyncAnthropic).
- Generation is detached: the request commits a 'pending' row and returns 202;
  a GenerationQueue worker drives it to completed | failed.
- Depends(get_current_user) authenticates every itinerary route.
- run_in_threadpool wraps all synchronous SQLAlchemy calls.

Run:  uvicorn app:app --reload
"""

import logging
import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
)
logger = logging.getLogger(__name__)

# Imported after load_dotenv: these read their settings from the environment.
from analytics import analytics_router          # noqa: E402
from auth import auth_router                    # noqa: E402
from database import init_db, ping              # noqa: E402
from errors import LifecycleError               # noqa: E402
from itineraries import itineraries_router      # noqa: E402
from redis_client import get_redis              # noqa: E402
from synthesis import RouteSynthesizer          # noqa: E402
from worker import GENERATION_WORKERS, GenerationQueue   # noqa: E402

APP_ENV = os.getenv('APP_ENV', 'development')

# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(title='VibeRide API', docs_url=None, redoc_url=None)

# ── CORS ─────────────────────────────────────────────────────────────────────
_cors_origins = [
    o.strip()
    for o in os.getenv(
        'CORS_ORIGINS', 'http://localhost:3000,http://127.0.0.1:3000'
    ).split(',')
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

# ── Security headers ──────────────────────────────────────────────────────────
@app.middleware('http')
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers['X-Content-Type-Options']  = 'nosniff'
    response.headers['X-Frame-Options']          = 'DENY'
    response.headers['Referrer-Policy']           = 'strict-origin-when-cross-origin'
    response.headers['Permissions-Policy']        = 'geolocation=(), microphone=(), camera=()'
    if APP_ENV == 'production':
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    return response


# ── Error shapes ─────────────────────────────────────────────────────────────
# FastAPI's default shape is { "detail": "..." }; clients expect "error".
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={'error': exc.detail},
                        headers=exc.headers)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    if exc.status_code >= 500:
        logger.error('%s %s → %s: %s', request.method, request.url.path,
                     exc.kind.value, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = [
        {'field': '.'.join(str(p) for p in err.get('loc', ()) if p != 'body'),
         'message': err.get('msg', 'Invalid value')}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={
        'error':   'validation_failed',
        'message': 'Invalid request',
        'details': {'fields': fields},
    })


# ── Router registration ───────────────────────────────────────────────────────
app.include_router(auth_router)
app.include_router(itineraries_router)
app.include_router(analytics_router)

# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------

@app.on_event('startup')
async def startup():
    # Create DB tables (schema changes after the first deploy go through Alembic)
    await run_in_threadpool(init_db)

    r = get_redis()
    if r is not None:
        logger.info('Redis connected and ready (rate limiter active)')
    else:
        logger.warning('Redis unavailable — using in-memory rate limiter (set REDIS_URL to enable)')

    queue = GenerationQueue(RouteSynthesizer(), workers=GENERATION_WORKERS)
    queue.start()
    app.state.generation_queue = queue


@app.on_event('shutdown')
async def shutdown():
    queue = getattr(app.state, 'generation_queue', None)
    if queue is not None:
        await queue.stop()
        await queue.synthesizer.close()
        app.state.generation_queue = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get('/health')
async def health():
    db_ok = await run_in_threadpool(ping)
    body = {
        'status':    'healthy' if db_ok else 'degraded',
        'database':  'connected' if db_ok else 'error',
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)
