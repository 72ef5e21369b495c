"""
auth.py — Authentication for VibeRide (FastAPI)

Provides:
  - get_current_user       FastAPI dependency: validates the JWT and returns a CurrentUser
  - require_service_role   dependency for internal/analytics routes
  - check_user_rate_limit  per-user sliding-window limiter for expensive endpoints
  - encode_token()         issue a token (tests, `manage.py issue-token`)
  - Routes: GET /auth/me

Tokens are issued by the identity provider, not by this service.  They are
HS256 JWTs signed with JWT_SECRET_KEY whose 'sub' claim is the user id and
whose optional 'role' claim distinguishes 'service_role' callers.  The token
is read from `Authorization: Bearer <jwt>` or, for browsers, from the
httpOnly cookie 'vr_token'.
"""

import os
import time
import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone, timedelta
from typing import NamedTuple

import jwt
from fastapi import APIRouter, Depends, HTTPException, Request

from redis_client import get_redis

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix='/auth', tags=['auth'])

# ── Constants ────────────────────────────────────────────────────────────────

COOKIE_NAME       = 'vr_token'
TOKEN_TTL_H       = 8          # hours
ROLE_USER         = 'authenticated'
ROLE_SERVICE      = 'service_role'
_DEV_SECRET       = 'dev-only-insecure-secret'

JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', '')
if not JWT_SECRET_KEY:
    logger.warning('JWT_SECRET_KEY not set — using an insecure development secret')
    JWT_SECRET_KEY = _DEV_SECRET


class CurrentUser(NamedTuple):
    id: str
    role: str = ROLE_USER

    @property
    def is_service(self) -> bool:
        return self.role == ROLE_SERVICE

    def to_dict(self):
        return {'id': self.id, 'role': self.role}


# ── Per-user rate limiting ───────────────────────────────────────────────────
# Limits authenticated users from hammering the expensive generation endpoint.
# Keyed by (user_id, endpoint) so each endpoint key has an independent budget.
#
# Redis path:  sorted set  ratelimit:user:{user_id}:{endpoint}
#              members are timestamps; ZREMRANGEBYSCORE prunes the window.
# Fallback:    in-memory dict per-worker (resets on restart).

RATE_LIMIT_RULES: dict[str, tuple[int, int]] = {
    # endpoint_key -> (max_requests, window_seconds)
    'generate': (20, 600),   # 20 itinerary generations per 10 minutes
}

_user_requests: dict = defaultdict(list)  # (user_id, endpoint) -> [timestamp, ...] (fallback)
_user_rate_lock = threading.Lock()


def check_user_rate_limit(user_id: str, endpoint: str) -> tuple[bool, int]:
    """
    Check whether user_id is within their rate limit for the given endpoint key.

    Returns (allowed: bool, retry_after_seconds: int).
    If allowed, also records this request timestamp.
    If not allowed, retry_after_seconds is the number of seconds until the
    oldest request in the window expires (i.e. when a slot opens up).
    """
    rule = RATE_LIMIT_RULES.get(endpoint)
    if rule is None:
        return True, 0   # unknown endpoint: let it through

    max_requests, window = rule
    now = time.time()
    r = get_redis()

    if r is not None:
        try:
            rkey = f"ratelimit:user:{user_id}:{endpoint}"
            pipe = r.pipeline()
            pipe.zremrangebyscore(rkey, '-inf', now - window)
            pipe.zrange(rkey, 0, -1, withscores=True)
            pipe.expire(rkey, window)
            _, entries, _ = pipe.execute()

            if len(entries) >= max_requests:
                oldest_score = min(score for _, score in entries)
                retry_after = int(window - (now - oldest_score)) + 1
                return False, retry_after

            r.zadd(rkey, {str(now): now})
            r.expire(rkey, window)
            return True, 0
        except Exception as exc:
            logger.warning("Redis user rate-limit error: %s — falling back", exc)

    # In-memory fallback
    mem_key = (user_id, endpoint)
    with _user_rate_lock:
        _user_requests[mem_key] = [t for t in _user_requests[mem_key] if now - t < window]

        if len(_user_requests[mem_key]) >= max_requests:
            oldest = min(_user_requests[mem_key])
            retry_after = int(window - (now - oldest)) + 1
            return False, retry_after

        _user_requests[mem_key].append(now)
        return True, 0


def reset_rate_limits() -> None:
    """Clear the in-memory limiter (tests)."""
    with _user_rate_lock:
        _user_requests.clear()


# ── JWT helpers ──────────────────────────────────────────────────────────────

def encode_token(user_id: str, role: str = ROLE_USER, ttl_hours: float = TOKEN_TTL_H) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        'sub':  str(user_id),   # PyJWT 2.x requires sub to be a string
        'role': role,
        'iat':  now,
        'exp':  now + timedelta(hours=ttl_hours),
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm='HS256')


def _decode_token(token: str) -> dict:
    """Raise jwt.PyJWTError if invalid or expired."""
    return jwt.decode(token, JWT_SECRET_KEY, algorithms=['HS256'],
                      options={'require': ['sub', 'exp']})


def _token_from_request(request: Request) -> str | None:
    header = request.headers.get('Authorization', '')
    scheme, _, credentials = header.partition(' ')
    if scheme.lower() == 'bearer' and credentials.strip():
        return credentials.strip()
    return request.cookies.get(COOKIE_NAME)


# ── Dependencies ─────────────────────────────────────────────────────────────

async def get_current_user(request: Request) -> CurrentUser:
    """
    Dependency — validates the JWT and returns the caller.

    Usage:
        @router.get('/things')
        async def list_things(current_user: CurrentUser = Depends(get_current_user)):
            ...
    """
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail='Authentication required')

    try:
        payload = _decode_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='Session expired — please log in again')
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail='Invalid token — please log in again')

    user_id = str(payload['sub']).strip()
    if not user_id:
        raise HTTPException(status_code=401, detail='Invalid token — please log in again')
    return CurrentUser(id=user_id, role=payload.get('role') or ROLE_USER)


async def require_service_role(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if not current_user.is_service:
        logger.warning('Service-role route refused for user=%s', current_user.id[:8])
        raise HTTPException(status_code=403, detail='Service role required')
    return current_user


# ── Routes ───────────────────────────────────────────────────────────────────

@auth_router.get('/me')
async def me(current_user: CurrentUser = Depends(get_current_user)):
    """GET /auth/me — echo the authenticated identity."""
    return {'user': current_user.to_dict()}
