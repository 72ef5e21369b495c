"""
synthesis.py — Route synthesis via Claude.

RouteSynthesizer wraps AsyncAnthropic: given a note and the rider's resolved
preferences it asks Claude for a GeoJSON route and returns the raw text plus
a truncation flag.  It never parses or validates — that is the lifecycle's
job, so all three outcomes (text, truncated text, transport/server error)
reach the state machine.

Preference precedence: note.trip_prefs → user preferences → FALLBACK_PREFS.
"""

import json
import logging
import os
import re
from typing import NamedTuple

import anthropic
from anthropic import AsyncAnthropic

from errors import ErrorKind, LifecycleError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ROUTE_MODEL       = os.getenv('ROUTE_MODEL', 'claude-sonnet-4-5-20250929')
ROUTE_MAX_TOKENS  = int(os.getenv('ROUTE_MAX_TOKENS', '8000'))
ROUTE_TEMPERATURE = float(os.getenv('ROUTE_TEMPERATURE', '0.7'))

FALLBACK_PREFS = {
    'terrain':     'paved',
    'road_type':   'scenic',
    'duration_h':  2.0,
    'distance_km': 100.0,
}

# trip_prefs key → UserPreferences attribute
_USER_PREF_ATTRS = {
    'terrain':     'terrain',
    'road_type':   'road_type',
    'duration_h':  'typical_duration_h',
    'distance_km': 'typical_distance_km',
}

_FENCE_RE = re.compile(r'^```(?:json|geojson)?\s*(.*?)\s*```$', re.DOTALL | re.IGNORECASE)


class ResolvedPreferences(NamedTuple):
    terrain: str
    road_type: str
    duration_h: float
    distance_km: float


class SynthesisContext(NamedTuple):
    title: str
    note_text: str
    preferences: ResolvedPreferences


class SynthesisResult(NamedTuple):
    content: str
    truncated: bool
    model: str | None = None


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------

def resolve_preferences(trip_prefs: dict | None, user_prefs=None) -> ResolvedPreferences:
    """Merge trip overrides, user defaults and hard-coded fallbacks."""
    trip_prefs = trip_prefs or {}
    resolved = {}
    for key, attr in _USER_PREF_ATTRS.items():
        value = trip_prefs.get(key)
        if value is None and user_prefs is not None:
            value = getattr(user_prefs, attr, None)
        if value is None:
            value = FALLBACK_PREFS[key]
        resolved[key] = value
    return ResolvedPreferences(
        terrain=str(resolved['terrain']),
        road_type=str(resolved['road_type']),
        duration_h=float(resolved['duration_h']),
        distance_km=float(resolved['distance_km']),
    )


def build_context(note, user_prefs) -> SynthesisContext:
    return SynthesisContext(
        title=note.title,
        note_text=note.note_text,
        preferences=resolve_preferences(note.trip_prefs, user_prefs),
    )


def parse_route_text(text: str) -> dict:
    """Parse Claude's reply as JSON, tolerating a markdown code fence."""
    stripped = (text or '').strip()
    match = _FENCE_RE.match(stripped)
    if match:
        stripped = match.group(1)
    try:
        return json.loads(stripped)
    except json.JSONDecodeError as exc:
        logger.warning('Route JSON parse failed (%s): %r … %r',
                       exc, stripped[:500], stripped[-100:])
        raise LifecycleError(
            ErrorKind.UPSTREAM_FAILURE,
            'Route planner response was not valid JSON',
            unparseable=True,
        ) from exc


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """You are an expert motorcycle trip planner. You generate detailed riding routes from a rider's notes and preferences.
Always respond with a single valid GeoJSON object and nothing else — no markdown, no commentary."""


def build_user_prompt(context: SynthesisContext) -> str:
    prefs = context.preferences
    return f"""Generate a motorcycle riding route in GeoJSON format based on the following:

Title: {context.title}
Notes: {context.note_text}

Preferences:
- Terrain: {prefs.terrain}
- Road type: {prefs.road_type}
- Target duration: {prefs.duration_h:g} hours
- Target distance: {prefs.distance_km:g} km

STRUCTURE:
1. A FeatureCollection with "properties" and "features".
2. properties:
   - title: route title, at most 60 characters
   - total_distance_km: total distance (number)
   - total_duration_h: total riding time (number)
   - highlights: 3-5 short strings naming key points of interest
   - days: number of riding days (split when duration exceeds 8 hours)
3. features:
   - LineString features for route segments (3-5 per day), each with properties
     name, description (under 100 characters), type "route", day, segment,
     distance_km, duration_h
   - optional Point features for waypoints / POIs, with properties name,
     description, type "waypoint" or "poi"

COORDINATES:
- Real locations only (towns, passes, landmarks).
- Order is [longitude, latitude] — NOT [lat, lon]. Longitude -180..180, latitude -90..90.
- 4-6 decimal places. Each LineString has 2-5 points and segments connect.

Return ONLY the GeoJSON object. Do not truncate it."""


# ---------------------------------------------------------------------------
# Synthesizer
# ---------------------------------------------------------------------------

class RouteSynthesizer:
    """Route Synthesis collaborator backed by Claude."""

    def __init__(self, client: AsyncAnthropic | None = None, model: str = ROUTE_MODEL,
                 max_tokens: int = ROUTE_MAX_TOKENS, temperature: float = ROUTE_TEMPERATURE):
        self._client     = client
        self.model       = model
        self.max_tokens  = max_tokens
        self.temperature = temperature

    @property
    def client(self) -> AsyncAnthropic:
        # Created lazily so importing the app never requires ANTHROPIC_API_KEY.
        if self._client is None:
            self._client = AsyncAnthropic()
        return self._client

    async def synthesize(self, context: SynthesisContext) -> SynthesisResult:
        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=SYSTEM_PROMPT,
                messages=[{'role': 'user', 'content': build_user_prompt(context)}],
            )
        except anthropic.APIStatusError as exc:
            logger.warning('Route synthesis HTTP %s: %s', exc.status_code, exc.message)
            raise LifecycleError(
                ErrorKind.UPSTREAM_FAILURE, 'Route planner request failed',
                upstream_status=exc.status_code,
            ) from exc
        except anthropic.APIError as exc:
            # Connection errors and timeouts.
            logger.warning('Route synthesis transport error: %s', exc)
            raise LifecycleError(ErrorKind.UPSTREAM_FAILURE, 'Route planner unreachable') from exc

        text = ''.join(block.text for block in message.content if block.type == 'text')
        truncated = message.stop_reason == 'max_tokens'
        logger.debug('Route synthesis: %d chars, stop_reason=%s', len(text), message.stop_reason)
        return SynthesisResult(content=text, truncated=truncated, model=message.model)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
