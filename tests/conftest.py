"""Pytest configuration and fixtures."""
import asyncio
import json
import logging
import os
import tempfile
import uuid

# Point the app at a throwaway SQLite file before anything imports database.py.
_DB_DIR = tempfile.mkdtemp(prefix="viberide-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

import auth  # noqa: E402
from app import app  # noqa: E402
from database import SessionLocal, engine  # noqa: E402
from models import Note, UserPreferences, db  # noqa: E402
from synthesis import SynthesisResult  # noqa: E402
from worker import GenerationQueue  # noqa: E402

USER_A = "11111111-1111-4111-8111-111111111111"
USER_B = "22222222-2222-4222-8222-222222222222"


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async fixtures work when pyproject is not in cwd."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


# ── Route payloads ────────────────────────────────────────────────────────────

def valid_route(title="Tatra loop", distance=182.5, duration=4.0):
    return {
        "type": "FeatureCollection",
        "properties": {
            "title": title,
            "total_distance_km": distance,
            "total_duration_h": duration,
            "highlights": ["Morskie Oko", "Lysa Polana"],
        },
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "LineString",
                             "coordinates": [[19.9450, 49.2992], [20.0712, 49.2013]]},
                "properties": {"name": "Zakopane to Lysa Polana", "type": "route"},
            },
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [20.0712, 49.2013]},
                "properties": {"name": "Lysa Polana", "type": "waypoint"},
            },
        ],
    }


# ── Fake route planner ────────────────────────────────────────────────────────

class FakeSynthesizer:
    """Stands in for RouteSynthesizer; optionally blocks until ``gate`` is set."""

    def __init__(self, content=None, truncated=False, error=None, gate=None):
        self.content = content if content is not None else json.dumps(valid_route())
        self.truncated = truncated
        self.error = error
        self.gate = gate
        self.started = asyncio.Event()
        self.calls = []
        self.closed = False

    async def synthesize(self, context):
        self.calls.append(context)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SynthesisResult(content=self.content, truncated=self.truncated, model="fake-model")

    async def close(self):
        self.closed = True


# ── Database ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _schema():
    """Fresh tables for every test."""
    db.metadata.create_all(engine)
    yield
    db.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    auth.reset_rate_limits()
    yield
    auth.reset_rate_limits()


@pytest.fixture
def session():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


def add_prefs(session, user_id=USER_A, **overrides):
    values = dict(terrain="paved", road_type="twisty",
                  typical_duration_h=3.0, typical_distance_km=150.0)
    values.update(overrides)
    prefs = UserPreferences(user_id=user_id, **values)
    session.add(prefs)
    session.commit()
    return prefs


def add_note(session, user_id=USER_A, trip_prefs=None, **overrides):
    values = dict(title="Tatra weekend", note_text="Twisty roads around Zakopane, lunch stop.")
    values.update(overrides)
    note = Note(user_id=user_id, trip_prefs=trip_prefs or {}, **values)
    session.add(note)
    session.commit()
    return note


@pytest.fixture
def rider(session):
    """USER_A with preferences and one note; returns the note."""
    add_prefs(session, USER_A)
    return add_note(session, USER_A)


def new_request_id():
    return str(uuid.uuid4())


# ── Queue / app ───────────────────────────────────────────────────────────────

@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest_asyncio.fixture
async def queue(synthesizer):
    """A queue that is NOT started: submitted jobs stay pending."""
    q = GenerationQueue(synthesizer, workers=1)
    yield q
    await q.stop()


@pytest_asyncio.fixture
async def client(queue):
    app.state.generation_queue = queue
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.state.generation_queue = None


def bearer(user_id=USER_A, role=auth.ROLE_USER):
    return {"Authorization": f"Bearer {auth.encode_token(user_id, role=role)}"}
