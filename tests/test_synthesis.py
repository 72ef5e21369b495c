"""Preference resolution, prompt building, response parsing and the Claude wrapper."""
import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from conftest import valid_route
from errors import UNPARSEABLE_MESSAGE, ErrorKind, LifecycleError
from synthesis import (
    FALLBACK_PREFS,
    RouteSynthesizer,
    SynthesisContext,
    build_context,
    build_user_prompt,
    parse_route_text,
    resolve_preferences,
)


def _user_prefs(**overrides):
    values = dict(terrain="gravel", road_type="twisty",
                  typical_duration_h=5.0, typical_distance_km=250.0)
    values.update(overrides)
    return SimpleNamespace(**values)


class TestResolvePreferences:
    def test_trip_prefs_win(self):
        resolved = resolve_preferences(
            {"terrain": "mixed", "duration_h": 1.5}, _user_prefs())
        assert resolved.terrain == "mixed"
        assert resolved.duration_h == 1.5
        # not overridden → user defaults
        assert resolved.road_type == "twisty"
        assert resolved.distance_km == 250.0

    def test_user_prefs_then_fallbacks(self):
        resolved = resolve_preferences({}, _user_prefs(road_type=None))
        assert resolved.terrain == "gravel"
        assert resolved.road_type == FALLBACK_PREFS["road_type"]

    def test_fallbacks_only(self):
        resolved = resolve_preferences(None, None)
        assert resolved.terrain == "paved"
        assert resolved.road_type == "scenic"
        assert resolved.duration_h == 2.0
        assert resolved.distance_km == 100.0

    def test_build_context_uses_note(self):
        note = SimpleNamespace(title="Alps", note_text="Stelvio and Gavia",
                               trip_prefs={"distance_km": 320})
        context = build_context(note, _user_prefs())
        assert context.title == "Alps"
        assert context.note_text == "Stelvio and Gavia"
        assert context.preferences.distance_km == 320.0

    def test_prompt_mentions_note_and_preferences(self):
        context = SynthesisContext("Alps", "Stelvio and Gavia",
                                   resolve_preferences({"terrain": "mixed"}, None))
        prompt = build_user_prompt(context)
        assert "Stelvio and Gavia" in prompt
        assert "Terrain: mixed" in prompt
        assert "[longitude, latitude]" in prompt


class TestParseRouteText:
    def test_plain_json(self):
        assert parse_route_text(json.dumps(valid_route())) == valid_route()

    @pytest.mark.parametrize("fence", ["```json", "```", "```geojson"])
    def test_fenced_json(self, fence):
        text = f"{fence}\n{json.dumps(valid_route())}\n```"
        assert parse_route_text(text) == valid_route()

    def test_garbage_is_unparseable(self):
        with pytest.raises(LifecycleError) as exc_info:
            parse_route_text("Here is your route: {oops")
        exc = exc_info.value
        assert exc.kind is ErrorKind.UPSTREAM_FAILURE
        assert exc.user_message() == UNPARSEABLE_MESSAGE

    def test_empty_text_is_unparseable(self):
        with pytest.raises(LifecycleError):
            parse_route_text("")


# ── RouteSynthesizer against a stub Anthropic client ─────────────────────────

class _StubMessages:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.response


class _StubClient:
    def __init__(self, **kwargs):
        self.messages = _StubMessages(**kwargs)
        self.closed = False

    async def close(self):
        self.closed = True


def _message(text, stop_reason="end_turn"):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        stop_reason=stop_reason,
        model="claude-test",
    )


def _context():
    return SynthesisContext("Alps", "Stelvio", resolve_preferences(None, None))


_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class TestRouteSynthesizer:
    async def test_returns_text(self):
        stub = _StubClient(response=_message('{"type": "FeatureCollection"}'))
        synth = RouteSynthesizer(client=stub, model="claude-test", max_tokens=1234, temperature=0.2)

        result = await synth.synthesize(_context())

        assert result.content == '{"type": "FeatureCollection"}'
        assert result.truncated is False
        assert result.model == "claude-test"
        assert stub.messages.kwargs["max_tokens"] == 1234
        assert stub.messages.kwargs["temperature"] == 0.2
        assert "Stelvio" in stub.messages.kwargs["messages"][0]["content"]

    async def test_flags_truncation(self):
        stub = _StubClient(response=_message('{"type": "Feature', stop_reason="max_tokens"))
        result = await RouteSynthesizer(client=stub).synthesize(_context())
        assert result.truncated is True

    async def test_status_error_is_upstream_failure(self):
        error = anthropic.APIStatusError(
            "overloaded", response=httpx.Response(529, request=_REQUEST), body=None)
        synth = RouteSynthesizer(client=_StubClient(error=error))

        with pytest.raises(LifecycleError) as exc_info:
            await synth.synthesize(_context())

        assert exc_info.value.kind is ErrorKind.UPSTREAM_FAILURE
        assert exc_info.value.context["upstream_status"] == 529

    async def test_connection_error_is_upstream_failure(self):
        synth = RouteSynthesizer(client=_StubClient(error=anthropic.APIConnectionError(request=_REQUEST)))

        with pytest.raises(LifecycleError) as exc_info:
            await synth.synthesize(_context())

        assert exc_info.value.kind is ErrorKind.UPSTREAM_FAILURE
        assert exc_info.value.message == "Route planner unreachable"

    async def test_close(self):
        stub = _StubClient(response=_message("{}"))
        synth = RouteSynthesizer(client=stub)
        await synth.close()
        assert stub.closed is True
