"""GenerationQueue: worker pool, outcomes and cancellation."""
import asyncio

import lifecycle
from conftest import USER_A, USER_B, FakeSynthesizer, add_note, add_prefs, new_request_id
from database import SessionLocal
from models import Itinerary
from worker import OUTCOME_CANCELLED, GenerationQueue


def _status(itinerary_id):
    with SessionLocal() as s:
        return s.get(Itinerary, itinerary_id).status


async def _start(session, queue, user_id, note):
    result = await lifecycle.start(session, user_id, note.note_id, new_request_id(), queue)
    return result["itinerary_id"]


class TestGenerationQueue:
    async def test_processes_submitted_jobs(self, session):
        add_prefs(session, USER_A)
        add_prefs(session, USER_B)
        note_a = add_note(session, USER_A)
        note_b = add_note(session, USER_B)

        queue = GenerationQueue(FakeSynthesizer(), workers=2)
        queue.start()
        try:
            first = await _start(session, queue, USER_A, note_a)
            second = await _start(session, queue, USER_B, note_b)
            await queue.join()
        finally:
            await queue.stop()

        assert queue.outcomes[first] == "completed"
        assert queue.outcomes[second] == "completed"
        assert _status(first) == "completed"
        assert _status(second) == "completed"

    async def test_failed_job_is_recorded_not_raised(self, session, rider):
        queue = GenerationQueue(FakeSynthesizer(error=RuntimeError("boom")), workers=1)
        queue.start()
        try:
            itinerary_id = await _start(session, queue, USER_A, rider)
            await queue.join()
            assert queue.running
        finally:
            await queue.stop()

        assert queue.outcomes[itinerary_id] == "failed"
        assert _status(itinerary_id) == "failed"

    async def test_unknown_job_is_skipped(self):
        queue = GenerationQueue(FakeSynthesizer(), workers=1)
        queue.start()
        try:
            queue.submit("missing")
            await queue.join()
        finally:
            await queue.stop()
        assert queue.outcomes["missing"] == lifecycle.OUTCOME_SKIPPED

    async def test_cancel_interrupts_inflight_job(self, session, rider):
        synth = FakeSynthesizer(gate=asyncio.Event())
        queue = GenerationQueue(synth, workers=1)
        queue.start()
        try:
            itinerary_id = await _start(session, queue, USER_A, rider)
            await synth.started.wait()

            result = await lifecycle.cancel(session, USER_A, itinerary_id, queue)
            await queue.join()
        finally:
            await queue.stop()

        assert result["status"] == "cancelled"
        assert queue.outcomes[itinerary_id] == OUTCOME_CANCELLED
        assert _status(itinerary_id) == "cancelled"

    async def test_worker_survives_cancelled_job(self, session, rider):
        gate = asyncio.Event()
        synth = FakeSynthesizer(gate=gate)
        queue = GenerationQueue(synth, workers=1)
        queue.start()
        try:
            first = await _start(session, queue, USER_A, rider)
            await synth.started.wait()
            await lifecycle.cancel(session, USER_A, first, queue)
            await queue.join()

            gate.set()
            second = await _start(session, queue, USER_A, rider)
            await queue.join()
        finally:
            await queue.stop()

        assert queue.outcomes[second] == "completed"
        assert _status(second) == "completed"

    async def test_stop_waits_for_inflight_job(self, session, rider):
        synth = FakeSynthesizer(gate=asyncio.Event())
        queue = GenerationQueue(synth, workers=1)
        queue.start()
        itinerary_id = await _start(session, queue, USER_A, rider)
        await synth.started.wait()
        job = queue._inflight[itinerary_id]

        await queue.stop()

        assert job.done()
        assert job.cancelled()
        assert not queue.running
        assert _status(itinerary_id) == "running"

    def test_cancel_unknown_job(self):
        queue = GenerationQueue(FakeSynthesizer())
        assert queue.cancel("nothing-running") is False

    async def test_stop_without_start(self):
        queue = GenerationQueue(FakeSynthesizer(), workers=3)
        await queue.stop()
        assert not queue.running

    async def test_submit_before_start_waits(self, session, rider):
        queue = GenerationQueue(FakeSynthesizer(), workers=1)
        itinerary_id = await _start(session, queue, USER_A, rider)
        assert queue.depth == 1
        assert _status(itinerary_id) == "pending"

        queue.start()
        try:
            await queue.join()
        finally:
            await queue.stop()
        assert queue.depth == 0
        assert _status(itinerary_id) == "completed"
