"""
worker.py — In-process generation queue.

The start endpoint returns 202 as soon as the pending row is committed; the
slow part (Claude call + validation + completion write) runs here, on a small
pool of asyncio worker tasks that live for the lifetime of the app:

    queue = GenerationQueue(RouteSynthesizer())
    queue.start()                 # on startup
    queue.submit(itinerary_id)    # from the start endpoint; never blocks
    queue.cancel(itinerary_id)    # from the cancel endpoint
    await queue.stop()            # on shutdown

Each job opens its own DB session (see lifecycle.run_generation).  Jobs are
not persisted: anything still queued or running when the process exits is
left pending/running until `manage.py reap-stale` fails it.
"""

import asyncio
import logging
import os
from collections import OrderedDict

import lifecycle

logger = logging.getLogger(__name__)

GENERATION_WORKERS = int(os.getenv('GENERATION_WORKERS', '2'))

OUTCOME_CANCELLED = 'cancelled'
_MAX_OUTCOMES     = 1000


class GenerationQueue:

    def __init__(self, synthesizer, session_factory=None, workers: int = GENERATION_WORKERS):
        self.synthesizer     = synthesizer
        self.session_factory = session_factory
        self.workers         = max(1, workers)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._inflight: dict[str, asyncio.Task] = {}
        # itinerary_id → final outcome, most recent last
        self.outcomes: OrderedDict[str, str] = OrderedDict()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def depth(self) -> int:
        """Jobs waiting for a worker."""
        return self._queue.qsize()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f'generation-worker-{n}')
            for n in range(self.workers)
        ]
        logger.info('Generation queue started with %d worker(s)', self.workers)

    async def stop(self) -> None:
        # Jobs must finish their own cleanup (closing their session) before
        # the caller tears down the synthesizer.
        inflight = list(self._inflight.values())
        for task in (*inflight, *self._tasks):
            task.cancel()
        await asyncio.gather(*inflight, *self._tasks, return_exceptions=True)
        self._tasks = []
        left = self._queue.qsize()
        if left:
            logger.warning('Generation queue stopped with %d job(s) still queued', left)
        logger.info('Generation queue stopped')

    def submit(self, itinerary_id: str) -> None:
        self._queue.put_nowait(itinerary_id)
        logger.debug('Queued itinerary=%s (depth=%d)', itinerary_id[:8], self._queue.qsize())

    def cancel(self, itinerary_id: str) -> bool:
        """Cancel the job's task if it is running in this process."""
        task = self._inflight.get(itinerary_id)
        if task is None or task.done():
            return False
        return task.cancel()

    async def join(self) -> None:
        await self._queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            itinerary_id = await self._queue.get()
            try:
                await self._run_one(itinerary_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # run_generation already contains its own failures; this is a last resort.
                logger.error('worker-%d: job itinerary=%s escaped: %s',
                             n, itinerary_id[:8], exc, exc_info=True)
                self._record(itinerary_id, lifecycle.OUTCOME_ERROR)
            finally:
                self._queue.task_done()

    async def _run_one(self, itinerary_id: str) -> None:
        task = asyncio.create_task(
            lifecycle.run_generation(itinerary_id, self.synthesizer, self.session_factory))
        self._inflight[itinerary_id] = task
        try:
            # wait() instead of awaiting the task so that cancelling the job
            # does not also cancel the worker.
            await asyncio.wait({task})
        finally:
            self._inflight.pop(itinerary_id, None)

        if task.cancelled():
            logger.info('Generation for itinerary=%s abandoned after cancel', itinerary_id[:8])
            outcome = OUTCOME_CANCELLED
        elif task.exception() is not None:
            exc = task.exception()
            logger.error('Generation for itinerary=%s raised: %s', itinerary_id[:8], exc,
                         exc_info=exc)
            outcome = lifecycle.OUTCOME_ERROR
        else:
            outcome = task.result()
        self._record(itinerary_id, outcome)

    def _record(self, itinerary_id: str, outcome: str) -> None:
        self.outcomes[itinerary_id] = outcome
        self.outcomes.move_to_end(itinerary_id)
        while len(self.outcomes) > _MAX_OUTCOMES:
            self.outcomes.popitem(last=False)
