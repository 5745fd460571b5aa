"""In-process run queue using asyncio.

Executes dispatch runs one at a time in a background task. Runs share the
configured pool and job ids, so they must not overlap.
"""

import asyncio
import traceback
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from batchdispatch.jobs.models import RunRecord, RunStatus

RunWorker = Callable[[RunRecord], Awaitable[RunRecord]]


class InProcessQueue:
    """Local async run queue. Processes runs sequentially via asyncio."""

    def __init__(self, worker_fn: RunWorker):
        """
        worker_fn: async callable(run: RunRecord) -> RunRecord
            Performs the dispatch run and returns the updated record.
        """
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._runs: Dict[str, RunRecord] = {}
        self._worker_fn = worker_fn
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def submit(self, run: RunRecord) -> str:
        self._runs[run.id] = run
        await self._queue.put(run.id)
        return run.id

    async def get_status(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def list_runs(self) -> List[RunRecord]:
        return list(self._runs.values())

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _worker_loop(self) -> None:
        """Process runs one at a time from the queue."""
        while self._running:
            try:
                run_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            run = self._runs.get(run_id)
            if run is None:
                continue

            run.status = RunStatus.RUNNING
            run.started_at = datetime.now(timezone.utc)

            try:
                self._runs[run_id] = await self._worker_fn(run)
            except Exception as e:
                run.status = RunStatus.FAILED
                run.error = f"{type(e).__name__}: {str(e)}\n{traceback.format_exc()}"
                run.completed_at = datetime.now(timezone.utc)
