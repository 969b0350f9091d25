"""
Background task queue.

Deferred jobs (summaries, extractions, reactivation briefs) run here,
off the live-turn path. Jobs are keyed by (kind, session_id): while a
key is deferred, queued or running, resubmitting it is a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger("agent_memlayer")

TaskKey = Tuple[str, str]


@dataclass
class BackgroundTask:
    key: TaskKey
    run: Callable[[], Awaitable[object]]
    on_failure: Optional[Callable[[BaseException], None]] = None


class TaskQueue:
    """
    Bounded asyncio queue drained by a fixed pool of workers.

    Each job is bounded by task_timeout; a timeout counts as a failure.
    Failures are logged and reported to the job's on_failure callback,
    never raised to whoever submitted the job.

    Usage:
        queue = TaskQueue(workers=2)
        await queue.start()
        queue.submit(("summary", session_id), job, delay=300)
        ...
        await queue.stop()
    """

    def __init__(self, workers: int = 2, queue_size: int = 256, task_timeout: float = 60.0):
        self.workers = max(1, workers)
        self.task_timeout = task_timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self._pending: Set[TaskKey] = set()
        self._deferred: Dict[TaskKey, asyncio.TimerHandle] = {}
        self._workers: List[asyncio.Task] = []
        self.counters = {"submitted": 0, "completed": 0, "failed": 0, "dropped": 0}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def is_pending(self, key: TaskKey) -> bool:
        return key in self._pending

    async def start(self):
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"memlayer-worker-{i}")
            for i in range(self.workers)
        ]

    def submit(
        self,
        key: TaskKey,
        run: Callable[[], Awaitable[object]],
        delay: float = 0.0,
        on_failure: Optional[Callable[[BaseException], None]] = None,
    ) -> bool:
        """
        Schedule a job.

        Args:
            key: (kind, session_id) deduplication key
            run: Zero-argument coroutine function
            delay: Seconds to wait before the job becomes runnable;
                a positive delay needs a running event loop
            on_failure: Called with the exception if the job fails

        Returns:
            False if a job with the same key is already pending, or a
            delayed job was submitted outside a running event loop
        """
        if key in self._pending:
            return False
        loop = None
        if delay > 0:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("No running event loop, not scheduling delayed job %s", key)
                return False

        self._pending.add(key)
        self.counters["submitted"] += 1
        task = BackgroundTask(key=key, run=run, on_failure=on_failure)
        if loop is not None:
            self._deferred[key] = loop.call_later(delay, self._enqueue, task)
        else:
            self._enqueue(task)
        return True

    def _enqueue(self, task: BackgroundTask):
        self._deferred.pop(task.key, None)
        if self._queue.full():
            try:
                dropped = self._queue.get_nowait()
                self._queue.task_done()
                logger.warning("Task queue full, dropped oldest job %s", dropped.key)
                self._drop(dropped)
            except asyncio.QueueEmpty:
                pass
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            logger.warning("Task queue full, dropped job %s", task.key)
            self._drop(task)

    def _drop(self, task: BackgroundTask):
        self._pending.discard(task.key)
        self.counters["dropped"] += 1
        self._report_failure(task, asyncio.QueueFull(f"dropped {task.key}"))

    @staticmethod
    def _report_failure(task: BackgroundTask, exc: BaseException):
        if task.on_failure is None:
            return
        try:
            task.on_failure(exc)
        except Exception:
            logger.exception("Failure callback for %s raised", task.key)

    async def _worker(self):
        while True:
            task = await self._queue.get()
            try:
                await asyncio.wait_for(task.run(), timeout=self.task_timeout)
                self.counters["completed"] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.counters["failed"] += 1
                if isinstance(e, asyncio.TimeoutError):
                    logger.error("Background job %s timed out after %.1fs", task.key, self.task_timeout)
                else:
                    logger.exception("Background job %s failed", task.key)
                self._report_failure(task, e)
            finally:
                self._pending.discard(task.key)
                self._queue.task_done()

    async def drain(self, poll_interval: float = 0.01):
        """Wait until every deferred and queued job has finished."""
        while self._deferred:
            await asyncio.sleep(poll_interval)
        await self._queue.join()

    async def stop(self):
        """Cancel deferred jobs and workers. Queued jobs are abandoned."""
        for handle in self._deferred.values():
            handle.cancel()
        self._deferred.clear()
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._pending.clear()

    def stats(self) -> dict:
        return {
            **self.counters,
            "queued": self._queue.qsize(),
            "deferred": len(self._deferred),
            "pending_keys": len(self._pending),
        }
