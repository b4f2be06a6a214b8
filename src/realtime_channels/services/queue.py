"""Persistence job queue with two interchangeable backends.

``CeleryJobQueue`` hands jobs to a Redis-brokered Celery worker, which retries
failures with exponential backoff. ``InMemoryJobQueue`` is the degraded
fallback used when no broker is configured: a single in-process consumer that
runs jobs one at a time with no retry, no backoff and no persistence across
restarts. The backend is chosen once, by :func:`create_job_queue`.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from realtime_channels.core.settings import Settings
from realtime_channels.errors import PersistenceError, QueueUnavailableError

if TYPE_CHECKING:
    from celery import Celery

logger = logging.getLogger(__name__)

PERSIST_DIRECT_JOB = "persistDirectMessage"
PERSIST_GROUP_JOB = "persistGroupMessage"


@dataclass
class Job:
    """A queued unit of work: a job name plus a snapshot of its data."""

    id: str
    name: str
    data: dict[str, Any]
    opts: dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0


JobHandler = Callable[[Job], Any]


class JobQueue(Protocol):
    """Contract shared by both backends."""

    durable: bool

    async def add(
        self, name: str, data: Mapping[str, Any], opts: Mapping[str, Any] | None = None
    ) -> str: ...

    def process(self, handler: JobHandler) -> None: ...

    async def shutdown(self) -> None: ...


def default_job_options(settings: Settings) -> dict[str, Any]:
    """Return the retry policy applied to persistence jobs."""
    return {
        "attempts": settings.job_attempts,
        "backoff": {"type": "exponential", "delay": settings.job_backoff_ms},
        "removeOnComplete": True,
        "timeout": settings.job_timeout_seconds * 1000,
    }


class InMemoryJobQueue:
    """Same-process fallback queue with exactly one consumer.

    ``add`` only enqueues; jobs are consumed strictly in order by the handler
    given to :meth:`process`. Handler failures are logged and the job is
    dropped.
    """

    durable = False

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._handler: JobHandler | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._ids = itertools.count(1)

    async def add(
        self, name: str, data: Mapping[str, Any], opts: Mapping[str, Any] | None = None
    ) -> str:
        job = Job(id=str(next(self._ids)), name=name, data=dict(data), opts=dict(opts or {}))
        self._queue.put_nowait(job)
        logger.debug("InMemoryJobQueue: enqueued %s job %s", name, job.id)
        return job.id

    def process(self, handler: JobHandler) -> None:
        """Attach the single consumer. Must be called from the running loop."""
        if self._handler is not None:
            raise RuntimeError("InMemoryJobQueue already has a consumer")
        self._handler = handler
        self._consumer = asyncio.get_running_loop().create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            except Exception as exc:
                logger.error("In-memory job %s (%s) failed: %s", job.id, job.name, exc)
            finally:
                self._queue.task_done()

    async def _run(self, job: Job) -> Any:
        if self._handler is None:
            raise RuntimeError("InMemoryJobQueue has no consumer")
        result = await asyncio.to_thread(self._handler, job)
        if asyncio.iscoroutine(result):
            result = await result
        check_job_result(job, result)
        return result

    async def drain(self) -> None:
        """Wait until every job enqueued so far has been handled."""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def shutdown(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        self._handler = None


class CeleryJobQueue:
    """Durable backend: jobs are sent to a Celery worker over the Redis broker."""

    durable = True

    def __init__(self, app: Celery, settings: Settings) -> None:
        self._app = app
        self._settings = settings

    def celery_options(self, opts: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Map job options onto ``send_task`` arguments for the persist task."""
        merged = {**default_job_options(self._settings), **(opts or {})}
        backoff = merged.get("backoff") or {}
        timeout_ms = merged.get("timeout")
        send_opts: dict[str, Any] = {
            "queue": self._settings.queue_name,
            "kwargs": {
                "attempts": int(merged.get("attempts", 1)),
                "backoff_ms": int(backoff.get("delay", 0)) if isinstance(backoff, Mapping) else int(backoff),
            },
        }
        if timeout_ms:
            send_opts["time_limit"] = max(1, int(timeout_ms) // 1000)
        return send_opts

    async def add(
        self, name: str, data: Mapping[str, Any], opts: Mapping[str, Any] | None = None
    ) -> str:
        from realtime_channels.workers.celery_app import PERSIST_TASK_NAME

        send_opts = self.celery_options(opts)
        kwargs = send_opts.pop("kwargs")
        result = await asyncio.to_thread(
            self._app.send_task,
            PERSIST_TASK_NAME,
            args=[name, dict(data)],
            kwargs=kwargs,
            **send_opts,
        )
        logger.debug("CeleryJobQueue: sent %s job %s", name, result.id)
        return str(result.id)

    def process(self, handler: JobHandler) -> None:
        """Register the handler the persist task invokes in this worker process."""
        from realtime_channels.workers.celery_app import register_job_handler

        register_job_handler(handler)

    async def shutdown(self) -> None:
        await asyncio.to_thread(self._app.close)


def create_job_queue(settings: Settings) -> JobQueue:
    """Select the queue backend from configuration, once, at process start."""
    if settings.redis_enabled:
        from realtime_channels.workers.celery_app import celery_app

        logger.info("Persistence queue: Celery/Redis mode (%s)", settings.queue_name)
        return CeleryJobQueue(celery_app, settings)

    logger.info("Persistence queue: in-memory mode (no retry, no persistence)")
    return InMemoryJobQueue()


def require_queue(queue: JobQueue | None) -> JobQueue:
    """Return ``queue`` or fail loudly when no backend is available."""
    if queue is None or not hasattr(queue, "add"):
        raise QueueUnavailableError("messageQueue not initialized")
    return queue


def check_job_result(job: Job, result: Any) -> Any:
    """Raise :class:`PersistenceError` when a handler reports ``{"ok": False}``."""
    if isinstance(result, Mapping) and result.get("ok") is False:
        raise PersistenceError(f"Job {job.id} ({job.name}) failed: {result.get('error', 'unknown error')}")
    return result
