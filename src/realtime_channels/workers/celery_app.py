"""
Celery application for the durable persistence queue.

Start a worker with::

    celery -A realtime_channels.workers.celery_app worker -Q message-persistence

Jobs are sent by :class:`realtime_channels.services.queue.CeleryJobQueue` and
executed by the single ``persist_message`` task, which hands them to the
registered job handler (a :class:`PersistenceWorker` by default) and retries
failures with exponential backoff.
"""

from __future__ import annotations

import logging
from typing import Any

from celery import Celery
from celery.signals import setup_logging, worker_process_init

from realtime_channels.core.settings import Settings, settings
from realtime_channels.errors import PayloadValidationError
from realtime_channels.services.queue import Job, JobHandler, check_job_result

logger = logging.getLogger(__name__)

PERSIST_TASK_NAME = "realtime_channels.persist_message"

_job_handler: JobHandler | None = None


def create_celery_app(config: Settings = settings) -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    app = Celery("realtime_channels", broker=config.redis_url)
    app.conf.update(
        {
            "task_serializer": "json",
            "accept_content": ["json"],
            "enable_utc": True,
            "task_default_queue": config.queue_name,
            # Completed jobs are discarded; nothing reads task results.
            "task_ignore_result": True,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "task_time_limit": config.job_timeout_seconds,
            "worker_concurrency": config.worker_concurrency,
            "worker_prefetch_multiplier": 1,
            "worker_disable_rate_limits": False,
            "worker_hijack_root_logger": False,
        }
    )
    return app


@setup_logging.connect
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Use the service's logging configuration inside Celery workers."""
    from realtime_channels.core.log_config import configure_logging

    configure_logging()


celery_app = create_celery_app()


def register_job_handler(handler: JobHandler | None) -> None:
    """Set the callable that ``persist_message`` runs for every job."""
    global _job_handler
    _job_handler = handler


def get_job_handler() -> JobHandler:
    """Return the registered handler, building the default worker on first use."""
    global _job_handler
    if _job_handler is None:
        from realtime_channels.db.session import SessionLocal
        from realtime_channels.services.pubsub import RedisPubSub
        from realtime_channels.workers.persistence import PersistenceWorker

        worker = PersistenceWorker(SessionLocal, RedisPubSub(settings.redis_url))
        _job_handler = worker.process_job
    return _job_handler


@worker_process_init.connect
def init_worker_process(*args: Any, **kwargs: Any) -> None:
    """Give each forked worker process fresh database connections."""
    from realtime_channels.db.session import engine

    engine.dispose(close=False)
    get_job_handler()


@celery_app.task(
    bind=True,
    name=PERSIST_TASK_NAME,
    ignore_result=True,
    rate_limit=settings.worker_rate_limit,
)
def persist_message(
    self: Any,
    name: str,
    data: dict[str, Any],
    attempts: int = settings.job_attempts,
    backoff_ms: int = settings.job_backoff_ms,
) -> dict[str, Any]:
    """Persist one message job, retrying with exponential backoff on failure."""
    retries = self.request.retries
    job = Job(id=str(self.request.id or ""), name=name, data=data, attempts_made=retries)

    try:
        return check_job_result(job, get_job_handler()(job))
    except PayloadValidationError:
        logger.error("Dropping malformed %s job %s", name, job.id)
        raise
    except Exception as exc:
        if retries + 1 >= attempts:
            logger.error("Job %s (%s) failed after %d attempts: %s", job.id, name, attempts, exc)
            raise
        countdown = (backoff_ms / 1000.0) * (2**retries)
        logger.warning(
            "Job %s (%s) failed on attempt %d, retrying in %.1fs: %s",
            job.id, name, retries + 1, countdown, exc,
        )
        raise self.retry(exc=exc, countdown=countdown, max_retries=attempts - 1) from exc
