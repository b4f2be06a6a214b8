# tests/workers/test_celery_task.py
from __future__ import annotations

import pytest

from realtime_channels.errors import PayloadValidationError
from realtime_channels.services.queue import PERSIST_DIRECT_JOB, Job
from realtime_channels.workers.celery_app import (
    PERSIST_TASK_NAME,
    celery_app,
    create_celery_app,
    register_job_handler,
)


@pytest.fixture()
def task():
    return celery_app.tasks[PERSIST_TASK_NAME]


@pytest.fixture()
def handler(mocker):
    handler = mocker.Mock(return_value={"ok": True})
    register_job_handler(handler)
    try:
        yield handler
    finally:
        register_job_handler(None)


def test_app_is_configured_for_the_persistence_queue() -> None:
    app = create_celery_app()
    assert app.conf.task_default_queue == "message-persistence"
    assert app.conf.task_ignore_result is True
    assert app.conf.worker_concurrency == 5
    assert app.conf.worker_hijack_root_logger is False


def test_task_hands_the_job_to_the_registered_handler(task, handler) -> None:
    result = task.run(PERSIST_DIRECT_JOB, {"id": "m1"})

    assert result == {"ok": True}
    (job,) = handler.call_args.args
    assert isinstance(job, Job)
    assert job.name == PERSIST_DIRECT_JOB
    assert job.data == {"id": "m1"}


def test_transient_failure_is_retried_with_exponential_backoff(task, handler, mocker) -> None:
    handler.side_effect = ConnectionError("database restarting")
    retry = mocker.patch.object(task, "retry", return_value=RuntimeError("retry scheduled"))

    with pytest.raises(RuntimeError, match="retry scheduled"):
        task.run(PERSIST_DIRECT_JOB, {"id": "m1"}, attempts=5, backoff_ms=3000)

    retry.assert_called_once()
    assert retry.call_args.kwargs["countdown"] == 3.0
    assert retry.call_args.kwargs["max_retries"] == 4
    assert isinstance(retry.call_args.kwargs["exc"], ConnectionError)


def test_last_attempt_is_not_retried(task, handler, mocker) -> None:
    handler.side_effect = ConnectionError("still down")
    retry = mocker.patch.object(task, "retry")

    with pytest.raises(ConnectionError):
        task.run(PERSIST_DIRECT_JOB, {"id": "m1"}, attempts=1)

    retry.assert_not_called()


def test_malformed_job_is_dropped_without_retry(task, handler, mocker) -> None:
    handler.side_effect = PayloadValidationError("Job data is missing channelId")
    retry = mocker.patch.object(task, "retry")

    with pytest.raises(PayloadValidationError):
        task.run(PERSIST_DIRECT_JOB, {"id": "m1"})

    retry.assert_not_called()
