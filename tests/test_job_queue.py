from __future__ import annotations

from typing import Any

import pytest

from smart_upload.jobs.queue import INGEST_BATCH_JOB, PROCESS_ITEM_JOB, InMemoryJobQueue, Job


def test_queue_runs_jobs_in_order() -> None:
    queue = InMemoryJobQueue()
    seen: list[tuple[str, dict[str, Any]]] = []
    queue.enqueue(PROCESS_ITEM_JOB, {"itemId": "a"})
    queue.enqueue(INGEST_BATCH_JOB, {"batchId": "b"})

    handled = queue.drain(lambda name, payload: seen.append((name, payload)))

    assert handled == 2
    assert seen == [(PROCESS_ITEM_JOB, {"itemId": "a"}), (INGEST_BATCH_JOB, {"batchId": "b"})]
    assert len(queue) == 0


def test_queue_rejects_unknown_job_names() -> None:
    with pytest.raises(ValueError, match="Unknown job name"):
        InMemoryJobQueue().enqueue("smartupload.unknown", {})


def test_queue_redelivers_failed_jobs() -> None:
    queue = InMemoryJobQueue(max_attempts=3)
    attempts: list[int] = []

    def handler(name: str, payload: dict[str, Any]) -> None:
        attempts.append(len(attempts) + 1)
        if len(attempts) < 3:
            raise ConnectionError("flaky")

    queue.enqueue(PROCESS_ITEM_JOB, {"itemId": "a"})

    assert queue.drain(handler) == 3
    assert attempts == [1, 2, 3]
    assert queue.dead_letters == []


def test_queue_dead_letters_after_max_attempts() -> None:
    dead: list[tuple[Job, Exception]] = []
    queue = InMemoryJobQueue(max_attempts=2, on_dead_letter=lambda job, error: dead.append((job, error)))

    def handler(name: str, payload: dict[str, Any]) -> None:
        raise TimeoutError("still down")

    queue.enqueue(INGEST_BATCH_JOB, {"batchId": "b"})

    assert queue.drain(handler) == 2
    [(job, error)] = queue.dead_letters
    assert job.attempt == 2
    assert job.payload == {"batchId": "b"}
    assert str(error) == "still down"
    assert dead == queue.dead_letters
