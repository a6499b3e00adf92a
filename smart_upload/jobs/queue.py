from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from smart_upload.logging import get_logger

logger = get_logger("jobs")

PROCESS_ITEM_JOB = "smartupload.process"
INGEST_BATCH_JOB = "smartupload.ingest"
JOB_NAMES = frozenset({PROCESS_ITEM_JOB, INGEST_BATCH_JOB})


@dataclass(frozen=True, slots=True)
class Job:
    name: str
    payload: dict[str, Any]
    attempt: int = 1


class JobQueue(Protocol):
    def enqueue(self, job_name: str, payload: dict[str, Any]) -> None: ...


JobHandler = Callable[[str, dict[str, Any]], Any]
DeadLetterHandler = Callable[[Job, Exception], None]


class InMemoryJobQueue:
    """FIFO queue that runs jobs in-process.

    A job whose handler raises is put back at the end of the queue until it
    has been attempted ``max_attempts`` times, mimicking at-least-once
    delivery.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        on_dead_letter: DeadLetterHandler | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.on_dead_letter = on_dead_letter
        self._pending: deque[Job] = deque()
        self.enqueued: list[Job] = []
        self.dead_letters: list[tuple[Job, Exception]] = []

    def enqueue(self, job_name: str, payload: dict[str, Any]) -> None:
        if job_name not in JOB_NAMES:
            raise ValueError(f"Unknown job name: {job_name}")
        job = Job(name=job_name, payload=dict(payload))
        self._pending.append(job)
        self.enqueued.append(job)

    def __len__(self) -> int:
        return len(self._pending)

    def drain(self, handler: JobHandler) -> int:
        """Run jobs until the queue is empty; returns the number of jobs run."""
        handled = 0
        while self._pending:
            job = self._pending.popleft()
            handled += 1
            try:
                handler(job.name, job.payload)
            except Exception as error:  # noqa: BLE001
                if job.attempt >= self.max_attempts:
                    logger.error(
                        "job %s failed after %d attempt(s): %s",
                        job.name,
                        job.attempt,
                        error,
                        extra={"job": job.name},
                    )
                    self.dead_letters.append((job, error))
                    if self.on_dead_letter is not None:
                        self.on_dead_letter(job, error)
                    continue
                logger.warning(
                    "job %s failed on attempt %d, redelivering: %s",
                    job.name,
                    job.attempt,
                    error,
                    extra={"job": job.name},
                )
                self._pending.append(
                    Job(name=job.name, payload=job.payload, attempt=job.attempt + 1)
                )
        return handled
