"""
Structured progress events emitted by the worker, and the recorder that
applies them to the job record read by the status API.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from django.utils import timezone

from .errors import MAX_ERROR_LENGTH, ConcurrencyError, JobCancelled
from .models import RenderJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageStarted:
    stage: str


@dataclass(frozen=True)
class ProgressUpdated:
    percent: int
    stage: str = ""


@dataclass(frozen=True)
class StageCompleted:
    stage: str


@dataclass(frozen=True)
class JobFailed:
    stage: str
    error: str


@dataclass(frozen=True)
class JobCompleted:
    result: dict


class ProgressRecorder:
    """
    Persists events for one claimed job. Every write is conditional on the
    job still being ``processing`` under this recorder's claim token; a write
    that matches nothing raises JobCancelled or ConcurrencyError.
    """

    def __init__(self, job: RenderJob, listeners: Iterable[Callable] = ()):
        self.job_id = job.pk
        self.claim_token = job.claim_token
        self.progress = job.progress
        self.completed = False
        self.listeners = list(listeners)

    def emit(self, event) -> None:
        if isinstance(event, StageStarted):
            logger.info("Render job %s: %s started", self.job_id, event.stage)
            self._write(stage=event.stage)
        elif isinstance(event, ProgressUpdated):
            if event.percent >= 100:
                raise ValueError("100% is only reported together with completion")
            percent = max(self.progress, int(event.percent))
            self._write(progress=percent)
            self.progress = percent
        elif isinstance(event, StageCompleted):
            logger.info("Render job %s: %s completed (%d%%)", self.job_id, event.stage, self.progress)
        elif isinstance(event, JobFailed):
            self._write(status=RenderJob.Status.FAILED, error=event.error[:MAX_ERROR_LENGTH], result=None)
        elif isinstance(event, JobCompleted):
            self._write(
                status=RenderJob.Status.COMPLETED,
                progress=100,
                stage="completed",
                result=event.result,
                error=None,
            )
            self.progress = 100
            self.completed = True
        else:
            raise TypeError(f"Unknown event: {event!r}")

        for listener in self.listeners:
            listener(event)

    def _write(self, **fields) -> None:
        fields["updated_at"] = timezone.now()
        updated = (
            RenderJob.objects
            .filter(pk=self.job_id, status=RenderJob.Status.PROCESSING, claim_token=self.claim_token)
            .update(**fields)
        )
        if updated != 1:
            self._ownership_lost()

    def _ownership_lost(self):
        status = RenderJob.objects.filter(pk=self.job_id).values_list("status", flat=True).first()
        if status == RenderJob.Status.CANCELLED:
            raise JobCancelled(f"Render job {self.job_id} was cancelled")
        raise ConcurrencyError(f"Render job {self.job_id} is no longer owned by this worker (status: {status})")
