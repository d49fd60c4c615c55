"""
Status & Cancellation operations over the job store, plus intake.

Callers are expected to have checked ownership (``user_id``) already; these
functions only enforce the job state machine.
"""
import logging

from django.utils import timezone

from .errors import InvalidStateError, ValidationError
from .jobdata import JobData
from .models import RenderJob
from .serializers import RenderJobCreateSerializer

logger = logging.getLogger(__name__)


def submit_job(track_id: str, user_id: str, job_data: dict) -> RenderJob:
    """Validate ``job_data`` and create a pending job. Raises ValidationError."""
    ser = RenderJobCreateSerializer(data={"track_id": track_id, "user_id": user_id, "job_data": job_data})
    if not ser.is_valid():
        raise ValidationError(ser.errors)

    data = JobData.from_dict(ser.validated_data["job_data"])
    job = RenderJob.objects.create(
        track_id=ser.validated_data["track_id"],
        user_id=ser.validated_data["user_id"],
        job_data=data.to_dict(),
    )
    logger.info("Render job %s submitted for track %s", job.pk, job.track_id)
    return job


def get_status(job_id) -> RenderJob:
    """Fresh read of the job record. Raises RenderJob.DoesNotExist."""
    return RenderJob.objects.get(pk=job_id)


def cancel(job_id, reason: str = "") -> RenderJob:
    """
    Move a pending or processing job to ``cancelled``.

    The status check and the write are one conditional UPDATE, so a job that
    finishes concurrently is never overwritten. Raises InvalidStateError
    naming the current status (the record is left untouched) or
    RenderJob.DoesNotExist.
    """
    updated = (
        RenderJob.objects
        .filter(pk=job_id, status__in=RenderJob.CANCELLABLE_STATUSES)
        .update(
            status=RenderJob.Status.CANCELLED,
            cancel_reason=(reason or "")[:255],
            stage="cancelled",
            updated_at=timezone.now(),
        )
    )
    job = RenderJob.objects.get(pk=job_id)
    if not updated:
        raise InvalidStateError(job.status)
    logger.info("Render job %s cancelled%s", job.pk, f": {reason}" if reason else "")
    return job
