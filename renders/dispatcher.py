"""
Job claiming.

A claim is a compare-and-swap on ``status`` (``pending -> processing``) that
also issues a fresh ``claim_token``. Candidate rows are picked with
``SELECT ... FOR UPDATE SKIP LOCKED`` where the database supports it, so
concurrent workers rarely contend; the conditional UPDATE is what makes the
claim exclusive on every backend.

A job left in ``processing`` without any write for longer than the claim
timeout (a crashed worker) can be claimed again. The new token invalidates
every later write of the previous owner.
"""
import logging
from datetime import timedelta
from uuid import uuid4

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .errors import ConcurrencyError
from .models import RenderJob

logger = logging.getLogger(__name__)

MAX_CLAIM_ATTEMPTS = 5


def _claimable_filter(stale_after_seconds=None) -> Q:
    q = Q(status=RenderJob.Status.PENDING)
    if stale_after_seconds:
        cutoff = timezone.now() - timedelta(seconds=stale_after_seconds)
        q |= Q(status=RenderJob.Status.PROCESSING, updated_at__lt=cutoff)
    return q


def claimable(stale_after_seconds=None):
    """Jobs a worker may claim right now, oldest first."""
    return RenderJob.objects.filter(_claimable_filter(stale_after_seconds)).order_by("created_at")


def claim(job: RenderJob, worker_id: str, stale_after_seconds=None) -> RenderJob:
    """
    Atomically take ownership of ``job``.
    Raises ConcurrencyError when another worker got there first (or the job
    was cancelled in the meantime).
    """
    now = timezone.now()
    token = uuid4()
    updated = (
        RenderJob.objects
        .filter(_claimable_filter(stale_after_seconds), pk=job.pk)
        .update(
            status=RenderJob.Status.PROCESSING,
            progress=0,
            stage="claimed",
            claim_token=token,
            claimed_by=worker_id,
            claimed_at=now,
            result=None,
            error=None,
            updated_at=now,
        )
    )
    if updated != 1:
        raise ConcurrencyError(f"Render job {job.pk} was claimed or changed by someone else")

    if job.status == RenderJob.Status.PROCESSING:
        logger.warning("Reclaimed stale render job %s from %s", job.pk, job.claimed_by or "unknown worker")
    job.refresh_from_db()
    logger.info("Worker %s claimed render job %s (track %s)", worker_id, job.pk, job.track_id)
    return job


def claim_next(worker_id: str, stale_after_seconds=None):
    """
    Claim the oldest available job, or return None when there is nothing to do.
    A lost race is not an error for the caller; the next candidate is tried.
    """
    for _ in range(MAX_CLAIM_ATTEMPTS):
        with transaction.atomic():
            candidate = (
                claimable(stale_after_seconds)
                .select_for_update(skip_locked=True)
                .first()
            )
            if candidate is None:
                return None
            try:
                return claim(candidate, worker_id, stale_after_seconds)
            except ConcurrencyError as exc:
                logger.debug("Claim race lost: %s", exc)
    return None


def claim_job(job_id, worker_id: str, stale_after_seconds=None):
    """Claim one specific job; None when it is missing or not claimable."""
    job = RenderJob.objects.filter(pk=job_id).first()
    if job is None:
        logger.warning("Render job %s does not exist", job_id)
        return None
    try:
        return claim(job, worker_id, stale_after_seconds)
    except ConcurrencyError as exc:
        logger.info("Not processing render job %s: %s", job_id, exc)
        return None
