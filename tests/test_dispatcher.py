from datetime import timedelta
from uuid import uuid4

import pytest
from django.utils import timezone

from renders import services
from renders.dispatcher import claim, claim_job, claim_next
from renders.errors import ConcurrencyError, InvalidStateError, JobCancelled
from renders.events import JobCompleted, JobFailed, ProgressRecorder, ProgressUpdated, StageStarted
from renders.models import RenderJob

pytestmark = pytest.mark.django_db


def _age(job, seconds):
    RenderJob.objects.filter(pk=job.pk).update(updated_at=timezone.now() - timedelta(seconds=seconds))


# ── claiming ─────────────────────────────────────────────────────────


def test_claim_next_takes_oldest_pending(make_job):
    first = make_job(track_id="a")
    make_job(track_id="b")
    RenderJob.objects.filter(pk=first.pk).update(created_at=timezone.now() - timedelta(minutes=5))

    job = claim_next("worker-1")

    assert job.pk == first.pk
    assert job.status == RenderJob.Status.PROCESSING
    assert job.progress == 0
    assert job.claim_token is not None
    assert job.claimed_by == "worker-1"


def test_each_job_is_claimed_once(make_job):
    make_job()
    assert claim_next("worker-1") is not None
    assert claim_next("worker-2") is None


def test_many_workers_claim_each_job_exactly_once(make_job):
    expected = sorted(str(make_job(track_id=f"t{i}").pk) for i in range(4))

    claimed = [claim_next(f"worker-{n % 3}", stale_after_seconds=900) for n in range(7)]

    assert sorted(str(job.pk) for job in claimed[:4]) == expected
    assert claimed[4:] == [None, None, None]
    assert len({job.claim_token for job in claimed[:4]}) == 4


def test_lost_race_raises_concurrency_error(make_job):
    job = make_job()
    stale_copy = RenderJob.objects.get(pk=job.pk)
    claim(job, "worker-1")

    with pytest.raises(ConcurrencyError):
        claim(stale_copy, "worker-2")
    assert RenderJob.objects.get(pk=job.pk).claimed_by == "worker-1"


def test_cancelled_job_is_never_claimed(make_job):
    job = make_job()
    services.cancel(job.pk, "changed my mind")

    assert claim_next("worker-1") is None
    assert claim_job(job.pk, "worker-1") is None
    assert RenderJob.objects.get(pk=job.pk).status == RenderJob.Status.CANCELLED


def test_terminal_jobs_are_not_claimable(make_job):
    make_job(status=RenderJob.Status.COMPLETED)
    make_job(status=RenderJob.Status.FAILED)
    assert claim_next("worker-1", stale_after_seconds=900) is None


def test_claim_job_missing(db):
    assert claim_job("00000000-0000-0000-0000-000000000000", "worker-1") is None


# ── stale claims ─────────────────────────────────────────────────────


def test_stale_processing_job_is_reclaimed(make_job):
    job = make_job()
    first = claim_next("worker-1")
    old_token = first.claim_token
    _age(job, 3600)

    second = claim_next("worker-2", stale_after_seconds=900)

    assert second.pk == job.pk
    assert second.status == RenderJob.Status.PROCESSING
    assert second.claimed_by == "worker-2"
    assert second.claim_token != old_token

    # The superseded worker can no longer write.
    with pytest.raises(ConcurrencyError):
        ProgressRecorder(first).emit(StageStarted("voice synthesis"))


def test_fresh_processing_job_is_not_reclaimed(make_job):
    make_job()
    claim_next("worker-1")
    assert claim_next("worker-2", stale_after_seconds=900) is None


def test_reclaim_disabled_without_timeout(make_job):
    job = make_job()
    claim_next("worker-1")
    _age(job, 3600)
    assert claim_next("worker-2") is None


# ── progress recorder ────────────────────────────────────────────────


def test_progress_is_monotonic(make_job):
    make_job()
    job = claim_next("worker-1")
    recorder = ProgressRecorder(job)

    recorder.emit(ProgressUpdated(45))
    recorder.emit(ProgressUpdated(30))

    assert RenderJob.objects.get(pk=job.pk).progress == 45


def test_hundred_percent_only_with_completion(make_job):
    make_job()
    recorder = ProgressRecorder(claim_next("worker-1"))
    with pytest.raises(ValueError):
        recorder.emit(ProgressUpdated(100))


def test_completion_is_one_write(make_job):
    make_job()
    job = claim_next("worker-1")
    ProgressRecorder(job).emit(JobCompleted({"url": "https://cdn.example.test/a.mp3"}))

    job.refresh_from_db()
    assert job.status == RenderJob.Status.COMPLETED
    assert job.progress == 100
    assert job.result == {"url": "https://cdn.example.test/a.mp3"}


def test_writes_advance_updated_at(make_job):
    make_job()
    job = claim_next("worker-1")
    _age(job, 60)
    before = RenderJob.objects.get(pk=job.pk).updated_at

    ProgressRecorder(job).emit(StageStarted("mixing"))

    after = RenderJob.objects.get(pk=job.pk)
    assert after.updated_at > before
    assert after.stage == "mixing"


def test_write_after_cancel_raises_job_cancelled(make_job):
    make_job()
    job = claim_next("worker-1")
    recorder = ProgressRecorder(job)
    services.cancel(job.pk)

    with pytest.raises(JobCancelled):
        recorder.emit(ProgressUpdated(30))
    assert RenderJob.objects.get(pk=job.pk).progress == 0


def test_listeners_see_applied_events(make_job):
    make_job()
    seen = []
    recorder = ProgressRecorder(claim_next("worker-1"), listeners=[seen.append])

    recorder.emit(StageStarted("voice synthesis"))
    recorder.emit(ProgressUpdated(30, "voice synthesis"))

    assert seen == [StageStarted("voice synthesis"), ProgressUpdated(30, "voice synthesis")]


# ── terminal states ──────────────────────────────────────────────────


def _snapshot(job):
    return RenderJob.objects.filter(pk=job.pk).values().get()


def _write_paths(job):
    """Every way this subsystem changes a job record, bound to ``job``."""
    recorder = ProgressRecorder(RenderJob.objects.get(pk=job.pk))
    return {
        "claim": lambda: claim(job, "worker-2", stale_after_seconds=900),
        "progress": lambda: recorder.emit(ProgressUpdated(45)),
        "stage started": lambda: recorder.emit(StageStarted("mixing")),
        "completed": lambda: recorder.emit(JobCompleted({"url": "https://cdn.example.test/x.mp3"})),
        "failed": lambda: recorder.emit(JobFailed("mixing", "mixing failed: boom")),
        "cancel": lambda: services.cancel(job.pk, "late"),
    }


@pytest.mark.parametrize("status", ["completed", "failed", "cancelled"])
def test_terminal_job_is_never_written_again(make_job, status):
    job = make_job(status=status)
    # Worst case: the job still carries the token of the worker that finished it.
    RenderJob.objects.filter(pk=job.pk).update(claim_token=uuid4(), claimed_by="worker-1")
    job.refresh_from_db()
    before = _snapshot(job)

    for name, write in _write_paths(job).items():
        with pytest.raises((ConcurrencyError, JobCancelled, InvalidStateError)):
            write()
        assert _snapshot(job) == before, name
