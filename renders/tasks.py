from celery import shared_task

from .worker import RenderWorker


def _summary(outcome):
    if outcome is None:
        return None
    return {"job_id": outcome.job_id, "status": str(outcome.status), "error": outcome.error}


@shared_task(ignore_result=False)
def render_job(job_id: str):
    """Claim and render one job; returns None when another worker owns it."""
    return _summary(RenderWorker.from_settings().run_job(job_id))


@shared_task(ignore_result=False)
def render_next():
    """Claim and render the oldest pending (or stale) job."""
    return _summary(RenderWorker.from_settings().run_next())
