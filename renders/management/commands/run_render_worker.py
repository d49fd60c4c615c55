import logging
import time

from django.conf import settings
from django.core.management.base import BaseCommand

from renders.worker import RenderWorker, sweep_work_dirs

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Poll for pending render jobs and render them one at a time."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Process at most one job, then exit.")
        parser.add_argument("--max-jobs", type=int, default=0, help="Exit after this many jobs (0 = no limit).")
        parser.add_argument(
            "--poll-interval", type=float, default=None,
            help="Seconds to sleep when the queue is empty (default: RENDER_POLL_INTERVAL_SECONDS).",
        )

    def handle(self, *args, **options):
        worker = RenderWorker.from_settings()
        interval = options["poll_interval"]
        if interval is None:
            interval = settings.RENDER_POLL_INTERVAL_SECONDS
        max_jobs = 1 if options["once"] else options["max_jobs"]

        self.stdout.write(f"Render worker {worker.worker_id} started")
        processed = 0
        try:
            while True:
                sweep_work_dirs(worker.work_dir, worker.claim_timeout_seconds)
                outcome = worker.run_next()

                if outcome is None:
                    if options["once"]:
                        break
                    time.sleep(interval)
                    continue

                processed += 1
                self.stdout.write(f"{outcome.job_id}: {outcome.status}")
                if max_jobs and processed >= max_jobs:
                    break
        except KeyboardInterrupt:
            logger.info("Render worker %s interrupted", worker.worker_id)

        self.stdout.write(self.style.SUCCESS(f"Processed {processed} job(s)"))
