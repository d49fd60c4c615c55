import uuid
from django.db import models


class RenderJob(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        PROCESSING = "processing"
        COMPLETED = "completed"
        FAILED = "failed"
        CANCELLED = "cancelled"

    # Terminal states are never written again: every status change is a
    # conditional UPDATE on the source state (see dispatcher, events, services).
    CANCELLABLE_STATUSES = frozenset({Status.PENDING, Status.PROCESSING})

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    track_id = models.CharField(max_length=64, db_index=True)   # weak reference, lookup only
    user_id = models.CharField(max_length=64, db_index=True)    # weak reference, lookup only
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)
    progress = models.PositiveSmallIntegerField(default=0)  # 0..100
    stage = models.CharField(max_length=64, blank=True, default="")
    job_data = models.JSONField(default=dict)
    result = models.JSONField(null=True, blank=True)   # {url, duration_seconds, size_bytes, format}
    error = models.TextField(null=True, blank=True)
    cancel_reason = models.CharField(max_length=255, blank=True, default="")

    # Claim bookkeeping. The token makes every worker write conditional on still owning the job.
    claim_token = models.UUIDField(null=True, blank=True, editable=False)
    claimed_by = models.CharField(max_length=128, blank=True, default="")
    claimed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [models.Index(fields=["status", "created_at"], name="renders_status_created_idx")]

    def __str__(self):
        return f"RenderJob#{self.id}({self.status})"
