"""
Persistent state for scheduled background jobs.

One row per job name. The row doubles as a run lease: a worker owns the
run while `is_running` is set and `lease_expires_at` is in the future. An
expired lease is treated as free, so a crashed run stops blocking the
scheduler once the lease runs out.
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel


class ScheduledJobState(BaseModel):
    """
    Run history and run lease for one scheduled job.

    Fields:
        job_name: Unique job identifier (e.g. "settlement")
        is_running: Whether a run currently holds the lease
        lease_owner: Token of the worker holding the lease
        lease_expires_at: When the lease becomes free regardless of is_running
        last_started_at: When the last run began
        last_run_at: When the last run finished
        next_run_at: Next scheduled trigger time
        last_result: JSON summary returned by the last run
    """

    job_name = models.CharField(max_length=100, unique=True)

    is_running = models.BooleanField(default=False)

    lease_owner = models.CharField(max_length=64, blank=True, default="")

    lease_expires_at = models.DateTimeField(null=True, blank=True)

    last_started_at = models.DateTimeField(null=True, blank=True)

    last_run_at = models.DateTimeField(null=True, blank=True)

    next_run_at = models.DateTimeField(null=True, blank=True)

    last_result = models.JSONField(null=True, blank=True)

    class Meta:
        ordering = ["job_name"]
        verbose_name = "Scheduled Job State"
        verbose_name_plural = "Scheduled Job States"

    def __str__(self) -> str:
        return f"ScheduledJobState({self.job_name}, running={self.is_running})"
