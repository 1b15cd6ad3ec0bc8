"""
Settlement scheduler for the daily settlement batch.

The scheduler is ticked once a minute by Celery beat and triggers
SettlementService.run_settlement_batch when:
- the local wall clock (SETTLEMENT_TIMEZONE) is within the trigger window
  after SETTLEMENT_RUN_HOUR:SETTLEMENT_RUN_MINUTE
- no run holds a live lease
- the last run finished more than SETTLEMENT_MIN_INTERVAL_MINUTES ago

State lives in a ScheduledJobState row. The run lease is taken with a
single conditional UPDATE, so only one worker across all instances can
hold it; an expired lease (crashed worker) is free again.

Usage:
    from payments.workers import SettlementScheduler

    scheduler = SettlementScheduler()
    scheduler.tick()            # From the beat task
    scheduler.trigger_manual()  # Operator "run now"
    scheduler.status()
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from payments.models import ScheduledJobState
from payments.services import SettlementService, SettlementSummary
from payments.services.settlement_service import SETTLEMENT_DISABLED

logger = logging.getLogger(__name__)


SETTLEMENT_JOB_NAME = "settlement"

ALREADY_RUNNING = "Already running"


class SettlementScheduler:
    """
    Decides when the settlement batch runs and records its history.

    Args:
        clock: Callable returning the current aware datetime
            (default django.utils.timezone.now)
        job_name: ScheduledJobState row to use
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        job_name: str = SETTLEMENT_JOB_NAME,
    ) -> None:
        self.clock = clock or timezone.now
        self.job_name = job_name
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"[:64]

    # =========================================================================
    # Time
    # =========================================================================

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(settings.SETTLEMENT_TIMEZONE)

    def _target_for(self, local_now: datetime) -> datetime:
        return local_now.replace(
            hour=settings.SETTLEMENT_RUN_HOUR,
            minute=settings.SETTLEMENT_RUN_MINUTE,
            second=0,
            microsecond=0,
        )

    def compute_next_run(self, after: datetime | None = None) -> datetime:
        """Next daily target time strictly after `after` (default now)."""
        local_now = (after or self.clock()).astimezone(self.tz)
        target = self._target_for(local_now)
        if target <= local_now:
            target = self._target_for(local_now + timedelta(days=1))
        return target

    def in_trigger_window(self, now: datetime | None = None) -> bool:
        local_now = (now or self.clock()).astimezone(self.tz)
        target = self._target_for(local_now)
        window = timedelta(minutes=settings.SETTLEMENT_TRIGGER_WINDOW_MINUTES)
        return target <= local_now < target + window

    # =========================================================================
    # State
    # =========================================================================

    def _get_state(self) -> ScheduledJobState | None:
        return ScheduledJobState.objects.filter(job_name=self.job_name).first()

    @staticmethod
    def _lease_is_live(state: ScheduledJobState | None, now: datetime) -> bool:
        return bool(
            state
            and state.is_running
            and state.lease_expires_at
            and state.lease_expires_at > now
        )

    def should_trigger(self, now: datetime | None = None) -> bool:
        """Time window, lease and minimum-interval checks, without writes."""
        now = now or self.clock()
        if not self.in_trigger_window(now):
            return False

        state = self._get_state()
        if self._lease_is_live(state, now):
            return False

        min_interval = timedelta(minutes=settings.SETTLEMENT_MIN_INTERVAL_MINUTES)
        if state and state.last_run_at and now - state.last_run_at < min_interval:
            return False
        return True

    def _acquire_lease(self, now: datetime, respect_min_interval: bool = False) -> bool:
        ScheduledJobState.objects.get_or_create(job_name=self.job_name)
        free = ScheduledJobState.objects.filter(job_name=self.job_name).filter(
            Q(is_running=False) | Q(lease_expires_at__isnull=True) | Q(lease_expires_at__lte=now)
        )
        if respect_min_interval:
            # A run that finished between should_trigger and here wins
            min_interval = timedelta(minutes=settings.SETTLEMENT_MIN_INTERVAL_MINUTES)
            free = free.filter(Q(last_run_at__isnull=True) | Q(last_run_at__lte=now - min_interval))
        acquired = free.update(
            is_running=True,
            lease_owner=self.owner,
            lease_expires_at=now + timedelta(seconds=settings.SETTLEMENT_LEASE_SECONDS),
            last_started_at=now,
            updated_at=now,
        )
        return acquired == 1

    def _release_lease(self, summary: SettlementSummary) -> None:
        now = self.clock()
        ScheduledJobState.objects.filter(job_name=self.job_name, lease_owner=self.owner).update(
            is_running=False,
            lease_owner="",
            lease_expires_at=None,
            last_run_at=now,
            next_run_at=self.compute_next_run(now),
            last_result=summary.to_dict(),
            updated_at=now,
        )

    # =========================================================================
    # Entry Points
    # =========================================================================

    def tick(self) -> SettlementSummary | None:
        """Run the batch if it is due; None when nothing was triggered."""
        if not settings.SETTLEMENT_ENABLED:
            return None
        if not self.should_trigger():
            return None
        logger.info("Settlement window reached, triggering batch", extra={"job_name": self.job_name})
        return self.run(respect_min_interval=True)

    def trigger_manual(self) -> SettlementSummary:
        """Run now, ignoring the time window but not the lease."""
        logger.info("Manual settlement trigger", extra={"job_name": self.job_name})
        return self.run()

    def run(self, respect_min_interval: bool = False) -> SettlementSummary:
        """
        Execute one settlement run under the lease.

        With respect_min_interval the lease is only taken when the last run
        finished at least SETTLEMENT_MIN_INTERVAL_MINUTES ago.

        Returns errors=["Settlement is disabled"] without writing anything
        when settlement is off, and errors=["Already running"] when another
        worker holds the lease.
        """
        if not settings.SETTLEMENT_ENABLED:
            return SettlementSummary(success=False, errors=[SETTLEMENT_DISABLED])

        now = self.clock()
        if not self._acquire_lease(now, respect_min_interval=respect_min_interval):
            logger.warning(
                "Settlement run skipped: lease held or last run too recent",
                extra={"job_name": self.job_name},
            )
            return SettlementSummary(success=False, errors=[ALREADY_RUNNING])

        start_time = time.time()
        summary = SettlementSummary(success=False, errors=["Run did not finish"])
        try:
            summary = SettlementService.run_settlement_batch(now=now)
        except Exception as e:
            summary = SettlementSummary(success=False, errors=[f"{type(e).__name__}: {e}"])
            logger.error(
                f"Settlement run crashed: {type(e).__name__}",
                extra={"job_name": self.job_name},
                exc_info=True,
            )
            raise
        finally:
            self._release_lease(summary)
            logger.info(
                "Settlement run finished",
                extra={
                    "job_name": self.job_name,
                    "success": summary.success,
                    "duration_ms": round((time.time() - start_time) * 1000, 2),
                },
            )
        return summary

    def status(self) -> dict[str, Any]:
        now = self.clock()
        state = self._get_state()
        return {
            "enabled": settings.SETTLEMENT_ENABLED,
            "is_running": self._lease_is_live(state, now),
            "last_run_at": state.last_run_at if state else None,
            "next_run_at": (state.next_run_at if state and state.next_run_at else self.compute_next_run(now)),
            "last_result": state.last_result if state else None,
        }
