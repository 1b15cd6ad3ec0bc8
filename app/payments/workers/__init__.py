"""
Workers for scheduled payment processing.

This module contains:
- SettlementScheduler: Decides when the daily settlement batch runs and
  holds the cross-instance run lease

The Celery tasks that drive the workers live in payments.tasks.

Usage:
    from payments.workers import SettlementScheduler

    SettlementScheduler().status()
"""

from payments.workers.settlement_scheduler import (
    ALREADY_RUNNING,
    SETTLEMENT_JOB_NAME,
    SettlementScheduler,
)

__all__ = [
    "ALREADY_RUNNING",
    "SETTLEMENT_JOB_NAME",
    "SettlementScheduler",
]
