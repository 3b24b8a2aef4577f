"""
Scan Job State Machine
======================
Queued → Processing → {Completed, Failed}

A shutdown leaves a job in Processing; it is picked up again on the next
startup and either resumed from its checkpoint or failed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .errors import InvalidTransition
from .models import ScanJob, ScanStatus, utcnow

logger = logging.getLogger(__name__)

_ALLOWED: Dict[ScanStatus, FrozenSet[ScanStatus]] = {
    ScanStatus.QUEUED: frozenset({ScanStatus.PROCESSING}),
    ScanStatus.PROCESSING: frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED}),
    ScanStatus.COMPLETED: frozenset(),
    ScanStatus.FAILED: frozenset(),
}

INTERRUPTED_WITHOUT_CHECKPOINT = "Scan was interrupted without checkpoint. Please resubmit."
CANCELLED_BY_CALLER = "Scan was cancelled"


def timeout_message(max_minutes: int) -> str:
    return f"Scan exceeded maximum duration of {max_minutes} minutes"


def can_transition(current: ScanStatus, target: ScanStatus) -> bool:
    return target in _ALLOWED[current]


def transition(
    job: ScanJob,
    target: ScanStatus,
    *,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ScanJob:
    """Move ``job`` to ``target`` and stamp the matching timestamp.

    Raises:
        InvalidTransition: if the move is not part of the lifecycle.
    """
    if not can_transition(job.status, target):
        raise InvalidTransition(
            f"Scan {job.scan_id}: {job.status.value} -> {target.value} is not allowed"
        )

    now = now or utcnow()
    if target == ScanStatus.PROCESSING:
        job.started_at = now
        job.queue_position = 0
    elif target in (ScanStatus.COMPLETED, ScanStatus.FAILED):
        job.completed_at = now
        job.error_message = error_message if target == ScanStatus.FAILED else None

    logger.debug(f"[STATE] {job.scan_id}: {job.status.value} -> {target.value}")
    job.status = target
    return job
