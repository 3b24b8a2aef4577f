"""
Fairness Queue Scheduler
========================
Orders queued scans so repeat submitters wait behind first-timers, while
aging keeps long-waiting jobs from starving.

Priority (lower = sooner), in 100 ns ticks since the Unix epoch:

    submission_count * fairness_slot_ticks + ticks(created_at)

The aging pass rewrites every queued score as

    submission_count * fairness_slot_ticks + ticks(created_at)
        - floor(wait_s / boost_s) * aging_boost_ticks
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .job_state import transition
from .models import ScanJob, ScanStatus, utcnow
from .repositories import ScanJobRepository
from .run_config import ScannerRunConfig

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_ticks(dt: datetime) -> int:
    """100 ns ticks since the Unix epoch (naive datetimes are taken as UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(microseconds=1) * 10


# ---------------------------------------------------------------------------
# Cooldown
# ---------------------------------------------------------------------------

class CooldownStore:
    """IP → cooldown expiry. Expired entries are dropped on lookup."""

    def __init__(self, window_s: float, clock: Callable[[], float] = time.monotonic):
        self.window_s = window_s
        self._clock = clock
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def record(self, ip: str) -> None:
        if self.window_s <= 0 or not ip:
            return
        with self._lock:
            self._expiry[ip] = self._clock() + self.window_s

    def is_cooling_down(self, ip: str) -> bool:
        if not ip:
            return False
        with self._lock:
            expiry = self._expiry.get(ip)
            if expiry is None:
                return False
            if self._clock() >= expiry:
                del self._expiry[ip]
                return False
            return True

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            for ip in [ip for ip, exp in self._expiry.items() if now >= exp]:
                del self._expiry[ip]
            return len(self._expiry)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class FairnessQueue:

    def __init__(
        self,
        config: ScannerRunConfig,
        job_repository: ScanJobRepository,
        cooldown_store: Optional[CooldownStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.jobs = job_repository
        self.cooldowns = cooldown_store or CooldownStore(config.cooldown_after_scan_seconds)
        self._clock = clock

    def compute_priority(self, submission_count: int, created_at: datetime) -> int:
        return submission_count * self.config.fairness_slot_ticks + to_ticks(created_at)

    def aged_priority(self, job: ScanJob, now: datetime) -> int:
        base = self.compute_priority(job.submission_count, job.created_at)
        boost_s = self.config.priority_aging_boost_seconds
        if boost_s <= 0:
            return base
        wait_s = max(0.0, (now - job.created_at).total_seconds())
        return base - int(wait_s // boost_s) * self.config.aging_boost_ticks

    # ------------------------------------------------------------------
    # Admission checks
    # ------------------------------------------------------------------

    async def can_enqueue(self) -> bool:
        return await self.jobs.queued_count() < self.config.max_queue_size

    async def has_ip_reached_queue_limit(self, ip: str) -> bool:
        limit = self.config.max_queued_jobs_per_ip
        if limit <= 0:
            return False
        return await self.jobs.count_queued_by_ip(ip) >= limit

    def is_ip_in_cooldown(self, ip: str) -> bool:
        return self.cooldowns.is_cooling_down(ip)

    def record_cooldown(self, ip: str) -> None:
        self.cooldowns.record(ip)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(self, job: ScanJob) -> ScanJob:
        job.status = ScanStatus.QUEUED
        job.priority_score = self.compute_priority(job.submission_count, job.created_at)
        await self.jobs.add(job)
        job.queue_position = await self.jobs.queue_position(job.scan_id)
        await self.jobs.update(job)
        logger.info(
            f"[QUEUE] Enqueued {job.scan_id} for {job.target_url} "
            f"(submission #{job.submission_count}, position {job.queue_position})"
        )
        return job

    async def dequeue(self) -> Optional[ScanJob]:
        """Take the best queued job whose submitter is not cooling down."""
        if await self.jobs.processing_count() >= self.config.max_concurrent_scans:
            return None

        for job in await self.jobs.get_queued_ordered():
            if self.is_ip_in_cooldown(job.submitter_ip):
                logger.debug(f"[QUEUE] Skipping {job.scan_id}: {job.submitter_ip} in cooldown")
                continue
            transition(job, ScanStatus.PROCESSING, now=self._clock())
            await self.jobs.update(job)
            logger.info(f"[QUEUE] Dequeued {job.scan_id} ({job.target_url})")
            return job
        return None

    async def recalculate_priorities_with_aging(self, now: Optional[datetime] = None) -> List[str]:
        """Apply aging to every queued job. Returns ids whose position moved."""
        now = now or self._clock()
        queued = await self.jobs.get_queued_ordered()
        if not queued:
            return []

        before = {job.scan_id: job.queue_position for job in queued}
        for job in queued:
            job.priority_score = self.aged_priority(job, now)
        queued.sort(key=lambda j: (j.priority_score, j.created_at))

        changed = []
        for position, job in enumerate(queued, start=1):
            job.queue_position = position
            if before[job.scan_id] != position:
                changed.append(job.scan_id)

        await self.jobs.update_many(queued)
        if changed:
            logger.debug(f"[QUEUE] Aging moved {len(changed)} job(s)")
        return changed

    async def refresh_positions(self) -> Dict[str, int]:
        """Renumber queued jobs 1..n and return scan id → position."""
        queued = await self.jobs.get_queued_ordered()
        for position, job in enumerate(queued, start=1):
            job.queue_position = position
        await self.jobs.update_many(queued)
        return {job.scan_id: job.queue_position for job in queued}

    async def complete_job(
        self, scan_id: str, success: bool, error_message: Optional[str] = None
    ) -> Optional[ScanJob]:
        job = await self.jobs.get(scan_id)
        if job is None:
            logger.warning(f"[QUEUE] complete_job: unknown scan {scan_id}")
            return None
        target = ScanStatus.COMPLETED if success else ScanStatus.FAILED
        transition(job, target, error_message=error_message, now=self._clock())
        await self.jobs.update(job)
        self.record_cooldown(job.submitter_ip)
        return job
