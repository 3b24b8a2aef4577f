"""
Scan Monitor
============
Live progress tracking for running scans.

Tracks:
- Pages scanned / discovered per scan
- Non-WebP images found per scan
- Queue positions of waiting scans
- Pages/sec (rolling 30s window + overall)
- Completed / failed scan counts

``ProgressSink`` is the narrow interface the queue processor pushes
events through; ``ScanMonitor`` is the in-process implementation that
logs a ``[MONITOR]`` line every ``interval_s`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from .models import CrawlProgress, CrawlProgressType, ScanJob

logger = logging.getLogger(__name__)

# Rolling window for pages/sec calculation
_ROLLING_WINDOW_SEC = 30.0

# Finished scans kept for stats_for(); older ones are dropped
DEFAULT_MAX_FINISHED_SCANS = 100


class ProgressSink(ABC):
    """Receives scan lifecycle and progress events."""

    @abstractmethod
    async def scan_started(self, job: ScanJob) -> None: ...

    @abstractmethod
    async def on_progress(self, scan_id: str, progress: CrawlProgress) -> None: ...

    @abstractmethod
    async def queue_positions_changed(self, positions: Dict[str, int]) -> None:
        """``positions`` maps scan id → 1-based queue position."""

    @abstractmethod
    async def scan_completed(self, job: ScanJob) -> None: ...

    @abstractmethod
    async def scan_failed(self, job: ScanJob, message: str) -> None: ...


@dataclass
class ScanStats:
    """Live counters for one scan."""
    scan_id: str
    target_url: str
    pages_scanned: int = 0
    pages_discovered: int = 0
    non_webp_images_found: int = 0
    current_url: str = ""
    started_at: float = 0.0
    finished_at: float = 0.0
    status: str = "running"   # running | completed | failed
    error_message: str = ""

    @property
    def elapsed_sec(self) -> float:
        end = self.finished_at or time.monotonic()
        return max(0.0, end - self.started_at) if self.started_at else 0.0


@dataclass
class MonitorSnapshot:
    """Point-in-time view across all scans."""
    active_scans: int = 0
    scans_completed: int = 0
    scans_failed: int = 0
    queued_scans: int = 0
    pages_scanned: int = 0
    images_found: int = 0
    pages_per_sec_rolling: float = 0.0
    pages_per_sec_overall: float = 0.0
    elapsed_sec: float = 0.0


class ScanMonitor(ProgressSink):
    """
    Async-safe monitor for the queue processor.

    Usage::

        monitor = ScanMonitor(interval_s=10)
        await monitor.start()
        processor = QueueProcessor(..., progress_sink=monitor)
        ...
        await monitor.stop()
        print(monitor.format_summary(monitor.stats_for(scan_id)))
    """

    def __init__(
        self,
        interval_s: float = 10.0,
        max_finished_scans: int = DEFAULT_MAX_FINISHED_SCANS,
    ):
        self._lock = asyncio.Lock()
        self._interval_s = interval_s
        self._max_finished = max(1, max_finished_scans)
        self._start_time: float = 0.0

        self._scans: Dict[str, ScanStats] = {}
        self._finished_order: Deque[str] = deque()
        self._dropped_images = 0
        self._queue_positions: Dict[str, int] = {}
        self._completed = 0
        self._failed = 0
        self._pages_total = 0
        self._recent_timestamps: Deque[float] = deque()

        self._reporter_task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._start_time = time.monotonic()
        self._running = True
        if self._interval_s > 0:
            self._reporter_task = asyncio.create_task(self._reporter_loop())

    async def stop(self) -> None:
        self._running = False
        if self._reporter_task:
            self._reporter_task.cancel()
            try:
                await self._reporter_task
            except asyncio.CancelledError:
                pass
            self._reporter_task = None

    # ------------------------------------------------------------------
    # ProgressSink
    # ------------------------------------------------------------------

    async def scan_started(self, job: ScanJob) -> None:
        async with self._lock:
            self._queue_positions.pop(job.scan_id, None)
            self._scans[job.scan_id] = ScanStats(
                scan_id=job.scan_id,
                target_url=job.target_url,
                pages_scanned=job.pages_scanned,
                pages_discovered=job.pages_discovered,
                non_webp_images_found=job.non_webp_images_found,
                started_at=time.monotonic(),
            )
        logger.info(f"[MONITOR] Scan {job.scan_id} started: {job.target_url}")

    async def on_progress(self, scan_id: str, progress: CrawlProgress) -> None:
        now = time.monotonic()
        async with self._lock:
            stats = self._scans.get(scan_id)
            if stats is None:
                return
            stats.pages_scanned = progress.pages_scanned
            stats.pages_discovered = progress.pages_discovered
            stats.non_webp_images_found = progress.non_webp_images_found
            if progress.type == CrawlProgressType.PAGE_STARTED and progress.current_url:
                stats.current_url = progress.current_url
            elif progress.type == CrawlProgressType.PAGE_COMPLETED:
                self._pages_total += 1
                self._recent_timestamps.append(now)
                self._prune(now)

    async def queue_positions_changed(self, positions: Dict[str, int]) -> None:
        async with self._lock:
            self._queue_positions.update(positions)
            for scan_id in [s for s, p in self._queue_positions.items() if p <= 0]:
                del self._queue_positions[scan_id]

    async def scan_completed(self, job: ScanJob) -> None:
        async with self._lock:
            self._completed += 1
            stats = self._finish(job, "completed")
        logger.info(
            f"[MONITOR] Scan {job.scan_id} completed: {stats.pages_scanned} pages, "
            f"{stats.non_webp_images_found} non-WebP images in {stats.elapsed_sec:.1f}s"
        )

    async def scan_failed(self, job: ScanJob, message: str) -> None:
        async with self._lock:
            self._failed += 1
            stats = self._finish(job, "failed")
            stats.error_message = message
        logger.warning(f"[MONITOR] Scan {job.scan_id} failed: {message}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def stats_for(self, scan_id: str) -> Optional[ScanStats]:
        return self._scans.get(scan_id)

    def queue_position(self, scan_id: str) -> int:
        return self._queue_positions.get(scan_id, 0)

    async def snapshot(self) -> MonitorSnapshot:
        now = time.monotonic()
        async with self._lock:
            self._prune(now)
            elapsed = now - self._start_time if self._start_time else 0.0
            rolling = len(self._recent_timestamps)
            return MonitorSnapshot(
                active_scans=sum(1 for s in self._scans.values() if s.status == "running"),
                scans_completed=self._completed,
                scans_failed=self._failed,
                queued_scans=len(self._queue_positions),
                pages_scanned=self._pages_total,
                images_found=self._dropped_images + sum(
                    s.non_webp_images_found for s in self._scans.values()
                ),
                pages_per_sec_rolling=round(rolling / _ROLLING_WINDOW_SEC, 2) if rolling else 0.0,
                pages_per_sec_overall=round(self._pages_total / elapsed, 2) if elapsed > 0 else 0.0,
                elapsed_sec=round(elapsed, 2),
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finish(self, job: ScanJob, status: str) -> ScanStats:
        stats = self._scans.get(job.scan_id)
        if stats is None:
            stats = ScanStats(scan_id=job.scan_id, target_url=job.target_url)
            self._scans[job.scan_id] = stats
        stats.status = status
        stats.finished_at = time.monotonic()
        stats.pages_scanned = job.pages_scanned
        stats.pages_discovered = job.pages_discovered
        stats.non_webp_images_found = job.non_webp_images_found
        self._finished_order.append(job.scan_id)
        self._drop_old_finished()
        return stats

    def _drop_old_finished(self) -> None:
        while len(self._finished_order) > self._max_finished:
            scan_id = self._finished_order.popleft()
            stats = self._scans.get(scan_id)
            if stats is not None and stats.status != "running":
                del self._scans[scan_id]
                self._dropped_images += stats.non_webp_images_found

    def _prune(self, now: float) -> None:
        cutoff = now - _ROLLING_WINDOW_SEC
        while self._recent_timestamps and self._recent_timestamps[0] < cutoff:
            self._recent_timestamps.popleft()

    async def _reporter_loop(self) -> None:
        """Periodically log metrics."""
        while self._running:
            await asyncio.sleep(self._interval_s)
            if not self._running:
                break
            m = await self.snapshot()
            logger.info(
                f"[MONITOR] "
                f"active={m.active_scans} "
                f"queued={m.queued_scans} "
                f"done={m.scans_completed} "
                f"failed={m.scans_failed} "
                f"pages={m.pages_scanned} "
                f"images={m.images_found} "
                f"speed={m.pages_per_sec_rolling:.1f} p/s (rolling) "
                f"{m.pages_per_sec_overall:.1f} p/s (overall) "
                f"elapsed={m.elapsed_sec:.0f}s"
            )

    def format_summary(self, stats: ScanStats) -> str:
        """Format a human-readable summary string for one scan."""
        lines: List[str] = [
            "=" * 65,
            "  SCAN SUMMARY",
            "=" * 65,
            f"  Target:              {stats.target_url}",
            f"  Scan id:             {stats.scan_id}",
            f"  Status:              {stats.status}",
            "-" * 65,
            f"  Pages scanned:       {stats.pages_scanned}",
            f"  Pages discovered:    {stats.pages_discovered}",
            f"  Non-WebP images:     {stats.non_webp_images_found}",
            "-" * 65,
            f"  Elapsed time:        {stats.elapsed_sec:.1f} s",
        ]
        if stats.error_message:
            lines.append(f"  Error:               {stats.error_message}")
        lines.append("=" * 65)
        return "\n".join(lines)
