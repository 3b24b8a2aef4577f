"""
Queue Processor
===============
Background loop that turns queued scan jobs into running crawls.

Every ``processing_interval_seconds``:
  1. Run the aging pass when one is due and broadcast moved positions
  2. Dequeue jobs until the concurrency cap (or cooldowns) stop it
  3. Start each scan as its own ``asyncio.Task``

On startup, jobs left in Processing by a previous run are resumed from
their checkpoint, or failed when none exists.

A running scan is cancelled through its ``ScanCancelScope``; the scope
remembers why (timeout, caller, shutdown) so the unwind path can decide
the job's final status.  A shutdown leaves the job in Processing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .checkpoint import CheckpointManager
from .crawl_orchestrator import CrawlOrchestrator
from .errors import CancelReason, ScanCancelled
from .job_state import CANCELLED_BY_CALLER, INTERRUPTED_WITHOUT_CHECKPOINT, timeout_message
from .models import (
    CrawlCheckpoint,
    CrawlProgress,
    CrawlProgressType,
    CrawlResult,
    DiscoveredImage,
    ScanJob,
    ScanStatus,
)
from .monitor import ProgressSink
from .reporting import ResultConsumer, build_report
from .repositories import DiscoveredImageRepository
from .run_config import ScannerRunConfig
from .savings import estimate_webp_size, savings_percent
from .scheduler import FairnessQueue
from .utils import Frontier

logger = logging.getLogger(__name__)


class ScanCancelScope:
    """Cancellation handle for one running scan.

    The first reason recorded wins; later ``cancel`` calls only re-cancel
    the task.
    """

    def __init__(self, timeout_s: Optional[float] = None):
        self.timeout_s = timeout_s
        self.reason: Optional[CancelReason] = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    def attach(self, task: asyncio.Task) -> None:
        self._task = task
        if self.timeout_s:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.timeout_s, self.cancel, CancelReason.TIMEOUT)

    def cancel(self, reason: CancelReason) -> bool:
        if self.reason is None:
            self.reason = reason
        if self._task is not None and not self._task.done():
            self._task.cancel()
            return True
        return False

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class QueueProcessor:

    def __init__(
        self,
        config: ScannerRunConfig,
        queue: FairnessQueue,
        image_repository: DiscoveredImageRepository,
        checkpoint_manager: CheckpointManager,
        orchestrator: CrawlOrchestrator,
        progress_sink: Optional[ProgressSink] = None,
        result_consumers: Iterable[ResultConsumer] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.queue = queue
        self.images = image_repository
        self.checkpoints = checkpoint_manager
        self.orchestrator = orchestrator
        self.progress_sink = progress_sink
        self.result_consumers: List[ResultConsumer] = list(result_consumers)
        self._clock = clock
        self._last_aging = clock()
        self._running: Dict[str, Tuple[asyncio.Task, ScanCancelScope]] = {}

    @property
    def running_scan_ids(self) -> List[str]:
        return list(self._running)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """Process the queue until ``stop_event`` is set, then shut down."""
        logger.info(
            f"[QUEUE] Processor starting (max {self.config.max_concurrent_scans} concurrent, "
            f"interval {self.config.processing_interval_seconds}s)"
        )
        try:
            if self.config.startup_delay_seconds > 0:
                if await self._wait(stop_event, self.config.startup_delay_seconds):
                    return
            await self.resume_interrupted()

            while not stop_event.is_set():
                try:
                    await self.process_once()
                except Exception as e:
                    logger.error(f"[QUEUE] Processing pass failed: {e}", exc_info=True)
                await self._wait(stop_event, self.config.processing_interval_seconds)
        finally:
            await self.shutdown()

    @staticmethod
    async def _wait(stop_event: asyncio.Event, timeout_s: float) -> bool:
        """Sleep up to ``timeout_s``; True if the stop event fired."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return False
        return True

    async def process_once(self) -> List[ScanJob]:
        """One scheduler pass. Returns the jobs started."""
        now = self._clock()
        if self.config.aging_enabled and now - self._last_aging >= self.config.priority_aging_boost_seconds:
            self._last_aging = now
            changed = await self.queue.recalculate_priorities_with_aging()
            if changed:
                await self._broadcast_positions()

        started: List[ScanJob] = []
        while True:
            job = await self.queue.dequeue()
            if job is None:
                break
            self.start_scan(job)
            started.append(job)

        if started:
            await self._broadcast_positions()
        return started

    async def resume_interrupted(self) -> List[ScanJob]:
        """Restart or fail every job a previous run left in Processing."""
        resumed: List[ScanJob] = []
        for job in await self.queue.jobs.get_by_status(ScanStatus.PROCESSING):
            if job.scan_id in self._running:
                continue
            checkpoint = await self.checkpoints.load(job.scan_id)
            if checkpoint is None:
                logger.warning(f"[RESUME] {job.scan_id} has no checkpoint, marking failed")
                await self._finish_failed(job, INTERRUPTED_WITHOUT_CHECKPOINT)
                continue
            logger.info(
                f"[RESUME] {job.scan_id} from checkpoint #{checkpoint.sequence} "
                f"({checkpoint.pages_visited} pages visited)"
            )
            self.start_scan(job, checkpoint)
            resumed.append(job)
        return resumed

    def start_scan(self, job: ScanJob, checkpoint: Optional[CrawlCheckpoint] = None) -> asyncio.Task:
        scope = ScanCancelScope(self.config.max_scan_duration_s)
        task = asyncio.create_task(self.execute_scan(job, checkpoint, scope))
        scope.attach(task)
        self._running[job.scan_id] = (task, scope)
        task.add_done_callback(lambda t, sid=job.scan_id: self._on_scan_done(sid, t))
        return task

    def _on_scan_done(self, scan_id: str, task: asyncio.Task) -> None:
        entry = self._running.get(scan_id)
        if entry is not None and entry[0] is task:
            del self._running[scan_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[QUEUE] Scan task {scan_id} crashed: {task.exception()}")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_scan(self, scan_id: str) -> bool:
        entry = self._running.get(scan_id)
        if entry is None:
            return False
        logger.info(f"[QUEUE] Cancelling scan {scan_id} on request")
        return entry[1].cancel(CancelReason.CALLER)

    async def shutdown(self) -> None:
        """Cancel every running scan (jobs stay Processing) and close the browser."""
        entries = list(self._running.values())
        if entries:
            logger.info(f"[QUEUE] Shutting down {len(entries)} running scan(s)")
        for _, scope in entries:
            scope.cancel(CancelReason.SHUTDOWN)
        if entries:
            await asyncio.gather(*(task for task, _ in entries), return_exceptions=True)
        await self.orchestrator.close()

    # ------------------------------------------------------------------
    # Scan execution
    # ------------------------------------------------------------------

    async def execute_scan(
        self,
        job: ScanJob,
        checkpoint: Optional[CrawlCheckpoint] = None,
        scope: Optional[ScanCancelScope] = None,
    ) -> ScanJob:
        scope = scope or ScanCancelScope()
        saved_urls: Set[str] = set()
        if checkpoint is not None:
            saved_urls.update(img.image_url for img in await self.images.get_by_scan(job.scan_id))

        await self._notify_sink("scan_started", job)

        async def on_progress(event: CrawlProgress) -> None:
            job.pages_scanned = event.pages_scanned
            job.pages_discovered = event.pages_discovered
            job.non_webp_images_found = event.non_webp_images_found
            details = event.image_details
            if (
                event.type == CrawlProgressType.IMAGE_FOUND
                and details is not None
                and details.image_url not in saved_urls
            ):
                try:
                    await self.images.add(self._discovered_image(
                        job.scan_id, details.image_url, details.mime_type, details.file_size,
                        [event.page_url] if event.page_url else [],
                    ))
                    saved_urls.add(details.image_url)
                except Exception as e:
                    logger.warning(f"[IMAGES] Failed to save {details.image_url}: {e}")
            await self._notify_sink("on_progress", job.scan_id, event)

        def on_checkpoint(frontier: Frontier, images_found: int, current_url: Optional[str]) -> None:
            snapshot = self.checkpoints.build(job.scan_id, frontier, images_found, current_url)
            self.checkpoints.schedule_save(snapshot)

        try:
            result = await self.orchestrator.crawl(
                job, checkpoint, on_progress, on_checkpoint,
                known_image_urls=frozenset(saved_urls) if checkpoint is not None else None,
            )
        except asyncio.CancelledError:
            reason = scope.reason or CancelReason.SHUTDOWN
            if reason == CancelReason.SHUTDOWN:
                logger.info(f"[QUEUE] Scan {job.scan_id} interrupted by shutdown; left processing")
                raise
            if reason == CancelReason.TIMEOUT:
                cancelled = ScanCancelled(reason, timeout_message(self.config.max_scan_duration_minutes))
            else:
                cancelled = ScanCancelled(reason, CANCELLED_BY_CALLER)
            logger.warning(f"[QUEUE] Scan {job.scan_id} cancelled ({reason.value}): {cancelled}")
            return await self._finish_failed(job, str(cancelled))
        except Exception as e:
            logger.error(f"[QUEUE] Scan {job.scan_id} crashed: {e}", exc_info=True)
            return await self._finish_failed(job, str(e))
        finally:
            scope.close()

        # The crawl is over; a cancel arriving now must not strand the job
        finalizing = asyncio.ensure_future(self._finalize(job, result, saved_urls))
        interrupted = False
        while True:
            try:
                job = await asyncio.shield(finalizing)
                break
            except asyncio.CancelledError:
                if finalizing.cancelled():
                    raise
                interrupted = True
                logger.info(f"[QUEUE] Scan {job.scan_id} cancelled while finalizing; finishing first")
        if interrupted and scope.reason in (None, CancelReason.SHUTDOWN):
            raise asyncio.CancelledError()
        return job

    async def _finalize(self, job: ScanJob, result: CrawlResult, saved_urls: Set[str]) -> ScanJob:
        for image in result.non_webp_images:
            if image.url in saved_urls:
                continue
            await self.images.add(self._discovered_image(
                job.scan_id, image.url, image.mime_type, image.size,
                list(result.image_to_pages.get(image.url, [])),
            ))
            saved_urls.add(image.url)
        await self.images.update_page_urls(job.scan_id, result.image_to_pages)

        job.pages_scanned = result.pages_scanned
        job.pages_discovered = result.pages_discovered
        job.non_webp_images_found = await self.images.count_by_scan(job.scan_id)
        job.reached_page_limit = result.reached_page_limit
        await self.queue.jobs.update(job)

        if not result.success:
            message = result.error_message or "Scan failed"
            return await self._finish_failed(job, message)

        job = await self.queue.complete_job(job.scan_id, True) or job
        await self._delete_checkpoint(job.scan_id)
        logger.info(
            f"[QUEUE] Scan {job.scan_id} completed: {job.pages_scanned} pages, "
            f"{job.non_webp_images_found} non-WebP images"
        )
        report = build_report(job, await self.images.get_by_scan_ordered_by_savings(job.scan_id))
        for consumer in self.result_consumers:
            try:
                await consumer.scan_completed(report)
            except Exception as e:
                logger.warning(f"[NOTIFY] Result consumer failed for {job.scan_id}: {e}")
        await self._notify_sink("scan_completed", job)
        return job

    async def _delete_checkpoint(self, scan_id: str) -> None:
        try:
            await self.checkpoints.delete(scan_id)
        except Exception as e:
            logger.warning(f"[CHECKPOINT] Failed to delete checkpoint for {scan_id}: {e}")

    async def _finish_failed(self, job: ScanJob, message: str) -> ScanJob:
        job = await self.queue.complete_job(job.scan_id, False, message) or job
        for consumer in self.result_consumers:
            try:
                await consumer.scan_failed(job, message)
            except Exception as e:
                logger.warning(f"[NOTIFY] Failure notice failed for {job.scan_id}: {e}")
        await self._notify_sink("scan_failed", job, message)
        return job

    def _discovered_image(
        self, scan_id: str, url: str, mime_type: str, size: int, page_urls: List[str]
    ) -> DiscoveredImage:
        estimated = estimate_webp_size(size, self.config.webp_size_ratio)
        return DiscoveredImage(
            scan_id=scan_id,
            image_url=url,
            mime_type=mime_type,
            file_size=size,
            estimated_webp_size=estimated,
            savings_percent=savings_percent(size, estimated),
            page_urls=page_urls,
        )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _broadcast_positions(self) -> None:
        positions = await self.queue.refresh_positions()
        await self._notify_sink("queue_positions_changed", positions)

    async def _notify_sink(self, method: str, *args) -> None:
        if self.progress_sink is None:
            return
        try:
            await getattr(self.progress_sink, method)(*args)
        except Exception as e:
            logger.warning(f"[NOTIFY] Progress sink {method} failed: {e}")
