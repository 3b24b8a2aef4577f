"""
Tests for queue_processor.py: scan execution, result persistence,
cancellation by reason and startup recovery.
"""

import asyncio
import json

from webp_audit.checkpoint import CheckpointManager
from webp_audit.errors import CancelReason
from webp_audit.job_state import INTERRUPTED_WITHOUT_CHECKPOINT
from webp_audit.models import (
    CrawlCheckpoint,
    CrawlProgress,
    CrawlProgressType,
    CrawlResult,
    DetectedImage,
    DiscoveredImage,
    ImageDetails,
    ScanJob,
    ScanStatus,
)
from webp_audit.monitor import ScanMonitor
from webp_audit.queue_processor import QueueProcessor, ScanCancelScope
from webp_audit.reporting import ResultConsumer
from webp_audit.repositories import (
    InMemoryCheckpointRepository,
    InMemoryDiscoveredImageRepository,
    InMemoryScanJobRepository,
)
from webp_audit.run_config import ScannerRunConfig
from webp_audit.scheduler import FairnessQueue
from webp_audit.utils import Frontier

ROOT = "https://example.com/"
HERO = ROOT + "hero.jpg"
CHART = ROOT + "chart.png"


class _Orchestrator:
    """Emits a fixed crawl: HERO found live, CHART only in the final result."""

    def __init__(self, block=False, fail_with=None, checkpoint_calls=0):
        self.block = block
        self.fail_with = fail_with
        self.checkpoint_calls = checkpoint_calls
        self.seen_checkpoints = []
        self.seen_known = []
        self.closed = False
        self.started = asyncio.Event()

    async def crawl(self, job, checkpoint=None, progress=None, checkpoint_callback=None,
                    known_image_urls=None):
        self.seen_checkpoints.append(checkpoint)
        self.seen_known.append(known_image_urls)
        self.started.set()
        if self.block:
            await asyncio.Event().wait()
        if self.fail_with is not None:
            raise self.fail_with

        await progress(CrawlProgress(
            type=CrawlProgressType.PAGE_COMPLETED, current_url=ROOT, pages_scanned=1, pages_discovered=2,
        ))
        await progress(CrawlProgress(
            type=CrawlProgressType.IMAGE_FOUND, current_url=HERO, page_url=ROOT,
            pages_scanned=1, pages_discovered=2, non_webp_images_found=1,
            image_details=ImageDetails(HERO, "image/jpeg", 10_000),
        ))
        for _ in range(self.checkpoint_calls):
            frontier = Frontier()
            frontier.seed(ROOT)
            checkpoint_callback(frontier, 1, ROOT)

        hero = DetectedImage(HERO, "image/jpeg", 10_000)
        chart = DetectedImage(CHART, "image/png", 2_000)
        return CrawlResult(
            base_url=ROOT,
            success=True,
            pages_scanned=2,
            pages_discovered=2,
            non_webp_images=[hero, chart],
            detected_images=[hero, chart],
            image_to_pages={HERO: [ROOT, ROOT + "a"], CHART: [ROOT + "a"]},
        )

    async def close(self):
        self.closed = True


class _Consumer(ResultConsumer):
    def __init__(self):
        self.reports = []
        self.failures = []

    async def scan_completed(self, report):
        self.reports.append(report)

    async def scan_failed(self, job, message):
        self.failures.append((job.scan_id, message))


class _FailingCheckpointRepository(InMemoryCheckpointRepository):
    async def save(self, checkpoint):
        raise OSError("read-only file system")


class _SlowImageRepository(InMemoryDiscoveredImageRepository):
    """Holds the CHART write (made while finalizing) until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def add(self, image):
        if image.image_url == CHART:
            self.entered.set()
            await self.release.wait()
        await super().add(image)


class _Harness:
    def __init__(self, orchestrator, checkpoint_repo=None, **overrides):
        overrides.setdefault("cooldown_after_scan_seconds", 0)
        self.config = ScannerRunConfig(**overrides)
        self.jobs = InMemoryScanJobRepository()
        self.images = InMemoryDiscoveredImageRepository()
        self.checkpoint_repo = checkpoint_repo or InMemoryCheckpointRepository()
        self.checkpoints = CheckpointManager(self.checkpoint_repo)
        self.queue = FairnessQueue(self.config, self.jobs)
        self.monitor = ScanMonitor(interval_s=0)
        self.consumer = _Consumer()
        self.orchestrator = orchestrator
        self.processor = QueueProcessor(
            self.config, self.queue, self.images, self.checkpoints, orchestrator,
            progress_sink=self.monitor, result_consumers=[self.consumer],
        )

    async def running_job(self, url=ROOT):
        await self.queue.enqueue(ScanJob(target_url=url, submitter_ip="1.1.1.1"))
        return await self.queue.dequeue()


class TestExecuteScan:

    def test_completed_scan_persists_images_and_report(self):
        h = _Harness(_Orchestrator())

        async def scenario():
            job = await h.running_job()
            await h.checkpoint_repo.save(CrawlCheckpoint(scan_id=job.scan_id, sequence=1))
            job = await h.processor.execute_scan(job)
            images = await h.images.get_by_scan_ordered_by_savings(job.scan_id)
            return job, images, await h.checkpoint_repo.get(job.scan_id)

        job, images, leftover = asyncio.run(scenario())
        assert job.status == ScanStatus.COMPLETED
        assert job.pages_scanned == 2
        assert job.non_webp_images_found == 2
        assert [i.image_url for i in images] == [HERO, CHART]
        assert images[0].page_urls == [ROOT, ROOT + "a"]
        assert images[0].estimated_webp_size == 7_000
        assert images[0].savings_percent == 30.0
        assert leftover is None

        report = h.consumer.reports[0]
        assert report.summary.total_savings_bytes == 3_600
        assert report.to_dict()["images"][0]["page_urls"] == [ROOT, ROOT + "a"]
        assert h.monitor.stats_for(job.scan_id).status == "completed"

    def test_crawl_exception_fails_job(self):
        h = _Harness(_Orchestrator(fail_with=RuntimeError("browser gone")))

        async def scenario():
            return await h.processor.execute_scan(await h.running_job())

        job = asyncio.run(scenario())
        assert job.status == ScanStatus.FAILED
        assert job.error_message == "browser gone"
        assert h.consumer.failures == [(job.scan_id, "browser gone")]

    def test_checkpoint_write_failure_does_not_abort(self):
        h = _Harness(_Orchestrator(checkpoint_calls=2), checkpoint_repo=_FailingCheckpointRepository())

        async def scenario():
            job = await h.processor.execute_scan(await h.running_job())
            await asyncio.sleep(0)
            return job

        job = asyncio.run(scenario())
        assert job.status == ScanStatus.COMPLETED
        assert h.checkpoints.failed_writes == 2


class TestCancellation:

    def test_timeout_fails_with_duration_message(self):
        h = _Harness(_Orchestrator(block=True), max_scan_duration_minutes=10)

        async def scenario():
            job = await h.running_job()
            scope = ScanCancelScope(timeout_s=0.05)
            task = asyncio.create_task(h.processor.execute_scan(job, None, scope))
            scope.attach(task)
            return await task

        job = asyncio.run(scenario())
        assert job.status == ScanStatus.FAILED
        assert job.error_message == "Scan exceeded maximum duration of 10 minutes"

    def test_caller_cancel(self):
        orchestrator = _Orchestrator(block=True)
        h = _Harness(orchestrator)

        async def scenario():
            job = await h.running_job()
            task = h.processor.start_scan(job)
            await orchestrator.started.wait()
            assert h.processor.cancel_scan(job.scan_id)
            return await task

        job = asyncio.run(scenario())
        assert job.status == ScanStatus.FAILED
        assert job.error_message == "Scan was cancelled"
        assert h.processor.running_scan_ids == []

    def test_caller_cancel_while_finalizing_completes_job(self):
        h = _Harness(_Orchestrator())
        slow = _SlowImageRepository()
        h.images = h.processor.images = slow

        async def scenario():
            job = await h.running_job()
            await h.checkpoint_repo.save(CrawlCheckpoint(scan_id=job.scan_id, sequence=1))
            task = h.processor.start_scan(job)
            await slow.entered.wait()
            assert h.processor.cancel_scan(job.scan_id)
            await asyncio.sleep(0)
            slow.release.set()
            job = await task
            return job, await h.checkpoint_repo.get(job.scan_id)

        job, leftover = asyncio.run(scenario())
        assert job.status == ScanStatus.COMPLETED
        assert leftover is None
        assert len(h.consumer.reports) == 1
        assert h.consumer.failures == []

    def test_shutdown_while_finalizing_keeps_finished_crawl(self):
        h = _Harness(_Orchestrator())
        slow = _SlowImageRepository()
        h.images = h.processor.images = slow

        async def scenario():
            job = await h.running_job()
            h.processor.start_scan(job)
            await slow.entered.wait()
            stopping = asyncio.create_task(h.processor.shutdown())
            await asyncio.sleep(0)
            slow.release.set()
            await stopping
            return await h.jobs.get(job.scan_id), await slow.count_by_scan(job.scan_id)

        job, image_count = asyncio.run(scenario())
        assert job.status == ScanStatus.COMPLETED
        assert image_count == 2

    def test_first_reason_wins(self):
        scope = ScanCancelScope()
        assert not scope.cancel(CancelReason.TIMEOUT)
        scope.cancel(CancelReason.CALLER)
        assert scope.reason == CancelReason.TIMEOUT

    def test_shutdown_leaves_job_processing(self):
        orchestrator = _Orchestrator(block=True)
        h = _Harness(orchestrator)

        async def scenario():
            job = await h.running_job()
            h.processor.start_scan(job)
            await orchestrator.started.wait()
            await h.processor.shutdown()
            return await h.jobs.get(job.scan_id)

        job = asyncio.run(scenario())
        assert job.status == ScanStatus.PROCESSING
        assert job.error_message is None
        assert orchestrator.closed
        assert h.consumer.failures == []


class TestRecovery:

    def test_interrupted_without_checkpoint_fails(self):
        h = _Harness(_Orchestrator())

        async def scenario():
            job = await h.running_job()
            resumed = await h.processor.resume_interrupted()
            return job, resumed

        job, resumed = asyncio.run(scenario())
        assert resumed == []
        assert job.status == ScanStatus.FAILED
        assert job.error_message == INTERRUPTED_WITHOUT_CHECKPOINT

    def test_interrupted_with_checkpoint_resumes(self):
        orchestrator = _Orchestrator()
        h = _Harness(orchestrator)

        async def scenario():
            job = await h.running_job()
            await h.checkpoint_repo.save(CrawlCheckpoint(
                scan_id=job.scan_id,
                visited_urls_json=json.dumps([ROOT]),
                pending_urls_json=json.dumps([ROOT + "a"]),
                non_webp_images_found=1,
                sequence=4,
            ))
            await h.images.add(DiscoveredImage(job.scan_id, HERO, "image/jpeg", 10_000, page_urls=[ROOT]))
            resumed = await h.processor.resume_interrupted()
            while h.processor.running_scan_ids:
                await asyncio.sleep(0.01)
            return job, resumed

        job, resumed = asyncio.run(scenario())
        assert [j.scan_id for j in resumed] == [job.scan_id]
        assert orchestrator.seen_checkpoints[0].sequence == 4
        assert orchestrator.seen_known[0] == {HERO}
        assert job.status == ScanStatus.COMPLETED


class TestProcessOnce:

    def test_starts_up_to_concurrency_cap(self):
        orchestrator = _Orchestrator(block=True)
        h = _Harness(orchestrator, max_concurrent_scans=2)

        async def scenario():
            for i in range(3):
                await h.queue.enqueue(ScanJob(target_url=f"{ROOT}{i}", submitter_ip=f"10.0.0.{i}"))
            started = await h.processor.process_once()
            remaining = await h.jobs.get_queued_ordered()
            running = list(h.processor.running_scan_ids)
            await h.processor.shutdown()
            return started, remaining, running

        started, remaining, running = asyncio.run(scenario())
        assert len(started) == 2
        assert len(running) == 2
        assert len(remaining) == 1
        assert remaining[0].queue_position == 1

    def test_run_stops_on_event(self):
        orchestrator = _Orchestrator()
        h = _Harness(orchestrator, startup_delay_seconds=0, processing_interval_seconds=0.01)

        async def scenario():
            await h.queue.enqueue(ScanJob(target_url=ROOT, submitter_ip="1.1.1.1"))
            stop = asyncio.Event()
            runner = asyncio.create_task(h.processor.run(stop))
            for _ in range(200):
                if h.consumer.reports:
                    break
                await asyncio.sleep(0.01)
            stop.set()
            await runner

        asyncio.run(scenario())
        assert len(h.consumer.reports) == 1
        assert orchestrator.closed
