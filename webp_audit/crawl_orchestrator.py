"""
Crawl Orchestrator
==================
Breadth-first crawl of one scan's target site.

Per scan:
- Restore the frontier from a checkpoint, or seed it with the target URL
- Fetch robots.txt once
- Launch the shared browser lazily (one per orchestrator)
- Crawl pages one at a time through ``PageCrawlExecutor`` with retries
- Merge images (image → pages) and same-host links
- Hand a frontier snapshot to the checkpoint callback every N pages

Pages within a scan are sequential.  Several scans may share one
orchestrator and therefore one browser.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

import psutil
from playwright.async_api import Browser, async_playwright

from .checkpoint import CheckpointManager
from .errors import (
    MemoryLimitExceeded,
    NavigationError,
    PageSizeLimitExceeded,
    ValidationError,
)
from .models import (
    CrawlCheckpoint,
    CrawlProgress,
    CrawlProgressType,
    CrawlResult,
    DetectedImage,
    ImageDetails,
    PageCrawlResult,
    ScanJob,
)
from .page_executor import PageCrawlExecutor
from .robots import ALLOW_ALL, RobotsHandler, RobotsRules, is_allowed
from .run_config import ScannerRunConfig
from .savings import is_non_webp_raster
from .ssrf_guard import SSRFGuard
from .utils import Frontier, RetryHandler, URLNormalizer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[CrawlProgress], Awaitable[None]]
# (frontier, non_webp_images_found, current_url); called synchronously so
# the snapshot is taken between two pages.
CheckpointCallback = Callable[[Frontier, int, Optional[str]], Any]

_BROWSER_ARGS = [
    '--disable-gpu',
    '--disable-dev-shm-usage',
    '--disable-background-networking',
    '--disable-default-apps',
    '--disable-extensions',
    '--disable-sync',
    '--disable-translate',
    '--metrics-recording-only',
    '--no-first-run',
]


def process_memory_mb() -> float:
    """Resident set size of this process in MB."""
    return psutil.Process().memory_info().rss / 1024 / 1024


class CrawlOrchestrator:

    def __init__(
        self,
        config: ScannerRunConfig,
        ssrf_guard: SSRFGuard,
        executor: Optional[PageCrawlExecutor] = None,
        browser_launcher: Optional[Callable[[], Awaitable[Browser]]] = None,
        memory_probe: Callable[[], float] = process_memory_mb,
        robots_handler: Optional[RobotsHandler] = None,
        normalizer: Optional[URLNormalizer] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.ssrf_guard = ssrf_guard
        self.normalizer = normalizer or URLNormalizer()
        self.executor = executor or PageCrawlExecutor(config, ssrf_guard, self.normalizer)
        self.robots_handler = robots_handler or RobotsHandler(ssrf_guard, config.user_agent)
        self._browser_launcher = browser_launcher
        self._memory_probe = memory_probe
        self._sleep = sleep

        self._browser: Optional[Browser] = None
        self._playwright = None
        self._browser_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Browser management
    # ------------------------------------------------------------------

    async def _get_browser(self) -> Browser:
        async with self._browser_lock:
            if self._browser is None:
                if self._browser_launcher is not None:
                    self._browser = await self._browser_launcher()
                else:
                    self._browser = await self._launch_browser()
            return self._browser

    async def _launch_browser(self) -> Browser:
        args = list(_BROWSER_ARGS)
        if not self.config.enable_sandbox:
            args.append('--no-sandbox')
        self._playwright = await async_playwright().start()
        browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=args,
        )
        logger.info(
            f"Playwright browser initialized "
            f"(headless={self.config.headless}, sandbox={self.config.enable_sandbox})"
        )
        return browser

    async def close(self) -> None:
        """Close browser and Playwright."""
        async with self._browser_lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except Exception as e:
                    logger.debug(f"Browser close failed: {e}")
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    # ------------------------------------------------------------------
    # Crawl
    # ------------------------------------------------------------------

    async def crawl(
        self,
        job: ScanJob,
        checkpoint: Optional[CrawlCheckpoint] = None,
        progress: Optional[ProgressCallback] = None,
        checkpoint_callback: Optional[CheckpointCallback] = None,
        known_image_urls: Optional[Iterable[str]] = None,
    ) -> CrawlResult:
        """Crawl ``job.target_url`` up to ``max_pages_per_scan`` pages.

        Per-page failures are recorded and skipped.  A memory overrun ends
        the crawl with ``success=False``.  Cancellation propagates.

        ``known_image_urls`` are non-WebP images a resumed scan already
        stored; they are counted once and not reported again.
        """
        t_start = time.monotonic()
        base_url = self.normalizer.normalize(job.target_url) or job.target_url
        result = CrawlResult(base_url=base_url)

        known: Set[str] = set()
        if checkpoint is not None:
            frontier = CheckpointManager.restore_frontier(checkpoint, self.normalizer)
            base_image_count = checkpoint.non_webp_images_found
            if known_image_urls is not None:
                known.update(known_image_urls)
                base_image_count = len(known)
            logger.info(
                f"[RESUME] {job.scan_id}: {frontier.visited_count} visited, "
                f"{frontier.pending_count} pending"
            )
        else:
            frontier = Frontier(self.normalizer)
            frontier.seed(base_url)
            base_image_count = 0
        last_checkpoint_at = frontier.visited_count
        limit = self.config.max_pages_per_scan

        detected: Dict[str, DetectedImage] = {}
        retry = RetryHandler(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay_s,
            sleep=self._sleep,
        )

        async def emit(kind: CrawlProgressType, **kwargs) -> None:
            if progress is None:
                return
            event = CrawlProgress(
                type=kind,
                pages_scanned=frontier.visited_count,
                pages_discovered=frontier.discovered_count,
                non_webp_images_found=base_image_count + len(result.non_webp_images),
                **kwargs,
            )
            try:
                await progress(event)
            except Exception as e:
                logger.warning(f"[PROGRESS] Callback failed for {kind.value}: {e}")

        try:
            rules = await self._load_robots(base_url)
            browser = await self._get_browser()

            while frontier.has_pending and frontier.visited_count < limit:
                try:
                    self._check_memory()
                except MemoryLimitExceeded as e:
                    logger.error(f"[MEMORY] {job.scan_id}: {e}")
                    result.error_message = str(e)
                    break

                url = frontier.next_url()
                if url is None or frontier.is_visited(url):
                    continue
                if not is_allowed(url, rules):
                    logger.debug(f"[ROBOTS] Skipping disallowed {url}")
                    continue

                frontier.mark_visited(url)
                await emit(CrawlProgressType.PAGE_STARTED, current_url=url)

                page_result = await self._crawl_page(retry, browser, url, base_url)

                await emit(
                    CrawlProgressType.PAGE_COMPLETED,
                    current_url=url,
                    message=page_result.error_message,
                )

                if page_result.is_authentication_page:
                    logger.info(f"[AUTH] Skipping authentication page {url}")
                elif not page_result.success:
                    result.pages_failed += 1
                else:
                    for image in page_result.detected_images:
                        await self._merge_image(image, url, detected, known, result, emit)
                    for link in page_result.discovered_urls:
                        frontier.add(link)

                if (
                    self.config.enable_checkpointing
                    and checkpoint_callback is not None
                    and frontier.visited_count - last_checkpoint_at >= self.config.checkpoint_interval_pages
                ):
                    self._hand_off_checkpoint(
                        checkpoint_callback, frontier,
                        base_image_count + len(result.non_webp_images), url,
                    )
                    last_checkpoint_at = frontier.visited_count

                if (
                    frontier.has_pending
                    and frontier.visited_count < limit
                    and self.config.delay_between_pages_ms > 0
                ):
                    await self._sleep(self.config.delay_between_pages_ms / 1000)

            result.success = result.error_message is None
            await emit(CrawlProgressType.CRAWL_COMPLETED, message=result.error_message)

        except Exception as e:
            logger.error(f"[CRAWL] {job.scan_id} failed: {e}", exc_info=True)
            result.success = False
            result.error_message = f"Crawl failed: {e}"
            await emit(CrawlProgressType.CRAWL_FAILED, message=result.error_message)

        finally:
            result.pages_scanned = frontier.visited_count
            result.pages_discovered = frontier.discovered_count
            result.pages_retried = retry.retries_performed
            result.reached_page_limit = frontier.has_pending and frontier.visited_count >= limit
            result.detected_images = list(detected.values())
            result.duration_s = time.monotonic() - t_start

        logger.info(
            f"[CRAWL] {job.scan_id} done: {result.pages_scanned} pages, "
            f"{len(result.non_webp_images)} new non-WebP images, "
            f"{result.pages_failed} failed, {result.duration_s:.1f}s"
        )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _load_robots(self, base_url: str) -> RobotsRules:
        if not self.config.respect_robots_txt:
            return ALLOW_ALL
        return await self.robots_handler.fetch_rules(base_url)

    def _check_memory(self) -> None:
        limit = self.config.max_memory_per_scan_mb
        if limit <= 0:
            return
        used = self._memory_probe()
        if used > limit:
            raise MemoryLimitExceeded(used, limit)

    async def _crawl_page(
        self, retry: RetryHandler, browser: Browser, url: str, base_url: str
    ) -> PageCrawlResult:
        try:
            return await retry.execute(
                self.executor.crawl_page, browser, url, base_url, label=url
            )
        except (NavigationError, ValidationError, PageSizeLimitExceeded) as e:
            logger.warning(f"Page {url} failed: {e}")
            return PageCrawlResult(url=url, success=False, error_message=str(e))
        except Exception as e:
            logger.error(f"Page {url} failed unexpectedly: {e}", exc_info=True)
            return PageCrawlResult(url=url, success=False, error_message=f"Unexpected error: {e}")

    async def _merge_image(
        self,
        image: DetectedImage,
        page_url: str,
        detected: Dict[str, DetectedImage],
        known: Set[str],
        result: CrawlResult,
        emit: Callable[..., Awaitable[None]],
    ) -> None:
        pages = result.image_to_pages.setdefault(image.url, [])
        if page_url not in pages:
            pages.append(page_url)
        if image.url in detected:
            return
        detected[image.url] = image
        if not is_non_webp_raster(image.mime_type) or image.url in known:
            return
        result.non_webp_images.append(image)
        await emit(
            CrawlProgressType.IMAGE_FOUND,
            current_url=image.url,
            page_url=page_url,
            image_details=ImageDetails(
                image_url=image.url,
                mime_type=image.mime_type,
                file_size=image.size,
                width=image.width,
                height=image.height,
            ),
        )

    @staticmethod
    def _hand_off_checkpoint(
        callback: CheckpointCallback, frontier: Frontier, images_found: int, url: str
    ) -> None:
        try:
            callback(frontier, images_found, url)
        except Exception as e:
            logger.warning(f"[CHECKPOINT] Snapshot hand-off failed: {e}")
