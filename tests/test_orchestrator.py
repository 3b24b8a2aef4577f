"""
Tests for crawl_orchestrator.py, driven by a fake page executor so no
browser is launched.
"""

import asyncio
import json

from webp_audit.errors import NavigationError, PageTimeout
from webp_audit.models import (
    CrawlCheckpoint,
    CrawlProgressType,
    DetectedImage,
    PageCrawlResult,
    ScanJob,
)
from webp_audit.crawl_orchestrator import CrawlOrchestrator
from webp_audit.robots import RobotsRules
from webp_audit.run_config import ScannerRunConfig
from webp_audit.ssrf_guard import SSRFGuard

ROOT = "https://example.com/"


class _Executor:
    """Serves canned PageCrawlResults; ``failures`` raise before succeeding."""

    def __init__(self, pages, failures=None):
        self.pages = pages
        self.failures = dict(failures or {})
        self.calls = []

    async def crawl_page(self, browser, url, base_url):
        self.calls.append(url)
        pending = self.failures.get(url)
        if pending:
            self.failures[url] = pending[1:]
            raise pending[0]
        page = self.pages.get(url)
        if page is None:
            return PageCrawlResult(url=url, success=False, status_code=404, error_message="HTTP 404")
        return page


class _Robots:
    def __init__(self, rules):
        self.rules = rules

    async def fetch_rules(self, base_url):
        return self.rules


class _Sleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class _Browser:
    async def close(self):
        pass


def _page(url, links=(), images=()):
    return PageCrawlResult(
        url=url,
        success=True,
        status_code=200,
        discovered_urls=list(links),
        detected_images=[DetectedImage(u, m, s) for u, m, s in images],
    )


def _orchestrator(executor, memory=10.0, robots=None, sleep=None, **overrides):
    overrides.setdefault("respect_robots_txt", robots is not None)
    cfg = ScannerRunConfig(**overrides)

    async def launch():
        return _Browser()

    return CrawlOrchestrator(
        cfg,
        SSRFGuard(resolver=lambda host: ["93.184.216.34"]),
        executor=executor,
        browser_launcher=launch,
        memory_probe=lambda: memory,
        robots_handler=_Robots(robots) if robots is not None else None,
        sleep=sleep or _Sleep(),
    )


SITE = {
    ROOT: _page(ROOT, links=[ROOT + "a", ROOT + "b"], images=[
        (ROOT + "hero.jpg", "image/jpeg", 50_000),
        (ROOT + "logo.webp", "image/webp", 4_000),
    ]),
    ROOT + "a": _page(ROOT + "a", links=[ROOT, ROOT + "c"], images=[
        (ROOT + "hero.jpg", "image/jpeg", 50_000),
        (ROOT + "chart.png", "image/png", 9_000),
    ]),
    ROOT + "b": _page(ROOT + "b"),
    ROOT + "c": _page(ROOT + "c"),
}


class TestCrawl:

    def test_breadth_first_with_image_pages(self):
        executor = _Executor(SITE)
        events = []

        async def progress(event):
            events.append(event)

        orch = _orchestrator(executor)
        result = asyncio.run(orch.crawl(ScanJob(target_url=ROOT), progress=progress))

        assert result.success
        assert executor.calls == [ROOT, ROOT + "a", ROOT + "b", ROOT + "c"]
        assert result.pages_scanned == 4
        assert result.pages_discovered == 4
        assert not result.reached_page_limit
        assert [i.url for i in result.non_webp_images] == [ROOT + "hero.jpg", ROOT + "chart.png"]
        assert result.image_to_pages[ROOT + "hero.jpg"] == [ROOT, ROOT + "a"]
        assert result.image_to_pages[ROOT + "logo.webp"] == [ROOT]

        found = [e for e in events if e.type == CrawlProgressType.IMAGE_FOUND]
        assert [e.image_details.image_url for e in found] == [ROOT + "hero.jpg", ROOT + "chart.png"]
        assert found[1].page_url == ROOT + "a"
        assert events[-1].type == CrawlProgressType.CRAWL_COMPLETED
        assert events[-1].non_webp_images_found == 2

    def test_page_limit(self):
        orch = _orchestrator(_Executor(SITE), max_pages_per_scan=1)
        result = asyncio.run(orch.crawl(ScanJob(target_url=ROOT)))
        assert result.pages_scanned == 1
        assert result.reached_page_limit
        assert result.success
        assert result.pages_retried == 0

    def test_delay_between_pages(self):
        sleep = _Sleep()
        orch = _orchestrator(_Executor(SITE), sleep=sleep, delay_between_pages_ms=250)
        asyncio.run(orch.crawl(ScanJob(target_url=ROOT)))
        # no delay after the last page
        assert sleep.delays == [0.25, 0.25, 0.25]

    def test_failed_page_counted_and_skipped(self):
        site = {ROOT: _page(ROOT, links=[ROOT + "missing"])}
        result = asyncio.run(_orchestrator(_Executor(site), delay_between_pages_ms=0)
                             .crawl(ScanJob(target_url=ROOT)))
        assert result.success
        assert result.pages_failed == 1
        assert result.pages_scanned == 2

    def test_retry_then_success(self):
        sleep = _Sleep()
        executor = _Executor({ROOT: _page(ROOT)}, failures={ROOT: [PageTimeout("slow"), NavigationError("reset")]})
        orch = _orchestrator(executor, sleep=sleep, delay_between_pages_ms=0)
        result = asyncio.run(orch.crawl(ScanJob(target_url=ROOT)))
        assert result.pages_failed == 0
        assert result.pages_retried == 2
        assert sleep.delays == [1.0, 2.0]
        assert executor.calls == [ROOT, ROOT, ROOT]

    def test_retries_exhausted_fail_page_only(self):
        failures = {ROOT + "a": [NavigationError("down")] * 4}
        site = {ROOT: _page(ROOT, links=[ROOT + "a", ROOT + "b"]), ROOT + "b": _page(ROOT + "b")}
        orch = _orchestrator(_Executor(site, failures), delay_between_pages_ms=0)
        result = asyncio.run(orch.crawl(ScanJob(target_url=ROOT)))
        assert result.success
        assert result.pages_failed == 1
        assert result.pages_scanned == 3

    def test_auth_page_skipped_not_failed(self):
        login = PageCrawlResult(
            url=ROOT + "login", success=False, status_code=401, is_authentication_page=True,
            discovered_urls=[ROOT + "secret"],
        )
        site = {ROOT: _page(ROOT, links=[ROOT + "login"]), ROOT + "login": login}
        result = asyncio.run(_orchestrator(_Executor(site), delay_between_pages_ms=0)
                             .crawl(ScanJob(target_url=ROOT)))
        assert result.pages_failed == 0
        assert result.pages_scanned == 2
        assert result.pages_discovered == 2

    def test_robots_disallowed_not_crawled(self):
        executor = _Executor(SITE)
        orch = _orchestrator(executor, robots=RobotsRules(disallowed_paths=("/a",)), delay_between_pages_ms=0)
        asyncio.run(orch.crawl(ScanJob(target_url=ROOT)))
        assert ROOT + "a" not in executor.calls
        assert ROOT + "b" in executor.calls

    def test_memory_limit_ends_scan(self):
        orch = _orchestrator(_Executor(SITE), memory=900.0, max_memory_per_scan_mb=512)
        result = asyncio.run(orch.crawl(ScanJob(target_url=ROOT)))
        assert not result.success
        assert "Memory limit exceeded" in result.error_message
        assert result.pages_scanned == 0
        assert not result.reached_page_limit

    def test_unexpected_page_error_fails_page_only(self):
        class _Broken(_Executor):
            async def crawl_page(self, browser, url, base_url):
                if url == ROOT + "a":
                    self.calls.append(url)
                    raise RuntimeError("renderer crashed")
                return await super().crawl_page(browser, url, base_url)

        executor = _Broken(SITE)
        result = asyncio.run(_orchestrator(executor, delay_between_pages_ms=0)
                             .crawl(ScanJob(target_url=ROOT)))
        assert result.success
        assert result.pages_failed == 1
        assert result.pages_retried == 0
        assert executor.calls == [ROOT, ROOT + "a", ROOT + "b"]

    def test_browser_launch_failure_fails_crawl(self):
        async def launch():
            raise RuntimeError("browser crashed")

        events = []

        async def progress(event):
            events.append(event)

        orch = _orchestrator(_Executor(SITE))
        orch._browser_launcher = launch
        result = asyncio.run(orch.crawl(ScanJob(target_url=ROOT), progress=progress))
        assert not result.success
        assert result.error_message == "Crawl failed: browser crashed"
        assert events[-1].type == CrawlProgressType.CRAWL_FAILED


class TestCheckpoints:

    def test_callback_every_interval(self):
        snapshots = []

        def on_checkpoint(frontier, images_found, current_url):
            snapshots.append((frontier.visited_count, images_found, current_url))

        orch = _orchestrator(_Executor(SITE), checkpoint_interval_pages=2, delay_between_pages_ms=0)
        asyncio.run(orch.crawl(ScanJob(target_url=ROOT), checkpoint_callback=on_checkpoint))
        assert snapshots == [(2, 2, ROOT + "a"), (4, 2, ROOT + "c")]

    def test_disabled(self):
        snapshots = []
        orch = _orchestrator(_Executor(SITE), enable_checkpointing=False, checkpoint_interval_pages=1)
        asyncio.run(orch.crawl(ScanJob(target_url=ROOT), checkpoint_callback=lambda *a: snapshots.append(a)))
        assert snapshots == []

    def test_resume_skips_visited(self):
        executor = _Executor(SITE)
        checkpoint = CrawlCheckpoint(
            scan_id="s1",
            visited_urls_json=json.dumps([ROOT, ROOT + "a"]),
            pending_urls_json=json.dumps([ROOT + "b", ROOT + "c"]),
            non_webp_images_found=2,
        )
        events = []

        async def progress(event):
            events.append(event)

        orch = _orchestrator(executor, delay_between_pages_ms=0)
        result = asyncio.run(orch.crawl(ScanJob(target_url=ROOT, scan_id="s1"), checkpoint, progress))
        assert executor.calls == [ROOT + "b", ROOT + "c"]
        assert result.pages_scanned == 4
        assert events[-1].non_webp_images_found == 2

    def test_resume_does_not_recount_stored_images(self):
        checkpoint = CrawlCheckpoint(
            scan_id="s1",
            visited_urls_json=json.dumps([ROOT]),
            pending_urls_json=json.dumps([ROOT + "a"]),
            non_webp_images_found=1,
        )
        events = []

        async def progress(event):
            events.append(event)

        orch = _orchestrator(_Executor(SITE), delay_between_pages_ms=0)
        result = asyncio.run(orch.crawl(
            ScanJob(target_url=ROOT, scan_id="s1"), checkpoint, progress,
            known_image_urls=[ROOT + "hero.jpg"],
        ))
        found = [e.image_details.image_url for e in events if e.type == CrawlProgressType.IMAGE_FOUND]
        assert found == [ROOT + "chart.png"]
        assert [i.url for i in result.non_webp_images] == [ROOT + "chart.png"]
        assert result.image_to_pages[ROOT + "hero.jpg"] == [ROOT + "a"]
        assert events[-1].non_webp_images_found == 2
