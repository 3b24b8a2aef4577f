"""
Page Crawl Executor
===================
Drives one browser page through a full scan step.

Per page:
  1. Re-validate the host against the SSRF guard (DNS rebinding)
  2. Fresh BrowserContext + Page, request interception installed
  3. Network image observer attached over CDP
  4. Navigate (bounded timeout, wait_until="load")
  5. Optional lazy-load scroll with pointer sweeps
  6. Network-idle wait (timeout is expected and non-fatal)
  7. Grace period for still-pending image responses
  8. Check the connected remote IP
  9. Classify auth pages, extract same-host links, collect images

Request interception and CDP byte tracking run concurrently with the
navigation await; their shared counters live in a lock-guarded
``RequestBudget``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup
from playwright.async_api import Browser, Page, Route
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .errors import NavigationError, PageSizeLimitExceeded, PageTimeout
from .image_observer import NetworkImageObserver
from .models import PageCrawlResult
from .run_config import ScannerRunConfig
from .ssrf_guard import SSRFGuard
from .utils import URLNormalizer, extract_domain, is_same_or_subdomain

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Domain lists
# ---------------------------------------------------------------------------

COMMON_CDN_DOMAINS = frozenset([
    "cloudflare.com", "cloudflareinsights.com",
    "googleapis.com", "gstatic.com",
    "jsdelivr.net", "unpkg.com",
    "cdnjs.cloudflare.com",
    "bootstrapcdn.com",
    "fontawesome.com",
    "fonts.googleapis.com", "fonts.gstatic.com",
])

TRACKING_DOMAINS = frozenset([
    "google-analytics.com", "googletagmanager.com", "doubleclick.net",
    "facebook.com", "facebook.net", "fbcdn.net",
    "twitter.com", "t.co",
    "linkedin.com", "licdn.com",
    "hotjar.com", "mouseflow.com", "fullstory.com",
    "segment.io", "segment.com", "mixpanel.com",
    "amplitude.com", "heap.io", "heapanalytics.com",
    "intercom.io", "intercomcdn.com",
    "crisp.chat", "tawk.to",
    "ads.google.com", "adservice.google.com",
    "adsserver.com", "adroll.com", "advertising.com",
])

AUTH_URL_INDICATORS = (
    "login", "signin", "sign-in", "sign_in",
    "authenticate", "auth", "sso",
    "password", "credential",
)

AUTH_STATUS_CODES = frozenset([401, 403])

# Lazy-load scrolling
_PIXELS_PER_STEP = 400
_MIN_SCROLL_STEPS = 8
_MAX_SCROLL_STEPS = 30
_SCROLL_BACK_PAUSE_S = 0.05

_DIMENSIONS_JS = """
() => ({
    scrollHeight: document.body ? document.body.scrollHeight : 0,
    viewportWidth: window.innerWidth,
    viewportHeight: window.innerHeight
})
"""

_LINKS_JS = """
() => Array.from(document.querySelectorAll('a[href]'))
    .map(a => a.href)
    .filter(h => h && h.startsWith('http'))
"""


def _host_matches(host: str, domains: Iterable[str]) -> bool:
    return any(is_same_or_subdomain(host, d) for d in domains if d)


def is_tracking_domain(url: str) -> bool:
    host = extract_domain(url)
    return bool(host) and _host_matches(host, TRACKING_DOMAINS)


def is_allowed_domain(url: str, base_host: str, allowed_external: Iterable[str] = ()) -> bool:
    """Same host, a subdomain of it, an allow-listed domain, or a common CDN."""
    host = extract_domain(url)
    if not host:
        return True
    if is_same_or_subdomain(host, base_host):
        return True
    if _host_matches(host, (d.lower() for d in allowed_external)):
        return True
    return _host_matches(host, COMMON_CDN_DOMAINS)


def is_authentication_page(url: str, html: str) -> bool:
    """Login URL wording, or a password field together with login wording."""
    url_lower = url.lower()
    if any(indicator in url_lower for indicator in AUTH_URL_INDICATORS):
        return True

    soup = BeautifulSoup(html or "", "lxml")
    if soup.find("input", attrs={"type": lambda t: t and t.lower() == "password"}) is None:
        return False
    text = (html or "").lower()
    return "login" in text or "sign in" in text or "signin" in text


def extract_same_host_links(
    hrefs: Iterable[str],
    base_host: str,
    normalizer: URLNormalizer,
) -> List[str]:
    """Normalize hrefs on exactly ``base_host``, deduplicated in order."""
    seen = set()
    links = []
    for href in hrefs:
        if extract_domain(href) != base_host:
            continue
        normalized = normalizer.normalize(href)
        if normalized and normalized not in seen:
            seen.add(normalized)
            links.append(normalized)
    return links


def scroll_step_count(scroll_height: int) -> int:
    return max(_MIN_SCROLL_STEPS, min(_MAX_SCROLL_STEPS, scroll_height // _PIXELS_PER_STEP))


def pointer_positions(width: int, height: int) -> List[tuple]:
    """Sweep: top-left quadrant, centre, right-centre, lower-centre."""
    return [
        (width // 4, height // 4),
        (width // 2, height // 2),
        (width * 3 // 4, height // 2),
        (width // 2, height * 3 // 4),
    ]


# ---------------------------------------------------------------------------
# Per-page request budget
# ---------------------------------------------------------------------------

class RequestBudget:
    """Request count and byte total for one page, shared across callbacks."""

    def __init__(self, max_requests: int, max_bytes: int, url: str = ""):
        self.max_requests = max_requests
        self.max_bytes = max_bytes
        self.url = url
        self._lock = threading.Lock()
        self._requests = 0
        self._bytes = 0
        self._exceeded = False

    def register_request(self) -> bool:
        """Count a request. False once the per-page request cap is passed."""
        with self._lock:
            self._requests += 1
            return self._requests <= self.max_requests

    def add_bytes(self, n: int) -> None:
        with self._lock:
            self._bytes += n
            newly_exceeded = self._bytes > self.max_bytes and not self._exceeded
            if newly_exceeded:
                self._exceeded = True
        if newly_exceeded:
            logger.warning(
                f"[BUDGET] Size limit exceeded for {self.url}: "
                f"{self._bytes} bytes (limit {self.max_bytes})"
            )

    @property
    def exceeded(self) -> bool:
        with self._lock:
            return self._exceeded

    @property
    def request_count(self) -> int:
        with self._lock:
            return self._requests

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._bytes


class RequestFilter:
    """Allow/abort decision for every request a page makes."""

    def __init__(self, config: ScannerRunConfig, base_host: str, budget: RequestBudget):
        self.config = config
        self.base_host = base_host
        self.budget = budget

    def block_reason(self, request_url: str) -> Optional[str]:
        if self.budget.exceeded:
            return "page size limit"
        if not self.budget.register_request():
            return "request limit"
        if self.config.restrict_to_target_domain and not is_allowed_domain(
            request_url, self.base_host, self.config.allowed_external_domains
        ):
            return "external domain"
        if self.config.block_tracking_domains and is_tracking_domain(request_url):
            return "tracking domain"
        return None

    async def handle(self, route: Route) -> None:
        request_url = route.request.url
        reason = self.block_reason(request_url)
        try:
            if reason:
                logger.debug(f"[BLOCK] {reason}: {request_url[:100]}")
                await route.abort()
            else:
                await route.continue_()
        except PlaywrightError as e:
            # The page may already be gone
            logger.debug(f"[BLOCK] Route already handled for {request_url[:80]}: {e}")


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class PageCrawlExecutor:
    """Crawls a single URL in its own browser context."""

    def __init__(
        self,
        config: ScannerRunConfig,
        ssrf_guard: SSRFGuard,
        normalizer: Optional[URLNormalizer] = None,
    ):
        self.config = config
        self.ssrf_guard = ssrf_guard
        self.normalizer = normalizer or URLNormalizer()

    async def crawl_page(self, browser: Browser, url: str, base_url: str) -> PageCrawlResult:
        """Crawl one page.

        Raises:
            SecurityValidationError: host or connected IP failed SSRF checks
            PageTimeout / NavigationError: navigation or any other browser
                call on this page failed (retryable)
            PageSizeLimitExceeded: byte budget for the page was exceeded
        """
        t_start = time.monotonic()
        result = PageCrawlResult(url=url)

        await self.ssrf_guard.validate_url_host(url)

        try:
            return await self._crawl_in_context(browser, url, extract_domain(base_url), result)
        except PlaywrightError as e:
            raise NavigationError(f"Browser error on {url}: {e}") from e
        finally:
            result.duration_s = time.monotonic() - t_start

    async def _crawl_in_context(
        self, browser: Browser, url: str, base_host: str, result: PageCrawlResult
    ) -> PageCrawlResult:
        budget = RequestBudget(
            self.config.max_requests_per_page, self.config.max_request_size_bytes, url
        )
        request_filter = RequestFilter(self.config, base_host, budget)
        observer = NetworkImageObserver(on_bytes=budget.add_bytes)

        context = await browser.new_context(
            user_agent=self.config.user_agent,
            viewport={
                "width": self.config.viewport_width,
                "height": self.config.viewport_height,
            },
        )
        try:
            page = await context.new_page()
            await page.route("**/*", request_filter.handle)
            await observer.attach(context, page)

            t_nav = time.monotonic()
            response = await self._navigate(page, url)
            nav_ms = (time.monotonic() - t_nav) * 1000

            if self.config.scroll_to_trigger_lazy_images:
                await self._scroll_for_lazy_images(page)

            await self._wait_for_network_idle(page, url)

            if observer.has_pending and self.config.pending_image_grace_period_ms > 0:
                logger.debug(f"Waiting for pending images on {url}")
                await observer.wait_for_pending(self.config.pending_image_grace_period_ms / 1000)

            if response is None:
                result.error_message = "No response received"
                return result

            server_addr = await response.server_addr()
            self.ssrf_guard.check_remote_address(
                server_addr.get("ipAddress") if server_addr else None, url
            )

            result.status_code = response.status
            html = await page.content()
            result.is_authentication_page = (
                is_authentication_page(page.url, html)
                or response.status in AUTH_STATUS_CODES
            )
            result.discovered_urls = await self._extract_links(page, base_host)

            await observer.close()
            result.detected_images = list(observer.images)

            if budget.exceeded:
                raise PageSizeLimitExceeded(url, self.config.max_request_size_bytes)

            result.success = response.ok
            if not response.ok and not result.is_authentication_page:
                result.error_message = f"HTTP {response.status}"

            logger.info(
                f"Page {url}: status={response.status} nav={nav_ms:.0f}ms "
                f"images={len(result.detected_images)} links={len(result.discovered_urls)} "
                f"requests={budget.request_count}"
            )
            return result
        finally:
            await observer.close()
            try:
                await context.close()
            except PlaywrightError as e:
                logger.debug(f"Context close failed for {url}: {e}")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _navigate(self, page: Page, url: str):
        try:
            return await page.goto(
                url,
                timeout=self.config.page_timeout_s * 1000,
                wait_until="load",
            )
        except PlaywrightTimeout as e:
            raise PageTimeout(f"Page load timeout: {url}") from e
        except PlaywrightError as e:
            raise NavigationError(f"Navigation error: {e}") from e

    async def _scroll_for_lazy_images(self, page: Page) -> None:
        """Discrete scroll steps with pointer sweeps, then bottom, then mid-page.

        Failures are non-fatal; cancellation propagates.
        """
        delay_s = self.config.scroll_step_delay_ms / 1000
        try:
            dims = await page.evaluate(_DIMENSIONS_JS)
            height = int(dims.get("scrollHeight") or 0)
            width = int(dims.get("viewportWidth") or 0)
            vh = int(dims.get("viewportHeight") or 0)
            if height <= 0:
                return

            steps = scroll_step_count(height)
            step_size = height // steps
            logger.debug(f"Scrolling page: height={height}px steps={steps} step={step_size}px")

            for i in range(1, steps + 1):
                await page.evaluate(f"() => window.scrollTo(0, {step_size * i})")
                await self._sweep_pointer(page, width, vh)
                await asyncio.sleep(delay_s)

            await page.evaluate(f"() => window.scrollTo(0, {height})")
            await self._sweep_pointer(page, width, vh)
            await asyncio.sleep(delay_s)

            await page.evaluate(f"() => window.scrollTo(0, {height // 2})")
            await asyncio.sleep(_SCROLL_BACK_PAUSE_S)
        except PlaywrightError as e:
            logger.debug(f"Error during page scroll: {e}")

    async def _sweep_pointer(self, page: Page, width: int, height: int) -> None:
        try:
            for x, y in pointer_positions(width, height):
                await page.mouse.move(x, y)
        except PlaywrightError as e:
            logger.debug(f"Pointer sweep failed: {e}")

    async def _wait_for_network_idle(self, page: Page, url: str) -> None:
        try:
            await page.wait_for_load_state(
                "networkidle", timeout=self.config.max_network_idle_wait_ms
            )
        except PlaywrightTimeout:
            logger.info(
                f"Network idle timeout after {self.config.max_network_idle_wait_ms}ms "
                f"for {url}, continuing with current state"
            )

    async def _extract_links(self, page: Page, base_host: str) -> List[str]:
        try:
            hrefs = await page.evaluate(_LINKS_JS)
        except PlaywrightError as e:
            logger.warning(f"Failed to extract links: {e}")
            return []
        return extract_same_host_links(hrefs or [], base_host, self.normalizer)
