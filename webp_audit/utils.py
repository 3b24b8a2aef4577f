"""
Utility Functions
URL normalization, the BFS frontier, and async retry logic.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Iterable, List, Optional, Set, Tuple, Type
from urllib.parse import urljoin, urlsplit, urlunsplit

from .errors import NavigationError

logger = logging.getLogger(__name__)


class URLNormalizer:
    """
    Canonicalizes URLs so that equal pages compare equal.

    Lowercases scheme and host, drops default ports and fragments, trims
    trailing slashes (root stays ``/``).  Path and query keep their case.
    """

    ALLOWED_SCHEMES = ('http', 'https')
    DEFAULT_PORTS = {'http': 80, 'https': 443}

    def normalize(self, url: str, base_url: str = None) -> Optional[str]:
        """
        Normalize a URL for consistent comparison.

        Args:
            url: The URL to normalize
            base_url: Optional base URL for resolving relative URLs

        Returns:
            Normalized URL string or None if invalid
        """
        if not url:
            return None

        url = url.strip()
        if not url:
            return None

        # Skip javascript:, mailto:, tel:, data: and bare fragments
        if url.lower().startswith(('javascript:', 'mailto:', 'tel:', 'data:', '#')):
            return None

        try:
            if base_url:
                url = urljoin(base_url, url)
            parsed = urlsplit(url)
            port = parsed.port
        except ValueError:
            return None

        scheme = parsed.scheme.lower()
        if scheme not in self.ALLOWED_SCHEMES:
            return None

        host = parsed.hostname
        if not host:
            return None

        # hostname is already lowercased; IPv6 literals need their brackets back
        netloc = f"[{host}]" if ':' in host else host
        if port is not None and port != self.DEFAULT_PORTS[scheme]:
            netloc = f"{netloc}:{port}"
        if parsed.username is not None:
            userinfo = parsed.username
            if parsed.password is not None:
                userinfo = f"{userinfo}:{parsed.password}"
            netloc = f"{userinfo}@{netloc}"

        path = parsed.path.rstrip('/') or '/'

        return urlunsplit((scheme, netloc, path, parsed.query, ''))

    def is_same_domain(self, url: str, base_url: str) -> bool:
        """True when both URLs share the same host."""
        return extract_domain(url) == extract_domain(base_url) != ''


class Frontier:
    """
    Breadth-first crawl frontier for one scan.

    Pending URLs are served in first-discovered order.  A URL is accepted
    at most once: the check runs against every URL ever discovered, not
    just the visited ones, so nothing is queued twice while in flight.
    """

    def __init__(self, normalizer: URLNormalizer = None):
        self.normalizer = normalizer or URLNormalizer()
        self._pending: Deque[str] = deque()
        self._visited: Set[str] = set()
        self._discovered: Set[str] = set()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def seed(self, url: str) -> bool:
        """Add the scan's start URL."""
        return self.add(url)

    @classmethod
    def restore(
        cls,
        visited: Iterable[str],
        pending: Iterable[str],
        normalizer: URLNormalizer = None,
    ) -> 'Frontier':
        """
        Rebuild a frontier from a checkpoint.

        Anything listed as both visited and pending is treated as visited.
        """
        frontier = cls(normalizer)
        for url in visited:
            frontier._visited.add(url)
            frontier._discovered.add(url)
        for url in pending:
            if url in frontier._discovered:
                continue
            frontier._discovered.add(url)
            frontier._pending.append(url)
        return frontier

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def add(self, url: str, base_url: str = None) -> bool:
        """
        Normalize and enqueue a URL.

        Returns:
            True if the URL was new and is now pending
        """
        normalized = self.normalizer.normalize(url, base_url)
        if not normalized or normalized in self._discovered:
            return False
        self._discovered.add(normalized)
        self._pending.append(normalized)
        return True

    def next_url(self) -> Optional[str]:
        """Pop the oldest pending URL, or None when empty."""
        if not self._pending:
            return None
        return self._pending.popleft()

    def mark_visited(self, url: str) -> None:
        self._visited.add(url)
        self._discovered.add(url)

    def is_visited(self, url: str) -> bool:
        return url in self._visited

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def visited_count(self) -> int:
        return len(self._visited)

    @property
    def discovered_count(self) -> int:
        return len(self._discovered)

    def snapshot(self) -> Tuple[List[str], List[str]]:
        """Return (visited, pending) as disjoint lists."""
        visited = sorted(self._visited)
        pending = [u for u in self._pending if u not in self._visited]
        return visited, pending


class RetryHandler:
    """
    Handles retry logic with exponential backoff.

    Attempt 1 runs immediately; retry N waits ``base_delay * 2**(N-1)``
    seconds.  Cancellation is always propagated, never retried.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (NavigationError,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the retry handler.

        Args:
            max_retries: Retries after the first attempt
            base_delay: Delay before the first retry, in seconds
            retry_on: Exception types that trigger a retry
            sleep: Awaitable sleep (swappable in tests)
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.retry_on = retry_on
        self._sleep = sleep
        self.retries_performed = 0

    def calculate_delay(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-indexed)."""
        return self.base_delay * (2 ** (retry - 1))

    async def execute(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        label: str = "",
        **kwargs
    ) -> Any:
        """
        Await ``func`` with retry logic.

        Returns:
            Function result

        Raises:
            The last retryable exception once attempts are exhausted, or
            any non-retryable exception immediately
        """
        last_exception = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.calculate_delay(attempt)
                self.retries_performed += 1
                logger.debug(f"[RETRY] {attempt}/{self.max_retries} for {label} after {delay:.1f}s")
                await self._sleep(delay)
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                last_exception = e
                logger.warning(f"[RETRY] Attempt {attempt + 1} failed for {label}: {e}")

        logger.error(f"[RETRY] All {self.max_retries + 1} attempts failed for {label}")
        raise last_exception


def extract_domain(url: str) -> str:
    """Extract the lowercased host from a URL."""
    try:
        return (urlsplit(url).hostname or '').lower()
    except ValueError:
        return ''


def is_same_or_subdomain(host: str, base_host: str) -> bool:
    """True for ``base_host`` itself or any subdomain of it."""
    host = host.lower()
    base_host = base_host.lower()
    return host == base_host or host.endswith('.' + base_host)
