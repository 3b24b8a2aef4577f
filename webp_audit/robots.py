"""
Robots.txt Handler
Responsible for fetching, parsing, and checking robots.txt compliance.

Matching follows RFC 9309 longest-match precedence: the longest matching
Allow and Disallow patterns are compared and the longer one wins, with
ties going to Allow.  ``*`` matches any run of characters and a trailing
``$`` anchors the end of the path.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlsplit

import requests

from .errors import ScannerError

logger = logging.getLogger(__name__)

_USER_AGENT_RE = re.compile(r'^User-agent:\s*(.+)$', re.IGNORECASE)
_DISALLOW_RE = re.compile(r'^Disallow:\s*(.*)$', re.IGNORECASE)
_ALLOW_RE = re.compile(r'^Allow:\s*(.*)$', re.IGNORECASE)


@dataclass(frozen=True)
class RobotsRules:
    """Allow/Disallow patterns for the groups that apply to our user agent."""
    allowed_paths: Tuple[str, ...] = ()
    disallowed_paths: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.allowed_paths and not self.disallowed_paths


ALLOW_ALL = RobotsRules()


def parse_robots_txt(text: str, user_agent: str) -> RobotsRules:
    """
    Parse a robots.txt body into the rules relevant to ``user_agent``.

    Groups are separated by blank lines.  Consecutive ``User-agent`` lines
    in one group are OR-ed; a group applies when its agent is ``*`` or
    appears (case-insensitively) inside our user agent string.

    Args:
        text: Raw robots.txt content
        user_agent: The crawler's full User-Agent header

    Returns:
        Immutable ``RobotsRules``
    """
    allowed = []
    disallowed = []
    ua_lower = user_agent.lower()

    group_started = False
    relevant = False

    for raw_line in text.split('\n'):
        line = raw_line.strip()
        if not line:
            group_started = False
            relevant = False
            continue

        line = line.split('#', 1)[0].strip()
        if not line:
            continue

        m = _USER_AGENT_RE.match(line)
        if m:
            if not group_started:
                group_started = True
                relevant = False
            agent = m.group(1).strip()
            relevant |= agent == '*' or agent.lower() in ua_lower
            continue

        if not relevant:
            continue

        m = _DISALLOW_RE.match(line)
        if m:
            path = m.group(1).strip()
            if path:
                disallowed.append(path)
            continue

        m = _ALLOW_RE.match(line)
        if m:
            path = m.group(1).strip()
            if path:
                allowed.append(path)

    return RobotsRules(tuple(allowed), tuple(disallowed))


def match_length(path: str, pattern: str) -> int:
    """
    Length of ``pattern`` if it matches ``path``, else 0.

    The length excludes a terminal ``$``.  Matching is case-insensitive.
    """
    if not pattern:
        return 0

    anchored = pattern.endswith('$')
    body = pattern[:-1] if anchored else pattern

    if '*' in body:
        regex = '^' + re.escape(body).replace(r'\*', '.*') + ('$' if anchored else '')
        if re.match(regex, path, re.IGNORECASE):
            return len(body)
        return 0

    path_lower = path.lower()
    body_lower = body.lower()
    if anchored:
        return len(body) if path_lower == body_lower else 0
    return len(body) if path_lower.startswith(body_lower) else 0


def is_allowed(url: str, rules: RobotsRules) -> bool:
    """
    Check a URL's path and query against parsed rules.

    Returns:
        True when crawling is permitted
    """
    try:
        parsed = urlsplit(url)
    except ValueError:
        return False

    path = parsed.path or '/'
    if parsed.query:
        path = f"{path}?{parsed.query}"

    longest_allow = max((match_length(path, p) for p in rules.allowed_paths), default=0)
    longest_disallow = max((match_length(path, p) for p in rules.disallowed_paths), default=0)

    if longest_allow == 0 and longest_disallow == 0:
        return True
    return longest_allow >= longest_disallow


class RobotsHandler:
    """
    Fetches robots.txt for a scan's target site.

    Any failure (network, SSRF rejection, non-2xx status) degrades to
    allow-all.  The request goes through the SSRF guard so redirects to
    internal hosts are never followed.
    """

    def __init__(self, ssrf_guard, user_agent: str, timeout: int = 10):
        self.ssrf_guard = ssrf_guard
        self.user_agent = user_agent
        self.timeout = timeout

    def _get_robots_url(self, url: str) -> str:
        parsed = urlsplit(url)
        return f"{parsed.scheme}://{parsed.netloc}/robots.txt"

    def fetch_rules_sync(self, base_url: str) -> RobotsRules:
        robots_url = self._get_robots_url(base_url)
        try:
            logger.info(f"Fetching robots.txt from {robots_url}")
            response = self.ssrf_guard.fetch(
                robots_url,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
        except (requests.RequestException, ScannerError) as e:
            logger.warning(f"Failed to fetch robots.txt for {robots_url}: {e}")
            return ALLOW_ALL

        if not response.ok:
            logger.info(f"No robots.txt for {robots_url} (status: {response.status_code})")
            return ALLOW_ALL

        try:
            rules = parse_robots_txt(response.text, self.user_agent)
        except (ValueError, re.error) as e:
            logger.warning(f"Failed to parse robots.txt: {e}")
            return ALLOW_ALL

        logger.info(
            f"Parsed robots.txt: {len(rules.allowed_paths)} allow, "
            f"{len(rules.disallowed_paths)} disallow rules"
        )
        return rules

    async def fetch_rules(self, base_url: str) -> RobotsRules:
        """Fetch and parse robots.txt without blocking the event loop."""
        return await asyncio.to_thread(self.fetch_rules_sync, base_url)
