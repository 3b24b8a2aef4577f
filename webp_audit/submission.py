"""
Scan Submission
===============
Validates a scan request and places it on the fairness queue.

Checks run in this order: URL (including SSRF resolution), e-mail,
queue capacity, per-IP queued limit, per-IP cooldown.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from .errors import QueueFullError, SubmissionRejected, ValidationError
from .models import ScanJob
from .monitor import ProgressSink
from .scheduler import FairnessQueue
from .ssrf_guard import SSRFGuard
from .utils import URLNormalizer

logger = logging.getLogger(__name__)

MAX_EMAIL_LENGTH = 254

_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


def validate_email(email: str) -> str:
    """Return the trimmed address or raise ``ValidationError``."""
    email = (email or "").strip()
    if not email:
        raise ValidationError("Email is required.")
    if len(email) > MAX_EMAIL_LENGTH:
        raise ValidationError("Email address is too long.")
    if not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email format.")
    domain = email.rsplit("@", 1)[1]
    if "." not in domain or len(domain.rsplit(".", 1)[1]) < 2:
        raise ValidationError("Invalid email format.")
    return email


class ScanSubmitter:

    def __init__(
        self,
        queue: FairnessQueue,
        ssrf_guard: SSRFGuard,
        progress_sink: Optional[ProgressSink] = None,
        normalizer: Optional[URLNormalizer] = None,
    ):
        self.queue = queue
        self.ssrf_guard = ssrf_guard
        self.progress_sink = progress_sink
        self.normalizer = normalizer or URLNormalizer()

    async def submit(self, url: str, email: Optional[str] = None, submitter_ip: str = "") -> ScanJob:
        """Validate and enqueue a scan.

        Raises:
            ValidationError: bad URL or e-mail (``SecurityValidationError``
                when the host resolves into a blocked range).
            QueueFullError: the queue is at ``max_queue_size``.
            SubmissionRejected: the IP hit its queued-job limit or is cooling down.
        """
        url = (url or "").strip()
        await asyncio.to_thread(self.ssrf_guard.validate_submission_url, url)
        target = self.normalizer.normalize(url)
        if target is None:
            raise ValidationError("Invalid URL format.")
        if email:
            email = validate_email(email)

        if not await self.queue.can_enqueue():
            raise QueueFullError("The scan queue is full. Please try again later.")
        if await self.queue.has_ip_reached_queue_limit(submitter_ip):
            raise SubmissionRejected(
                f"You already have {self.queue.config.max_queued_jobs_per_ip} scans queued. "
                "Please wait for them to finish."
            )
        if self.queue.is_ip_in_cooldown(submitter_ip):
            raise SubmissionRejected("Please wait before submitting another scan.")

        previous = await self.queue.jobs.count_jobs_by_ip(submitter_ip)
        job = ScanJob(
            target_url=target,
            submitter_ip=submitter_ip,
            email=email or None,
            submission_count=previous + 1,
        )
        await self.queue.enqueue(job)

        positions = await self.queue.refresh_positions()
        if self.progress_sink is not None:
            try:
                await self.progress_sink.queue_positions_changed(positions)
            except Exception as e:
                logger.warning(f"[SUBMIT] Failed to broadcast queue positions: {e}")
        return job
