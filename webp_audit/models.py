"""
Scan Data Model
===============
Entities shared between the queue, the crawl engine and the result
consumers.

- ``ScanJob`` moves through Queued → Processing → {Completed, Failed}
- ``DiscoveredImage`` is created on first sighting and only ever gains pages
- ``CrawlCheckpoint`` is a consistent cut of one scan's frontier
- ``CrawlProgress`` is the typed event the crawl loop hands to sinks
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanStatus(str, Enum):
    """Lifecycle status of a scan job."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ScanJob:
    """One submitted scan and its progress counters."""
    target_url: str
    submitter_ip: str = ""
    email: Optional[str] = None
    scan_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Queue state
    status: ScanStatus = ScanStatus.QUEUED
    queue_position: int = 0
    priority_score: int = 0          # lower = sooner
    submission_count: int = 1        # prior scans by this IP + 1

    # Timestamps (UTC)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Outcome
    error_message: Optional[str] = None
    pages_scanned: int = 0
    pages_discovered: int = 0
    non_webp_images_found: int = 0
    reached_page_limit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "target_url": self.target_url,
            "status": self.status.value,
            "queue_position": self.queue_position,
            "priority_score": self.priority_score,
            "submission_count": self.submission_count,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "pages_scanned": self.pages_scanned,
            "pages_discovered": self.pages_discovered,
            "non_webp_images_found": self.non_webp_images_found,
            "reached_page_limit": self.reached_page_limit,
            "submitter_ip": self.submitter_ip,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanJob":
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            target_url=data["target_url"],
            submitter_ip=data.get("submitter_ip", ""),
            email=data.get("email"),
            scan_id=data["scan_id"],
            status=ScanStatus(data.get("status", ScanStatus.QUEUED.value)),
            queue_position=data.get("queue_position", 0),
            priority_score=data.get("priority_score", 0),
            submission_count=data.get("submission_count", 1),
            created_at=_dt(data.get("created_at")) or utcnow(),
            started_at=_dt(data.get("started_at")),
            completed_at=_dt(data.get("completed_at")),
            error_message=data.get("error_message"),
            pages_scanned=data.get("pages_scanned", 0),
            pages_discovered=data.get("pages_discovered", 0),
            non_webp_images_found=data.get("non_webp_images_found", 0),
            reached_page_limit=data.get("reached_page_limit", False),
        )


@dataclass
class DetectedImage:
    """An image response observed on one page."""
    url: str
    mime_type: str
    size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class DiscoveredImage:
    """A non-WebP image found during a scan, with every page it appeared on."""
    scan_id: str
    image_url: str
    mime_type: str
    file_size: int = 0
    estimated_webp_size: int = 0
    savings_percent: float = 0.0
    page_urls: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    discovered_at: datetime = field(default_factory=utcnow)

    def add_page_url(self, page_url: str) -> bool:
        """Record another page for this image. Returns False if already known."""
        if page_url in self.page_urls:
            return False
        self.page_urls.append(page_url)
        return True

    @property
    def savings_bytes(self) -> int:
        return max(0, self.file_size - self.estimated_webp_size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scan_id": self.scan_id,
            "image_url": self.image_url,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "estimated_webp_size": self.estimated_webp_size,
            "savings_bytes": self.savings_bytes,
            "savings_percent": self.savings_percent,
            "page_urls": list(self.page_urls),
            "discovered_at": self.discovered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiscoveredImage":
        image = cls(
            scan_id=data["scan_id"],
            image_url=data["image_url"],
            mime_type=data.get("mime_type", "unknown"),
            file_size=data.get("file_size", 0),
            estimated_webp_size=data.get("estimated_webp_size", 0),
            savings_percent=data.get("savings_percent", 0.0),
            page_urls=list(data.get("page_urls", [])),
        )
        if data.get("id"):
            image.id = data["id"]
        if data.get("discovered_at"):
            image.discovered_at = datetime.fromisoformat(data["discovered_at"])
        return image


@dataclass
class CrawlCheckpoint:
    """Snapshot of one scan's frontier taken at a processed-page boundary.

    ``visited_urls_json`` and ``pending_urls_json`` are JSON arrays; the two
    sets are disjoint.  ``sequence`` increases with every snapshot of the
    same scan so an older write never replaces a newer one.
    """
    scan_id: str
    visited_urls_json: str = "[]"
    pending_urls_json: str = "[]"
    pages_visited: int = 0
    pages_discovered: int = 0
    non_webp_images_found: int = 0
    current_url: Optional[str] = None
    sequence: int = 0
    saved_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "visited_urls_json": self.visited_urls_json,
            "pending_urls_json": self.pending_urls_json,
            "pages_visited": self.pages_visited,
            "pages_discovered": self.pages_discovered,
            "non_webp_images_found": self.non_webp_images_found,
            "current_url": self.current_url,
            "sequence": self.sequence,
            "saved_at": self.saved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlCheckpoint":
        return cls(
            scan_id=data["scan_id"],
            visited_urls_json=data.get("visited_urls_json", "[]"),
            pending_urls_json=data.get("pending_urls_json", "[]"),
            pages_visited=data.get("pages_visited", 0),
            pages_discovered=data.get("pages_discovered", 0),
            non_webp_images_found=data.get("non_webp_images_found", 0),
            current_url=data.get("current_url"),
            sequence=data.get("sequence", 0),
            saved_at=datetime.fromisoformat(data["saved_at"]) if data.get("saved_at") else utcnow(),
        )


# ---------------------------------------------------------------------------
# Crawl progress events
# ---------------------------------------------------------------------------

class CrawlProgressType(str, Enum):
    PAGE_STARTED = "page_started"
    PAGE_COMPLETED = "page_completed"
    IMAGE_FOUND = "image_found"
    CRAWL_COMPLETED = "crawl_completed"
    CRAWL_FAILED = "crawl_failed"


@dataclass
class ImageDetails:
    image_url: str
    mime_type: str
    file_size: int
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class CrawlProgress:
    """A progress event emitted by the crawl loop."""
    type: CrawlProgressType
    current_url: Optional[str] = None
    page_url: Optional[str] = None
    pages_scanned: int = 0
    pages_discovered: int = 0
    non_webp_images_found: int = 0
    image_details: Optional[ImageDetails] = None
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Crawl results
# ---------------------------------------------------------------------------

@dataclass
class PageCrawlResult:
    """Outcome of crawling a single page."""
    url: str
    success: bool = False
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    is_authentication_page: bool = False
    discovered_urls: List[str] = field(default_factory=list)
    detected_images: List[DetectedImage] = field(default_factory=list)
    duration_s: float = 0.0


@dataclass
class CrawlResult:
    """Aggregate outcome of one scan's crawl."""
    base_url: str
    success: bool = True
    error_message: Optional[str] = None
    pages_scanned: int = 0
    pages_discovered: int = 0
    pages_failed: int = 0
    pages_retried: int = 0
    detected_images: List[DetectedImage] = field(default_factory=list)
    non_webp_images: List[DetectedImage] = field(default_factory=list)
    image_to_pages: Dict[str, List[str]] = field(default_factory=dict)
    reached_page_limit: bool = False
    duration_s: float = 0.0
