"""
Persistence Interfaces
======================
Storage contracts consumed by the scheduler, processor and checkpoint
manager, with in-memory implementations (guarded by ``asyncio.Lock``)
and JSON-file job and image stores for resumable CLI runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .models import CrawlCheckpoint, DiscoveredImage, ScanJob, ScanStatus

logger = logging.getLogger(__name__)


def _queue_order(job: ScanJob):
    return (job.priority_score, job.created_at)


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

class ScanJobRepository(ABC):
    """Stores scan jobs."""

    @abstractmethod
    async def add(self, job: ScanJob) -> None: ...

    @abstractmethod
    async def update(self, job: ScanJob) -> None: ...

    @abstractmethod
    async def update_many(self, jobs: Iterable[ScanJob]) -> None:
        """Apply several updates as one atomic step."""

    @abstractmethod
    async def get(self, scan_id: str) -> Optional[ScanJob]: ...

    @abstractmethod
    async def get_by_status(self, status: ScanStatus) -> List[ScanJob]: ...

    @abstractmethod
    async def get_queued_ordered(self, limit: Optional[int] = None) -> List[ScanJob]:
        """Queued jobs, best priority first."""

    @abstractmethod
    async def processing_count(self) -> int: ...

    @abstractmethod
    async def queued_count(self) -> int: ...

    @abstractmethod
    async def count_jobs_by_ip(self, ip: str) -> int:
        """Every job ever submitted from ``ip``."""

    @abstractmethod
    async def count_queued_by_ip(self, ip: str) -> int: ...

    async def get_all_queued(self) -> List[ScanJob]:
        return await self.get_queued_ordered()

    async def queue_position(self, scan_id: str) -> int:
        """1-based position among queued jobs, 0 if not queued."""
        for index, job in enumerate(await self.get_queued_ordered(), start=1):
            if job.scan_id == scan_id:
                return index
        return 0


class DiscoveredImageRepository(ABC):
    """Stores non-WebP images found by scans."""

    @abstractmethod
    async def add(self, image: DiscoveredImage) -> None: ...

    @abstractmethod
    async def get_by_scan(self, scan_id: str) -> List[DiscoveredImage]: ...

    @abstractmethod
    async def update_page_urls(self, scan_id: str, image_to_pages: Mapping[str, List[str]]) -> None:
        """Merge page lists into images already stored for the scan."""

    @abstractmethod
    async def count_by_scan(self, scan_id: str) -> int: ...

    async def get_by_scan_ordered_by_savings(self, scan_id: str) -> List[DiscoveredImage]:
        images = await self.get_by_scan(scan_id)
        return sorted(images, key=lambda img: img.savings_bytes, reverse=True)


class CheckpointRepository(ABC):
    """Stores one checkpoint per scan."""

    @abstractmethod
    async def save(self, checkpoint: CrawlCheckpoint) -> None: ...

    @abstractmethod
    async def get(self, scan_id: str) -> Optional[CrawlCheckpoint]: ...

    @abstractmethod
    async def delete(self, scan_id: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryScanJobRepository(ScanJobRepository):

    def __init__(self):
        self._jobs: Dict[str, ScanJob] = {}
        self._lock = asyncio.Lock()

    async def add(self, job: ScanJob) -> None:
        async with self._lock:
            self._jobs[job.scan_id] = job
            self._changed()

    async def update(self, job: ScanJob) -> None:
        async with self._lock:
            self._jobs[job.scan_id] = job
            self._changed()

    async def update_many(self, jobs: Iterable[ScanJob]) -> None:
        async with self._lock:
            for job in jobs:
                self._jobs[job.scan_id] = job
            self._changed()

    async def get(self, scan_id: str) -> Optional[ScanJob]:
        async with self._lock:
            return self._jobs.get(scan_id)

    async def get_by_status(self, status: ScanStatus) -> List[ScanJob]:
        async with self._lock:
            return [j for j in self._jobs.values() if j.status == status]

    async def get_queued_ordered(self, limit: Optional[int] = None) -> List[ScanJob]:
        async with self._lock:
            queued = sorted(
                (j for j in self._jobs.values() if j.status == ScanStatus.QUEUED),
                key=_queue_order,
            )
        return queued if limit is None else queued[:limit]

    async def processing_count(self) -> int:
        async with self._lock:
            return sum(1 for j in self._jobs.values() if j.status == ScanStatus.PROCESSING)

    async def queued_count(self) -> int:
        async with self._lock:
            return sum(1 for j in self._jobs.values() if j.status == ScanStatus.QUEUED)

    async def count_jobs_by_ip(self, ip: str) -> int:
        async with self._lock:
            return sum(1 for j in self._jobs.values() if j.submitter_ip == ip)

    async def count_queued_by_ip(self, ip: str) -> int:
        async with self._lock:
            return sum(
                1 for j in self._jobs.values()
                if j.submitter_ip == ip and j.status == ScanStatus.QUEUED
            )

    def _changed(self) -> None:
        """Hook called under the lock after every mutation."""


class JsonFileScanJobRepository(InMemoryScanJobRepository):
    """In-memory job store mirrored to ``<state_dir>/jobs.json``."""

    def __init__(self, state_dir: str):
        super().__init__()
        self.path = Path(state_dir) / "jobs.json"
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning(f"[STORE] Ignoring unreadable job file {self.path}: {exc}")
                data = []
            for item in data:
                job = ScanJob.from_dict(item)
                self._jobs[job.scan_id] = job

    def _changed(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps([j.to_dict() for j in self._jobs.values()], indent=2),
            encoding="utf-8",
        )
        tmp.replace(self.path)


class InMemoryDiscoveredImageRepository(DiscoveredImageRepository):

    def __init__(self):
        self._images: Dict[str, Dict[str, DiscoveredImage]] = {}
        self._lock = asyncio.Lock()

    async def add(self, image: DiscoveredImage) -> None:
        async with self._lock:
            by_url = self._images.setdefault(image.scan_id, {})
            existing = by_url.get(image.image_url)
            if existing is None:
                by_url[image.image_url] = image
            else:
                for page_url in image.page_urls:
                    existing.add_page_url(page_url)
            self._changed()

    async def get_by_scan(self, scan_id: str) -> List[DiscoveredImage]:
        async with self._lock:
            return list(self._images.get(scan_id, {}).values())

    async def update_page_urls(self, scan_id: str, image_to_pages: Mapping[str, List[str]]) -> None:
        async with self._lock:
            by_url = self._images.get(scan_id, {})
            for image_url, pages in image_to_pages.items():
                image = by_url.get(image_url)
                if image is None:
                    continue
                for page_url in pages:
                    image.add_page_url(page_url)
            self._changed()

    async def count_by_scan(self, scan_id: str) -> int:
        async with self._lock:
            return len(self._images.get(scan_id, {}))

    def _changed(self) -> None:
        """Hook called under the lock after every mutation."""


class JsonFileDiscoveredImageRepository(InMemoryDiscoveredImageRepository):
    """In-memory image store mirrored to ``<state_dir>/images.json``."""

    def __init__(self, state_dir: str):
        super().__init__()
        self.path = Path(state_dir) / "images.json"
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning(f"[STORE] Ignoring unreadable image file {self.path}: {exc}")
                data = []
            for item in data:
                image = DiscoveredImage.from_dict(item)
                self._images.setdefault(image.scan_id, {})[image.image_url] = image

    def _changed(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        records = [
            image.to_dict()
            for by_url in self._images.values()
            for image in by_url.values()
        ]
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(records, indent=2), encoding="utf-8")
        tmp.replace(self.path)


class InMemoryCheckpointRepository(CheckpointRepository):

    def __init__(self):
        self._checkpoints: Dict[str, CrawlCheckpoint] = {}
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: CrawlCheckpoint) -> None:
        async with self._lock:
            self._checkpoints[checkpoint.scan_id] = checkpoint

    async def get(self, scan_id: str) -> Optional[CrawlCheckpoint]:
        async with self._lock:
            return self._checkpoints.get(scan_id)

    async def delete(self, scan_id: str) -> None:
        async with self._lock:
            self._checkpoints.pop(scan_id, None)
