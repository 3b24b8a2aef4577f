"""
Scan Reports
============
Builds the final report of a scan and hands it to result consumers.

``ResultConsumer`` stands in for whatever delivers results (e-mail, PDF,
a web UI).  ``JsonReportWriter`` is the bundled consumer used by the CLI.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import DiscoveredImage, ScanJob
from .savings import SavingsSummary, image_savings, summarize

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    """Everything a consumer needs to present a finished scan."""
    job: ScanJob
    images: List[DiscoveredImage] = field(default_factory=list)
    summary: SavingsSummary = field(default_factory=SavingsSummary)

    @property
    def duration_s(self) -> Optional[float]:
        if self.job.started_at is None or self.job.completed_at is None:
            return None
        return round((self.job.completed_at - self.job.started_at).total_seconds(), 2)

    def to_dict(self) -> Dict[str, Any]:
        pages_by_image = {img.image_url: list(img.page_urls) for img in self.images}
        return {
            "scan": self.job.to_dict(),
            "duration_s": self.duration_s,
            "summary": self.summary.to_dict(),
            "images": [
                {**estimate.to_dict(), "page_urls": pages_by_image.get(estimate.url, [])}
                for estimate in image_savings(self.images)
            ],
        }


def build_report(job: ScanJob, images: List[DiscoveredImage]) -> ScanReport:
    return ScanReport(job=job, images=list(images), summary=summarize(images))


class ResultConsumer(ABC):
    """Receives the outcome of every finished scan."""

    @abstractmethod
    async def scan_completed(self, report: ScanReport) -> None: ...

    @abstractmethod
    async def scan_failed(self, job: ScanJob, message: str) -> None: ...


class JsonReportWriter(ResultConsumer):
    """Writes ``<output_dir>/webp_report_<scan_id>.json`` per scan.

    ``output_path`` pins a single file name instead (one-scan CLI runs).
    """

    def __init__(self, output_dir: str = ".", output_path: Optional[str] = None):
        self.output_dir = Path(output_dir)
        self.output_path = Path(output_path) if output_path else None
        self.written: Dict[str, str] = {}

    def path_for(self, scan_id: str) -> Path:
        if self.output_path is not None:
            return self.output_path
        return self.output_dir / f"webp_report_{scan_id}.json"

    async def scan_completed(self, report: ScanReport) -> None:
        path = self._write(report.job.scan_id, report.to_dict())
        logger.info(f"[REPORT] Wrote {len(report.images)} image(s) to {path}")

    async def scan_failed(self, job: ScanJob, message: str) -> None:
        path = self._write(job.scan_id, {"scan": job.to_dict(), "error": message})
        logger.info(f"[REPORT] Wrote failure notice to {path}")

    def _write(self, scan_id: str, data: Dict[str, Any]) -> str:
        path = self.path_for(scan_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        self.written[scan_id] = str(path.absolute())
        return self.written[scan_id]
