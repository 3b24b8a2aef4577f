"""
Savings Estimator
=================
Rough byte-savings estimates for re-encoding raster images as WebP.

No image is decoded: a fixed ratio of the original size is assumed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from .models import DiscoveredImage

# Estimated WebP size as a fraction of the original
DEFAULT_WEBP_RATIO = 0.7

NON_WEBP_RASTER_MIME_TYPES = frozenset([
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/bmp",
    "image/tiff",
    "image/x-ms-bmp",
])


def normalize_mime_type(mime_type: str) -> str:
    """Drop parameters and lowercase; empty becomes ``unknown``."""
    if not mime_type or not mime_type.strip():
        return "unknown"
    return mime_type.split(";", 1)[0].strip().lower()


def is_non_webp_raster(mime_type: str) -> bool:
    return normalize_mime_type(mime_type) in NON_WEBP_RASTER_MIME_TYPES


def estimate_webp_size(size: int, ratio: float = DEFAULT_WEBP_RATIO) -> int:
    return int(size * ratio)


def savings_percent(original: int, estimated: int) -> float:
    if original <= 0:
        return 0.0
    return round(max(0, original - estimated) / original * 100, 2)


@dataclass
class ImageSavingsEstimate:
    url: str
    mime_type: str
    original_size: int
    estimated_webp_size: int
    savings_bytes: int
    savings_percent: float
    page_count: int = 0

    def to_dict(self) -> Dict:
        return {
            "url": self.url,
            "mime_type": self.mime_type,
            "original_size": self.original_size,
            "estimated_webp_size": self.estimated_webp_size,
            "savings_bytes": self.savings_bytes,
            "savings_percent": self.savings_percent,
            "page_count": self.page_count,
        }


@dataclass
class TypeSavings:
    mime_type: str
    count: int = 0
    total_original_size: int = 0
    total_estimated_webp_size: int = 0
    total_savings_bytes: int = 0
    savings_percent: float = 0.0


@dataclass
class SavingsSummary:
    total_images: int = 0
    convertible_images: int = 0
    total_original_size: int = 0
    total_estimated_webp_size: int = 0
    total_savings_bytes: int = 0
    total_savings_percent: float = 0.0
    by_type: Dict[str, TypeSavings] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "total_images": self.total_images,
            "convertible_images": self.convertible_images,
            "total_original_size": self.total_original_size,
            "total_estimated_webp_size": self.total_estimated_webp_size,
            "total_savings_bytes": self.total_savings_bytes,
            "total_savings_percent": self.total_savings_percent,
            "by_type": {
                mime: {
                    "count": t.count,
                    "total_original_size": t.total_original_size,
                    "total_estimated_webp_size": t.total_estimated_webp_size,
                    "total_savings_bytes": t.total_savings_bytes,
                    "savings_percent": t.savings_percent,
                }
                for mime, t in self.by_type.items()
            },
        }


def image_savings(images: Iterable[DiscoveredImage]) -> List[ImageSavingsEstimate]:
    """Per-image estimates, largest savings first."""
    estimates = [
        ImageSavingsEstimate(
            url=img.image_url,
            mime_type=img.mime_type,
            original_size=img.file_size,
            estimated_webp_size=img.estimated_webp_size,
            savings_bytes=img.savings_bytes,
            savings_percent=savings_percent(img.file_size, img.estimated_webp_size),
            page_count=len(img.page_urls),
        )
        for img in images
    ]
    estimates.sort(key=lambda e: e.savings_bytes, reverse=True)
    return estimates


def summarize(images: Iterable[DiscoveredImage]) -> SavingsSummary:
    """Totals across all images, grouped by MIME type. Zero-byte images are not convertible."""
    image_list = list(images)
    summary = SavingsSummary(total_images=len(image_list))

    for img in image_list:
        if img.file_size <= 0:
            continue
        summary.convertible_images += 1
        summary.total_original_size += img.file_size
        summary.total_estimated_webp_size += img.estimated_webp_size

        mime = normalize_mime_type(img.mime_type)
        by_type = summary.by_type.setdefault(mime, TypeSavings(mime_type=mime))
        by_type.count += 1
        by_type.total_original_size += img.file_size
        by_type.total_estimated_webp_size += img.estimated_webp_size

    summary.total_savings_bytes = max(0, summary.total_original_size - summary.total_estimated_webp_size)
    summary.total_savings_percent = savings_percent(
        summary.total_original_size, summary.total_estimated_webp_size
    )
    for by_type in summary.by_type.values():
        by_type.total_savings_bytes = max(0, by_type.total_original_size - by_type.total_estimated_webp_size)
        by_type.savings_percent = savings_percent(
            by_type.total_original_size, by_type.total_estimated_webp_size
        )
    return summary
