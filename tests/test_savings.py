"""
Tests for savings.py: MIME handling and the per-type summary.
"""

from webp_audit.models import DiscoveredImage
from webp_audit.savings import (
    estimate_webp_size,
    image_savings,
    is_non_webp_raster,
    normalize_mime_type,
    savings_percent,
    summarize,
)


def _image(url, mime, size, ratio=0.7, pages=("https://example.com/",)):
    return DiscoveredImage(
        scan_id="s1",
        image_url=url,
        mime_type=mime,
        file_size=size,
        estimated_webp_size=estimate_webp_size(size, ratio),
        page_urls=list(pages),
    )


class TestMimeTypes:

    def test_normalize(self):
        assert normalize_mime_type("Image/JPEG; charset=binary") == "image/jpeg"
        assert normalize_mime_type("") == "unknown"
        assert normalize_mime_type("   ") == "unknown"

    def test_raster_classification(self):
        assert is_non_webp_raster("image/png")
        assert is_non_webp_raster("IMAGE/GIF")
        assert not is_non_webp_raster("image/webp")
        assert not is_non_webp_raster("image/svg+xml")
        assert not is_non_webp_raster("image/avif")


class TestEstimates:

    def test_estimate_truncates(self):
        assert estimate_webp_size(1000) == 700
        assert estimate_webp_size(999, 0.5) == 499

    def test_percent(self):
        assert savings_percent(1000, 700) == 30.0
        assert savings_percent(0, 0) == 0.0
        assert savings_percent(100, 150) == 0.0

    def test_per_image_sorted_by_savings(self):
        estimates = image_savings([
            _image("https://example.com/small.png", "image/png", 1_000),
            _image("https://example.com/big.jpg", "image/jpeg", 100_000,
                   pages=("https://example.com/", "https://example.com/a")),
        ])
        assert [e.url for e in estimates] == [
            "https://example.com/big.jpg",
            "https://example.com/small.png",
        ]
        assert estimates[0].savings_bytes == 30_000
        assert estimates[0].page_count == 2


class TestSummary:

    def test_totals_and_by_type(self):
        summary = summarize([
            _image("https://example.com/a.jpg", "image/jpeg", 10_000),
            _image("https://example.com/b.jpg", "image/jpeg; q=1", 20_000),
            _image("https://example.com/c.png", "image/png", 5_000),
        ])
        assert summary.total_images == 3
        assert summary.convertible_images == 3
        assert summary.total_original_size == 35_000
        assert summary.total_estimated_webp_size == 24_500
        assert summary.total_savings_bytes == 10_500
        assert summary.total_savings_percent == 30.0
        assert set(summary.by_type) == {"image/jpeg", "image/png"}
        assert summary.by_type["image/jpeg"].count == 2
        assert summary.by_type["image/jpeg"].total_savings_bytes == 9_000

    def test_zero_byte_images_not_convertible(self):
        summary = summarize([
            _image("https://example.com/a.gif", "image/gif", 0),
            _image("https://example.com/b.gif", "image/gif", 2_000),
        ])
        assert summary.total_images == 2
        assert summary.convertible_images == 1
        assert summary.by_type["image/gif"].count == 1

    def test_empty(self):
        summary = summarize([])
        assert summary.total_images == 0
        assert summary.total_savings_percent == 0.0
        assert summary.to_dict()["by_type"] == {}
