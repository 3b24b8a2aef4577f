"""
WebP Audit Package
Crawls a website, finds images served in non-WebP raster formats and
estimates the bytes a WebP re-encode would save.

CLI Usage:
    python -m webp_audit <url> [options]

    Options:
        --max-pages       Maximum pages to scan (default: 1000)
        --timeout         Per-page timeout in seconds (default: 30)
        --delay-ms        Delay between pages in milliseconds (default: 500)
        --output-json     Report file path
        --state-dir       Directory for jobs and checkpoints (resume after Ctrl-C)
"""

from .checkpoint import CheckpointManager, JsonFileCheckpointRepository
from .crawl_orchestrator import CrawlOrchestrator
from .errors import (
    CancelReason,
    NavigationError,
    QueueFullError,
    ScannerError,
    SecurityValidationError,
    SubmissionRejected,
    ValidationError,
)
from .models import CrawlCheckpoint, CrawlResult, DiscoveredImage, ScanJob, ScanStatus
from .monitor import ProgressSink, ScanMonitor
from .page_executor import PageCrawlExecutor
from .queue_processor import QueueProcessor, ScanCancelScope
from .reporting import JsonReportWriter, ResultConsumer, ScanReport, build_report
from .robots import RobotsHandler
from .run_config import ScannerRunConfig
from .scheduler import CooldownStore, FairnessQueue
from .ssrf_guard import SSRFGuard
from .submission import ScanSubmitter
from .utils import Frontier, RetryHandler, URLNormalizer

__all__ = [
    'ScanJob',
    'ScanStatus',
    'DiscoveredImage',
    'CrawlCheckpoint',
    'CrawlResult',
    'ScannerRunConfig',
    'URLNormalizer',
    'Frontier',
    'RetryHandler',
    'RobotsHandler',
    'SSRFGuard',
    'PageCrawlExecutor',
    'CrawlOrchestrator',
    'CheckpointManager',
    'JsonFileCheckpointRepository',
    'FairnessQueue',
    'CooldownStore',
    'ScanSubmitter',
    'QueueProcessor',
    'ScanCancelScope',
    'ProgressSink',
    'ScanMonitor',
    'ResultConsumer',
    'JsonReportWriter',
    'ScanReport',
    'build_report',
    # Errors
    'ScannerError',
    'ValidationError',
    'SecurityValidationError',
    'NavigationError',
    'QueueFullError',
    'SubmissionRejected',
    'CancelReason',
]

__version__ = '1.0.0'
