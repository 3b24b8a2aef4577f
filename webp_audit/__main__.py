#!/usr/bin/env python3
"""
WebP Audit CLI
==============
Submits one scan, runs the queue processor until it finishes, writes the
JSON report and prints a summary.

Ctrl-C stops the run the way a server shutdown does: the scan stays in
Processing and resumes from its last checkpoint on the next run with the
same ``--state-dir``.

All configuration flows through ``ScannerRunConfig``: defaults, then
``WEBP_AUDIT_*`` environment variables (``.env`` supported), then flags.

Run with: python -m webp_audit <url>
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from .checkpoint import CheckpointManager, JsonFileCheckpointRepository
from .crawl_orchestrator import CrawlOrchestrator
from .errors import QueueFullError, SubmissionRejected, ValidationError
from .models import ScanJob, ScanStatus
from .monitor import ScanMonitor
from .queue_processor import QueueProcessor
from .reporting import JsonReportWriter
from .repositories import JsonFileDiscoveredImageRepository, JsonFileScanJobRepository
from .run_config import ScannerRunConfig
from .scheduler import FairnessQueue
from .ssrf_guard import SSRFGuard
from .submission import ScanSubmitter
from .utils import URLNormalizer

logger = logging.getLogger(__name__)

CLI_SUBMITTER = "cli"

EXIT_OK = 0
EXIT_SCAN_FAILED = 1
EXIT_REJECTED = 2
EXIT_INTERRUPTED = 130


def _base_name_from_url(url: str) -> str:
    """Derive a filesystem-safe base name from a URL."""
    parsed = urlparse(url)
    base = parsed.netloc.replace('.', '_').replace(':', '_')
    if parsed.path and parsed.path != '/':
        path_part = parsed.path.strip('/').replace('/', '_')[:30]
        base = f"{base}_{path_part}"
    return base


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='webp-audit',
        description='Find non-WebP images on a website and estimate WebP savings',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m webp_audit https://example.com
  python -m webp_audit https://example.com --max-pages 50 --output-json report.json
  python -m webp_audit https://example.com --state-dir .scan   # Ctrl-C, then rerun to resume
        """
    )
    parser.add_argument('url', help='Website to scan')
    parser.add_argument('--email', type=str, help='Notification address recorded with the scan')
    parser.add_argument('--max-pages', type=int, help='Maximum pages to scan (default: 1000)')
    parser.add_argument('--timeout', type=int, help='Timeout per page in seconds (default: 30)')
    parser.add_argument('--delay-ms', type=int, help='Delay between pages in ms (default: 500)')
    parser.add_argument('--max-retries', type=int, help='Retries per failed page (default: 3)')
    parser.add_argument('--checkpoint-interval', type=int, help='Pages between checkpoints (default: 10)')
    parser.add_argument('--max-duration', type=int, help='Scan time limit in minutes, 0 = none (default: 10)')
    parser.add_argument('--max-memory', type=int, help='Memory ceiling in MB, 0 = none (default: 512)')
    parser.add_argument('--user-agent', type=str, help='Browser user agent')
    parser.add_argument('--ignore-robots', action='store_true', help='Do not honour robots.txt')
    parser.add_argument('--no-scroll', action='store_true', help='Skip lazy-load scrolling')
    parser.add_argument('--headed', action='store_true', help='Show the browser window')
    parser.add_argument('--no-sandbox', action='store_true', help='Launch Chromium without its sandbox')
    parser.add_argument(
        '--allow-domain', type=str, action='append', default=[],
        help='Extra domain whose requests may load (repeatable)',
    )
    parser.add_argument('--output-json', type=str, help='Report path (default: webp_report_<host>.json)')
    parser.add_argument('--state-dir', type=str, default='.webp_audit', help='Jobs and checkpoints directory')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


# ---------------------------------------------------------------------------
# Async run
# ---------------------------------------------------------------------------

async def _find_interrupted(jobs: JsonFileScanJobRepository, url: str) -> Optional[ScanJob]:
    url = URLNormalizer().normalize(url) or url
    for job in await jobs.get_by_status(ScanStatus.PROCESSING):
        if job.target_url == url and job.submitter_ip == CLI_SUBMITTER:
            return job
    return None


async def run_scan(url: str, cfg: ScannerRunConfig, args) -> int:
    state_dir = Path(args.state_dir)
    ssrf_guard = SSRFGuard()
    jobs = JsonFileScanJobRepository(str(state_dir))
    images = JsonFileDiscoveredImageRepository(str(state_dir))
    checkpoints = CheckpointManager(
        JsonFileCheckpointRepository(str(state_dir)),
        cfg.max_concurrent_checkpoint_writes,
    )
    queue = FairnessQueue(cfg, jobs)
    monitor = ScanMonitor(cfg.monitor_interval_s)
    output = args.output_json or f"webp_report_{_base_name_from_url(url)}.json"
    writer = JsonReportWriter(output_path=output)
    processor = QueueProcessor(
        cfg, queue, images, checkpoints,
        CrawlOrchestrator(cfg, ssrf_guard),
        progress_sink=monitor,
        result_consumers=[writer],
    )

    job = await _find_interrupted(jobs, url)
    if job is not None:
        logger.info(f"[RESUME] Found interrupted scan {job.scan_id} for {url}")
    else:
        submitter = ScanSubmitter(queue, ssrf_guard, progress_sink=monitor)
        try:
            job = await submitter.submit(url, args.email, CLI_SUBMITTER)
        except (ValidationError, QueueFullError, SubmissionRejected) as e:
            logger.error(f"Scan rejected: {e}")
            return EXIT_REJECTED

    stop_event = asyncio.Event()
    interrupted = asyncio.Event()

    def _on_sigint() -> None:
        logger.warning("Interrupt received, stopping (scan will resume on next run)")
        interrupted.set()
        stop_event.set()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except NotImplementedError:
        logger.debug("Signal handlers unavailable; Ctrl-C will abort without resume")

    await monitor.start()
    processor_task = asyncio.create_task(processor.run(stop_event))
    try:
        while not stop_event.is_set():
            current = await jobs.get(job.scan_id)
            if current is not None and current.status in (ScanStatus.COMPLETED, ScanStatus.FAILED):
                stop_event.set()
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
        await processor_task
    finally:
        await monitor.stop()

    final = await jobs.get(job.scan_id) or job
    stats = monitor.stats_for(job.scan_id)
    if stats is not None:
        print("\n" + monitor.format_summary(stats))
    if job.scan_id in writer.written:
        print(f"  Exported: {writer.written[job.scan_id]}")

    if interrupted.is_set():
        return EXIT_INTERRUPTED
    return EXIT_OK if final.status == ScanStatus.COMPLETED else EXIT_SCAN_FAILED


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv=None) -> int:
    """Parse argv, build ScannerRunConfig, run."""
    load_dotenv()

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    )

    url = args.url
    if not url.startswith(('http://', 'https://')):
        url = 'https://' + url

    cfg = ScannerRunConfig.from_cli_args(args)
    cfg.log_summary(url)
    return asyncio.run(run_scan(url, cfg, args))


if __name__ == '__main__':
    sys.exit(main())
