"""
Unified Run Configuration
=========================
Single source of truth for ALL scanner defaults and runtime limits.

Every subsystem (page executor, crawl orchestrator, queue scheduler,
queue processor) reads from this object.  Values come from, in order:
the defaults below, ``WEBP_AUDIT_*`` environment variables (a ``.env``
file is loaded by the CLI), then CLI flags.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

TICKS_PER_SECOND = 10_000_000          # 100 ns ticks
TICKS_PER_HOUR = TICKS_PER_SECOND * 3600

ENV_PREFIX = "WEBP_AUDIT_"


# ---------------------------------------------------------------------------
# Canonical defaults, kept in one place
# ---------------------------------------------------------------------------
_DEFAULTS = {
    # Crawler
    "max_pages_per_scan": 1000,
    "page_timeout_s": 30,
    "delay_between_pages_ms": 500,
    "max_retries": 3,
    "retry_base_delay_s": 1.0,          # doubles per retry: 1s, 2s, 4s
    "respect_robots_txt": True,
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "headless": True,
    "enable_sandbox": True,
    "viewport_width": 1920,
    "viewport_height": 1080,
    "restrict_to_target_domain": True,
    "max_request_size_bytes": 50 * 1024 * 1024,
    "max_requests_per_page": 500,
    "block_tracking_domains": True,
    "enable_checkpointing": True,
    "checkpoint_interval_pages": 10,
    "max_concurrent_checkpoint_writes": 4,
    # Lazy-load / idle heuristics
    "scroll_to_trigger_lazy_images": True,
    "scroll_step_delay_ms": 100,
    "max_network_idle_wait_ms": 5000,
    "pending_image_grace_period_ms": 500,
    # Queue
    "max_concurrent_scans": 2,
    "max_queue_size": 100,
    "max_queued_jobs_per_ip": 20,       # 0 = unlimited
    "fairness_slot_ticks": TICKS_PER_HOUR,
    "priority_aging_boost_seconds": 30,
    "aging_boost_ticks": TICKS_PER_SECOND,
    "cooldown_after_scan_seconds": 0,   # 0 = disabled
    "processing_interval_seconds": 5.0,
    "startup_delay_seconds": 2.0,
    # Security
    "max_scan_duration_minutes": 10,    # 0 = no limit
    "max_memory_per_scan_mb": 512,      # 0 = no limit
    # Estimation
    "webp_size_ratio": 0.7,
    # Monitoring
    "monitor_interval_s": 10.0,
}


@dataclass
class ScannerRunConfig:
    """
    Unified configuration consumed by every scanner subsystem.

    Populate via:
      - ``ScannerRunConfig()``                  → all defaults
      - ``ScannerRunConfig(max_pages_per_scan=50)`` → override one value
      - ``ScannerRunConfig.from_env()``         → from WEBP_AUDIT_* variables
      - ``ScannerRunConfig.from_cli_args(ns)``  → from argparse Namespace
    """

    # ---- Crawl limits ----
    max_pages_per_scan: int = _DEFAULTS["max_pages_per_scan"]
    page_timeout_s: int = _DEFAULTS["page_timeout_s"]
    delay_between_pages_ms: int = _DEFAULTS["delay_between_pages_ms"]
    max_retries: int = _DEFAULTS["max_retries"]
    retry_base_delay_s: float = _DEFAULTS["retry_base_delay_s"]
    respect_robots_txt: bool = _DEFAULTS["respect_robots_txt"]

    # ---- Browser ----
    user_agent: str = _DEFAULTS["user_agent"]
    headless: bool = _DEFAULTS["headless"]
    enable_sandbox: bool = _DEFAULTS["enable_sandbox"]
    viewport_width: int = _DEFAULTS["viewport_width"]
    viewport_height: int = _DEFAULTS["viewport_height"]

    # ---- Request interception ----
    restrict_to_target_domain: bool = _DEFAULTS["restrict_to_target_domain"]
    max_request_size_bytes: int = _DEFAULTS["max_request_size_bytes"]
    max_requests_per_page: int = _DEFAULTS["max_requests_per_page"]
    block_tracking_domains: bool = _DEFAULTS["block_tracking_domains"]
    allowed_external_domains: List[str] = field(default_factory=list)

    # ---- Checkpointing ----
    enable_checkpointing: bool = _DEFAULTS["enable_checkpointing"]
    checkpoint_interval_pages: int = _DEFAULTS["checkpoint_interval_pages"]
    max_concurrent_checkpoint_writes: int = _DEFAULTS["max_concurrent_checkpoint_writes"]

    # ---- Lazy-load / idle heuristics ----
    scroll_to_trigger_lazy_images: bool = _DEFAULTS["scroll_to_trigger_lazy_images"]
    scroll_step_delay_ms: int = _DEFAULTS["scroll_step_delay_ms"]
    max_network_idle_wait_ms: int = _DEFAULTS["max_network_idle_wait_ms"]
    pending_image_grace_period_ms: int = _DEFAULTS["pending_image_grace_period_ms"]

    # ---- Queue ----
    max_concurrent_scans: int = _DEFAULTS["max_concurrent_scans"]
    max_queue_size: int = _DEFAULTS["max_queue_size"]
    max_queued_jobs_per_ip: int = _DEFAULTS["max_queued_jobs_per_ip"]
    fairness_slot_ticks: int = _DEFAULTS["fairness_slot_ticks"]
    priority_aging_boost_seconds: int = _DEFAULTS["priority_aging_boost_seconds"]
    aging_boost_ticks: int = _DEFAULTS["aging_boost_ticks"]
    cooldown_after_scan_seconds: int = _DEFAULTS["cooldown_after_scan_seconds"]
    processing_interval_seconds: float = _DEFAULTS["processing_interval_seconds"]
    startup_delay_seconds: float = _DEFAULTS["startup_delay_seconds"]

    # ---- Security ----
    max_scan_duration_minutes: int = _DEFAULTS["max_scan_duration_minutes"]
    max_memory_per_scan_mb: int = _DEFAULTS["max_memory_per_scan_mb"]

    # ---- Estimation / monitoring ----
    webp_size_ratio: float = _DEFAULTS["webp_size_ratio"]
    monitor_interval_s: float = _DEFAULTS["monitor_interval_s"]

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ScannerRunConfig":
        """Build config from ``WEBP_AUDIT_<FIELD>`` environment variables.

        Unknown or unparseable values are logged and ignored.
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                overrides[f.name] = _coerce(raw, _DEFAULTS.get(f.name, []))
            except ValueError:
                logger.warning(f"[CONFIG] Ignoring {ENV_PREFIX}{f.name.upper()}={raw!r}: not a valid value")
        return cls(**overrides)

    @classmethod
    def from_cli_args(cls, args, base: Optional["ScannerRunConfig"] = None) -> "ScannerRunConfig":
        """Overlay argparse flags (``__main__.py``) on ``base`` (or env config)."""
        cfg = base or cls.from_env()

        mapping = {
            "max_pages": "max_pages_per_scan",
            "timeout": "page_timeout_s",
            "delay_ms": "delay_between_pages_ms",
            "max_retries": "max_retries",
            "checkpoint_interval": "checkpoint_interval_pages",
            "max_duration": "max_scan_duration_minutes",
            "max_memory": "max_memory_per_scan_mb",
            "user_agent": "user_agent",
        }
        for arg_name, field_name in mapping.items():
            value = getattr(args, arg_name, None)
            if value is not None:
                setattr(cfg, field_name, value)

        if getattr(args, "ignore_robots", False):
            cfg.respect_robots_txt = False
        if getattr(args, "no_scroll", False):
            cfg.scroll_to_trigger_lazy_images = False
        if getattr(args, "headed", False):
            cfg.headless = False
        if getattr(args, "no_sandbox", False):
            cfg.enable_sandbox = False
        extra_domains = getattr(args, "allow_domain", None) or []
        if extra_domains:
            cfg.allowed_external_domains = list(cfg.allowed_external_domains) + list(extra_domains)
        return cfg

    # -----------------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------------
    @property
    def aging_enabled(self) -> bool:
        return self.priority_aging_boost_seconds > 0

    @property
    def max_scan_duration_s(self) -> Optional[float]:
        if self.max_scan_duration_minutes <= 0:
            return None
        return self.max_scan_duration_minutes * 60.0

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self, url: str) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("SCAN RUN CONFIG")
        logger.info("=" * 60)
        logger.info(f"  URL:              {url}")
        logger.info(f"  Max Pages:        {self.max_pages_per_scan}")
        logger.info(f"  Timeout:          {self.page_timeout_s}s per page")
        logger.info(f"  Retries:          {self.max_retries} (base {self.retry_base_delay_s}s)")
        logger.info(f"  Page Delay:       {self.delay_between_pages_ms}ms")
        logger.info(f"  Robots.txt:       {'respected' if self.respect_robots_txt else 'ignored'}")
        logger.info(f"  Lazy Scroll:      {self.scroll_to_trigger_lazy_images}")
        logger.info(f"  Max Duration:     {self.max_scan_duration_minutes or 'unlimited'} min")
        logger.info(f"  Memory Ceiling:   {self.max_memory_per_scan_mb or 'unlimited'} MB")
        if self.enable_checkpointing:
            logger.info(f"  Checkpoints:      every {self.checkpoint_interval_pages} pages")
        if self.allowed_external_domains:
            logger.info(f"  Extra Domains:    {', '.join(self.allowed_external_domains)}")
        logger.info("=" * 60)


def _coerce(raw: str, default: Any) -> Any:
    """Parse an environment string into the type of ``default``."""
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(raw)
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw
