"""
Checkpoint Manager
==================
Periodic snapshots of a scan's frontier so a crashed process can resume.

Writes run in a bounded pool of background tasks and never block the
crawl loop.  A failed write is logged and dropped.  Each snapshot of a
scan carries an increasing sequence number; a write that finishes after
a newer one for the same scan is discarded.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Dict, Optional, Set

from .errors import CheckpointWriteFailure
from .models import CrawlCheckpoint, utcnow
from .repositories import CheckpointRepository
from .utils import Frontier, URLNormalizer

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Builds, schedules and restores crawl checkpoints."""

    def __init__(self, repository: CheckpointRepository, max_concurrent_writes: int = 4):
        self.repository = repository
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_writes))
        self._tasks: Dict[str, Set[asyncio.Task]] = defaultdict(set)
        self._sequence: Dict[str, int] = defaultdict(int)
        self._latest_written: Dict[str, int] = {}
        self._scan_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.failed_writes = 0

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def build(
        self,
        scan_id: str,
        frontier: Frontier,
        non_webp_images_found: int = 0,
        current_url: Optional[str] = None,
    ) -> CrawlCheckpoint:
        visited, pending = frontier.snapshot()
        self._sequence[scan_id] += 1
        return CrawlCheckpoint(
            scan_id=scan_id,
            visited_urls_json=json.dumps(visited),
            pending_urls_json=json.dumps(pending),
            pages_visited=len(visited),
            pages_discovered=frontier.discovered_count,
            non_webp_images_found=non_webp_images_found,
            current_url=current_url,
            sequence=self._sequence[scan_id],
            saved_at=utcnow(),
        )

    @staticmethod
    def restore_frontier(
        checkpoint: CrawlCheckpoint,
        normalizer: Optional[URLNormalizer] = None,
    ) -> Frontier:
        visited = json.loads(checkpoint.visited_urls_json or "[]")
        pending = json.loads(checkpoint.pending_urls_json or "[]")
        return Frontier.restore(visited, pending, normalizer)

    # ------------------------------------------------------------------
    # Background writes
    # ------------------------------------------------------------------

    def schedule_save(self, checkpoint: CrawlCheckpoint) -> asyncio.Task:
        """Write ``checkpoint`` in the background. Never raises."""
        self._sequence[checkpoint.scan_id] = max(
            self._sequence[checkpoint.scan_id], checkpoint.sequence
        )
        task = asyncio.create_task(self._write(checkpoint))
        tasks = self._tasks[checkpoint.scan_id]
        tasks.add(task)
        task.add_done_callback(lambda t, sid=checkpoint.scan_id: self._on_done(sid, t))
        return task

    async def _write(self, checkpoint: CrawlCheckpoint) -> None:
        # one write per scan at a time so the sequence check and the save stay paired
        async with self._semaphore, self._scan_locks[checkpoint.scan_id]:
            latest = self._latest_written.get(checkpoint.scan_id, 0)
            if checkpoint.sequence <= latest:
                logger.debug(
                    f"[CHECKPOINT] Skipping stale snapshot {checkpoint.sequence} "
                    f"for {checkpoint.scan_id} (have {latest})"
                )
                return
            try:
                await self.repository.save(checkpoint)
            except Exception as e:
                raise CheckpointWriteFailure(
                    f"Failed to save checkpoint for scan {checkpoint.scan_id}: {e}"
                ) from e
            self._latest_written[checkpoint.scan_id] = checkpoint.sequence
            logger.debug(
                f"[CHECKPOINT] Saved #{checkpoint.sequence} for {checkpoint.scan_id} "
                f"(visited={checkpoint.pages_visited})"
            )

    def _on_done(self, scan_id: str, task: asyncio.Task) -> None:
        self._tasks[scan_id].discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed_writes += 1
            logger.warning(f"[CHECKPOINT] {exc}")

    async def drain(self, scan_id: str) -> None:
        """Wait for every in-flight write of ``scan_id``."""
        pending = list(self._tasks.get(scan_id, ()))
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self, scan_id: str) -> Optional[CrawlCheckpoint]:
        checkpoint = await self.repository.get(scan_id)
        if checkpoint is not None:
            self._sequence[scan_id] = max(self._sequence[scan_id], checkpoint.sequence)
            self._latest_written[scan_id] = max(
                self._latest_written.get(scan_id, 0), checkpoint.sequence
            )
        return checkpoint

    async def delete(self, scan_id: str) -> None:
        """Drain outstanding writes, then remove the checkpoint."""
        await self.drain(scan_id)
        await self.repository.delete(scan_id)
        self._tasks.pop(scan_id, None)
        self._sequence.pop(scan_id, None)
        self._latest_written.pop(scan_id, None)
        self._scan_locks.pop(scan_id, None)
        logger.debug(f"[CHECKPOINT] Deleted checkpoint for {scan_id}")


class JsonFileCheckpointRepository(CheckpointRepository):
    """One JSON file per scan under ``state_dir``."""

    def __init__(self, state_dir: str):
        self.state_dir = Path(state_dir)

    def _path(self, scan_id: str) -> Path:
        return self.state_dir / f"checkpoint_{scan_id}.json"

    async def save(self, checkpoint: CrawlCheckpoint) -> None:
        await asyncio.to_thread(self._save_sync, checkpoint)

    def _save_sync(self, checkpoint: CrawlCheckpoint) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(checkpoint.scan_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(checkpoint.to_dict()), encoding="utf-8")
        tmp.replace(path)

    async def get(self, scan_id: str) -> Optional[CrawlCheckpoint]:
        path = self._path(scan_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(f"[CHECKPOINT] Corrupt checkpoint file {path}: {exc}")
            return None
        return CrawlCheckpoint.from_dict(data)

    async def delete(self, scan_id: str) -> None:
        path = self._path(scan_id)
        if path.exists():
            path.unlink()
