"""
Tests for scheduler.py: priority ticks, fairness, aging, cooldowns and the
concurrency cap.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from webp_audit.models import ScanJob, ScanStatus
from webp_audit.repositories import InMemoryScanJobRepository
from webp_audit.run_config import TICKS_PER_HOUR, TICKS_PER_SECOND, ScannerRunConfig
from webp_audit.scheduler import CooldownStore, FairnessQueue, to_ticks

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _queue(**overrides):
    cfg = ScannerRunConfig(**overrides)
    return FairnessQueue(cfg, InMemoryScanJobRepository(), clock=lambda: T0)


def _job(ip, count=1, created=T0, url="https://example.com/"):
    return ScanJob(target_url=url, submitter_ip=ip, submission_count=count, created_at=created)


class TestTicks:

    def test_epoch_is_zero(self):
        assert to_ticks(datetime(1970, 1, 1, tzinfo=timezone.utc)) == 0

    def test_one_second(self):
        assert to_ticks(datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)) == TICKS_PER_SECOND

    def test_naive_taken_as_utc(self):
        assert to_ticks(datetime(2024, 1, 1, 12)) == to_ticks(T0)


class TestPriority:

    def test_formula(self):
        q = _queue()
        assert q.compute_priority(1, T0) == TICKS_PER_HOUR + to_ticks(T0)
        assert q.compute_priority(3, T0) == 3 * TICKS_PER_HOUR + to_ticks(T0)

    def test_repeat_submitter_waits_behind_first_timer(self):
        """A second scan from one IP sorts after a later first scan from another."""
        q = _queue()

        async def scenario():
            await q.enqueue(_job("1.1.1.1", count=2, created=T0))
            await q.enqueue(_job("2.2.2.2", count=1, created=T0 + timedelta(minutes=30)))
            return await q.jobs.get_queued_ordered()

        ordered = asyncio.run(scenario())
        assert [j.submitter_ip for j in ordered] == ["2.2.2.2", "1.1.1.1"]

    def test_enqueue_sets_position(self):
        q = _queue()

        async def scenario():
            a = await q.enqueue(_job("1.1.1.1"))
            b = await q.enqueue(_job("2.2.2.2", created=T0 + timedelta(seconds=1)))
            return a, b

        a, b = asyncio.run(scenario())
        assert a.status == ScanStatus.QUEUED
        assert (a.queue_position, b.queue_position) == (1, 2)


class TestAging:

    def test_aged_priority(self):
        q = _queue(priority_aging_boost_seconds=30)
        job = _job("1.1.1.1", count=5)
        base = 5 * TICKS_PER_HOUR + to_ticks(T0)
        assert q.aged_priority(job, T0) == base
        assert q.aged_priority(job, T0 + timedelta(seconds=95)) == base - 3 * TICKS_PER_SECOND

    def test_aging_disabled(self):
        q = _queue(priority_aging_boost_seconds=0)
        job = _job("1.1.1.1", count=5)
        assert q.aged_priority(job, T0 + timedelta(hours=2)) == 5 * TICKS_PER_HOUR + to_ticks(T0)

    def test_aging_keeps_submission_slot(self):
        """Equal age, more submissions: still scheduled later."""
        q = _queue(priority_aging_boost_seconds=30)
        now = T0 + timedelta(seconds=60)
        first = q.aged_priority(_job("1.1.1.1", count=1), now)
        repeat = q.aged_priority(_job("2.2.2.2", count=5), now)
        assert repeat - first == 4 * TICKS_PER_HOUR

    def test_aging_pass_keeps_repeat_submitter_behind(self):
        q = _queue(priority_aging_boost_seconds=30)

        async def scenario():
            repeat = await q.enqueue(_job("1.1.1.1", count=5, created=T0))
            first = await q.enqueue(_job("2.2.2.2", count=1, created=T0))
            await q.recalculate_priorities_with_aging(now=T0 + timedelta(minutes=5))
            return repeat, first, await q.jobs.get_queued_ordered()

        repeat, first, ordered = asyncio.run(scenario())
        assert [j.scan_id for j in ordered] == [first.scan_id, repeat.scan_id]
        assert ordered[1].priority_score - ordered[0].priority_score == 4 * TICKS_PER_HOUR

    def test_old_repeat_job_overtakes_after_aging(self):
        q = _queue(priority_aging_boost_seconds=1)

        async def scenario():
            old = await q.enqueue(_job("1.1.1.1", count=2, created=T0))
            new = await q.enqueue(_job("2.2.2.2", count=1, created=T0 + timedelta(minutes=40)))
            assert [j.scan_id for j in await q.jobs.get_queued_ordered()] == [new.scan_id, old.scan_id]
            await q.refresh_positions()
            changed = await q.recalculate_priorities_with_aging(now=T0 + timedelta(minutes=50))
            ordered = await q.jobs.get_queued_ordered()
            return old, new, changed, ordered

        old, new, changed, ordered = asyncio.run(scenario())
        assert [j.scan_id for j in ordered] == [old.scan_id, new.scan_id]
        assert set(changed) == {old.scan_id, new.scan_id}
        assert old.queue_position == 1

    def test_empty_queue(self):
        assert asyncio.run(_queue().recalculate_priorities_with_aging()) == []


class TestDequeue:

    def test_respects_concurrency_cap(self):
        q = _queue(max_concurrent_scans=1)

        async def scenario():
            await q.enqueue(_job("1.1.1.1"))
            await q.enqueue(_job("2.2.2.2", created=T0 + timedelta(seconds=1)))
            first = await q.dequeue()
            second = await q.dequeue()
            return first, second, await q.jobs.processing_count()

        first, second, processing = asyncio.run(scenario())
        assert first.status == ScanStatus.PROCESSING
        assert first.started_at == T0
        assert first.queue_position == 0
        assert second is None
        assert processing == 1

    def test_cooling_down_ip_skipped_but_stays_queued(self):
        q = _queue(cooldown_after_scan_seconds=60)

        async def scenario():
            waiting = await q.enqueue(_job("1.1.1.1"))
            other = await q.enqueue(_job("2.2.2.2", created=T0 + timedelta(seconds=5)))
            q.record_cooldown("1.1.1.1")
            taken = await q.dequeue()
            none_left = await q.dequeue()
            return waiting, other, taken, none_left

        waiting, other, taken, none_left = asyncio.run(scenario())
        assert taken.scan_id == other.scan_id
        assert none_left is None
        assert waiting.status == ScanStatus.QUEUED

    def test_empty_queue(self):
        assert asyncio.run(_queue().dequeue()) is None


class TestAdmission:

    def test_queue_capacity(self):
        q = _queue(max_queue_size=1)

        async def scenario():
            before = await q.can_enqueue()
            await q.enqueue(_job("1.1.1.1"))
            return before, await q.can_enqueue()

        assert asyncio.run(scenario()) == (True, False)

    def test_per_ip_limit(self):
        q = _queue(max_queued_jobs_per_ip=2)

        async def scenario():
            await q.enqueue(_job("1.1.1.1"))
            one = await q.has_ip_reached_queue_limit("1.1.1.1")
            await q.enqueue(_job("1.1.1.1", count=2))
            return one, await q.has_ip_reached_queue_limit("1.1.1.1")

        assert asyncio.run(scenario()) == (False, True)

    def test_unlimited_when_zero(self):
        q = _queue(max_queued_jobs_per_ip=0)
        assert asyncio.run(q.has_ip_reached_queue_limit("1.1.1.1")) is False


class TestCompletion:

    def test_complete_records_cooldown(self):
        q = _queue(cooldown_after_scan_seconds=60)

        async def scenario():
            await q.enqueue(_job("1.1.1.1"))
            job = await q.dequeue()
            return await q.complete_job(job.scan_id, success=True)

        done = asyncio.run(scenario())
        assert done.status == ScanStatus.COMPLETED
        assert done.completed_at == T0
        assert q.is_ip_in_cooldown("1.1.1.1")

    def test_failed_job_keeps_message(self):
        q = _queue()

        async def scenario():
            await q.enqueue(_job("1.1.1.1"))
            job = await q.dequeue()
            return await q.complete_job(job.scan_id, success=False, error_message="boom")

        done = asyncio.run(scenario())
        assert done.status == ScanStatus.FAILED
        assert done.error_message == "boom"

    def test_unknown_scan(self):
        assert asyncio.run(_queue().complete_job("nope", True)) is None


class TestCooldownStore:

    def test_expires(self):
        clock = _Clock()
        store = CooldownStore(60, clock=clock)
        store.record("1.1.1.1")
        assert store.is_cooling_down("1.1.1.1")
        clock.now = 59.9
        assert store.is_cooling_down("1.1.1.1")
        clock.now = 60
        assert not store.is_cooling_down("1.1.1.1")
        assert len(store) == 0

    def test_disabled_window_and_blank_ip(self):
        store = CooldownStore(0)
        store.record("1.1.1.1")
        assert not store.is_cooling_down("1.1.1.1")
        live = CooldownStore(60)
        live.record("")
        assert len(live) == 0
        assert not live.is_cooling_down("")
