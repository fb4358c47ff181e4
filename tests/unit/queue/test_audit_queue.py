"""
Tests for the priority-laned durable queue.
"""

import random
from pathlib import Path
from typing import Any, Dict

import pytest

from auditpipe.config import QueueSettings
from auditpipe.core.exceptions import QueueUnavailableError
from auditpipe.core.journal import QueueJournal, encode_record
from auditpipe.core.queue import AuditQueue
from auditpipe.models import JobConfig


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


class FlakyJournal(QueueJournal):
    """Journal whose writes can be switched off."""

    def __init__(self, directory: Path) -> None:
        super().__init__(directory)
        self.fail_put = False
        self.fail_delete = False

    async def put(self, job: Dict[str, Any]) -> None:
        if self.fail_put:
            raise QueueUnavailableError("Journal append failed")
        await super().put(job)

    async def delete(self, job_id: str) -> None:
        if self.fail_delete:
            raise QueueUnavailableError("Journal append failed")
        await super().delete(job_id)


def wire_event(event_id: str, **extra: Any) -> Dict[str, Any]:
    return {"eventId": event_id, "eventType": "ENTITY_CREATED", "entityName": "cidadao", **extra}


async def open_queue(path: Path, clock: FakeClock = None, journal: QueueJournal = None, **settings: Any) -> AuditQueue:
    queue = AuditQueue(
        QueueSettings(journal_path=path, **settings),
        journal=journal,
        clock=clock or FakeClock(),
        rng=random.Random(7),
    )
    await queue.open()
    return queue


class TestOrdering:
    """Test claim order within and across lanes."""

    @pytest.mark.asyncio
    async def test_critical_lane_claimed_before_default(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("d1"), lane="default")
        await queue.add(wire_event("b1"), lane="batch")
        await queue.add(wire_event("c1"), lane="critical")
        await queue.add(wire_event("s1"), lane="sensitive")

        claimed = [queue.claim().id for _ in range(4)]

        assert claimed == ["c1", "s1", "d1", "b1"]
        assert queue.claim() is None

    @pytest.mark.asyncio
    async def test_job_priority_then_arrival_within_lane(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("first"))
        await queue.add(wire_event("second"))
        await queue.add(wire_event("urgent"), config=JobConfig(priority=50))

        assert [queue.claim().id for _ in range(3)] == ["urgent", "first", "second"]

    @pytest.mark.asyncio
    async def test_claim_restricted_to_lanes(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("c1"), lane="critical")
        await queue.add(wire_event("d1"), lane="default")

        job = queue.claim(["default"])

        assert job.id == "d1"
        assert queue.lanes["default"].active == 1
        assert queue.in_flight == 1


class TestAdd:
    """Test enqueue semantics."""

    @pytest.mark.asyncio
    async def test_add_is_idempotent_by_job_id(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)

        first = await queue.add(wire_event("e1"))
        second = await queue.add(wire_event("e1"), lane="critical")

        assert second is first
        assert queue.depth() == 1

    @pytest.mark.asyncio
    async def test_lane_defaults_applied(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)

        job = await queue.add(wire_event("e1"), lane="critical")

        assert job.priority == 10
        assert job.max_attempts == 5
        assert job.data == {"event": wire_event("e1")}

    @pytest.mark.asyncio
    async def test_delayed_job_not_claimable_early(self, tmp_path: Path) -> None:
        clock = FakeClock()
        queue = await open_queue(tmp_path, clock)

        await queue.add(wire_event("e1"), config=JobConfig(delay=1500))

        assert queue.claim() is None
        assert queue.next_ready_in() == pytest.approx(1.5)
        clock.now += 1.5
        assert queue.next_ready_in() == 0.0
        assert queue.claim().id == "e1"

    @pytest.mark.asyncio
    async def test_context_stored_next_to_event(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)

        job = await queue.add(wire_event("e1"), job_id="e1:retry:1", context={"deadLetterId": "dlq_1"})

        assert job.id == "e1:retry:1"
        assert job.data["deadLetterId"] == "dlq_1"

    @pytest.mark.asyncio
    async def test_add_requires_open_queue_and_known_lane(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)

        with pytest.raises(ValueError):
            await queue.add(wire_event("e1"), lane="unknown")
        with pytest.raises(ValueError):
            await queue.add({"eventType": "ENTITY_CREATED"})

        await queue.close()
        with pytest.raises(QueueUnavailableError):
            await queue.add(wire_event("e2"))

    @pytest.mark.asyncio
    async def test_add_bulk_defaults_to_batch_lane(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)

        jobs = await queue.add_bulk([wire_event("a"), wire_event("b")])

        assert {job.lane for job in jobs} == {"batch"}
        assert queue.depth("batch") == 2


class TestRetries:
    """Test in-place retries with backoff."""

    @pytest.mark.asyncio
    async def test_backoff_grows_exponentially_with_bounded_jitter(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        lane = queue.lane_settings("default")

        delays = [queue.backoff_delay(lane, attempt) for attempt in (1, 2, 3)]

        for attempt, delay in enumerate(delays, start=1):
            base = 2.0 * 2 ** (attempt - 1)
            assert base <= delay <= base * 1.1
        assert delays[0] < delays[1] < delays[2]

    @pytest.mark.asyncio
    async def test_fixed_backoff(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path, lanes={"batch": {"backoff_type": "fixed"}})
        lane = queue.lane_settings("batch")

        assert 10.0 <= queue.backoff_delay(lane, 3) <= 11.0

    @pytest.mark.asyncio
    async def test_failed_job_retried_until_attempts_exhausted(self, tmp_path: Path) -> None:
        clock = FakeClock()
        queue = await open_queue(tmp_path, clock)
        await queue.add(wire_event("e1"))

        outcomes = []
        while True:
            job = queue.claim()
            if job is None:
                wait = queue.next_ready_in()
                if wait is None:
                    break
                clock.now += wait
                continue
            outcomes.append(await queue.fail(job, "boom"))

        assert outcomes == [False, False, True]
        assert job is None
        assert queue.get("e1") is None
        assert queue.counts()["default"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_retry_keeps_job_identity_and_waits(self, tmp_path: Path) -> None:
        clock = FakeClock()
        queue = await open_queue(tmp_path, clock)
        await queue.add(wire_event("e1"))

        job = queue.claim()
        assert await queue.fail(job, "timeout") is False

        assert job.attempts_made == 1
        assert job.last_error == "timeout"
        assert queue.claim() is None
        assert 2.0 <= queue.next_ready_in() <= 2.2
        clock.now += 2.2
        assert queue.claim().id == "e1"

    @pytest.mark.asyncio
    async def test_non_retryable_failure_finalises_immediately(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("e1"))

        assert await queue.fail(queue.claim(), "invalid", retryable=False) is True
        assert queue.depth() == 0
        assert queue.in_flight == 0

    @pytest.mark.asyncio
    async def test_complete_records_summary(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("e1"))

        await queue.complete(queue.claim())

        counts = queue.counts()["default"]
        assert counts == {"waiting": 0, "delayed": 0, "active": 0, "completed": 1, "failed": 0}


class TestDurability:
    """Test journal replay across restarts."""

    @pytest.mark.asyncio
    async def test_waiting_jobs_survive_restart(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("done"))
        await queue.add(wire_event("pending"), lane="critical")
        await queue.complete(queue.claim(["default"]))
        await queue.close()

        reopened = await open_queue(tmp_path)

        assert reopened.depth() == 1
        assert reopened.claim().id == "pending"

    @pytest.mark.asyncio
    async def test_claimed_jobs_are_redelivered_after_restart(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("e1"))
        queue.claim()
        await queue.close()

        reopened = await open_queue(tmp_path)

        assert reopened.claim().id == "e1"

    @pytest.mark.asyncio
    async def test_retry_state_survives_restart(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("e1"))
        await queue.fail(queue.claim(), "boom")
        await queue.close()

        reopened = await open_queue(tmp_path)
        job = reopened.get("e1")

        assert job.attempts_made == 1
        assert job.last_error == "boom"

    @pytest.mark.asyncio
    async def test_sequence_continues_after_restart(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path)
        await queue.add(wire_event("old"))
        await queue.close()

        reopened = await open_queue(tmp_path)
        await reopened.add(wire_event("new"))

        assert [reopened.claim().id for _ in range(2)] == ["old", "new"]


class TestJournalFailures:
    """Test that journal write errors never strand a job."""

    @pytest.mark.asyncio
    async def test_complete_frees_lane_slot_when_delete_fails(self, tmp_path: Path) -> None:
        journal = FlakyJournal(tmp_path)
        queue = await open_queue(tmp_path, journal=journal, lanes={"default": {"concurrency": 1}})
        await queue.add(wire_event("e1"))
        await queue.add(wire_event("e2"))
        job = queue.claim()

        journal.fail_delete = True
        with pytest.raises(QueueUnavailableError):
            await queue.complete(job)

        assert queue.lanes["default"].active == 0
        assert queue.in_flight == 0
        assert queue.get("e1") is None
        assert queue.claim().id == "e2"

    @pytest.mark.asyncio
    async def test_unjournaled_completion_is_redelivered_after_restart(self, tmp_path: Path) -> None:
        journal = FlakyJournal(tmp_path)
        queue = await open_queue(tmp_path, journal=journal)
        await queue.add(wire_event("e1"))
        journal.fail_delete = True
        with pytest.raises(QueueUnavailableError):
            await queue.complete(queue.claim())
        await queue.close()

        reopened = await open_queue(tmp_path)

        assert reopened.claim().id == "e1"

    @pytest.mark.asyncio
    async def test_retry_kept_in_memory_when_put_fails(self, tmp_path: Path) -> None:
        clock = FakeClock()
        journal = FlakyJournal(tmp_path)
        queue = await open_queue(tmp_path, clock, journal=journal)
        await queue.add(wire_event("e1"))
        job = queue.claim()

        journal.fail_put = True
        assert await queue.fail(job, "timeout") is False

        assert queue.in_flight == 0
        assert queue.depth() == 1
        clock.now += 2.2
        retried = queue.claim()
        assert retried.id == "e1"
        assert retried.attempts_made == 1

        # Recovered journal finalises normally
        journal.fail_put = False
        await queue.complete(retried)
        assert queue.get("e1") is None

    @pytest.mark.asyncio
    async def test_finalised_job_leaves_queue_when_delete_fails(self, tmp_path: Path) -> None:
        journal = FlakyJournal(tmp_path)
        queue = await open_queue(tmp_path, journal=journal)
        await queue.add(wire_event("e1"))

        journal.fail_delete = True
        with pytest.raises(QueueUnavailableError):
            await queue.fail(queue.claim(), "invalid", retryable=False)

        assert queue.get("e1") is None
        assert queue.in_flight == 0
        assert queue.counts()["default"]["failed"] == 1


class TestCompaction:
    """Test that the journal stays bounded while the queue runs."""

    @pytest.mark.asyncio
    async def test_journal_size_bounded_by_threshold(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path, compact_threshold=10)
        kept = await queue.add(wire_event("keep"), lane="critical")
        record_size = len(encode_record({"op": "put", "job": kept.to_wire()}))

        sizes = []
        for i in range(200):
            await queue.add(wire_event(f"e{i:03d}"))
            await queue.complete(queue.claim(["default"]))
            sizes.append(queue.journal.size_bytes())

        assert max(sizes) <= 12 * record_size
        await queue.close()

        reopened = await open_queue(tmp_path)
        assert reopened.depth() == 1
        assert reopened.claim().id == "keep"

    @pytest.mark.asyncio
    async def test_zero_threshold_disables_compaction(self, tmp_path: Path) -> None:
        queue = await open_queue(tmp_path, compact_threshold=0)
        sizes = []
        for i in range(20):
            await queue.add(wire_event(f"e{i:03d}"))
            await queue.complete(queue.claim())
            sizes.append(queue.journal.size_bytes())

        assert sizes == sorted(sizes)
        assert sizes[-1] > sizes[0]
