"""Tests for the in-process job runner.

Tests cover:
- Lifecycle transitions and polling snapshots
- Failure capture and error normalization
- Per-resource exclusivity
- Registry pruning
"""

import threading

import pytest

from folio.errors import NotRetryableError
from folio.jobs import JobRegistry, JobRunner, JobState, ResourceBusyError, normalize_job_error
from folio.jobs.runner import GENERIC_JOB_ERROR


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestJobLifecycle:
    """Jobs move pending -> running -> succeeded | failed."""

    def test_successful_job(self, runner):
        job_id = runner.submit("noop", lambda: None)

        status = runner.wait(job_id, timeout=5)

        assert status.state == JobState.succeeded
        assert status.error is None
        assert status.started_at is not None
        assert status.finished_at >= status.started_at
        assert status.is_terminal

    def test_failed_job_records_error(self, runner):
        def work():
            raise ValueError("page 3 is missing")

        status = runner.wait(runner.submit("broken", work), timeout=5)

        assert status.state == JobState.failed
        assert status.error == "page 3 is missing"

    def test_running_state_visible(self, runner):
        started = threading.Event()
        release = threading.Event()

        def work():
            started.set()
            release.wait(5)

        job_id = runner.submit("slow", work)
        assert started.wait(5)

        assert runner.get(job_id).state == JobState.running
        release.set()
        assert runner.wait(job_id, timeout=5).state == JobState.succeeded

    def test_unknown_job(self, runner):
        assert runner.get("nope") is None

    def test_to_dict(self, runner):
        status = runner.wait(runner.submit("noop", lambda: None), timeout=5)

        data = status.to_dict()

        assert data["id"] == status.id
        assert data["type"] == "noop"
        assert data["state"] == "succeeded"
        assert "resource_key" not in data

    def test_job_ids_are_unique(self, runner):
        ids = {runner.submit("noop", lambda: None) for _ in range(20)}
        assert len(ids) == 20

    def test_submit_after_shutdown_fails(self):
        runner = JobRunner(max_workers=1)
        runner.shutdown()

        with pytest.raises(RuntimeError):
            runner.submit("noop", lambda: None, resource_key="chapter:1")
        assert not runner.is_busy("chapter:1")


class TestErrorNormalization:
    """Job errors shown to editors are short and vendor-free."""

    def test_plain_message_kept(self):
        assert normalize_job_error(ValueError("Draft expired")) == "Draft expired"

    def test_api_error_message_used(self):
        assert normalize_job_error(NotRetryableError("Nope")) == "Nope"

    def test_empty_message(self):
        assert normalize_job_error(RuntimeError()) == GENERIC_JOB_ERROR

    def test_long_message(self):
        assert normalize_job_error(RuntimeError("x" * 161)) == GENERIC_JOB_ERROR

    @pytest.mark.parametrize(
        "message",
        [
            "An error occurred (SignatureDoesNotMatch) when calling PutObject",
            "B2 returned 503",
            "S3 timeout",
            "aws credentials expired",
        ],
    )
    def test_vendor_details_hidden(self, message):
        assert normalize_job_error(RuntimeError(message)) == GENERIC_JOB_ERROR


class TestExclusivity:
    """At most one outstanding job per resource key."""

    def test_second_claim_refused_while_running(self, runner):
        release = threading.Event()
        job_id = runner.submit("slow", lambda: release.wait(5), resource_key="chapter:1")

        with pytest.raises(ResourceBusyError):
            runner.submit("slow", lambda: None, resource_key="chapter:1")

        release.set()
        runner.wait(job_id, timeout=5)
        assert not runner.is_busy("chapter:1")

    def test_other_keys_unaffected(self, runner):
        release = threading.Event()
        first = runner.submit("slow", lambda: release.wait(5), resource_key="chapter:1")

        second = runner.submit("noop", lambda: None, resource_key="chapter:2")

        assert runner.wait(second, timeout=5).state == JobState.succeeded
        release.set()
        runner.wait(first, timeout=5)

    def test_released_after_failure(self, runner):
        def work():
            raise RuntimeError("boom")

        runner.wait(runner.submit("broken", work, resource_key="chapter:1"), timeout=5)

        assert not runner.is_busy("chapter:1")

    def test_slot_released_when_nothing_submitted(self, runner):
        with runner.exclusive("chapter:1"):
            assert runner.is_busy("chapter:1")
        assert not runner.is_busy("chapter:1")

    def test_slot_released_on_exception(self, runner):
        with pytest.raises(ValueError):
            with runner.exclusive("chapter:1"):
                raise ValueError("transition refused")
        assert not runner.is_busy("chapter:1")

    def test_slot_held_by_job(self, runner):
        release = threading.Event()
        with runner.exclusive("chapter:1") as slot:
            job_id = slot.submit("slow", lambda: release.wait(5))

        assert runner.is_busy("chapter:1")
        release.set()
        runner.wait(job_id, timeout=5)
        assert not runner.is_busy("chapter:1")

    def test_slot_submits_once(self, runner):
        with runner.exclusive("chapter:1") as slot:
            slot.submit("noop", lambda: None)
            with pytest.raises(RuntimeError):
                slot.submit("noop", lambda: None)

    def test_concurrent_claims_admit_one(self, runner):
        release = threading.Event()
        barrier = threading.Barrier(8)
        accepted = []
        refused = []

        def claim():
            barrier.wait(5)
            try:
                accepted.append(
                    runner.submit("slow", lambda: release.wait(5), resource_key="chapter:9")
                )
            except ResourceBusyError:
                refused.append(True)

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        release.set()

        assert len(accepted) == 1
        assert len(refused) == 7
        runner.wait(accepted[0], timeout=5)


class TestRegistryPruning:
    """Terminal jobs are dropped by age and by count."""

    def _finished(self, registry: JobRegistry, clock: FakeClock, count: int) -> list[str]:
        ids = []
        for _ in range(count):
            record = registry.create("noop")
            registry.mark_running(record.id)
            registry.mark_succeeded(record.id)
            clock.now += 1
            ids.append(record.id)
        return ids

    def test_prunes_by_retention(self):
        clock = FakeClock()
        registry = JobRegistry(clock=clock)
        old = self._finished(registry, clock, 2)
        clock.now += 100
        recent = self._finished(registry, clock, 1)

        removed = registry.prune(retention_s=50, max_terminal=100)

        assert removed == 2
        assert all(registry.get(job_id) is None for job_id in old)
        assert registry.get(recent[0]) is not None

    def test_prunes_oldest_beyond_cap(self):
        clock = FakeClock()
        registry = JobRegistry(clock=clock)
        ids = self._finished(registry, clock, 5)

        registry.prune(retention_s=10_000, max_terminal=3)

        assert [registry.get(job_id) is not None for job_id in ids] == [
            False,
            False,
            True,
            True,
            True,
        ]

    def test_live_jobs_never_pruned(self):
        clock = FakeClock()
        registry = JobRegistry(clock=clock)
        registry.create("noop")
        running = registry.create("noop")
        registry.mark_running(running.id)
        clock.now += 10_000

        assert registry.prune(retention_s=1, max_terminal=0) == 0
        assert len(registry) == 2

    def test_terminal_state_is_final(self):
        registry = JobRegistry()
        record = registry.create("noop")
        registry.mark_running(record.id)
        registry.mark_failed(record.id, "boom")

        registry.mark_succeeded(record.id)
        registry.mark_running(record.id)

        status = registry.get(record.id)
        assert status.state == JobState.failed
        assert status.error == "boom"

    def test_submit_prunes(self):
        clock = FakeClock()
        runner = JobRunner(max_workers=1, retention_s=10, registry_max=100, clock=clock)
        try:
            first = runner.submit("noop", lambda: None)
            runner.wait(first, timeout=5)
            clock.now += 60

            runner.submit("noop", lambda: None)

            assert runner.get(first) is None
        finally:
            runner.shutdown()
