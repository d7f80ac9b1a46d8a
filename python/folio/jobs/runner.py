"""In-process background job runner.

Jobs are plain callables executed on a fixed-size thread pool. Every
submitted job gets a record in a lock-protected registry that callers poll
by id:

    pending -> running -> succeeded | failed

Transitions are append-only; a terminal job never changes again. There is
no cancellation. The registry lives in memory only, so jobs do not survive a
process restart.

Per-resource exclusivity:
    Some jobs mutate one shared row (e.g. a chapter). Callers claim the
    resource before recording their state transition and submit through the
    claimed slot; a second claim while the first is held is refused with
    ResourceBusyError instead of being queued:

        with runner.exclusive(f"chapter:{chapter_id}") as slot:
            ...  # atomic state transition
            job_id = slot.submit("chapter_processing", work)

    The slot is released when the job finishes, or when the block exits
    without submitting.
"""

import re
import threading
import time
from collections.abc import Callable, Generator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from folio.config import get_settings
from folio.errors import ApiError
from folio.logging import (
    clear_job_context,
    configure_job_logging,
    get_logger,
    get_request_id,
)

logger = get_logger(__name__)

GENERIC_JOB_ERROR = "The operation failed, please try again"
MAX_JOB_ERROR_LEN = 160

# Storage vendor internals are never shown to editors
_VENDOR_ERROR_RE = re.compile(
    r"\bb2\b|backblaze|\bs3\b|aws|signaturedoesnotmatch|invalidaccesskeyid", re.IGNORECASE
)


class JobState(str, Enum):
    """Background job lifecycle states."""

    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


TERMINAL_STATES = frozenset({JobState.succeeded, JobState.failed})


@dataclass(frozen=True)
class JobStatus:
    """Read-only snapshot of a job."""

    id: str
    type: str
    state: JobState
    error: str | None
    resource_key: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "state": self.state.value,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class JobRecord:
    """Mutable registry entry. Only the registry touches it, under its lock."""

    id: str
    type: str
    resource_key: str | None
    created_at: datetime
    state: JobState = JobState.pending
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    finished_mono: float | None = None
    future: Future | None = field(default=None, repr=False)

    def snapshot(self) -> JobStatus:
        return JobStatus(
            id=self.id,
            type=self.type,
            state=self.state,
            error=self.error,
            resource_key=self.resource_key,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class ResourceBusyError(Exception):
    """A job for this resource is already outstanding."""

    def __init__(self, resource_key: str):
        super().__init__(f"Resource is busy: {resource_key}")
        self.resource_key = resource_key


def normalize_job_error(exc: BaseException) -> str:
    """Turn a job exception into a message that is safe to show to editors.

    Empty, overly long, or storage-vendor specific messages become a
    generic message.
    """
    message = exc.message if isinstance(exc, ApiError) else str(exc)
    message = (message or "").strip()
    if not message or len(message) > MAX_JOB_ERROR_LEN or _VENDOR_ERROR_RE.search(message):
        return GENERIC_JOB_ERROR
    return message


class JobRegistry:
    """Concurrency-safe map of job records keyed by id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}
        self._clock = clock

    def create(self, job_type: str, resource_key: str | None = None) -> JobRecord:
        record = JobRecord(
            id=uuid4().hex,
            type=job_type,
            resource_key=resource_key,
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self._jobs[record.id] = record
        return record

    def attach_future(self, job_id: str, future: Future) -> None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is not None:
                record.future = future

    def mark_running(self, job_id: str) -> None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record.state != JobState.pending:
                return
            record.state = JobState.running
            record.started_at = datetime.now(UTC)

    def mark_succeeded(self, job_id: str) -> None:
        self._finish(job_id, JobState.succeeded, None)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, JobState.failed, error)

    def _finish(self, job_id: str, state: JobState, error: str | None) -> None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record.state in TERMINAL_STATES:
                return
            record.state = state
            record.error = error
            record.finished_at = datetime.now(UTC)
            record.finished_mono = self._clock()

    def get(self, job_id: str) -> JobStatus | None:
        with self._lock:
            record = self._jobs.get(job_id)
            return record.snapshot() if record is not None else None

    def future(self, job_id: str) -> Future | None:
        with self._lock:
            record = self._jobs.get(job_id)
            return record.future if record is not None else None

    def prune(self, retention_s: float, max_terminal: int) -> int:
        """Drop old terminal jobs.

        Removes terminal jobs that finished more than `retention_s` ago, then
        the oldest terminal jobs beyond `max_terminal`. Pending and running
        jobs are never pruned.

        Returns:
            Number of records removed.
        """
        now = self._clock()
        with self._lock:
            terminal = [r for r in self._jobs.values() if r.state in TERMINAL_STATES]
            expired = {r.id for r in terminal if now - r.finished_mono > retention_s}
            remaining = [r for r in terminal if r.id not in expired]
            overflow = len(remaining) - max_terminal
            if overflow > 0:
                remaining.sort(key=lambda r: r.finished_mono)
                expired.update(r.id for r in remaining[:overflow])
            for job_id in expired:
                del self._jobs[job_id]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class ExclusiveSlot:
    """A claimed resource key that can submit exactly one job."""

    def __init__(self, runner: "JobRunner", resource_key: str):
        self._runner = runner
        self.resource_key = resource_key
        self.job_id: str | None = None

    @property
    def submitted(self) -> bool:
        return self.job_id is not None

    def submit(self, job_type: str, work: Callable[[], Any]) -> str:
        if self.submitted:
            raise RuntimeError(f"Slot {self.resource_key} already submitted job {self.job_id}")
        self.job_id = self._runner._submit(job_type, work, self.resource_key)
        return self.job_id


class JobRunner:
    """Fixed-size worker pool with a job registry and per-resource exclusivity."""

    def __init__(
        self,
        max_workers: int = 4,
        retention_s: float = 3600,
        registry_max: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = JobRegistry(clock=clock)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="folio-job"
        )
        self._retention_s = retention_s
        self._registry_max = registry_max
        self._held_lock = threading.Lock()
        self._held: set[str] = set()

    def submit(
        self,
        job_type: str,
        work: Callable[[], Any],
        *,
        resource_key: str | None = None,
    ) -> str:
        """Schedule `work` and return its job id without waiting.

        Raises:
            ResourceBusyError: If `resource_key` is given and already held.
        """
        if resource_key is None:
            return self._submit(job_type, work, None)
        with self.exclusive(resource_key) as slot:
            return slot.submit(job_type, work)

    @contextmanager
    def exclusive(self, resource_key: str) -> Generator[ExclusiveSlot, None, None]:
        """Claim a resource key for the duration of the block or its job.

        Raises:
            ResourceBusyError: If the key is already held.
        """
        self._acquire(resource_key)
        slot = ExclusiveSlot(self, resource_key)
        try:
            yield slot
        finally:
            if not slot.submitted:
                self._release(resource_key)

    def is_busy(self, resource_key: str) -> bool:
        with self._held_lock:
            return resource_key in self._held

    def get(self, job_id: str) -> JobStatus | None:
        return self.registry.get(job_id)

    def wait(self, job_id: str, timeout: float | None = None) -> JobStatus | None:
        """Block until a job is terminal (tests, graceful shutdown).

        Returns:
            The job's final snapshot, or the current one on timeout.
        """
        future = self.registry.future(job_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError:
                pass
        return self.registry.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; optionally wait for running ones."""
        self._executor.shutdown(wait=wait)
        logger.info("job_runner_stopped", jobs=len(self.registry))

    def _acquire(self, resource_key: str) -> None:
        with self._held_lock:
            if resource_key in self._held:
                raise ResourceBusyError(resource_key)
            self._held.add(resource_key)

    def _release(self, resource_key: str) -> None:
        with self._held_lock:
            self._held.discard(resource_key)

    def _submit(self, job_type: str, work: Callable[[], Any], resource_key: str | None) -> str:
        self.registry.prune(self._retention_s, self._registry_max)
        record = self.registry.create(job_type, resource_key)
        request_id = get_request_id()

        try:
            future = self._executor.submit(
                self._run, record.id, job_type, work, resource_key, request_id
            )
        except RuntimeError:
            # Executor shut down
            self.registry.mark_failed(record.id, GENERIC_JOB_ERROR)
            if resource_key is not None:
                self._release(resource_key)
            raise
        self.registry.attach_future(record.id, future)

        logger.info("job_submitted", job_id=record.id, job_type=job_type, resource_key=resource_key)
        return record.id

    def _run(
        self,
        job_id: str,
        job_type: str,
        work: Callable[[], Any],
        resource_key: str | None,
        request_id: str | None,
    ) -> None:
        configure_job_logging(job_id=job_id, job_type=job_type, request_id=request_id)
        started = time.monotonic()
        try:
            self.registry.mark_running(job_id)
            logger.info("job_started")
            try:
                work()
            except Exception as e:
                error = normalize_job_error(e)
                self.registry.mark_failed(job_id, error)
                logger.exception(
                    "job_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            else:
                self.registry.mark_succeeded(job_id)
                logger.info(
                    "job_succeeded",
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
        finally:
            if resource_key is not None:
                self._release(resource_key)
            clear_job_context()


# Process-wide runner, owned by the app lifespan
_runner: JobRunner | None = None
_runner_lock = threading.Lock()


def set_job_runner(runner: JobRunner | None) -> None:
    """Install (or clear) the process-wide runner."""
    global _runner
    with _runner_lock:
        _runner = runner


def get_job_runner() -> JobRunner:
    """Get the process-wide runner, creating one from settings if needed."""
    global _runner
    with _runner_lock:
        if _runner is None:
            settings = get_settings()
            _runner = JobRunner(
                max_workers=settings.job_workers,
                retention_s=settings.job_retention_s,
                registry_max=settings.job_registry_max,
            )
        return _runner
