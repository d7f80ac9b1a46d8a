"""Background jobs for Folio.

Jobs run in-process on a thread pool; see folio.jobs.runner.
"""

from folio.jobs.keys import chapter_resource_key, manga_resource_key
from folio.jobs.runner import (
    ExclusiveSlot,
    JobRegistry,
    JobRunner,
    JobState,
    JobStatus,
    ResourceBusyError,
    get_job_runner,
    normalize_job_error,
    set_job_runner,
)

__all__ = [
    "JobRunner",
    "JobRegistry",
    "JobState",
    "JobStatus",
    "ExclusiveSlot",
    "ResourceBusyError",
    "get_job_runner",
    "set_job_runner",
    "normalize_job_error",
    "chapter_resource_key",
    "manga_resource_key",
]
