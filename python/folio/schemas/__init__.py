"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from folio.schemas.chapter import (
    ChapterOut,
    CommitPagesRequest,
    CreateChapterRequest,
    ProcessingAcceptedOut,
    ProcessingStatusOut,
    RecoverStalledRequest,
)
from folio.schemas.draft import DraftOut, EditDraftOut, PageDeleteOut, PageUploadOut
from folio.schemas.job import JobAcceptedOut, JobOut

__all__ = [
    # Chapters
    "ChapterOut",
    "CommitPagesRequest",
    "CreateChapterRequest",
    "ProcessingAcceptedOut",
    "ProcessingStatusOut",
    "RecoverStalledRequest",
    # Drafts
    "DraftOut",
    "EditDraftOut",
    "PageUploadOut",
    "PageDeleteOut",
    # Jobs
    "JobOut",
    "JobAcceptedOut",
]
