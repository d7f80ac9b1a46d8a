"""Chapter and processing Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from folio.db.models import ProcessingState


class CommitPagesRequest(BaseModel):
    """Request body for committing a draft's pages to a chapter.

    page_ids is only shape-checked here; format, duplicates and the page cap
    are enforced by the processing service so they map to E_INVALID_PAGE_LIST.
    """

    token: str
    page_ids: list[str]


class CreateChapterRequest(BaseModel):
    """Request body for creating a chapter from a draft."""

    number: float = Field(ge=0)
    title: str | None = Field(default=None, max_length=200)
    token: str
    page_ids: list[str]


class RecoverStalledRequest(BaseModel):
    """Request body for flagging interrupted processing as failed."""

    older_than_s: int = Field(default=15 * 60, ge=60)


class ChapterOut(BaseModel):
    """Response schema for a chapter and its processing fields."""

    id: int
    manga_id: int
    number: float
    title: str | None
    pages: int
    pages_prefix: str | None
    page_ids: list[str] | None
    pages_updated_at: datetime | None
    date: datetime
    processing_state: ProcessingState | None
    processing_error: str | None
    processing_updated_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ProcessingStatusOut(BaseModel):
    """One entry of the processing poll."""

    id: int
    state: Literal["idle", "processing", "failed"]
    error: str | None
    pages: int
    updated_at: datetime | None


class ProcessingAcceptedOut(BaseModel):
    """Response for an accepted commit or retry."""

    chapter_id: int
    job_id: str
    state: Literal["processing"] = "processing"
