"""Chapter draft and page Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel


class DraftOut(BaseModel):
    """Response schema for a draft session."""

    token: str
    manga_id: int
    pages_prefix: str
    ttl_seconds: int
    expires_at: datetime


class EditDraftOut(DraftOut):
    """A draft seeded with a chapter's published pages, in reading order."""

    chapter_id: int
    page_ids: list[str]


class PageUploadOut(BaseModel):
    """Response schema for a stored page."""

    file_name: str
    url: str


class PageDeleteOut(BaseModel):
    """Response schema for a page delete."""

    deleted_versions: int
