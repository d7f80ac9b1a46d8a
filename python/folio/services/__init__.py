"""Business logic services.

This module contains service-layer functions that implement the chapter
ingestion pipeline. Services are called by route handlers and job bodies.
"""

from folio.services.drafts import (
    create_draft,
    get_draft,
    is_draft_token_valid,
    is_page_id_valid,
    open_edit_draft,
    touch_draft,
)
from folio.services.pages import delete_page, upload_page
from folio.services.processing import (
    commit_chapter_pages,
    create_chapter,
    get_processing_status,
    mark_stalled_failed,
    retry_chapter_processing,
    run_chapter_processing,
)

__all__ = [
    "create_draft",
    "get_draft",
    "touch_draft",
    "open_edit_draft",
    "is_draft_token_valid",
    "is_page_id_valid",
    "upload_page",
    "delete_page",
    "commit_chapter_pages",
    "create_chapter",
    "retry_chapter_processing",
    "run_chapter_processing",
    "get_processing_status",
    "mark_stalled_failed",
]
