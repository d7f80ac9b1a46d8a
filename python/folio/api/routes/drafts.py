"""Chapter draft and page routes.

Routes are transport-only:
- Call exactly one service function
- Return success(...) or raise ApiError

No domain logic or raw DB access in routes.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from folio.api.deps import get_db, get_runner, get_store
from folio.config import get_settings
from folio.jobs import JobRunner
from folio.responses import success_response
from folio.schemas.draft import DraftOut, EditDraftOut, PageDeleteOut, PageUploadOut
from folio.services import drafts as draft_service
from folio.services import pages as page_service
from folio.storage import ObjectStoreBase

router = APIRouter(prefix="/admin")


@router.post("/manga/{manga_id}/drafts", status_code=201)
def create_draft(
    manga_id: int,
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Open a new chapter draft for a manga.

    Returns:
        - token: Draft capability, used by every page call
        - pages_prefix: Storage prefix of the draft's pages
        - ttl_seconds / expires_at: Lifetime since the last touch
    """
    draft = draft_service.create_draft(db, manga_id, store, runner=runner)
    result = DraftOut.model_validate(draft_service.draft_to_dict(draft))
    return success_response(result.model_dump(mode="json"))


@router.post("/chapters/{chapter_id}/drafts", status_code=201)
def open_edit_draft(
    chapter_id: int,
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Open a draft seeded with a chapter's current pages, for editing."""
    draft = draft_service.open_edit_draft(db, chapter_id, store, runner=runner)
    result = EditDraftOut.model_validate(draft)
    return success_response(result.model_dump(mode="json"))


@router.post("/chapter-drafts/{token}/touch")
def touch_draft(
    token: str,
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Keep a draft alive. Idempotent; unknown or expired drafts report live=false."""
    draft = draft_service.touch_draft(db, token)
    if draft is None:
        return success_response({"live": False})
    result = DraftOut.model_validate(draft_service.draft_to_dict(draft))
    return success_response({"live": True, **result.model_dump(mode="json")})


@router.post("/chapter-drafts/{token}/pages", status_code=201)
def upload_page(
    token: str,
    page_id: Annotated[str, Form()],
    page: Annotated[UploadFile, File()],
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
) -> dict:
    """Upload one page image into a draft.

    The image is transcoded to WebP and stored as {pages_prefix}/{page_id}.webp.
    Reads at most one byte past the size limit so oversized uploads are
    rejected without buffering them whole.
    """
    data = page.file.read(get_settings().max_page_upload_bytes + 1)
    result = page_service.upload_page(db, token, page_id, data, store)
    return success_response(PageUploadOut.model_validate(result).model_dump(mode="json"))


@router.delete("/chapter-drafts/{token}/pages/{page_id}")
def delete_page(
    token: str,
    page_id: str,
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
) -> dict:
    """Delete every stored version of one draft page."""
    deleted = page_service.delete_page(db, token, page_id, store)
    return success_response(PageDeleteOut(deleted_versions=deleted).model_dump(mode="json"))
