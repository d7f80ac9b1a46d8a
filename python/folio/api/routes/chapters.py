"""Chapter processing and deletion routes.

Routes are transport-only:
- Call exactly one service function
- Return success(...) or raise ApiError

Commit, create and retry return as soon as the job is scheduled; clients
poll /admin/chapters/processing/status until the chapter leaves "processing".
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from folio.api.deps import get_db, get_runner, get_store
from folio.errors import ApiErrorCode, InvalidRequestError
from folio.jobs import JobRunner
from folio.responses import success_response
from folio.schemas.chapter import CommitPagesRequest, CreateChapterRequest, RecoverStalledRequest
from folio.schemas.job import JobAcceptedOut
from folio.services import processing as processing_service
from folio.services import reconcile as reconcile_service
from folio.storage import ObjectStoreBase

router = APIRouter(prefix="/admin")


def _parse_ids(ids: str) -> list[int]:
    try:
        return [int(part) for part in ids.split(",") if part.strip()]
    except ValueError:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST, "ids must be a comma-separated list of integers"
        ) from None


@router.get("/chapters/processing/status")
def get_processing_status(
    db: Annotated[Session, Depends(get_db)],
    ids: Annotated[str, Query()] = "",
) -> dict:
    """Poll processing state for up to 80 chapters (?ids=1,2,3)."""
    result = processing_service.get_processing_status(db, _parse_ids(ids))
    return success_response([status.model_dump(mode="json") for status in result])


@router.post("/chapters/processing/recover")
def recover_stalled(
    request: RecoverStalledRequest,
    db: Annotated[Session, Depends(get_db)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Flag chapters stuck in processing with no live job as failed.

    Operator tool for after a restart; flagged chapters can then be retried.
    """
    flagged = processing_service.mark_stalled_failed(db, request.older_than_s, runner=runner)
    return success_response({"chapter_ids": flagged})


@router.post("/manga/{manga_id}/chapters", status_code=202)
def create_chapter(
    manga_id: int,
    request: CreateChapterRequest,
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Create a chapter from a draft and start processing its pages."""
    result = processing_service.create_chapter(
        db,
        manga_id,
        request.number,
        request.title,
        request.token,
        request.page_ids,
        store,
        runner=runner,
    )
    return success_response(result.model_dump(mode="json"))


@router.get("/chapters/{chapter_id}")
def get_chapter(
    chapter_id: int,
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Get a chapter with its published pages and processing fields."""
    result = processing_service.get_chapter(db, chapter_id)
    return success_response(result.model_dump(mode="json"))


@router.post("/chapters/{chapter_id}/pages", status_code=202)
def commit_pages(
    chapter_id: int,
    request: CommitPagesRequest,
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Commit a draft's ordered pages to an existing chapter."""
    result = processing_service.commit_chapter_pages(
        db, chapter_id, request.token, request.page_ids, store, runner=runner
    )
    return success_response(result.model_dump(mode="json"))


@router.post("/chapters/{chapter_id}/processing/retry", status_code=202)
def retry_processing(
    chapter_id: int,
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Retry a failed chapter with its stored draft token and pages."""
    result = processing_service.retry_chapter_processing(db, chapter_id, store, runner=runner)
    return success_response(result.model_dump(mode="json"))


@router.delete("/chapters/{chapter_id}", status_code=202)
def delete_chapter(
    chapter_id: int,
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Schedule deletion of a chapter and its stored pages."""
    job_id = reconcile_service.submit_chapter_delete(db, chapter_id, store, runner=runner)
    return success_response(JobAcceptedOut(job_id=job_id).model_dump(mode="json"))


@router.delete("/manga/{manga_id}", status_code=202)
def delete_manga(
    manga_id: int,
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Schedule deletion of a manga with all chapters, drafts and stored pages."""
    job_id = reconcile_service.submit_manga_delete(db, manga_id, store, runner=runner)
    return success_response(JobAcceptedOut(job_id=job_id).model_dump(mode="json"))


@router.post("/chapter-drafts/reap", status_code=202)
def reap_drafts(
    db: Annotated[Session, Depends(get_db)],
    store: Annotated[ObjectStoreBase, Depends(get_store)],
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Schedule cleanup of expired, never-committed drafts."""
    job_id = reconcile_service.submit_draft_reap(db, store, runner=runner)
    return success_response(JobAcceptedOut(job_id=job_id).model_dump(mode="json"))
