"""Chapter page processing state machine.

Owns the lifecycle of a chapter's page set once an editor commits a draft:

    idle --commit--> processing --job ok--> idle (pages published)
                                 --job error--> failed --retry--> processing

Entry transitions (commit, create, retry) are validated synchronously and
recorded as one conditional UPDATE before the job is submitted. The job owns
the terminal transitions. Nothing else writes the processing_* fields.

Exclusivity:
    The chapter's runner slot is claimed before the entry transition and
    held until the job returns, so two commits for one chapter can never
    both be accepted. The conditional UPDATE additionally refuses to arm a
    chapter whose row already says "processing" (e.g. left behind by a
    process that died mid-job).
    While the manga's delete job holds its key, no chapter of it is armed.
    A draft backs at most one chapter: finalize consumes it in the publish
    transaction and fails if another chapter got there first.

Crash recovery:
    Jobs live in memory. A chapter whose job was lost stays "processing"
    until an operator calls mark_stalled_failed(), after which retry works.
    This never happens automatically.
"""

from datetime import UTC, datetime, timedelta
from functools import partial

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from folio.config import get_settings
from folio.db.models import Chapter, ChapterDraft, Manga, ProcessingState
from folio.db.session import session_factory_for, transaction
from folio.errors import (
    ApiErrorCode,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    NotRetryableError,
)
from folio.jobs import (
    JobRunner,
    ResourceBusyError,
    chapter_resource_key,
    get_job_runner,
    normalize_job_error,
)
from folio.logging import get_logger, set_chapter_context
from folio.schemas.chapter import ChapterOut, ProcessingAcceptedOut, ProcessingStatusOut
from folio.services.drafts import (
    consume_draft,
    ensure_manga_not_deleting,
    get_draft,
    is_draft_token_valid,
    is_page_id_valid,
)
from folio.services.reconcile import delete_extra_pages, delete_prefix
from folio.storage import ObjectStoreBase, StorageError, build_page_key

logger = get_logger(__name__)

PROCESSING_JOB_TYPE = "chapter_processing"

# Max chapter ids per status poll
MAX_STATUS_IDS = 80

_MAX_ERROR_MSG_LEN = 1000

INTERRUPTED_ERROR = "Processing was interrupted, retry to continue"


class ChapterProcessingError(Exception):
    """Finalize failure with a diagnostic meant for editors."""


# =============================================================================
# Validation
# =============================================================================


def normalize_page_ids(page_ids: object, max_pages: int | None = None) -> list[str]:
    """Validate a committed page-id list and drop duplicates, keeping order.

    Raises:
        InvalidRequestError: Not a list, empty, over the cap, or any id malformed.
    """
    if max_pages is None:
        max_pages = get_settings().max_chapter_pages

    if not isinstance(page_ids, list):
        raise InvalidRequestError(ApiErrorCode.E_INVALID_PAGE_LIST, "Page list must be a list")

    for index, page_id in enumerate(page_ids, start=1):
        if not is_page_id_valid(page_id):
            raise InvalidRequestError(
                ApiErrorCode.E_INVALID_PAGE_LIST, f"Page {index} has an invalid id"
            )

    unique = list(dict.fromkeys(page_ids))
    if not unique:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_PAGE_LIST, "Page list is empty")
    if len(unique) > max_pages:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_PAGE_LIST,
            f"A chapter can have at most {max_pages} pages, got {len(unique)}",
        )
    return unique


def _require_commit_draft(
    db: Session, manga_id: int, token: str, chapter_id: int | None = None
):
    if not is_draft_token_valid(token):
        raise InvalidRequestError(ApiErrorCode.E_INVALID_DRAFT, "Invalid draft token")
    draft = get_draft(db, token)
    if draft is None:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_DRAFT, "Draft expired or not found, upload the pages again"
        )
    if draft.manga_id != manga_id:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_DRAFT, "Draft belongs to a different manga"
        )

    # A draft publishes at most one chapter
    holder = select(Chapter.id).where(Chapter.processing_draft_token == token)
    if chapter_id is not None:
        holder = holder.where(Chapter.id != chapter_id)
    if db.execute(holder.limit(1)).first() is not None:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_DRAFT, "Draft is already committed to another chapter"
        )
    return draft


def _get_chapter(db: Session, chapter_id: int) -> Chapter:
    chapter = db.get(Chapter, chapter_id)
    if chapter is None:
        raise NotFoundError(ApiErrorCode.E_CHAPTER_NOT_FOUND, "Chapter not found")
    return chapter


# =============================================================================
# Entry transitions
# =============================================================================


def _arm_and_submit(
    db: Session,
    chapter_id: int,
    manga_id: int,
    store: ObjectStoreBase,
    runner: JobRunner,
    *,
    token: str | None = None,
    page_ids: list[str] | None = None,
) -> ProcessingAcceptedOut:
    """Claim the chapter, record "processing", and submit the job.

    With token/page_ids this is a commit (any non-processing state). Without
    them it is a retry (failed state only, stored retry data untouched).
    """
    is_retry = token is None
    values = {
        "processing_state": ProcessingState.processing,
        "processing_error": None,
        "processing_updated_at": datetime.now(UTC),
    }
    if is_retry:
        guard = Chapter.processing_state == ProcessingState.failed
    else:
        guard = or_(
            Chapter.processing_state.is_(None),
            Chapter.processing_state != ProcessingState.processing,
        )
        values["processing_draft_token"] = token
        values["processing_pages"] = page_ids

    try:
        with runner.exclusive(chapter_resource_key(chapter_id)) as slot:
            ensure_manga_not_deleting(runner, manga_id)
            with transaction(db):
                result = db.execute(
                    update(Chapter)
                    .where(Chapter.id == chapter_id, guard)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount != 1:
                if is_retry:
                    raise NotRetryableError("Chapter processing has not failed")
                raise ConflictError()

            work = partial(
                run_chapter_processing, session_factory_for(db), chapter_id, store=store
            )
            try:
                job_id = slot.submit(PROCESSING_JOB_TYPE, work)
            except RuntimeError:
                _record_failure(db, chapter_id, "Processing could not be scheduled, retry later")
                raise
    except ResourceBusyError:
        raise ConflictError() from None

    db.expire_all()
    logger.info(
        "chapter_processing_retried" if is_retry else "chapter_processing_committed",
        chapter_id=chapter_id,
        job_id=job_id,
        pages=len(page_ids) if page_ids else None,
    )
    return ProcessingAcceptedOut(chapter_id=chapter_id, job_id=job_id)


def commit_chapter_pages(
    db: Session,
    chapter_id: int,
    token: str,
    page_ids: list[str],
    store: ObjectStoreBase,
    *,
    runner: JobRunner | None = None,
) -> ProcessingAcceptedOut:
    """Commit a draft's ordered pages to a chapter and start processing.

    Everything that can be checked without storage I/O is checked here,
    before a job slot is consumed.

    Args:
        db: Database session.
        chapter_id: Target chapter.
        token: Draft token holding the pages.
        page_ids: Ordered page ids; duplicates are dropped.
        store: Object store for the job.
        runner: Job runner (defaults to the process-wide one).

    Returns:
        The accepted job handle.

    Raises:
        InvalidRequestError: Bad page list (E_INVALID_PAGE_LIST) or draft (E_INVALID_DRAFT).
        NotFoundError: Unknown chapter.
        ConflictError: Chapter already processing (E_ALREADY_PROCESSING).
    """
    runner = runner or get_job_runner()
    page_ids = normalize_page_ids(page_ids)
    chapter = _get_chapter(db, chapter_id)
    _require_commit_draft(db, chapter.manga_id, token, chapter_id)

    return _arm_and_submit(
        db, chapter_id, chapter.manga_id, store, runner, token=token, page_ids=page_ids
    )


def create_chapter(
    db: Session,
    manga_id: int,
    number: float,
    title: str | None,
    token: str,
    page_ids: list[str],
    store: ObjectStoreBase,
    *,
    runner: JobRunner | None = None,
) -> ProcessingAcceptedOut:
    """Create a chapter from a draft and start processing its pages.

    The chapter exists (with no pages) as soon as this returns; its pages
    appear when the job finalizes.

    Raises:
        InvalidRequestError: Bad page list or draft.
        NotFoundError: Unknown manga.
        ConflictError: A chapter with this number exists (E_CHAPTER_EXISTS).
    """
    runner = runner or get_job_runner()
    page_ids = normalize_page_ids(page_ids)
    if db.get(Manga, manga_id) is None:
        raise NotFoundError(ApiErrorCode.E_MANGA_NOT_FOUND, "Manga not found")
    ensure_manga_not_deleting(runner, manga_id)
    _require_commit_draft(db, manga_id, token)

    existing = db.execute(
        select(Chapter.id).where(Chapter.manga_id == manga_id, Chapter.number == number)
    ).first()
    if existing is not None:
        raise ConflictError(ApiErrorCode.E_CHAPTER_EXISTS, f"Chapter {number:g} already exists")

    chapter = Chapter(manga_id=manga_id, number=number, title=title, pages=0)
    try:
        with transaction(db):
            db.add(chapter)
    except IntegrityError:
        raise ConflictError(
            ApiErrorCode.E_CHAPTER_EXISTS, f"Chapter {number:g} already exists"
        ) from None

    logger.info("chapter_created", chapter_id=chapter.id, manga_id=manga_id, number=number)
    return _arm_and_submit(
        db, chapter.id, manga_id, store, runner, token=token, page_ids=page_ids
    )


def retry_chapter_processing(
    db: Session,
    chapter_id: int,
    store: ObjectStoreBase,
    *,
    runner: JobRunner | None = None,
) -> ProcessingAcceptedOut:
    """Re-run a failed chapter's processing with its stored token and pages.

    Raises:
        NotFoundError: Unknown chapter.
        NotRetryableError: Not failed, retry data missing, or the draft expired.
        ConflictError: A job for the chapter is outstanding.
    """
    runner = runner or get_job_runner()
    chapter = _get_chapter(db, chapter_id)

    if chapter.processing_state != ProcessingState.failed:
        raise NotRetryableError("Chapter processing has not failed")
    token = chapter.processing_draft_token
    if not token or not is_draft_token_valid(token) or not chapter.processing_pages:
        raise NotRetryableError("Retry data is missing, commit the pages again")
    if get_draft(db, token) is None:
        raise NotRetryableError("The draft has expired, upload the pages again")

    return _arm_and_submit(db, chapter_id, chapter.manga_id, store, runner)


# =============================================================================
# Job body and terminal transitions
# =============================================================================


def _record_failure(db: Session, chapter_id: int, message: str) -> None:
    """Flip a processing chapter to failed, keeping its retry data."""
    with transaction(db):
        db.execute(
            update(Chapter)
            .where(
                Chapter.id == chapter_id,
                Chapter.processing_state == ProcessingState.processing,
            )
            .values(
                processing_state=ProcessingState.failed,
                processing_error=message[:_MAX_ERROR_MSG_LEN],
                processing_updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )


def _find_missing_pages(
    store: ObjectStoreBase, prefix: str, page_ids: list[str]
) -> list[tuple[int, str]]:
    listed = set(store.list_keys(prefix.rstrip("/") + "/"))
    missing = []
    for index, page_id in enumerate(page_ids, start=1):
        key = build_page_key(prefix, page_id)
        # Listings can lag a fresh write; confirm before failing
        if key not in listed and store.head_object(key) is None:
            missing.append((index, page_id))
    return missing


def _finalize(db: Session, chapter: Chapter, store: ObjectStoreBase) -> tuple[str | None, str]:
    """Verify the committed pages and publish them. Returns (old, new) prefix."""
    token = chapter.processing_draft_token
    page_ids = list(chapter.processing_pages or [])
    if not token or not page_ids:
        raise ChapterProcessingError("Retry data is missing, commit the pages again")

    draft = get_draft(db, token)
    if draft is None:
        raise ChapterProcessingError("The draft has expired, upload the pages again")
    if draft.manga_id != chapter.manga_id:
        raise ChapterProcessingError("Draft belongs to a different manga")
    prefix = draft.pages_prefix

    try:
        missing = _find_missing_pages(store, prefix, page_ids)
    except StorageError as e:
        logger.warning("chapter_pages_verify_failed", pages_prefix=prefix, error=e.message)
        raise ChapterProcessingError("Could not verify pages in storage, retry later") from e
    if missing:
        index, page_id = missing[0]
        message = f"Page {index} ({page_id}) is missing from storage"
        if len(missing) > 1:
            message += f", and {len(missing) - 1} more"
        raise ChapterProcessingError(message)

    previous_prefix = chapter.pages_prefix
    now = datetime.now(UTC)
    with transaction(db):
        result = db.execute(
            update(Chapter)
            .where(
                Chapter.id == chapter.id,
                Chapter.processing_state == ProcessingState.processing,
                Chapter.processing_draft_token == token,
            )
            .values(
                processing_state=None,
                processing_error=None,
                processing_draft_token=None,
                processing_pages=None,
                processing_updated_at=now,
                pages=len(page_ids),
                pages_prefix=prefix,
                page_ids=page_ids,
                pages_updated_at=now,
                date=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ChapterProcessingError("Chapter changed while processing, retry to continue")
        if consume_draft(db, token) != 1:
            raise ChapterProcessingError("Draft was already used by another chapter")

    return previous_prefix, prefix


def _reconcile_after_finalize(
    db: Session,
    store: ObjectStoreBase,
    previous_prefix: str | None,
    prefix: str,
    page_ids: list[str],
) -> None:
    """Drop storage and draft rows the published chapter no longer references.

    Never raises.
    """
    try:
        if previous_prefix and previous_prefix != prefix:
            delete_prefix(store, previous_prefix)
            with transaction(db):
                db.execute(
                    delete(ChapterDraft).where(
                        ChapterDraft.pages_prefix == previous_prefix,
                        ChapterDraft.consumed_at.is_not(None),
                    )
                )
        delete_extra_pages(store, prefix, page_ids)
    except Exception as e:
        logger.warning(
            "chapter_storage_cleanup_failed",
            previous_prefix=previous_prefix,
            pages_prefix=prefix,
            error=str(e),
        )


def run_chapter_processing(
    session_factory: sessionmaker[Session],
    chapter_id: int,
    *,
    store: ObjectStoreBase,
) -> None:
    """Job body: verify a chapter's committed pages and publish them.

    On failure the chapter is flipped to failed with a diagnostic and the
    exception is re-raised so the job is failed too.
    """
    set_chapter_context(chapter_id)
    db = session_factory()
    try:
        chapter = db.get(Chapter, chapter_id)
        if chapter is None or chapter.processing_state != ProcessingState.processing:
            logger.info("chapter_processing_skipped", reason="not_processing")
            return

        page_ids = list(chapter.processing_pages or [])
        logger.info("chapter_processing_started", pages=len(page_ids))

        try:
            previous_prefix, prefix = _finalize(db, chapter, store)
        except Exception as e:
            if isinstance(e, ChapterProcessingError):
                message = str(e)
            else:
                message = normalize_job_error(e)
            logger.warning("chapter_processing_failed", error=str(e), error_type=type(e).__name__)
            db.rollback()
            _record_failure(db, chapter_id, message)
            raise

        logger.info("chapter_processing_done", pages=len(page_ids), pages_prefix=prefix)
        _reconcile_after_finalize(db, store, previous_prefix, prefix, page_ids)
    finally:
        db.close()


# =============================================================================
# Polling and operator recovery
# =============================================================================


def _status_of(chapter: Chapter) -> ProcessingStatusOut:
    state = chapter.processing_state.value if chapter.processing_state else "idle"
    return ProcessingStatusOut(
        id=chapter.id,
        state=state,
        error=chapter.processing_error if state == "failed" else None,
        pages=chapter.pages,
        updated_at=chapter.processing_updated_at,
    )


def get_chapter(db: Session, chapter_id: int) -> ChapterOut:
    """Get one chapter with its processing fields.

    Raises:
        NotFoundError: Unknown chapter.
    """
    return ChapterOut.model_validate(_get_chapter(db, chapter_id))


def get_processing_status(db: Session, chapter_ids: list[int]) -> list[ProcessingStatusOut]:
    """Batch poll of chapter processing states, in request order.

    Only the first MAX_STATUS_IDS distinct ids are considered; unknown ids
    are omitted.
    """
    ids = list(dict.fromkeys(chapter_ids))[:MAX_STATUS_IDS]
    if not ids:
        return []
    chapters = db.execute(select(Chapter).where(Chapter.id.in_(ids))).scalars().all()
    by_id = {chapter.id: chapter for chapter in chapters}
    return [_status_of(by_id[cid]) for cid in ids if cid in by_id]


def mark_stalled_failed(
    db: Session,
    older_than_s: int,
    *,
    runner: JobRunner | None = None,
) -> list[int]:
    """Flag chapters stuck in processing with no live job as failed.

    Only chapters whose last transition is older than `older_than_s` and
    whose slot is free in this process are touched. Their retry data is
    kept, so retry works afterwards.

    Returns:
        Ids of the chapters that were flagged.
    """
    runner = runner or get_job_runner()
    cutoff = datetime.now(UTC) - timedelta(seconds=older_than_s)

    candidates = (
        db.execute(
            select(Chapter.id).where(
                Chapter.processing_state == ProcessingState.processing,
                or_(
                    Chapter.processing_updated_at.is_(None),
                    Chapter.processing_updated_at < cutoff,
                ),
            )
        )
        .scalars()
        .all()
    )

    flagged = []
    for chapter_id in candidates:
        try:
            with runner.exclusive(chapter_resource_key(chapter_id)):
                _record_failure(db, chapter_id, INTERRUPTED_ERROR)
        except ResourceBusyError:
            continue
        flagged.append(chapter_id)

    db.expire_all()
    if flagged:
        logger.warning("chapter_processing_marked_stalled", chapter_ids=flagged)
    return flagged
