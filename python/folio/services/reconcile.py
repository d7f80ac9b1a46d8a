"""Storage reconciliation.

Removes object-storage data that no chapter references any more:
- a chapter's previous prefix after an edit moved it to a new one
- pages dropped from a prefix that stays published
- expired drafts nobody committed
- everything under a chapter or manga that is being deleted

Prefix and page cleanup after a finalize is best-effort and is driven by the
processing job. Deletes and the draft reaper are destructive, long-running
operations and run as background jobs; callers get a job id to poll.
"""

from datetime import UTC, datetime, timedelta
from functools import partial

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from folio.config import get_settings
from folio.db.models import Chapter, ChapterDraft, Manga
from folio.db.session import session_factory_for, transaction
from folio.errors import ApiErrorCode, ConflictError, NotFoundError
from folio.jobs import (
    JobRunner,
    ResourceBusyError,
    chapter_resource_key,
    get_job_runner,
    manga_resource_key,
)
from folio.logging import get_logger, set_chapter_context
from folio.services.drafts import DraftLeases, get_draft, get_draft_leases
from folio.storage import (
    ObjectStoreBase,
    StorageError,
    build_manga_prefix,
    parse_page_key,
)

logger = get_logger(__name__)

DEFAULT_REAP_LIMIT = 40


def _dir(prefix: str) -> str:
    return prefix.rstrip("/") + "/"


def delete_prefix(store: ObjectStoreBase, prefix: str) -> int:
    """Delete every version of every object under a prefix.

    Returns:
        Number of versions deleted.
    """
    deleted = store.delete_all_by_prefix(_dir(prefix))
    logger.info("storage_prefix_deleted", prefix=prefix, versions=deleted)
    return deleted


def delete_extra_pages(store: ObjectStoreBase, prefix: str, keep_page_ids: list[str]) -> int:
    """Delete page objects in a prefix whose id is not in `keep_page_ids`.

    Objects that are not page files directly under the prefix are left alone.

    Returns:
        Number of versions deleted.
    """
    keep = set(keep_page_ids)
    extra = []
    for version in store.list_versions(_dir(prefix)):
        page_id = parse_page_key(version.key, prefix)
        if page_id is not None and page_id not in keep:
            extra.append(version)
    if not extra:
        return 0

    deleted = store.delete_versions(extra)
    logger.info("storage_extra_pages_deleted", prefix=prefix, versions=deleted)
    return deleted


def reap_expired_drafts(
    db: Session,
    store: ObjectStoreBase,
    *,
    limit: int = DEFAULT_REAP_LIMIT,
    leases: DraftLeases | None = None,
) -> dict:
    """Delete the objects and rows of expired, never-committed drafts.

    Drafts referenced by a chapter (pending retry data or a published
    prefix) are kept. A draft whose storage cleanup fails keeps its row so
    the next run picks it up again.

    Returns:
        Dict with the number of drafts reaped and object versions deleted.
    """
    leases = leases or get_draft_leases()
    cutoff = datetime.now(UTC) - timedelta(seconds=get_settings().draft_ttl_s)

    referenced_tokens = select(Chapter.processing_draft_token).where(
        Chapter.processing_draft_token.is_not(None)
    )
    referenced_prefixes = select(Chapter.pages_prefix).where(Chapter.pages_prefix.is_not(None))

    candidates = (
        db.execute(
            select(ChapterDraft)
            .where(
                ChapterDraft.consumed_at.is_(None),
                ChapterDraft.last_touched_at < cutoff,
                ChapterDraft.token.not_in(referenced_tokens),
                ChapterDraft.pages_prefix.not_in(referenced_prefixes),
            )
            .order_by(ChapterDraft.last_touched_at)
            .limit(limit)
        )
        .scalars()
        .all()
    )

    reaped = 0
    versions_deleted = 0
    for draft in candidates:
        # A touch seen by this process may still keep it alive
        if get_draft(db, draft.token, leases=leases) is not None:
            continue
        try:
            versions_deleted += delete_prefix(store, draft.pages_prefix)
        except StorageError as e:
            logger.warning(
                "chapter_draft_reap_failed", pages_prefix=draft.pages_prefix, error=e.message
            )
            continue
        with transaction(db):
            db.execute(delete(ChapterDraft).where(ChapterDraft.token == draft.token))
        leases.forget(draft.token)
        reaped += 1

    logger.info("chapter_drafts_reaped", drafts=reaped, versions=versions_deleted)
    return {"drafts": reaped, "versions": versions_deleted}


def delete_chapter_and_cleanup(
    session_factory: sessionmaker[Session],
    chapter_id: int,
    *,
    store: ObjectStoreBase,
) -> None:
    """Job body: delete a chapter's stored pages, then the chapter row.

    Storage goes first so a failed cleanup leaves a chapter that can be
    deleted again instead of orphaned objects.
    """
    set_chapter_context(chapter_id)
    db = session_factory()
    try:
        chapter = db.get(Chapter, chapter_id)
        if chapter is None:
            logger.info("chapter_delete_skipped", reason="not_found")
            return

        prefixes = []
        if chapter.pages_prefix:
            prefixes.append(chapter.pages_prefix)
        pending_token = chapter.processing_draft_token
        if pending_token:
            draft = db.get(ChapterDraft, pending_token)
            if draft is not None and draft.pages_prefix not in prefixes:
                prefixes.append(draft.pages_prefix)

        versions = 0
        for prefix in prefixes:
            versions += delete_prefix(store, prefix)

        with transaction(db):
            if pending_token:
                db.execute(delete(ChapterDraft).where(ChapterDraft.token == pending_token))
            if prefixes:
                db.execute(delete(ChapterDraft).where(ChapterDraft.pages_prefix.in_(prefixes)))
            db.execute(delete(Chapter).where(Chapter.id == chapter_id))

        logger.info("chapter_deleted", versions=versions)
    finally:
        db.close()


def delete_manga_and_cleanup(
    session_factory: sessionmaker[Session],
    manga_id: int,
    *,
    store: ObjectStoreBase,
) -> None:
    """Job body: delete everything stored for a manga, then its rows."""
    db = session_factory()
    try:
        manga = db.get(Manga, manga_id)
        if manga is None:
            logger.info("manga_delete_skipped", manga_id=manga_id, reason="not_found")
            return

        manga_prefix = build_manga_prefix(manga_id)
        versions = delete_prefix(store, manga_prefix)

        # Chapters published under a different root (e.g. an older prefix setting)
        outside = db.execute(
            select(Chapter.pages_prefix).where(
                Chapter.manga_id == manga_id,
                Chapter.pages_prefix.is_not(None),
                Chapter.pages_prefix.not_like(f"{manga_prefix}/%"),
            )
        ).scalars()
        for prefix in set(outside):
            versions += delete_prefix(store, prefix)

        with transaction(db):
            db.execute(delete(ChapterDraft).where(ChapterDraft.manga_id == manga_id))
            db.execute(delete(Chapter).where(Chapter.manga_id == manga_id))
            db.execute(delete(Manga).where(Manga.id == manga_id))

        logger.info("manga_deleted", manga_id=manga_id, versions=versions)
    finally:
        db.close()


def submit_chapter_delete(
    db: Session,
    chapter_id: int,
    store: ObjectStoreBase,
    *,
    runner: JobRunner | None = None,
) -> str:
    """Schedule chapter deletion. Refused while the chapter is being processed.

    Raises:
        NotFoundError: If the chapter does not exist.
        ConflictError: If a job for the chapter is outstanding.
    """
    runner = runner or get_job_runner()
    chapter = db.get(Chapter, chapter_id)
    if chapter is None:
        raise NotFoundError(ApiErrorCode.E_CHAPTER_NOT_FOUND, "Chapter not found")

    work = partial(delete_chapter_and_cleanup, session_factory_for(db), chapter_id, store=store)
    try:
        with runner.exclusive(chapter_resource_key(chapter_id)) as slot:
            return slot.submit("chapter_delete", work)
    except ResourceBusyError:
        raise ConflictError() from None


def submit_manga_delete(
    db: Session,
    manga_id: int,
    store: ObjectStoreBase,
    *,
    runner: JobRunner | None = None,
) -> str:
    """Schedule deletion of a manga with all its chapters and drafts.

    Raises:
        NotFoundError: If the manga does not exist.
        ConflictError: If any of its chapters is being processed.
    """
    runner = runner or get_job_runner()
    if db.get(Manga, manga_id) is None:
        raise NotFoundError(ApiErrorCode.E_MANGA_NOT_FOUND, "Manga not found")

    work = partial(delete_manga_and_cleanup, session_factory_for(db), manga_id, store=store)
    try:
        # Claimed before the chapter check; new chapter work checks this key
        with runner.exclusive(manga_resource_key(manga_id)) as slot:
            chapter_ids = db.execute(
                select(Chapter.id).where(Chapter.manga_id == manga_id)
            ).scalars()
            if any(runner.is_busy(chapter_resource_key(cid)) for cid in chapter_ids):
                raise ConflictError(
                    message="A chapter of this manga is being processed, please wait"
                )
            return slot.submit("manga_delete", work)
    except ResourceBusyError:
        raise ConflictError(message="This manga is already being deleted") from None


def submit_draft_reap(
    db: Session,
    store: ObjectStoreBase,
    *,
    limit: int = DEFAULT_REAP_LIMIT,
    runner: JobRunner | None = None,
) -> str:
    """Schedule a draft reaper run. Only one run at a time."""
    runner = runner or get_job_runner()
    session_factory = session_factory_for(db)

    def work() -> None:
        job_db = session_factory()
        try:
            reap_expired_drafts(job_db, store, limit=limit)
        finally:
            job_db.close()

    try:
        with runner.exclusive("drafts:reap") as slot:
            return slot.submit("draft_reap", work)
    except ResourceBusyError:
        raise ConflictError(message="Draft cleanup is already running") from None
