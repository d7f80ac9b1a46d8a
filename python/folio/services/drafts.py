"""Chapter draft sessions.

A draft is a short-lived, token-addressed upload area for the pages of one
chapter. The token is the capability: anyone holding a live token may upload
pages under the draft's prefix until the draft expires or is consumed by a
successful finalize.

Key invariants:
- A draft's pages_prefix is fixed at creation and derived from owner + token
- Malformed tokens are rejected without a database lookup
- Expiry is lazy: an expired draft simply stops resolving
- Touches never move last_touched_at backwards

Expiry clock:
    Drafts are persisted so retry data survives a restart, but age is
    measured on time.monotonic() whenever this process has seen the draft
    (DraftLeases). The persisted wall-clock last_touched_at is only the
    fallback for drafts created or last touched by another process.
"""

import re
import secrets
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from folio.config import get_settings
from folio.db.models import Chapter, ChapterDraft, Manga
from folio.db.session import transaction
from folio.errors import (
    ApiErrorCode,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    StorageUnavailableError,
    UpstreamError,
)
from folio.jobs import JobRunner, get_job_runner, manga_resource_key
from folio.logging import get_logger
from folio.storage import ObjectStoreBase, StorageError, build_draft_prefix, build_page_key

logger = get_logger(__name__)

DRAFT_TOKEN_RE = re.compile(r"^[a-f0-9]{32}$")
PAGE_ID_RE = re.compile(r"^[a-f0-9]{24}$")


def is_draft_token_valid(token: object) -> bool:
    """Syntactic check for a draft token (32 lowercase hex chars)."""
    return isinstance(token, str) and DRAFT_TOKEN_RE.match(token) is not None


def is_page_id_valid(page_id: object) -> bool:
    """Syntactic check for a page id (24 lowercase hex chars).

    Page ids become object key segments, so nothing else is accepted.
    """
    return isinstance(page_id, str) and PAGE_ID_RE.match(page_id) is not None


class DraftLeases:
    """Process-local monotonic touch times, keyed by draft token."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._touched: dict[str, float] = {}

    def touch(self, token: str) -> None:
        now = self._clock()
        with self._lock:
            self._touched[token] = max(self._touched.get(token, now), now)

    def age(self, token: str) -> float | None:
        """Seconds since the last touch seen by this process, or None."""
        with self._lock:
            touched = self._touched.get(token)
        if touched is None:
            return None
        return self._clock() - touched

    def forget(self, token: str) -> None:
        with self._lock:
            self._touched.pop(token, None)


_leases = DraftLeases()


def get_draft_leases() -> DraftLeases:
    """Get the process-wide lease table."""
    return _leases


def _draft_age_seconds(draft: ChapterDraft, leases: DraftLeases, now: datetime) -> float:
    age = leases.age(draft.token)
    if age is not None:
        return age
    return (now - draft.last_touched_at).total_seconds()


def draft_to_dict(draft: ChapterDraft) -> dict:
    ttl = get_settings().draft_ttl_s
    return {
        "token": draft.token,
        "manga_id": draft.manga_id,
        "pages_prefix": draft.pages_prefix,
        "ttl_seconds": ttl,
        "expires_at": (draft.last_touched_at + timedelta(seconds=ttl)).isoformat(),
    }


def ensure_manga_not_deleting(runner: JobRunner, manga_id: int) -> None:
    """Refuse new work for a manga whose delete job is outstanding."""
    if runner.is_busy(manga_resource_key(manga_id)):
        raise ConflictError(message="This manga is being deleted")


def create_draft(
    db: Session,
    manga_id: int,
    store: ObjectStoreBase | None,
    *,
    leases: DraftLeases | None = None,
    runner: JobRunner | None = None,
) -> ChapterDraft:
    """Create a draft session for a manga.

    Args:
        db: Database session.
        manga_id: Owning manga.
        store: Configured object store; None means storage is unavailable.
        leases: Lease table (defaults to the process-wide one).
        runner: Job runner consulted for a pending manga delete.

    Returns:
        The persisted draft.

    Raises:
        StorageUnavailableError: If no object store is configured.
        NotFoundError: If the manga does not exist.
        ConflictError: If the manga is being deleted.
    """
    if store is None:
        raise StorageUnavailableError()
    leases = leases or get_draft_leases()

    if db.get(Manga, manga_id) is None:
        raise NotFoundError(ApiErrorCode.E_MANGA_NOT_FOUND, "Manga not found")
    ensure_manga_not_deleting(runner or get_job_runner(), manga_id)

    now = datetime.now(UTC)
    for _ in range(3):
        token = secrets.token_hex(16)
        draft = ChapterDraft(
            token=token,
            manga_id=manga_id,
            pages_prefix=build_draft_prefix(manga_id, token),
            created_at=now,
            last_touched_at=now,
        )
        try:
            with transaction(db):
                db.add(draft)
        except IntegrityError:
            # Token collision, try a fresh one
            continue
        leases.touch(token)
        logger.info("chapter_draft_created", manga_id=manga_id, pages_prefix=draft.pages_prefix)
        return draft

    raise RuntimeError("Could not allocate a unique draft token")


def get_draft(
    db: Session,
    token: str,
    *,
    leases: DraftLeases | None = None,
    now: datetime | None = None,
) -> ChapterDraft | None:
    """Resolve a live draft.

    Returns None for malformed, unknown, consumed or expired tokens; callers
    treat all of these the same way.
    """
    if not is_draft_token_valid(token):
        return None
    leases = leases or get_draft_leases()
    now = now or datetime.now(UTC)

    draft = db.get(ChapterDraft, token)
    if draft is None or draft.consumed_at is not None:
        return None
    if _draft_age_seconds(draft, leases, now) > get_settings().draft_ttl_s:
        return None
    return draft


def require_draft(
    db: Session, token: str, *, leases: DraftLeases | None = None
) -> ChapterDraft:
    """Resolve a live draft or raise.

    Raises:
        InvalidRequestError: If the token is malformed.
        NotFoundError: If the draft is unknown, consumed or expired.
    """
    if not is_draft_token_valid(token):
        raise InvalidRequestError(ApiErrorCode.E_INVALID_TOKEN, "Invalid draft token")
    draft = get_draft(db, token, leases=leases)
    if draft is None:
        raise NotFoundError(ApiErrorCode.E_DRAFT_NOT_FOUND, "Draft not found or expired")
    return draft


def touch_draft(
    db: Session, token: str, *, leases: DraftLeases | None = None
) -> ChapterDraft | None:
    """Extend a live draft's lifetime. No-op for anything that is not live.

    Concurrent touches keep the latest timestamp on both clocks.
    """
    leases = leases or get_draft_leases()
    draft = get_draft(db, token, leases=leases)
    if draft is None:
        return None

    now = datetime.now(UTC)
    with transaction(db):
        db.execute(
            update(ChapterDraft)
            .where(ChapterDraft.token == token, ChapterDraft.last_touched_at < now)
            .values(last_touched_at=now)
        )
    leases.touch(token)
    db.refresh(draft)
    return draft


def consume_draft(db: Session, token: str) -> int:
    """Mark a draft as consumed. Caller owns the transaction.

    Returns 1 if this call consumed it, 0 if it was already consumed.
    """
    result = db.execute(
        update(ChapterDraft)
        .where(ChapterDraft.token == token, ChapterDraft.consumed_at.is_(None))
        .values(consumed_at=datetime.now(UTC))
    )
    get_draft_leases().forget(token)
    return result.rowcount


def open_edit_draft(
    db: Session,
    chapter_id: int,
    store: ObjectStoreBase | None,
    *,
    leases: DraftLeases | None = None,
    runner: JobRunner | None = None,
) -> dict:
    """Create a draft seeded with a chapter's published pages.

    The published objects are copied server-side into the new draft prefix,
    so the editor can keep, reorder, add or drop pages and commit the result
    like any other draft.

    Returns:
        The draft dict plus chapter_id and the ordered seeded page_ids.

    Raises:
        NotFoundError: If the chapter does not exist.
        UpstreamError: If copying a page fails.
    """
    chapter = db.get(Chapter, chapter_id)
    if chapter is None:
        raise NotFoundError(ApiErrorCode.E_CHAPTER_NOT_FOUND, "Chapter not found")

    draft = create_draft(db, chapter.manga_id, store, leases=leases, runner=runner)

    page_ids = list(chapter.page_ids or []) if chapter.pages_prefix else []
    for page_id in page_ids:
        try:
            store.copy_object(
                build_page_key(chapter.pages_prefix, page_id),
                build_page_key(draft.pages_prefix, page_id),
            )
        except StorageError as e:
            logger.warning(
                "chapter_edit_draft_copy_failed",
                chapter_id=chapter_id,
                page_id=page_id,
                error=e.message,
            )
            raise UpstreamError(
                ApiErrorCode.E_STORAGE_ERROR, "Could not copy existing pages into the draft"
            ) from e

    logger.info("chapter_edit_draft_opened", chapter_id=chapter_id, pages=len(page_ids))
    return {**draft_to_dict(draft), "chapter_id": chapter.id, "page_ids": page_ids}
