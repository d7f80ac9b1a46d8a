"""Draft page upload and deletion.

One page at a time is written under a live draft's prefix:

    {pages_prefix}/{page_id}.webp

Validation runs before any side effect: page id format, token liveness,
size limit, then transcoding. A rejected upload never touches storage.
Every successful write or delete extends the draft's lifetime.
"""

from sqlalchemy.orm import Session

from folio.config import get_settings
from folio.errors import ApiErrorCode, InvalidRequestError, UpstreamError
from folio.logging import get_logger
from folio.services.drafts import (
    DraftLeases,
    is_page_id_valid,
    require_draft,
    touch_draft,
)
from folio.services.transcode import TranscodeError, to_webp
from folio.storage import (
    PAGE_CONTENT_TYPE,
    ObjectStoreBase,
    StorageError,
    build_page_key,
    build_public_url,
    page_file_name,
)

logger = get_logger(__name__)


def _require_page_id(page_id: str) -> None:
    if not is_page_id_valid(page_id):
        raise InvalidRequestError(ApiErrorCode.E_INVALID_PAGE_ID, "Invalid page id")


def upload_page(
    db: Session,
    token: str,
    page_id: str,
    data: bytes,
    store: ObjectStoreBase,
    *,
    leases: DraftLeases | None = None,
) -> dict:
    """Transcode one page image and store it in the draft.

    Re-uploading the same page id replaces the page (a new object version).

    Args:
        db: Database session.
        token: Draft token.
        page_id: Client-chosen page id.
        data: Raw image bytes.
        store: Object store.
        leases: Draft lease table (defaults to the process-wide one).

    Returns:
        Dict with file_name and public url of the stored page.

    Raises:
        InvalidRequestError: Malformed page id/token, oversized or invalid image.
        NotFoundError: Draft unknown, consumed or expired.
        UpstreamError: Storage write failed.
    """
    settings = get_settings()

    _require_page_id(page_id)
    draft = require_draft(db, token, leases=leases)

    if len(data) > settings.max_page_upload_bytes:
        raise InvalidRequestError(
            ApiErrorCode.E_FILE_TOO_LARGE,
            f"Page exceeds maximum size of {settings.max_page_upload_bytes // (1024 * 1024)} MB",
        )

    try:
        webp = to_webp(data)
    except TranscodeError as e:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_IMAGE, str(e)) from e

    key = build_page_key(draft.pages_prefix, page_id)
    try:
        store.put_object(key, webp, content_type=PAGE_CONTENT_TYPE)
    except StorageError as e:
        logger.warning("draft_page_upload_failed", key=key, error=e.message)
        raise UpstreamError(ApiErrorCode.E_UPLOAD_FAILED, "Page upload failed") from e

    touch_draft(db, token, leases=leases)

    logger.info(
        "draft_page_uploaded",
        manga_id=draft.manga_id,
        page_id=page_id,
        input_bytes=len(data),
        output_bytes=len(webp),
    )
    return {"file_name": page_file_name(page_id), "url": build_public_url(key)}


def delete_page(
    db: Session,
    token: str,
    page_id: str,
    store: ObjectStoreBase,
    *,
    leases: DraftLeases | None = None,
) -> int:
    """Delete every stored version of one draft page.

    Returns:
        Number of versions deleted (0 if the page was never uploaded).

    Raises:
        InvalidRequestError: Malformed page id or token.
        NotFoundError: Draft unknown, consumed or expired.
        UpstreamError: Storage listing or delete failed.
    """
    _require_page_id(page_id)
    draft = require_draft(db, token, leases=leases)

    key = build_page_key(draft.pages_prefix, page_id)
    try:
        versions = [v for v in store.list_versions(key) if v.key == key]
        deleted = store.delete_versions(versions) if versions else 0
    except StorageError as e:
        logger.warning("draft_page_delete_failed", key=key, error=e.message)
        raise UpstreamError(ApiErrorCode.E_STORAGE_ERROR, "Page delete failed") from e

    touch_draft(db, token, leases=leases)

    logger.info("draft_page_deleted", manga_id=draft.manga_id, page_id=page_id, versions=deleted)
    return deleted
