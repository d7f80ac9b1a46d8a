"""Test helpers for common test operations.

Provides:
- Image fixtures generated with Pillow
- Page id generation
- Manga, chapter and draft row helpers
- Draft page upload shortcuts
"""

import io
import secrets
from datetime import datetime

from PIL import Image
from sqlalchemy import update
from sqlalchemy.orm import Session

from folio.db.models import Chapter, ChapterDraft, Manga
from folio.services.drafts import DraftLeases
from folio.services.pages import upload_page
from folio.storage import ObjectStoreBase


def new_page_id() -> str:
    """Return a well-formed random page id."""
    return secrets.token_hex(12)


def make_image_bytes(
    width: int = 40,
    height: int = 60,
    *,
    fmt: str = "PNG",
    mode: str = "RGB",
    color=(200, 30, 30),
) -> bytes:
    """Encode a solid-color test image."""
    img = Image.new(mode, (width, height), color)
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


def create_test_manga(db: Session, title: str = "Test Manga") -> int:
    """Insert a manga and return its id."""
    manga = Manga(title=title)
    db.add(manga)
    db.commit()
    return manga.id


def create_test_chapter(
    db: Session,
    manga_id: int,
    number: float = 1,
    **fields,
) -> int:
    """Insert a chapter row with optional field overrides and return its id."""
    fields.setdefault("pages", 0)
    chapter = Chapter(manga_id=manga_id, number=number, **fields)
    db.add(chapter)
    db.commit()
    return chapter.id


def upload_test_pages(
    db: Session,
    token: str,
    page_ids: list[str],
    store: ObjectStoreBase,
    *,
    leases: DraftLeases | None = None,
) -> None:
    """Upload one small image per page id into a draft."""
    for page_id in page_ids:
        upload_page(db, token, page_id, make_image_bytes(), store, leases=leases)


def age_draft(db: Session, token: str, when: datetime) -> None:
    """Move a draft's persisted last touch to `when`."""
    db.execute(
        update(ChapterDraft).where(ChapterDraft.token == token).values(last_touched_at=when)
    )
    db.commit()
    db.expire_all()
