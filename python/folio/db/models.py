"""SQLAlchemy ORM models for Folio.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Enums are stored as plain strings (native_enum=False) so the schema stays
portable between PostgreSQL and the SQLite databases used in tests.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops tzinfo on read; values coming back naive are UTC by
    construction and get it re-attached.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class ProcessingState(str, PyEnum):
    """Chapter page-processing lifecycle states.

    A chapter with no state (NULL) is idle.

    States:
        processing: A finalization job owns the chapter
        failed: The last finalization failed; retry data is kept
    """

    processing = "processing"
    failed = "failed"


# =============================================================================
# Models
# =============================================================================


class Manga(Base):
    """A series that owns chapters."""

    __tablename__ = "manga"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    chapters: Mapped[list["Chapter"]] = relationship(
        "Chapter", back_populates="manga", passive_deletes=True
    )


class Chapter(Base):
    """A chapter and its published page set.

    Published fields (pages, pages_prefix, page_ids, pages_updated_at) only
    change when a processing job finalizes. The processing_* fields track
    the in-flight or failed job and hold the data needed to retry it.
    """

    __tablename__ = "chapters"
    __table_args__ = (UniqueConstraint("manga_id", "number", name="uq_chapters_manga_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    manga_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("manga.id", ondelete="CASCADE"), nullable=False, index=True
    )
    number: Mapped[float] = mapped_column(Float, nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Published page set
    pages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_prefix: Mapped[str | None] = mapped_column(Text, nullable=True)
    page_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    pages_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    date: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    # Processing lifecycle
    processing_state: Mapped[ProcessingState | None] = mapped_column(
        Enum(ProcessingState, name="chapter_processing_state", native_enum=False, length=16),
        nullable=True,
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_draft_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_pages: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    processing_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    manga: Mapped["Manga"] = relationship("Manga", back_populates="chapters")


class ChapterDraft(Base):
    """A temporary upload area for the pages of one chapter.

    The token doubles as the final path segment of the draft's key prefix.
    A consumed draft was finalized into a chapter and is no longer live.
    """

    __tablename__ = "chapter_drafts"

    token: Mapped[str] = mapped_column(Text, primary_key=True)
    manga_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("manga.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pages_prefix: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    last_touched_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False, index=True
    )
    consumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
