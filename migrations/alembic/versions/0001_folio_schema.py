"""Folio schema - manga, chapters, chapter_drafts

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the catalog tables plus the chapter page-processing lifecycle
columns and the draft table used for page uploads.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ==========================================================================
    # manga table
    # ==========================================================================
    op.create_table(
        "manga",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # ==========================================================================
    # chapters table
    # ==========================================================================
    op.create_table(
        "chapters",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("manga_id", sa.Integer(), nullable=False),
        sa.Column("number", sa.Float(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("pages", sa.Integer(), server_default="0", nullable=False),
        sa.Column("pages_prefix", sa.Text(), nullable=True),
        sa.Column("page_ids", sa.JSON(), nullable=True),
        sa.Column("pages_updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "date",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("processing_state", sa.String(length=16), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("processing_draft_token", sa.Text(), nullable=True),
        sa.Column("processing_pages", sa.JSON(), nullable=True),
        sa.Column("processing_updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["manga_id"], ["manga.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("manga_id", "number", name="uq_chapters_manga_number"),
        sa.CheckConstraint(
            "processing_state IS NULL OR processing_state IN ('processing', 'failed')",
            name="ck_chapters_processing_state",
        ),
        sa.CheckConstraint("pages >= 0", name="ck_chapters_pages_non_negative"),
    )
    op.create_index("ix_chapters_manga_id", "chapters", ["manga_id"])
    # Stalled-job recovery scans processing chapters by age
    op.create_index(
        "ix_chapters_processing",
        "chapters",
        ["processing_updated_at"],
        postgresql_where=sa.text("processing_state = 'processing'"),
    )

    # ==========================================================================
    # chapter_drafts table
    # ==========================================================================
    op.create_table(
        "chapter_drafts",
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("manga_id", sa.Integer(), nullable=False),
        sa.Column("pages_prefix", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "last_touched_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("consumed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("token"),
        sa.ForeignKeyConstraint(["manga_id"], ["manga.id"], ondelete="CASCADE"),
        sa.CheckConstraint("token ~ '^[a-f0-9]{32}$'", name="ck_chapter_drafts_token_format"),
    )
    op.create_index("ix_chapter_drafts_manga_id", "chapter_drafts", ["manga_id"])
    op.create_index("ix_chapter_drafts_last_touched_at", "chapter_drafts", ["last_touched_at"])


def downgrade() -> None:
    op.drop_index("ix_chapter_drafts_last_touched_at", table_name="chapter_drafts")
    op.drop_index("ix_chapter_drafts_manga_id", table_name="chapter_drafts")
    op.drop_table("chapter_drafts")
    op.drop_index("ix_chapters_processing", table_name="chapters")
    op.drop_index("ix_chapters_manga_id", table_name="chapters")
    op.drop_table("chapters")
    op.drop_table("manga")
