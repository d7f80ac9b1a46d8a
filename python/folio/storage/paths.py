"""Storage key building utilities.

This module provides the single point of logic for building object keys.
All key construction must go through these helpers so that uploads, the
processing job and cleanup agree on where a page lives.

Key Invariant:
    - Draft / chapter pages: {chapter_prefix}/manga-{manga_id}/drafts/{token}/{page_id}.webp

Rules:
    - No leading or trailing slash on prefixes
    - Token and page id are validated before they reach a key
    - A published chapter's prefix is the prefix of the draft it was built from
"""

from folio.config import get_settings

PAGE_EXTENSION = "webp"
PAGE_CONTENT_TYPE = "image/webp"


def build_draft_prefix(manga_id: int, token: str, chapter_prefix: str | None = None) -> str:
    """Build the storage prefix for a draft's pages.

    Args:
        manga_id: Owning manga id.
        token: Draft token (already validated).
        chapter_prefix: Root prefix. If None, uses settings.

    Returns:
        Prefix without trailing slash, e.g. "chapters/manga-42/drafts/ab12...".
    """
    return f"{build_manga_prefix(manga_id, chapter_prefix)}/drafts/{token}"


def build_manga_prefix(manga_id: int, chapter_prefix: str | None = None) -> str:
    """Build the storage prefix holding every draft and chapter of a manga."""
    if chapter_prefix is None:
        chapter_prefix = get_settings().normalized_chapter_prefix
    return f"{chapter_prefix}/manga-{manga_id}"


def page_file_name(page_id: str) -> str:
    """Return the object file name for a page id."""
    return f"{page_id}.{PAGE_EXTENSION}"


def build_page_key(prefix: str, page_id: str) -> str:
    """Build the full object key for one page under a prefix."""
    return f"{prefix.rstrip('/')}/{page_file_name(page_id)}"


def parse_page_key(key: str, prefix: str) -> str | None:
    """Extract the page id from a key directly under `prefix`.

    Returns:
        The page id, or None if the key is not a page file in that prefix.
    """
    head = prefix.rstrip("/") + "/"
    if not key.startswith(head):
        return None
    name = key[len(head) :]
    suffix = f".{PAGE_EXTENSION}"
    if "/" in name or not name.endswith(suffix):
        return None
    return name[: -len(suffix)] or None


def build_public_url(key: str, base_url: str | None = None) -> str:
    """Build the public URL for an object key.

    Returns the bare key when no public base URL is configured.
    """
    if base_url is None:
        base_url = get_settings().public_base_url
    if not base_url:
        return key
    return f"{base_url.rstrip('/')}/{key}"
