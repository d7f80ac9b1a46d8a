"""Page image transcoding.

Every uploaded page is normalized before it reaches storage:
- decoded with Pillow (animated inputs keep their first frame)
- EXIF orientation applied, metadata dropped
- downscaled to the configured max width, never enlarged
- encoded as WebP

Oversized or undecodable input raises TranscodeError and never touches storage.
"""

import io

from PIL import Image, ImageOps, UnidentifiedImageError

from folio.config import get_settings
from folio.logging import get_logger

logger = get_logger(__name__)

# Decoded pixel budget per page (tall webtoon strips included)
MAX_PAGE_PIXELS = 120_000_000

# WebP cannot encode a side longer than this
MAX_WEBP_DIMENSION = 16383

# Leading bytes that are never a raster image
REJECTED_MAGIC_PREFIXES = (b"<svg", b"<?xml", b"<!doctype", b"<html", b"%pdf-")


class TranscodeError(Exception):
    """Input could not be turned into a WebP page."""


def _sniff_rejected(data: bytes) -> bool:
    head = data[:512].lstrip(b" \t\n\r").lower()
    return any(head.startswith(prefix) for prefix in REJECTED_MAGIC_PREFIXES)


def to_webp(
    data: bytes,
    *,
    max_width: int | None = None,
    quality: int | None = None,
) -> bytes:
    """Transcode image bytes to a WebP page.

    Args:
        data: Raw uploaded image bytes.
        max_width: Max output width. If None, uses settings.
        quality: WebP quality (0-100). If None, uses settings.

    Returns:
        WebP-encoded bytes.

    Raises:
        TranscodeError: If the input is empty, not an image, or too large.
    """
    settings = get_settings()
    if max_width is None:
        max_width = settings.page_max_width
    if quality is None:
        quality = settings.page_webp_quality

    if not data:
        raise TranscodeError("Image is empty")
    if _sniff_rejected(data):
        raise TranscodeError("Content is not a valid image")

    try:
        with Image.open(io.BytesIO(data)) as source:
            width, height = source.size
            if width * height > MAX_PAGE_PIXELS:
                raise TranscodeError(f"Image dimensions exceed limit: {width}x{height}")

            img = ImageOps.exif_transpose(source)
            if img.mode not in ("RGB", "RGBA"):
                has_alpha = img.mode in ("LA", "PA") or "transparency" in img.info
                img = img.convert("RGBA" if has_alpha else "RGB")

            if img.width > max_width:
                new_height = max(1, round(img.height * max_width / img.width))
                img = img.resize((max_width, new_height), Image.Resampling.LANCZOS)

            if img.width > MAX_WEBP_DIMENSION or img.height > MAX_WEBP_DIMENSION:
                raise TranscodeError(f"Image dimensions exceed limit: {img.width}x{img.height}")

            out = io.BytesIO()
            img.save(out, format="WEBP", quality=quality, method=6)
    except TranscodeError:
        raise
    except Image.DecompressionBombError as e:
        raise TranscodeError("Image exceeds dimension limits") from e
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        logger.info("page_transcode_rejected", error=str(e))
        raise TranscodeError("Content is not a valid image") from e

    return out.getvalue()
