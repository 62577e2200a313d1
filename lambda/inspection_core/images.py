"""
Stored image payloads - JPEG re-encoding before persistence.

Images attached to an analysis record are kept for audit only, so
they are re-encoded at a quality chosen by compression level.
"""

import io
import logging
from enum import Enum

from PIL import Image

from inspection_core.models import InvalidInputError
from inspection_core.config import JPEG_QUALITY, HIGH_COMPRESSION_MAX_SIDE


logger = logging.getLogger(__name__)


class CompressionLevel(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


def compress_image(image_bytes: bytes, level: CompressionLevel, field: str = "image") -> bytes:
    """
    Re-encodes image bytes as JPEG.

    NONE returns the input untouched. HIGH additionally shrinks the
    longer side to HIGH_COMPRESSION_MAX_SIDE.

    Raises:
        InvalidInputError: If the bytes are not a decodable image.
    """
    if level == CompressionLevel.NONE:
        return image_bytes

    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except Exception as e:
        raise InvalidInputError(field, "file is corrupted or not an image") from e

    # JPEG has no alpha channel
    img = img.convert("RGB")

    if level == CompressionLevel.HIGH:
        img.thumbnail((HIGH_COMPRESSION_MAX_SIDE, HIGH_COMPRESSION_MAX_SIDE), Image.Resampling.LANCZOS)

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=JPEG_QUALITY[level.value], optimize=True)
    compressed = buf.getvalue()

    logger.debug("Compressed %s: %d -> %d bytes (%s)", field, len(image_bytes), len(compressed), level.value)
    return compressed


def to_compression_level(value: CompressionLevel | str | None) -> CompressionLevel:
    """Missing level means MEDIUM."""
    if value is None:
        return CompressionLevel.MEDIUM
    if isinstance(value, CompressionLevel):
        return value
    try:
        return CompressionLevel(str(value).upper())
    except ValueError:
        raise InvalidInputError(
            "compression_level",
            f"expected one of {[c.value for c in CompressionLevel]}, got {value!r}",
        )
