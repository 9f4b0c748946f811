"""
Image preparation for the vision API.

Decoding, resizing and JPEG encoding are delegated to Pillow.
"""

import base64
import io
import logging
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from food_scan.core.errors import ProcessingError

logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE_BYTES = 4 * 1024 * 1024
COMPRESSION_QUALITY = 85
MAX_DIMENSION = 1024
MIN_DIMENSION = 100


@dataclass(frozen=True)
class ProcessedImage:
    base64_image: str
    original_size: int
    processed_size: int
    width: int
    height: int


def _open(image_bytes: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ProcessingError.invalid_image(f"Cannot decode image: {e}")
    return image


def validate_image(image_bytes: bytes) -> None:
    """Reject empty, oversized, undecodable or tiny images.

    Raises:
        ProcessingError: ``invalid_image`` with the reason in technical details
    """
    if not image_bytes:
        raise ProcessingError.invalid_image("Image is empty")
    if len(image_bytes) > MAX_IMAGE_SIZE_BYTES:
        raise ProcessingError.invalid_image(
            f"Image is {len(image_bytes)} bytes, limit is {MAX_IMAGE_SIZE_BYTES}"
        )
    image = _open(image_bytes)
    width, height = image.size
    if width < MIN_DIMENSION or height < MIN_DIMENSION:
        raise ProcessingError.invalid_image(
            f"Image is {width}x{height}, minimum is {MIN_DIMENSION}x{MIN_DIMENSION}"
        )


def prepare_image(image_bytes: bytes) -> ProcessedImage:
    """Validate, downscale to fit ``MAX_DIMENSION`` and re-encode as JPEG.

    Returns:
        ProcessedImage with a base64 payload ready for a data URL
    """
    validate_image(image_bytes)
    image = _open(image_bytes)
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    image.thumbnail((MAX_DIMENSION, MAX_DIMENSION))

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=COMPRESSION_QUALITY, optimize=True)
    encoded = buffer.getvalue()

    logger.debug(
        "Compressed image %d -> %d bytes (%dx%d)",
        len(image_bytes), len(encoded), image.width, image.height,
    )
    return ProcessedImage(
        base64_image=base64.b64encode(encoded).decode("ascii"),
        original_size=len(image_bytes),
        processed_size=len(encoded),
        width=image.width,
        height=image.height,
    )
