"""Watermarked previews for image deliverables.

The preview is what the client inspects before approving a checkpoint: the
same image with a translucent "PREVIEW" stamped diagonally across its
centre. Dimensions and format are kept so the preview is a drop-in for the
original in any viewer.
"""

import io
import logging

from PIL import Image, ImageDraw, ImageFont

from checkpay.errors import InvalidInputError

logger = logging.getLogger(__name__)

WATERMARK_TEXT = "PREVIEW"
WATERMARK_FILL = (255, 0, 0, 128)
WATERMARK_ANGLE = 45

# Formats that keep an alpha channel when saved
_ALPHA_FORMATS = {"PNG", "WEBP"}


def watermark_preview(data: bytes, filename: str, text: str = WATERMARK_TEXT) -> bytes:
    """Return ``data`` re-encoded with ``text`` stamped across it.

    Raises:
        InvalidInputError: ``data`` is not a readable image
    """
    try:
        with Image.open(io.BytesIO(data)) as source:
            image_format = source.format or "PNG"
            image = source.convert("RGBA")
    except (OSError, Image.DecompressionBombError) as e:
        raise InvalidInputError(f"Cannot read image {filename}: {e}") from e

    width, height = image.size
    font = ImageFont.load_default(size=max(min(width, height) // 10, 1))

    overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    position = ((width - (right - left)) / 2 - left, (height - (bottom - top)) / 2 - top)
    draw.text(position, text, font=font, fill=WATERMARK_FILL)
    overlay = overlay.rotate(WATERMARK_ANGLE, center=(width / 2, height / 2))

    stamped = Image.alpha_composite(image, overlay)
    if image_format not in _ALPHA_FORMATS:
        stamped = stamped.convert("RGB")

    out = io.BytesIO()
    stamped.save(out, format=image_format)
    logger.debug(f"Rendered preview for {filename} ({width}x{height} {image_format})")
    return out.getvalue()
