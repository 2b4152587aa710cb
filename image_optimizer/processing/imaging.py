"""Pillow-backed implementations of the Convert and Thumbnail capabilities."""

from __future__ import annotations

import io
import logging
from typing import Dict, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError


LOGGER = logging.getLogger(__name__)

THUMBNAIL_SIZE: Tuple[int, int] = (128, 128)

_SAVE_OPTIONS: Dict[str, Tuple[str, Dict[str, object]]] = {
    "webp": ("WEBP", {"quality": 80}),
    "jpeg": ("JPEG", {"quality": 80, "optimize": True}),
    "png": ("PNG", {"optimize": True}),
}


class ImageCodecError(RuntimeError):
    """Raised when image bytes cannot be decoded or encoded."""


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as error:
        raise ImageCodecError(f"Unable to decode image: {error}") from error
    return ImageOps.exif_transpose(image) or image


def _flatten(image: Image.Image) -> Image.Image:
    """Return an RGB copy of *image* with any transparency composited onto white."""

    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def _encode(image: Image.Image, pillow_format: str, options: Dict[str, object]) -> bytes:
    buffer = io.BytesIO()
    try:
        image.save(buffer, format=pillow_format, **options)
    except (OSError, ValueError, KeyError) as error:
        raise ImageCodecError(f"Unable to encode {pillow_format}: {error}") from error
    return buffer.getvalue()


class PillowImageCodec:
    """Transcode and thumbnail image bytes with Pillow."""

    supported_formats = tuple(_SAVE_OPTIONS)

    def convert(self, data: bytes, fmt: str) -> bytes:
        try:
            pillow_format, options = _SAVE_OPTIONS[fmt]
        except KeyError as error:
            raise ImageCodecError(f"Unsupported output format '{fmt}'") from error

        image = _open(data)
        if pillow_format == "JPEG":
            image = _flatten(image)
        elif image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            image = image.convert("RGBA")
        encoded = _encode(image, pillow_format, options)
        LOGGER.debug(
            "Converted %d bytes (%s %sx%s) to %s (%d bytes)",
            len(data),
            image.mode,
            image.width,
            image.height,
            pillow_format,
            len(encoded),
        )
        return encoded

    def thumbnail(self, data: bytes) -> bytes:
        """Return a 128x128 cover-cropped WebP thumbnail of *data*."""

        image = _open(data)
        if image.mode not in ("RGB", "RGBA"):
            image = image.convert("RGBA" if "A" in image.getbands() or image.mode == "P" else "RGB")
        fitted = ImageOps.fit(image, THUMBNAIL_SIZE, method=Image.Resampling.LANCZOS)
        return _encode(fitted, "WEBP", {"quality": 75})


__all__ = ["ImageCodecError", "PillowImageCodec", "THUMBNAIL_SIZE"]
