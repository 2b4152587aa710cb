"""Image codec and archive backends."""

from .archive import build_zip_archive
from .imaging import ImageCodecError, PillowImageCodec, THUMBNAIL_SIZE

__all__ = [
    "ImageCodecError",
    "PillowImageCodec",
    "THUMBNAIL_SIZE",
    "build_zip_archive",
]
