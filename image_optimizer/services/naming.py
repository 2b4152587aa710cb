"""Utility helpers for consistent, filesystem-safe asset naming."""

from __future__ import annotations

from datetime import datetime
import re
from typing import Container, Optional, Tuple

__all__ = [
    "RECONVERT_TIMESTAMP_FORMAT",
    "derive_display_name",
    "derive_reconvert_name",
    "derive_storage_name",
    "format_timestamp",
    "sanitize_base_name",
    "sanitize_session_id",
    "split_name",
    "thumbnail_name_for",
]


RECONVERT_TIMESTAMP_FORMAT = "%d%m%Y%H%M%S"
THUMBNAIL_EXTENSION = "webp"

_PLACEHOLDER = "_"
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_UNSAFE_SESSION_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_RECONVERT_SUFFIX = re.compile(r"_\d{14}(?:_\d+)?$")


def sanitize_base_name(raw: str) -> str:
    """Return *raw* with every character outside ``[A-Za-z0-9._-]`` replaced.

    Leading dots are dropped so the result can never be ``.``/``..`` or a hidden
    file. Applying the function twice yields the same value.
    """

    cleaned = _UNSAFE_NAME_CHARS.sub(_PLACEHOLDER, raw or "").lstrip(".")
    return cleaned or "image"


def sanitize_session_id(raw: Optional[str]) -> str:
    """Strip every character outside ``[A-Za-z0-9_-]`` from a session token."""

    return _UNSAFE_SESSION_CHARS.sub("", (raw or "").strip())


def split_name(raw: str) -> Tuple[str, str]:
    """Split a client-supplied file name into ``(base, extension)``.

    Directory components sent by some browsers are discarded and a leading dot
    does not start an extension.
    """

    name = (raw or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    stem, dot, extension = name.rpartition(".")
    if not dot or not stem:
        return name, ""
    return stem, extension


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Return the 14-digit ``DDMMYYYYHHMMSS`` stamp used for re-converted outputs."""

    return (moment or datetime.now()).strftime(RECONVERT_TIMESTAMP_FORMAT)


def thumbnail_name_for(storage_name: str) -> str:
    """Return the companion WebP thumbnail name for *storage_name*.

    The output extension is folded into the stem so ``cat.png`` and ``cat.webp``
    never share a thumbnail.
    """

    stem = sanitize_base_name(storage_name.replace(".", _PLACEHOLDER))
    return f"{stem}_thumb.{THUMBNAIL_EXTENSION}"


def _compose(base: str, extension: str) -> str:
    stem = sanitize_base_name(base)
    extension = sanitize_base_name(extension.lstrip(".")).lower() if extension else ""
    return f"{stem}.{extension}" if extension else stem


def _is_taken(candidate: str, taken: Container[str], *, with_thumbnail: bool) -> bool:
    if candidate in taken:
        return True
    return with_thumbnail and thumbnail_name_for(candidate) in taken


def derive_storage_name(
    safe_base: str,
    extension: str,
    taken: Container[str] = (),
    *,
    with_thumbnail: bool = False,
) -> str:
    """Return ``<base>.<ext>``, disambiguated with ``(1)``, ``(2)``… against *taken*.

    Each candidate is re-sanitised, so ``cat (1)`` is stored as ``cat__1_``.
    With ``with_thumbnail`` the companion thumbnail name must be free as well.
    """

    candidate = _compose(safe_base, extension)
    counter = 1
    while _is_taken(candidate, taken, with_thumbnail=with_thumbnail):
        candidate = _compose(f"{safe_base} ({counter})", extension)
        counter += 1
    return candidate


def derive_display_name(base: str, existing: Container[str] = ()) -> str:
    """Return *base* or ``<base> (n)`` so it is unique within *existing*."""

    base = base.strip() or "image"
    candidate = base
    counter = 1
    while candidate in existing:
        candidate = f"{base} ({counter})"
        counter += 1
    return candidate


def derive_reconvert_name(
    display_name: str,
    timestamp: Optional[str] = None,
    *,
    extension: str = "",
    taken: Container[str] = (),
    with_thumbnail: bool = False,
) -> str:
    """Return a fresh timestamped name derived from *display_name*.

    Any earlier ``_<14 digits>`` stamp (and its tie-break counter) is removed
    before the new stamp is appended, so repeated re-conversions never grow the
    name. Names already in *taken* get ``_1``, ``_2``… appended.
    """

    base = _RECONVERT_SUFFIX.sub("", (display_name or "").strip()) or "image"
    stamp = timestamp or format_timestamp()
    candidate = _compose(f"{base}_{stamp}", extension)
    sequence = 1
    while _is_taken(candidate, taken, with_thumbnail=with_thumbnail):
        candidate = _compose(f"{base}_{stamp}_{sequence}", extension)
        sequence += 1
    return candidate
