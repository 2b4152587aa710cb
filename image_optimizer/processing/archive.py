"""ZIP bundling of converted session files."""

from __future__ import annotations

import io
import zipfile
from typing import Iterable, Tuple


def build_zip_archive(entries: Iterable[Tuple[str, bytes]]) -> bytes:
    """Return a deflated ZIP containing ``(arcname, data)`` *entries*.

    Repeated arcnames are kept apart as ``name (1).ext``, ``name (2).ext``…
    """

    buffer = io.BytesIO()
    seen: set[str] = set()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for arcname, data in entries:
            stem, dot, extension = arcname.rpartition(".")
            if not dot:
                stem, extension = arcname, ""
            candidate = arcname
            counter = 1
            while candidate.lower() in seen:
                candidate = f"{stem} ({counter}).{extension}" if extension else f"{stem} ({counter})"
                counter += 1
            seen.add(candidate.lower())
            archive.writestr(candidate, data)
    return buffer.getvalue()


__all__ = ["build_zip_archive"]
