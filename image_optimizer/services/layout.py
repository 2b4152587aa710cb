"""On-disk layout of session assets (``<session>/original`` and ``<session>/output``)."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .errors import InvalidPath
from .events import emit_file_event
from .naming import sanitize_base_name, sanitize_session_id


LOGGER = logging.getLogger(__name__)

ORIGINAL_DIR_NAME = "original"
OUTPUT_DIR_NAME = "output"


@dataclass(frozen=True)
class SessionPaths:
    """Directories owned by one session."""

    session_id: str
    root: Path
    original_dir: Path
    output_dir: Path

    @classmethod
    def build(cls, sessions_root: Path, session_id: str) -> "SessionPaths":
        root = sessions_root / session_id
        return cls(
            session_id=session_id,
            root=root,
            original_dir=root / ORIGINAL_DIR_NAME,
            output_dir=root / OUTPUT_DIR_NAME,
        )


def _safe_join(base_dir: Path, name: str) -> Path:
    """Join *name* onto *base_dir* and ensure the result stays inside it."""

    base_dir = base_dir.resolve()
    resolved = (base_dir / name).resolve()
    if base_dir not in resolved.parents:
        raise InvalidPath(f"'{name}' resolves outside of its session directory")
    return resolved


class AssetLayout:
    """Owns every byte written below ``sessions_root``.

    Session identifiers and file names are re-validated on every call; a value
    that changes under sanitisation, contains a path separator or escapes the
    session directory is rejected with :class:`InvalidPath`.
    """

    def __init__(self, sessions_root: Path) -> None:
        self._root = Path(sessions_root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------
    @staticmethod
    def _checked_session_id(session_id: str) -> str:
        cleaned = sanitize_session_id(session_id)
        if not cleaned or cleaned != session_id:
            raise InvalidPath("Invalid session identifier")
        return cleaned

    @staticmethod
    def _checked_name(name: str) -> str:
        if not name or name in {".", ".."} or any(sep in name for sep in ("/", "\\", "\x00")):
            raise InvalidPath(f"Invalid file name '{name}'")
        if sanitize_base_name(name) != name:
            raise InvalidPath(f"Invalid file name '{name}'")
        return name

    def session_paths(self, session_id: str) -> SessionPaths:
        paths = SessionPaths.build(self._root, self._checked_session_id(session_id))
        if self._root not in paths.root.resolve().parents:
            raise InvalidPath("Invalid session identifier")
        return paths

    def resolve_output_path(self, session_id: str, storage_name: str) -> Path:
        paths = self.session_paths(session_id)
        return _safe_join(paths.output_dir, self._checked_name(storage_name))

    def resolve_original_path(self, session_id: str, storage_name: str) -> Path:
        paths = self.session_paths(session_id)
        return _safe_join(paths.original_dir, self._checked_name(storage_name))

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------
    def ensure_session_dirs(self, session_id: str) -> SessionPaths:
        paths = self.session_paths(session_id)
        for directory in (paths.original_dir, paths.output_dir):
            existed = directory.exists()
            directory.mkdir(parents=True, exist_ok=True)
            if not existed:
                emit_file_event("ensure_directory", session_id=session_id, payload={"path": directory})
        return paths

    def session_exists_on_disk(self, session_id: str) -> bool:
        return self.session_paths(session_id).root.is_dir()

    def remove_session_tree(self, session_id: str) -> bool:
        root = self.session_paths(session_id).root
        try:
            shutil.rmtree(root)
        except FileNotFoundError:
            return False
        except OSError as error:
            LOGGER.warning("Could not remove session directory %s: %s", root, error)
            return False
        emit_file_event("remove_session_tree", session_id=session_id, payload={"path": root})
        return True

    def iter_session_dirs(self) -> Iterator[str]:
        """Yield the identifiers of session directories present on disk."""

        if not self._root.is_dir():
            return
        for child in sorted(self._root.iterdir()):
            if child.is_dir() and sanitize_session_id(child.name) == child.name:
                yield child.name

    # ------------------------------------------------------------------
    # Byte-level I/O
    # ------------------------------------------------------------------
    def _write_bytes(self, target: Path, data: bytes, *, session_id: str, kind: str) -> int:
        start = time.perf_counter()
        target.parent.mkdir(parents=True, exist_ok=True)
        descriptor, temporary = tempfile.mkstemp(
            prefix=f".{target.name}.",
            suffix=".part",
            dir=target.parent,
        )
        try:
            handle = os.fdopen(descriptor, "wb")
        except BaseException:
            os.close(descriptor)
            with contextlib.suppress(OSError):
                os.unlink(temporary)
            raise
        try:
            with handle:
                handle.write(data)
            os.replace(temporary, target)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(temporary)
            raise
        emit_file_event(
            f"write_{kind}",
            session_id=session_id,
            payload={"name": target.name, "bytes": len(data)},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return len(data)

    def write_original(self, session_id: str, name: str, data: bytes) -> int:
        target = self.resolve_original_path(session_id, name)
        return self._write_bytes(target, data, session_id=session_id, kind="original")

    def write_output(self, session_id: str, name: str, data: bytes) -> int:
        target = self.resolve_output_path(session_id, name)
        return self._write_bytes(target, data, session_id=session_id, kind="output")

    def write_thumbnail(self, session_id: str, name: str, data: bytes) -> int:
        target = self.resolve_output_path(session_id, name)
        return self._write_bytes(target, data, session_id=session_id, kind="thumbnail")

    @staticmethod
    def _read_bytes(path: Path) -> Optional[bytes]:
        try:
            with path.open("rb") as handle:
                return handle.read()
        except FileNotFoundError:
            return None

    def read_output(self, session_id: str, name: str) -> Optional[bytes]:
        return self._read_bytes(self.resolve_output_path(session_id, name))

    def read_original(self, session_id: str, name: str) -> Optional[bytes]:
        return self._read_bytes(self.resolve_original_path(session_id, name))

    def output_exists(self, session_id: str, name: str) -> bool:
        return self.resolve_output_path(session_id, name).is_file()

    def original_exists(self, session_id: str, name: str) -> bool:
        return self.resolve_original_path(session_id, name).is_file()

    def delete_if_exists(self, path: Path, *, session_id: Optional[str] = None) -> bool:
        """Best-effort removal of *path*; a missing file is not an error."""

        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            LOGGER.warning("Could not remove %s: %s", path, error)
            return False
        emit_file_event("delete_file", session_id=session_id, payload={"name": path.name})
        return True


__all__ = ["AssetLayout", "ORIGINAL_DIR_NAME", "OUTPUT_DIR_NAME", "SessionPaths"]
