"""Configuration loading utilities for the Image Optimizer service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".image_optimizer_write_check"

_DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024
_DEFAULT_CONVERSION_WORKERS = 4


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The boolean flag reports whether a
    fallback had to be used. When nothing can be prepared the preferred path is
    returned unchanged so that bootstrap can report the failure.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _read_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid integer for %s: %r", name, raw)
        return default


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes (``0`` disables it)."""

    return _read_int_env("IMAGE_OPTIMIZER_MAX_UPLOAD_BYTES", _DEFAULT_MAX_UPLOAD_BYTES)


def get_conversion_workers() -> int:
    """Return the size of the per-batch conversion pool."""

    return max(1, _read_int_env("IMAGE_OPTIMIZER_CONVERSION_WORKERS", _DEFAULT_CONVERSION_WORKERS))


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths for the service."""

    storage_root: Path
    database_file: Path
    sessions_root: Path

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".image_optimizer" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        preferred_sessions = (base_path / mapping["sessions_root"]).resolve()

        def _relocate(path: Path) -> Path:
            try:
                relative = path.relative_to(preferred_storage)
            except ValueError:
                return path
            relocated = (storage_root / relative).resolve()
            LOGGER.warning("Relocating '%s' to fallback storage '%s'.", path, relocated)
            return relocated

        if storage_fallback_used:
            database_file = _relocate(database_file)
            preferred_sessions = _relocate(preferred_sessions)

        sessions_root, _ = _select_writable_directory(
            preferred_sessions,
            label="sessions",
            fallbacks=(storage_root / "sessions",),
        )

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            sessions_root=sessions_root,
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the service configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "get_conversion_workers", "get_max_upload_bytes", "load_config"]
