from __future__ import annotations

from pathlib import Path

import pytest

from image_optimizer.services import layout as layout_module
from image_optimizer.services.errors import InvalidPath
from image_optimizer.services.layout import AssetLayout


@pytest.fixture()
def layout(tmp_path: Path) -> AssetLayout:
    return AssetLayout(tmp_path / "sessions")


def test_session_paths_follow_original_output_layout(layout: AssetLayout) -> None:
    paths = layout.ensure_session_dirs("abc123")

    assert paths.root == layout.root / "abc123"
    assert paths.original_dir == paths.root / "original"
    assert paths.output_dir == paths.root / "output"
    assert paths.original_dir.is_dir() and paths.output_dir.is_dir()

    layout.ensure_session_dirs("abc123")
    assert layout.session_exists_on_disk("abc123")


@pytest.mark.parametrize(
    "name",
    ["../escape.webp", "..", ".", "", "a/b.webp", "a\\b.webp", "cat (1).webp", "nul\x00.png"],
)
def test_resolve_rejects_unsafe_names(layout: AssetLayout, name: str) -> None:
    with pytest.raises(InvalidPath):
        layout.resolve_output_path("abc123", name)
    with pytest.raises(InvalidPath):
        layout.resolve_original_path("abc123", name)


@pytest.mark.parametrize("session_id", ["", "..", "../other", "a b", "x/y"])
def test_resolve_rejects_unsafe_session_ids(layout: AssetLayout, session_id: str) -> None:
    with pytest.raises(InvalidPath):
        layout.resolve_output_path(session_id, "cat.webp")


def test_resolve_rejects_symlink_escape(layout: AssetLayout, tmp_path: Path) -> None:
    paths = layout.ensure_session_dirs("abc123")
    outside = tmp_path / "outside.webp"
    outside.write_bytes(b"secret")
    (paths.output_dir / "link.webp").symlink_to(outside)

    with pytest.raises(InvalidPath):
        layout.resolve_output_path("abc123", "link.webp")


def test_write_read_and_delete_round_trip(layout: AssetLayout) -> None:
    assert layout.write_original("abc123", "cat.png", b"original") == 8
    assert layout.write_output("abc123", "cat.webp", b"converted") == 9
    assert layout.write_thumbnail("abc123", "cat_webp_thumb.webp", b"thumb") == 5

    assert layout.read_original("abc123", "cat.png") == b"original"
    assert layout.read_output("abc123", "cat.webp") == b"converted"
    assert layout.output_exists("abc123", "cat_webp_thumb.webp")
    assert layout.original_exists("abc123", "cat.png")
    assert layout.read_output("abc123", "missing.webp") is None

    target = layout.resolve_output_path("abc123", "cat.webp")
    assert layout.delete_if_exists(target, session_id="abc123") is True
    assert layout.delete_if_exists(target, session_id="abc123") is False


def test_failed_write_leaves_no_partial_file(layout: AssetLayout, monkeypatch) -> None:
    paths = layout.ensure_session_dirs("abc123")

    def failing_replace(source, destination):
        raise OSError("disk full")

    monkeypatch.setattr(layout_module.os, "replace", failing_replace)

    with pytest.raises(OSError):
        layout.write_output("abc123", "cat.webp", b"data")

    assert list(paths.output_dir.iterdir()) == []


def test_remove_session_tree_and_iteration(layout: AssetLayout) -> None:
    layout.ensure_session_dirs("one")
    layout.ensure_session_dirs("two")
    (layout.root / "not a session").mkdir()

    assert list(layout.iter_session_dirs()) == ["one", "two"]

    assert layout.remove_session_tree("one") is True
    assert layout.remove_session_tree("one") is False
    assert list(layout.iter_session_dirs()) == ["two"]
