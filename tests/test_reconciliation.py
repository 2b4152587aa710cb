from __future__ import annotations

import io
import zipfile
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest

from image_optimizer.config import AppConfig
from image_optimizer.processing import PillowImageCodec
from image_optimizer.services.conversion import ConversionOrchestrator, FreshUpload, ReconvertRequest
from image_optimizer.services.errors import InvalidPath, SourceNotFound
from image_optimizer.services.layout import AssetLayout
from image_optimizer.services.reconciliation import SessionReconciler
from image_optimizer.services.storage import SessionRepository


@pytest.fixture()
def repository(temp_config: AppConfig) -> Iterator[SessionRepository]:
    repository = SessionRepository(temp_config)
    yield repository
    repository.close()


@pytest.fixture()
def layout(temp_config: AppConfig) -> AssetLayout:
    return AssetLayout(temp_config.sessions_root)


@pytest.fixture()
def reconciler(repository: SessionRepository, layout: AssetLayout) -> SessionReconciler:
    return SessionReconciler(repository, layout)


@pytest.fixture()
def orchestrator(repository: SessionRepository, layout: AssetLayout) -> Iterator[ConversionOrchestrator]:
    orchestrator = ConversionOrchestrator(repository, layout, PillowImageCodec(), max_workers=2)
    yield orchestrator
    orchestrator.close()


def _upload(orchestrator: ConversionOrchestrator, make_image, *names: str, fmt: str = "webp"):
    uploads = [
        FreshUpload(data=make_image("PNG"), filename=name, content_type="image/png") for name in names
    ]
    return orchestrator.submit_batch(fmt, "sess1", uploads=uploads)


def test_list_files_purges_records_with_missing_files(
    orchestrator, reconciler, repository, layout, make_image
) -> None:
    _upload(orchestrator, make_image, "cat.png", "dog.png")
    layout.delete_if_exists(layout.resolve_output_path("sess1", "dog_webp_thumb.webp"))

    files = reconciler.list_files("sess1")

    assert [record.storage_name for record in files] == ["cat.webp"]
    assert repository.find_by_storage_name("sess1", "dog.webp") is None


def test_list_files_purge_removes_leftovers_and_empty_session(
    orchestrator, reconciler, repository, layout, make_image
) -> None:
    _upload(orchestrator, make_image, "cat.png")
    layout.delete_if_exists(layout.resolve_output_path("sess1", "cat_webp_thumb.webp"))

    assert reconciler.list_files("sess1") == []

    assert repository.count_remaining("sess1") == 0
    assert not repository.session_exists("sess1")
    assert not layout.session_exists_on_disk("sess1")


def test_list_files_purge_keeps_original_shared_with_survivors(
    orchestrator, reconciler, repository, layout, make_image
) -> None:
    _upload(orchestrator, make_image, "cat.png")
    reconvert = orchestrator.submit_batch(
        "png",
        "sess1",
        reconverts=[ReconvertRequest(source_display_name="cat")],
    )
    reconverted_name = reconvert.converted[0].storage_name
    layout.delete_if_exists(layout.resolve_output_path("sess1", "cat_webp_thumb.webp"))

    files = reconciler.list_files("sess1")

    assert [record.storage_name for record in files] == [reconverted_name]
    assert not layout.output_exists("sess1", "cat.webp")
    assert layout.original_exists("sess1", "cat.png")
    assert repository.session_exists("sess1")


def test_list_files_for_unknown_session_is_empty(reconciler) -> None:
    assert reconciler.list_files("nobody") == []


def test_delete_one_keeps_shared_original_until_last_reference(
    orchestrator, reconciler, repository, layout, make_image
) -> None:
    _upload(orchestrator, make_image, "cat.png")
    reconvert = orchestrator.submit_batch(
        "png",
        "sess1",
        reconverts=[ReconvertRequest(source_display_name="cat")],
    )
    reconverted_name = reconvert.converted[0].storage_name

    assert reconciler.delete_one("sess1", "cat.webp") is True
    assert not layout.output_exists("sess1", "cat.webp")
    assert not layout.output_exists("sess1", "cat_webp_thumb.webp")
    assert layout.original_exists("sess1", "cat.png")

    assert reconciler.delete_one("sess1", reconverted_name) is True
    assert not layout.session_exists_on_disk("sess1")
    assert not repository.session_exists("sess1")


def test_delete_one_accepts_display_name_and_ignores_unknown(
    orchestrator, reconciler, repository, make_image
) -> None:
    _upload(orchestrator, make_image, "cat.png", "dog.png")

    assert reconciler.delete_one("sess1", "ghost.webp") is False
    assert reconciler.delete_one("sess1", "dog") is True
    assert [record.display_name for record in repository.list_files("sess1")] == ["cat"]
    assert reconciler.delete_one("nobody", "cat") is False


def test_delete_one_tolerates_files_already_gone(
    orchestrator, reconciler, repository, layout, make_image
) -> None:
    _upload(orchestrator, make_image, "cat.png")
    layout.remove_session_tree("sess1")

    assert reconciler.delete_one("sess1", "cat.webp") is True
    assert not repository.session_exists("sess1")


def test_delete_all_sweeps_everything(orchestrator, reconciler, repository, layout, make_image) -> None:
    _upload(orchestrator, make_image, "cat.png", "dog.png")

    assert reconciler.delete_all("sess1") == 2
    assert not layout.session_exists_on_disk("sess1")
    assert not repository.session_exists("sess1")
    assert reconciler.delete_all("sess1") == 0


def test_resolve_download_and_thumbnail(orchestrator, reconciler, make_image) -> None:
    _upload(orchestrator, make_image, "cat.png")

    download = reconciler.resolve_download("sess1", "cat.webp")
    assert download.download_name == "cat.webp"
    assert download.media_type == "image/webp"
    assert download.path.is_file()

    thumbnail = reconciler.resolve_thumbnail("sess1", "cat_webp_thumb.webp")
    assert thumbnail.media_type == "image/webp"

    with pytest.raises(SourceNotFound):
        reconciler.resolve_download("sess1", "missing.webp")
    with pytest.raises(SourceNotFound):
        reconciler.resolve_thumbnail("sess1", "cat.webp")


def test_resolve_rejects_traversal_before_lookup(reconciler, repository) -> None:
    with pytest.raises(InvalidPath):
        reconciler.resolve_download("sess1", "../../image-optimizer.sqlite")
    with pytest.raises(InvalidPath):
        reconciler.resolve_thumbnail("..", "cat_webp_thumb.webp")


def test_build_archive_uses_display_names(orchestrator, reconciler, make_image) -> None:
    _upload(orchestrator, make_image, "cat.png", "cat.png")

    payload = reconciler.build_archive("sess1")

    with zipfile.ZipFile(io.BytesIO(payload)) as archive:
        assert sorted(archive.namelist()) == ["cat (1).webp", "cat.webp"]


def test_build_archive_for_empty_session_raises(reconciler) -> None:
    with pytest.raises(SourceNotFound):
        reconciler.build_archive("sess1")


def test_reap_idle_sessions_removes_old_sessions_and_strays(
    orchestrator, reconciler, repository, layout, make_image
) -> None:
    _upload(orchestrator, make_image, "cat.png")
    layout.ensure_session_dirs("stray")

    fresh = reconciler.reap_idle_sessions(1, now=datetime.now(timezone.utc))
    assert fresh.sessions_removed == 0
    assert fresh.directories_removed == 1
    assert repository.session_exists("sess1")

    later = datetime.now(timezone.utc) + timedelta(hours=2)
    summary = reconciler.reap_idle_sessions(1, now=later)
    assert summary.sessions_removed == 1
    assert not repository.session_exists("sess1")
    assert not layout.session_exists_on_disk("sess1")

    with pytest.raises(ValueError):
        reconciler.reap_idle_sessions(-1)


def test_reap_idle_sessions_measures_idleness_from_newest_file(
    orchestrator, reconciler, repository, layout, make_image
) -> None:
    _upload(orchestrator, make_image, "cat.png")
    long_ago = (datetime.now(timezone.utc) - timedelta(hours=48)).isoformat()
    with repository._connect() as connection:
        connection.execute("UPDATE sessions SET created_at = ? WHERE session_id = 'sess1'", (long_ago,))

    summary = reconciler.reap_idle_sessions(24)

    assert summary.sessions_removed == 0
    assert repository.session_exists("sess1")
    assert layout.output_exists("sess1", "cat.webp")

    with repository._connect() as connection:
        connection.execute("UPDATE files SET created_at = ? WHERE session_id = 'sess1'", (long_ago,))

    assert reconciler.reap_idle_sessions(24).sessions_removed == 1
    assert not repository.session_exists("sess1")
