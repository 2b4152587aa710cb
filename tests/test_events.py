from __future__ import annotations

import logging
from pathlib import Path

from image_optimizer.logging_utils import configure_logging, get_log_file_path
from image_optimizer.services.events import (
    emit_file_event,
    emit_item_event,
    normalize_context,
)


def test_normalize_context_drops_empty_values() -> None:
    context = normalize_context(
        {"path": Path("/tmp/a b"), "blank": "  ", "none": None, "count": 3, "data": b"abc"}
    )

    assert context == {"path": "/tmp/a b", "count": 3, "data": "<3 bytes>"}


def test_structured_events_are_logged_with_details(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="image_optimizer.events"):
        emit_file_event("write_output", session_id="s1", payload={"name": "cat.webp"})
        emit_item_event("converted", "cat.png", session_id="s1", payload={"bytes": 10})

    messages = [record.getMessage() for record in caplog.records]
    assert messages == [
        "[FILE_OP] write_output (session=s1, name=cat.webp)",
        "[ITEM_STATE] converted (session=s1, item=cat.png, bytes=10)",
    ]
    assert caplog.records[1].event_type == "ITEM_STATE"
    assert caplog.records[1].event_details["item"] == "cat.png"


def test_configure_logging_replaces_previous_handlers(tmp_path: Path) -> None:
    root = logging.getLogger()
    first = logging.NullHandler()
    second = logging.NullHandler()
    try:
        configure_logging(handlers=[first])
        configure_logging(handlers=[second])

        assert first not in root.handlers
        assert second in root.handlers
    finally:
        root.removeHandler(second)

    assert get_log_file_path(tmp_path) == tmp_path / "image_optimizer.log"
