from __future__ import annotations

from datetime import datetime, timezone

import pytest

from adapters.notification_formatting import (
    format_distance,
    format_notification,
    format_source_label,
    preview_text,
)
from core.config import NotificationConfig
from core.models import Message, NotificationMatch

CONFIG = NotificationConfig(app_url="https://civicwatch.example/", preview_chars=100)


def _message(text: str = "Спиране на водата <днес>", **overrides) -> Message:
    fields = dict(
        id="aB3xYz12",
        text=text,
        source="sofiyska-voda",
        locality="bg.sofia",
        created_at=datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc),
        dedup_key="key",
        categories=["water", "construction-and-repairs"],
    )
    fields.update(overrides)
    return Message(**fields)


def _match(distance: float = 250.4) -> NotificationMatch:
    return NotificationMatch(
        id="zone-1:aB3xYz12",
        user_id="user-1",
        interest_id="zone-1",
        message_id="aB3xYz12",
        distance=distance,
        matched_at=datetime(2026, 3, 10, 9, 5, tzinfo=timezone.utc),
    )


def test_format_source_label_with_alias() -> None:
    aliases = {"sofiyska-voda": "Sofiyska Voda"}
    assert format_source_label("sofiyska-voda", aliases) == "Sofiyska Voda (sofiyska-voda)"
    assert format_source_label("toplo-bg", aliases) == "toplo-bg"


def test_preview_text_is_clipped() -> None:
    text = "word " * 40
    preview = preview_text(text, 100)
    assert preview.endswith("...")
    assert len(preview) <= 103
    assert preview_text("  short   text ", 100) == "short text"


def test_format_distance() -> None:
    assert format_distance(250.4) == "250 m"
    assert format_distance(1530) == "1.5 km"


def test_html_notification_escapes_and_links() -> None:
    body = format_notification(_match(), _message(), CONFIG, {}, mode="html")

    assert "&lt;днес&gt;" in body
    assert '<a href="https://civicwatch.example/m/aB3xYz12">' in body
    assert "250 m from your zone" in body
    assert "water, construction-and-repairs" in body


def test_markdown_notification() -> None:
    body = format_notification(_match(), _message(city_wide=True), CONFIG, {}, mode="markdown")

    assert "**Where:** whole city" in body
    assert "https://civicwatch.example/m/aB3xYz12" in body


def test_unsupported_mode() -> None:
    with pytest.raises(ValueError):
        format_notification(_match(), _message(), CONFIG, {}, mode="plain")
