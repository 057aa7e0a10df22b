"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps messages
consistent regardless of delivery channel.
"""

from __future__ import annotations

import html
import re
from typing import Optional

from core.config import NotificationConfig
from core.models import Message, NotificationMatch

DIVIDER = "──────────────"


def format_source_label(source: Optional[str], source_aliases: dict[str, str]) -> str:
    """Return a human-friendly source label, using configured aliases."""

    if not source:
        return "unknown"
    alias = source_aliases.get(source)
    if not alias:
        return source
    return f"{alias} ({source})"


def preview_text(text: str, limit: int) -> str:
    """Collapse whitespace and clip to ``limit`` characters."""

    collapsed = re.sub(r"\s+", " ", text or "").strip()
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[:limit].rstrip() + "..."


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)} m"
    return f"{meters / 1000:.1f} km"


def message_link(app_url: str, message_id: str) -> str:
    return f"{app_url.rstrip('/')}/m/{message_id}"


def _where(match: NotificationMatch, message: Message) -> str:
    if message.city_wide:
        return "whole city"
    return f"{format_distance(match.distance)} from your zone"


def _format_markdown(
    match: NotificationMatch,
    message: Message,
    config: NotificationConfig,
    source_aliases: dict[str, str],
) -> str:
    """Create the Markdown notification body used by the Telethon adapter."""

    # Telegram Markdown is supported by passing parse_mode="Markdown".
    def escape_md(value: str) -> str:
        for ch in r"*[`":
            value = value.replace(ch, f"\\{ch}")
        return value

    lines = [
        f"**Source:** {escape_md(format_source_label(message.source, source_aliases))}",
        f"**Where:** {escape_md(_where(match, message))}",
        f"**Categories:** {escape_md(', '.join(message.categories))}",
        DIVIDER,
        "",
        escape_md(preview_text(message.text, config.preview_chars)),
        "",
        "**Link:**",
        message_link(config.app_url, message.id),
        DIVIDER,
    ]
    return "\n".join(lines)


def _format_html(
    match: NotificationMatch,
    message: Message,
    config: NotificationConfig,
    source_aliases: dict[str, str],
) -> str:
    """Create the HTML notification body used by the Bot API adapter."""

    source = html.escape(format_source_label(message.source, source_aliases))
    categories = html.escape(", ".join(message.categories))
    excerpt = html.escape(preview_text(message.text, config.preview_chars))
    safe_link = html.escape(message_link(config.app_url, message.id))

    parts = [
        f"<b>Source:</b> {source}",
        f"<b>Where:</b> {html.escape(_where(match, message))}",
        f"<b>Categories:</b> {categories}",
        DIVIDER,
        "",
        excerpt,
        "",
        "<b>Link:</b>",
        f"<a href=\"{safe_link}\">{safe_link}</a>",
        DIVIDER,
    ]
    return "\n".join(parts)


def format_notification(
    match: NotificationMatch,
    message: Message,
    config: NotificationConfig,
    source_aliases: dict[str, str],
    mode: str,
) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(match, message, config, source_aliases)
    if mode == "html":
        return _format_html(match, message, config, source_aliases)
    raise ValueError(f"Unsupported notification format: {mode}")
