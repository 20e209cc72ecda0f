"""Event helpers shared by the DM and group services."""

from __future__ import annotations

from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from obscur.models.event import Event


PREVIEW_CHARS = 80
REPLY_MARKER = "reply"


def preview_text(text: str, limit: int = PREVIEW_CHARS) -> str:
    """Single-line preview of *text*, cut at *limit* characters."""
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 1].rstrip() + "…"


def reply_target(event: Event) -> str | None:
    """Event id marked as the reply target, or the only ``e`` tag if unmarked."""
    e_tags = [tag for tag in event.tags if len(tag) >= 2 and tag[0] == "e"]
    for tag in e_tags:
        if len(tag) >= 4 and tag[3] == REPLY_MARKER:
            return tag[1]
    if len(e_tags) == 1:
        return e_tags[0][1]
    return None
