"""Pure helpers for the DM controller: event building and outcome mapping."""

from __future__ import annotations

from typing import TYPE_CHECKING

from obscur.models.constants import EventKind, MessageStatus
from obscur.models.event import UnsignedEvent
from obscur.models.message import RelayResult
from obscur.services.common.utils import REPLY_MARKER


if TYPE_CHECKING:
    from obscur.core.relay_pool import MultiRelayPublishResult


def build_dm_event(
    sender_pubkey: str,
    recipient_pubkey: str,
    ciphertext: str,
    created_at: int,
    reply_to: str | None = None,
) -> UnsignedEvent:
    """Kind-4 event addressed to *recipient_pubkey* via a ``p`` tag."""
    tags: list[tuple[str, ...]] = [("p", recipient_pubkey)]
    if reply_to:
        tags.append(("e", reply_to, "", REPLY_MARKER))
    return UnsignedEvent(
        pubkey=sender_pubkey,
        created_at=created_at,
        kind=EventKind.ENCRYPTED_DM,
        tags=tuple(tags),
        content=ciphertext,
    )


def relay_results_of(result: MultiRelayPublishResult) -> list[RelayResult]:
    return [
        RelayResult(relay_url=r.relay_url, success=r.success, error=r.error, latency=r.latency)
        for r in result.results
    ]


def publish_outcome(result: MultiRelayPublishResult) -> MessageStatus:
    """Map a publish attempt to the message status it implies.

    ``accepted`` if any relay sent ``OK true``; ``rejected`` if every relay
    that answered sent ``OK false``; ``queued`` when nobody answered.
    """
    if result.success:
        return MessageStatus.ACCEPTED
    if any(r.acknowledged for r in result.results):
        return MessageStatus.REJECTED
    return MessageStatus.QUEUED
