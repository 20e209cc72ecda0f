"""Shared collaborator interfaces and event helpers for the services layer."""

from .providers import (
    IdentityProvider,
    LocalIdentity,
    MemoryRequestsInbox,
    MemoryTrustProvider,
    RequestEntry,
    RequestsInbox,
    TrustProvider,
)
from .utils import preview_text, reply_target


__all__ = [
    "IdentityProvider",
    "LocalIdentity",
    "MemoryRequestsInbox",
    "MemoryTrustProvider",
    "RequestEntry",
    "RequestsInbox",
    "TrustProvider",
    "preview_text",
    "reply_target",
]
