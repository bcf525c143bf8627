from .auth import GmailOAuthBootstrap
from .client import GmailClient, build_raw_message, snapshot_from_thread
from .drafts import GmailDraftSource

__all__ = [
    "GmailClient",
    "GmailDraftSource",
    "GmailOAuthBootstrap",
    "build_raw_message",
    "snapshot_from_thread",
]
