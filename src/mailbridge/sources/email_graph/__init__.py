from .client import GraphClient, snapshot_from_messages, to_recipients
from .drafts import GraphDraftSource

__all__ = ["GraphClient", "GraphDraftSource", "snapshot_from_messages", "to_recipients"]
