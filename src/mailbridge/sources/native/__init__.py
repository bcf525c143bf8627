from .client import NativeClient
from .drafts import NativeDraftSource, drafts_from_thread_list

__all__ = ["NativeClient", "NativeDraftSource", "drafts_from_thread_list"]
