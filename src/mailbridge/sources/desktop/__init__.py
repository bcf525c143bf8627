from .app import LiveClient
from .bridge import AutomationBridge, AutomationSession, CdpBridge, CdpSession, Target, select_target

__all__ = [
    "AutomationBridge",
    "AutomationSession",
    "CdpBridge",
    "CdpSession",
    "LiveClient",
    "Target",
    "select_target",
]
