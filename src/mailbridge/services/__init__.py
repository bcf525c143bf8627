from .doctor import run_doctor_checks
from .drafts import DraftAggregationService, SourceFailure, draft_sources_for, filter_drafts
from .providers import CredentialProvider, LiveSessionProvider, ProviderResolver
from .replies import DispatchResult, ReplyDispatcher

__all__ = [
    "CredentialProvider",
    "DispatchResult",
    "DraftAggregationService",
    "LiveSessionProvider",
    "ProviderResolver",
    "ReplyDispatcher",
    "SourceFailure",
    "draft_sources_for",
    "filter_drafts",
    "run_doctor_checks",
]
