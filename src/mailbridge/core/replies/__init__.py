from .planner import (
    ReplyMode,
    ReplyPlan,
    address_key,
    build_reply_plan,
    compute_recipients,
    compute_threading_metadata,
    dedupe_addresses,
    normalize_subject,
)

__all__ = [
    "ReplyMode",
    "ReplyPlan",
    "address_key",
    "build_reply_plan",
    "compute_recipients",
    "compute_threading_metadata",
    "dedupe_addresses",
    "normalize_subject",
]
