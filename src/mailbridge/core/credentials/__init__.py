from .models import BackendKind, CredentialRecord, normalize_email, parse_expiry
from .persistence import (
    CredentialPersistence,
    JsonFileCredentialPersistence,
    MemoryCredentialPersistence,
)
from .refresh import (
    CredentialExtractor,
    GoogleTokenRefresher,
    MicrosoftTokenRefresher,
    TokenRefresher,
    utc_now,
)
from .store import REFRESH_MARGIN_SECONDS, CredentialStore

__all__ = [
    "BackendKind",
    "CredentialRecord",
    "CredentialExtractor",
    "CredentialPersistence",
    "CredentialStore",
    "GoogleTokenRefresher",
    "JsonFileCredentialPersistence",
    "MemoryCredentialPersistence",
    "MicrosoftTokenRefresher",
    "REFRESH_MARGIN_SECONDS",
    "TokenRefresher",
    "normalize_email",
    "parse_expiry",
    "utc_now",
]
