from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from mailbridge.core.credentials import BackendKind, CredentialRecord

SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.compose",
]


class GmailOAuthBootstrap:
    """Interactive installed-app OAuth flow that yields a refreshable record."""

    def __init__(self, client_secret_path: Path):
        self.client_secret_path = client_secret_path

    def load_client_config(self) -> dict:
        if not self.client_secret_path.exists():
            raise FileNotFoundError(f"Google OAuth client secret not found: {self.client_secret_path}")
        try:
            with self.client_secret_path.open("r", encoding="utf-8-sig") as fh:
                return json.load(fh)
        except json.JSONDecodeError as exc:
            raise ValueError(
                "Invalid OAuth client JSON. Re-download it from the Google Cloud console."
            ) from exc

    def client_credentials(self) -> tuple[str | None, str | None]:
        config = self.load_client_config()
        section = config.get("installed") or config.get("web") or {}
        return section.get("client_id"), section.get("client_secret")

    def run(self, expected_email: str | None = None) -> CredentialRecord:
        from google_auth_oauthlib.flow import InstalledAppFlow
        from googleapiclient.discovery import build

        flow = InstalledAppFlow.from_client_config(self.load_client_config(), SCOPES)
        creds = flow.run_local_server(port=0)

        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        email = service.users().getProfile(userId="me").execute().get("emailAddress")
        if not email:
            raise ValueError("Failed to read the account email from the Gmail profile")
        if expected_email and email.lower() != expected_email.lower():
            raise ValueError(f"Signed in as {email}, expected {expected_email}")

        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        return CredentialRecord(
            account_email=email,
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=expiry or datetime.now(timezone.utc) + timedelta(hours=1),
            backend_kind=BackendKind.GOOGLE,
        )
