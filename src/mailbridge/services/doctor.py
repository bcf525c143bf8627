from __future__ import annotations

import json
import platform
import sys

import requests

from mailbridge.config import Settings


def run_doctor_checks(settings: Settings) -> list[dict[str, str]]:
    checks: list[dict[str, str]] = []

    checks.append(
        {
            "check": "python_version",
            "status": "ok" if sys.version_info >= (3, 11) else "warn",
            "detail": platform.python_version(),
        }
    )

    cache = settings.credentials_path
    if cache.exists():
        try:
            with cache.open("r", encoding="utf-8-sig") as fh:
                accounts = json.load(fh)
            checks.append({"check": "credential_cache", "status": "ok", "detail": f"{cache} ({len(accounts)} accounts)"})
        except (OSError, ValueError) as exc:
            checks.append({"check": "credential_cache", "status": "fail", "detail": f"{cache}: {exc}"})
    else:
        checks.append({"check": "credential_cache", "status": "warn", "detail": f"{cache} (not created yet)"})

    google_configured = settings.google_client_secret_path.exists() or bool(
        settings.google_client_id and settings.google_client_secret
    )
    checks.append(
        {
            "check": "google_oauth_client",
            "status": "ok" if google_configured else "warn",
            "detail": str(settings.google_client_secret_path),
        }
    )

    checks.append(
        {
            "check": "microsoft_oauth_client",
            "status": "ok" if settings.microsoft_client_id else "warn",
            "detail": settings.microsoft_client_id or "MICROSOFT_OAUTH_CLIENT_ID not set",
        }
    )

    url = f"http://127.0.0.1:{settings.debug_port}/json/version"
    try:
        response = requests.get(url, timeout=3)
        response.raise_for_status()
        browser = response.json().get("Browser", "unknown")
        checks.append({"check": "debug_endpoint", "status": "ok", "detail": f"{url} ({browser})"})
    except (requests.RequestException, ValueError) as exc:
        checks.append({"check": "debug_endpoint", "status": "warn", "detail": f"{url}: {exc.__class__.__name__}"})

    return checks
