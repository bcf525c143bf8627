from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_DEBUG_PORT = 9333
DEFAULT_TARGET_URL_MATCH = "mail.superhuman.com"
DEFAULT_CLIENT_EXECUTABLE = "/Applications/Superhuman.app/Contents/MacOS/Superhuman"
DEFAULT_NATIVE_API_BASE = "https://mail.superhuman.com/~backend/v3"


@dataclass(slots=True)
class Settings:
    home_dir: Path
    credentials_path: Path
    logs_dir: Path
    debug_port: int
    target_url_match: str
    client_executable: Path
    native_api_base: str
    google_client_secret_path: Path
    google_client_id: str | None = None
    google_client_secret: str | None = None
    microsoft_client_id: str | None = None
    microsoft_tenant: str = "common"
    default_account: str | None = None
    launch_timeout_sec: float = 30.0
    launch_poll_interval_sec: float = 1.0
    account_switch_delay_sec: float = 1.0
    http_timeout_sec: float = 30.0

    @classmethod
    def load(cls, base_dir: Path | None = None) -> Settings:
        load_dotenv(override=False)

        home_env = os.getenv("MAILBRIDGE_HOME")
        if home_env:
            home_dir = Path(home_env).expanduser().resolve()
        elif base_dir is not None:
            home_dir = base_dir.expanduser().resolve()
        else:
            home_dir = (Path.home() / ".config" / "mailbridge").resolve()

        credentials_path = Path(
            os.getenv("MAILBRIDGE_CREDENTIALS_PATH", home_dir / "credentials.json")
        ).expanduser().resolve()
        logs_dir = Path(os.getenv("MAILBRIDGE_LOG_DIR", home_dir / "logs")).expanduser().resolve()
        client_executable = Path(
            os.getenv("MAILBRIDGE_CLIENT_EXECUTABLE", DEFAULT_CLIENT_EXECUTABLE)
        ).expanduser()
        google_client_secret_path = Path(
            os.getenv("GOOGLE_OAUTH_CLIENT_SECRET_PATH", home_dir / "google_client_secret.json")
        ).expanduser().resolve()

        return cls(
            home_dir=home_dir,
            credentials_path=credentials_path,
            logs_dir=logs_dir,
            debug_port=int(os.getenv("MAILBRIDGE_DEBUG_PORT", str(DEFAULT_DEBUG_PORT))),
            target_url_match=os.getenv("MAILBRIDGE_TARGET_URL", DEFAULT_TARGET_URL_MATCH),
            client_executable=client_executable,
            native_api_base=os.getenv("MAILBRIDGE_NATIVE_API_BASE", DEFAULT_NATIVE_API_BASE).rstrip("/"),
            google_client_secret_path=google_client_secret_path,
            google_client_id=os.getenv("GOOGLE_OAUTH_CLIENT_ID"),
            google_client_secret=os.getenv("GOOGLE_OAUTH_CLIENT_SECRET"),
            microsoft_client_id=os.getenv("MICROSOFT_OAUTH_CLIENT_ID"),
            microsoft_tenant=os.getenv("MICROSOFT_OAUTH_TENANT", "common"),
            default_account=os.getenv("MAILBRIDGE_ACCOUNT"),
            launch_timeout_sec=float(os.getenv("MAILBRIDGE_LAUNCH_TIMEOUT_SEC", "30")),
            launch_poll_interval_sec=float(os.getenv("MAILBRIDGE_LAUNCH_POLL_SEC", "1")),
            account_switch_delay_sec=float(os.getenv("MAILBRIDGE_SWITCH_DELAY_SEC", "1")),
            http_timeout_sec=float(os.getenv("MAILBRIDGE_HTTP_TIMEOUT_SEC", "30")),
        )

    def ensure_directories(self) -> None:
        for path in [self.home_dir, self.logs_dir, self.credentials_path.parent]:
            path.mkdir(parents=True, exist_ok=True)
