from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class CredentialPersistence(Protocol):
    def load(self) -> dict[str, dict[str, Any]]: ...

    def save(self, payload: dict[str, dict[str, Any]]) -> None: ...


class JsonFileCredentialPersistence:
    """Whole-cache JSON file keyed by account email."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8-sig") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Credential cache is not valid JSON: {self.path}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Credential cache must contain a JSON object: {self.path}")
        return data

    def save(self, payload: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".credentials-", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, ensure_ascii=False)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Credential cache written: %s (%s accounts)", self.path, len(payload))


class MemoryCredentialPersistence:
    def __init__(self, initial: dict[str, dict[str, Any]] | None = None):
        self.payload: dict[str, dict[str, Any]] = dict(initial or {})
        self.save_count = 0

    def load(self) -> dict[str, dict[str, Any]]:
        return json.loads(json.dumps(self.payload))

    def save(self, payload: dict[str, dict[str, Any]]) -> None:
        self.payload = json.loads(json.dumps(payload))
        self.save_count += 1
