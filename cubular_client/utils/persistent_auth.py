"""Persistent credential storage using the file system"""
import hashlib
import json
import platform
from pathlib import Path
from typing import Dict, Optional

from cubular_client.config import STORAGE_KEYS
from cubular_client.core.models import Credential
from cubular_client.infra.logger import logger

store_logger = logger.getChild("CredentialStore")


def get_machine_id() -> str:
    """Get a unique identifier for this machine"""
    machine_info = f"{platform.node()}_{platform.machine()}_{platform.system()}"
    return hashlib.sha256(machine_info.encode()).hexdigest()[:16]


class MemoryStorage:
    """String key-value store held in memory; the default for tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class FileStorage:
    """String key-value store persisted as one JSON file per machine and profile."""

    def __init__(self, directory: Path, profile: str = "default"):
        self.directory = Path(directory)
        self.profile = profile
        self.directory.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self.directory / f"auth_{self.profile}_{get_machine_id()}.json"

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            store_logger.warning("Unreadable auth file %s, treating as empty: %s", self.path, e)
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        if not data:
            if self.path.exists():
                self.path.unlink()
                store_logger.debug("Deleted auth file: %s", self.path)
            return
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


class CredentialStore:
    """Holds the current Credential in a key-value storage backend.

    Missing keys are a valid state meaning "unauthenticated". A partially
    written credential (for example a token without expiry) is read back as
    absent.
    """

    def __init__(self, storage=None):
        self.storage = storage if storage is not None else MemoryStorage()

    def load(self) -> Optional[Credential]:
        access_token = self.storage.get(STORAGE_KEYS["AUTH_TOKEN"])
        refresh_token = self.storage.get(STORAGE_KEYS["REFRESH_TOKEN"])
        expiry = self.storage.get(STORAGE_KEYS["TOKEN_EXPIRY"])
        if not access_token or not refresh_token or not expiry:
            return None
        try:
            expires_at = int(expiry)
        except ValueError:
            store_logger.warning("Ignoring malformed token expiry: %r", expiry)
            return None
        return Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at_epoch_ms=expires_at,
        )

    def access_token(self) -> Optional[str]:
        return self.storage.get(STORAGE_KEYS["AUTH_TOKEN"])

    def refresh_token(self) -> Optional[str]:
        return self.storage.get(STORAGE_KEYS["REFRESH_TOKEN"])

    def save(self, credential: Credential) -> None:
        self.storage.set(STORAGE_KEYS["AUTH_TOKEN"], credential.access_token)
        self.storage.set(STORAGE_KEYS["REFRESH_TOKEN"], credential.refresh_token)
        self.storage.set(STORAGE_KEYS["TOKEN_EXPIRY"], str(credential.expires_at_epoch_ms))
        store_logger.debug("Stored credential expiring at %d", credential.expires_at_epoch_ms)

    def clear(self) -> None:
        for key in ("AUTH_TOKEN", "REFRESH_TOKEN", "TOKEN_EXPIRY"):
            self.storage.remove(STORAGE_KEYS[key])
        store_logger.debug("Cleared stored credential")

    def get_language(self, default: str = "en") -> str:
        return self.storage.get(STORAGE_KEYS["LANGUAGE"]) or default

    def set_language(self, language: str) -> None:
        self.storage.set(STORAGE_KEYS["LANGUAGE"], language)
