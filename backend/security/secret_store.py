"""
Encrypted secret storage for bridge credentials.

Secrets are addressed by (service, account) and encrypted with Fernet using a
key generated on first use. Entries written by older versions had no account
and are migrated on first read.
"""

import json
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from config import CONFIG_DIR

logger = logging.getLogger(__name__)


def _entry_key(service: str, account: str | None) -> str:
    return f"{service}|{account}" if account else service


class SecretStore:
    """Persists small encrypted blobs keyed by service and account."""

    def __init__(self, directory: Path | None = None):
        directory = directory or CONFIG_DIR
        self._store_path = directory / "secrets.json"
        self._key_path = directory / "secret.key"
        self._fernet = Fernet(self._load_or_generate_key())
        self._entries: dict[str, str] = {}
        self._load()

    def _load_or_generate_key(self) -> bytes:
        """Loads the existing store key or creates a new one."""
        if self._key_path.exists():
            key = self._key_path.read_bytes().strip()
            try:
                Fernet(key)
                return key
            except ValueError as e:
                logger.warning(f"Secret store key is unusable: {e}. Generating new one.")

        key = Fernet.generate_key()
        self._key_path.write_bytes(key)
        try:
            os.chmod(self._key_path, 0o600)
        except OSError:
            pass
        return key

    def _load(self) -> None:
        if not self._store_path.exists():
            return
        try:
            self._entries = dict(json.loads(self._store_path.read_text()))
        except Exception as e:
            logger.error(f"Failed to load secrets: {e}")

    def _save(self) -> bool:
        try:
            self._store_path.write_text(json.dumps(self._entries, indent=2))
            return True
        except Exception as e:
            logger.error(f"Failed to save secrets: {e}")
            return False

    def save(self, service: str, account: str, data: bytes) -> bool:
        """Store ``data``, replacing any previous value."""
        self._entries[_entry_key(service, account)] = self._fernet.encrypt(data).decode("ascii")
        return self._save()

    def load(self, service: str, account: str) -> bytes | None:
        token = self._entries.get(_entry_key(service, account))
        if token is None:
            return self._migrate_legacy(service, account)
        return self._decrypt(token)

    def delete(self, service: str, account: str) -> bool:
        if self._entries.pop(_entry_key(service, account), None) is None:
            return False
        return self._save()

    def _decrypt(self, token: str) -> bytes | None:
        try:
            return self._fernet.decrypt(token.encode("ascii"))
        except InvalidToken:
            logger.warning("Secret could not be decrypted; ignoring it")
            return None

    def _migrate_legacy(self, service: str, account: str) -> bytes | None:
        """Move an account-less entry for ``service`` under ``account``."""
        legacy = self._entries.get(_entry_key(service, None))
        if legacy is None:
            return None
        data = self._decrypt(legacy)
        if data is None:
            return None
        self._entries[_entry_key(service, account)] = legacy
        del self._entries[_entry_key(service, None)]
        self._save()
        logger.info(f"Migrated legacy secret for {service} to account {account}")
        return data
