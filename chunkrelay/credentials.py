"""Keyring-backed storage for the endpoint API key.

The key is the only secret chunkrelay persists. It is never written to
progress records or run files, and never logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import keyring
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError

SERVICE_NAME = "chunkrelay"
ACCOUNT_NAME = "api_key"


class CredentialStore(Protocol):
    """Operations the CLI needs from a secret store."""

    def is_available(self) -> bool: ...

    def get_api_key(self) -> str | None: ...

    def set_api_key(self, api_key: str) -> None: ...

    def clear_api_key(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class KeyringCredentialStore:
    """Store the API key under one keyring service/account pair."""

    service_name: str = SERVICE_NAME
    account_name: str = ACCOUNT_NAME

    def is_available(self) -> bool:
        """Return `False` when keyring fell back to its failing placeholder backend."""

        return not isinstance(keyring.get_keyring(), fail.Keyring)

    def get_api_key(self) -> str | None:
        if not self.is_available():
            return None
        try:
            stored = keyring.get_password(self.service_name, self.account_name)
        except KeyringError:
            return None
        return (stored or "").strip() or None

    def set_api_key(self, api_key: str) -> None:
        """Persist a stripped key.

        Raises:
            RuntimeError: If no usable keyring backend is configured.
            ValueError: If the key is blank.
        """

        if not self.is_available():
            raise RuntimeError("no usable keyring backend was found on this system")
        cleaned = api_key.strip()
        if not cleaned:
            raise ValueError("API key must be a non-empty string.")
        keyring.set_password(self.service_name, self.account_name, cleaned)

    def clear_api_key(self) -> bool:
        """Delete the stored key; return whether one was removed."""

        if self.get_api_key() is None:
            return False
        try:
            keyring.delete_password(self.service_name, self.account_name)
        except PasswordDeleteError:
            return False
        return True


def create_credential_store() -> CredentialStore:
    return KeyringCredentialStore()
