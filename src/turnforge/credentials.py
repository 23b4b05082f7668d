"""Credential storage via the system keyring.

The device authorization flow hands its credential to the caller; this is
the default place the CLI puts it. The credential is stored as one JSON
blob per account under the configured keyring service. Encryption at rest
is the keyring backend's job.
"""

from __future__ import annotations

import json
import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from turnforge.device_auth import Credential

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT = "qwen"


class KeyringCredentialStore:
    """Save, load and forget credentials in the system keyring."""

    def __init__(self, service: str, account: str = DEFAULT_ACCOUNT) -> None:
        self.service = service
        self.account = account

    def save(self, credential: Credential) -> None:
        """Store a credential.

        Raises:
            RuntimeError: If the keyring refuses the write
        """
        try:
            keyring.set_password(self.service, self.account, json.dumps(credential.to_dict()))
        except KeyringError as e:
            raise RuntimeError(f"Failed to store credential: {e}") from e
        logger.info("Stored credential for %s", self.account)

    def load(self) -> Credential | None:
        """Return the stored credential, or None if absent or unreadable."""
        try:
            raw = keyring.get_password(self.service, self.account)
        except KeyringError as e:
            logger.warning("Failed to read credential for %s: %s", self.account, e)
            return None
        if raw is None:
            return None
        try:
            return Credential.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Stored credential for %s is malformed: %s", self.account, e)
            return None

    def delete(self) -> bool:
        """Remove the stored credential. Returns False if there was none."""
        try:
            keyring.delete_password(self.service, self.account)
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            logger.warning("Failed to delete credential for %s: %s", self.account, e)
            return False
        logger.info("Deleted credential for %s", self.account)
        return True

    @staticmethod
    def backend_name() -> str:
        """Name of the active keyring backend (e.g. "SecretService Keyring")."""
        return keyring.get_keyring().__class__.__name__
