"""
OS secret store wrapper holding the single persisted secret: the refresh token.
"""

import logging
import threading

import keyring
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError
from keyring.errors import PasswordDeleteError

from termcal.models import StoreError

KEYRING_SERVICE = "termcal"
KEYRING_USERNAME = "microsoft_refresh_token"


class CredentialStore:
    """Serialized access to one keyring entry.

    The remote service may rotate the refresh token on every use, so every
    read, write and delete goes through one lock.
    """

    def __init__(
        self,
        backend: KeyringBackend | None = None,
        service: str = KEYRING_SERVICE,
        username: str = KEYRING_USERNAME,
    ):
        self.backend = backend or keyring.get_keyring()
        self.service = service
        self.username = username
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def load(self) -> str | None:
        """Return the stored refresh token, or None when nothing usable is stored."""
        with self._lock:
            try:
                secret = self.backend.get_password(self.service, self.username)
            except KeyringError as e:
                self.logger.warning(f"Could not read refresh token from keyring: {e}")
                return None
        return secret or None

    def save(self, refresh_token: str):
        if not refresh_token:
            raise ValueError("Refusing to store an empty refresh token")
        with self._lock:
            try:
                self.backend.set_password(self.service, self.username, refresh_token)
            except KeyringError as e:
                raise StoreError(f"Could not save refresh token to keyring: {e}") from e
        self.logger.debug("Refresh token saved to system keyring")

    def clear(self):
        """Delete the stored token. Deleting a missing entry is not an error."""
        with self._lock:
            try:
                self.backend.delete_password(self.service, self.username)
            except PasswordDeleteError:
                pass
            except KeyringError as e:
                raise StoreError(f"Could not delete refresh token from keyring: {e}") from e
        self.logger.debug("Refresh token removed from system keyring")
