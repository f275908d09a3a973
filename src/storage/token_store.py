"""Fernet-encrypted storage for the QuickBooks OAuth token set."""

import json
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from src.models.status import OAuthTokens

logger = logging.getLogger(__name__)

TOKEN_FILENAME = "qbo.enc"
KEY_FILENAME = ".key"


class TokenStore:
    """Encrypt and persist OAuth tokens on disk.

    Intuit rotates the refresh token on every refresh, so the latest token
    set has to survive restarts. The Fernet key lives at
    ``credentials_dir/.key`` and the encrypted JSON at
    ``credentials_dir/qbo.enc``; both are chmod 0600.

    Args:
        credentials_dir: Directory for the key and encrypted token file.
    """

    def __init__(self, credentials_dir: Path) -> None:
        self.credentials_dir = credentials_dir
        self.credentials_dir.mkdir(parents=True, exist_ok=True)
        self._key_path = self.credentials_dir / KEY_FILENAME
        self._token_path = self.credentials_dir / TOKEN_FILENAME
        self._fernet: Fernet | None = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            if self._key_path.exists():
                key = self._key_path.read_bytes()
            else:
                key = Fernet.generate_key()
                self._key_path.write_bytes(key)
                logger.info("Generated new token encryption key")
            self._secure_path(self._key_path)
            self._fernet = Fernet(key)
        return self._fernet

    def _secure_path(self, path: Path) -> None:
        """Directories get 0o700, files get 0o600."""
        try:
            os.chmod(path, 0o700 if path.is_dir() else 0o600)
        except OSError:
            logger.debug("Could not set permissions on %s", path)

    def save(self, tokens: OAuthTokens) -> None:
        """Encrypt and write the token set, replacing any previous one."""
        encrypted = self._get_fernet().encrypt(tokens.model_dump_json().encode())
        self._token_path.write_bytes(encrypted)
        self._secure_path(self._token_path)
        self._secure_path(self.credentials_dir)
        logger.debug("OAuth tokens saved")

    def load(self) -> OAuthTokens | None:
        """Return the stored token set, or None if absent or unreadable."""
        if not self._token_path.exists():
            return None
        try:
            decrypted = self._get_fernet().decrypt(self._token_path.read_bytes())
        except InvalidToken:
            logger.warning("Failed to decrypt stored OAuth tokens")
            return None
        try:
            return OAuthTokens.model_validate(json.loads(decrypted))
        except (ValueError, ValidationError):
            logger.warning("Stored OAuth tokens are malformed, ignoring")
            return None

    def delete(self) -> None:
        if self._token_path.exists():
            self._token_path.unlink()
            logger.info("OAuth tokens deleted")

    def exists(self) -> bool:
        return self._token_path.exists()
