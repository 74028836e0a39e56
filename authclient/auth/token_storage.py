"""
Token storage for the authenticated API client.

This module provides the token store consumed by the request dispatcher and
the refresh coordinator. The secure store keeps the session in the system
keyring or, as a fallback, in an encrypted file; the memory store keeps it in
process.
"""

import os
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken

from shared.exceptions import TokenStorageError, ErrorCode
from shared.interfaces import ITokenStore
from shared.models import Identity

logger = logging.getLogger(__name__)


class MemoryTokenStorage(ITokenStore):
    """In-process token store. Nothing survives the process."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        identity: Optional[Identity] = None
    ):
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._identity = identity

    def get_access_token(self) -> Optional[str]:
        return self._access_token

    def get_refresh_token(self) -> Optional[str]:
        return self._refresh_token

    def set_access_token(self, token: str) -> None:
        self._access_token = token

    def set_refresh_token(self, token: str) -> None:
        self._refresh_token = token

    def clear_tokens(self) -> None:
        self._access_token = None
        self._refresh_token = None
        self._identity = None

    def get_current_identity(self) -> Optional[Identity]:
        return self._identity

    def set_current_identity(self, identity: Optional[Identity]) -> None:
        self._identity = identity


class SecureTokenStorage(ITokenStore):
    """
    Secure storage for the session tokens.

    Uses the system keyring when available, falls back to an encrypted file.
    Every getter reads the backing store so that writes from another client
    instance or process are picked up immediately.
    """

    SESSION_KEY = "session"

    def __init__(
        self,
        service_name: str = "authclient",
        storage_path: Optional[Path] = None,
        use_keyring: Optional[bool] = None
    ):
        self.service_name = service_name
        self.keyring_available = (
            self._check_keyring_availability() if use_keyring is None else use_keyring
        )
        self.storage_path = Path(storage_path) if storage_path else self._get_storage_path()

        self._encryption_key: Optional[bytes] = None

        logger.info(f"Token storage initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if a working system keyring backend is available."""
        try:
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_storage_path(self) -> Path:
        """Get path for encrypted file storage."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        if xdg_config:
            config_dir = Path(xdg_config) / self.service_name
        else:
            config_dir = Path.home() / '.config' / self.service_name

        return config_dir / 'session.enc'

    @property
    def key_path(self) -> Path:
        return self.storage_path.with_suffix('.key')

    def _get_encryption_key(self) -> bytes:
        """Get or create the Fernet key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)

        self._encryption_key = key
        return key

    def _load_session(self) -> Dict[str, Any]:
        """Read the stored session record, or an empty one."""
        try:
            if self.keyring_available:
                value = keyring.get_password(self.service_name, self.SESSION_KEY)
                return json.loads(value) if value else {}

            if not self.storage_path.exists():
                return {}

            fernet = Fernet(self._get_encryption_key())
            decrypted = fernet.decrypt(self.storage_path.read_bytes()).decode()
            return json.loads(decrypted)

        except InvalidToken:
            logger.warning("Stored session could not be decrypted, ignoring it")
            return {}
        except Exception as e:
            logger.error(f"Failed to read stored session: {e}")
            raise TokenStorageError(
                f"Failed to read stored session: {e}",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )

    def _save_session(self, session: Dict[str, Any]) -> None:
        """Persist the session record."""
        session['stored_at'] = datetime.now().isoformat()
        value = json.dumps(session)

        try:
            if self.keyring_available:
                keyring.set_password(self.service_name, self.SESSION_KEY, value)
                return

            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            fernet = Fernet(self._get_encryption_key())
            self.storage_path.write_bytes(fernet.encrypt(value.encode()))
            os.chmod(self.storage_path, 0o600)

        except Exception as e:
            logger.error(f"Failed to store session: {e}")
            raise TokenStorageError(f"Failed to store session: {e}", cause=e)

    def _update_session(self, **values: Any) -> None:
        session = self._load_session()
        session.update(values)
        self._save_session(session)

    def get_access_token(self) -> Optional[str]:
        return self._load_session().get('access_token')

    def get_refresh_token(self) -> Optional[str]:
        return self._load_session().get('refresh_token')

    def set_access_token(self, token: str) -> None:
        self._update_session(access_token=token)

    def set_refresh_token(self, token: str) -> None:
        self._update_session(refresh_token=token)

    def get_current_identity(self) -> Optional[Identity]:
        user = self._load_session().get('user')
        if not user:
            return None
        try:
            return Identity.from_dict(user)
        except (KeyError, ValueError) as e:
            logger.warning(f"Invalid identity in stored session: {e}")
            return None

    def set_current_identity(self, identity: Optional[Identity]) -> None:
        self._update_session(user=identity.to_dict() if identity else None)

    def clear_tokens(self) -> None:
        """Remove the stored session entirely."""
        try:
            if self.keyring_available:
                if keyring.get_password(self.service_name, self.SESSION_KEY) is not None:
                    keyring.delete_password(self.service_name, self.SESSION_KEY)
            elif self.storage_path.exists():
                self.storage_path.unlink()

            logger.info("Stored session cleared")

        except Exception as e:
            logger.error(f"Failed to clear stored session: {e}")
            raise TokenStorageError(f"Failed to clear stored session: {e}", cause=e)

    def get_stored_at(self) -> Optional[datetime]:
        """When the session was last written."""
        stored_at = self._load_session().get('stored_at')
        if not stored_at:
            return None
        try:
            return datetime.fromisoformat(stored_at)
        except ValueError:
            return None


def create_token_storage(backend: str = "secure", service_name: str = "authclient") -> ITokenStore:
    """
    Build the token store selected in configuration.

    Args:
        backend: ``secure`` or ``memory``
        service_name: Keyring service name / config directory name

    Returns:
        Token store instance
    """
    if backend == "memory":
        return MemoryTokenStorage()
    if backend == "secure":
        return SecureTokenStorage(service_name=service_name)
    raise ValueError(f"Unknown token storage backend: {backend}")
