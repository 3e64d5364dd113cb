"""Credential lookup for target hosts.

releasectl never stores credentials itself. A ``SecretStore`` resolves a
host's ``auth_ref`` to connection credentials on demand, either from the
environment or from a Fernet-encrypted vault file kept by the operator.
"""

import base64
import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Self

from cryptography.fernet import Fernet, InvalidToken

from .errors import AuthenticationFailure, ConfigurationError


class EncryptionError(ConfigurationError):
    """Raised when encryption/decryption operations fail."""
    pass


@dataclass
class Credentials:
    """Connection credentials for one host session."""

    principal: str
    address: Optional[str] = None
    port: Optional[int] = None
    identity_file: Optional[str] = None
    key_material: Optional[str] = None

    def __repr__(self: Self) -> str:
        # Key material must never reach logs or tracebacks
        return (
            f"Credentials(principal={self.principal!r}, address={self.address!r}, "
            f"port={self.port!r}, identity_file={self.identity_file!r}, "
            f"key_material={'***' if self.key_material else None})"
        )


class SecretStore:
    """Resolves an auth reference to credentials."""

    def get_credentials(self: Self, auth_ref: str) -> Credentials:
        raise NotImplementedError


class EnvSecretStore(SecretStore):
    """Reads credentials from ``RELEASECTL_<REF>_*`` environment variables.

    ``<REF>`` is the auth reference upper-cased with non-alphanumerics
    replaced by underscores. ``_USER`` is required; ``_ADDRESS``, ``_PORT``,
    ``_KEY_FILE`` and ``_KEY`` (inline private key) are optional.
    """

    PREFIX = "RELEASECTL"

    def __init__(self: Self, environ: Optional[Dict[str, str]] = None) -> None:
        self.environ = environ if environ is not None else os.environ

    def _var(self: Self, auth_ref: str, suffix: str) -> Optional[str]:
        ref = re.sub(r'[^A-Za-z0-9]', '_', auth_ref).upper()
        return self.environ.get(f"{self.PREFIX}_{ref}_{suffix}") or None

    def get_credentials(self: Self, auth_ref: str) -> Credentials:
        principal = self._var(auth_ref, "USER")
        if not principal:
            raise AuthenticationFailure(
                f"No credentials found for auth reference '{auth_ref}'",
                [f"Export {self.PREFIX}_{re.sub(r'[^A-Za-z0-9]', '_', auth_ref).upper()}_USER and _KEY_FILE"],
            )
        port = self._var(auth_ref, "PORT")
        try:
            port_number = int(port) if port else None
        except ValueError:
            raise ConfigurationError(
                f"Invalid SSH port for auth reference '{auth_ref}': {port!r}",
                [f"Set {self.PREFIX}_{re.sub(r'[^A-Za-z0-9]', '_', auth_ref).upper()}_PORT to a number such as 22"],
            )
        return Credentials(
            principal=principal,
            address=self._var(auth_ref, "ADDRESS"),
            port=port_number,
            identity_file=self._var(auth_ref, "KEY_FILE"),
            key_material=self._var(auth_ref, "KEY"),
        )


class SecureVault:
    """Fernet encryption for the credential vault file."""

    KEY_ENV = "RELEASECTL_VAULT_KEY"

    def __init__(self: Self, encryption_key: Optional[bytes] = None) -> None:
        """Initialize the vault cipher.

        Args:
            encryption_key: Optional Fernet key. Read from
                ``RELEASECTL_VAULT_KEY`` when not provided.

        Raises:
            EncryptionError: If no usable key is available.
        """
        self.key = encryption_key or self._key_from_environment()
        try:
            self.cipher = Fernet(self.key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Invalid vault key: {e}")

    def _key_from_environment(self: Self) -> bytes:
        env_key = os.environ.get(self.KEY_ENV)
        if not env_key:
            raise EncryptionError(
                "Vault key is not set",
                [f"Export {self.KEY_ENV} (generate one with: releasectl vault keygen)"],
            )
        return env_key.encode()

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt_value(self: Self, value: str) -> str:
        """Encrypt a string value.

        Returns:
            Base64-encoded encrypted string
        """
        if not isinstance(value, str):
            raise EncryptionError("Value must be a string")
        encrypted_bytes = self.cipher.encrypt(value.encode('utf-8'))
        return base64.urlsafe_b64encode(encrypted_bytes).decode('utf-8')

    def decrypt_value(self: Self, encrypted_value: str) -> str:
        """Decrypt a value produced by ``encrypt_value``.

        Raises:
            EncryptionError: If decryption fails.
        """
        if not isinstance(encrypted_value, str):
            raise EncryptionError("Encrypted value must be a string")
        try:
            encrypted_bytes = base64.urlsafe_b64decode(encrypted_value.encode('utf-8'))
            return self.cipher.decrypt(encrypted_bytes).decode('utf-8')
        except (InvalidToken, ValueError) as e:
            raise EncryptionError(f"Failed to decrypt value: {e or 'invalid token'}")


class EncryptedFileSecretStore(SecretStore):
    """Credentials kept in a Fernet-encrypted JSON vault.

    The vault file maps each auth reference to an encrypted JSON document
    with the fields of ``Credentials``.
    """

    def __init__(self: Self, vault_path: Path, vault: Optional[SecureVault] = None) -> None:
        self.vault_path = Path(vault_path)
        self.vault = vault or SecureVault()

    def _read(self: Self) -> Dict[str, str]:
        if not self.vault_path.exists():
            return {}
        try:
            return json.loads(self.vault_path.read_text(encoding='utf-8'))
        except (json.JSONDecodeError, OSError) as e:
            raise EncryptionError(f"Failed to read vault {self.vault_path}: {e}")

    def put(self: Self, auth_ref: str, credentials: Credentials) -> None:
        """Store credentials for an auth reference (operator tooling)."""
        entries = self._read()
        payload: Dict[str, Any] = {
            key: value for key, value in vars(credentials).items() if value is not None
        }
        entries[auth_ref] = self.vault.encrypt_value(json.dumps(payload))

        self.vault_path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.vault_path.with_suffix('.tmp')
        temp_file.write_text(json.dumps(entries, indent=2), encoding='utf-8')
        os.chmod(temp_file, 0o600)
        temp_file.replace(self.vault_path)

    def get_credentials(self: Self, auth_ref: str) -> Credentials:
        entry = self._read().get(auth_ref)
        if entry is None:
            raise AuthenticationFailure(
                f"No credentials found for auth reference '{auth_ref}' in {self.vault_path}",
            )
        try:
            data = json.loads(self.vault.decrypt_value(entry))
        except EncryptionError as e:
            raise AuthenticationFailure(f"Cannot decrypt credentials for '{auth_ref}': {e}")
        return Credentials(**data)


def build_secret_store(settings: Dict[str, Any]) -> SecretStore:
    """Create the secret store selected in the configuration."""
    if settings.get('secret_store') == 'vault':
        vault_path = settings.get('vault_path')
        if not vault_path:
            raise ConfigurationError(
                "secret_store is 'vault' but vault_path is not set",
                ["releasectl config --set vault_path=/path/to/vault.json"],
            )
        return EncryptedFileSecretStore(Path(vault_path).expanduser())
    return EnvSecretStore()
