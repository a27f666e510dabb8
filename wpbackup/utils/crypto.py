"""
Encryption of stored credentials.

The WebDAV password can be kept in the settings file as a Fernet token
instead of plaintext. The key is derived from SECRET_KEY.
"""

import base64
import binascii

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class CredentialCipher:
    """Encrypts and decrypts credentials with a key derived from SECRET_KEY."""

    def __init__(self, secret_key: str):
        """
        Initialize with the application SECRET_KEY.

        Args:
            secret_key: SECRET_KEY from the environment
        """
        if not secret_key:
            raise ValueError("SECRET_KEY must not be empty")

        # Fixed salt: SECRET_KEY itself is the secret
        fixed_salt = b'wpbackup_credential_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a credential for the settings file.

        Args:
            plaintext: Credential in plaintext

        Returns:
            Fernet token as text
        """
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored credential.

        Args:
            token: Fernet token from encrypt()

        Returns:
            Plaintext credential

        Raises:
            cryptography.fernet.InvalidToken: If the key is wrong or the token is corrupted
        """
        try:
            return self._fernet.decrypt(token.strip().encode()).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"Malformed credential token: {e}")
