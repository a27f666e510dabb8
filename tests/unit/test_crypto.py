"""
Unit tests for credential encryption (wpbackup/utils/crypto.py).

Tests CredentialCipher for encrypting/decrypting the WebDAV password.
"""

import pytest
from cryptography.fernet import InvalidToken

from wpbackup.utils.crypto import CredentialCipher


class TestCredentialCipherInitialization:
    """Test CredentialCipher initialization."""

    def test_empty_secret_key_raises_error(self):
        """Test that an empty SECRET_KEY is rejected."""
        with pytest.raises(ValueError, match="SECRET_KEY"):
            CredentialCipher('')

    def test_same_secret_key_same_key(self):
        """Test that the key is derived deterministically from SECRET_KEY."""
        token = CredentialCipher('secret-key-1').encrypt('storagebox-password')

        assert CredentialCipher('secret-key-1').decrypt(token) == 'storagebox-password'


class TestCredentialCipherEncryption:
    """Test CredentialCipher encryption functionality."""

    def test_encrypt_encrypts_data(self):
        """Test that encrypt() returns a token different from the plaintext."""
        cipher = CredentialCipher('secret-key-1')

        token = cipher.encrypt('storagebox-password')

        assert token != 'storagebox-password'
        assert isinstance(token, str)

    def test_encrypt_same_data_multiple_times(self):
        """Test encrypting the same data twice produces different tokens."""
        cipher = CredentialCipher('secret-key-1')

        # Fernet includes a timestamp and IV
        assert cipher.encrypt('same') != cipher.encrypt('same')


class TestCredentialCipherDecryption:
    """Test CredentialCipher decryption functionality."""

    def test_decrypt_with_wrong_secret_key_raises_error(self):
        """Test that decrypting with another SECRET_KEY raises InvalidToken."""
        token = CredentialCipher('secret-key-1').encrypt('storagebox-password')

        with pytest.raises(InvalidToken):
            CredentialCipher('secret-key-2').decrypt(token)

    def test_decrypt_with_invalid_data_raises_error(self):
        """Test that decrypting garbage raises InvalidToken or ValueError."""
        cipher = CredentialCipher('secret-key-1')

        with pytest.raises((InvalidToken, ValueError)):
            cipher.decrypt('this_is_not_encrypted_data')

    def test_decrypt_ignores_surrounding_whitespace(self):
        """Test that a token copied with a trailing newline still decrypts."""
        cipher = CredentialCipher('secret-key-1')
        token = cipher.encrypt('storagebox-password')

        assert cipher.decrypt(f"  {token}\n") == 'storagebox-password'

    @pytest.mark.parametrize('plaintext', [
        'simple',
        'complex!@#$%^&*()_+"\'characters',
        'unicode_テスト',
        '',
    ])
    def test_decrypt_recovers_original_data(self, plaintext):
        """Test that decrypt() recovers the original plaintext."""
        cipher = CredentialCipher('secret-key-1')

        assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext
