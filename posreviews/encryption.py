"""
Encryption utility for POS credentials (OAuth tokens, webhook secrets, API keys).

Tokens are stored as ``iv_hex:ciphertext_hex`` using AES-256-CBC with PKCS7
padding. The 32-byte key is the SHA-256 digest of POS_TOKEN_ENCRYPTION_KEY.
"""

import hashlib
import logging
import os
import secrets
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from . import config

logger = logging.getLogger(__name__)

IV_LENGTH = 16


class CredentialError(Exception):
    """Raised when a stored credential cannot be encrypted or decrypted"""

    pass


class CredentialFormatError(CredentialError):
    """Stored value is not a well-formed iv:ciphertext token"""

    pass


class CredentialDecryptError(CredentialError):
    """Token parsed but could not be decrypted (wrong key or corrupted data)"""

    pass


def _get_encryption_key() -> bytes:
    master_key = config.POS_TOKEN_ENCRYPTION_KEY
    if not master_key:
        raise CredentialError("POS_TOKEN_ENCRYPTION_KEY environment variable is not set")
    return hashlib.sha256(master_key.encode("utf-8")).digest()


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """
    Encrypt a credential for storage.

    Returns None for an absent credential. A fresh random IV is used on every
    call so the same plaintext never encrypts to the same token.
    """
    if plaintext is None:
        return None

    key = _get_encryption_key()
    iv = os.urandom(IV_LENGTH)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return f"{iv.hex()}:{ciphertext.hex()}"


def decrypt(token: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored credential token.

    Raises:
        CredentialFormatError: token is not iv_hex:ciphertext_hex
        CredentialDecryptError: padding or UTF-8 decoding failed
    """
    if token is None:
        return None

    iv_hex, separator, ciphertext_hex = token.partition(":")
    if not separator or not iv_hex:
        raise CredentialFormatError("Invalid encrypted text format")

    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = bytes.fromhex(ciphertext_hex)
    except ValueError as e:
        raise CredentialFormatError("Encrypted text is not valid hex") from e

    if len(iv) != IV_LENGTH:
        raise CredentialFormatError(f"IV must be {IV_LENGTH} bytes, got {len(iv)}")
    if not ciphertext or len(ciphertext) % IV_LENGTH:
        raise CredentialFormatError("Ciphertext length is not a multiple of the block size")

    key = _get_encryption_key()
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning("🔐 Credential decryption failed (wrong key or corrupted value)")
        raise CredentialDecryptError("Failed to decrypt credential") from e


def generate_key() -> str:
    """Generate a random master key suitable for POS_TOKEN_ENCRYPTION_KEY (64 hex chars)"""
    return secrets.token_hex(32)
