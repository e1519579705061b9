"""
Encryption Service for securely storing and retrieving cluster kubeconfigs.
Uses AES-GCM authenticated encryption with a scrypt-derived key.

Wire format (ASCII, colon separated hex):
    iv:authTag:ciphertext   AES-GCM (current)
    iv:ciphertext           AES-CBC (legacy rows, decode only in normal operation)

The format is persisted in the clusters.kubeconfig column and must stay byte-stable.
"""
import hashlib
import hmac
import logging
import os
import re
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ..errors import DecryptionError, EncryptionError, FormatError

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"\A(?:[0-9a-fA-F]{2})*\Z")

GCM_TAG_LENGTH = 16
CBC_BLOCK_SIZE = 16

# scrypt cost parameters (N, r, p). Changing them changes the derived key.
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


def _parse_hex(segment: str, label: str) -> bytes:
    if not _HEX_RE.match(segment):
        raise FormatError(f"Invalid encrypted data format: {label} segment is not valid hex")
    return bytes.fromhex(segment)


class EncryptionService:
    """
    Manages encryption/decryption of cluster credentials.

    The key is derived from the master secret on construction, so the same
    secret always yields the same key and no separate key storage is needed.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "aes-256-gcm",
        key_length: int = 32,
        iv_length: int = 16,
        salt: str = "devpocket-salt",
    ):
        """
        Initialize the encryption service.

        Args:
            secret_key: Master secret (at least key_length characters)
            algorithm: Cipher name, only AES-GCM variants are supported
            key_length: Derived key length in bytes (16, 24 or 32)
            iv_length: Random IV length for new payloads
            salt: scrypt salt

        Raises:
            EncryptionError: If the secret or algorithm configuration is invalid.
        """
        if not secret_key:
            raise EncryptionError("No encryption key available. Set SECRET_KEY.")
        if len(secret_key) < key_length:
            raise EncryptionError(f"SECRET_KEY must be at least {key_length} characters long")
        if key_length not in (16, 24, 32):
            raise EncryptionError(f"Unsupported key length: {key_length}")

        expected_algorithm = f"aes-{key_length * 8}-gcm"
        if algorithm.lower() != expected_algorithm:
            raise EncryptionError(
                f"Unsupported algorithm '{algorithm}' for a {key_length}-byte key (expected {expected_algorithm})"
            )

        self.algorithm = algorithm.lower()
        self.key_length = key_length
        self.iv_length = iv_length
        self.salt = salt.encode()
        self._key = self.derive_key(secret_key)
        logger.info(f"[ENCRYPTION] Encryption service initialized ({self.algorithm})")

    @classmethod
    def from_settings(cls, settings) -> "EncryptionService":
        return cls(
            secret_key=settings.secret_key,
            algorithm=settings.encryption_algorithm,
            key_length=settings.encryption_key_length,
            iv_length=settings.encryption_iv_length,
            salt=settings.encryption_salt,
        )

    def derive_key(self, secret: str) -> bytes:
        """Derive a symmetric key from ``secret`` with scrypt (deterministic)."""
        kdf = Scrypt(salt=self.salt, length=self.key_length, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
        return kdf.derive(secret.encode())

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string with AES-GCM.

        A fresh IV is generated on every call, so encrypting the same text twice
        gives two different payloads.

        Returns:
            ``iv:authTag:ciphertext`` (hex)

        Raises:
            EncryptionError: If encryption fails
        """
        try:
            iv = os.urandom(self.iv_length)
            sealed = AESGCM(self._key).encrypt(iv, plaintext.encode("utf-8"), None)
            ciphertext, tag = sealed[:-GCM_TAG_LENGTH], sealed[-GCM_TAG_LENGTH:]
            result = f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"
            logger.debug(f"[ENCRYPTION] Encrypted payload (plaintext length: {len(plaintext)} chars)")
            return result
        except Exception as e:
            logger.error(f"[ENCRYPTION] Encryption failed: {e}", exc_info=True)
            raise EncryptionError(f"Failed to encrypt data: {e}") from e

    def encrypt_legacy(self, plaintext: str) -> str:
        """
        Encrypt with the legacy AES-CBC scheme (``iv:ciphertext``).

        Only used by compatibility tooling and tests; new credentials go through encrypt().
        """
        try:
            iv = os.urandom(CBC_BLOCK_SIZE)
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
            return f"{iv.hex()}:{ciphertext.hex()}"
        except Exception as e:
            logger.error(f"[ENCRYPTION] Legacy encryption failed: {e}", exc_info=True)
            raise EncryptionError(f"Failed to encrypt data: {e}") from e

    def decrypt(self, payload: str) -> str:
        """
        Decrypt an encrypted payload.

        Three segments are decoded as AES-GCM (tag verified), two segments as
        legacy AES-CBC.

        Raises:
            FormatError: Wrong segment count, non-hex content, bad IV/tag/ciphertext length
            DecryptionError: Authentication tag mismatch, bad padding or non UTF-8 plaintext
        """
        if not payload or not isinstance(payload, str):
            raise FormatError("Invalid encrypted data format: empty payload")

        parts = payload.split(":")
        if len(parts) == 3:
            return self._decrypt_gcm(*parts)
        if len(parts) == 2:
            return self._decrypt_cbc(*parts)
        raise FormatError(f"Invalid encrypted data format: expected 2 or 3 segments, got {len(parts)}")

    def _decrypt_gcm(self, iv_hex: str, tag_hex: str, cipher_hex: str) -> str:
        iv = _parse_hex(iv_hex, "iv")
        tag = _parse_hex(tag_hex, "auth tag")
        ciphertext = _parse_hex(cipher_hex, "ciphertext")

        if len(iv) != self.iv_length:
            raise FormatError(f"Invalid encrypted data format: IV must be {self.iv_length} bytes")
        if len(tag) != GCM_TAG_LENGTH:
            raise FormatError("Invalid encrypted data format: truncated auth tag")

        try:
            plaintext = AESGCM(self._key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            logger.error("[ENCRYPTION] Decryption failed: authentication tag mismatch or wrong key")
            raise DecryptionError(
                "Failed to decrypt data. The encryption key may have changed or the data is corrupted."
            ) from e

        return self._decode(plaintext)

    def _decrypt_cbc(self, iv_hex: str, cipher_hex: str) -> str:
        iv = _parse_hex(iv_hex, "iv")
        ciphertext = _parse_hex(cipher_hex, "ciphertext")

        if len(iv) != CBC_BLOCK_SIZE:
            raise FormatError(f"Invalid encrypted data format: IV must be {CBC_BLOCK_SIZE} bytes")
        if not ciphertext or len(ciphertext) % CBC_BLOCK_SIZE:
            raise FormatError("Invalid encrypted data format: truncated ciphertext")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            logger.error("[ENCRYPTION] Legacy decryption failed: bad padding or wrong key")
            raise DecryptionError("Failed to decrypt data") from e

        return self._decode(plaintext)

    @staticmethod
    def _decode(plaintext: bytes) -> str:
        try:
            result = plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Failed to decrypt data: plaintext is not valid UTF-8") from e
        logger.debug(f"[ENCRYPTION] Decrypted payload (plaintext length: {len(result)} chars)")
        return result

    def hash(self, data: str) -> str:
        """One-way SHA-256 digest (hex) for equality checks."""
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    def verify_hash(self, data: str, digest: str) -> bool:
        return hmac.compare_digest(self.hash(data), digest)

    @staticmethod
    def generate_secret_key(length: int = 32) -> str:
        """
        Generate a random master secret suitable for SECRET_KEY.

        Example:
            >>> key = EncryptionService.generate_secret_key()
            >>> print(f"SECRET_KEY={key}")
        """
        return secrets.token_hex(length)

    def validate_key(self, sample: Optional[str] = None) -> bool:
        """
        Validate that the derived key works by performing a round-trip encryption/decryption.

        Raises:
            EncryptionError: If validation fails
        """
        test_string = sample if sample is not None else "test_validation_12345"
        try:
            decrypted = self.decrypt(self.encrypt(test_string))
        except (FormatError, DecryptionError) as e:
            raise EncryptionError(f"Encryption key validation failed: {e}") from e

        if decrypted != test_string:
            logger.error("[ENCRYPTION] Key validation failed: decrypted value does not match original")
            raise EncryptionError("Encryption key validation failed: data mismatch")

        logger.info("[ENCRYPTION] Encryption key validated successfully")
        return True
