"""Encryption utilities for note payloads."""

import base64
import hashlib
import hmac
import logging
import os
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from notesync.errors import DecryptionError
from notesync.models import CipherBundle

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
KEY_SIZE_BYTES = 32
NONCE_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16
SALT_SIZE_BYTES = 16
PBKDF2_ITERATIONS = 100_000


class EncryptionService:
    """Handles AES-256-GCM encryption of note payloads with passphrase-derived keys."""

    def __init__(self, salt: Optional[bytes] = None, iterations: int = PBKDF2_ITERATIONS):
        """
        Initialize encryption service.

        Args:
            salt: Per-installation key derivation salt. If not provided,
                  a new one is generated (callers are expected to persist it
                  so later derivations are reproducible)
            iterations: PBKDF2 iteration count
        """
        self.salt = salt or self.generate_salt()
        self.iterations = iterations
        self._key_cache: Dict[bytes, bytes] = {}

    def derive_key(self, passphrase: str, salt: Optional[bytes] = None) -> bytes:
        """
        Derive a 256-bit key from a passphrase using PBKDF2-HMAC-SHA256.

        Args:
            passphrase: The user passphrase
            salt: Salt to derive with, defaults to this installation's salt

        Returns:
            The raw 32-byte key
        """
        if not passphrase:
            raise ValueError("Passphrase cannot be empty")

        salt = salt or self.salt
        cache_key = hashlib.sha256(salt + passphrase.encode()).digest()
        key = self._key_cache.get(cache_key)
        if key is None:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_SIZE_BYTES,
                salt=salt,
                iterations=self.iterations,
            )
            key = kdf.derive(passphrase.encode())
            self._key_cache[cache_key] = key
        return key

    def encrypt(self, plaintext: str, passphrase: str) -> CipherBundle:
        """
        Encrypt a plaintext string.

        Args:
            plaintext: The string to encrypt
            passphrase: Passphrase the key is derived from

        Returns:
            CipherBundle with a fresh random nonce
        """
        key = self.derive_key(passphrase)
        nonce = os.urandom(NONCE_SIZE_BYTES)
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return CipherBundle(
            nonce=nonce,
            ciphertext=sealed[:-TAG_SIZE_BYTES],
            tag=sealed[-TAG_SIZE_BYTES:],
            encrypted=True,
            format_version=FORMAT_VERSION,
            salt=self.salt,
        )

    def decrypt(self, bundle: CipherBundle, passphrase: str) -> str:
        """
        Decrypt a bundle produced by encrypt().

        Args:
            bundle: The encrypted bundle
            passphrase: Passphrase the key is derived from

        Returns:
            Decrypted plaintext string

        Raises:
            DecryptionError: On a wrong passphrase, tampered data, malformed
                bundle or unsupported format version
        """
        if not bundle.encrypted:
            raise DecryptionError("Bundle is not encrypted")
        if bundle.format_version != FORMAT_VERSION:
            raise DecryptionError(f"Unsupported encryption format version {bundle.format_version}")
        if len(bundle.nonce) != NONCE_SIZE_BYTES or len(bundle.tag) != TAG_SIZE_BYTES:
            raise DecryptionError("Malformed cipher bundle")

        try:
            # Bundles written by another installation carry that installation's salt
            key = self.derive_key(passphrase, bundle.salt or None)
        except ValueError as e:
            raise DecryptionError(str(e))

        try:
            plaintext = AESGCM(key).decrypt(bundle.nonce, bundle.ciphertext + bundle.tag, None)
        except InvalidTag:
            raise DecryptionError("Authentication tag mismatch (wrong passphrase or tampered data)")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted payload is not valid UTF-8")

    @staticmethod
    def wrap_plaintext(plaintext: str) -> CipherBundle:
        """Wrap an unencrypted payload in the bundle shape."""
        return CipherBundle(
            nonce=b"",
            ciphertext=plaintext.encode("utf-8"),
            tag=b"",
            encrypted=False,
            format_version=FORMAT_VERSION,
        )

    def seal(self, plaintext: str, passphrase: Optional[str], encrypt_data: bool) -> CipherBundle:
        """Encrypt when enabled, otherwise wrap as plaintext."""
        if not encrypt_data:
            return self.wrap_plaintext(plaintext)
        if not passphrase:
            raise ValueError("Encryption is enabled but no passphrase is set")
        return self.encrypt(plaintext, passphrase)

    def open_bundle(self, bundle: CipherBundle, passphrase: Optional[str], require_encrypted: bool = False) -> str:
        """
        Return the plaintext of a bundle, decrypting if it is encrypted.

        With ``require_encrypted`` a plaintext bundle is rejected, since it
        carries no authentication tag.
        """
        if not bundle.encrypted:
            if require_encrypted:
                raise DecryptionError("Payload is not encrypted but encryption is required")
            try:
                return bundle.ciphertext.decode("utf-8")
            except UnicodeDecodeError:
                raise DecryptionError("Plaintext payload is not valid UTF-8")
        if not passphrase:
            raise DecryptionError("Payload is encrypted but no passphrase is set")
        return self.decrypt(bundle, passphrase)

    @staticmethod
    def hash_passphrase(passphrase: str) -> str:
        """
        One-way hash of a passphrase, used only to check a re-entered passphrase.

        Returns:
            Hex-encoded SHA-256 digest
        """
        return hashlib.sha256(passphrase.encode("utf-8")).hexdigest()

    @classmethod
    def verify_passphrase(cls, passphrase: str, stored_hash: Optional[str]) -> bool:
        """Check a passphrase against a stored hash."""
        if not stored_hash:
            return False
        return hmac.compare_digest(cls.hash_passphrase(passphrase), stored_hash)

    @staticmethod
    def generate_salt() -> bytes:
        """
        Generate a new key derivation salt.

        Returns:
            Random salt bytes
        """
        return os.urandom(SALT_SIZE_BYTES)


def bundle_to_dict(bundle: CipherBundle) -> dict:
    """Serialize a bundle into JSON-safe primitives."""
    return {
        "format_version": bundle.format_version,
        "encrypted": bundle.encrypted,
        "nonce": base64.b64encode(bundle.nonce).decode(),
        "ciphertext": base64.b64encode(bundle.ciphertext).decode(),
        "tag": base64.b64encode(bundle.tag).decode(),
        "salt": base64.b64encode(bundle.salt).decode(),
    }


def bundle_from_dict(data: dict) -> CipherBundle:
    """Parse a serialized bundle, raising DecryptionError when malformed."""
    try:
        return CipherBundle(
            nonce=base64.b64decode(data["nonce"], validate=True),
            ciphertext=base64.b64decode(data["ciphertext"], validate=True),
            tag=base64.b64decode(data["tag"], validate=True),
            encrypted=bool(data["encrypted"]),
            format_version=int(data["format_version"]),
            salt=base64.b64decode(data.get("salt", ""), validate=True),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise DecryptionError(f"Malformed cipher bundle: {e}")
