"""Authenticated-encryption primitive used by the encrypted store."""

from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..domain.errors import DecryptionFailure

NONCE_BYTES = 12
KEY_BITS = 256


class Cipher(ABC):
    """Black-box AEAD: key generation, encryption and verified decryption."""

    key_size: int = KEY_BITS // 8

    @abstractmethod
    def generate_key(self) -> bytes:
        pass

    @abstractmethod
    def encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        pass

    @abstractmethod
    def decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        """Return the plaintext or raise :class:`DecryptionFailure`."""
        pass


class AesGcmCipher(Cipher):
    """AES-256-GCM from the ``cryptography`` package."""

    def generate_key(self) -> bytes:
        return AESGCM.generate_key(bit_length=KEY_BITS)

    def encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        return AESGCM(key).encrypt(nonce, plaintext, None)

    def decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, None)
        except (InvalidTag, ValueError) as e:
            raise DecryptionFailure("Ciphertext failed authentication") from e
