"""
Authenticated encryption for backup artifacts.

Uses AES-256-GCM. An encrypted artifact is laid out as:

    nonce (12 bytes) || ciphertext || tag (16 bytes)

with no length prefix or version byte. GCM computes one tag over the whole
message, so the encryption stage buffers the complete plaintext.
"""

import os
import base64
import binascii

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from autobackup.errors import (
    AuthenticationFailed,
    BackupCancelled,
    ConfigurationError,
    EncryptionError,
    InvalidKeySize,
    TransformError,
    TruncatedInput,
)
from autobackup.utils.streams import ByteStream, BytesStream, Pipe, PipeClosed, StageStream, read_all


NONCE_SIZE = 12  # GCM standard nonce size
KEY_SIZE = 32  # AES-256
TAG_SIZE = 16


class AESEncryptor:
    """Seals and opens byte streams with AES-256-GCM."""

    name = 'encrypt'

    def __init__(self, key: bytes):
        """
        Args:
            key: Raw 32-byte key

        Raises:
            InvalidKeySize: If the key is not exactly 32 bytes
        """
        if len(key) != KEY_SIZE:
            raise InvalidKeySize(len(key), KEY_SIZE)
        self._aesgcm = AESGCM(bytes(key))

    def seal(self, plaintext: bytes) -> bytes:
        """Encrypt plaintext under a fresh random nonce."""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def open(self, frame: bytes) -> bytes:
        """
        Verify and decrypt a sealed frame.

        Raises:
            TruncatedInput: If the frame is shorter than a nonce
            AuthenticationFailed: If the tag does not verify
        """
        if len(frame) < NONCE_SIZE:
            raise TruncatedInput(f"expected at least {NONCE_SIZE} bytes, got {len(frame)}")

        nonce = frame[:NONCE_SIZE]
        try:
            return self._aesgcm.decrypt(nonce, frame[NONCE_SIZE:], None)
        except InvalidTag:
            # Same error for tampering, wrong key and a cut-off tag
            raise AuthenticationFailed() from None

    def encrypt(self, stream: ByteStream, context=None) -> ByteStream:
        """Return a stream of nonce || ciphertext || tag for the input stream."""

        def produce(upstream: ByteStream, pipe: Pipe):
            try:
                plaintext = read_all(upstream)
            except (TransformError, BackupCancelled, PipeClosed):
                raise
            except Exception as e:
                raise EncryptionError(f"failed to read plaintext: {e}") from e

            pipe.write(self.seal(plaintext))

        return StageStream(self.name, stream, produce, context)

    def decrypt(self, stream: ByteStream) -> ByteStream:
        """
        Decrypt a whole encrypted stream.

        Plaintext is only returned after the tag has been verified.
        """
        try:
            frame = read_all(stream)
        finally:
            stream.close()
        return BytesStream(self.open(frame))

    def apply(self, stream: ByteStream, context=None) -> ByteStream:
        return self.encrypt(stream, context)

    def extension(self) -> str:
        return '.enc'


def decode_key(encoded: str) -> bytes:
    """
    Decode a base64 encryption key from configuration.

    Raises:
        ConfigurationError: If the value is not valid base64
        InvalidKeySize: If the decoded key is not 32 bytes
    """
    try:
        key = base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError('encryption_key', f"must be base64 encoded: {e}")

    if len(key) != KEY_SIZE:
        raise InvalidKeySize(len(key), KEY_SIZE)

    return key


def generate_key() -> str:
    """Generate a new random key, base64 encoded for configuration."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()
