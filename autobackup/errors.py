"""
Error types shared across the backup workflow.

Hierarchy:
- ConfigurationError: invalid settings, raised before any I/O
- ExportError: the database dump process failed
- TransformError: a compression or encryption stage failed
- StorageError: upload, list or delete against object storage failed
- BackupCancelled: the run was interrupted by the operator
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup errors."""
    pass


class ConfigurationError(BackupError):
    """Raised when a configuration value is missing or invalid."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"configuration error for '{field}': {message}")


class InvalidKeySize(ConfigurationError):
    """Raised when an encryption key is not exactly 32 bytes."""

    def __init__(self, size: int, expected: int = 32):
        self.size = size
        super().__init__('encryption_key', f"key must be exactly {expected} bytes, got {size}")


class ExportError(BackupError):
    """
    Raised when a database export fails.

    For dump processes the exit status is only known once stdout has been
    drained, so this is usually raised from the pipeline's close().
    """

    def __init__(
        self,
        db_type: str,
        db_name: str,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = ''
    ):
        self.db_type = db_type
        self.db_name = db_name
        self.returncode = returncode
        self.stderr = stderr

        detail = message
        if stderr:
            detail = f"{message}: {stderr.strip()}"
        super().__init__(f"backup failed for {db_type} database '{db_name}': {detail}")


class TransformError(BackupError):
    """Raised when a pipeline stage fails."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage} failed: {message}")


class CompressionError(TransformError):
    """Raised when the compression stage fails."""

    def __init__(self, message: str):
        super().__init__('compression', message)


class EncryptionError(TransformError):
    """Raised when the encryption stage fails."""

    def __init__(self, message: str):
        super().__init__('encryption', message)


class TruncatedInput(TransformError):
    """Raised when ciphertext is too short to contain a nonce."""

    def __init__(self, message: str = 'input too short to contain a nonce'):
        super().__init__('decryption', message)


class AuthenticationFailed(TransformError):
    """Raised when AEAD tag verification fails. Never carries plaintext."""

    def __init__(self):
        super().__init__('decryption', 'message authentication failed')


class StorageError(BackupError):
    """Raised when a storage operation fails."""

    def __init__(self, operation: str, bucket: str, key: str, message: str):
        self.operation = operation
        self.bucket = bucket
        self.key = key
        super().__init__(f"storage {operation} failed for bucket '{bucket}', key '{key}': {message}")


class BackupCancelled(BackupError):
    """Raised when a backup is interrupted by a cancellation request."""

    def __init__(self, message: str = 'backup cancelled'):
        super().__init__(message)
