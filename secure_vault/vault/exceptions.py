"""Custom exceptions for the vault domain."""

from typing import Optional


class CryptoError(Exception):
    """Base exception for cryptographic operations."""

    def __init__(self, message: str, *, recoverable: Optional[bool] = None):
        super().__init__(message)
        self.recoverable = recoverable


class DecryptionError(CryptoError):
    """Raised when a sealed value cannot be opened with the supplied key."""

    def __init__(self, message: str = "Unable to decrypt value", *, recoverable: Optional[bool] = True):
        super().__init__(message, recoverable=recoverable)


class ObjectStoreError(Exception):
    """Raised when the object storage backend rejects an operation."""
