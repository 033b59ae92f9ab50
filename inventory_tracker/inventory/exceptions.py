"""Custom exceptions for the inventory encryption domain."""

from typing import Optional


class CryptoError(Exception):
    """Base exception for cryptographic operations."""

    def __init__(self, message: str, *, recoverable: Optional[bool] = None):
        super().__init__(message)
        self.recoverable = recoverable


class DocumentStoreError(Exception):
    """Raised for invalid use of the document store (unknown collection, bad id)."""
