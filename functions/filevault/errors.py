"""
Error taxonomy shared by the stores, the file service and the HTTP layer.
"""

from __future__ import annotations


class FileVaultError(Exception):
    """Base error. ``status_code`` is the HTTP status the API responds with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(FileVaultError):
    status_code = 400


class PayloadTooLarge(InvalidInput):
    status_code = 413


class BlobNotFound(FileVaultError):
    status_code = 404


class StorageError(FileVaultError):
    """A chunk or index backend failed to read or write."""

    status_code = 500


class BlobIdCollision(StorageError):
    """Raised by a store when asked to create something that already exists."""


class InternalError(FileVaultError):
    status_code = 500
