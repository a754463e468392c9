# -*- coding: utf-8 -*-
"""Exception hierarchy for the journal storage layer."""
from __future__ import annotations


class JournalStoreError(Exception):
    """Base class for every error raised by journalstore."""


class ConfigurationError(JournalStoreError):
    """Configuration is missing or insecure."""


class StoreOpenError(JournalStoreError, OSError):
    """The primary SQLite file cannot be opened or created."""


class MigrationError(JournalStoreError):
    """A schema migration step failed and was rolled back."""

    def __init__(self, message: str, step: object = None) -> None:
        super().__init__(message)
        self.step = step


class CryptoError(JournalStoreError):
    """Decryption failed: bad key/password, tampered or malformed data."""


class FormatError(JournalStoreError):
    """An export envelope does not have the expected token layout."""


class PasswordRequired(JournalStoreError):
    """An encrypted export was supplied without a password."""
