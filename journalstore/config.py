# -*- coding: utf-8 -*-
"""Environment-driven settings for the journal store."""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os

logger = logging.getLogger("journalstore.config")

DEFAULT_DB_PATH = "journal.db"
DEFAULT_SESSION_TTL = 86_400  # seconds

# Placeholder passphrase shipped for first runs. Anything containing the
# marker is treated as "not configured".
INSECURE_KEY_MARKER = "change-this"
DEFAULT_ENCRYPTION_KEY = "change-this-to-a-secure-32-character-key!!"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration."""

    db_path: str = DEFAULT_DB_PATH
    encryption_key: str = DEFAULT_ENCRYPTION_KEY
    session_ttl: int = DEFAULT_SESSION_TTL
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``JOURNAL_*`` and ``ENCRYPTION_KEY`` variables."""
        raw_ttl = os.environ.get("JOURNAL_SESSION_TTL")
        try:
            ttl = int(raw_ttl) if raw_ttl else DEFAULT_SESSION_TTL
        except ValueError:
            logger.warning("Ignoring invalid JOURNAL_SESSION_TTL=%r", raw_ttl)
            ttl = DEFAULT_SESSION_TTL
        return cls(
            db_path=os.environ.get("JOURNAL_DB", DEFAULT_DB_PATH),
            encryption_key=os.environ.get("ENCRYPTION_KEY") or DEFAULT_ENCRYPTION_KEY,
            session_ttl=ttl,
            log_level=os.environ.get("JOURNAL_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def uses_default_key(self) -> bool:
        return INSECURE_KEY_MARKER in self.encryption_key

    def warn_if_insecure(self) -> bool:
        """Log a warning when the placeholder passphrase is in use.

        Returns True if the warning was emitted. This never raises: an
        unconfigured key degrades security but not availability.
        """
        if not self.uses_default_key:
            return False
        logger.warning(
            "Using the default encryption key! Set ENCRYPTION_KEY in production."
        )
        return True


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler for command-line use."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
