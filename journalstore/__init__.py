# -*- coding: utf-8 -*-
"""journalstore package.

Modules:
    config:    Environment settings and logging setup.
    errors:    Exception hierarchy.
    crypto:    AEAD/KDF helpers and the at-rest field codec.
    exchange:  Password-sealed export envelopes and CSV/JSON documents.
    schema:    Table creation, additive columns, constraint-removal rebuilds.
    db:        Store bootstrap + async data access.
    sessions:  SQLite session store for session middleware.
    logic:     Encrypted entries, export/import, legacy re-encryption.
"""

__all__ = ["config", "errors", "crypto", "exchange", "schema", "db", "sessions", "logic"]
