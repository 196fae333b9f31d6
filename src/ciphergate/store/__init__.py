"""
Storage module for ciphergate.

This module provides SQLite-based persistence for policies, registrations,
content, the access control ledger and notifications.

Tables:
    - policies: one confidential policy per (kind, context key)
    - registrations: each principal's latest result handle per context
    - contents: author-owned masks with a terminal "cleared" state
    - acl_grants / acl_public: decrypt authorization facts
    - events: notifications for off-chain observers

Design principles:
    - Overwrite, never delete: superseded values stay as orphaned handles
    - Atomic: one transaction per engine invocation
    - Self-contained: a single .db file holds the whole ledger
"""

from ciphergate.store.db import LedgerDB, now_iso

__all__ = [
    "LedgerDB",
    "now_iso",
]
