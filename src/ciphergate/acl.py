"""
Access Control Ledger for ciphergate.

The ledger is the authoritative record of which principal may ask the
external decryption oracle to reveal which ciphertext. It only records
authorization facts; it never evaluates a decrypt request itself.

Rules:
    - Grants are monotonic: once added, never removed
    - grant() is idempotent: repeating a grant is a no-op
    - disclose_publicly() is one-way and is the only widening mechanism
    - Every new fact is emitted as a notification
"""

import logging
from collections.abc import Callable

from ciphergate.errors import InvalidPrincipalError
from ciphergate.schema import Event, EventType, is_zero_key
from ciphergate.store import LedgerDB

logger = logging.getLogger(__name__)

EventListener = Callable[[Event], None]


class AccessControlLedger:
    """
    Per-ciphertext decrypt grants plus a publicly-disclosed flag.

    Usage:
        acl = AccessControlLedger(db, engine_identity="ciphergate.engine")
        acl.grant(handle, "alice")
        acl.grant_self(handle)
        acl.is_allowed(handle, "alice")  # True

    Attributes:
        db: Ledger database
        engine_identity: The engine's own execution identity
    """

    def __init__(
        self,
        db: LedgerDB,
        engine_identity: str,
        listener: EventListener | None = None,
    ) -> None:
        self.db = db
        self.engine_identity = engine_identity
        self._listener = listener

    def grant(self, handle: str, principal: str) -> bool:
        """
        Allow principal to request decryption of handle.

        Returns:
            True if the grant is new
        """
        if is_zero_key(principal):
            raise InvalidPrincipalError(principal=principal or "")
        added = self.db.add_grant(handle, principal)
        if added:
            self._emit(EventType.ACCESS_GRANTED, handle=handle, principal=principal)
        return added

    def grant_self(self, handle: str) -> bool:
        """Grant the engine itself so the value can feed a later computation."""
        return self.grant(handle, self.engine_identity)

    def disclose_publicly(self, handle: str) -> bool:
        """
        Mark handle readable by any principal. Irreversible.

        Returns:
            True if the handle was not already disclosed
        """
        added = self.db.mark_public(handle)
        if added:
            self._emit(EventType.PUBLICLY_DISCLOSED, handle=handle)
        return added

    def is_allowed(self, handle: str, principal: str) -> bool:
        """Whether principal holds a grant or the handle is public."""
        return self.db.is_public(handle) or self.db.has_grant(handle, principal)

    def is_publicly_disclosed(self, handle: str) -> bool:
        return self.db.is_public(handle)

    def grantees(self, handle: str) -> list[str]:
        return self.db.list_grantees(handle)

    def _emit(self, event_type: EventType, **payload: str) -> None:
        event = self.db.append_event(Event(event_type=event_type, payload=payload))
        logger.debug("acl %s %s", event_type.value, payload)
        if self._listener is not None:
            self._listener(event)
