"""
Local development runtime.

LocalRuntime stands in for the external encrypted-value runtime during
development, tests and CLI demos. Values live in the ledger database
behind opaque 32-byte handles, so ciphertext rows share the engine's
transaction and disappear on rollback.

Security Note:
    Values are stored in the clear. This runtime provides no
    confidentiality and must never back a production deployment.

Handle derivation:
    - Lifted constants and operation results: sha256 over the operation
      name and operand handles, so the same computation on the same inputs
      always yields the same handle.
    - Client inputs: sha256 over fresh random bytes.

Proofs:
    HMAC-SHA256 keyed by a per-database secret over the submitting
    principal and every handle in the bundle. One proof covers all
    handles; altering or reordering any of them invalidates it.
"""

import hashlib
import hmac
import logging
import secrets
from collections.abc import Sequence

from ciphergate.errors import CiphertextError, InvalidProofError
from ciphergate.runtime.base import BinaryOp, CiphertextRuntime
from ciphergate.schema import CipherType, InputBundle, is_handle
from ciphergate.store import LedgerDB

logger = logging.getLogger(__name__)

PROOF_KEY_META = "local_runtime.proof_key"


def derive_handle(*parts: str) -> str:
    """Derive a 32-byte handle from its provenance."""
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"0x{digest}"


def check_range(value: int, ctype: CipherType, operation: str) -> int:
    """Range-check a plaintext value for a cipher type. Python bools are not integers here."""
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= ctype.max_value:
        raise CiphertextError(
            operation=operation,
            message=f"Value {value!r} does not fit {ctype.value}",
        )
    return value


class LocalRuntime(CiphertextRuntime):
    """
    Ciphertext runtime backed by the ledger database.

    Usage:
        db = LedgerDB(":memory:")
        runtime = LocalRuntime(db)
        bundle = runtime.encrypt_input("alice", [(20, CipherType.EUINT8)])
        handles = runtime.verify_input(bundle, "alice")

    Attributes:
        db: Ledger database holding ciphertext rows and the proof key
        native_bool_literals: Whether bool_literal() is supported
    """

    def __init__(self, db: LedgerDB, native_bool_literals: bool = True) -> None:
        self.db = db
        self.native_bool_literals = native_bool_literals
        key = db.get_meta(PROOF_KEY_META)
        if key is None:
            key = secrets.token_hex(32)
            db.set_meta(PROOF_KEY_META, key)
        self._proof_key = bytes.fromhex(key)

    @property
    def name(self) -> str:
        return "local"

    # =========================================================================
    # Runtime Interface
    # =========================================================================

    def trivial_encrypt(self, value: int, ctype: CipherType) -> str:
        value = check_range(value, ctype, "trivial_encrypt")
        handle = derive_handle("trivial", ctype.value, str(value))
        self.db.put_ciphertext(handle, ctype, value)
        return handle

    def type_of(self, handle: str) -> CipherType:
        return self._load(handle, "type_of")[0]

    def binary_op(self, op: BinaryOp, lhs: str, rhs: str) -> str:
        lhs_type, a = self._load(lhs, op.value)
        _, b = self._load(rhs, op.value)

        if op is BinaryOp.EQ:
            result = int(a == b)
        elif op is BinaryOp.GE:
            result = int(a >= b)
        elif op is BinaryOp.GT:
            result = int(a > b)
        elif op is BinaryOp.LT:
            result = int(a < b)
        elif op is BinaryOp.AND:
            result = int(bool(a) and bool(b))
        elif op is BinaryOp.OR:
            result = int(bool(a) or bool(b))
        else:
            result = a & b
        ctype = CipherType.EBOOL if op.is_comparison or op.is_boolean else lhs_type

        handle = derive_handle(op.value, lhs, rhs)
        self.db.put_ciphertext(handle, ctype, result)
        return handle

    def select(self, cond: str, if_true: str, if_false: str) -> str:
        _, c = self._load(cond, "select")
        true_type, t = self._load(if_true, "select")
        _, f = self._load(if_false, "select")
        # both operands are read; only the stored value depends on c
        value = t if c else f
        handle = derive_handle("select", cond, if_true, if_false)
        self.db.put_ciphertext(handle, true_type, value)
        return handle

    def bool_literal(self, value: bool) -> str | None:
        if not self.native_bool_literals:
            return None
        return self.trivial_encrypt(int(value), CipherType.EBOOL)

    def verify_input(self, bundle: InputBundle, principal: str) -> list[str]:
        handles = list(bundle.handles)
        if not bundle.proof:
            raise InvalidProofError(reason="empty proof", handle_count=len(handles))
        if not handles:
            raise InvalidProofError(reason="no ciphertext references")
        if len(set(handles)) != len(handles):
            raise InvalidProofError(
                reason="duplicate ciphertext references",
                handle_count=len(handles),
            )
        for handle in handles:
            if not is_handle(handle) or self.db.get_ciphertext(handle) is None:
                raise InvalidProofError(
                    reason=f"unknown ciphertext reference {handle}",
                    handle_count=len(handles),
                )

        expected = self._sign(principal, handles)
        if not hmac.compare_digest(expected, bundle.proof):
            raise InvalidProofError(
                reason="proof does not cover these references for this principal",
                handle_count=len(handles),
            )
        return handles

    # =========================================================================
    # Client-side Helpers
    # =========================================================================

    def encrypt_input(
        self,
        principal: str,
        values: Sequence[tuple[int, CipherType]],
    ) -> InputBundle:
        """
        Encrypt values the way a client SDK would and sign them jointly.

        Args:
            principal: The principal that will submit the bundle
            values: (plaintext, type) pairs in submission order

        Returns:
            InputBundle with one handle per value and a single proof
        """
        handles = []
        for value, ctype in values:
            value = check_range(value, ctype, "encrypt_input")
            handle = derive_handle("input", ctype.value, secrets.token_hex(16))
            self.db.put_ciphertext(handle, ctype, value)
            handles.append(handle)
        return InputBundle(handles=handles, proof=self._sign(principal, handles))

    def reveal(self, handle: str) -> int | bool:
        """
        Plaintext behind a handle.

        Only the decryption oracle calls this, after checking the ledger.
        """
        ctype, value = self._load(handle, "reveal")
        if ctype is CipherType.EBOOL:
            return bool(value)
        return value

    # =========================================================================
    # Internals
    # =========================================================================

    def _sign(self, principal: str, handles: Sequence[str]) -> str:
        message = "|".join([principal, *handles]).encode("utf-8")
        return hmac.new(self._proof_key, message, hashlib.sha256).hexdigest()

    def _load(self, handle: str, operation: str) -> tuple[CipherType, int]:
        row = self.db.get_ciphertext(handle) if is_handle(handle) else None
        if row is None:
            raise CiphertextError(
                handle=str(handle),
                operation=operation,
                message=f"Unknown ciphertext handle in {operation}: {handle}",
            )
        return row
