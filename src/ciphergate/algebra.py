"""
Ciphertext Algebra Adapter for ciphergate.

A thin contract around the external runtime. Every predicate in the
engine is built from these primitives and nothing else.

Design Principles:
    - Opaque: no operation inspects a value; failures come only from
      malformed or incompatible handles (CiphertextError)
    - Oblivious: select() receives both branches already materialized and
      leaves the choice to the runtime; the adapter never branches on a
      secret
    - Type-checked: operand types are validated before calling the runtime

Boolean literals:
    If the runtime offers native boolean injection it is used. Otherwise
    true is eq(z, z) and false is lt(z, z) for a lifted zero z.
"""

import logging

from ciphergate.errors import CiphertextError
from ciphergate.runtime.base import BinaryOp, CiphertextRuntime
from ciphergate.schema import CipherType

logger = logging.getLogger(__name__)


class CiphertextAlgebra:
    """
    Typed operations over opaque ciphertext handles.

    Usage:
        algebra = CiphertextAlgebra(runtime)
        ok = algebra.ge(age, algebra.lift(18, CipherType.EUINT8))
        amount = algebra.select(ok, bonus_yes, bonus_no)

    Attributes:
        runtime: The runtime performing the actual operations
        native_bool_literals: Prefer the runtime's boolean injection
    """

    def __init__(self, runtime: CiphertextRuntime, native_bool_literals: bool = True) -> None:
        self.runtime = runtime
        self.native_bool_literals = native_bool_literals

    # =========================================================================
    # Constants
    # =========================================================================

    def lift(self, value: int, ctype: CipherType = CipherType.EUINT32) -> str:
        """Inject a known plaintext value as a ciphertext of type ctype."""
        if isinstance(value, bool) or not isinstance(value, int):
            raise CiphertextError(
                operation="lift",
                message=f"Cannot lift non-integer constant {value!r}",
            )
        if not 0 <= value <= ctype.max_value:
            raise CiphertextError(
                operation="lift",
                message=f"Constant {value} does not fit {ctype.value}",
            )
        return self.runtime.trivial_encrypt(value, ctype)

    def true_literal(self) -> str:
        """Encrypted true."""
        return self._bool_literal(True)

    def false_literal(self) -> str:
        """Encrypted false."""
        return self._bool_literal(False)

    def _bool_literal(self, value: bool) -> str:
        if self.native_bool_literals:
            handle = self.runtime.bool_literal(value)
            if handle is not None:
                return handle
        zero = self.lift(0, CipherType.EUINT8)
        if value:
            return self.eq(zero, zero)
        return self.lt(zero, zero)

    # =========================================================================
    # Comparisons
    # =========================================================================

    def eq(self, a: str, b: str) -> str:
        return self._compare(BinaryOp.EQ, a, b)

    def ge(self, a: str, b: str) -> str:
        return self._compare(BinaryOp.GE, a, b)

    def gt(self, a: str, b: str) -> str:
        return self._compare(BinaryOp.GT, a, b)

    def lt(self, a: str, b: str) -> str:
        return self._compare(BinaryOp.LT, a, b)

    def _compare(self, op: BinaryOp, a: str, b: str) -> str:
        self._require_integer(op, a)
        self._require_integer(op, b)
        return self.runtime.binary_op(op, a, b)

    # =========================================================================
    # Boolean and Bitwise
    # =========================================================================

    def and_(self, p: str, q: str) -> str:
        return self._boolean(BinaryOp.AND, p, q)

    def or_(self, p: str, q: str) -> str:
        return self._boolean(BinaryOp.OR, p, q)

    def _boolean(self, op: BinaryOp, p: str, q: str) -> str:
        self._require_bool(op.value, p)
        self._require_bool(op.value, q)
        return self.runtime.binary_op(op, p, q)

    def bit_and(self, a: str, b: str) -> str:
        """Bitwise AND of two integers of the same width."""
        a_type = self._require_integer(BinaryOp.BIT_AND, a)
        b_type = self._require_integer(BinaryOp.BIT_AND, b)
        if a_type is not b_type:
            raise CiphertextError(
                handle=b,
                operation=BinaryOp.BIT_AND.value,
                message=f"bit_and width mismatch: {a_type.value} vs {b_type.value}",
            )
        return self.runtime.binary_op(BinaryOp.BIT_AND, a, b)

    # =========================================================================
    # Select
    # =========================================================================

    def select(self, cond: str, if_true: str, if_false: str) -> str:
        """
        Oblivious select: cond ? if_true : if_false.

        Both branches are handles computed before the call, so the work done
        is identical whichever branch the runtime picks.
        """
        self._require_bool("select", cond)
        true_type = self.type_of(if_true)
        false_type = self.type_of(if_false)
        if true_type is not false_type:
            raise CiphertextError(
                handle=if_false,
                operation="select",
                message=f"select branch mismatch: {true_type.value} vs {false_type.value}",
            )
        return self.runtime.select(cond, if_true, if_false)

    # =========================================================================
    # Type Checks
    # =========================================================================

    def type_of(self, handle: str) -> CipherType:
        return self.runtime.type_of(handle)

    def _require_bool(self, operation: str, handle: str) -> None:
        if self.type_of(handle) is not CipherType.EBOOL:
            raise CiphertextError(
                handle=handle,
                operation=operation,
                message=f"{operation} expects ebool operands",
            )

    def _require_integer(self, op: BinaryOp, handle: str) -> CipherType:
        ctype = self.type_of(handle)
        if not ctype.is_integer:
            raise CiphertextError(
                handle=handle,
                operation=op.value,
                message=f"{op.value} expects integer operands, got {ctype.value}",
            )
        return ctype
