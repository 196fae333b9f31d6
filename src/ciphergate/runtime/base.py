"""
Base class for encrypted-value runtimes.

A runtime is the external collaborator that actually holds ciphertexts,
performs homomorphic operations on them and validates input proofs.
ciphergate never sees plaintext: it only passes handles in and gets
handles back.

Subclasses must implement:
    - trivial_encrypt(): lift a known plaintext into a ciphertext
    - type_of(): report the CipherType behind a handle
    - binary_op(): comparisons, boolean and bitwise operations
    - select(): oblivious ternary over a boolean ciphertext
    - verify_input(): validate a client proof bundle

Optional:
    - bool_literal(): native boolean injection. Returning None makes the
      algebra adapter derive literals from algebraic identities instead.
"""

from abc import ABC, abstractmethod
from enum import Enum

from ciphergate.schema import CipherType, InputBundle


class BinaryOp(str, Enum):
    """Binary operations a runtime must support."""

    EQ = "eq"
    GE = "ge"
    GT = "gt"
    LT = "lt"
    AND = "and"
    OR = "or"
    BIT_AND = "bit_and"

    @property
    def is_comparison(self) -> bool:
        return self in (BinaryOp.EQ, BinaryOp.GE, BinaryOp.GT, BinaryOp.LT)

    @property
    def is_boolean(self) -> bool:
        return self in (BinaryOp.AND, BinaryOp.OR)


class CiphertextRuntime(ABC):
    """
    Abstract encrypted-value runtime.

    Implementations raise CiphertextError for unknown handles and
    InvalidProofError for bundles that fail verification. Operand type
    checking is done by the algebra adapter before calling in.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Runtime identifier used in logs."""
        ...

    @abstractmethod
    def trivial_encrypt(self, value: int, ctype: CipherType) -> str:
        """
        Lift a plaintext constant into ciphertext form.

        Args:
            value: Plaintext value, already range-checked for ctype
            ctype: Target ciphertext type

        Returns:
            Handle of the new ciphertext
        """
        ...

    @abstractmethod
    def type_of(self, handle: str) -> CipherType:
        """Type of the ciphertext behind a handle."""
        ...

    @abstractmethod
    def binary_op(self, op: BinaryOp, lhs: str, rhs: str) -> str:
        """
        Apply a binary operation.

        Comparisons and boolean ops produce ebool; BIT_AND keeps the operand
        width.
        """
        ...

    @abstractmethod
    def select(self, cond: str, if_true: str, if_false: str) -> str:
        """
        Oblivious select.

        Both branch ciphertexts already exist when this is called; the
        runtime combines them without revealing which one was chosen.
        """
        ...

    def bool_literal(self, value: bool) -> str | None:
        """Native boolean injection, or None if unsupported."""
        return None

    @abstractmethod
    def verify_input(self, bundle: InputBundle, principal: str) -> list[str]:
        """
        Validate a proof bundle submitted by principal.

        The proof is one token covering every handle jointly.

        Returns:
            The verified handles, in bundle order
        """
        ...

    def __repr__(self) -> str:
        """String representation of the runtime."""
        return f"<CiphertextRuntime: {self.name}>"
