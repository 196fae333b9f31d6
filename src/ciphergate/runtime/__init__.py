"""
Runtime module for ciphergate.

The encrypted-value runtime is an external collaborator. This package
defines the interface ciphergate calls into and ships a local runtime for
development and tests.

Contents:
    - CiphertextRuntime: abstract interface every runtime implements
    - LocalRuntime: non-confidential runtime backed by the ledger database
    - LocalDecryptionOracle: ACL-checking reveal for the local runtime
"""

from ciphergate.runtime.base import BinaryOp, CiphertextRuntime
from ciphergate.runtime.local import LocalRuntime, derive_handle
from ciphergate.runtime.oracle import LocalDecryptionOracle

__all__ = [
    "BinaryOp",
    "CiphertextRuntime",
    "LocalDecryptionOracle",
    "LocalRuntime",
    "derive_handle",
]
