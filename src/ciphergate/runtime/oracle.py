"""
Local stand-in for the off-chain decryption oracle.

The real oracle is an external service: a principal presents a request
referencing a handle, and the oracle consults the Access Control Ledger
before releasing plaintext. This double does the same against the local
runtime so the engine's results can be observed in tests and the CLI.
"""

from ciphergate.acl import AccessControlLedger
from ciphergate.errors import NotAuthorizedError
from ciphergate.runtime.local import LocalRuntime


class LocalDecryptionOracle:
    """
    Reveals local-runtime values to principals the ledger authorizes.

    Attributes:
        runtime: The local runtime holding the values
        acl: The ledger consulted before every reveal
    """

    def __init__(self, runtime: LocalRuntime, acl: AccessControlLedger) -> None:
        self.runtime = runtime
        self.acl = acl

    def decrypt(self, handle: str, principal: str) -> int | bool:
        """
        Decrypt handle for principal.

        Raises:
            NotAuthorizedError: If principal holds no grant and the handle
                is not publicly disclosed
        """
        if not self.acl.is_allowed(handle, principal):
            raise NotAuthorizedError(
                principal=principal,
                operation=f"decrypt {handle}",
                required="an ACL grant or public disclosure",
            )
        return self.runtime.reveal(handle)

    def public_decrypt(self, handle: str) -> int | bool:
        """Decrypt a publicly disclosed handle without naming a principal."""
        if not self.acl.is_publicly_disclosed(handle):
            raise NotAuthorizedError(
                principal="<public>",
                operation=f"decrypt {handle}",
                required="public disclosure",
            )
        return self.runtime.reveal(handle)
