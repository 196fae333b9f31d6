"""
ciphergate - Confidential predicate evaluation over encrypted attributes.

A data owner publishes a decision policy whose constants stay encrypted;
principals submit encrypted attributes and receive an encrypted verdict
that only they (and the engine, for reuse) may ask to decrypt.

It provides:
- A ciphertext algebra adapter over a pluggable encrypted-value runtime
- Three policies built purely from that algebra (threshold-gated bonus,
  bitmask matching, multi-factor eligibility)
- An access control ledger of decrypt grants and public disclosures
- SQLite-backed state with all-or-nothing invocations

Example usage:
    $ ciphergate --db demo.db init --admin alice
    $ ciphergate --db demo.db eligibility set-policy club --min-age 18 --country 840 --as alice
    $ ciphergate --db demo.db eligibility register club --age 20 --country 840 --as bob
"""

__version__ = "0.1.0"
__author__ = "ciphergate Contributors"

__all__ = [
    "__version__",
    "__author__",
]
