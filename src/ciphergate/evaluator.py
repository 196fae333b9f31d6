"""
Predicate Evaluator for ciphergate.

Composes algebra primitives into the three confidential policies:

    - Threshold gate (bonus selection):
          cond   = AND_i ge(attr_i, threshold_i)        folded left to right
          result = select(cond, if_met, otherwise)

    - Bitmask intersection (matching):
          result = gt(bit_and(mask_a, mask_b), lift(0))

    - Multi-factor eligibility:
          age_ok     = ge(age, lift(min_age))
          country_ok = OR_i eq(country, lift(c_i))      folded from false
          invite_ok  = eq(invite, lift(1)) if require_invite else true
          result     = and(age_ok, and(country_ok, invite_ok))

Only plaintext policy configuration (require_invite, the allow-list
contents) drives Python control flow. Secret attributes only ever flow
through the algebra.
"""

import logging
from collections.abc import Sequence

from ciphergate.algebra import CiphertextAlgebra
from ciphergate.schema import CipherType, EligibilityPolicy

logger = logging.getLogger(__name__)

# Widths used when lifting eligibility constants
AGE_TYPE = CipherType.EUINT8
COUNTRY_TYPE = CipherType.EUINT16
INVITE_TYPE = CipherType.EUINT8


class PredicateEvaluator:
    """
    Builds policy results from CiphertextAlgebra calls.

    Usage:
        evaluator = PredicateEvaluator(algebra)
        verdict = evaluator.eligibility(age, country, invite, policy)

    Attributes:
        algebra: The adapter every computation goes through
    """

    def __init__(self, algebra: CiphertextAlgebra) -> None:
        self.algebra = algebra

    def threshold_gate(
        self,
        attributes: Sequence[str],
        thresholds: Sequence[str],
        if_met: str,
        otherwise: str,
    ) -> str:
        """
        Select if_met when every attribute reaches its threshold.

        Args:
            attributes: Encrypted attribute handles
            thresholds: Encrypted thresholds, paired by position
            if_met: Value returned when all pairs pass
            otherwise: Value returned otherwise

        Returns:
            Handle of the selected value
        """
        if not attributes or len(attributes) != len(thresholds):
            msg = (
                f"threshold_gate needs matching non-empty lists, got "
                f"{len(attributes)} attributes and {len(thresholds)} thresholds"
            )
            raise ValueError(msg)

        cond = self.algebra.ge(attributes[0], thresholds[0])
        for attribute, threshold in zip(attributes[1:], thresholds[1:]):
            cond = self.algebra.and_(cond, self.algebra.ge(attribute, threshold))

        return self.algebra.select(cond, if_met, otherwise)

    def bitmask_match(self, mask_a: str, mask_b: str) -> str:
        """Encrypted (mask_a & mask_b) != 0."""
        overlap = self.algebra.bit_and(mask_a, mask_b)
        zero = self.algebra.lift(0, self.algebra.type_of(overlap))
        return self.algebra.gt(overlap, zero)

    def lift_mask(self, mask: int, mask_type: CipherType) -> str:
        """Lift a plaintext mask so both content modes share one algebra path."""
        return self.algebra.lift(mask, mask_type)

    def eligibility(
        self,
        age: str,
        country: str,
        invite: str,
        policy: EligibilityPolicy,
    ) -> str:
        """
        Evaluate multi-factor eligibility.

        An empty allow-list leaves country_ok at false, so the result is
        always false.
        """
        age_ok = self.algebra.ge(age, self.algebra.lift(policy.min_age, AGE_TYPE))

        country_ok = self.algebra.false_literal()
        for code in policy.allowed_countries:
            hit = self.algebra.eq(country, self.algebra.lift(code, COUNTRY_TYPE))
            country_ok = self.algebra.or_(country_ok, hit)

        # require_invite is plaintext configuration, not a secret
        if policy.require_invite:
            invite_ok = self.algebra.eq(invite, self.algebra.lift(1, INVITE_TYPE))
        else:
            invite_ok = self.algebra.true_literal()

        return self.algebra.and_(age_ok, self.algebra.and_(country_ok, invite_ok))
