"""
Confidential Engine for ciphergate.

The ConfidentialEngine is the boundary layer. Every admin, participant and
author operation enters here. It coordinates between:
- State Store: policies, registrations, content
- Predicate Evaluator: builds results from the ciphertext algebra
- Access Control Ledger: records who may decrypt each result
- Runtime: verifies proof bundles

Invocation Flow:
    1. Validate the caller (non-zero principal, admin/author role)
    2. Validate context key and proof bundle (one proof for all handles)
    3. Load the policy or content the computation depends on
    4. Compute the result handle through the evaluator
    5. Grant the submitter and the engine itself on the result
    6. Persist the record and emit notifications

Design Principles:
    - Atomic: each invocation is one transaction; any error rolls back
      every write it made (records, grants, ciphertext rows, events)
    - Serialized: invocations never interleave
    - Specific failures: callers always get a typed CipherGateError
"""

import logging
import threading
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from typing import Any

from pydantic import ValidationError

from ciphergate.acl import AccessControlLedger
from ciphergate.algebra import CiphertextAlgebra
from ciphergate.errors import (
    AllowListTooLargeError,
    CipherGateError,
    CiphertextError,
    ContentNotFoundError,
    DeveloperModeDisabledError,
    InvalidContextKeyError,
    InvalidPolicyError,
    InvalidPrincipalError,
    InvalidProofError,
    NotAuthorizedError,
    PolicyNotFoundError,
    RegistrationNotFoundError,
)
from ciphergate.evaluator import PredicateEvaluator
from ciphergate.runtime import CiphertextRuntime, LocalRuntime
from ciphergate.schema import (
    BonusPolicy,
    CipherType,
    Content,
    ContentState,
    EligibilityPolicy,
    EngineConfig,
    Event,
    EventType,
    InputBundle,
    PolicyKind,
    Registration,
    is_zero_key,
)
from ciphergate.store import LedgerDB

logger = logging.getLogger(__name__)

# Bundle layouts
ELIGIBILITY_INPUTS = 3  # age, country, invite
MATCH_INPUTS = 1  # interest mask
CONTENT_INPUTS = 1  # content mask

# Width used when lifting plaintext bonus parameters
BONUS_TYPE = CipherType.EUINT32


class ConfidentialEngine:
    """
    Boundary layer over the confidential predicate engine.

    Usage:
        engine = ConfidentialEngine(EngineConfig(db_path=":memory:"), admin="admin")
        engine.set_eligibility_policy("admin", "club", min_age=18,
                                      require_invite=True, allowed_countries=[840])
        bundle = engine.runtime.encrypt_input("alice", [...])
        handle = engine.register_eligibility("alice", "club", bundle)

    Attributes:
        config: Engine configuration
        db: Ledger database
        runtime: Encrypted-value runtime
        algebra: Ciphertext algebra adapter
        evaluator: Predicate evaluator
        acl: Access control ledger
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        runtime: CiphertextRuntime | None = None,
        db: LedgerDB | None = None,
        admin: str | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            config: Engine configuration (defaults to EngineConfig())
            runtime: Runtime to call into (defaults to LocalRuntime over db)
            db: Ledger database (defaults to config.db_path)
            admin: Admin identity to install if the ledger has none yet
        """
        self.config = config or EngineConfig()
        self.db = db or LedgerDB(self.config.db_path)
        self.runtime = runtime or LocalRuntime(
            self.db, native_bool_literals=self.config.native_bool_literals
        )
        self.algebra = CiphertextAlgebra(
            self.runtime, native_bool_literals=self.config.native_bool_literals
        )
        self.evaluator = PredicateEvaluator(self.algebra)
        self.acl = AccessControlLedger(
            self.db,
            engine_identity=self.config.engine_identity,
            listener=self._collect,
        )
        self._lock = threading.Lock()
        self._pending: list[Event] = []

        if admin is not None:
            self._install_admin(admin)

    def close(self) -> None:
        """Close database connection."""
        self.db.close()

    def __enter__(self) -> "ConfidentialEngine":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Admin Surface
    # =========================================================================

    @property
    def admin(self) -> str | None:
        """Current admin identity."""
        return self.db.get_admin()

    def transfer_admin(self, caller: str, new_admin: str) -> None:
        """Replace the admin identity. Only the current admin may do this."""
        with self._invocation("transfer_admin", caller):
            self._require_admin(caller, "transfer admin")
            if is_zero_key(new_admin):
                raise InvalidPrincipalError(principal=new_admin or "")
            self.db.set_admin(new_admin)
            self._emit(EventType.ADMIN_TRANSFERRED, previous=caller, admin=new_admin)

    def set_bonus_policy(self, caller: str, context_key: str, bundle: InputBundle) -> BonusPolicy:
        """
        Publish or replace a bonus policy from encrypted parameters.

        The bundle holds k thresholds followed by the two payout amounts:
        [threshold_1 .. threshold_k, bonus_if_met, bonus_otherwise].
        """
        with self._invocation("set_bonus_policy", caller):
            self._require_admin(caller, "set bonus policy")
            self._validate_context_key(context_key)
            handles = self._verify(bundle, caller)
            if len(handles) < 3:
                raise InvalidProofError(
                    reason="bonus policy needs at least one threshold and two amounts",
                    handle_count=len(handles),
                )
            policy = BonusPolicy(
                context_key=context_key,
                thresholds=handles[:-2],
                bonus_if_met=handles[-2],
                bonus_otherwise=handles[-1],
            )
            self._check_bonus_types(policy)
            return self._store_bonus_policy(caller, policy)

    def set_bonus_policy_plain(
        self,
        caller: str,
        context_key: str,
        thresholds: Sequence[int],
        bonus_if_met: int,
        bonus_otherwise: int,
    ) -> BonusPolicy:
        """Developer mode: publish a bonus policy from plaintext parameters."""
        with self._invocation("set_bonus_policy_plain", caller):
            self._require_developer_mode("set_bonus_policy_plain")
            self._require_admin(caller, "set bonus policy")
            self._validate_context_key(context_key)
            policy = BonusPolicy(
                context_key=context_key,
                thresholds=[self.algebra.lift(t, BONUS_TYPE) for t in thresholds],
                bonus_if_met=self.algebra.lift(bonus_if_met, BONUS_TYPE),
                bonus_otherwise=self.algebra.lift(bonus_otherwise, BONUS_TYPE),
            )
            return self._store_bonus_policy(caller, policy)

    def set_eligibility_policy(
        self,
        caller: str,
        context_key: str,
        min_age: int,
        require_invite: bool,
        allowed_countries: Sequence[int],
    ) -> EligibilityPolicy:
        """
        Publish or replace an eligibility policy.

        Raises:
            AllowListTooLargeError: If allowed_countries exceeds the cap;
                the stored policy is left unchanged
            InvalidPolicyError: If min_age or a country code does not fit
                its encrypted type
        """
        with self._invocation("set_eligibility_policy", caller):
            self._require_admin(caller, "set eligibility policy")
            self._validate_context_key(context_key)
            cap = self.config.allow_list_cap
            if len(allowed_countries) > cap:
                raise AllowListTooLargeError(
                    context_key=context_key,
                    actual_size=len(allowed_countries),
                    max_size=cap,
                )
            try:
                policy = EligibilityPolicy(
                    context_key=context_key,
                    min_age=min_age,
                    require_invite=require_invite,
                    allowed_countries=list(allowed_countries),
                )
            except ValidationError as e:
                raise InvalidPolicyError(
                    context_key=context_key,
                    reason="; ".join(err["msg"] for err in e.errors()),
                ) from e
            self.db.put_policy(PolicyKind.ELIGIBILITY, policy)
            self._emit(
                EventType.POLICY_UPDATED,
                kind=PolicyKind.ELIGIBILITY.value,
                context_key=context_key,
            )
            return policy

    def disclose_policy(self, caller: str, kind: PolicyKind, context_key: str) -> list[str]:
        """
        Mark every ciphertext parameter of a policy publicly disclosed.

        Returns:
            The disclosed handles (empty for plaintext-parameter policies)
        """
        with self._invocation("disclose_policy", caller):
            self._require_admin(caller, "disclose policy")
            policy = self.get_policy(kind, context_key)
            for handle in policy.handles:
                self.acl.disclose_publicly(handle)
            return list(policy.handles)

    def get_policy(self, kind: PolicyKind, context_key: str) -> BonusPolicy | EligibilityPolicy:
        """Get a published policy or raise PolicyNotFoundError."""
        self._validate_context_key(context_key)
        policy = self.db.get_policy(kind, context_key)
        if policy is None:
            raise PolicyNotFoundError(context_key=context_key, kind=kind.value)
        return policy

    # =========================================================================
    # Participant Surface
    # =========================================================================

    def submit_bonus(self, caller: str, context_key: str, bundle: InputBundle) -> str:
        """
        Evaluate the threshold gate for caller's encrypted attributes.

        Returns:
            Handle of the selected bonus amount
        """
        with self._invocation("submit_bonus", caller):
            self._validate_context_key(context_key)
            policy = self.get_policy(PolicyKind.BONUS, context_key)
            attributes = self._verify(bundle, caller, expected=len(policy.thresholds))
            result = self.evaluator.threshold_gate(
                attributes,
                policy.thresholds,
                policy.bonus_if_met,
                policy.bonus_otherwise,
            )
            return self._record_result(PolicyKind.BONUS, context_key, caller, result)

    def register_eligibility(self, caller: str, context_key: str, bundle: InputBundle) -> str:
        """
        Evaluate eligibility for caller's encrypted [age, country, invite].

        Returns:
            Handle of the encrypted verdict
        """
        with self._invocation("register_eligibility", caller):
            self._validate_context_key(context_key)
            policy = self.get_policy(PolicyKind.ELIGIBILITY, context_key)
            age, country, invite = self._verify(bundle, caller, expected=ELIGIBILITY_INPUTS)
            result = self.evaluator.eligibility(age, country, invite, policy)
            return self._record_result(PolicyKind.ELIGIBILITY, context_key, caller, result)

    def match_content(self, caller: str, content_id: int, bundle: InputBundle) -> str:
        """
        Match caller's encrypted interest mask against a content mask.

        Returns:
            Handle of the encrypted (content & interests) != 0 verdict
        """
        with self._invocation("match_content", caller):
            content = self.get_content(content_id)
            (interests,) = self._verify(bundle, caller, expected=MATCH_INPUTS)
            self._check_mask_type(interests, "match_content")
            if content.is_plain:
                mask = self.evaluator.lift_mask(content.plain_mask, self.config.mask_type)
            else:
                mask = content.enc_mask
            result = self.evaluator.bitmask_match(mask, interests)
            return self._record_result(PolicyKind.MATCH, str(content_id), caller, result)

    def get_result(
        self,
        caller: str,
        kind: PolicyKind,
        context_key: str,
        principal: str | None = None,
    ) -> str:
        """
        Result handle of a principal's latest submission (default: caller).

        Raises:
            RegistrationNotFoundError: If nothing was ever submitted
        """
        return self.get_registration(kind, context_key, principal or caller).result_handle

    def get_registration(self, kind: PolicyKind, context_key: str, principal: str) -> Registration:
        """Get a registration or raise RegistrationNotFoundError."""
        registration = self.db.get_registration(kind, context_key, principal)
        if registration is None or not registration.exists:
            raise RegistrationNotFoundError(
                kind=kind.value,
                context_key=context_key,
                principal=principal,
            )
        return registration

    def disclose_result(self, caller: str, kind: PolicyKind, context_key: str) -> str:
        """Mark caller's own latest result publicly disclosed."""
        with self._invocation("disclose_result", caller):
            handle = self.get_registration(kind, context_key, caller).result_handle
            self.acl.disclose_publicly(handle)
            return handle

    # =========================================================================
    # Author Surface
    # =========================================================================

    def create_content(self, caller: str, bundle: InputBundle) -> Content:
        """Create content carrying an encrypted mask."""
        with self._invocation("create_content", caller):
            (mask,) = self._verify(bundle, caller, expected=CONTENT_INPUTS)
            self._check_mask_type(mask, "create_content")
            self.acl.grant(mask, caller)
            self.acl.grant_self(mask)
            content = self.db.insert_content(caller, is_plain=False, plain_mask=None, enc_mask=mask)
            self._emit_content(EventType.CONTENT_CREATED, content)
            return content

    def create_content_plain(self, caller: str, mask: int) -> Content:
        """Developer mode: create content carrying a plaintext mask."""
        with self._invocation("create_content_plain", caller):
            self._require_developer_mode("create_content_plain")
            self._check_plain_mask(mask, "create_content_plain")
            content = self.db.insert_content(caller, is_plain=True, plain_mask=mask, enc_mask=None)
            self._emit_content(EventType.CONTENT_CREATED, content)
            return content

    def update_content(self, caller: str, content_id: int, bundle: InputBundle) -> Content:
        """Replace a content mask with a new encrypted mask."""
        with self._invocation("update_content", caller):
            content = self.get_content(content_id)
            self._require_author(caller, content, "update content")
            (mask,) = self._verify(bundle, caller, expected=CONTENT_INPUTS)
            self._check_mask_type(mask, "update_content")
            self.acl.grant(mask, content.author)
            self.acl.grant_self(mask)
            updated = self.db.update_content(content_id, is_plain=False, plain_mask=None, enc_mask=mask)
            self._emit_content(EventType.CONTENT_UPDATED, updated)
            return updated

    def update_content_plain(self, caller: str, content_id: int, mask: int) -> Content:
        """Developer mode: replace a content mask with a plaintext mask."""
        with self._invocation("update_content_plain", caller):
            self._require_developer_mode("update_content_plain")
            content = self.get_content(content_id)
            self._require_author(caller, content, "update content")
            self._check_plain_mask(mask, "update_content_plain")
            updated = self.db.update_content(content_id, is_plain=True, plain_mask=mask, enc_mask=None)
            self._emit_content(EventType.CONTENT_UPDATED, updated)
            return updated

    def clear_content(self, caller: str, content_id: int) -> Content:
        """
        Move content to the terminal cleared state.

        The mask is overwritten with zero (a freshly lifted ciphertext for
        encrypted content). The previous handle stays valid but meaningless.
        """
        with self._invocation("clear_content", caller):
            content = self.get_content(content_id)
            self._require_author(caller, content, "clear content")
            if content.is_plain:
                cleared = self.db.update_content(
                    content_id,
                    is_plain=True,
                    plain_mask=0,
                    enc_mask=None,
                    state=ContentState.CLEARED,
                )
            else:
                zero = self.algebra.lift(0, self.config.mask_type)
                cleared = self.db.update_content(
                    content_id,
                    is_plain=False,
                    plain_mask=None,
                    enc_mask=zero,
                    state=ContentState.CLEARED,
                )
            self._emit_content(EventType.CONTENT_CLEARED, cleared)
            return cleared

    def get_content(self, content_id: int) -> Content:
        """
        Get active content.

        Raises:
            ContentNotFoundError: If never created or already cleared
        """
        content = self.db.get_content(content_id)
        if content is None:
            raise ContentNotFoundError(content_id=content_id)
        if not content.active:
            raise ContentNotFoundError(content_id=content_id, cleared=True)
        return content

    def content_state(self, content_id: int) -> ContentState | None:
        """ACTIVE, CLEARED, or None when the id was never created."""
        content = self.db.get_content(content_id)
        return None if content is None else content.state

    # =========================================================================
    # Notifications
    # =========================================================================

    def events(self, limit: int = 100, event_type: EventType | None = None) -> list[Event]:
        """Committed notifications, oldest first."""
        return self.db.list_events(limit=limit, event_type=event_type)

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _invocation(self, operation: str, caller: str) -> Generator[None, None, None]:
        """Run one serialized, all-or-nothing invocation."""
        with self._lock:
            self._pending = []
            try:
                if is_zero_key(caller):
                    raise InvalidPrincipalError(principal=caller or "")
                with self.db.transaction():
                    yield
                committed = self._pending
            except CipherGateError as e:
                logger.warning("%s by %s rejected: [E%d] %s", operation, caller, e.code, e.message)
                raise
            finally:
                self._pending = []

        for event in committed:
            logger.info("%s %s", event.event_type.value, event.payload)

    def _install_admin(self, admin: str) -> None:
        if is_zero_key(admin):
            raise InvalidPrincipalError(principal=admin or "")
        current = self.db.get_admin()
        if current is None:
            with self._invocation("install_admin", admin):
                self.db.set_admin(admin)
                self._emit(EventType.ADMIN_TRANSFERRED, previous="", admin=admin)
        elif current != admin:
            raise NotAuthorizedError(
                principal=admin,
                operation="install admin",
                required=f"the existing admin {current}",
            )

    def _collect(self, event: Event) -> None:
        self._pending.append(event)

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        self._collect(self.db.append_event(Event(event_type=event_type, payload=payload)))

    def _emit_content(self, event_type: EventType, content: Content) -> None:
        self._emit(
            event_type,
            content_id=content.content_id,
            author=content.author,
            is_plain=content.is_plain,
        )

    def _record_result(self, kind: PolicyKind, context_key: str, caller: str, result: str) -> str:
        self.acl.grant(result, caller)
        self.acl.grant_self(result)
        self.db.put_registration(
            Registration(
                kind=kind,
                context_key=context_key,
                principal=caller,
                result_handle=result,
            )
        )
        self._emit(
            EventType.RESULT_COMPUTED,
            kind=kind.value,
            context_key=context_key,
            principal=caller,
            handle=result,
        )
        return result

    def _store_bonus_policy(self, caller: str, policy: BonusPolicy) -> BonusPolicy:
        for handle in policy.handles:
            self.acl.grant_self(handle)
            self.acl.grant(handle, caller)
        self.db.put_policy(PolicyKind.BONUS, policy)
        self._emit(
            EventType.POLICY_UPDATED,
            kind=PolicyKind.BONUS.value,
            context_key=policy.context_key,
        )
        return policy

    def _verify(
        self,
        bundle: InputBundle,
        caller: str,
        expected: int | None = None,
    ) -> list[str]:
        if not bundle.proof:
            raise InvalidProofError(reason="empty proof", handle_count=len(bundle.handles))
        if not bundle.handles:
            raise InvalidProofError(reason="no ciphertext references")
        if expected is not None and len(bundle.handles) != expected:
            raise InvalidProofError(
                reason=f"expected {expected} ciphertext references, got {len(bundle.handles)}",
                handle_count=len(bundle.handles),
            )
        return self.runtime.verify_input(bundle, caller)

    def _check_bonus_types(self, policy: BonusPolicy) -> None:
        for handle in policy.thresholds:
            if not self.algebra.type_of(handle).is_integer:
                raise CiphertextError(
                    handle=handle,
                    operation="set_bonus_policy",
                    message="Bonus thresholds must be encrypted integers",
                )
        if self.algebra.type_of(policy.bonus_if_met) is not self.algebra.type_of(policy.bonus_otherwise):
            raise CiphertextError(
                handle=policy.bonus_otherwise,
                operation="set_bonus_policy",
                message="Bonus amounts must share one cipher type",
            )

    def _check_mask_type(self, handle: str, operation: str) -> None:
        mask_type = self.config.mask_type
        actual = self.algebra.type_of(handle)
        if actual is not mask_type:
            raise CiphertextError(
                handle=handle,
                operation=operation,
                message=f"Masks must be {mask_type.value}, got {actual.value}",
            )

    def _check_plain_mask(self, mask: int, operation: str) -> None:
        mask_type = self.config.mask_type
        if isinstance(mask, bool) or not isinstance(mask, int) or not 0 <= mask <= mask_type.max_value:
            raise CiphertextError(
                operation=operation,
                message=f"Mask {mask!r} does not fit {mask_type.value}",
            )

    def _require_admin(self, caller: str, operation: str) -> None:
        if caller != self.db.get_admin():
            raise NotAuthorizedError(principal=caller, operation=operation, required="admin")

    def _require_author(self, caller: str, content: Content, operation: str) -> None:
        if caller != content.author and caller != self.db.get_admin():
            raise NotAuthorizedError(
                principal=caller,
                operation=f"{operation} {content.content_id}",
                required="author or admin",
            )

    def _require_developer_mode(self, operation: str) -> None:
        if not self.config.developer_mode:
            raise DeveloperModeDisabledError(operation=operation)

    @staticmethod
    def _validate_context_key(context_key: str) -> None:
        if not isinstance(context_key, str) or is_zero_key(context_key):
            raise InvalidContextKeyError(context_key=str(context_key or ""))
