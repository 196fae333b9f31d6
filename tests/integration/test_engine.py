"""
Integration tests for the Confidential Engine.

Tests cover:
- End-to-end eligibility, bonus and matching flows
- Result authorization (submitter and engine only)
- Atomic invocations and rollback
- Content lifecycle and soft delete
- Admin and author role checks
- Developer mode gating
- Public disclosure
"""

import threading

import pytest

from ciphergate.engine import ConfidentialEngine
from ciphergate.errors import (
    AllowListTooLargeError,
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
    StorageWriteError,
)
from ciphergate.evaluator import AGE_TYPE, COUNTRY_TYPE, INVITE_TYPE
from ciphergate.runtime import LocalDecryptionOracle
from ciphergate.schema import (
    CipherType,
    ContentState,
    EngineConfig,
    EventType,
    InputBundle,
    PolicyKind,
)

ADMIN = "0xa11ce"
ALICE = "0xa1"
BOB = "0xb0b"
MALLORY = "0xbad"
ENGINE_ID = "ciphergate.engine"


# =============================================================================
# Helpers
# =============================================================================


def eligibility_bundle(engine: ConfidentialEngine, principal: str, age: int, country: int, invite: int) -> InputBundle:
    return engine.runtime.encrypt_input(
        principal, [(age, AGE_TYPE), (country, COUNTRY_TYPE), (invite, INVITE_TYPE)]
    )


def u32_bundle(engine: ConfidentialEngine, principal: str, *values: int) -> InputBundle:
    return engine.runtime.encrypt_input(principal, [(v, CipherType.EUINT32) for v in values])


@pytest.fixture
def club(engine: ConfidentialEngine) -> str:
    """Eligibility policy: 18+, invited, from 840 or 124."""
    engine.set_eligibility_policy(ADMIN, "club", min_age=18, require_invite=True, allowed_countries=[840, 124])
    return "club"


@pytest.fixture
def q3(engine: ConfidentialEngine) -> str:
    """Encrypted bonus policy: two thresholds, 500 if met, 50 otherwise."""
    engine.set_bonus_policy(ADMIN, "q3", u32_bundle(engine, ADMIN, 10, 20, 500, 50))
    return "q3"


# =============================================================================
# Setup and Admin Tests
# =============================================================================


class TestSetup:
    """Tests for engine construction and admin handling."""

    def test_admin_installed(self, engine: ConfidentialEngine) -> None:
        """The admin passed at construction is installed."""
        assert engine.admin == ADMIN
        assert engine.events(event_type=EventType.ADMIN_TRANSFERRED)[0].payload["admin"] == ADMIN

    def test_reopen_with_same_admin(self, engine: ConfidentialEngine) -> None:
        """Reopening with the installed admin is fine."""
        ConfidentialEngine(engine.config, db=engine.db, admin=ADMIN)
        assert len(engine.events(event_type=EventType.ADMIN_TRANSFERRED)) == 1

    def test_reopen_with_other_admin(self, engine: ConfidentialEngine) -> None:
        """A different admin cannot be installed over an existing one."""
        with pytest.raises(NotAuthorizedError):
            ConfidentialEngine(engine.config, db=engine.db, admin=MALLORY)
        assert engine.admin == ADMIN

    def test_zero_admin(self) -> None:
        """The zero principal cannot be admin."""
        with pytest.raises(InvalidPrincipalError):
            ConfidentialEngine(EngineConfig(db_path=":memory:"), admin="0x0")

    def test_transfer_admin(self, engine: ConfidentialEngine) -> None:
        """The admin can hand over the role."""
        engine.transfer_admin(ADMIN, BOB)
        assert engine.admin == BOB
        with pytest.raises(NotAuthorizedError):
            engine.set_eligibility_policy(ADMIN, "club", 18, False, [840])

    def test_transfer_admin_requires_admin(self, engine: ConfidentialEngine) -> None:
        """Only the admin can transfer the role."""
        with pytest.raises(NotAuthorizedError):
            engine.transfer_admin(MALLORY, MALLORY)
        assert engine.admin == ADMIN

    def test_transfer_to_zero(self, engine: ConfidentialEngine) -> None:
        """The role cannot go to the zero principal."""
        with pytest.raises(InvalidPrincipalError):
            engine.transfer_admin(ADMIN, "")

    def test_context_manager(self, config: EngineConfig) -> None:
        """Engine closes its database on exit."""
        with ConfidentialEngine(config, admin=ADMIN) as engine:
            assert engine.admin == ADMIN
        assert engine.db._conn is None


# =============================================================================
# Eligibility Flow
# =============================================================================


class TestEligibilityFlow:
    """End-to-end eligibility."""

    @pytest.mark.parametrize(
        ("age", "country", "invite", "expected"),
        [(20, 840, 1, True), (17, 840, 1, False), (20, 250, 1, False), (20, 124, 0, False)],
    )
    def test_register_and_decrypt(
        self,
        engine: ConfidentialEngine,
        oracle: LocalDecryptionOracle,
        club: str,
        age: int,
        country: int,
        invite: int,
        expected: bool,
    ) -> None:
        """The submitter decrypts the expected verdict."""
        handle = engine.register_eligibility(ALICE, club, eligibility_bundle(engine, ALICE, age, country, invite))
        assert engine.get_result(ALICE, PolicyKind.ELIGIBILITY, club) == handle
        assert oracle.decrypt(handle, ALICE) is expected

    def test_result_grants(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle, club: str) -> None:
        """Only the submitter and the engine may decrypt a result."""
        handle = engine.register_eligibility(ALICE, club, eligibility_bundle(engine, ALICE, 20, 840, 1))
        assert set(engine.acl.grantees(handle)) == {ALICE, ENGINE_ID}
        with pytest.raises(NotAuthorizedError):
            oracle.decrypt(handle, BOB)
        with pytest.raises(NotAuthorizedError):
            oracle.decrypt(handle, ADMIN)

    def test_resubmission_overwrites(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle, club: str) -> None:
        """The latest submission wins."""
        first = engine.register_eligibility(ALICE, club, eligibility_bundle(engine, ALICE, 17, 840, 1))
        second = engine.register_eligibility(ALICE, club, eligibility_bundle(engine, ALICE, 30, 840, 1))
        assert first != second
        assert engine.get_result(ALICE, PolicyKind.ELIGIBILITY, club) == second
        assert oracle.decrypt(second, ALICE) is True
        # superseded grants are retained
        assert engine.acl.is_allowed(first, ALICE)

    def test_same_bundle_twice(self, engine: ConfidentialEngine, club: str) -> None:
        """Resubmitting identical inputs yields the same handle and no new grants."""
        bundle = eligibility_bundle(engine, ALICE, 20, 840, 1)
        first = engine.register_eligibility(ALICE, club, bundle)
        grants = len(engine.events(event_type=EventType.ACCESS_GRANTED))
        second = engine.register_eligibility(ALICE, club, bundle)
        assert first == second
        assert len(engine.events(event_type=EventType.ACCESS_GRANTED)) == grants

    def test_policy_change_applies_to_new_submissions(
        self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle, club: str
    ) -> None:
        """Stored results are not recomputed when the policy changes."""
        old = engine.register_eligibility(ALICE, club, eligibility_bundle(engine, ALICE, 20, 840, 1))
        engine.set_eligibility_policy(ADMIN, club, min_age=21, require_invite=True, allowed_countries=[840])
        assert engine.get_result(ALICE, PolicyKind.ELIGIBILITY, club) == old
        new = engine.register_eligibility(ALICE, club, eligibility_bundle(engine, ALICE, 20, 840, 1))
        assert oracle.decrypt(new, ALICE) is False

    def test_missing_policy(self, engine: ConfidentialEngine) -> None:
        """Registering against an unknown context fails."""
        with pytest.raises(PolicyNotFoundError):
            engine.register_eligibility(ALICE, "nope", eligibility_bundle(engine, ALICE, 20, 840, 1))

    def test_wrong_arity(self, engine: ConfidentialEngine, club: str) -> None:
        """Eligibility needs exactly three inputs."""
        bundle = engine.runtime.encrypt_input(ALICE, [(20, AGE_TYPE), (840, COUNTRY_TYPE)])
        with pytest.raises(InvalidProofError, match="expected 3"):
            engine.register_eligibility(ALICE, club, bundle)

    def test_no_registration(self, engine: ConfidentialEngine, club: str) -> None:
        """Reading a result that was never computed fails."""
        with pytest.raises(RegistrationNotFoundError):
            engine.get_result(BOB, PolicyKind.ELIGIBILITY, club)


class TestEligibilityPolicy:
    """Admin-side eligibility policy handling."""

    def test_requires_admin(self, engine: ConfidentialEngine) -> None:
        """Non-admins cannot publish policies."""
        with pytest.raises(NotAuthorizedError):
            engine.set_eligibility_policy(MALLORY, "club", 18, False, [840])
        with pytest.raises(PolicyNotFoundError):
            engine.get_policy(PolicyKind.ELIGIBILITY, "club")

    def test_allow_list_cap(self, engine: ConfidentialEngine, club: str) -> None:
        """An oversized allow-list is rejected and the old policy kept."""
        cap = engine.config.allow_list_cap
        with pytest.raises(AllowListTooLargeError):
            engine.set_eligibility_policy(ADMIN, club, 30, False, list(range(1, cap + 2)))
        assert engine.get_policy(PolicyKind.ELIGIBILITY, club).min_age == 18

    def test_allow_list_at_cap(self, engine: ConfidentialEngine) -> None:
        """An allow-list exactly at the cap is accepted."""
        cap = engine.config.allow_list_cap
        policy = engine.set_eligibility_policy(ADMIN, "club", 0, False, list(range(1, cap + 1)))
        assert len(policy.allowed_countries) == cap

    @pytest.mark.parametrize(
        ("min_age", "countries"),
        [(300, [840]), (-1, [840]), (18, [-1]), (18, [840, 65536])],
    )
    def test_out_of_range_parameters(
        self, engine: ConfidentialEngine, club: str, min_age: int, countries: list[int]
    ) -> None:
        """Parameters that do not fit their encrypted types are rejected and the old policy kept."""
        events_before = engine.events()
        with pytest.raises(InvalidPolicyError) as exc_info:
            engine.set_eligibility_policy(ADMIN, club, min_age, False, countries)
        assert exc_info.value.context_key == club
        assert engine.get_policy(PolicyKind.ELIGIBILITY, club).min_age == 18
        assert engine.events() == events_before

    def test_type_bounds_accepted(self, engine: ConfidentialEngine) -> None:
        """The extreme values of each type are valid parameters."""
        policy = engine.set_eligibility_policy(ADMIN, "edge", 255, False, [0, 65535])
        assert policy.min_age == 255
        assert policy.allowed_countries == [0, 65535]

    @pytest.mark.parametrize("key", ["", "0x0", "0000"])
    def test_zero_context_key(self, engine: ConfidentialEngine, key: str) -> None:
        """Zero context keys are rejected."""
        with pytest.raises(InvalidContextKeyError):
            engine.set_eligibility_policy(ADMIN, key, 18, False, [840])

    def test_empty_allow_list_never_eligible(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle) -> None:
        """An empty allow-list is accepted and rejects everyone."""
        engine.set_eligibility_policy(ADMIN, "closed", 0, False, [])
        handle = engine.register_eligibility(ALICE, "closed", eligibility_bundle(engine, ALICE, 99, 840, 1))
        assert oracle.decrypt(handle, ALICE) is False

    def test_disclose_plain_policy(self, engine: ConfidentialEngine, club: str) -> None:
        """Eligibility parameters are plaintext; nothing to disclose."""
        assert engine.disclose_policy(ADMIN, PolicyKind.ELIGIBILITY, club) == []


# =============================================================================
# Bonus Flow
# =============================================================================


class TestBonusFlow:
    """End-to-end threshold-gated bonus."""

    @pytest.mark.parametrize(
        ("attrs", "expected"),
        [((10, 20), 500), ((9, 20), 50), ((10, 19), 50), ((99, 99), 500)],
    )
    def test_submit(
        self,
        engine: ConfidentialEngine,
        oracle: LocalDecryptionOracle,
        q3: str,
        attrs: tuple[int, int],
        expected: int,
    ) -> None:
        """The selected amount matches the thresholds."""
        handle = engine.submit_bonus(ALICE, q3, u32_bundle(engine, ALICE, *attrs))
        assert oracle.decrypt(handle, ALICE) == expected

    def test_policy_parameters_hidden(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle, q3: str) -> None:
        """Participants cannot decrypt thresholds or amounts."""
        policy = engine.get_policy(PolicyKind.BONUS, q3)
        for handle in policy.handles:
            assert set(engine.acl.grantees(handle)) == {ENGINE_ID, ADMIN}
            with pytest.raises(NotAuthorizedError):
                oracle.decrypt(handle, ALICE)

    def test_disclose_policy(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle, q3: str) -> None:
        """Disclosing a policy opens every parameter to everyone."""
        handles = engine.disclose_policy(ADMIN, PolicyKind.BONUS, q3)
        assert len(handles) == 4
        assert [oracle.public_decrypt(h) for h in handles] == [10, 20, 500, 50]

    def test_disclose_policy_requires_admin(self, engine: ConfidentialEngine, q3: str) -> None:
        """Only the admin discloses policies."""
        with pytest.raises(NotAuthorizedError):
            engine.disclose_policy(ALICE, PolicyKind.BONUS, q3)

    def test_attribute_count_must_match(self, engine: ConfidentialEngine, q3: str) -> None:
        """One attribute per threshold."""
        with pytest.raises(InvalidProofError):
            engine.submit_bonus(ALICE, q3, u32_bundle(engine, ALICE, 10))

    def test_policy_needs_three_handles(self, engine: ConfidentialEngine) -> None:
        """A bonus policy needs a threshold and two amounts."""
        with pytest.raises(InvalidProofError):
            engine.set_bonus_policy(ADMIN, "q3", u32_bundle(engine, ADMIN, 500, 50))

    def test_amount_types_must_match(self, engine: ConfidentialEngine) -> None:
        """Both amounts share a cipher type."""
        bundle = engine.runtime.encrypt_input(
            ADMIN, [(10, CipherType.EUINT32), (500, CipherType.EUINT32), (50, CipherType.EUINT16)]
        )
        with pytest.raises(CiphertextError):
            engine.set_bonus_policy(ADMIN, "q3", bundle)
        with pytest.raises(PolicyNotFoundError):
            engine.get_policy(PolicyKind.BONUS, "q3")

    def test_plain_policy(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle) -> None:
        """Developer mode accepts plaintext parameters."""
        engine.set_bonus_policy_plain(ADMIN, "dev", [5], 7, 1)
        handle = engine.submit_bonus(ALICE, "dev", u32_bundle(engine, ALICE, 5))
        assert oracle.decrypt(handle, ALICE) == 7


# =============================================================================
# Content and Matching
# =============================================================================


class TestContent:
    """Content lifecycle."""

    def test_create_encrypted(self, engine: ConfidentialEngine) -> None:
        """Authors and the engine hold grants on the mask."""
        content = engine.create_content(BOB, u32_bundle(engine, BOB, 0x0F))
        assert content.content_id == 1
        assert content.author == BOB
        assert set(engine.acl.grantees(content.enc_mask)) == {BOB, ENGINE_ID}

    def test_ids_are_sequential(self, engine: ConfidentialEngine) -> None:
        """Ids start at 1 and increase."""
        ids = [engine.create_content_plain(BOB, m).content_id for m in (1, 2, 3)]
        assert ids == [1, 2, 3]

    def test_mask_type_enforced(self, engine: ConfidentialEngine) -> None:
        """Encrypted masks use the configured width."""
        bundle = engine.runtime.encrypt_input(BOB, [(1, CipherType.EUINT16)])
        with pytest.raises(CiphertextError):
            engine.create_content(BOB, bundle)

    def test_plain_mask_range(self, engine: ConfidentialEngine) -> None:
        """Plain masks must fit the configured width."""
        with pytest.raises(CiphertextError):
            engine.create_content_plain(BOB, 2**32)

    def test_update_by_author(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle) -> None:
        """Authors replace masks."""
        content = engine.create_content(BOB, u32_bundle(engine, BOB, 0x0F))
        updated = engine.update_content(BOB, content.content_id, u32_bundle(engine, BOB, 0xF0))
        assert oracle.decrypt(updated.enc_mask, BOB) == 0xF0

    def test_update_by_admin_keeps_author(self, engine: ConfidentialEngine) -> None:
        """The admin may update; grants still go to the author."""
        content = engine.create_content(BOB, u32_bundle(engine, BOB, 0x0F))
        updated = engine.update_content(ADMIN, content.content_id, u32_bundle(engine, ADMIN, 0x01))
        assert updated.author == BOB
        assert engine.acl.is_allowed(updated.enc_mask, BOB)

    def test_update_by_stranger(self, engine: ConfidentialEngine) -> None:
        """Others cannot update content."""
        content = engine.create_content_plain(BOB, 0x0F)
        with pytest.raises(NotAuthorizedError):
            engine.update_content_plain(MALLORY, content.content_id, 0)
        assert engine.get_content(content.content_id).plain_mask == 0x0F

    def test_switch_representation(self, engine: ConfidentialEngine) -> None:
        """Updates may move between plain and encrypted masks."""
        content = engine.create_content_plain(BOB, 0x0F)
        updated = engine.update_content(BOB, content.content_id, u32_bundle(engine, BOB, 0x01))
        assert not updated.is_plain
        assert updated.plain_mask is None


class TestClearContent:
    """Soft delete."""

    def test_clear_encrypted(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle) -> None:
        """Clearing zeroes the mask and moves to the terminal state."""
        content = engine.create_content(BOB, u32_bundle(engine, BOB, 0x0F))
        cleared = engine.clear_content(BOB, content.content_id)
        assert cleared.state is ContentState.CLEARED
        assert cleared.enc_mask != content.enc_mask
        assert engine.runtime.reveal(cleared.enc_mask) == 0
        # the previous handle stays valid
        assert oracle.decrypt(content.enc_mask, BOB) == 0x0F

    def test_clear_plain(self, engine: ConfidentialEngine) -> None:
        """Plain masks are zeroed."""
        content = engine.create_content_plain(BOB, 0x0F)
        assert engine.clear_content(BOB, content.content_id).plain_mask == 0

    def test_cleared_is_terminal(self, engine: ConfidentialEngine) -> None:
        """Cleared content rejects every further operation."""
        content_id = engine.create_content_plain(BOB, 0x0F).content_id
        engine.clear_content(BOB, content_id)

        with pytest.raises(ContentNotFoundError, match="was cleared"):
            engine.update_content_plain(BOB, content_id, 1)
        with pytest.raises(ContentNotFoundError):
            engine.clear_content(BOB, content_id)
        with pytest.raises(ContentNotFoundError):
            engine.match_content(ALICE, content_id, u32_bundle(engine, ALICE, 1))
        assert engine.content_state(content_id) is ContentState.CLEARED

    def test_never_created(self, engine: ConfidentialEngine) -> None:
        """Unknown ids are distinguishable from cleared ones."""
        with pytest.raises(ContentNotFoundError, match="does not exist"):
            engine.get_content(42)
        assert engine.content_state(42) is None

    def test_clear_by_stranger(self, engine: ConfidentialEngine) -> None:
        """Only the author or admin can clear."""
        content_id = engine.create_content_plain(BOB, 0x0F).content_id
        with pytest.raises(NotAuthorizedError):
            engine.clear_content(MALLORY, content_id)
        engine.clear_content(ADMIN, content_id)
        assert engine.content_state(content_id) is ContentState.CLEARED


class TestMatching:
    """Matching interests against content."""

    @pytest.mark.parametrize("plain", [True, False])
    @pytest.mark.parametrize(
        ("content_mask", "interests", "expected"),
        [(0x0F, 0x10, False), (0x0F, 0x01, True), (0, 0xFFFFFFFF, False), (0xFFFFFFFF, 0xFFFFFFFF, True)],
    )
    def test_match(
        self,
        engine: ConfidentialEngine,
        oracle: LocalDecryptionOracle,
        plain: bool,
        content_mask: int,
        interests: int,
        expected: bool,
    ) -> None:
        """Plain and encrypted content give identical verdicts."""
        if plain:
            content = engine.create_content_plain(BOB, content_mask)
        else:
            content = engine.create_content(BOB, u32_bundle(engine, BOB, content_mask))
        handle = engine.match_content(ALICE, content.content_id, u32_bundle(engine, ALICE, interests))
        assert oracle.decrypt(handle, ALICE) is expected
        assert engine.get_result(ALICE, PolicyKind.MATCH, str(content.content_id)) == handle

    def test_author_cannot_read_match(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle) -> None:
        """The author learns nothing from a participant's match."""
        content = engine.create_content(BOB, u32_bundle(engine, BOB, 0x0F))
        handle = engine.match_content(ALICE, content.content_id, u32_bundle(engine, ALICE, 0x01))
        with pytest.raises(NotAuthorizedError):
            oracle.decrypt(handle, BOB)

    def test_disclose_result(self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle) -> None:
        """A participant can open their own result to everyone."""
        content = engine.create_content_plain(BOB, 0x0F)
        engine.match_content(ALICE, content.content_id, u32_bundle(engine, ALICE, 0x01))
        handle = engine.disclose_result(ALICE, PolicyKind.MATCH, str(content.content_id))
        assert oracle.decrypt(handle, BOB) is True
        assert oracle.public_decrypt(handle) is True

    def test_disclose_without_result(self, engine: ConfidentialEngine) -> None:
        """Nothing to disclose before a submission."""
        with pytest.raises(RegistrationNotFoundError):
            engine.disclose_result(ALICE, PolicyKind.MATCH, "1")


# =============================================================================
# Developer Mode
# =============================================================================


class TestDeveloperMode:
    """Plaintext entry points are gated."""

    @pytest.fixture
    def strict(self) -> ConfidentialEngine:
        engine = ConfidentialEngine(EngineConfig(db_path=":memory:"), admin=ADMIN)
        yield engine
        engine.close()

    def test_plain_entry_points_disabled(self, strict: ConfidentialEngine) -> None:
        """All plaintext operations refuse when developer mode is off."""
        with pytest.raises(DeveloperModeDisabledError):
            strict.create_content_plain(BOB, 1)
        with pytest.raises(DeveloperModeDisabledError):
            strict.set_bonus_policy_plain(ADMIN, "q3", [1], 2, 0)
        content = strict.create_content(BOB, u32_bundle(strict, BOB, 1))
        with pytest.raises(DeveloperModeDisabledError):
            strict.update_content_plain(BOB, content.content_id, 2)


# =============================================================================
# Atomicity and Serialization
# =============================================================================


class TestAtomicity:
    """Failed invocations leave no trace."""

    def test_failure_after_grants_rolls_back(
        self, engine: ConfidentialEngine, club: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A storage failure after grants undoes the grants and events."""
        bundle = eligibility_bundle(engine, ALICE, 20, 840, 1)
        events_before = engine.events()

        def fail(*args: object, **kwargs: object) -> None:
            raise StorageWriteError(operation="put_registration", underlying_error="disk full")

        monkeypatch.setattr(engine.db, "put_registration", fail)
        with pytest.raises(StorageWriteError):
            engine.register_eligibility(ALICE, club, bundle)
        monkeypatch.undo()

        assert engine.events() == events_before
        with pytest.raises(RegistrationNotFoundError):
            engine.get_result(ALICE, PolicyKind.ELIGIBILITY, club)

        handle = engine.register_eligibility(ALICE, club, bundle)
        assert set(engine.acl.grantees(handle)) == {ALICE, ENGINE_ID}

    def test_rejected_creation_keeps_ids(self, engine: ConfidentialEngine, monkeypatch: pytest.MonkeyPatch) -> None:
        """A failed creation does not consume a content id."""

        def fail(*args: object, **kwargs: object) -> None:
            raise StorageWriteError(operation="append_event", underlying_error="disk full")

        monkeypatch.setattr(engine, "_emit_content", fail)
        with pytest.raises(StorageWriteError):
            engine.create_content_plain(BOB, 1)
        monkeypatch.undo()

        assert engine.db.count_contents() == 0
        assert engine.create_content_plain(BOB, 1).content_id == 1

    def test_zero_caller(self, engine: ConfidentialEngine, club: str) -> None:
        """The zero principal cannot invoke anything."""
        with pytest.raises(InvalidPrincipalError):
            engine.register_eligibility("0x00", club, InputBundle())

    def test_forged_bundle(self, engine: ConfidentialEngine, club: str) -> None:
        """A bundle signed for Alice cannot be submitted by Mallory."""
        with pytest.raises(InvalidProofError):
            engine.register_eligibility(MALLORY, club, eligibility_bundle(engine, ALICE, 20, 840, 1))
        assert engine.events(event_type=EventType.RESULT_COMPUTED) == []

    def test_concurrent_submissions(self, engine: ConfidentialEngine, club: str) -> None:
        """Concurrent invocations are serialized and all recorded."""
        principals = [f"0x{i:02x}" for i in range(1, 9)]
        bundles = {p: eligibility_bundle(engine, p, 20, 840, 1) for p in principals}
        errors: list[Exception] = []

        def submit(principal: str) -> None:
            try:
                engine.register_eligibility(principal, club, bundles[principal])
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit, args=(p,)) for p in principals]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(engine.db.list_registrations()) == len(principals)
        assert len(engine.events(event_type=EventType.RESULT_COMPUTED)) == len(principals)

    def test_readers_wait_for_open_invocation(
        self, engine: ConfidentialEngine, club: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Another thread never reads rows an invocation has written but not committed."""
        bundle = eligibility_bundle(engine, ALICE, 20, 840, 1)
        put_registration = engine.db.put_registration
        written = threading.Event()
        release = threading.Event()
        outcome: dict[str, object] = {}

        def stall_then_fail(registration: object) -> None:
            put_registration(registration)
            written.set()
            release.wait(timeout=5)
            raise StorageWriteError(operation="put_registration", underlying_error="disk full")

        def submit() -> None:
            try:
                engine.register_eligibility(ALICE, club, bundle)
            except StorageWriteError as e:
                outcome["error"] = e

        def read() -> None:
            outcome["registration"] = engine.db.get_registration(PolicyKind.ELIGIBILITY, club, ALICE)
            outcome["events"] = engine.events(event_type=EventType.RESULT_COMPUTED)

        monkeypatch.setattr(engine.db, "put_registration", stall_then_fail)
        writer = threading.Thread(target=submit)
        writer.start()
        assert written.wait(timeout=5)

        reader = threading.Thread(target=read)
        reader.start()
        reader.join(timeout=0.2)
        assert reader.is_alive()

        release.set()
        writer.join(timeout=5)
        reader.join(timeout=5)

        assert isinstance(outcome["error"], StorageWriteError)
        assert outcome["registration"] is None
        assert outcome["events"] == []


# =============================================================================
# Scenarios
# =============================================================================


class TestScenarios:
    """Documented end-to-end scenarios."""

    @pytest.mark.parametrize(
        ("age", "country", "invite", "expected"),
        [
            (18, 840, 1, True),
            (17, 840, 1, False),
            (18, 124, 1, False),
            (18, 840, 0, False),
            (255, 840, 1, True),
            (20, 840, 1, True),
            (16, 840, 1, False),
            (20, 1, 1, False),
        ],
    )
    def test_eligibility_scenario(
        self,
        engine: ConfidentialEngine,
        oracle: LocalDecryptionOracle,
        age: int,
        country: int,
        invite: int,
        expected: bool,
    ) -> None:
        """min_age=18, require_invite, allow=[840]."""
        engine.set_eligibility_policy(ADMIN, "venue", min_age=18, require_invite=True, allowed_countries=[840])
        handle = engine.register_eligibility(ALICE, "venue", eligibility_bundle(engine, ALICE, age, country, invite))
        assert oracle.decrypt(handle, ALICE) is expected

    def test_recreate_after_clear_matches_fresh(
        self, engine: ConfidentialEngine, oracle: LocalDecryptionOracle
    ) -> None:
        """Clearing and re-creating with the same mask behaves like fresh content."""
        old = engine.create_content(BOB, u32_bundle(engine, BOB, 0x0F))
        engine.clear_content(BOB, old.content_id)
        new = engine.create_content(BOB, u32_bundle(engine, BOB, 0x0F))

        assert new.content_id == old.content_id + 1
        assert new.state is ContentState.ACTIVE
        assert set(engine.acl.grantees(new.enc_mask)) == {BOB, ENGINE_ID}

        for interests, expected in ((0x01, True), (0x10, False)):
            handle = engine.match_content(ALICE, new.content_id, u32_bundle(engine, ALICE, interests))
            assert oracle.decrypt(handle, ALICE) is expected

    def test_grants_survive_every_operation(self, engine: ConfidentialEngine) -> None:
        """No operation ever removes a grant."""
        content = engine.create_content(BOB, u32_bundle(engine, BOB, 0x0F))
        engine.update_content(BOB, content.content_id, u32_bundle(engine, BOB, 0xF0))
        engine.clear_content(BOB, content.content_id)
        engine.transfer_admin(ADMIN, BOB)
        assert set(engine.acl.grantees(content.enc_mask)) == {BOB, ENGINE_ID}
