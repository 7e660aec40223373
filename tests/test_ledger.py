"""
Unit tests for the anchor and escrow ledger.

Tests anchoring idempotence, settlement atomicity, withdrawal ordering,
authorization, pausing and the dispute lifecycle.
"""

import pytest

from edgecharge.core.codec import ZERO_ADDRESS, ZERO_HASH, anchor_id, hash_bytes, leaf_hash, to_hex
from edgecharge.core.errors import (
    AuthorizationError,
    InsufficientFundsError,
    PausedError,
    ReentrancyError,
    ReplayError,
    StaleStateError,
    ValidationError,
)
from edgecharge.core.merkle import build_batch, build_proof, build_root
from edgecharge.core.records import UsageRecord
from edgecharge.core.signer import public_address, sign_record
from edgecharge.ledger import EdgeChargeLedger, InMemoryTokenGateway, LedgerState
from edgecharge.ledger import transitions
from edgecharge.ledger.store import InMemoryLedgerStore

OWNER = "0x" + "01" * 20
RELAYER = "0x" + "02" * 20
ENTERPRISE = "0x" + "03" * 20
PROVIDER = "0x" + "04" * 20
STRANGER = "0x" + "05" * 20
ROOT = hash_bytes(b"root")
INVOICE_HASH = hash_bytes(b"invoice")


def _ledger(token=None) -> EdgeChargeLedger:
    ledger = EdgeChargeLedger.in_memory(OWNER, token)
    ledger.authorize_relayer(OWNER, RELAYER)
    return ledger


def _funded_ledger(deposit: int = 1000, token=None):
    token = token if token is not None else InMemoryTokenGateway({ENTERPRISE: 10_000})
    ledger = _ledger(token)
    token.approve(ENTERPRISE, deposit)
    ledger.deposit_escrow(ENTERPRISE, deposit)
    return ledger, token


class TestRelayerAdministration:
    """Test the owner-controlled relayer allow-list."""

    def test_owner_authorizes_relayer(self):
        ledger = _ledger()
        assert ledger.is_relayer(RELAYER)

    def test_non_owner_cannot_authorize(self):
        ledger = _ledger()
        with pytest.raises(AuthorizationError, match="not the owner"):
            ledger.authorize_relayer(STRANGER, STRANGER)
        assert not ledger.is_relayer(STRANGER)

    def test_revoked_relayer_cannot_anchor(self):
        ledger = _ledger()
        ledger.revoke_relayer(OWNER, RELAYER)
        with pytest.raises(AuthorizationError, match="Not authorized relayer"):
            ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)

    def test_zero_address_relayer_rejected(self):
        ledger = _ledger()
        with pytest.raises(ValidationError, match="Invalid relayer"):
            ledger.authorize_relayer(OWNER, ZERO_ADDRESS)


class TestUsageAnchors:
    """Test anchor submission and lookup."""

    def test_scenario_single_record_anchor(self):
        """A single signed record anchors under its own leaf hash."""
        key = "0x" + "11" * 32
        provider = public_address(key)
        signed = sign_record(UsageRecord(
            provider=provider,
            node_id="node-1",
            window_start=1000,
            window_end=1060,
            units_consumed=500,
            rate_id="r1",
            nonce="0xabc",
        ), key)
        batch = build_batch(provider, [signed])
        assert batch.total_usage == 500
        assert batch.merkle_root == leaf_hash(signed)

        ledger = _ledger()
        result = ledger.submit_usage_anchor(RELAYER, provider, 1000, 1060, batch.merkle_root, 500)
        assert result == anchor_id(provider, 1000, 1060, batch.merkle_root)

        with pytest.raises(ReplayError, match="already exists"):
            ledger.submit_usage_anchor(RELAYER, provider, 1000, 1060, batch.merkle_root, 500)

    def test_stored_anchor_fields(self):
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        anchor = ledger.get_usage_anchor(aid)
        assert anchor.exists
        assert anchor.provider == PROVIDER
        assert anchor.window_start == 1000
        assert anchor.window_end == 1060
        assert anchor.merkle_root == ROOT
        assert anchor.total_usage == 500
        assert not anchor.disputed

    def test_duplicate_leaves_state_unchanged(self):
        """Verify one and two identical submissions leave identical state."""
        ledger = _ledger()
        ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        state_after_one = ledger.state
        events_after_one = len(ledger.events())

        with pytest.raises(ReplayError):
            ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)

        assert ledger.state == state_after_one
        assert len(ledger.events()) == events_after_one

    def test_replay_is_a_validation_error(self):
        ledger = _ledger()
        ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        with pytest.raises(ValidationError):
            ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)

    def test_hex_root_accepted(self):
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, to_hex(ROOT), 500)
        assert ledger.get_usage_anchor(to_hex(aid)).merkle_root == ROOT

    @pytest.mark.parametrize("provider, start, end, total, message", [
        (ZERO_ADDRESS, 1000, 1060, 500, "Invalid provider"),
        (PROVIDER, 1060, 1000, 500, "Invalid time window"),
        (PROVIDER, 1000, 1000, 500, "Invalid time window"),
        (PROVIDER, 1000, 1060, 0, "Invalid usage amount"),
        (PROVIDER, 1000, 2 ** 64, 500, "Invalid time window"),
    ])
    def test_invalid_anchor_rejected(self, provider, start, end, total, message):
        ledger = _ledger()
        with pytest.raises(ValidationError, match=message):
            ledger.submit_usage_anchor(RELAYER, provider, start, end, ROOT, total)
        assert ledger.state.anchors == {}

    def test_unknown_anchor_reads_as_missing(self):
        anchor = _ledger().get_usage_anchor(ZERO_HASH)
        assert not anchor.exists
        assert anchor.provider == ZERO_ADDRESS

    def test_event_emitted(self):
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        event = ledger.events()[-1]
        assert event.name == "UsageAnchored"
        assert event.data["anchorId"] == to_hex(aid)
        assert event.data["relayer"] == RELAYER


class TestMerkleProofView:
    """Test on-ledger proof verification."""

    def test_valid_proof(self):
        leaves = [hash_bytes(bytes([i])) for i in range(5)]
        root = build_root(leaves)
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, root, 5)
        for i, leaf in enumerate(leaves):
            assert ledger.verify_merkle_proof(aid, leaf, build_proof(leaves, i))

    def test_foreign_leaf(self):
        leaves = [hash_bytes(bytes([i])) for i in range(5)]
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, build_root(leaves), 5)
        assert not ledger.verify_merkle_proof(aid, hash_bytes(b"x"), build_proof(leaves, 0))

    def test_missing_anchor_raises(self):
        with pytest.raises(ValidationError, match="Anchor does not exist"):
            _ledger().verify_merkle_proof(ZERO_HASH, ROOT, [])


class TestEscrowAndSettlement:
    """Test deposits, invoices and settlement."""

    def test_deposit_pulls_tokens(self):
        ledger, token = _funded_ledger(1000)
        assert ledger.get_enterprise_escrow(ENTERPRISE) == 1000
        assert token.balance_of(ENTERPRISE) == 9000
        assert token.custody == 1000

    def test_deposit_without_allowance_changes_nothing(self):
        token = InMemoryTokenGateway({ENTERPRISE: 10_000})
        ledger = _ledger(token)
        with pytest.raises(InsufficientFundsError):
            ledger.deposit_escrow(ENTERPRISE, 500)
        assert ledger.get_enterprise_escrow(ENTERPRISE) == 0
        assert token.balance_of(ENTERPRISE) == 10_000

    def test_non_positive_deposit_rejected(self):
        ledger = _ledger()
        with pytest.raises(ValidationError, match="Invalid amount"):
            ledger.deposit_escrow(ENTERPRISE, 0)

    def test_scenario_settle_and_withdraw(self):
        """Deposit 1000, settle 600, then the provider withdraws 600 once."""
        ledger, token = _funded_ledger(1000)
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 600, INVOICE_HASH)
        ledger.mark_invoice_paid(RELAYER, invoice_id)

        assert ledger.get_enterprise_escrow(ENTERPRISE) == 400
        assert ledger.get_provider_balance(PROVIDER) == 600
        assert ledger.get_invoice(invoice_id).paid

        assert ledger.withdraw_provider(PROVIDER) == 600
        assert ledger.get_provider_balance(PROVIDER) == 0
        assert token.balance_of(PROVIDER) == 600
        pushes = [t for t in token.transfers if t.kind == "push"]
        assert len(pushes) == 1
        assert pushes[0].amount == 600

        with pytest.raises(ValidationError, match="No balance to withdraw"):
            ledger.withdraw_provider(PROVIDER)

    def test_invoice_ids_are_sequential(self):
        ledger = _ledger()
        ids = [ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 100, INVOICE_HASH) for _ in range(3)]
        assert ids == [1, 2, 3]

    def test_insufficient_escrow_changes_nothing(self):
        ledger, _ = _funded_ledger(500)
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 600, INVOICE_HASH)

        with pytest.raises(InsufficientFundsError) as exc_info:
            ledger.mark_invoice_paid(RELAYER, invoice_id)

        assert exc_info.value.available == 500
        assert exc_info.value.required == 600
        assert ledger.get_enterprise_escrow(ENTERPRISE) == 500
        assert ledger.get_provider_balance(PROVIDER) == 0
        assert not ledger.get_invoice(invoice_id).paid

    def test_settlement_retryable_after_top_up(self):
        ledger, token = _funded_ledger(500)
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 600, INVOICE_HASH)
        with pytest.raises(InsufficientFundsError):
            ledger.mark_invoice_paid(RELAYER, invoice_id)

        token.approve(ENTERPRISE, 100)
        ledger.deposit_escrow(ENTERPRISE, 100)
        ledger.mark_invoice_paid(RELAYER, invoice_id)
        assert ledger.get_enterprise_escrow(ENTERPRISE) == 0
        assert ledger.get_provider_balance(PROVIDER) == 600

    def test_invoice_paid_twice_rejected(self):
        ledger, _ = _funded_ledger(1000)
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 300, INVOICE_HASH)
        ledger.mark_invoice_paid(RELAYER, invoice_id)
        with pytest.raises(ValidationError, match="already paid"):
            ledger.mark_invoice_paid(RELAYER, invoice_id)
        assert ledger.get_enterprise_escrow(ENTERPRISE) == 700

    def test_unknown_invoice(self):
        ledger = _ledger()
        with pytest.raises(ValidationError, match="Invoice does not exist"):
            ledger.mark_invoice_paid(RELAYER, 42)
        assert not ledger.get_invoice(42).exists

    @pytest.mark.parametrize("enterprise, amount, invoice_hash, message", [
        (ZERO_ADDRESS, 100, INVOICE_HASH, "Invalid enterprise"),
        (ENTERPRISE, 0, INVOICE_HASH, "Invalid amount"),
        (ENTERPRISE, 100, ZERO_HASH, "Invalid invoice hash"),
    ])
    def test_invalid_invoice_rejected(self, enterprise, amount, invoice_hash, message):
        ledger = _ledger()
        with pytest.raises(ValidationError, match=message):
            ledger.create_invoice(RELAYER, enterprise, PROVIDER, amount, invoice_hash)
        assert ledger.state.next_invoice_id == 1

    def test_stranger_cannot_create_or_settle(self):
        ledger, _ = _funded_ledger(1000)
        with pytest.raises(AuthorizationError):
            ledger.create_invoice(STRANGER, ENTERPRISE, PROVIDER, 100, INVOICE_HASH)
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 100, INVOICE_HASH)
        with pytest.raises(AuthorizationError):
            ledger.mark_invoice_paid(STRANGER, invoice_id)


class ReenteringToken(InMemoryTokenGateway):
    """Token whose payout calls back into the ledger before completing."""

    def __init__(self, wallets):
        super().__init__(wallets)
        self.ledger = None
        self.reentry_errors = []

    def transfer(self, recipient, amount):
        try:
            self.ledger.withdraw_provider(recipient)
        except (ReentrancyError, ValidationError) as e:
            self.reentry_errors.append(e)
        super().transfer(recipient, amount)


class CallbackDepositToken(InMemoryTokenGateway):
    """Token whose pull tries to mutate the ledger before completing."""

    def __init__(self, wallets):
        super().__init__(wallets)
        self.ledger = None
        self.reentry_errors = []

    def transfer_from(self, owner, amount):
        try:
            self.ledger.authorize_relayer(OWNER, STRANGER)
        except ReentrancyError as e:
            self.reentry_errors.append(e)
        super().transfer_from(owner, amount)


class FailingToken(InMemoryTokenGateway):
    """Token whose payouts always fail."""

    def transfer(self, recipient, amount):
        raise ConnectionError("token transfer failed")


class TestTokenCallbacks:
    """Test that token calls cannot interleave other mutations."""

    def test_mutation_during_deposit_rejected(self):
        token = CallbackDepositToken({ENTERPRISE: 10_000})
        ledger = _ledger(token)
        token.ledger = ledger
        token.approve(ENTERPRISE, 100)

        assert ledger.deposit_escrow(ENTERPRISE, 100) == 100

        assert len(token.reentry_errors) == 1
        assert not ledger.is_relayer(STRANGER)
        assert ledger.get_enterprise_escrow(ENTERPRISE) == 100

    def test_mutations_allowed_after_deposit(self):
        token = CallbackDepositToken({ENTERPRISE: 10_000})
        ledger = _ledger(token)
        token.ledger = ledger
        token.approve(ENTERPRISE, 100)
        ledger.deposit_escrow(ENTERPRISE, 100)

        ledger.authorize_relayer(OWNER, STRANGER)
        assert ledger.is_relayer(STRANGER)


class TestWithdrawal:
    """Test zero-then-transfer withdrawal."""

    def test_reentrant_withdrawal_blocked(self):
        token = ReenteringToken({ENTERPRISE: 10_000})
        ledger, _ = _funded_ledger(1000, token)
        token.ledger = ledger
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 600, INVOICE_HASH)
        ledger.mark_invoice_paid(RELAYER, invoice_id)

        assert ledger.withdraw_provider(PROVIDER) == 600

        assert len(token.reentry_errors) == 1
        assert isinstance(token.reentry_errors[0], ReentrancyError)
        assert token.balance_of(PROVIDER) == 600
        assert ledger.get_provider_balance(PROVIDER) == 0

    def test_failed_transfer_restores_balance(self):
        token = FailingToken({ENTERPRISE: 10_000})
        ledger, _ = _funded_ledger(1000, token)
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 600, INVOICE_HASH)
        ledger.mark_invoice_paid(RELAYER, invoice_id)

        with pytest.raises(ConnectionError):
            ledger.withdraw_provider(PROVIDER)

        assert ledger.get_provider_balance(PROVIDER) == 600
        assert ledger.events()[-1].name == "WithdrawalReverted"

    def test_guard_released_after_failure(self):
        token = FailingToken({ENTERPRISE: 10_000})
        ledger, _ = _funded_ledger(1000, token)
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 600, INVOICE_HASH)
        ledger.mark_invoice_paid(RELAYER, invoice_id)
        with pytest.raises(ConnectionError):
            ledger.withdraw_provider(PROVIDER)
        # a second attempt reaches the token again rather than the guard
        with pytest.raises(ConnectionError):
            ledger.withdraw_provider(PROVIDER)


class TestPause:
    """Test the global pause switch."""

    def test_only_owner_pauses(self):
        ledger = _ledger()
        with pytest.raises(AuthorizationError):
            ledger.pause(STRANGER)
        assert not ledger.paused

    def test_mutations_fail_while_paused(self):
        ledger, token = _funded_ledger(1000)
        invoice_id = ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 600, INVOICE_HASH)
        ledger.pause(OWNER)

        token.approve(ENTERPRISE, 100)
        with pytest.raises(PausedError):
            ledger.deposit_escrow(ENTERPRISE, 100)
        with pytest.raises(PausedError):
            ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        with pytest.raises(PausedError):
            ledger.create_invoice(RELAYER, ENTERPRISE, PROVIDER, 100, INVOICE_HASH)
        with pytest.raises(PausedError):
            ledger.mark_invoice_paid(RELAYER, invoice_id)
        with pytest.raises(PausedError):
            ledger.withdraw_provider(PROVIDER)

        assert token.balance_of(ENTERPRISE) == 9000

    def test_reads_available_while_paused(self):
        ledger, _ = _funded_ledger(1000)
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        ledger.pause(OWNER)
        assert ledger.get_enterprise_escrow(ENTERPRISE) == 1000
        assert ledger.get_usage_anchor(aid).exists
        assert ledger.verify_merkle_proof(aid, ROOT, [])

    def test_authorization_checked_before_pause(self):
        ledger = _ledger()
        ledger.pause(OWNER)
        with pytest.raises(AuthorizationError):
            ledger.submit_usage_anchor(STRANGER, PROVIDER, 1000, 1060, ROOT, 500)

    def test_authorization_checked_before_validation(self):
        ledger = _ledger()
        with pytest.raises(AuthorizationError):
            ledger.submit_usage_anchor(STRANGER, PROVIDER, 1060, 1000, ROOT, 500)
        with pytest.raises(AuthorizationError):
            ledger.create_invoice(STRANGER, ZERO_ADDRESS, PROVIDER, 0, ZERO_HASH)

    def test_pause_checked_before_validation(self):
        ledger = _ledger()
        ledger.pause(OWNER)
        with pytest.raises(PausedError):
            ledger.submit_usage_anchor(RELAYER, PROVIDER, 1060, 1000, ROOT, 500)

    def test_unpause_restores_mutations(self):
        ledger = _ledger()
        ledger.pause(OWNER)
        ledger.unpause(OWNER)
        assert ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)


class TestDisputes:
    """Test the dispute lifecycle."""

    def test_scenario_dispute_and_resolve(self):
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)

        ledger.open_dispute(ENTERPRISE, aid, "bad data")
        assert ledger.get_usage_anchor(aid).disputed

        with pytest.raises(ValidationError, match="already disputed"):
            ledger.open_dispute(ENTERPRISE, aid, "bad data")

        ledger.resolve_dispute(OWNER, aid, True)
        assert not ledger.get_usage_anchor(aid).disputed
        event = ledger.events()[-1]
        assert event.name == "DisputeResolved"
        assert event.data["inFavorOfProvider"] is True

    def test_empty_reason_rejected(self):
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        with pytest.raises(ValidationError, match="reason required"):
            ledger.open_dispute(ENTERPRISE, aid, "   ")

    def test_dispute_on_missing_anchor(self):
        with pytest.raises(ValidationError, match="Anchor does not exist"):
            _ledger().open_dispute(ENTERPRISE, ZERO_HASH, "bad data")

    def test_only_owner_resolves(self):
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        ledger.open_dispute(ENTERPRISE, aid, "bad data")
        with pytest.raises(AuthorizationError):
            ledger.resolve_dispute(RELAYER, aid, False)
        assert ledger.get_usage_anchor(aid).disputed

    def test_resolve_requires_dispute(self):
        ledger = _ledger()
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        with pytest.raises(ValidationError, match="Anchor not disputed"):
            ledger.resolve_dispute(OWNER, aid, False)

    def test_dispute_moves_no_funds(self):
        ledger, _ = _funded_ledger(1000)
        aid = ledger.submit_usage_anchor(RELAYER, PROVIDER, 1000, 1060, ROOT, 500)
        ledger.open_dispute(ENTERPRISE, aid, "bad data")
        ledger.resolve_dispute(OWNER, aid, False)
        assert ledger.get_enterprise_escrow(ENTERPRISE) == 1000
        assert ledger.get_provider_balance(PROVIDER) == 0


class TestPureTransitions:
    """Test transitions directly against LedgerState values."""

    def test_prior_state_untouched(self):
        state = transitions.authorize_relayer(LedgerState.genesis(OWNER), OWNER, RELAYER)[0]
        new_state, events = transitions.submit_usage_anchor(state, RELAYER, PROVIDER, 1000, 1060, ROOT, 500)

        assert state.anchors == {}
        assert len(new_state.anchors) == 1
        assert [e.name for e in events] == ["UsageAnchored"]

    def test_invalid_caller_is_unauthorized(self):
        with pytest.raises(AuthorizationError):
            transitions.pause(LedgerState.genesis(OWNER), "nobody")

    def test_in_memory_store_rejects_stale_commit(self):
        store = InMemoryLedgerStore(OWNER)
        base = store.load()
        store.commit(*transitions.pause(base, OWNER))
        with pytest.raises(StaleStateError):
            store.commit(*transitions.authorize_relayer(base, OWNER, RELAYER))
        assert store.load().paused
        assert store.load().relayers == frozenset()
