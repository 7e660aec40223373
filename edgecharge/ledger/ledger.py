"""
Anchor and escrow ledger.

EdgeChargeLedger runs the pure transitions against an injected store and
token gateway, one mutation at a time.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, List, Optional, Sequence, Set

from edgecharge.core.codec import normalize_address
from edgecharge.core.errors import ReentrancyError, ReplayError

from . import transitions
from .state import HashLike, Invoice, LedgerEvent, LedgerState, UsageAnchor
from .store import InMemoryLedgerStore, LedgerStore
from .tokens import InMemoryTokenGateway, TokenGateway

logger = logging.getLogger(__name__)


class EdgeChargeLedger:
    """Escrow ledger holding usage anchors, invoices and balances.

    Mutations are serialized by a re-entrant lock, mirroring a host ledger
    that runs one transaction to completion before the next begins. Each
    mutation loads the state, applies a pure transition and commits the
    result with its events in a single store commit. While a token call is
    in flight every other mutation raises ReentrancyError, so a token that
    calls back in cannot change state the pending commit is based on.
    """

    def __init__(self, store: LedgerStore, token: Optional[TokenGateway] = None):
        self.store = store
        self.token = token if token is not None else InMemoryTokenGateway()
        self._lock = threading.RLock()
        self._withdrawing: Set[str] = set()
        self._in_token_call = False

    @classmethod
    def in_memory(cls, owner: str, token: Optional[TokenGateway] = None) -> "EdgeChargeLedger":
        return cls(InMemoryLedgerStore(owner), token)

    @property
    def state(self) -> LedgerState:
        return self.store.load()

    @property
    def owner(self) -> str:
        return self.store.load().owner

    def events(self) -> List[LedgerEvent]:
        return self.store.events()

    def _require_idle(self) -> None:
        if self._in_token_call:
            raise ReentrancyError("Ledger mutation attempted during a token call")

    @contextmanager
    def _token_call(self):
        self._in_token_call = True
        try:
            yield
        finally:
            self._in_token_call = False

    def _apply(self, transition: Callable, *args) -> List[LedgerEvent]:
        with self._lock:
            self._require_idle()
            new_state, events = transition(self.store.load(), *args)
            self.store.commit(new_state, events)
            return events

    # Owner administration

    def authorize_relayer(self, caller: str, relayer: str) -> None:
        self._apply(transitions.authorize_relayer, caller, relayer)

    def revoke_relayer(self, caller: str, relayer: str) -> None:
        self._apply(transitions.revoke_relayer, caller, relayer)

    def is_relayer(self, address: str) -> bool:
        return normalize_address(address) in self.store.load().relayers

    def pause(self, caller: str) -> None:
        self._apply(transitions.pause, caller)

    def unpause(self, caller: str) -> None:
        self._apply(transitions.unpause, caller)

    @property
    def paused(self) -> bool:
        return self.store.load().paused

    # Escrow

    def deposit_escrow(self, caller: str, amount: int) -> int:
        """Pull pre-approved funds from caller and credit their escrow.

        The credit commits only after the token pull succeeds, and no other
        mutation can run while the pull is in flight.

        Returns:
            New escrow balance
        """
        with self._lock:
            self._require_idle()
            new_state, events = transitions.deposit_escrow(self.store.load(), caller, amount)
            with self._token_call():
                self.token.transfer_from(caller, amount)
            self.store.commit(new_state, events)
            return events[0].data["balance"]

    # Usage anchors

    def submit_usage_anchor(
        self,
        caller: str,
        provider: str,
        window_start: int,
        window_end: int,
        merkle_root: HashLike,
        total_usage: int,
    ) -> bytes:
        """Anchor a batch's Merkle root.

        Returns:
            anchor id, hash(provider ‖ windowStart ‖ windowEnd ‖ merkleRoot)

        Raises:
            ReplayError: If the same anchor was already submitted
        """
        try:
            events = self._apply(
                transitions.submit_usage_anchor,
                caller, provider, window_start, window_end, merkle_root, total_usage,
            )
        except ReplayError as e:
            logger.info("Duplicate anchor submission rejected: %s", e.key)
            raise
        anchored = events[0].data
        anchor_id = anchored["anchorId"]
        logger.info("Usage anchored: %s (provider=%s, total=%d)", anchor_id, anchored["provider"], total_usage)
        return bytes.fromhex(anchor_id[2:])

    def get_usage_anchor(self, anchor_id: HashLike) -> UsageAnchor:
        return transitions.get_usage_anchor(self.store.load(), anchor_id)

    def verify_merkle_proof(self, anchor_id: HashLike, leaf: HashLike, proof: Sequence[HashLike]) -> bool:
        return transitions.verify_merkle_proof(self.store.load(), anchor_id, leaf, proof)

    # Invoices

    def create_invoice(self, caller: str, enterprise: str, provider: str, amount: int, invoice_hash: HashLike) -> int:
        """Record an invoice computed off-ledger; returns its sequential id."""
        events = self._apply(transitions.create_invoice, caller, enterprise, provider, amount, invoice_hash)
        return events[0].data["invoiceId"]

    def mark_invoice_paid(self, caller: str, invoice_id: int) -> None:
        """Settle an invoice from the enterprise's escrow."""
        self._apply(transitions.mark_invoice_paid, caller, invoice_id)
        logger.info("Invoice %d settled", invoice_id)

    def get_invoice(self, invoice_id: int) -> Invoice:
        return transitions.get_invoice(self.store.load(), invoice_id)

    def get_enterprise_escrow(self, enterprise: str) -> int:
        return transitions.get_enterprise_escrow(self.store.load(), enterprise)

    def get_provider_balance(self, provider: str) -> int:
        return transitions.get_provider_balance(self.store.load(), provider)

    # Provider withdrawal

    def withdraw_provider(self, caller: str) -> int:
        """Pay out the caller's full balance.

        The balance is zeroed and committed before the token transfer, and
        a per-caller guard spans the transfer, so a transfer target that
        calls back in can neither re-enter nor find the credit still there.
        A failed transfer restores the credit and re-raises.

        Returns:
            Amount transferred

        Raises:
            ReentrancyError: If called again for caller while a payout is in flight
        """
        with self._lock:
            self._require_idle()
            provider = normalize_address(caller)
            if provider in self._withdrawing:
                raise ReentrancyError(f"Withdrawal already in progress for {provider}")
            self._withdrawing.add(provider)
            try:
                state = self.store.load()
                new_state, events = transitions.begin_withdrawal(state, provider)
                amount = events[0].data["amount"]
                self.store.commit(new_state, events)
                try:
                    with self._token_call():
                        self.token.transfer(provider, amount)
                except Exception:
                    logger.warning("Payout of %d to %s failed, restoring balance", amount, provider)
                    restored, revert_events = transitions.restore_withdrawal(
                        self.store.load(), provider, amount
                    )
                    self.store.commit(restored, revert_events)
                    raise
                logger.info("Provider %s withdrew %d", provider, amount)
                return amount
            finally:
                self._withdrawing.discard(provider)

    # Disputes

    def open_dispute(self, caller: str, anchor_id: HashLike, reason: str) -> None:
        events = self._apply(transitions.open_dispute, caller, anchor_id, reason)
        logger.info("Dispute opened on %s: %s", events[0].data["anchorId"], reason)

    def resolve_dispute(self, caller: str, anchor_id: HashLike, in_favor_of_provider: bool) -> None:
        self._apply(transitions.resolve_dispute, caller, anchor_id, in_favor_of_provider)
