"""
Pure ledger transitions.

Every mutating entry point is a function (state, caller, input) ->
(new_state, events). Nothing here touches storage, tokens or clocks, and
a rejected call raises before any new state exists, so nothing is ever
partially applied.

Check order for mutating calls:
1. Authorization - owner / relayer / provider
2. Pause switch
3. State preconditions (existence, duplicates, balances)

Typed requests are built, and so validated, after the first two checks.
"""

from dataclasses import replace
from typing import List, Sequence, Tuple

from edgecharge.core.codec import anchor_id as derive_anchor_id, to_hex
from edgecharge.core.dispute import verify_inclusion
from edgecharge.core.errors import (
    AuthorizationError,
    InsufficientFundsError,
    PausedError,
    ReplayError,
    ValidationError,
)

from .state import (
    CreateInvoiceRequest,
    HashLike,
    Invoice,
    LedgerEvent,
    LedgerState,
    OpenDisputeRequest,
    SubmitAnchorRequest,
    UsageAnchor,
    is_int,
    parse_address,
    parse_hash,
)

Transition = Tuple[LedgerState, List[LedgerEvent]]


def _caller(caller: str) -> str:
    try:
        return parse_address(caller, "caller")
    except ValidationError:
        raise AuthorizationError("Invalid caller")


def _require_owner(state: LedgerState, caller: str) -> str:
    caller = _caller(caller)
    if caller != state.owner:
        raise AuthorizationError("Caller is not the owner")
    return caller


def _require_relayer(state: LedgerState, caller: str) -> str:
    caller = _caller(caller)
    if caller not in state.relayers:
        raise AuthorizationError("Not authorized relayer")
    return caller


def _require_not_paused(state: LedgerState) -> None:
    if state.paused:
        raise PausedError("Ledger is paused")


# Owner administration

def authorize_relayer(state: LedgerState, caller: str, relayer: str) -> Transition:
    _require_owner(state, caller)
    relayer = parse_address(relayer, "relayer")
    new_state = replace(state, relayers=state.relayers | {relayer})
    return new_state, [LedgerEvent("RelayerAuthorized", {"relayer": relayer})]


def revoke_relayer(state: LedgerState, caller: str, relayer: str) -> Transition:
    _require_owner(state, caller)
    relayer = parse_address(relayer, "relayer")
    new_state = replace(state, relayers=state.relayers - {relayer})
    return new_state, [LedgerEvent("RelayerRevoked", {"relayer": relayer})]


def pause(state: LedgerState, caller: str) -> Transition:
    owner = _require_owner(state, caller)
    return replace(state, paused=True), [LedgerEvent("Paused", {"by": owner})]


def unpause(state: LedgerState, caller: str) -> Transition:
    owner = _require_owner(state, caller)
    return replace(state, paused=False), [LedgerEvent("Unpaused", {"by": owner})]


# Escrow

def deposit_escrow(state: LedgerState, caller: str, amount: int) -> Transition:
    """Credit an enterprise's escrow. The token pull happens outside."""
    enterprise = _caller(caller)
    _require_not_paused(state)
    if not is_int(amount) or amount <= 0:
        raise ValidationError("Invalid amount")

    balance = state.escrow.get(enterprise, 0) + amount
    new_state = replace(state, escrow={**state.escrow, enterprise: balance})
    return new_state, [LedgerEvent("EscrowDeposited", {
        "enterprise": enterprise,
        "amount": amount,
        "balance": balance,
    })]


# Usage anchors

def submit_usage_anchor(
    state: LedgerState,
    caller: str,
    provider: str,
    window_start: int,
    window_end: int,
    merkle_root: HashLike,
    total_usage: int,
) -> Transition:
    """Create a usage anchor; an identical resubmission is a ReplayError."""
    relayer = _require_relayer(state, caller)
    _require_not_paused(state)
    request = SubmitAnchorRequest(
        provider=provider,
        window_start=window_start,
        window_end=window_end,
        merkle_root=merkle_root,
        total_usage=total_usage,
    )

    anchor_id = derive_anchor_id(
        request.provider, request.window_start, request.window_end, request.merkle_root
    )
    if anchor_id in state.anchors:
        raise ReplayError("Anchor already exists", key=to_hex(anchor_id))

    anchor = UsageAnchor(
        anchor_id=anchor_id,
        provider=request.provider,
        window_start=request.window_start,
        window_end=request.window_end,
        merkle_root=request.merkle_root,
        total_usage=request.total_usage,
    )
    new_state = replace(state, anchors={**state.anchors, anchor_id: anchor})
    return new_state, [LedgerEvent("UsageAnchored", {**anchor.to_dict(), "relayer": relayer})]


# Invoices

def create_invoice(
    state: LedgerState,
    caller: str,
    enterprise: str,
    provider: str,
    amount: int,
    invoice_hash: HashLike,
) -> Transition:
    """Allocate the next sequential invoice id, unpaid."""
    _require_relayer(state, caller)
    _require_not_paused(state)
    request = CreateInvoiceRequest(
        enterprise=enterprise,
        provider=provider,
        amount=amount,
        invoice_hash=invoice_hash,
    )

    invoice = Invoice(
        invoice_id=state.next_invoice_id,
        enterprise=request.enterprise,
        provider=request.provider,
        amount=request.amount,
        invoice_hash=request.invoice_hash,
    )
    new_state = replace(
        state,
        invoices={**state.invoices, invoice.invoice_id: invoice},
        next_invoice_id=state.next_invoice_id + 1,
    )
    return new_state, [LedgerEvent("InvoiceCreated", invoice.to_dict())]


def mark_invoice_paid(state: LedgerState, caller: str, invoice_id: int) -> Transition:
    """Settle an invoice: debit escrow, credit provider, flip paid.

    All three changes land in the same new state or none of them do.
    """
    _require_relayer(state, caller)
    _require_not_paused(state)

    invoice = state.invoices.get(invoice_id)
    if invoice is None:
        raise ValidationError("Invoice does not exist")
    if invoice.paid:
        raise ValidationError("Invoice already paid")

    available = state.escrow.get(invoice.enterprise, 0)
    if available < invoice.amount:
        raise InsufficientFundsError(
            f"Insufficient escrow: {available} < {invoice.amount}",
            available=available,
            required=invoice.amount,
        )

    escrow = {**state.escrow, invoice.enterprise: available - invoice.amount}
    balances = {
        **state.balances,
        invoice.provider: state.balances.get(invoice.provider, 0) + invoice.amount,
    }
    paid = replace(invoice, paid=True)
    new_state = replace(
        state,
        escrow=escrow,
        balances=balances,
        invoices={**state.invoices, invoice_id: paid},
    )
    return new_state, [LedgerEvent("InvoicePaid", {
        "invoiceId": invoice_id,
        "enterprise": invoice.enterprise,
        "provider": invoice.provider,
        "amount": invoice.amount,
    })]


# Provider withdrawal

def begin_withdrawal(state: LedgerState, caller: str) -> Transition:
    """Zero the caller's balance ahead of the external payout."""
    provider = _caller(caller)
    _require_not_paused(state)

    amount = state.balances.get(provider, 0)
    if amount <= 0:
        raise ValidationError("No balance to withdraw")

    new_state = replace(state, balances={**state.balances, provider: 0})
    return new_state, [LedgerEvent("ProviderWithdrawn", {"provider": provider, "amount": amount})]


def restore_withdrawal(state: LedgerState, provider: str, amount: int) -> Transition:
    """Undo begin_withdrawal after a failed payout."""
    provider = parse_address(provider, "provider")
    balances = {**state.balances, provider: state.balances.get(provider, 0) + amount}
    new_state = replace(state, balances=balances)
    return new_state, [LedgerEvent("WithdrawalReverted", {"provider": provider, "amount": amount})]


# Disputes

def open_dispute(state: LedgerState, caller: str, anchor_id: HashLike, reason: str) -> Transition:
    """Flag an anchor as disputed. No funds move."""
    disputant = _caller(caller)
    request = OpenDisputeRequest(anchor_id=anchor_id, reason=reason)
    anchor = state.anchors.get(request.anchor_id)
    if anchor is None:
        raise ValidationError("Anchor does not exist")
    if anchor.disputed:
        raise ValidationError("Anchor already disputed")

    anchors = {**state.anchors, request.anchor_id: replace(anchor, disputed=True)}
    return replace(state, anchors=anchors), [LedgerEvent("DisputeOpened", {
        "anchorId": to_hex(request.anchor_id),
        "disputant": disputant,
        "reason": request.reason,
    })]


def resolve_dispute(
    state: LedgerState,
    caller: str,
    anchor_id: HashLike,
    in_favor_of_provider: bool,
) -> Transition:
    """Clear the disputed flag and record the outcome.

    Refunds or slashing on resolution are not performed here.
    """
    _require_owner(state, caller)
    anchor_id = parse_hash(anchor_id, "anchor id")
    anchor = state.anchors.get(anchor_id)
    if anchor is None:
        raise ValidationError("Anchor does not exist")
    if not anchor.disputed:
        raise ValidationError("Anchor not disputed")

    anchors = {**state.anchors, anchor_id: replace(anchor, disputed=False)}
    return replace(state, anchors=anchors), [LedgerEvent("DisputeResolved", {
        "anchorId": to_hex(anchor_id),
        "inFavorOfProvider": bool(in_favor_of_provider),
    })]


# Read-only views

def get_usage_anchor(state: LedgerState, anchor_id: HashLike) -> UsageAnchor:
    anchor_id = parse_hash(anchor_id, "anchor id")
    return state.anchors.get(anchor_id) or UsageAnchor.missing(anchor_id)


def get_invoice(state: LedgerState, invoice_id: int) -> Invoice:
    return state.invoices.get(invoice_id) or Invoice.missing(invoice_id)


def get_enterprise_escrow(state: LedgerState, enterprise: str) -> int:
    return state.escrow.get(parse_address(enterprise, "enterprise"), 0)


def get_provider_balance(state: LedgerState, provider: str) -> int:
    return state.balances.get(parse_address(provider, "provider"), 0)


def verify_merkle_proof(
    state: LedgerState,
    anchor_id: HashLike,
    leaf: HashLike,
    proof: Sequence[HashLike],
) -> bool:
    """Check a leaf's inclusion under an existing anchor's root."""
    anchor = get_usage_anchor(state, anchor_id)
    if not anchor.exists:
        raise ValidationError("Anchor does not exist")
    return verify_inclusion(anchor.merkle_root, leaf, proof)
