"""
Invoice drafting from anchored usage.

Prices a provider's records against a rate table and produces the amount
and canonical invoice hash that the ledger's create_invoice expects.
"""

import json
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Sequence, Tuple, Union

from .codec import hash_bytes, normalize_address
from .pricing import RateTable, calculate_cost, to_minor_units
from .records import SignedUsageRecord, UsageRecord


@dataclass(frozen=True)
class LineItem:
    """Usage under one rate id within the billing period."""
    rate_id: str
    description: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    window_start: int
    window_end: int


@dataclass(frozen=True)
class InvoiceDraft:
    """Off-ledger invoice ready to be anchored."""
    enterprise: str
    provider: str
    currency: str
    line_items: Tuple[LineItem, ...]
    amount: int  # minor units (cents)
    billing_start: int
    billing_end: int
    created_at: int
    invoice_hash: bytes


def canonical_invoice_data(
    enterprise: str,
    provider: str,
    currency: str,
    line_items: Sequence[LineItem],
    amount: int,
    billing_start: int,
    billing_end: int,
    created_at: int,
) -> bytes:
    """Fixed-order compact JSON for hashing an invoice.

    Line items are sorted by rate id, then window start; decimals are
    rendered as strings.
    """
    items = sorted(line_items, key=lambda i: (i.rate_id, i.window_start))
    data: Dict[str, Any] = {
        "enterprise": normalize_address(enterprise),
        "provider": normalize_address(provider),
        "amount": amount,
        "currency": currency,
        "billingPeriod": {"start": billing_start, "end": billing_end},
        "lineItems": [
            {
                "description": i.description,
                "quantity": i.quantity,
                "unitPrice": str(i.unit_price),
                "total": str(i.total),
                "rateId": i.rate_id,
                "usageData": {"windowStart": i.window_start, "windowEnd": i.window_end},
            }
            for i in items
        ],
        "createdAt": created_at,
    }
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


def draft_invoice(
    enterprise: str,
    provider: str,
    records: Sequence[Union[UsageRecord, SignedUsageRecord]],
    rate_table: RateTable,
    created_at: int,
) -> InvoiceDraft:
    """Price a provider's usage records into an invoice draft.

    Args:
        enterprise: Enterprise address to bill
        provider: Provider address being paid
        records: The provider's usage records for the billing period
        rate_table: Rate cards to price against
        created_at: Invoice creation timestamp (seconds)

    Returns:
        InvoiceDraft with integer amount and invoice hash

    Raises:
        ValueError: If records are empty, belong to another provider, use an
            unknown rate, or mix currencies
    """
    if not records:
        raise ValueError("cannot invoice an empty set of records")
    provider = normalize_address(provider)

    by_rate = defaultdict(list)
    for r in records:
        record = r.record if isinstance(r, SignedUsageRecord) else r
        if normalize_address(record.provider) != provider:
            raise ValueError(f"record from {record.provider} on invoice for {provider}")
        by_rate[record.rate_id].append(record)

    line_items = []
    currencies = set()
    for rate_id, rate_records in by_rate.items():
        card = rate_table.get_rate_card(rate_id)
        currencies.add(card.currency)
        units = sum(r.units_consumed for r in rate_records)
        line_items.append(LineItem(
            rate_id=rate_id,
            description=card.name,
            quantity=units,
            unit_price=card.unit_price,
            total=calculate_cost(card, units),
            window_start=min(r.window_start for r in rate_records),
            window_end=max(r.window_end for r in rate_records),
        ))
    if len(currencies) != 1:
        raise ValueError(f"records priced in several currencies: {sorted(currencies)}")

    currency = currencies.pop()
    amount = to_minor_units(sum((i.total for i in line_items), Decimal("0")))
    billing_start = min(i.window_start for i in line_items)
    billing_end = max(i.window_end for i in line_items)
    enterprise = normalize_address(enterprise)

    digest = hash_bytes(canonical_invoice_data(
        enterprise, provider, currency, line_items, amount, billing_start, billing_end, created_at
    ))
    return InvoiceDraft(
        enterprise=enterprise,
        provider=provider,
        currency=currency,
        line_items=tuple(sorted(line_items, key=lambda i: (i.rate_id, i.window_start))),
        amount=amount,
        billing_start=billing_start,
        billing_end=billing_end,
        created_at=created_at,
        invoice_hash=digest,
    )


def verify_invoice_hash(draft: InvoiceDraft) -> bool:
    """Recompute a draft's hash from its contents."""
    expected = hash_bytes(canonical_invoice_data(
        draft.enterprise,
        draft.provider,
        draft.currency,
        draft.line_items,
        draft.amount,
        draft.billing_start,
        draft.billing_end,
        draft.created_at,
    ))
    return expected == draft.invoice_hash
