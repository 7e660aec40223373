"""
Anchor/escrow ledger.

Pure state transitions plus a facade that runs them against an injected
store and token gateway.
"""

from .ledger import EdgeChargeLedger
from .state import Invoice, LedgerEvent, LedgerState, UsageAnchor
from .store import InMemoryLedgerStore, LedgerStore
from .tokens import InMemoryTokenGateway, TokenGateway

__all__ = [
    "EdgeChargeLedger",
    "InMemoryLedgerStore",
    "InMemoryTokenGateway",
    "Invoice",
    "LedgerEvent",
    "LedgerState",
    "LedgerStore",
    "TokenGateway",
    "UsageAnchor",
]
