"""
Token movements outside the ledger.

Deposits pull pre-approved funds from an enterprise; withdrawals push a
provider's balance out. The ledger only talks to a TokenGateway.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from edgecharge.core.codec import normalize_address
from edgecharge.core.errors import InsufficientFundsError


@dataclass(frozen=True)
class TokenTransfer:
    """One completed token movement."""
    kind: str  # "pull" or "push"
    account: str
    amount: int


class TokenGateway:
    """Interface for the token the ledger settles in."""

    def transfer_from(self, owner: str, amount: int) -> None:
        """Pull amount from owner into the ledger's custody."""
        raise NotImplementedError

    def transfer(self, recipient: str, amount: int) -> None:
        """Push amount out of the ledger's custody to recipient."""
        raise NotImplementedError


class InMemoryTokenGateway(TokenGateway):
    """Wallet balances and allowances held in memory."""

    def __init__(self, wallets: Optional[Dict[str, int]] = None):
        self.wallets: Dict[str, int] = {
            normalize_address(k): v for k, v in (wallets or {}).items()
        }
        self.allowances: Dict[str, int] = {}
        self.custody = 0
        self.transfers: List[TokenTransfer] = []

    def balance_of(self, account: str) -> int:
        return self.wallets.get(normalize_address(account), 0)

    def mint(self, account: str, amount: int) -> None:
        account = normalize_address(account)
        self.wallets[account] = self.wallets.get(account, 0) + amount

    def approve(self, owner: str, amount: int) -> None:
        """Allow the ledger to pull up to amount from owner."""
        self.allowances[normalize_address(owner)] = amount

    def transfer_from(self, owner: str, amount: int) -> None:
        owner = normalize_address(owner)
        allowance = self.allowances.get(owner, 0)
        if allowance < amount:
            raise InsufficientFundsError(
                f"Allowance too low: {allowance} < {amount}", available=allowance, required=amount
            )
        balance = self.wallets.get(owner, 0)
        if balance < amount:
            raise InsufficientFundsError(
                f"Wallet balance too low: {balance} < {amount}", available=balance, required=amount
            )
        self.allowances[owner] = allowance - amount
        self.wallets[owner] = balance - amount
        self.custody += amount
        self.transfers.append(TokenTransfer("pull", owner, amount))

    def transfer(self, recipient: str, amount: int) -> None:
        recipient = normalize_address(recipient)
        if self.custody < amount:
            raise InsufficientFundsError(
                f"Custody too low: {self.custody} < {amount}", available=self.custody, required=amount
            )
        self.custody -= amount
        self.wallets[recipient] = self.wallets.get(recipient, 0) + amount
        self.transfers.append(TokenTransfer("push", recipient, amount))
