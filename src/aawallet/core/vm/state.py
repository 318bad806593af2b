"""
World state: balances, nonces, deployed code and storage for every address.

Snapshots are taken before each message call and creation and restored when
the frame fails, which makes every call atomic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from .abi import normalize_address

if TYPE_CHECKING:
    from .contract import Contract


@dataclass
class AccountState:
    """State kept for a single address."""
    balance: int = 0
    nonce: int = 0
    code: Optional["Contract"] = None
    storage: Dict[int, int] = field(default_factory=dict)

    def copy(self) -> "AccountState":
        # Code objects only hold immutables, so they are shared between copies.
        return AccountState(
            balance=self.balance,
            nonce=self.nonce,
            code=self.code,
            storage=dict(self.storage),
        )


class WorldState:
    """Address-keyed account store."""

    def __init__(self) -> None:
        self.accounts: Dict[str, AccountState] = {}

    def _get(self, address: str) -> Optional[AccountState]:
        return self.accounts.get(normalize_address(address))

    def _get_or_create(self, address: str) -> AccountState:
        key = normalize_address(address)
        account = self.accounts.get(key)
        if account is None:
            account = AccountState()
            self.accounts[key] = account
        return account

    # ==================== Balances & Nonces ====================

    def get_balance(self, address: str) -> int:
        account = self._get(address)
        return account.balance if account else 0

    def set_balance(self, address: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Balance cannot be negative")
        self._get_or_create(address).balance = amount

    def get_nonce(self, address: str) -> int:
        account = self._get(address)
        return account.nonce if account else 0

    def increment_nonce(self, address: str) -> int:
        account = self._get_or_create(address)
        account.nonce += 1
        return account.nonce

    def set_nonce(self, address: str, nonce: int) -> None:
        self._get_or_create(address).nonce = nonce

    # ==================== Code ====================

    def get_code(self, address: str) -> Optional["Contract"]:
        account = self._get(address)
        return account.code if account else None

    def has_code(self, address: str) -> bool:
        return self.get_code(address) is not None

    def set_code(self, address: str, code: "Contract") -> None:
        self._get_or_create(address).code = code

    def is_fresh(self, address: str) -> bool:
        """True when nothing was ever deployed to, or sent from, ``address``."""
        account = self._get(address)
        return account is None or (account.code is None and account.nonce == 0)

    # ==================== Storage ====================

    def get_storage(self, address: str, slot: int) -> int:
        account = self._get(address)
        if account is None:
            return 0
        return account.storage.get(slot, 0)

    def set_storage(self, address: str, slot: int, value: int) -> None:
        account = self._get_or_create(address)
        if value == 0:
            account.storage.pop(slot, None)
        else:
            account.storage[slot] = value

    # ==================== Snapshots ====================

    def snapshot(self) -> Dict[str, Any]:
        return {address: account.copy() for address, account in self.accounts.items()}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.accounts = {address: account.copy() for address, account in snapshot.items()}
