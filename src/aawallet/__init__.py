"""
aawallet - ERC-4337 Smart Contract Wallets

Account-abstraction wallets executed by an in-process contract host.

Main Components:
- Contract host: call frames, atomic reverts, CREATE/CREATE2, delegate calls
- EntryPoint: user operation validation, execution, deposits and stakes
- Accounts: single-owner and multi-owner smart accounts, UUPS-upgradeable
- Factories: deterministic counterfactual account deployment
"""

__version__ = "0.1.0"
__author__ = "aawallet Development Team"

__all__ = []
