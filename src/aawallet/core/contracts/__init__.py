"""
aawallet Smart Contracts.

This module provides the wallet contract implementations:
- EntryPoint: ERC-4337 singleton for user operations, deposits and stakes
- Smart accounts: single-owner and multi-owner ERC-4337 accounts
- Factories: deterministic deployment of smart accounts
- Upgradability: UUPS with EIP-1967 storage
- Ownable2Step: administration of factories
"""

from .account_abstraction import (
    BaseSmartAccount,
    MultiOwnerSmartAccount,
    SignatureType,
    SmartAccount,
    contract_signature,
    contract_signature_with_address,
    eoa_signature,
)
from .account_factory import (
    BaseAccountFactory,
    MultiOwnerSmartAccountFactory,
    SmartAccountFactory,
    compute_account_address,
)
from .entry_point import (
    EntryPoint,
    SenderAddressResult,
    UserOperation,
    pack_validation_data,
    parse_validation_data,
)
from .ownable import Ownable2Step
from .proxy import UUPSUpgradeable

__all__ = [
    # ERC-4337
    "EntryPoint",
    "UserOperation",
    "SenderAddressResult",
    "pack_validation_data",
    "parse_validation_data",
    # Accounts
    "BaseSmartAccount",
    "SmartAccount",
    "MultiOwnerSmartAccount",
    "SignatureType",
    "eoa_signature",
    "contract_signature",
    "contract_signature_with_address",
    # Factories
    "BaseAccountFactory",
    "SmartAccountFactory",
    "MultiOwnerSmartAccountFactory",
    "compute_account_address",
    # Administration
    "Ownable2Step",
    "UUPSUpgradeable",
]
