"""
Contract Upgradability - UUPS (EIP-1822) with EIP-1967 storage.

The upgrade logic lives in the implementation, not in a separate proxy
contract. An upgrade writes the new implementation address to the EIP-1967
implementation slot of the account being upgraded; the executor resolves the
code of every subsequent call through that slot. The account's address and
its own storage are never touched by the swap.

Security features:
- Authorization hook (``_authorize_upgrade``) implemented by each contract
- Implementation validation via ``proxiableUUID``
- EIP-1967 slot, clear of slot 0 and of namespaced wallet storage
"""

from __future__ import annotations

import logging

from eth_abi.exceptions import DecodingError

from ..vm.abi import int_to_address
from ..vm.context import CallContext
from ..vm.contract import Contract, external
from ..vm.exceptions import (
    ContractError,
    ERC1967InvalidImplementation,
    UUPSUnsupportedProxiableUUID,
    VMExecutionError,
)
from ..vm.interpreter_helpers import EIP1967_IMPLEMENTATION_SLOT

logger = logging.getLogger(__name__)

IMPLEMENTATION_SLOT_BYTES = EIP1967_IMPLEMENTATION_SLOT.to_bytes(32, "big")


class ERC1967NonPayable(ContractError):
    signature = "ERC1967NonPayable()"


class UUPSUpgradeable(Contract):
    """
    Base class for UUPS-upgradeable contracts.

    Subclasses must implement ``_authorize_upgrade``.
    """

    def _authorize_upgrade(self, ctx: CallContext, new_implementation: str) -> None:
        raise NotImplementedError

    @external("proxiableUUID()", returns=("bytes32",))
    def proxiable_uuid(self, ctx: CallContext) -> bytes:
        """Slot this implementation expects its successor to be stored in."""
        return IMPLEMENTATION_SLOT_BYTES

    @external("upgradeToAndCall(address,bytes)", payable=True)
    def upgrade_to_and_call(self, ctx: CallContext, new_implementation: str, data: bytes) -> None:
        """
        Upgrade to new implementation and optionally call into it.

        Args:
            new_implementation: Address of the new logic contract
            data: Calldata delegate-called on the new logic after the swap
        """
        self._authorize_upgrade(ctx, new_implementation)

        try:
            slot = ctx.view(new_implementation, "proxiableUUID()", returns=("bytes32",))
        except (VMExecutionError, DecodingError) as e:
            raise ERC1967InvalidImplementation(new_implementation) from e
        if slot != IMPLEMENTATION_SLOT_BYTES:
            raise UUPSUnsupportedProxiableUUID(slot)

        old_implementation = get_implementation(ctx)
        ctx.sstore_address(EIP1967_IMPLEMENTATION_SLOT, new_implementation)
        ctx.emit("Upgraded", implementation=new_implementation)

        logger.info(
            "UUPS proxy upgraded",
            extra={
                "event": "uups.upgraded",
                "proxy": ctx.address,
                "old_impl": old_implementation,
                "new_impl": new_implementation,
            }
        )

        if data:
            ctx.delegate_call(new_implementation, data)
        elif ctx.value:
            raise ERC1967NonPayable()


def get_implementation(ctx: CallContext) -> str:
    """Current implementation of the account in ``ctx``; its own code if never upgraded."""
    implementation = ctx.sload(EIP1967_IMPLEMENTATION_SLOT)
    if implementation:
        return int_to_address(implementation)
    return ctx.code_address or ctx.address
