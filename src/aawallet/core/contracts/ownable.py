"""
Two-step ownership for administrative contracts.

Ownership moves only when the proposed owner accepts it, so a mistyped
address cannot strand the contract. Owner and pending owner live in
namespaced storage.

Events:
    OwnershipTransferStarted(previousOwner, newOwner)
    OwnershipTransferred(previousOwner, newOwner)
"""

from __future__ import annotations

import logging

from ..vm.abi import ZERO_ADDRESS, is_zero_address
from ..vm.context import CallContext
from ..vm.contract import Contract, external
from ..vm.exceptions import OwnableInvalidOwner, OwnableUnauthorizedAccount
from ..vm.interpreter_helpers import erc7201_slot

logger = logging.getLogger(__name__)

OWNER_SLOT = erc7201_slot("aawallet.storage.Ownable")
PENDING_OWNER_SLOT = erc7201_slot("aawallet.storage.Ownable2Step")


class Ownable2Step(Contract):
    """Owner-gated administration with propose/accept ownership transfer."""

    def _initialize_owner(self, ctx: CallContext, initial_owner: str) -> None:
        if is_zero_address(initial_owner):
            raise OwnableInvalidOwner(ZERO_ADDRESS)
        self._transfer_ownership(ctx, initial_owner)

    # ==================== Views ====================

    @external("owner()", returns=("address",))
    def owner(self, ctx: CallContext) -> str:
        return ctx.sload_address(OWNER_SLOT)

    @external("pendingOwner()", returns=("address",))
    def pending_owner(self, ctx: CallContext) -> str:
        return ctx.sload_address(PENDING_OWNER_SLOT)

    # ==================== Transfer ====================

    @external("transferOwnership(address)")
    def transfer_ownership(self, ctx: CallContext, new_owner: str) -> None:
        """Propose ``new_owner``; the zero address cancels a pending proposal."""
        self._check_owner(ctx)
        ctx.sstore_address(PENDING_OWNER_SLOT, new_owner)
        ctx.emit(
            "OwnershipTransferStarted",
            previousOwner=self.owner(ctx),
            newOwner=new_owner,
        )

    @external("acceptOwnership()")
    def accept_ownership(self, ctx: CallContext) -> None:
        if self.pending_owner(ctx) != ctx.caller:
            raise OwnableUnauthorizedAccount(ctx.caller)
        self._transfer_ownership(ctx, ctx.caller)

    def _check_owner(self, ctx: CallContext) -> None:
        if self.owner(ctx) != ctx.caller:
            logger.warning(
                "Rejected owner-only call",
                extra={"event": "ownable.unauthorized", "contract": ctx.address, "caller": ctx.caller},
            )
            raise OwnableUnauthorizedAccount(ctx.caller)

    def _transfer_ownership(self, ctx: CallContext, new_owner: str) -> None:
        previous_owner = self.owner(ctx)
        ctx.sstore(PENDING_OWNER_SLOT, 0)
        ctx.sstore_address(OWNER_SLOT, new_owner)
        ctx.emit("OwnershipTransferred", previousOwner=previous_owner, newOwner=new_owner)
        logger.info(
            "Ownership transferred",
            extra={
                "event": "ownable.transferred",
                "contract": ctx.address,
                "previous_owner": previous_owner,
                "new_owner": new_owner,
            },
        )
