"""
Factories for deploying smart accounts.

Provides deterministic addresses for counterfactual deployment: an account's
address is the CREATE2 address of the factory, the salt and the account's
creation code (which embeds the owner or owners and the entry point). The
address can be handed out, funded and used in ``initCode`` before the account
exists.

Factories are ``Ownable2Step``; the factory owner manages the factory's stake
and balances at the entry point. Renouncing ownership is disabled.
"""

from __future__ import annotations

import logging
from typing import Sequence

from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from .. import config
from ..vm.abi import ZERO_ADDRESS, decode_args, encode_call, is_zero_address
from ..vm.context import CallContext
from ..vm.contract import external
from ..vm.exceptions import (
    ContractError,
    CreateFailed,
    InvalidAction,
    InvalidEntryPoint,
    InvalidOwners,
    OwnersArrayEmpty,
    OwnersLimitExceeded,
    VMExecutionError,
    ZeroAddressNotAllowed,
)
from ..vm.interpreter_helpers import compute_create2_address
from .account_abstraction import MultiOwnerSmartAccount, SmartAccount
from .entry_point import IENTRY_POINT_INTERFACE_ID
from .ownable import Ownable2Step

logger = logging.getLogger(__name__)


class SafeERC20FailedOperation(ContractError):
    signature = "SafeERC20FailedOperation(address)"


def compute_account_address(factory: str, init_code: bytes, salt: int) -> str:
    """Counterfactual address of an account created by ``factory``."""
    return compute_create2_address(factory, salt, keccak(init_code))


def validate_owners(owners: Sequence[str]) -> None:
    """
    Check an owner list before it is used for creation or address derivation.

    Raises:
        OwnersArrayEmpty: No owners
        OwnersLimitExceeded: More than ``MAX_OWNERS_ON_CREATION`` owners
        InvalidOwners: Not strictly ascending, which also rules out
            duplicates and the zero address
    """
    if not owners:
        raise OwnersArrayEmpty()
    if len(owners) > config.MAX_OWNERS_ON_CREATION:
        raise OwnersLimitExceeded()
    previous = 0
    for owner in owners:
        current = int(owner, 16)
        if current <= previous:
            raise InvalidOwners()
        previous = current


class BaseAccountFactory(Ownable2Step):
    """Stake management and creation plumbing shared by account factories."""

    CONSTRUCTOR_TYPES = ("address", "address")

    entry_point: str = ZERO_ADDRESS

    def constructor(self, ctx: CallContext, owner: str, entry_point: str) -> None:
        self._initialize_owner(ctx, owner)
        try:
            supported = ctx.view(
                entry_point,
                "supportsInterface(bytes4)",
                IENTRY_POINT_INTERFACE_ID,
                returns=("bool",),
            )
        except (VMExecutionError, DecodingError) as e:
            raise InvalidEntryPoint(entry_point) from e
        if not supported:
            raise InvalidEntryPoint(entry_point)
        self.entry_point = entry_point

    @external("entryPoint()", returns=("address",))
    def get_entry_point(self, ctx: CallContext) -> str:
        return self.entry_point

    def _create_account(self, ctx: CallContext, init_code: bytes, salt: int, initializer: bytes) -> str:
        """Deploy and initialize, or return the existing account at the address."""
        address = compute_account_address(ctx.address, init_code, salt)
        if ctx.code_exists(address):
            return address

        created = ctx.create2(0, init_code, salt)
        if is_zero_address(created):
            raise CreateFailed()
        ctx.call(created, 0, initializer)

        logger.info(
            "Account created",
            extra={"event": "factory.account_created", "factory": ctx.address, "address": created},
        )
        return created

    # ==================== Stake Management ====================

    @external("addStake(uint32,uint256)", payable=True)
    def add_stake(self, ctx: CallContext, unstake_delay_sec: int, amount: int) -> None:
        self._check_owner(ctx)
        ctx.invoke(self.entry_point, "addStake(uint32)", unstake_delay_sec, value=amount)

    @external("unlockStake()")
    def unlock_stake(self, ctx: CallContext) -> None:
        self._check_owner(ctx)
        ctx.invoke(self.entry_point, "unlockStake()")

    @external("withdrawStake(address)")
    def withdraw_stake(self, ctx: CallContext, withdraw_address: str) -> None:
        self._check_owner(ctx)
        if is_zero_address(withdraw_address):
            raise ZeroAddressNotAllowed()
        ctx.invoke(self.entry_point, "withdrawStake(address)", withdraw_address)

    @external("withdraw(address,address,uint256)")
    def withdraw(self, ctx: CallContext, to: str, token: str, amount: int) -> None:
        """Send ``amount`` of native currency (``token`` zero) or of an ERC-20 to ``to``."""
        self._check_owner(ctx)
        if is_zero_address(to):
            raise ZeroAddressNotAllowed()
        if is_zero_address(token):
            ctx.call(to, amount)
            return

        if not ctx.code_exists(token):
            raise SafeERC20FailedOperation(token)
        raw = ctx.call(token, 0, encode_call("transfer(address,uint256)", to, amount))
        if raw and not decode_args(("bool",), raw[:32])[0]:
            raise SafeERC20FailedOperation(token)

    @external("renounceOwnership()")
    def renounce_ownership(self, ctx: CallContext) -> None:
        raise InvalidAction()


class SmartAccountFactory(BaseAccountFactory):
    """Deploys single-owner ``SmartAccount`` instances."""

    def _init_code(self, owner: str) -> bytes:
        return SmartAccount.init_code(owner, self.entry_point)

    @external("createAccount(address,uint256)", returns=("address",))
    def create_account(self, ctx: CallContext, owner: str, salt: int) -> str:
        """
        Create a smart account, or return it if it already exists.

        Args:
            owner: Account owner address
            salt: Discriminator for several accounts with the same owner

        Returns:
            Account address
        """
        return self._create_account(
            ctx, self._init_code(owner), salt, encode_call("initialize(address)", owner)
        )

    @external("getAddress(address,uint256)", returns=("address",))
    def get_address(self, ctx: CallContext, owner: str, salt: int) -> str:
        """
        Get deterministic address without deploying.

        Useful for counterfactual deployment.
        """
        return compute_account_address(ctx.address, self._init_code(owner), salt)


class MultiOwnerSmartAccountFactory(BaseAccountFactory):
    """Deploys ``MultiOwnerSmartAccount`` instances from sorted owner lists."""

    def _init_code(self, owners: Sequence[str]) -> bytes:
        return MultiOwnerSmartAccount.init_code(list(owners), self.entry_point)

    @external("createAccount(address[],uint256)", returns=("address",))
    def create_account(self, ctx: CallContext, owners: Sequence[str], salt: int) -> str:
        """
        Create a multi-owner account, or return it if it already exists.

        Args:
            owners: Owner addresses in strictly ascending order
            salt: Discriminator for several accounts with the same owners
        """
        validate_owners(owners)
        return self._create_account(
            ctx, self._init_code(owners), salt, encode_call("initialize(address[])", list(owners))
        )

    @external("createAccountSingle(address,uint256)", returns=("address",))
    def create_account_single(self, ctx: CallContext, owner: str, salt: int) -> str:
        return self.create_account(ctx, [owner], salt)

    @external("getAddress(address[],uint256)", returns=("address",))
    def get_address(self, ctx: CallContext, owners: Sequence[str], salt: int) -> str:
        validate_owners(owners)
        return compute_account_address(ctx.address, self._init_code(owners), salt)

    @external("getAddressSingle(address,uint256)", returns=("address",))
    def get_address_single(self, ctx: CallContext, owner: str, salt: int) -> str:
        return self.get_address(ctx, [owner], salt)
