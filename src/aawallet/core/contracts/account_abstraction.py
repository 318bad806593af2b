"""
ERC-4337 smart accounts.

Two account variants share one base:

- ``SmartAccount``: a single owner, either an EOA or an ERC-1271 contract
- ``MultiOwnerSmartAccount``: any member of an owner set may act alone

Both validate user operations for a trusted EntryPoint, execute single and
batched calls, deploy contracts, answer ERC-1271 signature checks over an
EIP-712 replay-safe digest and upgrade themselves in place (UUPS).

Signatures carry a one-byte type tag:

    0x00 EOA                 r ++ s ++ v, checked against ECDSA recovery
    0x01 CONTRACT            ERC-1271 payload for the single owner contract
    0x02 CONTRACT_WITH_ADDR  20-byte owner address ++ ERC-1271 payload

All account state lives in ERC-7201 namespaced storage so an upgrade never
collides with a new implementation's layout.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any, List, Sequence, Tuple

from eth_utils import keccak, to_checksum_address

from .. import config
from ..crypto_utils import recover_signer, to_eth_signed_message_hash
from ..typed_signing import TypedDataDomain, hash_struct, hash_typed_data_v4, message_type
from ..vm.abi import (
    ERC165_INTERFACE_ID,
    ERC1271_INVALID,
    ERC1271_MAGIC_VALUE,
    ZERO_ADDRESS,
    encode_call,
    function_selector,
    interface_id,
    is_zero_address,
)
from ..vm.context import CallContext
from ..vm.contract import external
from ..vm.exceptions import (
    ArrayLengthMismatch,
    CreateFailed,
    InvalidInitialization,
    InvalidOwner,
    InvalidOwners,
    InvalidSignatureType,
    NotAuthorized,
    OwnersArrayEmpty,
    VMExecutionError,
    ZeroAddressNotAllowed,
)
from ..vm.interpreter_helpers import array_slot, erc7201_slot, mapping_slot
from .entry_point import (
    SIG_VALIDATION_FAILED,
    SIG_VALIDATION_SUCCESS,
    USER_OPERATION_TYPE,
    UserOperation,
)
from .proxy import UUPSUpgradeable

logger = logging.getLogger(__name__)


class SignatureType(IntEnum):
    EOA = 0x00
    CONTRACT = 0x01
    CONTRACT_WITH_ADDR = 0x02


IERC1271_INTERFACE_ID = interface_id(["isValidSignature(bytes32,bytes)"])
IERC721_RECEIVER_INTERFACE_ID = interface_id(["onERC721Received(address,address,uint256,bytes)"])
IERC1155_RECEIVER_INTERFACE_ID = interface_id([
    "onERC1155Received(address,address,uint256,uint256,bytes)",
    "onERC1155BatchReceived(address,address,uint256[],uint256[],bytes)",
])

# Initialization latch shared by every account variant
_INITIALIZED_SLOT = erc7201_slot("aawallet.storage.Initializable")

# ERC-5267 field bitmap: name, version, chainId, verifyingContract
_EIP712_DOMAIN_FIELDS = b"\x0f"


def is_valid_erc1271_signature(ctx: CallContext, signer: str, digest: bytes, signature: bytes) -> bool:
    """
    Ask ``signer`` whether ``signature`` is valid for ``digest``.

    Any revert, missing code or malformed return counts as invalid.
    """
    try:
        raw = ctx.static_call(
            signer, encode_call("isValidSignature(bytes32,bytes)", digest, signature)
        )
    except VMExecutionError as e:
        logger.debug(
            "ERC-1271 signer reverted",
            extra={"event": "account.erc1271_reverted", "signer": signer, "error": str(e)},
        )
        return False
    return len(raw) >= 32 and raw[:4] == ERC1271_MAGIC_VALUE


class BaseSmartAccount(UUPSUpgradeable):
    """
    Behaviour shared by every account variant.

    Subclasses provide owner storage through ``_is_owner`` and the handling
    of contract signature tags through ``_is_valid_contract_signature``.
    """

    ACCEPTS_VALUE = True
    DOMAIN_NAME = ""

    entry_point: str = ZERO_ADDRESS

    def _is_owner(self, ctx: CallContext, account: str) -> bool:
        raise NotImplementedError

    def _is_valid_contract_signature(
        self, ctx: CallContext, signature_type: int, digest: bytes, payload: bytes
    ) -> bool:
        raise NotImplementedError

    # ==================== Authorization ====================

    def _require_authorized(self, ctx: CallContext) -> None:
        """Self-calls, the entry point and owners pass; anyone else is rejected."""
        caller = ctx.caller
        if caller == ctx.address or caller == self.entry_point or self._is_owner(ctx, caller):
            return
        logger.warning(
            "Rejected unauthorized call",
            extra={"event": "account.unauthorized", "account": ctx.address, "caller": caller},
        )
        raise NotAuthorized(caller)

    def _require_owner_or_self(self, ctx: CallContext) -> None:
        if ctx.caller == ctx.address or self._is_owner(ctx, ctx.caller):
            return
        raise NotAuthorized(ctx.caller)

    def _require_from_entry_point(self, ctx: CallContext) -> None:
        if ctx.caller != self.entry_point:
            raise NotAuthorized(ctx.caller)

    def _authorize_upgrade(self, ctx: CallContext, new_implementation: str) -> None:
        self._require_authorized(ctx)

    def _initialize_once(self, ctx: CallContext) -> None:
        if ctx.sload(_INITIALIZED_SLOT):
            raise InvalidInitialization()
        ctx.sstore(_INITIALIZED_SLOT, 1)

    # ==================== ERC-4337 ====================

    @external("entryPoint()", returns=("address",))
    def get_entry_point(self, ctx: CallContext) -> str:
        return self.entry_point

    @external(f"validateUserOp({USER_OPERATION_TYPE},bytes32,uint256)", returns=("uint256",))
    def validate_user_op(
        self,
        ctx: CallContext,
        user_op: Tuple[Any, ...],
        user_op_hash: bytes,
        missing_account_funds: int,
    ) -> int:
        """
        Validate a user operation on behalf of the entry point.

        Returns:
            0 when an owner signed ``user_op_hash``, 1 otherwise
        """
        self._require_from_entry_point(ctx)
        op = UserOperation.from_tuple(user_op)

        valid = self._is_valid_signature(
            ctx,
            op.signature,
            digest=user_op_hash,
            eoa_digest=to_eth_signed_message_hash(user_op_hash),
        )
        if not valid:
            logger.warning(
                "UserOp signature rejected",
                extra={"event": "account.signature_rejected", "account": ctx.address, "nonce": op.nonce},
            )

        self._pay_prefund(ctx, missing_account_funds)
        return SIG_VALIDATION_SUCCESS if valid else SIG_VALIDATION_FAILED

    def _pay_prefund(self, ctx: CallContext, missing_account_funds: int) -> None:
        if missing_account_funds == 0:
            return
        try:
            ctx.call(self.entry_point, missing_account_funds)
        except VMExecutionError as e:
            # The entry point reports the shortfall itself
            logger.warning(
                "Prefund transfer failed",
                extra={"event": "account.prefund_failed", "account": ctx.address, "error": str(e)},
            )

    @external("getNonce()", returns=("uint256",))
    def get_nonce(self, ctx: CallContext) -> int:
        return ctx.view(self.entry_point, "getNonce(address,uint192)", ctx.address, 0, returns=("uint256",))

    # ==================== Execution ====================

    @external("execute(address,uint256,bytes)")
    def execute(self, ctx: CallContext, dest: str, value: int, func: bytes) -> None:
        """Call ``dest`` with ``value`` and ``func``; reverts bubble up unchanged."""
        self._require_authorized(ctx)
        ctx.call(dest, value, func)

    @external("executeBatch(address[],bytes[])")
    def execute_batch(self, ctx: CallContext, dest: Sequence[str], func: Sequence[bytes]) -> None:
        self._require_authorized(ctx)
        if len(dest) != len(func):
            raise ArrayLengthMismatch()
        for target, data in zip(dest, func):
            ctx.call(target, 0, data)

    @external("executeBatch(address[],uint256[],bytes[])")
    def execute_batch_with_value(
        self,
        ctx: CallContext,
        dest: Sequence[str],
        value: Sequence[int],
        func: Sequence[bytes],
    ) -> None:
        self._require_authorized(ctx)
        if len(dest) != len(func) or len(dest) != len(value):
            raise ArrayLengthMismatch()
        for target, amount, data in zip(dest, value, func):
            ctx.call(target, amount, data)

    @external("performCreate(uint256,bytes)", returns=("address",), payable=True)
    def perform_create(self, ctx: CallContext, value: int, init_code: bytes) -> str:
        """Deploy ``init_code`` with CREATE from this account."""
        self._require_owner_or_self(ctx)
        created = ctx.create(value, init_code)
        if is_zero_address(created):
            raise CreateFailed()
        return created

    @external("performCreate2(uint256,bytes,bytes32)", returns=("address",), payable=True)
    def perform_create2(self, ctx: CallContext, value: int, init_code: bytes, salt: bytes) -> str:
        """Deploy ``init_code`` with CREATE2 and ``salt`` from this account."""
        self._require_owner_or_self(ctx)
        created = ctx.create2(value, init_code, salt)
        if is_zero_address(created):
            raise CreateFailed()
        return created

    # ==================== Deposits ====================

    @external("addDeposit()", payable=True)
    def add_deposit(self, ctx: CallContext) -> None:
        ctx.invoke(self.entry_point, "depositTo(address)", ctx.address, value=ctx.value)

    @external("withdrawDepositTo(address,uint256)")
    def withdraw_deposit_to(self, ctx: CallContext, withdraw_address: str, amount: int) -> None:
        self._require_authorized(ctx)
        if is_zero_address(withdraw_address):
            raise ZeroAddressNotAllowed()
        ctx.invoke(self.entry_point, "withdrawTo(address,uint256)", withdraw_address, amount)

    @external("getDeposit()", returns=("uint256",))
    def get_deposit(self, ctx: CallContext) -> int:
        return ctx.view(self.entry_point, "balanceOf(address)", ctx.address, returns=("uint256",))

    # ==================== ERC-1271 / EIP-712 ====================

    def _domain(self, ctx: CallContext) -> TypedDataDomain:
        return TypedDataDomain(
            name=self.DOMAIN_NAME,
            version=config.ACCOUNT_DOMAIN_VERSION,
            chain_id=ctx.chain_id,
            verifying_contract=ctx.address,
        )

    @external("domainSeparator()", returns=("bytes32",))
    def domain_separator(self, ctx: CallContext) -> bytes:
        return self._domain(ctx).separator()

    @external(
        "eip712Domain()",
        returns=("bytes1", "string", "string", "uint256", "address", "bytes32", "uint256[]"),
    )
    def eip712_domain(self, ctx: CallContext) -> Tuple[Any, ...]:
        domain = self._domain(ctx)
        return (
            _EIP712_DOMAIN_FIELDS,
            domain.name,
            domain.version,
            domain.chain_id,
            domain.verifying_contract,
            b"\x00" * 32,
            [],
        )

    @external("getMessageHash(bytes)", returns=("bytes32",))
    def get_message_hash(self, ctx: CallContext, message: bytes) -> bytes:
        """EIP-712 digest of ``message`` bound to this account and chain."""
        struct_hash = hash_struct(message_type(self.DOMAIN_NAME), ["bytes32"], [keccak(message)])
        return hash_typed_data_v4(self._domain(ctx), struct_hash)

    @external("isValidSignature(bytes32,bytes)", returns=("bytes4",))
    def is_valid_signature(self, ctx: CallContext, digest: bytes, signature: bytes) -> bytes:
        """
        ERC-1271 check of ``signature`` over ``digest``.

        Owners sign the replay-safe hash ``getMessageHash(abi.encode(digest))``
        rather than ``digest`` itself.
        """
        replay_safe_hash = self.get_message_hash(ctx, digest)
        if self._is_valid_signature(ctx, signature, digest=replay_safe_hash, eoa_digest=replay_safe_hash):
            return ERC1271_MAGIC_VALUE
        return ERC1271_INVALID

    def _is_valid_signature(
        self, ctx: CallContext, signature: bytes, *, digest: bytes, eoa_digest: bytes
    ) -> bool:
        """
        Dispatch on the signature type tag.

        Args:
            signature: Tagged signature blob
            digest: Hash contract owners are asked about
            eoa_digest: Hash an EOA owner's ECDSA signature must recover from

        Raises:
            InvalidSignatureType: Empty blob or unknown tag
            ECDSAInvalidSignature*: Malformed EOA signature
        """
        if not signature:
            raise InvalidSignatureType()
        signature_type, payload = signature[0], signature[1:]

        if signature_type == SignatureType.EOA:
            signer = recover_signer(eoa_digest, payload)
            return self._is_owner(ctx, signer)
        return self._is_valid_contract_signature(ctx, signature_type, digest, payload)

    # ==================== Token Callbacks ====================

    @external("onERC721Received(address,address,uint256,bytes)", returns=("bytes4",))
    def on_erc721_received(self, ctx: CallContext, operator: str, sender: str, token_id: int, data: bytes) -> bytes:
        return function_selector("onERC721Received(address,address,uint256,bytes)")

    @external("onERC1155Received(address,address,uint256,uint256,bytes)", returns=("bytes4",))
    def on_erc1155_received(
        self, ctx: CallContext, operator: str, sender: str, token_id: int, value: int, data: bytes
    ) -> bytes:
        return function_selector("onERC1155Received(address,address,uint256,uint256,bytes)")

    @external("onERC1155BatchReceived(address,address,uint256[],uint256[],bytes)", returns=("bytes4",))
    def on_erc1155_batch_received(
        self,
        ctx: CallContext,
        operator: str,
        sender: str,
        token_ids: Sequence[int],
        values: Sequence[int],
        data: bytes,
    ) -> bytes:
        return function_selector("onERC1155BatchReceived(address,address,uint256[],uint256[],bytes)")

    @external("supportsInterface(bytes4)", returns=("bool",))
    def supports_interface(self, ctx: CallContext, interface: bytes) -> bool:
        return interface in (
            ERC165_INTERFACE_ID,
            IERC1271_INTERFACE_ID,
            IERC721_RECEIVER_INTERFACE_ID,
            IERC1155_RECEIVER_INTERFACE_ID,
        )


# ==================== Single Owner ====================

_SMART_ACCOUNT_OWNER_SLOT = erc7201_slot("aawallet.storage.SmartAccount")


class SmartAccount(BaseSmartAccount):
    """
    Account controlled by a single owner.

    The owner may be an EOA (tag 0x00) or a contract implementing ERC-1271
    (tag 0x01). Ownership can be transferred by any authorized caller.
    """

    # The owner argument only binds the creation address; ``initialize`` stores it
    CONSTRUCTOR_TYPES = ("address", "address")
    DOMAIN_NAME = config.SINGLE_OWNER_DOMAIN_NAME

    def constructor(self, ctx: CallContext, owner: str, entry_point: str) -> None:
        self.entry_point = entry_point

    @external("initialize(address)")
    def initialize(self, ctx: CallContext, owner: str) -> None:
        self._initialize_once(ctx)

        self._set_owner(ctx, owner)
        ctx.emit("SmartAccountInitialized", entryPoint=self.entry_point, owner=owner)
        logger.info(
            "Smart account initialized",
            extra={"event": "account.initialized", "account": ctx.address, "owner": owner},
        )

    @external("owner()", returns=("address",))
    def owner(self, ctx: CallContext) -> str:
        return ctx.sload_address(_SMART_ACCOUNT_OWNER_SLOT)

    @external("transferOwnership(address)")
    def transfer_ownership(self, ctx: CallContext, new_owner: str) -> None:
        self._require_authorized(ctx)
        if new_owner == self.owner(ctx):
            raise InvalidOwner(new_owner)
        self._set_owner(ctx, new_owner)

    def _set_owner(self, ctx: CallContext, new_owner: str) -> None:
        if is_zero_address(new_owner) or new_owner == ctx.address:
            raise InvalidOwner(new_owner)
        previous_owner = self.owner(ctx)
        ctx.sstore_address(_SMART_ACCOUNT_OWNER_SLOT, new_owner)
        ctx.emit("OwnershipTransferred", previousOwner=previous_owner, newOwner=new_owner)

    def _is_owner(self, ctx: CallContext, account: str) -> bool:
        return account == self.owner(ctx)

    def _is_valid_contract_signature(
        self, ctx: CallContext, signature_type: int, digest: bytes, payload: bytes
    ) -> bool:
        if signature_type != SignatureType.CONTRACT:
            raise InvalidSignatureType()
        return is_valid_erc1271_signature(ctx, self.owner(ctx), digest, payload)


# ==================== Multiple Owners ====================

_MULTI_OWNER_ROOT = erc7201_slot("aawallet.storage.MultiOwnerSmartAccount")
_MULTI_OWNER_MEMBERS_SLOT = _MULTI_OWNER_ROOT
_MULTI_OWNER_LIST_SLOT = _MULTI_OWNER_ROOT + 1


class MultiOwnerSmartAccount(BaseSmartAccount):
    """
    Account controlled by a set of owners, each of whom may act alone.

    Contract owners sign with tag 0x02 and name themselves in the first 20
    bytes of the payload; the single-owner tag 0x01 is not accepted.
    """

    CONSTRUCTOR_TYPES = ("address[]", "address")
    DOMAIN_NAME = config.MULTI_OWNER_DOMAIN_NAME

    def constructor(self, ctx: CallContext, owners: Sequence[str], entry_point: str) -> None:
        self.entry_point = entry_point

    @external("initialize(address[])")
    def initialize(self, ctx: CallContext, owners: Sequence[str]) -> None:
        self._initialize_once(ctx)

        if not owners:
            raise OwnersArrayEmpty()
        previous = 0
        for owner in owners:
            self._add_owner(ctx, owner)
            # Owners are stored strictly ascending
            if int(owner, 16) <= previous:
                raise InvalidOwners()
            previous = int(owner, 16)

        ctx.emit("MultiOwnerSmartAccountInitialized", entryPoint=self.entry_point, owners=list(owners))
        ctx.emit("OwnersUpdated", addedOwners=list(owners), removedOwners=[])
        logger.info(
            "Multi-owner account initialized",
            extra={"event": "account.initialized", "account": ctx.address, "owners": len(owners)},
        )

    def _add_owner(self, ctx: CallContext, owner: str) -> None:
        if is_zero_address(owner) or owner == ctx.address or self._is_owner(ctx, owner):
            raise InvalidOwner(owner)
        ctx.sstore(mapping_slot(owner, _MULTI_OWNER_MEMBERS_SLOT), 1)
        count = ctx.sload(_MULTI_OWNER_LIST_SLOT)
        ctx.sstore_address(array_slot(_MULTI_OWNER_LIST_SLOT, count), owner)
        ctx.sstore(_MULTI_OWNER_LIST_SLOT, count + 1)

    @external("owners()", returns=("address[]",))
    def owners(self, ctx: CallContext) -> List[str]:
        count = ctx.sload(_MULTI_OWNER_LIST_SLOT)
        return [ctx.sload_address(array_slot(_MULTI_OWNER_LIST_SLOT, i)) for i in range(count)]

    def _is_owner(self, ctx: CallContext, account: str) -> bool:
        return ctx.sload(mapping_slot(account, _MULTI_OWNER_MEMBERS_SLOT)) == 1

    def _is_valid_contract_signature(
        self, ctx: CallContext, signature_type: int, digest: bytes, payload: bytes
    ) -> bool:
        if signature_type != SignatureType.CONTRACT_WITH_ADDR:
            raise InvalidSignatureType()
        if len(payload) < 20:
            raise InvalidSignatureType()
        claimed_owner = to_checksum_address(payload[:20])
        if not self._is_owner(ctx, claimed_owner):
            return False
        return is_valid_erc1271_signature(ctx, claimed_owner, digest, payload[20:])


# ==================== Client Helpers ====================


def eoa_signature(raw_signature: bytes) -> bytes:
    """Tag a 65-byte ECDSA signature for an EOA owner."""
    return bytes([SignatureType.EOA]) + raw_signature


def contract_signature(payload: bytes) -> bytes:
    """Tag an ERC-1271 payload for the single owner contract."""
    return bytes([SignatureType.CONTRACT]) + payload


def contract_signature_with_address(owner: str, payload: bytes) -> bytes:
    """Tag an ERC-1271 payload for a named owner of a multi-owner account."""
    return bytes([SignatureType.CONTRACT_WITH_ADDR]) + bytes.fromhex(owner[2:]) + payload
