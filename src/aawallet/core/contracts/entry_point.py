"""
ERC-4337 EntryPoint (v0.6 semantics).

The singleton contract that:
- Receives UserOperations from bundlers
- Deploys senders from ``initCode``
- Validates operations through the account's ``validateUserOp``
- Enforces 2-D nonces
- Executes operations and records their outcome
- Manages account deposits and stakes

Gas is not metered. The prefund an operation must cover is its declared gas
limits times ``maxFeePerGas``; that amount is charged in full and paid to the
beneficiary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, NamedTuple, Sequence, Tuple

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from ..structured_logger import LogContext
from ..vm.abi import (
    ERC165_INTERFACE_ID,
    ZERO_ADDRESS,
    decode_address,
    interface_id,
    is_zero_address,
)
from ..vm.context import CallContext
from ..vm.contract import Contract, external
from ..vm.exceptions import ContractError, FailedOp, RevertError, VMExecutionError
from ..vm.interpreter_helpers import erc7201_slot, mapping_slot

logger = logging.getLogger(__name__)

# Validation data
SIG_VALIDATION_SUCCESS = 0
SIG_VALIDATION_FAILED = 1

_UINT48_MAX = (1 << 48) - 1
_UINT112_MAX = (1 << 112) - 1
_NONCE_SEQUENCE_MASK = (1 << 64) - 1

USER_OPERATION_TYPE = (
    "(address,uint256,bytes,bytes,uint256,uint256,uint256,uint256,uint256,bytes,bytes)"
)
DEPOSIT_INFO_TYPE = "(uint256,bool,uint112,uint32,uint48)"

ENTRY_POINT_FUNCTIONS = (
    f"handleOps({USER_OPERATION_TYPE}[],address)",
    f"getUserOpHash({USER_OPERATION_TYPE})",
    "getSenderAddress(bytes)",
)
STAKE_MANAGER_FUNCTIONS = (
    "getDepositInfo(address)",
    "balanceOf(address)",
    "depositTo(address)",
    "addStake(uint32)",
    "unlockStake()",
    "withdrawStake(address)",
    "withdrawTo(address,uint256)",
)
NONCE_MANAGER_FUNCTIONS = (
    "getNonce(address,uint192)",
    "incrementNonce(uint192)",
)

IENTRY_POINT_INTERFACE_ID = interface_id(ENTRY_POINT_FUNCTIONS)
ISTAKE_MANAGER_INTERFACE_ID = interface_id(STAKE_MANAGER_FUNCTIONS)
INONCE_MANAGER_INTERFACE_ID = interface_id(NONCE_MANAGER_FUNCTIONS)

# Storage roots
_DEPOSITS_ROOT = erc7201_slot("aawallet.storage.StakeManager")
_NONCES_ROOT = erc7201_slot("aawallet.storage.NonceManager")
_REENTRANCY_SLOT = erc7201_slot("aawallet.storage.ReentrancyGuard")


class SenderAddressResult(ContractError):
    """Carrier revert of ``getSenderAddress``."""

    signature = "SenderAddressResult(address)"


@dataclass
class UserOperation:
    """
    ERC-4337 UserOperation struct.

    Represents a user's intent to execute a transaction.
    This is what users sign instead of regular transactions.
    """

    sender: str  # Smart account address
    nonce: int  # key << 64 | sequence
    init_code: bytes = b""  # factory address ++ factory calldata
    call_data: bytes = b""  # What the entry point calls the account with
    call_gas_limit: int = 200_000
    verification_gas_limit: int = 100_000
    pre_verification_gas: int = 50_000
    max_fee_per_gas: int = 1_000_000_000  # 1 Gwei
    max_priority_fee_per_gas: int = 1_000_000_000
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    def pack(self) -> bytes:
        """ABI-encode all fields except the signature, dynamic fields hashed."""
        return encode(
            [
                "address", "uint256", "bytes32", "bytes32", "uint256",
                "uint256", "uint256", "uint256", "uint256", "bytes32",
            ],
            [
                self.sender,
                self.nonce,
                keccak(self.init_code),
                keccak(self.call_data),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                keccak(self.paymaster_and_data),
            ],
        )

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        """
        Get UserOp hash for signing.

        Args:
            entry_point: EntryPoint contract address
            chain_id: Chain ID for replay protection

        Returns:
            keccak256(abi.encode(keccak256(pack()), entryPoint, chainId))
        """
        return keccak(
            encode(
                ["bytes32", "address", "uint256"],
                [keccak(self.pack()), entry_point, chain_id],
            )
        )

    def required_prefund(self) -> int:
        required_gas = (
            self.call_gas_limit + self.verification_gas_limit + self.pre_verification_gas
        )
        return required_gas * self.max_fee_per_gas

    def to_tuple(self) -> Tuple[Any, ...]:
        return (
            self.sender,
            self.nonce,
            self.init_code,
            self.call_data,
            self.call_gas_limit,
            self.verification_gas_limit,
            self.pre_verification_gas,
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
            self.paymaster_and_data,
            self.signature,
        )

    @classmethod
    def from_tuple(cls, values: Sequence[Any]) -> "UserOperation":
        return cls(*values)


class ValidationData(NamedTuple):
    # 0 valid signature, 1 signature failure, otherwise an aggregator address
    aggregator: int
    valid_after: int
    valid_until: int


def pack_validation_data(sig_failed: bool, valid_until: int = 0, valid_after: int = 0) -> int:
    """``sigFailed | validUntil << 160 | validAfter << 208``."""
    return (
        (SIG_VALIDATION_FAILED if sig_failed else SIG_VALIDATION_SUCCESS)
        | (valid_until << 160)
        | (valid_after << 208)
    )


def parse_validation_data(validation_data: int) -> ValidationData:
    aggregator = validation_data & ((1 << 160) - 1)
    valid_until = (validation_data >> 160) & _UINT48_MAX
    if valid_until == 0:
        valid_until = _UINT48_MAX
    valid_after = (validation_data >> 208) & _UINT48_MAX
    return ValidationData(aggregator, valid_after, valid_until)


class EntryPoint(Contract):
    """
    ERC-4337 EntryPoint contract.

    Operations in a batch are all validated before any is executed. A
    validation failure reverts the whole batch with ``FailedOp``; an
    execution failure is recorded in events and the batch continues.
    """

    ACCEPTS_VALUE = True

    def receive(self, ctx: CallContext) -> None:
        self._increment_deposit(ctx, ctx.caller, ctx.value)

    # ==================== Main Entry Point ====================

    @external(f"handleOps({USER_OPERATION_TYPE}[],address)")
    def handle_ops(self, ctx: CallContext, ops: Sequence[Tuple[Any, ...]], beneficiary: str) -> None:
        """
        Handle a batch of UserOperations.

        Args:
            ops: UserOperation tuples
            beneficiary: Address receiving the collected prefunds
        """
        if ctx.sload(_REENTRANCY_SLOT):
            raise RevertError("ReentrancyGuard: reentrant call")
        ctx.sstore(_REENTRANCY_SLOT, 1)

        user_ops = [UserOperation.from_tuple(op) for op in ops]
        validated: List[Tuple[bytes, int]] = []
        for index, op in enumerate(user_ops):
            op_hash = self._get_user_op_hash(ctx, op)
            with LogContext(op_hash):
                validated.append((op_hash, self._validate_prepayment(ctx, index, op, op_hash)))

        ctx.emit("BeforeExecution")

        collected = 0
        for op, (op_hash, prefund) in zip(user_ops, validated):
            with LogContext(op_hash):
                collected += self._execute_user_op(ctx, op, op_hash, prefund)

        self._compensate(ctx, beneficiary, collected)
        ctx.sstore(_REENTRANCY_SLOT, 0)

        logger.info(
            "Bundle processed",
            extra={
                "event": "entrypoint.bundle_processed",
                "ops": len(user_ops),
                "beneficiary": beneficiary,
                "collected": collected,
            },
        )

    def _validate_prepayment(self, ctx: CallContext, index: int, op: UserOperation, op_hash: bytes) -> int:
        if op.paymaster_and_data:
            raise FailedOp(index, "AA30 paymaster not supported")

        self._create_sender_if_needed(ctx, index, op, op_hash)

        required_prefund = op.required_prefund()
        deposit = self._deposit_of(ctx, op.sender)
        missing_funds = max(0, required_prefund - deposit)

        try:
            validation_data = ctx.invoke(
                op.sender,
                f"validateUserOp({USER_OPERATION_TYPE},bytes32,uint256)",
                op.to_tuple(),
                op_hash,
                missing_funds,
                returns=("uint256",),
            )
        except VMExecutionError as e:
            logger.warning(
                "Account validation reverted",
                extra={"event": "entrypoint.validation_reverted", "sender": op.sender, "error": str(e)},
            )
            raise FailedOp(index, "AA23 reverted") from e

        deposit = self._deposit_of(ctx, op.sender)
        if deposit < required_prefund:
            raise FailedOp(index, "AA21 didn't pay prefund")
        self._set_deposit(ctx, op.sender, deposit - required_prefund)

        if not self._validate_and_update_nonce(ctx, op.sender, op.nonce):
            raise FailedOp(index, "AA25 invalid account nonce")

        validation = parse_validation_data(validation_data)
        if validation.aggregator != SIG_VALIDATION_SUCCESS:
            raise FailedOp(index, "AA24 signature error")
        if ctx.timestamp > validation.valid_until or ctx.timestamp < validation.valid_after:
            raise FailedOp(index, "AA22 expired or not due")

        logger.debug(
            "UserOp validated",
            extra={"event": "entrypoint.op_validated", "sender": op.sender, "nonce": op.nonce},
        )
        return required_prefund

    def _create_sender_if_needed(self, ctx: CallContext, index: int, op: UserOperation, op_hash: bytes) -> None:
        if not op.init_code:
            if not ctx.code_exists(op.sender):
                raise FailedOp(index, "AA20 account not deployed")
            return

        if ctx.code_exists(op.sender):
            raise FailedOp(index, "AA10 sender already constructed")

        sender = self._create_sender(ctx, op.init_code)
        if is_zero_address(sender):
            raise FailedOp(index, "AA13 initCode failed or OOG")
        if sender != op.sender:
            raise FailedOp(index, "AA14 initCode must return sender")
        if not ctx.code_exists(sender):
            raise FailedOp(index, "AA15 initCode must create sender")

        factory = to_checksum_address(op.init_code[:20])
        ctx.emit(
            "AccountDeployed",
            userOpHash=op_hash,
            sender=sender,
            factory=factory,
            paymaster=ZERO_ADDRESS,
        )
        logger.info(
            "Account deployed from initCode",
            extra={"event": "entrypoint.account_deployed", "sender": sender, "factory": factory},
        )

    def _create_sender(self, ctx: CallContext, init_code: bytes) -> str:
        """Call the factory named by ``init_code``; zero address on any failure."""
        if len(init_code) < 20:
            return ZERO_ADDRESS
        factory = to_checksum_address(init_code[:20])
        try:
            raw = ctx.call(factory, 0, init_code[20:])
        except VMExecutionError as e:
            logger.debug(
                "Factory call reverted",
                extra={"event": "entrypoint.factory_reverted", "factory": factory, "error": str(e)},
            )
            return ZERO_ADDRESS
        if len(raw) < 32:
            return ZERO_ADDRESS
        return decode_address(raw[:32])

    def _execute_user_op(self, ctx: CallContext, op: UserOperation, op_hash: bytes, prefund: int) -> int:
        success = True
        if op.call_data:
            try:
                ctx.call(op.sender, 0, op.call_data)
            except VMExecutionError as e:
                success = False
                ctx.emit(
                    "UserOperationRevertReason",
                    userOpHash=op_hash,
                    sender=op.sender,
                    nonce=op.nonce,
                    revertReason=e.data,
                )
                logger.warning(
                    "UserOp execution failed",
                    extra={
                        "event": "entrypoint.op_reverted",
                        "sender": op.sender,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

        ctx.emit(
            "UserOperationEvent",
            userOpHash=op_hash,
            sender=op.sender,
            paymaster=ZERO_ADDRESS,
            nonce=op.nonce,
            success=success,
            actualGasCost=prefund,
            actualGasUsed=prefund // op.max_fee_per_gas if op.max_fee_per_gas else 0,
        )
        logger.info(
            "UserOp processed",
            extra={"event": "entrypoint.op_processed", "sender": op.sender, "success": success},
        )
        return prefund

    def _compensate(self, ctx: CallContext, beneficiary: str, amount: int) -> None:
        if is_zero_address(beneficiary):
            raise RevertError("AA90 invalid beneficiary")
        if amount == 0:
            return
        try:
            ctx.call(beneficiary, amount)
        except VMExecutionError as e:
            raise RevertError("AA91 failed send to beneficiary") from e

    @external(f"getUserOpHash({USER_OPERATION_TYPE})", returns=("bytes32",))
    def get_user_op_hash(self, ctx: CallContext, op: Tuple[Any, ...]) -> bytes:
        return self._get_user_op_hash(ctx, UserOperation.from_tuple(op))

    def _get_user_op_hash(self, ctx: CallContext, op: UserOperation) -> bytes:
        return op.hash(ctx.address, ctx.chain_id)

    @external("getSenderAddress(bytes)")
    def get_sender_address(self, ctx: CallContext, init_code: bytes) -> None:
        """Run ``init_code`` and revert with ``SenderAddressResult(sender)``, undoing the deployment."""
        raise SenderAddressResult(self._create_sender(ctx, init_code))

    # ==================== Nonces ====================

    @staticmethod
    def _nonce_slot(sender: str, key: int) -> int:
        return mapping_slot(key, mapping_slot(sender, _NONCES_ROOT), key_type="uint192")

    @external("getNonce(address,uint192)", returns=("uint256",))
    def get_nonce(self, ctx: CallContext, sender: str, key: int) -> int:
        return ctx.sload(self._nonce_slot(sender, key)) | (key << 64)

    @external("incrementNonce(uint192)")
    def increment_nonce(self, ctx: CallContext, key: int) -> None:
        slot = self._nonce_slot(ctx.caller, key)
        ctx.sstore(slot, ctx.sload(slot) + 1)

    def _validate_and_update_nonce(self, ctx: CallContext, sender: str, nonce: int) -> bool:
        key = nonce >> 64
        sequence = nonce & _NONCE_SEQUENCE_MASK
        slot = self._nonce_slot(sender, key)
        current = ctx.sload(slot)
        ctx.sstore(slot, current + 1)
        return current == sequence

    # ==================== Deposits ====================

    @staticmethod
    def _info_slot(account: str) -> int:
        # deposit, staked, stake, unstakeDelaySec, withdrawTime at consecutive slots
        return mapping_slot(account, _DEPOSITS_ROOT)

    def _deposit_of(self, ctx: CallContext, account: str) -> int:
        return ctx.sload(self._info_slot(account))

    def _set_deposit(self, ctx: CallContext, account: str, amount: int) -> None:
        ctx.sstore(self._info_slot(account), amount)

    def _increment_deposit(self, ctx: CallContext, account: str, amount: int) -> None:
        total = self._deposit_of(ctx, account) + amount
        self._set_deposit(ctx, account, total)
        ctx.emit("Deposited", account=account, totalDeposit=total)

    @external("depositTo(address)", payable=True)
    def deposit_to(self, ctx: CallContext, account: str) -> None:
        self._increment_deposit(ctx, account, ctx.value)

    @external("balanceOf(address)", returns=("uint256",))
    def balance_of(self, ctx: CallContext, account: str) -> int:
        return self._deposit_of(ctx, account)

    @external("withdrawTo(address,uint256)")
    def withdraw_to(self, ctx: CallContext, withdraw_address: str, amount: int) -> None:
        deposit = self._deposit_of(ctx, ctx.caller)
        if amount > deposit:
            raise RevertError("Withdraw amount too large")
        self._set_deposit(ctx, ctx.caller, deposit - amount)
        ctx.emit("Withdrawn", account=ctx.caller, withdrawAddress=withdraw_address, amount=amount)
        try:
            ctx.call(withdraw_address, amount)
        except VMExecutionError as e:
            raise RevertError("failed to withdraw") from e

    # ==================== Stakes ====================

    @external("getDepositInfo(address)", returns=(DEPOSIT_INFO_TYPE,))
    def get_deposit_info(self, ctx: CallContext, account: str) -> Tuple[int, bool, int, int, int]:
        base = self._info_slot(account)
        return (
            ctx.sload(base),
            bool(ctx.sload(base + 1)),
            ctx.sload(base + 2),
            ctx.sload(base + 3),
            ctx.sload(base + 4),
        )

    @external("addStake(uint32)", payable=True)
    def add_stake(self, ctx: CallContext, unstake_delay_sec: int) -> None:
        base = self._info_slot(ctx.caller)
        if unstake_delay_sec == 0:
            raise RevertError("must specify unstake delay")
        if unstake_delay_sec < ctx.sload(base + 3):
            raise RevertError("cannot decrease unstake time")
        stake = ctx.sload(base + 2) + ctx.value
        if stake == 0:
            raise RevertError("no stake specified")
        if stake > _UINT112_MAX:
            raise RevertError("stake overflow")

        ctx.sstore(base + 1, 1)
        ctx.sstore(base + 2, stake)
        ctx.sstore(base + 3, unstake_delay_sec)
        ctx.sstore(base + 4, 0)
        ctx.emit("StakeLocked", account=ctx.caller, totalStaked=stake, unstakeDelaySec=unstake_delay_sec)

    @external("unlockStake()")
    def unlock_stake(self, ctx: CallContext) -> None:
        base = self._info_slot(ctx.caller)
        unstake_delay_sec = ctx.sload(base + 3)
        if unstake_delay_sec == 0:
            raise RevertError("not staked")
        if not ctx.sload(base + 1):
            raise RevertError("already unstaking")
        withdraw_time = ctx.timestamp + unstake_delay_sec
        ctx.sstore(base + 1, 0)
        ctx.sstore(base + 4, withdraw_time)
        ctx.emit("StakeUnlocked", account=ctx.caller, withdrawTime=withdraw_time)

    @external("withdrawStake(address)")
    def withdraw_stake(self, ctx: CallContext, withdraw_address: str) -> None:
        base = self._info_slot(ctx.caller)
        stake = ctx.sload(base + 2)
        withdraw_time = ctx.sload(base + 4)
        if stake == 0:
            raise RevertError("No stake to withdraw")
        if withdraw_time == 0:
            raise RevertError("must call unlockStake() first")
        if withdraw_time > ctx.timestamp:
            raise RevertError("Stake withdrawal is not due")

        ctx.sstore(base + 2, 0)
        ctx.sstore(base + 3, 0)
        ctx.sstore(base + 4, 0)
        ctx.emit("StakeWithdrawn", account=ctx.caller, withdrawAddress=withdraw_address, amount=stake)
        try:
            ctx.call(withdraw_address, stake)
        except VMExecutionError as e:
            raise RevertError("failed to withdraw stake") from e

    # ==================== ERC-165 ====================

    @external("supportsInterface(bytes4)", returns=("bool",))
    def supports_interface(self, ctx: CallContext, interface: bytes) -> bool:
        combined = bytes(
            a ^ b ^ c
            for a, b, c in zip(
                IENTRY_POINT_INTERFACE_ID,
                ISTAKE_MANAGER_INTERFACE_ID,
                INONCE_MANAGER_INTERFACE_ID,
            )
        )
        return interface in (
            combined,
            IENTRY_POINT_INTERFACE_ID,
            ISTAKE_MANAGER_INTERFACE_ID,
            INONCE_MANAGER_INTERFACE_ID,
            ERC165_INTERFACE_ID,
        )
