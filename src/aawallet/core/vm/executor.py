"""
Contract executor.

Runs message calls, delegate calls and contract creation against a
``WorldState``. Each frame is atomic: the state and the event log are
snapshotted on entry and restored if the frame raises, after which the same
exception propagates to the caller unchanged.

Code resolution honours the EIP-1967 implementation slot: when an account has
written a non-zero implementation address that holds code, calls to the
account run that implementation against the account's own storage. Writing
the slot is therefore the whole upgrade.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Tuple, Type

from eth_utils import keccak

from .. import config
from .abi import ZERO_ADDRESS, encode_call, int_to_address, normalize_address, unpack_result
from .context import BlockContext, CallContext, CallType, Log
from .contract import Contract, resolve_init_code
from .exceptions import (
    CallToNonContractError,
    ContractCreationError,
    InsufficientBalanceError,
    StaticCallViolation,
    VMExecutionError,
)
from .interpreter_helpers import (
    EIP1967_IMPLEMENTATION_SLOT,
    compute_create2_address,
    compute_create_address,
)
from .state import WorldState

logger = logging.getLogger(__name__)


class ContractExecutor:
    """In-process execution host for ``Contract`` classes."""

    def __init__(
        self,
        block: Optional[BlockContext] = None,
        state: Optional[WorldState] = None,
    ) -> None:
        self.block = block or BlockContext(
            number=1,
            timestamp=config.GENESIS_TIMESTAMP,
            chain_id=config.CHAIN_ID,
            gas_limit=config.BLOCK_GAS_LIMIT,
        )
        self.state = state or WorldState()
        self.logs: List[Log] = []

    # ==================== Snapshots ====================

    def _snapshot(self) -> Tuple[Any, int]:
        return self.state.snapshot(), len(self.logs)

    def _restore(self, snapshot: Tuple[Any, int]) -> None:
        state, log_count = snapshot
        self.state.restore(state)
        del self.logs[log_count:]

    def record_log(self, log: Log) -> None:
        self.logs.append(log)

    def events(self, event: Optional[str] = None, address: Optional[str] = None) -> List[Log]:
        """Emitted logs, optionally filtered by event name and emitter."""
        emitter = normalize_address(address) if address else None
        return [
            log for log in self.logs
            if (event is None or log.event == event)
            and (emitter is None or log.address == emitter)
        ]

    # ==================== Chain Helpers ====================

    def fund(self, address: str, amount: int) -> None:
        self.state.set_balance(address, self.state.get_balance(address) + amount)

    def get_balance(self, address: str) -> int:
        return self.state.get_balance(address)

    def warp(self, seconds: int) -> None:
        """Advance the block timestamp and number."""
        self.block.timestamp += seconds
        self.block.number += 1

    def resolve_code(self, address: str) -> Optional[Contract]:
        code = self.state.get_code(address)
        if code is None:
            return None
        implementation = self.state.get_storage(address, EIP1967_IMPLEMENTATION_SLOT)
        if implementation:
            logic = self.state.get_code(int_to_address(implementation))
            if logic is not None:
                return logic
        return code

    def require_code(self, address: str) -> None:
        if not self.state.has_code(address):
            raise CallToNonContractError(f"Call to non-contract address {address}")

    def _transfer(self, sender: str, to: str, value: int) -> None:
        if value == 0:
            return
        balance = self.state.get_balance(sender)
        if balance < value:
            raise InsufficientBalanceError(
                f"Insufficient balance: {sender} has {balance}, needs {value}"
            )
        self.state.set_balance(sender, balance - value)
        self.state.set_balance(to, self.state.get_balance(to) + value)

    # ==================== Message Calls ====================

    def call(
        self,
        caller: str,
        to: str,
        value: int = 0,
        data: bytes = b"",
        *,
        origin: Optional[str] = None,
        depth: int = 0,
        static: bool = False,
    ) -> bytes:
        """Message call from ``caller`` to ``to``. Returns the ABI-encoded result."""
        caller = normalize_address(caller)
        to = normalize_address(to)
        if depth > config.MAX_CALL_DEPTH:
            raise VMExecutionError("Max call depth exceeded")
        if static and value:
            raise StaticCallViolation("Value transfer not allowed in static context")

        snapshot = self._snapshot()
        try:
            self._transfer(caller, to, value)
            code = self.resolve_code(to)
            if code is None:
                return b""
            ctx = CallContext(
                call_type=CallType.STATICCALL if static else CallType.CALL,
                depth=depth,
                address=to,
                caller=caller,
                origin=normalize_address(origin) if origin else caller,
                value=value,
                executor=self,
                code_address=code.address,
                static=static,
            )
            return code.handle(ctx, data)
        except Exception:
            self._restore(snapshot)
            raise

    def static_call(
        self,
        caller: str,
        to: str,
        data: bytes = b"",
        *,
        origin: Optional[str] = None,
        depth: int = 0,
    ) -> bytes:
        return self.call(caller, to, 0, data, origin=origin, depth=depth, static=True)

    def delegate_call(self, ctx: CallContext, code_address: str, data: bytes) -> bytes:
        """Run the code deployed at ``code_address`` in the frame of ``ctx``."""
        code = self.state.get_code(code_address)
        if code is None:
            return b""
        if ctx.depth + 1 > config.MAX_CALL_DEPTH:
            raise VMExecutionError("Max call depth exceeded")

        snapshot = self._snapshot()
        try:
            frame = CallContext(
                call_type=CallType.DELEGATECALL,
                depth=ctx.depth + 1,
                address=ctx.address,
                caller=ctx.caller,
                origin=ctx.origin,
                value=ctx.value,
                executor=self,
                code_address=normalize_address(code_address),
                static=ctx.static,
            )
            return code.handle(frame, data)
        except Exception:
            self._restore(snapshot)
            raise

    # ==================== Creation ====================

    def create(
        self,
        deployer: str,
        init_code: bytes,
        value: int = 0,
        *,
        origin: Optional[str] = None,
        depth: int = 0,
        raise_on_failure: bool = False,
    ) -> str:
        """CREATE. Returns the new address, or the zero address on failure."""
        deployer = normalize_address(deployer)
        address = compute_create_address(deployer, self.state.get_nonce(deployer))
        self.state.increment_nonce(deployer)
        return self._create_at(
            CallType.CREATE, deployer, address, init_code, value,
            origin=origin, depth=depth, raise_on_failure=raise_on_failure,
        )

    def create2(
        self,
        deployer: str,
        init_code: bytes,
        salt: int | bytes,
        value: int = 0,
        *,
        origin: Optional[str] = None,
        depth: int = 0,
        raise_on_failure: bool = False,
    ) -> str:
        """CREATE2. Returns the new address, or the zero address on failure."""
        deployer = normalize_address(deployer)
        address = compute_create2_address(deployer, salt, keccak(init_code))
        self.state.increment_nonce(deployer)
        return self._create_at(
            CallType.CREATE2, deployer, address, init_code, value,
            origin=origin, depth=depth, raise_on_failure=raise_on_failure,
        )

    def _create_at(
        self,
        call_type: CallType,
        deployer: str,
        address: str,
        init_code: bytes,
        value: int,
        *,
        origin: Optional[str],
        depth: int,
        raise_on_failure: bool,
    ) -> str:
        if not self.state.is_fresh(address):
            logger.debug(
                "Contract creation collided with existing account",
                extra={"event": "vm.create_collision", "address": address},
            )
            if raise_on_failure:
                raise ContractCreationError(f"Address {address} already in use")
            return ZERO_ADDRESS

        snapshot = self._snapshot()
        try:
            cls, args = resolve_init_code(init_code)
            self.state.set_nonce(address, 1)
            self._transfer(deployer, address, value)
            instance = cls(address)
            ctx = CallContext(
                call_type=call_type,
                depth=depth,
                address=address,
                caller=deployer,
                origin=normalize_address(origin) if origin else deployer,
                value=value,
                executor=self,
                code_address=address,
            )
            instance.constructor(ctx, *args)
            self.state.set_code(address, instance)
        except VMExecutionError as e:
            self._restore(snapshot)
            logger.debug(
                "Contract creation failed",
                extra={
                    "event": "vm.create_failed",
                    "deployer": deployer,
                    "address": address,
                    "error": str(e),
                },
            )
            if raise_on_failure:
                raise
            return ZERO_ADDRESS
        except Exception:
            self._restore(snapshot)
            raise

        logger.debug(
            "Contract created",
            extra={
                "event": "vm.contract_created",
                "contract": cls.__name__,
                "address": address,
                "deployer": deployer,
            },
        )
        return address

    # ==================== Transactions ====================

    def transact(self, sender: str, to: str, data: bytes = b"", value: int = 0) -> bytes:
        """Top-level transaction from an externally owned account."""
        self.state.increment_nonce(sender)
        return self.call(sender, to, value, data, origin=sender)

    def deploy(self, deployer: str, contract_cls: Type[Contract], *args: Any, value: int = 0) -> str:
        """Deployment transaction; raises the constructor's error on failure."""
        return self.create(
            deployer, contract_cls.init_code(*args), value,
            origin=deployer, raise_on_failure=True,
        )

    def invoke(
        self,
        sender: str,
        to: str,
        signature: str,
        *args: Any,
        value: int = 0,
        returns: Sequence[str] = (),
    ) -> Any:
        """Typed transaction: encode the call, send it and decode the result."""
        self.require_code(to)
        raw = self.transact(sender, to, encode_call(signature, *args), value)
        return unpack_result(returns, raw)

    def view(
        self,
        to: str,
        signature: str,
        *args: Any,
        returns: Sequence[str] = (),
        caller: str = ZERO_ADDRESS,
    ) -> Any:
        """Read-only typed call."""
        self.require_code(to)
        raw = self.static_call(caller, to, encode_call(signature, *args))
        return unpack_result(returns, raw)

