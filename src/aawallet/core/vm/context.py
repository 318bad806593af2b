"""
Execution contexts for contract calls.

``BlockContext`` carries chain-level values, ``CallContext`` is the frame a
contract method receives: who called, with how much value, and whose storage
the code operates on. Contract code reaches the host exclusively through the
helpers on ``CallContext``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from .abi import address_to_int, encode_call, int_to_address, unpack_result
from .exceptions import StaticCallViolation

if TYPE_CHECKING:
    from .executor import ContractExecutor


class CallType(Enum):
    CALL = "call"
    STATICCALL = "staticcall"
    DELEGATECALL = "delegatecall"
    CREATE = "create"
    CREATE2 = "create2"


@dataclass
class BlockContext:
    """Chain-level values visible to every call in a block."""
    number: int
    timestamp: int
    chain_id: int
    gas_limit: int = 30_000_000
    coinbase: str = "0x0000000000000000000000000000000000000000"


@dataclass
class Log:
    """Event emitted by a contract."""
    address: str
    event: str
    args: Dict[str, Any]


@dataclass
class CallContext:
    """
    A single call frame.

    ``address`` is the account whose storage and balance the running code
    uses. For a delegate call it is the caller's address while ``code_address``
    points at the logic actually executing.
    """

    call_type: CallType
    depth: int
    address: str
    caller: str
    origin: str
    value: int
    executor: "ContractExecutor" = field(repr=False)
    code_address: Optional[str] = None
    static: bool = False

    # ==================== Chain ====================

    @property
    def chain_id(self) -> int:
        return self.executor.block.chain_id

    @property
    def timestamp(self) -> int:
        return self.executor.block.timestamp

    # ==================== Storage ====================

    def sload(self, slot: int) -> int:
        return self.executor.state.get_storage(self.address, slot)

    def sstore(self, slot: int, value: int) -> None:
        self._require_mutable("SSTORE")
        self.executor.state.set_storage(self.address, slot, value)

    def sload_address(self, slot: int) -> str:
        return int_to_address(self.sload(slot))

    def sstore_address(self, slot: int, address: str) -> None:
        self.sstore(slot, address_to_int(address))

    def emit(self, event: str, **args: Any) -> None:
        self._require_mutable("LOG")
        self.executor.record_log(Log(address=self.address, event=event, args=args))

    # ==================== Accounts ====================

    def balance(self, address: Optional[str] = None) -> int:
        return self.executor.state.get_balance(address or self.address)

    def code_exists(self, address: str) -> bool:
        return self.executor.state.has_code(address)

    # ==================== Calls ====================

    def call(self, to: str, value: int = 0, data: bytes = b"") -> bytes:
        if value:
            self._require_mutable("CALL with value")
        return self.executor.call(
            self.address, to, value, data,
            origin=self.origin, depth=self.depth + 1, static=self.static,
        )

    def static_call(self, to: str, data: bytes = b"") -> bytes:
        return self.executor.static_call(
            self.address, to, data, origin=self.origin, depth=self.depth + 1,
        )

    def delegate_call(self, code_address: str, data: bytes) -> bytes:
        return self.executor.delegate_call(self, code_address, data)

    def invoke(
        self,
        to: str,
        signature: str,
        *args: Any,
        value: int = 0,
        returns: Sequence[str] = (),
    ) -> Any:
        """
        Typed call: encode ``signature`` with ``args``, require code at ``to``
        and decode the result with ``returns``.
        """
        self.executor.require_code(to)
        raw = self.call(to, value, encode_call(signature, *args))
        return unpack_result(returns, raw)

    def view(self, to: str, signature: str, *args: Any, returns: Sequence[str] = ()) -> Any:
        self.executor.require_code(to)
        raw = self.static_call(to, encode_call(signature, *args))
        return unpack_result(returns, raw)

    def create(self, value: int, init_code: bytes) -> str:
        self._require_mutable("CREATE")
        return self.executor.create(
            self.address, init_code, value, origin=self.origin, depth=self.depth + 1,
        )

    def create2(self, value: int, init_code: bytes, salt: int | bytes) -> str:
        self._require_mutable("CREATE2")
        return self.executor.create2(
            self.address, init_code, salt, value, origin=self.origin, depth=self.depth + 1,
        )

    def _require_mutable(self, operation: str) -> None:
        if self.static:
            raise StaticCallViolation(f"{operation} not allowed in static context")

