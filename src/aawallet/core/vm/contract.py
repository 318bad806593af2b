"""
Contract base class and ABI dispatch.

A contract is a Python class whose externally callable methods are marked
with ``@external``. Each method receives the ``CallContext`` of the current
frame followed by the ABI-decoded arguments. All mutable state lives in the
world state (``ctx.sload``/``ctx.sstore``); instance attributes are limited to
immutables assigned in ``constructor``.

Every subclass gets a pseudo bytecode derived from its qualified name and is
registered in ``ARTIFACTS`` so creation code (bytecode + ABI-encoded
constructor arguments) can be turned back into a class and arguments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, ClassVar, Dict, Sequence, Tuple, Type

from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import keccak

from .abi import decode_args, encode_args, function_selector, parse_signature
from .context import CallContext
from .exceptions import (
    ContractCreationError,
    FunctionNotFoundError,
    NonPayableError,
    VMExecutionError,
)

logger = logging.getLogger(__name__)

# PUSH1 0x80 PUSH1 0x40 MSTORE, the usual creation code preamble
BYTECODE_PREFIX = bytes.fromhex("6080604052")
BYTECODE_LENGTH = len(BYTECODE_PREFIX) + 32

ARTIFACTS: Dict[bytes, Type["Contract"]] = {}


@dataclass(frozen=True)
class ExternalFunction:
    """ABI entry for an external contract function."""
    signature: str
    selector: bytes
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    payable: bool = False
    method_name: str = ""


def external(
    signature: str,
    returns: Sequence[str] = (),
    payable: bool = False,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Mark a method as an external function with the given ABI signature."""
    _, inputs = parse_signature(signature)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        func._external = ExternalFunction(  # type: ignore[attr-defined]
            signature=signature,
            selector=function_selector(signature),
            inputs=inputs,
            outputs=tuple(returns),
            payable=payable,
        )
        return func

    return decorator


class Contract:
    """Base class for contracts executed by ``ContractExecutor``."""

    CONSTRUCTOR_TYPES: ClassVar[Tuple[str, ...]] = ()
    # Accept plain value transfers (empty calldata)
    ACCEPTS_VALUE: ClassVar[bool] = False

    bytecode: ClassVar[bytes] = b""
    _abi: ClassVar[Dict[bytes, ExternalFunction]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        abi: Dict[bytes, ExternalFunction] = {}
        for klass in reversed(cls.__mro__):
            for name, attr in vars(klass).items():
                entry = getattr(attr, "_external", None)
                if isinstance(entry, ExternalFunction):
                    abi[entry.selector] = replace(entry, method_name=name)
        cls._abi = abi
        cls.bytecode = BYTECODE_PREFIX + keccak(text=f"{cls.__module__}.{cls.__qualname__}")
        ARTIFACTS[cls.bytecode] = cls

    def __init__(self, address: str) -> None:
        self.address = address

    def constructor(self, ctx: CallContext, *args: Any) -> None:
        """Run once at creation. Override to validate arguments and set immutables."""

    def receive(self, ctx: CallContext) -> None:
        """Handle a plain value transfer when ``ACCEPTS_VALUE`` is set."""

    # ==================== ABI ====================

    @classmethod
    def init_code(cls, *args: Any) -> bytes:
        return cls.bytecode + encode_args(cls.CONSTRUCTOR_TYPES, args)

    # ==================== Dispatch ====================

    def handle(self, ctx: CallContext, data: bytes) -> bytes:
        """Dispatch calldata to the matching external function."""
        if not data:
            if not self.ACCEPTS_VALUE:
                raise FunctionNotFoundError(
                    f"{type(self).__name__} has no receive function"
                )
            self.receive(ctx)
            return b""

        entry = self._abi.get(data[:4])
        if entry is None:
            raise FunctionNotFoundError(
                f"{type(self).__name__} has no function with selector 0x{data[:4].hex()}"
            )
        if ctx.value and not entry.payable:
            raise NonPayableError(f"{entry.signature} is not payable")

        try:
            args = decode_args(entry.inputs, data[4:])
        except DecodingError as e:
            raise VMExecutionError(f"Invalid calldata for {entry.signature}: {e}") from e

        result = getattr(self, entry.method_name)(ctx, *args)

        if not entry.outputs:
            return b""
        values = (result,) if len(entry.outputs) == 1 else result
        try:
            return encode_args(entry.outputs, values)
        except EncodingError as e:
            raise TypeError(f"{entry.signature} returned {result!r}") from e


def resolve_init_code(init_code: bytes) -> Tuple[Type[Contract], Tuple[Any, ...]]:
    """Map creation code back to the contract class and constructor arguments."""
    cls = ARTIFACTS.get(init_code[:BYTECODE_LENGTH])
    if cls is None:
        raise ContractCreationError("Unknown creation bytecode")
    try:
        args = decode_args(cls.CONSTRUCTOR_TYPES, init_code[BYTECODE_LENGTH:])
    except DecodingError as e:
        raise ContractCreationError(
            f"Invalid constructor arguments for {cls.__name__}: {e}"
        ) from e
    return cls, args
