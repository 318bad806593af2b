"""
Contract execution exception hierarchy.

Every failure raised while a contract runs is a ``VMExecutionError``. The
``data`` attribute holds the revert payload exactly as a caller on-chain would
observe it:

- custom errors: 4-byte selector followed by ABI-encoded arguments
- string reverts: ``Error(string)`` encoding
- bare reverts: empty bytes

The executor re-raises the same exception object across call frames, so the
payload reaches the outermost caller unmodified.
"""

from __future__ import annotations

from typing import Any, ClassVar, Dict, Optional

from eth_abi import encode
from eth_utils import keccak

from .abi import parse_signature


class VMError(Exception):
    """Base exception for all contract host errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class VMExecutionError(VMError):
    """Raised when contract execution reverts."""

    def __init__(
        self,
        message: str = "",
        data: bytes = b"",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self._data = data

    @property
    def data(self) -> bytes:
        """Revert payload."""
        return self._data


class RevertError(VMExecutionError):
    """Revert carrying a reason string, encoded as ``Error(string)``."""

    ERROR_SELECTOR = keccak(text="Error(string)")[:4]

    def __init__(self, reason: str = "") -> None:
        data = self.ERROR_SELECTOR + encode(["string"], [reason]) if reason else b""
        super().__init__(reason or "execution reverted", data)
        self.reason = reason


class ContractError(VMExecutionError):
    """
    Solidity-style custom error.

    Subclasses declare ``signature``; positional constructor arguments are the
    error parameters, in order.
    """

    signature: ClassVar[str] = ""

    def __init__(self, *args: Any) -> None:
        name, types = parse_signature(self.signature)
        if len(args) != len(types):
            raise TypeError(
                f"{name} expects {len(types)} argument(s), got {len(args)}"
            )
        self.args_ = args
        payload = self.selector() + (encode(list(types), list(args)) if types else b"")
        rendered = ", ".join(repr(a) for a in args)
        super().__init__(f"{name}({rendered})", payload)

    @classmethod
    def selector(cls) -> bytes:
        return keccak(text=cls.signature)[:4]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ContractError):
            return NotImplemented
        return self.data == other.data

    def __hash__(self) -> int:
        return hash(self.data)


# ==================== Host Errors ====================


class StaticCallViolation(VMExecutionError):
    """State modification attempted inside a static call."""
    pass


class InsufficientBalanceError(VMExecutionError):
    """Value transfer exceeds the sender balance."""
    pass


class CallToNonContractError(VMExecutionError):
    """Typed call made to an address without code."""
    pass


class FunctionNotFoundError(VMExecutionError):
    """Calldata selector does not match any external function."""
    pass


class NonPayableError(VMExecutionError):
    """Value sent to a function that does not accept it."""
    pass


class ContractCreationError(VMExecutionError):
    """Contract creation failed and the caller asked for an exception."""
    pass


# ==================== Wallet Errors ====================


class NotAuthorized(ContractError):
    signature = "NotAuthorized(address)"


class InvalidSignatureType(ContractError):
    signature = "InvalidSignatureType()"


class ECDSAInvalidSignature(ContractError):
    signature = "ECDSAInvalidSignature()"


class ECDSAInvalidSignatureLength(ContractError):
    signature = "ECDSAInvalidSignatureLength(uint256)"


class ECDSAInvalidSignatureS(ContractError):
    signature = "ECDSAInvalidSignatureS(bytes32)"


class InvalidOwner(ContractError):
    signature = "InvalidOwner(address)"


class InvalidOwners(ContractError):
    signature = "InvalidOwners()"


class OwnersArrayEmpty(ContractError):
    signature = "OwnersArrayEmpty()"


class OwnersLimitExceeded(ContractError):
    signature = "OwnersLimitExceeded()"


class ArrayLengthMismatch(ContractError):
    signature = "ArrayLengthMismatch()"


class CreateFailed(ContractError):
    signature = "CreateFailed()"


class ZeroAddressNotAllowed(ContractError):
    signature = "ZeroAddressNotAllowed()"


class InvalidAction(ContractError):
    signature = "InvalidAction()"


class InvalidEntryPoint(ContractError):
    signature = "InvalidEntryPoint(address)"


class InvalidInitialization(ContractError):
    signature = "InvalidInitialization()"


class OwnableUnauthorizedAccount(ContractError):
    signature = "OwnableUnauthorizedAccount(address)"


class OwnableInvalidOwner(ContractError):
    signature = "OwnableInvalidOwner(address)"


class ERC1967InvalidImplementation(ContractError):
    signature = "ERC1967InvalidImplementation(address)"


class UUPSUnsupportedProxiableUUID(ContractError):
    signature = "UUPSUnsupportedProxiableUUID(bytes32)"


class FailedOp(ContractError):
    """Raised by the entry point when a user operation fails validation."""

    signature = "FailedOp(uint256,string)"

    @property
    def op_index(self) -> int:
        return self.args_[0]

    @property
    def reason(self) -> str:
        return self.args_[1]
