"""
Contract host.

Executes ``Contract`` classes against an in-memory world state with the
call semantics wallet contracts rely on: atomic frames, verbatim revert
payloads, static and delegate calls, CREATE/CREATE2 addressing and
EIP-1967 implementation indirection.
"""

from .context import BlockContext, CallContext, CallType, Log
from .contract import Contract, external
from .executor import ContractExecutor
from .exceptions import ContractError, RevertError, VMError, VMExecutionError
from .state import WorldState

__all__ = [
    "BlockContext",
    "CallContext",
    "CallType",
    "Contract",
    "ContractError",
    "ContractExecutor",
    "Log",
    "RevertError",
    "VMError",
    "VMExecutionError",
    "WorldState",
    "external",
]
