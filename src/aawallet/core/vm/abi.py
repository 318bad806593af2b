"""ABI helpers for contract calls: selectors, call encoding and address words."""

from __future__ import annotations

from typing import Any, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import keccak, to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# ERC-165 / ERC-1271 constants
ERC165_INTERFACE_ID = bytes.fromhex("01ffc9a7")
ERC1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
ERC1271_INVALID = bytes.fromhex("ffffffff")


def parse_signature(signature: str) -> Tuple[str, Tuple[str, ...]]:
    """
    Split ``name(type1,type2,...)`` into its name and top-level types.

    Tuple types such as ``(address,uint256)[]`` are kept intact.
    """
    name, _, rest = signature.partition("(")
    if not rest.endswith(")"):
        raise ValueError(f"Malformed function signature: {signature}")
    inner = rest[:-1]
    if not inner:
        return name, ()
    types = []
    depth = 0
    current = ""
    for char in inner:
        if char == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        current += char
    types.append(current)
    return name, tuple(types)


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 of the canonical signature."""
    return keccak(text=signature)[:4]


def encode_args(types: Sequence[str], args: Sequence[Any]) -> bytes:
    if not types:
        return b""
    return encode(list(types), list(args))


def _checksum_addresses(abi_type: str, value: Any) -> Any:
    """Checksum every address inside a decoded value of type ``abi_type``."""
    if abi_type.endswith("]"):
        element_type = abi_type[: abi_type.rindex("[")]
        return tuple(_checksum_addresses(element_type, item) for item in value)
    if abi_type.startswith("("):
        _, member_types = parse_signature(abi_type)
        return tuple(
            _checksum_addresses(member_type, item)
            for member_type, item in zip(member_types, value)
        )
    if abi_type == "address":
        return to_checksum_address(value)
    return value


def decode_args(types: Sequence[str], data: bytes) -> Tuple[Any, ...]:
    """ABI-decode ``data``; addresses come back checksummed like host addresses."""
    if not types:
        return ()
    values = decode(list(types), data)
    return tuple(_checksum_addresses(t, v) for t, v in zip(types, values))


def encode_call(signature: str, *args: Any) -> bytes:
    """Build calldata for ``signature`` with positional ``args``."""
    _, types = parse_signature(signature)
    return function_selector(signature) + encode_args(types, args)


def interface_id(signatures: Sequence[str]) -> bytes:
    """ERC-165 interface identifier: XOR of all function selectors."""
    value = 0
    for signature in signatures:
        value ^= int.from_bytes(function_selector(signature), "big")
    return value.to_bytes(4, "big")


def normalize_address(address: str) -> str:
    return to_checksum_address(address)


def address_to_int(address: str) -> int:
    return int(address, 16)


def int_to_address(value: int) -> str:
    return to_checksum_address(value.to_bytes(20, "big"))


def is_zero_address(address: str) -> bool:
    return int(address, 16) == 0


def decode_address(data: bytes) -> str:
    """Decode a single ABI-encoded address word."""
    return to_checksum_address(decode(["address"], data)[0])


def unpack_result(returns: Sequence[str], raw: bytes) -> Any:
    """Decode return data; a single return type yields the bare value."""
    if not returns:
        return None
    values = decode_args(returns, raw)
    if len(returns) == 1:
        return values[0]
    return values
