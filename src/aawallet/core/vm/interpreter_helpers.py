"""Address derivation and storage slot helpers shared by the executor and contracts."""

from __future__ import annotations

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

_LOW_BYTE_MASK = ~0xFF & ((1 << 256) - 1)


def _rlp_encode_bytes(data: bytes) -> bytes:
    if len(data) == 1 and data[0] < 0x80:
        return data
    if len(data) <= 55:
        return bytes([0x80 + len(data)]) + data
    length = len(data).to_bytes((len(data).bit_length() + 7) // 8, "big")
    return bytes([0xB7 + len(length)]) + length + data


def _rlp_encode_list(payload: bytes) -> bytes:
    if len(payload) <= 55:
        return bytes([0xC0 + len(payload)]) + payload
    length = len(payload).to_bytes((len(payload).bit_length() + 7) // 8, "big")
    return bytes([0xF7 + len(length)]) + length + payload


def rlp_encode_address_nonce(address: str, nonce: int) -> bytes:
    """RLP encoding of ``[address, nonce]`` as used by CREATE."""
    address_bytes = bytes.fromhex(address[2:] if address.startswith("0x") else address)
    if nonce == 0:
        nonce_bytes = b""
    else:
        nonce_bytes = nonce.to_bytes((nonce.bit_length() + 7) // 8, "big")
    payload = _rlp_encode_bytes(address_bytes) + _rlp_encode_bytes(nonce_bytes)
    return _rlp_encode_list(payload)


def compute_create_address(sender: str, nonce: int) -> str:
    """CREATE address: keccak256(rlp([sender, nonce]))[12:]."""
    digest = keccak(rlp_encode_address_nonce(sender, nonce))
    return to_checksum_address(digest[12:])


def salt_to_bytes(salt: int | bytes) -> bytes:
    if isinstance(salt, int):
        return salt.to_bytes(32, "big")
    if len(salt) != 32:
        raise ValueError(f"CREATE2 salt must be 32 bytes, got {len(salt)}")
    return salt


def compute_create2_address(sender: str, salt: int | bytes, init_code_hash: bytes) -> str:
    """CREATE2 address: keccak256(0xff ++ sender ++ salt ++ keccak256(init_code))[12:]."""
    sender_bytes = bytes.fromhex(sender[2:])
    digest = keccak(b"\xff" + sender_bytes + salt_to_bytes(salt) + init_code_hash)
    return to_checksum_address(digest[12:])


def eip1967_slot(tag: str) -> int:
    """keccak256(tag) - 1, the EIP-1967 reserved slot formula."""
    return int.from_bytes(keccak(text=tag), "big") - 1


def erc7201_slot(namespace: str) -> int:
    """ERC-7201 namespaced root: keccak256(abi.encode(keccak256(id) - 1)) & ~0xff."""
    inner = eip1967_slot(namespace)
    return int.from_bytes(keccak(encode(["uint256"], [inner])), "big") & _LOW_BYTE_MASK


def mapping_slot(key: str | int, slot: int, key_type: str = "address") -> int:
    """Storage slot of ``mapping[key]`` for a mapping rooted at ``slot``."""
    return int.from_bytes(keccak(encode([key_type, "uint256"], [key, slot])), "big")


def array_slot(slot: int, index: int) -> int:
    """Storage slot of element ``index`` of a dynamic array rooted at ``slot``."""
    base = int.from_bytes(keccak(slot.to_bytes(32, "big")), "big")
    return (base + index) % (1 << 256)


# keccak256("eip1967.proxy.implementation") - 1
EIP1967_IMPLEMENTATION_SLOT = eip1967_slot("eip1967.proxy.implementation")
