"""Utility helpers for secp256k1 key management and recoverable signatures."""

from __future__ import annotations

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError

from .typed_signing import hash_personal_message
from .vm.exceptions import (
    ECDSAInvalidSignature,
    ECDSAInvalidSignatureLength,
    ECDSAInvalidSignatureS,
)

_CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)
_HALF_CURVE_ORDER = _CURVE_ORDER // 2

SIGNATURE_LENGTH = 65


def _normalize_private_key(private_hex: str) -> bytes:
    raw = private_hex[2:] if private_hex.startswith("0x") else private_hex
    return bytes.fromhex(raw)


def generate_secp256k1_keypair_hex() -> tuple[str, str]:
    """Return ``(private_key_hex, checksummed_address)`` for a fresh key."""
    account = Account.create()
    return "0x" + bytes(account.key).hex(), account.address


def address_from_private_key(private_hex: str) -> str:
    return Account.from_key(_normalize_private_key(private_hex)).address


def to_eth_signed_message_hash(digest: bytes) -> bytes:
    """EIP-191 digest of a 32-byte hash, the form EOAs sign user operations in."""
    return hash_personal_message(digest)


def sign_digest(private_hex: str, digest: bytes) -> bytes:
    """Sign a raw 32-byte digest. Returns ``r || s || v`` with ``v`` in {27, 28}."""
    private_key = keys.PrivateKey(_normalize_private_key(private_hex))
    signature = private_key.sign_msg_hash(digest)
    return (
        signature.r.to_bytes(32, "big")
        + signature.s.to_bytes(32, "big")
        + bytes([signature.v + 27])
    )


def sign_personal_digest(private_hex: str, digest: bytes) -> bytes:
    """Sign ``digest`` as an EIP-191 personal message."""
    signed = Account.sign_message(
        encode_defunct(primitive=digest), _normalize_private_key(private_hex)
    )
    return bytes(signed.signature)


def is_canonical_signature(r: int, s: int) -> bool:
    """Check that ``r`` is a valid scalar and ``s`` is in the lower half of the curve order."""
    return 1 <= r < _CURVE_ORDER and 1 <= s <= _HALF_CURVE_ORDER


def recover_signer(digest: bytes, signature: bytes) -> str:
    """
    Recover the signer address of a 65-byte ``r || s || v`` signature.

    Mirrors ``ecrecover`` behind a strict front end: wrong length, high ``s``
    and unrecoverable signatures raise instead of yielding the zero address.

    Raises:
        ECDSAInvalidSignatureLength: Signature is not 65 bytes
        ECDSAInvalidSignatureS: ``s`` is in the upper half of the curve order
        ECDSAInvalidSignature: ``v`` is not 27/28, ``r`` or ``s`` is out of
            range, or no key can be recovered
    """
    if len(signature) != SIGNATURE_LENGTH:
        raise ECDSAInvalidSignatureLength(len(signature))

    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]

    if s > _HALF_CURVE_ORDER:
        raise ECDSAInvalidSignatureS(signature[32:64])
    if v not in (27, 28) or not is_canonical_signature(r, s):
        raise ECDSAInvalidSignature()

    try:
        public_key = keys.Signature(vrs=(v - 27, r, s)).recover_public_key_from_msg_hash(digest)
    except (BadSignature, ValidationError) as e:
        raise ECDSAInvalidSignature() from e

    return public_key.to_checksum_address()
