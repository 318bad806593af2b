"""
Typed Data Signing - EIP-712 / EIP-191

Digests the wallet uses to bind signatures to a domain:

- EIP-191 personal messages ("\\x19Ethereum Signed Message:\\n<len>")
- EIP-712 typed structured data ("\\x19\\x01" ++ domainSeparator ++ structHash)

The EIP-712 domain pins name, version, chain id and the verifying contract, so
a signature made for one wallet on one chain does not verify for another.

``create_typed_sign_request`` is the client side of the same scheme: it builds
the JSON payload an off-chain wallet signs with ``eth_signTypedData_v4``. The
contracts never call it.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Union

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

EIP191_PREFIX = b"\x19Ethereum Signed Message:\n"
EIP712_PREFIX = b"\x19\x01"

EIP712_DOMAIN_TYPE = (
    "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)
EIP712_DOMAIN_TYPEHASH = keccak(text=EIP712_DOMAIN_TYPE)


@dataclass(frozen=True)
class TypedDataDomain:
    """
    EIP-712 domain separator.

    Prevents signature replay across different:
    - Contracts/applications (name, verifyingContract)
    - Chains (chainId)
    - Versions (version)
    """
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def separator(self) -> bytes:
        """keccak256(abi.encode(typeHash, keccak(name), keccak(version), chainId, verifyingContract))."""
        return keccak(
            encode(
                ["bytes32", "bytes32", "bytes32", "uint256", "address"],
                [
                    EIP712_DOMAIN_TYPEHASH,
                    keccak(text=self.name),
                    keccak(text=self.version),
                    self.chain_id,
                    self.verifying_contract,
                ],
            )
        )

    def to_dict(self) -> Dict[str, Any]:
        """Domain in the JSON shape wallets and ``eth_signTypedData_v4`` expect."""
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": to_checksum_address(self.verifying_contract),
        }


def hash_personal_message(message: Union[str, bytes]) -> bytes:
    """
    Hash a personal message (EIP-191 version 0x45).

    Args:
        message: Message to hash (string or bytes)

    Returns:
        32-byte keccak256 digest ready for recovery
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    return keccak(EIP191_PREFIX + str(len(message)).encode("utf-8") + message)


def hash_struct(type_string: str, types: Sequence[str], values: Sequence[Any]) -> bytes:
    """keccak256(abi.encode(keccak256(type_string), values...)) for static-encoded members."""
    return keccak(encode(["bytes32", *types], [keccak(text=type_string), *values]))


def hash_typed_data_v4(domain: TypedDataDomain, struct_hash: bytes) -> bytes:
    """Final EIP-712 digest for ``struct_hash`` under ``domain``."""
    return keccak(EIP712_PREFIX + domain.separator() + struct_hash)


def message_type(domain_name: str) -> str:
    """Type string of the single-field message struct a wallet signs over."""
    return f"{domain_name}Message(bytes message)"


def create_typed_sign_request(domain: TypedDataDomain, message: bytes) -> Dict[str, Any]:
    """
    Client helper: build the ``eth_signTypedData_v4`` payload for a wallet message.

    Off-chain signers hand the result to their key store to produce the
    signature that the wallet's ``isValidSignature`` accepts for
    ``message``. The struct hash of the payload equals
    ``hash_struct(message_type(domain.name), ["bytes32"], [keccak(message)])``.
    """
    primary_type = f"{domain.name}Message"
    types: Dict[str, List[Dict[str, str]]] = {
        "EIP712Domain": [
            {"name": "name", "type": "string"},
            {"name": "version", "type": "string"},
            {"name": "chainId", "type": "uint256"},
            {"name": "verifyingContract", "type": "address"},
        ],
        primary_type: [{"name": "message", "type": "bytes"}],
    }
    return {
        "types": types,
        "primaryType": primary_type,
        "domain": domain.to_dict(),
        "message": {"message": message},
    }
