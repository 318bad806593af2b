"""
Address derivation and storage slot helpers, checked against published vectors.
"""

import pytest
from eth_abi import encode
from eth_utils import keccak

from aawallet.core.vm.interpreter_helpers import (
    EIP1967_IMPLEMENTATION_SLOT,
    array_slot,
    compute_create2_address,
    compute_create_address,
    erc7201_slot,
    mapping_slot,
    rlp_encode_address_nonce,
    salt_to_bytes,
)

SENDER = "0x6ac7ea33f8831ea9dcc53393aaa88b25a785dbf0"


class TestCreateAddress:
    @pytest.mark.parametrize(
        "nonce,expected",
        [
            (0, "0xcd234a471b72ba2f1ccf0a70fcaba648a5eecd8d"),
            (1, "0x343c43a37d37dff08ae8c4a11544c718abb4fcf8"),
            (2, "0xf778b86fa74e846c4f0a1fbd1335fe81c00a0c91"),
        ],
    )
    def test_known_vectors(self, nonce, expected):
        assert compute_create_address(SENDER, nonce).lower() == expected

    def test_rlp_of_zero_nonce_is_empty_string(self):
        encoded = rlp_encode_address_nonce(SENDER, 0)
        assert encoded[0] == 0xC0 + 22
        assert encoded[-1] == 0x80

    def test_rlp_of_small_nonce_is_single_byte(self):
        assert rlp_encode_address_nonce(SENDER, 5)[-1] == 0x05


class TestCreate2Address:
    def test_eip1014_example_zero(self):
        address = compute_create2_address(
            "0x0000000000000000000000000000000000000000", 0, keccak(b"\x00")
        )
        assert address == "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38"

    def test_eip1014_example_other_deployer(self):
        address = compute_create2_address(
            "0xdeadbeef00000000000000000000000000000000", 0, keccak(b"\x00")
        )
        assert address == "0xB928f69Bb1D91Cd65274e3c79d8986362984fDA3"

    def test_salt_must_be_32_bytes(self):
        with pytest.raises(ValueError):
            salt_to_bytes(b"\x01")

    def test_int_salt_is_big_endian_word(self):
        assert salt_to_bytes(1) == b"\x00" * 31 + b"\x01"


class TestSlots:
    def test_eip1967_implementation_slot(self):
        assert hex(EIP1967_IMPLEMENTATION_SLOT) == (
            "0x360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc"
        )

    def test_erc7201_example_namespace(self):
        assert hex(erc7201_slot("example.main")) == (
            "0x183a6125c38840424c4a85fa12bab2ab606c4b6d0e7cc73c0c06ba5300eab500"
        )

    def test_mapping_slot_matches_solidity_layout(self):
        expected = int.from_bytes(keccak(encode(["address", "uint256"], [SENDER, 3])), "big")
        assert mapping_slot(SENDER, 3) == expected

    def test_array_elements_are_consecutive(self):
        assert array_slot(7, 1) == array_slot(7, 0) + 1
