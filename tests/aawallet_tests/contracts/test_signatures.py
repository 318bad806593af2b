"""
Signature validation for user operations (validateUserOp) and messages
(ERC-1271 isValidSignature) on the single-owner account.
"""

import pytest
from eth_utils import keccak

from aawallet.core.contracts.account_abstraction import (
    contract_signature,
    contract_signature_with_address,
    eoa_signature,
)
from aawallet.core.contracts.entry_point import (
    SIG_VALIDATION_FAILED,
    SIG_VALIDATION_SUCCESS,
    USER_OPERATION_TYPE,
    UserOperation,
)
from aawallet.core.crypto_utils import (
    _CURVE_ORDER,
    sign_digest,
    sign_personal_digest,
)
from aawallet.core.typed_signing import TypedDataDomain, hash_struct, hash_typed_data_v4
from aawallet.core.vm.abi import ERC1271_INVALID, ERC1271_MAGIC_VALUE, decode_args, encode_call
from aawallet.core.vm.exceptions import (
    ECDSAInvalidSignatureLength,
    ECDSAInvalidSignatureS,
    InvalidSignatureType,
    NotAuthorized,
)

from wallet_doubles import ContractOwner

VALIDATE_USER_OP = f"validateUserOp({USER_OPERATION_TYPE},bytes32,uint256)"
DIGEST = keccak(text="message to sign")


def _user_op(account, signature=b""):
    return UserOperation(sender=account, nonce=0, signature=signature)


def _validate(executor, entry_point, account, op, missing_funds=0):
    op_hash = op.hash(entry_point, executor.block.chain_id)
    raw = executor.call(
        entry_point, account, 0, encode_call(VALIDATE_USER_OP, op.to_tuple(), op_hash, missing_funds)
    )
    return decode_args(("uint256",), raw)[0]


def _op_hash(executor, entry_point, account):
    return _user_op(account).hash(entry_point, executor.block.chain_id)


def _is_valid_signature(executor, account, digest, signature):
    return executor.view(account, "isValidSignature(bytes32,bytes)", digest, signature, returns=("bytes4",))


def _message_hash(executor, account, digest):
    return executor.view(account, "getMessageHash(bytes)", digest, returns=("bytes32",))


class TestValidateUserOpEOA:
    def test_owner_signature_accepted(self, executor, entry_point, account, owner_keys):
        op_hash = _op_hash(executor, entry_point, account)
        op = _user_op(account, eoa_signature(sign_personal_digest(owner_keys[0], op_hash)))
        assert _validate(executor, entry_point, account, op) == SIG_VALIDATION_SUCCESS

    def test_wrong_signer_returns_failure(self, executor, entry_point, account, other_keys):
        op_hash = _op_hash(executor, entry_point, account)
        op = _user_op(account, eoa_signature(sign_personal_digest(other_keys[0], op_hash)))
        assert _validate(executor, entry_point, account, op) == SIG_VALIDATION_FAILED

    def test_unprefixed_digest_is_not_accepted(self, executor, entry_point, account, owner_keys):
        op_hash = _op_hash(executor, entry_point, account)
        op = _user_op(account, eoa_signature(sign_digest(owner_keys[0], op_hash)))
        assert _validate(executor, entry_point, account, op) == SIG_VALIDATION_FAILED

    def test_only_entry_point_may_call(self, executor, entry_point, account, owner_keys):
        op = _user_op(account)
        data = encode_call(VALIDATE_USER_OP, op.to_tuple(), b"\x00" * 32, 0)
        with pytest.raises(NotAuthorized) as exc_info:
            executor.call(owner_keys[1], account, 0, data)
        assert exc_info.value == NotAuthorized(owner_keys[1])

    def test_missing_funds_paid_to_entry_point(self, executor, entry_point, account, owner_keys):
        op_hash = _op_hash(executor, entry_point, account)
        op = _user_op(account, eoa_signature(sign_personal_digest(owner_keys[0], op_hash)))
        _validate(executor, entry_point, account, op, missing_funds=1234)
        assert executor.view(entry_point, "balanceOf(address)", account, returns=("uint256",)) == 1234

    def test_unpayable_prefund_is_ignored(self, executor, deployer, factory, entry_point, owner_keys):
        poor = executor.invoke(
            deployer, factory, "createAccount(address,uint256)", owner_keys[1], 99, returns=("address",)
        )
        op_hash = _op_hash(executor, entry_point, poor)
        op = _user_op(poor, eoa_signature(sign_personal_digest(owner_keys[0], op_hash)))
        assert _validate(executor, entry_point, poor, op, missing_funds=10) == SIG_VALIDATION_SUCCESS


class TestMalformedSignatures:
    def test_empty_signature(self, executor, entry_point, account):
        with pytest.raises(InvalidSignatureType):
            _validate(executor, entry_point, account, _user_op(account, b""))

    @pytest.mark.parametrize("tag", [0x02, 0x03, 0xFF])
    def test_unknown_tag(self, executor, entry_point, account, tag):
        with pytest.raises(InvalidSignatureType):
            _validate(executor, entry_point, account, _user_op(account, bytes([tag]) + b"\x00" * 65))

    def test_short_eoa_signature(self, executor, entry_point, account, owner_keys):
        op_hash = _op_hash(executor, entry_point, account)
        truncated = sign_personal_digest(owner_keys[0], op_hash)[:64]
        with pytest.raises(ECDSAInvalidSignatureLength) as exc_info:
            _validate(executor, entry_point, account, _user_op(account, eoa_signature(truncated)))
        assert exc_info.value == ECDSAInvalidSignatureLength(64)

    def test_high_s_signature(self, executor, entry_point, account, owner_keys):
        op_hash = _op_hash(executor, entry_point, account)
        signature = sign_personal_digest(owner_keys[0], op_hash)
        s = int.from_bytes(signature[32:64], "big")
        malleated = signature[:32] + (_CURVE_ORDER - s).to_bytes(32, "big") + bytes([55 - signature[64]])
        with pytest.raises(ECDSAInvalidSignatureS):
            _validate(executor, entry_point, account, _user_op(account, eoa_signature(malleated)))

    def test_malformed_signature_in_erc1271_raises(self, executor, account):
        with pytest.raises(ECDSAInvalidSignatureLength):
            _is_valid_signature(executor, account, DIGEST, eoa_signature(b"\x01" * 10))


class TestContractOwner:
    @pytest.fixture
    def signer_keys(self, other_keys):
        return other_keys

    @pytest.fixture
    def contract_account(self, executor, deployer, factory, signer_keys):
        contract_owner = executor.deploy(deployer, ContractOwner, signer_keys[1])
        return executor.invoke(
            deployer, factory, "createAccount(address,uint256)", contract_owner, 0, returns=("address",)
        )

    def test_user_op_signed_through_owner_contract(self, executor, entry_point, contract_account, signer_keys):
        op_hash = _op_hash(executor, entry_point, contract_account)
        op = _user_op(contract_account, contract_signature(sign_digest(signer_keys[0], op_hash)))
        assert _validate(executor, entry_point, contract_account, op) == SIG_VALIDATION_SUCCESS

    def test_owner_contract_rejection(self, executor, entry_point, contract_account, owner_keys):
        op_hash = _op_hash(executor, entry_point, contract_account)
        op = _user_op(contract_account, contract_signature(sign_digest(owner_keys[0], op_hash)))
        assert _validate(executor, entry_point, contract_account, op) == SIG_VALIDATION_FAILED

    def test_owner_contract_revert_counts_as_invalid(self, executor, entry_point, contract_account):
        op = _user_op(contract_account, contract_signature(b"\x00" * 3))
        assert _validate(executor, entry_point, contract_account, op) == SIG_VALIDATION_FAILED

    def test_contract_tag_on_eoa_owned_account(self, executor, entry_point, account, owner_keys):
        op_hash = _op_hash(executor, entry_point, account)
        op = _user_op(account, contract_signature(sign_digest(owner_keys[0], op_hash)))
        assert _validate(executor, entry_point, account, op) == SIG_VALIDATION_FAILED

    def test_erc1271_through_owner_contract(self, executor, contract_account, signer_keys):
        replay_safe = _message_hash(executor, contract_account, DIGEST)
        signature = contract_signature(sign_digest(signer_keys[0], replay_safe))
        assert _is_valid_signature(executor, contract_account, DIGEST, signature) == ERC1271_MAGIC_VALUE

    def test_multi_owner_tag_rejected(self, executor, contract_account, signer_keys):
        signature = contract_signature_with_address(signer_keys[1], b"\x00" * 65)
        with pytest.raises(InvalidSignatureType):
            _is_valid_signature(executor, contract_account, DIGEST, signature)


class TestIsValidSignature:
    def test_owner_signature_over_replay_safe_hash(self, executor, account, owner_keys):
        replay_safe = _message_hash(executor, account, DIGEST)
        signature = eoa_signature(sign_digest(owner_keys[0], replay_safe))
        assert _is_valid_signature(executor, account, DIGEST, signature) == ERC1271_MAGIC_VALUE

    def test_wrong_signer(self, executor, account, other_keys):
        replay_safe = _message_hash(executor, account, DIGEST)
        signature = eoa_signature(sign_digest(other_keys[0], replay_safe))
        assert _is_valid_signature(executor, account, DIGEST, signature) == ERC1271_INVALID

    def test_signature_over_raw_digest_rejected(self, executor, account, owner_keys):
        signature = eoa_signature(sign_digest(owner_keys[0], DIGEST))
        assert _is_valid_signature(executor, account, DIGEST, signature) == ERC1271_INVALID

    def test_not_replayable_on_sibling_wallet(self, executor, deployer, factory, account, owner_keys):
        sibling = executor.invoke(
            deployer, factory, "createAccount(address,uint256)", owner_keys[1], 1, returns=("address",)
        )
        signature = eoa_signature(sign_digest(owner_keys[0], _message_hash(executor, account, DIGEST)))
        assert _is_valid_signature(executor, account, DIGEST, signature) == ERC1271_MAGIC_VALUE
        assert _is_valid_signature(executor, sibling, DIGEST, signature) == ERC1271_INVALID

    def test_message_hash_is_eip712_digest(self, executor, account):
        domain = TypedDataDomain("SmartAccount", "2", executor.block.chain_id, account)
        struct_hash = hash_struct("SmartAccountMessage(bytes message)", ["bytes32"], [keccak(DIGEST)])
        assert _message_hash(executor, account, DIGEST) == hash_typed_data_v4(domain, struct_hash)
        assert executor.view(account, "domainSeparator()", returns=("bytes32",)) == domain.separator()

    def test_eip712_domain_fields(self, executor, account):
        fields, name, version, chain_id, verifying_contract, salt, extensions = executor.view(
            account,
            "eip712Domain()",
            returns=("bytes1", "string", "string", "uint256", "address", "bytes32", "uint256[]"),
        )
        assert fields == b"\x0f"
        assert (name, version) == ("SmartAccount", "2")
        assert chain_id == executor.block.chain_id
        assert verifying_contract == account
        assert extensions == ()


class TestPathsAgree:
    def test_same_signer_same_verdict(self, executor, entry_point, account, owner_keys, other_keys):
        """A key accepted by one path is accepted by the other, and vice versa."""
        op_hash = _op_hash(executor, entry_point, account)
        replay_safe = _message_hash(executor, account, DIGEST)

        for private_key, expected in ((owner_keys[0], True), (other_keys[0], False)):
            op = _user_op(account, eoa_signature(sign_personal_digest(private_key, op_hash)))
            via_user_op = _validate(executor, entry_point, account, op) == SIG_VALIDATION_SUCCESS
            via_erc1271 = _is_valid_signature(
                executor, account, DIGEST, eoa_signature(sign_digest(private_key, replay_safe))
            ) == ERC1271_MAGIC_VALUE
            assert via_user_op is via_erc1271 is expected
