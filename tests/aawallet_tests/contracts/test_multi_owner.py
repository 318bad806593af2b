"""
Tests for MultiOwnerSmartAccount: owner set management and the
owner-addressed contract signature tag.
"""

import pytest
from eth_utils import keccak

from aawallet.core.contracts.account_abstraction import (
    MultiOwnerSmartAccount,
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
from aawallet.core.crypto_utils import generate_secp256k1_keypair_hex, sign_digest, sign_personal_digest
from aawallet.core.vm.abi import ERC1271_INVALID, ERC1271_MAGIC_VALUE, ZERO_ADDRESS, decode_args, encode_call
from aawallet.core.vm.exceptions import (
    InvalidInitialization,
    InvalidOwner,
    InvalidOwners,
    InvalidSignatureType,
    NotAuthorized,
    OwnersArrayEmpty,
)

from wallet_doubles import ContractOwner

VALIDATE_USER_OP = f"validateUserOp({USER_OPERATION_TYPE},bytes32,uint256)"
DIGEST = keccak(text="multi-owner message")


def _sorted(addresses):
    return sorted(addresses, key=lambda address: int(address, 16))


@pytest.fixture
def owner_a():
    return generate_secp256k1_keypair_hex()


@pytest.fixture
def owner_b():
    return generate_secp256k1_keypair_hex()


@pytest.fixture
def contract_signer():
    return generate_secp256k1_keypair_hex()


@pytest.fixture
def contract_owner(executor, deployer, contract_signer):
    return executor.deploy(deployer, ContractOwner, contract_signer[1])


@pytest.fixture
def owners(owner_a, owner_b, contract_owner):
    return _sorted([owner_a[1], owner_b[1], contract_owner])


@pytest.fixture
def multi_account(executor, deployer, multi_factory, owners):
    return executor.invoke(
        deployer, multi_factory, "createAccount(address[],uint256)", owners, 0, returns=("address",)
    )


def _validate(executor, entry_point, account, signer_fn):
    op = UserOperation(sender=account, nonce=0)
    op_hash = op.hash(entry_point, executor.block.chain_id)
    op.signature = signer_fn(op_hash)
    raw = executor.call(entry_point, account, 0, encode_call(VALIDATE_USER_OP, op.to_tuple(), op_hash, 0))
    return decode_args(("uint256",), raw)[0]


class TestOwnerSet:
    def test_owners_in_creation_order(self, executor, multi_account, owners):
        assert executor.view(multi_account, "owners()", returns=("address[]",)) == tuple(owners)

    def test_initialization_events(self, executor, multi_account, owners, entry_point):
        initialized = executor.events("MultiOwnerSmartAccountInitialized", address=multi_account)
        assert initialized[0].args == {"entryPoint": entry_point, "owners": owners}
        updated = executor.events("OwnersUpdated", address=multi_account)
        assert updated[0].args == {"addedOwners": owners, "removedOwners": []}

    def test_cannot_initialize_twice(self, executor, multi_account, owner_a):
        with pytest.raises(InvalidInitialization):
            executor.invoke(owner_a[1], multi_account, "initialize(address[])", [owner_a[1]])

    def test_domain_name(self, executor, multi_account):
        _, name, version, *_ = executor.view(
            multi_account,
            "eip712Domain()",
            returns=("bytes1", "string", "string", "uint256", "address", "bytes32", "uint256[]"),
        )
        assert (name, version) == ("MultiOwnerSmartAccount", "2")


class TestDirectInitialization:
    @pytest.fixture
    def bare_account(self, executor, deployer, entry_point):
        return executor.deploy(deployer, MultiOwnerSmartAccount, [], entry_point)

    def test_empty_owner_list(self, executor, deployer, bare_account):
        with pytest.raises(OwnersArrayEmpty):
            executor.invoke(deployer, bare_account, "initialize(address[])", [])

    def test_duplicate_owner(self, executor, deployer, bare_account, owner_a):
        with pytest.raises(InvalidOwner) as exc_info:
            executor.invoke(deployer, bare_account, "initialize(address[])", [owner_a[1], owner_a[1]])
        assert exc_info.value == InvalidOwner(owner_a[1])

    def test_zero_owner(self, executor, deployer, bare_account):
        with pytest.raises(InvalidOwner):
            executor.invoke(deployer, bare_account, "initialize(address[])", [ZERO_ADDRESS])

    def test_self_as_owner(self, executor, deployer, bare_account):
        with pytest.raises(InvalidOwner):
            executor.invoke(deployer, bare_account, "initialize(address[])", [bare_account])

    def test_failed_initialization_leaves_account_uninitialized(self, executor, deployer, bare_account, owner_a):
        with pytest.raises(InvalidOwner):
            executor.invoke(deployer, bare_account, "initialize(address[])", [ZERO_ADDRESS])
        executor.invoke(deployer, bare_account, "initialize(address[])", [owner_a[1]])
        assert executor.view(bare_account, "owners()", returns=("address[]",)) == (owner_a[1],)

    def test_descending_owners_rejected(self, executor, deployer, bare_account, owner_a, owner_b):
        low, high = _sorted([owner_a[1], owner_b[1]])
        with pytest.raises(InvalidOwners):
            executor.invoke(deployer, bare_account, "initialize(address[])", [high, low])

        assert executor.view(bare_account, "owners()", returns=("address[]",)) == ()
        executor.invoke(deployer, bare_account, "initialize(address[])", [low, high])
        assert executor.view(bare_account, "owners()", returns=("address[]",)) == (low, high)


class TestMemberAuthorization:
    def test_every_owner_may_execute(self, executor, multi_account, owner_a, owner_b, light_switch):
        for sender in (owner_a[1], owner_b[1]):
            executor.invoke(
                sender, multi_account, "execute(address,uint256,bytes)", light_switch, 0, encode_call("turnOn()")
            )
        callers = [log.args["caller"] for log in executor.events("SwitchedOn")]
        assert callers == [multi_account, multi_account]

    def test_contract_owner_may_execute(self, executor, multi_account, contract_owner, owner_a, light_switch):
        inner = encode_call("execute(address,uint256,bytes)", light_switch, 0, encode_call("turnOn()"))
        executor.invoke(owner_a[1], contract_owner, "forward(address,bytes)", multi_account, inner)
        assert executor.view(light_switch, "isOn()", returns=("bool",))

    def test_stranger_rejected(self, executor, multi_account, other_keys, light_switch):
        with pytest.raises(NotAuthorized):
            executor.invoke(
                other_keys[1], multi_account, "execute(address,uint256,bytes)", light_switch, 0, b""
            )


class TestMultiOwnerSignatures:
    def test_any_eoa_owner_signs_user_op(self, executor, entry_point, multi_account, owner_a, owner_b):
        for private_key, _ in (owner_a, owner_b):
            verdict = _validate(
                executor, entry_point, multi_account,
                lambda op_hash: eoa_signature(sign_personal_digest(private_key, op_hash)),
            )
            assert verdict == SIG_VALIDATION_SUCCESS

    def test_non_member_eoa(self, executor, entry_point, multi_account, other_keys):
        verdict = _validate(
            executor, entry_point, multi_account,
            lambda op_hash: eoa_signature(sign_personal_digest(other_keys[0], op_hash)),
        )
        assert verdict == SIG_VALIDATION_FAILED

    def test_contract_owner_with_address(self, executor, entry_point, multi_account, contract_owner, contract_signer):
        verdict = _validate(
            executor, entry_point, multi_account,
            lambda op_hash: contract_signature_with_address(contract_owner, sign_digest(contract_signer[0], op_hash)),
        )
        assert verdict == SIG_VALIDATION_SUCCESS

    def test_claimed_owner_must_be_member(self, executor, deployer, entry_point, multi_account, contract_signer):
        outsider = executor.deploy(deployer, ContractOwner, contract_signer[1])
        verdict = _validate(
            executor, entry_point, multi_account,
            lambda op_hash: contract_signature_with_address(outsider, sign_digest(contract_signer[0], op_hash)),
        )
        assert verdict == SIG_VALIDATION_FAILED

    def test_single_owner_tag_rejected(self, executor, entry_point, multi_account, contract_signer):
        with pytest.raises(InvalidSignatureType):
            _validate(
                executor, entry_point, multi_account,
                lambda op_hash: contract_signature(sign_digest(contract_signer[0], op_hash)),
            )

    def test_payload_too_short_for_owner_address(self, executor, entry_point, multi_account):
        with pytest.raises(InvalidSignatureType):
            _validate(executor, entry_point, multi_account, lambda op_hash: b"\x02" + b"\x11" * 19)

    def test_erc1271_by_contract_owner(self, executor, multi_account, contract_owner, contract_signer):
        replay_safe = executor.view(multi_account, "getMessageHash(bytes)", DIGEST, returns=("bytes32",))
        signature = contract_signature_with_address(contract_owner, sign_digest(contract_signer[0], replay_safe))
        result = executor.view(
            multi_account, "isValidSignature(bytes32,bytes)", DIGEST, signature, returns=("bytes4",)
        )
        assert result == ERC1271_MAGIC_VALUE

    def test_erc1271_by_eoa_owner(self, executor, multi_account, owner_b, other_keys):
        replay_safe = executor.view(multi_account, "getMessageHash(bytes)", DIGEST, returns=("bytes32",))
        for private_key, expected in ((owner_b[0], ERC1271_MAGIC_VALUE), (other_keys[0], ERC1271_INVALID)):
            signature = eoa_signature(sign_digest(private_key, replay_safe))
            result = executor.view(
                multi_account, "isValidSignature(bytes32,bytes)", DIGEST, signature, returns=("bytes4",)
            )
            assert result == expected
