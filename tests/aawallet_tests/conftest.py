import sys
from pathlib import Path

import pytest

# Make the shared test contracts importable from every test directory
sys.path.insert(0, str(Path(__file__).parent))

from aawallet.core.contracts.account_factory import (  # noqa: E402
    MultiOwnerSmartAccountFactory,
    SmartAccountFactory,
)
from aawallet.core.contracts.entry_point import EntryPoint  # noqa: E402
from aawallet.core.crypto_utils import generate_secp256k1_keypair_hex  # noqa: E402
from aawallet.core.vm.executor import ContractExecutor  # noqa: E402

from wallet_doubles import LightSwitch  # noqa: E402

ONE_ETHER = 10**18


@pytest.fixture
def executor():
    """Fresh contract host for each test."""
    return ContractExecutor()


@pytest.fixture
def deployer(executor):
    _, address = generate_secp256k1_keypair_hex()
    executor.fund(address, 100 * ONE_ETHER)
    return address


@pytest.fixture
def owner_keys():
    """(private_key_hex, address) of the wallet owner."""
    return generate_secp256k1_keypair_hex()


@pytest.fixture
def other_keys():
    return generate_secp256k1_keypair_hex()


@pytest.fixture
def bundler(executor):
    _, address = generate_secp256k1_keypair_hex()
    executor.fund(address, ONE_ETHER)
    return address


@pytest.fixture
def beneficiary():
    return generate_secp256k1_keypair_hex()[1]


@pytest.fixture
def entry_point(executor, deployer):
    return executor.deploy(deployer, EntryPoint)


@pytest.fixture
def factory_owner(executor):
    _, address = generate_secp256k1_keypair_hex()
    executor.fund(address, 10 * ONE_ETHER)
    return address


@pytest.fixture
def factory(executor, deployer, factory_owner, entry_point):
    return executor.deploy(deployer, SmartAccountFactory, factory_owner, entry_point)


@pytest.fixture
def multi_factory(executor, deployer, factory_owner, entry_point):
    return executor.deploy(deployer, MultiOwnerSmartAccountFactory, factory_owner, entry_point)


@pytest.fixture
def account(executor, deployer, factory, owner_keys):
    """Single-owner account (salt 0), funded with one ether."""
    _, owner = owner_keys
    address = executor.invoke(
        deployer, factory, "createAccount(address,uint256)", owner, 0, returns=("address",)
    )
    executor.fund(address, ONE_ETHER)
    return address


@pytest.fixture
def light_switch(executor, deployer):
    return executor.deploy(deployer, LightSwitch)
