# Pytest looks here for fixtures
from typing import Iterator

import pytest

from spvkit.constants import EventKind
from spvkit.keystore import WalletKeyStore
from spvkit.manager import SPVManager
from spvkit.networks import SVRegTestnet
from spvkit.simple_config import SimpleConfig
from spvkit.storage import WalletStorage

from .util import EventRecorder, FakeNetworkFactory, TEST_KDF_ITERATIONS


@pytest.fixture
def coin():
    return SVRegTestnet.COIN


@pytest.fixture
def config(tmp_path) -> SimpleConfig:
    return SimpleConfig({ 'data_dir': str(tmp_path), 'regtest': True,
        'kdf_iterations': TEST_KDF_ITERATIONS }, read_user_config_function=lambda path: {})


@pytest.fixture
def keystore(config) -> WalletKeyStore:
    return WalletKeyStore.create_new(WalletStorage(config.wallet_path()), config.get_network(),
        config.get_fee_per_kb())


@pytest.fixture
def network_factory() -> FakeNetworkFactory:
    return FakeNetworkFactory()


@pytest.fixture
def manager(config, network_factory) -> Iterator[SPVManager]:
    with SPVManager(config, network_factory) as manager:
        yield manager


@pytest.fixture
def recorder(manager) -> EventRecorder:
    recorder = EventRecorder()
    manager.register_callback(recorder, list(EventKind))
    return recorder
