from __future__ import annotations
import asyncio
import os
import threading
import time
from typing import Any, Callable, cast, List, Optional, Tuple

from bitcoinx import Address, PrivateKey, Script, Tx, TxInput, TxOutput

from spvkit.constants import EventKind
from spvkit.headers import SPVHeaderStore
from spvkit.keystore import WalletKeyStore
from spvkit.networks import NetworkType
from spvkit.types import ChainHead, HeaderStoreProtocol, PeerEventListener, PeerSource


TEST_DATA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")
TEST_CHECKPOINTS_PATH = os.path.join(TEST_DATA_PATH, "checkpoints.txt")

TEST_KDF_ITERATIONS = 1000
PEER_THREAD_TIMEOUT = 3.0


def foreign_address(coin: Any) -> str:
    "A destination that is not one of the wallet's own addresses."
    return cast(str, PrivateKey.from_random().public_key.to_address(network=coin).to_string())


def make_funding_transaction(address_string: str, value: int, coin: Any) -> Tx:
    '''A transaction paying `value` to the address from an input the wallet does not own.'''
    address = Address.from_string(address_string, coin)
    txin = TxInput(os.urandom(32), 0, Script(), 0xFFFFFFFF)
    return Tx(1, [ txin ], [ TxOutput(value, address.to_script()) ], 0)


def fund_wallet(wallet: WalletKeyStore, value: int, coin: Any, height: int=1) -> Tx:
    tx = make_funding_transaction(wallet.keys()[0].address, value, coin)
    assert wallet.receive_transaction(tx, height)
    return tx


class EventRecorder:
    '''Registered with the bridge for every event kind, records what the host would see.'''

    def __init__(self) -> None:
        self.events: List[Tuple[EventKind, Tuple[Any, ...]]] = []
        self._condition = threading.Condition()

    def __call__(self, kind: EventKind, *args: Any) -> None:
        with self._condition:
            self.events.append((kind, args))
            self._condition.notify_all()

    def of_kind(self, kind: EventKind) -> List[Tuple[Any, ...]]:
        with self._condition:
            return [ args for event_kind, args in self.events if event_kind == kind ]

    def wait_for(self, kind: EventKind, count: int=1, timeout: float=5.0) \
            -> List[Tuple[Any, ...]]:
        end_time = time.monotonic() + timeout
        with self._condition:
            while len([ 1 for event_kind, _args in self.events if event_kind == kind ]) < count:
                remaining = end_time - time.monotonic()
                if remaining <= 0:
                    raise AssertionError(f"timed out waiting for {count} {kind} events")
                self._condition.wait(remaining)
        return self.of_kind(kind)

    def clear(self) -> None:
        with self._condition:
            self.events.clear()


class FakePeerNetwork:
    """
    A scriptable stand-in for the peer network. The test drives the listener callbacks, the
    broadcast outcome is whatever the test has configured when the broadcast runs.
    """

    def __init__(self, network: NetworkType, header_store: HeaderStoreProtocol,
            wallet: WalletKeyStore, blocks_to_download: int=0, most_common_height: int=0) \
                -> None:
        self.network = network
        self.header_store = header_store
        self.wallet = wallet
        self.blocks_to_download = blocks_to_download
        self.most_common_height = most_common_height

        self.peer_sources: List[PeerSource] = []
        self.wallets: List[WalletKeyStore] = []
        self.listener: Optional[PeerEventListener] = None
        self.download_requested = False
        self.stop_count = 0
        self.fail_on_start: Optional[Exception] = None
        self.fail_on_stop: Optional[Exception] = None
        # Like a real peer group, deliver these from peer threads and wait for them.
        self.connect_on_start = False
        self.disconnect_on_stop = False
        self.blocked_peer_threads = 0

        self.broadcasts: List[Tuple[Tx, Optional[int]]] = []
        self.broadcast_error: Optional[Exception] = None
        self.broadcast_hangs = False
        self.broadcast_started = threading.Event()

    def add_peer_source(self, source: PeerSource) -> None:
        self.peer_sources.append(source)

    def add_wallet(self, wallet: WalletKeyStore) -> None:
        self.wallets.append(wallet)

    def _run_peer_thread(self, callback: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=callback, args=args)
        thread.start()
        thread.join(PEER_THREAD_TIMEOUT)
        if thread.is_alive():
            self.blocked_peer_threads += 1

    def start(self, listener: PeerEventListener) -> None:
        self.listener = listener
        if self.connect_on_start:
            self._run_peer_thread(listener.on_peer_connected, 1)
        if self.fail_on_start is not None:
            raise self.fail_on_start

    def start_chain_download(self) -> None:
        assert self.listener is not None
        self.download_requested = True
        self.listener.on_chain_download_started(self.blocks_to_download)

    def stop(self) -> None:
        self.stop_count += 1
        if self.disconnect_on_stop and self.listener is not None:
            self._run_peer_thread(self.listener.on_peer_disconnected, 0)
        if self.fail_on_stop is not None:
            raise self.fail_on_stop

    def get_most_common_chain_height(self) -> int:
        return self.most_common_height

    async def broadcast_transaction(self, tx: Tx, min_peers: Optional[int]) -> None:
        self.broadcasts.append((tx, min_peers))
        self.broadcast_started.set()
        if self.broadcast_hangs:
            await asyncio.sleep(3600)
        if self.broadcast_error is not None:
            raise self.broadcast_error

    def connect_peers(self, peer_count: int) -> None:
        assert self.listener is not None
        for count in range(1, peer_count + 1):
            self.listener.on_peer_connected(count)

    def download_blocks(self, count: int) -> None:
        '''Deliver `count` blocks of the chain download, connecting each to the header store.'''
        assert self.listener is not None
        assert isinstance(self.header_store, SPVHeaderStore)
        for _i in range(count):
            head = self.header_store.current_head()
            height = head.height + 1 if head is not None else 1
            timestamp = head.timestamp + 600 if head is not None else 1231006505
            self.header_store.connect(ChainHead(height, os.urandom(32), timestamp))
            self.blocks_to_download -= 1
            self.listener.on_block_downloaded(self.blocks_to_download)


class FakeNetworkFactory:
    '''Creates the fake networks and remembers them, configured before each sync session.'''

    def __init__(self) -> None:
        self.networks: List[FakePeerNetwork] = []
        self.blocks_to_download = 0
        self.most_common_height = 0
        self.fail_on_start: Optional[Exception] = None
        self.fail_on_stop: Optional[Exception] = None
        self.connect_on_start = False
        self.disconnect_on_stop = False

    def __call__(self, network: NetworkType, header_store: HeaderStoreProtocol,
            wallet: WalletKeyStore) -> FakePeerNetwork:
        fake = FakePeerNetwork(network, header_store, wallet, self.blocks_to_download,
            self.most_common_height)
        fake.fail_on_start = self.fail_on_start
        fake.fail_on_stop = self.fail_on_stop
        fake.connect_on_start = self.connect_on_start
        fake.disconnect_on_stop = self.disconnect_on_stop
        self.networks.append(fake)
        return fake

    @property
    def last(self) -> FakePeerNetwork:
        return self.networks[-1]
