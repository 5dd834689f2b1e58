# SPVKit - lightweight SPV wallet core
# Copyright (C) 2019-2020 The ElectrumSV Developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

from typing import Callable, Optional, Tuple

from .async_ import FailureHandler
from .chain_bootstrap import ChainBootstrap
from .constants import ACTIVE_SYNC_STATES, EventKind, PROGRESS_REPORT_INTERVAL, SyncStateKind, \
    UNKNOWN_VALUE
from .event_bridge import EventBridge
from .exceptions import NetworkUnavailable
from .key_vault import KeyVault
from .logs import logs
from .simple_config import SimpleConfig
from .types import HeaderStoreFactory, HeaderStoreProtocol, PeerNetworkFactory, \
    PeerNetworkProtocol, PeerSource, SyncState
from .util import ReadWriteLock


logger = logs.get_logger("sync")

# The localhost peer used on regtest, where there is nothing to discover.
REGTEST_PEER_HOST = "localhost"


class SyncSessionListener:
    '''The peer event listener handed to the network for one sync session.'''

    def __init__(self, orchestrator: "SyncOrchestrator", session_id: int) -> None:
        self._orchestrator = orchestrator
        self._session_id = session_id

    def on_peer_connected(self, peer_count: int) -> None:
        self._orchestrator.on_peer_connected(self._session_id, peer_count)

    def on_peer_disconnected(self, peer_count: int) -> None:
        self._orchestrator.on_peer_disconnected(self._session_id, peer_count)

    def on_chain_download_started(self, blocks_left: int) -> None:
        self._orchestrator.on_chain_download_started(self._session_id, blocks_left)

    def on_block_downloaded(self, blocks_left: int) -> None:
        self._orchestrator.on_block_downloaded(self._session_id, blocks_left)

    def on_network_failure(self, reason: str) -> None:
        self._orchestrator.on_network_failure(self._session_id, reason)


class SyncOrchestrator:
    """
    Owns the sync state machine and the peer network and header store of the current session.

    Peer network callbacks arrive on the network's own threads. Each session gets its own
    listener, and callbacks from a session that has since been stopped or has failed are not
    allowed to change the state. The network is never started or stopped while the write lock is
    held, since both wait on peer threads that deliver callbacks through it.
    """

    def __init__(self, config: SimpleConfig, lock: ReadWriteLock, vault: KeyVault,
            bridge: EventBridge, bootstrap: ChainBootstrap,
            network_factory: Optional[PeerNetworkFactory],
            header_store_factory: HeaderStoreFactory,
            on_teardown: Optional[Callable[[], None]]=None,
            failure_handler: Optional[FailureHandler]=None) -> None:
        self._config = config
        self._lock = lock
        self._vault = vault
        self._bridge = bridge
        self._bootstrap = bootstrap
        self._network_factory = network_factory
        self._header_store_factory = header_store_factory
        self._on_teardown = on_teardown
        self._failure_handler = failure_handler

        self._state = SyncState(SyncStateKind.NOT_STARTED)
        self._session_id = 0
        self._network: Optional[PeerNetworkProtocol] = None
        self._header_store: Optional[HeaderStoreProtocol] = None
        self._stored_height = 0
        self._peer_count = 0

    def get_state(self) -> SyncState:
        with self._lock.read_lock():
            return self._state

    def _set_state(self, state: SyncState) -> None:
        if state.kind != self._state.kind:
            logger.debug("sync state %s -> %s", self._state.kind.name, state.kind.name)
        self._state = state

    def get_network(self) -> Optional[PeerNetworkProtocol]:
        '''The peer network, if a sync session is active.'''
        with self._lock.read_lock():
            if self._state.kind in ACTIVE_SYNC_STATES:
                return self._network
            return None

    def peer_count(self) -> int:
        with self._lock.read_lock():
            return self._peer_count

    def _current_head_values(self) -> Tuple[int, int]:
        if self._header_store is None:
            return UNKNOWN_VALUE, 0
        head = self._header_store.current_head()
        if head is None:
            return UNKNOWN_VALUE, 0
        return head.height, head.timestamp

    def chain_height(self) -> int:
        with self._lock.read_lock():
            return self._current_head_values()[0]

    def stored_height(self) -> int:
        '''The height of the header store when the current session started.'''
        with self._lock.read_lock():
            return self._stored_height

    def last_block_creation_time(self) -> int:
        with self._lock.read_lock():
            return self._current_head_values()[1]

    def _post_progress(self, progress: float, current_height: int,
            target_height: int=UNKNOWN_VALUE) -> None:
        self._bridge.post(EventKind.SYNC_PROGRESS, progress, current_height, target_height)

    def start_sync(self) -> SyncState:
        failure: Optional[str] = None
        with self._lock.write_lock():
            if self._state.kind in ACTIVE_SYNC_STATES:
                return self._state
            wallet = self._vault.require_wallet()
            if self._network_factory is None:
                raise NetworkUnavailable("No peer network factory was supplied")

            self._session_id += 1
            session_id = self._session_id
            self._set_state(SyncState(SyncStateKind.BOOTSTRAPPING))
            network_type = self._config.get_network()
            try:
                header_store = self._header_store_factory()
                self._header_store = header_store
                head = self._bootstrap.bootstrap(wallet, header_store, wallet.oldest_key_time())
                self._stored_height = head.height if head is not None else 0
                self._post_progress(0.0, self._stored_height)

                network = self._network_factory(network_type, header_store, wallet)
                self._network = network
                if network_type.DNS_SEEDS:
                    for seed in network_type.DNS_SEEDS:
                        network.add_peer_source(PeerSource(seed, network_type.DEFAULT_PORT, True))
                else:
                    network.add_peer_source(PeerSource(REGTEST_PEER_HOST,
                        network_type.DEFAULT_PORT, False))
            except Exception as e:
                logger.exception("preparing the sync session failed")
                failure = str(e) or type(e).__name__

        # Starting the network waits on peers, whose callbacks take the write lock.
        if failure is None and self._is_session(session_id):
            try:
                network.add_wallet(wallet)
                network.start(SyncSessionListener(self, session_id))
                self._bridge.post(EventKind.BALANCE_CHANGED)
                network.start_chain_download()
            except Exception as e:
                logger.exception("starting the sync session failed")
                failure = str(e) or type(e).__name__
        if failure is not None:
            self._fail(session_id, failure)
        return self.get_state()

    def stop(self) -> SyncState:
        with self._lock.write_lock():
            if self._state.kind in (SyncStateKind.NOT_STARTED, SyncStateKind.STOPPED):
                return self._state
            self._session_id += 1
            network, self._network = self._network, None
            header_store, self._header_store = self._header_store, None
            self._peer_count = 0
            self._set_state(SyncState(SyncStateKind.STOPPED))
            state = self._state

        self._teardown(network, header_store)
        logger.info("sync stopped")
        return state

    def _teardown(self, network: Optional[PeerNetworkProtocol],
            header_store: Optional[HeaderStoreProtocol]) -> None:
        try:
            if self._on_teardown is not None:
                self._on_teardown()
            if network is not None:
                try:
                    network.stop()
                except Exception as e:
                    logger.exception("stopping the peer network failed")
                    if self._failure_handler is not None:
                        self._failure_handler("stopping the peer network failed", e)
        finally:
            try:
                self._vault.save()
            finally:
                if header_store is not None:
                    header_store.close()

    def _fail(self, session_id: int, reason: str) -> None:
        with self._lock.write_lock():
            if session_id != self._session_id:
                return
            self._session_id += 1
            network, self._network = self._network, None
            header_store, self._header_store = self._header_store, None
            self._set_state(SyncState(SyncStateKind.FAILED, reason=reason))

        logger.error("sync failed: %s", reason)
        self._bridge.post(EventKind.SYNC_FAILED, reason)
        self._teardown(network, header_store)

    def _is_session(self, session_id: int) -> bool:
        with self._lock.read_lock():
            return session_id == self._session_id

    def _is_current(self, session_id: int) -> bool:
        return session_id == self._session_id and self._state.kind in ACTIVE_SYNC_STATES

    # Peer network callbacks.

    def on_peer_connected(self, session_id: int, peer_count: int) -> None:
        with self._lock.write_lock():
            network = self._network if self._is_current(session_id) else None
            if network is not None:
                self._peer_count = peer_count
        self._bridge.post(EventKind.PEER_COUNT_CHANGED, peer_count)
        if network is not None:
            # The height the host should expect the chain to reach.
            target_height = network.get_most_common_chain_height()
            self._post_progress(UNKNOWN_VALUE, UNKNOWN_VALUE, target_height)

    def on_peer_disconnected(self, session_id: int, peer_count: int) -> None:
        with self._lock.write_lock():
            if self._is_current(session_id):
                self._peer_count = peer_count
        self._bridge.post(EventKind.PEER_COUNT_CHANGED, peer_count)

    def on_chain_download_started(self, session_id: int, blocks_left: int) -> None:
        with self._lock.write_lock():
            if not self._is_current(session_id):
                logger.debug("ignoring chain download start from an old session")
                return
            current_height = self._current_head_values()[0]
            if blocks_left <= 0:
                self._set_state(SyncState(SyncStateKind.SYNCED))
                self._post_progress(1.0, current_height)
            else:
                self._set_state(SyncState(SyncStateKind.DOWNLOADING, target_height=blocks_left))
                self._post_progress(0.0, current_height)

    def on_block_downloaded(self, session_id: int, blocks_left: int) -> None:
        with self._lock.write_lock():
            if not self._is_current(session_id):
                return
            current_height = self._current_head_values()[0]
            state = self._state
            if state.kind == SyncStateKind.SYNCED:
                # New blocks once synchronised.
                self._post_progress(1.0, current_height)
                return
            if state.kind != SyncStateKind.DOWNLOADING:
                return

            target = state.target_height
            downloaded = max(state.downloaded_so_far + 1, target - blocks_left)
            downloaded = min(downloaded, target)
            is_first = state.downloaded_so_far == 0
            if downloaded >= target:
                self._set_state(SyncState(SyncStateKind.SYNCED, target, downloaded))
                self._post_progress(1.0, current_height)
                logger.info("sync complete at height %d", current_height)
                return

            self._set_state(SyncState(SyncStateKind.DOWNLOADING, target, downloaded))
            if is_first or blocks_left % PROGRESS_REPORT_INTERVAL == 0:
                self._post_progress(self._state.progress(), current_height)

    def on_network_failure(self, session_id: int, reason: str) -> None:
        with self._lock.read_lock():
            is_current = self._is_current(session_id)
        if is_current:
            self._fail(session_id, reason)
