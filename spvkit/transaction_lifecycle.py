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

import concurrent.futures
from functools import partial
import threading
from typing import Any, Callable, Dict, List, Optional, Set

from bitcoinx import Address

from .async_ import ASync
from .constants import EventKind, KeyStoreEvent
from .crypto import wipe_buffer
from .event_bridge import EventBridge
from .exceptions import InvalidAmount, NetworkUnavailable, NoPendingRequest
from .key_vault import KeyVault, PasswordType, wipe_password
from .keystore import WalletKeyStore
from .logs import logs
from .simple_config import SimpleConfig
from .transaction import txid_of
from .types import PeerNetworkProtocol, PendingSendRequest, TransactionEntry
from .util import ReadWriteLock


logger = logs.get_logger("transaction-lifecycle")

NetworkProvider = Callable[[], Optional[PeerNetworkProtocol]]


class TrackedTransactions:
    '''The ids of the unconfirmed transactions we are watching for confidence changes.'''

    def __init__(self) -> None:
        self._txids: Set[str] = set()
        self._lock = threading.Lock()

    def add(self, txid: str) -> bool:
        with self._lock:
            if txid in self._txids:
                return False
            self._txids.add(txid)
            return True

    def remove(self, txid: str) -> bool:
        with self._lock:
            if txid not in self._txids:
                return False
            self._txids.remove(txid)
            return True

    def txids(self) -> List[str]:
        with self._lock:
            return sorted(self._txids)

    def __contains__(self, txid: object) -> bool:
        with self._lock:
            return txid in self._txids

    def __len__(self) -> int:
        with self._lock:
            return len(self._txids)


class TransactionLifecycle:
    """
    Outgoing transactions from coin selection through to broadcast, and the confidence tracking
    of every unconfirmed transaction the wallet knows about.

    There is at most one built but uncommitted send request. Broadcasts run on the async thread
    and their completion comes back through the write lock, so each commit gets exactly one of
    `TRANSACTION_SUCCEEDED` or `TRANSACTION_FAILED`.
    """

    def __init__(self, config: SimpleConfig, lock: ReadWriteLock, vault: KeyVault,
            bridge: EventBridge, async_: ASync, tracked: TrackedTransactions,
            network_provider: NetworkProvider) -> None:
        self._config = config
        self._lock = lock
        self._vault = vault
        self._bridge = bridge
        self._async = async_
        self._tracked = tracked
        self._network_provider = network_provider
        self._wallet: Optional[WalletKeyStore] = None
        self._pending_request: Optional[PendingSendRequest] = None
        self._broadcasts: Dict[str, "concurrent.futures.Future[None]"] = {}

    # Wallet attachment and confidence tracking.

    def attach_wallet(self, wallet: WalletKeyStore) -> None:
        with self._lock.write_lock():
            assert self._wallet is None, "a wallet is already attached"
            self._wallet = wallet
            wallet.events.register_callback(self._on_keystore_event, [
                KeyStoreEvent.TRANSACTION_ADDED, KeyStoreEvent.COINS_RECEIVED,
                KeyStoreEvent.WALLET_CHANGED ])
            # There will be no new notification for transactions the wallet already knows.
            for txid in wallet.pending_transactions():
                self._track(txid)

    def detach_wallet(self) -> None:
        with self._lock.write_lock():
            wallet, self._wallet = self._wallet, None
            if wallet is None:
                return
            wallet.events.unregister_callbacks_for_object(self)
            for txid in self._tracked.txids():
                self._untrack(wallet, txid)
            self._pending_request = None

    def _track(self, txid: str) -> None:
        assert self._wallet is not None
        if self._tracked.add(txid):
            logger.debug("tracking transaction %s", txid)
            self._wallet.add_confidence_listener(txid, self._on_confidence_changed)

    def _untrack(self, wallet: WalletKeyStore, txid: str) -> None:
        if self._tracked.remove(txid):
            logger.debug("stopped tracking transaction %s", txid)
            wallet.remove_confidence_listener(txid, self._on_confidence_changed)

    def _on_keystore_event(self, event: KeyStoreEvent, *args: Any) -> None:
        if event == KeyStoreEvent.TRANSACTION_ADDED:
            txid, is_pending = args
            if is_pending:
                with self._lock.write_lock():
                    if self._wallet is not None:
                        self._track(txid)
        elif event == KeyStoreEvent.COINS_RECEIVED:
            self._bridge.post(EventKind.COINS_RECEIVED, args[0])
        elif event == KeyStoreEvent.WALLET_CHANGED:
            self._bridge.post(EventKind.WALLET_CHANGED)

    def _on_confidence_changed(self, txid: str, is_pending: bool) -> None:
        if not is_pending:
            with self._lock.write_lock():
                if self._wallet is not None:
                    self._untrack(self._wallet, txid)
        self._bridge.post(EventKind.TRANSACTION_CHANGED, txid)

    def tracked_transactions(self) -> List[str]:
        return self._tracked.txids()

    # Sending.

    def get_pending_request(self) -> Optional[PendingSendRequest]:
        with self._lock.read_lock():
            return self._pending_request

    def build_send(self, amount: int, destination: str,
            password: Optional[PasswordType]=None) -> int:
        """
        Select coins, compute the fee and sign a transaction paying `amount` satoshis to the
        `destination` address, keeping it as the pending send request. Returns the fee.
        """
        derived_key: Optional[bytearray] = None
        try:
            if type(amount) is not int or amount <= 0:
                raise InvalidAmount(f"Invalid amount {amount!r}, expected a positive number of "
                    "satoshis")
            with self._lock.write_lock():
                wallet = self._vault.require_wallet()
                wallet.decode_address(destination)
                self._pending_request = None

                derived_key = self._vault.derive_wallet_key(password)
                tx, fee = wallet.select_coins_and_fee(amount, destination, derived_key)
                self._pending_request = PendingSendRequest(destination, amount, fee, tx)
        finally:
            wipe_buffer(derived_key)
            wipe_password(password)
        logger.debug("built send of %d to %s with fee %d", amount, destination, fee)
        return fee

    def clear_send_request(self) -> None:
        with self._lock.write_lock():
            self._pending_request = None

    def commit_send(self) -> str:
        '''Commit the pending send request to the wallet and start broadcasting it.'''
        with self._lock.write_lock():
            request = self._pending_request
            if request is None:
                raise NoPendingRequest()
            network = self._network_provider()
            if network is None:
                raise NetworkUnavailable()
            wallet = self._vault.require_wallet()

            wallet.commit(request.tx)
            txid = txid_of(request.tx)
            self._track(txid)
            self._pending_request = None

            min_peers = self._config.get_network().BROADCAST_MIN_PEERS
            logger.debug("broadcasting %s, minimum peers %s", txid, min_peers)
            future = self._async.spawn(network.broadcast_transaction(request.tx, min_peers),
                partial(self._on_broadcast_done, txid))
            # A broadcast that completed immediately has already been reported.
            if not future.done():
                self._broadcasts[txid] = future

        self._bridge.post(EventKind.BALANCE_CHANGED)
        return txid

    def _on_broadcast_done(self, txid: str, future: "concurrent.futures.Future[None]") -> None:
        reason: Optional[str] = None
        with self._lock.write_lock():
            self._broadcasts.pop(txid, None)
            if future.cancelled():
                reason = "broadcast cancelled"
            else:
                exception = future.exception()
                if exception is not None:
                    reason = str(exception) or type(exception).__name__

        if reason is None:
            logger.debug("broadcast of %s succeeded", txid)
            self._bridge.post(EventKind.TRANSACTION_SUCCEEDED, txid)
        else:
            logger.debug("broadcast of %s failed: %s", txid, reason)
            self._bridge.post(EventKind.TRANSACTION_FAILED, txid, reason)

    def in_flight_broadcasts(self) -> List[str]:
        with self._lock.read_lock():
            return list(self._broadcasts)

    def stop(self) -> None:
        '''Cancel in-flight broadcasts, each reports `TRANSACTION_FAILED`.'''
        with self._lock.write_lock():
            futures = list(self._broadcasts.values())
        for future in futures:
            future.cancel()

    # Host transaction queries.

    def is_address_valid(self, address: str) -> bool:
        try:
            Address.from_string(address, self._config.get_network().COIN)
        except (TypeError, ValueError):
            return False
        return True

    def transaction_count(self) -> int:
        with self._lock.read_lock():
            return self._vault.require_wallet().transaction_count()

    def transaction(self, txid: str) -> Optional[TransactionEntry]:
        with self._lock.read_lock():
            return self._vault.require_wallet().transaction_entry(txid)

    def transaction_at(self, index: int) -> Optional[TransactionEntry]:
        '''The transaction at `index` in time order, most recent first.'''
        entries = self.transactions(index, 1)
        return entries[0] if entries else None

    def transactions(self, start: int, count: int) -> List[TransactionEntry]:
        if start < 0 or count <= 0:
            return []
        with self._lock.read_lock():
            wallet = self._vault.require_wallet()
            txids = wallet.transaction_ids_by_time()[start:start + count]
            entries = [ wallet.transaction_entry(txid) for txid in txids ]
        return [ entry for entry in entries if entry is not None ]

    def all_transactions(self, max_count: Optional[int]=None) -> List[TransactionEntry]:
        with self._lock.read_lock():
            wallet = self._vault.require_wallet()
            txids = wallet.transaction_ids_by_time()
            if max_count is not None and max_count >= 0:
                txids = txids[:max_count]
            entries = [ wallet.transaction_entry(txid) for txid in txids ]
        return [ entry for entry in entries if entry is not None ]
