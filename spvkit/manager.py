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

import functools
from types import TracebackType
from typing import Any, Callable, List, Optional, Type, TypeVar

from .async_ import ASync
from .chain_bootstrap import ChainBootstrap
from .constants import BalanceType, EventKind
from .event_bridge import EventBridge, ExceptionSink
from .exceptions import SPVKitError, Unhandled
from .headers import SPVHeaderStore
from .key_vault import KeyVault, PasswordType
from .keystore import WalletKeyStore
from .logs import logs
from .simple_config import SimpleConfig
from .sync import SyncOrchestrator
from .transaction_lifecycle import TrackedTransactions, TransactionLifecycle
from .types import HeaderStoreFactory, PeerNetworkFactory, SyncState, TransactionEntry
from .util import ReadWriteLock


logger = logs.get_logger("manager")

T1 = TypeVar("T1", bound=Callable[..., Any])


def host_command(func: T1) -> T1:
    '''Failures that are not one of our own errors are reported and raised as `Unhandled`.'''
    @functools.wraps(func)
    def wrapper(self: "SPVManager", *args: Any, **kwargs: Any) -> Any:
        try:
            return func(self, *args, **kwargs)
        except SPVKitError:
            raise
        except Exception as e:
            logger.exception("unhandled failure in '%s'", func.__name__)
            self.exception_sink.report(f"'{func.__name__}' failed", e)
            raise Unhandled(f"'{func.__name__}' failed: {e!r}") from e
    return wrapper # type: ignore


class SPVManager:
    """
    The host application's interface to the wallet core.

    Owns exactly one of each core component, the lock they share, the async thread that runs
    broadcasts and the bridge that delivers notifications. Use it as a context manager, or call
    `open` and `close`.
    """

    def __init__(self, config: SimpleConfig,
            network_factory: Optional[PeerNetworkFactory]=None,
            header_store_factory: Optional[HeaderStoreFactory]=None) -> None:
        self.config = config
        self._lock = ReadWriteLock()
        self._is_open = False

        self.bridge = EventBridge()
        self.exception_sink = ExceptionSink(self.bridge)
        self.async_ = ASync(failure_handler=self.exception_sink.report)
        self.tracked_transactions = TrackedTransactions()

        self.key_vault = KeyVault(config, self._lock, self._on_wallet_activated)
        self.chain_bootstrap = ChainBootstrap(config)
        self.sync = SyncOrchestrator(config, self._lock, self.key_vault, self.bridge,
            self.chain_bootstrap, network_factory,
            header_store_factory if header_store_factory is not None else SPVHeaderStore,
            on_teardown=self._on_sync_teardown, failure_handler=self.exception_sink.report)
        self.transactions = TransactionLifecycle(config, self._lock, self.key_vault,
            self.bridge, self.async_, self.tracked_transactions, self.sync.get_network)

    def open(self) -> None:
        if self._is_open:
            return
        self.bridge.start()
        self.async_.__enter__()
        self.exception_sink.install()
        self._is_open = True
        logger.debug("opened, network %s, data directory '%s'",
            self.config.get_network().NAME, self.config.path)

    def close(self) -> None:
        if not self._is_open:
            return
        self._is_open = False
        self.sync.stop()
        self.transactions.stop()
        self.transactions.detach_wallet()
        self.key_vault.close()
        self.async_.__exit__(None, None, None)
        self.bridge.flush()
        self.bridge.stop()
        self.exception_sink.uninstall()
        logger.debug("closed")

    def __enter__(self) -> "SPVManager":
        self.open()
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]],
            exc_value: Optional[BaseException], traceback: Optional[TracebackType]) -> None:
        self.close()

    def _on_wallet_activated(self, wallet: WalletKeyStore) -> None:
        self.transactions.attach_wallet(wallet)

    def _on_sync_teardown(self) -> None:
        self.transactions.stop()

    # Notifications.

    def register_callback(self, callback: Callable[..., None], kinds: List[EventKind]) -> None:
        self.bridge.register_callback(callback, kinds)

    def unregister_callback(self, callback: Callable[..., None]) -> None:
        self.bridge.unregister_callback(callback)

    # Wallet.

    @host_command
    def wallet_exists(self) -> bool:
        return self.key_vault.wallet_exists()

    @host_command
    def create_wallet(self, password: Optional[PasswordType]=None) -> None:
        self.key_vault.create(password)

    @host_command
    def load_wallet(self) -> None:
        self.key_vault.load()

    @host_command
    def change_wallet_password(self, old_password: Optional[PasswordType]=None,
            new_password: Optional[PasswordType]=None) -> None:
        self.key_vault.change_password(old_password, new_password)

    @host_command
    def is_wallet_encrypted(self) -> bool:
        return self.key_vault.is_encrypted()

    @host_command
    def balance(self, kind: BalanceType=BalanceType.AVAILABLE) -> int:
        return self.key_vault.balance(kind)

    def available_balance(self) -> int:
        return self.balance(BalanceType.AVAILABLE)

    def estimated_balance(self) -> int:
        return self.balance(BalanceType.ESTIMATED)

    @host_command
    def add_key(self, password: Optional[PasswordType]=None) -> str:
        return self.key_vault.add_key(password)

    @host_command
    def wallet_address(self) -> Optional[str]:
        return self.key_vault.wallet_address()

    @host_command
    def all_wallet_addresses(self) -> List[str]:
        return self.key_vault.all_wallet_addresses()

    @host_command
    def last_wallet_change(self) -> int:
        return self.key_vault.last_wallet_change()

    @host_command
    def update_last_wallet_change(self) -> None:
        self.key_vault.update_last_wallet_change()

    @host_command
    def save_wallet(self) -> None:
        self.key_vault.save()

    @host_command
    def wallet_file_base64(self) -> Optional[str]:
        return self.key_vault.wallet_file_base64()

    @host_command
    def wallet_dump(self, password: Optional[PasswordType]=None) -> str:
        return self.key_vault.wallet_dump(password)

    # Synchronisation.

    @host_command
    def start_sync(self) -> SyncState:
        return self.sync.start_sync()

    @host_command
    def stop(self) -> SyncState:
        return self.sync.stop()

    def sync_state(self) -> SyncState:
        return self.sync.get_state()

    def chain_height(self) -> int:
        return self.sync.chain_height()

    def peer_count(self) -> int:
        return self.sync.peer_count()

    def last_block_creation_time(self) -> int:
        return self.sync.last_block_creation_time()

    # Transactions.

    @host_command
    def build_send(self, amount: int, destination: str,
            password: Optional[PasswordType]=None) -> int:
        return self.transactions.build_send(amount, destination, password)

    @host_command
    def commit_send(self) -> str:
        return self.transactions.commit_send()

    @host_command
    def clear_send_request(self) -> None:
        self.transactions.clear_send_request()

    def is_address_valid(self, address: str) -> bool:
        return self.transactions.is_address_valid(address)

    @host_command
    def transaction_count(self) -> int:
        return self.transactions.transaction_count()

    @host_command
    def transaction(self, txid: str) -> Optional[TransactionEntry]:
        return self.transactions.transaction(txid)

    @host_command
    def transaction_at(self, index: int) -> Optional[TransactionEntry]:
        return self.transactions.transaction_at(index)

    @host_command
    def transactions_range(self, start: int, count: int) -> List[TransactionEntry]:
        return self.transactions.transactions(start, count)

    @host_command
    def all_transactions(self, max_count: Optional[int]=None) -> List[TransactionEntry]:
        return self.transactions.all_transactions(max_count)
