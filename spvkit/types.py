from __future__ import annotations
import dataclasses
from typing import Any, Callable, Coroutine, List, NamedTuple, Optional, Protocol, Sequence, \
    Tuple, TYPE_CHECKING, TypedDict

from bitcoinx import Tx

from .constants import BalanceType, SyncStateKind, UNKNOWN_VALUE

if TYPE_CHECKING:
    from .crypto import KdfParams
    from .headers import CheckpointSnapshot
    from .networks import NetworkType


class ChainHead(NamedTuple):
    height: int
    block_hash: bytes
    timestamp: int


@dataclasses.dataclass(frozen=True)
class SyncState:
    kind: SyncStateKind
    target_height: int = UNKNOWN_VALUE
    downloaded_so_far: int = 0
    reason: Optional[str] = None

    def progress(self) -> float:
        if self.kind == SyncStateKind.SYNCED:
            return 1.0
        if self.kind != SyncStateKind.DOWNLOADING or self.target_height <= 0:
            return 0.0
        return min(1.0, self.downloaded_so_far / self.target_height)


@dataclasses.dataclass
class PendingSendRequest:
    destination: str
    amount: int
    fee: int
    tx: Tx


class KeyInfo(NamedTuple):
    public_key_hex: str
    address: str
    creation_time: int
    is_encrypted: bool


class TransactionDetail(TypedDict):
    address: str
    category: str


class TransactionEntry(TypedDict):
    txid: str
    amount: int
    time: int
    confidence: str
    details: List[TransactionDetail]


class PeerSource(NamedTuple):
    # Either a host name or address to connect to directly, or a DNS seed to discover peers from.
    host: str
    port: int
    is_dns_seed: bool


ConfidenceListener = Callable[[str, bool], None]


class PeerEventListener(Protocol):
    '''The callbacks the peer network makes, from its own threads, into the core.'''

    def on_peer_connected(self, peer_count: int) -> None:
        ...

    def on_peer_disconnected(self, peer_count: int) -> None:
        ...

    def on_chain_download_started(self, blocks_left: int) -> None:
        ...

    def on_block_downloaded(self, blocks_left: int) -> None:
        ...

    def on_network_failure(self, reason: str) -> None:
        ...


class PeerNetworkProtocol(Protocol):
    def add_peer_source(self, source: PeerSource) -> None:
        ...

    def add_wallet(self, wallet: WalletKeyStoreProtocol) -> None:
        ...

    def start(self, listener: PeerEventListener) -> None:
        ...

    def start_chain_download(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def get_most_common_chain_height(self) -> int:
        ...

    def broadcast_transaction(self, tx: Tx, min_peers: Optional[int]) \
            -> Coroutine[Any, Any, None]:
        '''Resolves once enough peers have announced the transaction back, or raises.'''
        ...


class HeaderStoreProtocol(Protocol):
    def open(self, path: str) -> None:
        ...

    def seed_from_checkpoint(self, snapshot: CheckpointSnapshot, since_timestamp: int) \
            -> Optional[ChainHead]:
        ...

    def current_head(self) -> Optional[ChainHead]:
        ...

    def close(self) -> None:
        ...


class WalletKeyStoreProtocol(Protocol):
    def generate_key(self) -> KeyInfo:
        ...

    def keys(self) -> List[KeyInfo]:
        ...

    def is_encrypted(self) -> bool:
        ...

    def kdf_params(self) -> Optional[KdfParams]:
        ...

    def encrypt(self, derived_key: bytearray, kdf_params: KdfParams) -> None:
        ...

    def decrypt(self, derived_key: bytearray) -> None:
        ...

    def balance(self, kind: BalanceType) -> int:
        ...

    def select_coins_and_fee(self, amount: int, destination: str,
            derived_key: Optional[bytearray]) -> Tuple[Tx, int]:
        ...

    def commit(self, tx: Tx) -> None:
        ...

    def pending_transactions(self) -> Sequence[str]:
        ...


PeerNetworkFactory = Callable[["NetworkType", HeaderStoreProtocol, WalletKeyStoreProtocol],
    PeerNetworkProtocol]
HeaderStoreFactory = Callable[[], HeaderStoreProtocol]
