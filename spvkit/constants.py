from enum import Enum, IntEnum


WALLET_EXT = ".wallet"
HEADERS_EXT = ".spvchain"
CHECKPOINTS_EXT = ".checkpoints"

DEFAULT_APP_NAME = "spvkit"
DEFAULT_KDF_ITERATIONS = 100000
DEFAULT_FEE_PER_KB = 500

# The size in bytes of the symmetric key produced by the key derivation function.
DERIVED_KEY_SIZE = 32
KDF_SALT_SIZE = 16

DUST_THRESHOLD = 546

# The number of downloaded blocks between sync progress notifications.
PROGRESS_REPORT_INTERVAL = 100

# Reported in place of a height or a progress value that is unknown or has not changed.
UNKNOWN_VALUE = -1


class ErrorKind(Enum):
    NO_WALLET = "no_wallet"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    CORRUPT = "corrupt"
    WRONG_PASSWORD = "wrong_password"
    NEEDS_PASSWORD = "needs_password"
    INVALID_ADDRESS = "invalid_address"
    INVALID_AMOUNT = "invalid_amount"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NO_PENDING_REQUEST = "no_pending_request"
    NETWORK_UNAVAILABLE = "network_unavailable"
    UNHANDLED = "unhandled"


class SyncStateKind(Enum):
    NOT_STARTED = "not_started"
    BOOTSTRAPPING = "bootstrapping"
    DOWNLOADING = "downloading"
    SYNCED = "synced"
    STOPPED = "stopped"
    FAILED = "failed"


ACTIVE_SYNC_STATES = { SyncStateKind.BOOTSTRAPPING, SyncStateKind.DOWNLOADING,
    SyncStateKind.SYNCED }


class BalanceType(IntEnum):
    # Confirmed coins plus the unconfirmed change of our own outgoing transactions.
    AVAILABLE = 0
    # Everything, including unconfirmed coins received from others.
    ESTIMATED = 1


class EventKind(Enum):
    SYNC_PROGRESS = "on_sync_progress"
    PEER_COUNT_CHANGED = "on_peer_count_changed"
    BALANCE_CHANGED = "on_balance_changed"
    TRANSACTION_CHANGED = "on_transaction_changed"
    TRANSACTION_SUCCEEDED = "on_transaction_succeeded"
    TRANSACTION_FAILED = "on_transaction_failed"
    COINS_RECEIVED = "on_coins_received"
    WALLET_CHANGED = "on_wallet_changed"
    SYNC_FAILED = "on_sync_failed"
    UNHANDLED_FAILURE = "on_unhandled_failure"


class KeyStoreEvent(Enum):
    COINS_RECEIVED = "coins_received"
    TRANSACTION_ADDED = "transaction_added"
    WALLET_CHANGED = "wallet_changed"


class TxConfidence(Enum):
    PENDING = "pending"
    BUILDING = "building"
