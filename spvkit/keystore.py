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

from __future__ import annotations
import copy
import dataclasses
import struct
import threading
import time
from typing import Any, Callable, cast, Dict, List, Optional, Sequence, Tuple, TypeVar

from bitcoinx import Address, hash_to_hex_str, PrivateKey, PublicKey, Tx

from .coinchooser import CoinChooser
from .constants import BalanceType, KeyStoreEvent, TxConfidence
from .crypto import decrypt_bytes, encrypt_bytes, KdfParams
from .exceptions import Corrupt, InvalidAddress, NeedsPassword, WalletPersistenceError, \
    WrongPassword
from .logs import logs
from .networks import NetworkType
from .storage import WalletStorage
from .transaction import Coin, estimate_size, fee_for_size, input_address_string, \
    make_output, make_unsigned_transaction, output_address_string, sign_transaction, txid_of
from .types import ConfidenceListener, KeyInfo, TransactionDetail, TransactionEntry
from .util import get_posix_timestamp, TriggeredCallbacks
from .version import WALLET_FILE_VERSION


logger = logs.get_logger("keystore")

T1 = TypeVar("T1")

PendingEvents = List[Tuple[KeyStoreEvent, Tuple[Any, ...]]]
PendingConfidence = List[Tuple[str, bool]]


def now_milliseconds() -> int:
    return int(time.time() * 1000)


@dataclasses.dataclass
class KeyRecord:
    public_key_hex: str
    # The hex encoded private scalar, or when encrypted the hex encoded iv and ciphertext.
    private_data: str
    creation_time: int


@dataclasses.dataclass
class TransactionRecord:
    tx_hex: str
    time: int
    # Zero while pending.
    height: int
    is_own: bool


@dataclasses.dataclass
class WalletState:
    network_name: str
    keys: List[KeyRecord]
    kdf_params: Optional[KdfParams]
    transactions: Dict[str, TransactionRecord]
    last_change: int

    def copy(self) -> WalletState:
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": WALLET_FILE_VERSION,
            "network": self.network_name,
            "keys": [ { "public_key": key.public_key_hex, "private_key": key.private_data,
                "creation_time": key.creation_time } for key in self.keys ],
            "encryption": self.kdf_params.to_dict() if self.kdf_params is not None else None,
            "transactions": [ { "txid": txid, "tx": record.tx_hex, "time": record.time,
                "height": record.height, "is_own": record.is_own }
                for txid, record in self.transactions.items() ],
            "extensions": { "last_wallet_change": self.last_change },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WalletState:
        try:
            if data["version"] != WALLET_FILE_VERSION:
                raise Corrupt(f"Unsupported wallet file version {data['version']}")
            keys = [ KeyRecord(str(entry["public_key"]), str(entry["private_key"]),
                int(entry["creation_time"])) for entry in data["keys"] ]
            encryption = data["encryption"]
            kdf_params = KdfParams.from_dict(encryption) if encryption is not None else None
            transactions = { str(entry["txid"]): TransactionRecord(str(entry["tx"]),
                int(entry["time"]), int(entry["height"]), bool(entry["is_own"]))
                for entry in data["transactions"] }
            last_change = int(data["extensions"]["last_wallet_change"])
            _check_decodable(keys, kdf_params is not None, transactions)
            return cls(str(data["network"]), keys, kdf_params, transactions, last_change)
        except (KeyError, TypeError, ValueError, struct.error) as e:
            raise Corrupt(f"Cannot read wallet data: {e!r}")


def _check_decodable(keys: List[KeyRecord], is_encrypted: bool,
        transactions: Dict[str, TransactionRecord]) -> None:
    for key in keys:
        PublicKey.from_bytes(bytes.fromhex(key.public_key_hex))
        private_data = bytes.fromhex(key.private_data)
        if not is_encrypted and PrivateKey(private_data).public_key.to_bytes().hex() != \
                key.public_key_hex:
            raise ValueError(f"private key does not match public key {key.public_key_hex}")
    for txid, record in transactions.items():
        if txid_of(Tx.from_hex(record.tx_hex)) != txid:
            raise ValueError(f"transaction data does not match id {txid}")


class WalletKeyStore:
    """
    A single wallet of independently generated keys, persisted as a JSON document.

    All mutations are applied to a copy of the current state, the copy is written to storage,
    and only then does it replace the current state. If the write fails the mutation is
    discarded and `WalletPersistenceError` is raised. Events are triggered after the internal
    lock has been released, so handlers are free to take their own locks.
    """

    def __init__(self, storage: WalletStorage, network: NetworkType, state: WalletState,
            fee_per_kb: int) -> None:
        self._storage = storage
        self._network = network
        self._state = state
        self._fee_per_kb = fee_per_kb
        self._lock = threading.RLock()
        self._coin_chooser = CoinChooser()
        self._confidence_listeners: Dict[str, List[ConfidenceListener]] = {}
        self._listener_lock = threading.Lock()
        self.events = TriggeredCallbacks[KeyStoreEvent]()

    @classmethod
    def create_new(cls, storage: WalletStorage, network: NetworkType, fee_per_kb: int,
            derived_key: Optional[bytearray]=None, kdf_params: Optional[KdfParams]=None) \
                -> WalletKeyStore:
        '''Create the wallet with its first key, encrypted if a key is given, in one write.'''
        private_key = PrivateKey.from_random()
        key = KeyRecord(private_key.public_key.to_bytes().hex(), private_key.to_bytes().hex(),
            get_posix_timestamp())
        state = WalletState(network.NAME, [ key ], None, {}, now_milliseconds())
        if derived_key is not None:
            assert kdf_params is not None
            _encrypt_state(state, derived_key, kdf_params)
        keystore = cls(storage, network, state, fee_per_kb)
        keystore.save()
        return keystore

    @classmethod
    def load(cls, storage: WalletStorage, network: NetworkType, fee_per_kb: int) \
            -> WalletKeyStore:
        state = WalletState.from_dict(storage.read())
        if state.network_name != network.NAME:
            raise Corrupt(f"The wallet is for the {state.network_name} network")
        return cls(storage, network, state, fee_per_kb)

    def get_storage(self) -> WalletStorage:
        return self._storage

    def save(self) -> None:
        with self._lock:
            self._write(self._state)

    def _write(self, state: WalletState) -> None:
        try:
            self._storage.write(state.to_dict())
        except OSError as e:
            logger.exception("failed writing wallet '%s'", self._storage.get_path())
            raise WalletPersistenceError(str(e)) from e

    def _mutate(self, mutation: Callable[[WalletState, PendingEvents, PendingConfidence], T1]) \
            -> T1:
        events: PendingEvents = []
        confidence_changes: PendingConfidence = []
        with self._lock:
            state = self._state.copy()
            result = mutation(state, events, confidence_changes)
            self._write(state)
            self._state = state

        for txid, is_pending in confidence_changes:
            self._notify_confidence_listeners(txid, is_pending)
        for event, args in events:
            self.events.trigger_callback(event, *args)
        return result

    # Keys.

    def _key_info(self, key: KeyRecord, is_encrypted: bool) -> KeyInfo:
        public_key = PublicKey.from_bytes(bytes.fromhex(key.public_key_hex))
        address = public_key.to_address(network=self._network.COIN).to_string()
        return KeyInfo(key.public_key_hex, address, key.creation_time, is_encrypted)

    def keys(self) -> List[KeyInfo]:
        state = self._state
        is_encrypted = state.kdf_params is not None
        return [ self._key_info(key, is_encrypted) for key in state.keys ]

    def generate_key(self, derived_key: Optional[bytearray]=None) -> KeyInfo:
        def mutation(state: WalletState, events: PendingEvents, _c: PendingConfidence) \
                -> KeyRecord:
            private_key = PrivateKey.from_random()
            private_data = private_key.to_bytes().hex()
            if state.kdf_params is not None:
                if derived_key is None:
                    raise NeedsPassword()
                # Adding a key must not leave keys encrypted under different keys.
                _decrypt_private_key(state.keys[0], derived_key)
                private_data = encrypt_bytes(derived_key, private_key.to_bytes()).hex()
            key = KeyRecord(private_key.public_key.to_bytes().hex(), private_data,
                get_posix_timestamp())
            state.keys.append(key)
            state.last_change = now_milliseconds()
            events.append((KeyStoreEvent.WALLET_CHANGED, ()))
            return key

        key = self._mutate(mutation)
        logger.debug("generated key %s", key.public_key_hex)
        return self._key_info(key, self.is_encrypted())

    def oldest_key_time(self) -> int:
        state = self._state
        if not state.keys:
            return 0
        return min(key.creation_time for key in state.keys)

    def dump_keys(self, derived_key: Optional[bytearray]) -> List[Tuple[str, Optional[str]]]:
        '''Every key address with its WIF private key, where the private key is available.'''
        state = self._state
        results: List[Tuple[str, Optional[str]]] = []
        for key in state.keys:
            info = self._key_info(key, state.kdf_params is not None)
            wif: Optional[str] = None
            if state.kdf_params is None:
                wif = PrivateKey(bytes.fromhex(key.private_data),
                    network=self._network.COIN).to_WIF()
            elif derived_key is not None:
                wif = PrivateKey(_decrypt_private_key(key, derived_key),
                    network=self._network.COIN).to_WIF()
            results.append((info.address, wif))
        return results

    # Encryption.

    def is_encrypted(self) -> bool:
        return self._state.kdf_params is not None

    def kdf_params(self) -> Optional[KdfParams]:
        return self._state.kdf_params

    def encrypt(self, derived_key: bytearray, kdf_params: KdfParams) -> None:
        self.change_encryption(None, derived_key, kdf_params)

    def decrypt(self, derived_key: bytearray) -> None:
        self.change_encryption(derived_key, None, None)

    def change_encryption(self, old_key: Optional[bytearray], new_key: Optional[bytearray],
            new_kdf_params: Optional[KdfParams]) -> None:
        """
        Decrypt with the old key if encrypted, then encrypt with the new key if one is given,
        as one persisted mutation. Nothing changes if any step fails.
        """
        def mutation(state: WalletState, events: PendingEvents, _c: PendingConfidence) -> None:
            if state.kdf_params is not None:
                if old_key is None:
                    raise NeedsPassword()
                _decrypt_state(state, old_key)
            if new_key is not None:
                assert new_kdf_params is not None
                _encrypt_state(state, new_key, new_kdf_params)
            state.last_change = now_milliseconds()
            events.append((KeyStoreEvent.WALLET_CHANGED, ()))

        self._mutate(mutation)

    def check_derived_key(self, derived_key: bytearray) -> None:
        '''Raises `WrongPassword` if the key cannot decrypt the wallet.'''
        state = self._state
        if state.kdf_params is None:
            return
        for key in state.keys:
            _decrypt_private_key(key, derived_key)

    # Extensions.

    def last_change(self) -> int:
        return self._state.last_change

    def touch_last_change(self) -> None:
        def mutation(state: WalletState, _e: PendingEvents, _c: PendingConfidence) -> None:
            state.last_change = now_milliseconds()
        self._mutate(mutation)

    # Coins and balance.

    def _scripts_by_key(self, state: WalletState) -> Dict[bytes, str]:
        scripts: Dict[bytes, str] = {}
        for key in state.keys:
            public_key = PublicKey.from_bytes(bytes.fromhex(key.public_key_hex))
            scripts[public_key.P2PKH_script().to_bytes()] = key.public_key_hex
        return scripts

    def _coins(self, state: WalletState) -> Dict[Tuple[bytes, int], Coin]:
        scripts = self._scripts_by_key(state)
        coins: Dict[Tuple[bytes, int], Coin] = {}
        spent: set = set()
        for record in state.transactions.values():
            tx = Tx.from_bytes(bytes.fromhex(record.tx_hex))
            tx_hash = tx.hash()
            for txin in tx.inputs:
                spent.add((txin.prev_hash, txin.prev_idx))
            for out_index, output in enumerate(tx.outputs):
                public_key_hex = scripts.get(output.script_pubkey.to_bytes())
                if public_key_hex is not None:
                    coins[(tx_hash, out_index)] = Coin(tx_hash, out_index, output.value,
                        public_key_hex, record.height, record.is_own)
        for outpoint in spent:
            coins.pop(outpoint, None)
        return coins

    def _spendable_coins(self, state: WalletState) -> List[Coin]:
        return [ coin for coin in self._coins(state).values() if coin.height > 0 or coin.is_own ]

    def balance(self, kind: BalanceType) -> int:
        state = self._state
        if kind == BalanceType.AVAILABLE:
            return sum(coin.value for coin in self._spendable_coins(state))
        return sum(coin.value for coin in self._coins(state).values())

    # Spending.

    def decode_address(self, address_string: str) -> Address:
        try:
            return Address.from_string(address_string, self._network.COIN)
        except (TypeError, ValueError) as e:
            raise InvalidAddress(f"Invalid address '{address_string}': {e}")

    def select_coins_and_fee(self, amount: int, destination: str,
            derived_key: Optional[bytearray]) -> Tuple[Tx, int]:
        """
        Build and sign a transaction paying `amount` to `destination`, with any change going to
        the first wallet key. The caller retains ownership of `derived_key`.

        Raises `InvalidAddress`, `InsufficientFunds`, `NeedsPassword` or `WrongPassword`.
        """
        address = self.decode_address(destination)
        state = self._state
        if state.kdf_params is not None and derived_key is None:
            raise NeedsPassword()

        def fee_estimator(input_count: int, output_count: int) -> int:
            return fee_for_size(estimate_size(input_count, output_count), self._fee_per_kb)

        destination_script = address.to_script().to_bytes()
        seed = destination_script + amount.to_bytes(8, 'little')
        selection = self._coin_chooser.choose_coins(self._spendable_coins(state), amount, seed,
            fee_estimator)

        outputs = [ make_output(amount, address) ]
        if selection.change:
            change_key = PublicKey.from_bytes(bytes.fromhex(state.keys[0].public_key_hex))
            outputs.append(make_output(selection.change,
                change_key.to_address(network=self._network.COIN)))
        tx = make_unsigned_transaction(selection.coins, outputs)

        keys_by_public_key = { key.public_key_hex: key for key in state.keys }
        private_keys: Dict[str, PrivateKey] = {}
        for coin in selection.coins:
            key = keys_by_public_key[coin.public_key_hex]
            if state.kdf_params is None:
                scalar = bytes.fromhex(key.private_data)
            else:
                assert derived_key is not None
                scalar = _decrypt_private_key(key, derived_key)
            private_keys[coin.public_key_hex] = PrivateKey(scalar, network=self._network.COIN)
        sign_transaction(tx, selection.coins, private_keys)
        return tx, selection.fee

    def commit(self, tx: Tx) -> None:
        '''Record a transaction of our own, spending its inputs and adding its change.'''
        txid = txid_of(tx)

        def mutation(state: WalletState, events: PendingEvents, _c: PendingConfidence) -> None:
            if txid in state.transactions:
                return
            state.transactions[txid] = TransactionRecord(tx.to_hex(), get_posix_timestamp(), 0,
                True)
            state.last_change = now_milliseconds()
            events.append((KeyStoreEvent.TRANSACTION_ADDED, (txid, True)))
            events.append((KeyStoreEvent.WALLET_CHANGED, ()))

        self._mutate(mutation)
        logger.debug("committed transaction %s", txid)

    # Transactions learned from the network.

    def _is_relevant(self, state: WalletState, tx: Tx) -> bool:
        scripts = self._scripts_by_key(state)
        if any(output.script_pubkey.to_bytes() in scripts for output in tx.outputs):
            return True
        coins = self._coins(state)
        return any((txin.prev_hash, txin.prev_idx) in coins for txin in tx.inputs)

    def receive_transaction(self, tx: Tx, height: int=0, timestamp: Optional[int]=None) -> bool:
        """
        Called by the peer network for every transaction that may be relevant to the wallet.
        Returns whether the wallet now knows the transaction.
        """
        txid = txid_of(tx)
        existing = self._state.transactions.get(txid)
        if existing is not None and existing.height == height:
            return True

        def mutation(state: WalletState, events: PendingEvents,
                confidence_changes: PendingConfidence) -> bool:
            # Another delivery of the same transaction may have got here first.
            record = state.transactions.get(txid)
            if record is not None:
                _apply_height(record, txid, height, events, confidence_changes)
                return True
            if not self._is_relevant(state, tx):
                return False
            value = self._transaction_value(state, tx)
            state.transactions[txid] = TransactionRecord(tx.to_hex(),
                timestamp if timestamp is not None else get_posix_timestamp(), height, False)
            state.last_change = now_milliseconds()
            events.append((KeyStoreEvent.TRANSACTION_ADDED, (txid, height == 0)))
            if value > 0 and height == 0:
                events.append((KeyStoreEvent.COINS_RECEIVED, (txid,)))
            events.append((KeyStoreEvent.WALLET_CHANGED, ()))
            return True

        return self._mutate(mutation)

    def set_transaction_height(self, txid: str, height: int) -> None:
        '''A confidence change, the transaction was mined (height > 0) or was reorged out.'''
        def mutation(state: WalletState, events: PendingEvents,
                confidence_changes: PendingConfidence) -> None:
            record = state.transactions.get(txid)
            if record is not None:
                _apply_height(record, txid, height, events, confidence_changes)

        self._mutate(mutation)

    def pending_transactions(self) -> List[str]:
        return [ txid for txid, record in self._state.transactions.items() if record.height == 0 ]

    def is_pending(self, txid: str) -> bool:
        record = self._state.transactions.get(txid)
        return record is not None and record.height == 0

    def clear_transactions(self) -> None:
        def mutation(state: WalletState, events: PendingEvents, _c: PendingConfidence) -> None:
            if state.transactions:
                state.transactions = {}
                events.append((KeyStoreEvent.WALLET_CHANGED, ()))

        self._mutate(mutation)

    # Confidence subscriptions.

    def add_confidence_listener(self, txid: str, listener: ConfidenceListener) -> None:
        with self._listener_lock:
            listeners = self._confidence_listeners.setdefault(txid, [])
            if listener not in listeners:
                listeners.append(listener)

    def remove_confidence_listener(self, txid: str, listener: ConfidenceListener) -> None:
        with self._listener_lock:
            listeners = self._confidence_listeners.get(txid, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._confidence_listeners.pop(txid, None)

    def confidence_listener_count(self, txid: Optional[str]=None) -> int:
        with self._listener_lock:
            if txid is not None:
                return len(self._confidence_listeners.get(txid, []))
            return sum(len(listeners) for listeners in self._confidence_listeners.values())

    def _notify_confidence_listeners(self, txid: str, is_pending: bool) -> None:
        with self._listener_lock:
            listeners = list(self._confidence_listeners.get(txid, []))
        for listener in listeners:
            listener(txid, is_pending)

    # Transaction history.

    def _parent_output_value(self, state: WalletState, prev_hash: bytes, prev_idx: int,
            scripts: Dict[bytes, str]) -> int:
        record = state.transactions.get(hash_to_hex_str(prev_hash))
        if record is None:
            return 0
        parent = Tx.from_bytes(bytes.fromhex(record.tx_hex))
        if prev_idx >= len(parent.outputs):
            return 0
        output = parent.outputs[prev_idx]
        if output.script_pubkey.to_bytes() in scripts:
            return cast(int, output.value)
        return 0

    def _transaction_value(self, state: WalletState, tx: Tx) -> int:
        '''The change in the wallet's funds caused by this transaction.'''
        scripts = self._scripts_by_key(state)
        received = sum(output.value for output in tx.outputs
            if output.script_pubkey.to_bytes() in scripts)
        spent = sum(self._parent_output_value(state, txin.prev_hash, txin.prev_idx, scripts)
            for txin in tx.inputs)
        return received - spent

    def transaction_ids_by_time(self) -> List[str]:
        '''Most recent first.'''
        items = list(self._state.transactions.items())
        items.sort(key=lambda item: item[1].time, reverse=True)
        return [ txid for txid, _record in items ]

    def transaction_count(self) -> int:
        return len(self._state.transactions)

    def transaction_entry(self, txid: str) -> Optional[TransactionEntry]:
        state = self._state
        record = state.transactions.get(txid)
        if record is None:
            return None
        tx = Tx.from_bytes(bytes.fromhex(record.tx_hex))
        value = self._transaction_value(state, tx)
        details: List[TransactionDetail] = []
        if tx.inputs and value > 0:
            address = input_address_string(tx.inputs[0], self._network.COIN)
            if address is not None:
                details.append({ "address": address, "category": "received" })
        if tx.outputs and value < 0:
            address = output_address_string(tx.outputs[0], self._network.COIN)
            if address is not None:
                details.append({ "address": address, "category": "sent" })
        confidence = TxConfidence.PENDING if record.height == 0 else TxConfidence.BUILDING
        return {
            "txid": txid,
            "amount": value,
            "time": record.time,
            "confidence": confidence.value,
            "details": details,
        }


def _decrypt_private_key(key: KeyRecord, derived_key: bytearray) -> bytes:
    scalar = decrypt_bytes(derived_key, bytes.fromhex(key.private_data))
    try:
        private_key = PrivateKey(scalar)
    except ValueError:
        raise WrongPassword()
    if private_key.public_key.to_bytes().hex() != key.public_key_hex:
        raise WrongPassword()
    return scalar


def _encrypt_state(state: WalletState, derived_key: bytearray, kdf_params: KdfParams) -> None:
    assert state.kdf_params is None, "already encrypted"
    for key in state.keys:
        key.private_data = encrypt_bytes(derived_key, bytes.fromhex(key.private_data)).hex()
    state.kdf_params = kdf_params


def _decrypt_state(state: WalletState, derived_key: bytearray) -> None:
    assert state.kdf_params is not None, "not encrypted"
    for key in state.keys:
        key.private_data = _decrypt_private_key(key, derived_key).hex()
    state.kdf_params = None


def _apply_height(record: TransactionRecord, txid: str, height: int, events: PendingEvents,
        confidence_changes: PendingConfidence) -> None:
    if record.height == height:
        return
    record.height = height
    confidence_changes.append((txid, height == 0))
    events.append((KeyStoreEvent.WALLET_CHANGED, ()))
