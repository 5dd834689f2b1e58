import os
import threading
import time
from unittest.mock import patch

from bitcoinx import Address, PrivateKey, Tx
import pytest

from spvkit.constants import BalanceType, KeyStoreEvent, TxConfidence
from spvkit.crypto import derive_key, new_kdf_params, password_buffer
from spvkit.exceptions import Corrupt, InsufficientFunds, InvalidAddress, NeedsPassword, \
    WalletPersistenceError, WrongPassword
from spvkit.keystore import WalletKeyStore
from spvkit.networks import SVMainnet, SVRegTestnet
from spvkit.storage import WalletStorage
from spvkit.transaction import txid_of

from .util import foreign_address, fund_wallet, make_funding_transaction


def make_key(password: str, iterations: int=10):
    kdf_params = new_kdf_params(iterations)
    return derive_key(password_buffer(password), kdf_params), kdf_params


def test_create_new_persists(config) -> None:
    storage = WalletStorage(config.wallet_path())
    keystore = WalletKeyStore.create_new(storage, SVRegTestnet, 500)
    assert storage.exists()
    assert len(keystore.keys()) == 1
    assert not keystore.is_encrypted()
    assert keystore.last_change() > 0

    loaded = WalletKeyStore.load(storage, SVRegTestnet, 500)
    assert loaded.keys() == keystore.keys()


def test_create_new_encrypted_never_writes_plaintext(config) -> None:
    derived_key, kdf_params = make_key("pw")
    storage = WalletStorage(config.wallet_path())
    keystore = WalletKeyStore.create_new(storage, SVRegTestnet, 500, derived_key, kdf_params)
    assert keystore.is_encrypted()
    data = storage.read()
    assert data["encryption"] == kdf_params.to_dict()
    # The stored private key is the iv and ciphertext, not the 32 byte scalar.
    assert len(bytes.fromhex(data["keys"][0]["private_key"])) == 64


def test_load_wrong_network(config, keystore) -> None:
    with pytest.raises(Corrupt):
        WalletKeyStore.load(keystore.get_storage(), SVMainnet, 500)


def test_load_corrupt(config) -> None:
    storage = WalletStorage(config.wallet_path())
    storage.write({ "version": 1, "keys": "nonsense" })
    with pytest.raises(Corrupt):
        WalletKeyStore.load(storage, SVRegTestnet, 500)


def _break_public_key(data) -> None:
    data["keys"][0]["public_key"] = "zz"


def _break_private_key(data) -> None:
    data["keys"][0]["private_key"] = "00" * 31


def _swap_private_key(data) -> None:
    data["keys"][0]["private_key"] = "01" * 32


def _truncate_transaction(data) -> None:
    data["transactions"][0]["tx"] = data["transactions"][0]["tx"][:40]


def _mismatch_transaction_id(data) -> None:
    data["transactions"][0]["txid"] = "00" * 32


@pytest.mark.parametrize("damage", (_break_public_key, _break_private_key, _swap_private_key,
    _truncate_transaction, _mismatch_transaction_id))
def test_load_undecodable_data(keystore, coin, damage) -> None:
    fund_wallet(keystore, 100000, coin)
    storage = keystore.get_storage()
    data = storage.read()
    damage(data)
    storage.write(data)
    with pytest.raises(Corrupt):
        WalletKeyStore.load(storage, SVRegTestnet, 500)


def test_load_encrypted_data_is_not_decrypted(keystore) -> None:
    derived_key, kdf_params = make_key("pw")
    keystore.encrypt(derived_key, kdf_params)
    loaded = WalletKeyStore.load(keystore.get_storage(), SVRegTestnet, 500)
    assert loaded.is_encrypted()
    assert loaded.keys() == keystore.keys()


def test_generate_key(keystore) -> None:
    events = []
    keystore.events.register_callback(lambda event, *args: events.append(event),
        [ KeyStoreEvent.WALLET_CHANGED ])
    key = keystore.generate_key()
    assert len(keystore.keys()) == 2
    assert keystore.keys()[1] == key
    assert events == [ KeyStoreEvent.WALLET_CHANGED ]


def test_generate_key_encrypted(keystore) -> None:
    derived_key, kdf_params = make_key("pw")
    keystore.encrypt(derived_key, kdf_params)
    with pytest.raises(NeedsPassword):
        keystore.generate_key()
    wrong_key, _params = make_key("wrong")
    with pytest.raises(WrongPassword):
        keystore.generate_key(wrong_key)
    keystore.generate_key(derived_key)
    assert len(keystore.keys()) == 2
    keystore.check_derived_key(derived_key)


def test_encrypt_decrypt(keystore) -> None:
    dump_before = keystore.dump_keys(None)
    derived_key, kdf_params = make_key("pw")
    keystore.encrypt(derived_key, kdf_params)
    assert keystore.is_encrypted()
    assert keystore.kdf_params() == kdf_params
    assert keystore.dump_keys(None)[0][1] is None
    assert keystore.dump_keys(derived_key) == dump_before

    keystore.decrypt(derived_key)
    assert not keystore.is_encrypted()
    assert keystore.dump_keys(None) == dump_before


def test_decrypt_wrong_key_changes_nothing(keystore) -> None:
    keystore.generate_key()
    derived_key, kdf_params = make_key("pw")
    keystore.encrypt(derived_key, kdf_params)
    stored_before = keystore.get_storage().read()

    wrong_key, _params = make_key("wrong")
    with pytest.raises(WrongPassword):
        keystore.decrypt(wrong_key)
    assert keystore.is_encrypted()
    assert keystore.get_storage().read() == stored_before
    keystore.check_derived_key(derived_key)


def test_failed_write_discards_mutation(keystore) -> None:
    with patch.object(keystore.get_storage(), "write", side_effect=OSError("disk full")):
        with pytest.raises(WalletPersistenceError):
            keystore.generate_key()
    assert len(keystore.keys()) == 1


def test_receive_and_balance(keystore, coin) -> None:
    events = []
    keystore.events.register_callback(lambda event, *args: events.append((event, args)),
        list(KeyStoreEvent))

    confirmed_tx = fund_wallet(keystore, 100000, coin, height=1)
    pending_tx = fund_wallet(keystore, 20000, coin, height=0)
    assert keystore.balance(BalanceType.AVAILABLE) == 100000
    assert keystore.balance(BalanceType.ESTIMATED) == 120000
    assert keystore.pending_transactions() == [ txid_of(pending_tx) ]

    assert (KeyStoreEvent.TRANSACTION_ADDED, (txid_of(confirmed_tx), False)) in events
    assert (KeyStoreEvent.TRANSACTION_ADDED, (txid_of(pending_tx), True)) in events
    # Only unconfirmed received coins are announced.
    assert [ args for event, args in events if event == KeyStoreEvent.COINS_RECEIVED ] == \
        [ (txid_of(pending_tx),) ]


def test_receive_irrelevant(keystore, coin) -> None:
    tx = make_funding_transaction(foreign_address(coin), 1000, coin)
    assert not keystore.receive_transaction(tx, 1)
    assert keystore.transaction_count() == 0


def test_concurrent_delivery_recorded_once(keystore, coin) -> None:
    tx = make_funding_transaction(keystore.keys()[0].address, 5000, coin)
    added = []
    keystore.events.register_callback(lambda event, *args: added.append(args),
        [ KeyStoreEvent.TRANSACTION_ADDED ])
    real_is_relevant = keystore._is_relevant
    threads = []

    def is_relevant(state, candidate):
        if not threads:
            thread = threading.Thread(target=keystore.receive_transaction, args=(tx,))
            threads.append(thread)
            thread.start()
            # The second delivery gets past its unlocked check and waits on the lock.
            time.sleep(0.1)
        return real_is_relevant(state, candidate)

    with patch.object(keystore, "_is_relevant", is_relevant):
        assert keystore.receive_transaction(tx)
        threads[0].join(5)
    assert added == [ (txid_of(tx), True) ]
    assert keystore.transaction_count() == 1


def test_confidence_listeners(keystore, coin) -> None:
    tx = fund_wallet(keystore, 20000, coin, height=0)
    txid = txid_of(tx)
    calls = []
    def listener(listener_txid: str, is_pending: bool) -> None:
        calls.append((listener_txid, is_pending))

    keystore.add_confidence_listener(txid, listener)
    assert keystore.confidence_listener_count(txid) == 1
    keystore.set_transaction_height(txid, 10)
    keystore.set_transaction_height(txid, 10)
    assert calls == [ (txid, False) ]
    assert not keystore.is_pending(txid)

    keystore.remove_confidence_listener(txid, listener)
    assert keystore.confidence_listener_count() == 0


def test_select_coins_and_fee(keystore, coin) -> None:
    funding_tx = fund_wallet(keystore, 100000, coin)
    destination = foreign_address(coin)
    tx, fee = keystore.select_coins_and_fee(30000, destination, None)
    assert fee > 0
    assert len(tx.inputs) == 1
    assert tx.inputs[0].prev_hash == funding_tx.hash()
    assert tx.outputs[0].value == 30000
    assert tx.outputs[0].script_pubkey.to_bytes() == \
        Address.from_string(destination, coin).to_script().to_bytes()
    assert tx.outputs[1].value == 100000 - 30000 - fee
    assert tx.outputs[1].script_pubkey.to_bytes() == \
        Address.from_string(keystore.keys()[0].address, coin).to_script().to_bytes()
    assert len(tx.inputs[0].script_sig.to_bytes()) > 100

    # Selection does not change the wallet.
    assert keystore.balance(BalanceType.AVAILABLE) == 100000


def test_select_coins_and_fee_failures(keystore, coin) -> None:
    with pytest.raises(InvalidAddress):
        keystore.select_coins_and_fee(1000, "not an address", None)
    with pytest.raises(InsufficientFunds):
        keystore.select_coins_and_fee(1000, foreign_address(coin), None)

    fund_wallet(keystore, 100000, coin)
    derived_key, kdf_params = make_key("pw")
    keystore.encrypt(derived_key, kdf_params)
    with pytest.raises(NeedsPassword):
        keystore.select_coins_and_fee(1000, foreign_address(coin), None)
    wrong_key, _params = make_key("wrong")
    with pytest.raises(WrongPassword):
        keystore.select_coins_and_fee(1000, foreign_address(coin), wrong_key)
    tx, _fee = keystore.select_coins_and_fee(1000, foreign_address(coin), derived_key)
    assert isinstance(tx, Tx)


def test_commit_spends_and_keeps_change_available(keystore, coin) -> None:
    fund_wallet(keystore, 100000, coin)
    tx, fee = keystore.select_coins_and_fee(30000, foreign_address(coin), None)
    keystore.commit(tx)
    change = 100000 - 30000 - fee
    assert keystore.balance(BalanceType.AVAILABLE) == change
    assert keystore.balance(BalanceType.ESTIMATED) == change
    assert keystore.is_pending(txid_of(tx))

    # Committing again is a no-op.
    keystore.commit(tx)
    assert keystore.transaction_count() == 2


def test_transaction_entries(keystore, coin) -> None:
    funding_tx = fund_wallet(keystore, 100000, coin)
    tx, fee = keystore.select_coins_and_fee(30000, foreign_address(coin), None)
    keystore.commit(tx)

    entry = keystore.transaction_entry(txid_of(tx))
    assert entry is not None
    assert entry["amount"] == -(30000 + fee)
    assert entry["confidence"] == TxConfidence.PENDING.value
    assert entry["details"][0]["category"] == "sent"

    funding_entry = keystore.transaction_entry(txid_of(funding_tx))
    assert funding_entry is not None
    assert funding_entry["amount"] == 100000
    assert funding_entry["confidence"] == TxConfidence.BUILDING.value
    # The funding input is not a standard spend, so there is no sender address.
    assert funding_entry["details"] == []

    assert keystore.transaction_entry(os.urandom(32).hex()) is None


def test_clear_transactions(keystore, coin) -> None:
    fund_wallet(keystore, 100000, coin)
    keystore.clear_transactions()
    assert keystore.transaction_count() == 0
    assert keystore.balance(BalanceType.ESTIMATED) == 0


def test_dump_keys_wif(keystore) -> None:
    address, wif = keystore.dump_keys(None)[0]
    assert wif is not None
    private_key = PrivateKey.from_WIF(wif)
    assert private_key.public_key.to_bytes().hex() == keystore.keys()[0].public_key_hex
    assert address == keystore.keys()[0].address


def test_oldest_key_time(keystore) -> None:
    keystore.generate_key()
    assert keystore.oldest_key_time() == min(key.creation_time for key in keystore.keys())
