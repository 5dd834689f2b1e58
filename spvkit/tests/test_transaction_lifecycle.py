from unittest.mock import patch

import pytest

from spvkit.constants import EventKind
from spvkit.exceptions import InsufficientFunds, InvalidAddress, InvalidAmount, \
    NeedsPassword, NetworkUnavailable, NoPendingRequest, NoWallet, WrongPassword
from spvkit.manager import SPVManager
from spvkit.transaction import txid_of
from spvkit.transaction_lifecycle import TrackedTransactions

from .util import EventRecorder, foreign_address, fund_wallet, make_funding_transaction


FUNDING = 100000
AMOUNT = 10000


@pytest.fixture
def funded_manager(manager, coin):
    manager.create_wallet()
    fund_wallet(manager.key_vault.get_wallet(), FUNDING, coin)
    return manager


@pytest.fixture
def syncing_manager(manager, coin):
    manager.create_wallet()
    # Funded after the sync starts, a fresh header store clears the wallet history.
    manager.start_sync()
    fund_wallet(manager.key_vault.get_wallet(), FUNDING, coin)
    return manager


def test_tracked_transactions() -> None:
    tracked = TrackedTransactions()
    assert tracked.add("b")
    assert tracked.add("a")
    assert not tracked.add("a")
    assert tracked.txids() == [ "a", "b" ]
    assert "a" in tracked and len(tracked) == 2
    assert tracked.remove("a")
    assert not tracked.remove("a")
    assert tracked.txids() == [ "b" ]


@pytest.mark.parametrize("amount", (0, -1, 1.5, True, "1000"))
def test_build_invalid_amount(funded_manager, coin, amount) -> None:
    with pytest.raises(InvalidAmount):
        funded_manager.build_send(amount, foreign_address(coin))
    assert funded_manager.transactions.get_pending_request() is None


def test_build_invalid_address(funded_manager) -> None:
    with pytest.raises(InvalidAddress):
        funded_manager.build_send(AMOUNT, "not an address")


def test_build_insufficient_funds(funded_manager, coin) -> None:
    with pytest.raises(InsufficientFunds):
        funded_manager.build_send(FUNDING * 2, foreign_address(coin))
    assert funded_manager.transactions.get_pending_request() is None


def test_build_replaces_previous_request(funded_manager, coin) -> None:
    first_destination = foreign_address(coin)
    second_destination = foreign_address(coin)
    funded_manager.build_send(AMOUNT, first_destination)
    fee = funded_manager.build_send(AMOUNT * 2, second_destination)

    request = funded_manager.transactions.get_pending_request()
    assert request is not None
    assert request.destination == second_destination
    assert request.amount == AMOUNT * 2
    assert request.fee == fee


def test_failed_build_discards_previous_request(funded_manager, coin) -> None:
    funded_manager.build_send(AMOUNT, foreign_address(coin))
    with pytest.raises(InsufficientFunds):
        funded_manager.build_send(FUNDING * 2, foreign_address(coin))
    assert funded_manager.transactions.get_pending_request() is None


def test_build_encrypted_wallet(manager, coin) -> None:
    manager.create_wallet("pw")
    fund_wallet(manager.key_vault.get_wallet(), FUNDING, coin)
    destination = foreign_address(coin)
    with pytest.raises(NeedsPassword):
        manager.build_send(AMOUNT, destination)
    with pytest.raises(WrongPassword):
        manager.build_send(AMOUNT, destination, "wrong")
    assert manager.build_send(AMOUNT, destination, "pw") > 0


def test_build_wipes_signing_key(manager, coin) -> None:
    manager.create_wallet("pw")
    wallet = manager.key_vault.get_wallet()
    fund_wallet(wallet, FUNDING, coin)
    signing_keys = []
    real_select = wallet.select_coins_and_fee

    def select_coins_and_fee(amount, destination, derived_key):
        signing_keys.append(derived_key)
        return real_select(amount, destination, derived_key)

    password = bytearray(b"pw")
    with patch.object(wallet, "select_coins_and_fee", select_coins_and_fee):
        assert manager.build_send(AMOUNT, foreign_address(coin), password) > 0
    assert len(signing_keys) == 1
    assert signing_keys[0] == bytearray(len(signing_keys[0]))
    assert password == bytearray(2)


@pytest.mark.parametrize("amount,destination,error", (
    (AMOUNT, "nope", InvalidAddress),
    (0, None, InvalidAmount),
    (FUNDING * 2, None, InsufficientFunds),
))
def test_failed_build_wipes_password(manager, coin, amount, destination, error) -> None:
    manager.create_wallet("pw")
    fund_wallet(manager.key_vault.get_wallet(), FUNDING, coin)
    password = bytearray(b"pw")
    with pytest.raises(error):
        manager.build_send(amount, destination or foreign_address(coin), password)
    assert password == bytearray(2)


def test_build_without_wallet_wipes_password(manager, coin) -> None:
    password = bytearray(b"pw")
    with pytest.raises(NoWallet):
        manager.build_send(AMOUNT, foreign_address(coin), password)
    assert password == bytearray(2)


def test_commit_without_request(syncing_manager) -> None:
    with pytest.raises(NoPendingRequest):
        syncing_manager.commit_send()


def test_commit_without_network(funded_manager, coin) -> None:
    funded_manager.build_send(AMOUNT, foreign_address(coin))
    with pytest.raises(NetworkUnavailable):
        funded_manager.commit_send()
    # The request survives for a later attempt.
    assert funded_manager.transactions.get_pending_request() is not None


def test_clear_send_request(funded_manager, coin) -> None:
    funded_manager.build_send(AMOUNT, foreign_address(coin))
    funded_manager.clear_send_request()
    with pytest.raises(NoPendingRequest):
        funded_manager.commit_send()


def test_commit_and_broadcast(syncing_manager, recorder, network_factory, coin) -> None:
    manager = syncing_manager
    wallet = manager.key_vault.get_wallet()
    fee = manager.build_send(AMOUNT, foreign_address(coin))
    txid = manager.commit_send()

    succeeded = recorder.wait_for(EventKind.TRANSACTION_SUCCEEDED)
    manager.bridge.flush()
    assert succeeded == [ (txid,) ]
    assert recorder.of_kind(EventKind.TRANSACTION_FAILED) == []
    assert EventKind.BALANCE_CHANGED in [ kind for kind, _args in recorder.events ]

    network = network_factory.last
    assert len(network.broadcasts) == 1
    tx, min_peers = network.broadcasts[0]
    assert txid_of(tx) == txid
    assert min_peers == 1

    assert manager.transactions.get_pending_request() is None
    assert wallet.is_pending(txid)
    assert manager.tracked_transactions.txids() == [ txid ]
    assert manager.available_balance() == FUNDING - AMOUNT - fee
    assert manager.transactions.in_flight_broadcasts() == []

    with pytest.raises(NoPendingRequest):
        manager.commit_send()


def test_broadcast_failure(syncing_manager, recorder, network_factory, coin) -> None:
    network_factory.last.broadcast_error = ConnectionError("peers rejected it")
    syncing_manager.build_send(AMOUNT, foreign_address(coin))
    txid = syncing_manager.commit_send()

    failed = recorder.wait_for(EventKind.TRANSACTION_FAILED)
    syncing_manager.bridge.flush()
    assert failed == [ (txid, "peers rejected it") ]
    assert recorder.of_kind(EventKind.TRANSACTION_SUCCEEDED) == []


def test_stop_cancels_broadcast(syncing_manager, recorder, network_factory, coin) -> None:
    network = network_factory.last
    network.broadcast_hangs = True
    syncing_manager.build_send(AMOUNT, foreign_address(coin))
    txid = syncing_manager.commit_send()
    assert network.broadcast_started.wait(5)
    assert syncing_manager.transactions.in_flight_broadcasts() == [ txid ]

    syncing_manager.stop()
    failed = recorder.wait_for(EventKind.TRANSACTION_FAILED)
    assert failed == [ (txid, "broadcast cancelled") ]
    assert syncing_manager.transactions.in_flight_broadcasts() == []

    syncing_manager.close()
    assert recorder.of_kind(EventKind.TRANSACTION_FAILED) == [ (txid, "broadcast cancelled") ]
    assert recorder.of_kind(EventKind.TRANSACTION_SUCCEEDED) == []


def test_confirmation_ends_tracking(syncing_manager, recorder, coin) -> None:
    manager = syncing_manager
    wallet = manager.key_vault.get_wallet()
    manager.build_send(AMOUNT, foreign_address(coin))
    txid = manager.commit_send()
    recorder.wait_for(EventKind.TRANSACTION_SUCCEEDED)
    assert wallet.confidence_listener_count(txid) == 1

    wallet.set_transaction_height(txid, 5)
    wallet.set_transaction_height(txid, 6)
    manager.bridge.flush()
    assert recorder.of_kind(EventKind.TRANSACTION_CHANGED) == [ (txid,) ]
    assert wallet.confidence_listener_count(txid) == 0
    assert manager.tracked_transactions.txids() == []


def test_incoming_pending_transactions(funded_manager, recorder, coin) -> None:
    wallet = funded_manager.key_vault.get_wallet()
    tx = make_funding_transaction(funded_manager.wallet_address(), 5000, coin)
    assert wallet.receive_transaction(tx)
    funded_manager.bridge.flush()

    txid = txid_of(tx)
    assert recorder.of_kind(EventKind.COINS_RECEIVED) == [ (txid,) ]
    assert funded_manager.tracked_transactions.txids() == [ txid ]
    assert funded_manager.estimated_balance() == FUNDING + 5000
    assert funded_manager.available_balance() == FUNDING


def test_loaded_pending_transactions_are_tracked(config, coin, network_factory) -> None:
    with SPVManager(config, network_factory) as manager:
        manager.create_wallet()
        wallet = manager.key_vault.get_wallet()
        txids = []
        for value in (1000, 2000, 3000):
            tx = make_funding_transaction(manager.wallet_address(), value, coin)
            wallet.receive_transaction(tx)
            txids.append(txid_of(tx))
        fund_wallet(wallet, FUNDING, coin)

    with SPVManager(config, network_factory) as manager:
        manager.load_wallet()
        wallet = manager.key_vault.get_wallet()
        assert manager.tracked_transactions.txids() == sorted(txids)
        assert wallet.confidence_listener_count() == 3

        recorder = EventRecorder()
        manager.register_callback(recorder, [ EventKind.TRANSACTION_CHANGED ])
        for txid in txids:
            wallet.set_transaction_height(txid, 10)
        manager.bridge.flush()
        assert sorted(recorder.of_kind(EventKind.TRANSACTION_CHANGED)) == \
            sorted((txid,) for txid in txids)
        assert manager.tracked_transactions.txids() == []
        assert wallet.confidence_listener_count() == 0


def test_transaction_queries(funded_manager, coin) -> None:
    manager = funded_manager
    wallet = manager.key_vault.get_wallet()
    first_tx = make_funding_transaction(manager.wallet_address(), 7000, coin)
    wallet.receive_transaction(first_tx, 2, timestamp=1)
    second_tx = make_funding_transaction(manager.wallet_address(), 8000, coin)
    wallet.receive_transaction(second_tx, 0, timestamp=2)

    assert manager.transaction_count() == 3
    entry = manager.transaction(txid_of(second_tx))
    assert entry is not None
    assert entry["amount"] == 8000
    assert entry["confidence"] == "pending"
    assert manager.transaction(txid_of(first_tx))["confidence"] == "building"
    assert manager.transaction("00" * 32) is None

    entries = manager.all_transactions()
    assert len(entries) == 3
    assert manager.all_transactions(1) == entries[:1]
    assert manager.transactions_range(1, 5) == entries[1:]
    assert manager.transactions_range(5, 1) == []
    assert manager.transactions_range(-1, 1) == []
    assert manager.transaction_at(2) == entries[2]
    assert manager.transaction_at(3) is None
    # Most recent first, the wallet funding was received just now.
    assert [ entry["txid"] for entry in entries[1:] ] == [ txid_of(second_tx), txid_of(first_tx) ]


def test_sent_transaction_entry(syncing_manager, recorder, coin) -> None:
    destination = foreign_address(coin)
    fee = syncing_manager.build_send(AMOUNT, destination)
    txid = syncing_manager.commit_send()
    recorder.wait_for(EventKind.TRANSACTION_SUCCEEDED)
    entry = syncing_manager.transaction(txid)
    assert entry["amount"] == -(AMOUNT + fee)
    assert entry["details"] == [ { "address": destination, "category": "sent" } ]


def test_is_address_valid(manager, coin) -> None:
    assert manager.is_address_valid(foreign_address(coin))
    assert not manager.is_address_valid("")
    assert not manager.is_address_valid("1BoatSLRHtKNngkdXEeobR76b53LETtpyT")
