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
from typing import cast, Dict, List, NamedTuple, Optional, Sequence

from bitcoinx import (
    Address, hash_to_hex_str, pack_byte, P2PKH_Address, PrivateKey, PublicKey, Script, SigHash,
    Tx, TxInput, TxOutput
)

from .logs import logs


logger = logs.get_logger("transaction")

# Inputs are final, there is no use of replacement or lock times.
SEQUENCE_FINAL = 0xFFFFFFFF

# Serialised sizes used for fee estimation. A signed P2PKH input is at most
# 32 + 4 + 1 + (1 + 73) + (1 + 33) + 4 bytes, an output is 8 + 1 + 25 bytes.
P2PKH_INPUT_SIZE = 148
P2PKH_OUTPUT_SIZE = 34
TRANSACTION_OVERHEAD_SIZE = 10


class Coin(NamedTuple):
    '''An unspent output that the wallet can spend.'''
    tx_hash: bytes
    out_index: int
    value: int
    public_key_hex: str
    # Zero while the parent transaction is unconfirmed.
    height: int
    # Whether the parent transaction is one of our own outgoing transactions.
    is_own: bool

    def outpoint(self) -> str:
        return f"{hash_to_hex_str(self.tx_hash)}:{self.out_index}"


def txid_of(tx: Tx) -> str:
    return cast(str, hash_to_hex_str(tx.hash()))


def estimate_size(input_count: int, output_count: int) -> int:
    return TRANSACTION_OVERHEAD_SIZE + input_count * P2PKH_INPUT_SIZE + \
        output_count * P2PKH_OUTPUT_SIZE


def fee_for_size(size: int, fee_per_kb: int) -> int:
    # Round up, a fee is never allowed to fall below the rate.
    return (size * fee_per_kb + 999) // 1000


def _push_data(data: bytes) -> bytes:
    assert len(data) < 0x4c
    return pack_byte(len(data)) + data


def p2pkh_hash160(script_pubkey_bytes: bytes) -> Optional[bytes]:
    '''The public key hash if the script is a standard P2PKH output script.'''
    if len(script_pubkey_bytes) == 25 and script_pubkey_bytes[:3] == b'\x76\xa9\x14' \
            and script_pubkey_bytes[23:] == b'\x88\xac':
        return script_pubkey_bytes[3:23]
    return None


def p2pkh_script_sig_public_key(script_sig_bytes: bytes) -> Optional[bytes]:
    '''The public key pushed by a two item (signature, public key) P2PKH spending script.'''
    if not script_sig_bytes:
        return None
    signature_length = script_sig_bytes[0]
    offset = 1 + signature_length
    if offset >= len(script_sig_bytes):
        return None
    public_key_length = script_sig_bytes[offset]
    public_key_bytes = script_sig_bytes[offset+1:]
    if public_key_length not in (33, 65) or len(public_key_bytes) != public_key_length:
        return None
    return public_key_bytes


def output_address_string(output: TxOutput, coin: object) -> Optional[str]:
    hash160 = p2pkh_hash160(output.script_pubkey.to_bytes())
    if hash160 is None:
        return None
    return cast(str, P2PKH_Address(hash160, coin).to_string())


def input_address_string(txin: TxInput, coin: object) -> Optional[str]:
    public_key_bytes = p2pkh_script_sig_public_key(txin.script_sig.to_bytes())
    if public_key_bytes is None:
        return None
    try:
        public_key = PublicKey.from_bytes(public_key_bytes)
    except ValueError:
        return None
    return cast(str, public_key.to_address(network=coin).to_string())


def make_unsigned_transaction(coins: Sequence[Coin], outputs: List[TxOutput]) -> Tx:
    inputs = [ TxInput(coin.tx_hash, coin.out_index, Script(), SEQUENCE_FINAL)
        for coin in coins ]
    return Tx(1, inputs, outputs, 0)


def make_output(value: int, address: Address) -> TxOutput:
    return TxOutput(value, address.to_script())


SIGHASH_ALL_FORKID = int(SigHash.ALL | SigHash.FORKID)


def sign_transaction(tx: Tx, coins: Sequence[Coin],
        private_keys: Dict[str, PrivateKey]) -> None:
    '''Sign every input of `tx`, where `coins[i]` is the coin spent by input `i`.'''
    assert len(tx.inputs) == len(coins)
    sighash = SigHash(SIGHASH_ALL_FORKID)
    for input_index, coin in enumerate(coins):
        private_key = private_keys[coin.public_key_hex]
        public_key = private_key.public_key
        script_code = public_key.P2PKH_script().to_bytes()
        preimage_hash = tx.signature_hash(input_index, coin.value, script_code, sighash=sighash)
        signature = cast(bytes, private_key.sign(preimage_hash, None)) + \
            pack_byte(SIGHASH_ALL_FORKID)
        tx.inputs[input_index].script_sig = Script(_push_data(signature) +
            _push_data(public_key.to_bytes()))
    logger.debug("signed %d inputs of %s", len(coins), txid_of(tx))
