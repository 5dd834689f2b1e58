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

from typing import Callable, List, NamedTuple, Sequence, TypeVar

from bitcoinx import sha256

from .constants import DUST_THRESHOLD
from .exceptions import InsufficientFunds
from .logs import logs
from .transaction import Coin


T = TypeVar("T")


logger = logs.get_logger("coinchooser")

# Given the number of inputs and outputs return the fee for a transaction of that shape.
FeeEstimator = Callable[[int, int], int]


class CoinSelection(NamedTuple):
    coins: List[Coin]
    fee: int
    # Zero when the remainder is dust and goes to the fee.
    change: int


# A simple deterministic PRNG.  Used to deterministically shuffle a
# set of coins - the same set of coins should produce the same output.
# Although choosing UTXOs "randomly" we want it to be deterministic,
# so if sending twice from the same UTXO set we choose the same UTXOs
# to spend.  This prevents attacks on users by malicious or stale
# servers.
class PRNG:
    def __init__(self, seed: bytes) -> None:
        self.sha = sha256(seed)
        self.pool = bytearray()

    def get_bytes(self, n: int) -> bytes:
        while len(self.pool) < n:
            self.pool.extend(self.sha)
            self.sha = sha256(self.sha)
        result, self.pool = self.pool[:n], self.pool[n:]
        return bytes(result)

    def randint(self, start: int, end: int) -> int:
        # Returns random integer in [start, end)
        n = end - start
        r = 0
        p = 1
        while p < n:
            r = self.get_bytes(1)[0] + (r << 8)
            p = p << 8
        return start + (r % n)

    def shuffle(self, x: List[T]) -> None:
        for i in reversed(range(1, len(x))):
            # pick an element in x[:i+1] with which to exchange x[i]
            j = self.randint(0, i+1)
            x[i], x[j] = x[j], x[i]


class CoinChooser:
    def _sufficient(self, coins: Sequence[Coin], amount: int, fee_estimator: FeeEstimator) \
            -> bool:
        return sum(coin.value for coin in coins) >= amount + fee_estimator(len(coins), 1)

    def strip_unneeded_coins(self, coins: List[Coin], amount: int,
            fee_estimator: FeeEstimator) -> List[Coin]:
        '''Remove coins that are unnecessary in achieving the spend amount'''
        coins = sorted(coins, key=lambda coin: coin.value)
        for i in range(len(coins)):
            if not self._sufficient(coins[i + 1:], amount, fee_estimator):
                return coins[i:]
        # Shouldn't get here
        return coins

    def choose_coins(self, coins: Sequence[Coin], amount: int, seed: bytes,
            fee_estimator: FeeEstimator) -> CoinSelection:
        """
        Pick the coins that fund `amount` plus the fee, preferring confirmed coins.

        Raises `InsufficientFunds` if the coins cannot cover the amount and the fee.
        """
        candidates = sorted(coins, key=lambda coin: coin.outpoint())
        PRNG(seed).shuffle(candidates)
        candidates.sort(key=lambda coin: coin.height == 0)

        selected: List[Coin] = []
        for coin in candidates:
            selected.append(coin)
            if self._sufficient(selected, amount, fee_estimator):
                break
        else:
            total = sum(coin.value for coin in selected)
            raise InsufficientFunds(f"Insufficient funds: have {total}, need at least "
                f"{amount + fee_estimator(len(selected), 1)}")

        selected = self.strip_unneeded_coins(selected, amount, fee_estimator)
        total = sum(coin.value for coin in selected)
        fee = fee_estimator(len(selected), 2)
        change = total - amount - fee
        if change < DUST_THRESHOLD:
            fee = total - amount
            change = 0
        logger.debug("selected %d coins, value %d, fee %d, change %d", len(selected), total,
            fee, change)
        return CoinSelection(selected, fee, change)
