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

import base64
from typing import Callable, List, Optional, Union

from .constants import BalanceType
from .crypto import derive_key, KdfParams, new_kdf_params, password_buffer, wipe_buffer
from .exceptions import AlreadyExists, NeedsPassword, NoWallet, NotFound
from .keystore import WalletKeyStore
from .logs import logs
from .simple_config import SimpleConfig
from .storage import WalletStorage
from .util import ReadWriteLock


logger = logs.get_logger("key-vault")

PasswordType = Union[str, bytes, bytearray]
WalletActivatedCallback = Callable[[WalletKeyStore], None]


def wipe_password(password: Optional[PasswordType]) -> None:
    '''Only a caller's `bytearray` can be wiped, `str` and `bytes` are immutable.'''
    if isinstance(password, bytearray):
        wipe_buffer(password)


class KeyVault:
    """
    The lifecycle of the wallet's key material.

    Derived keys are always wiped after their one use, and password buffers are wiped as soon as
    a key has been derived from them, including when something fails along the way.
    """

    def __init__(self, config: SimpleConfig, lock: ReadWriteLock,
            on_activated: Optional[WalletActivatedCallback]=None) -> None:
        self._config = config
        self._lock = lock
        self._on_activated = on_activated
        self._wallet: Optional[WalletKeyStore] = None

    def get_wallet(self) -> Optional[WalletKeyStore]:
        return self._wallet

    def require_wallet(self) -> WalletKeyStore:
        wallet = self._wallet
        if wallet is None:
            raise NoWallet()
        return wallet

    def has_wallet(self) -> bool:
        return self._wallet is not None

    def _storage(self) -> WalletStorage:
        return WalletStorage(self._config.wallet_path())

    def wallet_exists(self) -> bool:
        return self._storage().exists()

    def _activate(self, wallet: WalletKeyStore) -> None:
        self._wallet = wallet
        if self._on_activated is not None:
            self._on_activated(wallet)

    def derived_key(self, password: PasswordType, kdf_params: KdfParams) -> bytearray:
        return derive_key(password_buffer(password), kdf_params)

    def derive_wallet_key(self, password: Optional[PasswordType]) -> Optional[bytearray]:
        """
        The key to decrypt the loaded wallet's private keys, or `None` if it is not encrypted.
        Raises `NeedsPassword` if the wallet is encrypted and there is no password, and
        `WrongPassword` if the password does not decrypt the wallet.
        """
        wallet = self.require_wallet()
        kdf_params = wallet.kdf_params()
        if kdf_params is None:
            wipe_password(password)
            return None
        if password is None:
            raise NeedsPassword()
        derived_key = self.derived_key(password, kdf_params)
        try:
            wallet.check_derived_key(derived_key)
        except Exception:
            wipe_buffer(derived_key)
            raise
        return derived_key

    def create(self, password: Optional[PasswordType]=None) -> None:
        with self._lock.write_lock():
            kdf_params: Optional[KdfParams] = None
            derived_key: Optional[bytearray] = None
            try:
                storage = self._storage()
                if storage.exists():
                    raise AlreadyExists(f"A wallet already exists at: {storage.get_path()}")
                network = self._config.get_network()
                if password is not None:
                    kdf_params = new_kdf_params(self._config.get_kdf_iterations())
                    derived_key = self.derived_key(password, kdf_params)
                wallet = WalletKeyStore.create_new(storage, network,
                    self._config.get_fee_per_kb(), derived_key, kdf_params)
            finally:
                wipe_buffer(derived_key)
                wipe_password(password)
            logger.info("created %s wallet '%s'",
                "an encrypted" if kdf_params is not None else "a plaintext", storage.get_path())
            self._activate(wallet)

    def load(self) -> None:
        with self._lock.write_lock():
            if self._wallet is not None:
                return
            storage = self._storage()
            if not storage.exists():
                raise NotFound(f"No wallet file found at: {storage.get_path()}")
            wallet = WalletKeyStore.load(storage, self._config.get_network(),
                self._config.get_fee_per_kb())
            logger.info("loaded wallet '%s' with %d keys", storage.get_path(), len(wallet.keys()))
            self._activate(wallet)

    def change_password(self, old_password: Optional[PasswordType]=None,
            new_password: Optional[PasswordType]=None) -> None:
        with self._lock.write_lock():
            old_key: Optional[bytearray] = None
            new_key: Optional[bytearray] = None
            try:
                wallet = self.require_wallet()
                kdf_params = wallet.kdf_params()
                if kdf_params is not None:
                    if old_password is None:
                        raise NeedsPassword()
                    old_key = self.derived_key(old_password, kdf_params)
                next_kdf_params: Optional[KdfParams] = None
                if new_password is not None:
                    next_kdf_params = new_kdf_params(self._config.get_kdf_iterations())
                    new_key = self.derived_key(new_password, next_kdf_params)
                wallet.change_encryption(old_key, new_key, next_kdf_params)
            finally:
                wipe_buffer(old_key)
                wipe_buffer(new_key)
                wipe_password(old_password)
                wipe_password(new_password)
            logger.debug("wallet is now %s", "encrypted" if new_key is not None else "plaintext")

    def balance(self, kind: BalanceType=BalanceType.AVAILABLE) -> int:
        with self._lock.read_lock():
            return self.require_wallet().balance(kind)

    def add_key(self, password: Optional[PasswordType]=None) -> str:
        with self._lock.write_lock():
            derived_key: Optional[bytearray] = None
            try:
                derived_key = self.derive_wallet_key(password)
                key = self.require_wallet().generate_key(derived_key)
            finally:
                wipe_buffer(derived_key)
                wipe_password(password)
            return key.address

    def wallet_address(self) -> Optional[str]:
        with self._lock.read_lock():
            wallet = self._wallet
            if wallet is None:
                return None
            keys = wallet.keys()
            return keys[0].address if keys else None

    def all_wallet_addresses(self) -> List[str]:
        with self._lock.read_lock():
            wallet = self._wallet
            if wallet is None:
                return []
            return [ key.address for key in wallet.keys() ]

    def is_encrypted(self) -> bool:
        with self._lock.read_lock():
            return self.require_wallet().is_encrypted()

    def last_wallet_change(self) -> int:
        '''The time of the last change to the wallet in milliseconds, or 0 with no wallet.'''
        with self._lock.read_lock():
            wallet = self._wallet
            return wallet.last_change() if wallet is not None else 0

    def update_last_wallet_change(self) -> None:
        with self._lock.write_lock():
            self.require_wallet().touch_last_change()

    def save(self) -> None:
        with self._lock.read_lock():
            wallet = self._wallet
        if wallet is not None:
            wallet.save()

    def wallet_file_base64(self) -> Optional[str]:
        with self._lock.read_lock():
            wallet = self._wallet
            if wallet is None:
                return None
            return base64.b64encode(wallet.get_storage().read_raw()).decode('ascii')

    def wallet_dump(self, password: Optional[PasswordType]=None) -> str:
        with self._lock.read_lock():
            derived_key: Optional[bytearray] = None
            try:
                wallet = self.require_wallet()
                if password is not None:
                    derived_key = self.derive_wallet_key(password)
                entries = wallet.dump_keys(derived_key)
            finally:
                wipe_buffer(derived_key)
                wipe_password(password)
            lines = [ f"network: {self._config.get_network().NAME}",
                f"encrypted: {wallet.is_encrypted()}" ]
            for address, wif in entries:
                lines.append(f"{address} {wif if wif is not None else '(encrypted)'}")
            return "\n".join(lines)

    def close(self) -> None:
        with self._lock.write_lock():
            wallet, self._wallet = self._wallet, None
        if wallet is not None:
            wallet.save()
            logger.debug("closed wallet '%s'", wallet.get_storage().get_path())
