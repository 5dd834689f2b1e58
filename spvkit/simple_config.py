from __future__ import annotations
import json
import os
import stat
import threading
from typing import Any, Callable, Type, TypeVar

from .constants import CHECKPOINTS_EXT, DEFAULT_APP_NAME, DEFAULT_FEE_PER_KB, \
    DEFAULT_KDF_ITERATIONS, HEADERS_EXT, WALLET_EXT
from .logs import logs
from .networks import NetworkType, SVMainnet, SVRegTestnet, SVTestnet
from .util import make_dir


logger = logs.get_logger("config")

FINAL_CONFIG_VERSION = 1
CONFIG_FILE_NAME = "config"

T = TypeVar("T")


def user_dir() -> str:
    home_dir = os.environ.get("HOME", ".")
    return os.path.join(home_dir, ".spvkit")


class SimpleConfig:
    """
    Settings for the wallet core.

    Options given by the host, usually from its command line, take precedence over the user
    configuration file in the data directory and cannot be changed with `set_key`. Each network
    other than mainnet gets its own subdirectory of the data directory, so wallets and header
    stores for different networks never share a file.
    """

    def __init__(self, options: dict[str, Any]|None=None,
            read_user_config_function: Callable[[str], dict[str, Any]]|None=None,
            read_user_dir_function: Callable[[], str]|None=None) -> None:
        # Reentrant as `set_key` saves while holding it.
        self.lock = threading.RLock()
        self.user_dir = read_user_dir_function if read_user_dir_function is not None \
            else user_dir

        self.cmdline_options = { key: value for key, value in (options or {}).items()
            if key != 'config_version' }
        # The data directory may be selected by the options alone.
        self.user_config: dict[str, Any] = {}
        self.path = self.data_path()

        if read_user_config_function is None:
            read_user_config_function = read_user_config
        self.user_config = read_user_config_function(self.path) or \
            { 'config_version': FINAL_CONFIG_VERSION }
        if self.get_config_version() > FINAL_CONFIG_VERSION:
            logger.warning("config version %d is newer than the supported version %d",
                self.get_config_version(), FINAL_CONFIG_VERSION)

    def data_path(self) -> str:
        base_path = self.get('data_dir') or self.user_dir()
        network = self.get_network()
        path = base_path if network is SVMainnet else os.path.join(base_path, network.NAME)
        make_dir(path)
        logger.debug("data directory '%s'", path)
        return os.path.abspath(path)

    def file_path(self, file_name: str) -> str:
        return os.path.join(self.path, file_name)

    def get_network(self) -> NetworkType:
        if self.get('regtest'):
            return SVRegTestnet
        if self.get('testnet'):
            return SVTestnet
        return SVMainnet

    def get_app_name(self) -> str:
        return self.get_explicit_type(str, 'app_name', DEFAULT_APP_NAME)

    def wallet_path(self) -> str:
        return self.file_path(self.get_app_name() + WALLET_EXT)

    def headers_path(self) -> str:
        return self.file_path(self.get_app_name() + HEADERS_EXT)

    def checkpoints_path(self) -> str:
        return self.file_path(self.get_app_name() + CHECKPOINTS_EXT)

    def get_kdf_iterations(self) -> int:
        return self.get_explicit_type(int, 'kdf_iterations', DEFAULT_KDF_ITERATIONS)

    def get_fee_per_kb(self) -> int:
        return self.get_explicit_type(int, 'fee_per_kb', DEFAULT_FEE_PER_KB)

    def get_config_version(self) -> int:
        return self.get_explicit_type(int, 'config_version', FINAL_CONFIG_VERSION)

    def get(self, key: str, default: Any=None) -> Any|None:
        with self.lock:
            for source in (self.cmdline_options, self.user_config):
                value = source.get(key)
                if value is not None:
                    return value
        return default

    def get_explicit_type(self, return_type: Type[T], key: str, default: T) -> T:
        value = self.get(key, default)
        # `bool` is an `int` subclass and is never what an integer setting means.
        if not isinstance(value, return_type) or \
                (return_type is int and isinstance(value, bool)):
            raise ValueError(f"Config key '{key}' has the value {value!r}, expected a "
                f"{return_type.__name__}")
        return value

    def is_modifiable(self, key: str) -> bool:
        return key not in self.cmdline_options

    def set_key(self, key: str, value: Any, save: bool=True) -> None:
        '''Change a user configuration value, where `None` removes the key.'''
        if not self.is_modifiable(key):
            logger.warning("config key '%s' was given by the host and cannot be changed", key)
            return
        with self.lock:
            if value is None:
                self.user_config.pop(key, None)
            else:
                self.user_config[key] = value
            if save:
                self.save_user_config()

    def save_user_config(self) -> None:
        config_path = self.file_path(CONFIG_FILE_NAME)
        temp_path = config_path + ".tmp"
        with self.lock:
            with open(temp_path, "w", encoding='utf-8') as f:
                json.dump(self.user_config, f, indent=4, sort_keys=True)
            os.chmod(temp_path, stat.S_IREAD | stat.S_IWRITE)
            os.replace(temp_path, config_path)


def read_user_config(path: str) -> dict[str, Any]:
    '''The user configuration in the `path` directory, empty if missing or unusable.'''
    if not path:
        return {}
    config_path = os.path.join(path, CONFIG_FILE_NAME)
    if not os.path.exists(config_path):
        return {}
    try:
        with open(config_path, "r", encoding='utf-8') as f:
            result = json.load(f)
    except (OSError, ValueError):
        logger.exception("ignoring unreadable config file '%s'", config_path)
        return {}
    if not isinstance(result, dict):
        logger.warning("ignoring config file '%s' that is not a JSON object", config_path)
        return {}
    return result
