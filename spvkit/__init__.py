from .version import PACKAGE_VERSION
from .constants import BalanceType, ErrorKind, EventKind, SyncStateKind
from .exceptions import SPVKitError
from .manager import SPVManager
from .simple_config import SimpleConfig

__version__ = PACKAGE_VERSION
