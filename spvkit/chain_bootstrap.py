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

import os
from typing import Optional

from .exceptions import CheckpointError
from .headers import CheckpointSnapshot
from .keystore import WalletKeyStore
from .logs import logs
from .simple_config import SimpleConfig
from .types import ChainHead, HeaderStoreProtocol


logger = logs.get_logger("chain-bootstrap")


class ChainBootstrap:
    """
    Opens the local header store for a sync session.

    A store that already exists is used as is. A fresh store means any transaction history the
    wallet has will be rediscovered by the replay, so it is cleared, and the store starts from
    the newest checkpoint that predates the oldest wallet key when one is available.
    """

    def __init__(self, config: SimpleConfig) -> None:
        self._config = config

    def load_checkpoints(self) -> Optional[CheckpointSnapshot]:
        path = self._config.checkpoints_path()
        try:
            return CheckpointSnapshot.from_path(path)
        except (CheckpointError, OSError, UnicodeDecodeError) as e:
            logger.warning("ignoring unreadable checkpoint file '%s': %s", path, e)
            return None

    def bootstrap(self, wallet: WalletKeyStore, header_store: HeaderStoreProtocol,
            oldest_key_timestamp: int) -> Optional[ChainHead]:
        path = self._config.headers_path()
        is_fresh = not os.path.exists(path)
        if is_fresh:
            wallet.clear_transactions()

        header_store.open(path)

        if is_fresh and oldest_key_timestamp > 0:
            snapshot = self.load_checkpoints()
            if snapshot is not None:
                logger.debug("using the checkpoint file, oldest key %d", oldest_key_timestamp)
                try:
                    header_store.seed_from_checkpoint(snapshot, oldest_key_timestamp)
                except CheckpointError as e:
                    logger.warning("checkpoint not applied: %s", e)

        head = header_store.current_head()
        logger.debug("header store '%s' %s at height %s", path,
            "created" if is_fresh else "opened", head.height if head is not None else None)
        return head
