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

import json
import os
import stat
import threading
from typing import Any, Dict

from .exceptions import Corrupt, NotFound
from .logs import logs


logger = logs.get_logger("storage")


class WalletStorage:
    """
    The persisted form of a wallet, a single JSON document.

    Writes never leave a partially written file behind. The new document is written and synced
    to a temporary file which is then moved over the old one, so a crash leaves either the old
    or the new document in place.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.RLock()

    def get_path(self) -> str:
        return self._path

    def exists(self) -> bool:
        "Whether any data has ever been written to the storage."
        return os.path.exists(self._path)

    def read_raw(self) -> bytes:
        with self._lock:
            try:
                with open(self._path, "rb") as f:
                    return f.read()
            except FileNotFoundError:
                raise NotFound(f"No wallet file found at: {self._path}")

    def read(self) -> Dict[str, Any]:
        raw = self.read_raw()
        try:
            data = json.loads(raw.decode('utf8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise Corrupt(f"Cannot read wallet file '{self._path}': {e}")
        if type(data) is not dict:
            raise Corrupt(f"Cannot read wallet file '{self._path}': unexpected content")
        return data

    def write(self, data: Dict[str, Any]) -> None:
        raw = json.dumps(data, indent=4, sort_keys=True)
        with self._lock:
            temp_path = "%s.tmp.%s" % (self._path, os.getpid())
            try:
                with open(temp_path, "w", encoding='utf-8') as f:
                    f.write(raw)
                    f.flush()
                    os.fsync(f.fileno())

                file_exists = os.path.exists(self._path)
                mode = os.stat(self._path).st_mode if file_exists \
                    else stat.S_IREAD | stat.S_IWRITE
                os.replace(temp_path, self._path)
                os.chmod(self._path, mode)
            finally:
                if os.path.exists(temp_path):
                    os.remove(temp_path)

        logger.debug("saved '%s'", self._path)
