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
import struct
import threading
from typing import IO, Iterable, List, NamedTuple, Optional

from bitcoinx import hash_to_hex_str, hex_str_to_hash

from .exceptions import CheckpointError
from .logs import logs
from .types import ChainHead


logger = logs.get_logger("headers")

# height, block hash, block timestamp
HEAD_RECORD = struct.Struct("<I32sI")


class Checkpoint(NamedTuple):
    height: int
    block_hash: bytes
    timestamp: int

    def to_chain_head(self) -> ChainHead:
        return ChainHead(self.height, self.block_hash, self.timestamp)


class CheckpointSnapshot:
    """
    A set of known blocks that a fresh header store can start from instead of genesis.

    The text form has one checkpoint per line, `<height> <block hash hex> <unix time>`. Blank
    lines and lines starting with `#` are ignored.
    """

    def __init__(self, checkpoints: Iterable[Checkpoint]) -> None:
        self._checkpoints = sorted(checkpoints, key=lambda checkpoint: checkpoint.height)

    def __len__(self) -> int:
        return len(self._checkpoints)

    def checkpoints(self) -> List[Checkpoint]:
        return list(self._checkpoints)

    def checkpoint_before(self, timestamp: int) -> Optional[Checkpoint]:
        '''The newest checkpoint at or before the given time, if there is one.'''
        result: Optional[Checkpoint] = None
        for checkpoint in self._checkpoints:
            if checkpoint.timestamp <= timestamp:
                result = checkpoint
        return result

    @classmethod
    def read_checkpoints(cls, stream: IO[str]) -> "CheckpointSnapshot":
        checkpoints: List[Checkpoint] = []
        for line_number, line in enumerate(stream, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) != 3:
                raise CheckpointError(f"line {line_number}: expected 3 fields, got {len(parts)}")
            try:
                height = int(parts[0])
                block_hash = hex_str_to_hash(parts[1])
                timestamp = int(parts[2])
            except ValueError as e:
                raise CheckpointError(f"line {line_number}: {e}")
            if len(block_hash) != 32 or height < 0 or timestamp < 0:
                raise CheckpointError(f"line {line_number}: invalid checkpoint")
            checkpoints.append(Checkpoint(height, block_hash, timestamp))
        return cls(checkpoints)

    @classmethod
    def from_path(cls, path: str) -> Optional["CheckpointSnapshot"]:
        '''Returns `None` if there is no checkpoint file, raises `CheckpointError` if bad.'''
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return cls.read_checkpoints(f)


class SPVHeaderStore:
    """
    The chain heads this client has reached, as an append-only file of fixed size records.

    Header validation is the responsibility of the peer network, it connects a head here once it
    has accepted the block.
    """

    def __init__(self) -> None:
        self._path: Optional[str] = None
        self._file: Optional[IO[bytes]] = None
        self._head: Optional[ChainHead] = None
        self._lock = threading.Lock()

    def get_path(self) -> Optional[str]:
        return self._path

    def is_open(self) -> bool:
        return self._file is not None

    def open(self, path: str) -> None:
        with self._lock:
            assert self._file is None, "header store already open"
            mode = "r+b" if os.path.exists(path) else "w+b"
            self._file = open(path, mode)
            self._path = path
            self._head = self._read_last_record()
        logger.debug("opened '%s' at height %s", path,
            self._head.height if self._head is not None else None)

    def _read_last_record(self) -> Optional[ChainHead]:
        assert self._file is not None
        self._file.seek(0, os.SEEK_END)
        size = self._file.tell()
        if size < HEAD_RECORD.size:
            return None
        # A partial trailing record from an interrupted append is ignored and overwritten.
        offset = (size // HEAD_RECORD.size - 1) * HEAD_RECORD.size
        self._file.seek(offset)
        height, block_hash, timestamp = HEAD_RECORD.unpack(self._file.read(HEAD_RECORD.size))
        return ChainHead(height, block_hash, timestamp)

    def _append(self, head: ChainHead) -> None:
        assert self._file is not None
        self._file.seek(0, os.SEEK_END)
        size = self._file.tell()
        self._file.seek(size - size % HEAD_RECORD.size)
        self._file.write(HEAD_RECORD.pack(head.height, head.block_hash, head.timestamp))
        self._file.truncate()
        self._file.flush()
        os.fsync(self._file.fileno())
        self._head = head

    def seed_from_checkpoint(self, snapshot: CheckpointSnapshot, since_timestamp: int) \
            -> Optional[ChainHead]:
        with self._lock:
            if self._file is None:
                raise CheckpointError("header store is not open")
            if self._head is not None:
                raise CheckpointError("only an empty header store can be seeded")
            checkpoint = snapshot.checkpoint_before(since_timestamp)
            if checkpoint is None:
                return None
            head = checkpoint.to_chain_head()
            self._append(head)
        logger.info("seeded from checkpoint at height %d (%s)", head.height,
            hash_to_hex_str(head.block_hash))
        return head

    def connect(self, head: ChainHead) -> None:
        with self._lock:
            assert self._file is not None, "header store is not open"
            if self._head is not None and head.height <= self._head.height:
                raise ValueError(f"head at height {head.height} does not extend "
                    f"{self._head.height}")
            self._append(head)

    def current_head(self) -> Optional[ChainHead]:
        with self._lock:
            return self._head

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
                logger.debug("closed '%s'", self._path)
