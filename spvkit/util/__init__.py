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

from collections import defaultdict
from contextlib import contextmanager
import os
import threading
import time
import types
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, TypeVar

from ..logs import logs


T1 = TypeVar("T1")


def make_dir(path: str) -> None:
    # Make directory if it does not yet exist.
    if not os.path.exists(path):
        if os.path.islink(path):
            raise Exception('Dangling link: ' + path)
        os.makedirs(path, exist_ok=True)


def get_posix_timestamp() -> int:
    # In theory we can just return `int(time.time())` but this returns the posix timestamp and
    # try reading the documentation for `time.time` and being sure of that.
    return int(time.time())


class TriggeredCallbacks(Generic[T1]):
    def __init__(self) -> None:
        self._callbacks: Dict[T1, List[Callable[..., None]]] = defaultdict(list)
        self._callback_lock = threading.Lock()
        self._callback_logger = logs.get_logger("callback-logger")

    def register_callback(self, callback: Callable[..., None], events: List[T1]) -> None:
        with self._callback_lock:
            for event in events:
                if callback in self._callbacks[event]:
                    self._callback_logger.error("Callback reregistered %s %s", event, callback)
                    continue
                self._callbacks[event].append(callback)

    def unregister_callback(self, callback: Callable[..., None]) -> None:
        with self._callback_lock:
            for callbacks in self._callbacks.values():
                if callback in callbacks:
                    callbacks.remove(callback)

    def unregister_callbacks_for_object(self, owner: object) -> None:
        with self._callback_lock:
            for callbacks in self._callbacks.values():
                for callback in callbacks[:]:
                    if isinstance(callback, types.MethodType):
                        if callback.__self__ is owner:
                            callbacks.remove(callback)

    def get_callbacks(self, event: T1) -> List[Callable[..., None]]:
        with self._callback_lock:
            return self._callbacks[event][:]

    def trigger_callback(self, event: T1, *args: Any) -> None:
        [callback(event, *args) for callback in self.get_callbacks(event)]


class ReadWriteLock:
    """
    Any number of readers, or one writer. The writer may re-enter both the write lock and the
    read lock on its own thread, which is what happens when a mutation triggers collaborator
    events that are handled synchronously. A reader may not upgrade to the write lock.

    Waiting writers take priority over new readers so that a steady stream of progress reads
    cannot starve commands.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._readers: Dict[int, int] = {}
        self._writer: Optional[int] = None
        self._writer_depth = 0
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        ident = threading.get_ident()
        with self._condition:
            if self._writer == ident or ident in self._readers:
                self._readers[ident] = self._readers.get(ident, 0) + 1
                return
            while self._writer is not None or self._writers_waiting:
                self._condition.wait()
            self._readers[ident] = 1

    def release_read(self) -> None:
        ident = threading.get_ident()
        with self._condition:
            count = self._readers[ident] - 1
            if count:
                self._readers[ident] = count
            else:
                del self._readers[ident]
                self._condition.notify_all()

    def acquire_write(self) -> None:
        ident = threading.get_ident()
        with self._condition:
            if self._writer == ident:
                self._writer_depth += 1
                return
            if ident in self._readers:
                raise RuntimeError("a read lock cannot be upgraded to a write lock")
            self._writers_waiting += 1
            try:
                while self._writer is not None or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = ident
            self._writer_depth = 1

    def release_write(self) -> None:
        with self._condition:
            assert self._writer == threading.get_ident(), "write lock not held by this thread"
            self._writer_depth -= 1
            if self._writer_depth == 0:
                self._writer = None
                self._condition.notify_all()

    def is_write_locked(self) -> bool:
        with self._condition:
            return self._writer is not None

    def is_locked_by_current_thread(self) -> bool:
        ident = threading.get_ident()
        with self._condition:
            return self._writer == ident or ident in self._readers

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
