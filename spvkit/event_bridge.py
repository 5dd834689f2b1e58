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

import queue
import threading
from typing import Any, Callable, List, Optional, Tuple

from .constants import EventKind
from .logs import logs
from .util import TriggeredCallbacks


logger = logs.get_logger("event-bridge")

QueuedEvent = Optional[Tuple[EventKind, Tuple[Any, ...]]]


class EventBridge:
    """
    Forwards internal events to the host on a single delivery thread.

    Emitters only ever enqueue, so no host callback runs while an emitting component holds one
    of its locks, and events are delivered in the order they were posted.
    """

    def __init__(self) -> None:
        self._callbacks = TriggeredCallbacks[EventKind]()
        self._queue: "queue.Queue[QueuedEvent]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._state_lock = threading.Lock()

    def register_callback(self, callback: Callable[..., None], kinds: List[EventKind]) -> None:
        self._callbacks.register_callback(callback, kinds)

    def unregister_callback(self, callback: Callable[..., None]) -> None:
        self._callbacks.unregister_callback(callback)

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name="event-bridge", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        with self._state_lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._queue.put(None)
        if thread is not threading.current_thread():
            thread.join()

    def is_running(self) -> bool:
        with self._state_lock:
            return self._thread is not None

    def post(self, kind: EventKind, *args: Any) -> None:
        self._queue.put((kind, args))

    def flush(self) -> None:
        '''Block until every event posted so far has been delivered.'''
        thread = self._thread
        if thread is None or threading.current_thread() is thread:
            return
        self._queue.join()

    def _run(self) -> None:
        logger.debug("delivery thread started")
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    break
                kind, args = item
                self._deliver(kind, args)
            finally:
                self._queue.task_done()
        logger.debug("delivery thread stopped")

    def _deliver(self, kind: EventKind, args: Tuple[Any, ...]) -> None:
        for callback in self._callbacks.get_callbacks(kind):
            try:
                callback(kind, *args)
            except Exception as e:
                logger.exception("host callback failed for %s", kind)
                # A failing failure handler would otherwise report itself forever.
                if kind != EventKind.UNHANDLED_FAILURE:
                    self.post(EventKind.UNHANDLED_FAILURE,
                        f"callback for {kind.name} failed: {e!r}")


class ExceptionSink:
    '''Captures failures that would otherwise be lost and reports them through the bridge.'''

    def __init__(self, bridge: EventBridge) -> None:
        self._bridge = bridge
        self._hook = self._excepthook
        self._previous_hook: Optional[Callable[[Any], Any]] = None
        self._lock = threading.Lock()

    def install(self) -> None:
        with self._lock:
            if self._previous_hook is not None:
                return
            self._previous_hook = threading.excepthook
            threading.excepthook = self._hook

    def uninstall(self) -> None:
        with self._lock:
            if self._previous_hook is None:
                return
            if threading.excepthook == self._hook:
                threading.excepthook = self._previous_hook
            self._previous_hook = None

    def is_installed(self) -> bool:
        with self._lock:
            return self._previous_hook is not None

    def report(self, description: str, exception: Optional[BaseException]=None) -> None:
        if exception is not None:
            description = f"{description}: {exception!r}"
        self._bridge.post(EventKind.UNHANDLED_FAILURE, description)

    def _excepthook(self, args: Any) -> None:
        if issubclass(args.exc_type, SystemExit):
            return
        thread_name = args.thread.name if args.thread is not None else "unknown"
        logger.error("unhandled exception in thread '%s'", thread_name,
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback))
        self.report(f"unhandled exception in thread '{thread_name}'", args.exc_value)
