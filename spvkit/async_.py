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

from asyncio import AbstractEventLoop, CancelledError, Event, new_event_loop, \
    run_coroutine_threadsafe
import concurrent.futures
from functools import partial
import threading
from types import TracebackType
from typing import Any, Callable, Coroutine, Dict, Optional, Set, Type, TypeVar

from .logs import logs

logger = logs.get_logger("async")

T1 = TypeVar("T1")

FailureHandler = Callable[[str, Optional[BaseException]], None]


class ASync(object):
    '''This helper coordinates setting up an asyncio event loop thread, executing coroutines
    from a different thread, and running completion callbacks when they are done.

    Completion callbacks are run on the event loop thread, they should do as little as possible
    and never block on anything other than short-lived locks.
    '''

    def __init__(self, failure_handler: Optional[FailureHandler]=None) -> None:
        self.thread = threading.Thread(target=self._main, name="async", daemon=True)
        self.loop = new_event_loop()
        self.loop.set_exception_handler(self._loop_exception_handler)
        self.start_event = threading.Event()
        self.stop_event = self.event()
        self.futures: Set[concurrent.futures.Future[Any]] = set()
        self._futures_lock = threading.Lock()
        self._failure_handler = failure_handler

    def event(self) -> Event:
        '''Return an asyncio.Event for our event loop.'''
        return Event()

    def __enter__(self) -> "ASync":
        logger.debug('starting async thread')
        self.thread.start()
        # Wait for the thread to definitively start before returning
        self.start_event.wait()
        logger.debug('async thread started')
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]],
            exc_value: Optional[BaseException], traceback: Optional[TracebackType]) \
                -> None:
        # Wait for the thread to definitively stop before returning
        # stop_event must be set from the loop
        logger.debug('stopping async thread')
        self.loop.call_soon_threadsafe(self.stop_event.set)
        self.thread.join()
        logger.debug('async thread stopped')

    def is_running(self) -> bool:
        return self.thread.is_alive() and not self.loop.is_closed()

    async def _wait_until_stopped(self) -> None:
        await self.stop_event.wait()
        with self._futures_lock:
            futures = list(self.futures)
        for future in futures:
            future.cancel()

    def _main(self) -> None:
        self.start_event.set()
        self.loop.run_until_complete(self._wait_until_stopped())
        self.loop.close()

    def _loop_exception_handler(self, loop: AbstractEventLoop, context: Dict[str, Any]) -> None:
        exception = context.get("exception")
        message = context.get("message", "event loop failure")
        logger.error("event loop exception: %s", message, exc_info=exception)
        self._report_failure(message, exception)

    def _report_failure(self, description: str, exception: Optional[BaseException]) -> None:
        if self._failure_handler is not None:
            self._failure_handler(description, exception)

    def _collect(self, on_done: Optional[Callable[[concurrent.futures.Future[Any]], None]],
            future: concurrent.futures.Future[Any]) -> None:
        with self._futures_lock:
            self.futures.discard(future)
        if on_done:
            try:
                on_done(future)
            except Exception as e:
                logger.exception('unhandled exception in async completion callback')
                self._report_failure("async completion callback failed", e)
        else:
            try:
                future.result()
            except (CancelledError, concurrent.futures.CancelledError):
                pass
            except Exception as e:
                logger.exception('async task raised an unhandled exception')
                self._report_failure("async task failed", e)

    def spawn(self,
            coroutine: Coroutine[Any, Any, T1],
            on_done: Callable[[concurrent.futures.Future[T1]], None] | None=None) \
                -> concurrent.futures.Future[T1]:
        future = run_coroutine_threadsafe(coroutine, self.loop)
        with self._futures_lock:
            self.futures.add(future)
        future.add_done_callback(partial(self._collect, on_done))
        return future
