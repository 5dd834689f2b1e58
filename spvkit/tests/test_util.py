import threading
import time

import pytest

from spvkit.util import ReadWriteLock, TriggeredCallbacks


class TestReadWriteLock:
    def test_writer_is_reentrant(self) -> None:
        lock = ReadWriteLock()
        with lock.write_lock():
            with lock.write_lock():
                assert lock.is_write_locked()
            assert lock.is_write_locked()
        assert not lock.is_write_locked()

    def test_writer_can_read(self) -> None:
        lock = ReadWriteLock()
        with lock.write_lock():
            with lock.read_lock():
                assert lock.is_locked_by_current_thread()
        assert not lock.is_locked_by_current_thread()

    def test_reader_cannot_upgrade(self) -> None:
        lock = ReadWriteLock()
        with lock.read_lock():
            with pytest.raises(RuntimeError):
                lock.acquire_write()

    def test_concurrent_readers(self) -> None:
        lock = ReadWriteLock()
        both_reading = threading.Barrier(2, timeout=5)
        results = []

        def reader() -> None:
            with lock.read_lock():
                both_reading.wait()
                results.append(True)

        threads = [ threading.Thread(target=reader) for _i in range(2) ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        assert results == [ True, True ]

    def test_writer_excludes_readers(self) -> None:
        lock = ReadWriteLock()
        order = []
        lock.acquire_write()

        def reader() -> None:
            with lock.read_lock():
                order.append("read")

        thread = threading.Thread(target=reader)
        thread.start()
        time.sleep(0.05)
        order.append("write-done")
        lock.release_write()
        thread.join(5)
        assert order == [ "write-done", "read" ]

    def test_release_write_by_other_thread_fails(self) -> None:
        lock = ReadWriteLock()
        lock.acquire_write()
        errors = []

        def release() -> None:
            try:
                lock.release_write()
            except AssertionError as e:
                errors.append(e)

        thread = threading.Thread(target=release)
        thread.start()
        thread.join(5)
        assert len(errors) == 1
        lock.release_write()


class TestTriggeredCallbacks:
    def test_trigger(self) -> None:
        callbacks = TriggeredCallbacks[str]()
        calls = []
        def callback(event: str, *args) -> None:
            calls.append((event, args))

        callbacks.register_callback(callback, [ "a", "b" ])
        callbacks.trigger_callback("a", 1, 2)
        callbacks.trigger_callback("c")
        assert calls == [ ("a", (1, 2)) ]

        callbacks.unregister_callback(callback)
        callbacks.trigger_callback("b")
        assert calls == [ ("a", (1, 2)) ]

    def test_reregister_is_ignored(self) -> None:
        callbacks = TriggeredCallbacks[str]()
        calls = []
        def callback(event: str) -> None:
            calls.append(event)

        callbacks.register_callback(callback, [ "a" ])
        callbacks.register_callback(callback, [ "a" ])
        callbacks.trigger_callback("a")
        assert calls == [ "a" ]

    def test_unregister_callbacks_for_object(self) -> None:
        class Owner:
            def __init__(self) -> None:
                self.calls = 0

            def on_event(self, event: str) -> None:
                self.calls += 1

        owner = Owner()
        callbacks = TriggeredCallbacks[str]()
        callbacks.register_callback(owner.on_event, [ "a" ])
        callbacks.trigger_callback("a")
        callbacks.unregister_callbacks_for_object(owner)
        callbacks.trigger_callback("a")
        assert owner.calls == 1
        assert callbacks.get_callbacks("a") == []
