import threading
import time

import pytest

from sync_grants.locking import CatalogLock

TIMEOUT = 5


def _start(target):
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def test_second_writer_waits_for_first() -> None:
    lock = CatalogLock()
    events = []
    first_holding = threading.Event()
    release_first = threading.Event()

    def first():
        with lock.write():
            events.append('first start')
            first_holding.set()
            release_first.wait(TIMEOUT)
            events.append('first end')

    def second():
        with lock.write():
            events.append('second start')
            events.append('second end')

    first_thread = _start(first)
    assert first_holding.wait(TIMEOUT)
    second_thread = _start(second)
    time.sleep(0.1)

    assert events == ['first start']

    release_first.set()
    first_thread.join(TIMEOUT)
    second_thread.join(TIMEOUT)

    assert events == ['first start', 'first end', 'second start', 'second end']


def test_readers_share_the_lock() -> None:
    lock = CatalogLock()
    both_reading = threading.Barrier(2, timeout=TIMEOUT)

    def reader():
        with lock.read():
            both_reading.wait()

    threads = [_start(reader), _start(reader)]
    for thread in threads:
        thread.join(TIMEOUT)

    assert not both_reading.broken


def test_writer_waits_for_readers_and_blocks_new_readers() -> None:
    lock = CatalogLock()
    events = []
    writer_done = threading.Event()
    late_reader_done = threading.Event()

    lock.acquire_read()

    def writer():
        with lock.write():
            events.append('writer')
        writer_done.set()

    def late_reader():
        with lock.read():
            events.append('late reader')
        late_reader_done.set()

    writer_thread = _start(writer)
    time.sleep(0.1)
    late_reader_thread = _start(late_reader)
    time.sleep(0.1)

    assert events == []
    assert not writer_done.is_set()

    lock.release_read()
    writer_thread.join(TIMEOUT)
    late_reader_thread.join(TIMEOUT)

    assert events == ['writer', 'late reader']
    assert writer_done.is_set()
    assert late_reader_done.is_set()


def test_lock_released_when_block_raises() -> None:
    lock = CatalogLock()

    with pytest.raises(ValueError), lock.write():
        raise ValueError

    with lock.write():
        pass
    with lock.read():
        pass


def test_release_without_holding_raises() -> None:
    lock = CatalogLock()

    with pytest.raises(RuntimeError):
        lock.release_read()
    with pytest.raises(RuntimeError):
        lock.release_write()
