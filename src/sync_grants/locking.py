"""Reader/writer lock serialising catalog changes made through one client."""

import logging
import threading
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class CatalogLock:
    """A reader/writer lock with writer preference.

    Any number of readers may hold the lock at once, a writer holds it alone.
    Once a writer is waiting, new readers wait behind it so a steady stream of
    reads cannot starve a write. Acquisition never times out.

    The lock is not reentrant: a thread holding it must not acquire it again.
    """

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._condition:
            while self._writer or self._writers_waiting:
                self._condition.wait()
            self._readers += 1

    def release_read(self):
        with self._condition:
            if self._readers <= 0:
                raise RuntimeError('Catalog lock released for reading without being held')
            self._readers -= 1
            if not self._readers:
                self._condition.notify_all()

    def acquire_write(self):
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._condition:
            if not self._writer:
                raise RuntimeError('Catalog lock released for writing without being held')
            self._writer = False
            self._condition.notify_all()

    @contextmanager
    def read(self):
        """Hold the lock shared for the duration of the block."""
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        """Hold the lock exclusively for the duration of the block."""
        logger.debug('Waiting for exclusive catalog lock')
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
