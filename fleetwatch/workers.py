from __future__ import annotations
from contextlib import contextmanager
from typing import Callable, Iterator
import logging
import traceback

from PySide6 import QtCore

from .errors import FleetwatchError

log = logging.getLogger(__name__)


@contextmanager
def read_locked(lock: QtCore.QReadWriteLock) -> Iterator[None]:
    lock.lockForRead()
    try:
        yield
    finally:
        lock.unlock()


@contextmanager
def write_locked(lock: QtCore.QReadWriteLock) -> Iterator[None]:
    lock.lockForWrite()
    try:
        yield
    finally:
        lock.unlock()


class PollingThread(QtCore.QThread):
    """
    Runs ``tick`` once immediately, then every ``interval`` seconds, on its own thread.

    stop() wakes the sleeping loop and blocks until run() has returned, so no
    tick is in flight once it comes back. A tick that raises is logged and the
    loop carries on with the next interval.
    """

    def __init__(self, name: str, interval: float, tick: Callable[[], None]):
        super().__init__()
        self.setObjectName(name)
        self._name = name
        self._interval_ms = max(1, int(interval * 1000))
        self._tick = tick
        self._mutex = QtCore.QMutex()
        self._wake = QtCore.QWaitCondition()
        self._running = False

    def is_active(self) -> bool:
        self._mutex.lock()
        try:
            return self._running
        finally:
            self._mutex.unlock()

    def begin(self) -> None:
        self._mutex.lock()
        self._running = True
        self._mutex.unlock()
        self.start()

    def stop(self) -> None:
        """Graceful shutdown"""
        self._mutex.lock()
        self._running = False
        self._wake.wakeAll()
        self._mutex.unlock()
        self.wait()

    def run(self) -> None:
        log.debug("[%s] thread started", self._name)
        while True:
            self._run_tick()
            self._mutex.lock()
            try:
                if not self._running:
                    break
                self._wake.wait(self._mutex, self._interval_ms)
                if not self._running:
                    break
            finally:
                self._mutex.unlock()
        log.debug("[%s] thread exited", self._name)

    def _run_tick(self) -> None:
        try:
            self._tick()
        except FleetwatchError as e:
            log.warning("[%s] cycle skipped: %s", self._name, e)
        except Exception:
            log.error("[%s] error during cycle\n%s", self._name, traceback.format_exc())
