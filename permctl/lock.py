"""
Cross-process exclusive lock.

Serializes every permctl invocation that touches the ledger and the
authorization file. Uses POSIX advisory locking via fcntl.flock, polled
with LOCK_NB so acquisition is bounded by a timeout instead of blocking
forever.

The kernel drops a flock when its holder exits, so a crashed process never
leaves the lock held; the PID written into the file is for diagnostics only.

Usage:
    with ExclusiveLock(path, timeout=10.0):
        ...  # exclusive section
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import IO, Optional

from .errors import IoFailure, LockTimeout

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05


class ExclusiveLock:
    """
    File-based exclusive lock with bounded wait.

    Attributes:
        lock_file: Path to the lock file (created if missing).
        timeout: Seconds to wait before raising LockTimeout.
    """

    def __init__(self, lock_file: Path, timeout: float, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.lock_file = lock_file
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._file: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._file is not None

    def acquire(self) -> None:
        """
        Acquire the lock, waiting at most `timeout` seconds.

        Raises:
            LockTimeout: another process held the lock for the whole wait
            IoFailure: the lock file could not be opened
        """
        if self._file is not None:
            raise RuntimeError(f"lock already held: {self.lock_file}")

        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            # a+ keeps the previous holder's PID readable until we own the lock
            handle = open(self.lock_file, "a+", encoding="utf-8")
        except OSError as e:
            raise IoFailure.from_os_error(e, self.lock_file) from e

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    holder = self.holder_pid()
                    handle.close()
                    logger.warning("Lock %s still held (PID %s) after %.1fs", self.lock_file, holder, self.timeout)
                    raise LockTimeout(self.lock_file, self.timeout) from None
                time.sleep(self.poll_interval)
            except OSError as e:
                handle.close()
                raise IoFailure.from_os_error(e, self.lock_file) from e

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._file = handle
        logger.debug("Acquired lock %s (PID %d)", self.lock_file, os.getpid())

    def release(self) -> None:
        """
        Release the lock.

        Safe to call multiple times or without prior acquire.
        """
        if self._file is None:
            return
        try:
            if not self._file.closed:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
                self._file.close()
            logger.debug("Released lock %s", self.lock_file)
        finally:
            self._file = None

    def holder_pid(self) -> Optional[int]:
        """PID recorded by the current (or last) holder, if readable."""
        try:
            return int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> ExclusiveLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
