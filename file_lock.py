"""
Exclusive advisory locking of an open file across processes.

Locks are taken with flock(2), so they belong to the open file description:
the kernel drops them when the descriptor is closed, including when the
holding process dies.
"""

import errno
import fcntl
import time
from contextlib import contextmanager
from typing import IO, Iterator, Optional

from harness_errors import LockAcquisitionError, LockTimeoutError


DEFAULT_POLL_INTERVAL = 0.05


def acquire_lock(
    handle: IO,
    timeout: Optional[float] = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    name: Optional[str] = None
) -> None:
    """
    Take an exclusive lock on an open file.

    Args:
        handle: Open file object to lock
        timeout: Seconds to wait for the lock. None blocks until it is granted.
        poll_interval: Seconds between attempts while waiting with a timeout
        name: File name used in error messages, defaults to handle.name

    Raises:
        LockTimeoutError: If the lock was not granted within the timeout
        LockAcquisitionError: If the lock cannot be taken at all
    """
    name = name or getattr(handle, "name", "<file>")

    if timeout is None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        except OSError as e:
            raise LockAcquisitionError(f'Cannot obtain lock for file "{name}": {str(e)}') from e
        return

    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except OSError as e:
            if e.errno not in (errno.EAGAIN, errno.EACCES):
                raise LockAcquisitionError(f'Cannot obtain lock for file "{name}": {str(e)}') from e

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise LockTimeoutError(
                f'Timed out after {timeout} seconds waiting for lock on file "{name}"'
            )
        time.sleep(min(poll_interval, remaining))


def release_lock(handle: IO) -> None:
    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def locked(handle: IO, timeout: Optional[float] = None, name: Optional[str] = None) -> Iterator[IO]:
    """Hold an exclusive lock on an open file for the duration of the block."""
    acquire_lock(handle, timeout=timeout, name=name)
    try:
        yield handle
    finally:
        release_lock(handle)
