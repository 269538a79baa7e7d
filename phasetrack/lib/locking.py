"""
Lock management for phasetrack.

Uses flock so that only one process writes a project's state at a time.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path

from phasetrack.lib.constants import LOCK_FILE

LOCK_POLL_SECONDS = 0.1


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


def is_locked(project_dir: Path) -> bool:
    """True if another process currently holds the project lock."""
    lock_file = project_dir / LOCK_FILE
    if not lock_file.exists():
        return False
    try:
        with open(lock_file, 'r') as fd:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                fcntl.flock(fd, fcntl.LOCK_UN)
                return False
            except BlockingIOError:
                return True
    except OSError:
        return False


@contextmanager
def project_lock(project_dir: Path, timeout: float = 10):
    """
    Acquire the per-project write lock, yield, release on exit.

    Lock files are never deleted: removing one while another process
    waits on it would hand out two locks on different inodes.

    Raises:
        LockTimeout: lock not acquired within timeout seconds
    """
    lock_file = project_dir / LOCK_FILE
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'w')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start > timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire lock for {project_dir} within {timeout}s")
            time.sleep(LOCK_POLL_SECONDS)

    try:
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            fd.close()
