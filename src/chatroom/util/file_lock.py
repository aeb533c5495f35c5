from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Dict, Iterator


class LockUnavailableError(RuntimeError):
    """Raised when a non-blocking lock cannot be acquired."""


# flock is per open file description, so two threads of one process each
# opening the lockfile would both get it on some platforms. Serialize
# in-process first.
_THREAD_LOCKS: Dict[str, threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


def _thread_lock(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _THREAD_LOCKS_GUARD:
        lk = _THREAD_LOCKS.get(key)
        if lk is None:
            lk = threading.Lock()
            _THREAD_LOCKS[key] = lk
        return lk


def _ensure_lock_region(f: IO[bytes]) -> None:
    """Windows region locks need at least one byte in the file."""
    try:
        f.seek(0, os.SEEK_END)
        if f.tell() <= 0:
            f.write(b"\0")
            f.flush()
        f.seek(0)
    except OSError:
        pass


def _lock_fd(fd: int, *, blocking: bool) -> None:
    if os.name == "nt":
        import msvcrt  # Windows only

        msvcrt.locking(fd, msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK, 1)
        return
    import fcntl  # POSIX only

    flags = fcntl.LOCK_EX
    if not blocking:
        flags |= fcntl.LOCK_NB
    fcntl.flock(fd, flags)


def _unlock_fd(fd: int) -> None:
    if os.name == "nt":
        import msvcrt  # Windows only

        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        return
    import fcntl  # POSIX only

    fcntl.flock(fd, fcntl.LOCK_UN)


def acquire_lockfile(path: Path, *, blocking: bool = True) -> IO[bytes]:
    """Open + lock a lockfile. Keep the returned handle open to hold the lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    f = path.open("r+b") if path.exists() else path.open("w+b")
    _ensure_lock_region(f)
    try:
        _lock_fd(f.fileno(), blocking=blocking)
    except OSError as e:
        f.close()
        if not blocking:
            raise LockUnavailableError(str(e)) from e
        raise
    return f


def release_lockfile(f: IO[bytes]) -> None:
    """Release a lockfile acquired via acquire_lockfile (best-effort)."""
    try:
        _unlock_fd(f.fileno())
    except OSError:
        pass
    try:
        f.close()
    except OSError:
        pass


@contextmanager
def locked(path: Path, *, blocking: bool = True) -> Iterator[None]:
    """Hold an exclusive lock on `path` for the duration of the block.

    Excludes other threads of this process and other processes sharing the
    same CHATROOM_HOME.
    """
    tl = _thread_lock(path)
    if not tl.acquire(blocking=blocking):
        raise LockUnavailableError(f"lock busy: {path}")
    try:
        f = acquire_lockfile(path, blocking=blocking)
        try:
            yield
        finally:
            release_lockfile(f)
    finally:
        tl.release()
