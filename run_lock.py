"""
Process-wide run lock.

The lock is a directory created with a single ``mkdir`` call, which either
succeeds or fails atomically, so two runs started at the same moment cannot
both believe they own it. The owner's pid is written into the directory so an
operator can tell whether a leftover lock is stale.
"""
from __future__ import annotations

import os
from pathlib import Path
from types import TracebackType
from typing import Optional, Type


PID_FILENAME = "pid"


class LockError(Exception):
    """Base class for lock failures."""


class LockContentionError(LockError):
    """Raised when another run already holds the lock."""

    def __init__(self, path: Path, holder_pid: Optional[int] = None) -> None:
        self.path = path
        self.holder_pid = holder_pid
        holder = f" (held by pid {holder_pid})" if holder_pid is not None else ""
        super().__init__(f"Lock {path} is already held{holder}.")


class LockAcquireError(LockError):
    """Raised when the lock cannot be created for any other reason."""


class RunLock:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.acquired = False

    @property
    def pid_path(self) -> Path:
        return self.path / PID_FILENAME

    def read_holder_pid(self) -> Optional[int]:
        try:
            return int(self.pid_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> "RunLock":
        if self.acquired:
            return self

        try:
            os.mkdir(self.path)
        except FileExistsError as error:
            raise LockContentionError(self.path, self.read_holder_pid()) from error
        except OSError as error:
            raise LockAcquireError(f"Could not create lock {self.path}: {error}") from error

        self.acquired = True
        try:
            self.pid_path.write_text(f"{os.getpid()}\n")
        except OSError as error:
            self.release()
            raise LockAcquireError(
                f"Could not record pid in {self.pid_path}: {error}"
            ) from error
        except BaseException:
            # __exit__ does not run if __enter__ raises.
            self.release()
            raise

        return self

    def release(self) -> None:
        if not self.acquired:
            return
        self.pid_path.unlink(missing_ok=True)
        try:
            os.rmdir(self.path)
        except FileNotFoundError:
            pass
        self.acquired = False

    def __enter__(self) -> "RunLock":
        return self.acquire()

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.release()
