"""
Single-instance guard.

Recovery assumes exactly one engine owns the repository: two processes
would both resume the same OPENING strategies and unwind legs twice. The
lock file sits beside the database and records the owner's PID; a lock
left by a dead process is taken over.

Usage:
    with InstanceLock("data/hedgefarm.db.lock"):
        asyncio.run(main())
"""

import json
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class LockOwner:
    """Contents of the lock file."""

    pid: int
    hostname: str
    started_at: datetime

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockOwner":
        return cls(
            pid=int(data["pid"]),
            hostname=data.get("hostname", "unknown"),
            started_at=datetime.fromisoformat(data["started_at"]),
        )


class InstanceLockError(Exception):
    """Another live engine holds the lock."""

    def __init__(self, message: str, owner: Optional[LockOwner] = None):
        super().__init__(message)
        self.owner = owner


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # signal 0 only checks the pid exists
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class InstanceLock:
    """PID lock file created with O_EXCL."""

    def __init__(self, path: str):
        self._path = Path(path)
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def owner(self) -> Optional[LockOwner]:
        """Current owner, None when unlocked or the file is unreadable."""
        try:
            with open(self._path, "r") as f:
                return LockOwner.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Unreadable lock file {self._path}: {e}")
            return None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            InstanceLockError: If a live process owns it
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        me = LockOwner(os.getpid(), socket.gethostname(), utcnow())

        for _ in range(2):
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self.owner()
                if owner is not None and owner.pid != me.pid and pid_alive(owner.pid):
                    raise InstanceLockError(
                        f"Another engine is running (PID {owner.pid} on {owner.hostname}, "
                        f"started {owner.started_at})",
                        owner,
                    )
                logger.warning(
                    f"Removing stale lock {self._path}"
                    + (f" left by PID {owner.pid}" if owner else "")
                )
                self._path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w") as f:
                json.dump(me.to_dict(), f)
            self._held = True
            logger.info(f"Acquired instance lock {self._path} (PID {me.pid})")
            return

        raise InstanceLockError(f"Could not create lock file {self._path}")

    def release(self) -> None:
        if not self._held:
            return
        owner = self.owner()
        if owner is not None and owner.pid == os.getpid():
            self._path.unlink(missing_ok=True)
            logger.info("Released instance lock")
        else:
            logger.warning("Instance lock no longer ours, leaving it in place")
        self._held = False

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
