"""
Atomic JSON persistence and file locking for dashboard state.

The local settings store and the dashboard config file are both small
JSON documents that can be touched by more than one CLI process at once
(e.g. a `watch` session and a `refresh off` command).
"""

import os
import fcntl
import json
import tempfile
import time
from pathlib import Path
from typing import Any, IO, Optional


class AtomicFileWriter:
    """
    Writes JSON documents through a temp file + os.replace().

    Readers never observe a half-written document.
    """

    @staticmethod
    def write_json(filepath: Path, data: Any, indent: int = 2) -> None:
        """
        Replace `filepath` with the JSON encoding of `data`.

        The parent directory is created if needed. On failure the
        previous document is left untouched and the temp file removed.

        Raises:
            OSError: If the document can't be written
        """
        target = Path(filepath)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, scratch = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        scratch_path: Optional[Path] = Path(scratch)
        try:
            with os.fdopen(fd, "w") as out:
                json.dump(data, out, indent=indent, default=str)
                out.flush()
                os.fsync(out.fileno())

            os.replace(scratch_path, target)
            scratch_path = None
        finally:
            if scratch_path is not None and scratch_path.exists():
                scratch_path.unlink()

    @staticmethod
    def read_json(filepath: Path, default: Any = None) -> Any:
        """Decoded document, or `default` when missing or unreadable."""
        source = Path(filepath)
        if not source.exists():
            return default

        try:
            return json.loads(source.read_text())
        except (json.JSONDecodeError, OSError):
            return default


class FileLock:
    """
    Exclusive fcntl lock guarding a read-modify-write of a JSON document.

    Usage:
        with FileLock(path.with_suffix(".lock")):
            data = AtomicFileWriter.read_json(path, {})
            ...
            AtomicFileWriter.write_json(path, data)
    """

    POLL_INTERVAL = 0.05

    def __init__(self, lockfile: Path):
        self.lockfile = Path(lockfile)
        self.fd: Optional[IO[str]] = None

    def acquire(self, timeout: float = 5.0) -> bool:
        """
        Take the lock, retrying until `timeout` seconds have passed.

        Returns:
            False if another holder kept it for the whole timeout
        """
        self.lockfile.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + timeout

        while True:
            handle = open(self.lockfile, "w")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                handle.close()
                if time.monotonic() >= deadline:
                    return False
                time.sleep(self.POLL_INTERVAL)
                continue
            except OSError:
                handle.close()
                raise

            handle.write(f"{os.getpid()}:{time.time()}\n")
            handle.flush()
            self.fd = handle
            return True

    def release(self) -> None:
        if self.fd is None:
            return
        try:
            fcntl.flock(self.fd.fileno(), fcntl.LOCK_UN)
        finally:
            self.fd.close()
            self.fd = None

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Timed out waiting for lock {self.lockfile}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
