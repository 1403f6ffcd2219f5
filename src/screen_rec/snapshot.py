"""
Snapshot plumbing shared by the feature cache, content index and models.

Offline jobs write artifacts with `atomic_write` (temp file in the same
directory, then `os.replace`), so a reader opening the path sees either the
previous file or the new one. In memory, every component keeps its current
snapshot behind a `SnapshotRef`; readers grab the reference once per request
and keep using that object even if a rebuild swaps in a newer one meanwhile.
"""
from __future__ import annotations

import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generic, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SnapshotRef(Generic[T]):
    """A single swappable reference to an immutable snapshot."""

    def __init__(self, value: T | None = None):
        self._value = value
        self._load_lock = threading.Lock()

    def get(self) -> T | None:
        return self._value

    def swap(self, value: T | None) -> T | None:
        """Replace the current snapshot, returning the previous one."""
        previous, self._value = self._value, value
        return previous

    def load_once(self, loader: Callable[[], T | None]) -> T | None:
        """
        Populate the reference from `loader` if it is empty.

        Concurrent first callers wait for a single load instead of each reading
        the file. A loader returning None leaves the reference empty so a later
        call can retry once the artifact exists.
        """
        value = self._value
        if value is not None:
            return value
        with self._load_lock:
            if self._value is None:
                self._value = loader()
            return self._value


@contextmanager
def atomic_write(path: Path, mode: str = "wb") -> Iterator:
    """
    Open a temporary sibling of `path` for writing and move it into place on
    success. On any exception the temporary file is removed and `path` is left
    untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, mode, encoding=None if "b" in mode else "utf-8") as fh:
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    logger.debug(f"Wrote snapshot {path}")
