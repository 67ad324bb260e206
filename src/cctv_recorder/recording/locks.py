"""Cooperative locking for segment files being rewritten in place."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class LockManager:
    """Registry of paths currently under exclusive manipulation.

    The locks are advisory: they only protect against code paths that check
    :meth:`is_locked` before touching a segment (the remuxer, retention and
    eviction). Nothing is locked at the operating system level.
    """

    def __init__(self) -> None:
        self._paths: set[str] = set()
        self._mutex = threading.Lock()

    @staticmethod
    def _key(path: Path | str) -> str:
        return str(Path(path))

    def acquire(self, path: Path | str) -> bool:
        """Mark ``path`` as held. Returns ``False`` if it was already held."""

        key = self._key(path)
        with self._mutex:
            if key in self._paths:
                return False
            self._paths.add(key)
            return True

    def release(self, path: Path | str) -> None:
        with self._mutex:
            self._paths.discard(self._key(path))

    def is_locked(self, path: Path | str) -> bool:
        with self._mutex:
            return self._key(path) in self._paths

    @contextmanager
    def hold(self, path: Path | str) -> Iterator[bool]:
        """Hold ``path`` for the duration of the block, releasing it afterwards.

        Yields whether this caller obtained the lock; a lock already held by
        someone else is left untouched on exit.
        """

        acquired = self.acquire(path)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(path)

    def held(self) -> list[str]:
        with self._mutex:
            return sorted(self._paths)


__all__ = ["LockManager"]
