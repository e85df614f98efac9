"""Per-plugin exclusive locks."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from pluginhost.exceptions import OperationInProgressError


class KeyedLocks:
    """One non-reentrant lock per plugin id, acquired without waiting.

    Operations on different ids never contend; a second operation on a
    busy id fails immediately instead of queueing. Only ids with an
    operation in flight are tracked, so released ids leave nothing behind.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._busy: set[str] = set()

    def __len__(self) -> int:
        with self._guard:
            return len(self._busy)

    def is_held(self, key: str) -> bool:
        with self._guard:
            return key in self._busy

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for *key* for the duration of the block.

        Raises:
            OperationInProgressError: If another operation holds it.
        """
        with self._guard:
            if key in self._busy:
                raise OperationInProgressError(
                    f"An operation on plugin {key} is already in progress"
                )
            self._busy.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._busy.discard(key)
