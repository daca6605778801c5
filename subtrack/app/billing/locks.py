"""Per-organization mutual exclusion for subscription mutations."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Iterator, List


class OrganizationLocks:
    """Registry handing out one re-entrant lock per organization id.

    Entries are reference counted and dropped when no thread holds or waits on
    them, so the registry does not grow with the number of organizations seen.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, organization_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(organization_id)
            if entry is None:
                entry = [RLock(), 0]
                self._locks[organization_id] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(organization_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


__all__ = ["OrganizationLocks"]
