"""Per-host execution lock.

Waiters poll at a fixed interval; there is no queue, so the order in which
several waiters on the same host get the lock is unspecified.
"""

from __future__ import annotations

import asyncio

from nodefleet.utils.logging import get_logger

log = get_logger(__name__)


class HostLockTable:
    """One busy flag per host, owned by the executor."""

    def __init__(self, poll_interval: float = 0.1) -> None:
        self._poll_interval = poll_interval
        self._busy: dict[str, bool] = {}

    def is_locked(self, host: str) -> bool:
        return self._busy.get(host, False)

    async def acquire(self, host: str) -> None:
        waited = False
        while self._busy.get(host, False):
            if not waited:
                log.debug("lock.waiting", host=host)
                waited = True
            await asyncio.sleep(self._poll_interval)
        # No await between the check above and this assignment
        self._busy[host] = True

    def release(self, host: str) -> None:
        self._busy.pop(host, None)

