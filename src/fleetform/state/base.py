"""State store interface with compare-and-swap writes and scope locking."""

import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from fleetform.state.models import LockInfo, StateRecord
from fleetform.utils.errors import ErrorContext, LockBusyError
from fleetform.utils.logging import get_logger

logger = get_logger(__name__)


def new_token() -> str:
    """Generate a fresh version token."""
    return uuid.uuid4().hex


class StateStore(ABC):
    """Authoritative record of applied resources.

    ``put`` and ``delete`` succeed only when ``expected_token`` matches the
    stored record's token (``None`` meaning "no record"), otherwise they raise
    ``ConflictError``. Each write assigns a new token.
    """

    def __init__(
        self,
        stale_after: float = 900.0,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize store.

        Args:
            stale_after: Seconds after which a held lock may be taken over
            poll_interval: Seconds between lock attempts
            clock: Time source (epoch seconds)
            sleep: Wait function used while polling for a lock
        """
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep
        self.owner = new_token()

    @abstractmethod
    def get(self, key: str) -> Optional[StateRecord]:
        """Get the record for a resource key, or None."""
        pass

    @abstractmethod
    def put(self, key: str, record: StateRecord, expected_token: Optional[str]) -> str:
        """Write a record if the stored token matches; return the new token."""
        pass

    @abstractmethod
    def delete(self, key: str, expected_token: Optional[str]) -> None:
        """Remove a record if the stored token matches."""
        pass

    @abstractmethod
    def list(self) -> Dict[str, StateRecord]:
        """Get a snapshot of every record, keyed by resource key."""
        pass

    @abstractmethod
    def _try_acquire(self, lock: LockInfo) -> Optional[LockInfo]:
        """Take the lock if free or stale. Return the current holder if busy."""
        pass

    @abstractmethod
    def _release(self, scope: str, owner: str) -> bool:
        """Release the lock if held by ``owner``."""
        pass

    def lock(self, scope: str, timeout: float = 30.0, owner: Optional[str] = None) -> LockInfo:
        """Acquire the scope lock, waiting up to ``timeout`` seconds.

        ``owner`` identifies the holder; it defaults to this store instance.

        A lock held longer than ``stale_after`` is taken over.

        Raises:
            LockBusyError: If another holder keeps the lock past the timeout
        """
        deadline = self.clock() + timeout
        while True:
            wanted = LockInfo(
                scope=scope,
                owner=owner or self.owner,
                acquired_at=self.clock(),
                stale_after=self.stale_after
            )
            holder = self._try_acquire(wanted)
            if holder is None:
                logger.debug(f"Acquired lock '{scope}'")
                return wanted

            if self.clock() >= deadline:
                raise LockBusyError(
                    f"Lock '{scope}' is held by {holder.owner} (timeout after {timeout}s)",
                    context=ErrorContext(operation='lock', additional_info={'scope': scope}),
                    suggestions=['Wait for the other run to finish or let the lock go stale']
                )
            self.sleep(self.poll_interval)

    def unlock(self, scope: str, owner: Optional[str] = None) -> None:
        """Release the scope lock held by ``owner`` (default: this store)."""
        if not self._release(scope, owner or self.owner):
            logger.warning(f"Lock '{scope}' was not held by this run; it may have been taken over")

    @contextmanager
    def locked(
        self, scope: str, timeout: float = 30.0, owner: Optional[str] = None
    ) -> Iterator[LockInfo]:
        """Hold the scope lock for the duration of a block."""
        info = self.lock(scope, timeout, owner)
        try:
            yield info
        finally:
            self.unlock(scope, info.owner)

    def _take_lock(self, locks: Dict[str, LockInfo], wanted: LockInfo) -> Optional[LockInfo]:
        """Shared lock decision over a lock table. Mutates ``locks`` on success."""
        holder = locks.get(wanted.scope)
        if holder is not None and holder.owner != wanted.owner:
            if not holder.is_stale(wanted.acquired_at):
                return holder
            logger.warning(
                f"Taking over stale lock '{wanted.scope}' from {holder.owner}"
            )
        locks[wanted.scope] = wanted
        return None
