"""In-process state store."""

import threading
from typing import Dict, Optional

from fleetform.state.base import StateStore, new_token
from fleetform.state.models import LockInfo, StateRecord, utcnow
from fleetform.utils.errors import ConflictError, ErrorContext


class InMemoryStateStore(StateStore):
    """State store kept in memory; safe for concurrent use within one process."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._mutex = threading.Lock()
        self._records: Dict[str, StateRecord] = {}
        self._locks: Dict[str, LockInfo] = {}

    def get(self, key: str) -> Optional[StateRecord]:
        with self._mutex:
            record = self._records.get(key)
            return record.model_copy(deep=True) if record else None

    def put(self, key: str, record: StateRecord, expected_token: Optional[str]) -> str:
        with self._mutex:
            self._check_token(key, expected_token)
            token = new_token()
            self._records[key] = record.model_copy(
                deep=True, update={'token': token, 'updated_at': utcnow()}
            )
            return token

    def delete(self, key: str, expected_token: Optional[str]) -> None:
        with self._mutex:
            self._check_token(key, expected_token)
            self._records.pop(key, None)

    def list(self) -> Dict[str, StateRecord]:
        with self._mutex:
            return {key: record.model_copy(deep=True) for key, record in self._records.items()}

    def _check_token(self, key: str, expected_token: Optional[str]) -> None:
        current = self._records.get(key)
        current_token = current.token if current else None
        if current_token != expected_token:
            raise ConflictError(
                f"State record '{key}' changed since it was read "
                f"(expected token {expected_token}, found {current_token})",
                context=ErrorContext(resource_id=key, operation='state-write')
            )

    def _try_acquire(self, lock: LockInfo) -> Optional[LockInfo]:
        with self._mutex:
            return self._take_lock(self._locks, lock)

    def _release(self, scope: str, owner: str) -> bool:
        with self._mutex:
            holder = self._locks.get(scope)
            if holder is None or holder.owner != owner:
                return False
            del self._locks[scope]
            return True
