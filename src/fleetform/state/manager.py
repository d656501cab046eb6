"""File-backed state store with file locking and atomic writes."""

import fcntl
import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from fleetform.state.base import StateStore, new_token
from fleetform.state.models import LockInfo, StateDocument, StateRecord, utcnow
from fleetform.utils.errors import ConflictError, ErrorContext, StateError
from fleetform.utils.logging import get_logger

logger = get_logger(__name__)


class FileStateStore(StateStore):
    """Keeps records and scope locks in one JSON document on local disk.

    Every operation is a read-modify-write under an exclusive ``flock`` on a
    sidecar lock file, so separate processes sharing the file serialize their
    writes. Writes go to a temporary file first and are renamed into place.
    """

    def __init__(self, state_path: str, **kwargs):
        """
        Initialize FileStateStore.

        Args:
            state_path: Path to the state file
            **kwargs: Lock settings passed to StateStore
        """
        super().__init__(**kwargs)
        self.state_path = Path(state_path)
        self._mutex = threading.Lock()

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def get(self, key: str) -> Optional[StateRecord]:
        with self._transaction(write=False) as document:
            return document.records.get(key)

    def put(self, key: str, record: StateRecord, expected_token: Optional[str]) -> str:
        with self._transaction() as document:
            self._check_token(document, key, expected_token)
            token = new_token()
            document.records[key] = record.model_copy(
                update={'token': token, 'updated_at': utcnow()}
            )
            return token

    def delete(self, key: str, expected_token: Optional[str]) -> None:
        with self._transaction() as document:
            self._check_token(document, key, expected_token)
            document.records.pop(key, None)

    def list(self) -> Dict[str, StateRecord]:
        with self._transaction(write=False) as document:
            return dict(document.records)

    def _try_acquire(self, lock: LockInfo) -> Optional[LockInfo]:
        with self._transaction() as document:
            return self._take_lock(document.locks, lock)

    def _release(self, scope: str, owner: str) -> bool:
        with self._transaction() as document:
            holder = document.locks.get(scope)
            if holder is None or holder.owner != owner:
                return False
            del document.locks[scope]
            return True

    def _check_token(self, document: StateDocument, key: str, expected_token: Optional[str]) -> None:
        current = document.records.get(key)
        current_token = current.token if current else None
        if current_token != expected_token:
            raise ConflictError(
                f"State record '{key}' changed since it was read "
                f"(expected token {expected_token}, found {current_token})",
                context=ErrorContext(resource_id=key, operation='state-write')
            )

    @contextmanager
    def _transaction(self, write: bool = True) -> Iterator[StateDocument]:
        """Load the document under an exclusive file lock and save it on success."""
        lock_path = self.state_path.with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        with self._mutex:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                document = self._load()
                yield document
                if write:
                    self._save(document)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

    def _load(self) -> StateDocument:
        if not self.state_path.exists():
            return StateDocument()

        try:
            with open(self.state_path, "r") as f:
                return StateDocument.model_validate(json.load(f))
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {self.state_path}: {e}", cause=e)
        except ValueError as e:
            raise StateError(f"Invalid state file {self.state_path}: {e}", cause=e)

    def _save(self, document: StateDocument) -> None:
        document.timestamp = utcnow()
        temp_path = self.state_path.with_suffix(".tmp")
        try:
            with open(temp_path, "w") as f:
                f.write(document.model_dump_json(indent=2))
            temp_path.replace(self.state_path)
        except OSError as e:
            raise StateError(f"Failed to save state file {self.state_path}: {e}", cause=e)
        logger.debug(f"Saved state file {self.state_path}")
