"""State management module for tracking applied resources."""

from .base import StateStore
from .manager import FileStateStore
from .memory import InMemoryStateStore
from .models import LockInfo, StateDocument, StateRecord

__all__ = [
    "StateStore",
    "FileStateStore",
    "InMemoryStateStore",
    "LockInfo",
    "StateDocument",
    "StateRecord",
]
