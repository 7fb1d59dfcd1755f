"""Periodic wakeup requests that keep idle free-tier services from being suspended."""

from .models import DomainConfig, DomainEntry, LogEntry, TaskOutcome, TaskReport
from .registry import DomainRegistry
from .runner import TaskRunner
from .store import KeyValueStore, RedisStore, StorageError

__all__ = [
    "DomainConfig",
    "DomainEntry",
    "DomainRegistry",
    "KeyValueStore",
    "LogEntry",
    "RedisStore",
    "StorageError",
    "TaskOutcome",
    "TaskReport",
    "TaskRunner",
]
