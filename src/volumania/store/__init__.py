"""Durable record stores for autoscaler policies."""

from .base import RecordStore
from .memory import MemoryRecordStore
from .redis import RedisRecordStore

__all__ = [
    "RecordStore",
    "MemoryRecordStore",
    "RedisRecordStore",
]
