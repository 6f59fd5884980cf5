"""
Shared storage package for the protocol scheduling engine

Contains the record store used by the scheduler, jobs and CLI:
- store: ProtocolStore port and the in-memory implementation
- redis_store: Redis implementation built on atomic Lua scripts
"""

from .store import ProtocolStore, InMemoryProtocolStore
from .redis_store import RedisProtocolStore

__all__ = [
    'ProtocolStore',
    'InMemoryProtocolStore',
    'RedisProtocolStore'
]
