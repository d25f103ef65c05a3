"""
Storage layer for the web crawler system.
"""

from .database import DatabaseManager, DatabaseError
from .state_tracker import (
    CrawlStateTracker, MemoryStateTracker, RedisStateTracker, StateTrackerError, create_state_tracker
)

__all__ = [
    'DatabaseManager', 'DatabaseError',
    'CrawlStateTracker', 'MemoryStateTracker', 'RedisStateTracker', 'StateTrackerError',
    'create_state_tracker'
]
