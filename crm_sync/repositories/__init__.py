"""
Repositories Layer
Data persistence and query operations for the webhook pipeline.
"""
from .connection import db_manager, get_database, DatabaseManager, StorageContext, create_indexes
from .memory import InMemoryDatabase
from .base import BaseRepository
from .queue import QueueRepository
from .metrics import MetricsRepository
from .events import EventStoreRepository, DiscoveryRepository

__all__ = [
    "db_manager",
    "get_database",
    "DatabaseManager",
    "StorageContext",
    "create_indexes",
    "InMemoryDatabase",
    "BaseRepository",
    "QueueRepository",
    "MetricsRepository",
    "EventStoreRepository",
    "DiscoveryRepository",
]
