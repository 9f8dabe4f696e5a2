# d2stats/__init__.py
"""
Destiny 2 Crucible activity sync.

Queues activity ids discovered on Bungie.net, fetches their post game
carnage reports in concurrent batches and stores per-character stats in
SQLite.
"""

from .enums import Mode, Platform, TimePeriod
from .store import ActivityStore, StoreError, PersistenceError
from .sync import SyncEngine, SyncReport, DrainReport, OutcomeStatus

__all__ = [
    'Mode',
    'Platform',
    'TimePeriod',
    'ActivityStore',
    'StoreError',
    'PersistenceError',
    'SyncEngine',
    'SyncReport',
    'DrainReport',
    'OutcomeStatus',
]
