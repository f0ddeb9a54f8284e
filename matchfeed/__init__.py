"""matchfeed — "who liked you" feed, live sync and mutual-match transactions."""

from .blocklist import BlockListCache
from .database import Backend, PGBackend, SQLiteBackend, init_db
from .errors import (
    EventNotFound, MatchFeedError, TransactionCommitFailure, TransactionInFlight,
    TransientFetchFailure, Unauthenticated,
)
from .feed import LikerFeed
from .filters import FilterSpec, Range
from .matching import MatchCoordinator
from .session import SessionRegistry, ViewerSession
from .sync import LiveSyncReconciler

__all__ = [
    "Backend", "PGBackend", "SQLiteBackend", "init_db",
    "BlockListCache", "LikerFeed", "LiveSyncReconciler", "MatchCoordinator",
    "SessionRegistry", "ViewerSession", "FilterSpec", "Range",
    "MatchFeedError", "Unauthenticated", "TransientFetchFailure",
    "TransactionCommitFailure", "TransactionInFlight", "EventNotFound",
]

__version__ = "0.1.0"
