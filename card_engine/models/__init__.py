"""
Models package — export all SQLAlchemy models.
"""

from card_engine.models.base import Base
from card_engine.models.card_variant import CardVariant
from card_engine.models.job_lease import JobLease
from card_engine.models.notification import Notification
from card_engine.models.price_cache import PriceSnapshot
from card_engine.models.price_point import PricePoint
from card_engine.models.user import PushToken, User
from card_engine.models.watchlist import WatchlistEntry

__all__ = [
    "Base",
    "CardVariant",
    "JobLease",
    "Notification",
    "PricePoint",
    "PriceSnapshot",
    "PushToken",
    "User",
    "WatchlistEntry",
]
