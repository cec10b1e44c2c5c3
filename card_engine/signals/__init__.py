from card_engine.signals.push import ExpoPushClient, PushMessage, is_expo_token
from card_engine.signals.watchlist import WatchlistChecker, is_triggered

__all__ = [
    "ExpoPushClient",
    "PushMessage",
    "WatchlistChecker",
    "is_expo_token",
    "is_triggered",
]
