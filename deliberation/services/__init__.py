"""Service layer helpers for the deliberation engine."""

from .change_feed import ChangeEvent, ChangeFeed, Subscription, change_feed  # noqa: F401

__all__ = [
    "change_feed",
    "ChangeEvent",
    "ChangeFeed",
    "Subscription",
]
