"""Completion event delivery."""

from reelpipe.modules.notification.notifier import (
    CompletionEvent,
    CompletionNotifier,
    LoggingNotifier,
    RedisNotifier,
    get_notifier,
)

__all__ = [
    "CompletionEvent",
    "CompletionNotifier",
    "LoggingNotifier",
    "RedisNotifier",
    "get_notifier",
]
