"""Utilities module."""

from talkai.utils.callbacks import Callback, invoke_callback
from talkai.utils.throttle import Debouncer, Throttle
from talkai.utils.websocket_retry import (
    RetryConfig,
    RetryExhausted,
    with_retry,
)

__all__ = [
    "Callback",
    "Debouncer",
    "RetryConfig",
    "RetryExhausted",
    "Throttle",
    "invoke_callback",
    "with_retry",
]
