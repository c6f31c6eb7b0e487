"""Callback helpers shared by the stream clients and state machines."""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Union

from talkai.observability.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[..., Union[None, Awaitable[None]]]


async def invoke_callback(
    callback: Callback | None,
    *args: Any,
    name: str = "callback",
) -> None:
    """Call a sync or async callback, logging instead of raising.

    Consumer callbacks run inside transport event handlers; an exception
    escaping them would tear down the handler, not reach the consumer.
    """
    if callback is None:
        return

    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(
            "callback_error",
            callback=name,
            error=str(e),
            error_type=type(e).__name__,
        )
