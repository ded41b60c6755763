"""
Progress notifications for long-running orchestration.

Callbacks may be plain functions or coroutine functions. Plain callbacks run
inline; coroutine callbacks are scheduled as background tasks and never
awaited by the caller. A failing callback is logged and otherwise ignored.
"""
import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Set, Union

from gradpilot.core.logging import get_logger

from .schema import ProgressUpdate

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Union[None, Awaitable[None]]]

# Strong references so scheduled notifications are not garbage collected mid-flight.
_pending: Set["asyncio.Future[None]"] = set()


def _on_done(future: "asyncio.Future[None]") -> None:
    _pending.discard(future)
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning(
            "progress_callback_failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )


def notify_progress(
    callback: Optional[ProgressCallback],
    message: str,
    step_index: Optional[int] = None,
    total_steps: Optional[int] = None,
    tool_names: Optional[list] = None,
) -> None:
    """Deliver one progress update without blocking or raising."""
    if callback is None:
        return

    update = ProgressUpdate(
        message=message,
        step_index=step_index,
        total_steps=total_steps,
        tool_names=tool_names,
    )
    try:
        outcome = callback(update)
        if inspect.isawaitable(outcome):
            future = asyncio.ensure_future(outcome)
            _pending.add(future)
            future.add_done_callback(_on_done)
    except Exception as exc:
        logger.warning(
            "progress_callback_failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )
