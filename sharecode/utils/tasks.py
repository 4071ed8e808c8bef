"""Spawn asyncio background tasks with error logging."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Exception that can be raised inside a task to quietly exit it."""

    pass


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    """Execute a coroutine and log any tracebacks.

    Catches any exceptions raised by the coroutine, logs the traceback,
    and re-raises the exception.
    """
    try:
        await coro(*args, **kwargs)
    except SafeTaskExitError:
        raise
    except Exception:
        logger.error(traceback.format_exc())
        raise


def log_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that logs and retrieves the task exception."""
    if task.cancelled():
        return
    exception = task.exception()
    if exception is not None and not isinstance(exception, SafeTaskExitError):
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{exception!r}',
        )


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine safely in the background.

    Launches the coroutine as an asyncio task and sets the done
    callback to [`log_on_error()`][sharecode.utils.tasks.log_on_error].
    Background tasks that are never awaited would otherwise fail silently.
    Whoever owns the task can still await it to get the exception.

    Tasks can raise
    [`SafeTaskExitError`][sharecode.utils.tasks.SafeTaskExitError]
    to signal the task is finished without logging an error.

    Source: https://stackoverflow.com/questions/62588076

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(log_on_error)
    return task
