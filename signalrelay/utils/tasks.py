"""Background tasks that must not fail silently."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)

TaskFunction = Callable[..., Coroutine[Any, Any, None]]


async def _run_logging_errors(
    function: TaskFunction,
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await function(*args, **kwargs)
    except Exception:
        logger.exception('Unhandled exception in background task')
        raise


def _exit_on_error(task: asyncio.Task[None]) -> None:
    if task.cancelled() or task.exception() is None:
        return
    logger.error(
        f'Background task {task.get_name()!r} failed with '
        f'{task.exception()!r}, exiting',
    )
    raise SystemExit(1)


def spawn_guarded_background_task(
    function: TaskFunction,
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[None]:
    """Run a coroutine function as a background task that cannot die quietly.

    The traceback of any exception raised by the task is logged and the
    process then exits with status 1. Cancellation and normal completion are
    not errors.

    Args:
        function: Coroutine function to run.
        args: Positional arguments for `function`.
        name: Task name used in log messages.
        kwargs: Keyword arguments for `function`.

    Returns:
        The running task.
    """
    task = asyncio.create_task(
        _run_logging_errors(function, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(_exit_on_error)
    return task


async def cancel_and_wait(task: asyncio.Task[Any]) -> None:
    """Cancel a task and wait until it has finished."""
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
