"""Invoking application callbacks that may be plain functions or coroutines."""

from __future__ import annotations

import asyncio
import inspect
import logging
from functools import partial
from typing import Any, Callable, MutableSet, Optional

logger = logging.getLogger(__name__)


def _log_task_failure(description: str, task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("%s failed", description, exc_info=exc)


def invoke(
    handler: Callable[..., Any],
    *args: Any,
    tasks: Optional[MutableSet[asyncio.Task]] = None,
    description: str = "handler",
) -> Optional[asyncio.Task]:
    """Call *handler*; if it returns an awaitable, run it as a task.

    Exceptions are logged and never propagate to the caller, which is always
    an event source (relay delivery, data channel) that must keep running.
    Tasks are added to *tasks* until they finish so they are not collected
    while pending.
    """

    try:
        result = handler(*args)
    except Exception:
        logger.exception("%s failed", description)
        return None
    if not inspect.isawaitable(result):
        return None

    task = asyncio.ensure_future(result)
    if tasks is not None:
        tasks.add(task)
        task.add_done_callback(tasks.discard)
    task.add_done_callback(partial(_log_task_failure, description))
    return task


__all__ = ["invoke"]
