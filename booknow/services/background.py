"""
Background (advisory) work.

Notifications and emails run after the HTTP response through FastAPI's
BackgroundTasks. Every task is wrapped so an exception is logged with the
task name and counted, and never reaches the request that scheduled it.
"""

import asyncio
import functools
import logging
from typing import Callable, List, Optional, Tuple

from fastapi import BackgroundTasks

from ..utils.metrics import advisory_failures_total

logger = logging.getLogger(__name__)


def advisory(name: str, func: Callable) -> Callable:
    """Wrap `func` so failures are logged and counted instead of raised."""
    if asyncio.iscoroutinefunction(func):
        @functools.wraps(func)
        async def run_async(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception:
                advisory_failures_total.inc(task=name)
                logger.exception(f"Background task '{name}' failed")
        return run_async

    @functools.wraps(func)
    def run_sync(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception:
            advisory_failures_total.inc(task=name)
            logger.exception(f"Background task '{name}' failed")
    return run_sync


class BackgroundDispatcher:
    """
    Schedules advisory tasks.

    Bound to a request's BackgroundTasks when one is given; otherwise tasks
    are queued in-process and executed by `run_pending()` (scripts, tests).
    """

    def __init__(self, background_tasks: Optional[BackgroundTasks] = None):
        self.background_tasks = background_tasks
        self.pending: List[Tuple[str, Callable, tuple, dict]] = []

    def schedule(self, name: str, func: Callable, *args, **kwargs) -> None:
        wrapped = advisory(name, func)
        if self.background_tasks is not None:
            self.background_tasks.add_task(wrapped, *args, **kwargs)
        else:
            self.pending.append((name, wrapped, args, kwargs))
        logger.debug(f"Scheduled background task '{name}'")

    async def run_pending(self) -> int:
        count = 0
        while self.pending:
            _, func, args, kwargs = self.pending.pop(0)
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                await result
            count += 1
        return count

    @property
    def scheduled_names(self) -> List[str]:
        return [name for name, _, _, _ in self.pending]
