from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Owns the pending background refreshes of one application instance.

    Each key holds at most one pending task; scheduling a key again replaces
    the previous timer. A callback may reschedule its own key.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def schedule(self, key: str, delay_seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        current = asyncio.current_task()
        existing = self._tasks.get(key)
        if existing is not None and existing is not current and not existing.done():
            existing.cancel()
        task = asyncio.get_running_loop().create_task(
            self._run(key, max(0.0, float(delay_seconds)), callback),
            name=f"icsbridge-refresh-{key}",
        )
        self._tasks[key] = task
        logger.debug("Scheduled refresh %s in %.1fs", key, delay_seconds)

    async def _run(self, key: str, delay_seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        try:
            await asyncio.sleep(delay_seconds)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled refresh %s failed", key)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                self._tasks.pop(key, None)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def scheduled_keys(self) -> list[str]:
        return sorted(key for key, task in self._tasks.items() if not task.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
