"""
Groupe de timers périodiques asyncio, annulables en bloc.

Un timer peut arrêter son propre groupe depuis son callback (ex: logout
déclenché par le compte à rebours): la tâche courante n'est pas annulée,
elle sort simplement de sa boucle au retour du callback.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List

logger = logging.getLogger("session_sync.timers")

TimerCallback = Callable[[], Awaitable[object]]


class TimerGroup:
    def __init__(self, name: str = "timers") -> None:
        self.name = name
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def names(self) -> List[str]:
        return sorted(n for n, t in self._tasks.items() if not t.done())

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def start(self, name: str, interval: float, callback: TimerCallback, immediate: bool = False) -> bool:
        """Démarre un timer; False s'il tourne déjà."""
        if self.is_running(name):
            return False
        task = asyncio.create_task(self._run(name, interval, callback, immediate))
        self._tasks[name] = task
        logger.debug("timer_started group=%s timer=%s interval=%s", self.name, name, interval)
        return True

    async def _run(self, name: str, interval: float, callback: TimerCallback, immediate: bool) -> None:
        me = asyncio.current_task()
        if immediate:
            await self._tick(name, callback)
        while self._tasks.get(name) is me:
            await asyncio.sleep(interval)
            if self._tasks.get(name) is not me:
                break
            await self._tick(name, callback)

    async def _tick(self, name: str, callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("timer_error group=%s timer=%s error=%s", self.name, name, repr(e), exc_info=True)

    async def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self, keep: Iterable[str] = ()) -> None:
        """Arrête tous les timers sauf `keep`; sans effet si déjà arrêtés."""
        names = [n for n in self._tasks if n not in keep]
        for name in names:
            await self.cancel(name)
        if names:
            logger.debug("timers_cancelled group=%s count=%s", self.name, len(names))
