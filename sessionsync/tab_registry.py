"""
Registre des onglets vivants.

Hash partagé {namespace}tabs : tab_id -> epoch du dernier heartbeat.
Aucune autorité centrale: chaque onglet calcule la liste des onglets actifs
à partir du même hash et purge paresseusement les entrées périmées.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List

from .models import MessageType, TabEntry
from .session_storage import SessionStorageAdapter
from .shared_store import SharedStoreUnavailable

logger = logging.getLogger("session_sync.tabs")


class TabRegistry:
    TABS_KEY = "tabs"

    def __init__(
        self,
        storage: SessionStorageAdapter,
        stale_after: float = 90,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.stale_after = stale_after
        self._clock = clock
        self.log = logging.LoggerAdapter(logger, {"tab_id": storage.tab_id})

    @property
    def tab_id(self) -> str:
        return self.storage.tab_id

    @property
    def _key(self) -> str:
        return self.storage.key(self.TABS_KEY)

    async def heartbeat(self) -> bool:
        """Écrit le TabEntry de cet onglet."""
        try:
            await self.storage.store.hset(self._key, self.tab_id, str(self._clock()))
        except SharedStoreUnavailable as e:
            self.log.debug("tab_heartbeat_error error=%s", e)
            return False
        return True

    async def register(self) -> None:
        await self.heartbeat()
        await self.storage.publish(MessageType.TAB_REGISTER, {"tab_id": self.tab_id})
        self.log.info("tab_registered")

    async def unregister(self) -> None:
        try:
            await self.storage.store.hdel(self._key, self.tab_id)
        except SharedStoreUnavailable as e:
            self.log.debug("tab_unregister_error error=%s", e)
        await self.storage.publish(MessageType.TAB_UNREGISTER, {"tab_id": self.tab_id})
        self.log.info("tab_unregistered")

    async def get_entries(self) -> List[TabEntry]:
        try:
            raw = await self.storage.store.hgetall(self._key)
        except SharedStoreUnavailable:
            return []
        entries = []
        for tab_id, value in raw.items():
            try:
                entries.append(TabEntry(tab_id=tab_id, last_heartbeat=float(value)))
            except (TypeError, ValueError):
                # Valeur illisible: traitée comme périmée
                entries.append(TabEntry(tab_id=tab_id, last_heartbeat=0.0))
        return entries

    async def get_active_tabs(self) -> List[str]:
        """Onglets dont le heartbeat est dans la fenêtre; inclut toujours cet onglet."""
        now = self._clock()
        entries = await self.get_entries()
        stale = [e.tab_id for e in entries if e.is_stale(now, self.stale_after) and e.tab_id != self.tab_id]
        if stale:
            try:
                await self.storage.store.hdel(self._key, *stale)
                self.log.info("tabs_pruned count=%s", len(stale))
            except SharedStoreUnavailable as e:
                self.log.debug("tabs_prune_error error=%s", e)

        active = sorted(e.tab_id for e in entries if e.tab_id not in stale)
        if self.tab_id not in active:
            active.insert(0, self.tab_id)
        return active
