"""
Lock distribué entre onglets pour les opérations critiques (ex: logout).

Utilise SET NX PX (atomique) puis relit la clé pour confirmer la propriété.
Les locks expirent côté support (PX) quand un onglet plante; le timestamp
du détenteur sert uniquement aux logs.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Optional

from .session_storage import SessionStorageAdapter
from .shared_store import SharedStoreUnavailable

logger = logging.getLogger("session_sync.lock")


class SessionLockCoordinator:
    # Préfixe pour les clés de lock
    KEY_PREFIX = "lock"

    # TTL par défaut: 30 secondes
    DEFAULT_TTL = 30

    def __init__(
        self,
        storage: SessionStorageAdapter,
        ttl: int = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.ttl = ttl
        self._clock = clock
        self.log = logging.LoggerAdapter(logger, {"tab_id": storage.tab_id})

    @property
    def tab_id(self) -> str:
        return self.storage.tab_id

    def _key(self, operation: str) -> str:
        return self.storage.key(f"{self.KEY_PREFIX}:{operation}")

    def _holder(self, raw: Optional[str]) -> Optional[dict]:
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return {"tab_id": raw, "timestamp": 0}

    async def request_session_lock(self, operation: str) -> bool:
        """
        Tente d'acquérir le lock `operation`.

        Returns:
            True si acquis (ou déjà détenu par cet onglet), False si un autre
            onglet le détient. True aussi quand le support partagé est
            indisponible: l'onglet agit seul.
        """
        key = self._key(operation)
        token = json.dumps({"tab_id": self.tab_id, "timestamp": self._clock()})
        try:
            for _ in range(2):
                if await self.storage.store.set(key, token, nx=True, px=self.ttl * 1000):
                    # Relecture pour confirmer la propriété
                    holder = self._holder(await self.storage.store.get(key))
                    if holder and holder.get("tab_id") == self.tab_id:
                        self.log.info("lock_acquired operation=%s", operation)
                        return True
                    self.log.info("lock_lost_race operation=%s", operation)
                    return False

                holder = self._holder(await self.storage.store.get(key))
                if holder is None:
                    # Libéré ou expiré entre-temps: nouvelle tentative
                    continue
                if holder.get("tab_id") == self.tab_id:
                    return True
                # Expiration gérée par le support (PX)
                self.log.info("lock_busy operation=%s holder=%s", operation, holder.get("tab_id"))
                return False
            return False
        except SharedStoreUnavailable as e:
            self.log.warning("lock_store_unavailable operation=%s mode=tab_local error=%s", operation, e)
            return True

    async def release_session_lock(self, operation: str) -> None:
        """Libère le lock seulement si cet onglet le détient."""
        key = self._key(operation)
        try:
            holder = self._holder(await self.storage.store.get(key))
            if holder and holder.get("tab_id") == self.tab_id:
                await self.storage.store.delete(key)
                self.log.info("lock_released operation=%s", operation)
            elif holder:
                self.log.debug("lock_release_not_holder operation=%s holder=%s", operation, holder.get("tab_id"))
        except SharedStoreUnavailable as e:
            self.log.debug("lock_release_error operation=%s error=%s", operation, e)
