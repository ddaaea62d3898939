"""
Détection et résolution des conflits entre la vue locale d'un onglet et le
SessionRecord partagé.

Ordre de priorité:
    1. Token différent (les deux non nuls)   -> use_incoming
    2. Record partagé inactif, onglet connecté -> logout_all
    3. Expiration divergente (> tolérance)   -> use_incoming
    4. Rien                                  -> None

`merge` et `keep_current` existent dans le type mais ne sont jamais émis;
leur application est un no-op journalisé.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .models import ConflictAction, ConflictResolution, SessionRecord, utcnow
from .session_storage import SessionStorageAdapter

logger = logging.getLogger("session_sync.conflicts")

DEFAULT_EXPIRY_TOLERANCE = 60


def detect_session_conflicts(
    local: Optional[SessionRecord],
    shared: Optional[SessionRecord],
    now: Optional[datetime] = None,
    expiry_tolerance: float = DEFAULT_EXPIRY_TOLERANCE,
) -> Optional[ConflictResolution]:
    """Fonction pure: compare deux snapshots, sans effet de bord."""
    if local is None or shared is None:
        return None
    now = now or utcnow()

    if local.token and shared.token and local.token != shared.token:
        return ConflictResolution(
            action=ConflictAction.USE_INCOMING,
            reason="Token mismatch detected",
            timestamp=now,
        )

    if not shared.is_active and local.is_active and local.token:
        return ConflictResolution(
            action=ConflictAction.LOGOUT_ALL,
            reason="Session ended in another tab",
            timestamp=now,
        )

    if local.expires_at and shared.expires_at:
        drift = abs((shared.expires_at - local.expires_at).total_seconds())
        if drift > expiry_tolerance:
            return ConflictResolution(
                action=ConflictAction.USE_INCOMING,
                reason="Session expiry mismatch detected",
                timestamp=now,
            )

    return None


class ConflictDetector:
    """Lie la détection pure à l'adaptateur de stockage d'un onglet."""

    def __init__(
        self,
        storage: SessionStorageAdapter,
        on_logout_all: Callable[[], Awaitable[None]],
        expiry_tolerance: float = DEFAULT_EXPIRY_TOLERANCE,
    ) -> None:
        self.storage = storage
        self.on_logout_all = on_logout_all
        self.expiry_tolerance = expiry_tolerance
        self.log = logging.LoggerAdapter(logger, {"tab_id": storage.tab_id})

    async def detect(self) -> Optional[ConflictResolution]:
        local = self.storage.get_session_data()
        if not local.token:
            return None
        shared = await self.storage.load_shared_session()
        conflict = detect_session_conflicts(local, shared, utcnow(), self.expiry_tolerance)
        if conflict:
            self.log.warning("session_conflict_detected action=%s reason=%s", conflict.action.value, conflict.reason)
        return conflict

    async def recover_from_conflict(self, resolution: ConflictResolution) -> bool:
        """True si la politique a modifié l'état local."""
        self.log.info("conflict_recover action=%s reason=%s", resolution.action.value, resolution.reason)

        if resolution.action == ConflictAction.USE_INCOMING:
            return await self.storage.reload_from_shared()
        if resolution.action == ConflictAction.LOGOUT_ALL:
            # L'onglet émetteur a déjà notifié les autres
            await self.on_logout_all()
            return True
        self.log.info("conflict_policy_reserved action=%s", resolution.action.value)
        return False
