"""
Moniteur de santé de session.

Combine la détection de conflits inter-onglets et la validation backend en
un statut unique: error (backend) > warning (conflit local) > healthy.

Deux timers indépendants:
    - health_check: vérification complète (défaut 5 min)
    - resync: pousse la vue locale vers les autres onglets (défaut 60 s)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .auth_api import AuthApiClient, AuthApiError
from .conflict_detector import ConflictDetector
from .models import ConflictAction, ConflictResolution, HealthStatus, utcnow
from .timers import TimerGroup

logger = logging.getLogger("session_sync.health")

HEALTH_TIMER = "health_check"
RESYNC_TIMER = "resync"


class SessionHealthMonitor:
    def __init__(
        self,
        detector: ConflictDetector,
        api: AuthApiClient,
        on_conflict: Callable[[ConflictResolution], Awaitable[None]],
        on_unauthorized: Callable[[], Awaitable[None]],
    ) -> None:
        self.detector = detector
        self.api = api
        self.on_conflict = on_conflict
        self.on_unauthorized = on_unauthorized
        self.status = HealthStatus.HEALTHY
        self.conflicts: List[ConflictResolution] = []
        self.last_sync: Optional[datetime] = None
        self.last_check: Optional[datetime] = None
        self.last_validation: Dict[str, Any] = {}
        self.log = logging.LoggerAdapter(logger, {"tab_id": detector.storage.tab_id})

    # ========== Journal des conflits ==========

    def record_conflict(self, conflict: ConflictResolution) -> None:
        self.conflicts.append(conflict)
        if self.status != HealthStatus.ERROR:
            self.status = HealthStatus.WARNING

    def resolve_conflict(self, conflict: ConflictResolution) -> bool:
        if conflict not in self.conflicts:
            return False
        self.conflicts.remove(conflict)
        if not self.conflicts and self.status == HealthStatus.WARNING:
            self.status = HealthStatus.HEALTHY
        return True

    def mark_synced(self) -> None:
        self.last_sync = utcnow()

    def reset(self) -> None:
        self.status = HealthStatus.HEALTHY
        self.conflicts = []
        self.last_sync = None
        self.last_check = None
        self.last_validation = {}

    # ========== Vérification ==========

    async def perform_health_check(self, token: Optional[str]) -> bool:
        """True si la session est utilisable (un conflit seul ne la rend pas inutilisable)."""
        self.last_check = utcnow()
        conflict = await self.detector.detect()
        if conflict:
            await self.on_conflict(conflict)
            if conflict.action == ConflictAction.LOGOUT_ALL:
                # Session terminée ailleurs: rien à valider
                return False
        elif self.conflicts:
            # Plus de divergence: les conflits journalisés sont réglés
            self.log.info("conflicts_settled count=%s", len(self.conflicts))
            self.conflicts = []

        if not token:
            return False

        try:
            data = await self.api.validate_session(token)
        except AuthApiError as e:
            self.status = HealthStatus.ERROR
            self.log.warning("health_check_backend_failed code=%s status=%s", e.code, e.status_code)
            if e.is_unauthorized:
                await self.on_unauthorized()
            return False

        self.last_validation = data
        if not data.get("session_valid", True):
            self.status = HealthStatus.ERROR
            self.log.warning("health_check_session_invalid")
            return False

        self.status = HealthStatus.WARNING if self.conflicts else HealthStatus.HEALTHY
        self.log.debug("health_check_ok status=%s", self.status.value)
        return True

    # ========== Timers ==========

    def start(
        self,
        timers: TimerGroup,
        get_token: Callable[[], Optional[str]],
        resync: Callable[[], Awaitable[Any]],
        health_interval: float,
        resync_interval: float,
    ) -> None:
        async def _health() -> None:
            await self.perform_health_check(get_token())

        timers.start(HEALTH_TIMER, health_interval, _health)
        timers.start(RESYNC_TIMER, resync_interval, resync)
