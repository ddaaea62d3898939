"""
AuthSessionController - état d'authentification d'un onglet et coordination
inter-onglets.

Seul composant appelé par l'UI. Il décide quand solliciter les composants
de plus bas niveau:
    - SessionStorageAdapter: record partagé + canal de diffusion
    - TabRegistry: heartbeats et liste des onglets vivants
    - SessionLockCoordinator: exclusion mutuelle du logout
    - ConflictDetector / SessionHealthMonitor: conflits et santé
    - AuthApiClient: backend d'authentification

Cycle de vie:
    anonymous -> authenticating -> authenticated (-> dégradé) -> anonymous

Les méthodes publiques ne lèvent pas pour les échecs backend ou de
coordination: elles renvoient un résultat et renseignent `error`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .auth_api import INVALID_CREDENTIALS, RATE_LIMITED, AuthApiClient, AuthApiError, AuthNetworkError
from .config import Settings, get_settings
from .conflict_detector import ConflictDetector
from .health_monitor import SessionHealthMonitor
from .models import (
    ConflictAction,
    ConflictResolution,
    HealthStatus,
    LogoutResult,
    MessageType,
    SessionHealth,
    SessionRecord,
    SyncMessage,
    generate_session_id,
    parse_datetime,
    utcnow,
)
from .retry import CircuitBreaker, CircuitOpen, retry_with_backoff
from .session_lock import SessionLockCoordinator
from .session_storage import SessionStorageAdapter
from .shared_store import SharedStore, build_shared_store
from .tab_registry import TabRegistry
from .timers import TimerGroup

logger = logging.getLogger("session_sync.auth")

LOGOUT_LOCK = "logout"
HEARTBEAT_TIMER = "heartbeat"
COUNTDOWN_TIMER = "session_countdown"

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."
NETWORK_ERROR_MESSAGE = "Network connection failed. Please check your internet connection and try again."
RATE_LIMITED_MESSAGE = "Too many login attempts. Please try again later."
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again."

Hook = Callable[..., Any]


class AuthSessionController:
    def __init__(
        self,
        storage: SessionStorageAdapter,
        api: AuthApiClient,
        settings: Optional[Settings] = None,
        navigate: Optional[Hook] = None,
        notify: Optional[Hook] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self.storage = storage
        self.api = api
        self._navigate = navigate
        self._notify_hook = notify
        self._sleep = sleep
        self.log = logging.LoggerAdapter(logger, {"tab_id": storage.tab_id})

        self.registry = TabRegistry(storage, stale_after=s.tab_stale_after, clock=clock)
        self.lock = SessionLockCoordinator(storage, ttl=s.lock_ttl, clock=clock)
        self.detector = ConflictDetector(storage, on_logout_all=self._on_logout_all, expiry_tolerance=s.expiry_tolerance)
        self.monitor = SessionHealthMonitor(
            self.detector,
            api,
            on_conflict=self._on_detected_conflict,
            on_unauthorized=self._on_unauthorized,
        )
        self.timers = TimerGroup(f"auth:{storage.tab_id}")
        self.user_breaker = CircuitBreaker("fetch_user", s.breaker_base_backoff, s.breaker_max_backoff)
        self.refresh_breaker = CircuitBreaker("refresh_token", s.breaker_base_backoff, s.breaker_max_backoff)

        # État exposé à l'UI
        self.user: Optional[Dict[str, Any]] = None
        self.token: Optional[str] = None
        self.session_id: str = ""
        self.is_loading = False
        self.error: Optional[str] = None
        self.initialized = False
        self.session_expiry: Optional[datetime] = None
        self.last_activity: datetime = utcnow()
        self.cross_tab_initialized = False
        self.active_tabs: List[str] = []

    # ========== Propriétés dérivées ==========

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token and self.user)

    @property
    def user_initials(self) -> str:
        name = (self.user or {}).get("name") or ""
        parts = [p for p in name.split() if p]
        return "".join(p[0] for p in parts[:2]).upper()

    @property
    def tab_count(self) -> int:
        return len(self.active_tabs)

    @property
    def is_multi_tab(self) -> bool:
        return self.tab_count > 1

    @property
    def current_tab_id(self) -> str:
        return self.storage.tab_id

    @property
    def session_conflicts(self) -> List[ConflictResolution]:
        return list(self.monitor.conflicts)

    @property
    def has_session_conflicts(self) -> bool:
        return bool(self.monitor.conflicts)

    @property
    def session_health_status(self) -> HealthStatus:
        return self.monitor.status

    @property
    def last_cross_tab_sync(self) -> Optional[datetime]:
        return self.monitor.last_sync

    # ========== Hooks UI ==========

    async def _call_hook(self, hook: Optional[Hook], *args: Any) -> None:
        if hook is None:
            return
        result = hook(*args)
        if inspect.isawaitable(result):
            await result

    async def _redirect(self, path: str) -> None:
        await self._call_hook(self._navigate, path)

    async def _notify(self, level: str, title: str, message: str) -> None:
        await self._call_hook(self._notify_hook, level, title, message)

    # ========== Erreurs ==========

    def handle_auth_error(self, error: Exception) -> str:
        """Traduit une erreur backend en message affichable."""
        if isinstance(error, AuthNetworkError):
            return NETWORK_ERROR_MESSAGE
        if isinstance(error, AuthApiError):
            if error.code == RATE_LIMITED:
                return error.message or RATE_LIMITED_MESSAGE
            if error.code == INVALID_CREDENTIALS:
                return error.message or INVALID_CREDENTIALS_MESSAGE
            return error.message or GENERIC_ERROR_MESSAGE
        return GENERIC_ERROR_MESSAGE

    def _advance_expiry(self, value: Optional[datetime]) -> bool:
        """L'expiration locale ne recule jamais tant que la session dure."""
        if value is None:
            return False
        if self.session_expiry is not None and value <= self.session_expiry:
            return False
        self.session_expiry = value
        return True

    # ========== Authentification ==========

    async def initialize(self) -> None:
        if self.initialized:
            return
        try:
            token = await self.storage.load_token()
            if token:
                self.token = token
                await self.fetch_user()
            await self.initialize_cross_tab_session()
            if self.is_authenticated:
                self.schedule_session_maintenance()
        finally:
            self.initialized = True
            self.log.info("auth_initialized authenticated=%s", self.is_authenticated)

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Connexion avec retry borné sur les erreurs réseau / 5xx.

        Returns:
            {"success": True, "user": {...}} ou
            {"success": False, "error": message, "code": code}
        """
        self.is_loading = True
        self.error = None
        s = self.settings
        try:
            try:
                data = await retry_with_backoff(
                    lambda: self.api.login(email, password),
                    max_attempts=s.login_max_attempts,
                    is_retryable=lambda e: isinstance(e, AuthApiError) and e.is_retryable,
                    base_delay=s.retry_base_delay,
                    max_delay=s.retry_max_delay,
                    sleep=self._sleep,
                    label="login",
                )
            except AuthApiError as e:
                message = self.handle_auth_error(e)
                self.error = message
                self.log.warning("login_failed code=%s status=%s", e.code, e.status_code)
                return {"success": False, "error": message, "code": e.code}

            await self._establish_session(data)
            self.log.info("login_ok user_id=%s", (self.user or {}).get("id"))
            return {"success": True, "user": self.user}
        finally:
            self.is_loading = False

    async def _establish_session(self, data: Dict[str, Any]) -> None:
        self.user = data.get("user")
        self.token = data.get("token")
        self.session_id = data.get("session_id") or generate_session_id()
        # Nouvelle connexion: l'expiration peut reculer
        self.session_expiry = parse_datetime(data.get("session_expiry") or data.get("expires_at"))
        self.last_activity = utcnow()
        self.user_breaker.reset()
        self.refresh_breaker.reset()

        await self.storage.persist_token(self.token)
        language = (self.user or {}).get("preferred_language")
        if language:
            await self.storage.persist_language(language)

        if not self.cross_tab_initialized:
            await self.initialize_cross_tab_session(relogin=True)
        else:
            await self.sync_auth_data_to_cross_tab(relogin=True)
        self.schedule_session_maintenance()

    async def logout(self) -> LogoutResult:
        """
        Déconnexion coordonnée. Ne "échoue" jamais côté utilisateur: l'état
        local est toujours nettoyé et l'utilisateur redirigé vers /login.
        """
        warnings: List[str] = []
        error: Optional[str] = None
        token = self.token

        # Timers d'abord: pas de health check pendant le démontage
        await self.timers.cancel_all(keep=(HEARTBEAT_TIMER,))

        acquired = await self.lock.request_session_lock(LOGOUT_LOCK)
        try:
            if acquired:
                if token:
                    try:
                        await self.api.logout(token)
                    except Exception as e:
                        error = getattr(e, "message", None) or str(e) or type(e).__name__
                        warnings.append("Server logout failed; local session cleared")
                        self.log.warning("logout_backend_failed error=%s", repr(e))
                await self.storage.broadcast_logout("user_initiated")
            else:
                warnings.append("Logout already in progress in another tab")
                self.log.info("logout_lock_busy backend_call=skipped")
        finally:
            if acquired:
                await self.lock.release_session_lock(LOGOUT_LOCK)
            await self.cleanup_auth_state()
            await self._redirect("/login")

        self.log.info("logout_done warnings=%s", len(warnings))
        return LogoutResult(success=True, message="Logged out successfully", warnings=warnings, error=error)

    async def fetch_user(self) -> Optional[Dict[str, Any]]:
        if not self.token:
            return None
        token = self.token
        self.is_loading = True
        try:
            data = await self.user_breaker.call(lambda: self.api.me(token))
        except CircuitOpen:
            self.log.debug("fetch_user_skipped reason=backoff")
            return None
        except AuthApiError as e:
            if e.is_unauthorized:
                self.log.warning("fetch_user_unauthorized")
                await self.cleanup_auth_state()
                await self._redirect("/login")
            else:
                self.error = self.handle_auth_error(e)
            return None
        finally:
            self.is_loading = False

        user = data.get("user") if isinstance(data.get("user"), dict) else data
        self.user = user
        self._advance_expiry(parse_datetime((data.get("session") or {}).get("expires_at")))
        return self.user

    async def refresh_token(self) -> bool:
        if not self.token:
            return False
        token = self.token
        try:
            data = await self.refresh_breaker.call(lambda: self.api.refresh(token))
        except CircuitOpen:
            return False
        except AuthApiError as e:
            self.log.warning("refresh_failed code=%s status=%s", e.code, e.status_code)
            if e.is_unauthorized:
                await self.cleanup_auth_state()
                await self._redirect("/login")
            return False

        new_token = data.get("token")
        if not new_token:
            return False
        self.token = new_token
        await self.storage.persist_token(new_token)
        self._advance_expiry(parse_datetime(data.get("expires_at")))

        refresh_count = int(self.storage.get_session_data().metadata.get("refresh_count") or 0) + 1
        await self.sync_auth_data_to_cross_tab(metadata={"refresh_count": refresh_count})
        self.log.info("token_refreshed refresh_count=%s", refresh_count)
        return True

    async def extend_session(self) -> bool:
        if not self.token:
            return False
        try:
            data = await self.api.extend_session(self.token)
        except AuthApiError as e:
            self.log.warning("extend_failed code=%s status=%s", e.code, e.status_code)
            if e.is_unauthorized:
                await self.cleanup_auth_state()
                await self._redirect("/login")
            return False

        if not data.get("session_extended", True):
            return False
        if self._advance_expiry(parse_datetime(data.get("expires_at"))):
            await self.sync_auth_data_to_cross_tab()
        return True

    def update_user(self, changes: Dict[str, Any]) -> None:
        if self.user:
            self.user = {**self.user, **changes}

    async def update_activity(self) -> None:
        self.last_activity = utcnow()
        if self.cross_tab_initialized and self.is_authenticated:
            try:
                await self.storage.update_session_data({"last_activity": self.last_activity})
            except ValueError as e:
                self.log.debug("activity_sync_skipped error=%s", e)

    # ========== Inter-onglets ==========

    async def initialize_cross_tab_session(self, relogin: bool = False) -> bool:
        """Abonne l'onglet, l'enregistre et se synchronise; False si mode local."""
        if self.cross_tab_initialized:
            await self.sync_with_cross_tab_manager(relogin=relogin)
            return self.storage.available

        subscribed = await self.storage.start(self._handle_sync_message)
        await self.registry.register()
        self.timers.start(HEARTBEAT_TIMER, self.settings.heartbeat_interval, self._heartbeat)
        self.cross_tab_initialized = True
        await self.sync_with_cross_tab_manager(relogin=relogin)
        self.log.info("cross_tab_initialized shared=%s tabs=%s", subscribed, self.tab_count)
        return subscribed

    async def _heartbeat(self) -> None:
        await self.registry.heartbeat()
        await self.update_active_tabs_list()

    async def sync_with_cross_tab_manager(self, relogin: bool = False) -> None:
        """
        Sans jeton local: adopte la session active d'un autre onglet.
        Avec jeton: pousse la vue locale vers le record partagé.
        """
        shared = await self.storage.load_shared_session()
        if not self.token:
            if shared and shared.is_active and shared.token:
                await self._adopt_shared_session()
        else:
            if shared and shared.is_active and shared.token == self.token and not self.session_id:
                # Même session reprise depuis le jeton persistant
                self.session_id = shared.session_id
                self._advance_expiry(shared.expires_at)
            await self.sync_auth_data_to_cross_tab(relogin=relogin)
        await self.update_active_tabs_list()
        self.monitor.mark_synced()

    async def _adopt_shared_session(self) -> None:
        if not await self.storage.reload_from_shared():
            return
        record = self.storage.get_session_data()
        if not (record.is_active and record.token):
            return
        self.token = record.token
        self.session_id = record.session_id
        self.session_expiry = record.expires_at
        self.log.info("session_adopted_from_tab holder=%s", record.session_id)
        if self.user is None:
            await self.fetch_user()
        if self.is_authenticated:
            self.schedule_session_maintenance()

    async def sync_auth_data_to_cross_tab(
        self,
        relogin: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not (self.token and self.user):
            return False
        if not self.session_id:
            self.session_id = generate_session_id()
        partial: Dict[str, Any] = {
            "session_id": self.session_id,
            "user_id": self.user.get("id"),
            "token": self.token,
            "is_active": True,
        }
        if self.session_expiry is not None:
            partial["expires_at"] = self.session_expiry
        meta = dict(metadata or {})
        if relogin:
            meta.setdefault("login_time", utcnow())
            meta.setdefault("refresh_count", 0)
        if meta:
            partial["metadata"] = meta

        try:
            await self.storage.update_session_data(partial, relogin=relogin)
        except ValueError as e:
            self.log.warning("cross_tab_sync_rejected error=%s", e)
            return False
        self.monitor.mark_synced()
        return True

    async def handle_cross_tab_logout(self, initiating_tab: Optional[str] = None) -> None:
        """Logout reçu d'un autre onglet: pas d'appel backend, déjà fait."""
        self.log.info("cross_tab_logout_received from=%s", initiating_tab)
        await self.cleanup_auth_state()
        await self._notify("info", "Signed out", "You have been signed out in another tab.")
        await self._redirect("/login")

    async def _on_logout_all(self) -> None:
        await self.handle_cross_tab_logout(None)

    async def _on_unauthorized(self) -> None:
        await self.cleanup_auth_state()
        await self._redirect("/login")

    async def handle_session_conflict_event(
        self,
        conflict: Union[ConflictResolution, Dict[str, Any]],
    ) -> None:
        """
        Journalise le conflit (statut warning) et applique immédiatement les
        politiques use_incoming et logout_all. Le conflit reste dans le
        journal jusqu'à resolve_session_conflict().
        """
        if isinstance(conflict, dict):
            conflict = ConflictResolution.from_dict(conflict)
        self.monitor.record_conflict(conflict)
        self.log.warning("session_conflict action=%s reason=%s", conflict.action.value, conflict.reason)

        if conflict.action in (ConflictAction.USE_INCOMING, ConflictAction.LOGOUT_ALL):
            applied = await self.detector.recover_from_conflict(conflict)
            if applied and conflict.action == ConflictAction.USE_INCOMING:
                await self._mirror_local_record()

    async def _on_detected_conflict(self, conflict: ConflictResolution) -> None:
        await self.handle_session_conflict_event(conflict)
        if conflict.action == ConflictAction.USE_INCOMING:
            await self.storage.broadcast_conflict_resolution(conflict)

    async def _mirror_local_record(self) -> None:
        record = self.storage.get_session_data()
        if not (record.is_active and record.token):
            return
        await self._take_shared_record(record)

    async def _take_shared_record(self, record: SessionRecord) -> None:
        """Reprend jeton, session et expiration; recharge l'utilisateur s'il a changé."""
        current_id = (self.user or {}).get("id")
        user_changed = (
            self.user is not None
            and record.user_id is not None
            and str(record.user_id) != str(current_id)
        )
        self.token = record.token
        self.session_id = record.session_id or self.session_id
        self.session_expiry = record.expires_at
        if user_changed:
            self.log.info("user_changed_from_tab previous=%s user_id=%s", current_id, record.user_id)
            self.user = None
            await self.fetch_user()

    async def _apply_remote_resolution(self, message: SyncMessage) -> None:
        try:
            resolution = ConflictResolution.from_dict(message.data)
        except (KeyError, ValueError) as e:
            self.log.warning("conflict_resolution_invalid error=%s", e)
            return
        # Seules les résolutions plus récentes que notre dernière mise à jour comptent
        if resolution.action != ConflictAction.USE_INCOMING or not self.token:
            return
        if resolution.timestamp <= self.storage.get_session_data().last_activity:
            return
        if await self.storage.reload_from_shared():
            await self._mirror_local_record()

    async def detect_session_conflicts(self) -> Optional[ConflictResolution]:
        return await self.detector.detect()

    async def resolve_session_conflict(self, conflict: Union[ConflictResolution, Dict[str, Any]]) -> bool:
        if isinstance(conflict, dict):
            conflict = ConflictResolution.from_dict(conflict)
        if conflict.action == ConflictAction.USE_INCOMING and self.token:
            if await self.detector.recover_from_conflict(conflict):
                await self._mirror_local_record()
        resolved = self.monitor.resolve_conflict(conflict)
        self.log.info("session_conflict_resolved found=%s remaining=%s", resolved, len(self.monitor.conflicts))
        return resolved

    async def perform_health_check(self) -> bool:
        return await self.monitor.perform_health_check(self.token)

    def get_session_health(self) -> SessionHealth:
        return SessionHealth(
            status=self.monitor.status,
            conflicts=list(self.monitor.conflicts),
            active_tabs=list(self.active_tabs),
            tab_count=self.tab_count,
            is_multi_tab=self.is_multi_tab,
            last_sync=self.monitor.last_sync,
            session_data=self.storage.get_session_data(),
        )

    async def update_active_tabs_list(self) -> List[str]:
        self.active_tabs = await self.registry.get_active_tabs()
        return self.active_tabs

    async def _handle_sync_message(self, message: SyncMessage) -> None:
        if message.type == MessageType.LOGOUT:
            await self.handle_cross_tab_logout(message.tab_id)
        elif message.type == MessageType.SESSION_UPDATE:
            await self._on_session_update()
        elif message.type in (MessageType.TAB_REGISTER, MessageType.TAB_UNREGISTER, MessageType.HEARTBEAT):
            await self.update_active_tabs_list()
        elif message.type == MessageType.CONFLICT_RESOLUTION:
            await self._apply_remote_resolution(message)

    async def _on_session_update(self) -> None:
        record = self.storage.get_session_data()
        if not (record.is_active and record.token):
            return
        if self.token is None:
            await self._adopt_shared_session()
        elif record.token != self.token:
            # Jeton renouvelé ou re-login dans un autre onglet
            self.log.info("token_updated_from_tab")
            await self._take_shared_record(record)
        else:
            self._advance_expiry(record.expires_at)

    # ========== Maintenance ==========

    def schedule_session_maintenance(self) -> None:
        if not self.token:
            return
        s = self.settings
        self.monitor.start(
            self.timers,
            get_token=lambda: self.token,
            resync=self.sync_with_cross_tab_manager,
            health_interval=s.health_check_interval,
            resync_interval=s.resync_interval,
        )
        self.timers.start(COUNTDOWN_TIMER, s.session_check_interval, self.check_session_timeout)

    def _recently_active(self, now: datetime) -> bool:
        return (now - self.last_activity).total_seconds() <= self.settings.activity_window

    async def check_session_timeout(self) -> bool:
        """
        Compare l'expiration faisant autorité à l'heure courante.

        Returns:
            True si la session a expiré (logout déclenché)
        """
        if not self.token or self.session_expiry is None:
            return False
        now = utcnow()
        remaining = (self.session_expiry - now).total_seconds()
        if remaining <= 0:
            self.log.info("session_expired expired_at=%s", self.session_expiry.isoformat())
            await self.logout()
            self.error = SESSION_EXPIRED_MESSAGE
            await self._notify("warning", "Session expired", SESSION_EXPIRED_MESSAGE)
            return True
        if remaining < self.settings.extend_threshold and self._recently_active(now):
            self.log.info("session_extend_on_activity remaining=%.0f", remaining)
            await self.extend_session()
        return False

    async def cleanup_auth_state(self) -> None:
        """
        Remet l'onglet à l'état anonyme. L'abonnement, l'entrée du registre
        et le heartbeat restent actifs: un login dans un autre onglet doit
        encore atteindre cet onglet. Seul dispose() les arrête.
        """
        await self.timers.cancel_all(keep=(HEARTBEAT_TIMER,))
        await self.storage.remove_token()
        self.storage.clear_local()

        self.user = None
        self.token = None
        self.session_id = ""
        self.session_expiry = None
        self.is_loading = False
        self.monitor.reset()
        self.user_breaker.reset()
        self.refresh_breaker.reset()
        if self.cross_tab_initialized:
            await self.update_active_tabs_list()
        self.log.info("auth_state_cleaned")

    async def dispose(self) -> None:
        """Fermeture de l'onglet: la session reste valide pour les autres onglets."""
        await self.timers.cancel_all()
        if self.cross_tab_initialized:
            await self.storage.stop()
            await self.registry.unregister()
        self.cross_tab_initialized = False
        self.active_tabs = []
        self.log.info("controller_disposed")


def create_controller(
    settings: Optional[Settings] = None,
    store: Optional[SharedStore] = None,
    api: Optional[AuthApiClient] = None,
    navigate: Optional[Hook] = None,
    notify: Optional[Hook] = None,
    user_agent: str = "",
) -> AuthSessionController:
    settings = settings or get_settings()
    store = store or build_shared_store(settings)
    storage = SessionStorageAdapter(store, namespace=settings.namespace, user_agent=user_agent)
    api = api or AuthApiClient(settings.api_base_url, settings.api_timeout)
    return AuthSessionController(storage, api, settings=settings, navigate=navigate, notify=notify)
