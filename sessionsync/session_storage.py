"""
SessionStorageAdapter - source de vérité du SessionRecord partagé.

Architecture:
    - Clé partagée: {namespace}session (JSON SessionRecord)
    - Jeton persistant: {namespace}auth_token
    - Canal de diffusion: {namespace}events (SyncMessage JSON)

Chaque onglet garde une vue locale du record. Les mises à jour sont
fusionnées (jamais d'écrasement aveugle) dans la vue locale puis dans le
record partagé, et diffusées aux autres onglets.

Si le support partagé est indisponible, l'adaptateur bascule en mode local:
les lectures ne lèvent jamais, les écritures restent locales à l'onglet.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .models import (
    ConflictResolution,
    MessageType,
    SessionRecord,
    SyncMessage,
    default_metadata,
    generate_tab_id,
    normalize_partial,
    serialize_partial,
    utcnow,
)
from .shared_store import SharedStore, SharedStoreUnavailable, Subscription

logger = logging.getLogger("session_sync.storage")

SyncHandler = Callable[[SyncMessage], Awaitable[None]]


class SessionStorageAdapter:
    SESSION_KEY = "session"
    TOKEN_KEY = "auth_token"
    LANGUAGE_KEY = "preferred_language"
    CHANNEL = "events"

    def __init__(
        self,
        store: SharedStore,
        namespace: str = "session-sync:",
        tab_id: Optional[str] = None,
        user_agent: str = "",
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.tab_id = tab_id or generate_tab_id()
        self.user_agent = user_agent
        self.available = True
        self.log = logging.LoggerAdapter(logger, {"tab_id": self.tab_id})
        self._local = self._blank_record()
        self._token_cache: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._handler: Optional[SyncHandler] = None

    # ========== Helpers ==========

    def key(self, name: str) -> str:
        return f"{self.namespace}{name}"

    @property
    def channel(self) -> str:
        return self.key(self.CHANNEL)

    def _blank_record(self) -> SessionRecord:
        return SessionRecord(tab_id=self.tab_id, metadata=default_metadata(self.user_agent))

    def _degrade(self, op: str, error: Exception) -> None:
        if self.available:
            self.log.warning("shared_store_unavailable op=%s mode=tab_local error=%s", op, error)
        self.available = False

    def _recovered(self) -> None:
        if not self.available:
            self.log.info("shared_store_recovered")
        self.available = True

    def _merge(self, record: SessionRecord, changes: Dict[str, Any], relogin: bool) -> SessionRecord:
        merged = record.copy()
        for name, value in changes.items():
            if name == "metadata":
                merged.metadata.update(value or {})
            elif name == "expires_at":
                current = merged.expires_at
                if value is not None and current is not None and value < current and not relogin:
                    # L'expiration ne recule jamais sans re-login explicite
                    self.log.debug("expiry_rewind_ignored current=%s incoming=%s", current, value)
                    continue
                merged.expires_at = value
            else:
                setattr(merged, name, value)
        if "last_activity" not in changes:
            merged.last_activity = utcnow()
        return merged

    # ========== Lecture ==========

    def get_session_data(self) -> SessionRecord:
        """Vue locale de l'onglet (copie), jamais bloquante."""
        return self._local.copy()

    async def _read_shared(self) -> Optional[SessionRecord]:
        raw = await self.store.get(self.key(self.SESSION_KEY))
        if not raw:
            return None
        try:
            return SessionRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            self.log.warning("shared_session_corrupt error=%s", repr(e))
            return None

    async def load_shared_session(self) -> Optional[SessionRecord]:
        """Record partagé, ou None si absent / support indisponible."""
        try:
            record = await self._read_shared()
        except SharedStoreUnavailable as e:
            self._degrade("load_shared", e)
            return None
        self._recovered()
        return record

    # ========== Écriture ==========

    async def update_session_data(self, partial: Dict[str, Any], *, relogin: bool = False) -> SessionRecord:
        """
        Fusionne `partial` dans la vue locale et dans le record partagé,
        puis diffuse la modification aux autres onglets.

        Args:
            partial: champs de SessionRecord à modifier
            relogin: autorise le recul de expires_at (nouvelle connexion)

        Raises:
            ValueError: champ inconnu, ou record actif sans token/user_id
        """
        changes = normalize_partial(partial)
        merged_local = self._merge(self._local, changes, relogin)
        merged_local.validate()
        self._local = merged_local

        try:
            shared = await self._read_shared()
            merged_shared = self._merge(shared, changes, relogin) if shared else self._local.copy()
            try:
                merged_shared.validate()
            except ValueError:
                merged_shared = self._local.copy()
            merged_shared.tab_id = self.tab_id
            await self.store.set(self.key(self.SESSION_KEY), json.dumps(merged_shared.to_dict()))
            await self._publish(MessageType.SESSION_UPDATE, serialize_partial(changes))
            self._recovered()
        except SharedStoreUnavailable as e:
            self._degrade("update_session", e)
        return self.get_session_data()

    async def reload_from_shared(self) -> bool:
        """Copie le record partagé dans la vue locale (politique use_incoming)."""
        shared = await self.load_shared_session()
        if shared is None:
            return False
        shared.tab_id = self.tab_id
        self._local = shared
        self.log.info("session_reloaded_from_shared active=%s", shared.is_active)
        return True

    def clear_local(self) -> None:
        self._local = self._blank_record()

    def apply_incoming(self, partial: Dict[str, Any]) -> None:
        """Applique à la vue locale un update reçu d'un autre onglet."""
        try:
            changes = normalize_partial(partial)
        except ValueError as e:
            self.log.warning("incoming_update_rejected error=%s", e)
            return
        relogin = "token" in changes and changes["token"] != self._local.token
        merged = self._merge(self._local, changes, relogin)
        try:
            merged.validate()
        except ValueError as e:
            self.log.warning("incoming_update_rejected error=%s", e)
            return
        self._local = merged

    # ========== Diffusion ==========

    async def _publish(self, msg_type: MessageType, data: Dict[str, Any]) -> None:
        message = SyncMessage(
            type=msg_type,
            data=data,
            tab_id=self.tab_id,
            session_id=self._local.session_id,
        )
        await self.store.publish(self.channel, json.dumps(message.to_dict()))

    async def publish(self, msg_type: MessageType, data: Dict[str, Any]) -> bool:
        try:
            await self._publish(msg_type, data)
        except SharedStoreUnavailable as e:
            self._degrade(f"publish_{msg_type.value}", e)
            return False
        self._recovered()
        return True

    async def broadcast_session_update(self, partial: Optional[Dict[str, Any]] = None) -> bool:
        if partial is None:
            partial = self._local.to_dict()
            partial.pop("tab_id", None)
        ok = await self.publish(MessageType.SESSION_UPDATE, serialize_partial(partial))
        if ok:
            self.log.debug("session_update_broadcast fields=%s", sorted(partial))
        return ok

    async def broadcast_logout(self, reason: str = "user_initiated") -> bool:
        """Signal explicite de déconnexion; marque le record partagé inactif."""
        cleared = self._blank_record()
        try:
            await self.store.set(self.key(self.SESSION_KEY), json.dumps(cleared.to_dict()))
            await self._publish(MessageType.LOGOUT, {"reason": reason})
            self._recovered()
            ok = True
        except SharedStoreUnavailable as e:
            self._degrade("broadcast_logout", e)
            ok = False
        self.clear_local()
        self.log.info("logout_broadcast reason=%s delivered=%s", reason, ok)
        return ok

    async def broadcast_conflict_resolution(self, resolution: ConflictResolution) -> bool:
        return await self.publish(MessageType.CONFLICT_RESOLUTION, resolution.to_dict())

    # ========== Jeton persistant ==========

    async def persist_token(self, token: str) -> None:
        self._token_cache = token
        try:
            await self.store.set(self.key(self.TOKEN_KEY), token)
        except SharedStoreUnavailable as e:
            self._degrade("persist_token", e)

    async def load_token(self) -> Optional[str]:
        try:
            token = await self.store.get(self.key(self.TOKEN_KEY))
        except SharedStoreUnavailable as e:
            self._degrade("load_token", e)
            return self._token_cache
        self._token_cache = token
        return token

    async def remove_token(self) -> None:
        self._token_cache = None
        try:
            await self.store.delete(self.key(self.TOKEN_KEY))
        except SharedStoreUnavailable as e:
            self._degrade("remove_token", e)

    async def persist_language(self, language: str) -> None:
        try:
            await self.store.set(self.key(self.LANGUAGE_KEY), language)
        except SharedStoreUnavailable as e:
            self._degrade("persist_language", e)

    # ========== Abonnement ==========

    async def start(self, handler: SyncHandler) -> bool:
        """Abonne l'onglet au canal; False si le support est indisponible."""
        self._handler = handler
        if self._subscription is not None:
            return True
        try:
            self._subscription = await self.store.subscribe(self.channel, self._on_raw_message)
        except SharedStoreUnavailable as e:
            self._degrade("subscribe", e)
            return False
        self._recovered()
        return True

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        self._handler = None
        if subscription is not None:
            await subscription.close()

    async def _on_raw_message(self, raw: str) -> None:
        try:
            message = SyncMessage.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            self.log.warning("sync_message_invalid error=%s", repr(e))
            return
        if message.tab_id == self.tab_id:
            return

        self.log.debug("sync_message_received type=%s from=%s", message.type.value, message.tab_id)
        if message.type == MessageType.SESSION_UPDATE:
            self.apply_incoming(message.data)
        elif message.type == MessageType.LOGOUT:
            self.clear_local()

        if self._handler is not None:
            await self._handler(message)
