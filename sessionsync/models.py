"""
Modèles de données partagés entre onglets.

Structures:
    - SessionRecord: état d'authentification partagé (un par session logique)
    - TabEntry: battement de cœur d'un onglet vivant
    - ConflictResolution: décision de réconciliation (jamais persistée)
    - SessionHealth: vue dérivée exposée aux appelants
    - SyncMessage: enveloppe des messages diffusés entre onglets

Toutes les dates sont en UTC et sérialisées en ISO-8601.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_tab_id() -> str:
    return f"tab_{int(utcnow().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


def generate_session_id() -> str:
    return f"sess_{int(utcnow().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accepte datetime, ISO-8601 (avec ou sans 'Z') ou epoch; None sinon."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ConflictAction(str, Enum):
    KEEP_CURRENT = "keep_current"
    USE_INCOMING = "use_incoming"
    MERGE = "merge"
    LOGOUT_ALL = "logout_all"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"


class MessageType(str, Enum):
    SESSION_UPDATE = "session_update"
    LOGOUT = "logout"
    TAB_REGISTER = "tab_register"
    TAB_UNREGISTER = "tab_unregister"
    CONFLICT_RESOLUTION = "conflict_resolution"
    HEARTBEAT = "heartbeat"


def default_metadata(user_agent: str = "") -> Dict[str, Any]:
    return {"user_agent": user_agent, "login_time": None, "refresh_count": 0}


@dataclass
class SessionRecord:
    tab_id: str
    session_id: str = ""
    user_id: Optional[int] = None
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = False
    last_activity: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=default_metadata)

    FIELDS = ("session_id", "user_id", "token", "expires_at", "is_active", "last_activity", "metadata")

    def validate(self) -> None:
        if self.is_active and (self.token is None or self.user_id is None):
            raise ValueError("active session requires token and user_id")

    def copy(self) -> "SessionRecord":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        metadata = dict(self.metadata)
        if isinstance(metadata.get("login_time"), datetime):
            metadata["login_time"] = metadata["login_time"].isoformat()
        return {
            "tab_id": self.tab_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "token": self.token,
            "expires_at": _iso(self.expires_at),
            "is_active": self.is_active,
            "last_activity": _iso(self.last_activity),
            "metadata": metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        metadata = default_metadata()
        metadata.update(data.get("metadata") or {})
        metadata["login_time"] = parse_datetime(metadata.get("login_time"))
        return cls(
            tab_id=data.get("tab_id") or "",
            session_id=data.get("session_id") or "",
            user_id=data.get("user_id"),
            token=data.get("token"),
            expires_at=parse_datetime(data.get("expires_at")),
            is_active=bool(data.get("is_active", False)),
            last_activity=parse_datetime(data.get("last_activity")) or utcnow(),
            metadata=metadata,
        )


def normalize_partial(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Filtre un update partiel aux champs connus et convertit les dates."""
    unknown = set(partial) - set(SessionRecord.FIELDS)
    if unknown:
        raise ValueError(f"unknown session fields: {sorted(unknown)}")
    out = dict(partial)
    for key in ("expires_at", "last_activity"):
        if key in out:
            out[key] = parse_datetime(out[key])
    if "metadata" in out and out["metadata"] is not None:
        meta = dict(out["metadata"])
        if "login_time" in meta:
            meta["login_time"] = parse_datetime(meta["login_time"])
        out["metadata"] = meta
    return out


def serialize_partial(partial: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(partial)
    for key in ("expires_at", "last_activity"):
        if isinstance(out.get(key), datetime):
            out[key] = out[key].isoformat()
    if isinstance(out.get("metadata"), dict):
        meta = dict(out["metadata"])
        if isinstance(meta.get("login_time"), datetime):
            meta["login_time"] = meta["login_time"].isoformat()
        out["metadata"] = meta
    return out


@dataclass
class TabEntry:
    tab_id: str
    last_heartbeat: float

    def is_stale(self, now: float, window: float) -> bool:
        return now - self.last_heartbeat > window


@dataclass
class ConflictResolution:
    action: ConflictAction
    reason: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictResolution":
        return cls(
            action=ConflictAction(data["action"]),
            reason=data.get("reason", ""),
            timestamp=parse_datetime(data.get("timestamp")) or utcnow(),
        )


@dataclass
class SessionHealth:
    status: HealthStatus
    conflicts: List[ConflictResolution]
    active_tabs: List[str]
    tab_count: int
    is_multi_tab: bool
    last_sync: Optional[datetime]
    session_data: SessionRecord

    def to_dict(self) -> Dict[str, Any]:
        session = self.session_data.to_dict()
        # Le jeton ne sort jamais dans les diagnostics
        session["token"] = "***" if session.get("token") else None
        return {
            "status": self.status.value,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "active_tabs": list(self.active_tabs),
            "tab_count": self.tab_count,
            "is_multi_tab": self.is_multi_tab,
            "last_sync": _iso(self.last_sync),
            "session_data": session,
        }


@dataclass
class SyncMessage:
    type: MessageType
    data: Dict[str, Any]
    tab_id: str
    session_id: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "tab_id": self.tab_id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncMessage":
        return cls(
            type=MessageType(data["type"]),
            data=data.get("data") or {},
            tab_id=data.get("tab_id", ""),
            session_id=data.get("session_id", ""),
            timestamp=parse_datetime(data.get("timestamp")) or utcnow(),
        )


@dataclass
class LogoutResult:
    success: bool
    message: str
    redirect_url: str = "/login"
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
