import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sessionsync.auth_api import AuthApiError, AuthNetworkError
from sessionsync.conflict_detector import ConflictDetector
from sessionsync.health_monitor import HEALTH_TIMER, RESYNC_TIMER, SessionHealthMonitor
from sessionsync.models import ConflictAction, ConflictResolution, HealthStatus
from sessionsync.timers import TimerGroup


def make_monitor(storage, detect=None, validate=None):
    detector = ConflictDetector(storage, on_logout_all=AsyncMock())
    detector.detect = AsyncMock(return_value=detect)
    api = MagicMock()
    api.validate_session = validate or AsyncMock(return_value={"session_valid": True})
    on_conflict = AsyncMock()
    on_unauthorized = AsyncMock()
    monitor = SessionHealthMonitor(detector, api, on_conflict=on_conflict, on_unauthorized=on_unauthorized)
    return monitor, on_conflict, on_unauthorized


def conflict(action=ConflictAction.USE_INCOMING, reason="Token mismatch detected"):
    return ConflictResolution(action, reason)


@pytest.mark.asyncio
class TestSessionHealthMonitor:
    async def test_healthy_when_backend_validates(self, make_storage):
        monitor, on_conflict, _ = make_monitor(make_storage())
        assert await monitor.perform_health_check("tok") is True
        assert monitor.status == HealthStatus.HEALTHY
        assert monitor.last_check is not None
        on_conflict.assert_not_awaited()

    async def test_no_token_is_not_healthy(self, make_storage):
        monitor, _, _ = make_monitor(make_storage())
        assert await monitor.perform_health_check(None) is False
        monitor.api.validate_session.assert_not_awaited()

    async def test_conflict_is_forwarded(self, make_storage):
        c = conflict()
        monitor, on_conflict, _ = make_monitor(make_storage(), detect=c)
        await monitor.perform_health_check("tok")
        on_conflict.assert_awaited_once_with(c)

    async def test_logout_all_skips_validation(self, make_storage):
        monitor, _, _ = make_monitor(make_storage(), detect=conflict(ConflictAction.LOGOUT_ALL, "Session ended in another tab"))
        assert await monitor.perform_health_check("tok") is False
        monitor.api.validate_session.assert_not_awaited()

    async def test_backend_error_sets_error_status(self, make_storage):
        monitor, _, on_unauthorized = make_monitor(
            make_storage(), validate=AsyncMock(side_effect=AuthNetworkError("down"))
        )
        assert await monitor.perform_health_check("tok") is False
        assert monitor.status == HealthStatus.ERROR
        on_unauthorized.assert_not_awaited()

    async def test_401_triggers_cleanup(self, make_storage):
        monitor, _, on_unauthorized = make_monitor(
            make_storage(), validate=AsyncMock(side_effect=AuthApiError("UNAUTHENTICATED", "expired", 401))
        )
        assert await monitor.perform_health_check("tok") is False
        on_unauthorized.assert_awaited_once()

    async def test_invalid_session_is_error(self, make_storage):
        monitor, _, _ = make_monitor(make_storage(), validate=AsyncMock(return_value={"session_valid": False}))
        assert await monitor.perform_health_check("tok") is False
        assert monitor.status == HealthStatus.ERROR

    async def test_logged_conflict_keeps_warning(self, make_storage):
        monitor, _, _ = make_monitor(make_storage(), detect=conflict())
        monitor.record_conflict(conflict())
        assert await monitor.perform_health_check("tok") is True
        assert monitor.status == HealthStatus.WARNING

    async def test_settled_conflicts_are_cleared(self, make_storage):
        monitor, _, _ = make_monitor(make_storage())
        monitor.record_conflict(conflict())
        assert await monitor.perform_health_check("tok") is True
        assert monitor.conflicts == []
        assert monitor.status == HealthStatus.HEALTHY

    async def test_error_outranks_conflict(self, make_storage):
        monitor, _, _ = make_monitor(make_storage())
        monitor.status = HealthStatus.ERROR
        monitor.record_conflict(conflict())
        assert monitor.status == HealthStatus.ERROR

    async def test_resolve_conflict_restores_healthy(self, make_storage):
        monitor, _, _ = make_monitor(make_storage())
        c = conflict()
        monitor.record_conflict(c)
        assert monitor.resolve_conflict(c) is True
        assert monitor.status == HealthStatus.HEALTHY
        assert monitor.resolve_conflict(c) is False

    async def test_timers_start_and_cancel_as_a_unit(self, make_storage):
        monitor, _, _ = make_monitor(make_storage())
        timers = TimerGroup("test")
        resync = AsyncMock()
        monitor.start(timers, get_token=lambda: "tok", resync=resync, health_interval=0.01, resync_interval=0.01)
        assert timers.names == [HEALTH_TIMER, RESYNC_TIMER]

        await asyncio.sleep(0.05)
        assert resync.await_count >= 1
        assert monitor.api.validate_session.await_count >= 1

        await timers.cancel_all()
        assert timers.names == []
        await timers.cancel_all()
