import logging

from sessionsync.config import get_settings
from sessionsync.logging_setup import KeyValueFormatter


def test_defaults_without_redis(monkeypatch):
    for name in ("SESSION_SYNC_REDIS_HOST", "SESSION_SYNC_STORAGE", "USE_LOCAL_REDIS", "SESSION_SYNC_LOCK_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    s = get_settings()
    assert s.storage_backend == "memory"
    assert s.lock_ttl == 30
    assert s.heartbeat_interval == 45
    assert s.tab_stale_after == 90
    assert s.expiry_tolerance == 60
    assert s.health_check_interval == 300


def test_redis_host_selects_redis(monkeypatch):
    monkeypatch.delenv("SESSION_SYNC_STORAGE", raising=False)
    monkeypatch.delenv("USE_LOCAL_REDIS", raising=False)
    monkeypatch.setenv("SESSION_SYNC_REDIS_HOST", "redis.internal")
    monkeypatch.setenv("SESSION_SYNC_REDIS_TLS", "true")
    s = get_settings()
    assert s.storage_backend == "redis"
    assert s.redis_host == "redis.internal"
    assert s.redis_tls is True


def test_local_redis_override(monkeypatch):
    monkeypatch.setenv("USE_LOCAL_REDIS", "1")
    monkeypatch.setenv("SESSION_SYNC_REDIS_HOST", "redis.internal")
    monkeypatch.setenv("SESSION_SYNC_REDIS_PASSWORD", "secret")
    s = get_settings()
    assert s.redis_host == "127.0.0.1"
    assert s.redis_password is None
    assert s.redis_tls is False


def test_bad_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("SESSION_SYNC_LOCK_TTL_SECONDS", "soon")
    assert get_settings().lock_ttl == 30


def test_key_value_formatter_includes_tab_id():
    record = logging.LogRecord("session_sync.lock", logging.INFO, __file__, 1, "lock_acquired operation=%s", ("logout",), None)
    record.tab_id = "tab_1"
    line = KeyValueFormatter().format(record)
    assert "level=INFO" in line
    assert "logger=session_sync.lock" in line
    assert "message=lock_acquired operation=logout" in line
    assert "tab_id=tab_1" in line


def test_key_value_formatter_quotes_context_with_spaces():
    record = logging.LogRecord("session_sync.auth", logging.WARNING, __file__, 1, "login_failed code=%s", ("INVALID",), None)
    record.operation = "user logout"
    line = KeyValueFormatter().format(record)
    assert 'operation="user logout"' in line
    assert line.endswith("message=login_failed code=INVALID")


def test_configure_logging_prefers_session_sync_level(monkeypatch):
    from sessionsync.logging_setup import configure_logging

    monkeypatch.setenv("LOG_LEVEL", "INFO")
    monkeypatch.setenv("SESSION_SYNC_LOG_LEVEL", "debug")
    root = logging.getLogger()
    previous = root.level
    try:
        configure_logging()
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.INFO
        assert all(isinstance(h.formatter, KeyValueFormatter) for h in root.handlers)
    finally:
        root.setLevel(previous)


def test_server_entrypoint_runs_uvicorn(monkeypatch):
    from unittest.mock import patch

    from sessionsync import __main__ as entrypoint

    monkeypatch.setenv("SESSION_SYNC_PORT", "9100")
    monkeypatch.delenv("SESSION_SYNC_HOST", raising=False)
    monkeypatch.delenv("HOST", raising=False)
    with patch.object(entrypoint.uvicorn, "run") as run:
        entrypoint.main()
    run.assert_called_once_with("sessionsync.main:app", host="0.0.0.0", port=9100, reload=False, log_config=None)
