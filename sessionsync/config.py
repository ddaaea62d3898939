import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _str_to_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "y", "on")


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass
class Settings:
    # Support partagé (Redis ou mémoire)
    storage_backend: str
    redis_host: str | None
    redis_port: int
    redis_password: str | None
    redis_tls: bool
    redis_db: int
    redis_tls_verify: bool
    use_local_redis: bool
    namespace: str

    # API d'authentification backend
    api_base_url: str
    api_timeout: float

    # Intervalles (secondes)
    heartbeat_interval: int
    tab_stale_after: int
    lock_ttl: int
    health_check_interval: int
    resync_interval: int
    session_check_interval: int
    expiry_tolerance: int
    extend_threshold: int
    activity_window: int

    # Retry / circuit breaker
    login_max_attempts: int
    retry_base_delay: float
    retry_max_delay: float
    breaker_base_backoff: float
    breaker_max_backoff: float


def get_settings() -> Settings:
    use_local = _str_to_bool(os.getenv("USE_LOCAL_REDIS"))

    # Lire bruts pour pouvoir surcharger proprement
    raw_host = os.getenv("SESSION_SYNC_REDIS_HOST")
    raw_port = os.getenv("SESSION_SYNC_REDIS_PORT")
    raw_pwd = os.getenv("SESSION_SYNC_REDIS_PASSWORD")
    raw_tls = os.getenv("SESSION_SYNC_REDIS_TLS")
    raw_db = os.getenv("SESSION_SYNC_REDIS_DB")
    raw_tls_verify = os.getenv("SESSION_SYNC_REDIS_TLS_VERIFY", "true")

    if use_local:
        # FORÇAGE LOCAL, on ignore les valeurs cloud
        host = "127.0.0.1"
        port = 6379
        password = None
        tls = False
        db = int(raw_db or "0")
        tls_verify = False
    else:
        host = raw_host
        port = int(raw_port or "6379")
        password = raw_pwd
        tls = _str_to_bool(raw_tls)
        db = int(raw_db or "0")
        tls_verify = _str_to_bool(raw_tls_verify)

    backend = os.getenv("SESSION_SYNC_STORAGE", "").lower().strip()
    if backend not in ("redis", "memory"):
        backend = "redis" if host else "memory"

    return Settings(
        storage_backend=backend,
        redis_host=host,
        redis_port=port,
        redis_password=password,
        redis_tls=tls,
        redis_db=db,
        redis_tls_verify=tls_verify,
        use_local_redis=use_local,
        namespace=os.getenv("SESSION_SYNC_NAMESPACE", "session-sync:"),
        api_base_url=os.getenv("SESSION_SYNC_API_URL", "http://127.0.0.1:8000"),
        api_timeout=_float("SESSION_SYNC_API_TIMEOUT", 10.0),
        heartbeat_interval=_int("SESSION_SYNC_HEARTBEAT_INTERVAL", 45),
        tab_stale_after=_int("SESSION_SYNC_TAB_TTL_SECONDS", 90),
        lock_ttl=_int("SESSION_SYNC_LOCK_TTL_SECONDS", 30),
        health_check_interval=_int("SESSION_SYNC_HEALTH_CHECK_INTERVAL", 300),
        resync_interval=_int("SESSION_SYNC_RESYNC_INTERVAL", 60),
        session_check_interval=_int("SESSION_SYNC_SESSION_CHECK_INTERVAL", 60),
        expiry_tolerance=_int("SESSION_SYNC_EXPIRY_TOLERANCE", 60),
        extend_threshold=_int("SESSION_SYNC_EXTEND_THRESHOLD", 300),
        activity_window=_int("SESSION_SYNC_ACTIVITY_WINDOW", 600),
        login_max_attempts=_int("SESSION_SYNC_LOGIN_MAX_ATTEMPTS", 3),
        retry_base_delay=_float("SESSION_SYNC_RETRY_BASE_DELAY", 1.0),
        retry_max_delay=_float("SESSION_SYNC_RETRY_MAX_DELAY", 8.0),
        breaker_base_backoff=_float("SESSION_SYNC_BREAKER_BASE_BACKOFF", 5.0),
        breaker_max_backoff=_float("SESSION_SYNC_BREAKER_MAX_BACKOFF", 300.0),
    )
