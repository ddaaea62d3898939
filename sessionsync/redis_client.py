from typing import Optional

import redis.asyncio as redis

from .config import Settings, get_settings

_redis_client: Optional[redis.Redis] = None


def build_redis(settings: Settings) -> redis.Redis:
    redis_kwargs = {
        "host": settings.redis_host or "127.0.0.1",
        "port": settings.redis_port,
        "password": settings.redis_password or None,
        "db": settings.redis_db,
        "decode_responses": True,
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "health_check_interval": 30,
    }

    if settings.redis_tls:
        redis_kwargs["ssl"] = True
        # Désactive la vérification TLS si demandé (utile pour tests hors VPC)
        if not settings.redis_tls_verify:
            redis_kwargs["ssl_cert_reqs"] = None  # type: ignore[assignment]

    return redis.Redis(**redis_kwargs)


def get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    _redis_client = build_redis(get_settings())
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    client, _redis_client = _redis_client, None
    await client.aclose()
