"""
Supports partagés entre onglets: clé/valeur + canal de diffusion.

Deux implémentations:
    - RedisSharedStore: redis.asyncio (SET NX PX, HSET, PUBLISH/SUBSCRIBE)
    - MemorySharedStore: plusieurs onglets d'un même processus

Toute indisponibilité du support lève SharedStoreUnavailable; c'est aux
appelants de dégrader en mode local.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

logger = logging.getLogger("session_sync.store")

MessageHandler = Callable[[str], Awaitable[None]]


class SharedStoreUnavailable(Exception):
    """Le support partagé ne répond pas (désactivé, réseau, etc.)."""
    pass


class Subscription(ABC):
    @abstractmethod
    async def close(self) -> None:
        ...


class SharedStore(ABC):
    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, *, nx: bool = False, px: Optional[int] = None) -> bool:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> None:
        ...

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]:
        ...

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> None:
        ...

    @abstractmethod
    async def publish(self, channel: str, message: str) -> None:
        ...

    @abstractmethod
    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        ...

    async def close(self) -> None:
        return None


# ========== Redis ==========

class _RedisSubscription(Subscription):
    def __init__(self, pubsub, channel: str, handler: MessageHandler) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._handler = handler
        self._closed = False
        self._task = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        while not self._closed:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message:
                    await asyncio.sleep(0.05)
                    continue
                if message.get("type") != "message":
                    continue
                data = message.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await self._handler(data)
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as e:
                logger.error("pubsub_loop_error channel=%s error=%s", self._channel, repr(e))
                await asyncio.sleep(1.0)
            except Exception as e:
                logger.error("pubsub_handler_error channel=%s error=%s", self._channel, repr(e), exc_info=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Fermeture depuis un handler: la boucle s'arrête d'elle-même
        if not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug("pubsub_close_error channel=%s error=%s", self._channel, repr(e))


class RedisSharedStore(SharedStore):
    """Support Redis; les clés sont déjà préfixées par l'appelant."""

    def __init__(self, redis_client=None) -> None:
        self._redis = redis_client

    @property
    def redis(self):
        """Lazy loading du client Redis."""
        if self._redis is None:
            from .redis_client import get_redis
            self._redis = get_redis()
        return self._redis

    async def _call(self, op: str, coro):
        try:
            return await coro
        except (RedisError, OSError) as e:
            logger.warning("redis_op_error op=%s error=%s", op, repr(e))
            raise SharedStoreUnavailable(f"{op}: {e}") from e

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.redis.ping()))

    async def get(self, key: str) -> Optional[str]:
        value = await self._call("get", self.redis.get(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, *, nx: bool = False, px: Optional[int] = None) -> bool:
        # SET NX PX = "set if not exists" atomique avec TTL
        result = await self._call("set", self.redis.set(key, value, nx=nx, px=px))
        return bool(result)

    async def delete(self, key: str) -> None:
        await self._call("delete", self.redis.delete(key))

    async def hset(self, key: str, field: str, value: str) -> None:
        await self._call("hset", self.redis.hset(key, field, value))

    async def hgetall(self, key: str) -> Dict[str, str]:
        raw = await self._call("hgetall", self.redis.hgetall(key)) or {}
        return {
            (k.decode("utf-8") if isinstance(k, bytes) else k): (v.decode("utf-8") if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }

    async def hdel(self, key: str, *fields: str) -> None:
        if fields:
            await self._call("hdel", self.redis.hdel(key, *fields))

    async def publish(self, channel: str, message: str) -> None:
        await self._call("publish", self.redis.publish(channel, message))

    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        pubsub = self.redis.pubsub()
        await self._call("subscribe", pubsub.subscribe(channel))
        logger.info("pubsub_subscribed channel=%s", channel)
        return _RedisSubscription(pubsub, channel, handler)


# ========== Mémoire ==========

class _MemorySubscription(Subscription):
    def __init__(self, store: "MemorySharedStore", channel: str, handler: MessageHandler) -> None:
        self._store = store
        self._channel = channel
        self._handler = handler

    async def close(self) -> None:
        handlers = self._store._subscribers.get(self._channel, [])
        if self._handler in handlers:
            handlers.remove(self._handler)


class MemorySharedStore(SharedStore):
    """
    Support en mémoire partagé par plusieurs onglets d'un même processus.

    La diffusion appelle directement les handlers abonnés: un message est
    visible des autres onglets avant le retour de publish().
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._subscribers: Dict[str, List[MessageHandler]] = {}
        self.available = True

    def _check(self, op: str) -> None:
        if not self.available:
            raise SharedStoreUnavailable(f"{op}: memory store disabled")

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check("get")
        return self._live(key)

    async def set(self, key: str, value: str, *, nx: bool = False, px: Optional[int] = None) -> bool:
        self._check("set")
        if nx and self._live(key) is not None:
            return False
        expires_at = self._clock() + px / 1000.0 if px else None
        self._data[key] = (value, expires_at)
        return True

    async def delete(self, key: str) -> None:
        self._check("delete")
        self._data.pop(key, None)
        self._hashes.pop(key, None)

    async def hset(self, key: str, field: str, value: str) -> None:
        self._check("hset")
        self._hashes.setdefault(key, {})[field] = value

    async def hgetall(self, key: str) -> Dict[str, str]:
        self._check("hgetall")
        return dict(self._hashes.get(key, {}))

    async def hdel(self, key: str, *fields: str) -> None:
        self._check("hdel")
        entries = self._hashes.get(key)
        if not entries:
            return
        for f in fields:
            entries.pop(f, None)

    async def publish(self, channel: str, message: str) -> None:
        self._check("publish")
        for handler in list(self._subscribers.get(channel, [])):
            try:
                await handler(message)
            except Exception as e:
                logger.error("memory_handler_error channel=%s error=%s", channel, repr(e), exc_info=True)

    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        self._check("subscribe")
        self._subscribers.setdefault(channel, []).append(handler)
        return _MemorySubscription(self, channel, handler)


def build_shared_store(settings) -> SharedStore:
    if settings.storage_backend == "redis":
        return RedisSharedStore()
    return MemorySharedStore()
