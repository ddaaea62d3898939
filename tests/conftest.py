"""
Fixtures partagées: support mémoire, faux backend HTTP, onglets simulés.
"""

import dataclasses
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from sessionsync.auth_api import AuthApiClient
from sessionsync.auth_session import AuthSessionController
from sessionsync.config import get_settings
from sessionsync.models import utcnow
from sessionsync.session_storage import SessionStorageAdapter
from sessionsync.shared_store import MemorySharedStore


def make_settings(**overrides):
    base = dataclasses.replace(get_settings(), storage_backend="memory", namespace="test:")
    return dataclasses.replace(base, **overrides)


def ok(data, status=200):
    return status, {"success": True, "data": data}


def fail(code, message, status):
    return status, {"success": False, "error": {"code": code, "message": message}}


def login_payload(token="test-token", user_id=1, hours=1):
    return {
        "user": {"id": user_id, "name": "Test User", "email": "test@example.com", "preferred_language": "en"},
        "token": token,
        "session_expiry": (utcnow() + timedelta(hours=hours)).isoformat(),
    }


class FakeBackend:
    """Backend d'auth simulé derrière httpx.MockTransport."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def count(self, method, path):
        return self.calls.count((method, path))

    def handle(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        self.calls.append(key)
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, json={"success": False, "error": {"code": "NOT_FOUND", "message": "not found"}})
        # Le dernier élément se répète
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body)

    def client(self) -> AuthApiClient:
        transport = httpx.MockTransport(self.handle)
        return AuthApiClient(client=httpx.AsyncClient(transport=transport, base_url="http://backend.test"))


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return MemorySharedStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_storage(store, settings):
    def _make(tab_id=None):
        return SessionStorageAdapter(store, namespace=settings.namespace, tab_id=tab_id, user_agent="pytest")
    return _make


@pytest_asyncio.fixture
async def make_tab(store, backend, settings):
    """Fabrique d'onglets (AuthSessionController) partageant le même support."""
    created = []

    def _make(tab_id=None, **kwargs):
        storage = SessionStorageAdapter(store, namespace=settings.namespace, tab_id=tab_id, user_agent="pytest")
        kwargs.setdefault("sleep", AsyncMock())
        controller = AuthSessionController(storage, backend.client(), settings=kwargs.pop("settings", settings), **kwargs)
        created.append(controller)
        return controller

    yield _make

    for controller in created:
        await controller.dispose()
        await controller.api._client.aclose()
