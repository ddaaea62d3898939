"""
Tests du SessionStorageAdapter: fusion, convergence entre onglets,
monotonie de l'expiration et mode dégradé.

Run with:
    pytest tests/test_session_storage.py -v
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from sessionsync.models import MessageType, SyncMessage, utcnow


@pytest.mark.asyncio
class TestSessionStorageAdapter:
    async def test_default_record_carries_own_tab_id(self, make_storage):
        storage = make_storage("tab_solo")
        data = storage.get_session_data()
        assert data.tab_id == "tab_solo"
        assert data.is_active is False
        assert data.token is None
        assert await storage.load_shared_session() is None

    async def test_two_tabs_converge_on_union_of_fields(self, make_storage):
        tab_a, tab_b = make_storage("tab_a"), make_storage("tab_b")
        await tab_a.start(AsyncMock())
        await tab_b.start(AsyncMock())

        await tab_a.update_session_data({"user_id": 1, "token": "tok", "is_active": True})
        await tab_b.update_session_data({"metadata": {"user_agent": "browser-b"}})

        for tab in (tab_a, tab_b):
            data = tab.get_session_data()
            assert data.token == "tok"
            assert data.user_id == 1
            assert data.metadata["user_agent"] == "browser-b"

        shared = await tab_a.load_shared_session()
        assert shared.token == "tok"
        assert shared.metadata["user_agent"] == "browser-b"
        assert shared.metadata["refresh_count"] == 0

    async def test_metadata_is_merged_not_replaced(self, make_storage):
        storage = make_storage()
        await storage.update_session_data({"metadata": {"refresh_count": 2}})
        await storage.update_session_data({"metadata": {"login_time": utcnow()}})
        meta = storage.get_session_data().metadata
        assert meta["refresh_count"] == 2
        assert meta["login_time"] is not None
        assert meta["user_agent"] == "pytest"

    async def test_active_without_token_is_rejected(self, make_storage):
        storage = make_storage()
        with pytest.raises(ValueError):
            await storage.update_session_data({"is_active": True, "user_id": 1})
        assert storage.get_session_data().is_active is False

    async def test_expiry_never_moves_backward_without_relogin(self, make_storage):
        storage = make_storage()
        later = utcnow() + timedelta(hours=2)
        earlier = utcnow() + timedelta(hours=1)
        await storage.update_session_data({"expires_at": later})
        await storage.update_session_data({"expires_at": earlier})
        assert storage.get_session_data().expires_at == later
        assert (await storage.load_shared_session()).expires_at == later

        await storage.update_session_data({"expires_at": earlier}, relogin=True)
        assert storage.get_session_data().expires_at == earlier

    async def test_own_messages_are_ignored(self, make_storage):
        storage = make_storage("tab_a")
        handler = AsyncMock()
        await storage.start(handler)
        await storage.update_session_data({"user_id": 1, "token": "tok", "is_active": True})
        handler.assert_not_awaited()

    async def test_update_reaches_other_tab_handler(self, make_storage):
        tab_a, tab_b = make_storage("tab_a"), make_storage("tab_b")
        handler = AsyncMock()
        await tab_b.start(handler)
        await tab_a.update_session_data({"user_id": 1, "token": "tok", "is_active": True})

        handler.assert_awaited_once()
        message = handler.await_args.args[0]
        assert isinstance(message, SyncMessage)
        assert message.type == MessageType.SESSION_UPDATE
        assert message.tab_id == "tab_a"

    async def test_broadcast_logout_marks_shared_inactive(self, make_storage):
        tab_a, tab_b = make_storage("tab_a"), make_storage("tab_b")
        await tab_a.start(AsyncMock())
        await tab_b.start(AsyncMock())
        await tab_a.update_session_data({"user_id": 1, "token": "tok", "is_active": True})

        delivered = await tab_a.broadcast_logout()

        assert delivered is True
        assert (await tab_b.load_shared_session()).is_active is False
        assert tab_a.get_session_data().token is None
        assert tab_b.get_session_data().token is None

    async def test_stop_unsubscribes(self, make_storage):
        tab_a, tab_b = make_storage("tab_a"), make_storage("tab_b")
        handler = AsyncMock()
        await tab_b.start(handler)
        await tab_b.stop()
        await tab_a.update_session_data({"user_id": 1, "token": "tok", "is_active": True})
        handler.assert_not_awaited()

    async def test_token_persistence(self, make_storage, store, settings):
        storage = make_storage()
        await storage.persist_token("tok")
        assert await store.get(f"{settings.namespace}auth_token") == "tok"
        assert await storage.load_token() == "tok"
        await storage.remove_token()
        assert await storage.load_token() is None

    async def test_corrupt_shared_record_reads_as_absent(self, make_storage, store, settings):
        await store.set(f"{settings.namespace}session", "{not json")
        assert await make_storage().load_shared_session() is None

    async def test_invalid_incoming_message_is_dropped(self, make_storage, store):
        storage = make_storage("tab_b")
        handler = AsyncMock()
        await storage.start(handler)
        await store.publish(storage.channel, "garbage")
        await store.publish(storage.channel, json.dumps({"type": "nope", "tab_id": "tab_a"}))
        handler.assert_not_awaited()


@pytest.mark.asyncio
class TestDegradedMode:
    async def test_reads_never_raise_when_store_is_down(self, make_storage, store):
        storage = make_storage()
        store.available = False
        assert await storage.load_shared_session() is None
        assert storage.available is False
        assert storage.get_session_data().token is None

    async def test_writes_stay_local_when_store_is_down(self, make_storage, store):
        storage = make_storage()
        store.available = False
        data = await storage.update_session_data({"user_id": 1, "token": "tok", "is_active": True})
        assert data.token == "tok"
        assert storage.get_session_data().token == "tok"

        store.available = True
        assert await storage.load_shared_session() is None
        assert storage.available is True

    async def test_token_cache_when_store_is_down(self, make_storage, store):
        storage = make_storage()
        await storage.persist_token("tok")
        store.available = False
        assert await storage.load_token() == "tok"

    async def test_start_reports_local_mode(self, make_storage, store):
        storage = make_storage()
        store.available = False
        assert await storage.start(AsyncMock()) is False
        assert await storage.publish(MessageType.HEARTBEAT, {}) is False
