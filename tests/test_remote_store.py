"""Tests for RemoteStore against an in-process server and mock transports."""

import httpx
import pytest

from undangan.config import Config
from undangan.errors import Conflict, NotFound, StorageError, ValidationError
from undangan.models import Presence
from undangan.server import create_app
from undangan.store import CacheBackend, DocumentStore, RemoteStore


@pytest.fixture
def backing_store():
    """Create the store the server serves from."""
    return DocumentStore(CacheBackend())


@pytest.fixture
def remote(backing_store):
    """Create a RemoteStore talking to the app in-process."""
    app = create_app(Config(), backing_store)
    return RemoteStore(
        "http://testserver",
        backoff_seconds=0,
        transport=httpx.ASGITransport(app=app),
    )


def mock_remote(handler, max_retries=3):
    return RemoteStore(
        "http://testserver",
        max_retries=max_retries,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )


class TestRemoteOperations:
    """Tests for operations proxied to the REST API."""

    @pytest.mark.asyncio
    async def test_add_and_list_comments(self, remote, backing_store):
        added = await remote.add_comment("Ana", Presence.ATTENDING, "Congrats!")

        page = await remote.list_comments(1, 10)

        assert added.author_name == "Ana"
        assert page.total == 1
        assert page.items[0].uuid == added.uuid
        assert (await backing_store.list_comments()).items[0].body == "Congrats!"

    @pytest.mark.asyncio
    async def test_reply_and_presence_filter(self, remote):
        parent = await remote.add_comment("Ana", True, "yes")
        await remote.add_comment("Budi", False, "no")
        await remote.add_comment("Citra", True, "reply", parent_id=parent.id)

        attending = await remote.list_comments_by_presence("attending")

        assert attending.total == 1
        assert attending.items[0].replies[0].author_name == "Citra"

    @pytest.mark.asyncio
    async def test_search(self, remote):
        await remote.add_comment("Ana", True, "Selamat")
        await remote.add_comment("Budi", True, "Congrats")

        page = await remote.search_comments("selamat")

        assert [c.author_name for c in page.items] == ["Ana"]

    @pytest.mark.asyncio
    async def test_like_update_delete(self, remote):
        comment = await remote.add_comment("Ana", True, "Hi")

        await remote.like_comment(comment.uuid)
        liked = await remote.like_comment(comment.id)
        updated = await remote.update_comment(comment.uuid, {"body": "Edited"})
        removed = await remote.delete_comment(comment.uuid)

        assert liked.like_count == 2
        assert updated.body == "Edited"
        assert removed.id == comment.id
        assert (await remote.list_comments()).total == 0

    @pytest.mark.asyncio
    async def test_not_found(self, remote):
        with pytest.raises(NotFound):
            await remote.like_comment("missing")

    @pytest.mark.asyncio
    async def test_validation_error_from_server(self, remote):
        with pytest.raises(ValidationError):
            await remote.add_guest("Ana", "", "family")

    @pytest.mark.asyncio
    async def test_guests(self, remote):
        guest = await remote.add_guest("Budi", "Bapak", "family")

        with pytest.raises(Conflict):
            await remote.add_guest("budi", "Sdr", "friend")

        page = await remote.list_guests(1, 10)
        assert page.total == 1
        assert page.items[0].full_name == "Bapak Budi"

        removed = await remote.delete_guest(guest.id)
        assert removed.slug == "budi"

        await remote.add_guest("Ana", "Ibu", "family")
        assert await remote.clear_guests() == 1

    @pytest.mark.asyncio
    async def test_settings_and_stats(self, remote):
        await remote.increment_view_count()
        updated = await remote.update_settings({"contact": {"phone": "0800"}})
        stats = await remote.get_stats()
        settings = await remote.get_settings()

        assert updated["contact"] == {"phone": "0800"}
        assert settings["stats"]["totalViews"] == 1
        assert stats["total_views"] == 1

    @pytest.mark.asyncio
    async def test_check_connection(self, remote):
        assert await remote.check_connection() is True


class TestRetry:
    """Tests for retry and error mapping."""

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"success": False, "error": "busy"})
            return httpx.Response(200, json={"success": True, "data": {"stats": {}}})

        remote = mock_remote(handler)

        settings = await remote.get_settings()

        assert settings == {"stats": {}}
        assert len(calls) == 3
        assert remote.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"success": False, "error": "broken"})

        remote = mock_remote(handler, max_retries=2)

        with pytest.raises(StorageError, match="Max retries"):
            await remote.get_stats()

        assert len(calls) == 2
        assert remote.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        remote = mock_remote(handler)

        with pytest.raises(StorageError, match="Connection failed"):
            await remote.list_comments()
        assert await remote.check_connection() is False

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(409, json={"success": False, "error": "exists"})

        remote = mock_remote(handler)

        with pytest.raises(Conflict, match="exists"):
            await remote.add_guest("Ana", "Ibu", "family")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_json_response(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        remote = mock_remote(handler)

        with pytest.raises(StorageError):
            await remote.get_settings()

    @pytest.mark.asyncio
    async def test_local_validation_skips_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(201, json={"success": True, "data": {}})

        remote = mock_remote(handler)

        with pytest.raises(ValidationError):
            await remote.add_comment("A", True, "Hi")
        with pytest.raises(ValidationError):
            await remote.list_comments(0, 10)
        with pytest.raises(ValidationError):
            await remote.update_comment("abc", {"name": "x"})
        assert calls == []
