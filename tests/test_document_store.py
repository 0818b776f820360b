"""Tests for DocumentStore over the file and cache backends."""

import asyncio
import json
import pytest

from undangan.errors import Conflict, NotFound, StorageError, ValidationError
from undangan.models import Presence
from undangan.store import CacheBackend, DocumentStore, FileBackend


class FailingBackend(CacheBackend):
    """In-memory cache whose saves fail for selected documents."""

    def __init__(self):
        super().__init__()
        self.fail_on: set[str] = set()

    def save(self, key, document):
        if key in self.fail_on:
            raise StorageError(f"disk full writing {key}")
        super().save(key, document)


@pytest.fixture
def store():
    """Create an in-memory DocumentStore."""
    return DocumentStore(CacheBackend())


@pytest.fixture
def file_store(tmp_path):
    """Create a file-backed DocumentStore."""
    return DocumentStore(FileBackend(tmp_path / "data"))


class TestInitialize:
    """Tests for document creation."""

    @pytest.mark.asyncio
    async def test_creates_default_files(self, file_store, tmp_path):
        await file_store.initialize()

        data_dir = tmp_path / "data"
        comments = json.loads((data_dir / "comments.json").read_text())
        settings = json.loads((data_dir / "settings.json").read_text())

        assert comments == {"comments": [], "total": 0, "lastId": 0}
        assert (data_dir / "guests.json").exists()
        assert settings["stats"]["totalViews"] == 0
        assert settings["event"]["date"]
        assert file_store.ready

    @pytest.mark.asyncio
    async def test_keeps_existing_files(self, file_store, tmp_path):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "comments.json").write_text(
            json.dumps({"comments": [], "total": 0, "lastId": 41})
        )

        await file_store.initialize()
        comment = await file_store.add_comment("Ana", True, "Hi")

        assert comment.id == 42

    @pytest.mark.asyncio
    async def test_check_connection(self, file_store):
        assert await file_store.check_connection() is True


class TestComments:
    """Tests for comment operations."""

    @pytest.mark.asyncio
    async def test_add_then_list(self, store):
        """Empty store, one comment, one page."""
        await store.add_comment("Ana", Presence.ATTENDING, "Congrats!")

        page = await store.list_comments(1, 10)

        assert page.total == 1
        assert page.total_pages == 1
        assert not page.has_next
        assert not page.has_prev
        item = page.items[0].to_dict()
        assert item["name"] == "Ana"
        assert item["presence"] == "attending"
        assert item["comment"] == "Congrats!"
        assert item["like_count"] == 0

    @pytest.mark.asyncio
    async def test_new_comment_listed_first(self, store):
        await store.add_comment("Ana", True, "first")
        added = await store.add_comment("Budi", False, "second")

        page = await store.list_comments(1, 10)

        assert page.items[0].uuid == added.uuid
        assert page.items[0].id == 2

    @pytest.mark.asyncio
    async def test_pages_cover_every_comment_once(self, store):
        for i in range(25):
            await store.add_comment(f"Guest {i}", True, f"message {i}")

        seen = []
        page_num = 1
        while True:
            page = await store.list_comments(page_num, 10)
            seen.extend(c.id for c in page.items)
            if not page.has_next:
                break
            page_num += 1

        assert page_num == 3
        assert sorted(seen) == list(range(1, 26))
        assert seen == sorted(seen, reverse=True)

    @pytest.mark.asyncio
    async def test_page_past_end_is_empty(self, store):
        await store.add_comment("Ana", True, "Hi")

        page = await store.list_comments(5, 10)

        assert page.items == []
        assert page.total == 1
        assert not page.has_next

    @pytest.mark.asyncio
    async def test_invalid_page(self, store):
        with pytest.raises(ValidationError):
            await store.list_comments(0, 10)

    @pytest.mark.asyncio
    async def test_validation_leaves_store_unchanged(self, store):
        with pytest.raises(ValidationError):
            await store.add_comment("A", True, "Hi")
        with pytest.raises(ValidationError):
            await store.add_comment("Ana", True, "   ")
        with pytest.raises(ValidationError):
            await store.add_comment("Ana", 0, "Hi")

        page = await store.list_comments()
        assert page.total == 0

    @pytest.mark.asyncio
    async def test_filter_by_presence(self, store):
        await store.add_comment("Ana", "attending", "yes")
        await store.add_comment("Budi", "not_attending", "no")
        await store.add_comment("Citra", True, "yes too")

        page = await store.list_comments_by_presence(Presence.ATTENDING, 1, 1)

        assert page.total == 2
        assert page.total_pages == 2
        assert all(c.presence == Presence.ATTENDING for c in page.items)

    @pytest.mark.asyncio
    async def test_search(self, store):
        await store.add_comment("Ana", True, "Selamat menempuh hidup baru")
        await store.add_comment("Budi", True, "Congrats")

        by_body = await store.search_comments("HIDUP")
        by_name = await store.search_comments("bud")

        assert [c.author_name for c in by_body.items] == ["Ana"]
        assert [c.author_name for c in by_name.items] == ["Budi"]

    @pytest.mark.asyncio
    async def test_reply(self, store):
        parent = await store.add_comment("Ana", True, "parent")
        reply = await store.add_comment("Budi", True, "reply", parent_id=parent.id)

        page = await store.list_comments()

        assert page.total == 1
        assert reply.parent_id == parent.id
        assert page.items[0].replies[0].uuid == reply.uuid

    @pytest.mark.asyncio
    async def test_reply_to_missing_parent(self, store):
        with pytest.raises(NotFound):
            await store.add_comment("Budi", True, "reply", parent_id=99)

        assert (await store.list_comments()).total == 0

    @pytest.mark.asyncio
    async def test_like_twice(self, store):
        comment = await store.add_comment("Ana", True, "Hi")

        await store.like_comment(comment.id)
        liked = await store.like_comment(comment.uuid)

        assert liked.like_count == 2

    @pytest.mark.asyncio
    async def test_like_reply(self, store):
        parent = await store.add_comment("Ana", True, "parent")
        reply = await store.add_comment("Budi", True, "reply", parent_id=parent.id)

        await store.like_comment(str(reply.id))

        page = await store.list_comments()
        assert page.items[0].replies[0].like_count == 1
        assert page.items[0].like_count == 0

    @pytest.mark.asyncio
    async def test_like_missing(self, store):
        with pytest.raises(NotFound):
            await store.like_comment("no-such-uuid")

    @pytest.mark.asyncio
    async def test_delete_reply(self, store):
        parent = await store.add_comment("Ana", True, "parent")
        reply = await store.add_comment("Budi", True, "reply", parent_id=parent.id)

        removed = await store.delete_comment(reply.uuid)

        page = await store.list_comments()
        settings = await store.get_settings()
        assert removed.id == reply.id
        assert page.items[0].replies == []
        assert settings["stats"]["totalComments"] == 1

    @pytest.mark.asyncio
    async def test_delete_parent_removes_replies(self, store):
        parent = await store.add_comment("Ana", True, "parent")
        await store.add_comment("Budi", True, "reply", parent_id=parent.id)
        await store.add_comment("Citra", True, "other")

        await store.delete_comment(parent.id)

        settings = await store.get_settings()
        stats = await store.get_stats()
        assert settings["stats"]["totalComments"] == 1
        assert stats["total_comments"] == 1

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        with pytest.raises(NotFound):
            await store.delete_comment(5)

    @pytest.mark.asyncio
    async def test_update(self, store):
        comment = await store.add_comment("Ana", True, "Hi")

        updated = await store.update_comment(
            comment.uuid, {"body": " Edited ", "presence": "not_attending"}
        )

        assert updated.body == "Edited"
        assert updated.presence == Presence.NOT_ATTENDING
        assert updated.updated_at >= comment.updated_at
        assert updated.author_name == "Ana"

    @pytest.mark.asyncio
    async def test_update_rejects_other_fields(self, store):
        comment = await store.add_comment("Ana", True, "Hi")

        with pytest.raises(ValidationError):
            await store.update_comment(comment.id, {"like_count": 100})

    @pytest.mark.asyncio
    async def test_concurrent_adds_get_unique_ids(self, store):
        comments = await asyncio.gather(
            *(store.add_comment(f"Guest {i}", True, "Hi") for i in range(20))
        )

        ids = [c.id for c in comments]
        assert sorted(ids) == list(range(1, 21))
        assert (await store.list_comments()).total == 20


class TestGuests:
    """Tests for guest operations."""

    @pytest.mark.asyncio
    async def test_add_guest(self, store):
        guest = await store.add_guest("Budi Santoso", "Bapak", "family")

        assert guest.id == 1
        assert guest.slug == "budi-santoso"
        assert guest.invitation_link == "index.html?to=Bapak%20Budi%20Santoso"

    @pytest.mark.asyncio
    async def test_invitation_base(self):
        store = DocumentStore(CacheBackend(), invitation_base="https://example.com/")

        guest = await store.add_guest("Ana", "Ibu", "friend")

        assert guest.invitation_link == "https://example.com/?to=Ibu%20Ana"

    @pytest.mark.asyncio
    async def test_duplicate_slug_conflict(self, store):
        await store.add_guest("Budi Santoso", "Bapak", "family")

        with pytest.raises(Conflict):
            await store.add_guest("budi  santoso!", "Sdr", "friend")

        page = await store.list_guests(1, 10)
        assert page.total == 1
        assert page.items[0].type == "Bapak"

    @pytest.mark.asyncio
    async def test_missing_fields(self, store):
        with pytest.raises(ValidationError):
            await store.add_guest("Budi", "", "family")

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store):
        await store.add_guest("Ana", "Ibu", "family")
        await store.add_guest("Budi", "Bapak", "family")

        page = await store.list_guests()

        assert [g.name for g in page.items] == ["Budi", "Ana"]

    @pytest.mark.asyncio
    async def test_delete_guest(self, store):
        guest = await store.add_guest("Ana", "Ibu", "family")

        removed = await store.delete_guest(guest.id)

        assert removed.slug == "ana"
        assert (await store.list_guests()).total == 0
        assert (await store.get_settings())["stats"]["totalGuests"] == 0

    @pytest.mark.asyncio
    async def test_delete_missing_guest(self, store):
        with pytest.raises(NotFound):
            await store.delete_guest(3)

    @pytest.mark.asyncio
    async def test_clear_guests(self, store):
        await store.add_guest("Ana", "Ibu", "family")
        await store.add_guest("Budi", "Bapak", "friend")

        deleted = await store.clear_guests()

        assert deleted == 2
        assert (await store.list_guests()).total == 0
        assert (await store.get_settings())["stats"]["totalGuests"] == 0
        # Ids start over after a clear
        assert (await store.add_guest("Citra", "Sdri", "friend")).id == 1


class TestSettings:
    """Tests for settings and stats."""

    @pytest.mark.asyncio
    async def test_shallow_merge_keeps_other_sections(self, store):
        before = await store.get_settings()

        updated = await store.update_settings({"contact": {"phone": "0800"}})

        assert updated["event"] == before["event"]
        assert updated["contact"] == {"phone": "0800"}
        assert "updated_at" in updated
        assert (await store.get_settings())["contact"] == {"phone": "0800"}

    @pytest.mark.asyncio
    async def test_stats_not_writable(self, store):
        await store.increment_view_count()

        updated = await store.update_settings({"stats": {"totalViews": 999}})

        assert updated["stats"]["totalViews"] == 1

    @pytest.mark.asyncio
    async def test_update_requires_object(self, store):
        with pytest.raises(ValidationError):
            await store.update_settings(["contact"])

    @pytest.mark.asyncio
    async def test_view_count(self, store):
        await store.increment_view_count()
        await store.increment_view_count()

        settings = await store.get_settings()
        stats = await store.get_stats()

        assert settings["stats"]["totalViews"] == 2
        assert stats["total_views"] == 2

    @pytest.mark.asyncio
    async def test_stats(self, store):
        first = await store.add_comment("Ana", True, "yes")
        await store.add_comment("Budi", False, "no")
        await store.add_comment("Citra", True, "reply", parent_id=first.id)
        await store.like_comment(first.id)
        await store.add_guest("Ana", "Ibu", "family")
        await store.add_guest("Dedi", "Bapak", "family")
        await store.add_guest("Eka", "Sdri", "friend")

        stats = await store.get_stats()

        assert stats["total_comments"] == 3
        assert stats["top_level_comments"] == 2
        assert stats["attending"] == 1
        assert stats["not_attending"] == 1
        assert stats["total_likes"] == 1
        assert stats["comments_today"] == 3
        assert stats["total_guests"] == 3
        assert stats["guests_today"] == 3
        assert stats["popular_categories"] == {"family": 2, "friend": 1}
        assert len(stats["latest_comments"]) == 2


class TestStorageFailures:
    """Tests for unreadable data and failed writes."""

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_empty(self, file_store, tmp_path):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "comments.json").write_text("{not json")

        page = await file_store.list_comments()

        assert page.total == 0
        assert page.items == []

    @pytest.mark.asyncio
    async def test_corrupt_file_not_overwritten(self, file_store, tmp_path):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "comments.json").write_text("{not json")

        with pytest.raises(StorageError):
            await file_store.add_comment("Ana", True, "Hi")

        assert (data_dir / "comments.json").read_text() == "{not json"

    @pytest.mark.asyncio
    async def test_failed_settings_write_rolls_back_comment(self):
        backend = FailingBackend()
        store = DocumentStore(backend)
        await store.add_comment("Ana", True, "kept")

        backend.fail_on.add("settings")
        with pytest.raises(StorageError):
            await store.add_comment("Budi", True, "lost")
        backend.fail_on.clear()

        page = await store.list_comments()
        assert [c.author_name for c in page.items] == ["Ana"]
        assert (await store.get_settings())["stats"]["totalComments"] == 1

    @pytest.mark.asyncio
    async def test_failed_guest_write(self):
        backend = FailingBackend()
        store = DocumentStore(backend)
        await store.initialize()

        backend.fail_on.add("guests")
        with pytest.raises(StorageError):
            await store.add_guest("Ana", "Ibu", "family")
        backend.fail_on.clear()

        assert (await store.list_guests()).total == 0
        assert (await store.get_settings())["stats"]["totalGuests"] == 0


class TestBackup:
    """Tests for export and import."""

    @pytest.mark.asyncio
    async def test_export_import(self, store, file_store):
        parent = await store.add_comment("Ana", True, "parent")
        await store.add_comment("Budi", False, "reply", parent_id=parent.id)
        await store.add_guest("Citra", "Sdri", "friend")
        await store.update_settings({"contact": {"phone": "0800"}})

        backup = await store.export_data()
        await file_store.import_data(json.loads(json.dumps(backup)))

        page = await file_store.list_comments()
        settings = await file_store.get_settings()
        assert page.total == 1
        assert page.items[0].replies[0].author_name == "Budi"
        assert (await file_store.list_guests()).items[0].slug == "citra"
        assert settings["contact"] == {"phone": "0800"}
        assert settings["stats"]["totalComments"] == 2
        assert (await file_store.add_comment("Dedi", True, "next")).id == 3

    @pytest.mark.asyncio
    async def test_import_over_corrupt_file(self, file_store, tmp_path):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "guests.json").write_text("[]]")

        await file_store.import_data({"guests": {"guests": [], "lastId": 0}})

        assert json.loads((data_dir / "guests.json").read_text())["total"] == 0

    @pytest.mark.asyncio
    async def test_import_rejects_garbage(self, store):
        with pytest.raises(ValidationError):
            await store.import_data({"unrelated": 1})
        with pytest.raises(ValidationError):
            await store.import_data({"comments": {"comments": [{"name": "no id"}]}})
