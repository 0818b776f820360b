"""Store over whole JSON documents (files or local cache)."""

import asyncio
import copy
import logging
import threading
import uuid
from collections import Counter
from contextlib import ExitStack, contextmanager
from typing import Any, Callable, Iterator

from ..errors import NotFound, StorageError, ValidationError, Conflict
from ..models import (
    Comment,
    Guest,
    Page,
    Presence,
    default_settings,
    empty_comments_doc,
    empty_guests_doc,
    format_ts,
    invitation_link,
    name_slug,
    paginate,
    parse_ref,
    utc_now,
    validate_comment_input,
    validate_comment_patch,
    validate_guest_input,
    validate_page,
)
from .backends import DOCUMENT_KEYS, DocumentBackend
from .base import Store

logger = logging.getLogger(__name__)

_DEFAULTS: dict[str, Callable[[], dict[str, Any]]] = {
    "comments": empty_comments_doc,
    "guests": empty_guests_doc,
    "settings": default_settings,
}

# Settings keys only the store itself may write
_PROTECTED_SETTINGS = ("stats", "updated_at")


def _newest_first(records: list[Any]) -> list[Any]:
    return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)


class DocumentStore(Store):
    """Comments, guests and settings kept as three whole JSON documents.

    Every mutation runs read-entire-state, validate, mutate, write-entire-state
    while holding the lock of each document it touches. Locks are always taken
    in the order comments, guests, settings. Blocking I/O runs in a worker
    thread, so a cancelled caller never interrupts a write half way.
    """

    def __init__(
        self,
        backend: DocumentBackend,
        min_name_length: int = 2,
        min_body_length: int = 1,
        invitation_base: str = "index.html",
    ):
        """Initialize the store.

        Args:
            backend: Where the documents live.
            min_name_length: Minimum trimmed author name length.
            min_body_length: Minimum trimmed comment length.
            invitation_base: Page the guest invitation links point at.
        """
        super().__init__(min_name_length, min_body_length)
        self.backend = backend
        self.invitation_base = invitation_base
        self._locks = {key: threading.Lock() for key in DOCUMENT_KEYS}
        self._init_lock = threading.Lock()
        self._initialized = False

    @property
    def ready(self) -> bool:
        return self._initialized

    @contextmanager
    def _locked(self, *keys: str) -> Iterator[None]:
        with ExitStack() as stack:
            for key in DOCUMENT_KEYS:
                if key in keys:
                    stack.enter_context(self._locks[key])
            yield

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        if not self._initialized:
            await self.initialize()
        return await asyncio.to_thread(func, *args)

    # ==================== Lifecycle ====================

    async def initialize(self) -> None:
        """Create any missing document with its defaults."""
        await asyncio.to_thread(self._initialize_sync)

    def _initialize_sync(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            with self._locked(*DOCUMENT_KEYS):
                for key in DOCUMENT_KEYS:
                    try:
                        if self.backend.load(key) is None:
                            self.backend.save(key, _DEFAULTS[key]())
                            logger.info(f"Created default {key} document")
                    except StorageError as e:
                        # Leave unreadable data alone; reads fall back to defaults
                        logger.error(f"Cannot initialize {key} document: {e}")
            self._initialized = True
        logger.info(f"DocumentStore ready ({self.backend.name} backend)")

    async def check_connection(self) -> bool:
        return await asyncio.to_thread(self.backend.is_available)

    # ==================== Document helpers ====================

    def _load(self, key: str) -> dict[str, Any]:
        """Load a document for writing. Raises StorageError if unreadable."""
        doc = self.backend.load(key)
        if doc is None:
            return _DEFAULTS[key]()
        if key == "settings":
            merged = {**default_settings(), **doc}
            merged["stats"] = {**default_settings()["stats"], **(doc.get("stats") or {})}
            return merged
        return doc

    def _load_for_read(self, key: str) -> dict[str, Any]:
        try:
            return self._load(key)
        except StorageError as e:
            logger.error(f"Falling back to empty {key}: {e}")
            return _DEFAULTS[key]()

    def _parse_comments(self, doc: dict[str, Any]) -> list[Comment]:
        try:
            return [Comment.from_dict(c) for c in doc.get("comments") or []]
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise StorageError(f"Corrupt comments document: {e}") from e

    def _parse_guests(self, doc: dict[str, Any]) -> list[Guest]:
        try:
            return [Guest.from_dict(g) for g in doc.get("guests") or []]
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Corrupt guests document: {e}") from e

    def _read_comments(self) -> list[Comment]:
        try:
            return self._parse_comments(self._load("comments"))
        except StorageError as e:
            logger.error(f"Falling back to empty comments: {e}")
            return []

    def _read_guests(self) -> list[Guest]:
        try:
            return self._parse_guests(self._load("guests"))
        except StorageError as e:
            logger.error(f"Falling back to empty guests: {e}")
            return []

    @staticmethod
    def _comments_doc(comments: list[Comment], last_id: int) -> dict[str, Any]:
        return {
            "comments": [c.to_dict() for c in comments],
            "total": sum(1 for c in comments for _ in c.iter_tree()),
            "lastId": last_id,
        }

    @staticmethod
    def _guests_doc(guests: list[Guest], last_id: int) -> dict[str, Any]:
        return {
            "guests": [g.to_dict() for g in guests],
            "total": len(guests),
            "lastId": last_id,
        }

    @staticmethod
    def _with_stats(settings: dict[str, Any], **values: int) -> dict[str, Any]:
        updated = copy.deepcopy(settings)
        updated["stats"].update(values)
        return updated

    def _commit(self, *changes: tuple[str, dict[str, Any], dict[str, Any] | None]) -> None:
        """Save (key, new, previous) documents in order.

        If a later save fails, earlier ones are put back to their previous
        content before the error propagates.
        """
        written: list[tuple[str, dict[str, Any] | None]] = []
        try:
            for key, document, previous in changes:
                self.backend.save(key, document)
                written.append((key, previous))
        except StorageError:
            for key, previous in reversed(written):
                if previous is None:
                    continue
                try:
                    self.backend.save(key, previous)
                except StorageError as e:
                    logger.error(f"Rollback of {key} failed: {e}")
            raise

    @staticmethod
    def _find(comments: list[Comment], ref: str | int) -> Comment:
        for comment in comments:
            for node in comment.iter_tree():
                if node.matches(ref):
                    return node
        raise NotFound(f"Comment {ref} not found")

    # ==================== Comment Operations ====================

    async def list_comments(self, page: int = 1, page_size: int = 10) -> Page:
        return await self._call(self._list_comments_sync, page, page_size, None)

    async def list_comments_by_presence(
        self, presence: Presence | str, page: int = 1, page_size: int = 10
    ) -> Page:
        wanted = Presence.parse(presence)
        return await self._call(
            self._list_comments_sync, page, page_size, lambda c: c.presence == wanted
        )

    async def search_comments(
        self, query: str, page: int = 1, page_size: int = 10
    ) -> Page:
        needle = (query or "").strip().lower()

        def matches(comment: Comment) -> bool:
            return needle in comment.author_name.lower() or needle in comment.body.lower()

        return await self._call(self._list_comments_sync, page, page_size, matches)

    def _list_comments_sync(
        self,
        page: int,
        page_size: int,
        predicate: Callable[[Comment], bool] | None,
    ) -> Page:
        validate_page(page, page_size)
        with self._locked("comments"):
            comments = self._read_comments()
        if predicate is not None:
            comments = [c for c in comments if predicate(c)]
        return paginate(_newest_first(comments), page, page_size)

    async def add_comment(
        self,
        author_name: str,
        presence: Presence | str | bool | int,
        body: str,
        gif_url: str | None = None,
        parent_id: int | None = None,
    ) -> Comment:
        author_name, body, presence = validate_comment_input(
            author_name, body, presence, self.min_name_length, self.min_body_length
        )
        if parent_id is not None:
            parent_id = parse_ref(parent_id)
            if not isinstance(parent_id, int):
                raise ValidationError(f"parent_id must be an integer id, got {parent_id!r}")
        return await self._call(
            self._add_comment_sync, author_name, presence, body, gif_url or None, parent_id
        )

    def _add_comment_sync(
        self,
        author_name: str,
        presence: Presence,
        body: str,
        gif_url: str | None,
        parent_id: int | None,
    ) -> Comment:
        with self._locked("comments", "settings"):
            comments_doc = self._load("comments")
            settings = self._load("settings")
            comments = self._parse_comments(comments_doc)

            parent = None
            if parent_id is not None:
                parent = next((c for c in comments if c.id == parent_id), None)
                if parent is None:
                    raise NotFound(f"Parent comment {parent_id} not found")

            last_id = int(comments_doc.get("lastId", 0)) + 1
            now = utc_now()
            comment = Comment(
                id=last_id,
                uuid=str(uuid.uuid4()),
                author_name=author_name,
                author_slug=name_slug(author_name),
                presence=presence,
                body=body,
                created_at=now,
                updated_at=now,
                gif_url=gif_url,
                parent_id=parent_id,
            )

            if parent is not None:
                parent.replies.append(comment)
            else:
                comments.insert(0, comment)

            new_doc = self._comments_doc(comments, last_id)
            self._commit(
                ("comments", new_doc, comments_doc),
                ("settings", self._with_stats(settings, totalComments=new_doc["total"]), settings),
            )

        logger.debug(f"Added comment {comment.id} ({comment.uuid})")
        return comment

    async def like_comment(self, ref: str | int) -> Comment:
        return await self._call(self._like_comment_sync, parse_ref(ref))

    def _like_comment_sync(self, ref: str | int) -> Comment:
        with self._locked("comments"):
            comments_doc = self._load("comments")
            comments = self._parse_comments(comments_doc)
            comment = self._find(comments, ref)
            comment.like_count += 1
            self._commit(
                ("comments", self._comments_doc(comments, int(comments_doc.get("lastId", 0))), None),
            )
        return comment

    async def delete_comment(self, ref: str | int) -> Comment:
        return await self._call(self._delete_comment_sync, parse_ref(ref))

    def _delete_comment_sync(self, ref: str | int) -> Comment:
        with self._locked("comments", "settings"):
            comments_doc = self._load("comments")
            settings = self._load("settings")
            comments = self._parse_comments(comments_doc)

            removed = None
            for index, comment in enumerate(comments):
                if comment.matches(ref):
                    removed = comments.pop(index)
                    break
                for reply_index, reply in enumerate(comment.replies):
                    if reply.matches(ref):
                        removed = comment.replies.pop(reply_index)
                        break
                if removed is not None:
                    break

            if removed is None:
                raise NotFound(f"Comment {ref} not found")

            new_doc = self._comments_doc(comments, int(comments_doc.get("lastId", 0)))
            self._commit(
                ("comments", new_doc, comments_doc),
                ("settings", self._with_stats(settings, totalComments=new_doc["total"]), settings),
            )

        logger.debug(f"Deleted comment {removed.id} with {len(removed.replies)} replies")
        return removed

    async def update_comment(self, ref: str | int, patch: dict[str, Any]) -> Comment:
        changes = validate_comment_patch(patch, self.min_body_length)
        return await self._call(self._update_comment_sync, parse_ref(ref), changes)

    def _update_comment_sync(self, ref: str | int, changes: dict[str, Any]) -> Comment:
        with self._locked("comments"):
            comments_doc = self._load("comments")
            comments = self._parse_comments(comments_doc)
            comment = self._find(comments, ref)
            for name, value in changes.items():
                setattr(comment, name, value)
            comment.updated_at = utc_now()
            self._commit(
                ("comments", self._comments_doc(comments, int(comments_doc.get("lastId", 0))), None),
            )
        return comment

    # ==================== Guest Operations ====================

    async def add_guest(self, name: str, guest_type: str, category: str) -> Guest:
        name, guest_type, category, slug = validate_guest_input(name, guest_type, category)
        return await self._call(self._add_guest_sync, name, guest_type, category, slug)

    def _add_guest_sync(self, name: str, guest_type: str, category: str, slug: str) -> Guest:
        with self._locked("guests", "settings"):
            guests_doc = self._load("guests")
            settings = self._load("settings")
            guests = self._parse_guests(guests_doc)

            if any(g.slug == slug for g in guests):
                raise Conflict(f"Guest with this name already exists: {slug}")

            last_id = int(guests_doc.get("lastId", 0)) + 1
            full_name = f"{guest_type} {name}".strip()
            guest = Guest(
                id=last_id,
                name=name,
                type=guest_type,
                category=category,
                slug=slug,
                invitation_link=invitation_link(full_name, self.invitation_base),
                created_at=utc_now(),
            )
            guests.append(guest)

            self._commit(
                ("guests", self._guests_doc(guests, last_id), guests_doc),
                ("settings", self._with_stats(settings, totalGuests=len(guests)), settings),
            )

        logger.debug(f"Added guest {guest.id} ({guest.slug})")
        return guest

    async def list_guests(self, page: int = 1, page_size: int = 10) -> Page:
        return await self._call(self._list_guests_sync, page, page_size)

    def _list_guests_sync(self, page: int, page_size: int) -> Page:
        validate_page(page, page_size)
        with self._locked("guests"):
            guests = self._read_guests()
        return paginate(_newest_first(guests), page, page_size)

    async def delete_guest(self, guest_id: int) -> Guest:
        try:
            guest_id = int(guest_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid guest id: {guest_id!r}")
        return await self._call(self._delete_guest_sync, guest_id)

    def _delete_guest_sync(self, guest_id: int) -> Guest:
        with self._locked("guests", "settings"):
            guests_doc = self._load("guests")
            settings = self._load("settings")
            guests = self._parse_guests(guests_doc)

            index = next((i for i, g in enumerate(guests) if g.id == guest_id), None)
            if index is None:
                raise NotFound(f"Guest {guest_id} not found")
            removed = guests.pop(index)

            self._commit(
                ("guests", self._guests_doc(guests, int(guests_doc.get("lastId", 0))), guests_doc),
                ("settings", self._with_stats(settings, totalGuests=len(guests)), settings),
            )
        return removed

    async def clear_guests(self) -> int:
        return await self._call(self._clear_guests_sync)

    def _clear_guests_sync(self) -> int:
        with self._locked("guests", "settings"):
            guests_doc = self._load("guests")
            settings = self._load("settings")
            deleted = len(self._parse_guests(guests_doc))

            self._commit(
                ("guests", empty_guests_doc(), guests_doc),
                ("settings", self._with_stats(settings, totalGuests=0), settings),
            )

        logger.info(f"Cleared {deleted} guests")
        return deleted

    # ==================== Settings & Stats ====================

    async def get_settings(self) -> dict[str, Any]:
        return await self._call(self._get_settings_sync)

    def _get_settings_sync(self) -> dict[str, Any]:
        with self._locked("settings"):
            return self._load_for_read("settings")

    async def update_settings(self, partial: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(partial, dict):
            raise ValidationError("Settings update must be an object")
        partial = {k: v for k, v in partial.items() if k not in _PROTECTED_SETTINGS}
        return await self._call(self._update_settings_sync, partial)

    def _update_settings_sync(self, partial: dict[str, Any]) -> dict[str, Any]:
        with self._locked("settings"):
            settings = self._load("settings")
            updated = {
                **settings,
                **copy.deepcopy(partial),
                "updated_at": format_ts(utc_now()),
            }
            self._commit(("settings", updated, None))
        return updated

    async def increment_view_count(self) -> None:
        await self._call(self._increment_view_count_sync)

    def _increment_view_count_sync(self) -> None:
        with self._locked("settings"):
            settings = self._load("settings")
            views = int(settings["stats"].get("totalViews", 0)) + 1
            self._commit(("settings", self._with_stats(settings, totalViews=views), None))

    async def get_stats(self) -> dict[str, Any]:
        return await self._call(self._get_stats_sync)

    def _get_stats_sync(self) -> dict[str, Any]:
        with self._locked(*DOCUMENT_KEYS):
            comments = self._read_comments()
            guests = self._read_guests()
            settings = self._load_for_read("settings")

        today = utc_now().date()
        every_comment = [node for c in comments for node in c.iter_tree()]

        return {
            "total_comments": len(every_comment),
            "top_level_comments": len(comments),
            "total_guests": len(guests),
            "total_views": int(settings["stats"].get("totalViews", 0)),
            "comments_today": sum(1 for c in every_comment if c.created_at.date() == today),
            "guests_today": sum(1 for g in guests if g.created_at.date() == today),
            "attending": sum(1 for c in comments if c.presence == Presence.ATTENDING),
            "not_attending": sum(1 for c in comments if c.presence == Presence.NOT_ATTENDING),
            "total_likes": sum(c.like_count for c in every_comment),
            "latest_comments": [c.to_dict() for c in _newest_first(comments)[:5]],
            "popular_categories": dict(Counter(g.category for g in guests)),
        }

    # ==================== Backup ====================

    async def export_data(self) -> dict[str, Any]:
        """Return all three documents for backup."""
        return await self._call(self._export_sync)

    def _export_sync(self) -> dict[str, Any]:
        with self._locked(*DOCUMENT_KEYS):
            return {key: self._load(key) for key in DOCUMENT_KEYS}

    async def import_data(self, data: dict[str, Any]) -> None:
        """Replace stored documents with a backup from export_data().

        Totals and stats counters are recomputed from the imported records.
        """
        if not isinstance(data, dict) or not set(data) & set(DOCUMENT_KEYS):
            raise ValidationError("Backup must contain comments, guests or settings")

        try:
            comments = (
                [Comment.from_dict(c) for c in data["comments"].get("comments", [])]
                if "comments" in data else None
            )
            guests = (
                [Guest.from_dict(g) for g in data["guests"].get("guests", [])]
                if "guests" in data else None
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed backup: {e}") from e
        if "settings" in data and not isinstance(data["settings"], dict):
            raise ValidationError("Malformed backup: settings must be an object")

        await self._call(self._import_sync, data, comments, guests)

    def _import_sync(
        self,
        data: dict[str, Any],
        comments: list[Comment] | None,
        guests: list[Guest] | None,
    ) -> None:
        with self._locked(*DOCUMENT_KEYS):
            current: dict[str, dict[str, Any] | None] = {}
            for key in DOCUMENT_KEYS:
                try:
                    current[key] = self.backend.load(key)
                except StorageError as e:
                    # Unreadable documents get replaced
                    logger.warning(f"Replacing unreadable {key} document: {e}")
                    current[key] = None

            base = self._load_for_read("settings")
            settings = {**base, **data.get("settings", {})}
            settings["stats"] = {**base["stats"], **(settings.get("stats") or {})}
            changes = []

            if comments is not None:
                last_id = max(
                    [int(data["comments"].get("lastId", 0))]
                    + [n.id for c in comments for n in c.iter_tree()]
                )
                doc = self._comments_doc(comments, last_id)
                settings["stats"]["totalComments"] = doc["total"]
                changes.append(("comments", doc, current["comments"]))
            if guests is not None:
                last_id = max([int(data["guests"].get("lastId", 0))] + [g.id for g in guests])
                changes.append(("guests", self._guests_doc(guests, last_id), current["guests"]))
                settings["stats"]["totalGuests"] = len(guests)

            changes.append(("settings", settings, current["settings"]))
            self._commit(*changes)

        logger.info("Imported backup")
