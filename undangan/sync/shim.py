"""Offline write queue in front of a Store.

While the store is reachable every call goes straight through. When a call
fails with StorageError the shim goes offline: writes are queued with a
placeholder identity and reads are answered from the last snapshot. Queued
writes are replayed in submission order once connectivity returns.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..errors import OfflineDeferred, StorageError, StoreError, ValidationError
from ..models import (
    Comment,
    Guest,
    Page,
    Presence,
    format_ts,
    invitation_link,
    name_slug,
    parse_ref,
    parse_ts,
    utc_now,
    validate_comment_input,
    validate_comment_patch,
    validate_guest_input,
)
from ..store.backends import read_json, write_json_atomic
from ..store.base import Store

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "offline-"

QUEUEABLE_OPERATIONS = (
    "add_comment",
    "like_comment",
    "delete_comment",
    "update_comment",
    "add_guest",
    "delete_guest",
    "clear_guests",
    "update_settings",
    "increment_view_count",
)


class ConnectionState(Enum):
    """Whether writes go straight to the store."""

    ONLINE = "online"
    OFFLINE = "offline"


class FlushStatus(Enum):
    """Status of a flush."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some writes replayed before a failure
    FAILED = "failed"  # First write rejected by the store
    OFFLINE = "offline"  # Store still unreachable
    SKIPPED = "skipped"  # Another flush was already running


@dataclass
class FlushResult:
    """Result of a flush."""

    status: FlushStatus
    replayed: int = 0
    remaining: int = 0
    error: str | None = None
    timestamp: datetime | None = None


@dataclass
class PendingWrite:
    """A write waiting for the store to come back."""

    id: str
    operation: str
    params: dict[str, Any]
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "params": self.params,
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingWrite":
        return cls(
            id=data["id"],
            operation=data["operation"],
            params=data.get("params") or {},
            created_at=parse_ts(data.get("created_at")),
        )


@dataclass
class WriteOutcome:
    """What a write through the shim produced.

    ``value`` is the store's answer, or a placeholder built locally when the
    write was queued. ``deferred`` is set only in the queued case.
    """

    value: Any = None
    deferred: OfflineDeferred | None = None

    @property
    def queued(self) -> bool:
        return self.deferred is not None


def _placeholder_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}"


def _reject_placeholder(ref: Any) -> None:
    if isinstance(ref, str) and ref.startswith(PLACEHOLDER_PREFIX):
        raise ValidationError(f"{ref} has not been synced yet")


def _page_snapshot(page: Page) -> dict[str, Any]:
    return {
        "items": [item.to_dict() for item in page.items],
        "total": page.total,
        "page": page.page,
        "per_page": page.per_page,
    }


def _page_restorer(parse: Callable[[dict[str, Any]], Any]) -> Callable[[dict[str, Any]], Page]:
    def restore(data: dict[str, Any]) -> Page:
        return Page(
            items=[parse(item) for item in data["items"]],
            total=data["total"],
            page=data["page"],
            per_page=data["per_page"],
        )

    return restore


class SyncShim:
    """Lets callers keep working while the store is unreachable.

    Supports:
    - Proxying reads and writes while ONLINE
    - Queuing writes with placeholder ids while OFFLINE
    - Replaying the queue in order on notify_online() or a periodic probe
    - Persisting queue and read snapshots so they survive a restart
    """

    def __init__(
        self,
        store: Store,
        state_path: str | Path | None = None,
        snapshot_interval_seconds: float = 30,
        probe_interval_seconds: float = 60,
    ):
        """Initialize the shim.

        Args:
            store: The authoritative store.
            state_path: JSON file for queue and snapshots; None keeps them in memory.
            snapshot_interval_seconds: How often to persist state.
            probe_interval_seconds: How often to check connectivity while offline.
        """
        self.store = store
        self.state_path = Path(state_path).expanduser() if state_path else None
        self.snapshot_interval = snapshot_interval_seconds
        self.probe_interval = probe_interval_seconds

        self._state = ConnectionState.ONLINE
        self._queue: list[PendingWrite] = []
        self._snapshots: dict[str, Any] = {}
        self._dirty = False
        self._flush_lock = asyncio.Lock()
        self._last_flush: FlushResult | None = None
        self._last_error: str | None = None
        self._tasks: list[asyncio.Task] = []
        self._running = False

        self._load_state()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending(self) -> list[PendingWrite]:
        return list(self._queue)

    @property
    def last_flush(self) -> FlushResult | None:
        return self._last_flush

    # ==================== Persistence ====================

    def _load_state(self) -> None:
        if self.state_path is None:
            return
        try:
            data = read_json(self.state_path) or {}
            queue = [PendingWrite.from_dict(p) for p in data.get("queue", [])]
            snapshots = data.get("snapshots") or {}
            if not isinstance(snapshots, dict):
                raise TypeError("snapshots must be an object")
        except (OSError, ValueError, KeyError, AttributeError, TypeError) as e:
            logger.error(f"Ignoring unreadable sync state {self.state_path}: {e}")
            return

        self._queue = queue
        self._snapshots = snapshots

        if self._queue:
            self._state = ConnectionState.OFFLINE
            logger.info(f"Restored {len(self._queue)} queued writes from {self.state_path}")

    def save_snapshot(self) -> None:
        """Persist queue and read snapshots."""
        if self.state_path is None:
            self._dirty = False
            return

        data = {
            "state": self._state.value,
            "queue": [p.to_dict() for p in self._queue],
            "snapshots": self._snapshots,
            "saved_at": format_ts(utc_now()),
        }
        try:
            write_json_atomic(self.state_path, data)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Error writing sync state {self.state_path}: {e}") from e
        self._dirty = False
        logger.debug(f"Saved sync state ({len(self._queue)} queued)")

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Initialize the store and start snapshot and probe loops."""
        if self._running:
            return

        try:
            await self.store.initialize()
        except StorageError as e:
            self._go_offline(str(e))

        self._running = True
        self._tasks = [
            asyncio.create_task(self._snapshot_loop()),
            asyncio.create_task(self._probe_loop()),
        ]
        logger.info(
            f"Sync shim started (state={self._state.value}, "
            f"queued={len(self._queue)}, snapshot every {self.snapshot_interval}s)"
        )

    async def close(self) -> None:
        """Stop background loops and persist state."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        await asyncio.to_thread(self.save_snapshot)
        logger.info("Sync shim stopped")

    async def _snapshot_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.snapshot_interval)
            if not self._dirty:
                continue
            try:
                await asyncio.to_thread(self.save_snapshot)
            except StorageError as e:
                logger.error(f"Snapshot failed: {e}")

    async def _probe_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.probe_interval)
            if self._state == ConnectionState.ONLINE and not self._queue:
                continue
            try:
                if await self.store.check_connection():
                    await self.notify_online()
            except Exception as e:
                logger.error(f"Connectivity probe failed: {e}", exc_info=True)

    # ==================== State ====================

    def _go_offline(self, reason: str) -> None:
        self._last_error = reason
        if self._state == ConnectionState.ONLINE:
            logger.warning(f"Store unreachable, working offline: {reason}")
        self._state = ConnectionState.OFFLINE

    async def notify_online(self) -> FlushResult:
        """Connectivity is back: replay queued writes."""
        logger.info("Connectivity restored, flushing queued writes")
        return await self.flush_queue()

    async def flush_queue(self) -> FlushResult:
        """Replay queued writes in submission order.

        Stops at the first failure, leaving that write and everything after
        it queued. Only a complete flush returns the shim to ONLINE.
        """
        if self._flush_lock.locked():
            logger.debug("Flush already running, skipping")
            return FlushResult(
                status=FlushStatus.SKIPPED,
                remaining=len(self._queue),
                timestamp=utc_now(),
            )

        async with self._flush_lock:
            result = await self._flush()

        self._last_flush = result
        logger.info(
            f"Flush: {result.status.value}, replayed={result.replayed}, "
            f"remaining={result.remaining}"
        )
        return result

    async def _flush(self) -> FlushResult:
        replayed = 0
        while self._queue:
            pending = self._queue[0]
            try:
                await self._apply(pending)
            except StorageError as e:
                self._go_offline(str(e))
                return FlushResult(
                    status=FlushStatus.PARTIAL if replayed else FlushStatus.OFFLINE,
                    replayed=replayed,
                    remaining=len(self._queue),
                    error=str(e),
                    timestamp=utc_now(),
                )
            except StoreError as e:
                logger.error(f"Store rejected queued {pending.operation} {pending.id}: {e}")
                self._last_error = str(e)
                self._state = ConnectionState.OFFLINE
                return FlushResult(
                    status=FlushStatus.PARTIAL if replayed else FlushStatus.FAILED,
                    replayed=replayed,
                    remaining=len(self._queue),
                    error=str(e),
                    timestamp=utc_now(),
                )

            self._queue.pop(0)
            self._dirty = True
            replayed += 1
            logger.debug(f"Replayed {pending.operation} {pending.id}")

        self._state = ConnectionState.ONLINE
        self._last_error = None
        return FlushResult(
            status=FlushStatus.SUCCESS,
            replayed=replayed,
            remaining=0,
            timestamp=utc_now(),
        )

    async def _apply(self, pending: PendingWrite) -> Any:
        if pending.operation not in QUEUEABLE_OPERATIONS:
            raise ValidationError(f"Unknown queued operation: {pending.operation}")
        method = getattr(self.store, pending.operation)
        return await method(**pending.params)

    def discard(self, pending_id: str) -> PendingWrite:
        """Drop one queued write, e.g. one the store keeps rejecting."""
        for index, pending in enumerate(self._queue):
            if pending.id == pending_id:
                self._dirty = True
                return self._queue.pop(index)
        raise ValidationError(f"No queued write {pending_id}")

    def status(self) -> dict[str, Any]:
        last = self._last_flush
        return {
            "state": self._state.value,
            "pending_writes": len(self._queue),
            "flushing": self._flush_lock.locked(),
            "last_error": self._last_error,
            "last_flush": (
                {
                    "status": last.status.value,
                    "replayed": last.replayed,
                    "remaining": last.remaining,
                    "timestamp": format_ts(last.timestamp) if last.timestamp else None,
                }
                if last
                else None
            ),
        }

    # ==================== Core proxying ====================

    async def _write(
        self,
        operation: str,
        params: dict[str, Any],
        call: Callable[[], Awaitable[Any]],
        placeholder: Callable[[str], Any] | None = None,
    ) -> WriteOutcome:
        # Anything submitted while writes are queued must queue behind them
        if self._state == ConnectionState.ONLINE and not self._queue:
            try:
                return WriteOutcome(value=await call())
            except StorageError as e:
                self._go_offline(str(e))

        pending = PendingWrite(id=_placeholder_id(), operation=operation, params=params)
        self._queue.append(pending)
        self._dirty = True
        logger.info(f"Queued {operation} as {pending.id} ({len(self._queue)} pending)")

        return WriteOutcome(
            value=placeholder(pending.id) if placeholder else None,
            deferred=OfflineDeferred(pending, self._last_error or "offline"),
        )

    async def _read(
        self,
        key: str,
        call: Callable[[], Awaitable[Any]],
        dump: Callable[[Any], Any],
        restore: Callable[[Any], Any],
        default: Callable[[], Any],
    ) -> Any:
        if self._state == ConnectionState.ONLINE:
            try:
                value = await call()
            except StorageError as e:
                self._go_offline(str(e))
            else:
                self._snapshots[key] = dump(value)
                self._dirty = True
                return value

        cached = self._snapshots.get(key)
        if cached is None:
            return default()
        return restore(cached)

    # ==================== Reads ====================

    async def list_comments(self, page: int = 1, page_size: int = 10) -> Page:
        return await self._read(
            f"comments:{page}:{page_size}",
            lambda: self.store.list_comments(page, page_size),
            _page_snapshot,
            _page_restorer(Comment.from_dict),
            lambda: Page.empty(page, page_size),
        )

    async def list_comments_by_presence(
        self, presence: Presence | str, page: int = 1, page_size: int = 10
    ) -> Page:
        presence = Presence.parse(presence)
        return await self._read(
            f"comments:presence:{presence.value}:{page}:{page_size}",
            lambda: self.store.list_comments_by_presence(presence, page, page_size),
            _page_snapshot,
            _page_restorer(Comment.from_dict),
            lambda: Page.empty(page, page_size),
        )

    async def list_guests(self, page: int = 1, page_size: int = 10) -> Page:
        return await self._read(
            f"guests:{page}:{page_size}",
            lambda: self.store.list_guests(page, page_size),
            _page_snapshot,
            _page_restorer(Guest.from_dict),
            lambda: Page.empty(page, page_size),
        )

    async def get_settings(self) -> dict[str, Any]:
        return await self._read(
            "settings", self.store.get_settings, dict, dict, dict
        )

    async def get_stats(self) -> dict[str, Any]:
        return await self._read("stats", self.store.get_stats, dict, dict, dict)

    # ==================== Writes ====================

    async def add_comment(
        self,
        author_name: str,
        presence: Presence | str | bool | int,
        body: str,
        gif_url: str | None = None,
        parent_id: int | None = None,
    ) -> WriteOutcome:
        author_name, body, presence = validate_comment_input(
            author_name,
            body,
            presence,
            self.store.min_name_length,
            self.store.min_body_length,
        )

        def placeholder(pending_id: str) -> Comment:
            now = utc_now()
            return Comment(
                id=0,
                uuid=pending_id,
                author_name=author_name,
                author_slug=name_slug(author_name),
                presence=presence,
                body=body,
                created_at=now,
                updated_at=now,
                gif_url=gif_url or None,
                parent_id=parent_id,
            )

        return await self._write(
            "add_comment",
            {
                "author_name": author_name,
                "presence": presence.value,
                "body": body,
                "gif_url": gif_url,
                "parent_id": parent_id,
            },
            lambda: self.store.add_comment(author_name, presence, body, gif_url, parent_id),
            placeholder,
        )

    async def like_comment(self, ref: str | int) -> WriteOutcome:
        ref = parse_ref(ref)
        _reject_placeholder(ref)
        return await self._write(
            "like_comment", {"ref": ref}, lambda: self.store.like_comment(ref)
        )

    async def delete_comment(self, ref: str | int) -> WriteOutcome:
        ref = parse_ref(ref)
        _reject_placeholder(ref)
        return await self._write(
            "delete_comment", {"ref": ref}, lambda: self.store.delete_comment(ref)
        )

    async def update_comment(self, ref: str | int, patch: dict[str, Any]) -> WriteOutcome:
        ref = parse_ref(ref)
        _reject_placeholder(ref)
        changes = validate_comment_patch(patch, self.store.min_body_length)
        params_patch = {
            k: (v.value if isinstance(v, Presence) else v) for k, v in changes.items()
        }
        return await self._write(
            "update_comment",
            {"ref": ref, "patch": params_patch},
            lambda: self.store.update_comment(ref, params_patch),
        )

    async def add_guest(self, name: str, guest_type: str, category: str) -> WriteOutcome:
        name, guest_type, category, slug = validate_guest_input(name, guest_type, category)

        def placeholder(pending_id: str) -> Guest:
            return Guest(
                id=0,
                name=name,
                type=guest_type,
                category=category,
                slug=slug,
                invitation_link=invitation_link(f"{guest_type} {name}".strip()),
                created_at=utc_now(),
            )

        return await self._write(
            "add_guest",
            {"name": name, "guest_type": guest_type, "category": category},
            lambda: self.store.add_guest(name, guest_type, category),
            placeholder,
        )

    async def delete_guest(self, guest_id: int) -> WriteOutcome:
        if isinstance(guest_id, bool) or not isinstance(guest_id, int) or guest_id < 1:
            raise ValidationError(f"Invalid guest id: {guest_id!r}")
        return await self._write(
            "delete_guest", {"guest_id": guest_id}, lambda: self.store.delete_guest(guest_id)
        )

    async def clear_guests(self) -> WriteOutcome:
        return await self._write("clear_guests", {}, self.store.clear_guests)

    async def update_settings(self, partial: dict[str, Any]) -> WriteOutcome:
        if not isinstance(partial, dict):
            raise ValidationError("Settings update must be an object")
        return await self._write(
            "update_settings",
            {"partial": partial},
            lambda: self.store.update_settings(partial),
        )

    async def increment_view_count(self) -> WriteOutcome:
        return await self._write(
            "increment_view_count", {}, self.store.increment_view_count
        )
