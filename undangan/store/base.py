"""Store interface shared by every transport."""

from abc import ABC, abstractmethod
from typing import Any

from ..models import Comment, Guest, Page, Presence


class Store(ABC):
    """Authoritative read/write layer over comments, guests and settings.

    Every operation is awaitable. Mutations are all-or-nothing: they either
    complete and persist or leave the stored state untouched.
    """

    def __init__(self, min_name_length: int = 2, min_body_length: int = 1):
        self.min_name_length = min_name_length
        self.min_body_length = min_body_length

    async def initialize(self) -> None:
        """Prepare backing storage. Safe to call more than once."""

    async def close(self) -> None:
        """Release any held resources."""

    @abstractmethod
    async def check_connection(self) -> bool:
        """Return True if the backing resource is reachable."""

    # ==================== Comments ====================

    @abstractmethod
    async def list_comments(self, page: int = 1, page_size: int = 10) -> Page:
        """Top-level comments, newest first."""

    @abstractmethod
    async def list_comments_by_presence(
        self, presence: Presence | str, page: int = 1, page_size: int = 10
    ) -> Page:
        """Top-level comments with one presence value, newest first."""

    @abstractmethod
    async def search_comments(
        self, query: str, page: int = 1, page_size: int = 10
    ) -> Page:
        """Top-level comments whose name or text contains the query."""

    @abstractmethod
    async def add_comment(
        self,
        author_name: str,
        presence: Presence | str | bool | int,
        body: str,
        gif_url: str | None = None,
        parent_id: int | None = None,
    ) -> Comment:
        """Create a comment, or a reply when parent_id is given."""

    @abstractmethod
    async def like_comment(self, ref: str | int) -> Comment:
        """Add one like to a comment or reply."""

    @abstractmethod
    async def delete_comment(self, ref: str | int) -> Comment:
        """Remove a comment (with its replies) or a single reply."""

    @abstractmethod
    async def update_comment(self, ref: str | int, patch: dict[str, Any]) -> Comment:
        """Patch body, presence and/or gif_url."""

    # ==================== Guests ====================

    @abstractmethod
    async def add_guest(self, name: str, guest_type: str, category: str) -> Guest:
        """Create a guest; slugs are unique."""

    @abstractmethod
    async def list_guests(self, page: int = 1, page_size: int = 10) -> Page:
        """Guests, newest first."""

    @abstractmethod
    async def delete_guest(self, guest_id: int) -> Guest:
        """Remove one guest."""

    @abstractmethod
    async def clear_guests(self) -> int:
        """Remove every guest and return how many were removed."""

    # ==================== Settings & stats ====================

    @abstractmethod
    async def get_settings(self) -> dict[str, Any]:
        """Current settings document."""

    @abstractmethod
    async def update_settings(self, partial: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge partial into settings."""

    @abstractmethod
    async def increment_view_count(self) -> None:
        """Count one page view."""

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        """Aggregate dashboard statistics."""
