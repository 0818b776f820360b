"""Domain records for comments, guests and settings.

Records serialize to the same field names the JSON data files have always
used (``name``, ``own``, ``comment``, ``comments`` ...) so existing
``comments.json`` and ``guests.json`` files load unchanged.
"""

import copy
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Sequence
from urllib.parse import quote

from .errors import ValidationError

# encodeURIComponent leaves these unescaped
_URI_COMPONENT_SAFE = "!~*'()"

_COMMENT_NAMESPACE = uuid.UUID("6ba7b811-9dad-11d1-80b4-00c04fd430c8")


class Presence(Enum):
    """Attendance answer given with a comment."""

    ATTENDING = "attending"
    NOT_ATTENDING = "not_attending"

    @classmethod
    def parse(cls, value: Any) -> "Presence":
        """Parse a presence value, accepting the legacy encodings.

        Older clients sent booleans, ``1``/``2`` or their string forms.
        ``0`` meant "not answered" and is rejected.
        """
        if isinstance(value, Presence):
            return value
        if isinstance(value, bool):
            return cls.ATTENDING if value else cls.NOT_ATTENDING
        if isinstance(value, int):
            if value == 1:
                return cls.ATTENDING
            if value == 2:
                return cls.NOT_ATTENDING
        if isinstance(value, str):
            key = value.strip().lower()
            if key in ("attending", "1", "true", "yes", "hadir"):
                return cls.ATTENDING
            if key in ("not_attending", "2", "false", "no", "berhalangan"):
                return cls.NOT_ATTENDING
        raise ValidationError(f"Invalid presence: {value!r}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def parse_ts(value: str | None) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return datetime.fromtimestamp(0, timezone.utc)
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def slugify(name: str) -> str:
    """URL-safe slug used as the guest uniqueness key."""
    slug = name.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def name_slug(name: str) -> str:
    """Loose author handle for comments. Not unique."""
    return re.sub(r"\s+", "-", name.strip().lower())


def invitation_link(full_name: str, base: str = "index.html") -> str:
    return f"{base}?to={quote(full_name, safe=_URI_COMPONENT_SAFE)}"


def parse_ref(ref: str | int) -> str | int:
    """Normalize a comment reference: digit strings become legacy int ids."""
    if isinstance(ref, bool):
        raise ValidationError(f"Invalid comment reference: {ref!r}")
    if isinstance(ref, int):
        return ref
    ref = str(ref).strip()
    if not ref:
        raise ValidationError("Comment reference is required")
    return int(ref) if ref.isascii() and ref.isdigit() else ref


@dataclass
class Comment:
    """A guestbook comment. Replies nest one level below their parent."""

    id: int
    uuid: str
    author_name: str
    author_slug: str
    presence: Presence
    body: str
    created_at: datetime
    updated_at: datetime
    gif_url: str | None = None
    like_count: int = 0
    is_admin: bool = False
    parent_id: int | None = None
    replies: list["Comment"] = field(default_factory=list)

    @property
    def is_parent(self) -> bool:
        return self.parent_id is None

    def matches(self, ref: str | int) -> bool:
        if isinstance(ref, int):
            return self.id == ref
        return self.uuid == ref

    def iter_tree(self) -> Iterator["Comment"]:
        """Yield this comment followed by its replies."""
        yield self
        yield from self.replies

    def to_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.uuid,
            "id": self.id,
            "own": self.author_slug,
            "name": self.author_name,
            "presence": self.presence.value,
            "comment": self.body,
            "gif_url": self.gif_url,
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
            "is_admin": self.is_admin,
            "is_parent": self.is_parent,
            "parent_id": self.parent_id,
            "comments": [r.to_dict() for r in self.replies],
            "like_count": self.like_count,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], parent_id: int | None = None
    ) -> "Comment":
        """Build from the persisted form, tolerating older field names."""
        comment_id = int(data["id"])
        created = parse_ts(data.get("created_at") or data.get("timestamp"))
        name = data.get("name", "")

        if parent_id is None:
            parent_id = data.get("parent_id")

        return cls(
            id=comment_id,
            # Records from the first data format had no uuid
            uuid=data.get("uuid")
            or str(uuid.uuid5(_COMMENT_NAMESPACE, f"comment:{comment_id}")),
            author_name=name,
            author_slug=data.get("own") or name_slug(name),
            presence=Presence.parse(data.get("presence", True)),
            body=data.get("comment", ""),
            created_at=created,
            updated_at=parse_ts(data["updated_at"]) if data.get("updated_at") else created,
            gif_url=data.get("gif_url") or data.get("gif"),
            like_count=int(data.get("like_count", data.get("likes", 0)) or 0),
            is_admin=bool(data.get("is_admin", False)),
            parent_id=parent_id,
            replies=[
                cls.from_dict(r, parent_id=comment_id)
                for r in data.get("comments") or []
            ],
        )


@dataclass
class Guest:
    """An invited guest with a personal invitation link."""

    id: int
    name: str
    type: str
    category: str
    slug: str
    invitation_link: str
    created_at: datetime
    views: int = 0
    comment_count: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.type} {self.name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "category": self.category,
            "full_name": self.full_name,
            "slug": self.slug,
            "invitation_link": self.invitation_link,
            "views": self.views,
            "comment_count": self.comment_count,
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Guest":
        full_name = f"{data.get('type', '')} {data['name']}".strip()
        return cls(
            id=int(data["id"]),
            name=data["name"],
            type=data.get("type", ""),
            category=data.get("category", ""),
            slug=data.get("slug") or slugify(data["name"]),
            invitation_link=data.get("invitation_link") or invitation_link(full_name),
            created_at=parse_ts(data.get("created_at")),
            views=int(data.get("views", 0)),
            comment_count=int(data.get("comment_count", 0)),
        )


@dataclass
class Page:
    """One page of a listing."""

    items: list[Any]
    total: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.per_page)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    def pagination(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "per_page": self.per_page,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            **self.pagination(),
        }

    @classmethod
    def empty(cls, page: int = 1, per_page: int = 10) -> "Page":
        return cls(items=[], total=0, page=page, per_page=per_page)


def validate_page(page: Any, page_size: Any) -> tuple[int, int]:
    for label, value in (("page", page), ("page_size", page_size)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValidationError(f"{label} must be a positive integer, got {value!r}")
    return page, page_size


def paginate(items: Sequence[Any], page: int, page_size: int) -> Page:
    """Slice an already ordered sequence into a Page."""
    page, page_size = validate_page(page, page_size)
    start = (page - 1) * page_size
    return Page(
        items=list(items[start:start + page_size]),
        total=len(items),
        page=page,
        per_page=page_size,
    )


def validate_comment_input(
    author_name: Any,
    body: Any,
    presence: Any,
    min_name_length: int = 2,
    min_body_length: int = 1,
) -> tuple[str, str, Presence]:
    """Check new-comment fields and return them trimmed and parsed."""
    if not isinstance(author_name, str) or len(author_name.strip()) < min_name_length:
        raise ValidationError(
            f"Name must be at least {min_name_length} characters"
        )
    if not isinstance(body, str) or not body.strip():
        raise ValidationError("Comment is required")
    if len(body.strip()) < min_body_length:
        raise ValidationError(
            f"Comment must be at least {min_body_length} characters"
        )
    if presence is None:
        raise ValidationError("Presence is required")
    return author_name.strip(), body.strip(), Presence.parse(presence)


PATCHABLE_FIELDS = ("body", "presence", "gif_url")


def validate_comment_patch(patch: Any, min_body_length: int = 1) -> dict[str, Any]:
    """Check a comment patch and return the parsed changes."""
    if not isinstance(patch, dict):
        raise ValidationError("Patch must be an object")
    unknown = set(patch) - set(PATCHABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    changes: dict[str, Any] = {}
    if "body" in patch:
        body = patch["body"]
        if not isinstance(body, str) or len(body.strip()) < max(min_body_length, 1):
            raise ValidationError("Comment is required")
        changes["body"] = body.strip()
    if "presence" in patch:
        changes["presence"] = Presence.parse(patch["presence"])
    if "gif_url" in patch:
        changes["gif_url"] = patch["gif_url"] or None
    return changes


def validate_guest_input(
    name: Any, guest_type: Any, category: Any
) -> tuple[str, str, str, str]:
    """Check new-guest fields; returns (name, type, category, slug)."""
    fields = {"name": name, "type": guest_type, "category": category}
    missing = [k for k, v in fields.items() if not isinstance(v, str) or not v.strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    name = name.strip()
    slug = slugify(name)
    if not slug:
        raise ValidationError(f"Name {name!r} has no usable characters")
    return name, guest_type.strip(), category.strip(), slug


# ==================== Document defaults ====================

DEFAULT_SETTINGS: dict[str, Any] = {
    "event": {
        "title": "Undangan Pernikahan",
        "childName": "Mempelai",
        "fatherName": "Bapak",
        "motherName": "Ibu",
        "date": "",
        "time": "08:00:00",
        "location": "Alamat Acara",
        "mapUrl": "#",
    },
    "contact": {
        "phone": "08123456789",
        "bankName": "Bank",
        "bankAccount": "1234567890",
        "bankHolder": "Nama Pemilik",
    },
    "stats": {
        "totalViews": 0,
        "totalComments": 0,
        "totalGuests": 0,
    },
}


def empty_comments_doc() -> dict[str, Any]:
    return {"comments": [], "total": 0, "lastId": 0}


def empty_guests_doc() -> dict[str, Any]:
    return {"guests": [], "total": 0, "lastId": 0}


def default_settings() -> dict[str, Any]:
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    settings["event"]["date"] = utc_now().date().isoformat()
    return settings
