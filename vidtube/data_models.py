"""
Data models for the vidtube client.
These models define the structure of data used throughout the app.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class User:
    """The authenticated user's snapshot, persisted next to the tokens."""
    id: str
    username: str
    full_name: str = ""
    email: str = ""
    avatar: str = ""
    cover_image: str = ""

    @property
    def display_name(self) -> str:
        return self.full_name or self.username

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "username": self.username,
            "fullName": self.full_name,
            "email": self.email,
            "avatar": self.avatar,
            "coverImage": self.cover_image,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data.get("_id") or data.get("id") or ""),
            username=data.get("username") or "",
            full_name=data.get("fullName") or data.get("full_name") or "",
            email=data.get("email") or "",
            avatar=data.get("avatar") or "",
            cover_image=data.get("coverImage") or data.get("cover_image") or "",
        )


@dataclass
class Channel:
    """A user as seen by other users: video owners, search hits, subscriptions."""
    id: str
    username: str
    full_name: str = ""
    avatar: str = ""
    subscribers_count: int = 0
    is_subscribed: bool = False


@dataclass
class Video:
    id: str
    title: str
    description: str = ""
    owner: Optional[Channel] = None
    thumbnail: str = ""
    video_file: str = ""
    duration: float = 0.0
    views: int = 0
    likes: int = 0
    is_liked: bool = False
    is_published: bool = True
    category: str = ""
    created_at: Optional[datetime] = None


@dataclass
class Comment:
    id: str
    content: str
    owner: Optional[Channel] = None
    likes: int = 0
    is_liked: bool = False
    created_at: Optional[datetime] = None


@dataclass
class Page(Generic[T]):
    """One page of a listing endpoint, normalized."""
    items: List[T]
    has_next_page: bool = False
    total: Optional[int] = None
    page: int = 1


@dataclass(frozen=True)
class ListFilters:
    """Optional listing parameters shared by every list view."""
    query: str = ""
    category: str = ""
    sort_by: str = ""
    sort_type: str = ""
    filter: str = ""  # time window or result type, e.g. "today", "week", "all"
    extra: Dict[str, Any] = field(default_factory=dict, hash=False)

    def to_params(self) -> Dict[str, Any]:
        params = {
            "query": self.query.strip(),
            "category": self.category,
            "sortBy": self.sort_by,
            "sortType": self.sort_type,
            "filter": self.filter,
            **self.extra,
        }
        return {k: v for k, v in params.items() if v not in (None, "")}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse the backend's ISO timestamps ("...Z" included)."""
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
