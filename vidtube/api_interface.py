import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .collection import PaginatedCollection
from .data_models import (
    Channel,
    Comment,
    ListFilters,
    Page,
    User,
    Video,
    parse_timestamp,
)
from .errors import ApiError, ValidationError
from .session import SessionManager
from .transport import ApiRequest

logger = logging.getLogger("vidtube.api")

MIN_TITLE_LENGTH = 3


class VideoTubeAPI:
    """Client for the VideoTube REST backend.

    Every call goes through the injected ``SessionManager`` so credentials,
    refresh and retry are handled in one place. List endpoints come in two
    flavours: ``*_page`` fetches one page, and the matching factory returns a
    ``PaginatedCollection`` a view can drive.
    """

    def __init__(self, session: SessionManager, page_size: int = 12):
        self.session = session
        self.page_size = page_size

    # --- helpers ---
    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.session.issue(ApiRequest("GET", path, params=params or {}))

    async def _post(self, path: str, json_payload: Any = None) -> Any:
        return await self.session.issue(ApiRequest("POST", path, json=json_payload))

    async def _patch(self, path: str, json_payload: Any = None) -> Any:
        return await self.session.issue(ApiRequest("PATCH", path, json=json_payload))

    async def _delete(self, path: str) -> Any:
        return await self.session.issue(ApiRequest("DELETE", path))

    async def _page(
        self,
        path: str,
        page: int,
        limit: int,
        filters: Optional[ListFilters],
        convert: Callable[[Dict[str, Any]], Any],
        items_key: str = "videos",
    ) -> Page:
        params = {"page": page, "limit": limit}
        if filters is not None:
            params.update(filters.to_params())
        data = await self._get(path, params)
        return _convert_page(data, convert, items_key, page)

    def _collection(self, fetch, name: str, filters: Optional[ListFilters] = None) -> PaginatedCollection:
        return PaginatedCollection(fetch, page_size=self.page_size, filters=filters, name=name)

    # --- videos ---
    async def videos_page(self, page: int = 1, limit: int = 12, filters: Optional[ListFilters] = None) -> Page[Video]:
        return await self._page("/videos", page, limit, filters, _convert_video)

    def videos(self, filters: Optional[ListFilters] = None) -> PaginatedCollection[Video]:
        return self._collection(self.videos_page, "videos", filters)

    async def trending_page(self, page: int = 1, limit: int = 12, filters: Optional[ListFilters] = None) -> Page[Video]:
        return await self._page("/videos/trending", page, limit, filters, _convert_video)

    def trending(self, filters: Optional[ListFilters] = None) -> PaginatedCollection[Video]:
        return self._collection(self.trending_page, "trending", filters)

    def user_videos(self, user_id: str, filters: Optional[ListFilters] = None) -> PaginatedCollection[Video]:
        async def fetch(page: int, limit: int, f: ListFilters) -> Page[Video]:
            return await self._page(f"/videos/user/{user_id}", page, limit, f, _convert_video)

        return self._collection(fetch, f"user-videos:{user_id}", filters)

    async def get_video(self, video_id: str) -> Video:
        return _convert_video(await self._get(f"/videos/{video_id}"))

    async def get_categories(self) -> List[str]:
        data = await self._get("/videos/categories") or []
        return [c if isinstance(c, str) else c.get("name", "") for c in data]

    async def upload_video(
        self,
        video_file: Path,
        title: str,
        description: str = "",
        thumbnail: Optional[Path] = None,
        category: str = "",
    ) -> Video:
        """Upload a video (multipart). Validated locally before anything is sent."""
        title = (title or "").strip()
        if len(title) < MIN_TITLE_LENGTH:
            raise ValidationError(f"Title must be at least {MIN_TITLE_LENGTH} characters long")
        video_file = Path(video_file)
        if not video_file.is_file():
            raise ValidationError("Video file is required")

        files = {"videoFile": video_file}
        if thumbnail is not None:
            files["thumbnail"] = Path(thumbnail)
        form = {"title": title, "description": description}
        if category:
            form["category"] = category
        logger.info("uploading %s (%d bytes)", video_file.name, video_file.stat().st_size)
        data = await self.session.issue(ApiRequest("POST", "/videos", data=form, files=files))
        return _convert_video(data)

    async def update_video(self, video_id: str, **fields: Any) -> Video:
        payload = {k: v for k, v in fields.items() if v is not None}
        return _convert_video(await self._patch(f"/videos/{video_id}", payload))

    async def delete_video(self, video_id: str) -> None:
        await self._delete(f"/videos/{video_id}")

    async def toggle_publish_status(self, video_id: str) -> bool:
        data = await self._patch(f"/videos/toggle/publish/{video_id}") or {}
        return bool(data.get("isPublished"))

    async def get_video_stats(self, video_id: str) -> Dict[str, Any]:
        return await self._get(f"/videos/stats/{video_id}") or {}

    async def get_upload_status(self, video_id: str) -> Dict[str, Any]:
        return await self._get(f"/videos/status/{video_id}") or {}

    # --- search ---
    def search_videos(self, query: str, sort_by: str = "relevance", filter: str = "all") -> PaginatedCollection[Video]:
        filters = ListFilters(query=query, sort_by=sort_by, filter=filter)

        async def fetch(page: int, limit: int, f: ListFilters) -> Page[Video]:
            _require_query(f.query)
            return await self._page("/search/videos", page, limit, f, _convert_video, items_key="videos")

        return self._collection(fetch, "search-videos", filters)

    def search_users(self, query: str) -> PaginatedCollection[Channel]:
        async def fetch(page: int, limit: int, f: ListFilters) -> Page[Channel]:
            _require_query(f.query)
            return await self._page("/search/users", page, limit, f, _convert_channel, items_key="users")

        return self._collection(fetch, "search-users", ListFilters(query=query))

    async def get_search_suggestions(self, query: str, limit: int = 5) -> List[str]:
        """Suggestions are a nicety: any failure yields an empty list."""
        if not query or not query.strip():
            return []
        try:
            data = await self._get("/search/suggestions", {"query": query.strip(), "limit": limit})
        except ApiError as e:
            logger.debug("search suggestions failed: %s", e)
            return []
        suggestions = (data or {}).get("suggestions", []) if isinstance(data, dict) else data or []
        return [s if isinstance(s, str) else s.get("text", "") for s in suggestions]

    async def get_search_status(self) -> Dict[str, Any]:
        return await self._get("/search/status") or {}

    # --- comments ---
    def comments(self, video_id: str) -> PaginatedCollection[Comment]:
        async def fetch(page: int, limit: int, f: ListFilters) -> Page[Comment]:
            return await self._page(f"/comments/{video_id}", page, limit, f, _convert_comment, items_key="comments")

        collection = self._collection(fetch, f"comments:{video_id}")
        collection.page_size = 10
        return collection

    async def add_comment(self, video_id: str, content: str) -> Comment:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment cannot be empty")
        return _convert_comment(await self._post(f"/comments/{video_id}", {"content": content}))

    async def update_comment(self, comment_id: str, content: str) -> Comment:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment cannot be empty")
        return _convert_comment(await self._patch(f"/comments/c/{comment_id}", {"content": content}))

    async def delete_comment(self, comment_id: str) -> None:
        await self._delete(f"/comments/c/{comment_id}")

    # --- likes ---
    async def toggle_video_like(self, video_id: str) -> Optional[bool]:
        """Returns the new liked state when the backend reports it."""
        return _liked_state(await self._post(f"/likes/toggle/v/{video_id}"))

    async def toggle_comment_like(self, comment_id: str) -> Optional[bool]:
        return _liked_state(await self._post(f"/likes/toggle/c/{comment_id}"))

    # --- subscriptions ---
    async def toggle_subscription(self, channel_id: str) -> Tuple[bool, Optional[int]]:
        data = await self._post(f"/subscriptions/c/{channel_id}") or {}
        count = data.get("subscriberCount")
        return bool(data.get("isSubscribed")), int(count) if count is not None else None

    async def check_subscription(self, channel_id: str) -> bool:
        data = await self._get(f"/subscriptions/check/{channel_id}") or {}
        return bool(data.get("isSubscribed"))

    def channel_subscribers(self, channel_id: str) -> PaginatedCollection[Channel]:
        async def fetch(page: int, limit: int, f: ListFilters) -> Page[Channel]:
            return await self._page(
                f"/subscriptions/u/{channel_id}", page, limit, f, _convert_channel, items_key="subscribers"
            )

        return self._collection(fetch, f"subscribers:{channel_id}")

    def subscriptions(self, user_id: str) -> PaginatedCollection[Channel]:
        async def fetch(page: int, limit: int, f: ListFilters) -> Page[Channel]:
            return await self._page(
                f"/subscriptions/subscribed/{user_id}", page, limit, f, _convert_channel, items_key="channels"
            )

        return self._collection(fetch, f"subscriptions:{user_id}")

    # --- library ---
    async def watch_later_page(self, page: int = 1, limit: int = 12, filters: Optional[ListFilters] = None) -> Page[Video]:
        return await self._page("/library/watchlater", page, limit, filters, _convert_video)

    def watch_later(self) -> PaginatedCollection[Video]:
        return self._collection(self.watch_later_page, "watch-later")

    async def add_to_watch_later(self, video_id: str) -> None:
        await self._post("/library/watchlater", {"videoId": video_id})

    async def remove_from_watch_later(self, video_id: str) -> None:
        await self._delete(f"/library/watchlater/{video_id}")

    async def history_page(self, page: int = 1, limit: int = 12, filters: Optional[ListFilters] = None) -> Page[Video]:
        return await self._page("/library/history", page, limit, filters, _convert_video)

    def watch_history(self) -> PaginatedCollection[Video]:
        return self._collection(self.history_page, "history")

    async def add_to_history(self, video_id: str, watch_duration: float = 0, completed: bool = False) -> bool:
        """Record a view. History is not critical: failures are logged, not raised."""
        payload = {"videoId": video_id, "watchDuration": watch_duration, "completed": completed}
        try:
            await self._post("/library/history", payload)
        except ApiError as e:
            logger.warning("could not record %s in history: %s", video_id, e)
            return False
        return True

    async def remove_from_history(self, video_id: str) -> None:
        await self._delete(f"/library/history/{video_id}")

    async def clear_history(self) -> None:
        await self._delete("/library/history")

    async def liked_page(self, page: int = 1, limit: int = 12, filters: Optional[ListFilters] = None) -> Page[Video]:
        return await self._page("/library/liked", page, limit, filters, _convert_video)

    def liked_videos(self) -> PaginatedCollection[Video]:
        return self._collection(self.liked_page, "liked")

    async def get_library_status(self) -> Dict[str, Any]:
        return await self._get("/library/status") or {}

    # --- users ---
    async def get_channel(self, username: str) -> Channel:
        return _convert_channel(await self._get(f"/users/username/{username}"))

    async def update_account(self, full_name: Optional[str] = None, email: Optional[str] = None) -> User:
        payload = {k: v for k, v in {"fullName": full_name, "email": email}.items() if v}
        user = User.from_payload(await self._patch("/users/update-account", payload) or {})
        self.session.update_user(user)
        return user

    async def change_password(self, old_password: str, new_password: str) -> None:
        await self._patch("/users/password", {"oldPassword": old_password, "newPassword": new_password})


# --- conversion helpers ---
def _require_query(query: str) -> None:
    if not query or not query.strip():
        raise ValidationError("Search query is required")


def _convert_page(data: Any, convert: Callable[[Dict[str, Any]], Any], items_key: str, page: int) -> Page:
    """Normalize the backend's list shapes into a ``Page``."""
    if isinstance(data, list):
        return Page(items=[convert(d) for d in data], has_next_page=False, total=len(data), page=page)
    data = data or {}
    pagination = data.get("pagination") or {}
    raw_items = data.get("docs")
    if raw_items is None:
        raw_items = data.get(items_key)
    if raw_items is None:
        raw_items = data.get("items") or []

    has_next = data.get("hasNextPage")
    if has_next is None:
        has_next = pagination.get("hasNextPage", False)
    total = data.get("totalDocs")
    if total is None:
        total = pagination.get("totalCount", pagination.get("totalDocs", pagination.get("total")))

    return Page(
        items=[convert(d) for d in raw_items],
        has_next_page=bool(has_next),
        total=int(total) if total is not None else None,
        page=page,
    )


def _convert_channel(c: Dict[str, Any]) -> Channel:
    c = c or {}
    return Channel(
        id=str(c.get("_id") or c.get("id") or ""),
        username=c.get("username") or "",
        full_name=c.get("fullName") or "",
        avatar=c.get("avatar") or "",
        subscribers_count=int(c.get("subscribersCount") or c.get("subscriberCount") or 0),
        is_subscribed=bool(c.get("isSubscribed") or False),
    )


def _convert_video(v: Dict[str, Any]) -> Video:
    # history and watch-later entries wrap the video
    if isinstance(v.get("video"), dict):
        v = v["video"]
    owner = v.get("owner") or v.get("ownerDetails")
    thumbnail = v.get("thumbnail")
    if isinstance(thumbnail, dict):
        thumbnail = thumbnail.get("url")
    video_file = v.get("videoFile")
    if isinstance(video_file, dict):
        video_file = video_file.get("url")
    return Video(
        id=str(v.get("_id") or v.get("id") or ""),
        title=v.get("title") or "",
        description=v.get("description") or "",
        owner=_convert_channel(owner) if isinstance(owner, dict) else None,
        thumbnail=thumbnail or "",
        video_file=video_file or "",
        duration=float(v.get("duration") or 0),
        views=int(v.get("views") or 0),
        likes=int(v.get("likesCount") or v.get("likes") or 0),
        is_liked=bool(v.get("isLiked") or False),
        is_published=bool(v.get("isPublished", True)),
        category=v.get("category") or "",
        created_at=parse_timestamp(v.get("createdAt")),
    )


def _convert_comment(c: Dict[str, Any]) -> Comment:
    owner = c.get("owner") or c.get("ownerDetails")
    return Comment(
        id=str(c.get("_id") or c.get("id") or ""),
        content=c.get("content") or "",
        owner=_convert_channel(owner) if isinstance(owner, dict) else None,
        likes=int(c.get("likesCount") or c.get("likes") or 0),
        is_liked=bool(c.get("isLiked") or False),
        created_at=parse_timestamp(c.get("createdAt")),
    )


def _liked_state(data: Any) -> Optional[bool]:
    if isinstance(data, dict) and "isLiked" in data:
        return bool(data["isLiked"])
    return None
