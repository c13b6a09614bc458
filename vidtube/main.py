import logging
from dataclasses import replace
from typing import Awaitable, Callable, List, Optional

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical, VerticalScroll
from textual.reactive import reactive
from textual.screen import Screen
from textual.widget import Widget
from textual.widgets import Button, Input, Label, Static

from .api_interface import VideoTubeAPI
from .auth_storage import KeyringTokenStore
from .collection import PaginatedCollection
from .config import ClientConfig, configure_logging
from .data_models import Comment, ListFilters, User, Video
from .errors import (
    ApiError,
    AuthStorageError,
    ConflictError,
    SessionTerminatedError,
    ValidationError,
    user_message,
)
from .formatting import format_duration, format_time_ago, format_views
from .session import SessionManager
from .transport import RequestsTransport

logger = logging.getLogger("vidtube.ui")

FEED_FOOTER = (
    "[1-6] Feeds [/] Search [j/k] Navigate [Enter] Open [l] Like [w] Watch later "
    "[r] Reload [L] Logout [q] Quit"
)
LIBRARY_FOOTER = FEED_FOOTER.replace("[r] Reload", "[x] Remove [r] Reload")


def _flip_like(item):
    """Optimistic like toggle for videos and comments."""
    return replace(item, is_liked=not item.is_liked, likes=max(0, item.likes + (-1 if item.is_liked else 1)))


# ───────── Items ─────────


class PlainItem(Static):
    def __init__(self, item, **kwargs):
        super().__init__(**kwargs)
        self.item = item

    def render(self) -> Text:
        return Text(str(getattr(self.item, "title", None) or self.item))


class VideoItem(Static):
    def __init__(self, video: Video, **kwargs):
        super().__init__(**kwargs)
        self.video = video

    def on_click(self) -> None:
        self.app.push_screen(VideoScreen(self.video))

    def render(self) -> Text:
        v = self.video
        text = Text()
        text.append(v.title or "(untitled)", style="bold")
        if not v.is_published:
            text.append("  [draft]", style="yellow")
        text.append("\n")
        owner = f"@{v.owner.username}" if v.owner else "unknown"
        meta = [owner, f"{format_views(v.views)} views"]
        if v.created_at:
            meta.append(format_time_ago(v.created_at))
        if v.duration:
            meta.append(format_duration(v.duration))
        text.append(" • ".join(meta), style="dim")
        text.append("\n")
        text.append("♥ " if v.is_liked else "♡ ", style="red" if v.is_liked else "")
        text.append(str(v.likes))
        return text


class CommentItem(Static):
    def __init__(self, comment: Comment, **kwargs):
        super().__init__(**kwargs)
        self.comment = comment

    def render(self) -> Text:
        c = self.comment
        text = Text()
        author = f"@{c.owner.username}" if c.owner else "unknown"
        text.append(author, style="bold")
        if c.created_at:
            text.append(f" • {format_time_ago(c.created_at)}", style="dim")
        text.append(f"\n{c.content}\n")
        text.append("♥ " if c.is_liked else "♡ ", style="red" if c.is_liked else "")
        text.append(str(c.likes))
        return text


# ───────── Collection views ─────────


class CollectionView(VerticalScroll):
    """A scrollable list bound to one PaginatedCollection.

    Loads page 1 on mount, loads the next page when the cursor or the scroll
    position reaches the bottom, and closes the collection on unmount so late
    responses are ignored.
    """

    cursor_position = reactive(0)
    item_class: type = PlainItem
    # attribute of the item widget holding its model object
    item_attr = "item"
    # VideoTubeAPI method toggling a like by id; None disables liking
    like_endpoint: Optional[str] = None

    BINDINGS = [
        Binding("j", "cursor_down", "Down", show=False),
        Binding("k", "cursor_up", "Up", show=False),
        Binding("g", "cursor_top", "Top", show=False),
        Binding("G", "cursor_bottom", "Bottom", show=False),
        Binding("r", "reload", "Reload", show=False),
        Binding("l", "like", "Like", show=False),
    ]

    def __init__(self, collection: PaginatedCollection, title: str, **kwargs):
        super().__init__(**kwargs)
        self.collection = collection
        self.feed_title = title
        self.can_focus = True

    @property
    def api(self) -> VideoTubeAPI:
        return self.app.api

    def compose(self) -> ComposeResult:
        yield Static(self._header_text(), classes="panel-header", markup=False)

    def on_mount(self) -> None:
        self.watch(self, "cursor_position", self._update_cursor)
        self.watch(self, "scroll_y", self._check_scroll_load)
        self.run_worker(self._load(reset=True), group="collection-load")

    def on_unmount(self) -> None:
        self.collection.close()

    def make_item(self, item) -> Widget:
        return self.item_class(item, classes="list-item")

    def item_key(self, widget: Widget):
        return getattr(widget, self.item_attr).id

    def _header_text(self) -> str:
        total = self.collection.total
        count = f"{total} total" if total is not None else f"{len(self.collection)} loaded"
        state = " | loading…" if self.collection.loading else ""
        return f"{self.feed_title} | {count}{state}"

    def _items(self) -> List[Widget]:
        return list(self.query(".list-item"))

    def current(self):
        items = self._items()
        if 0 <= self.cursor_position < len(items):
            return items[self.cursor_position]
        return None

    async def _load(self, reset: bool = False) -> None:
        try:
            if reset:
                added = await self.collection.reset()
            else:
                added = await self.collection.load_more()
        except SessionTerminatedError:
            # the app already routed to the login screen
            return
        except ApiError as e:
            self.app.notify(user_message(e), severity="error")
            self._refresh_header()
            return
        if self.collection.closed or not self.is_attached:
            return
        if reset:
            await self.rebuild()
        elif added:
            await self.mount_all([self.make_item(item) for item in added])
        self._refresh_header()

    async def rebuild(self) -> None:
        await self.query(".list-item").remove()
        await self.query(".empty-message").remove()
        if len(self.collection):
            await self.mount_all([self.make_item(item) for item in self.collection.items])
        else:
            await self.mount(Static("Nothing here yet", classes="empty-message"))
        self.cursor_position = min(self.cursor_position, max(0, len(self.collection) - 1))
        self._update_cursor()

    def sync_item(self, key) -> None:
        """Re-render one item from the collection's current state."""
        item = self.collection.get(key)
        for widget in self._items():
            if self.item_key(widget) == key and item is not None:
                self._set_item(widget, item)
                widget.refresh()

    def _set_item(self, widget: Widget, item) -> None:
        setattr(widget, self.item_attr, item)

    def _refresh_header(self) -> None:
        try:
            self.query_one(".panel-header", Static).update(self._header_text())
        except Exception:
            logger.debug("header not mounted yet")

    def _check_scroll_load(self) -> None:
        if self.virtual_size.height > 0 and self.scroll_y + self.container_size.height >= self.virtual_size.height - 3:
            self.request_more()

    def request_more(self) -> None:
        if self.collection.has_more and not self.collection.loading:
            self.run_worker(self._load(), group="collection-more")

    def _update_cursor(self) -> None:
        items = self._items()
        for i, item in enumerate(items):
            item.set_class(i == self.cursor_position, "vim-cursor")
        if 0 <= self.cursor_position < len(items):
            self.scroll_to_widget(items[self.cursor_position], animate=False)
        if items and self.cursor_position >= len(items) - 1:
            self.request_more()

    def action_cursor_down(self) -> None:
        if self.cursor_position < len(self._items()) - 1:
            self.cursor_position += 1

    def action_cursor_up(self) -> None:
        if self.cursor_position > 0:
            self.cursor_position -= 1

    def action_cursor_top(self) -> None:
        self.cursor_position = 0

    def action_cursor_bottom(self) -> None:
        self.cursor_position = max(0, len(self._items()) - 1)

    def action_reload(self) -> None:
        self.run_worker(self._load(reset=True), group="collection-load")

    def action_like(self) -> None:
        widget = self.current()
        if widget is not None and self.like_endpoint is not None:
            self.run_worker(self._toggle_like(self.item_key(widget)))

    async def _toggle_like(self, key) -> None:
        if not self.app.require_login():
            return
        pending = self.collection.apply_optimistic_toggle(key, _flip_like)
        if pending is None:
            return
        self.sync_item(key)
        try:
            liked = await self.like_call(key)
        except ApiError as e:
            pending.revert()
            self.sync_item(key)
            if not isinstance(e, SessionTerminatedError):
                self.app.notify(user_message(e), severity="error")
            return
        current = self.collection.get(key)
        if liked is not None and current is not None and current.is_liked != liked:
            # the server disagrees with our guess; take its word
            pending.confirm(_flip_like(current))
        else:
            pending.confirm()
        self.sync_item(key)

    def like_call(self, key) -> Awaitable[Optional[bool]]:
        return getattr(self.api, self.like_endpoint)(key)


class VideoFeed(CollectionView):
    item_class = VideoItem
    item_attr = "video"
    like_endpoint = "toggle_video_like"

    BINDINGS = CollectionView.BINDINGS + [
        Binding("enter", "open", "Open", show=False),
        Binding("w", "watch_later", "Watch later", show=False),
        Binding("x", "remove", "Remove", show=False),
    ]

    def __init__(
        self,
        collection: PaginatedCollection,
        title: str,
        remove_call: Optional[Callable[[str], Awaitable[None]]] = None,
        **kwargs,
    ):
        super().__init__(collection, title, **kwargs)
        self.remove_call = remove_call

    def action_open(self) -> None:
        widget = self.current()
        if widget is not None:
            self.app.push_screen(VideoScreen(widget.video))

    def action_watch_later(self) -> None:
        widget = self.current()
        if widget is not None:
            self.run_worker(self.app.add_to_watch_later(widget.video))

    def action_remove(self) -> None:
        widget = self.current()
        if widget is None or self.remove_call is None:
            return
        self.run_worker(self._remove(widget))

    async def _remove(self, widget: VideoItem) -> None:
        video_id = widget.video.id
        if video_id not in self.collection:
            return
        await widget.remove()
        try:
            removed = await self.collection.remove_item(video_id, lambda: self.remove_call(video_id))
        except ApiError as e:
            # the collection put the item back; show it again
            await self.rebuild()
            if not isinstance(e, SessionTerminatedError):
                self.app.notify(user_message(e), severity="error")
            return
        if removed:
            self.app.notify(f"Removed \"{widget.video.title}\"", timeout=2)
        self.cursor_position = min(self.cursor_position, max(0, len(self.collection) - 1))
        self._refresh_header()


class CommentList(CollectionView):
    item_class = CommentItem
    item_attr = "comment"
    like_endpoint = "toggle_comment_like"

    BINDINGS = CollectionView.BINDINGS + [
        Binding("d", "delete", "Delete", show=False),
    ]

    async def add_comment(self, video_id: str, content: str) -> None:
        try:
            comment = await self.api.add_comment(video_id, content)
        except ApiError as e:
            if not isinstance(e, SessionTerminatedError):
                self.app.notify(user_message(e), severity="error")
            return
        if self.collection.insert_item(comment, 0):
            await self.rebuild()
        self.app.notify("Comment posted!", timeout=2)

    def action_delete(self) -> None:
        widget = self.current()
        if widget is None:
            return
        me = self.app.session.user
        owner = widget.comment.owner
        if me is None or owner is None or owner.id != me.id:
            self.app.notify("You can only delete your own comments", severity="warning")
            return
        self.run_worker(self._delete(widget.comment.id))

    async def _delete(self, comment_id: str) -> None:
        try:
            await self.collection.remove_item(comment_id, lambda: self.api.delete_comment(comment_id))
        except ApiError as e:
            if not isinstance(e, SessionTerminatedError):
                self.app.notify(user_message(e), severity="error")
        await self.rebuild()
        self._refresh_header()


# ───────── Screens ─────────


class VideoScreen(Screen):
    """Video details with its comment thread."""

    BINDINGS = [
        Binding("escape", "app.pop_screen", "Back", show=False),
        Binding("q", "app.pop_screen", "Back", show=False),
        Binding("s", "subscribe", "Subscribe", show=False),
        Binding("w", "watch_later", "Watch later", show=False),
        Binding("i", "focus_input", "Comment", show=False),
    ]

    def __init__(self, video: Video, **kwargs):
        super().__init__(**kwargs)
        self.video = video

    def compose(self) -> ComposeResult:
        yield Static(self._details(), id="video-details")
        yield Input(placeholder="[i] to comment... Press Enter to submit", id="comment-input")
        yield CommentList(self.app.api.comments(self.video.id), "comments", id="comment-list")
        yield Static(
            "[i] Comment [l] Like comment [d] Delete [s] Subscribe [w] Watch later [q] Back",
            id="comment-footer",
            markup=False,
        )

    def on_mount(self) -> None:
        self.query_one("#comment-list", CommentList).focus()
        self.run_worker(self._load_details())

    def _details(self) -> Text:
        v = self.video
        text = Text()
        text.append(f"{v.title}\n", style="bold")
        if v.owner:
            sub = "subscribed" if v.owner.is_subscribed else "not subscribed"
            text.append(f"@{v.owner.username} • {v.owner.subscribers_count} subscribers • {sub}\n", style="dim")
        text.append(f"{format_views(v.views)} views • ♥ {v.likes} • {format_duration(v.duration)}\n")
        if v.description:
            text.append(f"\n{v.description}\n")
        if v.video_file:
            text.append(f"\n▶ {v.video_file}\n", style="underline")
        return text

    async def _load_details(self) -> None:
        try:
            self.video = await self.app.api.get_video(self.video.id)
        except ApiError as e:
            if not isinstance(e, SessionTerminatedError):
                self.app.notify(user_message(e), severity="error")
            return
        self.query_one("#video-details", Static).update(self._details())
        if self.app.session.is_authenticated:
            await self.app.api.add_to_history(self.video.id)

    def action_focus_input(self) -> None:
        self.query_one("#comment-input", Input).focus()

    def action_watch_later(self) -> None:
        self.run_worker(self.app.add_to_watch_later(self.video))

    def action_subscribe(self) -> None:
        if self.video.owner is None or not self.app.require_login():
            return
        self.run_worker(self._toggle_subscription())

    async def _toggle_subscription(self) -> None:
        before = self.video
        owner = before.owner
        # optimistic flip, reverted below if the backend refuses
        flipped = replace(
            owner,
            is_subscribed=not owner.is_subscribed,
            subscribers_count=max(0, owner.subscribers_count + (-1 if owner.is_subscribed else 1)),
        )
        self.video = replace(before, owner=flipped)
        self.query_one("#video-details", Static).update(self._details())
        try:
            subscribed, count = await self.app.api.toggle_subscription(owner.id)
        except ApiError as e:
            self.video = before
            if not isinstance(e, SessionTerminatedError):
                self.app.notify(user_message(e), severity="error")
        else:
            settled = replace(
                flipped,
                is_subscribed=subscribed,
                subscribers_count=count if count is not None else flipped.subscribers_count,
            )
            self.video = replace(self.video, owner=settled)
        self.query_one("#video-details", Static).update(self._details())

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "comment-input":
            return
        text = event.value.strip()
        if not text or not self.app.require_login():
            return
        event.input.value = ""
        await self.query_one("#comment-list", CommentList).add_comment(self.video.id, text)
        self.query_one("#comment-list", CommentList).focus()


class LoginScreen(Screen):
    """Sign in or create an account. Dismisses with the signed-in user."""

    BINDINGS = [Binding("escape", "cancel", "Cancel", show=False)]

    def compose(self) -> ComposeResult:
        with Vertical(id="login-box"):
            yield Label("vidtube: sign in", id="login-title")
            yield Input(placeholder="username or email", id="login-username")
            yield Input(placeholder="password", password=True, id="login-password")
            yield Input(placeholder="full name (register only)", id="login-fullname")
            yield Input(placeholder="email (register only)", id="login-email")
            with Horizontal(id="login-actions"):
                yield Button("Sign in", id="login-submit", variant="primary")
                yield Button("Register", id="register-submit")
            yield Static("", id="login-status", markup=False)

    def on_mount(self) -> None:
        self.query_one("#login-username", Input).focus()

    def _value(self, widget_id: str) -> str:
        return self.query_one(f"#{widget_id}", Input).value.strip()

    def _show_status(self, message: str, error: bool = False) -> None:
        status = self.query_one("#login-status", Static)
        status.update(message)
        status.set_class(error, "error")

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id == "login-password":
            self.run_worker(self._login(), exclusive=True, group="login")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "login-submit":
            self.run_worker(self._login(), exclusive=True, group="login")
        elif event.button.id == "register-submit":
            self.run_worker(self._register(), exclusive=True, group="login")

    async def _login(self) -> None:
        identifier = self._value("login-username")
        password = self._value("login-password")
        if not identifier or not password:
            self._show_status("Username and password are required", error=True)
            return
        key = "email" if "@" in identifier else "username"
        self._show_status("Signing in…")
        try:
            user = await self.app.session.login({key: identifier, "password": password})
        except ApiError as e:
            self._show_status(user_message(e), error=True)
            return
        self.dismiss(user)

    async def _register(self) -> None:
        profile = {
            "username": self._value("login-username"),
            "password": self._value("login-password"),
            "fullName": self._value("login-fullname"),
            "email": self._value("login-email"),
        }
        missing = [k for k, v in profile.items() if not v]
        if missing:
            self._show_status(f"Missing: {', '.join(missing)}", error=True)
            return
        self._show_status("Creating account…")
        try:
            user = await self.app.session.register(profile)
            if not self.app.session.is_authenticated:
                user = await self.app.session.login({"username": profile["username"], "password": profile["password"]})
        except ApiError as e:
            self._show_status(user_message(e), error=True)
            return
        self.dismiss(user)

    def action_cancel(self) -> None:
        self.dismiss(None)


# ───────── App ─────────


class VideoTubeApp(App):
    CSS_PATH = "main.tcss"
    ENABLE_COMMAND_PALETTE = False

    BINDINGS = [
        Binding("q", "quit", "Quit", show=False),
        Binding("1", "show_feed('home')", "Home", show=False),
        Binding("2", "show_feed('trending')", "Trending", show=False),
        Binding("3", "show_feed('history')", "History", show=False),
        Binding("4", "show_feed('watch_later')", "Watch later", show=False),
        Binding("5", "show_feed('liked')", "Liked", show=False),
        Binding("6", "show_feed('mine')", "My videos", show=False),
        Binding("slash", "search", "Search", show=False),
        Binding("escape", "close_search", "Close search", show=False),
        Binding("L", "logout", "Logout", show=False),
        Binding("ctrl+l", "login", "Login", show=False),
    ]

    current_feed = reactive("home")

    def __init__(self, api: VideoTubeAPI, **kwargs):
        super().__init__(**kwargs)
        self.api = api
        self.session: SessionManager = api.session
        self._login_open = False

    def compose(self) -> ComposeResult:
        yield Static(self._header_text(), id="app-header", markup=False)
        yield Container(id="screen-container")
        yield Input(placeholder="Search videos… (Enter to search, Esc to cancel)", id="search-input")
        yield Static(FEED_FOOTER, id="app-footer", markup=False)

    async def on_mount(self) -> None:
        self.session.add_terminated_listener(self._on_session_terminated)
        self._main("#search-input", Input).display = False
        if self.session.is_authenticated:
            self.run_worker(self._refresh_user())
        await self.show_feed("home", force=True)

    def _main(self, selector: str, expect_type: type = Widget):
        """Query the base screen, whatever screen is pushed on top of it."""
        return self.screen_stack[0].query_one(selector, expect_type)

    def _header_text(self, feed: str = "home") -> str:
        user = self.session.user
        who = f"@{user.username}" if user else "not signed in"
        return f"vidtube [{feed}] {who}"

    def _update_header(self) -> None:
        self._main("#app-header", Static).update(self._header_text(self.current_feed))

    async def _refresh_user(self) -> None:
        try:
            await self.session.fetch_current_user()
        except SessionTerminatedError:
            return
        except ApiError as e:
            logger.warning("could not refresh user snapshot: %s", e)
            return
        self._update_header()

    # --- session ---
    def _on_session_terminated(self, reason: str) -> None:
        logger.info("session terminated: %s", reason)
        self.notify("Your session has expired. Please log in again.", severity="warning")
        self.call_later(self._update_header)
        self.call_later(self.action_login)

    def require_login(self) -> bool:
        if self.session.is_authenticated:
            return True
        self.notify("Please log in first", severity="warning")
        self.action_login()
        return False

    def action_login(self) -> None:
        if self._login_open:
            return
        self._login_open = True
        self.push_screen(LoginScreen(), self._after_login)

    async def _after_login(self, user: Optional[User]) -> None:
        self._login_open = False
        if user is None:
            return
        self.notify(f"Signed in as @{user.username}", timeout=2)
        await self.show_feed(self.current_feed, force=True)

    def action_logout(self) -> None:
        self.run_worker(self._logout())

    async def _logout(self) -> None:
        await self.session.logout()
        self.notify("Logged out successfully", timeout=2)
        await self.show_feed("home", force=True)

    async def add_to_watch_later(self, video: Video) -> None:
        if not self.require_login():
            return
        try:
            await self.api.add_to_watch_later(video.id)
        except (ConflictError, ValidationError):
            self.notify("Video already in Watch Later list", severity="warning")
            return
        except SessionTerminatedError:
            return
        except ApiError as e:
            self.notify(user_message(e), severity="error")
            return
        self.notify(f"Added \"{video.title}\" to Watch Later", timeout=2)

    # --- feeds ---
    def _build_feed(self, name: str, query: str = "") -> Optional[VideoFeed]:
        api = self.api
        if name == "home":
            return VideoFeed(api.videos(ListFilters(sort_by="createdAt", sort_type="desc")), "videos.home", id="feed")
        if name == "trending":
            return VideoFeed(api.trending(), "videos.trending", id="feed")
        if name == "search":
            return VideoFeed(api.search_videos(query), f"search: {query}", id="feed")
        if name in ("history", "watch_later", "liked", "mine") and not self.require_login():
            return None
        if name == "history":
            return VideoFeed(api.watch_history(), "library.history", remove_call=api.remove_from_history, id="feed")
        if name == "watch_later":
            return VideoFeed(
                api.watch_later(), "library.watch_later", remove_call=api.remove_from_watch_later, id="feed"
            )
        if name == "liked":
            return VideoFeed(api.liked_videos(), "library.liked", id="feed")
        if name == "mine":
            if self.session.user is None or not self.session.user.id:
                self.notify("Profile not loaded yet, try again in a moment", severity="warning")
                return None
            return VideoFeed(
                api.user_videos(self.session.user.id), "channel.videos", remove_call=api.delete_video, id="feed"
            )
        return None

    async def show_feed(self, name: str, query: str = "", force: bool = False) -> None:
        if name == self.current_feed and not force and not query:
            return
        feed = self._build_feed(name, query)
        if feed is None:
            return
        container = self._main("#screen-container", Container)
        # the old feed closes its collection on unmount
        await container.remove_children()
        await container.mount(feed)
        self.current_feed = name
        self._update_header()
        footer = LIBRARY_FOOTER if feed.remove_call is not None else FEED_FOOTER
        self._main("#app-footer", Static).update(footer)
        feed.focus()

    async def action_show_feed(self, name: str) -> None:
        await self.show_feed(name)

    def action_search(self) -> None:
        search = self._main("#search-input", Input)
        search.display = True
        search.focus()

    def action_close_search(self) -> None:
        search = self._main("#search-input", Input)
        if not search.display:
            return
        search.display = False
        search.value = ""
        for feed in self.screen_stack[0].query(VideoFeed):
            feed.focus()

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "search-input":
            return
        query = event.value.strip()
        event.input.display = False
        event.input.value = ""
        if query:
            await self.show_feed("search", query=query)


def main():
    config = ClientConfig.from_env()
    configure_logging(config.debug)
    transport = RequestsTransport(config.api_url, timeout=config.timeout)
    session = SessionManager(transport, KeyringTokenStore(config.keyring_service))
    try:
        session.restore()
    except AuthStorageError:
        logger.exception("could not load the saved session; starting signed out")
    api = VideoTubeAPI(session, page_size=config.page_size)
    try:
        VideoTubeApp(api).run()
    finally:
        transport.close()


if __name__ == "__main__":
    main()
