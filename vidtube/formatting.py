"""Small display helpers used by the terminal UI."""
from datetime import datetime, timezone
from typing import Optional


def format_duration(seconds: float) -> str:
    """Format a video length as m:ss or h:mm:ss."""
    total = int(seconds or 0)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_views(views: Optional[int]) -> str:
    if not views:
        return "0"
    if views >= 1_000_000:
        return f"{views / 1_000_000:.1f}M"
    if views >= 1_000:
        return f"{views / 1_000:.1f}K"
    return str(views)


def format_time_ago(dt: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Format datetime as 'time ago' string."""
    if dt is None:
        return ""
    if now is None:
        now = datetime.now(timezone.utc) if dt.tzinfo else datetime.now()
    diff = now - dt
    if diff.total_seconds() < 60:
        return "just now"
    if diff.days >= 365:
        return f"{diff.days // 365}y ago"
    if diff.days >= 30:
        return f"{diff.days // 30}mo ago"
    if diff.days > 0:
        return f"{diff.days}d ago"
    if diff.seconds < 3600:
        return f"{diff.seconds // 60}m ago"
    return f"{diff.seconds // 3600}h ago"
