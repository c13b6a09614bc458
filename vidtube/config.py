"""Client configuration and logging setup"""
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(override=True)

# Backend
DEFAULT_API_URL = "http://localhost:5000/api"
DEFAULT_TIMEOUT = 10.0  # seconds, applies to every outbound call
DEFAULT_PAGE_SIZE = 12

# Storage settings
KEYRING_SERVICE = "vidtube"

# Local settings
DEBUG_LOG_FILE = Path.home() / ".vidtube_debug.log"


@dataclass(frozen=True)
class ClientConfig:
    api_url: str = DEFAULT_API_URL
    timeout: float = DEFAULT_TIMEOUT
    page_size: int = DEFAULT_PAGE_SIZE
    keyring_service: str = KEYRING_SERVICE
    debug: bool = False

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Build a config from VIDTUBE_* environment variables (and .env)."""
        return cls(
            api_url=os.environ.get("VIDTUBE_API_URL", DEFAULT_API_URL).rstrip("/"),
            timeout=_env_float("VIDTUBE_TIMEOUT", DEFAULT_TIMEOUT),
            page_size=_env_int("VIDTUBE_PAGE_SIZE", DEFAULT_PAGE_SIZE),
            keyring_service=os.environ.get("VIDTUBE_KEYRING_SERVICE", KEYRING_SERVICE),
            debug=bool(os.environ.get("VIDTUBE_DEBUG")),
        )


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger("vidtube.config").warning("Ignoring invalid %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        logging.getLogger("vidtube.config").warning("Ignoring invalid %s=%r", name, raw)
        return default


def configure_logging(debug: bool = False) -> logging.Logger:
    """Attach handlers to the ``vidtube`` logger once.

    Debug output also goes to ~/.vidtube_debug.log so Textual's
    stdout/stderr capturing doesn't hide messages.
    """
    logger = logging.getLogger("vidtube")
    if logger.handlers:
        return logger

    level = logging.DEBUG if debug else logging.WARNING
    logger.setLevel(level)
    fmt = logging.Formatter("[%(name)s] %(levelname)s: %(message)s")

    stream = logging.StreamHandler(sys.stderr)
    stream.setLevel(level)
    stream.setFormatter(fmt)
    logger.addHandler(stream)

    if debug:
        try:
            fh = logging.FileHandler(DEBUG_LOG_FILE, encoding="utf-8")
        except OSError:
            logger.warning("Could not open debug log file %s", DEBUG_LOG_FILE)
        else:
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
            logger.addHandler(fh)
    return logger
