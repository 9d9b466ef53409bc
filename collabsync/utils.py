"""Small helpers shared across collabsync."""

import hashlib
import logging
import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Display colours handed out to collaborators
USER_COLORS = (
    "#F44336",  # Red
    "#2196F3",  # Blue
    "#4CAF50",  # Green
    "#FF9800",  # Orange
    "#9C27B0",  # Purple
)


def user_color(user_id: str) -> str:
    """Stable display colour for a user id."""
    digest = hashlib.sha256(user_id.encode("utf-8")).digest()
    return USER_COLORS[digest[0] % len(USER_COLORS)]


def get_collabsync_home() -> Path:
    """Directory for local state, overridable with COLLABSYNC_HOME."""
    override = os.environ.get("COLLABSYNC_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".collabsync"


def validate_backend_url(url: Optional[str], *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL before sending credentials to it.

    Rejects non-http/https schemes, URLs with no host, and remote plaintext
    HTTP endpoints (only localhost/127.0.0.1 may use http).

    Returns:
        The URL without a trailing slash if valid, or ``None`` if rejected.
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend URL scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend URL; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend URL for security.")
            return None
    return url.rstrip("/")
