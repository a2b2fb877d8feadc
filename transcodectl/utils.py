import re
import time
from datetime import datetime, timezone

# characters that never make it into a stored upload name
UNSAFE_NAME_RE = re.compile(r"[^a-z0-9._-]+")


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def sanitize_filename(name: str) -> str:
    """
    Lower-case a client supplied file name, turn spaces into dashes and
    drop anything outside [a-z0-9._-]. Directory parts are discarded.
    """
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    name = name.strip().replace(" ", "-").lower()
    name = UNSAFE_NAME_RE.sub("", name).lstrip(".")
    return name or "upload"


def upload_name(filename: str) -> str:
    return f"upload-{time.time_ns()}-{sanitize_filename(filename)}"


def remote_name(media_id: int) -> str:
    return f"remote-{media_id}-{time.time_ns()}.mp4"


def truncate(text: str, limit: int = 4000) -> str:
    """Keep the tail of long diagnostic output; ffmpeg reports the cause last."""
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]
