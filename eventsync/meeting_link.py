from __future__ import annotations

import re
from urllib.parse import urlsplit

_URL_RE = re.compile(r"https?://[^\s<>\"'()\[\]]+", re.IGNORECASE)

# (host suffix, required path prefix)
MEETING_HOSTS: tuple[tuple[str, str], ...] = (
    ("zoom.us", "/j/"),
    ("zoom.us", "/my/"),
    ("zoomgov.com", "/j/"),
    ("meet.google.com", "/"),
    ("teams.microsoft.com", "/l/meetup-join"),
    ("teams.live.com", "/meet"),
    ("webex.com", "/meet"),
    ("webex.com", "/join"),
    ("whereby.com", "/"),
    ("around.co", "/"),
    ("meet.jit.si", "/"),
    ("gotomeeting.com", "/join"),
    ("meet.goto.com", "/"),
    ("chime.aws", "/"),
)


def _is_meeting_url(url: str) -> bool:
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    path = parts.path or "/"
    for suffix, prefix in MEETING_HOSTS:
        if (host == suffix or host.endswith("." + suffix)) and path.startswith(prefix):
            return True
    return False


def extract_meeting_link(text: str | None) -> str | None:
    """First conferencing URL in ``text``, or ``None``."""
    if not text:
        return None
    for match in _URL_RE.finditer(text):
        url = match.group(0).rstrip(".,;:!?>")
        try:
            if _is_meeting_url(url):
                return url
        except ValueError:
            continue
    return None
