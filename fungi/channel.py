"""Interface of the shared public channel the lifecycle reads from and posts to.

Message shapes:
    candidate: {"id": str, "content": str}
    mention:   {"status": {"id": str, "content": str, "author": str}}
"""

from __future__ import annotations

import html
import re
from typing import Any, Dict, List, Optional, Protocol

_TAG_RE = re.compile(r"<br\s*/?>|</p>\s*<p[^>]*>", re.IGNORECASE)
_MARKUP_RE = re.compile(r"<[^>]+>")


class CollaboratorIOError(RuntimeError):
    """Network or client failure while talking to the channel."""


class Channel(Protocol):
    def fetch_candidate_messages(self, tag: str, limit: int) -> List[Dict[str, Any]]:
        ...

    def fetch_mentions(self, since_id: Optional[str] = None) -> List[Dict[str, Any]]:
        ...

    def publish(self, text: str) -> Optional[str]:
        ...

    def reply(self, text: str, target: Dict[str, Any]) -> Optional[str]:
        ...

    def decode_markup(self, text: str) -> str:
        ...


def decode_markup(text: str) -> str:
    """Drop HTML tags and decode entities so only plain text reaches the parser."""
    if not text:
        return ""
    plain = _TAG_RE.sub("\n", text)
    plain = _MARKUP_RE.sub("", plain)
    return html.unescape(plain)
