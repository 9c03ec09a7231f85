#!/usr/bin/env python3
"""X/Twitter channel for the fungi lifecycle - thin tweepy wrapper.

Implements the Channel interface: hashtag scrape, mentions, publish, reply.
Unlike a best-effort client, failures are raised as CollaboratorIOError so the
lifecycle can defer the current phase to the next scheduled trigger.

Singleton: use get_x_channel() to get the shared instance.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import tweepy

from fungi.channel import CollaboratorIOError, decode_markup
from fungi.config import load_credentials

logger = logging.getLogger("fungi.x_channel")

SEARCH_MIN_RESULTS = 10
SEARCH_MAX_RESULTS = 100


class XChannel:
    """Rate-limit-aware tweepy wrapper for the fungi lifecycle."""

    BACKOFF_SECONDS = 900  # 15 minutes on rate limit

    def __init__(self, credentials: Optional[Dict[str, str]] = None):
        creds = credentials if credentials is not None else load_credentials()
        bearer = creds.get("TWITTER_BEARER_TOKEN", "")
        if not bearer:
            raise EnvironmentError("TWITTER_BEARER_TOKEN not set")

        self._client = tweepy.Client(
            bearer_token=bearer,
            consumer_key=creds.get("TWITTER_API_KEY") or None,
            consumer_secret=creds.get("TWITTER_API_SECRET") or None,
            access_token=creds.get("TWITTER_ACCESS_TOKEN") or None,
            access_token_secret=creds.get("TWITTER_ACCESS_TOKEN_SECRET") or None,
            wait_on_rate_limit=False,
        )
        self._me: Optional[Dict[str, Any]] = None
        self._backoff_until: float = 0.0

    def _is_backed_off(self) -> bool:
        if self._backoff_until > 0 and time.time() < self._backoff_until:
            remaining = self._backoff_until - time.time()
            logger.debug("Rate limit backoff active, %.0fs remaining", remaining)
            return True
        return False

    def _handle_rate_limit(self) -> None:
        self._backoff_until = time.time() + self.BACKOFF_SECONDS
        logger.warning("X API rate limited, backing off %ds", self.BACKOFF_SECONDS)

    def _call(self, operation: str, fn, *args, **kwargs):
        if self._is_backed_off():
            raise CollaboratorIOError(f"{operation}: rate limit backoff active")
        try:
            return fn(*args, **kwargs)
        except tweepy.TooManyRequests as e:
            self._handle_rate_limit()
            raise CollaboratorIOError(f"{operation}: rate limited") from e
        except (tweepy.TweepyException, OSError) as e:
            logger.debug("%s failed: %s", operation, e)
            raise CollaboratorIOError(f"{operation} failed: {e}") from e

    # ------ Authenticated User ------

    def get_authenticated_user(self) -> Dict[str, Any]:
        """Return {id, username, name} for the authenticated user."""
        if self._me:
            return self._me
        resp = self._call("get_me", self._client.get_me, user_fields=["id", "username", "name"])
        if not resp or not resp.data:
            raise CollaboratorIOError("get_me returned no user")
        u = resp.data
        self._me = {"id": str(u.id), "username": u.username, "name": u.name}
        return self._me

    # ------ Scrape ------

    def fetch_candidate_messages(self, tag: str, limit: int = 30) -> List[Dict[str, Any]]:
        """Most recent posts under #tag, newest first."""
        max_results = max(SEARCH_MIN_RESULTS, min(int(limit), SEARCH_MAX_RESULTS))
        resp = self._call(
            "search_recent_tweets",
            self._client.search_recent_tweets,
            query=f"#{tag.lstrip('#')}",
            max_results=max_results,
            tweet_fields=["created_at", "author_id"],
        )
        if not resp or not resp.data:
            return []
        return [
            {"id": str(tweet.id), "content": tweet.text or ""}
            for tweet in resp.data[:max(0, int(limit))]
        ]

    # ------ Mentions ------

    def fetch_mentions(self, since_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Mentions of the authenticated user, oldest first."""
        me = self.get_authenticated_user()
        kwargs: Dict[str, Any] = {
            "id": me["id"],
            "max_results": SEARCH_MAX_RESULTS,
            "tweet_fields": ["created_at", "author_id"],
            "expansions": ["author_id"],
            "user_fields": ["username"],
        }
        if since_id:
            kwargs["since_id"] = since_id

        resp = self._call("get_users_mentions", self._client.get_users_mentions, **kwargs)
        if not resp or not resp.data:
            return []

        authors = {}
        if resp.includes and "users" in resp.includes:
            for u in resp.includes["users"]:
                authors[str(u.id)] = u.username

        mentions = [
            {
                "status": {
                    "id": str(tweet.id),
                    "content": tweet.text or "",
                    "author": authors.get(str(tweet.author_id), ""),
                }
            }
            for tweet in resp.data
        ]
        mentions.sort(key=lambda m: int(m["status"]["id"]))
        return mentions

    # ------ Posting ------

    def publish(self, text: str) -> Optional[str]:
        resp = self._call("create_tweet", self._client.create_tweet, text=text)
        return str(resp.data.get("id")) if resp and resp.data else None

    def reply(self, text: str, target: Dict[str, Any]) -> Optional[str]:
        status = target.get("status", target)
        resp = self._call(
            "create_tweet",
            self._client.create_tweet,
            text=text,
            in_reply_to_tweet_id=status["id"],
        )
        return str(resp.data.get("id")) if resp and resp.data else None

    def decode_markup(self, text: str) -> str:
        return decode_markup(text)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_instance: Optional[XChannel] = None


def get_x_channel() -> XChannel:
    """Get the singleton XChannel instance."""
    global _instance
    if _instance is None:
        _instance = XChannel()
    return _instance
