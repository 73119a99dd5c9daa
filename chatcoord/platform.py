"""
Chat platform boundary.

``ChatPlatform`` enumerates every remote operation the coordination layer
needs. ``SlackPlatform`` implements it on top of ``slack_sdk`` and routes
each operation through the process's ``RateLimiter``; Slack API errors are
translated into the chatcoord error taxonomy so the limiter and callers
can tell throttling, authorization and transient failures apart.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from .exceptions import AuthorizationError, ThrottledError, TransientError
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Slack message limits
MESSAGE_LIMIT = 3900
FILE_THRESHOLD = 8000

AUTH_ERRORS = frozenset({
    "invalid_auth",
    "not_authed",
    "account_inactive",
    "token_revoked",
    "token_expired",
    "missing_scope",
    "no_permission",
    "not_allowed_token_type",
})

# Reaction add/remove are idempotent from our point of view
BENIGN_REACTION_ERRORS = frozenset({"already_reacted", "no_reaction"})


class ChatPlatform(ABC):
    """Abstract chat platform used by the coordination layer.

    Messages are plain dicts in the platform's wire shape; every message
    carries a ``ts`` sequence token.
    """

    @abstractmethod
    def auth_test(self) -> str:
        """Return the platform user id of this bot identity."""
        pass

    @abstractmethod
    def post_message(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str] = None,
        username: Optional[str] = None,
        icon_emoji: Optional[str] = None
    ) -> str:
        """Post a message and return its sequence token."""
        pass

    @abstractmethod
    def history(
        self,
        channel: str,
        oldest: Optional[str] = None,
        limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Fetch channel history newer than ``oldest``."""
        pass

    @abstractmethod
    def replies(
        self,
        channel: str,
        thread_ts: str,
        oldest: Optional[str] = None,
        limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Fetch a thread (root first) newer than ``oldest``."""
        pass

    @abstractmethod
    def get_reactions(self, channel: str, ts: str) -> List[Dict[str, Any]]:
        """Return ``[{"name": ..., "users": [...]}, ...]`` for a message."""
        pass

    @abstractmethod
    def add_reaction(self, channel: str, ts: str, name: str) -> None:
        pass

    @abstractmethod
    def remove_reaction(self, channel: str, ts: str, name: str) -> None:
        pass

    @abstractmethod
    def open_dm(self, user_id: str) -> str:
        """Open a direct conversation and return its channel id."""
        pass

    @abstractmethod
    def upload_snippet(
        self,
        channel: str,
        content: str,
        filename: str,
        title: str,
        thread_ts: Optional[str] = None
    ) -> str:
        """Upload text content as a file; return the file id."""
        pass

    @abstractmethod
    def create_channel(self, name: str, is_private: bool = False) -> str:
        pass

    @abstractmethod
    def archive_channel(self, channel: str) -> None:
        pass


def translate_slack_error(operation: str, error: SlackApiError) -> Exception:
    """Map a SlackApiError onto ThrottledError / AuthorizationError / TransientError."""
    response = error.response
    code = ""
    status = None
    headers: Dict[str, Any] = {}
    if response is not None:
        status = getattr(response, "status_code", None)
        headers = getattr(response, "headers", None) or {}
        try:
            code = response.get("error", "") or ""
        except AttributeError:
            code = ""

    if code in ("ratelimited", "rate_limited") or status == 429:
        retry_after = None
        raw = headers.get("Retry-After") or headers.get("retry-after")
        if raw is not None:
            try:
                retry_after = float(raw)
            except (TypeError, ValueError):
                retry_after = None
        return ThrottledError(
            f"{operation} rate limited", retry_after=retry_after, operation=operation
        )

    if code in AUTH_ERRORS:
        return AuthorizationError(f"{operation} failed: {code}", error_code=code, operation=operation)

    return TransientError(
        f"{operation} failed: {code or status or error}",
        error_code=code,
        operation=operation
    )


def split_message(text: str, max_len: int = MESSAGE_LIMIT) -> List[str]:
    """Split text on line boundaries into chunks of at most ``max_len``."""
    chunks: List[str] = []
    current = ""

    for line in text.split("\n"):
        if len(line) > max_len:
            if current:
                chunks.append(current)
                current = ""
            for i in range(0, len(line), max_len):
                chunks.append(line[i:i + max_len])
            continue

        if current and len(current) + len(line) + 1 > max_len:
            chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line

    if current:
        chunks.append(current)
    return chunks


class SlackPlatform(ChatPlatform):
    """Slack Web API client with every call gated by the rate limiter."""

    def __init__(
        self,
        token: str,
        rate_limiter: RateLimiter,
        client: Optional[WebClient] = None
    ):
        if not token and client is None:
            raise AuthorizationError("SLACK_BOT_TOKEN is required", error_code="not_authed")
        self.client = client or WebClient(
            token=token,
            headers={"User-Agent": "chatcoord/0.1.0"}
        )
        self.rate_limiter = rate_limiter

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        def invoke():
            try:
                return fn()
            except SlackApiError as e:
                raise translate_slack_error(operation, e) from e
            except OSError as e:
                raise TransientError(f"{operation} failed: {e}", operation=operation) from e

        return self.rate_limiter.call(operation, invoke)

    def auth_test(self) -> str:
        response = self._call("auth.test", lambda: self.client.auth_test())
        return response.get("user_id") or ""

    def post_message(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str] = None,
        username: Optional[str] = None,
        icon_emoji: Optional[str] = None
    ) -> str:
        kwargs: Dict[str, Any] = {"channel": channel, "text": text, "mrkdwn": True}
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        if username:
            kwargs["username"] = username
        if icon_emoji:
            kwargs["icon_emoji"] = icon_emoji
        response = self._call("chat.postMessage", lambda: self.client.chat_postMessage(**kwargs))
        return response.get("ts") or ""

    def history(
        self,
        channel: str,
        oldest: Optional[str] = None,
        limit: int = 20
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {"channel": channel, "limit": limit}
        if oldest:
            kwargs["oldest"] = oldest
        response = self._call(
            "conversations.history",
            lambda: self.client.conversations_history(**kwargs)
        )
        return list(response.get("messages") or [])

    def replies(
        self,
        channel: str,
        thread_ts: str,
        oldest: Optional[str] = None,
        limit: int = 10
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {"channel": channel, "ts": thread_ts, "limit": limit}
        if oldest:
            kwargs["oldest"] = oldest
        response = self._call(
            "conversations.replies",
            lambda: self.client.conversations_replies(**kwargs)
        )
        return list(response.get("messages") or [])

    def get_reactions(self, channel: str, ts: str) -> List[Dict[str, Any]]:
        response = self._call(
            "reactions.get",
            lambda: self.client.reactions_get(channel=channel, timestamp=ts, full=True)
        )
        message = response.get("message") or {}
        return list(message.get("reactions") or [])

    def add_reaction(self, channel: str, ts: str, name: str) -> None:
        try:
            self._call(
                "reactions.add",
                lambda: self.client.reactions_add(channel=channel, timestamp=ts, name=name)
            )
        except TransientError as e:
            if e.error_code not in BENIGN_REACTION_ERRORS:
                raise

    def remove_reaction(self, channel: str, ts: str, name: str) -> None:
        try:
            self._call(
                "reactions.remove",
                lambda: self.client.reactions_remove(channel=channel, timestamp=ts, name=name)
            )
        except TransientError as e:
            if e.error_code not in BENIGN_REACTION_ERRORS:
                raise

    def open_dm(self, user_id: str) -> str:
        response = self._call(
            "conversations.open",
            lambda: self.client.conversations_open(users=user_id)
        )
        return (response.get("channel") or {}).get("id") or ""

    def upload_snippet(
        self,
        channel: str,
        content: str,
        filename: str,
        title: str,
        thread_ts: Optional[str] = None
    ) -> str:
        kwargs: Dict[str, Any] = {
            "channel": channel,
            "content": content,
            "filename": filename,
            "title": title,
        }
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        response = self._call("files.uploadV2", lambda: self.client.files_upload_v2(**kwargs))
        files = response.get("files") or []
        if files:
            return files[0].get("id") or ""
        return (response.get("file") or {}).get("id") or ""

    def create_channel(self, name: str, is_private: bool = False) -> str:
        response = self._call(
            "conversations.create",
            lambda: self.client.conversations_create(name=name, is_private=is_private)
        )
        return (response.get("channel") or {}).get("id") or ""

    def archive_channel(self, channel: str) -> None:
        self._call(
            "conversations.archive",
            lambda: self.client.conversations_archive(channel=channel)
        )
