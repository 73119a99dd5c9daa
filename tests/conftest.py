"""Pytest configuration and shared fixtures for chatcoord tests."""

from typing import Any, Dict, List, Optional

import pytest

from chatcoord.config import Config
from chatcoord.lease import PollerLease
from chatcoord.platform import ChatPlatform
from chatcoord.service import CoordinationService
from chatcoord.store import CoordStore, ts_value

BOT_USER = "UBOT"
MAIN_CHANNEL = "CMAIN"


class FakeClock:
    """Manually advanced clock; ``sleep`` moves time forward instead of blocking."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakePlatform(ChatPlatform):
    """
    In-memory chat platform with scripted responses.

    ``history``, ``threads`` and ``reactions`` hold what the platform
    returns; ``failures`` maps an operation (optionally ``"op:channel"``)
    to an exception raised on that call.
    """

    def __init__(self, bot_user_id: str = BOT_USER):
        self.bot_user_id = bot_user_id
        self.history_messages: Dict[str, List[Dict[str, Any]]] = {}
        self.threads: Dict[tuple, List[Dict[str, Any]]] = {}
        self.reactions: Dict[tuple, List[Dict[str, Any]]] = {}
        self.failures: Dict[str, Exception] = {}
        self.posts: List[Dict[str, Any]] = []
        self.uploads: List[Dict[str, Any]] = []
        self.added_reactions: List[tuple] = []
        self.removed_reactions: List[tuple] = []
        self.archived: List[str] = []
        self.calls: List[str] = []
        self._seq = 0

    def _check(self, operation: str, channel: str = ""):
        self.calls.append(operation)
        error = self.failures.get(f"{operation}:{channel}") or self.failures.get(operation)
        if error is not None:
            raise error

    def next_ts(self) -> str:
        self._seq += 1
        return f"1700000000.{self._seq:06d}"

    def auth_test(self) -> str:
        self._check("auth_test")
        return self.bot_user_id

    def post_message(self, channel, text, thread_ts=None, username=None, icon_emoji=None) -> str:
        self._check("post_message", channel)
        ts = self.next_ts()
        self.posts.append({
            "channel": channel,
            "text": text,
            "thread_ts": thread_ts,
            "username": username,
            "icon_emoji": icon_emoji,
            "ts": ts,
        })
        return ts

    def history(self, channel, oldest=None, limit=20):
        self._check("history", channel)
        messages = self.history_messages.get(channel, [])
        if oldest:
            messages = [m for m in messages if ts_value(m.get("ts")) > ts_value(oldest)]
        return [dict(m) for m in messages]

    def replies(self, channel, thread_ts, oldest=None, limit=10):
        self._check("replies", channel)
        return [dict(m) for m in self.threads.get((channel, thread_ts), [])]

    def get_reactions(self, channel, ts):
        self._check("get_reactions", channel)
        return list(self.reactions.get((channel, ts), []))

    def add_reaction(self, channel, ts, name):
        self._check("add_reaction", channel)
        self.added_reactions.append((channel, ts, name))

    def remove_reaction(self, channel, ts, name):
        self._check("remove_reaction", channel)
        self.removed_reactions.append((channel, ts, name))

    def open_dm(self, user_id):
        self._check("open_dm")
        return f"D{user_id}"

    def upload_snippet(self, channel, content, filename, title, thread_ts=None):
        self._check("upload_snippet", channel)
        self.uploads.append({
            "channel": channel,
            "content": content,
            "filename": filename,
            "title": title,
            "thread_ts": thread_ts,
        })
        return f"F{len(self.uploads)}"

    def create_channel(self, name, is_private=False):
        self._check("create_channel")
        return f"C{name.upper()}"

    def archive_channel(self, channel):
        self._check("archive_channel", channel)
        self.archived.append(channel)

    def posts_to(self, channel: str, thread_ts: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            p for p in self.posts
            if p["channel"] == channel and (thread_ts is None or p["thread_ts"] == thread_ts)
        ]


@pytest.fixture
def clock():
    """Provide a controllable clock."""
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    """Path of a fresh shared database."""
    return str(tmp_path / "coord" / "chatcoord.db")


@pytest.fixture
def store(db_path, clock):
    """Create a CoordStore on a temporary database."""
    return CoordStore(db_path, clock=clock)


@pytest.fixture
def platform():
    """Provide a scripted chat platform."""
    return FakePlatform()


@pytest.fixture
def lease(store, clock):
    """Create a SQLite poller lease on the shared store."""
    return PollerLease(store, ttl_ms=30000, clock=clock)


@pytest.fixture
def test_config():
    """Configuration with a main channel and fast consensus polling."""
    return Config(
        SLACK_DEFAULT_CHANNEL=MAIN_CHANNEL,
        CONSENSUS_POLL_S=1,
        APPROVAL_TIMEOUT_S=10,
        PERMISSION_TIMEOUT_S=10,
    )


@pytest.fixture
def service(store, platform, lease, clock, test_config):
    """Create a CoordinationService wired to fakes."""
    coord = CoordinationService(
        store=store,
        platform=platform,
        lease=lease,
        bot_user_id=BOT_USER,
        cfg=test_config,
        process_id="proc-1",
        clock=clock,
        consensus_clock=clock,
        consensus_sleep=clock.sleep,
    )
    yield coord
    coord.stop_event.set()
