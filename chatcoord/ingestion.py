"""
Cursor-tracked, deduplicating ingestion of channel events.

Every process runs ``poll_cycle``; only the lease holder fetches anything.
Each channel of interest is fetched strictly after its cursor, watched
thread replies are folded in, the merged batch is insert-or-ignored into
the inbox, mentions in the new rows are routed to per-identity queues,
and the cursor moves forward to the newest token seen.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .exceptions import (
    AuthorizationError,
    ChatCoordError,
    PlatformError,
    ShutdownError,
    ThrottledError,
)
from .lease import PollerLeaseBase
from .mentions import scan_mentions
from .metrics import metrics
from .models import InboxEvent
from .platform import ChatPlatform
from .store import CoordStore, ts_value
from .teams import TeamRegistry

logger = logging.getLogger(__name__)

# Expected for channels the bot was never invited to
QUIET_ERRORS = frozenset({"channel_not_found", "not_in_channel"})

THREAD_REPLY_LIMIT = 10


@dataclass
class IngestResult:
    channel_id: str
    fetched: int = 0
    inserted: List[InboxEvent] = field(default_factory=list)
    mentions: int = 0
    cursor: Optional[str] = None

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)


@dataclass
class PollResult:
    """Outcome of one ``poll_cycle``."""
    skipped: bool = False
    aborted: bool = False
    stopped: bool = False
    channels: List[IngestResult] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def total_inserted(self) -> int:
        return sum(c.inserted_count for c in self.channels)

    @property
    def outcome(self) -> str:
        if self.skipped:
            return "skipped"
        if self.stopped:
            return "stopped"
        if self.aborted:
            return "throttled"
        if self.errors:
            return "partial"
        return "ok"


class IngestionPipeline:
    """
    Polls channels of interest into the shared inbox.

    Args:
        store: Shared store
        platform: Rate-limited chat platform
        lease: Poller lease gating remote work
        teams: Team registry (channels of interest, mention index)
        process_id: Identity used for the lease
        default_channel: Coordination channel always polled
        bot_user_id: This bot's platform user id (its messages are not scanned for mentions)
        max_thread_polls: Watched threads fetched per channel per cycle
        history_limit: Page size for channel history
        watch_horizon_s: Only threads registered within this window are polled
    """

    def __init__(
        self,
        store: CoordStore,
        platform: ChatPlatform,
        lease: PollerLeaseBase,
        teams: TeamRegistry,
        process_id: str,
        default_channel: str = "",
        bot_user_id: Optional[str] = None,
        max_thread_polls: int = 8,
        history_limit: int = 20,
        watch_horizon_s: float = 24 * 3600,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.platform = platform
        self.lease = lease
        self.teams = teams
        self.process_id = process_id
        self.default_channel = default_channel
        self.bot_user_id = bot_user_id
        self.max_thread_polls = max_thread_polls
        self.history_limit = history_limit
        self.watch_horizon_s = watch_horizon_s
        self.clock = clock

    def poll_cycle(self) -> PollResult:
        """Run one cycle; a no-op unless this process holds the lease."""
        if not self.lease.try_acquire_or_renew(self.process_id):
            metrics.record_poll_cycle("skipped")
            return PollResult(skipped=True)

        result = PollResult()
        for channel in self.teams.channels_of_interest(self.default_channel):
            try:
                result.channels.append(self.poll_channel(channel))
            except ShutdownError as e:
                logger.info(f"Shutting down, ending this cycle at {channel}")
                result.errors[channel] = str(e)
                result.stopped = True
                break
            except ThrottledError as e:
                logger.warning(f"Rate limited on {channel}, ending this cycle: {e}")
                result.errors[channel] = str(e)
                result.aborted = True
                break
            except AuthorizationError as e:
                logger.error(f"Not authorized to poll {channel}: {e}")
                result.errors[channel] = str(e)
            except PlatformError as e:
                if e.error_code in QUIET_ERRORS:
                    logger.debug(f"Skipping {channel}: {e.error_code}")
                else:
                    logger.warning(f"Error polling {channel}: {e}")
                result.errors[channel] = str(e)
            except ChatCoordError as e:
                logger.error(f"Error ingesting {channel}: {e}")
                result.errors[channel] = str(e)

        metrics.record_poll_cycle(result.outcome)
        if result.total_inserted:
            logger.info(f"Poll cycle ingested {result.total_inserted} new events")
        return result

    def poll_channel(self, channel: str) -> IngestResult:
        """Fetch history and watched-thread replies after the cursor and ingest them."""
        cursor = self.store.get_cursor(channel)
        floor = ts_value(cursor)

        messages = self.platform.history(channel, oldest=cursor, limit=self.history_limit)
        if cursor:
            messages = [m for m in messages if ts_value(m.get("ts")) > floor]

        since = self.clock() - self.watch_horizon_s
        for thread in self.store.get_watched_threads(channel, since=since, limit=self.max_thread_polls):
            try:
                replies = self.platform.replies(
                    channel, thread.thread_ts, oldest=cursor, limit=THREAD_REPLY_LIMIT
                )
            except (ThrottledError, ShutdownError):
                raise
            except AuthorizationError as e:
                logger.error(f"Not authorized to read thread {channel}/{thread.thread_ts}: {e}")
                continue
            except PlatformError as e:
                logger.debug(f"Thread {channel}/{thread.thread_ts} inaccessible: {e}")
                if e.error_code == "thread_not_found":
                    self.store.unwatch_thread(channel, thread.thread_ts)
                continue

            for reply in replies:
                if reply.get("ts") == thread.thread_ts:
                    continue
                if cursor and ts_value(reply.get("ts")) <= floor:
                    continue
                if not reply.get("thread_ts"):
                    reply = dict(reply, thread_ts=thread.thread_ts)
                messages.append(reply)

        return self.ingest_batch(channel, messages)

    def ingest_batch(self, channel: str, messages: List[Dict[str, Any]]) -> IngestResult:
        """
        Deduplicate, store, route mentions and advance the cursor.

        Safe to call with overlapping or repeated batches: storage is
        insert-or-ignore and the cursor never moves backward.
        """
        seen = set()
        deduped: List[Dict[str, Any]] = []
        for message in messages:
            ts = message.get("ts")
            if not ts or ts in seen:
                continue
            seen.add(ts)
            deduped.append(message)

        result = IngestResult(channel_id=channel, fetched=len(deduped))
        if not deduped:
            result.cursor = self.store.get_cursor(channel)
            return result

        result.inserted = self.store.insert_events(channel, deduped)
        if result.inserted:
            metrics.record_ingested(channel, len(result.inserted))
            logger.info(f"{channel}: +{len(result.inserted)} new messages ingested")
            result.mentions = self.route_mentions(result.inserted)

        latest = max(deduped, key=lambda m: ts_value(m["ts"]))["ts"]
        result.cursor = self.store.advance_cursor(channel, latest)
        return result

    def route_mentions(self, events: List[InboxEvent]) -> int:
        routed = scan_mentions(
            events, self.teams.mention_index(), self.bot_user_id, now=self.clock()
        )
        for identity, notice in routed:
            self.store.enqueue_mention(identity, notice)
        if routed:
            logger.debug(f"Routed {len(routed)} mention notices")
        return len(routed)

    def purge(self, inbox_retention_s: float, watch_retention_s: float) -> Dict[str, int]:
        """Retention sweep: non-unread inbox rows and expired watched threads."""
        now = self.clock()
        purged = {
            "inbox": self.store.purge_inbox(now - inbox_retention_s),
            "watched_threads": self.store.purge_watched(now - watch_retention_s),
        }
        if any(purged.values()):
            logger.info(
                f"Purged {purged['inbox']} inbox rows and "
                f"{purged['watched_threads']} watched threads"
            )
        return purged
