"""CoordinationService - per-process entry point for chatcoord."""

import os
import time
import socket
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .config import Config, config as default_config
from .consensus import ConsensusResolver, Resolution, ResolutionStatus
from .danger import CommandAssessment, classify_command
from .digest import Digest, build_digest
from .exceptions import AuthorizationError, TransientError
from .ingestion import IngestionPipeline, PollResult
from .lease import PollerLease, PollerLeaseBase, RedisPollerLease
from .models import (
    ConsensusKind,
    ConsensusRequest,
    ConsensusStatus,
    InboxEvent,
    MentionNotice,
    Team,
)
from .platform import FILE_THRESHOLD, MESSAGE_LIMIT, ChatPlatform, SlackPlatform, split_message
from .poller import BackgroundPoller
from .rate_limiter import RateLimiter
from .redis_pool import redis_pool_manager
from .store import CoordStore
from .teams import TeamRegistry, agent_identity

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    ts: str
    method: str
    chunks: int = 1


def default_process_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class CoordinationService:
    """
    All coordination components of one process, wired together.

    Construct with explicit collaborators (tests) or via ``from_config``
    (production), which fails fast on a missing or rejected bot token.
    """

    def __init__(
        self,
        store: CoordStore,
        platform: ChatPlatform,
        lease: PollerLeaseBase,
        bot_user_id: Optional[str],
        cfg: Optional[Config] = None,
        process_id: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.time,
        consensus_clock: Callable[[], float] = time.monotonic,
        consensus_sleep: Optional[Callable[[float], Any]] = None,
        stop_event: Optional[threading.Event] = None
    ):
        self.config = cfg or default_config
        self.store = store
        self.platform = platform
        self.lease = lease
        self.bot_user_id = bot_user_id
        self.rate_limiter = rate_limiter
        self.process_id = process_id or default_process_id()
        self.stop_event = stop_event or threading.Event()

        self.teams = TeamRegistry(store)
        self.pipeline = IngestionPipeline(
            store=store,
            platform=platform,
            lease=lease,
            teams=self.teams,
            process_id=self.process_id,
            default_channel=self.config.SLACK_DEFAULT_CHANNEL,
            bot_user_id=bot_user_id,
            max_thread_polls=self.config.MAX_THREAD_POLLS,
            history_limit=self.config.HISTORY_PAGE_SIZE,
            watch_horizon_s=self.config.WATCH_HORIZON_HOURS * 3600,
            clock=clock,
        )
        self.resolver = ConsensusResolver(
            store=store,
            platform=platform,
            bot_user_id=bot_user_id,
            teams=self.teams,
            default_channel=self.config.SLACK_DEFAULT_CHANNEL,
            clock=consensus_clock,
            sleep=consensus_sleep,
            stop_event=self.stop_event,
        )
        self.poller = BackgroundPoller(
            self.pipeline,
            interval_ms=self.config.POLL_INTERVAL_MS,
            purge_interval_s=self.config.PURGE_INTERVAL_S,
            inbox_retention_s=self.config.INBOX_RETENTION_DAYS * 86400,
            watch_retention_s=self.config.WATCH_RETENTION_HOURS * 3600,
            stop_event=self.stop_event,
        )

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None, process_id: Optional[str] = None) -> "CoordinationService":
        """
        Build a service from configuration.

        Raises:
            AuthorizationError: No bot token, or auth.test rejected it
        """
        cfg = cfg or default_config
        if not cfg.SLACK_BOT_TOKEN:
            raise AuthorizationError("SLACK_BOT_TOKEN is not set", error_code="not_authed")

        stop_event = threading.Event()
        rate_limiter = RateLimiter(
            burst=cfg.RATE_BURST,
            per_minute=cfg.RATE_PER_MINUTE,
            backoff_base_ms=cfg.BACKOFF_BASE_MS,
            backoff_max_ms=cfg.BACKOFF_MAX_MS,
            max_retries=cfg.MAX_RETRIES,
            stop_event=stop_event,
        )
        platform = SlackPlatform(cfg.SLACK_BOT_TOKEN, rate_limiter)
        bot_user_id = platform.auth_test()
        if not bot_user_id:
            raise AuthorizationError("auth.test returned no bot user id", error_code="invalid_auth")
        logger.info(f"Authenticated as bot user {bot_user_id}")

        store = CoordStore(cfg.DB_PATH)
        if cfg.LEASE_BACKEND == "redis":
            lease: PollerLeaseBase = RedisPollerLease(
                redis_pool_manager.get_client(cfg), ttl_ms=cfg.LEASE_TTL_MS
            )
        else:
            lease = PollerLease(store, ttl_ms=cfg.LEASE_TTL_MS)

        return cls(
            store=store,
            platform=platform,
            lease=lease,
            bot_user_id=bot_user_id,
            cfg=cfg,
            process_id=process_id,
            rate_limiter=rate_limiter,
            stop_event=stop_event,
        )

    @classmethod
    def session(cls, cfg: Optional[Config] = None, start_poller: bool = True) -> "CoordinationService":
        """Create a service and start its background poller."""
        service = cls.from_config(cfg)
        if start_poller:
            service.start()
        return service

    def start(self):
        self.poller.start()

    def shutdown(self):
        """Stop the poller, end pending waits, release the lease."""
        self.stop_event.set()
        self.poller.stop()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.shutdown()

    def _channel(self, channel: Optional[str]) -> str:
        target = channel or self.config.SLACK_DEFAULT_CHANNEL
        if not target:
            raise ValueError("No channel given and SLACK_DEFAULT_CHANNEL is not set")
        return target

    # Ingestion

    def ingest_now(self) -> PollResult:
        """Run one poll cycle immediately (a no-op without the lease)."""
        return self.poller.run_once() or PollResult(skipped=True)

    def get_unread(
        self,
        channel: Optional[str] = None,
        include_bot: bool = False,
        limit: int = 100
    ) -> List[InboxEvent]:
        events = self.store.get_unread(self._channel(channel), limit=limit)
        if include_bot or not self.bot_user_id:
            return events
        return [e for e in events if e.user_id != self.bot_user_id]

    def mark_read(self, channel: Optional[str] = None, actor: str = "main") -> int:
        return self.store.mark_read(self._channel(channel), actor)

    def mark_processed(self, channel: str, message_ts: str) -> bool:
        return self.store.mark_processed(channel, message_ts)

    def digest(
        self,
        channel: Optional[str] = None,
        mark_read: bool = False,
        actor: str = "main"
    ) -> Digest:
        target = self._channel(channel)
        result = build_digest(self.get_unread(target))
        if mark_read:
            self.store.mark_read(target, actor)
        return result

    def watch_thread(self, channel: str, thread_ts: str, context: str = "") -> None:
        self.store.watch_thread(channel, thread_ts, context)

    def drain_mentions(self, identity: str) -> List[MentionNotice]:
        return self.store.drain_mentions(identity)

    # Teams

    def create_team(self, team_id: str, name: str, channel_name: str, is_private: bool = False) -> Team:
        """Create the team's channel and register the team on it."""
        channel_id = self.platform.create_channel(channel_name, is_private=is_private)
        if not channel_id:
            raise TransientError(f"Channel {channel_name} was not created", operation="conversations.create")
        return self.teams.register_team(team_id, name, channel_id)

    def close_team(self, team_id: str, archive: bool = True) -> bool:
        """Stop polling a team; optionally archive its channel."""
        team = self.teams.get_team(team_id)
        if team is None:
            return False
        if archive:
            self.platform.archive_channel(team.channel_id)
        return self.teams.close_team(team_id)

    # Sending

    def send_direct(self, user_id: str, text: str) -> SendResult:
        """Send ``text`` to a user's direct-message channel."""
        channel = self.platform.open_dm(user_id)
        if not channel:
            raise TransientError(f"No DM channel for {user_id}", operation="conversations.open")
        return self.send_message(text, channel=channel)


    def send_message(
        self,
        text: str,
        channel: Optional[str] = None,
        thread_ts: Optional[str] = None,
        role: Optional[str] = None,
        member_id: str = "",
        title: str = "Output",
        watermark: bool = False
    ) -> SendResult:
        """
        Post ``text``, splitting or uploading it when it is long.

        The resulting thread is always watched. The channel cursor is left
        alone unless ``watermark`` is set, in which case it is advanced to
        the posted message so ingestion skips it.
        """
        target = self._channel(channel)
        username, icon = agent_identity(role, member_id) if role else (None, None)

        if len(text) <= MESSAGE_LIMIT:
            ts = self.platform.post_message(target, text, thread_ts, username, icon)
            result = SendResult(ts=ts, method="message")
        elif len(text) <= FILE_THRESHOLD:
            chunks = split_message(text, MESSAGE_LIMIT)
            first_ts = ""
            for i, chunk in enumerate(chunks):
                prefix = f"_({i + 1}/{len(chunks)})_\n" if len(chunks) > 1 else ""
                chunk_thread = thread_ts if i == 0 else (first_ts or thread_ts)
                ts = self.platform.post_message(target, prefix + chunk, chunk_thread, username, icon)
                if i == 0:
                    first_ts = ts
            result = SendResult(ts=first_ts, method="chunked", chunks=len(chunks))
        else:
            header = f":page_facing_up: *{title}* ({len(text)} chars, attached)"
            ts = self.platform.post_message(target, header, thread_ts, username, icon)
            self.platform.upload_snippet(
                target, text, f"output-{int(time.time())}.txt", title,
                thread_ts=thread_ts or ts
            )
            result = SendResult(ts=ts, method="file")

        if result.ts:
            self.store.watch_thread(target, thread_ts or result.ts, f"send:{result.method}")
            if watermark:
                self.store.advance_cursor(target, result.ts)
        return result

    # Consensus

    def create_consensus_request(
        self,
        title: str,
        description: str,
        requester: str = "",
        kind: ConsensusKind = ConsensusKind.APPROVAL,
        channel: Optional[str] = None,
        scope: str = "",
        options: Optional[List[str]] = None,
        decider: Optional[str] = None
    ) -> ConsensusRequest:
        """Post a prompt and record a pending request without waiting."""
        return self.resolver.create(
            kind,
            requester=requester,
            title=title,
            description=description,
            channel=self._channel(channel),
            scope=scope,
            options=options,
            decider=decider,
        )

    def wait_for_consensus(
        self,
        request_id: int,
        timeout_s: Optional[float] = None,
        poll_interval_s: Optional[float] = None
    ) -> Resolution:
        request = self.store.get_request(request_id)
        if request is None:
            return Resolution(ResolutionStatus.NOT_FOUND, request_id)
        return self.resolver.wait_for_decision(
            request,
            timeout_s if timeout_s is not None else self.config.APPROVAL_TIMEOUT_S,
            poll_interval_s if poll_interval_s is not None else self.config.CONSENSUS_POLL_S,
        )

    def resolve_consensus(
        self,
        request_id: int,
        decision: Union[str, ConsensusStatus],
        decider: str
    ) -> Resolution:
        return self.resolver.resolve(request_id, decision, decider)

    def list_pending_consensus(
        self,
        scope: Optional[str] = None,
        kind: Optional[ConsensusKind] = None
    ) -> List[ConsensusRequest]:
        return self.store.list_pending(scope, kind)

    def request_approval(
        self,
        title: str,
        description: str,
        requester: str = "",
        scope: str = "",
        options: Optional[List[str]] = None,
        channel: Optional[str] = None,
        timeout_s: Optional[float] = None,
        poll_interval_s: Optional[float] = None
    ) -> Resolution:
        return self.resolver.request_approval(
            title,
            description,
            requester=requester,
            scope=scope,
            options=options,
            channel=self._channel(channel),
            timeout_s=timeout_s if timeout_s is not None else self.config.APPROVAL_TIMEOUT_S,
            poll_interval_s=poll_interval_s if poll_interval_s is not None else self.config.CONSENSUS_POLL_S,
        )

    def request_permission(
        self,
        team_id: str,
        requester: str,
        action: str,
        reason: str,
        timeout_s: Optional[float] = None,
        poll_interval_s: Optional[float] = None
    ) -> Resolution:
        return self.resolver.request_permission(
            team_id,
            requester,
            action,
            reason,
            timeout_s=timeout_s if timeout_s is not None else self.config.PERMISSION_TIMEOUT_S,
            poll_interval_s=poll_interval_s if poll_interval_s is not None else self.config.CONSENSUS_POLL_S,
        )

    def check_command(
        self,
        command: str,
        ask: bool = False,
        requester: str = "",
        timeout_s: Optional[float] = None
    ) -> Tuple[CommandAssessment, Optional[Resolution]]:
        """
        Classify a shell command; with ``ask``, request approval for a dangerous one.

        A timeout is reported as such; callers should treat it as "do not run".
        """
        assessment = classify_command(command)
        if not (ask and assessment.dangerous):
            return assessment, None

        shown = command if len(command) <= 500 else command[:500] + "..."
        rules = ", ".join(m.rule for m in assessment.matches)
        resolution = self.request_approval(
            title=f"Run command ({rules})",
            description=f"```{shown}```",
            requester=requester,
            timeout_s=timeout_s,
        )
        return assessment, resolution

    # Observability

    def metrics(self) -> Dict[str, Any]:
        holder = self.lease.holder()
        return {
            "process_id": self.process_id,
            "bot_user_id": self.bot_user_id,
            "lease": {
                "holder": holder.holder if holder else None,
                "age_s": holder.age_s if holder else None,
                "fresh": holder.fresh if holder else False,
                "held_by_self": bool(holder and holder.fresh and holder.holder == self.process_id),
            },
            "rate_limiter": self.rate_limiter.metrics().to_dict() if self.rate_limiter else None,
            "unread": self.store.unread_counts(),
            "cursors": self.store.all_cursors(),
            "pending_consensus": len(self.store.list_pending()),
            "mention_queues": self.store.pending_mention_counts(),
            "poller_running": self.poller.running,
        }
