"""
Race-safe approval and permission consensus.

A request is posted as a prompt message and recorded as ``pending``. Three
sources race to decide it: reactions on the prompt, the latest text reply
in its thread, and a direct ``resolve`` call from any process. All of them
funnel into one conditional update on the stored status, so exactly one
decision is ever persisted and every other attempt observes
``ALREADY_RESOLVED``.
"""

import re
import time
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .exceptions import AuthorizationError, PlatformError, StoreError
from .metrics import metrics
from .models import (
    ConsensusKind,
    ConsensusRequest,
    ConsensusStatus,
    MentionNotice,
    NoticeType,
    ResolutionMethod,
)
from .platform import ChatPlatform
from .store import CoordStore, ts_value
from .teams import AGENT_PERSONAS, LEAD_ROLE, TeamRegistry, agent_identity

logger = logging.getLogger(__name__)

APPROVE_REACTIONS = frozenset({"white_check_mark", "+1", "thumbsup", "heavy_check_mark"})
DENY_REACTIONS = frozenset({
    "x", "-1", "thumbsdown", "no_entry", "no_entry_sign", "octagonal_sign",
})

APPROVE_WORDS = (
    "승인", "확인", "진행", "허용", "ㅇㅇ", "ㄱㄱ", "ㅇ",
    "ok", "okay", "yes", "y", "approve", "approved", "lgtm", "go", "proceed",
)
DENY_WORDS = (
    "거부", "거절", "중단", "취소", "ㄴㄴ", "ㄴ",
    "no", "n", "deny", "denied", "reject", "rejected", "stop", "cancel", "abort",
)

WAITING_REACTION = "hourglass_flowing_sand"
TIMEOUT_REACTION = "hourglass"
ACK_REACTIONS = {
    ConsensusStatus.APPROVED: "white_check_mark",
    ConsensusStatus.DENIED: "x",
}

REPLY_LIMIT = 10
_LEADING_NUMBER = re.compile(r"^(\d+)")


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    ALREADY_RESOLVED = "already_resolved"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"


@dataclass
class Verdict:
    """A decision observed from one resolution source."""
    decision: ConsensusStatus
    decided_by: str
    method: ResolutionMethod
    selected_option: Optional[str] = None
    detail: str = ""


@dataclass
class Resolution:
    """Outcome of a resolution attempt or a wait."""
    status: ResolutionStatus
    request_id: Optional[int] = None
    decision: Optional[ConsensusStatus] = None
    decided_by: Optional[str] = None
    method: Optional[str] = None
    selected_option: Optional[str] = None
    detail: str = ""

    @property
    def approved(self) -> Optional[bool]:
        if self.decision is None:
            return None
        return self.decision == ConsensusStatus.APPROVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "request_id": self.request_id,
            "decision": self.decision.value if self.decision else None,
            "approved": self.approved,
            "decided_by": self.decided_by,
            "method": self.method,
            "selected_option": self.selected_option,
            "detail": self.detail,
        }


def _matches(text: str, words) -> bool:
    return any(
        text == w or text.startswith(w + " ") or text.startswith(w + ".")
        for w in words
    )


def classify_reply_text(text: str) -> Optional[ConsensusStatus]:
    """Approve/deny from a reply by exact or prefix word match; deny wins."""
    normalized = (text or "").strip().lower()
    if not normalized:
        return None
    if _matches(normalized, DENY_WORDS):
        return ConsensusStatus.DENIED
    if _matches(normalized, APPROVE_WORDS):
        return ConsensusStatus.APPROVED
    return None


def classify_reactions(
    reactions: List[Dict[str, Any]],
    bot_user_id: Optional[str] = None
) -> Optional[Verdict]:
    """
    Decide from the full reaction list of a prompt.

    Reactions contributed only by the bot are ignored. Any deny-class
    reaction beats every approve-class one, whatever the list order.
    """
    approve: Optional[Verdict] = None
    for reaction in reactions:
        users = [u for u in reaction.get("users") or [] if u != bot_user_id]
        if not users:
            continue
        name = reaction.get("name", "")
        if name in DENY_REACTIONS:
            return Verdict(ConsensusStatus.DENIED, users[0], ResolutionMethod.REACTION, detail=name)
        if name in APPROVE_REACTIONS and approve is None:
            approve = Verdict(ConsensusStatus.APPROVED, users[0], ResolutionMethod.REACTION, detail=name)
    return approve


def select_option(text: str, options: List[str]) -> Optional[str]:
    """Pick an option by leading number (1-based) or verbatim text."""
    stripped = (text or "").strip()
    if not stripped or not options:
        return None
    number = _LEADING_NUMBER.match(stripped)
    if number:
        index = int(number.group(1)) - 1
        if 0 <= index < len(options):
            return options[index]
    lowered = stripped.lower()
    for option in options:
        if option.strip().lower() == lowered:
            return option
    return None


def latest_reply(
    messages: List[Dict[str, Any]],
    prompt_ts: str,
    bot_user_id: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """Most recent non-bot reply after the prompt, or None."""
    floor = ts_value(prompt_ts)
    replies = [
        m for m in messages
        if m.get("ts") != prompt_ts
        and ts_value(m.get("ts")) > floor
        and not (bot_user_id and m.get("user") == bot_user_id)
    ]
    if not replies:
        return None
    return max(replies, key=lambda m: ts_value(m.get("ts")))


def classify_reply(
    reply: Dict[str, Any],
    options: Optional[List[str]] = None
) -> Optional[Verdict]:
    text = reply.get("text") or ""
    user = reply.get("user") or "user"

    decision = classify_reply_text(text)
    if decision is not None:
        return Verdict(decision, user, ResolutionMethod.TEXT_REPLY, detail=text)

    if options:
        selected = select_option(text, options)
        if selected is not None:
            return Verdict(
                ConsensusStatus.APPROVED, user, ResolutionMethod.CHOICE,
                selected_option=selected, detail=text
            )
    return None


def _coerce_decision(decision: Union[str, ConsensusStatus]) -> ConsensusStatus:
    status = ConsensusStatus(decision)
    if status == ConsensusStatus.PENDING:
        raise ValueError("A decision must be 'approved' or 'denied'")
    return status


class ConsensusResolver:
    """
    Creates consensus requests and drives them to a single decision.

    Args:
        store: Shared store holding request status
        platform: Rate-limited chat platform
        bot_user_id: This bot's user id; its own reactions and replies never count
        teams: Team registry (permission requests go to the team channel and lead)
        default_channel: Main coordination channel
        clock: Monotonic clock in seconds (injectable for tests)
        sleep: Sleep function; defaults to an interruptible wait on ``stop_event``
        stop_event: Set on shutdown to end any wait early
    """

    def __init__(
        self,
        store: CoordStore,
        platform: ChatPlatform,
        bot_user_id: Optional[str],
        teams: Optional[TeamRegistry] = None,
        default_channel: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Any]] = None,
        stop_event: Optional[threading.Event] = None
    ):
        self.store = store
        self.platform = platform
        self.bot_user_id = bot_user_id
        self.teams = teams
        self.default_channel = default_channel
        self._clock = clock
        self._stop = stop_event or threading.Event()
        self._sleep = sleep or self._stop.wait

    # Creation

    def create(
        self,
        kind: ConsensusKind,
        requester: str,
        title: str,
        description: str,
        channel: str,
        scope: str = "",
        options: Optional[List[str]] = None,
        prompt: Optional[str] = None,
        notify_channel: Optional[str] = None,
        notify_text: Optional[str] = None,
        decider: Optional[str] = None,
        username: Optional[str] = None,
        icon_emoji: Optional[str] = None
    ) -> ConsensusRequest:
        """
        Post the prompt and record a pending request.

        The secondary-channel notice, the decider's mention notice and the
        waiting reaction are best effort.
        """
        if not channel:
            raise ValueError("No channel to post the request to")

        text = prompt or self.format_prompt(title, description, requester, options)
        prompt_ts = self.platform.post_message(
            channel, text, username=username, icon_emoji=icon_emoji
        )
        request = self.store.create_request(
            kind=kind,
            requester=requester,
            title=title,
            description=description,
            channel_id=channel,
            message_ts=prompt_ts,
            scope=scope,
            options=options,
        )

        if notify_channel and notify_channel != channel:
            try:
                self.platform.post_message(
                    notify_channel,
                    notify_text or f":bell: *Awaiting decision* #{request.id}: {title}"
                )
            except PlatformError as e:
                logger.warning(f"Could not notify {notify_channel} of request #{request.id}: {e}")

        if decider:
            notice = MentionNotice(
                sender=requester,
                excerpt=f"[{kind.value}] {title}: {description}"[:200],
                channel_id=channel,
                message_ts=prompt_ts,
                thread_ts=prompt_ts,
                team_id=scope,
                type=(
                    NoticeType.PERMISSION_REQUEST if kind == ConsensusKind.PERMISSION
                    else NoticeType.APPROVAL_REQUEST
                ),
                consensus_id=request.id,
                created_at=time.time(),
            )
            self.store.enqueue_mention(decider, notice)

        self._best_effort_reaction(channel, prompt_ts, WAITING_REACTION)
        return request

    @staticmethod
    def format_prompt(
        title: str,
        description: str,
        requester: str = "",
        options: Optional[List[str]] = None
    ) -> str:
        lines = [f":bell: *[Approval request]* {title}"]
        if requester:
            lines.append(f"Requested by *{requester}*")
        lines += ["", description]
        if options:
            lines += ["", "*Options:*"]
            lines += [f"{i}. {option}" for i, option in enumerate(options, 1)]
            lines += ["", "_Reply with a number or the option text._"]
        else:
            lines += ["", ":white_check_mark: approve | :x: deny", "_React or reply (approve / deny)._"]
        return "\n".join(lines)

    # Resolution

    def resolve(
        self,
        request_id: int,
        decision: Union[str, ConsensusStatus],
        decided_by: str,
        method: ResolutionMethod = ResolutionMethod.OUT_OF_BAND,
        selected_option: Optional[str] = None,
        detail: str = ""
    ) -> Resolution:
        """
        Attempt the single pending -> decided transition.

        Returns:
            RESOLVED if this call won; ALREADY_RESOLVED carrying the persisted
            decision if another attempt won first; NOT_FOUND for unknown ids
        """
        status = _coerce_decision(decision)
        won = self.store.resolve_request(
            request_id, status, decided_by, method.value, selected_option
        )
        request = self.store.get_request(request_id)
        if request is None:
            return Resolution(ResolutionStatus.NOT_FOUND, request_id)

        if not won:
            logger.info(
                f"Request #{request_id} already {request.status.value} by {request.decided_by}; "
                f"ignoring {status.value} from {decided_by}"
            )
            return Resolution(
                ResolutionStatus.ALREADY_RESOLVED,
                request_id,
                decision=request.status,
                decided_by=request.decided_by,
                method=request.method,
                selected_option=request.selected_option,
            )

        logger.info(f"Request #{request_id} {status.value} by {decided_by} ({method.value})")
        metrics.record_decision(request.kind.value, status.value, method.value)
        self._log_decision(request, status, decided_by, selected_option, detail)
        self._acknowledge(request, status, decided_by, method, selected_option)
        return Resolution(
            ResolutionStatus.RESOLVED,
            request_id,
            decision=status,
            decided_by=decided_by,
            method=method.value,
            selected_option=selected_option,
            detail=detail,
        )

    def _log_decision(
        self,
        request: ConsensusRequest,
        status: ConsensusStatus,
        decided_by: str,
        selected_option: Optional[str],
        detail: str
    ):
        answer = f"selected: {selected_option}" if selected_option else status.value
        if detail and not selected_option:
            answer += f" ({detail})"
        try:
            self.store.log_decision(request.scope, request.title, answer, decided_by, request.id)
        except StoreError as e:
            logger.warning(f"Could not log decision for request #{request.id}: {e}")

    def _acknowledge(
        self,
        request: ConsensusRequest,
        status: ConsensusStatus,
        decided_by: str,
        method: ResolutionMethod,
        selected_option: Optional[str]
    ):
        self._best_effort_reaction(request.channel_id, request.message_ts, WAITING_REACTION, remove=True)
        self._best_effort_reaction(request.channel_id, request.message_ts, ACK_REACTIONS[status])

        mark = ":white_check_mark: Approved" if status == ConsensusStatus.APPROVED else ":x: Denied"
        text = f"{mark} by {decided_by} ({method.value.replace('_', ' ')})"
        if selected_option:
            text += f": {selected_option}"
        try:
            self.platform.post_message(request.channel_id, text, thread_ts=request.message_ts)
        except PlatformError as e:
            logger.warning(f"Could not post confirmation for request #{request.id}: {e}")

    def _best_effort_reaction(self, channel: str, ts: str, name: str, remove: bool = False):
        try:
            if remove:
                self.platform.remove_reaction(channel, ts, name)
            else:
                self.platform.add_reaction(channel, ts, name)
        except PlatformError as e:
            logger.debug(f"Reaction :{name}: on {channel}/{ts} failed: {e}")

    # Polling

    def check_reactions(self, request: ConsensusRequest) -> Optional[Verdict]:
        reactions = self.platform.get_reactions(request.channel_id, request.message_ts)
        return classify_reactions(reactions, self.bot_user_id)

    def check_replies(self, request: ConsensusRequest) -> Optional[Verdict]:
        messages = self.platform.replies(
            request.channel_id, request.message_ts,
            oldest=request.message_ts, limit=REPLY_LIMIT
        )
        reply = latest_reply(messages, request.message_ts, self.bot_user_id)
        if reply is None:
            return None
        return classify_reply(reply, request.options)

    def poll_once(self, request: ConsensusRequest, cycle: int) -> Optional[Verdict]:
        """One platform call: reactions on odd cycles, replies on even ones."""
        try:
            if cycle % 2 == 1:
                return self.check_reactions(request)
            return self.check_replies(request)
        except AuthorizationError as e:
            logger.error(f"Not authorized to poll request #{request.id}: {e}")
        except PlatformError as e:
            logger.warning(f"Polling request #{request.id} failed: {e}")
        return None

    def wait_for_decision(
        self,
        request: ConsensusRequest,
        timeout_s: float,
        poll_interval_s: float = 5.0
    ) -> Resolution:
        """
        Poll until the request is decided or ``timeout_s`` elapses.

        The stored status is checked every cycle so that an out-of-band
        resolution ends the wait. A timeout leaves the request pending.
        """
        deadline = self._clock() + timeout_s
        cycle = 0

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(poll_interval_s, remaining))
            if self._stop.is_set():
                break
            cycle += 1

            try:
                status = self.store.get_request_status(request.id)
            except StoreError as e:
                logger.warning(f"Status check for request #{request.id} failed: {e}")
                status = ConsensusStatus.PENDING
            if status is None:
                return Resolution(ResolutionStatus.NOT_FOUND, request.id)
            if status != ConsensusStatus.PENDING:
                stored = self.store.get_request(request.id)
                return Resolution(
                    ResolutionStatus.ALREADY_RESOLVED,
                    request.id,
                    decision=stored.status,
                    decided_by=stored.decided_by,
                    method=stored.method,
                    selected_option=stored.selected_option,
                )

            verdict = self.poll_once(request, cycle)
            if verdict is not None:
                return self.resolve(
                    request.id,
                    verdict.decision,
                    verdict.decided_by,
                    method=verdict.method,
                    selected_option=verdict.selected_option,
                    detail=verdict.detail,
                )

        logger.info(f"Request #{request.id} timed out after {timeout_s}s; left pending")
        self._best_effort_reaction(request.channel_id, request.message_ts, TIMEOUT_REACTION)
        return Resolution(ResolutionStatus.TIMEOUT, request.id)

    def stop(self):
        """End any in-progress wait at its next sleep."""
        self._stop.set()

    # Convenience entry points

    def request_approval(
        self,
        title: str,
        description: str,
        requester: str = "",
        scope: str = "",
        options: Optional[List[str]] = None,
        channel: Optional[str] = None,
        decider: Optional[str] = None,
        timeout_s: float = 300,
        poll_interval_s: float = 5.0
    ) -> Resolution:
        """Post an approval request to the main channel and wait for the answer."""
        target = channel or self.default_channel
        notify_channel = None
        if scope and self.teams:
            team = self.teams.get_team(scope)
            if team:
                notify_channel = team.channel_id

        request = self.create(
            ConsensusKind.APPROVAL,
            requester=requester,
            title=title,
            description=description,
            channel=target,
            scope=scope,
            options=options,
            notify_channel=notify_channel,
            notify_text=f":bell: *Awaiting approval*: {title}\nWaiting for a reply in the main channel.",
            decider=decider,
        )
        return self.wait_for_decision(request, timeout_s, poll_interval_s)

    def request_permission(
        self,
        team_id: str,
        requester: str,
        action: str,
        reason: str,
        timeout_s: float = 180,
        poll_interval_s: float = 5.0
    ) -> Resolution:
        """
        Ask a team's lead for permission to perform ``action``.

        Posts in the team channel, notifies the main channel, and queues a
        mention notice for the lead.
        """
        if self.teams is None:
            raise ValueError("Permission requests need a team registry")
        team = self.teams.get_team(team_id)
        if team is None:
            raise ValueError(f"Unknown team: {team_id}")

        lead = self.teams.team_lead(team_id)
        lead_id = lead.member_id if lead else LEAD_ROLE
        lead_name = AGENT_PERSONAS[LEAD_ROLE].display_name

        member = self.teams.get_member(team_id, requester)
        username, icon = agent_identity(member.role if member else "", requester)

        prompt = "\n".join([
            f":closed_lock_with_key: *[Permission request]* *{username}* ({requester})",
            "",
            f"*Action:* {action}",
            f"*Reason:* {reason}",
            "",
            f":crown: *@{lead_name}* approval needed.",
            "",
            ":white_check_mark: approve | :x: deny  _React or reply._",
        ])
        request = self.create(
            ConsensusKind.PERMISSION,
            requester=requester,
            title=action,
            description=reason,
            channel=team.channel_id,
            scope=team_id,
            prompt=prompt,
            notify_channel=self.default_channel or None,
            notify_text=(
                f":closed_lock_with_key: *Permission request* from {username} "
                f"(team {team_id}): {action}\nWaiting for the lead in the team channel."
            ),
            decider=lead_id,
            username=username,
            icon_emoji=icon,
        )
        return self.wait_for_decision(request, timeout_s, poll_interval_s)
