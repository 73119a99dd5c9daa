"""
Record types shared by the store and the coordination components.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class InboxStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"
    PROCESSED = "processed"


class ConsensusKind(str, Enum):
    APPROVAL = "approval"
    PERMISSION = "permission"


class ConsensusStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ResolutionMethod(str, Enum):
    REACTION = "reaction"
    TEXT_REPLY = "text_reply"
    CHOICE = "choice"
    OUT_OF_BAND = "out_of_band"


class NoticeType(str, Enum):
    AUTO_DETECTED = "auto_detected"
    PERMISSION_REQUEST = "permission_request"
    APPROVAL_REQUEST = "approval_request"


@dataclass
class InboxEvent:
    """One deduplicated message in the inbox."""
    channel_id: str
    message_ts: str
    user_id: str
    text: str
    thread_ts: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None
    status: InboxStatus = InboxStatus.UNREAD
    fetched_at: Optional[float] = None
    read_at: Optional[float] = None
    read_by: Optional[str] = None
    id: Optional[int] = None


@dataclass
class WatchedThread:
    channel_id: str
    thread_ts: str
    context: str = ""
    created_at: float = 0.0


@dataclass
class ConsensusRequest:
    """A pending or decided approval / permission request."""
    id: int
    kind: ConsensusKind
    requester: str
    title: str
    description: str
    channel_id: str
    message_ts: str
    status: ConsensusStatus
    scope: str = ""
    options: List[str] = field(default_factory=list)
    decided_by: Optional[str] = None
    decided_at: Optional[float] = None
    method: Optional[str] = None
    selected_option: Optional[str] = None
    created_at: float = 0.0

    @property
    def is_pending(self) -> bool:
        return self.status == ConsensusStatus.PENDING


@dataclass
class MentionNotice:
    """Queued notice for an addressable identity."""
    sender: str
    excerpt: str
    channel_id: str
    message_ts: str
    thread_ts: Optional[str] = None
    team_id: str = ""
    type: NoticeType = NoticeType.AUTO_DETECTED
    consensus_id: Optional[int] = None
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "excerpt": self.excerpt,
            "channel_id": self.channel_id,
            "message_ts": self.message_ts,
            "thread_ts": self.thread_ts,
            "team_id": self.team_id,
            "type": self.type.value,
            "consensus_id": self.consensus_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MentionNotice":
        return cls(
            sender=data["sender"],
            excerpt=data.get("excerpt", ""),
            channel_id=data["channel_id"],
            message_ts=data.get("message_ts", ""),
            thread_ts=data.get("thread_ts"),
            team_id=data.get("team_id", ""),
            type=NoticeType(data.get("type", NoticeType.AUTO_DETECTED.value)),
            consensus_id=data.get("consensus_id"),
            created_at=data.get("created_at", 0.0),
        )


@dataclass
class Team:
    id: str
    name: str
    channel_id: str
    status: str = "active"
    created_at: float = 0.0


@dataclass
class TeamMember:
    team_id: str
    member_id: str
    role: str
    status: str = "active"


@dataclass
class DecisionRecord:
    scope: str
    question: str
    answer: str
    decided_by: str
    request_id: Optional[int] = None
    created_at: float = 0.0
