"""
Digest of an inbox backlog, grouped by sender and thread.

Pure functions; no store or network access.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import InboxEvent

PREVIEW_LENGTH = 300
MAX_PREVIEWS = 5


@dataclass
class DigestGroup:
    user: str
    thread_ts: Optional[str]
    count: int = 0
    first_ts: str = ""
    last_ts: str = ""
    messages: List[str] = field(default_factory=list)
    omitted: int = 0

    @property
    def label(self) -> str:
        thread = f" (thread {self.thread_ts})" if self.thread_ts else ""
        return f"{self.user}{thread}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "thread_ts": self.thread_ts,
            "count": self.count,
            "first_ts": self.first_ts,
            "last_ts": self.last_ts,
            "messages": list(self.messages),
            "omitted": self.omitted,
        }


@dataclass
class Digest:
    total: int
    groups: List[DigestGroup]
    combined_text: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "groups": [g.to_dict() for g in self.groups],
            "combined_text": self.combined_text,
        }


def omitted_marker(count: int) -> str:
    noun = "message" if count == 1 else "messages"
    return f"... {count} earlier {noun} omitted"


def build_digest(
    events: List[InboxEvent],
    preview_length: int = PREVIEW_LENGTH,
    max_previews: int = MAX_PREVIEWS
) -> Digest:
    """
    Group ``events`` by (sender, thread or channel) in first-seen order.

    Each group keeps at most ``max_previews`` of its most recent messages,
    each truncated to ``preview_length`` characters; older ones are
    replaced by a single "N earlier messages omitted" marker.
    """
    groups: Dict[tuple, DigestGroup] = {}
    previews: Dict[tuple, List[str]] = {}

    for event in events:
        user = event.user_id or "unknown"
        key = (user, event.thread_ts or "channel")
        group = groups.get(key)
        if group is None:
            group = DigestGroup(user=user, thread_ts=event.thread_ts, first_ts=event.message_ts)
            groups[key] = group
            previews[key] = []
        group.count += 1
        group.last_ts = event.message_ts
        previews[key].append((event.text or "")[:preview_length])

    lines: List[str] = []
    for key, group in groups.items():
        excerpts = previews[key]
        if len(excerpts) > max_previews:
            group.omitted = len(excerpts) - max_previews
            excerpts = excerpts[-max_previews:] if max_previews > 0 else []
        group.messages = excerpts

        lines.append(f"-- {group.label} ({group.count}) --")
        if group.omitted:
            lines.append(f"  {omitted_marker(group.omitted)}")
        lines.extend(f"  * {m}" for m in group.messages)

    return Digest(
        total=len(events),
        groups=list(groups.values()),
        combined_text="\n".join(lines),
    )
