"""Mention detection over newly ingested messages."""

import re
import logging
from typing import Dict, List, Optional, Tuple

from .models import InboxEvent, MentionNotice, NoticeType
from .teams import MentionTarget

logger = logging.getLogger(__name__)

# *@Name*, @Name, *Name*
MENTION_PATTERN = re.compile(r"(?:\*@?|@)([a-zA-Z][a-zA-Z0-9_-]*)\*?")

EXCERPT_LENGTH = 200


def scan_mentions(
    events: List[InboxEvent],
    index: Dict[str, List[MentionTarget]],
    bot_user_id: Optional[str] = None,
    now: float = 0.0
) -> List[Tuple[str, MentionNotice]]:
    """
    Find addressed members in ``events``.

    Returns:
        ``(queue identity, notice)`` pairs; each mentioned member is queued
        under both its member id and its role, once per message.
    """
    if not index:
        return []

    routed: List[Tuple[str, MentionNotice]] = []
    for event in events:
        if not event.text:
            continue
        if bot_user_id and event.user_id == bot_user_id:
            continue

        seen = set()
        for match in MENTION_PATTERN.finditer(event.text):
            for target in index.get(match.group(1).lower(), []):
                key = (target.team_id, target.member_id)
                if key in seen:
                    continue
                seen.add(key)

                notice = MentionNotice(
                    sender=event.user_id or "unknown",
                    excerpt=event.text[:EXCERPT_LENGTH],
                    channel_id=event.channel_id,
                    message_ts=event.message_ts,
                    thread_ts=event.thread_ts or event.message_ts,
                    team_id=target.team_id,
                    type=NoticeType.AUTO_DETECTED,
                    created_at=now,
                )
                for identity in dict.fromkeys([target.member_id, target.role]):
                    routed.append((identity, notice))
    return routed
