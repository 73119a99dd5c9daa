"""
chatcoord - coordination for agent fleets over a shared Slack channel

Provides:
- Rate-limited, retrying Slack client
- Single active poller elected by a TTL lease
- Cursor-tracked, deduplicating inbox with mention routing
- Race-safe approval and permission requests
- Backlog digests and shell command danger checks

Usage:
    from chatcoord import CoordinationService

    with CoordinationService.session() as coord:
        result = coord.request_approval("Deploy", "Ship build 42 to prod")
        if result.approved:
            ...
"""

from .consensus import Resolution, ResolutionStatus
from .exceptions import (
    AuthorizationError,
    ChatCoordError,
    ParseError,
    ShutdownError,
    StoreError,
    ThrottledError,
    TransientError,
)
from .models import ConsensusKind, ConsensusStatus
from .service import CoordinationService

__version__ = "0.1.0"

__all__ = [
    "CoordinationService",
    "Resolution",
    "ResolutionStatus",
    "ConsensusKind",
    "ConsensusStatus",
    "ChatCoordError",
    "ThrottledError",
    "TransientError",
    "AuthorizationError",
    "StoreError",
    "ParseError",
    "ShutdownError",
]
