"""
Shared SQLite store.

Every process opens the same database file. All cross-process coordination
(lease, cursors, dedup, consensus status) is expressed as a single
conditional statement against it; there are no in-memory locks.
"""

import json
import time
import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .exceptions import ParseError, StoreError
from .models import (
    ConsensusKind,
    ConsensusRequest,
    ConsensusStatus,
    DecisionRecord,
    InboxEvent,
    InboxStatus,
    MentionNotice,
    Team,
    TeamMember,
    WatchedThread,
)

logger = logging.getLogger(__name__)

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS channel_cursors (
        channel_id TEXT PRIMARY KEY,
        last_ts TEXT NOT NULL,
        updated_at REAL NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS inbox (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel_id TEXT NOT NULL,
        message_ts TEXT NOT NULL,
        thread_ts TEXT,
        user_id TEXT,
        text TEXT,
        raw TEXT,
        status TEXT NOT NULL DEFAULT 'unread',
        fetched_at REAL NOT NULL,
        read_at REAL,
        read_by TEXT,
        UNIQUE (channel_id, message_ts)
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_inbox_status ON inbox (channel_id, status)',
    '''
    CREATE TABLE IF NOT EXISTS watched_threads (
        channel_id TEXT NOT NULL,
        thread_ts TEXT NOT NULL,
        context TEXT,
        created_at REAL NOT NULL,
        PRIMARY KEY (channel_id, thread_ts)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at REAL NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS consensus_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT '',
        requester TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        options TEXT,
        channel_id TEXT NOT NULL,
        message_ts TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        decided_by TEXT,
        decided_at REAL,
        method TEXT,
        selected_option TEXT,
        created_at REAL NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_consensus_status ON consensus_requests (status, scope)',
    '''
    CREATE TABLE IF NOT EXISTS mention_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identity TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_mention_identity ON mention_queue (identity)',
    '''
    CREATE TABLE IF NOT EXISTS teams (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        created_at REAL NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS team_members (
        team_id TEXT NOT NULL,
        member_id TEXT NOT NULL,
        role TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        PRIMARY KEY (team_id, member_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS decision_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scope TEXT NOT NULL,
        request_id INTEGER,
        question TEXT NOT NULL,
        answer TEXT NOT NULL,
        decided_by TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    ''',
]


def ts_value(ts: Optional[str]) -> float:
    """Numeric value of a platform sequence token ("1712345678.123456")."""
    if not ts:
        return 0.0
    try:
        return float(ts)
    except ValueError:
        return 0.0


def parse_json(raw: Optional[str], what: str) -> Any:
    """Decode a stored JSON column.

    Raises:
        ParseError: The column holds malformed JSON
    """
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"Malformed JSON in {what}: {e}") from e


def _loads(raw: Optional[str], what: str) -> Any:
    try:
        return parse_json(raw, what)
    except ParseError as e:
        logger.warning(str(e))
        return None


class CoordStore:
    """
    SQLite-backed shared state for all coordinating processes.

    Args:
        db_path: Database file; parent directories are created
        clock: Wall clock returning epoch seconds (injectable for tests)
        busy_timeout: Seconds to wait on a locked database
    """

    def __init__(
        self,
        db_path: str,
        clock: Callable[[], float] = time.time,
        busy_timeout: float = 5.0
    ):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self.busy_timeout = busy_timeout
        self._init_db()

    def _init_db(self):
        """Initialize the database schema"""
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection; commit on success, roll back on error."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Store operation failed: {e}") from e
        finally:
            conn.close()

    # Cursors

    def get_cursor(self, channel_id: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT last_ts FROM channel_cursors WHERE channel_id = ?",
                (channel_id,)
            ).fetchone()
        return row["last_ts"] if row else None

    def advance_cursor(self, channel_id: str, ts: str) -> Optional[str]:
        """Move the cursor forward to ``ts``; never moves it backward.

        Returns:
            The stored cursor after the write
        """
        with self.connect() as conn:
            conn.execute(
                '''
                INSERT INTO channel_cursors (channel_id, last_ts, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    last_ts = excluded.last_ts,
                    updated_at = excluded.updated_at
                WHERE CAST(excluded.last_ts AS REAL) > CAST(channel_cursors.last_ts AS REAL)
                ''',
                (channel_id, ts, self.clock())
            )
            row = conn.execute(
                "SELECT last_ts FROM channel_cursors WHERE channel_id = ?",
                (channel_id,)
            ).fetchone()
        return row["last_ts"] if row else None

    def all_cursors(self) -> Dict[str, str]:
        with self.connect() as conn:
            rows = conn.execute("SELECT channel_id, last_ts FROM channel_cursors").fetchall()
        return {row["channel_id"]: row["last_ts"] for row in rows}

    # Inbox

    def insert_events(self, channel_id: str, messages: List[Dict[str, Any]]) -> List[InboxEvent]:
        """
        Insert-or-ignore a batch of platform messages in one transaction.

        Returns:
            Only the events that were newly inserted
        """
        now = self.clock()
        inserted: List[InboxEvent] = []
        with self.connect() as conn:
            for message in messages:
                ts = message.get("ts")
                if not ts:
                    continue
                event = InboxEvent(
                    channel_id=channel_id,
                    message_ts=ts,
                    user_id=message.get("user") or message.get("bot_id") or "",
                    text=message.get("text") or "",
                    thread_ts=message.get("thread_ts"),
                    raw=message,
                    fetched_at=now,
                )
                cursor = conn.execute(
                    '''
                    INSERT OR IGNORE INTO inbox
                        (channel_id, message_ts, thread_ts, user_id, text, raw, status, fetched_at)
                    VALUES (?, ?, ?, ?, ?, ?, 'unread', ?)
                    ''',
                    (
                        channel_id, ts, event.thread_ts, event.user_id, event.text,
                        json.dumps(message, default=str), now
                    )
                )
                if cursor.rowcount == 1:
                    event.id = cursor.lastrowid
                    inserted.append(event)
        return inserted

    def _row_to_event(self, row: sqlite3.Row) -> InboxEvent:
        return InboxEvent(
            id=row["id"],
            channel_id=row["channel_id"],
            message_ts=row["message_ts"],
            thread_ts=row["thread_ts"],
            user_id=row["user_id"] or "",
            text=row["text"] or "",
            raw=_loads(row["raw"], f"inbox row {row['id']}"),
            status=InboxStatus(row["status"]),
            fetched_at=row["fetched_at"],
            read_at=row["read_at"],
            read_by=row["read_by"],
        )

    def get_events(
        self,
        channel_id: Optional[str] = None,
        status: Optional[InboxStatus] = None,
        limit: int = 100
    ) -> List[InboxEvent]:
        """Inbox rows oldest first, optionally filtered by channel and status."""
        query = "SELECT * FROM inbox WHERE 1 = 1"
        params: List[Any] = []
        if channel_id:
            query += " AND channel_id = ?"
            params.append(channel_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY CAST(message_ts AS REAL) ASC LIMIT ?"
        params.append(limit)

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def get_unread(self, channel_id: Optional[str] = None, limit: int = 100) -> List[InboxEvent]:
        return self.get_events(channel_id, InboxStatus.UNREAD, limit)

    def mark_read(self, channel_id: str, actor: str) -> int:
        """Mark every unread row of a channel read by ``actor``."""
        with self.connect() as conn:
            cursor = conn.execute(
                '''
                UPDATE inbox SET status = 'read', read_at = ?, read_by = ?
                WHERE channel_id = ? AND status = 'unread'
                ''',
                (self.clock(), actor, channel_id)
            )
        return cursor.rowcount

    def mark_processed(self, channel_id: str, message_ts: str) -> bool:
        with self.connect() as conn:
            cursor = conn.execute(
                '''
                UPDATE inbox SET status = 'processed',
                    read_at = COALESCE(read_at, ?)
                WHERE channel_id = ? AND message_ts = ? AND status != 'processed'
                ''',
                (self.clock(), channel_id, message_ts)
            )
        return cursor.rowcount == 1

    def unread_counts(self) -> Dict[str, int]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT channel_id, COUNT(*) AS n FROM inbox "
                "WHERE status = 'unread' GROUP BY channel_id"
            ).fetchall()
        return {row["channel_id"]: row["n"] for row in rows}

    def purge_inbox(self, older_than: float) -> int:
        """Delete read/processed rows fetched before ``older_than``."""
        with self.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM inbox WHERE status != 'unread' AND fetched_at < ?",
                (older_than,)
            )
        return cursor.rowcount

    # Watched threads

    def watch_thread(self, channel_id: str, thread_ts: str, context: str = "") -> None:
        with self.connect() as conn:
            conn.execute(
                '''
                INSERT INTO watched_threads (channel_id, thread_ts, context, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(channel_id, thread_ts) DO UPDATE SET
                    context = COALESCE(NULLIF(excluded.context, ''), watched_threads.context)
                ''',
                (channel_id, thread_ts, context, self.clock())
            )

    def unwatch_thread(self, channel_id: str, thread_ts: str) -> bool:
        with self.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM watched_threads WHERE channel_id = ? AND thread_ts = ?",
                (channel_id, thread_ts)
            )
        return cursor.rowcount == 1

    def get_watched_threads(
        self,
        channel_id: str,
        since: float = 0.0,
        limit: int = 8
    ) -> List[WatchedThread]:
        """Most recently registered threads first."""
        with self.connect() as conn:
            rows = conn.execute(
                '''
                SELECT * FROM watched_threads
                WHERE channel_id = ? AND created_at > ?
                ORDER BY created_at DESC LIMIT ?
                ''',
                (channel_id, since, limit)
            ).fetchall()
        return [
            WatchedThread(
                channel_id=row["channel_id"],
                thread_ts=row["thread_ts"],
                context=row["context"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def purge_watched(self, older_than: float) -> int:
        with self.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM watched_threads WHERE created_at < ?",
                (older_than,)
            )
        return cursor.rowcount

    # Consensus requests

    def create_request(
        self,
        kind: ConsensusKind,
        requester: str,
        title: str,
        description: str,
        channel_id: str,
        message_ts: str,
        scope: str = "",
        options: Optional[List[str]] = None
    ) -> ConsensusRequest:
        now = self.clock()
        with self.connect() as conn:
            cursor = conn.execute(
                '''
                INSERT INTO consensus_requests
                    (kind, scope, requester, title, description, options,
                     channel_id, message_ts, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)
                ''',
                (
                    kind.value, scope, requester, title, description,
                    json.dumps(options) if options else None,
                    channel_id, message_ts, now
                )
            )
            request_id = cursor.lastrowid

        logger.info(f"Consensus request #{request_id} created ({kind.value}): {title}")
        return ConsensusRequest(
            id=request_id,
            kind=kind,
            requester=requester,
            title=title,
            description=description,
            channel_id=channel_id,
            message_ts=message_ts,
            status=ConsensusStatus.PENDING,
            scope=scope,
            options=list(options or []),
            created_at=now,
        )

    def _row_to_request(self, row: sqlite3.Row) -> ConsensusRequest:
        options = _loads(row["options"], f"options of consensus request {row['id']}")
        if not isinstance(options, list):
            options = []
        return ConsensusRequest(
            id=row["id"],
            kind=ConsensusKind(row["kind"]),
            scope=row["scope"] or "",
            requester=row["requester"],
            title=row["title"],
            description=row["description"] or "",
            options=[str(o) for o in options],
            channel_id=row["channel_id"],
            message_ts=row["message_ts"],
            status=ConsensusStatus(row["status"]),
            decided_by=row["decided_by"],
            decided_at=row["decided_at"],
            method=row["method"],
            selected_option=row["selected_option"],
            created_at=row["created_at"],
        )

    def get_request(self, request_id: int) -> Optional[ConsensusRequest]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM consensus_requests WHERE id = ?",
                (request_id,)
            ).fetchone()
        return self._row_to_request(row) if row else None

    def get_request_status(self, request_id: int) -> Optional[ConsensusStatus]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT status FROM consensus_requests WHERE id = ?",
                (request_id,)
            ).fetchone()
        return ConsensusStatus(row["status"]) if row else None

    def resolve_request(
        self,
        request_id: int,
        decision: ConsensusStatus,
        decided_by: str,
        method: str,
        selected_option: Optional[str] = None
    ) -> bool:
        """
        Conditionally move a request out of ``pending``.

        Returns:
            True only for the single call whose update took effect
        """
        with self.connect() as conn:
            cursor = conn.execute(
                '''
                UPDATE consensus_requests
                SET status = ?, decided_by = ?, decided_at = ?, method = ?, selected_option = ?
                WHERE id = ? AND status = 'pending'
                ''',
                (decision.value, decided_by, self.clock(), method, selected_option, request_id)
            )
        return cursor.rowcount == 1

    def list_pending(
        self,
        scope: Optional[str] = None,
        kind: Optional[ConsensusKind] = None
    ) -> List[ConsensusRequest]:
        query = "SELECT * FROM consensus_requests WHERE status = 'pending'"
        params: List[Any] = []
        if scope is not None:
            query += " AND scope = ?"
            params.append(scope)
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at ASC, id ASC"

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_request(row) for row in rows]

    # Mention queue

    def enqueue_mention(self, identity: str, notice: MentionNotice) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO mention_queue (identity, payload, created_at) VALUES (?, ?, ?)",
                (identity, json.dumps(notice.to_dict()), self.clock())
            )

    def drain_mentions(self, identity: str) -> List[MentionNotice]:
        """Remove and return every queued notice for ``identity``.

        The read and delete share one write transaction, so concurrent
        drainers never receive the same notice. Rows whose payload cannot
        be decoded are dropped with a warning.
        """
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                "SELECT id, payload FROM mention_queue WHERE identity = ? ORDER BY id ASC",
                (identity,)
            ).fetchall()
            if rows:
                conn.execute(
                    "DELETE FROM mention_queue WHERE identity = ? AND id <= ?",
                    (identity, rows[-1]["id"])
                )

        notices: List[MentionNotice] = []
        for row in rows:
            payload = _loads(row["payload"], f"mention queue row {row['id']}")
            if not isinstance(payload, dict):
                continue
            try:
                notices.append(MentionNotice.from_dict(payload))
            except (KeyError, ValueError) as e:
                logger.warning(f"Dropping malformed mention notice {row['id']}: {e}")
        return notices

    def pending_mention_counts(self) -> Dict[str, int]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT identity, COUNT(*) AS n FROM mention_queue GROUP BY identity"
            ).fetchall()
        return {row["identity"]: row["n"] for row in rows}

    # Teams

    def upsert_team(self, team_id: str, name: str, channel_id: str, status: str = "active") -> Team:
        now = self.clock()
        with self.connect() as conn:
            conn.execute(
                '''
                INSERT INTO teams (id, name, channel_id, status, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    channel_id = excluded.channel_id,
                    status = excluded.status
                ''',
                (team_id, name, channel_id, status, now)
            )
        return Team(id=team_id, name=name, channel_id=channel_id, status=status, created_at=now)

    def set_team_status(self, team_id: str, status: str) -> bool:
        with self.connect() as conn:
            cursor = conn.execute("UPDATE teams SET status = ? WHERE id = ?", (status, team_id))
        return cursor.rowcount == 1

    def get_team(self, team_id: str) -> Optional[Team]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone()
        if not row:
            return None
        return Team(
            id=row["id"], name=row["name"], channel_id=row["channel_id"],
            status=row["status"], created_at=row["created_at"]
        )

    def list_teams(self, status: Optional[str] = "active") -> List[Team]:
        query = "SELECT * FROM teams"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        with self.connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at ASC, rowid ASC", params).fetchall()
        return [
            Team(
                id=row["id"], name=row["name"], channel_id=row["channel_id"],
                status=row["status"], created_at=row["created_at"]
            )
            for row in rows
        ]

    def add_member(self, team_id: str, member_id: str, role: str, status: str = "active") -> TeamMember:
        with self.connect() as conn:
            conn.execute(
                '''
                INSERT INTO team_members (team_id, member_id, role, status)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(team_id, member_id) DO UPDATE SET
                    role = excluded.role,
                    status = excluded.status
                ''',
                (team_id, member_id, role, status)
            )
        return TeamMember(team_id=team_id, member_id=member_id, role=role, status=status)

    def list_members(self, team_id: Optional[str] = None, status: Optional[str] = "active") -> List[TeamMember]:
        query = "SELECT * FROM team_members WHERE 1 = 1"
        params: List[Any] = []
        if team_id:
            query += " AND team_id = ?"
            params.append(team_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            TeamMember(
                team_id=row["team_id"], member_id=row["member_id"],
                role=row["role"], status=row["status"]
            )
            for row in rows
        ]

    # Decision log

    def log_decision(
        self,
        scope: str,
        question: str,
        answer: str,
        decided_by: str,
        request_id: Optional[int] = None
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                '''
                INSERT INTO decision_log (scope, request_id, question, answer, decided_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ''',
                (scope, request_id, question, answer, decided_by, self.clock())
            )

    def get_decisions(self, scope: Optional[str] = None, limit: int = 50) -> List[DecisionRecord]:
        query = "SELECT * FROM decision_log"
        params: List[Any] = []
        if scope is not None:
            query += " WHERE scope = ?"
            params.append(scope)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            DecisionRecord(
                scope=row["scope"],
                question=row["question"],
                answer=row["answer"],
                decided_by=row["decided_by"],
                request_id=row["request_id"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
