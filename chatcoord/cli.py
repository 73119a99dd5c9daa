import sys
import time
import logging
from datetime import datetime
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from .config import config
from .consensus import ResolutionStatus
from .danger import classify_command
from .digest import build_digest
from .exceptions import ChatCoordError
from .lease import PollerLease, PollerLeaseBase, RedisPollerLease
from .metrics import metrics
from .redis_pool import redis_pool_manager
from .service import CoordinationService
from .store import CoordStore

console = Console()


def _build_service() -> CoordinationService:
    return CoordinationService.from_config(config)


def _store(db_path: str) -> CoordStore:
    return CoordStore(db_path)


def _lease(store: CoordStore) -> PollerLeaseBase:
    if config.LEASE_BACKEND == "redis":
        return RedisPollerLease(redis_pool_manager.get_client(config), ttl_ms=config.LEASE_TTL_MS)
    return PollerLease(store, ttl_ms=config.LEASE_TTL_MS)


def _fail(error: Exception):
    console.print(f"[red]Error: {error}[/red]")
    sys.exit(1)


def _when(epoch: Optional[float]) -> str:
    if not epoch:
        return "-"
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


@click.group()
@click.option('--log-level', default=config.LOG_LEVEL, help='Logging level')
def cli(log_level: str):
    """chatcoord - Slack-backed coordination for agent fleets"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


@cli.command()
def run():
    """Run the background poller until Ctrl+C"""
    try:
        service = CoordinationService.session(config)
    except ChatCoordError as e:
        _fail(e)

    console.print(Panel(
        f"Process [cyan]{service.process_id}[/cyan] polling every "
        f"{config.POLL_INTERVAL_MS / 1000:.0f}s\nBot user: [green]{service.bot_user_id}[/green]",
        title="chatcoord",
        box=box.ROUNDED
    ))
    try:
        while service.poller.running:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
    finally:
        service.shutdown()


@cli.command()
@click.option('--prometheus', is_flag=True, help='Print Prometheus metrics after the cycle')
def poll(prometheus: bool):
    """Run a single poll cycle now"""
    try:
        service = _build_service()
        result = service.ingest_now()
    except ChatCoordError as e:
        _fail(e)

    try:
        if result.skipped:
            holder = service.lease.holder()
            owner = holder.holder if holder else "unknown"
            console.print(f"[yellow]Skipped: poller lease held by {owner}[/yellow]")
            return

        table = Table(title=f"Poll cycle ({result.outcome})", box=box.ROUNDED)
        table.add_column("Channel", style="cyan")
        table.add_column("Fetched", justify="right")
        table.add_column("New", justify="right", style="green")
        table.add_column("Mentions", justify="right", style="magenta")
        table.add_column("Cursor", style="yellow")
        for channel in result.channels:
            table.add_row(
                channel.channel_id,
                str(channel.fetched),
                str(channel.inserted_count),
                str(channel.mentions),
                channel.cursor or "-"
            )
        for channel, error in result.errors.items():
            table.add_row(channel, "-", "-", "-", f"[red]{error}[/red]")
        console.print(table)
        if prometheus:
            click.echo(metrics.get_metrics().decode("utf-8"))
    finally:
        service.lease.release(service.process_id)


@cli.command()
@click.option('--db-path', default=config.DB_PATH, help='Path to the shared database')
def status(db_path: str):
    """Show lease holder, unread counts and pending requests"""
    try:
        store = _store(db_path)
        holder = _lease(store).holder()
        unread = store.unread_counts()
        cursors = store.all_cursors()
        pending = store.list_pending()
    except ChatCoordError as e:
        _fail(e)

    if holder:
        state = "[green]fresh[/green]" if holder.fresh else "[red]stale[/red]"
        age = f"{holder.age_s:.1f}s" if holder.age_s is not None else "-"
        lease_text = f"Holder: [cyan]{holder.holder}[/cyan]  age {age}  {state}"
    else:
        lease_text = "[yellow]No poller lease held[/yellow]"
    console.print(Panel(lease_text, title="Poller lease", box=box.ROUNDED))

    table = Table(title="Channels", box=box.ROUNDED)
    table.add_column("Channel", style="cyan")
    table.add_column("Unread", justify="right", style="green")
    table.add_column("Cursor", style="yellow")
    for channel in sorted(set(unread) | set(cursors)):
        table.add_row(channel, str(unread.get(channel, 0)), cursors.get(channel, "-"))
    console.print(table)

    console.print(f"Pending consensus requests: [bold]{len(pending)}[/bold]")


@cli.command()
@click.option('--scope', default=None, help='Only requests for this team')
@click.option('--db-path', default=config.DB_PATH, help='Path to the shared database')
def pending(scope: Optional[str], db_path: str):
    """List pending approval and permission requests"""
    try:
        requests = _store(db_path).list_pending(scope)
    except ChatCoordError as e:
        _fail(e)

    if not requests:
        console.print("[green]No pending requests[/green]")
        return

    table = Table(title="Pending Requests", box=box.ROUNDED)
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Scope")
    table.add_column("Requester", style="green")
    table.add_column("Title")
    table.add_column("Created", style="yellow")
    for request in requests:
        table.add_row(
            str(request.id),
            request.kind.value,
            request.scope or "-",
            request.requester or "-",
            request.title,
            _when(request.created_at)
        )
    console.print(table)


@cli.command()
@click.argument('request_id', type=int)
@click.argument('decision', type=click.Choice(['approved', 'denied']))
@click.option('--decider', default='cli', help='Identity recorded as the decider')
def resolve(request_id: int, decision: str, decider: str):
    """Resolve a pending request out of band"""
    try:
        resolution = _build_service().resolve_consensus(request_id, decision, decider)
    except ChatCoordError as e:
        _fail(e)

    if resolution.status == ResolutionStatus.RESOLVED:
        console.print(f"[green]Request #{request_id} {decision} by {decider}[/green]")
    elif resolution.status == ResolutionStatus.ALREADY_RESOLVED:
        console.print(
            f"[yellow]Request #{request_id} was already {resolution.decision.value} "
            f"by {resolution.decided_by}[/yellow]"
        )
    else:
        console.print(f"[red]Request #{request_id} not found[/red]")
        sys.exit(1)


@cli.command()
@click.argument('channel', required=False)
@click.option('--digest', 'as_digest', is_flag=True, help='Group messages by sender and thread')
@click.option('--mark-read', is_flag=True, help='Mark the shown messages read')
@click.option('--actor', default='cli', help='Identity recorded as the reader')
@click.option('--db-path', default=config.DB_PATH, help='Path to the shared database')
def inbox(channel: Optional[str], as_digest: bool, mark_read: bool, actor: str, db_path: str):
    """Show unread inbox messages for a channel"""
    channel = channel or config.SLACK_DEFAULT_CHANNEL
    if not channel:
        _fail(ValueError("No channel given and SLACK_DEFAULT_CHANNEL is not set"))

    try:
        store = _store(db_path)
        events = store.get_unread(channel)
    except ChatCoordError as e:
        _fail(e)

    if not events:
        console.print(f"[green]No unread messages in {channel}[/green]")
        return

    if as_digest:
        digest = build_digest(events)
        console.print(Panel(
            digest.combined_text,
            title=f"{channel}: {digest.total} unread in {len(digest.groups)} groups",
            box=box.ROUNDED
        ))
    else:
        table = Table(title=f"Unread in {channel}", box=box.ROUNDED)
        table.add_column("ts", style="yellow", no_wrap=True)
        table.add_column("User", style="cyan")
        table.add_column("Thread", style="magenta")
        table.add_column("Text")
        for event in events:
            text = event.text if len(event.text) <= 120 else event.text[:117] + "..."
            table.add_row(event.message_ts, event.user_id or "-", event.thread_ts or "-", text)
        console.print(table)

    if mark_read:
        count = store.mark_read(channel, actor)
        console.print(f"[dim]Marked {count} messages read[/dim]")


@cli.command()
@click.argument('identity')
@click.option('--db-path', default=config.DB_PATH, help='Path to the shared database')
def mentions(identity: str, db_path: str):
    """Drain queued mention notices for a member id or role"""
    try:
        notices = _store(db_path).drain_mentions(identity)
    except ChatCoordError as e:
        _fail(e)

    if not notices:
        console.print(f"[green]No mentions for {identity}[/green]")
        return

    table = Table(title=f"Mentions for {identity}", box=box.ROUNDED)
    table.add_column("Type", style="magenta")
    table.add_column("From", style="cyan")
    table.add_column("Channel")
    table.add_column("Thread", style="yellow")
    table.add_column("Message")
    for notice in notices:
        table.add_row(
            notice.type.value, notice.sender, notice.channel_id,
            notice.thread_ts or "-", notice.excerpt
        )
    console.print(table)


@cli.command(name='register-team')
@click.argument('team_id')
@click.argument('name')
@click.argument('channel_id')
@click.option('--db-path', default=config.DB_PATH, help='Path to the shared database')
def register_team(team_id: str, name: str, channel_id: str, db_path: str):
    """Register a team whose channel should be polled"""
    try:
        _store(db_path).upsert_team(team_id, name, channel_id)
    except ChatCoordError as e:
        _fail(e)
    console.print(f"[green]Team {team_id} registered on {channel_id}[/green]")


@cli.command(name='add-member')
@click.argument('team_id')
@click.argument('member_id')
@click.argument('role')
@click.option('--db-path', default=config.DB_PATH, help='Path to the shared database')
def add_member(team_id: str, member_id: str, role: str, db_path: str):
    """Add a member to a team"""
    try:
        store = _store(db_path)
        if store.get_team(team_id) is None:
            _fail(ValueError(f"Unknown team: {team_id}"))
        store.add_member(team_id, member_id, role)
    except ChatCoordError as e:
        _fail(e)
    console.print(f"[green]{member_id} ({role}) added to {team_id}[/green]")


@cli.command(name='check-command')
@click.argument('command')
@click.option('--ask', is_flag=True, help='Request approval if the command is dangerous')
@click.option('--requester', default='', help='Identity requesting the approval')
@click.option('--timeout', type=int, default=None, help='Approval timeout in seconds')
def check_command(command: str, ask: bool, requester: str, timeout: Optional[int]):
    """Classify a shell command; exit 2 if it must not run"""
    if not ask:
        assessment = classify_command(command)
        resolution = None
    else:
        try:
            assessment, resolution = _build_service().check_command(
                command, ask=True, requester=requester, timeout_s=timeout
            )
        except ChatCoordError as e:
            _fail(e)

    table = Table(title="Sub-commands", box=box.ROUNDED)
    table.add_column("Command", style="cyan")
    table.add_column("Rule", style="red")
    matched = {m.sub_command: m.rule for m in assessment.matches}
    for sub_command in assessment.sub_commands:
        table.add_row(sub_command, matched.get(sub_command, "-"))
    console.print(table)

    if not assessment.dangerous:
        console.print("[green]Safe[/green]")
        return

    if resolution is None:
        console.print("[red]Dangerous: approval required[/red]")
        sys.exit(2)

    if resolution.approved:
        console.print(f"[green]Approved by {resolution.decided_by}[/green]")
        return
    if resolution.status == ResolutionStatus.TIMEOUT:
        console.print(f"[yellow]No answer; request #{resolution.request_id} left pending[/yellow]")
    else:
        console.print(f"[red]Denied by {resolution.decided_by}[/red]")
    sys.exit(2)


if __name__ == '__main__':
    cli()
