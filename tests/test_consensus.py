"""Tests for race-safe approval and permission consensus."""

import threading

import pytest

from chatcoord.consensus import (
    TIMEOUT_REACTION,
    WAITING_REACTION,
    ConsensusResolver,
    ResolutionStatus,
    classify_reactions,
    classify_reply,
    classify_reply_text,
    latest_reply,
    select_option,
)
from chatcoord.exceptions import TransientError
from chatcoord.models import ConsensusKind, ConsensusStatus, NoticeType, ResolutionMethod
from chatcoord.store import CoordStore

from conftest import BOT_USER, MAIN_CHANNEL, FakePlatform

REPLY_TS = "1700000100.000000"


@pytest.fixture
def resolver(service):
    """The service's consensus resolver."""
    return service.resolver


@pytest.fixture
def request_(service):
    """A pending approval request posted to the main channel."""
    return service.create_consensus_request("Deploy", "Ship build 42", requester="forge-1")


class TestReplyClassification:
    """Approve/deny vocabulary for text replies."""

    @pytest.mark.parametrize("text", ["ok", "Yes", "y", "lgtm", "approve.", "go ahead", "승인", "ㅇㅇ"])
    def test_approve_words(self, text):
        """Exact or prefix matches approve."""
        assert classify_reply_text(text) == ConsensusStatus.APPROVED

    @pytest.mark.parametrize("text", ["no", "n", "Deny", "stop.", "cancel that", "거부", "ㄴ"])
    def test_deny_words(self, text):
        """Exact or prefix matches deny."""
        assert classify_reply_text(text) == ConsensusStatus.DENIED

    @pytest.mark.parametrize("text", ["", "nothing yet", "please deny", "yesterday", "?"])
    def test_no_decision(self, text):
        """Substrings and unrelated text decide nothing."""
        assert classify_reply_text(text) is None

    def test_latest_non_bot_reply_wins(self):
        """Only the newest human reply after the prompt counts."""
        messages = [
            {"ts": "10.0", "user": BOT_USER, "text": "prompt"},
            {"ts": "11.0", "user": "U1", "text": "no"},
            {"ts": "12.0", "user": "U2", "text": "yes"},
            {"ts": "13.0", "user": BOT_USER, "text": "reminder"},
        ]

        reply = latest_reply(messages, "10.0", BOT_USER)

        assert reply["user"] == "U2"
        assert classify_reply(reply).decision == ConsensusStatus.APPROVED


class TestReactionClassification:
    """Decisions from prompt reactions."""

    def test_deny_beats_approve_in_any_order(self):
        """A deny-class reaction wins even when listed after approvals."""
        reactions = [
            {"name": "white_check_mark", "users": ["U1"]},
            {"name": "x", "users": ["U2"]},
        ]

        verdict = classify_reactions(reactions, BOT_USER)

        assert verdict.decision == ConsensusStatus.DENIED
        assert verdict.decided_by == "U2"
        assert verdict.method == ResolutionMethod.REACTION

    def test_bot_reactions_are_ignored(self):
        """The bot's own marker reactions never decide."""
        reactions = [
            {"name": "white_check_mark", "users": [BOT_USER]},
            {"name": WAITING_REACTION, "users": [BOT_USER]},
        ]

        assert classify_reactions(reactions, BOT_USER) is None

    def test_approve_reaction(self):
        """+1 from a human approves."""
        verdict = classify_reactions([{"name": "+1", "users": [BOT_USER, "U3"]}], BOT_USER)

        assert verdict.decision == ConsensusStatus.APPROVED
        assert verdict.decided_by == "U3"


class TestChoiceSelection:
    """Option requests resolve by number or verbatim text."""

    def test_select_by_number(self):
        """A leading number picks the 1-based option."""
        assert select_option("2", ["red", "blue"]) == "blue"
        assert select_option("1) go with red", ["red", "blue"]) == "red"

    def test_select_by_text(self):
        """Verbatim option text matches case-insensitively."""
        assert select_option("Blue", ["red", "blue"]) == "blue"

    def test_out_of_range(self):
        """Unknown numbers select nothing."""
        assert select_option("7", ["red", "blue"]) is None

    def test_choice_reply_resolves(self, service, platform):
        """A numbered reply resolves a choice request."""
        request = service.create_consensus_request(
            "Color", "Pick one", requester="pixel-1", options=["red", "blue"]
        )
        platform.threads[(MAIN_CHANNEL, request.message_ts)] = [
            {"ts": REPLY_TS, "user": "U1", "text": "2"}
        ]

        resolution = service.wait_for_consensus(request.id, timeout_s=10, poll_interval_s=1)

        assert resolution.status == ResolutionStatus.RESOLVED
        assert resolution.method == ResolutionMethod.CHOICE.value
        assert resolution.selected_option == "blue"
        assert service.store.get_request(request.id).selected_option == "blue"


class TestSingleResolution:
    """Exactly one decision is ever persisted."""

    def test_second_resolver_sees_first_decision(self, service, db_path, clock):
        """Request 7: A approves, then B denies; B gets the already-resolved outcome."""
        for i in range(6):
            service.store.create_request(ConsensusKind.APPROVAL, "x", f"filler {i}", "", MAIN_CHANNEL, f"{i}.0")
        request = service.create_consensus_request("Deploy", "Ship it", requester="forge-1")
        assert request.id == 7

        process_b = ConsensusResolver(CoordStore(db_path, clock=clock), FakePlatform(), BOT_USER)

        first = service.resolver.resolve(7, "approved", "A")
        clock.advance(0.001)
        second = process_b.resolve(7, "denied", "B")

        assert first.status == ResolutionStatus.RESOLVED
        assert second.status == ResolutionStatus.ALREADY_RESOLVED
        assert second.decision == ConsensusStatus.APPROVED
        assert second.decided_by == "A"

        stored = service.store.get_request(7)
        assert stored.status == ConsensusStatus.APPROVED
        assert stored.decided_by == "A"

    def test_concurrent_attempts_resolve_once(self, request_, db_path):
        """Many processes racing with mixed decisions produce one winner."""
        attempts = 8
        barrier = threading.Barrier(attempts)
        results = [None] * attempts

        def attempt(i):
            resolver = ConsensusResolver(CoordStore(db_path), FakePlatform(), BOT_USER)
            decision = "approved" if i % 2 == 0 else "denied"
            barrier.wait()
            results[i] = resolver.resolve(request_.id, decision, f"proc-{i}")

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r.status == ResolutionStatus.RESOLVED]
        losers = [r for r in results if r.status == ResolutionStatus.ALREADY_RESOLVED]
        assert len(winners) == 1
        assert len(losers) == attempts - 1
        assert all(r.decision == winners[0].decision for r in losers)
        assert all(r.decided_by == winners[0].decided_by for r in losers)

    def test_unknown_request(self, resolver, service):
        """Unknown ids are reported, not raised."""
        assert resolver.resolve(999, "approved", "A").status == ResolutionStatus.NOT_FOUND
        assert service.wait_for_consensus(999).status == ResolutionStatus.NOT_FOUND

    def test_pending_is_not_a_decision(self, resolver, request_):
        """resolve refuses to set a request back to pending."""
        with pytest.raises(ValueError):
            resolver.resolve(request_.id, "pending", "A")


class TestWaitForDecision:
    """Polling a pending request to a decision."""

    def test_reaction_resolves_and_acknowledges(self, service, platform, request_):
        """An approve reaction resolves; the prompt gets the ack markers."""
        prompt = (MAIN_CHANNEL, request_.message_ts)
        platform.reactions[prompt] = [{"name": "white_check_mark", "users": ["U1"]}]

        resolution = service.wait_for_consensus(request_.id, timeout_s=10, poll_interval_s=1)

        assert resolution.status == ResolutionStatus.RESOLVED
        assert resolution.approved is True
        assert resolution.decided_by == "U1"
        assert (MAIN_CHANNEL, request_.message_ts, WAITING_REACTION) in platform.removed_reactions
        assert (MAIN_CHANNEL, request_.message_ts, "white_check_mark") in platform.added_reactions
        confirmations = platform.posts_to(MAIN_CHANNEL, thread_ts=request_.message_ts)
        assert len(confirmations) == 1
        assert "Approved by U1" in confirmations[0]["text"]

    def test_text_reply_resolves_on_even_cycle(self, service, platform, request_, clock):
        """Replies are checked on the second cycle."""
        platform.threads[(MAIN_CHANNEL, request_.message_ts)] = [
            {"ts": request_.message_ts, "user": BOT_USER, "text": "prompt"},
            {"ts": REPLY_TS, "user": "U2", "text": "deny not today"},
        ]

        resolution = service.wait_for_consensus(request_.id, timeout_s=10, poll_interval_s=1)

        assert resolution.status == ResolutionStatus.RESOLVED
        assert resolution.decision == ConsensusStatus.DENIED
        assert resolution.method == ResolutionMethod.TEXT_REPLY.value
        assert platform.calls.count("get_reactions") == 1
        assert platform.calls.count("replies") == 1
        assert clock.sleeps == [1, 1]

    def test_timeout_leaves_request_pending(self, service, platform, request_):
        """No answer: TIMEOUT, hourglass marker, status still pending; a later resolve still wins."""
        resolution = service.wait_for_consensus(request_.id, timeout_s=3, poll_interval_s=1)

        assert resolution.status == ResolutionStatus.TIMEOUT
        assert resolution.approved is None
        assert service.store.get_request_status(request_.id) == ConsensusStatus.PENDING
        assert (MAIN_CHANNEL, request_.message_ts, TIMEOUT_REACTION) in platform.added_reactions

        late = service.resolve_consensus(request_.id, "approved", "lead")
        assert late.status == ResolutionStatus.RESOLVED

    def test_out_of_band_resolution_ends_wait(self, store, platform, request_, db_path, clock):
        """A resolve from another process is observed at the next status check."""
        other = ConsensusResolver(CoordStore(db_path, clock=clock), FakePlatform(), BOT_USER)

        def sleep(seconds):
            clock.sleep(seconds)
            if len(clock.sleeps) == 2:
                other.resolve(request_.id, "denied", "cli")

        resolver = ConsensusResolver(store, platform, BOT_USER, clock=clock, sleep=sleep)
        resolution = resolver.wait_for_decision(request_, timeout_s=30, poll_interval_s=1)

        assert resolution.status == ResolutionStatus.ALREADY_RESOLVED
        assert resolution.decision == ConsensusStatus.DENIED
        assert resolution.decided_by == "cli"

    def test_poll_errors_do_not_end_wait(self, service, platform, request_):
        """A failing platform read is retried on later cycles."""
        platform.failures["get_reactions"] = TransientError("boom")
        platform.threads[(MAIN_CHANNEL, request_.message_ts)] = [
            {"ts": REPLY_TS, "user": "U1", "text": "ok"}
        ]

        resolution = service.wait_for_consensus(request_.id, timeout_s=10, poll_interval_s=1)

        assert resolution.status == ResolutionStatus.RESOLVED
        assert resolution.approved is True

    def test_stop_ends_wait(self, service, request_):
        """Shutdown interrupts a pending wait."""
        service.stop_event.set()

        resolution = service.wait_for_consensus(request_.id, timeout_s=60, poll_interval_s=1)

        assert resolution.status == ResolutionStatus.TIMEOUT
        assert service.store.get_request_status(request_.id) == ConsensusStatus.PENDING


class TestAcknowledgement:
    """Best-effort side effects after a win."""

    def test_ack_failure_does_not_revert(self, service, platform, request_):
        """A failed confirmation post leaves the decision in place."""
        platform.failures["post_message"] = TransientError("down")
        platform.failures["add_reaction"] = TransientError("down")

        resolution = service.resolve_consensus(request_.id, "approved", "lead")

        assert resolution.status == ResolutionStatus.RESOLVED
        assert service.store.get_request_status(request_.id) == ConsensusStatus.APPROVED

    def test_decision_is_logged(self, service, request_):
        """Winning decisions are appended to the decision log."""
        service.resolve_consensus(request_.id, "denied", "lead")

        decisions = service.store.get_decisions()
        assert len(decisions) == 1
        assert decisions[0].question == "Deploy"
        assert decisions[0].answer == "denied"
        assert decisions[0].request_id == request_.id


class TestRequests:
    """Creating approval and permission requests."""

    def test_create_posts_prompt_and_marks_waiting(self, service, platform):
        """The prompt is posted and gets the waiting marker."""
        request = service.create_consensus_request("Deploy", "Ship it", requester="forge-1", decider="aria-1")

        assert request.is_pending
        prompt = platform.posts_to(MAIN_CHANNEL)[0]
        assert prompt["ts"] == request.message_ts
        assert "Deploy" in prompt["text"]
        assert (MAIN_CHANNEL, request.message_ts, WAITING_REACTION) in platform.added_reactions

        notices = service.drain_mentions("aria-1")
        assert notices[0].type == NoticeType.APPROVAL_REQUEST
        assert notices[0].consensus_id == request.id

    def test_request_approval_notifies_team_channel(self, service, platform):
        """A scoped approval also posts a notice in the team channel."""
        service.teams.register_team("team-a", "Alpha", "C2")

        resolution = service.request_approval("Merge", "PR 12", requester="lens-1", scope="team-a", timeout_s=2)

        assert resolution.status == ResolutionStatus.TIMEOUT
        assert len(platform.posts_to(MAIN_CHANNEL)) == 1
        assert "Awaiting approval" in platform.posts_to("C2")[0]["text"]

    def test_request_permission(self, service, platform):
        """Permission requests go to the team channel as the requester's persona."""
        service.teams.register_team("team-a", "Alpha", "C2")
        service.teams.add_member("team-a", "aria-1", "lead")
        service.teams.add_member("team-a", "forge-1", "implementer")

        resolution = service.request_permission(
            "team-a", "forge-1", "Drop staging table", "Schema reset", timeout_s=2
        )

        assert resolution.status == ResolutionStatus.TIMEOUT
        prompt = platform.posts_to("C2")[0]
        assert prompt["username"] == "Forge (Full-stack Engineer)"
        assert prompt["icon_emoji"] == ":hammer:"
        assert "Drop staging table" in prompt["text"]
        assert "Permission request" in platform.posts_to(MAIN_CHANNEL)[0]["text"]

        notices = service.drain_mentions("aria-1")
        assert notices[0].type == NoticeType.PERMISSION_REQUEST
        pending = service.list_pending_consensus(scope="team-a", kind=ConsensusKind.PERMISSION)
        assert notices[0].consensus_id == pending[0].id

    def test_request_permission_unknown_team(self, service):
        """Unknown teams are rejected before posting."""
        with pytest.raises(ValueError):
            service.request_permission("nope", "forge-1", "x", "y", timeout_s=1)
