"""Tests for team bookkeeping, personas and mention scanning."""

import pytest

from chatcoord.mentions import scan_mentions
from chatcoord.models import InboxEvent
from chatcoord.teams import TeamRegistry, agent_identity


@pytest.fixture
def registry(store):
    registry = TeamRegistry(store)
    registry.register_team("team-a", "Alpha", "CA")
    registry.register_team("team-b", "Beta", "CB")
    registry.add_member("team-a", "aria-1", "lead")
    registry.add_member("team-a", "forge-1", "implementer")
    registry.add_member("team-b", "forge-2", "implementer")
    return registry


class TestTeamRegistry:

    def test_channels_of_interest(self, registry):
        """Default channel first, then active team channels without repeats."""
        registry.register_team("team-c", "Gamma", "CMAIN")

        assert registry.channels_of_interest("CMAIN") == ["CMAIN", "CA", "CB"]

    def test_closed_team_is_not_polled(self, registry):
        """Archived teams drop out of the channel list."""
        registry.close_team("team-b")

        assert registry.channels_of_interest() == ["CA"]

    def test_team_lead(self, registry):
        """The lead role is found per team."""
        assert registry.team_lead("team-a").member_id == "aria-1"
        assert registry.team_lead("team-b") is None

    def test_mention_index_keys(self, registry):
        """Members are reachable by id, role and persona name."""
        index = registry.mention_index()

        assert {t.member_id for t in index["forge"]} == {"forge-1", "forge-2"}
        assert {t.member_id for t in index["implementer"]} == {"forge-1", "forge-2"}
        assert [t.member_id for t in index["aria"]] == ["aria-1"]
        assert [t.member_id for t in index["forge-2"]] == ["forge-2"]


class TestAgentIdentity:

    def test_known_role(self):
        """Known roles post under their persona."""
        assert agent_identity("code-reviewer") == ("Lens (Code Reviewer)", ":mag:")

    def test_unknown_role(self):
        """Unknown roles fall back to the member id."""
        assert agent_identity("intern", "bob-1") == ("bob-1", ":robot_face:")


class TestScanMentions:

    def test_patterns(self, registry):
        """@Name, *@Name* and *Name* all address a member."""
        index = registry.mention_index()
        events = [
            InboxEvent("CA", "1.0", "U1", "@aria-1 look"),
            InboxEvent("CA", "2.0", "U1", "*@Aria* look"),
            InboxEvent("CA", "3.0", "U1", "*Aria* look"),
            InboxEvent("CA", "4.0", "U1", "aria look"),
        ]

        routed = scan_mentions(events, index, now=5.0)

        assert [(identity, n.message_ts) for identity, n in routed] == [
            ("aria-1", "1.0"), ("lead", "1.0"),
            ("aria-1", "2.0"), ("lead", "2.0"),
            ("aria-1", "3.0"), ("lead", "3.0"),
        ]

    def test_one_notice_per_member_per_message(self, registry):
        """Naming a member twice in one message queues it once."""
        index = registry.mention_index()
        events = [InboxEvent("CA", "1.0", "U1", "@Forge and @forge-1 again")]

        identities = [identity for identity, _ in scan_mentions(events, index)]

        assert identities.count("forge-1") == 1
        assert identities.count("forge-2") == 1

    def test_excerpt_is_truncated(self, registry):
        """Notices carry at most 200 characters of the message."""
        events = [InboxEvent("CA", "1.0", "U1", "@Aria " + "x" * 500)]

        routed = scan_mentions(events, registry.mention_index())

        assert len(routed[0][1].excerpt) == 200
