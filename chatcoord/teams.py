"""
Locally-known teams, their members, and agent personas.

Teams matter to the coordination layer in three ways: their channels are
polled, their members are addressable by mention, and the team lead is
the decider for permission requests.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .models import Team, TeamMember
from .store import CoordStore

logger = logging.getLogger(__name__)

LEAD_ROLE = "lead"


@dataclass(frozen=True)
class AgentPersona:
    display_name: str
    emoji: str
    title: str


AGENT_PERSONAS: Dict[str, AgentPersona] = {
    "lead": AgentPersona("Aria", ":crown:", "Team Lead"),
    "planner": AgentPersona("Sage", ":clipboard:", "Planner"),
    "sub-leader": AgentPersona("Nova", ":dart:", "Track Sub-leader"),
    "implementer": AgentPersona("Forge", ":hammer:", "Full-stack Engineer"),
    "db-specialist": AgentPersona("Quinn", ":file_cabinet:", "DB Specialist"),
    "code-reviewer": AgentPersona("Lens", ":mag:", "Code Reviewer"),
    "ux-reviewer": AgentPersona("Pixel", ":art:", "UX Reviewer"),
    "debugger": AgentPersona("Trace", ":bug:", "Debugger"),
    "test-writer": AgentPersona("Spec", ":test_tube:", "Test Writer"),
    "refactorer": AgentPersona("Prism", ":recycle:", "Refactorer"),
    "validator": AgentPersona("Gate", ":white_check_mark:", "Validator"),
    "researcher": AgentPersona("Scout", ":microscope:", "Researcher"),
}

def agent_identity(role: str, member_id: str = "") -> Tuple[str, str]:
    """Username and icon to post as for a member of ``role``."""
    persona = AGENT_PERSONAS.get(role)
    if persona:
        return f"{persona.display_name} ({persona.title})", persona.emoji
    return member_id or role, ":robot_face:"


@dataclass(frozen=True)
class MentionTarget:
    team_id: str
    member_id: str
    role: str


class TeamRegistry:
    """Team bookkeeping backed by the shared store."""

    def __init__(self, store: CoordStore):
        self.store = store

    def register_team(self, team_id: str, name: str, channel_id: str) -> Team:
        team = self.store.upsert_team(team_id, name, channel_id)
        logger.info(f"Registered team {team_id} ({name}) on {channel_id}")
        return team

    def close_team(self, team_id: str) -> bool:
        return self.store.set_team_status(team_id, "archived")

    def add_member(self, team_id: str, member_id: str, role: str) -> TeamMember:
        return self.store.add_member(team_id, member_id, role)

    def get_team(self, team_id: str) -> Optional[Team]:
        return self.store.get_team(team_id)

    def active_teams(self) -> List[Team]:
        return self.store.list_teams(status="active")

    def channels_of_interest(self, default_channel: str = "") -> List[str]:
        """Default channel first, then every active team channel, deduplicated."""
        channels: List[str] = []
        if default_channel:
            channels.append(default_channel)
        for team in self.active_teams():
            if team.channel_id and team.channel_id not in channels:
                channels.append(team.channel_id)
        return channels

    def get_member(self, team_id: str, member_id: str) -> Optional[TeamMember]:
        for member in self.store.list_members(team_id, status=None):
            if member.member_id == member_id:
                return member
        return None

    def team_lead(self, team_id: str) -> Optional[TeamMember]:
        for member in self.store.list_members(team_id):
            if member.role == LEAD_ROLE:
                return member
        return None

    def mention_index(self) -> Dict[str, List[MentionTarget]]:
        """
        Lowercased name -> members it addresses.

        Every active member of an active team is reachable by member id,
        by role, and by the display name of the role's persona.
        """
        index: Dict[str, List[MentionTarget]] = {}
        active = {team.id for team in self.active_teams()}

        for member in self.store.list_members():
            if member.team_id not in active:
                continue
            target = MentionTarget(member.team_id, member.member_id, member.role)
            keys = [member.member_id.lower(), member.role.lower()]
            persona = AGENT_PERSONAS.get(member.role)
            if persona:
                keys.append(persona.display_name.lower())

            for key in keys:
                targets = index.setdefault(key, [])
                if target not in targets:
                    targets.append(target)
        return index
