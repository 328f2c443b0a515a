"""Team directory: members, their skills and weekly capacity."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

PROFICIENCY_LABELS = {1: "Basic", 2: "Intermediate", 3: "Advanced"}


class Skill(BaseModel):
    name: str
    proficiency: int = Field(default=1, ge=1, le=3)

    @property
    def proficiency_label(self) -> str:
        return PROFICIENCY_LABELS.get(self.proficiency, "Basic")


class TeamMember(BaseModel):
    user_id: str
    name: str
    email: Optional[str] = None
    active: bool = True
    capacity_hours_per_week: float = 40.0
    current_workload_hours: float = 0.0
    skills: List[Skill] = Field(default_factory=list)

    def available_capacity(self) -> float:
        return max(self.capacity_hours_per_week - self.current_workload_hours, 0.0)


class Team(BaseModel):
    id: str
    name: str = ""
    owner_id: Optional[str] = None
    members: List[TeamMember] = Field(default_factory=list)


class TeamDirectory:
    """In-process directory of teams used by routing and trigger resolution."""

    def __init__(self, teams: Optional[List[Team]] = None) -> None:
        self._teams: Dict[str, Team] = {}
        for team in teams or []:
            self.add_team(team)

    def add_team(self, team: Team) -> Team:
        self._teams[team.id] = team
        return team

    def get_team(self, team_id: str) -> Optional[Team]:
        return self._teams.get(team_id)

    def active_members(self, team_id: str) -> List[TeamMember]:
        team = self._teams.get(team_id)
        if team is None:
            return []
        return [m for m in team.members if m.active]

    def find_member(self, team_id: str, user_id: str) -> Optional[TeamMember]:
        for member in self.active_members(team_id):
            if member.user_id == user_id:
                return member
        return None

    def capacity_summary(self, team_id: str) -> Dict[str, float]:
        members = self.active_members(team_id)
        total_capacity = sum(m.capacity_hours_per_week for m in members)
        total_workload = sum(m.current_workload_hours for m in members)
        return {
            "total_capacity": total_capacity,
            "total_workload": total_workload,
            "total_available": total_capacity - total_workload,
            "utilization_percentage": round(total_workload / total_capacity * 100, 2)
            if total_capacity > 0
            else 0.0,
            "members_with_capacity": sum(1 for m in members if m.available_capacity() > 0),
            "members_overloaded": sum(
                1 for m in members if m.current_workload_hours > m.capacity_hours_per_week
            ),
        }
