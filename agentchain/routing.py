"""Routing decision engine.

Scores active team members for a unit of work from two inputs:

* skill score: proficiency-weighted coverage of the required skills (0-100)
* capacity score: how comfortably the estimate fits the member's free hours (0-100)

The combined score is a weighted blend configured in ``RoutingConfig``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .config import RoutingConfig
from .directory import Skill, TeamDirectory, TeamMember

logger = logging.getLogger(__name__)

PROFICIENCY_WEIGHTS = {1: 0.33, 2: 0.66, 3: 1.0}

SKILL_GROUPS: Dict[str, List[str]] = {
    "php": ["laravel", "symfony", "wordpress", "drupal"],
    "laravel": ["php", "eloquent", "artisan"],
    "javascript": ["js", "typescript", "ts", "node", "nodejs"],
    "react": ["reactjs", "react.js", "jsx"],
    "vue": ["vuejs", "vue.js"],
    "angular": ["angularjs", "angular.js"],
    "css": ["scss", "sass", "less", "tailwind", "bootstrap"],
    "html": ["html5", "markup"],
    "python": ["django", "flask", "fastapi"],
    "ruby": ["rails", "ruby on rails"],
    "database": ["sql", "mysql", "postgresql", "postgres", "mongodb", "redis"],
    "mysql": ["sql", "database", "mariadb"],
    "postgresql": ["postgres", "sql", "database"],
    "mongodb": ["mongo", "nosql", "database"],
    "devops": ["docker", "kubernetes", "k8s", "aws", "azure", "gcp", "ci/cd"],
    "docker": ["containers", "devops", "kubernetes"],
    "aws": ["amazon web services", "cloud", "ec2", "s3"],
    "api": ["rest", "restful", "graphql", "backend"],
    "testing": ["test", "qa", "pytest", "jest", "cypress"],
    "frontend": ["ui", "ux", "client-side", "web"],
    "backend": ["server-side", "api", "server"],
    "mobile": ["ios", "android", "react native", "flutter"],
    "design": ["ui", "ux", "figma", "sketch", "adobe"],
}


def _related_skills() -> Dict[str, List[str]]:
    related: Dict[str, List[str]] = {}
    for primary, terms in SKILL_GROUPS.items():
        related.setdefault(primary, []).extend(terms)
        for term in terms:
            related.setdefault(term, []).append(primary)
    return related


RELATED_SKILLS = _related_skills()


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SkillMatch(BaseModel):
    skill: str
    required: str
    proficiency: str
    weight: float


class CapacityAnalysis(BaseModel):
    available_hours: float
    required_hours: float
    utilization: float
    can_fit_work: bool
    penalty_applied: bool


class RoutingReasoning(BaseModel):
    skill_matches: List[SkillMatch] = Field(default_factory=list)
    missing_skills: List[str] = Field(default_factory=list)
    capacity_analysis: CapacityAnalysis
    confidence_rationale: str = ""


class RoutingCandidate(BaseModel):
    """Ranked recommendation for one team member."""

    user_id: str
    user_name: str
    skill_score: float
    capacity_score: float
    combined_score: float
    confidence: Confidence
    is_top_candidate: bool = False
    current_workload_hours: float
    reasoning: RoutingReasoning


def find_skill_match(skills: List[Skill], required: str) -> Optional[Skill]:
    """Exact match first, then substring either way, then the synonym table."""
    wanted = required.strip().lower()
    for skill in skills:
        if skill.name.lower() == wanted:
            return skill
    for skill in skills:
        name = skill.name.lower()
        if wanted in name or name in wanted:
            return skill
    terms = RELATED_SKILLS.get(wanted, []) + [wanted]
    for skill in skills:
        name = skill.name.lower()
        for term in terms:
            if name == term or term in name or name in term:
                return skill
    return None


class RoutingDecisionEngine:
    """Rank team members for a unit of work."""

    def __init__(
        self, directory: TeamDirectory, config: Optional[RoutingConfig] = None
    ) -> None:
        self.directory = directory
        self.config = config or RoutingConfig()

    def skill_score(
        self, member: TeamMember, required_skills: List[str]
    ) -> Tuple[float, List[SkillMatch], List[str]]:
        matches: List[SkillMatch] = []
        missing: List[str] = []
        total = 0.0
        for required in required_skills:
            skill = find_skill_match(member.skills, required)
            if skill is None:
                missing.append(required)
                continue
            weight = PROFICIENCY_WEIGHTS.get(skill.proficiency, 0.33)
            total += weight
            matches.append(
                SkillMatch(
                    skill=skill.name,
                    required=required,
                    proficiency=skill.proficiency_label,
                    weight=weight,
                )
            )
        score = total / len(required_skills) * 100 if required_skills else 0.0
        return round(score, 2), matches, missing

    def _base_capacity_score(self, available: float, estimated_hours: float) -> float:
        if available <= 0:
            return 0.0
        if estimated_hours <= 0:
            return min(available / self.config.baseline_weekly_hours * 100, 100.0)
        ratio = available / estimated_hours
        if ratio >= 2.0:
            return 100.0
        if ratio >= 1.5:
            return 90.0 + (ratio - 1.5) / 0.5 * 10
        if ratio >= 1.0:
            return 70.0 + (ratio - 1.0) / 0.5 * 20
        return max(ratio * 70, 0.0)

    def capacity_score(
        self, member: TeamMember, estimated_hours: float
    ) -> Tuple[float, CapacityAnalysis]:
        available = member.available_capacity()
        weekly = member.capacity_hours_per_week
        free_share = available / weekly if weekly > 0 else 0.0
        penalty = free_share < self.config.low_capacity_threshold
        score = self._base_capacity_score(available, estimated_hours)
        if penalty:
            score *= self.config.low_capacity_penalty
        analysis = CapacityAnalysis(
            available_hours=available,
            required_hours=estimated_hours,
            utilization=round(100 - free_share * 100, 2),
            can_fit_work=available >= estimated_hours,
            penalty_applied=penalty,
        )
        return round(score, 2), analysis

    def confidence(
        self, score: float, match_count: int, available: float, estimated_hours: float
    ) -> Confidence:
        if (
            score >= self.config.high_confidence_score
            and match_count >= 2
            and available >= estimated_hours
        ):
            return Confidence.HIGH
        if score >= self.config.medium_confidence_score and match_count >= 1 and available > 0:
            return Confidence.MEDIUM
        return Confidence.LOW

    @staticmethod
    def _rationale(
        confidence: Confidence,
        matched: int,
        missing: int,
        analysis: CapacityAnalysis,
    ) -> str:
        if matched == 0:
            parts = ["No matching skills found"]
        elif missing == 0:
            parts = [f"All {matched} required skills matched"]
        else:
            parts = [f"{matched} skills matched, {missing} missing"]
        parts.append(
            "sufficient capacity available"
            if analysis.can_fit_work
            else "limited capacity for this work"
        )
        if analysis.penalty_applied:
            parts.append("score penalized due to low availability")
        return f"{confidence.value.capitalize()} confidence: {'; '.join(parts)}"

    def score_member(
        self, member: TeamMember, required_skills: List[str], estimated_hours: float
    ) -> RoutingCandidate:
        skill, matches, missing = self.skill_score(member, required_skills)
        capacity, analysis = self.capacity_score(member, estimated_hours)
        combined = round(
            skill * self.config.skill_weight + capacity * self.config.capacity_weight, 2
        )
        confidence = self.confidence(
            combined, len(matches), analysis.available_hours, estimated_hours
        )
        return RoutingCandidate(
            user_id=member.user_id,
            user_name=member.name,
            skill_score=skill,
            capacity_score=capacity,
            combined_score=combined,
            confidence=confidence,
            current_workload_hours=member.current_workload_hours,
            reasoning=RoutingReasoning(
                skill_matches=matches,
                missing_skills=missing,
                capacity_analysis=analysis,
                confidence_rationale=self._rationale(
                    confidence, len(matches), len(missing), analysis
                ),
            ),
        )

    def calculate_routing(
        self, team_id: str, required_skills: List[str], estimated_hours: float = 0.0
    ) -> List[RoutingCandidate]:
        """Candidates sorted by combined score, ties going to the lighter workload."""
        required_skills = [s for s in required_skills if s and s.strip()]
        members = self.directory.active_members(team_id)
        if not required_skills or not members:
            logger.debug(
                f"No routing candidates for team_id={team_id}: "
                f"{len(required_skills)} skills, {len(members)} members"
            )
            return []

        candidates = [
            self.score_member(member, required_skills, estimated_hours or 0.0)
            for member in members
        ]
        candidates.sort(key=lambda c: (-c.combined_score, c.current_workload_hours))

        threshold = candidates[0].combined_score * (1 - self.config.top_candidate_threshold)
        for candidate in candidates:
            candidate.is_top_candidate = candidate.combined_score >= threshold
        flagged = sum(1 for c in candidates if c.is_top_candidate)
        for candidate in candidates:
            if flagged >= self.config.min_top_candidates:
                break
            if not candidate.is_top_candidate:
                candidate.is_top_candidate = True
                flagged += 1

        logger.info(
            f"Routing for team_id={team_id} scored {len(candidates)} candidates; "
            f"top={candidates[0].user_id} ({candidates[0].combined_score})"
        )
        return candidates

    def summarize(self, candidates: List[RoutingCandidate]) -> str:
        if not candidates:
            return "No candidates available for routing."
        top = [c for c in candidates if c.is_top_candidate]
        if not top:
            return "No suitable candidates found."
        names = ", ".join(c.user_name for c in top[:3])
        top_score = candidates[0].combined_score
        if len(top) == 1:
            return f"Recommended: {names} with score {top_score}"
        percent = int(self.config.top_candidate_threshold * 100)
        return f"{len(top)} candidates within {percent}% of top score ({top_score}): {names}"

    def decision(
        self, team_id: str, required_skills: List[str], estimated_hours: float = 0.0
    ) -> Dict[str, Any]:
        """Candidates plus the summary fields shown by assignment views."""
        candidates = self.calculate_routing(team_id, required_skills, estimated_hours)
        top_score = candidates[0].combined_score if candidates else 0.0
        return {
            "candidates": [c.model_dump(mode="json") for c in candidates],
            "top_score": top_score,
            "threshold_score": round(
                top_score * (1 - self.config.top_candidate_threshold), 2
            ),
            "recommendation_summary": self.summarize(candidates),
        }
