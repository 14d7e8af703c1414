"""
Gap Engine
==========

Turns assessment section scores into prioritised compliance gaps and
measures how far the remediation tools have gone towards closing them.

A section becomes a gap when its percentage is below the identification
threshold (80 by default).  Gaps are ranked by ascending score so the
weakest domain is priority 1; ties keep the order in which the sections
were submitted.  Each gap carries the remediation tools listed for its
domain in :mod:`gap_journey.gap_catalog`.

All functions here are pure: they never mutate the gaps they are given
and return new lists instead.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from gap_journey.config import GAP_IDENTIFICATION_THRESHOLD, TOOL_PROGRESS_THRESHOLD
from gap_journey.gap_catalog import (
    GAP_DOMAINS,
    GAP_SEVERITY_CONFIG,
    SEVERITY_BANDS,
    get_tool_ids_for_domain,
    normalize_domain,
)


@dataclass
class SectionScore:
    """Score for one assessment section."""
    title: str
    percentage: float
    completed: bool = True


@dataclass
class AssessmentResults:
    """Payload submitted when the user finishes an assessment."""
    section_scores: List[SectionScore] = field(default_factory=list)
    overall_score: Optional[float] = None
    assessment_type: Optional[str] = None
    framework_name: Optional[str] = None
    completed_date: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AssessmentResults":
        """Build results from a camelCase or snake_case mapping."""
        raw_sections = data.get("sectionScores", data.get("section_scores")) or []
        sections = [
            SectionScore(
                title=s.get("title", ""),
                percentage=s.get("percentage", 0),
                completed=bool(s.get("completed", True)),
            )
            for s in raw_sections
        ]
        return cls(
            section_scores=sections,
            overall_score=data.get("overallScore", data.get("overall_score")),
            assessment_type=data.get("assessmentType", data.get("assessment_type")),
            framework_name=data.get("frameworkName", data.get("framework_name")),
            completed_date=data.get("completedDate", data.get("completed_date")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sectionScores": [
                {"title": s.title, "percentage": s.percentage, "completed": s.completed}
                for s in self.section_scores
            ],
            "overallScore": self.overall_score,
            "assessmentType": self.assessment_type,
            "frameworkName": self.framework_name,
            "completedDate": self.completed_date,
        }


@dataclass
class IdentifiedGap:
    """A domain that scored below the identification threshold."""
    id: str
    domain: str
    domain_title: str
    score: float
    severity: str
    priority: int
    timeline: str
    estimated_effort: str
    impact: str
    recommended_tools: List[str] = field(default_factory=list)
    description: str = ""
    status: str = "not_started"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain,
            "domainTitle": self.domain_title,
            "score": self.score,
            "severity": self.severity,
            "priority": self.priority,
            "timeline": self.timeline,
            "estimatedEffort": self.estimated_effort,
            "impact": self.impact,
            "recommendedTools": list(self.recommended_tools),
            "description": self.description,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IdentifiedGap":
        """Rebuild a gap from its stored form.

        ``id`` and ``domain`` are required; a missing key raises ``KeyError``.
        A ``recommendedTools`` value that is not a list raises ``TypeError``.
        """
        tools = data.get("recommendedTools")
        if tools is None:
            tools = []
        elif not isinstance(tools, list):
            raise TypeError("recommendedTools must be a list")
        return cls(
            id=str(data["id"]),
            domain=str(data["domain"]),
            domain_title=data.get("domainTitle", ""),
            score=data.get("score", 0),
            severity=data.get("severity", "low"),
            priority=int(data.get("priority", 0)),
            timeline=data.get("timeline", ""),
            estimated_effort=data.get("estimatedEffort", ""),
            impact=data.get("impact", ""),
            recommended_tools=[str(t) for t in tools],
            description=data.get("description", ""),
            status=data.get("status", "not_started"),
        )


@dataclass
class GapJourneyProgress:
    """Derived summary of gap closure. Never persisted."""
    total_gaps: int = 0
    completed_gaps: int = 0
    in_progress_gaps: int = 0
    critical_gaps_remaining: int = 0
    overall_completion_percentage: int = 0
    next_recommended_gap: Optional[IdentifiedGap] = None


def percentage_of(part: float, whole: float) -> int:
    """Percentage rounded half up, 0 when ``whole`` is 0."""
    if not whole:
        return 0
    return int(math.floor(part * 100 / whole + 0.5))


def gap_id_for_domain(domain: str) -> str:
    return f"gap-{domain}"


def calculate_gap_severity(score: float) -> str:
    """Band a score into critical / high / moderate / low."""
    for severity, upper in SEVERITY_BANDS:
        if score < upper:
            return severity
    return "low"


def generate_gaps_from_assessment(
    results: Union[AssessmentResults, Mapping[str, Any]],
    threshold: float = GAP_IDENTIFICATION_THRESHOLD,
) -> List[IdentifiedGap]:
    """Create one gap per domain whose section score is below ``threshold``.

    Args:
        results: ``AssessmentResults`` or a mapping with ``sectionScores``.
        threshold: Scores at or above this value never produce a gap.

    Returns:
        Gaps ordered by priority (1 = lowest score).  Sections whose title
        is not a known domain are skipped.  If a domain appears more than
        once only its lowest-scoring section is used.
    """
    if not isinstance(results, AssessmentResults):
        results = AssessmentResults.from_dict(results)

    qualifying = []
    for section in results.section_scores:
        domain = normalize_domain(section.title)
        if domain is None:
            continue
        if section.percentage < threshold:
            qualifying.append((domain, section))

    # sorted() is stable, so equal scores keep submission order
    qualifying = sorted(qualifying, key=lambda pair: pair[1].percentage)

    gaps: List[IdentifiedGap] = []
    seen = set()
    for domain, section in qualifying:
        if domain in seen:
            continue
        seen.add(domain)
        severity = calculate_gap_severity(section.percentage)
        severity_config = GAP_SEVERITY_CONFIG[severity]
        gaps.append(
            IdentifiedGap(
                id=gap_id_for_domain(domain),
                domain=domain,
                domain_title=section.title,
                score=section.percentage,
                severity=severity,
                priority=len(gaps) + 1,
                timeline=severity_config["timeline"],
                estimated_effort=severity_config["effort"],
                impact=severity_config["impact"],
                recommended_tools=get_tool_ids_for_domain(domain),
                description=f"{GAP_DOMAINS[domain]['description']} - Current score: {section.percentage}%",
                status="not_started",
            )
        )
    return gaps


def carry_forward_statuses(new_gaps: List[IdentifiedGap], previous_gaps: Iterable[IdentifiedGap]) -> List[IdentifiedGap]:
    """Copy each previous gap's status onto the regenerated gap for the same domain."""
    previous_status = {g.domain: g.status for g in previous_gaps}
    return [
        replace(gap, status=previous_status[gap.domain]) if gap.domain in previous_status else gap
        for gap in new_gaps
    ]


def calculate_tool_list_completion(tool_ids: List[str], completed_tool_ids: Iterable[str]) -> int:
    """Rounded percentage of ``tool_ids`` found in ``completed_tool_ids``; 0 for an empty list."""
    if not tool_ids:
        return 0
    completed = set(completed_tool_ids)
    done = sum(1 for t in tool_ids if t in completed)
    return percentage_of(done, len(tool_ids))


def calculate_gap_completion_from_tools(domain: str, completed_tool_ids: Iterable[str]) -> int:
    """Share of the domain's catalog tools that have been completed."""
    return calculate_tool_list_completion(get_tool_ids_for_domain(domain), completed_tool_ids)


def should_mark_gap_completed(
    domain: str,
    completed_tool_ids: Iterable[str],
    threshold: int = TOOL_PROGRESS_THRESHOLD,
) -> bool:
    """Coarse domain-wide signal: at least ``threshold`` percent of domain tools done."""
    return calculate_gap_completion_from_tools(domain, completed_tool_ids) >= threshold


def update_gap_status(gaps: List[IdentifiedGap], gap_id: str, status: str) -> List[IdentifiedGap]:
    return [replace(g, status=status) if g.id == gap_id else g for g in gaps]


def calculate_gap_journey_progress(
    gaps: List[IdentifiedGap], completed_gap_ids: Iterable[str]
) -> GapJourneyProgress:
    completed = set(completed_gap_ids)
    total = len(gaps)
    completed_count = sum(1 for g in gaps if g.id in completed)
    remaining = sorted((g for g in gaps if g.id not in completed), key=lambda g: g.priority)
    return GapJourneyProgress(
        total_gaps=total,
        completed_gaps=completed_count,
        in_progress_gaps=sum(1 for g in gaps if g.status == "in_progress"),
        critical_gaps_remaining=sum(1 for g in remaining if g.severity == "critical"),
        overall_completion_percentage=percentage_of(completed_count, total),
        next_recommended_gap=remaining[0] if remaining else None,
    )


def gaps_to_dataframe(gaps: List[IdentifiedGap]) -> pd.DataFrame:
    """Tabulate gaps, one row per gap in priority order."""
    data = [
        {
            "Priority": g.priority,
            "Domain": g.domain_title or GAP_DOMAINS.get(g.domain, {}).get("title", g.domain),
            "Score": g.score,
            "Severity": GAP_SEVERITY_CONFIG.get(g.severity, {}).get("label", g.severity),
            "Timeline": g.timeline,
            "Estimated Effort": g.estimated_effort,
            "Status": g.status.replace("_", " ").title(),
            "Recommended Tools": ", ".join(g.recommended_tools),
        }
        for g in sorted(gaps, key=lambda g: g.priority)
    ]
    return pd.DataFrame(data, columns=[
        "Priority", "Domain", "Score", "Severity", "Timeline",
        "Estimated Effort", "Status", "Recommended Tools",
    ])
