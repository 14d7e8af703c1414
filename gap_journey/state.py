"""
Journey state records.

``JourneyState`` is the full snapshot that is persisted, validated,
exported and imported.  ``ToolUsage`` records when each tool was first
started and first completed.  Both convert to and from the camelCase
dictionaries used in storage and in export envelopes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from dateutil.parser import isoparse

from gap_journey.config import STEP_KEYS
from gap_journey.gap_engine import IdentifiedGap


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime.

    Naive values are treated as UTC.  Returns ``None`` for empty or
    unparseable input.
    """
    if not value:
        return None
    try:
        parsed = isoparse(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def milliseconds_between(start: Optional[str], end: Optional[str]) -> int:
    start_dt, end_dt = parse_timestamp(start), parse_timestamp(end)
    if start_dt is None or end_dt is None:
        return 0
    return max(0, int((end_dt - start_dt).total_seconds() * 1000))


@dataclass
class ToolUsage:
    tool_id: str
    started_at: str
    completed_at: Optional[str] = None
    domain: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"toolId": self.tool_id, "startedAt": self.started_at}
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        if self.domain is not None:
            data["domain"] = self.domain
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ToolUsage":
        return cls(
            tool_id=str(data["toolId"]),
            started_at=data.get("startedAt", ""),
            completed_at=data.get("completedAt"),
            domain=data.get("domain"),
        )


@dataclass
class JourneyState:
    """Complete journey snapshot."""
    current_step_index: int = 0
    completed_steps: List[str] = field(default_factory=list)
    identified_gaps: List[IdentifiedGap] = field(default_factory=list)
    completed_gap_ids: List[str] = field(default_factory=list)
    completed_tool_ids: List[str] = field(default_factory=list)
    has_completed_assessment: bool = False
    version: Optional[str] = None
    started_at: Optional[str] = None
    last_updated_at: Optional[str] = None

    @property
    def current_step_key(self) -> Optional[str]:
        if 0 <= self.current_step_index < len(STEP_KEYS):
            return STEP_KEYS[self.current_step_index]
        return None

    def gap_by_id(self, gap_id: str) -> Optional[IdentifiedGap]:
        return next((g for g in self.identified_gaps if g.id == gap_id), None)

    def gap_for_domain(self, domain: str) -> Optional[IdentifiedGap]:
        return next((g for g in self.identified_gaps if g.domain == domain), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentStepIndex": self.current_step_index,
            "completedSteps": list(self.completed_steps),
            "identifiedGaps": [g.to_dict() for g in self.identified_gaps],
            "completedGapIds": list(self.completed_gap_ids),
            "completedToolIds": list(self.completed_tool_ids),
            "hasCompletedAssessment": self.has_completed_assessment,
            "version": self.version,
            "startedAt": self.started_at,
            "lastUpdatedAt": self.last_updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JourneyState":
        """Rebuild a snapshot from its dictionary form.

        Missing collections default to empty.  Values of the wrong shape
        raise ``TypeError``/``ValueError``/``KeyError`` so callers can report
        a structured error instead of applying half-parsed data.
        """
        if not isinstance(data, Mapping):
            raise TypeError("journey data must be an object")
        return cls(
            current_step_index=int(data.get("currentStepIndex", 0)),
            completed_steps=_string_list(data.get("completedSteps"), "completedSteps"),
            identified_gaps=[IdentifiedGap.from_dict(g) for g in _list(data.get("identifiedGaps"), "identifiedGaps")],
            completed_gap_ids=_string_list(data.get("completedGapIds"), "completedGapIds"),
            completed_tool_ids=_string_list(data.get("completedToolIds"), "completedToolIds"),
            has_completed_assessment=bool(data.get("hasCompletedAssessment", False)),
            version=data.get("version"),
            started_at=data.get("startedAt"),
            last_updated_at=data.get("lastUpdatedAt"),
        )


def _list(value: Any, name: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{name} must be a list")
    return value


def _string_list(value: Any, name: str) -> List[str]:
    return [str(v) for v in _list(value, name)]
