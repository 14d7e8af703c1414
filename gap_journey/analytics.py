"""
Journey Analytics
=================

Observational counters for the compliance journey: time spent per step,
session count and duration, tool attempts versus completions and
per-domain throughput.  The counters only ever grow and are never derived
from the journey state, so they can be wiped or lost without affecting
the journey itself.

The long-lived metrics record lives in the profile storage; the current
session record lives in a separate, session-scoped store.  Sessions are
opened and closed explicitly by the caller (``start_session`` /
``end_session``).  Storage failures are logged and otherwise ignored.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import pandas as pd

from gap_journey.config import (
    ANALYTICS_STORAGE_KEY,
    DEFAULT_CONFIG,
    SESSION_STORAGE_KEY,
    STEP_KEYS,
    JourneyConfig,
)
from gap_journey.exceptions import StorageError
from gap_journey.gap_catalog import DOMAINS, GAP_DOMAINS
from gap_journey.gap_engine import IdentifiedGap, percentage_of
from gap_journey.state import milliseconds_between, parse_timestamp, to_iso, utc_now
from gap_journey.storage import MemoryStorage, StorageAdapter, read_json, write_json

logger = logging.getLogger(__name__)


@dataclass
class DomainProgress:
    gaps_identified: int = 0
    gaps_closed: int = 0
    tools_used: int = 0
    time_spent: int = 0  # ms

    def to_dict(self) -> Dict[str, int]:
        return {
            "gapsIdentified": self.gaps_identified,
            "gapsClosed": self.gaps_closed,
            "toolsUsed": self.tools_used,
            "timeSpent": self.time_spent,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DomainProgress":
        return cls(
            gaps_identified=int(data.get("gapsIdentified", 0)),
            gaps_closed=int(data.get("gapsClosed", 0)),
            tools_used=int(data.get("toolsUsed", 0)),
            time_spent=int(data.get("timeSpent", 0)),
        )


def _empty_domain_progress() -> Dict[str, DomainProgress]:
    return {d: DomainProgress() for d in DOMAINS}


@dataclass
class JourneyMetrics:
    """Long-lived analytics record. Durations are in milliseconds."""
    started_at: Optional[str] = None
    last_active_at: Optional[str] = None
    total_time_spent: int = 0
    time_per_step: Dict[str, int] = field(default_factory=dict)
    steps_completed: int = 0
    gaps_addressed: int = 0
    tools_completed: int = 0
    tools_attempted: int = 0
    tool_attempts: Dict[str, int] = field(default_factory=dict)
    domain_progress: Dict[str, DomainProgress] = field(default_factory=_empty_domain_progress)
    session_count: int = 0
    average_session_duration: float = 0.0
    last_session_duration: int = 0
    days_active: int = 1
    completion_rate: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "lastActiveAt": self.last_active_at,
            "totalTimeSpent": self.total_time_spent,
            "timePerStep": dict(self.time_per_step),
            "stepsCompleted": self.steps_completed,
            "gapsAddressed": self.gaps_addressed,
            "toolsCompleted": self.tools_completed,
            "toolsAttempted": self.tools_attempted,
            "toolAttempts": dict(self.tool_attempts),
            "domainProgress": {d: p.to_dict() for d, p in self.domain_progress.items()},
            "sessionCount": self.session_count,
            "averageSessionDuration": self.average_session_duration,
            "lastSessionDuration": self.last_session_duration,
            "daysActive": self.days_active,
            "completionRate": self.completion_rate,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JourneyMetrics":
        domain_progress = _empty_domain_progress()
        for domain, progress in (data.get("domainProgress") or {}).items():
            if domain in domain_progress:
                domain_progress[domain] = DomainProgress.from_dict(progress)
        return cls(
            started_at=data.get("startedAt"),
            last_active_at=data.get("lastActiveAt"),
            total_time_spent=int(data.get("totalTimeSpent", 0)),
            time_per_step={k: int(v) for k, v in (data.get("timePerStep") or {}).items()},
            steps_completed=int(data.get("stepsCompleted", 0)),
            gaps_addressed=int(data.get("gapsAddressed", 0)),
            tools_completed=int(data.get("toolsCompleted", 0)),
            tools_attempted=int(data.get("toolsAttempted", 0)),
            tool_attempts={k: int(v) for k, v in (data.get("toolAttempts") or {}).items()},
            domain_progress=domain_progress,
            session_count=int(data.get("sessionCount", 0)),
            average_session_duration=float(data.get("averageSessionDuration", 0)),
            last_session_duration=int(data.get("lastSessionDuration", 0)),
            days_active=int(data.get("daysActive", 1)),
            completion_rate=int(data.get("completionRate", 0)),
        )


@dataclass
class SessionMetric:
    session_id: str
    started_at: str
    ended_at: Optional[str] = None
    duration: Optional[int] = None
    steps_visited: List[str] = field(default_factory=list)
    tools_used: List[str] = field(default_factory=list)
    actions_performed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "duration": self.duration,
            "stepsVisited": list(self.steps_visited),
            "toolsUsed": list(self.tools_used),
            "actionsPerformed": self.actions_performed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionMetric":
        return cls(
            session_id=str(data["sessionId"]),
            started_at=data["startedAt"],
            ended_at=data.get("endedAt"),
            duration=data.get("duration"),
            steps_visited=list(data.get("stepsVisited") or []),
            tools_used=list(data.get("toolsUsed") or []),
            actions_performed=int(data.get("actionsPerformed", 0)),
        )


def calculate_completion_rate(total_steps: int, completed_steps: int) -> int:
    return percentage_of(completed_steps, total_steps)


def estimate_time_to_completion(total_steps: int, completed_steps: int, time_spent_so_far: int) -> int:
    """Remaining time (ms) assuming the average pace so far holds."""
    if completed_steps == 0:
        return 0
    average_per_step = time_spent_so_far / completed_steps
    return int(round(average_per_step * (total_steps - completed_steps)))


def format_duration(milliseconds: int) -> str:
    """Human readable duration, e.g. ``2h 5m`` or ``45s``."""
    seconds = int(milliseconds // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class JourneyAnalytics:
    """Accumulates journey metrics and the current session record."""

    def __init__(
        self,
        storage: StorageAdapter,
        session_storage: Optional[StorageAdapter] = None,
        config: JourneyConfig = DEFAULT_CONFIG,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self.session_storage = session_storage if session_storage is not None else MemoryStorage()
        self.config = config
        self.clock = clock
        self.metrics = self._load_metrics()

    def _now_iso(self) -> str:
        return to_iso(self.clock())

    def _load_metrics(self) -> JourneyMetrics:
        try:
            stored = read_json(self.storage, ANALYTICS_STORAGE_KEY, None)
            if isinstance(stored, dict):
                return JourneyMetrics.from_dict(stored)
        except (StorageError, TypeError, ValueError, AttributeError, OverflowError) as exc:
            logger.error("Error loading analytics: %s", exc)

        now = self._now_iso()
        metrics = JourneyMetrics(started_at=now, last_active_at=now)
        self._save(metrics)
        return metrics

    def _save(self, metrics: Optional[JourneyMetrics] = None) -> None:
        if not self.config.analytics_enabled:
            return
        try:
            write_json(self.storage, ANALYTICS_STORAGE_KEY, (metrics or self.metrics).to_dict())
        except StorageError as exc:
            logger.error("Error saving analytics: %s", exc)

    # Sessions

    def current_session(self) -> Optional[SessionMetric]:
        try:
            stored = read_json(self.session_storage, SESSION_STORAGE_KEY, None)
            if isinstance(stored, dict):
                return SessionMetric.from_dict(stored)
        except (StorageError, KeyError, TypeError, ValueError, AttributeError, OverflowError) as exc:
            logger.error("Error loading session: %s", exc)
        return None

    def _write_session(self, session: SessionMetric) -> None:
        try:
            write_json(self.session_storage, SESSION_STORAGE_KEY, session.to_dict())
        except StorageError as exc:
            logger.error("Error updating session: %s", exc)

    def start_session(self) -> SessionMetric:
        """Open a new session, replacing any session left open."""
        now = self.clock()
        session = SessionMetric(session_id=f"session_{secrets.token_hex(8)}", started_at=to_iso(now))
        self._write_session(session)

        last_active = parse_timestamp(self.metrics.last_active_at)
        if last_active is not None and last_active.date() != now.date():
            self.metrics.days_active += 1
        self.metrics.last_active_at = to_iso(now)
        self._save()
        return session

    def end_session(self) -> Optional[SessionMetric]:
        """Close the current session and fold its duration into the metrics.

        Returns the closed session, or ``None`` if no session was open.
        """
        session = self.current_session()
        if session is None:
            logger.debug("end_session called with no open session")
            return None

        ended_at = self._now_iso()
        duration = milliseconds_between(session.started_at, ended_at)
        session.ended_at = ended_at
        session.duration = duration

        m = self.metrics
        m.session_count += 1
        m.last_session_duration = duration
        m.total_time_spent += duration
        m.average_session_duration = m.total_time_spent / m.session_count
        m.last_active_at = ended_at
        self._save()

        try:
            self.session_storage.remove(SESSION_STORAGE_KEY)
        except StorageError as exc:
            logger.error("Error clearing session: %s", exc)
        return session

    def _update_session(self, mutate: Callable[[SessionMetric], None]) -> None:
        session = self.current_session()
        if session is None:
            return
        mutate(session)
        self._write_session(session)

    # Tracking

    def track_step_visit(self, step_key: str) -> None:
        if not self.config.track_time_per_step:
            return

        def add_step(session: SessionMetric) -> None:
            if step_key not in session.steps_visited:
                session.steps_visited.append(step_key)

        self._update_session(add_step)

    def track_step_completion(self, step_key: str, duration_ms: int) -> None:
        if not self.config.track_time_per_step:
            return
        m = self.metrics
        m.steps_completed += 1
        m.time_per_step[step_key] = m.time_per_step.get(step_key, 0) + max(0, int(duration_ms))
        m.completion_rate = min(100, calculate_completion_rate(len(STEP_KEYS), m.steps_completed))
        self._save()

    def track_tool_started(self, tool_id: str, domain: Optional[str]) -> None:
        if not self.config.track_tool_usage:
            return

        def add_tool(session: SessionMetric) -> None:
            if tool_id not in session.tools_used:
                session.tools_used.append(tool_id)

        self._update_session(add_tool)

        m = self.metrics
        m.tools_attempted += 1
        m.tool_attempts[tool_id] = m.tool_attempts.get(tool_id, 0) + 1
        if domain in m.domain_progress:
            m.domain_progress[domain].tools_used += 1
        self._save()

    def track_tool_completed(self, tool_id: str, domain: Optional[str], duration_ms: int) -> None:
        if not self.config.track_tool_usage:
            return
        m = self.metrics
        m.tools_completed += 1
        if domain in m.domain_progress:
            m.domain_progress[domain].time_spent += max(0, int(duration_ms))
        self._save()

    def track_gap_closed(self, domain: str) -> None:
        m = self.metrics
        m.gaps_addressed += 1
        if domain in m.domain_progress:
            m.domain_progress[domain].gaps_closed += 1
        self._save()

    def track_gaps_identified(self, gaps: List[IdentifiedGap]) -> None:
        for gap in gaps:
            if gap.domain in self.metrics.domain_progress:
                self.metrics.domain_progress[gap.domain].gaps_identified += 1
        self._save()

    def track_action(self, action_type: Optional[str] = None) -> None:
        def bump(session: SessionMetric) -> None:
            session.actions_performed += 1

        self._update_session(bump)

    # Reporting

    def get_journey_insights(self) -> Dict[str, Any]:
        m = self.metrics

        most_productive = None
        max_closed = 0
        for domain, progress in m.domain_progress.items():
            if progress.gaps_closed > max_closed:
                max_closed = progress.gaps_closed
                most_productive = domain

        step_times = list(m.time_per_step.items())
        fastest = [s for s, _ in sorted(step_times, key=lambda kv: kv[1])[:3]]
        slowest = [s for s, _ in sorted(step_times, key=lambda kv: kv[1], reverse=True)[:3]]
        most_used = [t for t, _ in sorted(m.tool_attempts.items(), key=lambda kv: kv[1], reverse=True)[:3]]

        total_tool_time = sum(p.time_spent for p in m.domain_progress.values())
        average_tool_time = total_tool_time / m.tools_completed if m.tools_completed else 0

        return {
            "most_used_tools": most_used,
            "fastest_completed_steps": fastest,
            "slowest_completed_steps": slowest,
            "most_productive_domain": most_productive,
            "average_tool_completion_time": average_tool_time,
        }

    def domain_dataframe(self) -> pd.DataFrame:
        """Per-domain counters as a DataFrame, one row per domain."""
        data = [
            {
                "Domain": GAP_DOMAINS[domain]["title"],
                "Gaps Identified": p.gaps_identified,
                "Gaps Closed": p.gaps_closed,
                "Tools Used": p.tools_used,
                "Time Spent": format_duration(p.time_spent),
            }
            for domain, p in self.metrics.domain_progress.items()
        ]
        return pd.DataFrame(data)

    def export_analytics(self) -> str:
        return json.dumps(
            {"version": "1.0", "exportedAt": self._now_iso(), "metrics": self.metrics.to_dict()},
            indent=2,
        )

    def clear_analytics(self) -> None:
        """Drop stored metrics and the open session, then start a fresh record."""
        for store, key in ((self.storage, ANALYTICS_STORAGE_KEY), (self.session_storage, SESSION_STORAGE_KEY)):
            try:
                store.remove(key)
            except StorageError as exc:
                logger.error("Error clearing analytics key %s: %s", key, exc)
        now = self._now_iso()
        self.metrics = JourneyMetrics(started_at=now, last_active_at=now)
        self._save()
