"""
Journey Configuration
=====================

Central thresholds, storage keys and toggles for the gap journey engine.
Adjust the module constants to change behaviour everywhere, or build a
``JourneyConfig`` (optionally from ``GAP_JOURNEY_*`` environment
variables) and hand it to the tracker and analytics objects.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

# Journey completion thresholds
GAP_COMPLETION_PERCENTAGE = 70       # share of gaps closed before Act / Maintain complete
MINIMUM_TOOLS_COMPLETED = 5          # tools needed for whole-journey completion
TOOL_PROGRESS_THRESHOLD = 50         # domain tool share that marks a gap in progress
GAP_COMPLETION_TOOL_THRESHOLD = 100  # gap tool share that closes a gap
GAP_IDENTIFICATION_THRESHOLD = 80    # section scores below this become gaps

MAX_JOURNEY_AGE_DAYS = 90

JOURNEY_VERSION = "1.0.0"

STEP_KEYS = ["assess", "discover", "act", "maintain"]

JOURNEY_STEPS: List[Dict[str, str]] = [
    {"key": "assess", "title": "Assess Your Current State", "short_title": "Assess"},
    {"key": "discover", "title": "Discover Your Compliance Gaps", "short_title": "Discover"},
    {"key": "act", "title": "Act on Recommendations", "short_title": "Act"},
    {"key": "maintain", "title": "Maintain Compliance", "short_title": "Maintain"},
]

JOURNEY_STORAGE_KEYS = {
    "CURRENT_STEP": "cybercorrect_journey_step",
    "COMPLETED_STEPS": "cybercorrect_completed_steps",
    "VISITED": "cybercorrect_visited",
    "ASSESSMENT_COMPLETED": "cybercorrect_assessment_completed",
    "IDENTIFIED_GAPS": "cybercorrect_identified_gaps",
    "COMPLETED_GAPS": "cybercorrect_completed_gaps",
    "ASSESSMENT_RESULTS": "cybercorrect_assessment_results",
    "COMPLETED_TOOLS": "cybercorrect_completed_tools",
    "TOOL_USAGE_HISTORY": "cybercorrect_tool_usage_history",
    "JOURNEY_STARTED_AT": "cybercorrect_journey_started_at",
    "LAST_UPDATED_AT": "cybercorrect_journey_last_updated",
    "VERSION": "cybercorrect_journey_version",
}

ANALYTICS_STORAGE_KEY = "cybercorrect_journey_analytics"
SESSION_STORAGE_KEY = "cybercorrect_current_session"

JOURNEY_MILESTONES: List[Dict[str, Any]] = [
    {
        "threshold": 25,
        "title": "Great Start!",
        "message": "You're 25% through your compliance journey. Keep going!",
    },
    {
        "threshold": 50,
        "title": "Halfway There!",
        "message": "Amazing progress! You've completed half of your journey.",
    },
    {
        "threshold": 75,
        "title": "Almost Done!",
        "message": "Excellent work! Just a few more steps to complete your journey.",
    },
    {
        "threshold": 100,
        "title": "Journey Complete!",
        "message": "Congratulations! You've completed your compliance journey. Welcome to maintenance mode.",
    },
]

# Notification durations (milliseconds)
SUCCESS_DURATION = 4000
MILESTONE_DURATION = 7000
GAP_CLOSURE_DURATION = 5000
ERROR_DURATION = 6000

ENV_PREFIX = "GAP_JOURNEY_"


def _parse_env_value(raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    return raw


@dataclass(frozen=True)
class JourneyConfig:
    """Thresholds and toggles consumed by the tracker, validator and analytics."""

    gap_completion_percentage: int = GAP_COMPLETION_PERCENTAGE
    minimum_tools_completed: int = MINIMUM_TOOLS_COMPLETED
    tool_progress_threshold: int = TOOL_PROGRESS_THRESHOLD
    gap_completion_tool_threshold: int = GAP_COMPLETION_TOOL_THRESHOLD
    gap_identification_threshold: int = GAP_IDENTIFICATION_THRESHOLD

    # Advancement
    auto_advance_enabled: bool = True
    show_milestone_notifications: bool = True
    show_gap_closure_notifications: bool = True

    # Validation
    validate_on_load: bool = True
    auto_recover_errors: bool = True
    max_journey_age_days: int = MAX_JOURNEY_AGE_DAYS

    # Analytics
    analytics_enabled: bool = True
    track_time_per_step: bool = True
    track_tool_usage: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "JourneyConfig":
        """Build a config, overriding defaults from ``GAP_JOURNEY_<FIELD>`` variables.

        Example: ``GAP_JOURNEY_MINIMUM_TOOLS_COMPLETED=3``.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            overrides[f.name] = _parse_env_value(raw, getattr(defaults, f.name))
        return cls(**overrides)


DEFAULT_CONFIG = JourneyConfig()
