"""
Journey Validation and Recovery
===============================

Checks a ``JourneyState`` snapshot for structural problems, repairs what
can be repaired, and moves snapshots in and out of the JSON export
envelope ``{"version", "exportedAt", "journey"}``.

Problems are split into errors and warnings.  Errors carry a severity of
``critical``, ``error`` or ``warning``; only ``critical`` errors block
recovery.  None of the current rules emits ``critical``, so any snapshot
with errors can still be repaired.  Recovery only removes or clamps
invalid values, it never fabricates missing data such as gaps.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional

from gap_journey.config import JOURNEY_VERSION, MAX_JOURNEY_AGE_DAYS, STEP_KEYS
from gap_journey.state import JourneyState, parse_timestamp, to_iso, utc_now
from gap_journey.storage import decode_json

logger = logging.getLogger(__name__)


@dataclass
class ValidationError:
    code: str
    message: str
    severity: str = "error"  # "critical", "error" or "warning"
    field: Optional[str] = None


@dataclass
class ValidationWarning:
    code: str
    message: str
    suggestion: Optional[str] = None


class ValidationResult:
    """Container for journey validation results."""

    def __init__(self):
        self.errors: List[ValidationError] = []
        self.warnings: List[ValidationWarning] = []

    @property
    def valid(self) -> bool:
        return not self.errors and not self.warnings

    @property
    def can_recover(self) -> bool:
        return not any(e.severity == "critical" for e in self.errors)

    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "canRecover": self.can_recover,
            "errors": [vars(e) for e in self.errors],
            "warnings": [vars(w) for w in self.warnings],
        }


@dataclass
class ImportResult:
    """Outcome of an import.  ``persisted`` is set by the tracker once the state is written."""
    state: Optional[JourneyState] = None
    validation: Optional[ValidationResult] = None
    error: Optional[str] = None
    persisted: bool = False

    @property
    def ok(self) -> bool:
        return self.state is not None and self.error is None


def validate_journey_state(
    state: JourneyState,
    now: Optional[datetime] = None,
    max_age_days: int = MAX_JOURNEY_AGE_DAYS,
) -> ValidationResult:
    """Validate a journey snapshot.

    Args:
        state: The snapshot to check.
        now: Reference time for the staleness check (defaults to the current time).
        max_age_days: Snapshots not updated for longer than this get a warning.

    Returns:
        ``ValidationResult`` with blocking errors and non-blocking warnings.
    """
    result = ValidationResult()
    now = now or utc_now()
    last_index = len(STEP_KEYS) - 1

    if not 0 <= state.current_step_index <= last_index:
        result.errors.append(ValidationError(
            code="INVALID_STEP_INDEX",
            message=f"Invalid step index: {state.current_step_index}. Must be between 0 and {last_index}.",
            field="currentStepIndex",
        ))

    invalid_steps = [s for s in state.completed_steps if s not in STEP_KEYS]
    if invalid_steps:
        result.warnings.append(ValidationWarning(
            code="INVALID_COMPLETED_STEPS",
            message=f"Found invalid completed step keys: {', '.join(invalid_steps)}",
            suggestion="These will be filtered out during recovery.",
        ))

    if "assess" in state.completed_steps and not state.has_completed_assessment:
        result.errors.append(ValidationError(
            code="ASSESSMENT_INCONSISTENCY",
            message='Step "assess" is marked as completed but hasCompletedAssessment is false.',
            field="hasCompletedAssessment",
        ))

    if "discover" in state.completed_steps and not state.identified_gaps:
        result.warnings.append(ValidationWarning(
            code="NO_GAPS_IDENTIFIED",
            message="Discovery step is completed but no gaps were identified.",
            suggestion="User may need to retake the assessment.",
        ))

    if "act" in state.completed_steps and not state.completed_tool_ids:
        result.warnings.append(ValidationWarning(
            code="NO_TOOLS_COMPLETED",
            message="Act step is completed but no tools have been used.",
            suggestion="Journey may have been manually advanced.",
        ))

    gap_ids = [g.id for g in state.identified_gaps]
    if len(set(gap_ids)) != len(gap_ids):
        result.warnings.append(ValidationWarning(
            code="DUPLICATE_GAP_IDS",
            message="Found more than one gap with the same id.",
            suggestion="Only the first gap for each id is kept during recovery.",
        ))

    orphaned = [gid for gid in state.completed_gap_ids if gid not in gap_ids]
    if orphaned:
        result.warnings.append(ValidationWarning(
            code="ORPHANED_COMPLETED_GAPS",
            message=f"Found {len(orphaned)} completed gap(s) that don't exist in identified gaps.",
            suggestion="These will be removed during recovery.",
        ))

    last_updated = parse_timestamp(state.last_updated_at)
    if last_updated is not None:
        days_since_update = (now - last_updated).days
        if days_since_update > max_age_days:
            result.warnings.append(ValidationWarning(
                code="STALE_JOURNEY_DATA",
                message=f"Journey data hasn't been updated in {days_since_update} days.",
                suggestion="Consider starting a fresh assessment.",
            ))

    if state.version and state.version != JOURNEY_VERSION:
        result.warnings.append(ValidationWarning(
            code="VERSION_MISMATCH",
            message=f"Journey data version ({state.version}) doesn't match current version ({JOURNEY_VERSION}).",
            suggestion="Data migration may be needed.",
        ))

    return result


def _unique(values: List[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def recover_journey_state(state: JourneyState, now: Optional[datetime] = None) -> JourneyState:
    """Return a repaired copy of ``state``; the input is left untouched.

    Clamps the step index, drops unknown step keys and duplicates, forces
    the assessment flag when ``assess`` is completed, keeps the first gap
    per id, drops orphaned completed-gap ids, and stamps the current
    version and update time.
    """
    now = now or utc_now()
    step_index = min(max(state.current_step_index, 0), len(STEP_KEYS) - 1)
    completed_steps = _unique([s for s in state.completed_steps if s in STEP_KEYS])

    gaps = []
    seen_gap_ids = set()
    for gap in state.identified_gaps:
        if gap.id in seen_gap_ids:
            continue
        seen_gap_ids.add(gap.id)
        gaps.append(gap)

    recovered = replace(
        state,
        current_step_index=step_index,
        completed_steps=completed_steps,
        identified_gaps=gaps,
        completed_gap_ids=_unique([gid for gid in state.completed_gap_ids if gid in seen_gap_ids]),
        completed_tool_ids=_unique(list(state.completed_tool_ids)),
        has_completed_assessment=state.has_completed_assessment or "assess" in completed_steps,
        version=JOURNEY_VERSION,
        last_updated_at=to_iso(now),
    )
    logger.info(
        "Recovered journey state (step %s -> %s, %d orphaned gap id(s) dropped)",
        state.current_step_index,
        step_index,
        len(state.completed_gap_ids) - len(recovered.completed_gap_ids),
    )
    return recovered


def export_journey_data(state: JourneyState, now: Optional[datetime] = None) -> str:
    """Serialise ``state`` into the JSON export envelope."""
    export_data = {
        "version": JOURNEY_VERSION,
        "exportedAt": to_iso(now or utc_now()),
        "journey": state.to_dict(),
    }
    return json.dumps(export_data, indent=2, ensure_ascii=False)


def import_journey_data(
    json_string: str,
    now: Optional[datetime] = None,
    max_age_days: int = MAX_JOURNEY_AGE_DAYS,
    auto_recover: bool = True,
) -> ImportResult:
    """Parse, validate and (if needed) repair an export envelope.

    Never raises for bad input: malformed JSON, a missing ``journey``
    object, badly shaped fields or unrecoverable errors all come back as
    an ``ImportResult`` with ``state=None`` and ``error`` set.
    """
    try:
        import_data = decode_json(json_string)
    except (TypeError, ValueError, RecursionError) as exc:
        return ImportResult(error=f"Failed to parse import data: {exc}")

    if not isinstance(import_data, dict) or import_data.get("journey") is None:
        return ImportResult(error="Invalid import format: missing journey data")

    try:
        state = JourneyState.from_dict(import_data["journey"])
    except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as exc:
        return ImportResult(error=f"Invalid journey data: {exc}")

    validation = validate_journey_state(state, now=now, max_age_days=max_age_days)
    if validation.valid:
        return ImportResult(state=state, validation=validation)

    if not validation.can_recover:
        logger.warning("Rejected journey import: %s", get_validation_summary(validation))
        return ImportResult(
            validation=validation,
            error="Import data contains critical errors and cannot be recovered",
        )

    if validation.errors and not auto_recover:
        return ImportResult(
            validation=validation,
            error="Import data contains errors and automatic recovery is disabled",
        )

    final_state = recover_journey_state(state, now=now) if auto_recover else state
    return ImportResult(
        state=final_state,
        validation=validate_journey_state(final_state, now=now, max_age_days=max_age_days),
    )


def get_validation_summary(validation: ValidationResult) -> str:
    if validation.valid:
        return "Journey state is valid."
    parts = []
    if validation.errors:
        parts.append(f"{len(validation.errors)} error(s) found")
    if validation.warnings:
        parts.append(f"{len(validation.warnings)} warning(s) found")
    return ", ".join(parts) + "."
