"""
Progress Tracker
================

The stateful core of the compliance journey.  A ``ProgressTracker`` owns
the current ``JourneyState`` and the tool usage history, applies user
actions to them and persists the result.

Every public mutation follows the same shape:

1. compute the complete next state from the current one (the current
   state object is never modified in place)
2. swap it in and write it to storage once
3. publish the analytics updates and notifications it produced

Unknown gap, tool or step ids are tolerated: the call is a no-op and the
returned ``MutationResult`` has ``found=False``.  A repeated action on a
known id returns ``found=True, changed=False``.  Storage failures never
raise out of a mutation; they are logged, announced through the
notification bus and reported as ``persisted=False`` while the in-memory
state stays authoritative.

The journey steps only move forward (assess -> discover -> act ->
maintain); ``reset_journey`` is the only way back to the first step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Tuple, Union

from gap_journey.analytics import JourneyAnalytics
from gap_journey.config import (
    DEFAULT_CONFIG,
    GAP_CLOSURE_DURATION,
    JOURNEY_MILESTONES,
    JOURNEY_VERSION,
    MILESTONE_DURATION,
    STEP_KEYS,
    JourneyConfig,
)
from gap_journey.exceptions import StorageError
from gap_journey.gap_catalog import GAP_DOMAINS, TOOL_METADATA, get_tool_domain, is_known_tool
from gap_journey.gap_engine import (
    AssessmentResults,
    GapJourneyProgress,
    IdentifiedGap,
    calculate_gap_completion_from_tools,
    calculate_gap_journey_progress,
    calculate_tool_list_completion,
    carry_forward_statuses,
    generate_gaps_from_assessment,
    percentage_of,
    should_mark_gap_completed,
    update_gap_status,
)
from gap_journey.notifications import NotificationBus
from gap_journey.state import JourneyState, ToolUsage, milliseconds_between, to_iso, utc_now
from gap_journey.storage import (
    MemoryStorage,
    StorageAdapter,
    clear_journey_state,
    has_visited,
    load_journey_state,
    load_tool_usage,
    mark_visited,
    save_assessment_results,
    save_journey_state,
    save_tool_usage,
)
from gap_journey.validation import (
    ImportResult,
    ValidationResult,
    export_journey_data,
    get_validation_summary,
    import_journey_data,
    recover_journey_state,
    validate_journey_state,
)

logger = logging.getLogger(__name__)

Event = Callable[[], None]


@dataclass
class MutationResult:
    """Outcome of a tracker mutation.

    ``found`` is False when the id was unknown; ``changed`` is False when
    the action had already been applied.  ``persisted`` is False (with
    ``error`` set) when the storage write failed.
    """
    found: bool
    changed: bool = False
    persisted: bool = True
    error: Optional[str] = None


class ProgressTracker:
    """Owns the journey state and applies user actions to it."""

    def __init__(
        self,
        storage: Optional[StorageAdapter] = None,
        notifier: Optional[NotificationBus] = None,
        analytics: Optional[JourneyAnalytics] = None,
        config: JourneyConfig = DEFAULT_CONFIG,
        clock: Callable[[], datetime] = utc_now,
        load: bool = True,
    ) -> None:
        self.storage = storage if storage is not None else MemoryStorage()
        self.notifier = notifier if notifier is not None else NotificationBus()
        self.config = config
        self.clock = clock
        self.analytics = analytics if analytics is not None else JourneyAnalytics(
            self.storage, config=config, clock=clock
        )
        self.state = JourneyState(started_at=self._now_iso())
        self.tool_usage: List[ToolUsage] = []
        self.last_validation: Optional[ValidationResult] = None
        self._visited_before = False
        self._step_entered_at = self.clock()
        if load:
            self.load()

    def _now_iso(self) -> str:
        return to_iso(self.clock())

    # ------------------------------------------------------------------
    # Loading and saving
    # ------------------------------------------------------------------

    def load(self) -> bool:
        """Read the journey from storage, validating and repairing it.

        Falls back to a fresh journey (and emits an error notification)
        when storage cannot be read.  Returns True when stored data was
        loaded.
        """
        now = self.clock()
        try:
            state = load_journey_state(self.storage)
            usage = load_tool_usage(self.storage)
            self._visited_before = has_visited(self.storage)
        except StorageError as exc:
            logger.error("Error loading journey state: %s", exc)
            self.state = JourneyState(started_at=to_iso(now))
            self.tool_usage = []
            self.notifier.error(
                "Journey could not be restored",
                "Your saved progress could not be read. A new journey has been started.",
            )
            return False

        needs_save = False
        if self.config.validate_on_load:
            validation = validate_journey_state(state, now=now, max_age_days=self.config.max_journey_age_days)
            self.last_validation = validation
            if not validation.valid:
                logger.warning("Stored journey state: %s", get_validation_summary(validation))
                if "STALE_JOURNEY_DATA" in validation.warning_codes():
                    self.notifier.info(
                        "Welcome back",
                        "Your journey has not been updated in a while. Consider retaking the assessment.",
                    )
                if validation.can_recover and self.config.auto_recover_errors:
                    state = recover_journey_state(state, now=now)
                    needs_save = True
                    if validation.errors:
                        self.notifier.warning(
                            "Journey repaired",
                            "Some saved progress was inconsistent and has been corrected.",
                        )

        if state.started_at is None:
            state = replace(state, started_at=to_iso(now))
        self.state = state
        self.tool_usage = usage
        self._step_entered_at = now

        if not self._visited_before:
            try:
                mark_visited(self.storage)
            except StorageError as exc:
                logger.error("Error saving visited flag: %s", exc)

        if needs_save:
            self.save()
        return True

    def save(self) -> Tuple[bool, Optional[str]]:
        """Stamp the version and update time, then write state and usage history."""
        self.state = replace(
            self.state,
            version=JOURNEY_VERSION,
            last_updated_at=self._now_iso(),
            started_at=self.state.started_at or self._now_iso(),
        )
        try:
            save_journey_state(self.storage, self.state)
            save_tool_usage(self.storage, self.tool_usage)
        except StorageError as exc:
            logger.error("Error saving journey state: %s", exc)
            self.notifier.error("Progress not saved", "Your latest progress could not be saved on this device.")
            return False, str(exc)
        return True, None

    def _commit(
        self,
        state: JourneyState,
        events: List[Event],
        usage: Optional[List[ToolUsage]] = None,
    ) -> MutationResult:
        self.state = state
        if usage is not None:
            self.tool_usage = usage
        persisted, error = self.save()
        for event in events:
            event()
        return MutationResult(found=True, changed=True, persisted=persisted, error=error)

    # ------------------------------------------------------------------
    # State transitions (pure with respect to self.state)
    # ------------------------------------------------------------------

    def _complete_step(self, state: JourneyState, step_key: str, events: List[Event]) -> JourneyState:
        if step_key not in STEP_KEYS or step_key in state.completed_steps:
            return state

        old_progress = self._step_progress(state)
        step_index = STEP_KEYS.index(step_key)
        previous_index = state.current_step_index
        next_index = previous_index
        if (
            self.config.auto_advance_enabled
            and step_index == state.current_step_index
            and step_index < len(STEP_KEYS) - 1
        ):
            next_index = step_index + 1

        state = replace(
            state,
            completed_steps=state.completed_steps + [step_key],
            has_completed_assessment=state.has_completed_assessment or step_key == "assess",
            current_step_index=next_index,
        )

        now = self.clock()
        duration = milliseconds_between(to_iso(self._step_entered_at), to_iso(now))
        events.append(lambda: self.analytics.track_step_completion(step_key, duration))
        if next_index != previous_index:
            self._step_entered_at = now
            next_key = STEP_KEYS[next_index]
            events.append(lambda: self.analytics.track_step_visit(next_key))

        new_progress = self._step_progress(state)
        if self.config.show_milestone_notifications:
            for milestone in JOURNEY_MILESTONES:
                if old_progress < milestone["threshold"] <= new_progress:
                    events.append(self._milestone_event(milestone))
        return state

    def _milestone_event(self, milestone: Mapping[str, Any]) -> Event:
        return lambda: self.notifier.success(milestone["title"], milestone["message"], MILESTONE_DURATION)

    def _set_gap_status(self, state: JourneyState, gap_id: str, status: str) -> JourneyState:
        return replace(state, identified_gaps=update_gap_status(state.identified_gaps, gap_id, status))

    def _close_gap(self, state: JourneyState, gap: IdentifiedGap, events: List[Event]) -> JourneyState:
        already_listed = gap.id in state.completed_gap_ids
        if gap.status == "completed" and already_listed:
            return state
        state = self._set_gap_status(state, gap.id, "completed")
        if not already_listed:
            state = replace(state, completed_gap_ids=state.completed_gap_ids + [gap.id])
            events.append(lambda: self.analytics.track_gap_closed(gap.domain))
            if self.config.show_gap_closure_notifications:
                title = gap.domain_title or GAP_DOMAINS.get(gap.domain, {}).get("title", gap.domain)
                events.append(lambda: self.notifier.success(
                    "Gap Closed",
                    f"You've closed the {title} gap. Great work!",
                    GAP_CLOSURE_DURATION,
                ))
        return state

    def _gap_completion_ratio(self, state: JourneyState) -> float:
        if not state.identified_gaps:
            return 0.0
        gap_ids = {g.id for g in state.identified_gaps}
        closed = sum(1 for gid in set(state.completed_gap_ids) if gid in gap_ids)
        return closed * 100 / len(state.identified_gaps)

    def _check_act_completion(self, state: JourneyState, events: List[Event]) -> JourneyState:
        if state.identified_gaps and self._gap_completion_ratio(state) >= self.config.gap_completion_percentage:
            state = self._complete_step(state, "act", events)
        return state

    def _check_journey_completion(self, state: JourneyState, events: List[Event]) -> JourneyState:
        if "maintain" in state.completed_steps:
            return state
        if not state.has_completed_assessment or not state.identified_gaps:
            return state
        if self._gap_completion_ratio(state) < self.config.gap_completion_percentage:
            return state
        if len(state.completed_tool_ids) < self.config.minimum_tools_completed:
            return state

        state = self._complete_step(state, "maintain", events)
        # Steps skipped along the way keep step progress below 100, so the
        # milestone loop in _complete_step would not announce completion
        if self.config.show_milestone_notifications and self._step_progress(state) < 100:
            events.append(self._milestone_event(JOURNEY_MILESTONES[-1]))
        logger.info("Journey completed with %d tool(s)", len(state.completed_tool_ids))
        return state

    @staticmethod
    def _step_progress(state: JourneyState) -> int:
        completed = [s for s in set(state.completed_steps) if s in STEP_KEYS]
        return percentage_of(len(completed), len(STEP_KEYS))

    # ------------------------------------------------------------------
    # Public mutations
    # ------------------------------------------------------------------

    def set_assessment_results(
        self,
        results: Union[AssessmentResults, Mapping[str, Any]],
        preserve_progress: bool = False,
    ) -> MutationResult:
        """Regenerate gaps from a submitted assessment.

        With ``preserve_progress`` each regenerated gap keeps the status of
        the previous gap for its domain, and completed-gap ids that still
        exist are kept.  Otherwise the gap list and completed ids are
        replaced outright.  Completes the ``assess`` step if needed.
        """
        if not isinstance(results, AssessmentResults):
            results = AssessmentResults.from_dict(results)

        events: List[Event] = []
        state = self.state
        gaps = generate_gaps_from_assessment(results, threshold=self.config.gap_identification_threshold)
        if preserve_progress and state.identified_gaps:
            gaps = carry_forward_statuses(gaps, state.identified_gaps)
            new_ids = {g.id for g in gaps}
            completed_ids = [gid for gid in state.completed_gap_ids if gid in new_ids]
        else:
            completed_ids = []

        state = replace(state, identified_gaps=gaps, completed_gap_ids=completed_ids)
        if state.current_step_index == 0 or "assess" not in state.completed_steps:
            state = self._complete_step(state, "assess", events)
        state = self._check_act_completion(state, events)
        state = self._check_journey_completion(state, events)

        critical = sum(1 for g in gaps if g.severity == "critical")
        events.append(lambda: self.analytics.track_gaps_identified(gaps))
        events.append(lambda: self.notifier.info(
            "Assessment Complete",
            f"{len(gaps)} compliance gap(s) identified, {critical} critical.",
        ))

        result = self._commit(state, events)
        try:
            save_assessment_results(self.storage, results)
        except StorageError as exc:
            logger.error("Error saving assessment results: %s", exc)
        return result

    def complete_step(self, step_key: str) -> MutationResult:
        if step_key not in STEP_KEYS:
            return MutationResult(found=False)
        if step_key in self.state.completed_steps:
            return MutationResult(found=True)
        events: List[Event] = []
        state = self._complete_step(self.state, step_key, events)
        return self._commit(state, events)

    def set_current_step(self, step_index: int) -> MutationResult:
        """Move forward to ``step_index``.  Moving backwards is refused."""
        if not 0 <= step_index < len(STEP_KEYS):
            return MutationResult(found=False)
        if step_index <= self.state.current_step_index:
            return MutationResult(found=True)
        self._step_entered_at = self.clock()
        step_key = STEP_KEYS[step_index]
        state = replace(self.state, current_step_index=step_index)
        return self._commit(state, [lambda: self.analytics.track_step_visit(step_key)])

    def mark_gap_started(self, gap_id: str) -> MutationResult:
        gap = self.state.gap_by_id(gap_id)
        if gap is None:
            return MutationResult(found=False)
        if gap.status != "not_started":
            return MutationResult(found=True)
        state = self._set_gap_status(self.state, gap_id, "in_progress")
        return self._commit(state, [lambda: self.analytics.track_action("gap_started")])

    def mark_gap_completed(self, gap_id: str) -> MutationResult:
        gap = self.state.gap_by_id(gap_id)
        if gap is None:
            return MutationResult(found=False)
        if gap.status == "completed" and gap_id in self.state.completed_gap_ids:
            return MutationResult(found=True)
        events: List[Event] = []
        state = self._close_gap(self.state, gap, events)
        state = self._check_act_completion(state, events)
        state = self._check_journey_completion(state, events)
        return self._commit(state, events)

    def mark_tool_started(self, tool_id: str) -> MutationResult:
        """Record the first start of a tool and move its domain's gap in progress."""
        if not is_known_tool(tool_id):
            logger.debug("Ignoring start of unknown tool %r", tool_id)
            return MutationResult(found=False)
        if any(u.tool_id == tool_id for u in self.tool_usage):
            return MutationResult(found=True)

        domain = get_tool_domain(tool_id)
        usage = self.tool_usage + [ToolUsage(tool_id=tool_id, started_at=self._now_iso(), domain=domain)]
        state = self.state
        if domain is not None:
            gap = state.gap_for_domain(domain)
            if gap is not None and gap.status == "not_started":
                state = self._set_gap_status(state, gap.id, "in_progress")

        events: List[Event] = [
            lambda: self.analytics.track_tool_started(tool_id, domain),
            lambda: self.analytics.track_action("tool_started"),
        ]
        return self._commit(state, events, usage=usage)

    def mark_tool_completed(self, tool_id: str) -> MutationResult:
        """Record a tool completion and re-evaluate every gap that lists it.

        A gap closes once all of its own recommended tools are complete; it
        moves to in progress once half of them are.  The domain-wide check
        afterwards can also move the tool's domain gap to in progress, but
        never closes a gap.
        """
        if not is_known_tool(tool_id):
            logger.debug("Ignoring completion of unknown tool %r", tool_id)
            return MutationResult(found=False)
        if tool_id in self.state.completed_tool_ids:
            return MutationResult(found=True)

        now_iso = self._now_iso()
        domain = get_tool_domain(tool_id)
        events: List[Event] = []
        first_tool = not self.state.completed_tool_ids
        completed_tools = self.state.completed_tool_ids + [tool_id]
        state = replace(self.state, completed_tool_ids=completed_tools)

        usage = list(self.tool_usage)
        duration = 0
        for i, record in enumerate(usage):
            if record.tool_id == tool_id:
                if record.completed_at is None:
                    usage[i] = replace(record, completed_at=now_iso)
                    duration = milliseconds_between(record.started_at, now_iso)
                break
        else:
            usage.append(ToolUsage(tool_id=tool_id, started_at=now_iso, completed_at=now_iso, domain=domain))

        for gap in self.state.identified_gaps:
            if tool_id not in gap.recommended_tools:
                continue
            current = state.gap_by_id(gap.id)
            completion = calculate_tool_list_completion(current.recommended_tools, completed_tools)
            if completion >= self.config.gap_completion_tool_threshold:
                state = self._close_gap(state, current, events)
            elif completion >= self.config.tool_progress_threshold and current.status == "not_started":
                state = self._set_gap_status(state, current.id, "in_progress")

        if domain is not None and should_mark_gap_completed(
            domain, completed_tools, threshold=self.config.tool_progress_threshold
        ):
            gap = state.gap_for_domain(domain)
            if gap is not None and gap.status == "not_started":
                state = self._set_gap_status(state, gap.id, "in_progress")

        if first_tool:
            state = self._complete_step(state, "discover", events)
        state = self._check_act_completion(state, events)
        state = self._check_journey_completion(state, events)

        tool_name = TOOL_METADATA[tool_id]["name"]
        events.append(lambda: self.analytics.track_tool_completed(tool_id, domain, duration))
        events.append(lambda: self.notifier.success("Tool Completed", f"{tool_name} has been added to your journey progress."))
        return self._commit(state, events, usage=usage)

    def reset_journey(self) -> MutationResult:
        """Start over: clear every persisted journey key and return to step 0.

        Analytics are an independent log and are not cleared here.
        """
        error = None
        try:
            clear_journey_state(self.storage)
        except StorageError as exc:
            logger.error("Error resetting journey state: %s", exc)
            error = str(exc)
        now = self.clock()
        self.state = JourneyState(started_at=to_iso(now))
        self.tool_usage = []
        self._step_entered_at = now
        self.notifier.info("Journey Reset", "Your compliance journey has been reset.")
        return MutationResult(found=True, changed=True, persisted=error is None, error=error)

    def import_journey(self, json_string: str) -> ImportResult:
        """Replace the journey with an exported envelope, repairing it if possible.

        Malformed or unrecoverable data is rejected and the current journey
        is left untouched.  The envelope carries no usage history, so the
        previous journey's tool usage is dropped.  ``persisted`` on the
        result reports whether the imported state was written.
        """
        result = import_journey_data(
            json_string,
            now=self.clock(),
            max_age_days=self.config.max_journey_age_days,
            auto_recover=self.config.auto_recover_errors,
        )
        if not result.ok:
            logger.warning("Journey import rejected: %s", result.error)
            self.notifier.error("Import failed", result.error or "The journey data could not be imported.")
            return result

        self.state = result.state
        self.tool_usage = []
        self._step_entered_at = self.clock()
        persisted, error = self.save()
        if not persisted:
            logger.warning("Imported journey kept in memory only: %s", error)
        self.notifier.success("Journey Imported", "Your journey progress has been restored.")
        return replace(result, persisted=persisted)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_progress(self) -> int:
        """Share of journey steps completed, 0..100."""
        return self._step_progress(self.state)

    @property
    def gap_progress(self) -> GapJourneyProgress:
        return calculate_gap_journey_progress(self.state.identified_gaps, self.state.completed_gap_ids)

    def get_next_priority_gap(self) -> Optional[IdentifiedGap]:
        return self.gap_progress.next_recommended_gap

    def get_gap_completion_percentage(self, domain: str) -> int:
        return calculate_gap_completion_from_tools(domain, self.state.completed_tool_ids)

    def is_tool_completed(self, tool_id: str) -> bool:
        return tool_id in self.state.completed_tool_ids

    def is_step_completed(self, step_key: str) -> bool:
        return step_key in self.state.completed_steps

    @property
    def has_visited_before(self) -> bool:
        return self._visited_before

    def get_tool_usage(self, tool_id: str) -> Optional[ToolUsage]:
        return next((u for u in self.tool_usage if u.tool_id == tool_id), None)

    def export_journey(self) -> str:
        return export_journey_data(self.state, now=self.clock())
