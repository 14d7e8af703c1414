from __future__ import annotations

import itertools

import pytest

from conftest import STANDARD_SCORES, FailingStorage, FakeClock, assessment
from gap_journey.config import ANALYTICS_STORAGE_KEY, JOURNEY_STORAGE_KEYS, JourneyConfig
from gap_journey.notifications import NotificationBus, NotificationRecorder
from gap_journey.progress_tracker import ProgressTracker
from gap_journey.storage import MemoryStorage, load_assessment_results, load_journey_state

PROTECT_TOOLS = ["privacy-settings-audit", "privacy-by-design-assessment", "incident-response-manager"]
GOVERN_TOOLS = ["privacy-gap-analyzer", "privacy-policy-generator"]
CONTROL_TOOLS = ["consent-management", "privacy-rights-manager", "retention-policy-generator"]


def test_fresh_tracker_starts_at_first_step(tracker: ProgressTracker) -> None:
    assert tracker.state.current_step_index == 0
    assert tracker.state.current_step_key == "assess"
    assert tracker.get_progress() == 0
    assert tracker.has_visited_before is False
    assert tracker.state.started_at is not None


def test_tracker_works_without_a_subscriber() -> None:
    tracker = ProgressTracker()
    result = tracker.set_assessment_results(assessment(**STANDARD_SCORES))
    assert result.changed
    assert len(tracker.state.identified_gaps) == 3


def test_set_assessment_results_generates_gaps_and_advances(tracker, recorder, storage) -> None:
    result = tracker.set_assessment_results(assessment(**STANDARD_SCORES))

    assert result.found and result.changed and result.persisted
    state = tracker.state
    assert [g.id for g in state.identified_gaps] == ["gap-protect", "gap-govern", "gap-control"]
    assert state.completed_steps == ["assess"]
    assert state.has_completed_assessment
    assert state.current_step_index == 1
    assert tracker.get_progress() == 25
    assert recorder.titles() == ["Great Start!", "Assessment Complete"]
    assert recorder.received[-1].message == "3 compliance gap(s) identified, 2 critical."

    stored = load_journey_state(storage)
    assert stored.current_step_index == 1
    assert stored.identified_gaps == state.identified_gaps
    assert load_assessment_results(storage).section_scores[0].title == "Govern"


def test_reassessment_without_preserve_replaces_gaps(assessed_tracker) -> None:
    for tool in PROTECT_TOOLS:
        assessed_tracker.mark_tool_completed(tool)
    assert assessed_tracker.state.completed_gap_ids == ["gap-protect"]

    assessed_tracker.set_assessment_results(assessment(Protect=45, Identify=50))

    state = assessed_tracker.state
    assert [g.id for g in state.identified_gaps] == ["gap-protect", "gap-identify"]
    assert all(g.status == "not_started" for g in state.identified_gaps)
    assert state.completed_gap_ids == []
    assert state.completed_steps.count("assess") == 1


def test_reassessment_with_preserve_keeps_statuses(assessed_tracker) -> None:
    for tool in PROTECT_TOOLS:
        assessed_tracker.mark_tool_completed(tool)

    assessed_tracker.set_assessment_results(assessment(Protect=45, Identify=50), preserve_progress=True)

    state = assessed_tracker.state
    statuses = {g.domain: g.status for g in state.identified_gaps}
    assert statuses == {"protect": "completed", "identify": "not_started"}
    assert state.completed_gap_ids == ["gap-protect"]


def test_first_tool_completes_discover(assessed_tracker, recorder) -> None:
    assessed_tracker.mark_tool_completed("privacy-settings-audit")

    assert assessed_tracker.is_step_completed("discover")
    assert assessed_tracker.state.current_step_index == 2
    assert "Halfway There!" in recorder.titles()
    assert "Tool Completed" in recorder.titles()


def test_mark_tool_completed_is_idempotent(assessed_tracker, recorder) -> None:
    first = assessed_tracker.mark_tool_completed("privacy-settings-audit")
    count = len(recorder.received)
    second = assessed_tracker.mark_tool_completed("privacy-settings-audit")

    assert first.changed
    assert second.found and not second.changed
    assert assessed_tracker.state.completed_tool_ids == ["privacy-settings-audit"]
    assert len(recorder.received) == count
    assert assessed_tracker.analytics.metrics.tools_completed == 1


@pytest.mark.parametrize("order", list(itertools.permutations(PROTECT_TOOLS)))
def test_all_gap_tools_close_gap_exactly_once(assessed_tracker, recorder, order) -> None:
    for tool in order:
        assessed_tracker.mark_tool_completed(tool)

    gap = assessed_tracker.state.gap_by_id("gap-protect")
    assert gap.status == "completed"
    assert assessed_tracker.state.completed_gap_ids == ["gap-protect"]
    assert recorder.titles().count("Gap Closed") == 1
    assert assessed_tracker.analytics.metrics.gaps_addressed == 1
    assert assessed_tracker.analytics.metrics.domain_progress["protect"].gaps_closed == 1


def test_half_of_gap_tools_marks_gap_in_progress(assessed_tracker) -> None:
    assessed_tracker.mark_tool_completed("privacy-settings-audit")
    assert assessed_tracker.state.gap_by_id("gap-protect").status == "not_started"

    assessed_tracker.mark_tool_completed("privacy-by-design-assessment")
    assert assessed_tracker.state.gap_by_id("gap-protect").status == "in_progress"
    assert assessed_tracker.state.completed_gap_ids == []


def test_domain_half_rule_never_closes_a_gap(tracker) -> None:
    tracker.set_assessment_results(assessment(Govern=90, Communicate=50))
    tracker.mark_tool_completed("privacy-policy-generator")

    gap = tracker.state.gap_by_id("gap-communicate")
    assert gap.status == "in_progress"
    assert tracker.state.completed_gap_ids == []

    tracker.mark_tool_completed("dpia-generator")
    assert tracker.state.gap_by_id("gap-communicate").status == "completed"
    assert tracker.state.completed_gap_ids == ["gap-communicate"]


def test_full_journey_reaches_maintain(assessed_tracker, recorder) -> None:
    for tool in PROTECT_TOOLS + GOVERN_TOOLS:
        assessed_tracker.mark_tool_completed(tool)
    assert not assessed_tracker.is_step_completed("act")

    for tool in CONTROL_TOOLS:
        assessed_tracker.mark_tool_completed(tool)

    state = assessed_tracker.state
    assert state.completed_steps == ["assess", "discover", "act", "maintain"]
    assert state.current_step_index == 3
    assert assessed_tracker.get_progress() == 100
    assert assessed_tracker.gap_progress.overall_completion_percentage == 100
    assert assessed_tracker.get_next_priority_gap() is None

    titles = recorder.titles()
    assert titles.count("Gap Closed") == 3
    assert titles.count("Journey Complete!") == 1
    assert "Almost Done!" in titles


def test_journey_needs_minimum_tool_count(storage, bus, clock) -> None:
    tracker = ProgressTracker(storage=storage, notifier=bus, clock=clock)
    tracker.set_assessment_results(assessment(Govern=40, Identify=95))
    for tool in GOVERN_TOOLS:
        tracker.mark_tool_completed(tool)

    # gap ratio is 100% but only two tools are done
    assert tracker.is_step_completed("act")
    assert not tracker.is_step_completed("maintain")

    for tool in ["gdpr-mapper", "consent-management", "dpia-generator"]:
        tracker.mark_tool_completed(tool)
    assert tracker.is_step_completed("maintain")


def test_gap_completion_percentage_config(storage, bus, clock) -> None:
    config = JourneyConfig(gap_completion_percentage=30, minimum_tools_completed=1)
    tracker = ProgressTracker(storage=storage, notifier=bus, config=config, clock=clock)
    tracker.set_assessment_results(assessment(**STANDARD_SCORES))
    for tool in PROTECT_TOOLS:
        tracker.mark_tool_completed(tool)
    assert tracker.is_step_completed("act")
    assert tracker.is_step_completed("maintain")


def test_auto_advance_disabled_keeps_step(storage, bus, clock) -> None:
    tracker = ProgressTracker(
        storage=storage, notifier=bus, clock=clock, config=JourneyConfig(auto_advance_enabled=False)
    )
    tracker.set_assessment_results(assessment(**STANDARD_SCORES))
    assert tracker.is_step_completed("assess")
    assert tracker.state.current_step_index == 0


def test_unknown_ids_are_no_ops(assessed_tracker, recorder, storage) -> None:
    before = assessed_tracker.state
    snapshot = dict((k, storage.get(k)) for k in storage.keys())

    assert not assessed_tracker.mark_tool_completed("no-such-tool").found
    assert not assessed_tracker.mark_tool_started("no-such-tool").found
    assert not assessed_tracker.mark_gap_completed("gap-nowhere").found
    assert not assessed_tracker.mark_gap_started("gap-nowhere").found
    assert not assessed_tracker.complete_step("review").found
    assert not assessed_tracker.set_current_step(9).found

    assert assessed_tracker.state is before
    assert recorder.received == []
    assert dict((k, storage.get(k)) for k in storage.keys()) == snapshot


def test_known_tool_without_domain_is_tracked(assessed_tracker) -> None:
    assessed_tracker.mark_tool_started("dpia-manager")
    result = assessed_tracker.mark_tool_completed("dpia-manager")

    assert result.changed
    assert assessed_tracker.is_tool_completed("dpia-manager")
    usage = assessed_tracker.get_tool_usage("dpia-manager")
    assert usage.domain is None
    assert usage.completed_at is not None


def test_mark_tool_started_moves_gap_in_progress(assessed_tracker, clock) -> None:
    result = assessed_tracker.mark_tool_started("incident-response-manager")
    assert result.changed
    assert assessed_tracker.state.gap_by_id("gap-protect").status == "in_progress"
    assert not assessed_tracker.mark_tool_started("incident-response-manager").changed
    assert assessed_tracker.analytics.metrics.tools_attempted == 1

    clock.advance(seconds=60)
    assessed_tracker.mark_tool_completed("incident-response-manager")
    usage = assessed_tracker.get_tool_usage("incident-response-manager")
    assert usage.domain == "protect"
    assert usage.completed_at == clock().isoformat()
    assert assessed_tracker.analytics.metrics.domain_progress["protect"].time_spent == 60000


def test_mark_gap_started_and_completed(assessed_tracker, recorder) -> None:
    assert assessed_tracker.mark_gap_started("gap-govern").changed
    assert assessed_tracker.state.gap_by_id("gap-govern").status == "in_progress"
    assert not assessed_tracker.mark_gap_started("gap-govern").changed

    assert assessed_tracker.mark_gap_completed("gap-govern").changed
    assert assessed_tracker.state.completed_gap_ids == ["gap-govern"]
    assert not assessed_tracker.mark_gap_completed("gap-govern").changed
    assert recorder.titles().count("Gap Closed") == 1


def test_complete_step_and_set_current_step(tracker) -> None:
    assert tracker.complete_step("assess").changed
    assert tracker.state.current_step_index == 1
    assert tracker.state.has_completed_assessment
    assert not tracker.complete_step("assess").changed

    assert tracker.set_current_step(3).changed
    assert tracker.state.current_step_index == 3
    # steps never move backwards
    result = tracker.set_current_step(1)
    assert result.found and not result.changed
    assert tracker.state.current_step_index == 3


def test_completing_a_later_step_does_not_advance(tracker) -> None:
    tracker.complete_step("act")
    assert tracker.is_step_completed("act")
    assert tracker.state.current_step_index == 0


def test_state_survives_a_new_tracker(storage, clock) -> None:
    first = ProgressTracker(storage=storage, clock=clock)
    first.set_assessment_results(assessment(**STANDARD_SCORES))
    first.mark_tool_started("privacy-settings-audit")
    first.mark_tool_completed("privacy-settings-audit")

    second = ProgressTracker(storage=storage, clock=clock)
    assert second.state == first.state
    assert second.tool_usage == first.tool_usage
    assert second.has_visited_before


def test_reset_journey_clears_journey_keys(assessed_tracker, storage, recorder) -> None:
    assessed_tracker.mark_tool_completed("privacy-settings-audit")
    recorder.received.clear()
    result = assessed_tracker.reset_journey()

    assert result.changed and result.persisted
    assert assessed_tracker.state.current_step_index == 0
    assert assessed_tracker.state.identified_gaps == []
    assert assessed_tracker.tool_usage == []
    for key in JOURNEY_STORAGE_KEYS.values():
        assert storage.get(key) is None
    assert storage.get(ANALYTICS_STORAGE_KEY) is not None
    assert recorder.titles() == ["Journey Reset"]


def test_storage_write_failure_keeps_memory_state(clock) -> None:
    storage = FailingStorage()
    bus = NotificationBus()
    recorder = NotificationRecorder()
    bus.subscribe(recorder)
    tracker = ProgressTracker(storage=storage, notifier=bus, clock=clock)

    storage.fail_writes = True
    result = tracker.set_assessment_results(assessment(**STANDARD_SCORES))

    assert result.changed
    assert not result.persisted
    assert "disk full" in result.error
    assert tracker.state.current_step_index == 1
    assert [n.title for n in recorder.of_kind("error")] == ["Progress not saved"]


def test_storage_read_failure_starts_fresh(clock) -> None:
    storage = FailingStorage()
    storage.fail_reads = True
    bus = NotificationBus()
    recorder = NotificationRecorder()
    bus.subscribe(recorder)

    tracker = ProgressTracker(storage=storage, notifier=bus, clock=clock)

    assert tracker.state.current_step_index == 0
    assert recorder.titles() == ["Journey could not be restored"]


def test_corrupt_stored_value_starts_fresh(clock, recorder, bus) -> None:
    storage = MemoryStorage({JOURNEY_STORAGE_KEYS["IDENTIFIED_GAPS"]: "{not json"})
    tracker = ProgressTracker(storage=storage, notifier=bus, clock=clock)
    assert tracker.state.identified_gaps == []
    assert recorder.of_kind("error")


def test_load_repairs_invalid_state(clock, recorder, bus) -> None:
    storage = MemoryStorage({
        JOURNEY_STORAGE_KEYS["CURRENT_STEP"]: "9",
        JOURNEY_STORAGE_KEYS["COMPLETED_STEPS"]: '["assess", "bogus"]',
    })
    tracker = ProgressTracker(storage=storage, notifier=bus, clock=clock)

    assert tracker.state.current_step_index == 3
    assert tracker.state.completed_steps == ["assess"]
    assert tracker.state.has_completed_assessment
    assert tracker.last_validation.error_codes() == ["INVALID_STEP_INDEX", "ASSESSMENT_INCONSISTENCY"]
    assert storage.get(JOURNEY_STORAGE_KEYS["CURRENT_STEP"]) == "3"
    assert recorder.titles() == ["Journey repaired"]


def test_load_flags_stale_journey(bus, recorder) -> None:
    clock = FakeClock()
    storage = MemoryStorage()
    ProgressTracker(storage=storage, clock=clock).set_assessment_results(assessment(**STANDARD_SCORES))

    clock.advance(days=120)
    tracker = ProgressTracker(storage=storage, notifier=bus, clock=clock)

    assert "STALE_JOURNEY_DATA" in tracker.last_validation.warning_codes()
    assert recorder.titles() == ["Welcome back"]
    assert tracker.state.last_updated_at == clock().isoformat()
    assert len(tracker.state.identified_gaps) == 3


def test_export_then_import_restores_state(assessed_tracker, storage, clock, recorder) -> None:
    assessed_tracker.mark_tool_completed("privacy-settings-audit")
    exported = assessed_tracker.export_journey()
    snapshot = assessed_tracker.state

    other = ProgressTracker(storage=MemoryStorage(), clock=clock, notifier=NotificationBus())
    result = other.import_journey(exported)

    assert result.ok
    assert other.state == snapshot


def test_import_rejects_bad_data_and_keeps_state(assessed_tracker, recorder) -> None:
    before = assessed_tracker.state
    result = assessed_tracker.import_journey('{"version": "1.0.0"}')

    assert not result.ok
    assert result.error == "Invalid import format: missing journey data"
    assert assessed_tracker.state is before
    assert recorder.titles() == ["Import failed"]


def test_queries(assessed_tracker) -> None:
    assessed_tracker.mark_tool_completed("privacy-gap-analyzer")
    assert assessed_tracker.get_gap_completion_percentage("govern") == 50
    assert assessed_tracker.is_tool_completed("privacy-gap-analyzer")
    assert not assessed_tracker.is_tool_completed("gdpr-mapper")
    assert assessed_tracker.get_next_priority_gap().id == "gap-protect"
    assert assessed_tracker.get_tool_usage("gdpr-mapper") is None


@pytest.mark.parametrize("priority", ["Infinity", "NaN", "1e400"])
def test_unrepresentable_stored_number_starts_fresh(clock, recorder, bus, priority) -> None:
    stored_gaps = '[{"id": "gap-govern", "domain": "govern", "priority": %s}]' % priority
    storage = MemoryStorage({JOURNEY_STORAGE_KEYS["IDENTIFIED_GAPS"]: stored_gaps})

    tracker = ProgressTracker(storage=storage, notifier=bus, clock=clock)

    assert tracker.state.identified_gaps == []
    assert recorder.titles() == ["Journey could not be restored"]


def test_reassessment_closing_remaining_gaps_completes_act_first(assessed_tracker, recorder) -> None:
    for tool in PROTECT_TOOLS + GOVERN_TOOLS:
        assessed_tracker.mark_tool_completed(tool)
    assert not assessed_tracker.is_step_completed("act")

    assessed_tracker.set_assessment_results(assessment(Govern=55, Protect=40, Control=90), preserve_progress=True)

    state = assessed_tracker.state
    assert state.completed_steps == ["assess", "discover", "act", "maintain"]
    assert state.current_step_index == 3
    assert assessed_tracker.get_progress() == 100
    titles = recorder.titles()
    assert titles.index("Almost Done!") < titles.index("Journey Complete!")
    assert titles.count("Journey Complete!") == 1


def test_import_drops_previous_tool_usage(assessed_tracker) -> None:
    exported = assessed_tracker.export_journey()
    assessed_tracker.mark_tool_started("gdpr-mapper")

    result = assessed_tracker.import_journey(exported)

    assert result.ok and result.persisted
    assert assessed_tracker.tool_usage == []
    assert assessed_tracker.mark_tool_started("gdpr-mapper").changed


def test_import_reports_failed_save(clock) -> None:
    storage = FailingStorage()
    bus = NotificationBus()
    recorder = NotificationRecorder()
    bus.subscribe(recorder)
    tracker = ProgressTracker(storage=storage, notifier=bus, clock=clock)
    tracker.set_assessment_results(assessment(**STANDARD_SCORES))
    exported = tracker.export_journey()

    storage.fail_writes = True
    result = tracker.import_journey(exported)

    assert result.ok
    assert not result.persisted
    assert tracker.state.identified_gaps == result.state.identified_gaps
    assert "Progress not saved" in recorder.titles()
