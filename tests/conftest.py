from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

from gap_journey.config import JourneyConfig
from gap_journey.exceptions import StorageError
from gap_journey.notifications import NotificationBus, NotificationRecorder
from gap_journey.progress_tracker import ProgressTracker
from gap_journey.storage import MemoryStorage

START = datetime(2026, 1, 15, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FailingStorage(MemoryStorage):
    """Memory store whose reads or writes can be switched to fail."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        super().__init__(initial)
        self.fail_reads = False
        self.fail_writes = False

    def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise StorageError("get", key, "storage unavailable")
        return super().get(key)

    def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise StorageError("set", key, "disk full")
        super().set(key, value)

    def remove(self, key: str) -> None:
        if self.fail_writes:
            raise StorageError("remove", key, "disk full")
        super().remove(key)


def assessment(**scores: float) -> Dict[str, Any]:
    """Assessment payload with one section per keyword, e.g. ``assessment(Govern=55)``."""
    return {
        "sectionScores": [
            {"title": title, "percentage": pct, "completed": True}
            for title, pct in scores.items()
        ],
        "overallScore": sum(scores.values()) / len(scores) if scores else 0,
        "assessmentType": "privacy",
        "frameworkName": "NIST Privacy Framework",
    }


# Govern 55 / Identify 90 / Control 65 / Communicate 82 / Protect 40
STANDARD_SCORES = dict(Govern=55, Identify=90, Control=65, Communicate=82, Protect=40)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def recorder() -> NotificationRecorder:
    return NotificationRecorder()


@pytest.fixture()
def bus(recorder: NotificationRecorder) -> NotificationBus:
    bus = NotificationBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture()
def config() -> JourneyConfig:
    return JourneyConfig()


@pytest.fixture()
def tracker(storage, bus, config, clock) -> ProgressTracker:
    return ProgressTracker(storage=storage, notifier=bus, config=config, clock=clock)


@pytest.fixture()
def assessed_tracker(tracker: ProgressTracker, recorder: NotificationRecorder) -> ProgressTracker:
    tracker.set_assessment_results(assessment(**STANDARD_SCORES))
    recorder.received.clear()
    return tracker
