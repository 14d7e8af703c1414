"""
Gap Journey package.

This package contains the compliance gap journey engine:
- gap_catalog: Domain metadata, severity tiers and the domain -> tool mapping
- gap_engine: Gap generation from assessment scores and tool-based completion
- progress_tracker: Stateful journey tracker (steps, gaps, tools, persistence)
- validation: Snapshot validation, recovery and JSON export/import

Supporting modules:
- config: Thresholds, storage keys and ``JourneyConfig``
- state: ``JourneyState`` and ``ToolUsage`` records
- storage: Key-value storage adapters (memory and JSON file)
- analytics: Observational journey metrics and sessions
- notifications: Fire-and-forget notification bus
"""

from gap_journey.config import DEFAULT_CONFIG, JourneyConfig
from gap_journey.exceptions import JourneyError, StorageError
from gap_journey.gap_engine import AssessmentResults, IdentifiedGap, generate_gaps_from_assessment
from gap_journey.notifications import Notification, NotificationBus
from gap_journey.progress_tracker import MutationResult, ProgressTracker
from gap_journey.state import JourneyState
from gap_journey.storage import FileStorage, MemoryStorage

__version__ = "1.0.0"

__all__ = [
    "AssessmentResults",
    "DEFAULT_CONFIG",
    "FileStorage",
    "IdentifiedGap",
    "JourneyConfig",
    "JourneyError",
    "JourneyState",
    "MemoryStorage",
    "MutationResult",
    "Notification",
    "NotificationBus",
    "ProgressTracker",
    "StorageError",
    "generate_gaps_from_assessment",
]
