"""Background recomputation: scheduler, cache, violation scan and alerts."""

from .cache import TTLCache
from .notifications import LoggingNotifier, Notifier, RecordingNotifier, ViolationAlert
from .recompute_scheduler import BatchResult, JobState, RecomputeScheduler, RecurringJob
from .violation_detector import DependencyViolation, DependencyViolationDetector, ViolationScanReport

__all__ = [
    "TTLCache",
    "LoggingNotifier",
    "Notifier",
    "RecordingNotifier",
    "ViolationAlert",
    "BatchResult",
    "JobState",
    "RecomputeScheduler",
    "RecurringJob",
    "DependencyViolation",
    "DependencyViolationDetector",
    "ViolationScanReport",
]
