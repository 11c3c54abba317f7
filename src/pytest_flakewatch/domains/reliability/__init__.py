from pytest_flakewatch.domains.reliability.models import (
    FlakePattern,
    FlakyTestRecord,
    ReliabilityMetrics,
    TestDataSnapshot,
    TestRun,
    TestStatus,
    TestSuiteRun,
)
from pytest_flakewatch.domains.reliability.services import FlakyTestDetector, ReliabilityTracker

__all__ = [
    "FlakePattern",
    "FlakyTestDetector",
    "FlakyTestRecord",
    "ReliabilityMetrics",
    "ReliabilityTracker",
    "TestDataSnapshot",
    "TestRun",
    "TestStatus",
    "TestSuiteRun",
]
