"""Domain models for build reliability tracking."""

from typing import List, Optional
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


class RecordModel(BaseModel):
    """Base for records that round-trip through the camelCase snapshot format."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class TestStatus(str, Enum):
    __test__ = False

    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


class FlakePattern(str, Enum):
    STABLE = "stable"
    INTERMITTENT = "intermittent"
    TIMING = "timing"


class TestRun(RecordModel):
    """One execution of one named test."""
    __test__ = False

    test_name: str = Field(min_length=1)
    status: TestStatus
    duration: float = Field(default=0.0, ge=0, description="Duration in milliseconds")
    build_number: int
    timestamp: datetime
    error: Optional[str] = None
    retries: int = 0


class TestSuiteRun(RecordModel):
    """Aggregate result of one build's full suite.

    Counts are taken as given. A suite whose counts do not add up is still
    accepted, the tracker only aggregates.
    """
    __test__ = False

    suite_name: str
    build_number: int
    timestamp: datetime
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    duration: float = 0.0

    @property
    def reliability(self) -> float:
        """Percentage of passed tests, 100 when the suite ran nothing."""
        if self.total_tests == 0:
            return 100.0
        return clamp_percent(self.passed_tests / self.total_tests * 100)


class FlakyTestRecord(RecordModel):
    test_name: str
    failure_rate: float
    inconsistent_builds: int
    pattern: FlakePattern
    last_failure: Optional[datetime] = None


class ReliabilityMetrics(RecordModel):
    overall_reliability: float = 100.0
    build_window: int = 0
    total_builds: int = 0
    trend: List[float] = Field(default_factory=list)


class ReliabilityStats(RecordModel):
    """Per-build reliability spread over a trailing period of days."""
    average_reliability: float = 100.0
    min_reliability: float = 100.0
    max_reliability: float = 100.0
    total_builds: int = 0


class SnapshotMetadata(RecordModel):
    version: str
    last_updated: datetime
    total_builds: int
    environment: str


class TestDataSnapshot(RecordModel):
    """Complete point-in-time serialization of tracked records."""
    __test__ = False

    test_runs: List[TestRun] = Field(default_factory=list)
    test_suites: List[TestSuiteRun] = Field(default_factory=list)
    metadata: SnapshotMetadata


class DailyReliability(RecordModel):
    date: str
    reliability: float
    builds: int


class HistoricalSummary(RecordModel):
    average_reliability: float = 100.0
    best_day: Optional[DailyReliability] = None
    worst_day: Optional[DailyReliability] = None
    total_builds: int = 0


class HistoricalMetrics(RecordModel):
    daily_reliability: List[DailyReliability] = Field(default_factory=list)
    trends: ReliabilityMetrics = Field(default_factory=ReliabilityMetrics)
    summary: HistoricalSummary = Field(default_factory=HistoricalSummary)
