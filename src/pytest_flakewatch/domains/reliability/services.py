"""Domain services for reliability and flaky test analysis."""

from datetime import datetime, timedelta, timezone
from statistics import median
from typing import Dict, List, Optional, Sequence
from loguru import logger
from pytest_flakewatch.domains.reliability.models import (
    FlakePattern,
    FlakyTestRecord,
    ReliabilityMetrics,
    ReliabilityStats,
    SnapshotMetadata,
    TestDataSnapshot,
    TestRun,
    TestStatus,
    TestSuiteRun,
    clamp_percent,
)

RELIABILITY_WINDOW = 50
FLAKY_DETECTION_WINDOW = 20
FLAKY_THRESHOLD = 0.01
# Median failing duration must exceed this multiple of the median passing duration
TIMING_RATIO = 1.5

SNAPSHOT_VERSION = "1.0.0"


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FlakyTestDetector:
    """Service to classify tests whose outcome varies across builds."""

    def __init__(
        self,
        window: int = FLAKY_DETECTION_WINDOW,
        threshold: float = FLAKY_THRESHOLD,
        timing_ratio: float = TIMING_RATIO,
    ):
        self.window = window
        self.threshold = threshold
        self.timing_ratio = timing_ratio

    def detect(self, runs_by_test: Dict[str, Sequence[TestRun]]) -> List[FlakyTestRecord]:
        """Returns flaky tests ordered by failure rate, highest first."""
        flaky_tests = []
        for test_name, runs in runs_by_test.items():
            record = self.analyze(test_name, runs)
            if record is not None:
                flaky_tests.append(record)

        return sorted(flaky_tests, key=lambda r: r.failure_rate, reverse=True)

    def analyze(self, test_name: str, runs: Sequence[TestRun]) -> Optional[FlakyTestRecord]:
        """Analyzes the most recent runs of one test.

        Returns None for tests at or below the failure threshold.
        """
        recent = list(runs)[-self.window:]
        if not recent:
            return None

        failures = [r for r in recent if r.status == TestStatus.FAIL]
        failure_rate = len(failures) / len(recent)
        if failure_rate <= self.threshold:
            return None

        pattern = self.classify(recent)
        logger.debug(f"Flaky test {test_name}: rate={failure_rate:.2f} pattern={pattern.value}")

        return FlakyTestRecord(
            test_name=test_name,
            failure_rate=failure_rate,
            inconsistent_builds=len(recent),
            pattern=pattern,
            last_failure=max(f.timestamp for f in failures),
        )

    def classify(self, runs: Sequence[TestRun]) -> FlakePattern:
        """Classifies the failure pattern of a test already known to be flaky."""
        failing = [r.duration for r in runs if r.status == TestStatus.FAIL]
        passing = [r.duration for r in runs if r.status == TestStatus.PASS]

        if failing and passing:
            if median(failing) > self.timing_ratio * median(passing):
                return FlakePattern.TIMING

        return FlakePattern.INTERMITTENT


class ReliabilityTracker:
    """Rolling-window reliability over ingested suite runs.

    Ingestion order is authoritative: the window is the most recently added
    suite runs, regardless of their build numbers or timestamps.
    """

    def __init__(
        self,
        detector: Optional[FlakyTestDetector] = None,
        window: int = RELIABILITY_WINDOW,
    ):
        self.detector = detector or FlakyTestDetector()
        self.window = window
        self._suites: List[TestSuiteRun] = []
        self._runs: List[TestRun] = []
        self._runs_by_test: Dict[str, List[TestRun]] = {}
        self._total_builds = 0

    @property
    def total_builds(self) -> int:
        return self._total_builds

    def add_test_suite(self, suite: TestSuiteRun) -> None:
        self._suites.append(suite)
        self._total_builds += 1
        logger.debug(f"Suite run recorded: {suite.suite_name} build {suite.build_number}")

    def add_test_run(self, run: TestRun) -> None:
        self._runs.append(run)
        self._runs_by_test.setdefault(run.test_name, []).append(run)

    def calculate_reliability(self) -> ReliabilityMetrics:
        recent = self._suites[-self.window:] if self.window > 0 else []

        total = sum(s.total_tests for s in recent)
        passed = sum(s.passed_tests for s in recent)
        overall = clamp_percent(passed / total * 100) if total > 0 else 100.0

        return ReliabilityMetrics(
            overall_reliability=overall,
            build_window=len(recent),
            total_builds=self._total_builds,
            trend=[s.reliability for s in recent],
        )

    def detect_flaky_tests(self) -> List[FlakyTestRecord]:
        return self.detector.detect(self._runs_by_test)

    def get_reliability_stats(self, days: int = 7, now: Optional[datetime] = None) -> ReliabilityStats:
        """Spread of per-build reliability for suite runs in the trailing `days`."""
        cutoff = as_utc(now or datetime.now(timezone.utc)) - timedelta(days=days)
        recent = [s for s in self._suites if as_utc(s.timestamp) >= cutoff]

        if not recent:
            return ReliabilityStats()

        reliabilities = [s.reliability for s in recent]
        return ReliabilityStats(
            average_reliability=sum(reliabilities) / len(reliabilities),
            min_reliability=min(reliabilities),
            max_reliability=max(reliabilities),
            total_builds=len(recent),
        )

    def export_data(self, environment: str = "development") -> TestDataSnapshot:
        """Snapshot of every record held, in ingestion order."""
        return TestDataSnapshot(
            test_runs=list(self._runs),
            test_suites=list(self._suites),
            metadata=SnapshotMetadata(
                version=SNAPSHOT_VERSION,
                last_updated=datetime.now(timezone.utc),
                total_builds=self._total_builds,
                environment=environment,
            ),
        )

    def import_data(self, snapshot: TestDataSnapshot) -> None:
        """Replaces the held history with the records of a snapshot.

        The build counter resumes from the snapshot metadata, which counts
        builds that pruning has since dropped.
        """
        self.clear_data()
        for suite in snapshot.test_suites:
            self.add_test_suite(suite)
        for run in snapshot.test_runs:
            self.add_test_run(run)
        self._total_builds = max(self._total_builds, snapshot.metadata.total_builds)

    def clear_data(self) -> None:
        self._suites = []
        self._runs = []
        self._runs_by_test = {}
        self._total_builds = 0
