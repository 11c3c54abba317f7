import pytest
from datetime import datetime, timedelta, timezone

from pytest_flakewatch.domains.reliability.models import TestDataSnapshot, TestRun, TestStatus, TestSuiteRun
from pytest_flakewatch.domains.reliability.services import RELIABILITY_WINDOW, ReliabilityTracker

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_suite(build, total=10, passed=10, timestamp=NOW):
    return TestSuiteRun(
        suite_name="unit",
        build_number=build,
        timestamp=timestamp,
        total_tests=total,
        passed_tests=passed,
        failed_tests=total - passed,
        skipped_tests=0,
        duration=1200.0,
    )


@pytest.fixture
def tracker():
    return ReliabilityTracker()


def test_empty_tracker_reports_full_reliability(tracker):
    """No history means no evidence of failure."""
    metrics = tracker.calculate_reliability()

    assert metrics.build_window == 0
    assert metrics.total_builds == 0
    assert metrics.overall_reliability == 100
    assert metrics.trend == []


def test_window_ignores_stale_history(tracker):
    """Only the most recent 50 builds count towards reliability."""
    for build in range(1, 56):
        tracker.add_test_suite(make_suite(build, passed=10))
    for build in range(56, 61):
        tracker.add_test_suite(make_suite(build, passed=8))

    metrics = tracker.calculate_reliability()

    assert metrics.total_builds == 60
    assert metrics.build_window == RELIABILITY_WINDOW
    assert 90 < metrics.overall_reliability < 100
    assert metrics.overall_reliability == pytest.approx(98.0)


def test_reliability_is_weighted_by_test_count(tracker):
    tracker.add_test_suite(make_suite(1, total=100, passed=90))
    tracker.add_test_suite(make_suite(2, total=50, passed=45))

    assert tracker.calculate_reliability().overall_reliability == pytest.approx(90.0)


def test_trend_matches_window(tracker):
    for build in range(1, 71):
        tracker.add_test_suite(make_suite(build, passed=build % 11))

    metrics = tracker.calculate_reliability()

    assert metrics.build_window <= 50
    assert metrics.build_window <= metrics.total_builds
    assert len(metrics.trend) == metrics.build_window
    assert all(0 <= value <= 100 for value in metrics.trend)


def test_suite_without_tests_counts_as_reliable(tracker):
    tracker.add_test_suite(make_suite(1, total=0, passed=0))
    tracker.add_test_suite(make_suite(2, total=10, passed=5))

    metrics = tracker.calculate_reliability()

    assert metrics.trend == [100.0, 50.0]
    assert metrics.overall_reliability == pytest.approx(50.0)


def test_all_empty_suites_report_full_reliability(tracker):
    tracker.add_test_suite(make_suite(1, total=0, passed=0))

    assert tracker.calculate_reliability().overall_reliability == 100


def test_malformed_counts_are_accepted(tracker):
    """The tracker aggregates counts as given and keeps percentages in range."""
    tracker.add_test_suite(make_suite(1, total=10, passed=12))

    metrics = tracker.calculate_reliability()

    assert metrics.total_builds == 1
    assert metrics.trend == [100.0]
    assert metrics.overall_reliability == 100


def test_ingestion_order_is_authoritative(tracker):
    """Build numbers and timestamps do not reorder the window."""
    tracker.add_test_suite(make_suite(10, passed=2, timestamp=NOW))
    tracker.add_test_suite(make_suite(3, passed=7, timestamp=NOW - timedelta(days=3)))

    assert tracker.calculate_reliability().trend == [20.0, 70.0]


def test_clear_data_resets_everything(tracker):
    tracker.add_test_suite(make_suite(1, passed=3))
    tracker.add_test_run(TestRun(test_name="t", status=TestStatus.FAIL, build_number=1, timestamp=NOW))

    tracker.clear_data()
    metrics = tracker.calculate_reliability()

    assert metrics.build_window == 0
    assert metrics.total_builds == 0
    assert metrics.overall_reliability == 100
    assert metrics.trend == []
    assert tracker.detect_flaky_tests() == []


def test_reliability_stats_cover_trailing_days(tracker):
    tracker.add_test_suite(make_suite(1, passed=0, timestamp=NOW - timedelta(days=30)))
    tracker.add_test_suite(make_suite(2, passed=6, timestamp=NOW - timedelta(days=2)))
    tracker.add_test_suite(make_suite(3, passed=10, timestamp=NOW - timedelta(hours=1)))

    stats = tracker.get_reliability_stats(days=7, now=NOW)

    assert stats.total_builds == 2
    assert stats.average_reliability == pytest.approx(80.0)
    assert stats.min_reliability == pytest.approx(60.0)
    assert stats.max_reliability == pytest.approx(100.0)


def test_reliability_stats_without_builds(tracker):
    stats = tracker.get_reliability_stats(days=7, now=NOW)

    assert stats.total_builds == 0
    assert stats.average_reliability == 100


def test_export_and_import_preserve_history(tracker):
    tracker.add_test_suite(make_suite(1, passed=9))
    tracker.add_test_run(TestRun(test_name="a", status=TestStatus.PASS, build_number=1, timestamp=NOW))
    tracker.add_test_run(TestRun(test_name="b", status=TestStatus.FAIL, build_number=1, timestamp=NOW))

    snapshot = tracker.export_data(environment="ci")

    assert isinstance(snapshot, TestDataSnapshot)
    assert snapshot.metadata.environment == "ci"
    assert snapshot.metadata.total_builds == 1
    assert [r.test_name for r in snapshot.test_runs] == ["a", "b"]

    restored = ReliabilityTracker()
    restored.import_data(snapshot)

    assert restored.total_builds == 1
    assert restored.calculate_reliability() == tracker.calculate_reliability()
    assert [f.test_name for f in restored.detect_flaky_tests()] == ["b"]


def test_import_resumes_build_count_from_metadata(tracker):
    """Pruned history still counts towards total builds."""
    tracker.add_test_suite(make_suite(1))
    snapshot = tracker.export_data()
    snapshot = snapshot.model_copy(update={
        "metadata": snapshot.metadata.model_copy(update={"total_builds": 120}),
    })

    restored = ReliabilityTracker()
    restored.import_data(snapshot)

    metrics = restored.calculate_reliability()
    assert metrics.total_builds == 120
    assert metrics.build_window == 1


def test_import_replaces_existing_history(tracker):
    tracker.add_test_suite(make_suite(1))
    tracker.add_test_suite(make_suite(2))
    snapshot = tracker.export_data()

    other = ReliabilityTracker()
    for build in range(10):
        other.add_test_suite(make_suite(build, passed=0))
    other.import_data(snapshot)

    assert other.total_builds == 2
    assert other.calculate_reliability().overall_reliability == 100
