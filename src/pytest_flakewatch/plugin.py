"""Pytest plugin entry point."""

import asyncio
import json
from datetime import datetime, timezone
from typing import List, Optional

from loguru import logger

from pytest_flakewatch.config import Settings, get_settings
from pytest_flakewatch.domains.reliability.models import FlakyTestRecord, ReliabilityMetrics, TestDataSnapshot
from pytest_flakewatch.domains.reliability.services import ReliabilityTracker
from pytest_flakewatch.infrastructure.collection.recorder import BuildRecorder
from pytest_flakewatch.infrastructure.persistence.store import PersistenceError, TestDataPersistence

PLUGIN_NAME = "flakewatch-session"
TREND_DISPLAY = 10


def pytest_addoption(parser):
    """Register command line options."""
    group = parser.getgroup("flakewatch")
    group.addoption(
        "--flakewatch",
        action="store_true",
        dest="flakewatch",
        default=False,
        help="Record this build and report test reliability and flaky tests"
    )
    group.addoption(
        "--flakewatch-data-dir",
        action="store",
        dest="flakewatch_data_dir",
        help="Directory holding the persisted build history"
    )
    group.addoption(
        "--flakewatch-build",
        action="store",
        type=int,
        dest="flakewatch_build",
        help="Build number of this run (defaults to one past the last persisted build)"
    )
    group.addoption(
        "--flakewatch-history-days",
        action="store",
        type=int,
        dest="flakewatch_history_days",
        help="Retention window in days for historical metrics"
    )
    group.addoption(
        "--flakewatch-suite",
        action="store",
        dest="flakewatch_suite",
        help="Suite name recorded for this build"
    )
    group.addoption(
        "--flakewatch-report",
        action="store",
        dest="flakewatch_report",
        help="Path to generate JSON reliability report"
    )


def resolve_settings(config) -> Settings:
    """Settings from the environment, overridden by CLI options."""
    settings = get_settings()

    overrides = {}
    if config.getoption("flakewatch"):
        overrides["enabled"] = True
    for option, field in (
        ("flakewatch_data_dir", "data_dir"),
        ("flakewatch_build", "build_number"),
        ("flakewatch_history_days", "max_history_days"),
        ("flakewatch_suite", "suite_name"),
        ("flakewatch_report", "report_path"),
    ):
        value = config.getoption(option)
        if value is not None:
            overrides[field] = value

    return settings.model_copy(update=overrides)


def pytest_configure(config):
    """Configure the plugin."""
    settings = resolve_settings(config)
    if not settings.enabled:
        return

    # xdist forwards every worker report to the controller, which records the build
    if hasattr(config, "workerinput"):
        return

    session = FlakewatchSession(
        settings=settings,
        tracker=ReliabilityTracker(),
        persistence=TestDataPersistence.from_settings(settings),
        recorder=BuildRecorder(suite_name=settings.suite_name),
    )
    config.pluginmanager.register(session, PLUGIN_NAME)


class FlakewatchSession:
    """Records one build and synchronizes it with the persisted history.

    Each pytest session owns a fresh tracker. The persisted snapshot is loaded
    into it at the end of the session, the current build is appended, and the
    merged history is written back.
    """

    def __init__(
        self,
        settings: Settings,
        tracker: ReliabilityTracker,
        persistence: TestDataPersistence,
        recorder: BuildRecorder,
    ):
        self.settings = settings
        self.tracker = tracker
        self.persistence = persistence
        self.recorder = recorder
        self.build_number: Optional[int] = None
        self.metrics: Optional[ReliabilityMetrics] = None
        self.flaky_tests: List[FlakyTestRecord] = []

    def pytest_runtest_logreport(self, report):
        self.recorder.record(report)

    def pytest_sessionfinish(self, session, exitstatus):
        """Merge this build into the persisted history."""
        if not self.recorder:
            logger.debug("No test outcomes recorded, skipping build history update")
            return

        try:
            asyncio.run(self.synchronize())
        except PersistenceError as e:
            # Reliability: history problems must not fail the test session
            logger.error(f"Could not persist build history: {e}")

    async def synchronize(self) -> None:
        snapshot = await self.persistence.load_test_data()
        if snapshot is not None:
            self.tracker.import_data(self.persistence.prune(snapshot))

        self.build_number = self._resolve_build_number(snapshot)
        runs, suite = self.recorder.build(self.build_number, datetime.now(timezone.utc))
        for run in runs:
            self.tracker.add_test_run(run)
        self.tracker.add_test_suite(suite)

        self.metrics = self.tracker.calculate_reliability()
        # Tests deleted or renamed since earlier builds are not reported
        current = {run.test_name for run in runs}
        self.flaky_tests = [f for f in self.tracker.detect_flaky_tests() if f.test_name in current]

        await self.persistence.save_test_data(self.tracker.export_data(self.settings.environment))

    def _resolve_build_number(self, snapshot: Optional[TestDataSnapshot]) -> int:
        if self.settings.build_number is not None:
            return self.settings.build_number
        if snapshot is None or not snapshot.test_suites:
            return 1
        return max(s.build_number for s in snapshot.test_suites) + 1

    def pytest_terminal_summary(self, terminalreporter, exitstatus, config):
        """Report build reliability and flaky tests."""
        terminalreporter.section("Flakewatch Reliability Report")

        if self.metrics is None:
            terminalreporter.write_line("No reliability data collected.")
            return

        metrics = self.metrics
        terminalreporter.write_line(f"Build: {self.build_number}")
        terminalreporter.write_line(
            f"Reliability: {metrics.overall_reliability:.2f}% "
            f"over {metrics.build_window} build(s) ({metrics.total_builds} total)"
        )
        recent = metrics.trend[-TREND_DISPLAY:]
        terminalreporter.write_line("Trend: " + ", ".join(f"{value:.1f}" for value in recent))

        if self.flaky_tests:
            terminalreporter.write_line("")
            terminalreporter.write_line("⚠️  Detected Flaky Tests:", yellow=True)

            max_len = max(max(len(f.test_name) for f in self.flaky_tests), 20)
            fmt = f"{{:<{max_len}}} {{:>10}} {{:>7}} {{:>13}}"
            terminalreporter.write_line(fmt.format("Test", "Fail Rate", "Builds", "Pattern"))
            terminalreporter.write_line("-" * (max_len + 33))
            for flaky in self.flaky_tests:
                terminalreporter.write_line(fmt.format(
                    flaky.test_name,
                    f"{flaky.failure_rate * 100:.1f}%",
                    flaky.inconsistent_builds,
                    flaky.pattern.value,
                ))
        else:
            terminalreporter.write_line("No flaky tests detected.")

        # JSON Report
        if self.settings.report_path:
            data = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "build_number": self.build_number,
                "reliability": metrics.model_dump(mode="json"),
                "flaky_tests": [f.model_dump(mode="json") for f in self.flaky_tests],
            }
            try:
                with open(self.settings.report_path, "w") as f:
                    json.dump(data, f, indent=2)
            except OSError as e:
                logger.error(f"Could not write Flakewatch report: {e}")
                return
            terminalreporter.write_line(f"\nSaved Flakewatch report to {self.settings.report_path}")
