"""Conversion of pytest reports into build records."""

from datetime import datetime
from typing import Any, Dict, List, Tuple

from pytest_flakewatch.domains.reliability.models import TestRun, TestStatus, TestSuiteRun

MAX_ERROR_LENGTH = 500

_PRECEDENCE = {TestStatus.PASS: 0, TestStatus.SKIP: 1, TestStatus.FAIL: 2}


class BuildRecorder:
    """Accumulates per-test outcomes for one build.

    A test's outcome is the worst outcome across its setup, call and teardown
    phases.
    """

    def __init__(self, suite_name: str = "pytest"):
        self.suite_name = suite_name
        self._outcomes: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._outcomes)

    def record(self, report: Any) -> None:
        """Folds one pytest TestReport into the outcome of its test."""
        entry = self._outcomes.setdefault(report.nodeid, {
            "status": TestStatus.PASS.value,
            "duration_ms": 0.0,
            "error": None,
            "retries": 0,
        })
        entry["duration_ms"] += (report.duration or 0.0) * 1000

        # pytest-rerunfailures reports discarded attempts with outcome "rerun"
        if report.outcome == "rerun":
            entry["retries"] += 1
            return

        status = self._status_of(report)
        if _PRECEDENCE[status] > _PRECEDENCE[TestStatus(entry["status"])]:
            entry["status"] = status.value
            if status == TestStatus.FAIL:
                entry["error"] = self._error_of(report)

    def build(self, build_number: int, timestamp: datetime) -> Tuple[List[TestRun], TestSuiteRun]:
        """Produces this build's test runs and suite run."""
        runs = [
            TestRun(
                test_name=node_id,
                status=TestStatus(outcome["status"]),
                duration=outcome["duration_ms"],
                build_number=build_number,
                timestamp=timestamp,
                error=outcome["error"],
                retries=outcome["retries"],
            )
            for node_id, outcome in self._outcomes.items()
        ]

        suite = TestSuiteRun(
            suite_name=self.suite_name,
            build_number=build_number,
            timestamp=timestamp,
            total_tests=len(runs),
            passed_tests=sum(1 for r in runs if r.status == TestStatus.PASS),
            failed_tests=sum(1 for r in runs if r.status == TestStatus.FAIL),
            skipped_tests=sum(1 for r in runs if r.status == TestStatus.SKIP),
            duration=sum(r.duration for r in runs),
        )
        return runs, suite

    @staticmethod
    def _status_of(report: Any) -> TestStatus:
        if report.failed:
            return TestStatus.FAIL
        if report.skipped:
            return TestStatus.SKIP
        return TestStatus.PASS

    @staticmethod
    def _error_of(report: Any) -> str:
        text = getattr(report, "longreprtext", "") or ""
        lines = [line for line in text.splitlines() if line.strip()]
        message = lines[-1] if lines else f"failed during {report.when}"
        return message[:MAX_ERROR_LENGTH]
