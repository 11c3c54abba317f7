"""Snapshot storage for test history.

The store holds a single JSON snapshot per data directory. Saving replaces
the previous snapshot; callers merge before saving when they want
cumulative history.
"""

import asyncio
import csv
import io
import json
import shutil
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

from pytest_flakewatch.config import Settings
from pytest_flakewatch.domains.reliability.models import (
    DailyReliability,
    HistoricalMetrics,
    HistoricalSummary,
    SnapshotMetadata,
    TestDataSnapshot,
    TestSuiteRun,
    clamp_percent,
)
from pytest_flakewatch.domains.reliability.services import (
    FLAKY_DETECTION_WINDOW,
    RELIABILITY_WINDOW,
    SNAPSHOT_VERSION,
    ReliabilityTracker,
    as_utc,
)

CSV_HEADER = ["Date", "Build Number", "Test Name", "Status", "Duration (ms)", "Error"]


class PersistenceError(Exception):
    """Raised when the snapshot store cannot be written or cleared."""


class TestDataPersistence:
    """Durable store of test runs and suite runs.

    Reads are lenient: a missing or unreadable snapshot means no history.
    Writes and clears are strict and raise PersistenceError.
    """
    __test__ = False

    SNAPSHOT_FILE = "test-data.json"
    BACKUP_SUFFIX = ".backup"

    def __init__(
        self,
        data_dir: str = "./test-results/history",
        max_history_days: int = 7,
        backup_enabled: bool = True,
        environment: str = "development",
    ):
        self.data_dir = Path(data_dir)
        self.max_history_days = max_history_days
        self.backup_enabled = backup_enabled
        self.environment = environment

    @classmethod
    def from_settings(cls, settings: Settings) -> "TestDataPersistence":
        return cls(
            data_dir=settings.data_dir,
            max_history_days=settings.max_history_days,
            backup_enabled=settings.backup_enabled,
            environment=settings.environment,
        )

    @property
    def snapshot_path(self) -> Path:
        return self.data_dir / self.SNAPSHOT_FILE

    @property
    def backup_path(self) -> Path:
        return self.data_dir / (self.SNAPSHOT_FILE + self.BACKUP_SUFFIX)

    async def save_test_data(self, snapshot: TestDataSnapshot) -> None:
        """Writes the snapshot, replacing any previous one."""
        try:
            await asyncio.to_thread(self._write, snapshot)
        except OSError as e:
            raise PersistenceError(f"Test data persistence failed: {e}") from e
        logger.info(
            f"Saved test data snapshot to {self.snapshot_path} "
            f"({len(snapshot.test_suites)} suite runs, {len(snapshot.test_runs)} test runs)"
        )

    async def load_test_data(self) -> Optional[TestDataSnapshot]:
        """Returns the persisted snapshot, or None when there is no usable one."""
        return await asyncio.to_thread(self._read)

    async def get_historical_metrics(self, days: int = 7, now: Optional[datetime] = None) -> HistoricalMetrics:
        """Day-bucketed reliability of persisted suite runs over the trailing `days`.

        The window never reaches further back than `max_history_days`.
        """
        snapshot = await self.load_test_data()
        if snapshot is None:
            return HistoricalMetrics()

        span = min(days, self.max_history_days)
        cutoff = as_utc(now or datetime.now(timezone.utc)) - timedelta(days=span)
        retained = [s for s in snapshot.test_suites if as_utc(s.timestamp) >= cutoff]
        if not retained:
            return HistoricalMetrics()

        daily = self._bucket_by_day(retained)

        tracker = ReliabilityTracker()
        for suite in retained:
            tracker.add_test_suite(suite)

        average = sum(d.reliability for d in daily) / len(daily)
        return HistoricalMetrics(
            daily_reliability=daily,
            trends=tracker.calculate_reliability(),
            summary=HistoricalSummary(
                average_reliability=average,
                best_day=max(daily, key=lambda d: d.reliability),
                worst_day=min(daily, key=lambda d: d.reliability),
                total_builds=len(retained),
            ),
        )

    async def export_test_data(self, format: str = "json") -> str:
        """Serializes the persisted snapshot as 'json' or 'csv'."""
        if format not in ("json", "csv"):
            raise ValueError(f"Unsupported export format: {format}")

        snapshot = await self.load_test_data()
        if snapshot is None:
            logger.warning("No persisted test data, exporting an empty snapshot")
            snapshot = self._empty_snapshot()

        if format == "csv":
            return self._to_csv(snapshot)
        return snapshot.model_dump_json(by_alias=True, indent=2)

    async def clear_all_data(self) -> None:
        """Deletes the snapshot and its backup.

        Raises PersistenceError when the data directory does not exist.
        """
        try:
            removed = await asyncio.to_thread(self._remove_files)
        except OSError as e:
            raise PersistenceError(f"Failed to clear test data: {e}") from e
        logger.info(f"Cleared {removed} test data file(s) from {self.data_dir}")

    def prune(self, snapshot: TestDataSnapshot, now: Optional[datetime] = None) -> TestDataSnapshot:
        """Drops records older than `max_history_days`.

        The most recent RELIABILITY_WINDOW suite runs are always kept, as are
        the most recent FLAKY_DETECTION_WINDOW runs of each test that belong to
        a kept build, so sparse pipelines keep full windows.
        """
        cutoff = as_utc(now or datetime.now(timezone.utc)) - timedelta(days=self.max_history_days)

        suites = snapshot.test_suites
        recent_start = max(len(suites) - RELIABILITY_WINDOW, 0)
        kept_suites = [
            s for index, s in enumerate(suites)
            if index >= recent_start or as_utc(s.timestamp) >= cutoff
        ]
        kept_builds = {s.build_number for s in kept_suites}

        runs_seen: Dict[str, int] = {}
        kept_runs = []
        for run in reversed(snapshot.test_runs):
            if run.build_number not in kept_builds:
                continue
            position = runs_seen.get(run.test_name, 0)
            runs_seen[run.test_name] = position + 1
            if position < FLAKY_DETECTION_WINDOW or as_utc(run.timestamp) >= cutoff:
                kept_runs.append(run)
        kept_runs.reverse()

        dropped = len(suites) - len(kept_suites) + len(snapshot.test_runs) - len(kept_runs)
        if dropped:
            logger.info(f"Pruned {dropped} record(s) older than {self.max_history_days} day(s)")

        return snapshot.model_copy(update={"test_suites": kept_suites, "test_runs": kept_runs})

    def _write(self, snapshot: TestDataSnapshot) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

        if self.backup_enabled and self.snapshot_path.exists():
            shutil.copyfile(self.snapshot_path, self.backup_path)

        # Write then rename so a crash never leaves a half-written snapshot
        tmp_path = self.snapshot_path.with_suffix(".tmp")
        tmp_path.write_text(snapshot.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        tmp_path.replace(self.snapshot_path)

    def _read(self) -> Optional[TestDataSnapshot]:
        try:
            if not self.snapshot_path.exists():
                logger.debug(f"No snapshot at {self.snapshot_path}")
                return None
            raw = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
            snapshot = TestDataSnapshot.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Unreadable test data snapshot {self.snapshot_path}, treating as empty: {e}")
            return None

        if snapshot.metadata.version != SNAPSHOT_VERSION:
            logger.warning(
                f"Data version mismatch: expected {SNAPSHOT_VERSION}, got {snapshot.metadata.version}"
            )
        return snapshot

    def _remove_files(self) -> int:
        if not self.data_dir.is_dir():
            raise FileNotFoundError(f"Data directory does not exist: {self.data_dir}")

        removed = 0
        for path in self.data_dir.iterdir():
            if path.name.endswith(".json") or path.name.endswith(".json" + self.BACKUP_SUFFIX):
                path.unlink()
                removed += 1
        return removed

    def _empty_snapshot(self) -> TestDataSnapshot:
        return TestDataSnapshot(
            metadata=SnapshotMetadata(
                version=SNAPSHOT_VERSION,
                last_updated=datetime.now(timezone.utc),
                total_builds=0,
                environment=self.environment,
            )
        )

    @staticmethod
    def _bucket_by_day(suites: List[TestSuiteRun]) -> List[DailyReliability]:
        buckets: "OrderedDict[str, List[TestSuiteRun]]" = OrderedDict()
        for suite in sorted(suites, key=lambda s: as_utc(s.timestamp).date()):
            day = as_utc(suite.timestamp).date().isoformat()
            buckets.setdefault(day, []).append(suite)

        daily = []
        for day, day_suites in buckets.items():
            total = sum(s.total_tests for s in day_suites)
            passed = sum(s.passed_tests for s in day_suites)
            daily.append(DailyReliability(
                date=day,
                reliability=clamp_percent(passed / total * 100) if total > 0 else 100.0,
                builds=len(day_suites),
            ))
        return daily

    @staticmethod
    def _to_csv(snapshot: TestDataSnapshot) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for run in snapshot.test_runs:
            writer.writerow([
                run.timestamp.isoformat(),
                run.build_number,
                run.test_name,
                run.status.value,
                run.duration,
                run.error or "",
            ])
        return buffer.getvalue()
