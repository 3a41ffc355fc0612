"""
Execution history and analytics.

Every completed (non-cached) execution of a stored report leaves one
ExecutionRecord. Records are kept per report in a bounded deque; the oldest
record drops out once a report reaches its limit.
"""
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional

from hvac_reports.core.constants import HISTORY_MAX_PER_REPORT
from hvac_reports.domain.models import (
    AnalyticsTimeRange,
    DomainMetrics,
    DomainMetricsSummary,
    ExecutionMetadata,
    ReportAnalytics,
)
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)


@dataclass
class ExecutionRecord:
    """Metadata of one execution. Rows are never kept."""
    report_id: str
    executed_at: float  # epoch seconds
    execution_time: float  # milliseconds
    total_rows: int
    partial: bool
    data_sources_used: List[str] = field(default_factory=list)
    warsaw_metrics: Optional[DomainMetrics] = None


def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class ExecutionHistory:
    """
    Thread-safe, bounded per-report execution log.

    Usage:
        history = ExecutionHistory()
        history.record(result.metadata)
        history.summarize(report_id, AnalyticsTimeRange.DAY)
    """

    def __init__(
        self,
        max_per_report: int = HISTORY_MAX_PER_REPORT,
        clock: Callable[[], float] = time.time,
    ):
        self._max_per_report = max_per_report
        self._clock = clock
        self._lock = Lock()
        self._records: Dict[str, Deque[ExecutionRecord]] = {}
        self._total_recorded = 0

    def record(self, metadata: ExecutionMetadata) -> ExecutionRecord:
        record = ExecutionRecord(
            report_id=metadata.report_id,
            executed_at=self._clock(),
            execution_time=metadata.execution_time,
            total_rows=metadata.total_rows,
            partial=metadata.partial,
            data_sources_used=list(metadata.data_sources_used),
            warsaw_metrics=metadata.warsaw_metrics.model_copy(deep=True) if metadata.warsaw_metrics else None,
        )
        with self._lock:
            log = self._records.get(record.report_id)
            if log is None:
                log = self._records[record.report_id] = deque(maxlen=self._max_per_report)
            log.append(record)
            self._total_recorded += 1
        return record

    def forget(self, report_id: str) -> int:
        """Drop all records of a report, returning how many were dropped."""
        with self._lock:
            log = self._records.pop(report_id, None)
        dropped = len(log) if log else 0
        if dropped:
            logger.debug(f"[ExecutionHistory] Dropped {dropped} records of {report_id}")
        return dropped

    def records(
        self,
        report_id: Optional[str] = None,
        time_range: AnalyticsTimeRange = AnalyticsTimeRange.WEEK,
    ) -> List[ExecutionRecord]:
        """Records inside the window, oldest first."""
        since = self._clock() - time_range.seconds
        with self._lock:
            if report_id is not None:
                logs = [self._records.get(report_id, ())]
            else:
                logs = list(self._records.values())
            found = [r for log in logs for r in log if r.executed_at >= since]
        found.sort(key=lambda r: r.executed_at)
        return found

    def summarize(
        self,
        report_id: Optional[str] = None,
        time_range: AnalyticsTimeRange = AnalyticsTimeRange.WEEK,
    ) -> ReportAnalytics:
        """Totals, mean execution time, per-backend usage and averaged domain metrics."""
        found = self.records(report_id, time_range)

        usage: Dict[str, int] = {}
        affluence: List[float] = []
        efficiency: List[float] = []
        districts: Dict[str, None] = {}
        for record in found:
            for source in record.data_sources_used:
                usage[source] = usage.get(source, 0) + 1
            metrics = record.warsaw_metrics
            if metrics is None:
                continue
            if metrics.affluence_score is not None:
                affluence.append(metrics.affluence_score)
            if metrics.route_efficiency is not None:
                efficiency.append(metrics.route_efficiency)
            for district in metrics.districts_analyzed:
                districts.setdefault(district, None)

        return ReportAnalytics(
            report_id=report_id,
            time_range=time_range,
            total_executions=len(found),
            avg_execution_time=_mean([r.execution_time for r in found]) or 0.0,
            partial_executions=sum(1 for r in found if r.partial),
            data_source_usage=usage,
            warsaw_metrics=DomainMetricsSummary(
                avg_affluence_score=_mean(affluence),
                avg_route_efficiency=_mean(efficiency),
                districts_analyzed=list(districts),
            ),
        )

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "reports_tracked": len(self._records),
                "records_held": sum(len(log) for log in self._records.values()),
                "total_recorded": self._total_recorded,
            }
