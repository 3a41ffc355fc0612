"""
Unit tests for the execution history and analytics summary.
"""
import pytest

from hvac_reports.domain.models import AnalyticsTimeRange, DomainMetrics, ExecutionMetadata
from hvac_reports.reports.analytics import ExecutionHistory

HOUR = 60 * 60
DAY = 24 * HOUR


class FakeClock:
    def __init__(self, now=10 * DAY):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def metadata(report_id="r1", ms=100.0, sources=("operational",), metrics=None, partial=False):
    return ExecutionMetadata(
        report_id=report_id,
        execution_time=ms,
        total_rows=3,
        data_sources_used=list(sources),
        warsaw_metrics=metrics,
        partial=partial,
    )


class TestExecutionHistory:
    """Tests for recording and windowing."""

    def setup_method(self):
        self.clock = FakeClock()
        self.history = ExecutionHistory(max_per_report=3, clock=self.clock)

    def test_record_keeps_metadata_only(self):
        record = self.history.record(metadata(ms=42.0))
        assert record.report_id == "r1"
        assert record.execution_time == 42.0
        assert record.executed_at == self.clock.now
        assert record.total_rows == 3

    def test_oldest_records_drop_out(self):
        """Should keep at most max_per_report records per report."""
        for ms in (1.0, 2.0, 3.0, 4.0):
            self.history.record(metadata(ms=ms))
        self.history.record(metadata(report_id="r2"))
        assert [r.execution_time for r in self.history.records("r1")] == [2.0, 3.0, 4.0]
        assert self.history.get_stats() == {"reports_tracked": 2, "records_held": 4, "total_recorded": 5}

    def test_window_excludes_old_records(self):
        self.history.record(metadata(ms=10.0))
        self.clock.advance(2 * DAY)
        self.history.record(metadata(ms=20.0))
        assert [r.execution_time for r in self.history.records("r1", AnalyticsTimeRange.DAY)] == [20.0]
        assert len(self.history.records("r1", AnalyticsTimeRange.WEEK)) == 2

    def test_forget(self):
        self.history.record(metadata())
        self.history.record(metadata())
        assert self.history.forget("r1") == 2
        assert self.history.records("r1") == []
        assert self.history.forget("r1") == 0

    def test_recorded_metrics_are_copies(self):
        metrics = DomainMetrics(districts_analyzed=["Wola"])
        record = self.history.record(metadata(metrics=metrics))
        metrics.districts_analyzed.append("Ursus")
        assert record.warsaw_metrics.districts_analyzed == ["Wola"]


class TestSummarize:
    """Tests for the aggregated analytics."""

    def setup_method(self):
        self.clock = FakeClock()
        self.history = ExecutionHistory(clock=self.clock)

    def test_empty_history(self):
        analytics = self.history.summarize("r1")
        assert analytics.total_executions == 0
        assert analytics.avg_execution_time == 0.0
        assert analytics.data_source_usage == {}
        assert analytics.warsaw_metrics.avg_affluence_score is None

    def test_totals_and_usage(self):
        """Should count executions per backend and average execution time."""
        self.history.record(metadata(ms=100.0, sources=("operational", "analytical")))
        self.history.record(metadata(ms=300.0, sources=("operational",), partial=True))
        self.history.record(metadata(report_id="r2", ms=50.0, sources=("semantic",)))

        one = self.history.summarize("r1")
        assert one.report_id == "r1"
        assert one.total_executions == 2
        assert one.avg_execution_time == 200.0
        assert one.partial_executions == 1
        assert one.data_source_usage == {"operational": 2, "analytical": 1}

        everything = self.history.summarize()
        assert everything.total_executions == 3
        assert everything.data_source_usage["semantic"] == 1

    def test_domain_metrics_averaged_over_runs_that_report_them(self):
        self.history.record(metadata(metrics=DomainMetrics(districts_analyzed=["Wola"], affluence_score=0.5)))
        self.history.record(metadata(metrics=DomainMetrics(
            districts_analyzed=["Mokotów", "Wola"], affluence_score=0.8, route_efficiency=0.6,
        )))
        self.history.record(metadata())
        summary = self.history.summarize("r1").warsaw_metrics
        assert summary.avg_affluence_score == pytest.approx(0.65)
        assert summary.avg_route_efficiency == pytest.approx(0.6)
        assert summary.districts_analyzed == ["Wola", "Mokotów"]

    def test_time_range_applies(self):
        self.history.record(metadata(ms=10.0))
        self.clock.advance(8 * DAY)
        self.history.record(metadata(ms=30.0))
        assert self.history.summarize("r1", AnalyticsTimeRange.WEEK).total_executions == 1
        assert self.history.summarize("r1", AnalyticsTimeRange.MONTH).avg_execution_time == 20.0

    def test_camel_case_dump(self):
        self.history.record(metadata())
        body = self.history.summarize("r1", AnalyticsTimeRange.DAY).to_api()
        assert body["timeRange"] == "24h"
        assert body["totalExecutions"] == 1
        assert body["dataSourceUsage"] == {"operational": 1}
        assert "avgAffluenceScore" in body["warsawMetrics"]
