from .models import (
    BackendKind,
    FieldType,
    FilterOperator,
    LogicalConnector,
    JoinKind,
    ReportType,
    ChartKind,
    AggregationKind,
    Filter,
    Join,
    DataSource,
    CalculatedField,
    VisualizationSpec,
    DomainWeightingSettings,
    ReportDefinition,
    DateRange,
    ExecutionParams,
    DomainMetrics,
    ExecutionMetadata,
    ExecutionResult,
    ReportError,
    AnalyticsTimeRange,
    ReportAnalytics,
)

__all__ = [
    "BackendKind",
    "FieldType",
    "FilterOperator",
    "LogicalConnector",
    "JoinKind",
    "ReportType",
    "ChartKind",
    "AggregationKind",
    "Filter",
    "Join",
    "DataSource",
    "CalculatedField",
    "VisualizationSpec",
    "DomainWeightingSettings",
    "ReportDefinition",
    "DateRange",
    "ExecutionParams",
    "DomainMetrics",
    "ExecutionMetadata",
    "ExecutionResult",
    "ReportError",
    "AnalyticsTimeRange",
    "ReportAnalytics",
]
