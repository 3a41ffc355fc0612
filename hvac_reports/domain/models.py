"""
Report Builder domain models.

Defines the declarative report shape (data sources, filters, joins,
calculated fields, visualization, domain weighting) together with the
execution request/response contract returned by the engine.
"""
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from hvac_reports.core.constants import CACHE_TTL_SECONDS, utc_now
from hvac_reports.domain.base import CamelCaseModel


class BackendKind(str, Enum):
    OPERATIONAL = "operational"
    ANALYTICAL = "analytical"
    SEMANTIC = "semantic"
    CALCULATED = "calculated"


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    IN = "in"
    BETWEEN = "between"


class LogicalConnector(str, Enum):
    AND = "AND"
    OR = "OR"


class JoinKind(str, Enum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"


class ReportType(str, Enum):
    DASHBOARD = "dashboard"
    TABLE = "table"
    CHART = "chart"
    KPI = "kpi"
    CUSTOM = "custom"


class ChartKind(str, Enum):
    TABLE = "table"
    BAR_CHART = "bar_chart"
    LINE_CHART = "line_chart"
    PIE_CHART = "pie_chart"
    AREA_CHART = "area_chart"
    SCATTER_PLOT = "scatter_plot"
    HEATMAP = "heatmap"
    GAUGE = "gauge"
    KPI_CARD = "kpi_card"


class AggregationKind(str, Enum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"
    DISTINCT = "distinct"


class SharePermissionLevel(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    ADMIN = "admin"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# =============================================================================
# Report definition
# =============================================================================

class Filter(CamelCaseModel):
    field: str
    operator: FilterOperator
    value: Any = None
    logical_operator: LogicalConnector = LogicalConnector.AND  # connector to the previous filter


class Join(CamelCaseModel):
    table: str
    on: str  # "jobs.contactId = contacts._id" or a shared column name
    kind: JoinKind = Field(default=JoinKind.INNER, alias="type")


class DataSource(CamelCaseModel):
    id: str
    backend: BackendKind = Field(alias="type")
    table: Optional[str] = None
    field: Optional[str] = None
    query: Optional[str] = None  # similarity concept (semantic) or formula (calculated)
    filters: List[Filter] = Field(default_factory=list)
    joins: List[Join] = Field(default_factory=list)


class CalculatedField(CamelCaseModel):
    name: str
    formula: str
    data_type: FieldType = FieldType.NUMBER


class VisualizationSpec(CamelCaseModel):
    chart_type: ChartKind = Field(default=ChartKind.TABLE, alias="type")
    x_axis: Optional[str] = None
    y_axis: Optional[str] = None
    group_by: Optional[str] = None
    aggregation: Optional[AggregationKind] = None
    # Rendering hints, opaque to the engine
    colors: List[str] = Field(default_factory=list)
    custom_settings: Dict[str, Any] = Field(default_factory=dict)


class DomainWeightingSettings(CamelCaseModel):
    district_filter: Optional[str] = None
    affluence_weighting: bool = False
    seasonal_adjustment: bool = False
    route_optimization: bool = False


class SharePermission(CamelCaseModel):
    principal: str
    permission: SharePermissionLevel = SharePermissionLevel.VIEW


class ReportDefinition(CamelCaseModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    report_type: ReportType = Field(default=ReportType.CUSTOM, alias="type")
    data_sources: List[DataSource] = Field(default_factory=list)
    visualization: VisualizationSpec = Field(default_factory=VisualizationSpec)
    calculated_fields: List[CalculatedField] = Field(default_factory=list)
    weighting: Optional[DomainWeightingSettings] = Field(default=None, alias="warsawSettings")
    owner: Optional[str] = None
    is_public: bool = False
    is_template: bool = False
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    shared_with: List[SharePermission] = Field(default_factory=list)
    cache_enabled: bool = True
    cache_ttl_seconds: float = Field(default=CACHE_TTL_SECONDS, gt=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_executed: Optional[datetime] = None
    execution_time: Optional[float] = None  # milliseconds, most recent run

    def can_view(self, principal: Optional[str]) -> bool:
        if self.is_public or principal is None:
            return True
        if self.owner == principal:
            return True
        return any(share.principal == principal for share in self.shared_with)


# =============================================================================
# Execution request
# =============================================================================

class DateRange(CamelCaseModel):
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("date range start must not be after end")
        return self


class ExecutionParams(CamelCaseModel):
    date_range: Optional[DateRange] = None
    month: Optional[int] = Field(default=None, ge=1, le=12)
    district: Optional[str] = None  # overrides weighting.district_filter
    bypass_cache: bool = False


class ExecuteReportRequest(CamelCaseModel):
    parameters: ExecutionParams = Field(default_factory=ExecutionParams)
    use_cache: bool = True


# =============================================================================
# Execution result
# =============================================================================

class DomainMetrics(CamelCaseModel):
    districts_analyzed: List[str] = Field(default_factory=list)
    affluence_score: Optional[float] = None
    seasonal_factor: Optional[float] = None
    route_efficiency: Optional[float] = None


class ExecutionMetadata(CamelCaseModel):
    report_id: Optional[str] = None
    total_rows: int = 0
    execution_time: float = 0.0  # milliseconds
    data_sources_used: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)
    backend_timings: Dict[str, float] = Field(default_factory=dict)
    failed_backends: List[str] = Field(default_factory=list)
    warsaw_metrics: Optional[DomainMetrics] = None
    warnings: List[str] = Field(default_factory=list)
    partial: bool = False
    cached: bool = False
    cache_key: Optional[str] = None


class ExecutionResult(CamelCaseModel):
    data: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)


class ReportError(CamelCaseModel):
    code: str
    message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = False
    component: str = "engine"
    timestamp: datetime = Field(default_factory=utc_now)


class ExecuteReportResponse(CamelCaseModel):
    success: bool = True
    data: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: ExecutionMetadata
    cached: bool = False


class ErrorResponse(CamelCaseModel):
    success: bool = False
    error: ReportError


# =============================================================================
# Execution analytics
# =============================================================================

class AnalyticsTimeRange(str, Enum):
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"

    @property
    def seconds(self) -> int:
        return {"24h": 1, "7d": 7, "30d": 30}[self.value] * 24 * 60 * 60


class DomainMetricsSummary(CamelCaseModel):
    avg_affluence_score: Optional[float] = None
    avg_route_efficiency: Optional[float] = None
    districts_analyzed: List[str] = Field(default_factory=list)


class ReportAnalytics(CamelCaseModel):
    report_id: Optional[str] = None
    time_range: AnalyticsTimeRange = AnalyticsTimeRange.WEEK
    total_executions: int = 0
    avg_execution_time: float = 0.0  # milliseconds
    partial_executions: int = 0
    data_source_usage: Dict[str, int] = Field(default_factory=dict)
    warsaw_metrics: DomainMetricsSummary = Field(default_factory=DomainMetricsSummary)


# =============================================================================
# Repository requests
# =============================================================================

class ShareRequest(CamelCaseModel):
    principal: str
    permission: SharePermissionLevel = SharePermissionLevel.VIEW


class TemplateInstantiateRequest(CamelCaseModel):
    name: str
    description: Optional[str] = None
    owner: Optional[str] = None


class ReportQuery(CamelCaseModel):
    """Filters accepted by the repository list operation."""
    report_type: Optional[ReportType] = None
    category: Optional[str] = None
    is_template: Optional[bool] = None
    is_public: Optional[bool] = None
    search: Optional[str] = None
    principal: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=500)

    @field_validator("search")
    @classmethod
    def _strip_search(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None
