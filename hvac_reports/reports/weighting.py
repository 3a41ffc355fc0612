"""
Domain Weighting Module.

Applies, in this fixed order and each independently toggled:
  1. district filter (settings or request override)
  2. affluence: currency columns x district factor
  3. seasonal: demand columns x month factor
  4. route efficiency: cost columns - efficiency x max discount

Factors come from config/weighting.yaml so they can change without a code
change. Every transform works on copies of the rows.
"""
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from hvac_reports.core.constants import WEIGHTING_PATH
from hvac_reports.domain.models import DomainMetrics, DomainWeightingSettings, ExecutionParams
from hvac_reports.reports.columns import bare_name, find_first
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)

Row = Dict[str, Any]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _norm(name: Optional[str]) -> str:
    return (name or "").strip().casefold()


@dataclass(frozen=True)
class WeightingTable:
    district_column: str = "district"
    affluence: Dict[str, float] = field(default_factory=dict)
    affluence_default: float = 0.5
    seasonal: Dict[int, float] = field(default_factory=dict)
    currency_columns: Tuple[str, ...] = ()
    cost_columns: Tuple[str, ...] = ()
    demand_columns: Tuple[str, ...] = ()
    efficiency_columns: Tuple[str, ...] = ()
    max_route_discount: float = 50.0

    def affluence_factor(self, district: Optional[str]) -> float:
        if not district:
            return self.affluence_default
        key = _norm(district)
        for name, factor in self.affluence.items():
            if _norm(name) == key:
                return factor
        return self.affluence_default

    def seasonal_factor(self, month: int) -> float:
        return self.seasonal.get(month, 1.0)

    @property
    def routing_columns(self) -> List[str]:
        """Columns the compiler must keep so weighting can run."""
        return [self.district_column, "address", *self.efficiency_columns]

    @classmethod
    def from_dict(cls, data: dict) -> "WeightingTable":
        data = data or {}
        affluence = data.get("affluence") or {}
        districts = {str(k): float(v) for k, v in (affluence.get("districts") or {}).items()}
        default = float(affluence.get("default", 0.5))
        for name, factor in list(districts.items()) + [("<default>", default)]:
            if not 0.0 < factor <= 1.0:
                raise ValueError(f"Affluence factor for {name} must be in (0, 1], got {factor}")

        seasonal = {int(k): float(v) for k, v in (data.get("seasonal") or {}).items()}
        for month, factor in seasonal.items():
            if not 1 <= month <= 12:
                raise ValueError(f"Seasonal month {month} out of range")
            if factor < 1.0:
                raise ValueError(f"Seasonal factor for month {month} must be >= 1.0, got {factor}")

        columns = data.get("columns") or {}
        return cls(
            district_column=data.get("district_column", "district"),
            affluence=districts,
            affluence_default=default,
            seasonal=seasonal,
            currency_columns=tuple(columns.get("currency", [])),
            cost_columns=tuple(columns.get("cost", [])),
            demand_columns=tuple(columns.get("demand", [])),
            efficiency_columns=tuple(columns.get("efficiency", [])),
            max_route_discount=float((data.get("route") or {}).get("max_discount", 50.0)),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "WeightingTable":
        if not path.exists():
            logger.warning(f"[Weighting] Weighting table not found: {path}, using neutral factors")
            return cls()
        table = cls.from_dict(yaml.safe_load(path.read_text(encoding="utf-8")))
        logger.info(f"[Weighting] Loaded {len(table.affluence)} district factors from {path}")
        return table


@lru_cache(maxsize=1)
def get_weighting_table() -> WeightingTable:
    return WeightingTable.from_yaml(Path(WEIGHTING_PATH))


def _matching(columns: Sequence[str], names: Sequence[str]) -> List[str]:
    wanted = set(names)
    return [c for c in columns if bare_name(c) in wanted]


def _mean(values: List[float]) -> Optional[float]:
    return round(sum(values) / len(values), 4) if values else None


# =============================================================================
# Transforms
# =============================================================================

def filter_district(
    rows: List[Row],
    columns: Sequence[str],
    district: str,
    table: WeightingTable,
) -> Tuple[List[Row], Optional[str]]:
    """Keep rows in the district. Falls back to an address substring match."""
    target = _norm(district)
    district_col = find_first([table.district_column], columns)
    if district_col is not None:
        return [dict(r) for r in rows if _norm(r.get(district_col)) == target], None
    address_col = find_first(["address"], columns)
    if address_col is not None:
        return [dict(r) for r in rows if target in _norm(str(r.get(address_col) or ""))], None
    return [dict(r) for r in rows], f"No district column; district filter '{district}' not applied"


def apply_affluence(
    rows: List[Row],
    columns: Sequence[str],
    table: WeightingTable,
    fallback_district: Optional[str] = None,
) -> Tuple[List[Row], Optional[float]]:
    """Multiply currency columns by the row district's affluence factor."""
    targets = _matching(columns, table.currency_columns)
    district_col = find_first([table.district_column], columns)
    factors: List[float] = []
    out: List[Row] = []
    for row in rows:
        row = dict(row)
        district = row.get(district_col) if district_col else None
        factor = table.affluence_factor(district or fallback_district)
        factors.append(factor)
        for col in targets:
            if _is_number(row.get(col)):
                row[col] = row[col] * factor
        out.append(row)
    if not rows:
        return out, table.affluence_factor(fallback_district)
    return out, _mean(factors)


def apply_seasonal(
    rows: List[Row],
    columns: Sequence[str],
    table: WeightingTable,
    month: int,
) -> Tuple[List[Row], float]:
    """Multiply demand/volume columns by the month factor."""
    factor = table.seasonal_factor(month)
    targets = _matching(columns, table.demand_columns)
    out: List[Row] = []
    for row in rows:
        row = dict(row)
        for col in targets:
            if _is_number(row.get(col)):
                row[col] = row[col] * factor
        out.append(row)
    return out, factor


def _efficiency(value: Any) -> Optional[float]:
    if not _is_number(value):
        return None
    # Percentages (0-100) and fractions (0-1) are both accepted
    eff = value / 100.0 if value > 1 else float(value)
    return min(max(eff, 0.0), 1.0)


def apply_route_efficiency(
    rows: List[Row],
    columns: Sequence[str],
    table: WeightingTable,
) -> Tuple[List[Row], Optional[float], Optional[str]]:
    """
    Subtract efficiency x max discount from cost columns.

    The discount is an absolute amount capped at the cell value. Rows with
    no efficiency value are left unchanged. Without any route data the
    transform is skipped with a warning.
    """
    eff_col = find_first(table.efficiency_columns, columns)
    if eff_col is None:
        return [dict(r) for r in rows], None, "No route efficiency data; route optimization skipped"

    targets = _matching(columns, table.cost_columns)
    seen: List[float] = []
    out: List[Row] = []
    for row in rows:
        row = dict(row)
        eff = _efficiency(row.get(eff_col))
        if eff is not None:
            seen.append(eff)
            discount = eff * table.max_route_discount
            for col in targets:
                value = row.get(col)
                if _is_number(value):
                    row[col] = value - min(discount, max(value, 0))
        out.append(row)

    if rows and not seen:
        return out, None, "No route efficiency data; route optimization skipped"
    return out, _mean(seen), None


def effective_month(params: ExecutionParams, today: Optional[date] = None) -> int:
    if params.month is not None:
        return params.month
    if params.date_range is not None:
        return params.date_range.start.month
    return (today or date.today()).month


@dataclass
class WeightingOutcome:
    rows: List[Row]
    metrics: DomainMetrics
    warnings: List[str] = field(default_factory=list)


def apply_domain_weighting(
    rows: List[Row],
    columns: Sequence[str],
    settings: Optional[DomainWeightingSettings],
    params: ExecutionParams,
    table: Optional[WeightingTable] = None,
    today: Optional[date] = None,
) -> WeightingOutcome:
    table = table or get_weighting_table()
    metrics = DomainMetrics()
    warnings: List[str] = []
    district = params.district or (settings.district_filter if settings else None)

    if district:
        rows, warning = filter_district(rows, columns, district, table)
        if warning:
            warnings.append(warning)
        metrics.districts_analyzed = [district]
    else:
        district_col = find_first([table.district_column], columns)
        if district_col:
            seen: Dict[str, None] = {}
            for row in rows:
                value = row.get(district_col)
                if value:
                    seen.setdefault(str(value), None)
            metrics.districts_analyzed = list(seen)

    if settings is None:
        return WeightingOutcome(rows=rows, metrics=metrics, warnings=warnings)

    if settings.affluence_weighting:
        rows, metrics.affluence_score = apply_affluence(rows, columns, table, district)
    if settings.seasonal_adjustment:
        rows, metrics.seasonal_factor = apply_seasonal(rows, columns, table, effective_month(params, today))
    if settings.route_optimization:
        rows, metrics.route_efficiency, warning = apply_route_efficiency(rows, columns, table)
        if warning:
            warnings.append(warning)

    if warnings:
        for warning in warnings:
            logger.info(f"[Weighting] {warning}")
    return WeightingOutcome(rows=rows, metrics=metrics, warnings=warnings)
