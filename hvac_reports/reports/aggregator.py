"""
Aggregator.

Groups rows by the visualization groupBy column and aggregates the yAxis
column per group using pandas. Groups keep first-seen order until sorted;
sorting is stable so ties keep that order.
"""
import math
from typing import Any, Dict, List, Optional

import pandas as pd
from pandas.api.types import is_bool, is_number

from hvac_reports.domain.models import AggregationKind
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)

Row = Dict[str, Any]

COUNT_COLUMN = "count"


def _is_number(value: Any) -> bool:
    return is_number(value) and not is_bool(value)


def to_scalar(value: Any) -> Any:
    """numpy/pandas scalars to plain Python; NaN to None."""
    if hasattr(value, "item") and not isinstance(value, (list, dict, str, bytes)):
        try:
            value = value.item()
        except (ValueError, AttributeError):
            pass
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    return value


def sort_key(value: Any):
    """Type-safe ordering: numbers, then strings, then anything else; None last."""
    if value is None:
        return (1, 0, 0)
    if _is_number(value) or is_bool(value):
        return (0, 0, value)
    if isinstance(value, str):
        return (0, 1, value)
    return (0, 2, str(value))


def aggregate(
    rows: List[Row],
    aggregation: Optional[AggregationKind],
    group_by: Optional[str] = None,
    y_axis: Optional[str] = None,
    x_axis: Optional[str] = None,
) -> List[Row]:
    """
    Aggregate rows for a visualization.

    No aggregation passes rows through unchanged. Without group_by the
    whole set is one group. Empty input gives zero groups.
    """
    if aggregation is None:
        return rows
    if not rows:
        return []

    df = pd.DataFrame(rows)
    if group_by is not None:
        codes, uniques = pd.factorize(df[group_by], use_na_sentinel=False)
        keys = [to_scalar(u) for u in uniques]
    else:
        codes = [0] * len(df)
        keys = [None]
    codes = pd.Series(codes, index=df.index)

    target = y_axis or COUNT_COLUMN
    if aggregation == AggregationKind.COUNT:
        values = codes.groupby(codes, sort=False).size()
    else:
        raw = df[y_axis]
        if aggregation == AggregationKind.DISTINCT:
            values = raw.groupby(codes, sort=False).nunique(dropna=True)
        else:
            numeric = pd.to_numeric(raw.where(raw.map(_is_number)), errors="coerce")
            grouped = numeric.groupby(codes, sort=False)
            if aggregation == AggregationKind.SUM:
                values = grouped.sum(min_count=0)
            elif aggregation == AggregationKind.AVG:
                values = grouped.mean()
            elif aggregation == AggregationKind.MIN:
                values = grouped.min()
            else:
                values = grouped.max()

    x_values: Dict[int, Any] = {}
    if x_axis is not None and x_axis != group_by and x_axis != target:
        firsts = df[x_axis].groupby(codes, sort=False).first()
        x_values = {int(code): to_scalar(v) for code, v in firsts.items()}

    out: List[Row] = []
    for code in range(len(keys)):
        row: Row = {}
        if group_by is not None:
            row[group_by] = keys[code]
        if code in x_values:
            row[x_axis] = x_values[code]
        row[target] = to_scalar(values.get(code)) if code in values.index else None
        out.append(row)

    order_by = x_axis if x_values else group_by
    if order_by is not None:
        out = sorted(out, key=lambda r: sort_key(r.get(order_by)))

    logger.debug(f"[Aggregator] {aggregation.value} over {len(rows)} rows -> {len(out)} groups")
    return out
