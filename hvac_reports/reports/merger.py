"""
Result Merger.

Joins per-backend row sets into one namespaced row set following the
compiled join plan. Hash joins build on the smaller side and look up from the
larger, with output order always following the preserved side.
"""
from collections import defaultdict
from typing import Any, Dict, List, Optional

from hvac_reports.domain.models import JoinKind
from hvac_reports.reports.columns import qualify
from hvac_reports.reports.compiler import CompiledPlan
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)

Row = Dict[str, Any]


def _hashable(value: Any) -> Any:
    if isinstance(value, (list, dict, set)):
        return repr(value)
    return value


def _key_index(rows: List[Row], key: str) -> Dict[Any, List[int]]:
    index: Dict[Any, List[int]] = defaultdict(list)
    for i, row in enumerate(rows):
        value = row.get(key)
        if value is not None:
            index[_hashable(value)].append(i)
    return index


def _combine(left: Optional[Row], right: Optional[Row], left_cols: List[str], right_cols: List[str]) -> Row:
    row: Row = {}
    for col in left_cols:
        row[col] = left.get(col) if left is not None else None
    for col in right_cols:
        row[col] = right.get(col) if right is not None else None
    return row


def hash_join(
    left: List[Row],
    right: List[Row],
    left_key: str,
    right_key: str,
    kind: JoinKind,
    left_cols: List[str],
    right_cols: List[str],
) -> List[Row]:
    """
    Join two namespaced row sets.

    Null keys never match. Output follows the preserved side (left for
    inner/left, right for right) and, within one preserved row, the
    order of its matches on the other side.
    """
    if kind == JoinKind.RIGHT:
        mirrored = hash_join(right, left, right_key, left_key, JoinKind.LEFT, right_cols, left_cols)
        return [_combine(row, row, left_cols, right_cols) for row in mirrored]

    keep_unmatched = kind == JoinKind.LEFT
    out: List[Row] = []

    if len(right) <= len(left):
        # Build on right, look up from left
        index = _key_index(right, right_key)
        for lrow in left:
            value = lrow.get(left_key)
            matches = index.get(_hashable(value), []) if value is not None else []
            for j in matches:
                out.append(_combine(lrow, right[j], left_cols, right_cols))
            if not matches and keep_unmatched:
                out.append(_combine(lrow, None, left_cols, right_cols))
        return out

    # Build on left, look up from right, then emit in left order
    index = _key_index(left, left_key)
    buckets: Dict[int, List[int]] = defaultdict(list)
    for j, rrow in enumerate(right):
        value = rrow.get(right_key)
        if value is None:
            continue
        for i in index.get(_hashable(value), []):
            buckets[i].append(j)
    for i, lrow in enumerate(left):
        matches = buckets.get(i)
        if matches:
            for j in matches:
                out.append(_combine(lrow, right[j], left_cols, right_cols))
        elif keep_unmatched:
            out.append(_combine(lrow, None, left_cols, right_cols))
    return out


class _Component:
    """A set of already-joined tables with their rows."""

    def __init__(self, tables: List[str], rows: List[Row], columns: List[str]):
        self.tables = tables
        self.rows = rows
        self.columns = columns


def namespace_rows(rows: List[Row], columns: List[str]) -> List[Row]:
    """Map unqualified backend rows onto their `table.column` schema columns."""
    bare = [c.split(".", 1)[1] for c in columns]
    return [{col: row.get(name) for col, name in zip(columns, bare)} for row in rows]


def merge_results(plan: CompiledPlan, table_rows: Dict[str, List[Row]]) -> List[Row]:
    """
    Merge fetched rows into one row set.

    Tables missing from table_rows (failed backend) are treated as empty.
    Tables not connected by any join are appended in declaration order.
    """
    components: Dict[str, _Component] = {}
    for table in plan.tables:
        columns = plan.columns_for(table)
        rows = namespace_rows(table_rows.get(table, []), columns)
        components[table] = _Component([table], rows, columns)

    for step in plan.joins:
        left = components[step.left_table]
        right = components[step.right_table]
        rows = hash_join(
            left.rows, right.rows,
            qualify(step.left_table, step.left_column),
            qualify(step.right_table, step.right_column),
            step.kind, left.columns, right.columns,
        )
        merged = _Component(left.tables + right.tables, rows, left.columns + right.columns)
        for table in merged.tables:
            components[table] = merged
        logger.debug(
            f"[ResultMerger] {step.kind.value} join {step.left_key} = {step.right_key}: "
            f"{len(left.rows)} x {len(right.rows)} -> {len(rows)}"
        )

    # Union of disconnected components, first-declared table first
    all_columns: List[str] = [c for t in plan.tables for c in plan.columns_for(t)]
    out: List[Row] = []
    seen = set()
    for table in plan.tables:
        component = components[table]
        if id(component) in seen:
            continue
        seen.add(id(component))
        for row in component.rows:
            out.append({col: row.get(col) for col in all_columns})
    return out
