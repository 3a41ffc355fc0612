"""
Analytical relational store adapter (PostgreSQL via psycopg).

Filter trees become parameterized SQL with %s placeholders and quoted
identifiers. Every query runs inside its own connection with a server-side
statement_timeout matching the adapter budget.
"""
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import psycopg
from psycopg.rows import dict_row

from hvac_reports.adapters.base import BackendAdapter, Row
from hvac_reports.core.constants import ANALYTICAL_STORE_TIMEOUT
from hvac_reports.domain.models import BackendKind, FilterOperator
from hvac_reports.reports.compiler import Condition, FilterNode, TableQuery
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)

ConnectFactory = Callable[[str], Awaitable[Any]]


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _condition_sql(condition: Condition) -> Tuple[str, List[Any]]:
    column = quote_ident(condition.column)
    op, value = condition.operator, condition.value

    if op == FilterOperator.EQUALS:
        return f"{column} = %s", [value]
    if op == FilterOperator.NOT_EQUALS:
        return f"{column} IS DISTINCT FROM %s", [value]
    if op == FilterOperator.GREATER_THAN:
        return f"{column} > %s", [value]
    if op == FilterOperator.LESS_THAN:
        return f"{column} < %s", [value]
    if op == FilterOperator.IN:
        placeholders = ", ".join(["%s"] * len(value))
        return f"{column} IN ({placeholders})", list(value)
    if op == FilterOperator.BETWEEN:
        return f"{column} BETWEEN %s AND %s", [value[0], value[1]]
    if op == FilterOperator.CONTAINS:
        return f"{column}::text ILIKE %s", [f"%{_escape_like(str(value))}%"]
    if op == FilterOperator.STARTS_WITH:
        return f"{column}::text ILIKE %s", [f"{_escape_like(str(value))}%"]
    raise ValueError(f"Unsupported operator {op}")


def build_where(node: Optional[FilterNode]) -> Tuple[str, List[Any]]:
    """Translate a filter tree into a SQL condition and its parameters."""
    if node is None:
        return "", []
    if isinstance(node, Condition):
        return _condition_sql(node)
    left_sql, left_params = build_where(node.left)
    right_sql, right_params = build_where(node.right)
    return f"({left_sql} {node.connector.value} {right_sql})", left_params + right_params


def build_select(query: TableQuery) -> Tuple[str, List[Any]]:
    columns = ", ".join(quote_ident(f) for f in query.fields)
    sql = f"SELECT {columns} FROM {quote_ident(query.remote_name)}"
    where_sql, params = build_where(query.where)
    if where_sql:
        sql += f" WHERE {where_sql}"
    sql += " LIMIT %s"
    params.append(query.limit)
    return sql, params


async def _default_connect(dsn: str):
    return await psycopg.AsyncConnection.connect(dsn)


class AnalyticalStoreAdapter(BackendAdapter):
    kind = BackendKind.ANALYTICAL

    def __init__(
        self,
        dsn: str,
        timeout: float = ANALYTICAL_STORE_TIMEOUT,
        connect: Optional[ConnectFactory] = None,
    ):
        super().__init__(timeout)
        self.dsn = dsn
        self._connect = connect or _default_connect

    async def _fetch(self, query: TableQuery, timeout: float) -> List[Row]:
        sql, params = build_select(query)
        logger.debug(f"[AnalyticalStoreAdapter] {sql} {params}")
        async with await self._connect(self.dsn) as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                # is_local=true scopes the timeout to this transaction
                await cur.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (str(int(timeout * 1000)),),
                )
                await cur.execute(sql, params)
                rows = await cur.fetchall()
        logger.debug(f"[AnalyticalStoreAdapter] {query.table}: {len(rows)} rows")
        return [dict(row) for row in rows]
