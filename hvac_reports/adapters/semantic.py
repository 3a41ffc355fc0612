"""
Semantic vector store adapter (Weaviate GraphQL over httpx).

Filter trees become a Weaviate `where` filter; a data source's free-text
query becomes a `nearText` concept.
"""
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import httpx
import humps
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from hvac_reports.adapters.base import BackendAdapter, Row, project
from hvac_reports.core.constants import SEMANTIC_STORE_TIMEOUT
from hvac_reports.domain.models import BackendKind, FieldType, FilterOperator, LogicalConnector
from hvac_reports.reports.compiler import BoolExpr, Condition, FilterNode, TableQuery
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)


class GraphQLEnum(str):
    """A string rendered bare in GraphQL (operator names)."""


def _value_key(field_type: FieldType, value: Any) -> str:
    if field_type == FieldType.DATE:
        return "valueDate"
    if field_type == FieldType.BOOLEAN:
        return "valueBoolean"
    if field_type == FieldType.NUMBER:
        return "valueInt" if isinstance(value, int) and not isinstance(value, bool) else "valueNumber"
    return "valueText"


def _rfc3339(value: Any) -> str:
    if isinstance(value, datetime):
        text = value.isoformat()
    elif isinstance(value, date):
        text = f"{value.isoformat()}T00:00:00"
    else:
        text = str(value)
        if len(text) == 10:
            text = f"{text}T00:00:00"
    if text.endswith("Z") or "+" in text[10:] or text[10:].count("-") > 0:
        return text
    return f"{text}Z"


def _operand(path: str, operator: str, field_type: FieldType, value: Any) -> Dict[str, Any]:
    if field_type == FieldType.DATE:
        value = _rfc3339(value)
    return {
        "path": [path],
        "operator": GraphQLEnum(operator),
        _value_key(field_type, value): value,
    }


def _escape_like(value: str) -> str:
    return value.replace("*", "").replace("?", "")


def _condition_filter(condition: Condition) -> Dict[str, Any]:
    col, ftype, value = condition.column, condition.field_type, condition.value
    op = condition.operator
    if op == FilterOperator.EQUALS:
        return _operand(col, "Equal", ftype, value)
    if op == FilterOperator.NOT_EQUALS:
        return _operand(col, "NotEqual", ftype, value)
    if op == FilterOperator.GREATER_THAN:
        return _operand(col, "GreaterThan", ftype, value)
    if op == FilterOperator.LESS_THAN:
        return _operand(col, "LessThan", ftype, value)
    if op == FilterOperator.CONTAINS:
        return _operand(col, "Like", FieldType.STRING, f"*{_escape_like(str(value))}*")
    if op == FilterOperator.STARTS_WITH:
        return _operand(col, "Like", FieldType.STRING, f"{_escape_like(str(value))}*")
    if op == FilterOperator.IN:
        operands = [_operand(col, "Equal", ftype, v) for v in value]
        if len(operands) == 1:
            return operands[0]
        return {"operator": GraphQLEnum("Or"), "operands": operands}
    if op == FilterOperator.BETWEEN:
        return {
            "operator": GraphQLEnum("And"),
            "operands": [
                _operand(col, "GreaterThanEqual", ftype, value[0]),
                _operand(col, "LessThanEqual", ftype, value[1]),
            ],
        }
    raise ValueError(f"Unsupported operator {op}")


def build_where_filter(node: Optional[FilterNode]) -> Optional[Dict[str, Any]]:
    if node is None:
        return None
    if isinstance(node, Condition):
        return _condition_filter(node)
    name = "And" if node.connector == LogicalConnector.AND else "Or"
    operands: List[Dict[str, Any]] = []
    for side in (node.left, node.right):
        part = build_where_filter(side)
        if isinstance(side, BoolExpr) and side.connector == node.connector:
            operands.extend(part["operands"])
        else:
            operands.append(part)
    return {"operator": GraphQLEnum(name), "operands": operands}


def to_graphql(value: Any) -> str:
    """Serialize a Python value as a GraphQL input literal."""
    if isinstance(value, GraphQLEnum):
        return str(value)
    if isinstance(value, dict):
        return "{" + ", ".join(f"{k}: {to_graphql(v)}" for k, v in value.items()) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(to_graphql(v) for v in value) + "]"
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return repr(value)
    return json.dumps(str(value), ensure_ascii=False)


def class_name(query: TableQuery) -> str:
    name = humps.pascalize(query.remote_name)
    return name[:1].upper() + name[1:]


def build_get_query(query: TableQuery) -> str:
    args = [f"limit: {query.limit}"]
    where = build_where_filter(query.where)
    if where is not None:
        args.append(f"where: {to_graphql(where)}")
    if query.concept:
        args.append(f"nearText: {to_graphql({'concepts': [query.concept]})}")
    fields = " ".join(query.fields)
    return f"{{ Get {{ {class_name(query)}({', '.join(args)}) {{ {fields} }} }} }}"


class SemanticStoreAdapter(BackendAdapter):
    kind = BackendKind.SEMANTIC

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = SEMANTIC_STORE_TIMEOUT,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max_retries
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers, transport=self._transport)
        return self._client

    async def _fetch(self, query: TableQuery, timeout: float) -> List[Row]:
        graphql = build_get_query(query)

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"[SemanticStoreAdapter] Request failed, retrying in {retry_state.next_action.sleep:.1f}s "
                f"(attempt {retry_state.attempt_number}/{self.max_retries})"
            ),
        )
        async def _do_query():
            response = await self._get_client().post(
                f"{self.base_url}/v1/graphql", json={"query": graphql}, timeout=timeout
            )
            response.raise_for_status()
            return response.json()

        data = await _do_query()
        if data.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in data["errors"])
            raise RuntimeError(f"GraphQL error: {messages}")
        objects = ((data.get("data") or {}).get("Get") or {}).get(class_name(query)) or []
        logger.debug(f"[SemanticStoreAdapter] {query.table}: {len(objects)} objects")
        return [project(obj, query.fields) for obj in objects]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
