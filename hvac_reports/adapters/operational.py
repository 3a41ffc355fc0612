"""
Operational document store adapter.

Filter trees are translated into Mongo-style query documents. The same
document is understood by the HTTP document store and by the in-memory
store used for demo data and tests.
"""
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from hvac_reports.adapters.base import BackendAdapter, Row, project
from hvac_reports.core.constants import OPERATIONAL_STORE_TIMEOUT
from hvac_reports.domain.models import BackendKind, FilterOperator, LogicalConnector
from hvac_reports.reports.compiler import BoolExpr, Condition, FilterNode, TableQuery
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)


# =============================================================================
# Filter tree -> query document
# =============================================================================

def _condition_document(condition: Condition) -> Dict[str, Any]:
    op, value = condition.operator, condition.value
    if op == FilterOperator.EQUALS:
        clause = {"$eq": value}
    elif op == FilterOperator.NOT_EQUALS:
        clause = {"$ne": value}
    elif op == FilterOperator.GREATER_THAN:
        clause = {"$gt": value}
    elif op == FilterOperator.LESS_THAN:
        clause = {"$lt": value}
    elif op == FilterOperator.IN:
        clause = {"$in": list(value)}
    elif op == FilterOperator.BETWEEN:
        clause = {"$gte": value[0], "$lte": value[1]}
    elif op == FilterOperator.CONTAINS:
        clause = {"$regex": re.escape(str(value)), "$options": "i"}
    elif op == FilterOperator.STARTS_WITH:
        clause = {"$regex": "^" + re.escape(str(value)), "$options": "i"}
    else:
        raise ValueError(f"Unsupported operator {op}")
    return {condition.column: clause}


def build_document_query(node: Optional[FilterNode]) -> Dict[str, Any]:
    """Translate a filter tree into a query document. No filter matches everything."""
    if node is None:
        return {}
    if isinstance(node, Condition):
        return _condition_document(node)
    key = "$and" if node.connector == LogicalConnector.AND else "$or"
    parts: List[Dict[str, Any]] = []
    for side in (node.left, node.right):
        doc = build_document_query(side)
        # Flatten left-folded chains of the same connector
        if isinstance(side, BoolExpr) and side.connector == node.connector:
            parts.extend(doc[key])
        else:
            parts.append(doc)
    return {key: parts}


def _comparable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _match_clause(value: Any, clause: Dict[str, Any]) -> bool:
    value = _comparable(value)
    for op, expected in clause.items():
        if op == "$options":
            continue
        try:
            if op == "$eq":
                ok = value == expected
            elif op == "$ne":
                ok = value != expected
            elif op == "$in":
                ok = value is not None and value in expected
            elif op in ("$gt", "$lt", "$gte", "$lte"):
                if value is None or isinstance(value, bool) != isinstance(expected, bool):
                    return False
                ok = {
                    "$gt": lambda: value > expected,
                    "$lt": lambda: value < expected,
                    "$gte": lambda: value >= expected,
                    "$lte": lambda: value <= expected,
                }[op]()
            elif op == "$regex":
                flags = re.IGNORECASE if "i" in clause.get("$options", "") else 0
                ok = value is not None and re.search(expected, str(value), flags) is not None
            else:
                raise ValueError(f"Unsupported query operator {op}")
        except TypeError:
            return False
        if not ok:
            return False
    return True


def match_document(document: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, clause in query.items():
        if key == "$and":
            if not all(match_document(document, part) for part in clause):
                return False
        elif key == "$or":
            if not any(match_document(document, part) for part in clause):
                return False
        elif not _match_clause(document.get(key), clause):
            return False
    return True


# =============================================================================
# Document store clients
# =============================================================================

class DocumentStoreClient(ABC):

    @abstractmethod
    async def find(
        self,
        collection: str,
        query: Dict[str, Any],
        fields: List[str],
        limit: int,
    ) -> List[Row]:
        pass

    async def close(self) -> None:
        return None


class InMemoryDocumentStore(DocumentStoreClient):
    """Collections held in process. Used for demo data and tests."""

    def __init__(self, collections: Optional[Dict[str, List[Row]]] = None):
        self.collections: Dict[str, List[Row]] = {k: list(v) for k, v in (collections or {}).items()}
        self.queries: List[Dict[str, Any]] = []

    def insert(self, collection: str, documents: List[Row]) -> None:
        self.collections.setdefault(collection, []).extend(documents)

    async def find(self, collection, query, fields, limit):
        self.queries.append({"collection": collection, "query": query})
        matched = [doc for doc in self.collections.get(collection, []) if match_document(doc, query)]
        return [project(doc, fields) for doc in matched[:limit]]


class HttpDocumentStoreClient(DocumentStoreClient):
    """
    Document store reached over HTTP.

    POST {base_url}/query  {"collection", "filter", "projection", "limit"}
    -> {"documents": [...]}
    """

    def __init__(self, base_url: str, timeout: float = OPERATIONAL_STORE_TIMEOUT, max_retries: int = 3,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def find(self, collection, query, fields, limit):
        payload = {
            "collection": collection,
            "filter": query,
            "projection": fields,
            "limit": limit,
        }

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"[DocumentStore] Request failed, retrying in {retry_state.next_action.sleep:.1f}s "
                f"(attempt {retry_state.attempt_number}/{self.max_retries})"
            ),
        )
        async def _do_query():
            response = await self._get_client().post(f"{self.base_url}/query", json=payload)
            response.raise_for_status()
            return response.json()

        data = await _do_query()
        documents = data.get("documents", []) if isinstance(data, dict) else data
        logger.debug(f"[DocumentStore] {collection}: {len(documents)} documents")
        return [project(doc, fields) for doc in documents]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Adapter
# =============================================================================

class OperationalStoreAdapter(BackendAdapter):
    kind = BackendKind.OPERATIONAL

    def __init__(self, client: DocumentStoreClient, timeout: float = OPERATIONAL_STORE_TIMEOUT):
        super().__init__(timeout)
        self.client = client

    async def _fetch(self, query: TableQuery, timeout: float) -> List[Row]:
        document = build_document_query(query.where)
        rows = await self.client.find(query.remote_name, document, query.fields, query.limit)
        logger.debug(f"[OperationalStoreAdapter] {query.table}: {len(rows)} rows")
        return rows

    async def close(self) -> None:
        await self.client.close()
