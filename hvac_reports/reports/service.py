"""
Wiring of repository, cache, execution history and executor for the API process.

Adapters are registered only for backends whose location is configured.
"""
from dataclasses import dataclass
from typing import List, Optional

from hvac_reports.adapters.analytical import AnalyticalStoreAdapter
from hvac_reports.adapters.base import BackendAdapter
from hvac_reports.adapters.operational import HttpDocumentStoreClient, OperationalStoreAdapter
from hvac_reports.adapters.semantic import SemanticStoreAdapter
from hvac_reports.core.constants import (
    ANALYTICAL_STORE_DSN,
    ANALYTICAL_STORE_TIMEOUT,
    OPERATIONAL_STORE_TIMEOUT,
    OPERATIONAL_STORE_URL,
    SEMANTIC_STORE_API_KEY,
    SEMANTIC_STORE_TIMEOUT,
    SEMANTIC_STORE_URL,
)
from hvac_reports.reports.analytics import ExecutionHistory
from hvac_reports.reports.cache import ResultCache, get_redis
from hvac_reports.reports.executor import ReportExecutor
from hvac_reports.reports.repository import InMemoryReportRepository
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)


@dataclass
class ReportService:
    repository: InMemoryReportRepository
    cache: ResultCache
    history: ExecutionHistory
    executor: ReportExecutor


def build_adapters() -> List[BackendAdapter]:
    adapters: List[BackendAdapter] = []
    if OPERATIONAL_STORE_URL:
        client = HttpDocumentStoreClient(OPERATIONAL_STORE_URL, timeout=OPERATIONAL_STORE_TIMEOUT)
        adapters.append(OperationalStoreAdapter(client, timeout=OPERATIONAL_STORE_TIMEOUT))
    if ANALYTICAL_STORE_DSN:
        adapters.append(AnalyticalStoreAdapter(ANALYTICAL_STORE_DSN, timeout=ANALYTICAL_STORE_TIMEOUT))
    if SEMANTIC_STORE_URL:
        adapters.append(SemanticStoreAdapter(
            SEMANTIC_STORE_URL, api_key=SEMANTIC_STORE_API_KEY, timeout=SEMANTIC_STORE_TIMEOUT,
        ))
    logger.info(f"[ReportService] Registered adapters: {[a.kind.value for a in adapters] or 'none'}")
    return adapters


def build_service(adapters: Optional[List[BackendAdapter]] = None) -> ReportService:
    cache = ResultCache(redis_client=get_redis())
    history = ExecutionHistory()
    repository = InMemoryReportRepository(cache=cache, history=history)
    executor = ReportExecutor(
        repository,
        adapters=build_adapters() if adapters is None else adapters,
        cache=cache,
        history=history,
    )
    return ReportService(repository=repository, cache=cache, history=history, executor=executor)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_service: Optional[ReportService] = None


def get_report_service() -> ReportService:
    global _service
    if _service is None:
        _service = build_service()
    return _service


def set_report_service(service: Optional[ReportService]) -> None:
    global _service
    _service = service
