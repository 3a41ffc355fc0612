"""
Report Execution Orchestrator.

Runs one report through
    COMPILING -> FETCHING -> MERGING -> CALCULATING -> WEIGHTING
    -> AGGREGATING -> CACHING -> DONE
with adapter calls fanned out concurrently. Only compilation can fail the
request; backend failures, formula errors and the pipeline budget are
reported in the result metadata instead.
"""
import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from hvac_reports.adapters.base import BackendAdapter, BackendRows
from hvac_reports.core.constants import PIPELINE_TIMEOUT
from hvac_reports.domain.models import (
    BackendKind,
    ExecutionMetadata,
    ExecutionParams,
    ExecutionResult,
    ReportDefinition,
)
from hvac_reports.reports.aggregator import aggregate, to_scalar
from hvac_reports.reports.analytics import ExecutionHistory
from hvac_reports.reports.cache import InFlightRegistry, ResultCache, compute_cache_key
from hvac_reports.reports.compiler import CompiledPlan, QueryCompiler, SubPlan
from hvac_reports.reports.errors import BackendUnavailable, ExecutionTimeout, ReportNotFound, ValidationError
from hvac_reports.reports.formula import apply_calculated_fields
from hvac_reports.reports.merger import merge_results
from hvac_reports.reports.repository import ReportRepository
from hvac_reports.reports.weighting import WeightingTable, apply_domain_weighting, get_weighting_table
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)


class Stage(Enum):
    """Pipeline stage of one execution."""
    COMPILING = "compiling"
    FETCHING = "fetching"
    MERGING = "merging"
    CALCULATING = "calculating"
    WEIGHTING = "weighting"
    AGGREGATING = "aggregating"
    CACHING = "caching"
    DONE = "done"
    FAILED = "failed"


def to_json_scalar(value: Any) -> Any:
    """Coerce a cell to a JSON scalar so every consumer sees a stable table."""
    value = to_scalar(value)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def normalize_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{k: to_json_scalar(v) for k, v in row.items()} for row in rows]


@dataclass
class _FetchOutcome:
    table_rows: BackendRows = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class ReportExecutor:
    """
    Executes report definitions against the registered backend adapters.

    Usage:
        executor = ReportExecutor(repository, adapters=[OperationalStoreAdapter(store)])
        result = await executor.execute(report_id, ExecutionParams(month=7))
    """

    def __init__(
        self,
        repository: ReportRepository,
        adapters: Union[Dict[BackendKind, BackendAdapter], Iterable[BackendAdapter]] = (),
        cache: Optional[ResultCache] = None,
        history: Optional[ExecutionHistory] = None,
        compiler: Optional[QueryCompiler] = None,
        weighting_table: Optional[WeightingTable] = None,
        pipeline_timeout: float = PIPELINE_TIMEOUT,
        today: Callable[[], date] = date.today,
    ):
        self.repository = repository
        if isinstance(adapters, dict):
            self.adapters: Dict[BackendKind, BackendAdapter] = dict(adapters)
        else:
            self.adapters = {adapter.kind: adapter for adapter in adapters}
        self.cache = cache
        self.history = history
        self.weighting_table = weighting_table or get_weighting_table()
        self.compiler = compiler or QueryCompiler(keep_columns=self.weighting_table.routing_columns)
        self.pipeline_timeout = pipeline_timeout
        self._today = today
        self._inflight = InFlightRegistry()

    def register_adapter(self, adapter: BackendAdapter) -> None:
        self.adapters[adapter.kind] = adapter

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self,
        report_id: str,
        params: Optional[ExecutionParams] = None,
        use_cache: bool = True,
    ) -> ExecutionResult:
        definition = self.repository.get(report_id)
        if definition is None:
            raise ReportNotFound(report_id)
        return await self.execute_definition(definition, params, use_cache, report_id=report_id)

    async def execute_definition(
        self,
        definition: ReportDefinition,
        params: Optional[ExecutionParams] = None,
        use_cache: bool = True,
        report_id: Optional[str] = None,
    ) -> ExecutionResult:
        params = params or ExecutionParams()
        report_id = report_id or definition.id or "adhoc"
        started = time.perf_counter()

        try:
            plan = self.compiler.compile(definition, params)
        except ValidationError as e:
            logger.warning(f"[ReportExecutor] {report_id}: {Stage.FAILED.value} at {Stage.COMPILING.value}: {e}")
            raise

        caching = use_cache and definition.cache_enabled and self.cache is not None
        key = compute_cache_key(report_id, definition, params, self._today()) if caching else None

        if caching and not params.bypass_cache:
            cached = await self._cache_get(key)
            if cached is not None:
                elapsed = (time.perf_counter() - started) * 1000
                logger.info(f"[ReportExecutor] {report_id}: cache hit in {elapsed:.1f}ms")
                return ExecutionResult(
                    data=cached.data,
                    metadata=cached.metadata.model_copy(update={
                        "cached": True,
                        "execution_time": elapsed,
                        "cache_key": key,
                    }),
                )

            result, shared = await self._inflight.run(
                key, lambda: self._run(plan, definition, params, report_id, started, key)
            )
            if shared:
                logger.info(f"[ReportExecutor] {report_id}: shared in-flight computation for {key}")
                result = result.model_copy(deep=True)
            return result

        return await self._run(plan, definition, params, report_id, started, key if caching else None)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _cache_get(self, key: str) -> Optional[ExecutionResult]:
        if self.cache.remote:
            return await asyncio.to_thread(self.cache.get, key)
        return self.cache.get(key)

    async def _cache_put(self, key: str, result: ExecutionResult, ttl: float) -> None:
        if self.cache.remote:
            await asyncio.to_thread(self.cache.put, key, result, ttl)
        else:
            self.cache.put(key, result, ttl)

    def _check_budget(self, started: float, stage: Stage) -> None:
        if time.perf_counter() - started > self.pipeline_timeout:
            raise ExecutionTimeout(stage.value, self.pipeline_timeout)

    async def _run(
        self,
        plan: CompiledPlan,
        definition: ReportDefinition,
        params: ExecutionParams,
        report_id: str,
        started: float,
        cache_key: Optional[str],
    ) -> ExecutionResult:
        metadata = ExecutionMetadata(report_id=report_id, cache_key=cache_key)
        metadata.warnings.extend(plan.warnings)
        rows: List[Dict[str, Any]] = []
        stage = Stage.FETCHING

        try:
            remaining = self.pipeline_timeout - (time.perf_counter() - started)
            fetched = await self._fetch(plan, remaining)
            metadata.backend_timings = fetched.timings
            metadata.failed_backends = fetched.failed
            metadata.warnings.extend(fetched.warnings)
            metadata.data_sources_used = [k.value for k in plan.sub_plans if k.value not in fetched.failed]

            stage = Stage.MERGING
            self._check_budget(started, stage)
            rows = normalize_rows(merge_results(plan, fetched.table_rows))

            stage = Stage.CALCULATING
            self._check_budget(started, stage)
            rows, formula_warnings = apply_calculated_fields(rows, plan.calculated)
            metadata.warnings.extend(formula_warnings)

            stage = Stage.WEIGHTING
            self._check_budget(started, stage)
            columns = list(plan.schema)
            outcome = apply_domain_weighting(
                rows, columns, definition.weighting, params, self.weighting_table, self._today()
            )
            rows = outcome.rows
            metadata.warnings.extend(outcome.warnings)
            if definition.weighting is not None or params.district:
                metadata.warsaw_metrics = outcome.metrics

            stage = Stage.AGGREGATING
            self._check_budget(started, stage)
            rows = normalize_rows(
                aggregate(rows, plan.aggregation, plan.group_by, plan.y_axis, plan.x_axis)
            )
        except ExecutionTimeout as e:
            logger.warning(f"[ReportExecutor] {report_id}: {e.message}")
            metadata.partial = True
            metadata.warnings.append(e.message)

        if metadata.failed_backends:
            metadata.partial = True

        metadata.total_rows = len(rows)
        metadata.execution_time = (time.perf_counter() - started) * 1000
        result = ExecutionResult(data=rows, metadata=metadata)

        if cache_key is not None and not metadata.partial:
            await self._cache_put(cache_key, result, definition.cache_ttl_seconds)
        self._record_execution(report_id, metadata)

        logger.info(
            f"[ReportExecutor] {report_id}: {Stage.DONE.value} with {metadata.total_rows} rows "
            f"in {metadata.execution_time:.1f}ms"
            + (f", partial (failed: {metadata.failed_backends})" if metadata.partial else "")
        )
        return result

    def _record_execution(self, report_id: str, metadata: ExecutionMetadata) -> None:
        if self.repository is None:
            return
        try:
            self.repository.record_execution(report_id, metadata.execution_time)
        except ReportNotFound:
            # ad-hoc definition or removed mid-run; nothing to track
            return
        if self.history is not None:
            self.history.record(metadata)

    async def _fetch(self, plan: CompiledPlan, budget: float) -> _FetchOutcome:
        """Fan out one adapter call per backend and wait for all to settle."""
        outcome = _FetchOutcome()
        calls = []
        kinds: List[BackendKind] = []
        for kind, sub_plan in plan.sub_plans.items():
            adapter = self.adapters.get(kind)
            if adapter is None:
                outcome.failed.append(kind.value)
                outcome.warnings.append(f"No adapter registered for {kind.value} backend")
                continue
            timeout = max(0.0, min(adapter.timeout, budget))
            calls.append(self._timed(adapter, sub_plan, timeout))
            kinds.append(kind)

        results = await asyncio.gather(*calls)
        for kind, (rows, error, elapsed) in zip(kinds, results):
            outcome.timings[kind.value] = round(elapsed, 3)
            if error is not None:
                outcome.failed.append(kind.value)
                outcome.warnings.append(error.message)
            else:
                outcome.table_rows.update(rows)
        return outcome

    async def _timed(
        self,
        adapter: BackendAdapter,
        sub_plan: SubPlan,
        timeout: float,
    ) -> Tuple[BackendRows, Optional[BackendUnavailable], float]:
        started = time.perf_counter()
        try:
            rows = await adapter.execute(sub_plan, timeout)
            return rows, None, (time.perf_counter() - started) * 1000
        except BackendUnavailable as e:
            return {}, e, (time.perf_counter() - started) * 1000
