"""
Backend adapter interface.

Each adapter is the only code that knows about one store kind. The compiler,
merger, evaluator, weighting and aggregator only ever see BackendRows.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from hvac_reports.domain.models import BackendKind
from hvac_reports.reports.compiler import SubPlan, TableQuery
from hvac_reports.reports.errors import BackendUnavailable
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)

Row = Dict[str, Any]
BackendRows = Dict[str, List[Row]]  # table -> rows, columns unqualified


class BackendAdapter(ABC):
    """Abstract base class for backend adapters."""

    kind: BackendKind

    def __init__(self, timeout: float):
        self.timeout = timeout

    async def execute(self, sub_plan: SubPlan, timeout: Optional[float] = None) -> BackendRows:
        """
        Run every table query of a sub-plan against this backend.

        Raises BackendUnavailable (timed_out=True when the budget is
        exceeded). Cancellation propagates to the in-flight calls.
        """
        budget = timeout if timeout is not None else self.timeout
        name = self.kind.value
        try:
            return await asyncio.wait_for(self._fetch_all(sub_plan, budget), timeout=budget)
        except asyncio.TimeoutError as e:
            logger.warning(f"[{type(self).__name__}] Timed out after {budget:.1f}s")
            raise BackendUnavailable(name, f"{name} backend timed out after {budget:.1f}s", timed_out=True) from e
        except BackendUnavailable:
            raise
        except Exception as e:
            logger.warning(f"[{type(self).__name__}] Fetch failed: {e}")
            raise BackendUnavailable(name, f"{name} backend failed: {e}") from e

    async def _fetch_all(self, sub_plan: SubPlan, timeout: float) -> BackendRows:
        results = await asyncio.gather(*(self._fetch(q, timeout) for q in sub_plan.queries))
        return {query.table: rows for query, rows in zip(sub_plan.queries, results)}

    @abstractmethod
    async def _fetch(self, query: TableQuery, timeout: float) -> List[Row]:
        """Execute one table query and return rows keyed by catalog column name."""
        pass

    async def close(self) -> None:
        """Release long-lived resources. Default: nothing to release."""
        return None


def project(row: Row, fields: List[str]) -> Row:
    return {name: row.get(name) for name in fields}
