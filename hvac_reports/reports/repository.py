"""
Report Repository.

The engine reads definitions through ReportRepository. InMemoryReportRepository
backs the API and tests: definitions are validated by compiling them on
create/update so formulas parse once at save time.
"""
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from hvac_reports.core.constants import utc_now
from hvac_reports.domain.base import to_camel
from hvac_reports.domain.models import (
    ReportDefinition,
    ReportQuery,
    SharePermission,
    SharePermissionLevel,
)
from hvac_reports.reports.analytics import ExecutionHistory
from hvac_reports.reports.cache import ResultCache
from hvac_reports.reports.compiler import QueryCompiler
from hvac_reports.reports.errors import ReportNotFound, ValidationError
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)

# Fields a partial update may not touch
_IMMUTABLE_FIELDS = {"id", "created_at", "updated_at", "last_executed", "execution_time"}

# snake_case name, camelCase alias and explicit alias all map to the field name
_FIELD_NAMES: Dict[str, str] = {}
for _name, _info in ReportDefinition.model_fields.items():
    _FIELD_NAMES[_name] = _name
    _FIELD_NAMES[to_camel(_name)] = _name
    if _info.alias:
        _FIELD_NAMES[_info.alias] = _name


class ReportRepository(ABC):

    @abstractmethod
    def get(self, report_id: str) -> Optional[ReportDefinition]:
        pass

    @abstractmethod
    def list(self, query: Optional[ReportQuery] = None) -> List[ReportDefinition]:
        pass

    @abstractmethod
    def create(self, definition: ReportDefinition) -> str:
        pass

    @abstractmethod
    def update(self, report_id: str, partial: Dict[str, Any]) -> ReportDefinition:
        pass

    @abstractmethod
    def remove(self, report_id: str) -> None:
        pass

    @abstractmethod
    def share_report(
        self,
        report_id: str,
        principal: str,
        permission: SharePermissionLevel = SharePermissionLevel.VIEW,
    ) -> ReportDefinition:
        pass

    @abstractmethod
    def record_execution(self, report_id: str, execution_time: float) -> ReportDefinition:
        """Stamp last_executed and execution_time (ms) after a run."""
        pass


class InMemoryReportRepository(ReportRepository):
    """Thread-safe dict-backed repository."""

    def __init__(
        self,
        compiler: Optional[QueryCompiler] = None,
        cache: Optional[ResultCache] = None,
        history: Optional[ExecutionHistory] = None,
    ):
        self._lock = Lock()
        self._reports: Dict[str, ReportDefinition] = {}
        self._compiler = compiler or QueryCompiler()
        self._cache = cache
        self._history = history

    def attach_cache(self, cache: ResultCache) -> None:
        self._cache = cache

    def validate(self, definition: ReportDefinition) -> None:
        """Raise ValidationError if the definition cannot be compiled."""
        self._compiler.compile(definition)

    def _require(self, report_id: str) -> ReportDefinition:
        definition = self._reports.get(report_id)
        if definition is None:
            raise ReportNotFound(report_id)
        return definition

    def get(self, report_id: str) -> Optional[ReportDefinition]:
        with self._lock:
            return self._reports.get(report_id)

    def list(self, query: Optional[ReportQuery] = None) -> List[ReportDefinition]:
        query = query or ReportQuery()
        with self._lock:
            reports = list(self._reports.values())

        def matches(r: ReportDefinition) -> bool:
            if query.report_type is not None and r.report_type != query.report_type:
                return False
            if query.category is not None and r.category != query.category:
                return False
            if query.is_template is not None and r.is_template != query.is_template:
                return False
            if query.is_public is not None and r.is_public != query.is_public:
                return False
            if query.principal is not None and not r.can_view(query.principal):
                return False
            if query.search:
                needle = query.search.casefold()
                haystack = " ".join([r.name, r.description or "", *r.tags]).casefold()
                if needle not in haystack:
                    return False
            return True

        found = [r for r in reports if matches(r)]
        found.sort(key=lambda r: r.updated_at or r.created_at or datetime.min.replace(tzinfo=timezone.utc),
                   reverse=True)
        return found[:query.limit]

    def create(self, definition: ReportDefinition) -> str:
        self.validate(definition)
        now = utc_now()
        report_id = definition.id or uuid.uuid4().hex
        stored = definition.model_copy(update={
            "id": report_id,
            "created_at": now,
            "updated_at": now,
            "last_executed": None,
            "execution_time": None,
        })
        with self._lock:
            if report_id in self._reports:
                raise ValidationError(f"Report '{report_id}' already exists", component="repository")
            self._reports[report_id] = stored
        logger.info(f"[ReportRepository] Created report {report_id} ({stored.name})")
        return report_id

    def update(self, report_id: str, partial: Dict[str, Any]) -> ReportDefinition:
        with self._lock:
            current = self._require(report_id)
        data = current.model_dump(by_alias=False)
        for key, value in partial.items():
            name = _FIELD_NAMES.get(key)
            if name is None:
                raise ValidationError(f"Unknown report field '{key}'", component="repository")
            if name in _IMMUTABLE_FIELDS:
                continue
            data[name] = value
        data["updated_at"] = utc_now()
        try:
            updated = ReportDefinition.model_validate(data)
        except ValueError as e:
            raise ValidationError(str(e), component="repository") from e
        self.validate(updated)
        with self._lock:
            self._require(report_id)
            self._reports[report_id] = updated
        # Cached results stay valid: the key hashes the definition content
        logger.info(f"[ReportRepository] Updated report {report_id}")
        return updated

    def remove(self, report_id: str) -> None:
        with self._lock:
            self._require(report_id)
            del self._reports[report_id]
        if self._cache is not None:
            self._cache.evict_report(report_id)
        if self._history is not None:
            self._history.forget(report_id)
        logger.info(f"[ReportRepository] Removed report {report_id}")

    def share_report(self, report_id, principal, permission=SharePermissionLevel.VIEW):
        with self._lock:
            current = self._require(report_id)
            grants = [g for g in current.shared_with if g.principal != principal]
            grants.append(SharePermission(principal=principal, permission=permission))
            updated = current.model_copy(update={
                "shared_with": grants,
                "updated_at": utc_now(),
            })
            self._reports[report_id] = updated
        logger.info(f"[ReportRepository] Shared report {report_id} with {principal} ({permission.value})")
        return updated

    def unshare_report(self, report_id: str, principal: str) -> ReportDefinition:
        with self._lock:
            current = self._require(report_id)
            grants = [g for g in current.shared_with if g.principal != principal]
            updated = current.model_copy(update={
                "shared_with": grants,
                "updated_at": utc_now(),
            })
            self._reports[report_id] = updated
        return updated

    def create_from_template(
        self,
        template_id: str,
        name: str,
        description: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> str:
        with self._lock:
            template = self._require(template_id)
        if not template.is_template:
            raise ValidationError(f"Report '{template_id}' is not a template", component="repository")
        copy = template.model_copy(deep=True, update={
            "id": None,
            "name": name,
            "description": description if description is not None else template.description,
            "owner": owner,
            "is_template": False,
            "is_public": False,
            "shared_with": [],
        })
        return self.create(copy)

    def record_execution(self, report_id: str, execution_time: float) -> ReportDefinition:
        with self._lock:
            current = self._require(report_id)
            updated = current.model_copy(update={
                "last_executed": utc_now(),
                "execution_time": execution_time,
            })
            self._reports[report_id] = updated
        return updated
