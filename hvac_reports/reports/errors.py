"""
Error taxonomy for the report engine.

Only ValidationError and ReportNotFound abort a request. Everything else is
recorded on the result metadata and execution continues.
"""
from typing import Optional

from hvac_reports.domain.models import ReportError, Severity


class ReportEngineError(Exception):
    """Base class; every engine error converts to a ReportError envelope."""

    code = "REPORT_ENGINE_ERROR"
    severity = Severity.ERROR
    recoverable = False

    def __init__(self, message: str, component: str = "engine"):
        super().__init__(message)
        self.message = message
        self.component = component

    def to_report_error(self) -> ReportError:
        return ReportError(
            code=self.code,
            message=self.message,
            severity=self.severity,
            recoverable=self.recoverable,
            component=self.component,
        )


class ValidationError(ReportEngineError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, component: str = "compiler"):
        super().__init__(message, component)


class ReportNotFound(ReportEngineError):
    code = "REPORT_NOT_FOUND"

    def __init__(self, report_id: str):
        super().__init__(f"Report not found: {report_id}", component="repository")
        self.report_id = report_id


class BackendUnavailable(ReportEngineError):
    code = "BACKEND_UNAVAILABLE"
    severity = Severity.WARNING
    recoverable = True

    def __init__(self, backend: str, message: str, timed_out: bool = False):
        super().__init__(message, component=f"adapter:{backend}")
        self.backend = backend
        self.timed_out = timed_out


class FormulaEvaluationError(ReportEngineError):
    """Per-row failure; the cell becomes null and a warning is recorded."""

    code = "FORMULA_EVALUATION_ERROR"
    severity = Severity.WARNING
    recoverable = True

    def __init__(self, message: str, field: Optional[str] = None, row: Optional[int] = None):
        super().__init__(message, component="formula")
        self.field = field
        self.row = row

    def __str__(self) -> str:
        if self.field is not None and self.row is not None:
            return f"{self.field} (row {self.row}): {self.message}"
        return self.message


class CacheCorruption(ReportEngineError):
    code = "CACHE_CORRUPTION"
    severity = Severity.WARNING
    recoverable = True

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}", component="cache")
        self.key = key


class ExecutionTimeout(ReportEngineError):
    code = "EXECUTION_TIMEOUT"
    severity = Severity.WARNING
    recoverable = True

    def __init__(self, stage: str, budget: float):
        super().__init__(
            f"Pipeline budget of {budget:.1f}s exceeded before stage {stage}",
            component="orchestrator",
        )
        self.stage = stage
        self.budget = budget
