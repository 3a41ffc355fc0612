"""
Base model for report definitions and execution payloads.

The report API speaks camelCase (``dataSources``, ``warsawSettings``,
``executionTime``) while the engine works with snake_case attributes.
"""
from typing import Any, Dict

from humps import camelize
from pydantic import BaseModel, ConfigDict


def to_camel(string: str) -> str:
    return camelize(string)


class CamelCaseModel(BaseModel):
    """
    Accepts either spelling on input, emits camelCase on output.

    Usage:
        class ExecutionMetadata(CamelCaseModel):
            total_rows: int  # "totalRows" in API payloads
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_api(self) -> Dict[str, Any]:
        """JSON-safe camelCase dict, as returned by the HTTP layer."""
        return self.model_dump(mode="json", by_alias=True)
