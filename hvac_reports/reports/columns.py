"""Column name resolution shared by every stage after the merge."""
from typing import Iterable, Optional

from hvac_reports.reports.errors import ValidationError


def qualify(table: str, column: str) -> str:
    return f"{table}.{column}"


def bare_name(column: str) -> str:
    return column.rsplit(".", 1)[-1]


def resolve_column(name: str, columns: Iterable[str]) -> Optional[str]:
    """Resolve a bare or namespaced name against the merged schema.

    An exact match wins. Otherwise a bare name matches the unique column
    whose unqualified part equals it. Returns None when nothing matches and
    raises ValidationError on ambiguity.
    """
    columns = list(columns)
    if name in columns:
        return name
    if "." in name:
        return None
    matches = [c for c in columns if bare_name(c) == name]
    if len(matches) > 1:
        raise ValidationError(
            f"Column '{name}' is ambiguous; qualify it as one of {sorted(matches)}"
        )
    return matches[0] if matches else None


def find_first(candidates: Iterable[str], columns: Iterable[str]) -> Optional[str]:
    """First candidate bare name present in columns, without raising on ambiguity."""
    columns = list(columns)
    for candidate in candidates:
        if candidate in columns:
            return candidate
        for column in columns:
            if bare_name(column) == candidate:
                return column
    return None
