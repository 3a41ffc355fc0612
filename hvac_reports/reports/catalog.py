"""
Data Source Catalog.

Registered metadata describing which fields exist on which backend table,
with declared types. Loaded from config/catalog.yaml.
"""
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import yaml

from hvac_reports.core.constants import CATALOG_PATH
from hvac_reports.domain.models import BackendKind, FieldType
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CatalogTable:
    backend: BackendKind
    name: str
    fields: Dict[str, FieldType] = field(default_factory=dict)
    native_name: Optional[str] = None  # collection/class name on the backend, when it differs
    time_field: Optional[str] = None

    @property
    def remote_name(self) -> str:
        return self.native_name or self.name

    def field_type(self, name: str) -> Optional[FieldType]:
        return self.fields.get(name)


class DataSourceCatalog:
    """Lookup of (backend, table) -> CatalogTable.

    Table names are unique across backends so a join target can be
    resolved to its owning backend without naming it.
    """

    def __init__(self, tables: Iterable[CatalogTable]):
        self._tables: Dict[Tuple[BackendKind, str], CatalogTable] = {}
        self._owners: Dict[str, CatalogTable] = {}
        for table in tables:
            if table.name in self._owners:
                raise ValueError(f"Table '{table.name}' registered on more than one backend")
            self._tables[(table.backend, table.name)] = table
            self._owners[table.name] = table

    def get(self, backend: BackendKind, table: str) -> Optional[CatalogTable]:
        return self._tables.get((backend, table))

    def owner_of(self, table: str) -> Optional[CatalogTable]:
        return self._owners.get(table)

    def tables(self, backend: Optional[BackendKind] = None) -> List[CatalogTable]:
        return [t for t in self._tables.values() if backend is None or t.backend == backend]

    @classmethod
    def from_dict(cls, data: dict) -> "DataSourceCatalog":
        tables = []
        for backend_name, backend_tables in (data or {}).items():
            backend = BackendKind(backend_name)
            for table_name, table_def in (backend_tables or {}).items():
                table_def = table_def or {}
                tables.append(CatalogTable(
                    backend=backend,
                    name=table_name,
                    fields={k: FieldType(v) for k, v in (table_def.get("fields") or {}).items()},
                    native_name=table_def.get("native_name"),
                    time_field=table_def.get("time_field"),
                ))
        return cls(tables)

    @classmethod
    def from_yaml(cls, path: Path) -> "DataSourceCatalog":
        if not path.exists():
            logger.warning(f"[Catalog] Catalog file not found: {path}")
            return cls([])
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        catalog = cls.from_dict(data)
        logger.info(f"[Catalog] Loaded {len(catalog._tables)} tables from {path}")
        return catalog


@lru_cache(maxsize=1)
def get_catalog() -> DataSourceCatalog:
    return DataSourceCatalog.from_yaml(Path(CATALOG_PATH))
