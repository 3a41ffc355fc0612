"""
Query Compiler.

Turns a ReportDefinition plus ExecutionParams into a CompiledPlan: one
SubPlan per backend, a join plan, the merged column schema and the bound
calculated fields. Pure and re-entrant; every problem with the definition
surfaces here as a ValidationError before any backend is contacted.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from hvac_reports.core.constants import DEFAULT_ROW_LIMIT, SEMANTIC_ROW_LIMIT
from hvac_reports.domain.models import (
    AggregationKind,
    BackendKind,
    DataSource,
    ExecutionParams,
    FieldType,
    FilterOperator,
    JoinKind,
    LogicalConnector,
    ReportDefinition,
)
from hvac_reports.reports.catalog import CatalogTable, DataSourceCatalog, get_catalog
from hvac_reports.reports.columns import bare_name, qualify, resolve_column
from hvac_reports.reports.errors import ValidationError
from hvac_reports.reports.formula import BoundFormula, parse_formula

CALCULATED_VALUE_COLUMN = "calculatedValue"

OPERATORS_BY_TYPE: Dict[FieldType, Set[FilterOperator]] = {
    FieldType.STRING: {
        FilterOperator.EQUALS, FilterOperator.NOT_EQUALS, FilterOperator.CONTAINS,
        FilterOperator.STARTS_WITH, FilterOperator.IN,
    },
    FieldType.NUMBER: {
        FilterOperator.EQUALS, FilterOperator.NOT_EQUALS, FilterOperator.GREATER_THAN,
        FilterOperator.LESS_THAN, FilterOperator.IN, FilterOperator.BETWEEN,
    },
    FieldType.DATE: {
        FilterOperator.EQUALS, FilterOperator.NOT_EQUALS, FilterOperator.GREATER_THAN,
        FilterOperator.LESS_THAN, FilterOperator.BETWEEN,
    },
    FieldType.BOOLEAN: {FilterOperator.EQUALS, FilterOperator.NOT_EQUALS},
}


# =============================================================================
# Plan structures
# =============================================================================

@dataclass(frozen=True)
class Condition:
    """Leaf of a filter tree. `column` is unqualified, relative to its table."""
    column: str
    operator: FilterOperator
    value: Any
    field_type: FieldType


@dataclass(frozen=True)
class BoolExpr:
    connector: LogicalConnector
    left: "FilterNode"
    right: "FilterNode"


FilterNode = Union[Condition, BoolExpr]


@dataclass
class TableQuery:
    table: str
    remote_name: str
    fields: List[str]
    where: Optional[FilterNode] = None
    limit: int = DEFAULT_ROW_LIMIT
    concept: Optional[str] = None  # similarity search text, semantic backend only
    implicit: bool = False  # fetched only because a join targets it


@dataclass
class SubPlan:
    backend: BackendKind
    queries: List[TableQuery] = field(default_factory=list)

    @property
    def tables(self) -> List[str]:
        return [q.table for q in self.queries]


@dataclass(frozen=True)
class JoinStep:
    left_table: str
    left_column: str
    right_table: str
    right_column: str
    kind: JoinKind

    @property
    def left_key(self) -> str:
        return qualify(self.left_table, self.left_column)

    @property
    def right_key(self) -> str:
        return qualify(self.right_table, self.right_column)


@dataclass
class CompiledPlan:
    sub_plans: Dict[BackendKind, SubPlan]
    tables: List[str]  # declaration order, implicit join targets last
    table_backends: Dict[str, BackendKind]
    joins: List[JoinStep]
    schema: Dict[str, FieldType]
    calculated: List[BoundFormula]
    group_by: Optional[str] = None
    x_axis: Optional[str] = None
    y_axis: Optional[str] = None
    aggregation: Optional[AggregationKind] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def backends(self) -> List[BackendKind]:
        return list(self.sub_plans.keys())

    def columns_for(self, table: str) -> List[str]:
        prefix = f"{table}."
        return [c for c in self.schema if c.startswith(prefix)]


# =============================================================================
# Value normalization
# =============================================================================

def _to_iso(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text).isoformat()
            return datetime.fromisoformat(text.replace("Z", "+00:00")).isoformat()
        except ValueError as e:
            raise ValidationError(f"'{value}' is not an ISO date") from e
    raise ValidationError(f"{value!r} is not a date")


def _coerce_scalar(value: Any, field_type: FieldType, column: str) -> Any:
    if value is None or isinstance(value, (list, tuple, dict)):
        raise ValidationError(f"Filter on '{column}' needs a single {field_type.value} value")
    if field_type == FieldType.NUMBER:
        if isinstance(value, bool):
            raise ValidationError(f"Filter on '{column}' needs a number, got a boolean")
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Filter on '{column}' needs a number, got {value!r}") from e
        return int(number) if number.is_integer() else number
    if field_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise ValidationError(f"Filter on '{column}' needs a boolean, got {value!r}")
    if field_type == FieldType.DATE:
        return _to_iso(value)
    return str(value)


def _coerce_value(operator: FilterOperator, value: Any, field_type: FieldType, column: str) -> Any:
    if operator == FilterOperator.IN:
        if not isinstance(value, (list, tuple)) or not value:
            raise ValidationError(f"Operator 'in' on '{column}' needs a non-empty list")
        return tuple(_coerce_scalar(v, field_type, column) for v in value)
    if operator == FilterOperator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValidationError(f"Operator 'between' on '{column}' needs a two-element list")
        low, high = (_coerce_scalar(v, field_type, column) for v in value)
        return (low, high)
    return _coerce_scalar(value, field_type, column)


# =============================================================================
# Compiler
# =============================================================================

class QueryCompiler:
    """
    Compiles report definitions against a DataSourceCatalog.

    Usage:
        plan = QueryCompiler().compile(definition, params)
    """

    def __init__(
        self,
        catalog: Optional[DataSourceCatalog] = None,
        keep_columns: Iterable[str] = (),
    ):
        self.catalog = catalog or get_catalog()
        # Columns always fetched when present, even for single-field sources
        self.keep_columns = set(keep_columns)

    def compile(self, definition: ReportDefinition, params: Optional[ExecutionParams] = None) -> CompiledPlan:
        params = params or ExecutionParams()
        if not definition.data_sources:
            raise ValidationError("Report must declare at least one data source")

        warnings: List[str] = []
        sources: List[Tuple[DataSource, CatalogTable]] = []
        calculated_sources: List[DataSource] = []
        seen_tables: Dict[str, str] = {}
        seen_ids: Set[str] = set()

        for source in definition.data_sources:
            if source.id in seen_ids:
                raise ValidationError(f"Duplicate data source id '{source.id}'")
            seen_ids.add(source.id)
            if source.backend == BackendKind.CALCULATED:
                if source.filters or source.joins:
                    raise ValidationError(f"Calculated data source '{source.id}' cannot filter or join")
                calculated_sources.append(source)
                continue
            table = self._lookup_table(source)
            if table.name in seen_tables:
                raise ValidationError(
                    f"Table '{table.name}' is declared by both '{seen_tables[table.name]}' and '{source.id}'"
                )
            seen_tables[table.name] = source.id
            sources.append((source, table))

        declared = {table.name: table for _, table in sources}
        joins, implicit = self._compile_joins(sources, declared)
        all_tables = list(declared.values()) + implicit

        # Full schema first; single-field sources are narrowed after references resolve
        full_schema: Dict[str, FieldType] = {}
        for table in all_tables:
            for name, ftype in table.fields.items():
                full_schema[qualify(table.name, name)] = ftype

        calculated, referenced = self._bind_formulas(definition, calculated_sources, full_schema)

        vis = definition.visualization
        axes_schema = dict(full_schema)
        for bound in calculated:
            axes_schema[bound.name] = FieldType.NUMBER
        group_by = self._resolve_axis("groupBy", vis.group_by, axes_schema, referenced)
        x_axis = self._resolve_axis("xAxis", vis.x_axis, axes_schema, referenced)
        y_axis = self._resolve_axis("yAxis", vis.y_axis, axes_schema, referenced)
        if vis.aggregation is not None and vis.aggregation != AggregationKind.COUNT and y_axis is None:
            raise ValidationError(f"Aggregation '{vis.aggregation.value}' needs a yAxis field", component="aggregator")

        join_columns = {j.left_key for j in joins} | {j.right_key for j in joins}
        sub_plans: Dict[BackendKind, SubPlan] = {}
        table_backends: Dict[str, BackendKind] = {}
        schema: Dict[str, FieldType] = {}

        for source, table in sources:
            projection = self._projection(table, source.field, referenced | join_columns)
            where = self._compile_filters(source, table)
            where = self._apply_date_range(where, table, params, warnings)
            query = TableQuery(
                table=table.name,
                remote_name=table.remote_name,
                fields=projection,
                where=where,
                limit=SEMANTIC_ROW_LIMIT if table.backend == BackendKind.SEMANTIC else DEFAULT_ROW_LIMIT,
                concept=source.query if table.backend == BackendKind.SEMANTIC else None,
            )
            sub_plans.setdefault(table.backend, SubPlan(backend=table.backend)).queries.append(query)
            table_backends[table.name] = table.backend
            for name in projection:
                schema[qualify(table.name, name)] = table.fields[name]

        for table in implicit:
            where = self._apply_date_range(None, table, params, warnings)
            query = TableQuery(
                table=table.name,
                remote_name=table.remote_name,
                fields=list(table.fields),
                where=where,
                limit=SEMANTIC_ROW_LIMIT if table.backend == BackendKind.SEMANTIC else DEFAULT_ROW_LIMIT,
                implicit=True,
            )
            sub_plans.setdefault(table.backend, SubPlan(backend=table.backend)).queries.append(query)
            table_backends[table.name] = table.backend
            for name, ftype in table.fields.items():
                schema[qualify(table.name, name)] = ftype

        for bound in calculated:
            schema[bound.name] = next(
                (cf.data_type for cf in definition.calculated_fields if cf.name == bound.name),
                FieldType.NUMBER,
            )

        return CompiledPlan(
            sub_plans=sub_plans,
            tables=[t.name for t in all_tables],
            table_backends=table_backends,
            joins=joins,
            schema=schema,
            calculated=calculated,
            group_by=group_by,
            x_axis=x_axis,
            y_axis=y_axis,
            aggregation=vis.aggregation,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Data sources
    # ------------------------------------------------------------------

    def _lookup_table(self, source: DataSource) -> CatalogTable:
        if not source.table:
            raise ValidationError(f"Data source '{source.id}' has no table")
        table = self.catalog.get(source.backend, source.table)
        if table is None:
            raise ValidationError(
                f"Unknown table '{source.table}' on backend '{source.backend.value}'"
            )
        if source.field and source.field not in table.fields:
            raise ValidationError(f"Unknown field '{source.field}' on table '{table.name}'")
        return table

    def _projection(self, table: CatalogTable, single_field: Optional[str], needed: Set[str]) -> List[str]:
        if not single_field:
            return list(table.fields)
        wanted = {single_field} | {n for n in table.fields if n in self.keep_columns}
        wanted |= {bare_name(c) for c in needed if c.startswith(f"{table.name}.")}
        return [n for n in table.fields if n in wanted]

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _filter_column(self, raw: str, table: CatalogTable) -> str:
        if "." in raw:
            prefix, name = raw.rsplit(".", 1)
            if prefix != table.name:
                raise ValidationError(f"Filter field '{raw}' does not belong to table '{table.name}'")
            raw = name
        if raw not in table.fields:
            raise ValidationError(f"Unknown field '{raw}' on table '{table.name}'")
        return raw

    def _compile_filters(self, source: DataSource, table: CatalogTable) -> Optional[FilterNode]:
        tree: Optional[FilterNode] = None
        for f in source.filters:
            column = self._filter_column(f.field, table)
            ftype = table.fields[column]
            if f.operator not in OPERATORS_BY_TYPE[ftype]:
                raise ValidationError(
                    f"Operator '{f.operator.value}' is not valid for {ftype.value} field '{column}'"
                )
            condition = Condition(
                column=column,
                operator=f.operator,
                value=_coerce_value(f.operator, f.value, ftype, column),
                field_type=ftype,
            )
            # Left fold: ((f0 c1 f1) c2 f2)
            tree = condition if tree is None else BoolExpr(f.logical_operator, tree, condition)
        return tree

    def _apply_date_range(
        self,
        where: Optional[FilterNode],
        table: CatalogTable,
        params: ExecutionParams,
        warnings: List[str],
    ) -> Optional[FilterNode]:
        if params.date_range is None:
            return where
        if not table.time_field or table.time_field not in table.fields:
            warnings.append(f"Table '{table.name}' has no time field; date range not applied")
            return where
        start = params.date_range.start.isoformat()
        end = f"{params.date_range.end.isoformat()}T23:59:59.999999"
        condition = Condition(
            column=table.time_field,
            operator=FilterOperator.BETWEEN,
            value=(start, end),
            field_type=FieldType.DATE,
        )
        return condition if where is None else BoolExpr(LogicalConnector.AND, where, condition)

    # ------------------------------------------------------------------
    # Joins
    # ------------------------------------------------------------------

    def _parse_join_side(self, text: str, default_table: str, tables: Tuple[str, str]) -> Tuple[str, str]:
        text = text.strip()
        if not text:
            raise ValidationError("Empty side in join expression")
        if "." in text:
            table, column = text.rsplit(".", 1)
            if table not in tables:
                raise ValidationError(f"Join qualifier '{table}' is neither {tables[0]} nor {tables[1]}")
            return table, column
        return default_table, text

    def _compile_joins(
        self,
        sources: List[Tuple[DataSource, CatalogTable]],
        declared: Dict[str, CatalogTable],
    ) -> Tuple[List[JoinStep], List[CatalogTable]]:
        steps: List[JoinStep] = []
        implicit: Dict[str, CatalogTable] = {}
        parent: Dict[str, str] = {}

        def find(name: str) -> str:
            while parent.setdefault(name, name) != name:
                name = parent[name]
            return name

        for source, table in sources:
            for join in source.joins:
                if join.table == table.name:
                    raise ValidationError(f"Table '{table.name}' cannot join itself")
                target = declared.get(join.table) or implicit.get(join.table)
                if target is None:
                    target = self.catalog.owner_of(join.table)
                    if target is None:
                        raise ValidationError(f"Unknown join table '{join.table}'")
                    implicit[target.name] = target

                names = (table.name, target.name)
                if "=" in join.on:
                    lhs, _, rhs = join.on.partition("=")
                    if "=" in rhs:
                        raise ValidationError(f"Malformed join expression '{join.on}'")
                    left = self._parse_join_side(lhs, table.name, names)
                    right = self._parse_join_side(rhs, target.name, names)
                    if left[0] == right[0]:
                        raise ValidationError(f"Join expression '{join.on}' compares a table with itself")
                    if left[0] != table.name:
                        left, right = right, left
                else:
                    column = join.on.strip()
                    if not column or "." in column:
                        raise ValidationError(f"Malformed join expression '{join.on}'")
                    left, right = (table.name, column), (target.name, column)

                for tname, column in (left, right):
                    owner = declared.get(tname) or implicit.get(tname)
                    if column not in owner.fields:
                        raise ValidationError(f"Unknown join column '{column}' on table '{tname}'")

                if find(left[0]) == find(right[0]):
                    raise ValidationError(
                        f"Join {left[0]} -> {right[0]} closes a cycle; each table pair may be joined once"
                    )
                parent[find(right[0])] = find(left[0])
                steps.append(JoinStep(left[0], left[1], right[0], right[1], join.kind))

        return steps, list(implicit.values())

    # ------------------------------------------------------------------
    # Calculated fields and visualization
    # ------------------------------------------------------------------

    def _bind_formulas(
        self,
        definition: ReportDefinition,
        calculated_sources: List[DataSource],
        schema: Dict[str, FieldType],
    ) -> Tuple[List[BoundFormula], Set[str]]:
        formula_sources: List[Tuple[str, str]] = [(cf.name, cf.formula) for cf in definition.calculated_fields]
        for source in calculated_sources:
            if source.query:
                formula_sources.append((CALCULATED_VALUE_COLUMN, source.query))

        all_names = [name for name, _ in formula_sources]
        available: List[str] = list(schema)
        referenced: Set[str] = set()
        bound: List[BoundFormula] = []
        seen: Set[str] = set()

        for name, source_text in formula_sources:
            if not name or "." in name:
                raise ValidationError(f"Calculated field name '{name}' must be a plain identifier")
            if name in seen:
                raise ValidationError(f"Duplicate calculated field '{name}'")
            if name in schema:
                raise ValidationError(f"Calculated field '{name}' shadows a source column")
            formula = parse_formula(source_text)
            bindings: Dict[str, str] = {}
            for ref in formula.references:
                if ref == name:
                    raise ValidationError(f"Calculated field '{name}' references itself (cycle)")
                resolved = resolve_column(ref, available)
                if resolved is None:
                    if ref in all_names:
                        raise ValidationError(
                            f"Calculated field '{name}' references '{ref}', which is declared later"
                        )
                    raise ValidationError(f"Calculated field '{name}' references unknown column '{ref}'")
                bindings[ref] = resolved
                referenced.add(resolved)
            bound.append(BoundFormula(name=name, formula=formula, bindings=bindings))
            available.append(name)
            seen.add(name)

        return bound, referenced

    def _resolve_axis(
        self,
        label: str,
        value: Optional[str],
        schema: Dict[str, FieldType],
        referenced: Set[str],
    ) -> Optional[str]:
        if not value:
            return None
        resolved = resolve_column(value, schema)
        if resolved is None:
            raise ValidationError(f"Visualization {label} '{value}' does not match any column", component="aggregator")
        referenced.add(resolved)
        return resolved


def compile_report(
    definition: ReportDefinition,
    params: Optional[ExecutionParams] = None,
    catalog: Optional[DataSourceCatalog] = None,
) -> CompiledPlan:
    return QueryCompiler(catalog).compile(definition, params)
