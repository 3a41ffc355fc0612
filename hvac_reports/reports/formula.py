"""
Calculated-Field Evaluator.

Formulas are parsed once with ``ast.parse(mode="eval")`` and checked against
a node whitelist, then interpreted per row by walking the tree. Nothing is
ever handed to ``eval``.

Grammar:
    literals       1, 2.5, "text", True, False, None
    columns        sellPrice, equipment.sellPrice
    arithmetic     + - * / % **
    unary          -x, +x, not x
    comparisons    == != < <= > >=
    boolean        and, or
    conditional    a if cond else b
    functions      round, percent_of, ratio, abs, min, max, coalesce
"""
import ast
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from hvac_reports.reports.errors import FormulaEvaluationError, ValidationError
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)

MAX_EXPONENT = 64
MAX_RESULT_BITS = 1024  # about 1e308, the float range
MAX_FORMULA_LENGTH = 2000
MAX_FORMULA_DEPTH = 64
MAX_FORMULA_NODES = 500
MAX_WARNINGS = 50


def _round(value, digits=0):
    return round(value, int(digits))


def _percent_of(part, whole):
    return part / whole * 100


def _ratio(numerator, denominator):
    return numerator / denominator


def _coalesce(*args):
    return next((arg for arg in args if arg is not None), None)


FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, Optional[int], bool]] = {
    # name: (impl, min args, max args, null-tolerant)
    "round": (_round, 1, 2, False),
    "percent_of": (_percent_of, 2, 2, False),
    "ratio": (_ratio, 2, 2, False),
    "abs": (abs, 1, 1, False),
    "min": (min, 1, None, False),
    "max": (max, 1, None, False),
    "coalesce": (_coalesce, 1, None, True),
}

_BINOPS = {
    ast.Add: lambda a, b: a + b,
    ast.Sub: lambda a, b: a - b,
    ast.Mult: lambda a, b: a * b,
    ast.Div: lambda a, b: a / b,
    ast.Mod: lambda a, b: a % b,
    ast.Pow: lambda a, b: a ** b,
}

_COMPARISONS = {
    ast.Eq: lambda a, b: a == b,
    ast.NotEq: lambda a, b: a != b,
    ast.Lt: lambda a, b: a < b,
    ast.LtE: lambda a, b: a <= b,
    ast.Gt: lambda a, b: a > b,
    ast.GtE: lambda a, b: a >= b,
}

_ALLOWED_NODES = (
    ast.Expression, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp,
    ast.Call, ast.Name, ast.Attribute, ast.Constant, ast.Load,
    ast.UAdd, ast.USub, ast.Not, ast.And, ast.Or,
    *_BINOPS.keys(), *_COMPARISONS.keys(),
)


def _column_ref(node: ast.AST) -> Optional[str]:
    """Dotted name for a Name/Attribute chain, else None."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _column_ref(node.value)
        return f"{base}.{node.attr}" if base is not None else None
    return None


@dataclass
class Formula:
    """A parsed, whitelisted formula with the column names it references."""
    source: str
    tree: ast.Expression
    references: List[str] = field(default_factory=list)

    @property
    def normalized(self) -> str:
        return ast.unparse(self.tree)


def parse_formula(source: str) -> Formula:
    if not isinstance(source, str) or not source.strip():
        raise ValidationError("Formula must be a non-empty string", component="formula")
    if len(source) > MAX_FORMULA_LENGTH:
        raise ValidationError(f"Formula exceeds {MAX_FORMULA_LENGTH} characters", component="formula")
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise ValidationError(f"Invalid formula syntax: {e.msg}", component="formula") from e
    except RecursionError as e:
        raise ValidationError("Formula is nested too deeply", component="formula") from e

    _check_shape(tree)
    references: List[str] = []
    _check(tree.body, references)
    return Formula(source=source, tree=tree, references=references)


def normalize_formula(source: str) -> str:
    """Canonical text of a formula, used in cache keys."""
    return parse_formula(source).normalized


def _check_shape(tree: ast.Expression) -> None:
    """Bound nesting depth and node count, walking iteratively."""
    nodes = 0
    stack = [(tree.body, 1)]
    while stack:
        node, depth = stack.pop()
        nodes += 1
        if depth > MAX_FORMULA_DEPTH:
            raise ValidationError(f"Formula nests deeper than {MAX_FORMULA_DEPTH} levels", component="formula")
        if nodes > MAX_FORMULA_NODES:
            raise ValidationError(f"Formula has more than {MAX_FORMULA_NODES} terms", component="formula")
        stack.extend((child, depth + 1) for child in ast.iter_child_nodes(node))


def _check(node: ast.AST, references: List[str]) -> None:
    if not isinstance(node, _ALLOWED_NODES):
        raise ValidationError(
            f"Unsupported expression component in formula: {type(node).__name__}",
            component="formula",
        )
    if isinstance(node, (ast.Name, ast.Attribute)):
        ref = _column_ref(node)
        if ref is None:
            raise ValidationError("Attribute access is only allowed on column names", component="formula")
        if ref in FUNCTIONS:
            raise ValidationError(f"Function '{ref}' used as a value", component="formula")
        if ref not in references:
            references.append(ref)
        return
    if isinstance(node, ast.Constant):
        if not (node.value is None or isinstance(node.value, (bool, int, float, str))):
            raise ValidationError("Unsupported literal in formula", component="formula")
        return
    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            name = node.func.id if isinstance(node.func, ast.Name) else ast.unparse(node.func)
            raise ValidationError(f"Function '{name}' is not allowed in formulas", component="formula")
        if node.keywords:
            raise ValidationError("Keyword arguments are not allowed in formulas", component="formula")
        _, lo, hi, _ = FUNCTIONS[node.func.id]
        if len(node.args) < lo or (hi is not None and len(node.args) > hi):
            raise ValidationError(
                f"Function '{node.func.id}' called with {len(node.args)} arguments",
                component="formula",
            )
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise ValidationError("Star arguments are not allowed in formulas", component="formula")
            _check(arg, references)
        return
    for child in ast.iter_child_nodes(node):
        _check(child, references)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _RowEvaluator:
    """Walks one formula tree against one row."""

    def __init__(self, row: Mapping[str, Any], bindings: Mapping[str, str]):
        self.row = row
        self.bindings = bindings

    def eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, (ast.Name, ast.Attribute)):
            ref = _column_ref(node)
            return self.row.get(self.bindings.get(ref, ref))
        if isinstance(node, ast.BinOp):
            return self._binop(node)
        if isinstance(node, ast.UnaryOp):
            operand = self.eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if not _is_number(operand):
                raise FormulaEvaluationError(f"unary operator on non-numeric value {operand!r}")
            return -operand if isinstance(node.op, ast.USub) else operand
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value = True
                for operand in node.values:
                    value = self.eval(operand)
                    if not value:
                        return value
                return value
            value = False
            for operand in node.values:
                value = self.eval(operand)
                if value:
                    return value
            return value
        if isinstance(node, ast.Compare):
            left = self.eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.eval(comparator)
                if not isinstance(op, (ast.Eq, ast.NotEq)) and (left is None or right is None):
                    raise FormulaEvaluationError("comparison with null value")
                if not _COMPARISONS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)
        if isinstance(node, ast.Call):
            impl, _, _, null_tolerant = FUNCTIONS[node.func.id]
            args = [self.eval(arg) for arg in node.args]
            if not null_tolerant and any(arg is None for arg in args):
                raise FormulaEvaluationError(f"{node.func.id}() received a null argument")
            return impl(*args)
        raise FormulaEvaluationError(f"unsupported node {type(node).__name__}")

    def _binop(self, node: ast.BinOp) -> Any:
        left = self.eval(node.left)
        right = self.eval(node.right)
        if left is None or right is None:
            raise FormulaEvaluationError("null operand in arithmetic")
        if isinstance(node.op, ast.Add) and isinstance(left, str) and isinstance(right, str):
            return left + right
        if not (_is_number(left) and _is_number(right)):
            raise FormulaEvaluationError(
                f"arithmetic on non-numeric values {type(left).__name__} and {type(right).__name__}"
            )
        if isinstance(node.op, ast.Pow):
            if abs(right) > MAX_EXPONENT:
                raise FormulaEvaluationError(f"exponent {right} exceeds {MAX_EXPONENT}")
            if right > 0 and abs(left) > 1 and math.log2(abs(left)) * right > MAX_RESULT_BITS:
                raise FormulaEvaluationError("result of ** is too large")
        elif isinstance(node.op, ast.Mult) and left and right:
            if math.log2(abs(left)) + math.log2(abs(right)) > MAX_RESULT_BITS:
                raise FormulaEvaluationError("result of * is too large")
        return _BINOPS[type(node.op)](left, right)


def evaluate(formula: Formula, row: Mapping[str, Any], bindings: Optional[Mapping[str, str]] = None) -> Any:
    """Evaluate one formula on one row. Raises FormulaEvaluationError on failure."""
    try:
        value = _RowEvaluator(row, bindings or {}).eval(formula.tree.body)
    except FormulaEvaluationError:
        raise
    except ZeroDivisionError as e:
        raise FormulaEvaluationError("division by zero") from e
    except (TypeError, ValueError, OverflowError) as e:
        raise FormulaEvaluationError(str(e)) from e
    except RecursionError as e:
        raise FormulaEvaluationError("formula nested too deeply to evaluate") from e
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise FormulaEvaluationError("result is not a finite number")
    return value


@dataclass
class BoundFormula:
    """A calculated field ready to run: output column, parsed formula and resolved references."""
    name: str
    formula: Formula
    bindings: Dict[str, str] = field(default_factory=dict)


def apply_calculated_fields(
    rows: List[Dict[str, Any]],
    fields: List[BoundFormula],
    max_warnings: int = MAX_WARNINGS,
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Add each calculated column to copies of the rows, in declaration order.

    A failing cell becomes None and produces a warning. Warnings beyond
    max_warnings are summarised in a single trailing message.
    """
    if not fields:
        return rows, []

    warnings: List[str] = []
    suppressed = 0
    out: List[Dict[str, Any]] = []
    for index, row in enumerate(rows):
        row = dict(row)
        for bound in fields:
            try:
                row[bound.name] = evaluate(bound.formula, row, bound.bindings)
            except FormulaEvaluationError as e:
                row[bound.name] = None
                e.field, e.row = bound.name, index
                if len(warnings) < max_warnings:
                    warnings.append(str(e))
                else:
                    suppressed += 1
        out.append(row)

    if suppressed:
        warnings.append(f"{suppressed} further formula warnings suppressed")
    if warnings:
        logger.info(f"[FormulaEvaluator] {len(warnings)} formula warnings over {len(rows)} rows")
    return out, warnings
