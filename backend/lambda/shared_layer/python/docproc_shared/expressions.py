"""docproc_shared.expressions — Condition and update expression builder.

Filters and partial updates are described as a small tagged tree
(`Cond(field, op, value)`, `And(...)`, `Or(...)`) and compiled to DynamoDB
expression syntax by `ExpressionCompiler`. Attribute names always go through
`#nX` placeholders and values through `:vX` placeholders, so reserved words
(`name`, `status`, `timestamp`, `type`, ...) never need special casing.

    compiler = ExpressionCompiler()
    expr = compiler.condition(And(Cond("status", "eq", "pending"),
                                  Cond("originalClassification.confidence", "between", 0.5, 0.9)))
    ddb.scan(TableName=t, FilterExpression=expr, **compiler.params())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .serialization import _serialize

__all__ = [
    "And",
    "Cond",
    "ExpressionCompiler",
    "Or",
    "UpdateSpec",
    "build_filter",
    "compile_condition",
    "build_set_update",
    "range_condition",
]

_COMPARATORS = {
    "eq": "=",
    "ne": "<>",
    "lt": "<",
    "le": "<=",
    "gt": ">",
    "ge": ">=",
}
_FUNCTIONS = {"contains", "begins_with"}
_PRESENCE = {"exists": "attribute_exists", "not_exists": "attribute_not_exists"}
OPERATORS = frozenset(_COMPARATORS) | _FUNCTIONS | frozenset(_PRESENCE) | {"between"}


@dataclass(frozen=True)
class Cond:
    """A single predicate on one (possibly dotted) attribute path."""

    field: str
    op: str
    value: Any = None
    upper: Any = None

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported operator: {self.op}")


@dataclass(frozen=True)
class And:
    conds: Tuple["Node", ...]

    def __init__(self, *conds: "Node"):
        object.__setattr__(self, "conds", tuple(conds))


@dataclass(frozen=True)
class Or:
    conds: Tuple["Node", ...]

    def __init__(self, *conds: "Node"):
        object.__setattr__(self, "conds", tuple(conds))


Node = Union[Cond, And, Or]


class ExpressionCompiler:
    """Compiles expression trees while accumulating shared placeholder maps.

    One compiler instance can compile a key condition, a filter and a
    condition expression for the same request; placeholders stay unique.
    """

    def __init__(self) -> None:
        self.names: Dict[str, str] = {}
        self.values: Dict[str, Any] = {}
        self._name_for: Dict[str, str] = {}

    def name(self, path: str) -> str:
        parts = []
        for segment in path.split("."):
            placeholder = self._name_for.get(segment)
            if placeholder is None:
                placeholder = f"#n{len(self._name_for)}"
                self._name_for[segment] = placeholder
                self.names[placeholder] = segment
            parts.append(placeholder)
        return ".".join(parts)

    def value(self, value: Any) -> str:
        placeholder = f":v{len(self.values)}"
        self.values[placeholder] = _serialize(value)
        return placeholder

    def condition(self, node: Node) -> str:
        if isinstance(node, Cond):
            return self._cond(node)
        if isinstance(node, (And, Or)):
            joiner = " AND " if isinstance(node, And) else " OR "
            parts = []
            for child in node.conds:
                text = self.condition(child)
                parts.append(f"({text})" if not isinstance(child, Cond) else text)
            if not parts:
                raise ValueError("Empty compound condition")
            return joiner.join(parts)
        raise TypeError(f"Not an expression node: {node!r}")

    def _cond(self, cond: Cond) -> str:
        ref = self.name(cond.field)
        if cond.op in _COMPARATORS:
            return f"{ref} {_COMPARATORS[cond.op]} {self.value(cond.value)}"
        if cond.op == "between":
            low = self.value(cond.value)
            high = self.value(cond.upper)
            return f"{ref} BETWEEN {low} AND {high}"
        if cond.op in _FUNCTIONS:
            return f"{cond.op}({ref}, {self.value(cond.value)})"
        return f"{_PRESENCE[cond.op]}({ref})"

    def params(self) -> Dict[str, Any]:
        """ExpressionAttributeNames/Values kwargs (omitting empty maps)."""
        out: Dict[str, Any] = {}
        if self.names:
            out["ExpressionAttributeNames"] = dict(self.names)
        if self.values:
            out["ExpressionAttributeValues"] = dict(self.values)
        return out


def compile_condition(node: Node) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    """One-shot compile: (expression, ExpressionAttributeNames, ExpressionAttributeValues)."""
    compiler = ExpressionCompiler()
    expression = compiler.condition(node)
    return expression, compiler.names, compiler.values


def build_filter(conds: Iterable[Optional[Node]]) -> Optional[Node]:
    """AND-combine the non-empty conditions; None when nothing remains."""
    present = [c for c in conds if c is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return And(*present)


def range_condition(path: str, low: Any = None, high: Any = None) -> Optional[Cond]:
    """Inclusive range on one attribute; either bound may be omitted."""
    if low is not None and high is not None:
        return Cond(path, "between", low, high)
    if low is not None:
        return Cond(path, "ge", low)
    if high is not None:
        return Cond(path, "le", high)
    return None


# ---------------------------------------------------------------------------
# Partial updates
# ---------------------------------------------------------------------------


@dataclass
class UpdateSpec:
    expression: str
    names: Dict[str, str] = field(default_factory=dict)
    values: Dict[str, Any] = field(default_factory=dict)
    fields: List[str] = field(default_factory=list)

    def as_kwargs(self) -> Dict[str, Any]:
        return {
            "UpdateExpression": self.expression,
            "ExpressionAttributeNames": dict(self.names),
            "ExpressionAttributeValues": dict(self.values),
        }


def build_set_update(
    updates: Dict[str, Any],
    *,
    skip: Sequence[str] = ("id",),
    timestamp_field: Optional[str] = "updatedAt",
    timestamp: Any = None,
    compiler: Optional[ExpressionCompiler] = None,
) -> Optional[UpdateSpec]:
    """Build a SET expression touching exactly the keys present in `updates`.

    Keys listed in `skip` (primary key, ownership back-references) and the
    timestamp field itself are ignored. Returns None when no field remains,
    so callers can skip the write entirely. Never emits REMOVE: keys that are
    absent from `updates` keep their stored value.
    """
    ignored = set(skip)
    if timestamp_field:
        ignored.add(timestamp_field)
    keys = [k for k in updates if k not in ignored]
    if not keys:
        return None

    compiler = compiler or ExpressionCompiler()
    clauses = []
    for key in keys:
        clauses.append(f"{compiler.name(key)} = {compiler.value(updates[key])}")
    if timestamp_field:
        clauses.append(f"{compiler.name(timestamp_field)} = {compiler.value(timestamp)}")

    return UpdateSpec(
        expression="SET " + ", ".join(clauses),
        names=dict(compiler.names),
        values=dict(compiler.values),
        fields=keys,
    )
