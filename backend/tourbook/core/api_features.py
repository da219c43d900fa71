"""
Translate list-endpoint query strings into SQL.

``?difficulty=easy&duration[gte]=5&sort=-price,name&fields=name,price&page=2&limit=10``
becomes a WHERE/ORDER BY/OFFSET/LIMIT on the statement plus a projection
applied to the serialized records.
"""
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic.alias_generators import to_snake
from sqlalchemy import JSON, Column
from sqlalchemy.sql import Select

from tourbook.core.errors import ValidationFailed

CONTROL_KEYS = ("page", "sort", "limit", "fields")
OPERATORS = {
    "gt": lambda column, value: column > value,
    "gte": lambda column, value: column >= value,
    "lt": lambda column, value: column < value,
    "lte": lambda column, value: column <= value,
}
DEFAULT_SORT = "-createdAt"
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 100

# Repeated query keys collapse to their last value except for these
LIST_PARAM_WHITELIST = frozenset(
    {"duration", "ratingsQuantity", "ratingsAverage", "maxGroupSize", "difficulty", "price"}
)

_OPERATOR_KEY = re.compile(r"^(?P<field>[A-Za-z_][A-Za-z0-9_]*)\[(?P<op>[A-Za-z]+)\]$")
_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def parse_query_params(items: Iterable[Tuple[str, str]], whitelist=LIST_PARAM_WHITELIST) -> Dict[str, Any]:
    """Fold raw query pairs into a dict, guarding against parameter pollution."""
    collected: Dict[str, List[str]] = {}
    for key, value in items:
        collected.setdefault(key, []).append(value)

    params: Dict[str, Any] = {}
    for key, values in collected.items():
        if key in whitelist and len(values) > 1:
            params[key] = values
        else:
            params[key] = values[-1]
    return params


def resolve_column(model, field: str) -> Column:
    """Map an API field name (camelCase) to a public column of ``model``."""
    name = "id" if field in ("id", "_id") else to_snake(field)
    columns = model.__table__.c
    column = columns.get(name)
    if column is None:
        column = columns.get(f"{name}_id")
    if column is None or column.key in model.private_fields:
        raise ValidationFailed(f"Invalid field: {field}")
    return column


def coerce_value(column: Column, raw: Any, field: str) -> Any:
    """Convert a query-string value to the column's Python type."""
    if isinstance(column.type, JSON):
        raise ValidationFailed(f"Cannot filter on {field}")
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return raw

    if not isinstance(raw, str):
        return raw
    try:
        if python_type is bool:
            lowered = raw.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(raw)
        if issubclass(python_type, Enum):
            return python_type(raw)
        if python_type is datetime:
            return datetime.fromisoformat(raw)
        if python_type is uuid.UUID:
            return uuid.UUID(raw)
        if python_type is int:
            number = float(raw)
            return int(number) if number.is_integer() else number
        return python_type(raw)
    except (TypeError, ValueError):
        raise ValidationFailed(f"Invalid {field}: {raw}")


class FieldProjection:
    """Keep or drop keys of serialized records; ``id`` always survives inclusion."""

    def __init__(self, include: Optional[Set[str]] = None, exclude: Optional[Set[str]] = None):
        self.include = include
        self.exclude = exclude or set()

    @classmethod
    def parse(cls, fields: str) -> "FieldProjection":
        names = [name.strip() for name in fields.split(",") if name.strip()]
        excluded = {name[1:] for name in names if name.startswith("-")}
        included = {name for name in names if not name.startswith("-")}
        if excluded and included:
            raise ValidationFailed("Cannot mix field inclusion and exclusion in a projection")
        if included:
            return cls(include=included)
        return cls(exclude=excluded)

    def apply(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.include is not None:
            return {k: v for k, v in record.items() if k in self.include or k == "id"}
        return {k: v for k, v in record.items() if k not in self.exclude}


class APIFeatures:
    """Fluent filter -> sort -> limit_fields -> paginate builder over a SELECT."""

    def __init__(self, statement: Select, query_params: Mapping[str, Any], model):
        self.statement = statement
        self.query_params = dict(query_params)
        self.model = model
        self.projection = FieldProjection()
        self.page = DEFAULT_PAGE
        self.limit = DEFAULT_LIMIT

    def filter(self) -> "APIFeatures":
        for key, value in self.query_params.items():
            if key in CONTROL_KEYS:
                continue

            match = _OPERATOR_KEY.match(key)
            if match:
                field, op = match.group("field"), match.group("op")
                if op not in OPERATORS:
                    raise ValidationFailed(f"Unsupported operator: {op}")
                column = resolve_column(self.model, field)
                if isinstance(value, list):
                    value = value[-1]
                self.statement = self.statement.where(
                    OPERATORS[op](column, coerce_value(column, value, field))
                )
                continue

            column = resolve_column(self.model, key)
            if isinstance(value, list):
                values = [coerce_value(column, v, key) for v in value]
                self.statement = self.statement.where(column.in_(values))
            else:
                self.statement = self.statement.where(column == coerce_value(column, value, key))
        return self

    def sort(self) -> "APIFeatures":
        sort_by = self.query_params.get("sort") or DEFAULT_SORT
        if isinstance(sort_by, list):
            sort_by = sort_by[-1]

        order_by = []
        for item in (part.strip() for part in sort_by.split(",")):
            if not item:
                continue
            descending = item.startswith("-")
            field = item.lstrip("-+")
            column = resolve_column(self.model, field)
            order_by.append(column.desc() if descending else column.asc())

        # stable order across pages
        order_by.append(self.model.__table__.c.id.asc())
        self.statement = self.statement.order_by(*order_by)
        return self

    def limit_fields(self) -> "APIFeatures":
        fields = self.query_params.get("fields")
        if isinstance(fields, list):
            fields = fields[-1]
        if fields:
            self.projection = FieldProjection.parse(fields)
        return self

    def paginate(self) -> "APIFeatures":
        self.page = _positive_int(self.query_params.get("page"), DEFAULT_PAGE)
        self.limit = _positive_int(self.query_params.get("limit"), DEFAULT_LIMIT)
        skip = (self.page - 1) * self.limit
        self.statement = self.statement.offset(skip).limit(self.limit)
        return self

    def all(self) -> "APIFeatures":
        return self.filter().sort().limit_fields().paginate()


def _positive_int(raw: Any, default: int) -> int:
    if isinstance(raw, list):
        raw = raw[-1]
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 1 else default
