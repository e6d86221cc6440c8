from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import date, datetime
import hashlib
import json
import re
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field

from tenantsync.core.config import Settings, get_settings
from tenantsync.core.errors import QueryValidationError


IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_DANGEROUS_KEYWORDS = re.compile(
    r"\b(DROP|DELETE|UPDATE|INSERT|TRUNCATE|ALTER|CREATE|GRANT|REVOKE|EXEC|EXECUTE|MERGE|CALL)\b",
    re.IGNORECASE,
)
_TABLE_PATH = r"(?:\{project\}\.)?[A-Za-z_][A-Za-z0-9_-]*(?:\.[A-Za-z_][A-Za-z0-9_-]*){1,2}"
_TABLE_REFERENCE = re.compile(rf"`{_TABLE_PATH}`|{_TABLE_PATH}")
_TABLE_ALIAS = (
    r"(?:\s+(?:AS\s+)?(?!(?:WHERE|GROUP|ORDER|LIMIT|JOIN|LEFT|RIGHT|INNER|OUTER|CROSS|FULL|ON|USING"
    r"|UNION|HAVING|QUALIFY|WINDOW)\b)[A-Za-z_][A-Za-z0-9_]*)?"
)
# FROM/JOIN followed by one table or a comma-separated list of them.
_FROM_LIST = re.compile(
    rf"\b(?:FROM|JOIN)\s+(?:`{_TABLE_PATH}`|{_TABLE_PATH}){_TABLE_ALIAS}"
    rf"(?:\s*,\s*(?:`{_TABLE_PATH}`|{_TABLE_PATH}){_TABLE_ALIAS})*",
    re.IGNORECASE,
)
_QUOTED_NAME = re.compile(r"`([^`]+)`")
_STRING_LITERAL = re.compile(r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\"")

Mode = Literal["raw", "filtered", "aggregated", "custom"]
Operator = Literal[
    "eq", "neq", "gt", "gte", "lt", "lte", "like", "in", "between", "is_null", "is_not_null"
]
_COMPARISONS = {"eq": "=", "neq": "!=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "like": "LIKE"}


class Predicate(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    op: Operator = "eq"
    value: Any = None


class Aggregation(BaseModel):
    model_config = ConfigDict(frozen=True)

    function: Literal["COUNT", "SUM", "AVG", "MIN", "MAX"]
    # "*" is only valid for COUNT.
    field: str = "*"
    alias: str | None = None


class OrderBy(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    direction: Literal["ASC", "DESC"] = "ASC"


class QuerySpec(BaseModel):
    """Immutable description of one warehouse request.

    Paginated modes derive a new spec per page through ``with_cursor``; the cursor is
    opaque to callers.
    """

    model_config = ConfigDict(frozen=True)

    mode: Mode
    # dataset.table; not used by custom mode.
    table: str | None = None
    columns: tuple[str, ...] = ()
    predicates: tuple[Predicate, ...] = ()
    cursor: str | None = None
    page_size: int | None = Field(default=None, ge=1)
    order_by: tuple[OrderBy, ...] = ()
    group_by: tuple[str, ...] = ()
    aggregations: tuple[Aggregation, ...] = ()
    date_field: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    template: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def paginated(self) -> bool:
        return self.mode in {"raw", "filtered"}

    @property
    def cacheable(self) -> bool:
        return self.mode != "custom"

    def with_cursor(self, cursor: str | None) -> "QuerySpec":
        return self.model_copy(update={"cursor": cursor})


@dataclass(frozen=True)
class CompiledQuery:
    sql: str
    parameters: list[dict[str, Any]] = field(default_factory=list)
    offset: int = 0
    limit: int = 0
    paginated: bool = False


@dataclass(frozen=True)
class QueryTemplate:
    name: str
    sql: str
    tables: frozenset[str]


_templates: dict[str, QueryTemplate] = {}


def encode_cursor(offset: int) -> str:
    payload = json.dumps({"o": int(offset)}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii").rstrip("=")


def decode_cursor(cursor: str | None) -> int:
    # Absent cursor means start-of-source.
    if not cursor:
        return 0
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        offset = int(payload["o"])
    except (ValueError, KeyError, TypeError) as exc:
        raise QueryValidationError("Malformed page cursor") from exc
    if offset < 0:
        raise QueryValidationError("Malformed page cursor")
    return offset


def fingerprint(tenant_id: str, spec: QuerySpec) -> str:
    # Cache key over the canonical JSON form of (tenant, spec).
    canonical = json.dumps(
        {"tenant_id": tenant_id, "spec": spec.model_dump(mode="json")},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _identifier(name: str) -> str:
    if not IDENTIFIER.match(name or ""):
        raise QueryValidationError(f"Invalid identifier: {name!r}")
    return name


def validate_table(table: str | None) -> str:
    if not table:
        raise QueryValidationError("Query requires a table")
    parts = table.split(".")
    if len(parts) != 2:
        raise QueryValidationError(f"Table must be dataset.table: {table!r}")
    return ".".join(_identifier(part) for part in parts)


def _check_allowlist(tables: Iterable[str], allowlist: set[str]) -> None:
    for table in tables:
        if table.lower() not in allowlist:
            raise QueryValidationError(f"Table not allowed: {table}")


def _scalar_type(value: Any) -> str:
    # bool before int: bool is an int subclass.
    if isinstance(value, bool):
        return "BOOL"
    if isinstance(value, int):
        return "INT64"
    if isinstance(value, float):
        return "FLOAT64"
    if isinstance(value, datetime):
        return "TIMESTAMP"
    if isinstance(value, date):
        return "DATE"
    if isinstance(value, str):
        return "STRING"
    raise QueryValidationError(f"Unsupported parameter type: {type(value).__name__}")


def _scalar_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def query_parameter(name: str, value: Any) -> dict[str, Any]:
    # Build a named parameter in the warehouse REST shape.
    if isinstance(value, (list, tuple)):
        if not value:
            raise QueryValidationError(f"Parameter {name} must not be empty")
        element_type = _scalar_type(value[0])
        if any(_scalar_type(item) != element_type for item in value):
            raise QueryValidationError(f"Parameter {name} mixes value types")
        return {
            "name": name,
            "parameterType": {"type": "ARRAY", "arrayType": {"type": element_type}},
            "parameterValue": {"arrayValues": [{"value": _scalar_value(item)} for item in value]},
        }
    if value is None:
        raise QueryValidationError(f"Parameter {name} must not be null")
    return {
        "name": name,
        "parameterType": {"type": _scalar_type(value)},
        "parameterValue": {"value": _scalar_value(value)},
    }


class _Params:
    def __init__(self) -> None:
        self.items: list[dict[str, Any]] = []

    def bind(self, value: Any) -> str:
        name = f"p{len(self.items)}"
        self.items.append(query_parameter(name, value))
        return f"@{name}"


def _where_clause(spec: QuerySpec, params: _Params) -> str:
    clauses: list[str] = []
    for predicate in spec.predicates:
        column = _identifier(predicate.field)
        op = predicate.op
        if op == "is_null":
            clauses.append(f"{column} IS NULL")
        elif op == "is_not_null":
            clauses.append(f"{column} IS NOT NULL")
        elif op == "in":
            if not isinstance(predicate.value, (list, tuple)):
                raise QueryValidationError(f"'in' on {column} requires a list")
            clauses.append(f"{column} IN UNNEST({params.bind(list(predicate.value))})")
        elif op == "between":
            value = predicate.value
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise QueryValidationError(f"'between' on {column} requires two values")
            clauses.append(f"{column} BETWEEN {params.bind(value[0])} AND {params.bind(value[1])}")
        else:
            if isinstance(predicate.value, (list, tuple)):
                raise QueryValidationError(f"'{op}' on {column} requires a single value")
            clauses.append(f"{column} {_COMPARISONS[op]} {params.bind(predicate.value)}")
    if spec.date_field:
        column = _identifier(spec.date_field)
        if spec.start_date:
            clauses.append(f"DATE({column}) >= {params.bind(spec.start_date)}")
        if spec.end_date:
            clauses.append(f"DATE({column}) <= {params.bind(spec.end_date)}")
    if not clauses:
        return ""
    return " WHERE " + " AND ".join(clauses)


def _order_clause(order_by: tuple[OrderBy, ...]) -> str:
    if not order_by:
        return ""
    return " ORDER BY " + ", ".join(f"{_identifier(item.field)} {item.direction}" for item in order_by)


def _page_size(spec: QuerySpec, settings: Settings) -> int:
    requested = spec.page_size or settings.warehouse_default_rows
    return max(1, min(int(requested), settings.warehouse_max_rows))


def _table_ref(project_id: str, table: str) -> str:
    return f"`{project_id}.{table}`"


def _compile_select(spec: QuerySpec, project_id: str, settings: Settings) -> CompiledQuery:
    table = validate_table(spec.table)
    if spec.mode == "raw" and spec.predicates:
        raise QueryValidationError("raw mode does not accept predicates")
    columns = ", ".join(_identifier(column) for column in spec.columns) or "*"
    params = _Params()
    where = _where_clause(spec, params)
    offset = decode_cursor(spec.cursor)
    limit = _page_size(spec, settings)
    sql = (
        f"SELECT {columns} FROM {_table_ref(project_id, table)}{where}"
        f"{_order_clause(spec.order_by)} LIMIT {limit} OFFSET {offset}"
    )
    return CompiledQuery(sql=sql, parameters=params.items, offset=offset, limit=limit, paginated=True)


def _compile_aggregated(spec: QuerySpec, project_id: str, settings: Settings) -> CompiledQuery:
    table = validate_table(spec.table)
    if not spec.aggregations:
        raise QueryValidationError("aggregated mode requires at least one aggregation")
    if spec.cursor:
        raise QueryValidationError("aggregated mode does not paginate")
    selects = [_identifier(column) for column in spec.group_by]
    for aggregation in spec.aggregations:
        if aggregation.field == "*":
            if aggregation.function != "COUNT":
                raise QueryValidationError(f"{aggregation.function} requires a field")
            target = "*"
        else:
            target = _identifier(aggregation.field)
        alias = _identifier(
            aggregation.alias
            or f"{aggregation.function.lower()}_{'all' if target == '*' else target}"
        )
        selects.append(f"{aggregation.function}({target}) AS {alias}")
    params = _Params()
    where = _where_clause(spec, params)
    group = ""
    if spec.group_by:
        group = " GROUP BY " + ", ".join(_identifier(column) for column in spec.group_by)
    limit = _page_size(spec, settings)
    sql = (
        f"SELECT {', '.join(selects)} FROM {_table_ref(project_id, table)}{where}{group}"
        f"{_order_clause(spec.order_by)} LIMIT {limit}"
    )
    return CompiledQuery(sql=sql, parameters=params.items, limit=limit)


def _template_table(reference: str) -> str:
    name = reference.strip("`")
    if name.startswith("{project}."):
        name = name[len("{project}.") :]
    if len(name.split(".")) != 2:
        raise QueryValidationError(f"Template tables must be {{project}}.dataset.table: {reference}")
    return name


def validate_template_sql(sql: str) -> frozenset[str]:
    """Check a custom template and return the dataset.table names it references.

    Templates must be one read-only statement; string literals are ignored when
    scanning for write keywords and table names. Comma joins and backticked names
    anywhere in the text count as table references.
    """
    stripped = sql.strip().rstrip(";").strip()
    if not stripped:
        raise QueryValidationError("Template is empty")
    scanned = _STRING_LITERAL.sub("''", stripped)
    if ";" in scanned:
        raise QueryValidationError("Template must be a single statement")
    first_word = stripped.split(None, 1)[0].upper()
    if first_word not in {"SELECT", "WITH"}:
        raise QueryValidationError("Template must start with SELECT or WITH")
    if _DANGEROUS_KEYWORDS.search(scanned):
        raise QueryValidationError("Template contains a write or DDL keyword")
    references: set[str] = set()
    for match in _FROM_LIST.finditer(scanned):
        references.update(reference.group(0) for reference in _TABLE_REFERENCE.finditer(match.group(0)))
    # Any backticked dotted name counts too, wherever it appears.
    references.update(name for name in _QUOTED_NAME.findall(scanned) if "." in name)
    tables = frozenset(_template_table(reference) for reference in references)
    if not tables:
        raise QueryValidationError("Template does not reference any dataset.table")
    return tables


def register_template(name: str, sql: str) -> QueryTemplate:
    _identifier(name)
    template = QueryTemplate(name=name, sql=sql.strip().rstrip(";"), tables=validate_template_sql(sql))
    _templates[name] = template
    return template


def get_template(name: str | None) -> QueryTemplate:
    template = _templates.get(name or "")
    if template is None:
        raise QueryValidationError(f"Unknown query template: {name!r}")
    return template


def _compile_custom(spec: QuerySpec, project_id: str, settings: Settings) -> CompiledQuery:
    template = get_template(spec.template)
    _check_allowlist(template.tables, settings.table_allowlist())
    parameters = [
        query_parameter(_identifier(name), value) for name, value in sorted(spec.params.items())
    ]
    sql = template.sql.replace("{project}", project_id)
    return CompiledQuery(sql=sql, parameters=parameters, limit=settings.warehouse_max_rows)


def compile_query(
    spec: QuerySpec,
    *,
    project_id: str,
    settings: Settings | None = None,
    enforce_allowlist: bool = False,
) -> CompiledQuery:
    # Values never reach the SQL text; identifiers are validated against IDENTIFIER.
    settings = settings or get_settings()
    if enforce_allowlist and spec.mode != "custom":
        _check_allowlist([validate_table(spec.table)], settings.table_allowlist())
    if spec.mode in {"raw", "filtered"}:
        return _compile_select(spec, project_id, settings)
    if spec.mode == "aggregated":
        return _compile_aggregated(spec, project_id, settings)
    return _compile_custom(spec, project_id, settings)
