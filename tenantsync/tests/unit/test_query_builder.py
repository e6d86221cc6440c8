from __future__ import annotations

from datetime import date

import pytest

from tenantsync.core.config import Settings
from tenantsync.core.errors import QueryValidationError
from tenantsync.services.warehouse.query import (
    Aggregation,
    OrderBy,
    Predicate,
    QuerySpec,
    compile_query,
    decode_cursor,
    encode_cursor,
    fingerprint,
    register_template,
    validate_template_sql,
)


PROJECT = "proj-test"


def _compile(spec: QuerySpec, **settings_overrides):
    settings = Settings(**settings_overrides)
    return compile_query(spec, project_id=PROJECT, settings=settings)


def test_filtered_values_are_bound_as_named_parameters() -> None:
    hostile = "x' OR '1'='1"
    spec = QuerySpec(
        mode="filtered",
        table="sales.orders",
        columns=("OrderId", "Status"),
        predicates=(
            Predicate(field="Status", op="eq", value=hostile),
            Predicate(field="Channel", op="in", value=["web", "pos"]),
        ),
        date_field="CreatedDate",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        order_by=(OrderBy(field="OrderId"),),
        page_size=50,
    )
    compiled = _compile(spec)
    assert compiled.sql == (
        "SELECT OrderId, Status FROM `proj-test.sales.orders` WHERE Status = @p0"
        " AND Channel IN UNNEST(@p1) AND DATE(CreatedDate) >= @p2 AND DATE(CreatedDate) <= @p3"
        " ORDER BY OrderId ASC LIMIT 50 OFFSET 0"
    )
    assert hostile not in compiled.sql
    assert compiled.parameters[0] == {
        "name": "p0",
        "parameterType": {"type": "STRING"},
        "parameterValue": {"value": hostile},
    }
    assert compiled.parameters[1]["parameterType"] == {"type": "ARRAY", "arrayType": {"type": "STRING"}}
    assert compiled.parameters[2]["parameterValue"] == {"value": "2024-01-01"}
    assert compiled.paginated is True


def test_cursor_sets_offset() -> None:
    spec = QuerySpec(mode="raw", table="sales.orders", page_size=10, cursor=encode_cursor(30))
    compiled = _compile(spec)
    assert compiled.sql.endswith("LIMIT 10 OFFSET 30")
    assert compiled.offset == 30


def test_page_size_is_clamped_to_max_rows() -> None:
    spec = QuerySpec(mode="raw", table="sales.orders", page_size=50000)
    compiled = _compile(spec, warehouse_max_rows=200)
    assert compiled.limit == 200


@pytest.mark.parametrize(
    "spec",
    [
        QuerySpec(mode="raw", table="sales.orders", columns=("Name; DROP TABLE x",)),
        QuerySpec(mode="raw", table="sales.orders`; --"),
        QuerySpec(mode="raw", table="orders"),
        QuerySpec(mode="raw", table="proj.sales.orders"),
        QuerySpec(mode="filtered", table="sales.orders", predicates=(Predicate(field="a b", value=1),)),
        QuerySpec(mode="filtered", table="sales.orders", predicates=(Predicate(field="Id", value=[1, 2]),)),
        QuerySpec(mode="filtered", table="sales.orders", predicates=(Predicate(field="Id", op="in", value=1),)),
        QuerySpec(
            mode="filtered",
            table="sales.orders",
            predicates=(Predicate(field="Id", op="between", value=[1]),),
        ),
        QuerySpec(mode="raw", table="sales.orders", predicates=(Predicate(field="Id", value=1),)),
        QuerySpec(mode="filtered", table="sales.orders", predicates=(Predicate(field="Id", value=None),)),
    ],
)
def test_invalid_specs_are_rejected(spec: QuerySpec) -> None:
    with pytest.raises(QueryValidationError):
        _compile(spec)


def test_null_checks_do_not_bind_values() -> None:
    spec = QuerySpec(
        mode="filtered",
        table="sales.orders",
        predicates=(Predicate(field="Email", op="is_null"), Predicate(field="Phone", op="is_not_null")),
    )
    compiled = _compile(spec)
    assert "WHERE Email IS NULL AND Phone IS NOT NULL" in compiled.sql
    assert compiled.parameters == []


def test_aggregated_builds_group_by() -> None:
    spec = QuerySpec(
        mode="aggregated",
        table="sales.orders",
        group_by=("BranchId",),
        aggregations=(
            Aggregation(function="COUNT"),
            Aggregation(function="SUM", field="Total", alias="revenue"),
        ),
        order_by=(OrderBy(field="revenue", direction="DESC"),),
    )
    compiled = _compile(spec)
    assert compiled.sql == (
        "SELECT BranchId, COUNT(*) AS count_all, SUM(Total) AS revenue FROM `proj-test.sales.orders`"
        " GROUP BY BranchId ORDER BY revenue DESC LIMIT 100"
    )
    assert compiled.paginated is False


def test_aggregated_rejects_cursor_and_star_sum() -> None:
    with pytest.raises(QueryValidationError):
        _compile(
            QuerySpec(
                mode="aggregated",
                table="sales.orders",
                aggregations=(Aggregation(function="COUNT"),),
                cursor=encode_cursor(10),
            )
        )
    with pytest.raises(QueryValidationError):
        _compile(QuerySpec(mode="aggregated", table="sales.orders", aggregations=(Aggregation(function="SUM"),)))
    with pytest.raises(QueryValidationError):
        _compile(QuerySpec(mode="aggregated", table="sales.orders"))


def test_cursor_round_trip_and_malformed_cursor() -> None:
    assert decode_cursor(None) == 0
    assert decode_cursor(encode_cursor(2000)) == 2000
    for bad in ["@@@", "e30", encode_cursor(-5)]:
        with pytest.raises(QueryValidationError):
            decode_cursor(bad)


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM sales.orders WHERE 1=1",
        "SELECT * FROM sales.orders; DROP TABLE sales.orders",
        "SELECT * FROM sales.orders WHERE Id IN (SELECT 1) UNION ALL SELECT * FROM x.y WHERE TRUNCATE",
        "SELECT 1",
        "",
    ],
)
def test_template_validation_rejects_unsafe_sql(sql: str) -> None:
    with pytest.raises(QueryValidationError):
        validate_template_sql(sql)


def test_template_validation_ignores_keywords_in_literals() -> None:
    tables = validate_template_sql(
        "SELECT * FROM `{project}.sales.orders` o JOIN sales.items i ON o.Id = i.OrderId "
        "WHERE o.Note != 'please drop; by later'"
    )
    assert tables == frozenset({"sales.orders", "sales.items"})


def test_template_validation_sees_comma_joined_tables() -> None:
    tables = validate_template_sql(
        "SELECT a.sku, s.amount FROM `{project}.ds.allowed` a, `{project}.hr.salaries` AS s, ds.extra "
        "WHERE a.id = s.id"
    )
    assert tables == frozenset({"ds.allowed", "hr.salaries", "ds.extra"})

    register_template(
        "comma_join",
        "SELECT a.sku FROM `{project}.ds.allowed` a, `{project}.hr.salaries` s WHERE a.id = s.id",
    )
    with pytest.raises(QueryValidationError):
        _compile(QuerySpec(mode="custom", template="comma_join"), warehouse_table_allowlist="ds.allowed")


def test_template_validation_rejects_foreign_project_tables() -> None:
    with pytest.raises(QueryValidationError):
        validate_template_sql("SELECT * FROM `{project}.ds.allowed` a JOIN `other-proj.hr.salaries` s ON a.id = s.id")


def test_custom_template_requires_allowlisted_tables() -> None:
    register_template("orders_by_branch", "SELECT BranchId FROM `{project}.sales.orders` WHERE Id = @order_id")
    spec = QuerySpec(mode="custom", template="orders_by_branch", params={"order_id": 7})
    with pytest.raises(QueryValidationError):
        _compile(spec, warehouse_table_allowlist="inventory.snapshots")

    compiled = _compile(spec, warehouse_table_allowlist="Sales.Orders")
    assert compiled.sql == "SELECT BranchId FROM `proj-test.sales.orders` WHERE Id = @order_id"
    assert compiled.parameters == [
        {"name": "order_id", "parameterType": {"type": "INT64"}, "parameterValue": {"value": "7"}}
    ]


def test_unknown_template_is_rejected() -> None:
    with pytest.raises(QueryValidationError):
        _compile(QuerySpec(mode="custom", template="does_not_exist"))


def test_enforced_allowlist_applies_to_table_modes() -> None:
    spec = QuerySpec(mode="raw", table="sales.orders")
    compile_query(spec, project_id=PROJECT, settings=Settings(warehouse_table_allowlist="x.y"))
    with pytest.raises(QueryValidationError):
        compile_query(
            spec,
            project_id=PROJECT,
            settings=Settings(warehouse_table_allowlist="x.y"),
            enforce_allowlist=True,
        )


def test_fingerprint_is_scoped_by_tenant() -> None:
    spec = QuerySpec(mode="raw", table="sales.orders", page_size=10)
    assert fingerprint("t1", spec) == fingerprint("t1", QuerySpec(mode="raw", table="sales.orders", page_size=10))
    assert fingerprint("t1", spec) != fingerprint("t2", spec)
    assert fingerprint("t1", spec) != fingerprint("t1", spec.with_cursor(encode_cursor(10)))
