import pytest
from sqlalchemy.dialects import postgresql, sqlite

from backoffice.pipeline.identifiers import quote_columns, safe_table_name
from backoffice.pipeline.sql import (
    POSTGRES_MAX_BIND_PARAMS,
    SQLITE_MAX_BIND_PARAMS,
    advisory_lock_statement,
    build_insert,
    count_statement,
    insert_select_statement,
    rows_as_tuples,
    rows_per_statement,
    statement_timeout_statement,
    truncate_statement,
)

TABLE = safe_table_name("workspace.us_zips")
COLUMNS = quote_columns(["zip", "city", "population"])


def test_builders_reject_plain_strings():
    with pytest.raises(TypeError):
        truncate_statement("workspace.us_zips", dialect_name="sqlite")
    with pytest.raises(TypeError):
        count_statement('"workspace"."us_zips"')
    with pytest.raises(TypeError):
        build_insert(TABLE, ["zip", "city"], [("10001", "New York")])
    with pytest.raises(TypeError):
        build_insert(TABLE, "zip", [("10001",)])
    with pytest.raises(TypeError):
        insert_select_statement("reference.zip3_reference", "SELECT 1")


def test_truncate_statement_per_dialect():
    assert str(truncate_statement(TABLE, dialect_name="postgresql")) == 'TRUNCATE TABLE "workspace"."us_zips"'
    assert str(truncate_statement(TABLE, dialect_name="sqlite")) == 'DELETE FROM "workspace"."us_zips"'


def test_count_statement():
    assert str(count_statement(TABLE)) == 'SELECT COUNT(*) FROM "workspace"."us_zips"'


def test_build_insert_binds_every_value():
    statement = build_insert(TABLE, COLUMNS, [("10001", "New York", 21102), ("90210", "Beverly Hills", 19627)])
    sql = str(statement)
    assert sql == (
        'INSERT INTO "workspace"."us_zips" ("zip", "city", "population") '
        "VALUES (:r0_c0, :r0_c1, :r0_c2), (:r1_c0, :r1_c1, :r1_c2)"
    )
    params = statement.compile(dialect=sqlite.dialect()).params
    assert params["r0_c0"] == "10001"
    assert params["r1_c1"] == "Beverly Hills"
    assert params["r1_c2"] == 19627


def test_build_insert_keeps_hostile_values_out_of_sql_text():
    hostile = "x'); DROP TABLE workspace.us_zips; --"
    statement = build_insert(TABLE, COLUMNS, [("10001", hostile, 1)])
    assert hostile not in str(statement)
    assert statement.compile(dialect=sqlite.dialect()).params["r0_c1"] == hostile


def test_build_insert_upsert_updates_non_key_columns():
    statement = build_insert(TABLE, COLUMNS, [("10001", "New York", 1)], conflict_key=quote_columns(["zip"]))
    assert str(statement).endswith(
        'ON CONFLICT ("zip") DO UPDATE SET "city" = EXCLUDED."city", "population" = EXCLUDED."population"'
    )


def test_build_insert_upsert_with_all_key_columns_does_nothing():
    columns = quote_columns(["origin_zip", "dest_zip"])
    statement = build_insert(safe_table_name("ups_zones"), columns, [("100", "902")], conflict_key=columns)
    assert str(statement).endswith('ON CONFLICT ("origin_zip", "dest_zip") DO NOTHING')


def test_build_insert_rejects_misaligned_rows():
    with pytest.raises(ValueError):
        build_insert(TABLE, COLUMNS, [])
    with pytest.raises(ValueError):
        build_insert(TABLE, COLUMNS, [("10001", "New York")])


def test_rows_per_statement_respects_parameter_caps():
    assert rows_per_statement(3, 500, "postgresql") == 500
    assert rows_per_statement(3, 500, "sqlite") == SQLITE_MAX_BIND_PARAMS // 3
    assert rows_per_statement(200, 5000, "postgresql") == POSTGRES_MAX_BIND_PARAMS // 200
    assert rows_per_statement(2000, 10, "sqlite") == 1
    with pytest.raises(ValueError):
        rows_per_statement(0, 10, "sqlite")


def test_lock_and_timeout_are_postgres_only():
    assert advisory_lock_statement(TABLE, dialect_name="sqlite") is None
    assert statement_timeout_statement(30000, dialect_name="sqlite") is None
    assert statement_timeout_statement(0, dialect_name="postgresql") is None

    lock = advisory_lock_statement(TABLE, dialect_name="postgresql")
    assert "pg_advisory_xact_lock" in str(lock)
    params = lock.compile(dialect=postgresql.dialect()).params
    assert params == {"lock_schema": "workspace", "lock_table": "us_zips"}

    timeout = statement_timeout_statement(30000, dialect_name="postgresql")
    assert timeout.compile(dialect=postgresql.dialect()).params == {"timeout": "30000ms"}


def test_insert_select_statement_strips_trailing_semicolon():
    target = safe_table_name("reference.zip3_rollup")
    statement = insert_select_statement(target, "  SELECT zip3, pop FROM workspace.zip3_population;  ")
    assert str(statement) == 'INSERT INTO "reference"."zip3_rollup" SELECT zip3, pop FROM workspace.zip3_population'


def test_rows_as_tuples_orders_by_columns():
    rows = [{"population": 5, "zip": "10001"}, {"zip": "10002", "city": "New York"}]
    assert rows_as_tuples(rows, COLUMNS) == [("10001", None, 5), ("10002", "New York", None)]
