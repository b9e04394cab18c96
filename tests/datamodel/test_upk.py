import pytest

from subsetter.datamodel.model import Column, Table
from subsetter.datamodel.upk import UniversalPrimaryKey, normalize_type
from subsetter.errors import DataModelError


def _table(name: str, ordinal: int, *pk: Column) -> Table:
    return Table(name, ordinal, list(pk), list(pk))


@pytest.mark.parametrize(
    "sql_type, expected",
    [
        ("integer", ("BIGINT", None)),
        ("SMALLINT", ("BIGINT", None)),
        ("varchar(20)", ("VARCHAR", 20)),
        ("NUMERIC(10, 2)", ("NUMERIC", None)),
        ("timestamp", ("TIMESTAMP", None)),
        ("GEOMETRY", ("GEOMETRY", None)),
    ],
)
def test_normalize_type(sql_type: str, expected: tuple) -> None:
    assert normalize_type(sql_type) == expected


def test_columns_are_shared_between_tables() -> None:
    tables = [
        _table("a", 1, Column("id", "INTEGER")),
        _table("b", 2, Column("id", "BIGINT")),
        _table("c", 3, Column("k1", "INTEGER"), Column("k2", "VARCHAR(10)")),
    ]
    upk = UniversalPrimaryKey.build(tables)
    assert [(c.family, c.length) for c in upk.columns] == [("BIGINT", None), ("VARCHAR", 10)]


def test_varchar_is_widened() -> None:
    tables = [
        _table("a", 1, Column("code", "VARCHAR(5)")),
        _table("b", 2, Column("code", "VARCHAR(30)")),
    ]
    upk = UniversalPrimaryKey.build(tables)
    assert len(upk.columns) == 1
    assert upk.columns[0].length == 30


def test_composite_key_of_same_family_uses_distinct_columns() -> None:
    table = _table("pair", 1, Column("x", "INTEGER"), Column("y", "INTEGER"))
    upk = UniversalPrimaryKey.build([table])
    match = upk.match(table.primary_key)
    assert {name: c.name for name, c in match.items()} == {"pk0": "x", "pk1": "y"}


def test_match_rejects_unfitting_key() -> None:
    upk = UniversalPrimaryKey.build([_table("a", 1, Column("id", "INTEGER"))])
    with pytest.raises(DataModelError):
        upk.match([Column("code", "VARCHAR(3)")])


def test_data_model_caches_upk(make_model) -> None:
    model = make_model("customer").data_model
    assert model.universal_primary_key() is model.universal_primary_key()
    assert model.universal_primary_key().column_names == ["pk0"]
