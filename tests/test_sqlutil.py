from subsetter.datamodel.model import Column, Table
from subsetter.sqlutil import (
    assign_parameter_values,
    filtered_selection,
    label_name,
    resolve_pseudo_columns,
)


def test_distance_of_entity_and_new_row() -> None:
    condition = "A.$distance < 2 and B.$distance > 0"
    resolved = resolve_pseudo_columns(condition, "e", None, today=5, birthday_of_subject=2)
    assert resolved == "(e.birthday - 2) < 2 and 3 > 0"


def test_is_subject_uses_birthday_column() -> None:
    resolved = resolve_pseudo_columns(
        "B.$IS_SUBJECT", None, "ea", 0, 1, birthday_column="orig_birthday"
    )
    assert resolved == "(ea.orig_birthday - 1 = 0)"


def test_in_delete_mode() -> None:
    assert resolve_pseudo_columns("$in_delete_mode", None, None, 0, 1) == "(1=0)"
    assert resolve_pseudo_columns("$in_delete_mode", None, None, 0, 1, in_delete_mode=True) == "(1=1)"


def test_parameters_substituted_unknown_kept() -> None:
    condition = "T.id = ${id} and T.name = '${unknown}'"
    assert assign_parameter_values(condition, {"id": 7}) == "T.id = 7 and T.name = '${unknown}'"
    assert assign_parameter_values(condition, None) == condition


def test_label_name_strips_quotes() -> None:
    assert label_name('"Order"') == "Order"
    assert label_name("[Order]") == "Order"
    assert label_name("plain") == "plain"


def test_filtered_selection_filters_and_overrides() -> None:
    table = Table(
        "person",
        1,
        [Column("id"), Column("name", "VARCHAR", filter="'anonymous'"), Column("boss_id")],
        [Column("id")],
    )
    selection = filtered_selection(table, "T", overrides={"boss_id": "null"})
    rendered = [str(c.element) for c in selection]
    assert rendered == ["T.id", "'anonymous'", "null"]
    assert [c.name for c in selection] == ["id", "name", "boss_id"]

    unfiltered = filtered_selection(table, "T", apply_filters=False)
    assert str(unfiltered[1].element) == "T.name"
    # table metadata is never changed by overrides
    assert table.column("name").filter == "'anonymous'"
