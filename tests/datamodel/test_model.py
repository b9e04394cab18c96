import pytest

from subsetter.datamodel import Cardinality, DataModel
from subsetter.errors import DataModelError


def test_reversals_are_paired(make_model) -> None:
    model = make_model("customer").data_model
    forward = model.association("orders_customer")
    reversal = model.association("inverse-orders_customer")

    assert forward.reversal is reversal and reversal.reversal is forward
    assert not forward.reversed and reversal.reversed
    assert reversal.source is forward.destination
    assert forward.cardinality is Cardinality.MANY_TO_ONE
    assert reversal.cardinality is Cardinality.ONE_TO_MANY
    assert forward.id % 2 == 1 and reversal.id == forward.id + 1


def test_insert_order_of_reversal_is_swapped(make_model) -> None:
    model = make_model("customer").data_model
    forward = model.association("orders_customer")
    reversal = forward.reversal

    assert forward.insert_destination_before_source()
    assert not reversal.insert_destination_before_source()
    assert reversal.insert_source_before_destination()
    # transposed (delete order) flips the direction
    assert reversal.insert_destination_before_source(transposed=True)


def test_independent_tables(make_model) -> None:
    model = make_model("customer").data_model
    shop = {model.table(n) for n in ("customer", "orders", "order_item", "product")}

    independent = model.get_independent_tables(shop)
    assert {t.name for t in independent} == {"customer", "product"}

    transposed = model.get_independent_tables(shop, transposed=True)
    assert {t.name for t in transposed} == {"order_item"}


def test_independent_tables_restricted_to_associations(make_model) -> None:
    model = make_model("customer").data_model
    employee = model.table("employee")
    assert model.get_independent_tables({employee}) == set()
    assert model.get_independent_tables({employee}, associations=set()) == {employee}


def test_key_mapping(make_model) -> None:
    model = make_model("customer").data_model
    forward = model.association("order_item_orders")
    mapping = forward.source_to_destination_key_mapping()
    assert {s.name: d.name for s, d in mapping.items()} == {"order_id": "id"}

    reversal_mapping = forward.reversal.source_to_destination_key_mapping()
    assert {s.name: d.name for s, d in reversal_mapping.items()} == {"id": "order_id"}


def test_key_mapping_of_non_equality_is_empty(make_model) -> None:
    model = make_model("customer").data_model
    association = model.association("orders_customer")
    association.join_condition = "A.customer_id > B.id"
    assert association.source_to_destination_key_mapping() == {}


def test_restriction_and_ignored(make_model) -> None:
    model = make_model("customer").data_model
    association = model.association("orders_customer")
    association.restriction = "B.name like 'A%'"
    assert association.effective_join_condition == "(A.customer_id = B.id) and (B.name like 'A%')"
    assert association.unrestricted_join_condition == "A.customer_id = B.id"
    association.ignored = True
    assert association.effective_join_condition is None


def test_lookups(make_model) -> None:
    model = make_model("customer").data_model
    assert model.table("CUSTOMER").name == "customer"
    assert model.table_by_ordinal(model.table("orders").ordinal).name == "orders"
    with pytest.raises(DataModelError):
        model.table("missing")
    with pytest.raises(DataModelError):
        model.table("customer").column("missing")


def test_primary_key_required(make_model) -> None:
    model = make_model("customer").data_model
    table = model.table("customer")
    table.primary_key = []
    with pytest.raises(DataModelError, match="no primary key"):
        model.check_for_primary_key([table])


def test_reflexive_association(make_model) -> None:
    model = make_model("customer").data_model
    assert model.table("employee").has_reflexive_association()
    assert not model.table("customer").has_reflexive_association()


def test_duplicate_tables_rejected(make_model) -> None:
    model = make_model("customer").data_model
    table = model.table("customer")
    with pytest.raises(DataModelError):
        DataModel([table, table], [])
