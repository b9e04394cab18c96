from __future__ import annotations

import io
import re
import threading
from typing import Iterator, List

import pytest
from sqlalchemy import Delete, create_engine, func, inspect, select, text

from subsetter.config import AppSettings, SubsettingSettings, WorkingTableSettings
from subsetter.entitygraph import ExplainRecorder
from subsetter.errors import (
    CancellationError,
    ConsistencyError,
    CyclicDependencyError,
    RowLimitExceededError,
    SetupError,
    SQLExecutionError,
)
from subsetter.session import Session
from subsetter.subsetting import SubsettingEngine
from subsetter.writers import DMLScriptWriter, TreeWriter
from subsetter.writers.dml import SYNC_MARKER

_TABLE_RE = re.compile(r"^(?:Insert into|Delete from|Update) (\w+)")


def statements(out: io.StringIO) -> List[str]:
    return [line for line in out.getvalue().splitlines(keepends=True) if line != SYNC_MARKER]


def tables_of(lines: List[str]) -> List[str]:
    return [_TABLE_RE.match(line).group(1) for line in lines]


def before(order: List[str], first: str, second: str) -> bool:
    """Every statement for ``first`` precedes every statement for ``second``."""
    last = max(i for i, t in enumerate(order) if t == first)
    return all(i > last for i, t in enumerate(order) if t == second)


def working_rows(engine: SubsettingEngine, model) -> int:
    tables = engine.working_tables(model.data_model)
    return sum(
        engine.session.scalar(select(func.count()).select_from(t)) for t in tables.all
    )


@pytest.fixture
def make_engine(engine, session) -> Iterator:
    """Engines with custom subsetting settings sharing the global working tables."""
    engines: List[SubsettingEngine] = []

    def make(**subsetting) -> SubsettingEngine:
        settings = AppSettings(subsetting=SubsettingSettings(threads=1, **subsetting))
        engines.append(SubsettingEngine(session, settings))
        return engines[-1]

    yield make
    for created in engines:
        created.shutdown()


class RecordingListener:
    def __init__(self) -> None:
        self.stages: List[str] = []
        self.exported_rows: List[tuple] = []

    def new_stage(self, stage: str, error: bool = False, final: bool = False) -> None:
        self.stages.append(stage)

    def exported(self, table, rowcount: int) -> None:
        self.exported_rows.append((table.name, rowcount))


# ---------------------------------------------------------------------------
# Insert scripts
# ---------------------------------------------------------------------------

def test_insert_script_in_dependency_order(engine, make_model) -> None:
    model = make_model("customer", "T.id = 1")
    out = io.StringIO()

    statistic = engine.run(model, DMLScriptWriter(out))

    lines = statements(out)
    order = tables_of(lines)
    assert "Insert into customer(id, name) values (1, 'Alice');\n" in lines
    assert before(order, "customer", "orders")
    assert before(order, "orders", "order_item")
    assert before(order, "product", "order_item")
    assert statistic.total == 7
    assert statistic.exported_count == 7
    assert statistic.rows_per_table == {"customer": 1, "orders": 2, "order_item": 2, "product": 2}
    assert statistic.lines()[0] == "Exported Rows: 7"
    assert working_rows(engine, model) == 0


def test_parents_and_children_are_collected(engine, make_model) -> None:
    out = io.StringIO()
    statistic = engine.run(make_model("orders", "T.id = 20"), DMLScriptWriter(out))
    assert "Insert into customer(id, name) values (2, 'Bob');\n" in statements(out)
    assert statistic.rows_per_table == {"orders": 1, "customer": 1, "order_item": 1, "product": 1}


def test_parameters_and_additional_subjects(engine, make_model) -> None:
    model = make_model(
        "customer",
        "T.id = ${cid}",
        additional_subjects=[{"table": "product", "condition": "T.id = 2"}],
    )
    statistic = engine.run(model, DMLScriptWriter(io.StringIO()), parameters={"cid": 2})
    assert statistic.rows_per_table == {"customer": 1, "orders": 1, "order_item": 1, "product": 2}


def test_where_replaces_subject_condition(engine, make_model) -> None:
    out = io.StringIO()
    engine.run(make_model("customer", "T.id = 1"), DMLScriptWriter(out), where="T.id = 2")
    assert "Insert into customer(id, name) values (2, 'Bob');\n" in statements(out)


def test_self_reference_is_ordered_row_by_row(engine, make_model) -> None:
    out = io.StringIO()
    statistic = engine.run(make_model("employee", "T.id = 3"), DMLScriptWriter(out))
    assert statements(out) == [
        "Insert into employee(id, boss_id) values (1, null);\n",
        "Insert into employee(id, boss_id) values (2, 1);\n",
        "Insert into employee(id, boss_id) values (3, 2);\n",
    ]
    assert statistic.total == 3


def test_order_by_pk(make_engine, make_model) -> None:
    out = io.StringIO()
    make_engine(order_by_pk=True).run(make_model("employee", "1=1"), DMLScriptWriter(out))
    assert [line.split("values ")[1] for line in statements(out)] == [
        "(1, null);\n",
        "(2, 1);\n",
        "(3, 2);\n",
    ]


def test_no_sorting_writes_everything(make_engine, make_model) -> None:
    out = io.StringIO()
    statistic = make_engine(no_sorting=True).run(make_model("employee", "1=1"), DMLScriptWriter(out))
    assert len(statements(out)) == 3
    assert statistic.exported_count == 3


def test_nullable_cycle_is_broken_with_updates(engine, make_model) -> None:
    out = io.StringIO()
    statistic = engine.run(make_model("a_node", "1=1"), DMLScriptWriter(out))
    lines = statements(out)
    assert lines[:2] == [
        "Insert into a_node(id, b_id) values (1, null);\n",
        "Insert into b_node(id, a_id) values (1, null);\n",
    ]
    assert sorted(lines[2:]) == [
        "Update a_node set b_id=1 where id=1; -- explicit due to circular dependency\n",
        "Update b_node set a_id=1 where id=1; -- explicit due to circular dependency\n",
    ]
    assert statistic.exported_count == 2


def test_non_nullable_cycle_raises(engine, make_model) -> None:
    model = make_model("x_node", "1=1")
    with pytest.raises(CyclicDependencyError) as info:
        engine.run(model, DMLScriptWriter(io.StringIO()))
    error = info.value
    assert error.tables == {"x_node", "y_node"}
    assert error.remaining == 2
    assert ["x_node", "y_node", "x_node"] in error.paths
    assert "[ x_node -> y_node -> x_node ]" in str(error)
    assert working_rows(engine, model) == 0


def test_cycle_error_names_only_cyclic_tables(engine, session, make_model, data_model_definition) -> None:
    session.execute_update(text("create table z_node (id integer primary key, x_id integer not null)"))
    session.execute_update(text("insert into z_node values (1, 1)"))
    data_model_definition["tables"].append(
        {
            "name": "z_node",
            "columns": [
                {"name": "id", "type": "INTEGER", "nullable": False},
                {"name": "x_id", "type": "INTEGER", "nullable": False},
            ],
            "primary_key": ["id"],
        }
    )
    data_model_definition["associations"].append(
        {"name": "z_x", "source": "z_node", "destination": "x_node", "join_condition": "A.x_id = B.id"}
    )
    model = make_model("z_node", "1=1", data_model=data_model_definition)

    with pytest.raises(CyclicDependencyError) as info:
        engine.run(model, DMLScriptWriter(io.StringIO()))
    # z_node only waits for x_node
    assert info.value.tables == {"x_node", "y_node"}
    assert info.value.remaining == 2


def test_inconsistent_primary_key(make_engine, make_model, data_model_definition) -> None:
    orders = next(t for t in data_model_definition["tables"] if t["name"] == "orders")
    orders["primary_key"] = ["customer_id"]
    model = make_model("orders", "T.customer_id = 1", data_model=data_model_definition)

    statistic = make_engine().run(model, DMLScriptWriter(io.StringIO()))
    assert statistic.exported_count != statistic.total

    with pytest.raises(ConsistencyError):
        make_engine(abort_on_inconsistency=True).run(model, DMLScriptWriter(io.StringIO()))


# ---------------------------------------------------------------------------
# Delete scripts
# ---------------------------------------------------------------------------

def test_delete_script(engine, make_model) -> None:
    model = make_model("customer", "T.id = 1")
    inserts, deletes = io.StringIO(), io.StringIO()

    statistic = engine.run(model, DMLScriptWriter(inserts), DMLScriptWriter(deletes, "delete"))

    lines = statements(deletes)
    order = tables_of(lines)
    assert before(order, "order_item", "orders")
    assert before(order, "orders", "customer")
    # product 1 is still used by order item 200
    assert "Delete from product where id=1;\n" not in lines
    assert "Delete from product where id=2;\n" in lines
    assert statistic.deleted_rows_per_table == {
        "order_item": 2, "orders": 2, "product": 1, "customer": 1,
    }
    assert statistic.exported_count == 7
    assert working_rows(engine, model) == 0


def test_delete_without_insert_script(engine, make_model) -> None:
    deletes = io.StringIO()
    statistic = engine.run(make_model("customer", "T.id = 1"), None, DMLScriptWriter(deletes, "delete"))
    assert statistic.total_deleted == 6
    assert statistic.exported_count == 0


def test_tabu_table_is_kept_with_its_dependents(engine, make_model, data_model_definition) -> None:
    customer = next(t for t in data_model_definition["tables"] if t["name"] == "customer")
    customer["excluded_from_deletion"] = True
    model = make_model("customer", "T.id = 1", data_model=data_model_definition)
    deletes = io.StringIO()

    statistic = engine.run(model, None, DMLScriptWriter(deletes, "delete"))

    assert "customer" not in tables_of(statements(deletes))
    assert "orders" not in tables_of(statements(deletes))
    assert statistic.deleted_rows_per_table.get("customer", 0) == 0


def test_delete_cycle_nulls_keys_first(engine, make_model) -> None:
    deletes = io.StringIO()
    engine.run(make_model("a_node", "1=1"), None, DMLScriptWriter(deletes, "delete"))
    lines = statements(deletes)
    updates = [i for i, line in enumerate(lines) if line.startswith("Update")]
    removals = [i for i, line in enumerate(lines) if line.startswith("Delete")]
    assert len(updates) == 2 and len(removals) == 2
    assert max(updates) < min(removals)
    assert "Update a_node set b_id=null where id=1; -- explicit due to circular dependency\n" in lines


# ---------------------------------------------------------------------------
# Hierarchy, explain
# ---------------------------------------------------------------------------

def test_hierarchy(engine, make_model) -> None:
    tree = TreeWriter()
    statistic = engine.run(make_model("customer", "T.id = 1"), hierarchy_sink=tree)

    assert tree.closed
    (alice,) = tree.roots["customer"]
    assert alice["name"] == "Alice"
    orders = alice["inverse-orders_customer"]
    assert [o["id"] for o in orders] == [10, 11]
    assert [i["id"] for i in orders[0]["inverse-order_item_orders"]] == [100]
    assert "order_item" not in tree.roots
    assert sorted(p["id"] for p in tree.roots["product"]) == [1, 2]
    assert statistic.exported_count == 7

    out = io.StringIO()
    tree.dump(out)
    assert '"Alice"' in out.getvalue()


def test_insert_and_hierarchy_sink_are_exclusive(engine, make_model) -> None:
    with pytest.raises(ValueError):
        engine.run(
            make_model("customer"), DMLScriptWriter(io.StringIO()), hierarchy_sink=TreeWriter()
        )


def test_explain(engine, make_model) -> None:
    statistic = engine.run(
        make_model("customer", "T.id = 1"),
        DMLScriptWriter(io.StringIO()),
        explain_observer=ExplainRecorder(),
    )
    explanation = statistic.explanation
    assert explanation["customer"] == []
    assert {r["association"] for r in explanation["orders"]} == {"inverse-orders_customer"}
    assert {r["pre_type"] for r in explanation["orders"]} == {"customer"}
    assert {r["association"] for r in explanation["product"]} == {"order_item_product"}


# ---------------------------------------------------------------------------
# Limits, cancellation, setup
# ---------------------------------------------------------------------------

def test_row_limit(make_engine, make_model) -> None:
    engine = make_engine(max_total_rowcount=2)
    model = make_model("customer", "T.id = 1")
    with pytest.raises(RowLimitExceededError):
        engine.run(model, DMLScriptWriter(io.StringIO()))
    assert working_rows(engine, model) == 0


def test_cancellation_cleans_up(engine, make_model) -> None:
    model = make_model("customer", "T.id = 1")
    listener = RecordingListener()

    class CancelOnCollected:
        def collected(self, day, source, rowcount) -> None:
            engine.cancel()

    engine.listeners.add(listener)
    engine.listeners.add(CancelOnCollected())
    with pytest.raises(CancellationError):
        engine.run(model, DMLScriptWriter(io.StringIO()))

    assert not engine.cancellation.is_cancelled
    assert listener.stages[-1] == "cancelled"
    assert working_rows(engine, model) == 0


def test_progress_events(engine, make_model) -> None:
    listener = RecordingListener()
    engine.listeners.add(listener)
    engine.run(make_model("customer", "T.id = 1"), DMLScriptWriter(io.StringIO()))
    assert listener.stages == ["collecting rows", "exporting rows", "finished"]
    assert sum(n for _, n in listener.exported_rows) == 7


def test_missing_working_tables(session, make_model) -> None:
    settings = AppSettings(
        subsetting=SubsettingSettings(threads=1),
        working_tables=WorkingTableSettings(prefix="absent_"),
    )
    engine = SubsettingEngine(session, settings)
    with pytest.raises(SetupError):
        engine.run(make_model("customer"), DMLScriptWriter(io.StringIO()))


def test_session_scope_drops_its_tables(session, make_model) -> None:
    settings = AppSettings(
        subsetting=SubsettingSettings(threads=1),
        working_tables=WorkingTableSettings(scope="session"),
    )
    before_run = set(inspect(session.engine).get_table_names())
    engine = SubsettingEngine(session, settings)
    out = io.StringIO()
    engine.run(make_model("customer", "T.id = 1"), DMLScriptWriter(out))
    assert len(statements(out)) == 7
    assert set(inspect(session.engine).get_table_names()) == before_run


def test_failed_run_rolls_back_before_deleting_graphs(engine, db_url, make_model) -> None:
    class RecordingSession(Session):
        def __init__(self, *args, **kwargs) -> None:
            super().__init__(*args, **kwargs)
            self.calls: List[str] = []

        def rollback_all(self) -> None:
            self.calls.append("rollback")
            super().rollback_all()

        def execute_update(self, statement) -> int:
            if isinstance(statement, Delete):
                self.calls.append("delete")
            return super().execute_update(statement)

    recording = RecordingSession(create_engine(db_url), transactional=True)
    failing = SubsettingEngine(recording, AppSettings(subsetting=SubsettingSettings(threads=1)))
    model = make_model("customer", "T.nope = 1")
    try:
        with pytest.raises(SQLExecutionError):
            failing.run(model, DMLScriptWriter(io.StringIO()))
    finally:
        failing.shutdown()
        recording.engine.dispose()
    assert recording.calls.index("rollback") < recording.calls.index("delete")
    assert working_rows(engine, model) == 0


# ---------------------------------------------------------------------------
# Worker threads
# ---------------------------------------------------------------------------

class CollectionRecorder:
    """Collection events in firing order, with the thread that fired them."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.events: List[tuple] = []

    def _record(self, kind: str, day: int, source) -> None:
        destination = getattr(source, "destination", source).name
        with self.lock:
            self.events.append((kind, day, destination, threading.current_thread().name))

    def collection_job_started(self, day: int, source) -> None:
        self._record("started", day, source)

    def collected(self, day: int, source, rowcount: int) -> None:
        self._record("collected", day, source)


def test_parallel_collection(engine, db_url, make_model) -> None:
    # one pooled connection: statements of the workers never overlap on SQLite
    pooled = Session(create_engine(db_url, pool_size=1, max_overflow=0))
    recorder = CollectionRecorder()
    parallel = SubsettingEngine(
        pooled, AppSettings(subsetting=SubsettingSettings(threads=3)), listeners=[recorder]
    )
    model = make_model(
        "customer",
        "T.id = 1",
        additional_subjects=[{"table": "a_node", "condition": "T.id = 1"}],
    )
    out = io.StringIO()
    try:
        statistic = parallel.run(model, DMLScriptWriter(out))
    finally:
        parallel.shutdown()
        pooled.engine.dispose()

    assert statistic.rows_per_table == {
        "customer": 1, "orders": 2, "order_item": 2, "product": 2, "a_node": 1, "b_node": 1,
    }
    assert statistic.exported_count == 9
    assert len([line for line in statements(out) if line.startswith("Insert")]) == 9
    order = tables_of(statements(out))
    assert before(order, "customer", "orders")
    assert before(order, "orders", "order_item")

    # days never interleave
    days = [day for _, day, _, _ in recorder.events]
    assert days == sorted(days)
    # jobs of one day with the same destination run one after another in one thread
    threads = {}
    for kind, day, destination, thread in recorder.events:
        if kind == "started":
            threads.setdefault((day, destination), set()).add(thread)
    assert all(len(names) == 1 for names in threads.values())
    assert working_rows(engine, model) == 0


def test_transactional_run_with_workers(engine, db_url, make_model) -> None:
    transactional = Session(create_engine(db_url), transactional=True)
    parallel = SubsettingEngine(transactional, AppSettings(subsetting=SubsettingSettings(threads=2)))
    model = make_model(
        "customer",
        "T.id = 1",
        additional_subjects=[{"table": "product", "condition": "T.id = 2"}],
    )
    out = io.StringIO()
    try:
        statistic = parallel.run(model, DMLScriptWriter(out))
    finally:
        parallel.shutdown()
        transactional.engine.dispose()

    assert statistic.total == 7
    assert statistic.exported_count == 7
    assert len(statements(out)) == 7
    assert working_rows(engine, model) == 0


# ---------------------------------------------------------------------------
# Working tables in a separate database
# ---------------------------------------------------------------------------

@pytest.fixture
def local_engine(session) -> Iterator[SubsettingEngine]:
    settings = AppSettings(
        subsetting=SubsettingSettings(threads=1),
        working_tables=WorkingTableSettings(scope="local", local_batch_size=2),
    )
    engine = SubsettingEngine(session, settings)
    yield engine
    engine.shutdown()


def test_local_scope_leaves_the_source_untouched(local_engine, session, make_model) -> None:
    before_run = set(inspect(session.engine).get_table_names())
    inserts, deletes = io.StringIO(), io.StringIO()

    statistic = local_engine.run(
        make_model("customer", "T.id = 1"), DMLScriptWriter(inserts), DMLScriptWriter(deletes, "delete")
    )

    order = tables_of(statements(inserts))
    assert before(order, "customer", "orders")
    assert before(order, "orders", "order_item")
    assert before(order, "product", "order_item")
    assert statistic.rows_per_table == {"customer": 1, "orders": 2, "order_item": 2, "product": 2}
    assert statistic.exported_count == 7
    assert "Delete from product where id=1;\n" not in statements(deletes)
    assert statistic.deleted_rows_per_table == {
        "order_item": 2, "orders": 2, "product": 1, "customer": 1,
    }
    assert set(inspect(session.engine).get_table_names()) == before_run
    assert local_engine.working_session is session


def test_local_scope_cycles_and_hierarchy(local_engine, make_model) -> None:
    out = io.StringIO()
    local_engine.run(make_model("a_node", "1=1"), DMLScriptWriter(out))
    assert sorted(statements(out)[2:]) == [
        "Update a_node set b_id=1 where id=1; -- explicit due to circular dependency\n",
        "Update b_node set a_id=1 where id=1; -- explicit due to circular dependency\n",
    ]

    tree = TreeWriter()
    local_engine.run(make_model("customer", "T.id = 1"), hierarchy_sink=tree)
    (alice,) = tree.roots["customer"]
    assert [o["id"] for o in alice["inverse-orders_customer"]] == [10, 11]
    assert sorted(p["id"] for p in tree.roots["product"]) == [1, 2]
