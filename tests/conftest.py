from __future__ import annotations

import copy
from typing import Any, Callable, Dict, Iterator

import pytest
from sqlalchemy import create_engine, text

from subsetter.config import AppSettings, SubsettingSettings
from subsetter.datamodel import ExtractionModel, parse_extraction_model
from subsetter.session import Session
from subsetter.subsetting import SubsettingEngine


# ---------------------------------------------------------------------------
# Source database
# ---------------------------------------------------------------------------

SCHEMA = [
    "create table customer (id integer primary key, name varchar(40))",
    "create table orders (id integer primary key, customer_id integer not null)",
    "create table order_item (id integer primary key, order_id integer not null, "
    "product_id integer not null)",
    "create table product (id integer primary key, name varchar(40))",
    "create table employee (id integer primary key, boss_id integer)",
    "create table a_node (id integer primary key, b_id integer)",
    "create table b_node (id integer primary key, a_id integer)",
    "create table x_node (id integer primary key, y_id integer not null)",
    "create table y_node (id integer primary key, x_id integer not null)",
]

ROWS = [
    "insert into customer values (1, 'Alice'), (2, 'Bob')",
    "insert into orders values (10, 1), (11, 1), (20, 2)",
    "insert into order_item values (100, 10, 1), (101, 11, 2), (200, 20, 1)",
    "insert into product values (1, 'Pen'), (2, 'Ink')",
    "insert into employee values (3, 2), (1, null), (2, 1)",
    "insert into a_node values (1, 1)",
    "insert into b_node values (1, 1)",
    "insert into x_node values (1, 1)",
    "insert into y_node values (1, 1)",
]


def _column(name: str, nullable: tuple) -> Dict[str, Any]:
    if name == "name":
        return {"name": name, "type": "VARCHAR(40)"}
    return {"name": name, "type": "INTEGER", "nullable": name in nullable}


def _table(name: str, *columns: str, nullable: tuple = ()) -> Dict[str, Any]:
    return {
        "name": name,
        "columns": [_column(c, nullable) for c in columns],
        "primary_key": ["id"],
    }


DATA_MODEL: Dict[str, Any] = {
    "tables": [
        _table("customer", "id", "name"),
        _table("orders", "id", "customer_id"),
        _table("order_item", "id", "order_id", "product_id"),
        _table("product", "id", "name"),
        _table("employee", "id", "boss_id", nullable=("boss_id",)),
        _table("a_node", "id", "b_id", nullable=("b_id",)),
        _table("b_node", "id", "a_id", nullable=("a_id",)),
        _table("x_node", "id", "y_id"),
        _table("y_node", "id", "x_id"),
    ],
    "associations": [
        {
            "name": "orders_customer",
            "source": "orders",
            "destination": "customer",
            "join_condition": "A.customer_id = B.id",
            "reversal_aggregation": "explicit_list",
        },
        {
            "name": "order_item_orders",
            "source": "order_item",
            "destination": "orders",
            "join_condition": "A.order_id = B.id",
            "reversal_aggregation": "explicit_list",
        },
        {
            "name": "order_item_product",
            "source": "order_item",
            "destination": "product",
            "join_condition": "A.product_id = B.id",
            "reversal_ignored": True,
        },
        {
            "name": "employee_boss",
            "source": "employee",
            "destination": "employee",
            "join_condition": "A.boss_id = B.id",
        },
        {"name": "a_b", "source": "a_node", "destination": "b_node", "join_condition": "A.b_id = B.id"},
        {"name": "b_a", "source": "b_node", "destination": "a_node", "join_condition": "A.a_id = B.id"},
        {"name": "x_y", "source": "x_node", "destination": "y_node", "join_condition": "A.y_id = B.id"},
        {"name": "y_x", "source": "y_node", "destination": "x_node", "join_condition": "A.x_id = B.id"},
    ],
}


@pytest.fixture
def db_url(tmp_path) -> str:
    url = f"sqlite:///{tmp_path / 'source.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        for statement in SCHEMA + ROWS:
            conn.execute(text(statement))
    engine.dispose()
    return url


@pytest.fixture
def session(db_url: str) -> Iterator[Session]:
    session = Session(create_engine(db_url))
    yield session
    session.engine.dispose()


@pytest.fixture
def make_model() -> Callable[..., ExtractionModel]:
    """Factory for extraction models over :data:`DATA_MODEL`."""

    def make(subject: str, condition: str = "", data_model: Dict[str, Any] = DATA_MODEL, **kwargs: Any) -> ExtractionModel:
        return parse_extraction_model(
            {"data_model": data_model, "subject": subject, "condition": condition, **kwargs}
        )

    return make


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(subsetting=SubsettingSettings(threads=1))


@pytest.fixture
def engine(session: Session, settings: AppSettings, make_model) -> Iterator[SubsettingEngine]:
    engine = SubsettingEngine(session, settings)
    engine.create_working_tables(make_model("customer").data_model)
    yield engine
    engine.shutdown()


@pytest.fixture
def data_model_definition() -> Dict[str, Any]:
    return copy.deepcopy(DATA_MODEL)
