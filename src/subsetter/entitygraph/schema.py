from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import Column, Index, Integer, MetaData, Table, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..datamodel.upk import UniversalPrimaryKey
from ..errors import SetupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkingTables:
    """The three relations holding the traversal state of all graphs."""
    metadata: MetaData
    graph: Table
    entity: Table
    dependency: Table
    upk: UniversalPrimaryKey
    schema: Optional[str] = None

    @property
    def all(self) -> Tuple[Table, Table, Table]:
        return (self.graph, self.entity, self.dependency)


def build_working_tables(
    upk: UniversalPrimaryKey,
    prefix: str = "subsetter_",
    schema: Optional[str] = None,
) -> WorkingTables:
    """
    Describe the working tables for the given universal primary key.

    - ``graph(id, age)``
    - ``entity(r_entitygraph, <upk>, birthday, orig_birthday, type,
      association, pre_type, pre_<upk>)``
    - ``dependency(r_entitygraph, assoc, depend_id, from_type, to_type,
      from_<upk>, to_<upk>, traversed)``
    """
    metadata = MetaData(schema=schema)
    names = upk.column_names

    graph = Table(
        f"{prefix}graph",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=False),
        Column("age", Integer, nullable=False),
    )

    entity = Table(
        f"{prefix}entity",
        metadata,
        Column("r_entitygraph", Integer, nullable=False),
        *[Column(c.name, c.sql_type(), nullable=True) for c in upk.columns],
        Column("birthday", Integer, nullable=False),
        Column("orig_birthday", Integer, nullable=True),
        Column("type", Integer, nullable=False),
        Column("association", Integer, nullable=True),
        Column("pre_type", Integer, nullable=True),
        *[Column(f"pre_{c.name}", c.sql_type(), nullable=True) for c in upk.columns],
        Index(f"{prefix}ix_entity_key", "r_entitygraph", "type", *names),
        Index(f"{prefix}ix_entity_birthday", "r_entitygraph", "type", "birthday"),
    )

    dependency = Table(
        f"{prefix}dependency",
        metadata,
        Column("r_entitygraph", Integer, nullable=False),
        Column("assoc", Integer, nullable=False),
        Column("depend_id", Integer, nullable=False),
        Column("from_type", Integer, nullable=False),
        Column("to_type", Integer, nullable=False),
        *[Column(f"from_{c.name}", c.sql_type(), nullable=True) for c in upk.columns],
        *[Column(f"to_{c.name}", c.sql_type(), nullable=True) for c in upk.columns],
        Column("traversed", Integer, nullable=True),
        Index(
            f"{prefix}ix_dependency_from",
            "r_entitygraph", "from_type", *[f"from_{n}" for n in names],
        ),
        Index(
            f"{prefix}ix_dependency_to",
            "r_entitygraph", "to_type", *[f"to_{n}" for n in names],
        ),
    )

    return WorkingTables(metadata, graph, entity, dependency, upk, schema)


def create_working_tables(engine: Engine, tables: WorkingTables) -> None:
    """
    Create the working tables.

    - For PostgreSQL: CREATE SCHEMA IF NOT EXISTS <schema> first
    - For others: rely on metadata.create_all; the schema must exist.
    """
    with engine.begin() as conn:
        if tables.schema and engine.dialect.name == "postgresql":
            conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {tables.schema}"))
        tables.metadata.create_all(conn)
    logger.info("created working tables %s", ", ".join(t.name for t in tables.all))


def drop_working_tables(engine: Engine, tables: WorkingTables) -> None:
    with engine.begin() as conn:
        tables.metadata.drop_all(conn)
    logger.info("dropped working tables %s", ", ".join(t.name for t in tables.all))


def check_working_tables(engine: Engine, tables: WorkingTables) -> None:
    """Raise :class:`SetupError` if a working table is absent or lacks columns."""
    try:
        inspector = inspect(engine)
        for table in tables.all:
            if not inspector.has_table(table.name, schema=tables.schema):
                raise SetupError(
                    f"Can't find working table {table.name!r}. "
                    "Create the working tables (create_working_tables) "
                    "or use the 'session' working table scope."
                )
            present = {
                c["name"].lower()
                for c in inspector.get_columns(table.name, schema=tables.schema)
            }
            missing = [c.name for c in table.columns if c.name.lower() not in present]
            if missing:
                raise SetupError(
                    f"Working table {table.name!r} is outdated (missing columns: "
                    f"{', '.join(missing)}). Drop and re-create the working tables."
                )
    except SQLAlchemyError as exc:
        raise SetupError(f"unable to inspect working tables: {exc}") from exc
