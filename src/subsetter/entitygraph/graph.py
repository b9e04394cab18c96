from __future__ import annotations

import logging
import secrets
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from sqlalchemy import Integer, and_, delete, func, insert, literal, or_, select, update
from sqlalchemy.sql import Select
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.expression import FromClause
from sqlalchemy.types import TypeEngine

from ..datamodel.model import Association, Column, DataModel, Table
from ..errors import DataModelError, SetupError, SQLExecutionError
from ..session import RowReader, Session
from ..sqlutil import aliased, filtered_selection, label_name, resolve_pseudo_columns, sql_condition
from .local import KeepOpen, batches, inline_view
from .predicates import (
    entity_equals_entity,
    keys_equal_entity,
    pk_equals_entity,
    pk_equals_keys,
    pk_equals_values,
    pk_select_list,
    upk_columns,
)
from .schema import WorkingTables

logger = logging.getLogger(__name__)


class ExplainObserver(Protocol):
    """Assigns provenance ids to associations while collecting rows."""

    def association_id(self, association: Association) -> int:
        """Return a stable positive id for ``association``."""


class ExplainRecorder:
    """Default :class:`ExplainObserver`: numbers associations in first-use order."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ids: Dict[int, int] = {}
        self._associations: Dict[int, Association] = {}

    def association_id(self, association: Association) -> int:
        with self._lock:
            explain_id = self._ids.get(association.id)
            if explain_id is None:
                explain_id = len(self._ids) + 1
                self._ids[association.id] = explain_id
                self._associations[explain_id] = association
            return explain_id

    def association(self, explain_id: int) -> Optional[Association]:
        with self._lock:
            return self._associations.get(explain_id)


def unique_graph_id() -> int:
    return secrets.randbelow(2_000_000_000) + 1


class EntityGraph:
    """
    Traversal state of one subsetting run, stored in the working tables.

    Every row of ``entity`` and ``dependency`` carries the graph id, so any
    number of graphs (runs, clones) share the same relations. Each method
    issues one or a few bulk statements through the session.

    Parameters
    ----------
    graph_id:
        Partition key of this graph.
    data_model:
        Schema the entity types refer to.
    session:
        Executes the statements on the working tables.
    tables:
        Working table descriptions.
    source:
        Database holding the subsetted tables; defaults to ``session``.
        With a separate source, keys are moved between the two databases
        in batches of ``transfer_batch_size`` rows.
    update_statistics:
        Called after every insert round; failures are logged.
    on_exported:
        Called with ``(table, rowcount)`` after rows were read for output.
    """

    def __init__(
        self,
        graph_id: int,
        data_model: DataModel,
        session: Session,
        tables: WorkingTables,
        *,
        birthday_of_subject: int = 0,
        source: Optional[Session] = None,
        transfer_batch_size: int = 100,
        update_statistics: Optional[Callable[[], None]] = None,
        on_exported: Optional[Callable[[Table, int], None]] = None,
    ) -> None:
        self.graph_id = graph_id
        self.data_model = data_model
        self.session = session
        self.source = source or session
        self.transfer_batch_size = transfer_batch_size
        self.tables = tables
        self.upk = tables.upk
        self.birthday_of_subject = birthday_of_subject
        self.in_delete_mode = False
        self._update_statistics = update_statistics
        self._on_exported = on_exported

        self._lock = Lock()
        self._total_rowcount = 0
        self._exported_count = 0

    @classmethod
    def create(
        cls,
        graph_id: int,
        data_model: DataModel,
        session: Session,
        tables: WorkingTables,
        **kwargs: Any,
    ) -> "EntityGraph":
        """Register a new graph with age 1."""
        graph = cls(graph_id, data_model, session, tables, **kwargs)
        try:
            session.execute_update(insert(tables.graph).values(id=graph_id, age=1))
        except SQLExecutionError as exc:
            raise SetupError(
                "Can't find working tables! Create them (create_working_tables) "
                f"or use the 'session' working table scope. ({exc})"
            ) from exc
        logger.debug("created entity graph %s", graph_id)
        return graph

    # ------------------------------------------------------------------ #
    # Accounting
    # ------------------------------------------------------------------ #

    @property
    def total_rowcount(self) -> int:
        """Number of rows inserted into the working tables by this graph."""
        with self._lock:
            return self._total_rowcount

    @property
    def exported_count(self) -> int:
        """Number of rows handed to output readers."""
        with self._lock:
            return self._exported_count

    def _add_rowcount(self, count: int) -> None:
        with self._lock:
            self._total_rowcount += count

    def _exported(self, table: Table, count: int) -> None:
        with self._lock:
            self._exported_count += count
        if self._on_exported is not None:
            self._on_exported(table, count)

    @property
    def age(self) -> int:
        g = self.tables.graph
        value = self.session.scalar(select(g.c.age).where(g.c.id == self.graph_id))
        return -1 if value is None else int(value)

    @age.setter
    def age(self, age: int) -> None:
        g = self.tables.graph
        self.session.execute_update(update(g).where(g.c.id == self.graph_id).values(age=age))

    def get_size(self, tables: Optional[Iterable[Table]] = None) -> int:
        """Number of entities (of the given tables) not marked for removal."""
        e = self.tables.entity
        if tables is None:
            value = self.session.scalar(
                select(func.count()).select_from(e).where(
                    e.c.r_entitygraph == self.graph_id, e.c.birthday >= 0
                )
            )
            return int(value or 0)
        ordinals = {t.ordinal for t in tables}
        if not ordinals:
            return 0
        rows = self.session.read_all(
            select(e.c.type, func.count().label("n"))
            .where(e.c.r_entitygraph == self.graph_id, e.c.birthday >= 0)
            .group_by(e.c.type)
        )
        return sum(int(r["n"]) for r in rows if r["type"] in ordinals)

    def count_entities(self, table: Table) -> int:
        e = self.tables.entity
        value = self.session.scalar(
            select(func.count()).select_from(e).where(
                e.c.r_entitygraph == self.graph_id,
                e.c.type == table.ordinal,
                e.c.birthday >= 0,
            )
        )
        return int(value or 0)

    @property
    def is_local(self) -> bool:
        """Whether the working tables live in another database than the source tables."""
        return self.source is not self.session

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def copy(
        self,
        new_graph_id: int,
        on_exported: Optional[Callable[[Table, int], None]] = None,
    ) -> "EntityGraph":
        """
        Clone all entities (not dependencies) under a new graph id.

        ``orig_birthday`` of the clone keeps the birthday each row had here.
        ``on_exported`` defaults to the callback of this graph.
        """
        clone = EntityGraph.create(
            new_graph_id,
            self.data_model,
            self.session,
            self.tables,
            birthday_of_subject=self.birthday_of_subject,
            source=self.source,
            transfer_batch_size=self.transfer_batch_size,
            update_statistics=self._update_statistics,
            on_exported=on_exported or self._on_exported,
        )
        e = self.tables.entity
        names = self.upk.column_names
        source = select(
            literal(new_graph_id, Integer),
            *[e.c[n] for n in names],
            e.c.birthday,
            e.c.birthday,
            e.c.type,
        ).where(e.c.r_entitygraph == self.graph_id)
        self.session.execute_update(
            insert(e).from_select(
                ["r_entitygraph", *names, "birthday", "orig_birthday", "type"], source
            )
        )
        return clone

    def delete(self) -> None:
        """Remove every row of this graph from all working tables."""
        t = self.tables
        self.session.execute_update(delete(t.dependency).where(t.dependency.c.r_entitygraph == self.graph_id))
        self.session.execute_update(delete(t.entity).where(t.entity.c.r_entitygraph == self.graph_id))
        self.session.execute_update(delete(t.graph).where(t.graph.c.id == self.graph_id))

    # ------------------------------------------------------------------ #
    # Collection
    # ------------------------------------------------------------------ #

    def add_entities(self, table: Table, condition: str, today: int) -> int:
        """Insert the rows of ``table`` (alias ``T``) matching ``condition``."""
        t = aliased(table, "T")
        if self.is_local:
            found = self.source.read_all(
                select(*pk_select_list(self.upk, table, t)).where(sql_condition(condition))
            )
            return self._add_found_entities(table, found, today)
        return self._new_entities(table, self._keys(table, t), t, [sql_condition(condition)], today)

    def resolve_association(
        self,
        table: Table,
        association: Association,
        today: int,
        observer: Optional[ExplainObserver] = None,
    ) -> int:
        """
        Add all destination rows associated with a ``table`` row born yesterday.

        Returns the number of new rows, or -1 if the association has no
        executable join condition.
        """
        jc = association.effective_join_condition
        if jc is None:
            return -1
        if association.reversed:
            dest_alias, source_alias = "A", "B"
        else:
            dest_alias, source_alias = "B", "A"
        jc = resolve_pseudo_columns(
            jc,
            None if association.reversed else "e",
            "e" if association.reversed else None,
            today,
            self.birthday_of_subject,
            in_delete_mode=self.in_delete_mode,
        )
        association_id = observer.association_id(association) if observer is not None else None
        destination = association.destination
        s = aliased(table, source_alias)
        t = aliased(destination, dest_alias)

        if self.is_local:
            e = self.tables.entity
            born = self.session.read_all(
                select(*[e.c[n] for n in upk_columns(self.upk, table)], e.c.birthday).where(
                    e.c.r_entitygraph == self.graph_id,
                    e.c.type == table.ordinal,
                    e.c.birthday == today - 1,
                )
            )
            types = {**self._key_types(table), "birthday": Integer()}
            selection = pk_select_list(self.upk, destination, t)
            if association_id is not None:
                selection += pk_select_list(self.upk, table, s, "pre_")
            total = 0
            for batch in batches(born, self.transfer_batch_size):
                v = inline_view("e", batch, types)
                found = self.source.read_all(
                    select(*selection)
                    .distinct()
                    .select_from(
                        v.join(s, pk_equals_keys(self.upk, table, s, v)).join(t, sql_condition(jc))
                    )
                )
                total += self._add_found_entities(
                    destination,
                    found,
                    today,
                    None if association_id is None else (association_id, table),
                )
            return total

        e = self.tables.entity.alias("e")
        joined = e.join(s, pk_equals_entity(self.upk, table, s, e)).join(t, sql_condition(jc))
        where = [
            e.c.r_entitygraph == self.graph_id,
            e.c.birthday == today - 1,
            e.c.type == table.ordinal,
        ]
        provenance = None
        if association_id is not None:
            provenance = (association_id, table, self._keys(table, s))
        return self._new_entities(
            destination, self._keys(destination, t), joined, where, today,
            distinct=True, provenance=provenance,
        )

    def _add_found_entities(
        self,
        table: Table,
        found: Sequence[Mapping[str, Any]],
        today: int,
        provenance_of: Optional[Tuple[int, Table]] = None,
    ) -> int:
        """Insert keys read from the source database, batch by batch."""
        types = self._key_types(table)
        if provenance_of is not None:
            types.update(self._key_types(provenance_of[1], "pre_"))
        total = 0
        for batch in batches(found, self.transfer_batch_size):
            v = inline_view("v", batch, types)
            provenance = None
            if provenance_of is not None:
                association_id, source = provenance_of
                pre_keys = {n: v.c[f"pre_{n}"] for n in upk_columns(self.upk, source)}
                provenance = (association_id, source, pre_keys)
            keys = {n: v.c[n] for n in upk_columns(self.upk, table)}
            total += self._new_entities(
                table, keys, v, [], today, distinct=True, provenance=provenance
            )
        return total

    def _new_entities(
        self,
        table: Table,
        keys: Mapping[str, ColumnElement],
        joined: FromClause,
        where: Sequence[ColumnElement],
        today: int,
        *,
        distinct: bool = False,
        provenance: Optional[Tuple[int, Table, Mapping[str, ColumnElement]]] = None,
    ) -> int:
        """
        Insert the ``table`` rows selected from ``joined`` that are not in the graph yet.

        Parameters
        ----------
        keys:
            Universal column name to key expression, for the columns
            ``table`` uses.
        provenance:
            ``(association id, source table, source keys)`` recorded with
            every new row.
        """
        e_table = self.tables.entity
        dup = e_table.alias("dup")
        dup_matches = and_(
            dup.c.r_entitygraph == self.graph_id,
            dup.c.type == table.ordinal,
            *[
                dup.c[c.name] == keys[c.name] if c.name in keys else dup.c[c.name].is_(None)
                for c in self.upk.columns
            ],
        )

        names = upk_columns(self.upk, table)
        selection: List[ColumnElement] = [
            literal(self.graph_id, Integer).label("r_entitygraph"),
            *[keys[n].label(n) for n in names],
            literal(today, Integer).label("birthday"),
            literal(table.ordinal, Integer).label("type"),
        ]
        columns = ["r_entitygraph", *names, "birthday", "type"]
        if provenance is not None:
            association_id, source, pre_keys = provenance
            pre_names = upk_columns(self.upk, source)
            selection += [
                literal(association_id, Integer).label("association"),
                literal(source.ordinal, Integer).label("pre_type"),
                *[pre_keys[n].label(f"pre_{n}") for n in pre_names],
            ]
            columns += ["association", "pre_type", *[f"pre_{n}" for n in pre_names]]

        where = list(where)
        if self.session.dialect.avoid_left_join:
            where.append(~select(literal(1)).select_from(dup).where(dup_matches).exists())
        else:
            joined = joined.outerjoin(dup, dup_matches)
            where.append(dup.c.type.is_(None))

        stmt: Select = select(*selection).select_from(joined).where(*where)
        if distinct:
            stmt = stmt.distinct()
        if provenance is not None:
            stmt = self._explain_aggregation(stmt, table, provenance[1])
        return self._insert_chunked(e_table, columns, stmt)

    def _explain_aggregation(self, stmt: Select, table: Table, source: Table) -> Select:
        """Keep one provenance row per new entity (max over source keys)."""
        q = stmt.subquery("q")
        keys = [q.c[n] for n in upk_columns(self.upk, table)]
        pre = [func.max(q.c[n]).label(n) for n in upk_columns(self.upk, source, "pre_")]
        return select(
            q.c.r_entitygraph,
            *keys,
            q.c.birthday,
            q.c.type,
            q.c.association,
            func.max(q.c.pre_type).label("pre_type"),
            *pre,
        ).group_by(q.c.r_entitygraph, *keys, q.c.birthday, q.c.type, q.c.association)

    def _insert_chunked(self, target, columns: Sequence[str], stmt: Select) -> int:
        increment = self.session.dialect.limit_transaction_size
        limited = stmt.limit(increment) if increment > 0 else stmt
        statement = insert(target).from_select(list(columns), limited)
        total = 0
        while True:
            self.session.cancellation.check()
            count = self.session.execute_update(statement)
            total += count
            self._add_rowcount(count)
            self._run_update_statistics()
            if increment == 0 or count != increment:
                break
        return total

    def _run_update_statistics(self) -> None:
        if self._update_statistics is None:
            return
        try:
            self._update_statistics()
        except Exception as exc:
            logger.warning("statistics update failed: %s", exc)

    # ------------------------------------------------------------------ #
    # Dependencies
    # ------------------------------------------------------------------ #

    def add_dependencies(
        self,
        from_table: Table,
        from_alias: str,
        to_table: Table,
        to_alias: str,
        condition: str,
        aggregation_id: int,
        dependency_id: int,
        association_reversed: bool,
    ) -> int:
        """
        Insert one edge per pair of collected rows connected by ``condition``.

        ``from_alias``/``to_alias`` are ``A`` or ``B`` as used in
        ``condition``. Returns the number of edges.
        """
        e_table = self.tables.entity
        e2 = e_table.alias("e2")
        f = aliased(from_table, from_alias)
        t = aliased(to_table, to_alias)
        header = [
            literal(self.graph_id, Integer),
            literal(aggregation_id, Integer),
            literal(dependency_id, Integer),
            literal(from_table.ordinal, Integer),
            literal(to_table.ordinal, Integer),
        ]
        columns = [
            "r_entitygraph", "assoc", "depend_id", "from_type", "to_type",
            *upk_columns(self.upk, from_table, "from_"),
            *upk_columns(self.upk, to_table, "to_"),
        ]
        to_collected = and_(e2.c.r_entitygraph == self.graph_id, e2.c.type == to_table.ordinal)

        if self.is_local:
            from_entity = ("e1", None) if from_alias.upper() == "A" else (None, "e1")
            condition = self._resolve_one_side(condition, *from_entity)
            from_names = upk_columns(self.upk, from_table)
            rows = self.session.read_all(
                select(*[e_table.c[n] for n in from_names], e_table.c.birthday).where(
                    e_table.c.r_entitygraph == self.graph_id,
                    e_table.c.type == from_table.ordinal,
                )
            )
            types = {**self._key_types(from_table), "birthday": Integer()}
            pair_types = {**self._key_types(from_table, "from_"), **self._key_types(to_table, "to_")}
            count = 0
            for batch in batches(rows, self.transfer_batch_size):
                v = inline_view("e1", batch, types)
                pairs = self.source.read_all(
                    select(
                        *[v.c[n].label(f"from_{n}") for n in from_names],
                        *pk_select_list(self.upk, to_table, t, "to_"),
                    ).select_from(
                        v.join(f, pk_equals_keys(self.upk, from_table, f, v)).join(
                            t, sql_condition(condition)
                        )
                    )
                )
                for pair_batch in batches(pairs, self.transfer_batch_size):
                    w = inline_view("w", pair_batch, pair_types)
                    stmt = select(*header, *[w.c[n] for n in columns[5:]]).select_from(
                        w.join(
                            e2,
                            and_(to_collected, keys_equal_entity(self.upk, to_table, w, "to_", e2)),
                        )
                    )
                    count += self.session.execute_update(
                        insert(self.tables.dependency).from_select(columns, stmt)
                    )
            self._add_rowcount(count)
            return count

        e1 = e_table.alias("e1")
        a_entity = "e1" if from_alias.upper() == "A" else "e2"
        b_entity = "e2" if a_entity == "e1" else "e1"
        condition = resolve_pseudo_columns(
            condition, a_entity, b_entity, 0, self.birthday_of_subject,
            in_delete_mode=self.in_delete_mode,
        )
        joined = (
            e1.join(f, pk_equals_entity(self.upk, from_table, f, e1))
            .join(t, sql_condition(condition))
            .join(e2, and_(to_collected, pk_equals_entity(self.upk, to_table, t, e2)))
        )
        stmt = (
            select(
                *header,
                *pk_select_list(self.upk, from_table, f, "from_"),
                *pk_select_list(self.upk, to_table, t, "to_"),
            )
            .select_from(joined)
            .where(e1.c.r_entitygraph == self.graph_id, e1.c.type == from_table.ordinal)
        )
        count = self.session.execute_update(
            insert(self.tables.dependency).from_select(columns, stmt)
        )
        self._add_rowcount(count)
        return count

    def get_distinct_dependency_ids(self) -> Set[int]:
        d = self.tables.dependency
        rows = self.session.read_all(
            select(d.c.depend_id).distinct().where(d.c.r_entitygraph == self.graph_id)
        )
        return {int(r["depend_id"]) for r in rows}

    def remove_dependencies(self, association: Association) -> int:
        d = self.tables.dependency
        return self.session.execute_update(
            delete(d).where(
                d.c.r_entitygraph == self.graph_id, d.c.depend_id == association.id
            )
        )

    def remove_reflexive_dependencies(self, table: Table) -> int:
        """Delete edges from a row of ``table`` to itself."""
        d = self.tables.dependency
        same_key = [
            d.c[f"from_{n}"] == d.c[f"to_{n}"] for n in upk_columns(self.upk, table)
        ]
        return self.session.execute_update(
            delete(d).where(
                d.c.r_entitygraph == self.graph_id,
                d.c.from_type == table.ordinal,
                d.c.to_type == table.ordinal,
                *same_key,
            )
        )

    # ------------------------------------------------------------------ #
    # Emission
    # ------------------------------------------------------------------ #

    def mark_independent_entities(self, table: Table) -> int:
        """Set birthday=0 for rows not waiting on another row (assoc 0 edges)."""
        e = self.tables.entity
        d = self.tables.dependency.alias("d")
        blocked = (
            select(literal(1))
            .select_from(d)
            .where(
                d.c.r_entitygraph == self.graph_id,
                d.c.assoc == 0,
                d.c.from_type == e.c.type,
                entity_equals_entity(self.upk, table, d, "from_", e, ""),
            )
            .exists()
        )
        return self.session.execute_update(
            update(e)
            .where(
                e.c.r_entitygraph == self.graph_id,
                e.c.birthday > 0,
                e.c.type == table.ordinal,
                ~blocked,
            )
            .values(birthday=0)
        )

    def mark_roots(self, table: Table) -> int:
        """Set birthday=0 for rows that are not the target of any edge."""
        e = self.tables.entity
        d = self.tables.dependency.alias("d")
        targeted = (
            select(literal(1))
            .select_from(d)
            .where(
                d.c.r_entitygraph == self.graph_id,
                d.c.to_type == e.c.type,
                entity_equals_entity(self.upk, table, d, "to_", e, ""),
            )
            .exists()
        )
        return self.session.execute_update(
            update(e)
            .where(
                e.c.r_entitygraph == self.graph_id,
                e.c.birthday > 0,
                e.c.type == table.ordinal,
                ~targeted,
            )
            .values(birthday=0)
        )

    def read_marked_entities(
        self,
        table: Table,
        reader: RowReader,
        selection: Optional[Sequence[ColumnElement]] = None,
        order_by_pk: bool = False,
    ) -> int:
        """Stream the rows marked with birthday 0."""
        return self._read(table, reader, selection, order_by_pk, marked_only=True)

    def read_entities(
        self,
        table: Table,
        reader: RowReader,
        selection: Optional[Sequence[ColumnElement]] = None,
        order_by_pk: bool = False,
    ) -> int:
        """Stream all rows of ``table`` that are not marked for removal."""
        return self._read(table, reader, selection, order_by_pk, marked_only=False)

    def _read(
        self,
        table: Table,
        reader: RowReader,
        selection: Optional[Sequence[ColumnElement]],
        order_by_pk: bool,
        marked_only: bool,
    ) -> int:
        if selection is None:
            selection = filtered_selection(table, "T")
        e = self.tables.entity.alias("e")
        where = [
            e.c.r_entitygraph == self.graph_id,
            e.c.type == table.ordinal,
            e.c.birthday == 0 if marked_only else e.c.birthday >= 0,
        ]
        if self.is_local:
            keys = select(*[e.c[n] for n in upk_columns(self.upk, table)]).where(*where)
            if order_by_pk:
                keys = keys.order_by(*self._key_order(table, e))
            count = self._read_by_keys(
                table, self.session.read_all(keys), "", reader, selection, order_by_pk
            )
            self._exported(table, count)
            return count

        t = aliased(table, "T")
        stmt = (
            select(*selection)
            .select_from(e.join(t, pk_equals_entity(self.upk, table, t, e)))
            .where(*where)
        )
        if order_by_pk:
            ordered = stmt.order_by(*[t.c[c.name] for c in table.primary_key])
            count = self.session.execute_query(ordered, reader, fallback=stmt)
        else:
            count = self.session.execute_query(stmt, reader)
        self._exported(table, count)
        return count

    def read_entity_columns(
        self,
        table: Table,
        columns: Iterable[Column],
        reader: RowReader,
        overrides: Optional[Mapping[str, str]] = None,
    ) -> int:
        """
        Stream primary key plus ``columns`` of all rows, ignoring column filters.

        ``overrides`` replaces column values by SQL expressions.
        """
        wanted = {c.name for c in table.primary_key} | {c.name for c in columns}
        selection = [
            col
            for c, col in zip(
                table.columns, filtered_selection(table, "T", overrides, apply_filters=False)
            )
            if c.name in wanted
        ]
        e = self.tables.entity.alias("e")
        where = [
            e.c.r_entitygraph == self.graph_id,
            e.c.type == table.ordinal,
            e.c.birthday >= 0,
        ]
        if self.is_local:
            keys = self.session.read_all(
                select(*[e.c[n] for n in upk_columns(self.upk, table)]).where(*where)
            )
            return self._read_by_keys(table, keys, "", reader, selection, order_by_pk=False)
        t = aliased(table, "T")
        stmt = (
            select(*selection)
            .select_from(e.join(t, pk_equals_entity(self.upk, table, t, e)))
            .where(*where)
        )
        return self.session.execute_query(stmt, reader)

    def delete_independent_entities(self, table: Table) -> None:
        """Remove rows marked with birthday 0 together with their edges."""
        e_table = self.tables.entity
        d = self.tables.dependency
        e = e_table.alias("e")
        for side in ("from", "to"):
            type_column = d.c[f"{side}_type"]
            marked = (
                select(literal(1))
                .select_from(e)
                .where(
                    e.c.r_entitygraph == self.graph_id,
                    e.c.type == type_column,
                    entity_equals_entity(self.upk, table, d, f"{side}_", e, ""),
                    e.c.birthday == 0,
                )
                .exists()
            )
            self.session.execute_update(
                delete(d).where(
                    d.c.r_entitygraph == self.graph_id,
                    d.c.assoc == 0,
                    type_column == table.ordinal,
                    marked,
                )
            )
        self.session.execute_update(
            delete(e_table).where(
                e_table.c.r_entitygraph == self.graph_id,
                e_table.c.type == table.ordinal,
                e_table.c.birthday == 0,
            )
        )

    def delete_entities(self, table: Table) -> int:
        """Remove all rows of ``table`` unconditionally."""
        e = self.tables.entity
        return self.session.execute_update(
            delete(e).where(e.c.r_entitygraph == self.graph_id, e.c.type == table.ordinal)
        )

    # ------------------------------------------------------------------ #
    # Delete-set computation
    # ------------------------------------------------------------------ #

    def remove_associated_destinations(
        self, association: Association, deleted_entities_are_marked: bool
    ) -> int:
        """
        Mark (birthday -1) destination rows referenced by a source row that
        is not in the graph, or, if ``deleted_entities_are_marked``, by a
        source row already marked with -1.
        """
        jc = association.effective_join_condition
        if jc is None:
            return 0
        if association.reversed:
            dest_alias, source_alias = "A", "B"
        else:
            dest_alias, source_alias = "B", "A"
        e = self.tables.entity
        destination, source = association.destination, association.source
        dest = aliased(destination, dest_alias)
        src = aliased(source, source_alias)
        own_filter = e.c.birthday >= 0 if deleted_entities_are_marked else e.c.birthday != -1
        own = [e.c.r_entitygraph == self.graph_id, e.c.type == destination.ordinal, own_filter]

        def referencing(
            joined: FromClause, source_matches: Callable[[FromClause], ColumnElement]
        ) -> Select:
            ea = e.alias("ea")
            ea_matches = and_(
                ea.c.r_entitygraph == self.graph_id,
                ea.c.type == source.ordinal,
                source_matches(ea),
            )
            if deleted_entities_are_marked:
                return select(literal(1)).select_from(joined.join(ea, ea_matches)).where(
                    ea.c.birthday == -1
                )
            return select(literal(1)).select_from(joined.outerjoin(ea, ea_matches)).where(
                ea.c.type.is_(None)
            )

        if self.is_local:
            dest_entity = ("ed", None) if association.reversed else (None, "ed")
            jc = self._resolve_one_side(jc, *dest_entity, birthday_column="orig_birthday")
            dest_names = upk_columns(self.upk, destination)
            keys = self.session.read_all(
                select(*[e.c[n] for n in dest_names], e.c.orig_birthday).where(*own)
            )
            types = {**self._key_types(destination), "orig_birthday": Integer()}
            pair_types = {**self._key_types(destination), **self._key_types(source, "src_")}
            count = 0
            for batch in batches(keys, self.transfer_batch_size):
                v = inline_view("ed", batch, types)
                pairs = self.source.read_all(
                    select(*[v.c[n] for n in dest_names], *pk_select_list(self.upk, source, src, "src_"))
                    .distinct()
                    .select_from(
                        v.join(dest, pk_equals_keys(self.upk, destination, dest, v)).join(
                            src, sql_condition(jc)
                        )
                    )
                )
                for pair_batch in batches(pairs, self.transfer_batch_size):
                    w = inline_view("w", pair_batch, pair_types)
                    referenced = referencing(
                        w, lambda ea: keys_equal_entity(self.upk, source, w, "src_", ea)
                    ).where(keys_equal_entity(self.upk, destination, w, "", e))
                    count += self.session.execute_update(
                        update(e).where(*own, referenced.exists()).values(birthday=-1)
                    )
            self._add_rowcount(count)
            return count

        dest_entity = e.fullname
        jc = resolve_pseudo_columns(
            jc,
            dest_entity if association.reversed else "ea",
            "ea" if association.reversed else dest_entity,
            0,
            self.birthday_of_subject,
            birthday_column="orig_birthday",
            in_delete_mode=self.in_delete_mode,
        )
        referenced = referencing(
            dest.join(src, sql_condition(jc)),
            lambda ea: pk_equals_entity(self.upk, source, src, ea),
        ).where(pk_equals_entity(self.upk, destination, dest, e))
        count = self.session.execute_update(
            update(e).where(*own, referenced.exists()).values(birthday=-1)
        )
        self._add_rowcount(count)
        return count

    # ------------------------------------------------------------------ #
    # Hierarchical export
    # ------------------------------------------------------------------ #

    def read_dependent_entities(
        self,
        table: Table,
        association: Association,
        source_row: Mapping[str, Any],
        reader: RowReader,
        selection: Optional[Sequence[ColumnElement]] = None,
    ) -> int:
        """
        Stream the ``table`` rows aggregated by ``source_row`` via ``association``
        whose edges have not been traversed yet.
        """
        d = self.tables.dependency.alias("d")
        if selection is None:
            selection = filtered_selection(table, "T")
        where = [
            pk_equals_values(self.upk, association.source, d, "from_", source_row),
            d.c.from_type == association.source.ordinal,
            d.c.to_type == table.ordinal,
            d.c.assoc == association.id,
            d.c.r_entitygraph == self.graph_id,
            or_(d.c.traversed.is_(None), d.c.traversed != 1),
        ]
        if self.is_local:
            keys = self.session.read_all(
                select(*[d.c[n] for n in upk_columns(self.upk, table, "to_")])
                .where(*where)
                .order_by(*self._key_order(table, d, "to_"))
            )
            count = self._read_by_keys(table, keys, "to_", reader, selection, order_by_pk=True)
            self._exported(table, count)
            return count

        t = aliased(table, "T")
        stmt = (
            select(*selection)
            .select_from(t.join(d, pk_equals_entity(self.upk, table, t, d, "to_")))
            .where(*where)
            .order_by(*[t.c[c.name] for c in table.primary_key])
        )
        count = self.session.execute_query(stmt, reader)
        self._exported(table, count)
        return count

    def mark_dependent_entities_as_traversed(
        self, association: Association, source_row: Mapping[str, Any]
    ) -> int:
        d = self.tables.dependency
        return self.session.execute_update(
            update(d)
            .where(
                pk_equals_values(self.upk, association.source, d, "from_", source_row),
                d.c.from_type == association.source.ordinal,
                d.c.assoc == association.id,
                d.c.r_entitygraph == self.graph_id,
            )
            .values(traversed=1)
        )

    def read_non_traversed_dependencies(self, table: Table, reader: RowReader) -> int:
        d = self.tables.dependency
        return self.session.execute_query(
            select(d).where(
                or_(d.c.traversed.is_(None), d.c.traversed != 1),
                d.c.from_type == table.ordinal,
                d.c.r_entitygraph == self.graph_id,
            ),
            reader,
        )

    # ------------------------------------------------------------------ #
    # Explain
    # ------------------------------------------------------------------ #

    def read_provenance(self, table: Table, reader: RowReader) -> int:
        """
        Stream ``(pk..., association, pre_type, pre_pk...)`` of collected rows.

        Only rows collected with an explain observer carry provenance.
        """
        e = self.tables.entity
        match = self.upk.match(table.primary_key)
        keys = [e.c[n].label(label_name(match[n].name)) for n in upk_columns(self.upk, table)]
        pre = [e.c[f"pre_{c.name}"] for c in self.upk.columns]
        return self.session.execute_query(
            select(*keys, e.c.birthday, e.c.association, e.c.pre_type, *pre).where(
                e.c.r_entitygraph == self.graph_id,
                e.c.type == table.ordinal,
                e.c.association.is_not(None),
            ),
            reader,
        )

    # ------------------------------------------------------------------ #
    # Keys
    # ------------------------------------------------------------------ #

    def _keys(self, table: Table, table_alias: FromClause) -> Dict[str, ColumnElement]:
        match = self.upk.match(table.primary_key)
        return {c.name: table_alias.c[match[c.name].name] for c in self.upk.columns if c.name in match}

    def _key_types(self, table: Table, prefix: str = "") -> Dict[str, TypeEngine]:
        match = self.upk.match(table.primary_key)
        return {prefix + c.name: c.sql_type() for c in self.upk.columns if c.name in match}

    def _resolve_one_side(
        self,
        condition: str,
        entity_a: Optional[str],
        entity_b: Optional[str],
        birthday_column: str = "birthday",
    ) -> str:
        """
        Resolve pseudo columns of a condition evaluated in the source database,
        where only one side's entity rows are available (as a derived table).
        """
        resolved = resolve_pseudo_columns(
            condition, entity_a, entity_b, 0, self.birthday_of_subject,
            birthday_column=birthday_column, in_delete_mode=self.in_delete_mode,
        )
        both = resolve_pseudo_columns(
            condition, entity_a or "other", entity_b or "other", 0, self.birthday_of_subject,
            birthday_column=birthday_column, in_delete_mode=self.in_delete_mode,
        )
        if resolved != both:
            raise DataModelError(
                "pseudo columns of this side of the association are not supported "
                f"with working tables in a separate database: {condition}"
            )
        return resolved

    def _read_by_keys(
        self,
        table: Table,
        keys: Sequence[Mapping[str, Any]],
        prefix: str,
        reader: RowReader,
        selection: Sequence[ColumnElement],
        order_by_pk: bool,
    ) -> int:
        """Stream ``selection`` (over alias ``T``) of the source rows with the given keys."""
        t = aliased(table, "T")
        types = self._key_types(table, prefix)
        count = 0
        try:
            for batch in batches(keys, self.transfer_batch_size):
                v = inline_view("e", batch, types)
                stmt = select(*selection).select_from(
                    v.join(t, pk_equals_keys(self.upk, table, t, v, prefix))
                )
                if order_by_pk:
                    ordered = stmt.order_by(*[t.c[c.name] for c in table.primary_key])
                    count += self.source.execute_query(ordered, KeepOpen(reader), fallback=stmt)
                else:
                    count += self.source.execute_query(stmt, KeepOpen(reader))
        finally:
            reader.close()
        return count

    def _key_order(self, table: Table, keys: FromClause, prefix: str = "") -> List[ColumnElement]:
        """Universal key columns of ``keys`` in the order of the primary key of ``table``."""
        return [keys.c[prefix + n] for n in self.upk.match(table.primary_key)]
