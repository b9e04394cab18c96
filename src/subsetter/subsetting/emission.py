from __future__ import annotations

"""
Ordered emission of collected rows.

Rows are handed to a :class:`RowSinkFactory` table by table in an order
that respects the insert order of their associations (or its reverse for
delete scripts). Rows of tables that depend on each other are written in
dependency order row by row; true row cycles are broken by writing
nullable foreign keys as NULL and restoring them with updates afterwards.
"""

import logging
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set

from sqlalchemy import literal_column
from sqlalchemy.sql.elements import ColumnElement

from ..cancellation import CancellationHandler
from ..config import SubsettingSettings
from ..datamodel.model import AggregationSchema, Association, Column, Table
from ..entitygraph.graph import EntityGraph
from ..errors import CancellationError, CyclicDependencyError
from ..jobs import JobManager
from ..session import CollectingReader, RowReader
from ..sqlutil import filtered_selection, label_name
from .cycles import find_cycle, get_cycle
from .progress import ProgressListenerRegistry

logger = logging.getLogger(__name__)

KEY_PREFIX = "subsetter_key_"
CYCLE_REASON = "explicit due to circular dependency"


class ScriptType(str, Enum):
    INSERT = "insert"
    DELETE = "delete"


class RowSinkFactory(Protocol):
    """Creates the row readers that turn emitted rows into output."""

    def create(self, table: Table) -> RowReader:
        """Reader for rows to be inserted (or deleted) as a whole."""

    def create_updater(self, table: Table, columns: Sequence[Column], reason: str) -> RowReader:
        """Reader for rows whose ``columns`` must be set by key afterwards."""

    def sync(self) -> None:
        """Rows written so far must be applied before the rows that follow."""


class HierarchySink(Protocol):
    """Receives rows nested along their aggregating associations."""

    def start_row(
        self, table: Table, association: Optional[Association], row: Mapping[str, Any], depth: int
    ) -> None: ...

    def end_row(
        self, table: Table, association: Optional[Association], row: Mapping[str, Any], depth: int
    ) -> None: ...

    def close(self) -> None: ...


def _names(tables: Iterable[Table]) -> str:
    return ", ".join(sorted(t.name for t in tables))


class Emission:
    """
    Writes the rows of an :class:`EntityGraph` to a sink.

    Parameters
    ----------
    graph:
        Graph holding the collected rows. Emission consumes it.
    job_manager:
        Pool used for per-table jobs.
    settings:
        ``order_by_pk``, ``no_sorting`` and the cycle-search time budget.
    clone_graph:
        Creates a copy of a graph; the caller owns (and cleans up) copies.
    runstats:
        Invoked after dependency edges were added.
    """

    def __init__(
        self,
        graph: EntityGraph,
        job_manager: JobManager,
        settings: SubsettingSettings,
        *,
        clone_graph: Callable[[EntityGraph], EntityGraph],
        runstats: Optional[Callable[[], None]] = None,
        listeners: Optional[ProgressListenerRegistry] = None,
        cancellation: Optional[CancellationHandler] = None,
    ) -> None:
        self.graph = graph
        self.data_model = graph.data_model
        self.job_manager = job_manager
        self.settings = settings
        self._clone_graph = clone_graph
        self._runstats = runstats or (lambda: None)
        self.listeners = listeners or ProgressListenerRegistry()
        self.cancellation = cancellation or graph.session.cancellation

    # ------------------------------------------------------------------ #
    # Flat scripts
    # ------------------------------------------------------------------ #

    def write_entities(self, sink: RowSinkFactory, script_type: ScriptType, tables: Iterable[Table]) -> None:
        """
        Hand all rows of ``tables`` to ``sink`` in dependency order.

        Raises :class:`CyclicDependencyError` if rows remain that cannot be
        ordered.
        """
        transposed = script_type is ScriptType.DELETE
        apply_filters = not transposed
        rest = 0
        dependent: Set[Table] = set()
        current = set(tables)

        while current:
            dependent = self._write_entities_of_independent_tables(
                sink, current, transposed, apply_filters
            )
            previous, current = current, set()

            descendants = self._descendants(dependent, transposed)
            if descendants:
                dependent -= descendants
                current = descendants
                logger.info("cyclic dependency descendants: %s", _names(descendants))
            if dependent:
                logger.info("cyclic dependencies for: %s", _names(dependent))

            if not self.settings.no_sorting:
                self.add_dependencies(dependent, treat_aggregation=False, transposed=transposed)
                self._runstats()
                self._remove_single_row_cycles(previous)
            else:
                logger.warning("skipping topological sorting")

            if script_type is ScriptType.INSERT and self.settings.order_by_pk:
                rest = self._write_ordered_by_pk(sink, dependent, apply_filters)
            else:
                rest = self._write_independent_entities(sink, dependent, self.graph, apply_filters)
                sink.sync()
                if rest > 0:
                    rest = self._write_cycle(sink, script_type, dependent, rest, apply_filters)
            if rest > 0:
                break

        if rest > 0:
            raise self._cycle_error(rest, dependent, transposed)

    def _read_entities(
        self, sink: RowSinkFactory, table: Table, order_by_pk: bool, apply_filters: bool
    ) -> None:
        self.graph.read_entities(
            table,
            sink.create(table),
            filtered_selection(table, "T", apply_filters=apply_filters),
            order_by_pk,
        )

    def _write_entities_of_independent_tables(
        self,
        sink: RowSinkFactory,
        tables: Set[Table],
        transposed: bool,
        apply_filters: bool,
    ) -> Set[Table]:
        """Write whole tables not waiting for another table; return the others."""
        remaining = set(tables)
        independent = self.data_model.get_independent_tables(remaining, transposed=transposed)
        while independent:
            logger.info("independent tables: %s", _names(independent))
            if self.settings.order_by_pk:
                # one table at a time, rows of different tables are never mixed
                for table in sorted(independent):
                    self._read_entities(sink, table, True, apply_filters)
            else:
                sink.sync()
                self.job_manager.execute_jobs(
                    partial(self._read_entities, sink, table, False, apply_filters)
                    for table in sorted(independent)
                )
            remaining -= independent
            independent = self.data_model.get_independent_tables(remaining, transposed=transposed)
        return remaining

    def _descendants(self, tables: Set[Table], transposed: bool) -> Set[Table]:
        """Tables that are (recursively) not a parent of another table in ``tables``."""
        result: Set[Table] = set()
        while True:
            found = set()
            for table in tables - result:
                is_parent = any(
                    a.insert_source_before_destination(transposed)
                    and a.destination in tables
                    and a.destination not in result
                    for a in table.associations
                )
                if not is_parent:
                    found.add(table)
            if not found:
                return result
            result |= found

    def add_dependencies(self, tables: Set[Table], treat_aggregation: bool, transposed: bool = False) -> None:
        """
        Record row-level edges between collected rows of ``tables``.

        Plain mode uses associations whose destination is inserted first;
        with ``treat_aggregation`` every aggregating association yields an
        edge tagged with its id.
        """
        jobs: List[Callable[[], None]] = []
        done: Set[Association] = set()
        for table in sorted(tables):
            for a in table.associations:
                if a.reversal in done or a.destination not in tables:
                    continue
                jc = a.unrestricted_join_condition
                if treat_aggregation:
                    if a.aggregation is AggregationSchema.NONE:
                        continue
                elif not (jc and a.insert_destination_before_source(transposed)):
                    continue
                done.add(a)
                jobs.append(partial(self._add_dependency, table, a, treat_aggregation))
        self.job_manager.execute_jobs(jobs)

    def _add_dependency(self, table: Table, association: Association, treat_aggregation: bool) -> None:
        logger.info(
            "find %s for %s on %s",
            "aggregation" if treat_aggregation else "dependencies",
            association,
            association.unrestricted_join_condition,
        )
        from_alias, to_alias = ("B", "A") if association.reversed else ("A", "B")
        self.graph.add_dependencies(
            table,
            from_alias,
            association.destination,
            to_alias,
            association.unrestricted_join_condition,
            association.id if treat_aggregation else 0,
            association.id,
            association.reversed,
        )

    def _remove_single_row_cycles(self, tables: Iterable[Table]) -> None:
        for table in tables:
            if table.has_reflexive_association():
                self.graph.remove_reflexive_dependencies(table)

    def _write_independent_entities(
        self,
        sink: RowSinkFactory,
        tables: Set[Table],
        graph: EntityGraph,
        apply_filters: bool,
        overrides: Optional[Mapping[Table, Mapping[str, str]]] = None,
    ) -> int:
        """
        Write rows not waiting for other rows until no more rows get free.

        Returns the number of rows left.
        """
        ordered = sorted(tables)
        rest = graph.get_size(tables)
        while True:
            for table in ordered:
                graph.mark_independent_entities(table)
            jobs = [
                partial(
                    graph.read_marked_entities,
                    table,
                    sink.create(table),
                    filtered_selection(
                        table, "T", (overrides or {}).get(table), apply_filters=apply_filters
                    ),
                )
                for table in ordered
            ]
            if jobs:
                sink.sync()
            self.job_manager.execute_jobs(jobs)
            for table in ordered:
                graph.delete_independent_entities(table)
            new_rest = graph.get_size(tables)
            if new_rest == 0:
                return 0
            if new_rest == rest:
                return rest
            rest = new_rest

    def _write_ordered_by_pk(self, sink: RowSinkFactory, dependent: Set[Table], apply_filters: bool) -> int:
        """
        Write dependent tables one by one, each ordered by primary key.

        Tables are sorted ignoring reflexive associations and associations
        without recorded edges; rows within a table are written level by
        level until the table drains.
        """
        remaining = set(dependent)
        existing = self.graph.get_distinct_dependency_ids()
        relevant = {
            a
            for a in self.data_model.associations
            if a.source is not a.destination and a.id in existing
        }
        independent = self.data_model.get_independent_tables(remaining, relevant)
        rest = self.graph.get_size(dependent)
        while independent:
            logger.info("independent tables: %s", _names(independent))
            for table in sorted(independent):
                rest = self.graph.get_size(dependent)
                while True:
                    self.graph.mark_independent_entities(table)
                    self.graph.read_marked_entities(
                        table,
                        sink.create(table),
                        filtered_selection(table, "T", apply_filters=apply_filters),
                        order_by_pk=True,
                    )
                    self.graph.delete_independent_entities(table)
                    new_rest = self.graph.get_size(dependent)
                    if new_rest == rest:
                        break
                    rest = new_rest
            remaining -= independent
            independent = self.data_model.get_independent_tables(remaining, relevant)
        return rest

    # ------------------------------------------------------------------ #
    # Cycles
    # ------------------------------------------------------------------ #

    def _write_cycle(
        self,
        sink: RowSinkFactory,
        script_type: ScriptType,
        dependent: Set[Table],
        rest: int,
        apply_filters: bool,
    ) -> int:
        """
        Two-phase export of rows that depend on each other.

        Nullable foreign keys inside the cycle are written as NULL. For
        inserts the real values are restored by updates afterwards; for
        deletes the keys are set to NULL by updates before the rows go.
        """
        transposed = script_type is ScriptType.DELETE
        clone = self._clone_graph(self.graph)
        logger.info("%s entities in cycle. Involved tables: %s", rest, _names(dependent))
        nullable = self.find_and_remove_nullable_foreign_keys(
            dependent, fk_is_in_source=not transposed, transposed=transposed
        )
        logger.info(
            "nullable foreign keys: %s",
            {t.name: sorted(c.name for c in cols) for t, cols in nullable.items()},
        )
        overrides = {t: {c.name: "null" for c in cols} for t, cols in nullable.items()}

        if script_type is ScriptType.INSERT:
            rest = self._write_independent_entities(sink, dependent, self.graph, apply_filters, overrides)
            sink.sync()
            self._update_nullable_foreign_keys(sink, clone, nullable)
        else:
            self._update_nullable_foreign_keys(sink, clone, nullable, overrides)
            sink.sync()
            rest = self._write_independent_entities(sink, dependent, self.graph, apply_filters, overrides)

        clone.delete()
        sink.sync()
        return rest

    def find_and_remove_nullable_foreign_keys(
        self, tables: Set[Table], fk_is_in_source: bool, transposed: bool = False
    ) -> Dict[Table, Set[Column]]:
        """
        Collect the nullable foreign-key columns of associations inside
        ``tables`` and drop the edges of these associations from the graph.
        """
        result: Dict[Table, Set[Column]] = {}
        for table in sorted(tables):
            for a in table.associations:
                if a.source not in tables or a.destination not in tables:
                    continue
                if not a.insert_destination_before_source(transposed):
                    continue
                mapping = a.source_to_destination_key_mapping()
                if not mapping:
                    continue
                fk = list(mapping.keys()) if fk_is_in_source else list(mapping.values())
                if all(c.nullable for c in fk):
                    owner = a.source if fk_is_in_source else a.destination
                    result.setdefault(owner, set()).update(fk)
                    self.graph.remove_dependencies(a)
        return result

    def _update_nullable_foreign_keys(
        self,
        sink: RowSinkFactory,
        graph: EntityGraph,
        nullable: Mapping[Table, Set[Column]],
        overrides: Optional[Mapping[Table, Mapping[str, str]]] = None,
    ) -> None:
        jobs = []
        for table in sorted(nullable):
            columns = sorted(nullable[table], key=lambda c: c.name)
            reader = sink.create_updater(table, columns, CYCLE_REASON)
            jobs.append(
                partial(
                    graph.read_entity_columns,
                    table,
                    columns,
                    reader,
                    (overrides or {}).get(table),
                )
            )
        self.job_manager.execute_jobs(jobs)

    def _cycle_error(self, rest: int, dependent: Set[Table], transposed: bool) -> CyclicDependencyError:
        cycle = get_cycle(dependent, transposed) or set(dependent)
        title = f"{rest} entities not exported due to cyclic dependencies.\n"
        message = (
            title
            + ("Table" if len(cycle) == 1 else "Tables")
            + f" with cyclic dependencies: {_names(cycle)}"
        )
        logger.error(message)

        paths: List[List[str]] = []
        if not self.cancellation.is_cancelled:
            try:
                logger.info("starting cycle analysis...")
                self.listeners.fire_new_stage("cycle error, analysing...", True, False)
                found = find_cycle(
                    cycle,
                    timeout_s=self.settings.cycle_search_timeout_s,
                    transposed=transposed,
                    cancellation=self.cancellation,
                )
                paths = [[t.name for t in path] for path in found]
                if paths:
                    lines = [title + "Paths:"]
                    for i, path in enumerate(paths):
                        if i >= 30:
                            lines.append("...")
                            break
                        lines.append("[ " + " -> ".join(path) + " ]")
                    message = (
                        "\n".join(lines)
                        + "\n\nConsider disabling topological sorting (subsetting.no_sorting)."
                    )
            except CancellationError:
                logger.info("cycle analysis cancelled")
            except Exception as exc:
                logger.warning("cycle analysis failed: %s", exc)
        return CyclicDependencyError(message, (t.name for t in cycle), paths, rest)

    # ------------------------------------------------------------------ #
    # Hierarchy
    # ------------------------------------------------------------------ #

    def write_hierarchy(self, sink: HierarchySink, tables: Iterable[Table], subjects: Iterable[Table]) -> None:
        """
        Write root rows with their aggregated rows nested below them.

        Raises :class:`CyclicDependencyError` if rows of cyclically
        aggregated tables could not be reached from any root.
        """
        tables = set(tables)
        self.add_dependencies(tables, treat_aggregation=True)
        self._runstats()
        self._remove_single_row_cycles(tables)

        ordered = self._hierarchy_order(tables, set(subjects))
        cyclic = self.cyclic_aggregated_tables(tables)
        logger.info("cyclic aggregated tables: %s", _names(cyclic))

        for table in ordered:
            self.graph.mark_roots(table)
        try:
            for table in ordered:
                logger.info("exporting table %s", table.name)
                roots = CollectingReader()
                self.graph.read_marked_entities(
                    table, roots, self._hierarchy_selection(table), order_by_pk=True
                )
                for row in roots.rows:
                    self._write_row(sink, tables, table, None, row, 0)
        finally:
            sink.close()
        self._check_completeness(cyclic)

    def _hierarchy_selection(self, table: Table) -> List[ColumnElement]:
        keys = [
            literal_column(f"T.{c.name}").label(KEY_PREFIX + label_name(c.name))
            for c in table.primary_key
        ]
        return filtered_selection(table, "T") + keys

    def _write_row(
        self,
        sink: HierarchySink,
        tables: Set[Table],
        table: Table,
        association: Optional[Association],
        row: Mapping[str, Any],
        depth: int,
    ) -> None:
        self.cancellation.check()
        key = {
            label_name(c.name): row[KEY_PREFIX + label_name(c.name)] for c in table.primary_key
        }
        visible = {k: v for k, v in row.items() if not k.startswith(KEY_PREFIX)}
        sink.start_row(table, association, visible, depth)
        for a in sorted(table.associations, key=lambda a: a.name):
            if a.aggregation is AggregationSchema.NONE or a.destination not in tables:
                continue
            children = CollectingReader()
            self.graph.read_dependent_entities(
                a.destination, a, key, children, self._hierarchy_selection(a.destination)
            )
            self.graph.mark_dependent_entities_as_traversed(a, key)
            for child in children.rows:
                self._write_row(sink, tables, a.destination, a, child, depth + 1)
        sink.end_row(table, association, visible, depth)

    def _hierarchy_order(self, tables: Set[Table], subjects: Set[Table]) -> List[Table]:
        """
        Subjects first, then by name; tables referencing a table not yet
        written wait for it. A second pass ignores aggregating references.
        """
        candidates = sorted(tables, key=lambda t: (t not in subjects, t.name))
        ordered: List[Table] = []
        while True:
            added: List[Table] = []
            for step in (1, 2):
                for table in candidates:
                    depends = any(
                        a.destination is not table
                        and a.insert_destination_before_source()
                        and a.destination in candidates
                        and (
                            step == 1
                            or (
                                a.aggregation is AggregationSchema.NONE
                                and a.reversal is not None
                                and a.reversal.aggregation is AggregationSchema.NONE
                            )
                        )
                        for a in table.associations
                    )
                    if not depends:
                        added.append(table)
                if added:
                    break
            if not added:
                break
            ordered += added
            candidates = [t for t in candidates if t not in added]
        if candidates:
            logger.warning("remaining tables after sorting: %s", _names(candidates))
            ordered += candidates
        return ordered

    def cyclic_aggregated_tables(self, tables: Set[Table]) -> Set[Table]:
        """Tables aggregated (transitively) by another table of the same set only."""
        cyclic = set(tables)
        while True:
            not_aggregated = {
                t
                for t in cyclic
                if not any(
                    a.reversal is not None
                    and a.reversal.aggregation is not AggregationSchema.NONE
                    and a.destination in cyclic
                    for a in t.associations
                )
            }
            if not not_aggregated:
                return cyclic
            cyclic -= not_aggregated

    def _check_completeness(self, cyclic: Set[Table]) -> None:
        data_model = self.data_model

        class _Reject:
            def read_current_row(self, row: Mapping[str, Any]) -> None:
                name = data_model.table_by_ordinal(row["to_type"]).name
                raise CyclicDependencyError(
                    f"Can't export all rows from table '{name}' due to cyclic aggregation",
                    [name],
                )

            def close(self) -> None:
                pass

        for table in sorted(cyclic):
            self.graph.read_non_traversed_dependencies(table, _Reject())
