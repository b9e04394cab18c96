from __future__ import annotations

import logging
import secrets
from functools import partial
from threading import Lock
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from ..cancellation import CancellationHandler
from ..config import AppSettings, WorkingTableScope
from ..datamodel.loader import ExtractionModel
from ..datamodel.model import Association, Cardinality, DataModel, Table
from ..entitygraph.graph import EntityGraph, ExplainObserver, ExplainRecorder, unique_graph_id
from ..entitygraph.local import LocalDatabase
from ..entitygraph.schema import (
    WorkingTables,
    build_working_tables,
    check_working_tables,
    create_working_tables,
    drop_working_tables,
)
from ..errors import CancellationError, ConsistencyError, RowLimitExceededError
from ..jobs import JobManager
from ..session import CollectingReader, Session
from ..sqlutil import assign_parameter_values
from .emission import Emission, HierarchySink, RowSinkFactory, ScriptType
from .progress import CollectedRowsCounter, ExportStatistic, ProgressListener, ProgressListenerRegistry

logger = logging.getLogger(__name__)

StatisticsRenovator = Callable[[Session], None]


class SubsettingEngine:
    """
    Collects a referentially consistent subset and writes it in dependency order.

    One engine owns one cancellation flag and one worker pool; runs of the
    same engine must not overlap.

    Parameters
    ----------
    session:
        Source database. The working tables live in the same database
        unless the 'local' working table scope is configured.
    settings:
        Application settings; defaults are used if omitted.
    listeners:
        Progress listeners.
    statistics_renovator:
        Optional callable refreshing optimizer statistics of the working
        tables. Invoked while the graph grows; failures are logged.
    """

    def __init__(
        self,
        session: Session,
        settings: Optional[AppSettings] = None,
        *,
        job_manager: Optional[JobManager] = None,
        cancellation: Optional[CancellationHandler] = None,
        listeners: Sequence[ProgressListener] = (),
        statistics_renovator: Optional[StatisticsRenovator] = None,
    ) -> None:
        self.settings = settings or AppSettings()
        self.settings.working_tables.validate_prefix()
        self.session = session
        if cancellation is not None:
            session.cancellation = cancellation
        self.cancellation = session.cancellation
        self.job_manager = job_manager or JobManager(
            self.settings.subsetting.threads, self.cancellation
        )
        self.listeners = ProgressListenerRegistry(listeners)
        self.collected_rows = CollectedRowsCounter()
        self.listeners.add(self.collected_rows)
        self._statistics_renovator = statistics_renovator

        self._graphs: List[EntityGraph] = []
        self._graphs_lock = Lock()
        self._graph: Optional[EntityGraph] = None
        self._local: Optional[LocalDatabase] = None
        self._runstats_lock = Lock()
        self._last_runstats = 0

    def cancel(self) -> None:
        """Request cancellation; the running statement finishes first."""
        self.cancellation.cancel()

    def shutdown(self) -> None:
        self.job_manager.shutdown()

    # ------------------------------------------------------------------ #
    # Working tables
    # ------------------------------------------------------------------ #

    def working_tables(self, data_model: DataModel, prefix: Optional[str] = None) -> WorkingTables:
        wt = self.settings.working_tables
        return build_working_tables(
            data_model.universal_primary_key(),
            prefix if prefix is not None else wt.prefix,
            wt.table_schema,
        )

    def create_working_tables(self, data_model: DataModel) -> WorkingTables:
        """Provision the shared working tables used with the 'global' scope."""
        tables = self.working_tables(data_model)
        create_working_tables(self.session.engine, tables)
        return tables

    @property
    def working_session(self) -> Session:
        """Session of the database holding the working tables of the current run."""
        return self._local.session if self._local is not None else self.session

    def _provision(self, data_model: DataModel) -> WorkingTables:
        wt = self.settings.working_tables
        if wt.scope is WorkingTableScope.LOCAL:
            tables = build_working_tables(data_model.universal_primary_key(), wt.prefix)
            self._local = LocalDatabase(wt.local_url, self.cancellation)
            try:
                create_working_tables(self._local.session.engine, tables)
            except Exception:
                self._close_local()
                raise
        elif wt.scope is WorkingTableScope.SESSION:
            prefix = f"{wt.prefix}{secrets.token_hex(4)}_"
            tables = self.working_tables(data_model, prefix)
            create_working_tables(self.session.engine, tables)
        else:
            tables = self.working_tables(data_model)
            check_working_tables(self.session.engine, tables)
        return tables

    def _close_local(self) -> None:
        local, self._local = self._local, None
        if local is not None:
            local.close()

    # ------------------------------------------------------------------ #
    # Graph bookkeeping
    # ------------------------------------------------------------------ #

    def _register(self, graph: EntityGraph) -> EntityGraph:
        with self._graphs_lock:
            self._graphs.append(graph)
        return graph

    def _release(self, graph: EntityGraph) -> None:
        graph.delete()
        with self._graphs_lock:
            if graph in self._graphs:
                self._graphs.remove(graph)

    def _clone(
        self, graph: EntityGraph, on_exported: Optional[Callable[[Table, int], None]] = None
    ) -> EntityGraph:
        return self._register(graph.copy(unique_graph_id(), on_exported))

    def _runstats(self) -> None:
        graph = self._graph
        if graph is None:
            return
        with self._runstats_lock:
            total = graph.total_rowcount
            if self._last_runstats == 0 or (self._last_runstats * 2 <= total and total > 1000):
                self._last_runstats = total
                if self._statistics_renovator is None:
                    return
                logger.info("gather statistics after %s inserted rows...", total)
                try:
                    self._statistics_renovator(self.working_session)
                except Exception as exc:
                    logger.warning("unable to update table statistics: %s", exc)

    # ------------------------------------------------------------------ #
    # Run
    # ------------------------------------------------------------------ #

    def run(
        self,
        extraction_model: ExtractionModel,
        insert_sink: Optional[RowSinkFactory] = None,
        delete_sink: Optional[RowSinkFactory] = None,
        *,
        hierarchy_sink: Optional[HierarchySink] = None,
        where: Optional[str] = None,
        parameters: Optional[Mapping[str, object]] = None,
        explain_observer: Optional[ExplainObserver] = None,
    ) -> ExportStatistic:
        """
        Collect the subset defined by ``extraction_model`` and write it.

        Parameters
        ----------
        insert_sink:
            Receives the rows in insert order.
        delete_sink:
            Receives the deletable rows in delete order.
        hierarchy_sink:
            Receives the rows nested along aggregating associations
            (instead of ``insert_sink``).
        where:
            Replaces the subject condition of the model.
        parameters:
            Values for ``${name}`` placeholders in subject conditions.
        explain_observer:
            Records which association caused each collected row.
        """
        if insert_sink is not None and hierarchy_sink is not None:
            raise ValueError("insert_sink and hierarchy_sink are mutually exclusive")

        data_model = extraction_model.data_model
        tables = self._provision(data_model)
        self.collected_rows.reset()
        self._last_runstats = 0
        try:
            try:
                statistic = self._run(
                    extraction_model,
                    tables,
                    insert_sink,
                    delete_sink,
                    hierarchy_sink,
                    where,
                    parameters,
                    explain_observer,
                )
            except CancellationError:
                self._cleanup_after_cancellation()
                raise
            except Exception:
                if self.cancellation.is_cancelled:
                    self._cleanup_after_cancellation()
                else:
                    self._cleanup_after_error()
                raise
        finally:
            self._graph = None
            with self._graphs_lock:
                self._graphs = []
            scope = self.settings.working_tables.scope
            if scope is not WorkingTableScope.GLOBAL:
                try:
                    drop_working_tables(self.working_session.engine, tables)
                except Exception as exc:
                    logger.warning("unable to drop working tables: %s", exc)
            if scope is WorkingTableScope.LOCAL:
                self._close_local()
        return statistic

    def _run(
        self,
        extraction_model: ExtractionModel,
        tables: WorkingTables,
        insert_sink: Optional[RowSinkFactory],
        delete_sink: Optional[RowSinkFactory],
        hierarchy_sink: Optional[HierarchySink],
        where: Optional[str],
        parameters: Optional[Mapping[str, object]],
        explain_observer: Optional[ExplainObserver],
    ) -> ExportStatistic:
        data_model = extraction_model.data_model
        statistic = ExportStatistic()
        subjects = {extraction_model.subject} | {s.table for s in extraction_model.additional_subjects}
        data_model.check_for_primary_key(subjects)

        condition = where if where is not None else extraction_model.condition
        condition = assign_parameter_values(condition or "", parameters)

        graph = self._register(
            EntityGraph.create(
                unique_graph_id(),
                data_model,
                self.working_session,
                tables,
                source=self.session,
                transfer_batch_size=self.settings.working_tables.local_batch_size,
                update_statistics=self._runstats,
                on_exported=self._exported,
            )
        )
        self._graph = graph
        self._runstats()

        # collection
        self.listeners.fire_new_stage("collecting rows")
        completed: Set[Table] = set()
        progress = self._export_subjects(graph, extraction_model, condition, parameters, completed)
        graph.birthday_of_subject = graph.age
        total_progress = self._collect(graph, progress, completed, explain_observer)
        total_progress = data_model.normalize(total_progress)

        statistic.rows_per_table.update(self.collected_rows.counts)
        statistic.total = self.collected_rows.total
        for line in statistic.lines():
            logger.info(line)
        if explain_observer is not None:
            statistic.explanation = self._explanation(graph, total_progress, explain_observer)

        delete_graph: Optional[EntityGraph] = None
        if delete_sink is not None:
            delete_graph = self._clone(
                graph,
                partial(self._exported, counts=statistic.deleted_rows_per_table),
            )

        emission = Emission(
            graph,
            self.job_manager,
            self.settings.subsetting,
            clone_graph=self._clone,
            runstats=self._runstats,
            listeners=self.listeners,
            cancellation=self.cancellation,
        )
        if hierarchy_sink is not None:
            self.listeners.fire_new_stage("exporting rows")
            emission.write_hierarchy(hierarchy_sink, total_progress, subjects)
        elif insert_sink is not None:
            self.listeners.fire_new_stage("exporting rows")
            emission.write_entities(insert_sink, ScriptType.INSERT, total_progress)
        statistic.exported_count = graph.exported_count

        if delete_graph is not None:
            self.listeners.fire_new_stage("delete")
            self.listeners.fire_new_stage("delete-reduction")
            self._graph = delete_graph
            delete_tables = self.compute_delete_set(delete_graph, set(total_progress))
            self.listeners.fire_new_stage("writing delete-script")
            Emission(
                delete_graph,
                self.job_manager,
                self.settings.subsetting,
                clone_graph=self._clone,
                runstats=self._runstats,
                listeners=self.listeners,
                cancellation=self.cancellation,
            ).write_entities(delete_sink, ScriptType.DELETE, delete_tables)
            self._release(delete_graph)
            self._graph = graph

        if insert_sink is not None and statistic.total != statistic.exported_count:
            message = (
                f"The number of rows collected ({statistic.total}) differs from that of "
                f"the exported ones ({statistic.exported_count}).\n"
                "This may have been caused by an invalid primary key definition.\n"
                "Please note that each primary key must be unique and never null."
            )
            if self.settings.subsetting.abort_on_inconsistency:
                raise ConsistencyError(message)
            logger.warning(message)

        self._release(graph)
        self._commit_all()
        self.listeners.fire_new_stage("finished", final=True)
        return statistic

    def _exported(self, table: Table, rowcount: int, counts: Optional[Dict[str, int]] = None) -> None:
        if counts is not None:
            counts[table.name] = counts.get(table.name, 0) + rowcount
        self.listeners.fire_exported(table, rowcount)

    # ------------------------------------------------------------------ #
    # Collection
    # ------------------------------------------------------------------ #

    def _export_subjects(
        self,
        graph: EntityGraph,
        extraction_model: ExtractionModel,
        condition: str,
        parameters: Optional[Mapping[str, object]],
        completed: Set[Table],
    ) -> Set[Table]:
        """Insert the subject rows; conditions of the same table are OR-ed."""
        subjects = [
            (s.table, assign_parameter_values(s.condition, parameters))
            for s in extraction_model.additional_subjects
        ]
        subjects.append((extraction_model.subject, "" if condition.strip() == "1=1" else condition))

        per_table: Dict[Table, str] = {}
        for table, subject_condition in subjects:
            current = per_table.get(table)
            if current is not None and not current.strip():
                continue
            if subject_condition.strip():
                new = f"({subject_condition})"
                per_table[table] = new if current is None else f"{current} or {new}"
            else:
                per_table[table] = ""

        progress: Set[Table] = set()
        lock = Lock()
        today = graph.age

        def export(table: Table, table_condition: str) -> None:
            self.listeners.fire_collection_job_enqueued(today, table)
            self.listeners.fire_collection_job_started(today, table)
            rc = graph.add_entities(table, table_condition or "1=1", today)
            if rc > 0:
                with lock:
                    progress.add(table)
            self.listeners.fire_collected(today, table, rc)

        jobs = []
        for table in sorted(per_table):
            table_condition = per_table[table].strip()
            if table_condition:
                logger.info("exporting %s where %s", table.name, table_condition)
            else:
                completed.add(table)
                logger.info("exporting all %s", table.name)
            jobs.append(partial(export, table, table_condition))
        self.job_manager.execute_jobs(jobs)
        return progress

    def _collect(
        self,
        graph: EntityGraph,
        subject_progress: Set[Table],
        completed: Set[Table],
        observer: Optional[ExplainObserver],
    ) -> Set[Table]:
        """Resolve associations day by day until no new row appears."""
        today = graph.age
        graph.age = today + 1
        progress: Dict[Table, List[Association]] = {t: [] for t in subject_progress}
        total_progress: Set[Table] = set()
        while progress:
            total_progress |= progress.keys()
            logger.info("day %s, progress: %s", today, ", ".join(sorted(t.name for t in progress)))
            today += 1
            graph.age = today + 1
            progress = self.resolve_associations(graph, today, progress, completed, observer)
        logger.info("total progress: %s", ", ".join(sorted(t.name for t in total_progress)))
        return total_progress

    def resolve_associations(
        self,
        graph: EntityGraph,
        today: int,
        progress_of_yesterday: Mapping[Table, Sequence[Association]],
        completed: Set[Table],
        observer: Optional[ExplainObserver] = None,
    ) -> Dict[Table, List[Association]]:
        """
        Run one collection day.

        Returns the tables that received rows, each with the associations
        that produced them.
        """
        progress: Dict[Table, List[Association]] = {}
        lock = Lock()
        per_destination: Dict[Table, List[Callable[[], None]]] = {}

        def resolve(table: Table, association: Association) -> None:
            self._runstats()
            if association.effective_join_condition is not None:
                logger.info("resolving %s...", association)
            self.listeners.fire_collection_job_started(today, association)
            rc = graph.resolve_association(table, association, today, observer)
            self.listeners.fire_collected(today, association, rc)
            if rc >= 0:
                logger.info("%s entities found resolving %s", rc, association)
            if rc > 0:
                with lock:
                    progress.setdefault(association.destination, []).append(association)

        for table in sorted(progress_of_yesterday):
            producers = progress_of_yesterday[table]
            for association in table.associations:
                if (
                    len(producers) == 1
                    and producers[0] is association.reversal
                    and association.cardinality in (Cardinality.MANY_TO_ONE, Cardinality.ONE_TO_ONE)
                ):
                    logger.info("skip reversal association %s", association)
                    continue
                if association.destination in completed:
                    logger.info("skip association %s. All rows exported.", association)
                    continue
                if association.effective_join_condition is not None:
                    self.listeners.fire_collection_job_enqueued(today, association)
                per_destination.setdefault(association.destination, []).append(
                    partial(resolve, table, association)
                )

        def serial(jobs: List[Callable[[], None]]) -> None:
            for job in jobs:
                job()

        self.job_manager.execute_jobs(partial(serial, jobs) for jobs in per_destination.values())

        limit = self.settings.subsetting.max_total_rowcount
        if 0 < limit < graph.total_rowcount:
            raise RowLimitExceededError(f"found more than {limit} entities.")
        return progress

    def _explanation(
        self, graph: EntityGraph, tables: Iterable[Table], observer: ExplainObserver
    ) -> Dict[str, List[dict]]:
        explanation: Dict[str, List[dict]] = {}
        for table in sorted(tables):
            reader = CollectingReader()
            graph.read_provenance(table, reader)
            for row in reader.rows:
                if isinstance(observer, ExplainRecorder):
                    association = observer.association(row["association"])
                    if association is not None:
                        row["association"] = association.name
                if row.get("pre_type") is not None:
                    row["pre_type"] = graph.data_model.table_by_ordinal(row["pre_type"]).name
            explanation[table.name] = reader.rows
        return explanation

    # ------------------------------------------------------------------ #
    # Delete set
    # ------------------------------------------------------------------ #

    def compute_delete_set(self, graph: EntityGraph, all_tables: Set[Table]) -> Set[Table]:
        """
        Reduce ``graph`` to the rows that can be deleted.

        Rows of tables excluded from deletion are dropped; every other row
        referenced by a row outside the deletable set is marked with
        birthday -1, until no table needs re-checking. Returns the tables
        left to delete from.
        """
        graph.in_delete_mode = True
        all_tables = set(all_tables)
        tabu = {t for t in all_tables if t.excluded_from_deletion}
        logger.info("tabu tables: %s", ", ".join(sorted(t.name for t in tabu)) or "-")

        today = 1
        for table in sorted(tabu):
            self.listeners.fire_collection_job_enqueued(today, table)
        for table in sorted(tabu):
            self.listeners.fire_collection_job_started(today, table)
            rc = graph.delete_entities(table)
            self.listeners.fire_collected(today, table, rc)
            logger.info("excluded %s entities from %s (tabu)", rc, table.name)
            all_tables.discard(table)

        empty: Set[Table] = set()
        to_check = set(all_tables)
        first_step = True
        lock = Lock()

        def remove(
            table: Table, a: Association, marked: bool, day: int, check_next: Set[Table]
        ) -> None:
            if marked:
                self.listeners.fire_collection_job_started(day, a.reversal)
            rc = graph.remove_associated_destinations(a.reversal, marked)
            if marked:
                self.listeners.fire_collected(day, a.reversal, rc)
            if rc > 0:
                logger.info("excluded %s entities from %s referenced by %s", rc, table.name, a)
                with lock:
                    check_next.update(a2.destination for a2 in table.associations)

        while to_check:
            today += 1
            logger.info("tables to check: %s", ", ".join(sorted(t.name for t in to_check)))
            check_next: Set[Table] = set()
            counts: Dict[Table, int] = {}
            jobs = []
            for table in sorted(to_check):
                for a in table.associations:
                    if table in empty:
                        break
                    if a.reversal is None or a.reversal.ignored:
                        continue
                    if table not in counts:
                        counts[table] = graph.count_entities(table)
                    if counts[table] == 0:
                        empty.add(table)
                        break
                    if not first_step:
                        self.listeners.fire_collection_job_enqueued(today, a.reversal)
                    jobs.append(partial(remove, table, a, not first_step, today, check_next))
            self.job_manager.execute_jobs(jobs)
            to_check = check_next & all_tables
            first_step = False

        logger.info("entities to delete: %s", graph.get_size(all_tables))
        return all_tables

    # ------------------------------------------------------------------ #
    # Cleanup
    # ------------------------------------------------------------------ #

    def _delete_graphs(self) -> None:
        with self._graphs_lock:
            graphs, self._graphs = self._graphs, []
        for graph in graphs:
            graph.delete()

    def _commit_all(self) -> None:
        self.session.commit_all()
        if self.working_session is not self.session:
            self.working_session.commit_all()

    def _rollback_all(self) -> None:
        self.session.rollback_all()
        if self.working_session is not self.session:
            self.working_session.rollback_all()

    def _cleanup_after_cancellation(self) -> None:
        logger.info("cleaning up after cancellation...")
        try:
            self.cancellation.reset()
            self._rollback_all()
            self._delete_graphs()
            self._commit_all()
            logger.info("cleaned up")
            self.listeners.fire_new_stage("cancelled", error=True, final=True)
        except Exception as exc:
            logger.warning("cleanup failed: %s", exc)

    def _cleanup_after_error(self) -> None:
        logger.info("cleaning up...")
        try:
            self._rollback_all()
            self._delete_graphs()
            self._commit_all()
        except Exception as exc:
            logger.warning("cleanup failed: %s", exc)
