from __future__ import annotations

"""Progress listeners and the export statistic."""

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence, Union

from ..datamodel.model import Association, Table

logger = logging.getLogger(__name__)

Source = Union[Table, Association]


class ProgressListener(Protocol):
    """Receives progress events of a subsetting run. All methods are optional hooks."""

    def collection_job_enqueued(self, day: int, source: Source) -> None: ...

    def collection_job_started(self, day: int, source: Source) -> None: ...

    def collected(self, day: int, source: Source, rowcount: int) -> None: ...

    def exported(self, table: Table, rowcount: int) -> None: ...

    def new_stage(self, stage: str, error: bool = False, final: bool = False) -> None: ...


class ProgressListenerRegistry:
    """
    Fans events out to the registered listeners.

    A failing listener is logged and otherwise ignored.
    """

    def __init__(self, listeners: Sequence[ProgressListener] = ()) -> None:
        self._listeners: List[ProgressListener] = list(listeners)
        self._lock = Lock()

    def add(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.remove(listener)

    def _fire(self, event: str, *args) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            handler = getattr(listener, event, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                logger.exception("progress listener %r failed on %s", listener, event)

    def fire_collection_job_enqueued(self, day: int, source: Source) -> None:
        self._fire("collection_job_enqueued", day, source)

    def fire_collection_job_started(self, day: int, source: Source) -> None:
        self._fire("collection_job_started", day, source)

    def fire_collected(self, day: int, source: Source, rowcount: int) -> None:
        self._fire("collected", day, source, rowcount)

    def fire_exported(self, table: Table, rowcount: int) -> None:
        self._fire("exported", table, rowcount)

    def fire_new_stage(self, stage: str, error: bool = False, final: bool = False) -> None:
        self._fire("new_stage", stage, error, final)


class CollectedRowsCounter:
    """Listener counting collected rows per destination table."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.counts: Dict[str, int] = {}

    def collected(self, day: int, source: Source, rowcount: int) -> None:
        if rowcount <= 0:
            return
        table = source.destination if isinstance(source, Association) else source
        with self._lock:
            self.counts[table.name] = self.counts.get(table.name, 0) + rowcount

    def reset(self) -> None:
        with self._lock:
            self.counts.clear()

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self.counts.values())


@dataclass(slots=True)
class ExportStatistic:
    """Result of :meth:`SubsettingEngine.run`."""
    total: int = 0
    """Number of collected rows."""
    rows_per_table: Dict[str, int] = field(default_factory=dict)
    exported_count: int = 0
    deleted_rows_per_table: Dict[str, int] = field(default_factory=dict)
    explanation: Optional[Dict[str, List[dict]]] = None

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted_rows_per_table.values())

    def lines(self) -> List[str]:
        """Human readable summary, one table per line."""
        out = [f"Exported Rows: {self.total}"]
        width = max((len(n) for n in self.rows_per_table), default=0)
        for name in sorted(self.rows_per_table):
            out.append(f"    {name.ljust(width)}  {self.rows_per_table[name]}")
        if self.deleted_rows_per_table:
            out.append(f"Deleted Rows: {self.total_deleted}")
            width = max(len(n) for n in self.deleted_rows_per_table)
            for name in sorted(self.deleted_rows_per_table):
                out.append(f"    {name.ljust(width)}  {self.deleted_rows_per_table[name]}")
        return out
