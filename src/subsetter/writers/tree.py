from __future__ import annotations

"""Hierarchy sink building nested rows, serializable as JSON."""

import json
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, TextIO

from ..datamodel.model import AggregationSchema, Association, Table


class TreeWriter:
    """
    :class:`~subsetter.subsetting.emission.HierarchySink` collecting rows as dicts.

    Root rows are grouped per table. An aggregated row is attached to its
    parent under the association name: as a list for list aggregations,
    or merged into the parent's fields for flat aggregation.
    """

    def __init__(self) -> None:
        self.roots: Dict[str, List[Dict[str, Any]]] = {}
        self._stack: List[Dict[str, Any]] = []
        self._lock = Lock()
        self.closed = False

    def start_row(
        self, table: Table, association: Optional[Association], row: Mapping[str, Any], depth: int
    ) -> None:
        node: Dict[str, Any] = dict(row)
        with self._lock:
            del self._stack[depth:]
            if depth == 0 or association is None:
                self.roots.setdefault(table.name, []).append(node)
            else:
                parent = self._stack[depth - 1]
                if association.aggregation is AggregationSchema.FLAT:
                    for key, value in row.items():
                        parent.setdefault(f"{association.name}.{key}", value)
                else:
                    parent.setdefault(association.name, []).append(node)
            self._stack.append(node)

    def end_row(
        self, table: Table, association: Optional[Association], row: Mapping[str, Any], depth: int
    ) -> None:
        with self._lock:
            del self._stack[depth:]

    def close(self) -> None:
        self.closed = True

    def dump(self, stream: TextIO, indent: Optional[int] = 2) -> None:
        json.dump(self.roots, stream, indent=indent, default=str)
