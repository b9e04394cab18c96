from __future__ import annotations

"""Cycle diagnostics over the insert-order graph of a table set."""

import logging
import time
from typing import Dict, Iterable, List, Optional, Set

from ..cancellation import CancellationHandler
from ..datamodel.model import Table

logger = logging.getLogger(__name__)


def _successors(tables: Set[Table], transposed: bool) -> Dict[Table, List[Table]]:
    edges: Dict[Table, List[Table]] = {}
    for table in tables:
        targets = {
            a.destination
            for a in table.associations
            if a.destination in tables and a.insert_destination_before_source(transposed)
        }
        edges[table] = sorted(targets)
    return edges


def get_cycle(tables: Iterable[Table], transposed: bool = False) -> Set[Table]:
    """
    Reduce ``tables`` to the tables lying on (or between) dependency cycles.

    Tables without an incoming or without an outgoing edge inside the set
    are removed until a fixpoint is reached.
    """
    remaining = set(tables)
    while True:
        edges = _successors(remaining, transposed)
        has_incoming = {d for targets in edges.values() for d in targets}
        keep = {t for t in remaining if edges[t] and t in has_incoming}
        if keep == remaining:
            return remaining
        remaining = keep


def find_cycle(
    tables: Iterable[Table],
    timeout_s: float = 10.0,
    transposed: bool = False,
    max_paths: int = 31,
    cancellation: Optional[CancellationHandler] = None,
) -> List[List[Table]]:
    """
    Find elementary cycles between ``tables``.

    Each path starts and ends with the same table. The search stops after
    ``timeout_s`` seconds or ``max_paths`` paths, whichever comes first, and
    returns what it found so far.
    """
    table_set = set(tables)
    edges = _successors(table_set, transposed)
    deadline = time.monotonic() + timeout_s
    paths: List[List[Table]] = []

    ordered = sorted(table_set)
    for index, start in enumerate(ordered):
        # Cycles through an earlier start table have already been reported.
        allowed = set(ordered[index:])
        stack = [(start, iter(edges[start]))]
        on_path = [start]
        while stack:
            if time.monotonic() > deadline:
                logger.info("cycle search timed out after %.1fs", timeout_s)
                return paths
            if cancellation is not None:
                cancellation.check()
            _, successors = stack[-1]
            following = next(successors, None)
            if following is None:
                stack.pop()
                on_path.pop()
                continue
            if following is start:
                paths.append(on_path + [start])
                if len(paths) >= max_paths:
                    return paths
            elif following in allowed and following not in on_path:
                stack.append((following, iter(edges[following])))
                on_path.append(following)
    return paths
