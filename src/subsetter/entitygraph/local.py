from __future__ import annotations

"""
Working tables kept in a database of their own.

With the 'local' scope the entity graph lives in a separate database
(a temporary SQLite file unless a URL is configured) and the source
database is only read. Keys cross between the two databases as derived
tables built from literal rows, a batch at a time.
"""

import logging
import os
import shutil
import tempfile
from typing import Any, Iterator, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import create_engine, literal, select, union_all
from sqlalchemy.sql.expression import Subquery
from sqlalchemy.types import TypeEngine

from ..cancellation import CancellationHandler
from ..session import RowReader, Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalDatabase:
    """
    Database holding the working tables of one run.

    Parameters
    ----------
    url:
        SQLAlchemy URL; ``None`` creates a SQLite file in a temporary
        directory that is removed by :meth:`close`.
    cancellation:
        Shared with the source session.
    """

    def __init__(self, url: Optional[str], cancellation: Optional[CancellationHandler] = None) -> None:
        self._directory: Optional[str] = None
        if url is None:
            self._directory = tempfile.mkdtemp(prefix="subsetter-")
            url = f"sqlite:///{os.path.join(self._directory, 'working.db')}"
        logger.info("working tables in local database %s", url)
        self.session = Session(create_engine(url), cancellation=cancellation)

    def close(self) -> None:
        self.session.engine.dispose()
        if self._directory is not None:
            shutil.rmtree(self._directory, ignore_errors=True)
            self._directory = None


def inline_view(name: str, rows: Sequence[Mapping[str, Any]], types: Mapping[str, TypeEngine]) -> Subquery:
    """``(select <literals> union all select <literals> ...) name``, one select per row."""
    if not rows:
        raise ValueError("an inline view needs at least one row")
    selects = [
        select(*[literal(row[column], type_).label(column) for column, type_ in types.items()])
        for row in rows
    ]
    if len(selects) == 1:
        return selects[0].subquery(name)
    return union_all(*selects).subquery(name)


def batches(rows: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


class KeepOpen:
    """Passes rows on but leaves closing ``reader`` to the caller."""

    def __init__(self, reader: RowReader) -> None:
        self.reader = reader

    def read_current_row(self, row: Mapping[str, Any]) -> None:
        self.reader.read_current_row(row)

    def close(self) -> None:
        pass
