from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from threading import RLock
from typing import Any, Iterator, List, Mapping, Optional, Protocol

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Executable

from .cancellation import CancellationHandler
from .config import AppSettings
from .errors import SQLExecutionError

logger = logging.getLogger(__name__)


class RowReader(Protocol):
    """
    Sink for rows streamed by :meth:`Session.execute_query`.

    The row mapping is only valid during the callback.
    """

    def read_current_row(self, row: Mapping[str, Any]) -> None:
        """Consume the current row."""

    def close(self) -> None:
        """Called exactly once after the last row."""


class CollectingReader:
    """Row reader keeping a copy of every row."""

    def __init__(self) -> None:
        self.rows: List[dict] = []

    def read_current_row(self, row: Mapping[str, Any]) -> None:
        self.rows.append(dict(row))

    def close(self) -> None:
        pass


@dataclass(frozen=True, slots=True)
class Dialect:
    """
    Database quirks relevant to statement generation.

    limit_transaction_size:
        Maximum number of rows inserted by one statement (0 = unlimited).
    avoid_left_join:
        Detect duplicates with NOT EXISTS instead of a LEFT JOIN.
    """
    name: str = "default"
    limit_transaction_size: int = 0
    avoid_left_join: bool = False

    @classmethod
    def for_engine(
        cls,
        engine: Engine,
        *,
        limit_transaction_size: int = 0,
        avoid_left_join: Optional[bool] = None,
    ) -> "Dialect":
        name = engine.dialect.name
        if avoid_left_join is None:
            avoid_left_join = name == "oracle"
        return cls(name, limit_transaction_size, avoid_left_join)


class Session:
    """
    Executes generated statements against the source database.

    In non-transactional mode every statement runs in its own short
    transaction. In transactional mode all threads share one connection
    with an open transaction until :meth:`commit_all` or
    :meth:`rollback_all`; statements on it are serialized, so rows
    written by one worker are visible to the others.
    """

    def __init__(
        self,
        engine: Engine,
        dialect: Optional[Dialect] = None,
        *,
        transactional: bool = False,
        cancellation: Optional[CancellationHandler] = None,
    ) -> None:
        self.engine = engine
        self.dialect = dialect or Dialect.for_engine(engine)
        self.transactional = transactional
        self.cancellation = cancellation or CancellationHandler()

        self._lock = RLock()
        self._shared: Optional[Connection] = None

    @classmethod
    def from_settings(
        cls, settings: AppSettings, cancellation: Optional[CancellationHandler] = None
    ) -> "Session":
        db = settings.database
        kwargs: dict = {}
        if not db.url.startswith("sqlite"):
            kwargs.update(pool_size=db.pool_size, max_overflow=db.max_overflow)
        engine = create_engine(db.url, **kwargs)
        dialect = Dialect.for_engine(
            engine,
            limit_transaction_size=db.limit_transaction_size,
            avoid_left_join=db.avoid_left_join,
        )
        return cls(engine, dialect, transactional=db.transactional, cancellation=cancellation)

    # ------------------------------------------------------------------ #
    # Connections
    # ------------------------------------------------------------------ #

    @contextmanager
    def _connection(self, write: bool) -> Iterator[Connection]:
        if self.transactional:
            with self._lock:
                if self._shared is None or self._shared.closed:
                    self._shared = self.engine.connect()
                    self._shared.begin()
                yield self._shared
        elif write:
            with self.engine.begin() as conn:
                yield conn
        else:
            with self.engine.connect() as conn:
                yield conn

    def commit_all(self) -> None:
        self._finish(commit=True)

    def rollback_all(self) -> None:
        self._finish(commit=False)

    def _finish(self, commit: bool) -> None:
        with self._lock:
            conn, self._shared = self._shared, None
            if conn is None:
                return
            try:
                if commit:
                    conn.commit()
                else:
                    conn.rollback()
            except SQLAlchemyError as exc:
                raise SQLExecutionError(
                    f"{'commit' if commit else 'rollback'} failed: {exc}"
                ) from exc
            finally:
                conn.close()

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def execute_update(self, statement: Executable) -> int:
        """Execute a DML/DDL statement and return the affected row count."""
        try:
            with self._connection(write=True) as conn:
                result = conn.execute(statement)
                return max(result.rowcount, 0)
        except SQLAlchemyError as exc:
            logger.error("statement failed: %s", exc)
            raise SQLExecutionError(str(exc), _statement_text(statement)) from exc

    def execute_query(
        self,
        statement: Executable,
        reader: RowReader,
        fallback: Optional[Executable] = None,
    ) -> int:
        """
        Stream the rows of ``statement`` to ``reader``.

        If the statement fails and a ``fallback`` is given, the fallback is
        executed instead. Returns the number of rows read.
        """
        try:
            try:
                return self._stream(statement, reader)
            except SQLAlchemyError as exc:
                if fallback is None:
                    logger.error("query failed: %s", exc)
                    raise SQLExecutionError(str(exc), _statement_text(statement)) from exc
                logger.warning("query failed, retrying with fallback (%s)", exc)
            try:
                return self._stream(fallback, reader)
            except SQLAlchemyError as exc:
                logger.error("fallback query failed: %s", exc)
                raise SQLExecutionError(str(exc), _statement_text(fallback)) from exc
        finally:
            reader.close()

    def _stream(self, statement: Executable, reader: RowReader) -> int:
        count = 0
        with self._connection(write=False) as conn:
            for row in conn.execute(statement):
                self.cancellation.check()
                reader.read_current_row(row._mapping)
                count += 1
        return count

    def read_all(self, statement: Executable) -> List[dict]:
        reader = CollectingReader()
        self.execute_query(statement, reader)
        return reader.rows

    def scalar(self, statement: Executable) -> Any:
        rows = self.read_all(statement)
        if not rows:
            return None
        return next(iter(rows[0].values()))


def _statement_text(statement: Executable) -> Optional[str]:
    try:
        return str(statement)
    except SQLAlchemyError:
        return None
