from __future__ import annotations

"""Row sink writing rows as SQL DML statements to a text stream."""

import logging
from datetime import date, datetime, time
from decimal import Decimal
from threading import Lock
from typing import Any, Literal, Mapping, Sequence, TextIO

from ..datamodel.model import Column, Table
from ..sqlutil import label_name

logger = logging.getLogger(__name__)

SYNC_MARKER = "-- sync\n"


def sql_literal(value: Any) -> str:
    """Render a Python value as a portable SQL literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex().upper() + "'"
    if isinstance(value, datetime):
        return f"'{value.isoformat(sep=' ')}'"
    if isinstance(value, (date, time)):
        return f"'{value.isoformat()}'"
    return "'" + str(value).replace("'", "''") + "'"


class _StatementReader:
    def __init__(self, writer: "DMLScriptWriter", table: Table) -> None:
        self.writer = writer
        self.table = table
        self.count = 0

    def read_current_row(self, row: Mapping[str, Any]) -> None:
        self.writer.write(self.statement(row))
        self.count += 1

    def statement(self, row: Mapping[str, Any]) -> str:
        raise NotImplementedError

    def where_pk(self, row: Mapping[str, Any]) -> str:
        return " and ".join(
            f"{c.name}={sql_literal(row[label_name(c.name)])}" for c in self.table.primary_key
        )

    def close(self) -> None:
        logger.debug("%s rows written for %s", self.count, self.table.name)


class _InsertReader(_StatementReader):
    def statement(self, row: Mapping[str, Any]) -> str:
        columns = ", ".join(c.name for c in self.table.columns)
        values = ", ".join(sql_literal(row[label_name(c.name)]) for c in self.table.columns)
        return f"Insert into {self.table.name}({columns}) values ({values});\n"


class _DeleteReader(_StatementReader):
    def statement(self, row: Mapping[str, Any]) -> str:
        return f"Delete from {self.table.name} where {self.where_pk(row)};\n"


class _UpdateReader(_StatementReader):
    def __init__(self, writer: "DMLScriptWriter", table: Table, columns: Sequence[Column], reason: str) -> None:
        super().__init__(writer, table)
        self.columns = list(columns)
        self.reason = reason

    def statement(self, row: Mapping[str, Any]) -> str:
        assignments = ", ".join(
            f"{c.name}={sql_literal(row[label_name(c.name)])}" for c in self.columns
        )
        return (
            f"Update {self.table.name} set {assignments} "
            f"where {self.where_pk(row)}; -- {self.reason}\n"
        )


class DMLScriptWriter:
    """
    :class:`~subsetter.subsetting.emission.RowSinkFactory` producing an SQL script.

    ``mode`` selects INSERT or DELETE statements for :meth:`create`; updaters
    always produce UPDATE statements. Statements of concurrent readers are
    written whole, one at a time.
    """

    def __init__(self, stream: TextIO, mode: Literal["insert", "delete"] = "insert") -> None:
        if mode not in ("insert", "delete"):
            raise ValueError(f"unknown mode {mode!r}")
        self.stream = stream
        self.mode = mode
        self._lock = Lock()

    def write(self, text: str) -> None:
        with self._lock:
            self.stream.write(text)

    def create(self, table: Table) -> _StatementReader:
        if self.mode == "insert":
            return _InsertReader(self, table)
        return _DeleteReader(self, table)

    def create_updater(self, table: Table, columns: Sequence[Column], reason: str) -> _StatementReader:
        return _UpdateReader(self, table, columns, reason)

    def sync(self) -> None:
        self.write(SYNC_MARKER)
