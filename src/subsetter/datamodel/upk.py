from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import BigInteger, Date, DateTime, Float, Numeric, String
from sqlalchemy.types import TypeEngine

from ..errors import DataModelError
from .model import Column, Table

_LENGTH_RE = re.compile(r"\((\d+)(?:\s*,\s*\d+)?\)")

_FAMILIES = (
    (("BIGINT", "INT", "INTEGER", "SMALLINT", "TINYINT", "MEDIUMINT", "SERIAL", "BIGSERIAL"), "BIGINT"),
    (("VARCHAR", "CHAR", "CHARACTER", "NVARCHAR", "NCHAR", "TEXT", "VARCHAR2", "STRING", "UUID"), "VARCHAR"),
    (("NUMERIC", "DECIMAL", "NUMBER"), "NUMERIC"),
    (("FLOAT", "REAL", "DOUBLE", "DOUBLE PRECISION"), "FLOAT"),
    (("DATE",), "DATE"),
    (("TIMESTAMP", "DATETIME"), "TIMESTAMP"),
)


def normalize_type(sql_type: str) -> tuple[str, Optional[int]]:
    """Reduce a column type to ``(family, length)``."""
    upper = sql_type.strip().upper()
    m = _LENGTH_RE.search(upper)
    length = int(m.group(1)) if m else None
    base = _LENGTH_RE.sub("", upper).strip()
    for names, family in _FAMILIES:
        if base in names:
            return family, length if family == "VARCHAR" else None
    return base, length


@dataclass(frozen=True, slots=True)
class UPKColumn:
    name: str
    family: str
    length: Optional[int] = None

    def sql_type(self) -> TypeEngine:
        if self.family == "BIGINT":
            return BigInteger()
        if self.family == "NUMERIC":
            return Numeric()
        if self.family == "FLOAT":
            return Float()
        if self.family == "DATE":
            return Date()
        if self.family == "TIMESTAMP":
            return DateTime()
        return String(self.length)


class UniversalPrimaryKey:
    """
    Column vector wide enough to hold the primary key of every table.

    Primary key columns are matched greedily, in key order, onto the first
    unused universal column of the same type family. Unmatched universal
    columns stay NULL for rows of that table.
    """

    def __init__(self, columns: Sequence[UPKColumn]) -> None:
        self.columns: List[UPKColumn] = list(columns)

    @classmethod
    def build(cls, tables: Iterable[Table]) -> "UniversalPrimaryKey":
        columns: List[UPKColumn] = []
        for table in sorted(tables):
            used: set[int] = set()
            for pk_column in table.primary_key:
                family, length = normalize_type(pk_column.type)
                index = _find_slot(columns, used, family)
                if index is None:
                    columns.append(UPKColumn(f"pk{len(columns)}", family, length))
                    index = len(columns) - 1
                elif family == "VARCHAR":
                    current = columns[index]
                    if current.length is not None and (length is None or current.length < length):
                        columns[index] = UPKColumn(current.name, family, length)
                used.add(index)
        return cls(columns)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def match(self, primary_key: Sequence[Column]) -> Dict[str, Column]:
        """Map universal column names onto the given primary key columns."""
        result: Dict[str, Column] = {}
        used: set[int] = set()
        for pk_column in primary_key:
            family, _ = normalize_type(pk_column.type)
            index = _find_slot(self.columns, used, family)
            if index is None:
                raise DataModelError(
                    f"primary key column {pk_column.name!r} ({pk_column.type}) "
                    "does not fit into the universal primary key"
                )
            used.add(index)
            result[self.columns[index].name] = pk_column
        return result

    def __repr__(self) -> str:
        return f"UniversalPrimaryKey({', '.join(c.name + ':' + c.family for c in self.columns)})"


def _find_slot(columns: Sequence[UPKColumn], used: set[int], family: str) -> Optional[int]:
    for i, c in enumerate(columns):
        if i not in used and c.family == family:
            return i
    return None
