from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, TYPE_CHECKING

from ..errors import DataModelError

if TYPE_CHECKING:
    from .upk import UniversalPrimaryKey


class Cardinality(str, Enum):
    ONE_TO_ONE = "1:1"
    ONE_TO_MANY = "1:n"
    MANY_TO_ONE = "n:1"
    MANY_TO_MANY = "n:m"

    def reverse(self) -> "Cardinality":
        return {
            Cardinality.ONE_TO_MANY: Cardinality.MANY_TO_ONE,
            Cardinality.MANY_TO_ONE: Cardinality.ONE_TO_MANY,
        }.get(self, self)


class AggregationSchema(str, Enum):
    """How a destination row is nested into its source row in hierarchical output."""
    NONE = "none"
    IMPLICIT_LIST = "implicit_list"
    EXPLICIT_LIST = "explicit_list"
    FLAT = "flat"


@dataclass(frozen=True, slots=True)
class Column:
    name: str
    type: str = "INTEGER"
    nullable: bool = True
    filter: Optional[str] = None
    """SQL expression (alias ``T``) replacing the column value when rows are read."""


@dataclass(eq=False)
class Table:
    """
    A table of the source database.

    Tables compare by identity and sort by name. ``ordinal`` is the value
    stored in the ``type`` column of the working tables.
    """
    name: str
    ordinal: int
    columns: List[Column]
    primary_key: List[Column]
    excluded_from_deletion: bool = False
    associations: List["Association"] = field(default_factory=list, repr=False)

    def column(self, name: str) -> Column:
        for c in self.columns:
            if c.name.lower() == name.lower():
                return c
        raise DataModelError(f"table {self.name!r} has no column {name!r}")

    def has_reflexive_association(self) -> bool:
        return any(a.destination is self for a in self.associations)

    def __lt__(self, other: "Table") -> bool:
        return self.name < other.name

    def __str__(self) -> str:
        return self.name


_CONJUNCTION_RE = re.compile(r"\s+and\s+", re.IGNORECASE)
_EQUALITY_RE = re.compile(
    r"^\(?\s*([AB])\s*\.\s*(\"[^\"]+\"|[\w$]+)\s*=\s*([AB])\s*\.\s*(\"[^\"]+\"|[\w$]+)\s*\)?$",
    re.IGNORECASE,
)


@dataclass(eq=False)
class Association:
    """
    Directed association between two tables.

    ``join_condition`` is SQL over the aliases ``A`` and ``B``, where ``A``
    is the source and ``B`` the destination of the non-reversed direction.
    A reversal shares the join condition of its counterpart and has
    ``reversed=True``, so for it ``A`` denotes the destination.
    """
    id: int
    name: str
    source: Table
    destination: Table
    join_condition: str
    cardinality: Optional[Cardinality] = None
    destination_first: bool = False
    source_first: bool = False
    reversed: bool = False
    aggregation: AggregationSchema = AggregationSchema.NONE
    restriction: Optional[str] = None
    ignored: bool = False
    reversal: Optional["Association"] = field(default=None, repr=False)

    @property
    def effective_join_condition(self) -> Optional[str]:
        """Join condition including the restriction, ``None`` if ignored."""
        if self.ignored:
            return None
        if self.restriction:
            return f"({self.join_condition}) and ({self.restriction})"
        return self.join_condition

    @property
    def unrestricted_join_condition(self) -> str:
        return self.join_condition

    def insert_destination_before_source(self, transposed: bool = False) -> bool:
        return self.source_first if transposed else self.destination_first

    def insert_source_before_destination(self, transposed: bool = False) -> bool:
        return self.destination_first if transposed else self.source_first

    def source_to_destination_key_mapping(self) -> Dict[Column, Column]:
        """
        Parse ``A.x = B.y and ...`` into a mapping of source to destination columns.

        Returns an empty mapping if the join condition is not a plain
        conjunction of column equalities.
        """
        a_table = self.destination if self.reversed else self.source
        b_table = self.source if self.reversed else self.destination
        mapping: Dict[Column, Column] = {}
        for part in _CONJUNCTION_RE.split(self.join_condition.strip()):
            m = _EQUALITY_RE.match(part.strip())
            if m is None:
                return {}
            left_alias, left, right_alias, right = m.groups()
            if left_alias.upper() == right_alias.upper():
                return {}
            if left_alias.upper() == "B":
                left, right = right, left
            try:
                a_col = a_table.column(left.strip('"'))
                b_col = b_table.column(right.strip('"'))
            except DataModelError:
                return {}
            if self.reversed:
                mapping[b_col] = a_col
            else:
                mapping[a_col] = b_col
        return mapping

    def __str__(self) -> str:
        return f"{self.source.name} -> {self.destination.name} ({self.name})"


class DataModel:
    """Immutable schema graph: tables and their associations."""

    def __init__(self, tables: Iterable[Table], associations: Iterable[Association]) -> None:
        self.tables: List[Table] = sorted(tables)
        self.associations: List[Association] = list(associations)
        self._by_name: Dict[str, Table] = {t.name.lower(): t for t in self.tables}
        self._by_ordinal: Dict[int, Table] = {t.ordinal: t for t in self.tables}
        if len(self._by_name) != len(self.tables):
            raise DataModelError("duplicate table names in data model")
        if len(self._by_ordinal) != len(self.tables):
            raise DataModelError("duplicate table ordinals in data model")
        self._upk: Optional["UniversalPrimaryKey"] = None

    def table(self, name: str) -> Table:
        try:
            return self._by_name[name.lower()]
        except KeyError:
            raise DataModelError(f"unknown table {name!r}") from None

    def table_by_ordinal(self, ordinal: int) -> Table:
        try:
            return self._by_ordinal[ordinal]
        except KeyError:
            raise DataModelError(f"unknown table ordinal {ordinal}") from None

    def association(self, name: str) -> Association:
        for a in self.associations:
            if a.name == name:
                return a
        raise DataModelError(f"unknown association {name!r}")

    def get_independent_tables(
        self,
        tables: Iterable[Table],
        associations: Optional[Set[Association]] = None,
        transposed: bool = False,
    ) -> Set[Table]:
        """
        Subset of ``tables`` whose rows do not have to wait for rows of
        another table in ``tables``.

        Parameters
        ----------
        tables:
            Candidate tables.
        associations:
            If given, only these associations count as dependencies.
        transposed:
            Use the reversed insert order (delete scripts).
        """
        table_set = set(tables)
        independent: Set[Table] = set()
        for table in table_set:
            depends = False
            for a in table.associations:
                if associations is not None and a not in associations:
                    continue
                if a.destination in table_set and a.insert_destination_before_source(transposed):
                    depends = True
                    break
            if not depends:
                independent.add(table)
        return independent

    def normalize(self, tables: Iterable[Table]) -> Set[Table]:
        """Map tables onto the instances owned by this model."""
        return {self.table(t.name) for t in tables}

    def check_for_primary_key(self, tables: Iterable[Table]) -> Set[Table]:
        checked = set()
        for table in tables:
            if not table.primary_key:
                raise DataModelError(f"table {table.name!r} has no primary key")
            checked.add(table)
        return checked

    def universal_primary_key(self) -> "UniversalPrimaryKey":
        if self._upk is None:
            from .upk import UniversalPrimaryKey

            self._upk = UniversalPrimaryKey.build(self.tables)
        return self._upk
