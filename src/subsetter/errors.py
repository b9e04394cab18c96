from __future__ import annotations

"""Exception hierarchy shared by all subsetting components."""

from typing import Iterable, Optional, Sequence


class SubsettingError(Exception):
    """Base exception for subsetting failures."""
    pass


class SetupError(SubsettingError):
    """Working tables are missing or do not match the current data model."""
    pass


class SQLExecutionError(SubsettingError):
    """A generated statement failed at the database."""

    def __init__(self, message: str, statement: Optional[str] = None) -> None:
        super().__init__(message)
        self.statement = statement


class CyclicDependencyError(SubsettingError):
    """
    Emission stalled because the remaining rows depend on each other.

    Attributes
    ----------
    tables:
        Names of the tables on the dependency cycles that blocked emission.
        Tables whose rows only wait for a cyclic table are not included.
    paths:
        Concrete table cycles found by the (time-boxed) cycle analysis.
        May be empty if the analysis failed or was skipped.
    remaining:
        Number of rows that could not be written.
    """

    def __init__(
        self,
        message: str,
        tables: Iterable[str],
        paths: Sequence[Sequence[str]] = (),
        remaining: int = 0,
    ) -> None:
        super().__init__(message)
        self.tables = frozenset(tables)
        self.paths = [list(p) for p in paths]
        self.remaining = remaining


class ConsistencyError(SubsettingError):
    """Number of collected rows differs from the number of exported rows."""
    pass


class CancellationError(SubsettingError):
    """The run was cancelled by the user."""
    pass


class RowLimitExceededError(SubsettingError):
    """Collection produced more rows than the configured ceiling."""
    pass


class DataModelError(SubsettingError):
    """Invalid or inconsistent schema metadata."""
    pass
