try:
    from ._version import version as __version__  # populated by setuptools-scm
except ModuleNotFoundError:
    __version__ = "0.0.0"

from .errors import (
    CancellationError,
    ConsistencyError,
    CyclicDependencyError,
    DataModelError,
    RowLimitExceededError,
    SetupError,
    SQLExecutionError,
    SubsettingError,
)

__all__ = [
    "__version__",
    "CancellationError",
    "ConsistencyError",
    "CyclicDependencyError",
    "DataModelError",
    "RowLimitExceededError",
    "SetupError",
    "SQLExecutionError",
    "SubsettingError",
]
