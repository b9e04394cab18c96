from .cycles import find_cycle, get_cycle
from .emission import Emission, HierarchySink, RowSinkFactory, ScriptType
from .engine import SubsettingEngine
from .progress import (
    CollectedRowsCounter,
    ExportStatistic,
    ProgressListener,
    ProgressListenerRegistry,
)

__all__ = [
    "CollectedRowsCounter",
    "Emission",
    "ExportStatistic",
    "HierarchySink",
    "ProgressListener",
    "ProgressListenerRegistry",
    "RowSinkFactory",
    "ScriptType",
    "SubsettingEngine",
    "find_cycle",
    "get_cycle",
]
