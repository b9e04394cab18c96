from .graph import EntityGraph, ExplainObserver, ExplainRecorder, unique_graph_id
from .local import LocalDatabase
from .schema import (
    WorkingTables,
    build_working_tables,
    check_working_tables,
    create_working_tables,
    drop_working_tables,
)

__all__ = [
    "EntityGraph",
    "ExplainObserver",
    "ExplainRecorder",
    "LocalDatabase",
    "WorkingTables",
    "build_working_tables",
    "check_working_tables",
    "create_working_tables",
    "drop_working_tables",
    "unique_graph_id",
]
