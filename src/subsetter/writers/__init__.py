from .dml import DMLScriptWriter, sql_literal
from .tree import TreeWriter

__all__ = ["DMLScriptWriter", "TreeWriter", "sql_literal"]
