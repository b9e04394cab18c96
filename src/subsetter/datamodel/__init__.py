from .loader import (
    DataModelDefinition,
    ExtractionModel,
    ExtractionModelCache,
    ExtractionModelDefinition,
    Subject,
    load_extraction_model,
    parse_extraction_model,
)
from .model import AggregationSchema, Association, Cardinality, Column, DataModel, Table
from .upk import UniversalPrimaryKey

__all__ = [
    "AggregationSchema",
    "Association",
    "Cardinality",
    "Column",
    "DataModel",
    "DataModelDefinition",
    "ExtractionModel",
    "ExtractionModelCache",
    "ExtractionModelDefinition",
    "Subject",
    "Table",
    "UniversalPrimaryKey",
    "load_extraction_model",
    "parse_extraction_model",
]
