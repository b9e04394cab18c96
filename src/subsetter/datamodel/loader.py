from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from ..config import AppSettings
from ..errors import DataModelError
from .model import AggregationSchema, Association, Cardinality, Column, DataModel, Table

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Definitions (JSON / dict input)
# ---------------------------------------------------------------------------


class ColumnDefinition(BaseModel):
    name: str
    type: str = "INTEGER"
    nullable: bool = True
    filter: Optional[str] = Field(
        default=None,
        description="SQL expression over alias T replacing the column value on export.",
    )


class TableDefinition(BaseModel):
    name: str
    columns: List[ColumnDefinition]
    primary_key: List[str] = Field(default_factory=list)
    excluded_from_deletion: bool = False


class AssociationDefinition(BaseModel):
    """
    One foreign-key style association. Its reversal is created automatically.

    ``join_condition`` uses ``A`` for ``source`` and ``B`` for ``destination``.
    ``insert_order`` tells which side must be inserted first; the usual FK
    held by the source table means ``destination_first``.
    """
    name: Optional[str] = None
    source: str
    destination: str
    join_condition: str
    cardinality: Cardinality = Cardinality.MANY_TO_ONE
    insert_order: Literal["destination_first", "source_first", "none"] = "destination_first"
    aggregation: AggregationSchema = AggregationSchema.NONE
    reversal_aggregation: AggregationSchema = AggregationSchema.NONE
    restriction: Optional[str] = None
    reversal_restriction: Optional[str] = None
    ignored: bool = False
    reversal_ignored: bool = False


class DataModelDefinition(BaseModel):
    tables: List[TableDefinition]
    associations: List[AssociationDefinition] = Field(default_factory=list)

    def build(self) -> DataModel:
        tables: Dict[str, Table] = {}
        for ordinal, definition in enumerate(self.tables, start=1):
            columns = [
                Column(c.name, c.type, c.nullable, c.filter) for c in definition.columns
            ]
            by_name = {c.name.lower(): c for c in columns}
            try:
                primary_key = [by_name[name.lower()] for name in definition.primary_key]
            except KeyError as exc:
                raise DataModelError(
                    f"primary key column {exc.args[0]!r} not found in table {definition.name!r}"
                ) from None
            if definition.name.lower() in tables:
                raise DataModelError(f"duplicate table {definition.name!r}")
            tables[definition.name.lower()] = Table(
                name=definition.name,
                ordinal=ordinal,
                columns=columns,
                primary_key=primary_key,
                excluded_from_deletion=definition.excluded_from_deletion,
            )

        associations: List[Association] = []
        for i, definition in enumerate(self.associations):
            source = _lookup(tables, definition.source)
            destination = _lookup(tables, definition.destination)
            name = definition.name or f"{source.name}_{destination.name}_{i + 1}"
            forward = Association(
                id=2 * i + 1,
                name=name,
                source=source,
                destination=destination,
                join_condition=definition.join_condition,
                cardinality=definition.cardinality,
                destination_first=definition.insert_order == "destination_first",
                source_first=definition.insert_order == "source_first",
                reversed=False,
                aggregation=definition.aggregation,
                restriction=definition.restriction,
                ignored=definition.ignored,
            )
            reversal = Association(
                id=2 * i + 2,
                name=f"inverse-{name}",
                source=destination,
                destination=source,
                join_condition=definition.join_condition,
                cardinality=definition.cardinality.reverse(),
                destination_first=forward.source_first,
                source_first=forward.destination_first,
                reversed=True,
                aggregation=definition.reversal_aggregation,
                restriction=definition.reversal_restriction,
                ignored=definition.reversal_ignored,
            )
            forward.reversal = reversal
            reversal.reversal = forward
            source.associations.append(forward)
            destination.associations.append(reversal)
            associations.extend((forward, reversal))

        return DataModel(tables.values(), associations)


class SubjectDefinition(BaseModel):
    table: str
    condition: str = ""


class ExtractionModelDefinition(BaseModel):
    data_model: DataModelDefinition
    subject: str
    condition: str = ""
    additional_subjects: List[SubjectDefinition] = Field(default_factory=list)

    def build(self) -> "ExtractionModel":
        data_model = self.data_model.build()
        return ExtractionModel(
            data_model=data_model,
            subject=data_model.table(self.subject),
            condition=self.condition,
            additional_subjects=tuple(
                Subject(data_model.table(s.table), s.condition)
                for s in self.additional_subjects
            ),
        )


def _lookup(tables: Dict[str, Table], name: str) -> Table:
    try:
        return tables[name.lower()]
    except KeyError:
        raise DataModelError(f"association refers to unknown table {name!r}") from None


# ---------------------------------------------------------------------------
# Runtime model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Subject:
    table: Table
    condition: str = ""


@dataclass(frozen=True)
class ExtractionModel:
    """Data model plus the subject condition(s) of one extraction."""
    data_model: DataModel
    subject: Table
    condition: str = ""
    additional_subjects: Tuple[Subject, ...] = ()


def parse_extraction_model(data: Union[str, bytes, dict]) -> ExtractionModel:
    """Build an :class:`ExtractionModel` from JSON text or a plain dict."""
    try:
        if isinstance(data, dict):
            definition = ExtractionModelDefinition.model_validate(data)
        else:
            definition = ExtractionModelDefinition.model_validate_json(data)
    except ValidationError as exc:
        raise DataModelError(f"invalid extraction model: {exc}") from exc
    return definition.build()


def load_extraction_model(
    path: Union[str, Path], cache: Optional["ExtractionModelCache"] = None
) -> ExtractionModel:
    """
    Load an extraction model from a JSON file.

    Parameters
    ----------
    path:
        Location of the JSON document.
    cache:
        Optional cache owned by the caller. Models are keyed by the resolved
        path and shared between runs; they are never mutated.
    """
    path = Path(path)

    def load() -> ExtractionModel:
        logger.info("loading extraction model %s", path)
        return parse_extraction_model(path.read_text(encoding="utf-8"))

    if cache is None:
        return load()
    return cache.get_or_load(str(path.resolve()), load)


class ExtractionModelCache:
    """Thread-safe, size-bounded LRU cache of parsed extraction models."""

    def __init__(self, maxsize: int) -> None:
        if maxsize < 0:
            raise ValueError("maxsize must be >= 0")
        self._maxsize = maxsize
        self._lock = Lock()
        self._models: "OrderedDict[str, ExtractionModel]" = OrderedDict()

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ExtractionModelCache":
        return cls(settings.model_cache.size)

    def get(self, key: str) -> Optional[ExtractionModel]:
        with self._lock:
            model = self._models.get(key)
            if model is not None:
                self._models.move_to_end(key)
            return model

    def put(self, key: str, model: ExtractionModel) -> None:
        if self._maxsize == 0:
            return
        with self._lock:
            self._models[key] = model
            self._models.move_to_end(key)
            while len(self._models) > self._maxsize:
                evicted, _ = self._models.popitem(last=False)
                logger.debug("evicted extraction model %s", evicted)

    def get_or_load(self, key: str, loader: Callable[[], ExtractionModel]) -> ExtractionModel:
        model = self.get(key)
        if model is None:
            model = loader()
            self.put(key, model)
        return model

    def clear(self) -> None:
        with self._lock:
            self._models.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._models)
