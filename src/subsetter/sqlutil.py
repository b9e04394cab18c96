from __future__ import annotations

"""SQL text helpers: pseudo columns, parameters, identifiers and selections."""

import re
from typing import List, Mapping, Optional

from sqlalchemy import Boolean, column, literal_column, table as table_clause
from sqlalchemy.sql.elements import ColumnElement, quoted_name
from sqlalchemy.sql.selectable import Alias, TableClause

from .datamodel.model import Table

_PSEUDO_A_DISTANCE = re.compile(r"\bA\s*\.\s*\$distance\b", re.IGNORECASE)
_PSEUDO_B_DISTANCE = re.compile(r"\bB\s*\.\s*\$distance\b", re.IGNORECASE)
_PSEUDO_A_IS_SUBJECT = re.compile(r"\bA\s*\.\s*\$is_subject\b", re.IGNORECASE)
_PSEUDO_B_IS_SUBJECT = re.compile(r"\bB\s*\.\s*\$is_subject\b", re.IGNORECASE)
_PSEUDO_IN_DELETE_MODE = re.compile(r"\$in_delete_mode\b", re.IGNORECASE)

_PARAMETER_RE = re.compile(r"\$\{([^}\s]+)\}")


def resolve_pseudo_columns(
    condition: str,
    entity_a: Optional[str],
    entity_b: Optional[str],
    today: int,
    birthday_of_subject: int,
    birthday_column: str = "birthday",
    in_delete_mode: bool = False,
) -> str:
    """
    Replace ``A.$distance``, ``B.$is_subject``, ``$in_delete_mode`` etc.

    Parameters
    ----------
    condition:
        Join condition or restriction.
    entity_a, entity_b:
        Alias of the entity row joined with ``A`` / ``B``. ``None`` means the
        row is about to be born ``today``.
    today:
        Current day of the collection.
    birthday_of_subject:
        Day on which the subject rows were collected.
    birthday_column:
        ``birthday`` or ``orig_birthday`` (for copied graphs).
    """
    def distance(alias: Optional[str]) -> str:
        if alias is None:
            return str(today - birthday_of_subject)
        return f"({alias}.{birthday_column} - {birthday_of_subject})"

    def is_subject(alias: Optional[str]) -> str:
        if alias is None:
            return f"({today - birthday_of_subject} = 0)"
        return f"({alias}.{birthday_column} - {birthday_of_subject} = 0)"

    condition = _PSEUDO_A_DISTANCE.sub(lambda _: distance(entity_a), condition)
    condition = _PSEUDO_B_DISTANCE.sub(lambda _: distance(entity_b), condition)
    condition = _PSEUDO_A_IS_SUBJECT.sub(lambda _: is_subject(entity_a), condition)
    condition = _PSEUDO_B_IS_SUBJECT.sub(lambda _: is_subject(entity_b), condition)
    condition = _PSEUDO_IN_DELETE_MODE.sub(
        lambda _: "(1=1)" if in_delete_mode else "(1=0)", condition
    )
    return condition


def assign_parameter_values(condition: str, parameters: Optional[Mapping[str, object]]) -> str:
    """Substitute ``${name}`` placeholders; unknown names are left untouched."""
    if not parameters or not condition:
        return condition

    def replace(m: re.Match) -> str:
        name = m.group(1)
        if name in parameters:
            return str(parameters[name])
        return m.group(0)

    return _PARAMETER_RE.sub(replace, condition)


def identifier(name: str) -> quoted_name:
    """Identifier rendered exactly as written in the model."""
    return quoted_name(name, quote=False)


def label_name(name: str) -> str:
    """Result column name for a (possibly quoted) identifier."""
    if len(name) > 1 and name[0] == name[-1] and name[0] in "\"`[":
        return name[1:-1]
    if name.startswith("[") and name.endswith("]"):
        return name[1:-1]
    return name


def sql_table(table: Table) -> TableClause:
    return table_clause(
        identifier(table.name), *[column(identifier(c.name)) for c in table.columns]
    )


def aliased(table: Table, alias: str) -> Alias:
    return sql_table(table).alias(identifier(alias))


def sql_condition(condition: str) -> ColumnElement:
    """Wrap free SQL text as a boolean expression (no bind parameter parsing)."""
    return literal_column(f"({condition})", Boolean)


def filtered_selection(
    table: Table,
    alias: str = "T",
    overrides: Optional[Mapping[str, str]] = None,
    apply_filters: bool = True,
) -> List[ColumnElement]:
    """
    Select list for reading rows of ``table``.

    Column filters replace the column value unless ``apply_filters`` is
    false. ``overrides`` maps column names to SQL expressions that take
    precedence over filters; the table metadata itself is never changed.
    """
    selection = []
    for c in table.columns:
        expression = None
        if overrides and c.name in overrides:
            expression = overrides[c.name]
        elif apply_filters and c.filter is not None:
            expression = c.filter
            if expression.strip().lower().startswith("select"):
                expression = f"({expression})"
        if expression is None:
            expression = f"{alias}.{c.name}"
        selection.append(literal_column(expression).label(label_name(c.name)))
    return selection
