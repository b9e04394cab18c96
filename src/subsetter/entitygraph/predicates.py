from __future__ import annotations

"""Equality predicates and select lists between table rows and entity rows."""

from typing import Any, List, Mapping

from sqlalchemy import and_
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.expression import FromClause

from ..datamodel.model import Table
from ..datamodel.upk import UniversalPrimaryKey
from ..sqlutil import label_name


def upk_columns(upk: UniversalPrimaryKey, table: Table, prefix: str = "") -> List[str]:
    """Names of the universal columns used by ``table``, in universal order."""
    match = upk.match(table.primary_key)
    return [prefix + c.name for c in upk.columns if c.name in match]


def pk_select_list(
    upk: UniversalPrimaryKey, table: Table, table_alias: FromClause, prefix: str = ""
) -> List[ColumnElement]:
    """Primary key columns of ``table_alias`` labeled with their universal names."""
    match = upk.match(table.primary_key)
    return [
        table_alias.c[match[c.name].name].label(prefix + c.name)
        for c in upk.columns
        if c.name in match
    ]


def pk_equals_entity(
    upk: UniversalPrimaryKey,
    table: Table,
    table_alias: FromClause,
    entity: FromClause,
    prefix: str = "",
) -> ColumnElement:
    """
    ``entity.<prefix><upk> = table_alias.<pk>`` for matched columns and
    ``entity.<prefix><upk> IS NULL`` for the others.
    """
    match = upk.match(table.primary_key)
    clauses = []
    for c in upk.columns:
        entity_column = entity.c[prefix + c.name]
        table_column = match.get(c.name)
        if table_column is None:
            clauses.append(entity_column.is_(None))
        else:
            clauses.append(entity_column == table_alias.c[table_column.name])
    return and_(*clauses)


def entity_equals_entity(
    upk: UniversalPrimaryKey,
    table: Table,
    left: FromClause,
    left_prefix: str,
    right: FromClause,
    right_prefix: str,
) -> ColumnElement:
    """Key equality between two working-table rows of the same table type."""
    match = upk.match(table.primary_key)
    clauses = []
    for c in upk.columns:
        left_column = left.c[left_prefix + c.name]
        right_column = right.c[right_prefix + c.name]
        if c.name in match:
            clauses.append(left_column == right_column)
        else:
            clauses.append(and_(left_column.is_(None), right_column.is_(None)))
    return and_(*clauses)


def pk_equals_values(
    upk: UniversalPrimaryKey,
    table: Table,
    entity: FromClause,
    prefix: str,
    values: Mapping[str, Any],
) -> ColumnElement:
    """
    Compare working-table key columns with the key of a row read from ``table``.

    ``values`` is a row mapping holding the primary key columns of ``table``.
    """
    match = upk.match(table.primary_key)
    clauses = []
    for c in upk.columns:
        entity_column = entity.c[prefix + c.name]
        table_column = match.get(c.name)
        if table_column is None:
            clauses.append(entity_column.is_(None))
        else:
            clauses.append(entity_column == values[label_name(table_column.name)])
    return and_(*clauses)


def pk_equals_keys(
    upk: UniversalPrimaryKey,
    table: Table,
    table_alias: FromClause,
    keys: FromClause,
    prefix: str = "",
) -> ColumnElement:
    """``table_alias.<pk> = keys.<prefix><upk>``; ``keys`` only holds the matched columns."""
    match = upk.match(table.primary_key)
    return and_(
        *[
            table_alias.c[match[c.name].name] == keys.c[prefix + c.name]
            for c in upk.columns
            if c.name in match
        ]
    )


def keys_equal_entity(
    upk: UniversalPrimaryKey,
    table: Table,
    keys: FromClause,
    keys_prefix: str,
    entity: FromClause,
    entity_prefix: str = "",
) -> ColumnElement:
    """Like :func:`pk_equals_entity`, with the key values taken from a derived table."""
    match = upk.match(table.primary_key)
    clauses = []
    for c in upk.columns:
        entity_column = entity.c[entity_prefix + c.name]
        if c.name in match:
            clauses.append(entity_column == keys.c[keys_prefix + c.name])
        else:
            clauses.append(entity_column.is_(None))
    return and_(*clauses)
