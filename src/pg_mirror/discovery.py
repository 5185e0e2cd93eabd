"""
Table discovery and row counts.

Counts come from pg_stat_user_tables, so they are estimates that cost a
catalog read instead of a table scan. Failures return an empty list: the
counts are informational and must not stop a pull or push.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .backend import ExecutionBackend, get_backend
from .errors import CommandError

logger = logging.getLogger(__name__)


@dataclass
class TableInfo:
    schema: str
    name: str
    row_count: int = 0

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _in_list(values: Sequence[str]) -> str:
    return ", ".join(_literal(value) for value in values)


async def _query(url: str, sql: str, backend: Optional[ExecutionBackend]) -> Optional[List[List[str]]]:
    """Run a query with psql, return rows split on '|' or None on failure"""
    backend = backend or get_backend()
    try:
        result = await backend.run_client_command("psql", [
            url,
            "--tuples-only",
            "--no-align",
            "--field-separator", "|",
            "-c", sql,
        ])
    except CommandError as err:
        logger.debug(f"Query failed: {err}")
        return None

    return [line.split("|") for line in result.stdout.splitlines() if line.strip()]


async def discover_tables(url: str, schemas: Sequence[str] = ("public",),
                          exclude_tables: Sequence[str] = (),
                          backend: Optional[ExecutionBackend] = None) -> List[TableInfo]:
    """List base tables in `schemas` from information_schema"""
    if not schemas:
        return []
    sql = (
        "SELECT table_schema, table_name FROM information_schema.tables "
        "WHERE table_type = 'BASE TABLE' "
        f"AND table_schema IN ({_in_list(schemas)}) "
        "AND table_name NOT LIKE 'pg_%'"
    )
    if exclude_tables:
        sql += f" AND table_name NOT IN ({_in_list(exclude_tables)})"
    sql += " ORDER BY table_schema, table_name;"

    rows = await _query(url, sql, backend)
    if rows is None:
        return []
    return [TableInfo(row[0].strip(), row[1].strip()) for row in rows if len(row) >= 2]


async def get_table_counts(url: str, schemas: Sequence[str] = ("public",),
                           exclude_tables: Sequence[str] = (),
                           backend: Optional[ExecutionBackend] = None) -> List[TableInfo]:
    """Approximate row counts per table, or [] if the database can't be queried"""
    if not schemas:
        return []
    sql = (
        "SELECT schemaname, relname, n_live_tup FROM pg_stat_user_tables "
        f"WHERE schemaname IN ({_in_list(schemas)})"
    )
    if exclude_tables:
        sql += f" AND relname NOT IN ({_in_list(exclude_tables)})"
    sql += " ORDER BY schemaname, relname;"

    rows = await _query(url, sql, backend)
    if rows is None:
        return []

    tables = []
    for row in rows:
        if len(row) < 3:
            continue
        count = row[2].strip()
        tables.append(TableInfo(row[0].strip(), row[1].strip(), int(count) if count.isdigit() else 0))
    return tables


def total_rows(tables: Sequence[TableInfo]) -> int:
    return sum(table.row_count for table in tables)
