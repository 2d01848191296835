"""
Async Supabase helpers shared by the Supabase-backed repositories.

Thin wrappers around the Supabase async client: RPC calls into the Postgres
functions that carry the atomic updates, plus the plain table reads/writes
used by the flag source, the plan resolver, the monthly voice job and the
token usage history.
"""

from typing import Any

import structlog
from supabase._async.client import AsyncClient as AsyncSupabaseClient

logger = structlog.get_logger(__name__)


def _first_row(data: Any) -> dict | None:
    if data is None:
        return None
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


# ---------------------------------------------------------------------------
# rpc
# ---------------------------------------------------------------------------


async def call_rpc_single(
    client: AsyncSupabaseClient, function: str, params: dict[str, Any]
) -> dict | None:
    """Call a Postgres function and return its first row, or None when it returns nothing."""
    response = await client.rpc(function, params).execute()
    return _first_row(response.data)


# ---------------------------------------------------------------------------
# tables
# ---------------------------------------------------------------------------


async def select_rows(
    client: AsyncSupabaseClient, table: str, *, filters: dict[str, Any] | None = None
) -> list[dict]:
    """Select all rows from ``table`` matching equality ``filters``."""
    query = client.table(table).select("*")
    for column, value in (filters or {}).items():
        query = query.eq(column, value)
    response = await query.execute()
    return response.data or []


async def select_latest_row(
    client: AsyncSupabaseClient,
    table: str,
    *,
    filters: dict[str, Any],
    in_filters: dict[str, list[Any]] | None = None,
    order_by: str = "created_at",
) -> dict | None:
    """Newest row matching the filters, ordered by ``order_by`` descending."""
    query = client.table(table).select("*")
    for column, value in filters.items():
        query = query.eq(column, value)
    for column, values in (in_filters or {}).items():
        query = query.in_(column, values)
    response = await query.order(order_by, desc=True).limit(1).execute()
    return _first_row(response.data)


async def insert_row(client: AsyncSupabaseClient, table: str, row: dict[str, Any]) -> dict:
    """Insert one row and return it as stored."""
    response = await client.table(table).insert(row).execute()
    return _first_row(response.data) or row


async def select_page(
    client: AsyncSupabaseClient,
    table: str,
    *,
    filters: dict[str, Any],
    order_by: str,
    limit: int,
    offset: int = 0,
    gte: dict[str, Any] | None = None,
    lt: dict[str, Any] | None = None,
) -> list[dict]:
    """One page of rows matching the filters, ordered by ``order_by`` descending."""
    query = client.table(table).select("*")
    for column, value in filters.items():
        query = query.eq(column, value)
    for column, value in (gte or {}).items():
        query = query.gte(column, value)
    for column, value in (lt or {}).items():
        query = query.lt(column, value)
    response = await query.order(order_by, desc=True).range(offset, offset + limit - 1).execute()
    return response.data or []


async def upsert_row(
    client: AsyncSupabaseClient, table: str, row: dict[str, Any], *, on_conflict: str
) -> dict:
    """Insert or update a row keyed by ``on_conflict``."""
    response = await client.table(table).upsert(row, on_conflict=on_conflict).execute()
    return _first_row(response.data) or row


async def delete_rows_before(
    client: AsyncSupabaseClient, table: str, *, column: str, value: Any
) -> int:
    """Delete rows whose ``column`` sorts strictly before ``value``. Returns the row count."""
    response = await client.table(table).delete().lt(column, value).execute()
    deleted = len(response.data or [])
    logger.debug("supabase_rows_deleted", table=table, column=column, before=value, count=deleted)
    return deleted
