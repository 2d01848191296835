"""Append-only history of metered token debits."""

from datetime import datetime
from typing import Protocol

from tokengate.models.tokens import TokenUsageRecord
from tokengate.services import supabase_client as db


class TokenUsageHistoryRepository(Protocol):
    """Storage contract for token usage history entries."""

    async def record(self, entry: TokenUsageRecord) -> TokenUsageRecord:
        """Append one entry."""

    async def list_for(
        self,
        identity_key: str,
        *,
        limit: int,
        offset: int = 0,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TokenUsageRecord]:
        """Entries for one identity, newest first.

        ``start`` is inclusive and ``end`` exclusive on ``created_at``.
        """


class InMemoryTokenUsageHistoryRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.entries: list[TokenUsageRecord] = []

    async def record(self, entry: TokenUsageRecord) -> TokenUsageRecord:
        self.entries.append(entry.model_copy())
        return entry

    async def list_for(
        self,
        identity_key: str,
        *,
        limit: int,
        offset: int = 0,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TokenUsageRecord]:
        matching = [
            entry
            for entry in reversed(self.entries)
            if entry.identity_key == identity_key
            and (start is None or entry.created_at >= start)
            and (end is None or entry.created_at < end)
        ]
        # Later inserts first among equal timestamps
        matching.sort(key=lambda entry: entry.created_at, reverse=True)
        return [entry.model_copy() for entry in matching[offset : offset + limit]]


class SupabaseTokenUsageHistoryRepository:
    """Supabase-backed history table."""

    def __init__(self, client, table: str) -> None:
        self.client = client
        self.table = table

    async def record(self, entry: TokenUsageRecord) -> TokenUsageRecord:
        row = await db.insert_row(self.client, self.table, entry.model_dump(mode="json"))
        return TokenUsageRecord.model_validate(row)

    async def list_for(
        self,
        identity_key: str,
        *,
        limit: int,
        offset: int = 0,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TokenUsageRecord]:
        rows = await db.select_page(
            self.client,
            self.table,
            filters={"identity_key": identity_key},
            order_by="created_at",
            limit=limit,
            offset=offset,
            gte={"created_at": start.isoformat()} if start else None,
            lt={"created_at": end.isoformat()} if end else None,
        )
        return [TokenUsageRecord.model_validate(row) for row in rows]
