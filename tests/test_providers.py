"""Tests for the Record Providers and the provider registry.

- SqlRecordProvider runs against a temporary SQLite file through aiosqlite
- DocumentRecordProvider talks to an httpx.MockTransport
- LegacyCsvProvider reads CSV files written to tmp_path
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import Boolean, Column, MetaData, Table, Text
from sqlalchemy.ext.asyncio import create_async_engine

from src.salesops.config import Settings
from src.salesops.errors import ReadOnlyProviderError, UnknownEntityTypeError
from src.salesops.providers import (
    DocumentRecordProvider,
    LegacyCsvProvider,
    MemoryRecordProvider,
    ProviderRegistry,
    SqlRecordProvider,
)
from src.salesops.providers.document import TransientDocumentStoreError
from src.salesops.records.field_mapping import from_document_fields, to_document_fields
from src.salesops.records.normalizer import RecordNormalizer
from src.salesops.records.schemas import EntityType

DOCS_URL = "https://docs.test/v1/projects/sales/databases/(default)/documents"


# ── Relational store ─────────────────────────────────────────────────────────


metadata = MetaData()

deals_table = Table(
    "deals",
    metadata,
    Column("id", Text, primary_key=True),
    Column("DealID", Text),
    Column("customerName", Text),
    Column("amountPaid", Text),
    Column("SalesAgentID", Text),
    Column("salesAgentName", Text),
    Column("ClosingAgentID", Text),
    Column("salesTeam", Text),
    Column("serviceTier", Text),
    Column("status", Text),
    Column("signupDate", Text),
    Column("created_at", Text),
)

notifications_table = Table(
    "notifications",
    metadata,
    Column("id", Text, primary_key=True),
    Column("title", Text),
    Column("message", Text),
    Column("to", Text),
    Column("type", Text),
    Column("priority", Text),
    Column("isRead", Boolean),
    Column("timestamp", Text),
)


@pytest_asyncio.fixture
async def sql_provider(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sales.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.execute(
            deals_table.insert().values(
                id="d1",
                DealID="D-1",
                customerName="Acme",
                amountPaid="1200.50",
                SalesAgentID="u1",
                salesTeam="alpha",
                status="active",
                created_at="2025-03-01T09:00:00Z",
            )
        )
    provider = SqlRecordProvider(engine)
    yield provider
    await provider.close()


class TestSqlProvider:
    @pytest.mark.asyncio
    async def test_fetch_returns_raw_rows(self, sql_provider):
        [row] = await sql_provider.fetch(EntityType.DEALS)

        assert row["DealID"] == "D-1"
        deal = RecordNormalizer().normalize(EntityType.DEALS, row)
        assert deal.deal_ref == "D-1"
        assert deal.amount_paid == Decimal("1200.50")
        assert deal.sales_agent_id == "u1"

    @pytest.mark.asyncio
    async def test_create_uses_legacy_column_names(self, sql_provider):
        normalizer = RecordNormalizer()
        deal = normalizer.normalize(
            EntityType.DEALS,
            {"dealRef": "D-2", "customerName": "Beta", "amountPaid": "99.90", "salesAgentId": "u2"},
        )
        row = await sql_provider.create(EntityType.DEALS, deal.to_wire())

        assert row["DealID"] == "D-2"
        assert row["SalesAgentID"] == "u2"
        rows = {r["id"]: r for r in await sql_provider.fetch(EntityType.DEALS)}
        assert normalizer.normalize(EntityType.DEALS, rows["D-2"]).amount_paid == Decimal("99.90")

    @pytest.mark.asyncio
    async def test_recipients_are_stored_as_json(self, sql_provider):
        normalizer = RecordNormalizer()
        notification = normalizer.normalize(
            EntityType.NOTIFICATIONS,
            {"id": "n1", "title": "Hi", "recipients": ["ALL", "u2"]},
        )
        await sql_provider.create(EntityType.NOTIFICATIONS, notification.to_wire())

        [row] = await sql_provider.fetch(EntityType.NOTIFICATIONS)
        assert json.loads(row["to"]) == ["ALL", "u2"]
        assert normalizer.normalize(EntityType.NOTIFICATIONS, row).recipients == ["ALL", "u2"]

    @pytest.mark.asyncio
    async def test_update_returns_refreshed_row(self, sql_provider):
        row = await sql_provider.update(EntityType.DEALS, "d1", {"status": "closed"})
        assert row["status"] == "closed"
        assert row["DealID"] == "D-1"

    @pytest.mark.asyncio
    async def test_update_missing_row(self, sql_provider):
        assert await sql_provider.update(EntityType.DEALS, "nope", {"status": "closed"}) is None


# ── Document store ───────────────────────────────────────────────────────────


def document(collection: str, doc_id: str, **fields) -> dict:
    return {
        "name": f"projects/sales/databases/(default)/documents/{collection}/{doc_id}",
        "fields": to_document_fields(fields),
        "createTime": "2025-03-01T08:00:00Z",
    }


class DocumentStoreDouble:
    """Routes MockTransport requests; scripted statuses are consumed first."""

    def __init__(self, statuses: list[int] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses = list(statuses or [])

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.statuses:
            return httpx.Response(self.statuses.pop(0), json={"error": "scripted"})

        if request.method == "GET" and request.url.path.endswith("/targets"):
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(
                    200, json={"documents": [document("targets", "t2", agentId="u2", period="2025-03")]}
                )
            return httpx.Response(
                200,
                json={
                    "documents": [document("targets", "t1", agentId="u1", period="2025-03")],
                    "nextPageToken": "p2",
                },
            )
        if request.method == "POST":
            body = json.loads(request.content)
            doc_id = request.url.params["documentId"]
            return httpx.Response(
                200, json={"name": f"documents/targets/{doc_id}", "fields": body["fields"]}
            )
        if request.method == "PATCH":
            if request.url.path.endswith("/missing"):
                return httpx.Response(404, json={"error": "not found"})
            body = json.loads(request.content)
            return httpx.Response(200, json={"name": request.url.path, "fields": body["fields"]})
        return httpx.Response(404)


def document_provider(double: DocumentStoreDouble, max_retries: int = 2) -> DocumentRecordProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(double), base_url=DOCS_URL)
    return DocumentRecordProvider(
        DOCS_URL, client=client, max_retries=max_retries, retry_wait_seconds=0
    )


class TestDocumentProvider:
    @pytest.mark.asyncio
    async def test_fetch_follows_page_tokens(self):
        double = DocumentStoreDouble()
        records = await document_provider(double).fetch(EntityType.TARGETS)

        assert [r["id"] for r in records] == ["t1", "t2"]
        assert records[0]["agentId"] == "u1"
        assert records[0]["createdAt"] == "2025-03-01T08:00:00Z"
        assert len(double.requests) == 2

    @pytest.mark.asyncio
    async def test_transient_status_is_retried(self):
        double = DocumentStoreDouble(statuses=[503, 429])
        records = await document_provider(double).fetch(EntityType.TARGETS)

        assert len(records) == 2
        assert len(double.requests) == 4

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        double = DocumentStoreDouble(statuses=[503, 503, 503, 503])
        with pytest.raises(TransientDocumentStoreError):
            await document_provider(double, max_retries=2).fetch(EntityType.TARGETS)
        assert len(double.requests) == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        double = DocumentStoreDouble(statuses=[403])
        with pytest.raises(httpx.HTTPStatusError):
            await document_provider(double).fetch(EntityType.TARGETS)
        assert len(double.requests) == 1

    @pytest.mark.asyncio
    async def test_create_posts_typed_fields(self):
        double = DocumentStoreDouble()
        stored = await document_provider(double).create(
            EntityType.TARGETS, {"id": "t9", "agentId": "u9", "dealsTarget": 4, "period": "2025-04"}
        )

        request = double.requests[0]
        assert request.url.params["documentId"] == "t9"
        fields = json.loads(request.content)["fields"]
        assert fields["dealsTarget"] == {"integerValue": "4"}
        assert stored["agentId"] == "u9"

    @pytest.mark.asyncio
    async def test_update_sends_field_mask(self):
        double = DocumentStoreDouble()
        stored = await document_provider(double).update(
            EntityType.TARGETS, "t1", {"currentDeals": 2, "status": "behind"}
        )

        request = double.requests[0]
        assert request.url.params.get_list("updateMask.fieldPaths") == ["currentDeals", "status"]
        assert request.url.params["currentDocument.exists"] == "true"
        assert stored["currentDeals"] == 2
        assert stored["id"] == "t1"

    @pytest.mark.asyncio
    async def test_update_missing_document(self):
        provider = document_provider(DocumentStoreDouble())
        assert await provider.update(EntityType.TARGETS, "missing", {"status": "behind"}) is None

    def test_value_codec(self):
        moment = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)
        encoded = to_document_fields(
            {"amount": Decimal("10.50"), "when": moment, "to": ["ALL"], "read": False, "none": None}
        )
        assert encoded["amount"] == {"stringValue": "10.50"}
        assert encoded["when"] == {"timestampValue": "2025-03-01T08:00:00Z"}
        assert encoded["to"] == {"arrayValue": {"values": [{"stringValue": "ALL"}]}}
        assert encoded["read"] == {"booleanValue": False}
        assert from_document_fields(
            {"n": {"integerValue": "7"}, "m": {"mapValue": {"fields": {"x": {"doubleValue": 1.5}}}}}
        ) == {"n": 7, "m": {"x": 1.5}}


# ── Legacy CSV ───────────────────────────────────────────────────────────────


class TestLegacyCsvProvider:
    @pytest.mark.asyncio
    async def test_reads_rows_with_bom_and_padded_headers(self, tmp_path):
        (tmp_path / "deals.csv").write_text(
            "DealID, customer_name ,amount,SalesAgentID\nD-7,Old Corp,$1500,u3\n",
            encoding="utf-8-sig",
        )
        provider = LegacyCsvProvider(tmp_path)
        [row] = await provider.fetch(EntityType.DEALS)

        assert row["DealID"] == "D-7"
        assert row["customer_name"] == "Old Corp"

    @pytest.mark.asyncio
    async def test_quoted_money_normalizes(self, tmp_path):
        (tmp_path / "deals.csv").write_text(
            'DealID,customer_name,amount,SalesAgentID\nD-8,Quote Co,"$1,500.25",u3\n',
            encoding="utf-8",
        )
        [row] = await LegacyCsvProvider(tmp_path).fetch(EntityType.DEALS)
        deal = RecordNormalizer().normalize(EntityType.DEALS, row)
        assert deal.amount_paid == Decimal("1500.25")

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        assert await LegacyCsvProvider(tmp_path).fetch(EntityType.CALLBACKS) == []

    @pytest.mark.asyncio
    async def test_writes_are_refused(self, tmp_path):
        provider = LegacyCsvProvider(tmp_path)
        assert provider.writable is False
        with pytest.raises(ReadOnlyProviderError):
            await provider.create(EntityType.DEALS, {"id": "x"})


# ── Registry ─────────────────────────────────────────────────────────────────


class TestRegistry:
    def test_from_settings_skips_unconfigured(self):
        memory = MemoryRecordProvider()
        settings = Settings(ENTITY_SOURCES={"deals": ["sql", "memory"], "users": ["memory"]})
        registry = ProviderRegistry.from_settings(settings, {"memory": memory})

        assert registry.providers_for(EntityType.DEALS) == [memory]
        assert registry.providers_for(EntityType.CALLBACKS) == []
        assert registry.entity_types_for(memory) == [EntityType.DEALS, EntityType.USERS]
        assert registry.all_providers() == [memory]

    def test_unknown_entity_type_in_settings(self):
        settings = Settings(ENTITY_SOURCES={"invoices": ["memory"]})
        with pytest.raises(UnknownEntityTypeError):
            ProviderRegistry.from_settings(settings, {})

    def test_write_target_skips_read_only(self, tmp_path):
        legacy = LegacyCsvProvider(tmp_path)
        memory = MemoryRecordProvider()
        registry = ProviderRegistry({EntityType.DEALS: [legacy, memory]})

        assert registry.write_target(EntityType.DEALS) is memory
        with pytest.raises(ReadOnlyProviderError):
            ProviderRegistry({EntityType.DEALS: [legacy]}).write_target(EntityType.DEALS)
