"""Test fixtures for the dashboard aggregation layer.

Provides:
- A fixed wall clock (2025-03-15 12:00 UTC) shared by date windows and targets
- Seed records in the spellings the real backends use (canonical, SQL, CSV)
- A MemoryRecordProvider routed for every entity type
- A DashboardServices graph over that provider, closed after each test
- The FastAPI app and an httpx AsyncClient over ASGITransport
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.salesops.config import Settings
from src.salesops.main import create_app
from src.salesops.providers.base import ProviderRegistry
from src.salesops.providers.memory import MemoryRecordProvider
from src.salesops.records.schemas import EntityType, Requester, Role
from src.salesops.services import DashboardServices

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def iso(delta: timedelta) -> str:
    return (NOW - delta).isoformat()


# ── Seed data ────────────────────────────────────────────────────────────────


def seed_records() -> dict[EntityType, list[dict[str, Any]]]:
    """Raw records as the backends hand them over (mixed field spellings)."""
    return {
        EntityType.USERS: [
            {"id": "u-mgr", "name": "Mia Manager", "role": "manager"},
            {"id": "u-tl", "name": "Tom Leader", "role": "team-leader", "team": "alpha"},
            {"id": "u-s1", "name": "Sam Seller", "role": "salesman", "teamId": "alpha"},
            {"id": "u-s2", "name": "Sue Seller", "role": "salesman", "teamId": "beta"},
        ],
        EntityType.DEALS: [
            {
                "id": "d1",
                "dealRef": "D-1",
                "customerName": "Acme",
                "amountPaid": "1200.50",
                "salesAgentId": "u-s1",
                "salesAgentName": "Sam Seller",
                "salesTeam": "alpha",
                "serviceTier": "gold",
                "status": "closed",
                "createdAt": iso(timedelta(days=1)),
            },
            {
                "id": "d2",
                "dealRef": "D-2",
                "customerName": "Beta Co",
                "amountPaid": 800,
                "salesAgentId": "u-s2",
                "salesAgentName": "Sue Seller",
                "salesTeam": "beta",
                "serviceTier": "silver",
                "createdAt": iso(timedelta(days=10)),
            },
            {
                "id": "d3",
                "dealRef": "D-3",
                "customerName": "Gamma",
                "amountPaid": 500,
                "salesAgentId": "u-s2",
                "salesAgentName": "Sue Seller",
                "closingAgentId": "u-s1",
                "salesTeam": "beta",
                "serviceTier": "gold",
                "createdAt": iso(timedelta(days=40)),
            },
            {
                # relational column spellings
                "DealID": "D-4",
                "customer_name": "Delta",
                "amount": "$2,000",
                "SalesAgentID": "u-tl",
                "sales_team": "alpha",
                "created_at": iso(timedelta(days=2)),
            },
            {"customerName": "No reference"},
        ],
        EntityType.CALLBACKS: [
            {
                "id": "c1",
                "customerName": "Ann",
                "phone": "555-0001",
                "salesAgentId": "u-s1",
                "salesTeam": "alpha",
                "status": "pending",
                "createdAt": iso(timedelta(days=1)),
            },
            {
                "id": "c2",
                "customerName": "Bob",
                "phone": "555-0002",
                "salesAgentId": "u-s2",
                "salesTeam": "beta",
                "status": "completed",
                "createdAt": iso(timedelta(days=3)),
            },
            {
                "id": "c3",
                "customerName": "Cid",
                "phone": "555-0003",
                "salesAgentId": "u-s1",
                "salesTeam": "alpha",
                "status": "cancelled",
                "createdAt": iso(timedelta(days=5)),
            },
        ],
        EntityType.TARGETS: [
            {
                "id": "t1",
                "agentId": "u-s1",
                "agentName": "Sam Seller",
                "managerId": "u-tl",
                "monthlyTarget": 10000,
                "dealsTarget": 10,
                "period": "2025-03",
            },
            {
                "id": "t2",
                "agentId": "u-s2",
                "agentName": "Sue Seller",
                "managerId": "u-mgr",
                "monthlyTarget": 1000,
                "dealsTarget": 2,
                "period": "2025-03",
                "currentSales": 800,
                "currentDeals": 1,
            },
        ],
        EntityType.NOTIFICATIONS: [
            {
                "id": "n1",
                "title": "Welcome",
                "message": "Quarter kick-off",
                "recipients": ["ALL"],
                "timestamp": iso(timedelta(hours=1)),
            },
            {
                "id": "n2",
                "title": "Personal",
                "message": "Call Ann back",
                "recipients": ["u-s1"],
                "timestamp": iso(timedelta(hours=2)),
            },
            {
                "id": "n3",
                "title": "For Sue",
                "message": "Already handled",
                "recipients": "u-s2",
                "read": True,
                "timestamp": iso(timedelta(hours=3)),
            },
        ],
    }


# ── Requesters ───────────────────────────────────────────────────────────────

MANAGER = Requester(role=Role.MANAGER, user_id="u-mgr")
TEAM_LEADER = Requester(role=Role.TEAM_LEADER, user_id="u-tl", team="alpha")
SALESMAN = Requester(role=Role.SALESMAN, user_id="u-s1")
OTHER_SALESMAN = Requester(role=Role.SALESMAN, user_id="u-s2")
NO_ROLE = Requester(role=None, user_id="u-mgr")


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENTITY_SOURCES={entity_type.value: ["memory"] for entity_type in EntityType},
        SQL_DATABASE_URL="",
        DOCUMENT_STORE_URL="",
        LEGACY_CSV_DIR="",
        CACHE_INVALIDATION_CHANNEL="",
        SENTRY_DSN="",
        PROVIDER_TIMEOUT_MS=200,
        BROADCAST_INTERVAL_SECONDS=30.0,
        NOTIFICATION_STREAM_INTERVAL_SECONDS=30.0,
    )


@pytest.fixture
def memory_provider() -> MemoryRecordProvider:
    return MemoryRecordProvider(records=seed_records())


@pytest.fixture
def registry(memory_provider) -> ProviderRegistry:
    return ProviderRegistry({entity_type: [memory_provider] for entity_type in EntityType})


@pytest_asyncio.fixture
async def services(settings, registry) -> AsyncGenerator[DashboardServices, None]:
    """Service graph over the seeded memory provider."""
    graph = DashboardServices.build(settings, registry=registry, clock=fixed_clock)
    yield graph
    await graph.close()


@pytest.fixture
def app(settings, services):
    return create_app(settings, services)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
