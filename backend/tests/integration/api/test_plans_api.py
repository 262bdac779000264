"""
Integration tests for plan and feature catalog endpoints.

WHAT: Tests for listing, creating and updating plans, price quotes and
the feature catalog.

WHY: Plans are admin-managed. Regular users may only read them, and a
plan naming features the catalog does not know is rejected before it is
stored.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.services.feature_catalog import DEFAULT_FEATURES, FeatureCatalogService
from tests.factories import PlanFactory


ADMIN = {"roles": ["administrator"]}

TIERS = [
    {"min_quantity": 1, "max_quantity": 9, "unit_price": 1000},
    {"min_quantity": 10, "max_quantity": 0, "unit_price": 800},
]


async def seed_catalog(db_session: AsyncSession) -> None:
    await FeatureCatalogService(db_session).seed_default_features()
    await db_session.commit()


class TestListPlans:
    """GET /api/plans"""

    @pytest.mark.asyncio
    async def test_active_plans_only(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        await PlanFactory.create(db_session, name="Free")
        await PlanFactory.create(db_session, name="Legacy", is_active=False)

        response = await client.get("/api/plans", headers=auth_headers("user-1"))

        assert response.status_code == 200
        assert [p["name"] for p in response.json()["plans"]] == ["Free"]

    @pytest.mark.asyncio
    async def test_admin_includes_inactive(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        await PlanFactory.create(db_session, name="Free")
        await PlanFactory.create(db_session, name="Legacy", is_active=False)

        response = await client.get(
            "/api/plans", params={"include_inactive": True}, headers=auth_headers("admin-1", **ADMIN)
        )

        assert response.json()["total"] == 2

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client: AsyncClient):
        response = await client.get("/api/plans")

        assert response.status_code == 401


class TestCreatePlan:
    """POST /api/plans"""

    @pytest.mark.asyncio
    async def test_admin_creates_plan(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        await seed_catalog(db_session)

        response = await client.post(
            "/api/plans",
            json={"name": "Pro", "unit_price": 1200, "features": ["export"]},
            headers=auth_headers("admin-1", **ADMIN),
        )

        assert response.status_code == 201
        assert response.json()["features"] == ["export"]
        assert response.json()["is_active"] is True

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, client: AsyncClient, auth_headers):
        response = await client.post("/api/plans", json={"name": "Pro"}, headers=auth_headers("user-1"))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_feature(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        await seed_catalog(db_session)

        response = await client.post(
            "/api/plans",
            json={"name": "Pro", "features": ["teleport"]},
            headers=auth_headers("admin-1", **ADMIN),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "UnknownFeatureError"

    @pytest.mark.asyncio
    async def test_negative_price_rejected(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/plans", json={"name": "Pro", "unit_price": -1}, headers=auth_headers("admin-1", **ADMIN)
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_plan(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        await seed_catalog(db_session)
        plan = await PlanFactory.create(db_session)

        response = await client.patch(
            f"/api/plans/{plan.id}",
            json={"description": "Updated", "features": ["export"]},
            headers=auth_headers("admin-1", **ADMIN),
        )

        assert response.status_code == 200
        assert response.json()["description"] == "Updated"


class TestPriceQuote:
    """GET /api/plans/{id}/price"""

    @pytest.mark.asyncio
    async def test_tiered_quote(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        plan = await PlanFactory.create(db_session, name="Team", unit_price=1000, pricing_tiers=TIERS)

        response = await client.get(
            f"/api/plans/{plan.id}/price", params={"quantity": 12}, headers=auth_headers("user-1")
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 9 * 1000 + 3 * 800
        assert data["flat_total"] == 12000
        assert data["savings"] == 600
        assert [t["range"] for t in data["tiers"]] == ["1-9", "10+"]

    @pytest.mark.asyncio
    async def test_zero_quantity(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        plan = await PlanFactory.create(db_session, unit_price=1000)

        response = await client.get(
            f"/api/plans/{plan.id}/price", params={"quantity": 0}, headers=auth_headers("user-1")
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_plan(self, client: AsyncClient, auth_headers):
        response = await client.get(f"/api/plans/{uuid.uuid4()}/price", headers=auth_headers("user-1"))

        assert response.status_code == 404


class TestFeatureCatalog:
    """GET /api/features"""

    @pytest.mark.asyncio
    async def test_list_features(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        await seed_catalog(db_session)

        response = await client.get("/api/features", headers=auth_headers("user-1"))

        assert response.status_code == 200
        assert response.json()["total"] == len(DEFAULT_FEATURES)
