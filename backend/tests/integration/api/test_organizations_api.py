"""
Integration tests for organization subscription and entitlement endpoints.

WHAT: Tests for subscribing organizations, reading their plan features
and limits, and a user's merged entitlements.

WHY: Organization plans are shared by every member. The access policy
(owners and managers write, members read, admins do both) and the
feature merge across organizations are what downstream services rely on.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.models.organization import OrganizationRole
from billing_core.models.subscription import SubscriptionStatus
from tests.factories import OrganizationFactory, PlanFactory

ADMIN = {"roles": ["administrator"]}


class TestOrganizationSubscribe:
    """POST /api/organizations/{id}/subscribe"""

    @pytest.mark.asyncio
    async def test_owner_subscribes_free_plan(
        self, client: AsyncClient, db_session: AsyncSession, auth_headers
    ):
        org = await OrganizationFactory.create(db_session, owner_user_id="owner-1")
        plan = await PlanFactory.create(db_session, name="Team Free")

        response = await client.post(
            f"/api/organizations/{org.id}/subscribe",
            json={"plan_id": str(plan.id)},
            headers=auth_headers("owner-1"),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["organization_id"] == str(org.id)
        assert data["status"] == "active"
        assert data["created_by_user_id"] == "owner-1"

    @pytest.mark.asyncio
    async def test_plain_member_forbidden(
        self, client: AsyncClient, db_session: AsyncSession, auth_headers
    ):
        org = await OrganizationFactory.create(db_session)
        await OrganizationFactory.add_member(db_session, org, "member-1")
        plan = await PlanFactory.create(db_session)

        response = await client.post(
            f"/api/organizations/{org.id}/subscribe",
            json={"plan_id": str(plan.id)},
            headers=auth_headers("member-1"),
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_second_active_subscription_conflicts(
        self, client: AsyncClient, db_session: AsyncSession, auth_headers
    ):
        org = await OrganizationFactory.create(db_session)
        plan = await PlanFactory.create(db_session)
        await OrganizationFactory.subscribe(db_session, org, plan)

        response = await client.post(
            f"/api/organizations/{org.id}/subscribe",
            json={"plan_id": str(plan.id)},
            headers=auth_headers("owner-1"),
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_admin_assigned_requires_admin(
        self, client: AsyncClient, db_session: AsyncSession, auth_headers
    ):
        org = await OrganizationFactory.create(db_session)
        plan = await PlanFactory.create_paid(db_session)

        denied = await client.post(
            f"/api/organizations/{org.id}/subscribe",
            json={"plan_id": str(plan.id), "admin_assigned": True},
            headers=auth_headers("owner-1"),
        )
        granted = await client.post(
            f"/api/organizations/{org.id}/subscribe",
            json={"plan_id": str(plan.id), "admin_assigned": True},
            headers=auth_headers("admin-1", **ADMIN),
        )

        assert denied.status_code == 403
        assert granted.status_code == 201
        assert granted.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_unknown_organization(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        plan = await PlanFactory.create(db_session)

        response = await client.post(
            f"/api/organizations/{uuid.uuid4()}/subscribe",
            json={"plan_id": str(plan.id)},
            headers=auth_headers("admin-1", **ADMIN),
        )

        assert response.status_code == 404


class TestOrganizationReads:
    """Subscription, features and limits."""

    @pytest.mark.asyncio
    async def test_member_reads_features_and_limits(
        self, client: AsyncClient, db_session: AsyncSession, auth_headers
    ):
        org = await OrganizationFactory.create(db_session)
        await OrganizationFactory.add_member(db_session, org, "member-1")
        plan = await PlanFactory.create(db_session, features=["analytics"], max_concurrent_terminals=4)
        await OrganizationFactory.subscribe(db_session, org, plan)

        features = await client.get(f"/api/organizations/{org.id}/features", headers=auth_headers("member-1"))
        limits = await client.get(f"/api/organizations/{org.id}/limits", headers=auth_headers("member-1"))

        assert features.status_code == 200
        assert features.json()["has_subscription"] is True
        assert features.json()["features"]["features"] == ["analytics"]
        assert limits.json()["limits"]["max_concurrent_terminals"] == 4

    @pytest.mark.asyncio
    async def test_features_without_subscription(
        self, client: AsyncClient, db_session: AsyncSession, auth_headers
    ):
        org = await OrganizationFactory.create(db_session)

        response = await client.get(f"/api/organizations/{org.id}/features", headers=auth_headers("owner-1"))

        assert response.status_code == 200
        assert response.json() == {"organization_id": str(org.id), "has_subscription": False, "features": {}}

    @pytest.mark.asyncio
    async def test_outsider_forbidden(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        org = await OrganizationFactory.create(db_session)

        response = await client.get(f"/api/organizations/{org.id}/subscription", headers=auth_headers("stranger"))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_cancel_immediately(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        org = await OrganizationFactory.create(db_session)
        await OrganizationFactory.add_member(db_session, org, "manager-1", role=OrganizationRole.MANAGER)
        plan = await PlanFactory.create(db_session)
        await OrganizationFactory.subscribe(db_session, org, plan)

        response = await client.post(
            f"/api/organizations/{org.id}/subscription/cancel",
            json={"at_period_end": False},
            headers=auth_headers("manager-1"),
        )

        assert response.status_code == 200
        assert response.json()["status"] == SubscriptionStatus.CANCELLED.value


class TestEffectiveFeatures:
    """GET /api/users/me/..."""

    @pytest.mark.asyncio
    async def test_merged_across_organizations(
        self, client: AsyncClient, db_session: AsyncSession, auth_headers
    ):
        basic = await PlanFactory.create(db_session, name="Basic", priority=1, features=["export"], max_courses=10)
        pro = await PlanFactory.create(db_session, name="Pro", priority=5, features=["analytics"], max_courses=-1)
        first = await OrganizationFactory.create(db_session, name="First")
        second = await OrganizationFactory.create(db_session, name="Second")
        await OrganizationFactory.add_member(db_session, first, "user-1")
        await OrganizationFactory.add_member(db_session, second, "user-1")
        await OrganizationFactory.subscribe(db_session, first, basic)
        await OrganizationFactory.subscribe(db_session, second, pro)

        response = await client.get("/api/users/me/effective-features", headers=auth_headers("user-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["highest_plan_name"] == "Pro"
        assert data["all_features"] == ["analytics", "export"]
        assert data["limits"]["max_courses"] == -1
        assert len(data["organizations"]) == 2

    @pytest.mark.asyncio
    async def test_no_organization_plan(self, client: AsyncClient, auth_headers):
        response = await client.get("/api/users/me/effective-features", headers=auth_headers("user-1"))

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_feature_check(self, client: AsyncClient, db_session: AsyncSession, auth_headers):
        plan = await PlanFactory.create(db_session, features=["analytics"])
        org = await OrganizationFactory.create(db_session, name="Provider")
        await OrganizationFactory.add_member(db_session, org, "user-1")
        await OrganizationFactory.subscribe(db_session, org, plan)

        has = await client.get("/api/users/me/features/analytics", headers=auth_headers("user-1"))
        lacks = await client.get("/api/users/me/features/export", headers=auth_headers("user-1"))

        assert has.json() == {
            "feature": "analytics",
            "has_access": True,
            "organization_id": str(org.id),
            "organization_name": "Provider",
        }
        assert lacks.json()["has_access"] is False
