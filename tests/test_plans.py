"""
Tests for the pricing catalog and plan renewal.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from app.exceptions import DuplicateResourceError, PlanNotFoundError
from app.models.api import PlanCreateRequest, PlanType, PlanUpdateRequest
from app.services.plans import PlanService, default_catalog
from conftest import refresh_user


def test_default_catalog():
    catalog = {plan.slug: plan for plan in default_catalog()}
    assert catalog["free"].price == Decimal("0")
    assert catalog["free"].credits == 100
    assert (catalog["starter"].price, catalog["starter"].credits) == (Decimal("19.00"), 5_000)
    assert (catalog["pro"].price, catalog["pro"].credits) == (Decimal("79.00"), 50_000)
    assert catalog["business"].credits == 250_000
    assert catalog["credits-10k"].type == PlanType.CREDIT_PACKAGE


class TestPlanService:
    """Tests for PlanService CRUD."""

    @pytest.mark.asyncio
    async def test_seed_defaults_once(self, session, actor):
        service = PlanService(session)
        assert await service.seed_defaults(actor) == 7
        assert await service.seed_defaults(actor) == 0
        assert len(await service.list_plans()) == 7

    @pytest.mark.asyncio
    async def test_get_by_slug_filters_type(self, session, actor):
        service = PlanService(session)
        await service.seed_defaults(actor)

        assert (await service.get_by_slug(" Pro ")).slug == "pro"
        with pytest.raises(PlanNotFoundError):
            await service.get_by_slug("pro", PlanType.CREDIT_PACKAGE)

    @pytest.mark.asyncio
    async def test_inactive_plans_hidden(self, session, actor):
        service = PlanService(session)
        await service.seed_defaults(actor)
        starter = await service.get_by_slug("starter")

        await service.update(starter.id, PlanUpdateRequest(is_active=False), actor)

        assert "starter" not in [plan.slug for plan in await service.list_public()]
        with pytest.raises(PlanNotFoundError):
            await service.get_by_slug("starter")

    @pytest.mark.asyncio
    async def test_create_duplicate(self, session, actor):
        service = PlanService(session)
        request = PlanCreateRequest(name="Team", slug="team", price=Decimal("49"), credits=20_000)
        plan = await service.create(request, actor)
        assert plan.interval == "month"
        with pytest.raises(DuplicateResourceError):
            await service.create(request, actor)

    @pytest.mark.asyncio
    async def test_credit_package_has_no_interval(self, session, actor):
        request = PlanCreateRequest(
            name="5k", slug="credits-5k", type=PlanType.CREDIT_PACKAGE, price=Decimal("40"), credits=5_000
        )
        plan = await PlanService(session).create(request, actor)
        assert plan.interval is None

    @pytest.mark.asyncio
    async def test_delete(self, session, actor):
        service = PlanService(session)
        plan = await service.create(
            PlanCreateRequest(name="Team", slug="team", price=Decimal("49"), credits=1), actor
        )
        await service.delete(plan.id, actor)
        with pytest.raises(PlanNotFoundError):
            await service.get(plan.id)


class TestRenewDuePlans:
    @pytest.mark.asyncio
    async def test_only_due_users_renewed(self, session, session_factory, make_user):
        now = datetime.now(UTC)
        due = await make_user(plan_credits=0, credits_limit=5000, plan_renews_at=now - timedelta(days=1))
        later = await make_user(plan_credits=0, credits_limit=5000, plan_renews_at=now + timedelta(days=1))
        never = await make_user(plan_credits=0, credits_limit=100)

        assert await PlanService(session).renew_due_plans(now) == 1

        assert (await refresh_user(session_factory, due.id)).plan_credits == 5000
        assert (await refresh_user(session_factory, later.id)).plan_credits == 0
        assert (await refresh_user(session_factory, never.id)).plan_credits == 0
