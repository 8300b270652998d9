"""
Pricing plans and plan renewal.

Plans are subscriptions (plan credits reset each period) or credit packages
(one-off add-on credits that never expire).
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import PricingPlan, User
from app.exceptions import (
    DuplicateResourceError,
    PlanNotFoundError,
    UserNotFoundError,
    WriteVerificationError,
)
from app.models.api import PlanCreateRequest, PlanType, PlanUpdateRequest
from app.models.domain import ActorContext
from app.observability import get_logger, metrics
from app.services.audit import record_activity
from app.services.ledger import CreditLedger

logger = get_logger(__name__)

NULLABLE_PLAN_FIELDS = frozenset({"interval", "description", "cta_text"})


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def default_catalog() -> list[PlanCreateRequest]:
    """Plans inserted by seed_defaults() into an empty catalog."""
    return [
        PlanCreateRequest(
            name="Free",
            slug=settings.free_plan_slug,
            price=Decimal("0"),
            credits=settings.free_plan_credits,
            features=["Single validation", "API access"],
            sort_order=0,
            cta_text="Current plan",
        ),
        PlanCreateRequest(
            name="Starter",
            slug="starter",
            price=Decimal("19.00"),
            credits=5_000,
            features=["Bulk validation", "Webhooks", "API access"],
            sort_order=1,
            cta_text="Get started",
        ),
        PlanCreateRequest(
            name="Pro",
            slug="pro",
            price=Decimal("79.00"),
            credits=50_000,
            features=["Bulk validation", "Webhooks", "API access", "Priority queue"],
            is_popular=True,
            sort_order=2,
            cta_text="Upgrade",
        ),
        PlanCreateRequest(
            name="Business",
            slug="business",
            price=Decimal("249.00"),
            credits=250_000,
            features=["Bulk validation", "Webhooks", "API access", "Priority queue"],
            sort_order=3,
            cta_text="Upgrade",
        ),
        PlanCreateRequest(
            name="1,000 credits",
            slug="credits-1k",
            type=PlanType.CREDIT_PACKAGE,
            price=Decimal("10.00"),
            interval=None,
            credits=1_000,
            sort_order=10,
            cta_text="Buy credits",
        ),
        PlanCreateRequest(
            name="10,000 credits",
            slug="credits-10k",
            type=PlanType.CREDIT_PACKAGE,
            price=Decimal("80.00"),
            interval=None,
            credits=10_000,
            sort_order=11,
            cta_text="Buy credits",
        ),
        PlanCreateRequest(
            name="100,000 credits",
            slug="credits-100k",
            type=PlanType.CREDIT_PACKAGE,
            price=Decimal("500.00"),
            interval=None,
            credits=100_000,
            sort_order=12,
            cta_text="Buy credits",
        ),
    ]


class PlanService:
    """Pricing catalog CRUD and subscription renewal."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize plan service with database session."""
        self.session = session

    async def list_plans(self) -> list[PricingPlan]:
        stmt = select(PricingPlan).order_by(PricingPlan.sort_order, PricingPlan.price)
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_public(self) -> list[PricingPlan]:
        """Active plans in display order."""
        stmt = (
            select(PricingPlan)
            .where(PricingPlan.is_active.is_(True))
            .order_by(PricingPlan.sort_order, PricingPlan.price)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def get(self, plan_id: UUID) -> PricingPlan:
        plan = await self.session.get(PricingPlan, plan_id)
        if plan is None:
            raise PlanNotFoundError(str(plan_id))
        return plan

    async def get_by_slug(self, slug: str, plan_type: PlanType | None = None) -> PricingPlan:
        """
        Get an active plan by slug.

        Raises:
            PlanNotFoundError: No active plan with that slug (and type)
        """
        stmt = select(PricingPlan).where(
            PricingPlan.slug == slug.strip().lower(),
            PricingPlan.is_active.is_(True),
        )
        if plan_type is not None:
            stmt = stmt.where(PricingPlan.type == plan_type.value)
        plan = (await self.session.execute(stmt)).scalar_one_or_none()
        if plan is None:
            raise PlanNotFoundError(slug)
        return plan

    async def create(
        self, request: PlanCreateRequest, actor: ActorContext, commit: bool = True
    ) -> PricingPlan:
        """
        Raises:
            DuplicateResourceError: Slug already exists
        """
        existing = await self.session.execute(
            select(PricingPlan.id).where(PricingPlan.slug == request.slug)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateResourceError("Plan", request.slug)

        plan = PricingPlan(
            name=request.name,
            slug=request.slug,
            type=request.type.value,
            price=request.price,
            currency=request.currency.upper(),
            interval=request.interval if request.type == PlanType.SUBSCRIPTION else None,
            credits=request.credits,
            features=list(request.features),
            is_popular=request.is_popular,
            is_active=request.is_active,
            sort_order=request.sort_order,
            description=request.description,
            cta_text=request.cta_text,
        )
        self.session.add(plan)
        await self.session.flush()

        verified = await self.session.get(PricingPlan, plan.id)
        if verified is None:
            raise WriteVerificationError(f"Plan {request.slug} not found after insert")

        if commit:
            record_activity(
                self.session,
                actor,
                action="plan_created",
                target_type="plan",
                target_id=plan.id,
                target_label=plan.slug,
                details={"price": plan.price, "credits": plan.credits, "type": plan.type},
            )
            await self.session.commit()
            metrics.admin_operations_total.labels(operation="plan_created").inc()
            logger.info("plan_created", plan_id=str(plan.id), slug=plan.slug)
        return verified

    async def update(
        self, plan_id: UUID, request: PlanUpdateRequest, actor: ActorContext
    ) -> PricingPlan:
        plan = await self.get(plan_id)
        changes = request.model_dump(exclude_unset=True)
        for field_name, value in changes.items():
            if value is None and field_name not in NULLABLE_PLAN_FIELDS:
                continue
            if field_name == "currency":
                value = value.upper()
            setattr(plan, field_name, value)

        record_activity(
            self.session,
            actor,
            action="plan_updated",
            target_type="plan",
            target_id=plan.id,
            target_label=plan.slug,
            details=changes,
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="plan_updated").inc()
        logger.info("plan_updated", plan_id=str(plan_id), fields=sorted(changes))
        return plan

    async def delete(self, plan_id: UUID, actor: ActorContext) -> None:
        plan = await self.get(plan_id)
        slug = plan.slug
        await self.session.delete(plan)
        record_activity(
            self.session,
            actor,
            action="plan_deleted",
            target_type="plan",
            target_id=plan_id,
            target_label=slug,
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="plan_deleted").inc()
        logger.info("plan_deleted", plan_id=str(plan_id), slug=slug)

    async def seed_defaults(self, actor: ActorContext) -> int:
        """Insert the default catalog if no plan exists. Returns plans inserted."""
        count = (await self.session.execute(select(func.count()).select_from(PricingPlan))).scalar_one()
        if count:
            return 0

        catalog = default_catalog()
        for request in catalog:
            await self.create(request, actor, commit=False)

        record_activity(
            self.session,
            actor,
            action="plans_seeded",
            target_type="plan",
            details={"slugs": [request.slug for request in catalog]},
        )
        await self.session.commit()
        metrics.admin_operations_total.labels(operation="plans_seeded").inc()
        logger.info("plans_seeded", count=len(catalog))
        return len(catalog)

    async def renew_due_plans(self, now: datetime | None = None) -> int:
        """Reset plan credits of every user whose renewal date has passed."""
        now = now or _utc_now()
        stmt = select(User.id).where(User.plan_renews_at.is_not(None), User.plan_renews_at <= now)
        due = (await self.session.execute(stmt)).scalars().all()
        await self.session.rollback()

        renewed = 0
        ledger = CreditLedger(self.session)
        for user_id in due:
            try:
                if await ledger.renew_plan(user_id, now):
                    renewed += 1
            except UserNotFoundError:
                continue
        if renewed:
            logger.info("plans_renewed", count=renewed)
        return renewed
