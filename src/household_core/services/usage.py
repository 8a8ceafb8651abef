"""Quota policy and usage counter bookkeeping."""

from datetime import UTC, datetime
from uuid import UUID

from household_core.domain.entitlements import Plan
from household_core.domain.usage import UsageMetric, parse_deltas
from household_core.exceptions import NotFoundError, QuotaExceededError
from household_core.logging_config import get_logger
from household_core.repositories.interfaces import (
    Database,
    EntitlementRepository,
    HouseholdRepository,
    MembershipRepository,
    UsageCounterRepository,
)
from household_core.services.access import (
    require_caller,
    require_household,
    require_member,
)
from household_core.services.interfaces import Deltas, PaywallStatus, QuotaService

logger = get_logger(__name__)


class QuotaServiceImpl(QuotaService):
    """Admission control against per-plan ceilings.

    Counters are only ever moved by signed deltas. assert_quota and
    apply_delta must run in the same transaction as the state change they
    gate, under the household lock, or concurrent admissions can overshoot
    the ceiling.
    """

    def __init__(
        self,
        database: Database,
        household_repo: HouseholdRepository,
        membership_repo: MembershipRepository,
        entitlement_repo: EntitlementRepository,
        usage_repo: UsageCounterRepository,
    ) -> None:
        self._db = database
        self._household_repo = household_repo
        self._membership_repo = membership_repo
        self._entitlement_repo = entitlement_repo
        self._usage_repo = usage_repo

    def effective_plan(self, household_id: UUID, as_of: datetime | None = None) -> Plan:
        entitlement = self._entitlement_repo.get(household_id)
        if entitlement is None:
            return Plan.FREE
        return entitlement.effective_plan(as_of or datetime.now(UTC))

    def assert_quota(self, household_id: UUID, deltas: Deltas) -> None:
        """Fail if any positive delta would push its counter past the ceiling.

        Raises:
            InvalidQuotaDeltaError: unknown metric or non-integer delta
            QuotaExceededError: a ceiling would be exceeded
        """
        parsed = parse_deltas(deltas)
        plan = self.effective_plan(household_id)
        if plan == Plan.PREMIUM:
            return

        limits = self._usage_repo.get_plan_limits(plan)
        counts = self._usage_repo.get_counts(household_id)
        for metric, delta in parsed.items():
            if delta <= 0:
                continue
            limit = limits.get(metric)
            if limit is None:
                continue
            current = counts.get(metric, 0)
            projected = current + delta
            if projected > limit:
                logger.info(
                    "quota_exceeded",
                    household_id=str(household_id),
                    metric=metric.value,
                    plan=plan.value,
                    limit=limit,
                    current=current,
                    projected=projected,
                )
                raise QuotaExceededError(
                    household_id, metric.value, plan.value, limit, current, projected
                )

    def apply_delta(self, household_id: UUID, deltas: Deltas) -> dict[UsageMetric, int]:
        """Adjust counters by signed deltas, clamped at zero.

        Raises:
            InvalidQuotaDeltaError: unknown metric or non-integer delta
            NotFoundError: the household does not exist
        """
        parsed = parse_deltas(deltas)
        with self._db.transaction():
            if self._household_repo.lock(household_id) is None:
                raise NotFoundError("household", household_id)
            counts: dict[UsageMetric, int] = {}
            for metric, delta in parsed.items():
                if delta == 0:
                    continue
                counts[metric] = self._usage_repo.apply_delta(household_id, metric, delta)
        logger.debug(
            "usage_delta_applied",
            household_id=str(household_id),
            counts={metric.value: count for metric, count in counts.items()},
        )
        return counts

    def admit(
        self, caller_id: UUID | None, household_id: UUID, deltas: Deltas
    ) -> dict[UsageMetric, int]:
        """Check and apply deltas for a resource a member is about to create."""
        caller = require_caller(caller_id)
        parse_deltas(deltas)
        with self._db.transaction():
            require_household(self._household_repo, household_id, lock=True)
            require_member(self._membership_repo, household_id, caller)
            self.assert_quota(household_id, deltas)
            return self.apply_delta(household_id, deltas)

    def paywall_status(self, caller_id: UUID | None, household_id: UUID) -> PaywallStatus:
        caller = require_caller(caller_id)
        require_household(self._household_repo, household_id)
        require_member(self._membership_repo, household_id, caller)
        plan = self.effective_plan(household_id)
        return PaywallStatus(
            household_id=household_id,
            plan=plan,
            usage=self._usage_repo.get_counts(household_id),
            limits=self._usage_repo.get_plan_limits(plan),
        )
