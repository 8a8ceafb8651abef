"""Keeps each household's entitlement row in step with its subscriptions."""

from datetime import UTC, datetime
from uuid import UUID

from household_core.domain.entitlements import (
    Entitlement,
    Plan,
    SubscriptionEvent,
    compute_entitlement,
)
from household_core.exceptions import NotFoundError
from household_core.logging_config import get_logger
from household_core.repositories.interfaces import (
    Database,
    EntitlementRepository,
    HouseholdRepository,
    SubscriptionRepository,
)
from household_core.services.interfaces import EntitlementSyncService, UpgradeListener

logger = get_logger(__name__)


class EntitlementSyncServiceImpl(EntitlementSyncService):
    """Recomputes entitlements from the current subscription snapshot.

    refresh() reads every subscription attached to the household and
    upserts the result, so it can be replayed any number of times and in
    any order. Deactivated households keep their last entitlement. Upgrade
    listeners run inside the refresh transaction, only on the refresh that
    moves a household from effectively free to premium.
    """

    def __init__(
        self,
        database: Database,
        household_repo: HouseholdRepository,
        subscription_repo: SubscriptionRepository,
        entitlement_repo: EntitlementRepository,
    ) -> None:
        self._db = database
        self._household_repo = household_repo
        self._subscription_repo = subscription_repo
        self._entitlement_repo = entitlement_repo
        self._upgrade_listeners: list[UpgradeListener] = []

    def on_upgrade(self, listener: UpgradeListener) -> None:
        """Call listener(household_id) when a refresh turns a household premium."""
        self._upgrade_listeners.append(listener)

    def refresh(self, household_id: UUID, as_of: datetime | None = None) -> Entitlement:
        as_of = as_of or datetime.now(UTC)
        with self._db.transaction():
            household = self._household_repo.get(household_id)
            if household is None:
                raise NotFoundError("household", household_id)

            if not household.is_active:
                logger.debug(
                    "entitlement_refresh_skipped",
                    household_id=str(household_id),
                    reason="household_inactive",
                )
                return self._entitlement_repo.get(household_id) or Entitlement(
                    household_id=household_id
                )

            previous = self._entitlement_repo.get(household_id)
            subscriptions = self._subscription_repo.list_for_household(household_id)
            entitlement = compute_entitlement(household_id, subscriptions, as_of)
            self._entitlement_repo.upsert(entitlement)

            upgraded = entitlement.plan == Plan.PREMIUM and (
                previous is None or previous.effective_plan(as_of) != Plan.PREMIUM
            )
            if upgraded:
                for listener in self._upgrade_listeners:
                    listener(household_id)

        logger.info(
            "entitlement_refreshed",
            household_id=str(household_id),
            plan=entitlement.plan.value,
            expires_at=entitlement.expires_at.isoformat()
            if entitlement.expires_at
            else None,
        )
        return entitlement

    def handle(self, event: SubscriptionEvent) -> list[Entitlement]:
        """Refresh every household whose funding the event may have changed."""
        refreshed = []
        for household_id in event.affected_household_ids():
            if self._household_repo.get(household_id) is None:
                logger.warning(
                    "entitlement_event_unknown_household",
                    household_id=str(household_id),
                    subscription_id=str(event.subscription_id),
                )
                continue
            refreshed.append(self.refresh(household_id))
        return refreshed

    def get(self, household_id: UUID) -> Entitlement:
        entitlement = self._entitlement_repo.get(household_id)
        if entitlement is None:
            raise NotFoundError("entitlement", household_id)
        return entitlement
