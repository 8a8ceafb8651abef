"""Subscription row mutations and the change feed they publish."""

import copy
from datetime import UTC, datetime
from uuid import UUID

from household_core.domain.entitlements import (
    FUNDING_STATUSES,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
    SubscriptionStore,
)
from household_core.exceptions import NotFoundError, ValidationError
from household_core.logging_config import get_logger
from household_core.repositories.interfaces import (
    Database,
    MembershipRepository,
    SubscriptionRepository,
)
from household_core.services.interfaces import SubscriptionListener, SubscriptionService

logger = get_logger(__name__)


class SubscriptionServiceImpl(SubscriptionService):
    """Owns every write to the subscriptions table.

    Each write publishes a SubscriptionEvent to the registered listeners
    synchronously, inside the writer's transaction, so derived state such as
    entitlements commits or rolls back together with the change.
    """

    def __init__(
        self,
        database: Database,
        subscription_repo: SubscriptionRepository,
        membership_repo: MembershipRepository,
    ) -> None:
        self._db = database
        self._subscription_repo = subscription_repo
        self._membership_repo = membership_repo
        self._listeners: list[SubscriptionListener] = []

    def subscribe(self, listener: SubscriptionListener) -> None:
        self._listeners.append(listener)

    def _publish(self, event: SubscriptionEvent) -> None:
        logger.debug(
            "subscription_event_published",
            event_type=event.event_type.value,
            subscription_id=str(event.subscription_id),
            old_household_id=str(event.old_household_id)
            if event.old_household_id
            else None,
            new_household_id=str(event.new_household_id)
            if event.new_household_id
            else None,
        )
        for listener in self._listeners:
            listener(event)

    def record(
        self,
        user_id: UUID,
        entitlement_key: str,
        store: SubscriptionStore,
        product_id: str,
        status: SubscriptionStatus,
        current_period_end_at: datetime | None = None,
    ) -> Subscription:
        """Upsert the billing snapshot for (user_id, entitlement_key).

        A new subscription attaches to the user's current household, or
        floats if the user has none. An existing row keeps its attachment,
        except that a floating row renewed into a funding status attaches to
        the user's current household.
        """
        if not entitlement_key.strip():
            raise ValidationError("entitlement_key must not be empty")
        if current_period_end_at is not None and current_period_end_at.tzinfo is None:
            # Store feeds without an offset report UTC
            current_period_end_at = current_period_end_at.replace(tzinfo=UTC)

        with self._db.transaction():
            existing = self._subscription_repo.get_by_key(user_id, entitlement_key)
            if existing is None:
                current = self._membership_repo.get_current_for_user(user_id)
                subscription = Subscription(
                    user_id=user_id,
                    entitlement_key=entitlement_key,
                    store=store,
                    product_id=product_id,
                    status=status,
                    current_period_end_at=current_period_end_at,
                    household_id=current.household_id if current else None,
                )
                self._subscription_repo.add(subscription)
                self._publish(SubscriptionEvent.inserted(subscription))
            else:
                subscription = copy.copy(existing)
                subscription.store = store
                subscription.product_id = product_id
                subscription.status = status
                subscription.current_period_end_at = current_period_end_at
                if existing.is_floating and status in FUNDING_STATUSES:
                    current = self._membership_repo.get_current_for_user(user_id)
                    if current is not None:
                        subscription.household_id = current.household_id
                subscription.updated_at = datetime.now(UTC)
                self._subscription_repo.update(subscription)
                self._publish(SubscriptionEvent.updated(existing, subscription))

        logger.info(
            "subscription_recorded",
            subscription_id=str(subscription.id),
            user_id=str(user_id),
            status=status.value,
            household_id=str(subscription.household_id)
            if subscription.household_id
            else None,
        )
        return subscription

    def attach_floating(self, user_id: UUID, household_id: UUID) -> list[Subscription]:
        """Attach the user's floating funding-status subscriptions."""
        attached = []
        with self._db.transaction():
            for existing in self._subscription_repo.list_for_user(user_id):
                if not existing.is_floating or existing.status not in FUNDING_STATUSES:
                    continue
                subscription = copy.copy(existing)
                subscription.household_id = household_id
                subscription.updated_at = datetime.now(UTC)
                self._subscription_repo.update(subscription)
                self._publish(SubscriptionEvent.updated(existing, subscription))
                attached.append(subscription)
        if attached:
            logger.info(
                "subscriptions_attached",
                user_id=str(user_id),
                household_id=str(household_id),
                count=len(attached),
            )
        return attached

    def detach(self, user_id: UUID, household_id: UUID) -> list[Subscription]:
        """Float the user's subscriptions that fund household_id."""
        detached = []
        with self._db.transaction():
            for existing in self._subscription_repo.list_for_user(user_id):
                if existing.household_id != household_id:
                    continue
                subscription = copy.copy(existing)
                subscription.household_id = None
                subscription.updated_at = datetime.now(UTC)
                self._subscription_repo.update(subscription)
                self._publish(SubscriptionEvent.updated(existing, subscription))
                detached.append(subscription)
        if detached:
            logger.info(
                "subscriptions_detached",
                user_id=str(user_id),
                household_id=str(household_id),
                count=len(detached),
            )
        return detached

    def delete(self, subscription_id: UUID) -> None:
        with self._db.transaction():
            existing = self._subscription_repo.get(subscription_id)
            if existing is None:
                raise NotFoundError("subscription", subscription_id)
            self._subscription_repo.delete(subscription_id)
            self._publish(SubscriptionEvent.deleted(existing))
        logger.info("subscription_deleted", subscription_id=str(subscription_id))
