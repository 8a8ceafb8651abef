"""API routes for Household Core."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Response, status

from household_core import __version__
from household_core.api.schemas import (
    AvatarResponse,
    HealthResponse,
    HouseholdCreate,
    HouseholdCreatedResponse,
    HouseholdResponse,
    InviteResponse,
    JoinRequest,
    LeaveResponse,
    MemberCapRequestResponse,
    MemberSummaryResponse,
    MembershipResponse,
    PaywallResponse,
    PlanStatusResponse,
    RotateResponse,
    StatusResponse,
    SubscriptionRecord,
    SubscriptionResponse,
    TransferRequest,
    UsageRequest,
    UsageResponse,
)
from household_core.container import Container, get_container
from household_core.domain.entitlements import (
    Subscription,
    SubscriptionStatus,
    SubscriptionStore,
)
from household_core.domain.households import Household, Membership
from household_core.domain.invites import Invite

health_router = APIRouter(tags=["health"])
household_router = APIRouter(prefix="/households", tags=["households"])
invite_router = APIRouter(prefix="/households/{household_id}/invites", tags=["invites"])
me_router = APIRouter(prefix="/me", tags=["me"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def get_caller_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> UUID | None:
    """Caller identity set by the upstream gateway.

    A missing or malformed header yields None and the services answer
    UNAUTHENTICATED.
    """
    if not x_user_id:
        return None
    try:
        return UUID(x_user_id)
    except ValueError:
        return None


ContainerDep = Annotated[Container, Depends(get_container)]
CallerDep = Annotated[UUID | None, Depends(get_caller_id)]


# Helper functions
def _household_to_response(household: Household) -> HouseholdResponse:
    return HouseholdResponse(
        id=household.id,
        name=household.name,
        owner_user_id=household.owner_user_id,
        is_active=household.is_active,
        deactivated_at=household.deactivated_at,
        created_at=household.created_at,
        updated_at=household.updated_at,
    )


def _invite_to_response(invite: Invite) -> InviteResponse:
    return InviteResponse(
        id=invite.id,
        household_id=invite.household_id,
        code=invite.code,
        created_at=invite.created_at,
        revoked_at=invite.revoked_at,
        used_count=invite.used_count,
    )


def _membership_to_response(membership: Membership) -> MembershipResponse:
    return MembershipResponse(
        id=membership.id,
        user_id=membership.user_id,
        household_id=membership.household_id,
        role=membership.role.value,
        valid_from=membership.valid_from,
        valid_to=membership.valid_to,
    )


def _subscription_to_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        user_id=subscription.user_id,
        entitlement_key=subscription.entitlement_key,
        store=subscription.store.value,
        product_id=subscription.product_id,
        status=subscription.status.value,
        current_period_end_at=subscription.current_period_end_at,
        household_id=subscription.household_id,
    )


# Health endpoints
@health_router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(status="healthy", version=__version__)


# Household endpoints
@household_router.post(
    "",
    response_model=HouseholdCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_household(
    payload: HouseholdCreate,
    caller_id: CallerDep,
    container: ContainerDep,
) -> HouseholdCreatedResponse:
    created = container.membership_service.create_household(caller_id, payload.name)
    return HouseholdCreatedResponse(
        household=_household_to_response(created.household),
        invite=_invite_to_response(created.invite),
    )


@household_router.post("/join", response_model=StatusResponse)
def join_household(
    payload: JoinRequest,
    caller_id: CallerDep,
    container: ContainerDep,
) -> StatusResponse:
    result = container.membership_service.join(caller_id, payload.code)
    return StatusResponse(
        status=result.status,
        code=result.code,
        data={"household_id": str(result.household_id)},
    )


@household_router.post("/{household_id}/leave", response_model=LeaveResponse)
def leave_household(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> LeaveResponse:
    result = container.membership_service.leave(caller_id, household_id)
    data = result.data
    data["household_id"] = str(result.household_id)
    return LeaveResponse(ok=result.ok, code=result.code, data=data)


@household_router.post("/{household_id}/transfer", response_model=StatusResponse)
def transfer_ownership(
    household_id: UUID,
    payload: TransferRequest,
    caller_id: CallerDep,
    container: ContainerDep,
) -> StatusResponse:
    result = container.membership_service.transfer_owner(
        caller_id, household_id, payload.new_owner_id
    )
    return StatusResponse(
        status=result.status,
        code=result.code,
        data={
            "household_id": str(result.household_id),
            "new_owner_id": str(result.new_owner_id),
        },
    )


@household_router.post(
    "/{household_id}/members/{user_id}/kick", response_model=StatusResponse
)
def kick_member(
    household_id: UUID,
    user_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> StatusResponse:
    result = container.membership_service.kick(caller_id, household_id, user_id)
    return StatusResponse(
        status=result.status,
        code=result.code,
        data={
            "household_id": str(result.household_id),
            "user_id": str(result.user_id),
            "members_remaining": result.members_remaining,
        },
    )


@household_router.get(
    "/{household_id}/members", response_model=list[MemberSummaryResponse]
)
def list_members(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> list[MemberSummaryResponse]:
    members = container.membership_service.list_members(caller_id, household_id)
    return [
        MemberSummaryResponse(
            user_id=member.user_id,
            role=member.role.value,
            valid_from=member.valid_from,
            username=member.username,
            avatar_id=member.avatar_id,
            can_transfer_to=member.can_transfer_to,
        )
        for member in members
    ]


@household_router.get("/{household_id}/paywall", response_model=PaywallResponse)
def get_paywall_status(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> PaywallResponse:
    paywall = container.quota_service.paywall_status(caller_id, household_id)
    return PaywallResponse(
        household_id=paywall.household_id,
        plan=paywall.plan.value,
        is_premium=paywall.is_premium,
        usage={metric.value: count for metric, count in paywall.usage.items()},
        limits={metric.value: limit for metric, limit in paywall.limits.items()},
    )


@household_router.post("/{household_id}/usage", response_model=UsageResponse)
def admit_usage(
    household_id: UUID,
    payload: UsageRequest,
    caller_id: CallerDep,
    container: ContainerDep,
) -> UsageResponse:
    counts = container.quota_service.admit(caller_id, household_id, payload.deltas)
    return UsageResponse(
        household_id=household_id,
        counts={metric.value: count for metric, count in counts.items()},
    )


@household_router.get("/{household_id}/avatars", response_model=list[AvatarResponse])
def list_available_avatars(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> list[AvatarResponse]:
    avatars = container.avatar_service.list_available(caller_id, household_id)
    return [
        AvatarResponse(
            id=avatar.id,
            storage_path=avatar.storage_path,
            category=avatar.category.value,
            sort_order=avatar.sort_order,
        )
        for avatar in avatars
    ]


@household_router.get(
    "/{household_id}/join-requests", response_model=list[MemberCapRequestResponse]
)
def list_join_requests(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> list[MemberCapRequestResponse]:
    requests = container.membership_service.list_join_requests(caller_id, household_id)
    return [
        MemberCapRequestResponse(
            id=request.request_id,
            joiner_user_id=request.joiner_user_id,
            requested_at=request.requested_at,
            username=request.username,
        )
        for request in requests
    ]


@household_router.post(
    "/{household_id}/join-requests/dismiss", response_model=StatusResponse
)
def dismiss_join_requests(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> StatusResponse:
    dismissed = container.membership_service.dismiss_join_requests(caller_id, household_id)
    return StatusResponse(
        status="success",
        code="join_requests_dismissed",
        data={"household_id": str(household_id), "dismissed": dismissed},
    )


# Invite endpoints
@invite_router.post("/rotate", response_model=RotateResponse)
def rotate_invite(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> RotateResponse:
    result = container.invite_service.rotate(caller_id, household_id)
    return RotateResponse(invite_id=result.invite_id, invite_code=result.invite_code)


@invite_router.post("/revoke", response_model=StatusResponse)
def revoke_invite(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> StatusResponse:
    result = container.invite_service.revoke(caller_id, household_id)
    data: dict[str, str] = {"household_id": str(result.household_id)}
    if result.invite_id is not None:
        data["invite_id"] = str(result.invite_id)
    if result.revoked_at is not None:
        data["revoked_at"] = result.revoked_at.isoformat()
    return StatusResponse(
        status=result.status, code=result.code, message=result.message, data=data
    )


@invite_router.get("/active", response_model=InviteResponse)
def get_active_invite(
    household_id: UUID,
    caller_id: CallerDep,
    container: ContainerDep,
) -> InviteResponse:
    invite = container.invite_service.get_active(caller_id, household_id)
    return _invite_to_response(invite)


# Caller endpoints
@me_router.get("/membership", response_model=MembershipResponse | None)
def get_current_membership(
    caller_id: CallerDep,
    container: ContainerDep,
) -> MembershipResponse | None:
    membership = container.membership_service.get_current_membership(caller_id)
    if membership is None:
        return None
    return _membership_to_response(membership)


@me_router.get("/plan", response_model=PlanStatusResponse)
def get_plan_status(
    caller_id: CallerDep,
    container: ContainerDep,
) -> PlanStatusResponse:
    plan_status = container.membership_service.get_plan_status(caller_id)
    return PlanStatusResponse(
        plan=plan_status.plan.value, household_id=plan_status.household_id
    )


# Subscription endpoints
@subscription_router.post("", response_model=SubscriptionResponse)
def record_subscription(
    payload: SubscriptionRecord,
    container: ContainerDep,
) -> SubscriptionResponse:
    subscription = container.subscription_service.record(
        user_id=payload.user_id,
        entitlement_key=payload.entitlement_key,
        store=SubscriptionStore(payload.store),
        product_id=payload.product_id,
        status=SubscriptionStatus(payload.status),
        current_period_end_at=payload.current_period_end_at,
    )
    return _subscription_to_response(subscription)


@subscription_router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subscription(
    subscription_id: UUID,
    container: ContainerDep,
) -> Response:
    container.subscription_service.delete(subscription_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
