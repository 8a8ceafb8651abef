"""Pydantic v2 schemas for API request/response models."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# Household Schemas
class HouseholdCreate(BaseModel):
    """Schema for creating a household."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)


class HouseholdResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    owner_user_id: UUID
    is_active: bool
    deactivated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class InviteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    household_id: UUID
    code: str
    created_at: datetime
    revoked_at: datetime | None = None
    used_count: int = 0


class HouseholdCreatedResponse(BaseModel):
    household: HouseholdResponse
    invite: InviteResponse


class JoinRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(..., min_length=1, max_length=32)


class TransferRequest(BaseModel):
    new_owner_id: UUID


class StatusResponse(BaseModel):
    """Generic outcome envelope for membership and invite mutations."""

    status: str
    code: str
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class LeaveResponse(BaseModel):
    ok: bool
    code: str
    data: dict[str, Any]


# Membership Schemas
class MembershipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    household_id: UUID
    role: str
    valid_from: datetime
    valid_to: datetime | None = None


class MemberSummaryResponse(BaseModel):
    user_id: UUID
    role: str
    valid_from: datetime
    username: str | None = None
    avatar_id: UUID | None = None
    can_transfer_to: bool


class MemberCapRequestResponse(BaseModel):
    id: UUID
    joiner_user_id: UUID
    requested_at: datetime
    username: str | None = None


class AvatarResponse(BaseModel):
    id: UUID
    storage_path: str
    category: str
    sort_order: int


class RotateResponse(BaseModel):
    invite_id: UUID
    invite_code: str


# Plan and Quota Schemas
class PlanStatusResponse(BaseModel):
    plan: str
    household_id: UUID


class PaywallResponse(BaseModel):
    household_id: UUID
    plan: str
    is_premium: bool
    usage: dict[str, int]
    limits: dict[str, int]


class UsageRequest(BaseModel):
    """Signed counter deltas keyed by metric name.

    Values are validated by the quota engine so unknown metrics and
    non-integer deltas surface as INVALID_QUOTA_DELTA.
    """

    deltas: dict[str, Any] = Field(..., min_length=1)


class UsageResponse(BaseModel):
    household_id: UUID
    counts: dict[str, int]


# Subscription Schemas
class SubscriptionRecord(BaseModel):
    """Billing snapshot pushed by the store webhook relay."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: UUID
    entitlement_key: str = Field(..., min_length=1, max_length=100)
    store: str = Field(..., pattern=r"^(app_store|play_store|stripe|promotional)$")
    product_id: str = Field(..., min_length=1, max_length=255)
    status: str = Field(..., pattern=r"^(active|cancelled|expired|inactive)$")
    current_period_end_at: datetime | None = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    entitlement_key: str
    store: str
    product_id: str
    status: str
    current_period_end_at: datetime | None = None
    household_id: UUID | None = None


# Health Schemas
class HealthResponse(BaseModel):
    status: str
    version: str
