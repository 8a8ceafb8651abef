from household_core.services.avatars import AvatarServiceImpl
from household_core.services.collaborators import (
    ChoreCollaborator,
    LoggingChoreCollaborator,
)
from household_core.services.entitlements import EntitlementSyncServiceImpl
from household_core.services.interfaces import (
    AvatarService,
    EntitlementSyncService,
    HouseholdCreated,
    InviteService,
    JoinResult,
    KickResult,
    LeaveResult,
    MembershipService,
    MemberSummary,
    PaywallStatus,
    PlanStatus,
    QuotaService,
    RevokeResult,
    RotateResult,
    SubscriptionService,
    TransferResult,
)
from household_core.services.invites import InviteServiceImpl
from household_core.services.membership import MembershipServiceImpl
from household_core.services.subscriptions import SubscriptionServiceImpl
from household_core.services.usage import QuotaServiceImpl

__all__ = [
    "AvatarService",
    "AvatarServiceImpl",
    "ChoreCollaborator",
    "EntitlementSyncService",
    "EntitlementSyncServiceImpl",
    "HouseholdCreated",
    "InviteService",
    "InviteServiceImpl",
    "JoinResult",
    "KickResult",
    "LeaveResult",
    "LoggingChoreCollaborator",
    "MemberSummary",
    "MembershipService",
    "MembershipServiceImpl",
    "PaywallStatus",
    "PlanStatus",
    "QuotaService",
    "QuotaServiceImpl",
    "RevokeResult",
    "RotateResult",
    "SubscriptionService",
    "SubscriptionServiceImpl",
    "TransferResult",
]
