from household_core.domain.entitlements import (
    FUNDING_STATUSES,
    Entitlement,
    Plan,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
    SubscriptionStore,
    compute_entitlement,
)
from household_core.domain.households import Household, MemberRole, Membership
from household_core.domain.invites import (
    INVITE_CODE_ALPHABET,
    INVITE_CODE_LENGTH,
    Invite,
    generate_invite_code,
    normalize_invite_code,
)
from household_core.domain.profiles import (
    Avatar,
    AvatarCategory,
    Profile,
    allowed_avatar_categories,
    default_avatar_catalog,
)
from household_core.domain.usage import (
    DEFAULT_PLAN_LIMITS,
    UsageCounter,
    UsageMetric,
    parse_deltas,
)

__all__ = [
    "DEFAULT_PLAN_LIMITS",
    "FUNDING_STATUSES",
    "INVITE_CODE_ALPHABET",
    "INVITE_CODE_LENGTH",
    "Avatar",
    "AvatarCategory",
    "Entitlement",
    "Household",
    "Invite",
    "MemberRole",
    "Membership",
    "Plan",
    "Profile",
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionEventType",
    "SubscriptionStatus",
    "SubscriptionStore",
    "UsageCounter",
    "UsageMetric",
    "allowed_avatar_categories",
    "compute_entitlement",
    "default_avatar_catalog",
    "generate_invite_code",
    "normalize_invite_code",
    "parse_deltas",
]
