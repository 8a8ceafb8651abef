from household_core.domain.entitlements import Entitlement, Plan, Subscription
from household_core.domain.households import Household, MemberRole, Membership
from household_core.domain.invites import Invite
from household_core.domain.usage import UsageMetric

__all__ = [
    "Entitlement",
    "Household",
    "Invite",
    "MemberRole",
    "Membership",
    "Plan",
    "Subscription",
    "UsageMetric",
]

__version__ = "0.1.0"
