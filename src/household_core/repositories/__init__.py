from household_core.repositories.interfaces import (
    AvatarRepository,
    Database,
    EntitlementRepository,
    HouseholdRepository,
    InviteRepository,
    MembershipRepository,
    ProfileRepository,
    Repositories,
    SubscriptionRepository,
    UsageCounterRepository,
)
from household_core.repositories.sqlite import SQLiteDatabase, build_repositories

__all__ = [
    "AvatarRepository",
    "Database",
    "EntitlementRepository",
    "HouseholdRepository",
    "InviteRepository",
    "MembershipRepository",
    "ProfileRepository",
    "Repositories",
    "SQLiteDatabase",
    "SubscriptionRepository",
    "UsageCounterRepository",
    "build_repositories",
]
