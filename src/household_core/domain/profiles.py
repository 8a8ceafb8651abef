"""Member display profiles and the avatar catalog."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

from household_core.domain.entitlements import Plan


def _utc_now() -> datetime:
    return datetime.now(UTC)


class AvatarCategory(str, Enum):
    ANIMAL = "animal"
    PLANT = "plant"


# Free households draw avatars from the starter set only.
PLAN_AVATAR_CATEGORIES: dict[Plan, frozenset[AvatarCategory]] = {
    Plan.FREE: frozenset({AvatarCategory.ANIMAL}),
    Plan.PREMIUM: frozenset({AvatarCategory.ANIMAL, AvatarCategory.PLANT}),
}

_DEFAULT_AVATARS: list[tuple[str, AvatarCategory]] = [
    ("fox", AvatarCategory.ANIMAL),
    ("owl", AvatarCategory.ANIMAL),
    ("otter", AvatarCategory.ANIMAL),
    ("panda", AvatarCategory.ANIMAL),
    ("koala", AvatarCategory.ANIMAL),
    ("hedgehog", AvatarCategory.ANIMAL),
    ("penguin", AvatarCategory.ANIMAL),
    ("rabbit", AvatarCategory.ANIMAL),
    ("cactus", AvatarCategory.PLANT),
    ("fern", AvatarCategory.PLANT),
    ("sunflower", AvatarCategory.PLANT),
    ("bonsai", AvatarCategory.PLANT),
    ("monstera", AvatarCategory.PLANT),
    ("tulip", AvatarCategory.PLANT),
]


def allowed_avatar_categories(plan: Plan) -> frozenset[AvatarCategory]:
    return PLAN_AVATAR_CATEGORIES[plan]


@dataclass
class Avatar:
    storage_path: str
    category: AvatarCategory
    id: UUID = field(default_factory=uuid4)
    sort_order: int = 0
    created_at: datetime = field(default_factory=_utc_now)


@dataclass
class Profile:
    user_id: UUID
    username: str | None = None
    avatar_id: UUID | None = None
    deactivated_at: datetime | None = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def is_active(self) -> bool:
        return self.deactivated_at is None

    def assign_avatar(self, avatar_id: UUID) -> None:
        self.avatar_id = avatar_id
        self.updated_at = _utc_now()

    def deactivate(self) -> None:
        self.deactivated_at = _utc_now()
        self.updated_at = self.deactivated_at


def default_avatar_catalog() -> list[Avatar]:
    """Seed catalog with stable ids so repeated initialization is a no-op."""
    catalog = []
    for position, (name, category) in enumerate(_DEFAULT_AVATARS):
        storage_path = f"avatars/{category.value}s/{name}.png"
        catalog.append(
            Avatar(
                storage_path=storage_path,
                category=category,
                id=uuid5(NAMESPACE_URL, f"household-core:{storage_path}"),
                sort_order=position,
            )
        )
    return catalog
