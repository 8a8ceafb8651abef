"""Invite codes for joining a household."""

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID, uuid4

# 0/O and 1/I are left out so codes survive being read aloud or retyped.
INVITE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
INVITE_CODE_LENGTH = 6


def _utc_now() -> datetime:
    return datetime.now(UTC)


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    """Draw each symbol independently and uniformly from the alphabet."""
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def normalize_invite_code(code: str) -> str:
    """Codes are case-insensitive; the canonical form is upper case."""
    return code.strip().upper()


def is_valid_invite_code(code: str) -> bool:
    return len(code) == INVITE_CODE_LENGTH and all(
        ch in INVITE_CODE_ALPHABET for ch in code
    )


@dataclass
class Invite:
    household_id: UUID
    code: str
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_utc_now)
    revoked_at: datetime | None = None
    used_count: int = 0

    def __post_init__(self) -> None:
        self.code = normalize_invite_code(self.code)
        if self.used_count < 0:
            raise ValueError("used_count cannot be negative")

    @property
    def is_open(self) -> bool:
        return self.revoked_at is None

    def revoke(self, at: datetime | None = None) -> None:
        if self.revoked_at is None:
            self.revoked_at = at or _utc_now()
