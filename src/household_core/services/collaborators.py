"""Hooks into feature modules that live outside this package."""

from abc import ABC, abstractmethod
from uuid import UUID

from household_core.logging_config import get_logger

logger = get_logger(__name__)


class ChoreCollaborator(ABC):
    @abstractmethod
    def reassign_on_member_leave(
        self,
        household_id: UUID,
        departed_user_id: UUID,
        new_assignee_id: UUID | None,
    ) -> None:
        """Hand the departed member's chores to new_assignee_id.

        Called inside the membership transaction, after the stint is closed.
        """
        pass


class LoggingChoreCollaborator(ChoreCollaborator):
    """Default collaborator for deployments without the chores module."""

    def reassign_on_member_leave(
        self,
        household_id: UUID,
        departed_user_id: UUID,
        new_assignee_id: UUID | None,
    ) -> None:
        logger.info(
            "chore_reassignment_requested",
            household_id=str(household_id),
            departed_user_id=str(departed_user_id),
            new_assignee_id=str(new_assignee_id) if new_assignee_id else None,
        )
