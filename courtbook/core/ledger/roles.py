"""
Profile lookups and the coach-role authorization gate.

Profiles are owned by the identity/profile collaborator; the ledger only
reads `users/{id}` for a display name and a role. Role checks are a single
lookup with no caching, so a role change takes effect on the next call.
"""

import logging
from typing import Optional

from .errors import AuthorizationError, IdentityError, PersistenceError
from .models import ClassSlot, Role, UserProfile
from .store import USERS, DocumentStore

logger = logging.getLogger(__name__)


def require_identity(acting_user_id: Optional[str]) -> str:
    """Return the acting user id, or raise IdentityError if there is none."""
    if not acting_user_id or not acting_user_id.strip():
        raise IdentityError("No acting user identity")
    return acting_user_id


class ProfileDirectory:
    """Read-only access to user profiles."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        data = await self._store.get(USERS, user_id)
        if data is None:
            return None
        return UserProfile.from_document(user_id, data)

    async def display_name(self, user_id: str) -> Optional[str]:
        """
        Best-effort full name for a user.

        Returns None when the profile is missing, has no name, or can't be
        read. Callers fall back to a generic label.
        """
        try:
            profile = await self.get_profile(user_id)
        except PersistenceError as e:
            logger.warning(
                "Profile lookup failed",
                extra={"user_id": user_id, "error": str(e)}
            )
            return None

        if profile is None or not profile.full_name:
            return None
        return profile.full_name


class RoleGate:
    """
    Decides whether an identity may perform coach-only actions.

    Coach-only actions: finishing a class, and editing or deleting a class
    someone else created.
    """

    def __init__(self, profiles: ProfileDirectory) -> None:
        self._profiles = profiles

    async def has_coach_role(self, user_id: str) -> bool:
        try:
            profile = await self._profiles.get_profile(user_id)
        except PersistenceError as e:
            # A failed lookup must never grant access
            logger.error(
                "Role lookup failed",
                extra={"user_id": user_id, "error": str(e)}
            )
            return False

        is_coach = profile is not None and profile.role == Role.COACH
        logger.debug(
            "Checked coach role",
            extra={"user_id": user_id, "is_coach": is_coach}
        )
        return is_coach

    async def require_creator_or_coach(
        self,
        slot: ClassSlot,
        acting_user_id: Optional[str],
        action: str,
    ) -> str:
        """
        Allow the slot's creator, or anyone holding the Coach role.

        Returns the validated acting user id.
        """
        user_id = require_identity(acting_user_id)

        if slot.created_by is not None and slot.created_by == user_id:
            return user_id

        if await self.has_coach_role(user_id):
            return user_id

        logger.warning(
            "Unauthorized class action",
            extra={
                "user_id": user_id,
                "class_id": slot.id,
                "created_by": slot.created_by,
                "action": action,
            }
        )
        raise AuthorizationError(f"Only the class creator or a coach can {action} this class")
