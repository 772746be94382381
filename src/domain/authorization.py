# src/domain/authorization.py

import logging

from src.domain.exceptions import AuthenticationError, AuthorizationError, ValidationError
from src.infrastructure.settings import admin_ids

logger = logging.getLogger(__name__)


def _mask(identity: str) -> str:
    if len(identity) <= 4:
        return "*" * len(identity)
    return identity[:2] + "*" * (len(identity) - 4) + identity[-2:]


class AuthorizationGuard:
    """
    Ownership and admin checks run before any ledger mutation.
    """

    @staticmethod
    def require_caller(caller_id: str | None) -> str:
        caller = (caller_id or "").strip()
        if not caller:
            raise AuthenticationError("Not authenticated")
        return caller

    @staticmethod
    def ensure_owner(owner_id: str, caller_id: str | None) -> str:
        caller = (caller_id or "").strip()
        if not caller:
            raise ValidationError("user_id is required")
        if caller != owner_id:
            logger.warning("Ownership check failed for caller %s", _mask(caller))
            raise AuthorizationError("Unauthorized booking access")
        return caller

    @staticmethod
    def ensure_admin(admin_id: str | None) -> str:
        """
        The admin id is recorded on the event, not compared with the booking.
        When ADMIN_IDS is configured the id must also be on that list.
        """
        admin = (admin_id or "").strip()
        if not admin:
            raise ValidationError("admin_id is required")

        allowed = admin_ids()
        if allowed and admin not in allowed:
            logger.warning("Admin check failed for %s", _mask(admin))
            raise AuthorizationError("Admins only")
        return admin
