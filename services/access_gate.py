"""
Access Gate - evaluates access policies against the projected user.

The gate only decides. Routes act on the AccessDecision, and
models.responses maps each denial reason to its HTTP status.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Iterable, Optional

from app.logger import get_logger
from app.schema import ApplicationUser, Plan, Role


class Policy(StrEnum):
    ADMIN_ONLY = "admin_only"
    MAINTENANCE = "maintenance"
    OWNERSHIP = "ownership"
    CHAT_AVAILABLE = "chat_available"
    MESSAGE_QUOTA = "message_quota"


class AccessReason(StrEnum):
    OK = "ok"
    ADMIN_BYPASS = "admin_bypass"
    ADMIN_REQUIRED = "admin_required"
    NOT_OWNER = "not_owner"
    MAINTENANCE_USER_BLOCKED = "maintenance_user_blocked"
    MAINTENANCE_NOT_AUTHENTICATED = "maintenance_not_authenticated"
    CHAT_COMING_SOON = "chat_coming_soon"
    DAILY_LIMIT_REACHED = "daily_limit_reached"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessReason

    @classmethod
    def allow(cls, reason: AccessReason = AccessReason.OK) -> "AccessDecision":
        return cls(True, reason)

    @classmethod
    def deny(cls, reason: AccessReason) -> "AccessDecision":
        return cls(False, reason)


class AccessGate:
    """Stateless policy evaluator.

    ``maintenance_mode``, ``chat_coming_soon`` and ``free_daily_messages`` are
    fixed at construction from process configuration and never change afterwards.
    """

    def __init__(
        self,
        maintenance_mode: bool = False,
        chat_coming_soon: bool = False,
        free_daily_messages: int = 10,
    ):
        self.maintenance_mode = maintenance_mode
        self.chat_coming_soon = chat_coming_soon
        self.free_daily_messages = free_daily_messages
        self.logger = get_logger("access_gate")

    def evaluate(
        self,
        user: Optional[ApplicationUser],
        policies: Iterable[Policy],
        resource_owner_id: Optional[str] = None,
    ) -> AccessDecision:
        """AND-compose *policies* in order; the first denial wins."""
        decision = AccessDecision.allow()
        for policy in policies:
            outcome = self._check(policy, user, resource_owner_id)
            if not outcome.allowed:
                self.logger.info(
                    "Access denied",
                    extra={
                        "policy": str(policy),
                        "reason": str(outcome.reason),
                        "user_id": user.id if user else "-",
                    },
                )
                return outcome
            if outcome.reason != AccessReason.OK:
                decision = outcome
        return decision

    def _check(
        self,
        policy: Policy,
        user: Optional[ApplicationUser],
        resource_owner_id: Optional[str],
    ) -> AccessDecision:
        if policy == Policy.ADMIN_ONLY:
            return self._admin_only(user)
        if policy == Policy.MAINTENANCE:
            return self._maintenance(user)
        if policy == Policy.OWNERSHIP:
            return self._ownership(user, resource_owner_id)
        if policy == Policy.CHAT_AVAILABLE:
            return self._chat_available(user)
        if policy == Policy.MESSAGE_QUOTA:
            return self._message_quota(user)
        raise ValueError(f"Unknown policy: {policy}")

    @staticmethod
    def _is_admin(user: Optional[ApplicationUser]) -> bool:
        return user is not None and user.role == Role.ADMIN

    def _admin_only(self, user: Optional[ApplicationUser]) -> AccessDecision:
        if self._is_admin(user):
            return AccessDecision.allow()
        return AccessDecision.deny(AccessReason.ADMIN_REQUIRED)

    def _maintenance(self, user: Optional[ApplicationUser]) -> AccessDecision:
        if not self.maintenance_mode:
            return AccessDecision.allow()
        if user is None:
            return AccessDecision.deny(AccessReason.MAINTENANCE_NOT_AUTHENTICATED)
        if self._is_admin(user):
            return AccessDecision.allow(AccessReason.ADMIN_BYPASS)
        return AccessDecision.deny(AccessReason.MAINTENANCE_USER_BLOCKED)

    def _ownership(
        self, user: Optional[ApplicationUser], resource_owner_id: Optional[str]
    ) -> AccessDecision:
        # A missing resource and someone else's resource are the same denial.
        if user is not None and resource_owner_id is not None and resource_owner_id == user.id:
            return AccessDecision.allow()
        return AccessDecision.deny(AccessReason.NOT_OWNER)

    def _chat_available(self, user: Optional[ApplicationUser]) -> AccessDecision:
        if not self.chat_coming_soon:
            return AccessDecision.allow()
        if self._is_admin(user):
            return AccessDecision.allow(AccessReason.ADMIN_BYPASS)
        return AccessDecision.deny(AccessReason.CHAT_COMING_SOON)

    def _message_quota(self, user: Optional[ApplicationUser]) -> AccessDecision:
        # PRO is unlimited; FREE gets a fixed number of messages per UTC day
        if user is None:
            return AccessDecision.deny(AccessReason.DAILY_LIMIT_REACHED)
        if user.plan == Plan.PRO:
            return AccessDecision.allow()
        if user.messages_used_on(datetime.now(UTC).date()) >= self.free_daily_messages:
            return AccessDecision.deny(AccessReason.DAILY_LIMIT_REACHED)
        return AccessDecision.allow()
