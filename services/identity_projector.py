"""
Identity Projector - maps an authenticated Identity to its ApplicationUser row.

Users are provisioned just in time: the first authenticated request that
touches user-scoped data creates the row. Creation is a single
INSERT ... ON CONFLICT (id) DO NOTHING, so concurrent first requests
converge on exactly one row without any in-process locking.

New rows always start as role=user, plan=FREE, onboarding incomplete.
Role and plan are never taken from the identity provider.

A PRO user whose subscription has lapsed (period over, or no longer
active) is moved back to FREE on projection.
"""

from datetime import UTC, datetime
from typing import Optional

from supabase import Client

from app import supabase_client as db
from app.audit import log_audit_event
from app.errors import UpstreamFailure
from app.schema import ApplicationUser, Identity, Plan, Role

from .base_service import BaseService


class IdentityProjector(BaseService):
    def __init__(self, sb: Client):
        super().__init__(name="identity_projector", sb=sb)

    def lookup(self, user_id: str) -> Optional[ApplicationUser]:
        """Read-only lookup; never creates a row."""
        try:
            return db.get_user(self.sb, user_id)
        except Exception as exc:
            self.logger.error("User lookup failed for %s: %s", user_id, exc)
            raise UpstreamFailure(cause=exc) from exc

    def project(self, identity: Identity) -> ApplicationUser:
        existing = self.lookup(identity.id)
        if existing is not None:
            return self._expire_lapsed_plan(existing)
        return self._provision(identity)

    def _expire_lapsed_plan(self, user: ApplicationUser) -> ApplicationUser:
        if user.plan != Plan.PRO:
            return user
        try:
            subscription = db.get_subscription(self.sb, user.id)
            # PRO without a subscription row was set by hand and stays PRO
            if subscription is None or subscription.is_current(datetime.now(UTC)):
                return user
            downgraded = db.update_user(self.sb, user.id, {"plan": str(Plan.FREE)})
            if subscription.status == "active":
                db.upsert_subscription(self.sb, user.id, {"status": "expired"})
        except Exception as exc:
            self.logger.error("Plan check failed for %s: %s", user.id, exc)
            raise UpstreamFailure(cause=exc) from exc

        log_audit_event(
            logger=self.logger,
            action="PLAN_EXPIRED",
            entity_type="User",
            entity_id=user.id,
            user_id=user.id,
            details={
                "status": subscription.status,
                "current_period_end": (
                    subscription.current_period_end.isoformat()
                    if subscription.current_period_end
                    else None
                ),
            },
        )
        return downgraded or user.model_copy(update={"plan": Plan.FREE})

    def _provision(self, identity: Identity) -> ApplicationUser:
        new_user = ApplicationUser(
            id=identity.id,
            email=identity.email,
            role=Role.USER,
            plan=Plan.FREE,
            onboarding_completed=False,
        )
        try:
            db.insert_user_if_absent(self.sb, new_user)
        except Exception as exc:
            self.logger.error("Provisioning failed for %s: %s", identity.id, exc)
            raise UpstreamFailure(cause=exc) from exc

        # Re-read: if another request won the race, its row is the one we return.
        stored = self.lookup(identity.id)
        if stored is None:
            raise UpstreamFailure(f"User {identity.id} missing after provisioning")

        log_audit_event(
            logger=self.logger,
            action="JIT_CREATE",
            entity_type="User",
            entity_id=identity.id,
            user_id=identity.id,
            details={"email": identity.email, "role": str(stored.role)},
        )
        return stored
