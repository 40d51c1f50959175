"""
Payment webhook handling for Lemon Squeezy order and subscription events.

Signature verification happens upstream of this service and is not
performed here.
"""

from typing import Any, Dict, Optional

from supabase import Client

from app import supabase_client as db
from app.audit import log_audit_event
from app.errors import ValidationError
from app.schema import ACTIVE_SUBSCRIPTION_STATUSES, Plan

from .base_service import BaseService

SUBSCRIPTION_EVENTS = {
    "subscription_created",
    "subscription_updated",
    "subscription_resumed",
    "subscription_cancelled",
    "subscription_expired",
}
# events that end a subscription regardless of the status they carry
ENDING_EVENTS = {
    "subscription_cancelled": "cancelled",
    "subscription_expired": "expired",
}


class PaymentWebhookService(BaseService):
    def __init__(self, sb: Client):
        super().__init__(name="payment_webhooks", sb=sb)

    def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        meta = payload.get("meta") or {}
        event_name = meta.get("event_name")
        if not event_name:
            raise ValidationError("Missing meta.event_name")

        if event_name != "order_created" and event_name not in SUBSCRIPTION_EVENTS:
            self.logger.info("Ignoring webhook event %s", event_name)
            return {"event": event_name, "handled": False}

        custom_data = meta.get("custom_data") or {}
        user_id = custom_data.get("user_id")
        if not user_id:
            raise ValidationError("Missing meta.custom_data.user_id")
        if not db.is_uuid(user_id):
            raise ValidationError("Invalid meta.custom_data.user_id")
        if db.get_user(self.sb, user_id) is None:
            self.logger.warning("Webhook %s for unknown user %s ignored", event_name, user_id)
            return {"event": event_name, "handled": False}

        data = payload.get("data") or {}
        attributes = data.get("attributes") or {}

        if event_name == "order_created":
            self._record_order(user_id, str(data.get("id", "")), custom_data, attributes)
        else:
            self._apply_subscription(user_id, event_name, data)
        return {"event": event_name, "handled": True}

    def _record_order(
        self, user_id: str, order_id: str, custom_data: Dict[str, Any], attributes: Dict[str, Any]
    ) -> None:
        if not order_id:
            raise ValidationError("Missing data.id for order")
        purchase = db.record_purchase(
            self.sb,
            {
                "user_id": user_id,
                "program_id": custom_data.get("program_id"),
                "order_id": order_id,
                "amount": attributes.get("total"),
                "currency": attributes.get("currency"),
                "status": attributes.get("status"),
            },
        )
        if purchase is None:
            self.logger.info("Order %s already recorded", order_id)
            return
        log_audit_event(
            logger=self.logger,
            action="PURCHASE_RECORDED",
            entity_type="UserPurchase",
            entity_id=purchase.id,
            user_id=user_id,
            details={"order_id": order_id, "program_id": purchase.program_id},
        )

    def _apply_subscription(self, user_id: str, event_name: str, data: Dict[str, Any]) -> None:
        attributes = data.get("attributes") or {}
        status = ENDING_EVENTS.get(event_name) or attributes.get("status") or "unknown"
        plan = Plan.PRO if status in ACTIVE_SUBSCRIPTION_STATUSES else Plan.FREE

        db.update_user(self.sb, user_id, {"plan": str(plan)})
        db.upsert_subscription(
            self.sb,
            user_id,
            {
                "status": status,
                "lemon_squeezy_id": _optional_str(data.get("id")),
                "current_period_end": attributes.get("ends_at") or attributes.get("renews_at"),
                "plan_id": _optional_str(attributes.get("product_id")),
                "variant_id": _optional_str(attributes.get("variant_id")),
            },
        )

        log_audit_event(
            logger=self.logger,
            action="PLAN_CHANGED",
            entity_type="User",
            entity_id=user_id,
            user_id=user_id,
            details={"event": event_name, "status": status, "plan": str(plan)},
        )


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
