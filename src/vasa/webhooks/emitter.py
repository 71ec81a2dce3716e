"""Webhook event emitter for business code.

Provides a centralized interface for emitting webhook events from order,
payment, shipping, catalog, account, document, compliance and system
workflows. Emission never raises into the caller; a failure to accept an
event is logged and reported as False.

Entity arguments (``order``, ``payment``, ``product``, ``user``,
``document``) are plain dicts already shaped for receivers; subscription
filters read ``order``, ``payment`` and ``product``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from vasa.webhooks.models import WebhookEventType

if TYPE_CHECKING:
    from vasa.webhooks.clock import Clock
    from vasa.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

__all__ = [
    "WebhookEventEmitter",
]

SHIPPING_EVENTS = frozenset(
    e for e in WebhookEventType if e.value.startswith("shipping.")
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class WebhookEventEmitter:
    """Centralized event emission for webhook triggers.

    Example:
        >>> emitter = WebhookEventEmitter(dispatcher, clock)
        >>> await emitter.emit_order_created({"id": "o-1", "status": "pending_payment"})
        True
    """

    def __init__(self, dispatcher: WebhookDispatcher, clock: Clock) -> None:
        """Initialize event emitter.

        Args:
            dispatcher: Dispatcher owning the acceptance queue
            clock: Time source for event timestamps
        """
        self._dispatcher = dispatcher
        self._clock = clock

    def _now(self) -> str:
        return self._clock.now().isoformat()

    async def emit(
        self,
        event_type: WebhookEventType | str,
        data: dict[str, Any],
        owner_id: str | None = None,
    ) -> bool:
        """Emit a webhook event.

        Args:
            event_type: Type of event to emit
            data: Event payload data
            owner_id: Restrict delivery to this owner's subscriptions

        Returns:
            True if the event was accepted for dispatch
        """
        try:
            return await self._dispatcher.emit(event_type, data, owner_id)
        except Exception as e:
            logger.error(f"Failed to emit webhook event {event_type}: {e}")
            return False

    # Order events

    async def emit_order_created(self, order: dict[str, Any], owner_id: str | None = None) -> bool:
        return await self.emit(WebhookEventType.ORDER_CREATED, {"order": order}, owner_id)

    async def emit_order_updated(
        self,
        order: dict[str, Any],
        previous_status: str | None = None,
        changes: list[str] | None = None,
        owner_id: str | None = None,
    ) -> bool:
        """Emit an order.updated event with the status transition."""
        data = {
            "order": order,
            "previous_status": previous_status,
            "changes": changes or [],
        }
        return await self.emit(WebhookEventType.ORDER_UPDATED, data, owner_id)

    async def emit_order_cancelled(
        self,
        order: dict[str, Any],
        reason: str,
        cancelled_by: dict[str, Any] | None = None,
        cancellation_fee: float = 0,
        refund_amount: float = 0,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "order": order,
            "cancelled_by": cancelled_by,
            "reason": reason,
            "cancellation_fee": cancellation_fee,
            "refund_amount": refund_amount,
        }
        return await self.emit(WebhookEventType.ORDER_CANCELLED, data, owner_id)

    async def emit_order_completed(
        self,
        order: dict[str, Any],
        total_amount_paid: float | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "order": order,
            "completion_date": self._now(),
            "total_amount_paid": total_amount_paid,
        }
        return await self.emit(WebhookEventType.ORDER_COMPLETED, data, owner_id)

    async def emit_order_disputed(
        self,
        order: dict[str, Any],
        dispute: dict[str, Any],
        raised_by: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> bool:
        """Emit order.disputed; ``dispute`` carries id, reason and status."""
        data = {
            "order": order,
            "dispute": {**dispute, "raised_by": raised_by},
        }
        return await self.emit(WebhookEventType.ORDER_DISPUTED, data, owner_id)

    # Payment events

    async def emit_payment_pending(
        self,
        order: dict[str, Any],
        payment: dict[str, Any],
        due_date: datetime | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {"payment": payment, "order": order, "due_date": _iso(due_date)}
        return await self.emit(WebhookEventType.PAYMENT_PENDING, data, owner_id)

    async def emit_payment_completed(
        self,
        order: dict[str, Any],
        payment: dict[str, Any],
        owner_id: str | None = None,
    ) -> bool:
        """Emit payment.completed and the matching milestone event.

        A payment whose ``type`` is ``advance``, ``shipment`` or ``delivery``
        also emits ``payment.<type>_paid``.

        Returns:
            True if every event was accepted
        """
        data = {"payment": payment, "order": order}
        accepted = await self.emit(WebhookEventType.PAYMENT_COMPLETED, data, owner_id)

        milestone = f"payment.{payment.get('type')}_paid"
        try:
            milestone_event = WebhookEventType(milestone)
        except ValueError:
            return accepted
        return await self.emit(milestone_event, data, owner_id) and accepted

    async def emit_payment_failed(
        self,
        order: dict[str, Any],
        payment: dict[str, Any],
        failure_reason: str,
        retry_allowed: bool = True,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "payment": {**payment, "failureReason": failure_reason},
            "order": order,
            "failure_reason": failure_reason,
            "retry_allowed": retry_allowed,
        }
        return await self.emit(WebhookEventType.PAYMENT_FAILED, data, owner_id)

    async def emit_payment_refunded(
        self,
        order: dict[str, Any],
        payment: dict[str, Any],
        refund_amount: float,
        refund_reason: str | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "payment": payment,
            "order": order,
            "refund_amount": refund_amount,
            "refund_reason": refund_reason,
            "refund_date": self._now(),
        }
        return await self.emit(WebhookEventType.PAYMENT_REFUNDED, data, owner_id)

    # Shipping events

    async def emit_shipping_update(
        self,
        event_type: WebhookEventType,
        order: dict[str, Any],
        shipment: dict[str, Any] | None = None,
        owner_id: str | None = None,
        **details: Any,
    ) -> bool:
        """Emit one of the ``shipping.*`` events.

        Extra keyword arguments (``delay_reason``, ``received_by``, ...) are
        added to the payload.

        Raises:
            ValueError: If ``event_type`` is not a shipping event
        """
        if event_type not in SHIPPING_EVENTS:
            raise ValueError(f"Not a shipping event: {event_type.value}")
        data = {"shipment": shipment or {}, "order": order, **details}
        return await self.emit(event_type, data, owner_id)

    # Product events

    async def emit_product_created(
        self, product: dict[str, Any], owner_id: str | None = None
    ) -> bool:
        return await self.emit(WebhookEventType.PRODUCT_CREATED, {"product": product}, owner_id)

    async def emit_product_updated(
        self,
        product: dict[str, Any],
        changes: list[str] | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {"product": product, "changes": changes or []}
        return await self.emit(WebhookEventType.PRODUCT_UPDATED, data, owner_id)

    async def emit_product_deleted(
        self,
        product: dict[str, Any],
        deleted_by: dict[str, Any] | None = None,
        deletion_reason: str | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "product": product,
            "deleted_by": deleted_by,
            "deletion_reason": deletion_reason,
        }
        return await self.emit(WebhookEventType.PRODUCT_DELETED, data, owner_id)

    async def emit_stock_alert(
        self,
        product: dict[str, Any],
        current_stock: int,
        reorder_level: int,
        last_sold_date: datetime | None = None,
        pending_orders_count: int = 0,
        owner_id: str | None = None,
    ) -> bool:
        """Emit product.out_of_stock at zero stock, else product.low_stock."""
        if current_stock <= 0:
            data = {
                "product": product,
                "current_stock": 0,
                "last_sold_date": _iso(last_sold_date),
                "pending_orders_count": pending_orders_count,
            }
            return await self.emit(WebhookEventType.PRODUCT_OUT_OF_STOCK, data, owner_id)

        data = {
            "product": product,
            "current_stock": current_stock,
            "reorder_level": reorder_level,
            "stock_shortage": max(reorder_level - current_stock, 0),
        }
        return await self.emit(WebhookEventType.PRODUCT_LOW_STOCK, data, owner_id)

    # User and account events

    async def emit_user_verified(
        self,
        user: dict[str, Any],
        verified_by: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "user": user,
            "verification_date": self._now(),
            "verified_by": verified_by,
        }
        return await self.emit(WebhookEventType.USER_VERIFIED, data, owner_id)

    async def emit_user_suspended(
        self,
        user: dict[str, Any],
        suspension_reason: str,
        suspended_by: dict[str, Any] | None = None,
        suspension_duration: str | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "user": user,
            "suspended_by": suspended_by,
            "suspension_reason": suspension_reason,
            "suspension_date": self._now(),
            "suspension_duration": suspension_duration,
        }
        return await self.emit(WebhookEventType.USER_SUSPENDED, data, owner_id)

    async def emit_kyc_decision(
        self,
        user: dict[str, Any],
        approved: bool,
        decided_by: dict[str, Any] | None = None,
        documents: list[str] | None = None,
        rejection_reason: str | None = None,
        owner_id: str | None = None,
    ) -> bool:
        """Emit account.kyc_approved or account.kyc_rejected.

        Args:
            user: Account holder
            approved: Outcome of the KYC review
            decided_by: Reviewer
            documents: Verified documents when approved, documents still
                required when rejected
            rejection_reason: Why the review failed
            owner_id: Restrict delivery to this owner's subscriptions
        """
        if approved:
            data = {
                "user": user,
                "approved_by": decided_by,
                "approval_date": self._now(),
                "verified_documents": documents or [],
            }
            return await self.emit(WebhookEventType.ACCOUNT_KYC_APPROVED, data, owner_id)

        data = {
            "user": user,
            "rejected_by": decided_by,
            "rejection_date": self._now(),
            "rejection_reason": rejection_reason,
            "required_documents": documents or [],
        }
        return await self.emit(WebhookEventType.ACCOUNT_KYC_REJECTED, data, owner_id)

    # Document events

    async def emit_document_uploaded(
        self,
        document: dict[str, Any],
        uploaded_by: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {"document": {**document, "uploadedBy": uploaded_by}}
        return await self.emit(WebhookEventType.DOCUMENT_UPLOADED, data, owner_id)

    async def emit_document_verified(
        self,
        document: dict[str, Any],
        verified_by: dict[str, Any] | None = None,
        verification_notes: str | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "document": {
                **document,
                "verified": True,
                "verifiedBy": verified_by,
                "verifiedDate": self._now(),
            },
            "verification_notes": verification_notes,
        }
        return await self.emit(WebhookEventType.DOCUMENT_VERIFIED, data, owner_id)

    async def emit_document_rejected(
        self,
        document: dict[str, Any],
        rejection_reason: str,
        required_action: str | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "document": {**document, "verified": False, "rejectionReason": rejection_reason},
            "rejection_reason": rejection_reason,
            "required_action": required_action,
        }
        return await self.emit(WebhookEventType.DOCUMENT_REJECTED, data, owner_id)

    # Compliance events

    async def emit_compliance_check_required(
        self,
        order: dict[str, Any],
        compliance_type: str,
        required_documents: list[str] | None = None,
        deadline: datetime | None = None,
        owner_id: str | None = None,
    ) -> bool:
        data = {
            "order": order,
            "compliance_type": compliance_type,
            "required_documents": required_documents or [],
            "deadline": _iso(deadline),
        }
        return await self.emit(WebhookEventType.COMPLIANCE_CHECK_REQUIRED, data, owner_id)

    async def emit_compliance_check_result(
        self,
        order: dict[str, Any],
        compliance_type: str,
        passed: bool,
        checked_by: dict[str, Any] | None = None,
        notes: str | None = None,
        failure_reason: str | None = None,
        required_action: str | None = None,
        owner_id: str | None = None,
    ) -> bool:
        """Emit compliance.check_passed or compliance.check_failed."""
        data: dict[str, Any] = {
            "order": order,
            "compliance_type": compliance_type,
            "checked_by": checked_by,
            "check_date": self._now(),
        }
        if passed:
            data["notes"] = notes
            return await self.emit(WebhookEventType.COMPLIANCE_CHECK_PASSED, data, owner_id)

        data["failure_reason"] = failure_reason
        data["required_action"] = required_action
        return await self.emit(WebhookEventType.COMPLIANCE_CHECK_FAILED, data, owner_id)

    # System events

    async def emit_system_maintenance(
        self,
        maintenance_type: str,
        start_time: datetime,
        end_time: datetime | None = None,
        affected_services: list[str] | None = None,
        description: str | None = None,
    ) -> bool:
        """Announce a maintenance window to every subscriber."""
        data = {
            "maintenance_type": maintenance_type,
            "start_time": _iso(start_time),
            "end_time": _iso(end_time),
            "affected_services": affected_services or [],
            "description": description,
        }
        return await self.emit(WebhookEventType.SYSTEM_MAINTENANCE, data)

    async def emit_system_alert(
        self,
        alert_type: str,
        severity: str,
        message: str,
        recommended_action: str | None = None,
        affected_users: int | None = None,
    ) -> bool:
        """Emit a system.alert to every subscriber."""
        data = {
            "alert_type": alert_type,
            "severity": severity,
            "message": message,
            "affected_users": affected_users,
            "recommended_action": recommended_action,
        }
        return await self.emit(WebhookEventType.SYSTEM_ALERT, data)
