"""
Order state machine.

All status changes go through a compare-and-set update
(`UPDATE ... WHERE pk = ? AND status = <status we read>`) in the same
transaction as their audit log and outbox events. A lost race is retried
from a fresh read a bounded number of times.
"""
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from . import events
from .exceptions import (
    ConcurrentOrderUpdate,
    InvalidTransition,
    OrderNotFound,
    OrderOwnershipError,
)
from .models import Order, TransactionLog
from .shiprocket import CarrierStatus, map_carrier_status

logger = logging.getLogger(__name__)

S = Order.Status

ALLOWED_TRANSITIONS = {
    S.UNCONFIRMED: {S.PROCESSING, S.CANCELLED},
    S.PROCESSING: {S.READY_TO_SHIP, S.CANCELLED},
    S.READY_TO_SHIP: {S.SHIPPED, S.OUT_FOR_DELIVERY, S.DELIVERED, S.CANCELLED, S.RETURNED},
    S.SHIPPED: {S.OUT_FOR_DELIVERY, S.DELIVERED, S.RETURNED},
    S.OUT_FOR_DELIVERY: {S.DELIVERED, S.RETURNED},
    S.DELIVERED: {S.RETURNED},
    S.CANCELLED: set(),
    S.RETURNED: set(),
}

CANCEL_BLOCKED_MESSAGES = {
    S.READY_TO_SHIP: (
        "Orders that are ready to ship cannot be cancelled. The vendor has already prepared your order "
        "for shipping. Please contact support if you need assistance."
    ),
    S.SHIPPED: "Orders that have been shipped cannot be cancelled. You can return the order after delivery.",
    S.OUT_FOR_DELIVERY: (
        "Orders that are out for delivery cannot be cancelled. You can return the order after delivery."
    ),
    S.DELIVERED: "Orders that have been delivered cannot be cancelled. You can return the order instead.",
    S.CANCELLED: "This order is already cancelled.",
    S.RETURNED: "This order has already been returned.",
}

CUSTOMER_CANCELLABLE = {S.UNCONFIRMED, S.PROCESSING}
ADMIN_CANCELLABLE = {S.UNCONFIRMED, S.PROCESSING, S.READY_TO_SHIP}

# Carrier-driven transitions that warrant a customer notification
NOTIFY_ON_CARRIER_STATUS = {
    S.SHIPPED: 'shipping_shipped',
    S.OUT_FOR_DELIVERY: 'shipping_out_for_delivery',
    S.DELIVERED: 'shipping_delivered',
}

CANCELLED_MESSAGE = "Order cancelled successfully"
MANUAL_REFUND_NOTE = "Refund will be processed manually if applicable."


def can_transition(from_status, to_status):
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def rejection_message(current_status, target_status):
    if target_status == S.CANCELLED and current_status in CANCEL_BLOCKED_MESSAGES:
        return CANCEL_BLOCKED_MESSAGES[current_status]
    if target_status == S.READY_TO_SHIP:
        return (
            f"Only orders that are processing can be marked ready to ship "
            f"(current status: {Order.Status(current_status).label.lower()})."
        )
    return f"Cannot move order from {current_status} to {target_status}."


def cancellation_message(refund_result):
    refund_message = (refund_result or {}).get('message')
    if refund_message:
        return f"{CANCELLED_MESSAGE}. {refund_message}"
    return f"{CANCELLED_MESSAGE}. {MANUAL_REFUND_NOTE}"


def merge_history(history, activities):
    """
    Add carrier activities to the stored history, skipping entries already
    present. Returns (merged chronological list, number of entries added).
    """
    merged = list(history or [])
    seen = {(h.get('date'), h.get('status'), h.get('activity'), h.get('location')) for h in merged}
    added = 0
    for activity in activities or []:
        key = (activity.get('date'), activity.get('status'), activity.get('activity'), activity.get('location'))
        if key in seen:
            continue
        seen.add(key)
        merged.append(dict(activity))
        added += 1
    if added:
        merged.sort(key=lambda h: h.get('date') or '')
    return merged, added


def parse_carrier_datetime(value):
    if not value:
        return None
    if hasattr(value, 'tzinfo'):
        parsed = value
    else:
        parsed = parse_datetime(str(value).strip().replace('T', ' ').rstrip('Z'))
        if parsed is None:
            return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


class OrderStateMachine:
    """
    Entry point for every order status change. Collaborators are passed in so
    callers and tests decide which gateway the refund engine talks to.
    """

    def __init__(self, refund_engine=None, max_retries=None):
        self._refund_engine = refund_engine
        self.max_retries = max_retries or settings.ORDER_TRANSITION_MAX_RETRIES

    @property
    def refund_engine(self):
        if self._refund_engine is None:
            from .refund_service import RefundEngine
            self._refund_engine = RefundEngine()
        return self._refund_engine

    # ----------------------
    # Core compare-and-set
    # ----------------------
    @staticmethod
    def get_order(order_id):
        try:
            return Order.objects.select_related('customer').get(order_id=order_id)
        except Order.DoesNotExist:
            raise OrderNotFound(f"Order {order_id} not found.")

    def _compare_and_set(self, order, expected_status, updates, filters=None):
        """One guarded UPDATE; True when this caller's write won."""
        now = timezone.now()
        updated = Order.objects.filter(pk=order.pk, status=expected_status, **(filters or {})).update(
            updated_at=now, **updates
        )
        return updated == 1

    def transition(self, order_id, to_status, allowed_from=None, fields=None, emit=(), actor=None, note=''):
        """
        Move an order to `to_status`.

        `emit` is a list of (event name, payload) published with the change.
        Raises InvalidTransition when the current status forbids the move and
        ConcurrentOrderUpdate when it keeps losing races.
        """
        for attempt in range(1, self.max_retries + 1):
            order = self.get_order(order_id)
            current = order.status

            legal = can_transition(current, to_status)
            if allowed_from is not None:
                legal = legal and current in allowed_from
            if not legal:
                raise InvalidTransition(
                    rejection_message(current, to_status),
                    current_status=current,
                    target_status=to_status,
                )

            updates = dict(fields or {})
            updates['status'] = to_status
            with transaction.atomic():
                if self._compare_and_set(order, current, updates):
                    order.refresh_from_db()
                    TransactionLog.objects.create(
                        order=order,
                        action='status_change',
                        message=f"Status {current} -> {to_status}" + (f": {note}" if note else ''),
                        metadata={
                            'from': current,
                            'to': to_status,
                            'actor_id': getattr(actor, 'id', None),
                            'attempt': attempt,
                        },
                    )
                    for event_name, payload in emit:
                        events.publish(order, event_name, payload)
                    logger.info(f"[OrderStateMachine] {order.order_id}: {current} -> {to_status}")
                    return order

            logger.warning(
                f"[OrderStateMachine] Lost race moving {order_id} {current} -> {to_status} "
                f"(attempt {attempt}/{self.max_retries})"
            )

        raise ConcurrentOrderUpdate()

    # ----------------------
    # Cancellation
    # ----------------------
    def cancel_order(self, order_id, actor, reason=''):
        """
        Cancel an order on behalf of its owner (or an admin), then attempt the
        refund. A refund failure never undoes the cancellation.

        Returns {'order', 'refund', 'message'}.
        """
        order = self.get_order(order_id)
        is_admin = getattr(actor, 'is_admin', False)

        if not is_admin and order.customer_id != actor.id:
            raise OrderOwnershipError("You do not have permission to cancel this order.")

        cancellable = ADMIN_CANCELLABLE if is_admin else CUSTOMER_CANCELLABLE
        if order.status not in cancellable:
            raise InvalidTransition(
                rejection_message(order.status, S.CANCELLED),
                current_status=order.status,
                target_status=S.CANCELLED,
            )

        reason = (reason or '').strip()[:255] or ('Cancelled by admin' if is_admin else 'Cancelled by customer')
        order = self.transition(
            order.order_id,
            S.CANCELLED,
            allowed_from=cancellable,
            fields={'cancellation_reason': reason, 'cancelled_at': timezone.now()},
            emit=[(events.ORDER_CANCELLED, {
                'reason': reason,
                'cancelled_by': 'admin' if is_admin else 'customer',
                'refund_message': self._cancellation_refund_note(order),
            })],
            actor=actor,
            note=reason,
        )

        refund_result = None
        try:
            refund_result = self.refund_engine.process_order_cancellation_refund(
                order.order_id,
                reason=reason,
                user_id=None if is_admin else actor.id,
            )
        except Exception as e:
            logger.error(f"[OrderStateMachine] Refund failed after cancelling {order.order_id}: {e}", exc_info=True)
            TransactionLog.objects.create(
                order=order,
                level='ERROR',
                action='refund_error',
                message=f"Refund raised during cancellation: {e}",
            )

        order.refresh_from_db()
        return {
            'order': order,
            'refund': refund_result,
            'message': cancellation_message(refund_result),
        }

    @staticmethod
    def _cancellation_refund_note(order):
        if order.is_cod:
            return "No payment was collected, so no refund is required."
        if order.is_paid:
            return "Your refund is being processed and you will receive a separate update."
        return ''

    # ----------------------
    # Fulfilment
    # ----------------------
    def advance_to_ready_to_ship(self, order_id, actor, custom_pickup_location=None):
        """Vendor (owning an item) or admin marks a processing order as packed."""
        order = self.get_order(order_id)
        if not getattr(actor, 'is_admin', False):
            owns_item = actor.is_vendor and order.items.filter(vendor__user=actor).exists()
            if not owns_item:
                raise OrderOwnershipError("You do not have permission to update this order.")

        return self.transition(
            order.order_id,
            S.READY_TO_SHIP,
            allowed_from={S.PROCESSING},
            emit=[(events.ORDER_READY_TO_SHIP, {
                'custom_pickup_location': custom_pickup_location or None,
                'requested_by': actor.id,
            })],
            actor=actor,
        )

    # ----------------------
    # Payment outcomes
    # ----------------------
    def mark_payment_verified(self, order_id, payment_id, gateway_order_id='', amount=None, method=''):
        """
        Record a verified payment once. Moves unconfirmed orders to processing
        and publishes order.confirmed with the same write.

        Returns True when this call recorded the payment, False when it was
        already recorded.
        """
        for attempt in range(1, self.max_retries + 1):
            order = self.get_order(order_id)
            if order.payment_status in (Order.PaymentStatus.PAID, Order.PaymentStatus.REFUNDED):
                return False

            now = timezone.now()
            updates = {
                'payment_status': Order.PaymentStatus.PAID,
                'gateway_payment_id': payment_id,
                'payment_amount': amount if amount is not None else order.total_in_paise,
                'payment_method': method or '',
                'payment_verified_at': now,
                'payment_failure_reason': '',
            }
            if gateway_order_id:
                updates['gateway_order_id'] = gateway_order_id
            confirms = order.status == S.UNCONFIRMED
            if confirms:
                updates['status'] = S.PROCESSING

            with transaction.atomic():
                won = self._compare_and_set(
                    order,
                    order.status,
                    updates,
                    filters={'payment_status': order.payment_status},
                )
                if won:
                    order.refresh_from_db()
                    TransactionLog.objects.create(
                        order=order,
                        action='payment_verified',
                        message=f"Payment {payment_id} verified",
                        metadata={'amount': updates['payment_amount'], 'method': method},
                    )
                    if order.status == S.CANCELLED:
                        TransactionLog.objects.create(
                            order=order,
                            level='WARNING',
                            action='payment_after_cancel',
                            message="Payment captured on a cancelled order; refund needs manual follow-up",
                        )
                    elif confirms or order.status == S.PROCESSING:
                        events.publish(order, events.ORDER_CONFIRMED, {'payment_id': payment_id})
                    return True

            logger.warning(f"[OrderStateMachine] Lost race recording payment for {order_id} (attempt {attempt})")

        raise ConcurrentOrderUpdate()

    def mark_payment_failed(self, order_id, payment_id='', reason='', error_code=''):
        """Record a failed payment attempt; a paid order is never downgraded."""
        order = self.get_order(order_id)
        with transaction.atomic():
            updated = Order.objects.filter(
                pk=order.pk,
                payment_status=Order.PaymentStatus.PENDING,
            ).update(
                payment_status=Order.PaymentStatus.FAILED,
                gateway_payment_id=payment_id or order.gateway_payment_id,
                payment_failure_reason=(reason or '')[:255],
                updated_at=timezone.now(),
            )
            if not updated:
                return False
            order.refresh_from_db()
            TransactionLog.objects.create(
                order=order,
                level='WARNING',
                action='payment_failed',
                message=f"Payment {payment_id or '-'} failed: {error_code or reason}",
            )
            events.publish(order, events.PAYMENT_FAILED, {'reason': reason, 'error_code': error_code})
        return True

    # ----------------------
    # Carrier reconciliation
    # ----------------------
    @staticmethod
    def find_order_for_carrier_event(event):
        lookups = []
        if event.get('sr_order_id'):
            lookups.append({'carrier_order_id': str(event['sr_order_id'])})
        if event.get('order_id'):
            lookups.append({'carrier_order_id': str(event['order_id'])})
            lookups.append({'order_id': str(event['order_id'])})
        if event.get('channel_order_id'):
            lookups.append({'order_id': str(event['channel_order_id'])})
        if event.get('awb_code'):
            lookups.append({'awb_code': str(event['awb_code'])})
        for lookup in lookups:
            order = Order.objects.filter(**lookup).select_related('customer').first()
            if order:
                return order
        return None

    def reconcile_from_carrier_event(self, event, notify=True):
        """
        Fold a carrier status update (webhook or poll) into the order.

        `event` keys: order_id / sr_order_id / channel_order_id / awb_code,
        shipment_id, courier_name, current_status, pickup_date,
        delivered_date, etd, activities. Replaying the same event changes
        nothing and notifies nobody.
        """
        order = self.find_order_for_carrier_event(event)
        if order is None:
            logger.warning(f"[Reconcile] No order for carrier event {event.get('order_id') or event.get('awb_code')}")
            return {'success': False, 'message': 'Order not found for carrier event', 'changed': False}

        raw_status = (event.get('current_status') or '').strip()
        carrier_status = CarrierStatus.parse(raw_status)
        if raw_status and carrier_status == CarrierStatus.UNKNOWN:
            logger.warning(f"[Reconcile] Unrecognised carrier status '{raw_status}' for {order.order_id}; status left as is")

        for attempt in range(1, self.max_retries + 1):
            updates = self._carrier_field_updates(order, event, raw_status)
            current = order.status
            target = map_carrier_status(raw_status)
            move_to = None
            if target and target != current:
                if can_transition(current, target):
                    move_to = target
                else:
                    logger.info(
                        f"[Reconcile] Ignoring carrier status {raw_status} for {order.order_id}: "
                        f"{current} -> {target} is not allowed"
                    )
            if move_to == S.DELIVERED and not order.delivered_date and 'delivered_date' not in updates:
                updates['delivered_date'] = timezone.now()

            if not updates and not move_to:
                return {'success': True, 'message': 'No changes', 'changed': False, 'status': current}

            updates['shipping_last_update'] = timezone.now()
            if move_to:
                updates['status'] = move_to

            with transaction.atomic():
                if self._compare_and_set(order, current, updates):
                    order.refresh_from_db()
                    self._after_reconcile(order, current, move_to, raw_status, notify)
                    return {'success': True, 'message': 'Order updated', 'changed': True, 'status': order.status}

            logger.warning(f"[Reconcile] Lost race on {order.order_id} (attempt {attempt}); re-reading")
            order = self.get_order(order.order_id)

        raise ConcurrentOrderUpdate()

    @staticmethod
    def _carrier_field_updates(order, event, raw_status):
        updates = {}
        history, added = merge_history(order.shipping_history, event.get('activities'))
        if added:
            updates['shipping_history'] = history

        if raw_status and raw_status != order.shipping_status:
            updates['shipping_status'] = raw_status
        for field, key in (('awb_code', 'awb_code'), ('courier_name', 'courier_name'), ('etd', 'etd')):
            value = str(event.get(key) or '').strip()
            if value and value != getattr(order, field):
                updates[field] = value
        shipment_id = str(event.get('shipment_id') or '').strip()
        if shipment_id and not order.carrier_shipment_id:
            updates['carrier_shipment_id'] = shipment_id

        # Pickup and delivery dates are set once
        pickup_date = parse_carrier_datetime(event.get('pickup_date'))
        if pickup_date and not order.pickup_date:
            updates['pickup_date'] = pickup_date
        delivered_date = parse_carrier_datetime(event.get('delivered_date'))
        if delivered_date and not order.delivered_date:
            updates['delivered_date'] = delivered_date
        return updates

    def _after_reconcile(self, order, previous, moved_to, raw_status, notify):
        if not moved_to:
            return
        TransactionLog.objects.create(
            order=order,
            action='carrier_status',
            message=f"Status {previous} -> {moved_to} from carrier status {raw_status}",
            metadata={'from': previous, 'to': moved_to, 'carrier_status': raw_status},
        )
        if moved_to in (S.CANCELLED, S.RETURNED):
            # Carrier-side cancellation/return does not reopen refunds automatically
            TransactionLog.objects.create(
                order=order,
                level='WARNING',
                action='carrier_exit',
                message=f"Carrier reported {raw_status}; review refund eligibility manually",
            )
            logger.warning(f"[Reconcile] {order.order_id} moved to {moved_to} by carrier ({raw_status})")
        template = NOTIFY_ON_CARRIER_STATUS.get(moved_to)
        if template and notify:
            events.publish(order, events.SHIPPING_STATUS_CHANGED, {
                'template': template,
                'carrier_status': raw_status,
                'awb_code': order.awb_code,
                'courier_name': order.courier_name,
                'delivered_date': order.delivered_date.strftime('%d %b %Y') if order.delivered_date else '',
            })
