"""
Order lifecycle events.

`publish` writes an OrderEvent row inside the transaction that changed the
order and hands it to Celery once that transaction commits. Subscribers run
in the `transactions.process_order_event` task; their failures are recorded
on the event row and never reach the code that published it.
"""
import logging

from django.contrib.auth import get_user_model
from django.db import transaction

from authentication.core.task_dispatch import dispatch_task
from users.notification_models import Notification
from users.notification_service import NotificationService
from .models import OrderEvent, TransactionLog
from .shiprocket import Shiprocket

logger = logging.getLogger(__name__)

ORDER_CONFIRMED = 'order.confirmed'
ORDER_CANCELLED = 'order.cancelled'
ORDER_READY_TO_SHIP = 'order.ready_to_ship'
ORDER_REFUND = 'order.refund'
SHIPPING_STATUS_CHANGED = 'shipping.status_changed'
PAYMENT_FAILED = 'payment.failed'

# Events whose customer template is fixed; the others carry it in their payload
EVENT_TEMPLATES = {
    ORDER_CONFIRMED: 'order_confirmed',
    ORDER_CANCELLED: 'order_cancelled',
    ORDER_READY_TO_SHIP: 'order_ready_to_ship',
    PAYMENT_FAILED: 'payment_failed',
}


def publish(order, event, payload=None):
    """
    Record `event` for `order`. Must run inside the transaction that made
    the change so the event exists if and only if the change does.
    """
    record = OrderEvent.objects.create(order=order, event=event, payload=payload or {})
    transaction.on_commit(lambda: dispatch_event(record.pk))
    logger.info(f"[events] {event} recorded for order {order.order_id} (event {record.pk})")
    return record


def dispatch_event(event_id):
    from .tasks import process_order_event

    # No inline fallback: undelivered rows are picked up by redispatch_pending_order_events
    return dispatch_task(process_order_event, event_id, fallback_sync=False)


def order_context(order):
    return {
        'order_id': order.order_id,
        'customer_name': order.customer.display_name,
        'total': str(order.total),
        'payment_option': order.payment_option,
        'status': order.status,
    }


def _already_notified(user, record, template):
    return Notification.objects.filter(
        user=user,
        template=template,
        related_object_type='order',
        related_object_id=record.order.order_id,
        metadata__event_id=record.pk,
    ).exists()


def _notify(user, record, template, extra=None):
    if _already_notified(user, record, template):
        logger.info(f"[events] {template} for event {record.pk} already created for {user.email}, skipping")
        return None
    context = order_context(record.order)
    context.update(record.payload or {})
    context.update(extra or {})
    context['event_id'] = record.pk
    notification = NotificationService.create_notification(
        user,
        event=record.event,
        template=template,
        context=context,
        related_object_type='order',
        related_object_id=record.order.order_id,
    )
    if notification is None:
        raise RuntimeError(f"Could not create {template} notification for order {record.order.order_id}")
    return notification


# ========================
# SUBSCRIBERS
# ========================
def notify_customer(record):
    template = EVENT_TEMPLATES.get(record.event) or (record.payload or {}).get('template')
    if not template:
        logger.warning(f"[events] No template for {record.event} (event {record.pk}); nothing sent")
        return
    _notify(record.order.customer, record, template)


def _notify_stakeholders(record, vendor_template, admin_template):
    order = record.order
    vendors = {item.vendor for item in order.items.select_related('vendor__user')}
    for vendor in vendors:
        _notify(vendor.user, record, vendor_template, {'store_name': vendor.store_name})

    User = get_user_model()
    for admin in User.objects.filter(is_active=True, role=User.Role.ADMIN):
        _notify(admin, record, admin_template)


def notify_cancellation_stakeholders(record):
    _notify_stakeholders(record, 'order_cancelled_vendor', 'order_cancelled_admin')


def notify_confirmation_stakeholders(record):
    _notify_stakeholders(record, 'order_confirmed_vendor', 'order_confirmed_admin')


def cancel_carrier_shipment(record, carrier=None):
    """Cancel the carrier order when an order that already had one is cancelled."""
    order = record.order
    if not order.carrier_order_id:
        return
    if order.logs.filter(action='carrier_cancelled').exists():
        return

    carrier = carrier or Shiprocket.from_settings()
    result = carrier.cancel_orders([order.carrier_order_id])
    if not result['success']:
        raise RuntimeError(f"Carrier order {order.carrier_order_id} not cancelled: {result['message']}")
    TransactionLog.objects.create(
        order=order,
        action='carrier_cancelled',
        message=f"Carrier order {order.carrier_order_id} cancelled",
    )
    logger.info(f"[events] Carrier order {order.carrier_order_id} cancelled for {order.order_id}")


def queue_shipment_creation(record):
    from .tasks import create_shipment_for_order

    payload = record.payload or {}
    queued = dispatch_task(
        create_shipment_for_order,
        record.order.order_id,
        custom_pickup_location=payload.get('custom_pickup_location'),
    )
    if not queued:
        raise RuntimeError(f"Could not queue shipment creation for order {record.order.order_id}")


SUBSCRIBERS = {
    ORDER_CONFIRMED: [notify_customer, notify_confirmation_stakeholders],
    ORDER_CANCELLED: [cancel_carrier_shipment, notify_customer, notify_cancellation_stakeholders],
    ORDER_READY_TO_SHIP: [queue_shipment_creation, notify_customer],
    ORDER_REFUND: [notify_customer],
    SHIPPING_STATUS_CHANGED: [notify_customer],
    PAYMENT_FAILED: [notify_customer],
}


def run_subscribers(record):
    """
    Run every subscriber for an event. Each one runs even if an earlier one
    failed; the collected errors are returned for the caller to record.
    """
    errors = []
    for handler in SUBSCRIBERS.get(record.event, []):
        try:
            handler(record)
        except Exception as e:
            logger.error(
                f"[events] {handler.__name__} failed for {record.event} (event {record.pk}): {e}",
                exc_info=True,
            )
            errors.append(f"{handler.__name__}: {e}")
    return errors
