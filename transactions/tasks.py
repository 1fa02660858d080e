import logging
from datetime import timedelta

from celery import shared_task
from django.db.models import F
from django.utils import timezone

from .models import OrderEvent
from .events import run_subscribers
from .shiprocket import normalize_activities

logger = logging.getLogger(__name__)

# Outbox rows younger than this are still expected to be in flight
REDISPATCH_AFTER = timedelta(minutes=5)
MAX_EVENT_ATTEMPTS = 5


# ========================
# OUTBOX
# ========================
@shared_task(name="transactions.process_order_event")
def process_order_event(event_id):
    """
    Run the subscribers for one outbox row. A row that was already dispatched
    is skipped, so redelivery of the same task is harmless.
    """
    try:
        record = OrderEvent.objects.select_related('order__customer').get(pk=event_id)
    except OrderEvent.DoesNotExist:
        logger.error(f"[process_order_event] Event {event_id} not found")
        return {"status": "error", "error": f"Event {event_id} not found"}

    if record.status == OrderEvent.Status.DISPATCHED:
        logger.info(f"[process_order_event] Event {event_id} already dispatched, skipping")
        return {"status": "skipped", "event_id": event_id}

    OrderEvent.objects.filter(pk=record.pk).update(attempts=F('attempts') + 1)
    errors = run_subscribers(record)

    if errors:
        OrderEvent.objects.filter(pk=record.pk).update(
            status=OrderEvent.Status.FAILED,
            last_error="\n".join(errors)[:2000],
        )
        logger.warning(f"[process_order_event] {record.event} (event {event_id}) failed: {errors}")
        return {"status": "failed", "event_id": event_id, "errors": errors}

    OrderEvent.objects.filter(pk=record.pk).update(
        status=OrderEvent.Status.DISPATCHED,
        dispatched_at=timezone.now(),
        last_error='',
    )
    logger.info(f"[process_order_event] {record.event} dispatched for order {record.order.order_id}")
    return {"status": "success", "event_id": event_id}


@shared_task(name="transactions.redispatch_pending_order_events")
def redispatch_pending_order_events(limit=200):
    """
    Periodic task: hand stuck or failed outbox rows back to the queue.
    Rows that reached MAX_EVENT_ATTEMPTS are left for an operator.
    """
    from .events import dispatch_event

    cutoff = timezone.now() - REDISPATCH_AFTER
    event_ids = list(
        OrderEvent.objects.filter(
            status__in=[OrderEvent.Status.PENDING, OrderEvent.Status.FAILED],
            created_at__lt=cutoff,
            attempts__lt=MAX_EVENT_ATTEMPTS,
        ).order_by('created_at').values_list('pk', flat=True)[:limit]
    )
    queued = sum(1 for event_id in event_ids if dispatch_event(event_id))
    if event_ids:
        logger.info(f"[redispatch_pending_order_events] Re-queued {queued}/{len(event_ids)} events")
    return {"status": "success", "found": len(event_ids), "queued": queued}


# ========================
# SHIPPING
# ========================
@shared_task(
    bind=True,
    max_retries=3,
    name="transactions.create_shipment_for_order"
)
def create_shipment_for_order(self, order_id, custom_pickup_location=None):
    """
    Create the carrier shipment for an order that was marked ready to ship.
    A carrier rejection is retried with backoff; an order, customer or
    address that does not exist is not.
    """
    from .exceptions import AddressNotFound, OrderNotFound, UserNotFound
    from .shipment_service import ShipmentService

    try:
        result = ShipmentService().create_shipment(order_id, custom_pickup_location=custom_pickup_location)
    except (OrderNotFound, UserNotFound, AddressNotFound) as e:
        logger.error(f"[create_shipment_for_order] {order_id}: {e.detail}")
        return {"status": "error", "order_id": order_id, "error": str(e.detail)}

    if result['success']:
        logger.info(f"[create_shipment_for_order] Shipment ready for {order_id}")
        return {"status": "success", "order_id": order_id, "shipping": result['data']}

    if self.request.retries < self.max_retries:
        countdown = 60 * (2 ** self.request.retries)
        logger.warning(
            f"[create_shipment_for_order] Carrier rejected {order_id}: {result['message']}. "
            f"Retrying in {countdown}s"
        )
        raise self.retry(exc=RuntimeError(result['message']), countdown=countdown)

    logger.error(f"[create_shipment_for_order] Giving up on {order_id}: {result['message']}")
    return {"status": "failed", "order_id": order_id, "error": result['message']}


@shared_task(name="transactions.sync_shipment_statuses")
def sync_shipment_statuses(limit=None):
    """Periodic task: poll the carrier for in-flight shipments."""
    from .shipment_service import ShipmentService

    result = ShipmentService().sync_active_shipments(limit=limit)
    return {"status": "success", **result}


# ========================
# REFUNDS
# ========================
@shared_task(name="transactions.retry_order_refund")
def retry_order_refund(order_id):
    """
    Operator task: retry a refund that failed, or settle a pending one
    against the gateway.
    """
    from .models import Order
    from .refund_service import RefundEngine

    engine = RefundEngine()
    order = Order.objects.filter(order_id=order_id).only('refund_status').first()
    if order is None:
        return {"success": False, "message": "Order not found"}

    if order.refund_status == Order.RefundStatus.PENDING:
        result = engine.refresh_refund_status(order_id)
    else:
        result = engine.process_order_cancellation_refund(order_id, reason="Refund retried by operator")
    logger.info(f"[retry_order_refund] {order_id}: {result['message']}")
    result.pop('refund_info', None)
    return result


@shared_task(name="transactions.reconcile_pending_refunds")
def reconcile_pending_refunds(limit=50):
    """Periodic task: settle pending refunds and send stalled claims to manual review."""
    from .refund_service import RefundEngine

    result = RefundEngine().reconcile_pending_refunds(limit=limit)
    logger.info(f"[reconcile_pending_refunds] checked={result['checked']} settled={result['settled']}")
    return {"status": "success", **result}


# ========================
# WEBHOOKS
# ========================
@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_kwargs={
        'max_retries': 3,
        'countdown': 30,
    },
    retry_backoff=True,
    name="transactions.process_razorpay_webhook"
)
def process_razorpay_webhook(self, event):
    from .payment_webhooks import PaymentWebhookProcessor

    result = PaymentWebhookProcessor().process(event)
    logger.info(f"[process_razorpay_webhook] {event.get('event')}: {result['message']}")
    return result


def normalize_shiprocket_payload(payload):
    """
    Map a carrier webhook body onto the keys reconcile_from_carrier_event
    expects. The carrier sends `awb`, `scans` and `current_status`; older
    payloads use `shipment_status`.
    """
    payload = payload or {}
    return {
        'sr_order_id': payload.get('sr_order_id'),
        'order_id': payload.get('order_id'),
        'channel_order_id': payload.get('channel_order_id'),
        'awb_code': payload.get('awb') or payload.get('awb_code'),
        'shipment_id': payload.get('shipment_id'),
        'courier_name': payload.get('courier_name'),
        'current_status': payload.get('current_status') or payload.get('shipment_status') or '',
        'etd': payload.get('etd'),
        'pickup_date': payload.get('pickup_date'),
        'delivered_date': payload.get('delivered_date'),
        'activities': normalize_activities(payload.get('scans')),
    }


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_kwargs={
        'max_retries': 3,
        'countdown': 30,
    },
    retry_backoff=True,
    name="transactions.process_shiprocket_webhook"
)
def process_shiprocket_webhook(self, payload):
    from .order_state import OrderStateMachine

    result = OrderStateMachine().reconcile_from_carrier_event(normalize_shiprocket_payload(payload))
    logger.info(
        f"[process_shiprocket_webhook] awb={payload.get('awb')} status={payload.get('current_status')}: "
        f"{result['message']}"
    )
    return result
