import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from . import events
from .models import Order, TransactionLog
from .razorpay import Razorpay, refund_status_from_gateway

logger = logging.getLogger(__name__)

R = Order.RefundStatus

REFUND_TEMPLATES = {
    R.PROCESSED: 'refund_processed',
    R.PENDING: 'refund_initiated',
    R.MANUAL_REVIEW: 'refund_under_review',
    R.FAILED: 'refund_failed',
}

COD_MESSAGE = "Cash on Delivery order cancelled successfully (no refund required)"
NOT_PAID_MESSAGE = "No payment was captured for this order, so no refund is required"
NOT_CANCELLED_MESSAGE = "Only cancelled orders can be refunded"
INITIATED_MESSAGE = (
    "Refund initiated successfully. Amount will be credited to your original payment method "
    "within 5-7 business days."
)
FAILED_MESSAGE = (
    "Failed to process refund automatically. Our team will process it manually within 2-3 business days."
)
MANUAL_REVIEW_MESSAGE = "Your refund is under review. Our team will process it within 2-3 business days."


def refund_notification_template(refund_status):
    """Notification template for a refund outcome."""
    return REFUND_TEMPLATES[refund_status]


def refund_receipt(order_id):
    # Razorpay receipts are capped at 40 characters
    return f"refund_{order_id}"[:40]


def _result(success, message, order=None, refund_status=None, **extra):
    result = {
        'success': success,
        'message': message,
        'refund_status': refund_status,
        'refund_info': order.refund_info() if order is not None else None,
    }
    result.update(extra)
    return result


class RefundEngine:
    """
    Issues the refund owed when an order is cancelled. At most one refund
    reaches the gateway per order: the attempt is claimed with a guarded
    update before the gateway call and the receipt is derived from the order id.
    """

    def __init__(self, gateway=None):
        self.gateway = gateway or Razorpay.from_settings()

    def process_order_cancellation_refund(self, order_id, reason='', user_id=None):
        try:
            order = Order.objects.select_related('customer').get(order_id=order_id)
        except Order.DoesNotExist:
            return _result(False, "Order not found")

        if user_id is not None and order.customer_id != user_id:
            return _result(False, "You do not have permission to refund this order")

        if order.status != Order.Status.CANCELLED:
            logger.warning(f"[RefundEngine] Refusing refund for {order.order_id} in status {order.status}")
            return _result(False, NOT_CANCELLED_MESSAGE, order, order.refund_status or None)

        if order.is_cod:
            return _result(True, COD_MESSAGE, order, refund_required=False)

        if order.refund_status == R.PROCESSED:
            return _result(True, "Refund has already been processed for this order", order, R.PROCESSED)
        if order.refund_status in (R.PENDING, R.MANUAL_REVIEW):
            return _result(True, "A refund for this order is already in progress", order, order.refund_status)

        if order.payment_status != Order.PaymentStatus.PAID:
            return _result(True, NOT_PAID_MESSAGE, order, refund_required=False)

        reason = (reason or 'Order cancelled')[:255]
        if not order.gateway_payment_id:
            return self._send_to_manual_review(order, reason, "Paid order has no gateway payment id")

        amount_paise = order.payment_amount or order.total_in_paise
        receipt = refund_receipt(order.order_id)
        now = timezone.now()

        claimed = Order.objects.filter(pk=order.pk, refund_status__in=[R.NONE, R.FAILED]).update(
            refund_status=R.PENDING,
            refund_receipt=receipt,
            refund_reason=reason,
            refund_initiated_at=now,
            refund_error='',
            updated_at=now,
        )
        if not claimed:
            order.refresh_from_db()
            logger.info(f"[RefundEngine] Refund for {order.order_id} already claimed ({order.refund_status})")
            return _result(True, "A refund for this order is already in progress", order, order.refund_status)

        logger.info(f"[RefundEngine] Refunding {amount_paise} paise on {order.gateway_payment_id} for {order.order_id}")
        try:
            response = self.gateway.refund_payment(
                order.gateway_payment_id,
                amount_paise,
                receipt,
                notes={'order_id': order.order_id, 'reason': reason[:200]},
            )
        except Exception as e:
            logger.error(f"[RefundEngine] Gateway call raised for {order.order_id}: {e}", exc_info=True)
            response = {'success': False, 'message': str(e), 'data': None}

        refund = response.get('data') or {}
        status = refund_status_from_gateway(refund) if response.get('success') else R.FAILED

        fields = {
            'refund_status': status,
            'refund_amount': Decimal(int(refund.get('amount') or amount_paise)) / 100,
            'updated_at': timezone.now(),
        }
        if status == R.FAILED:
            fields['refund_error'] = (response.get('message') or 'Refund rejected by gateway')[:1000]
        else:
            fields['refund_id'] = refund.get('id') or ''
        if status == R.PROCESSED:
            fields['refund_processed_at'] = timezone.now()
            fields['payment_status'] = Order.PaymentStatus.REFUNDED

        with transaction.atomic():
            Order.objects.filter(pk=order.pk, refund_status=R.PENDING, refund_receipt=receipt).update(**fields)
            order.refresh_from_db()
            TransactionLog.objects.create(
                order=order,
                level='ERROR' if status == R.FAILED else 'INFO',
                action='refund',
                message=f"Refund {status}: {response.get('message')}",
                metadata={'amount_paise': amount_paise, 'receipt': receipt, 'refund_id': fields.get('refund_id')},
            )
            self._publish_outcome(order, status)

        if status == R.FAILED:
            logger.warning(f"[RefundEngine] Refund failed for {order.order_id}: {fields['refund_error']}")
            return _result(False, FAILED_MESSAGE, order, R.FAILED, error=fields['refund_error'])
        return _result(True, INITIATED_MESSAGE, order, status)

    def _send_to_manual_review(self, order, reason, why):
        now = timezone.now()
        with transaction.atomic():
            updated = Order.objects.filter(pk=order.pk, refund_status__in=[R.NONE, R.FAILED]).update(
                refund_status=R.MANUAL_REVIEW,
                refund_reason=reason,
                refund_initiated_at=now,
                refund_amount=order.total,
                refund_error=why,
                updated_at=now,
            )
            order.refresh_from_db()
            if updated:
                TransactionLog.objects.create(order=order, level='WARNING', action='refund', message=f"Manual review: {why}")
                self._publish_outcome(order, R.MANUAL_REVIEW)
        logger.warning(f"[RefundEngine] {order.order_id} sent to manual review: {why}")
        return _result(True, MANUAL_REVIEW_MESSAGE, order, order.refund_status)

    @staticmethod
    def _publish_outcome(order, status):
        events.publish(order, events.ORDER_REFUND, {
            'template': refund_notification_template(status),
            'refund_status': status,
            'refund_id': order.refund_id,
            'refund_amount': str(order.refund_amount or order.total),
        })

    # ----------------------
    # Operator helpers
    # ----------------------
    def refresh_refund_status(self, order_id):
        """Ask the gateway about a pending refund and record a final outcome once."""
        order = Order.objects.get(order_id=order_id)
        if order.refund_status == R.PENDING and not order.refund_id:
            return self._recover_stalled_claim(order)
        if order.refund_status != R.PENDING:
            return _result(True, "Nothing to refresh", order, order.refund_status or None)

        response = self.gateway.fetch_refund(order.gateway_payment_id, order.refund_id)
        if not response.get('success'):
            return _result(False, response.get('message'), order, order.refund_status)

        status = refund_status_from_gateway(response.get('data'))
        if status == R.PENDING:
            return _result(True, "Refund is still pending", order, status)

        fields = {'refund_status': status, 'updated_at': timezone.now()}
        if status == R.PROCESSED:
            fields['refund_processed_at'] = timezone.now()
            fields['payment_status'] = Order.PaymentStatus.REFUNDED
        else:
            fields['refund_error'] = "Gateway reported the refund as failed"

        with transaction.atomic():
            updated = Order.objects.filter(pk=order.pk, refund_status=R.PENDING).update(**fields)
            order.refresh_from_db()
            if updated:
                TransactionLog.objects.create(order=order, action='refund', message=f"Refund settled as {status}")
                self._publish_outcome(order, status)
        return _result(True, f"Refund {status}", order, order.refund_status)

    def _recover_stalled_claim(self, order):
        """
        A claim without a gateway refund id means the worker stopped before
        the gateway's answer was recorded. Claims older than
        REFUND_CLAIM_TIMEOUT_MINUTES go to manual review and are never sent
        to the gateway again.
        """
        cutoff = timezone.now() - timedelta(minutes=settings.REFUND_CLAIM_TIMEOUT_MINUTES)
        if order.refund_initiated_at and order.refund_initiated_at > cutoff:
            return _result(True, "Refund request is still in flight", order, R.PENDING)

        why = "Refund claim stalled before the gateway response was recorded"
        now = timezone.now()
        with transaction.atomic():
            updated = Order.objects.filter(pk=order.pk, refund_status=R.PENDING, refund_id='').update(
                refund_status=R.MANUAL_REVIEW,
                refund_amount=order.total,
                refund_error=why,
                updated_at=now,
            )
            order.refresh_from_db()
            if updated:
                TransactionLog.objects.create(
                    order=order,
                    level='WARNING',
                    action='refund',
                    message=f"Manual review: {why}",
                    metadata={'receipt': order.refund_receipt},
                )
                self._publish_outcome(order, R.MANUAL_REVIEW)
        logger.warning(f"[RefundEngine] {order.order_id} sent to manual review: {why}")
        return _result(True, MANUAL_REVIEW_MESSAGE, order, order.refund_status)

    def reconcile_pending_refunds(self, limit=50):
        """Settle pending refunds against the gateway and rescue stalled claims."""
        order_ids = list(
            Order.objects.filter(refund_status=R.PENDING)
            .order_by('refund_initiated_at')
            .values_list('order_id', flat=True)[:limit]
        )
        settled = 0
        for order_id in order_ids:
            try:
                result = self.refresh_refund_status(order_id)
            except Exception as e:
                logger.error(f"[RefundEngine] Could not refresh refund for {order_id}: {e}", exc_info=True)
                continue
            if result['refund_status'] != R.PENDING:
                settled += 1
        return {'checked': len(order_ids), 'settled': settled}


def get_order_refund_status(order_id):
    order = Order.objects.get(order_id=order_id)
    return {
        'order_id': order.order_id,
        'payment_status': order.payment_status,
        'is_cod': order.is_cod,
        **order.refund_info(),
    }
