import logging

from .exceptions import OrderNotFound
from .models import Order
from .order_state import OrderStateMachine
from .razorpay import failure_reason

logger = logging.getLogger(__name__)


class PaymentWebhookProcessor:
    """
    Applies an already signature-verified Razorpay webhook event to our
    orders. Every handler is idempotent; unknown events are acknowledged.
    """

    def __init__(self, state_machine=None):
        self.state_machine = state_machine or OrderStateMachine()
        self.handlers = {
            'payment.authorized': self.handle_payment_authorized,
            'payment.captured': self.handle_payment_captured,
            'payment.failed': self.handle_payment_failed,
            'order.paid': self.handle_order_paid,
        }

    def process(self, event):
        event_type = (event or {}).get('event')
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"[RazorpayWebhook] Event {event_type} received but not processed")
            return {'success': True, 'message': f"Event {event_type} received but not processed"}

        payload = event.get('payload') or {}
        payment = ((payload.get('payment') or {}).get('entity')) or {}
        gateway_order = ((payload.get('order') or {}).get('entity')) or {}
        try:
            return handler(payment, gateway_order)
        except OrderNotFound:
            logger.warning(f"[RazorpayWebhook] {event_type}: no matching order")
            return {'success': True, 'message': 'No matching order; event ignored'}

    @staticmethod
    def find_order(payment=None, gateway_order=None):
        payment = payment or {}
        gateway_order = gateway_order or {}
        gateway_order_id = payment.get('order_id') or gateway_order.get('id')
        if gateway_order_id:
            order = Order.objects.filter(gateway_order_id=gateway_order_id).first()
            if order:
                return order

        notes = payment.get('notes') or gateway_order.get('notes') or {}
        receipt = notes.get('order_id') if isinstance(notes, dict) else None
        receipt = receipt or gateway_order.get('receipt')
        if receipt:
            order = Order.objects.filter(order_id=receipt).first()
            if order:
                return order
        raise OrderNotFound()

    # ----------------------
    # Handlers
    # ----------------------
    def handle_payment_authorized(self, payment, gateway_order):
        order = self.find_order(payment, gateway_order)
        if payment.get('id') and not order.gateway_payment_id:
            Order.objects.filter(pk=order.pk, gateway_payment_id='').update(gateway_payment_id=payment['id'])
        logger.info(f"[RazorpayWebhook] Payment {payment.get('id')} authorized for {order.order_id}")
        return {'success': True, 'message': 'Payment authorized event processed'}

    def handle_payment_captured(self, payment, gateway_order):
        order = self.find_order(payment, gateway_order)
        recorded = self.state_machine.mark_payment_verified(
            order.order_id,
            payment_id=payment.get('id', ''),
            gateway_order_id=payment.get('order_id') or '',
            amount=payment.get('amount'),
            method=payment.get('method') or '',
        )
        message = 'Payment captured event processed' if recorded else 'Payment already recorded'
        return {'success': True, 'message': message}

    def handle_order_paid(self, payment, gateway_order):
        order = self.find_order(payment, gateway_order)
        recorded = self.state_machine.mark_payment_verified(
            order.order_id,
            payment_id=payment.get('id') or order.gateway_payment_id,
            gateway_order_id=gateway_order.get('id') or '',
            amount=payment.get('amount') or gateway_order.get('amount_paid'),
            method=payment.get('method') or '',
        )
        message = 'Order paid event processed' if recorded else 'Payment already recorded'
        return {'success': True, 'message': message}

    def handle_payment_failed(self, payment, gateway_order):
        order = self.find_order(payment, gateway_order)
        reason = failure_reason(payment)
        self.state_machine.mark_payment_failed(
            order.order_id,
            payment_id=payment.get('id', ''),
            reason=reason,
            error_code=payment.get('error_code') or '',
        )
        return {'success': True, 'message': 'Payment failed event processed'}
