from django.test import TestCase

from transactions import events
from transactions.models import Order, OrderEvent, TransactionLog
from transactions.order_state import OrderStateMachine
from transactions.payment_webhooks import PaymentWebhookProcessor
from transactions.refund_service import RefundEngine

from .helpers import FakeGateway, make_order, make_user, make_vendor


def payment_event(event, order, **entity):
    payment = {
        "id": "pay_LIVE1",
        "order_id": order.gateway_order_id,
        "amount": order.total_in_paise,
        "method": "upi",
        "status": "captured",
        "notes": {"order_id": order.order_id},
    }
    payment.update(entity)
    return {"event": event, "payload": {"payment": {"entity": payment}}}


class PaymentWebhookTests(TestCase):
    def setUp(self):
        self.customer = make_user("customer@test.com")
        self.vendor = make_vendor()
        self.order = make_order(
            self.customer,
            self.vendor,
            status=Order.Status.UNCONFIRMED,
            gateway_order_id="order_LIVE1",
        )
        machine = OrderStateMachine(refund_engine=RefundEngine(gateway=FakeGateway()))
        self.processor = PaymentWebhookProcessor(state_machine=machine)

    def test_captured_confirms_order_once(self):
        first = self.processor.process(payment_event("payment.captured", self.order))
        second = self.processor.process(payment_event("payment.captured", self.order))

        self.order.refresh_from_db()
        self.assertEqual(first["message"], "Payment captured event processed")
        self.assertEqual(second["message"], "Payment already recorded")
        self.assertEqual(self.order.status, Order.Status.PROCESSING)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(self.order.gateway_payment_id, "pay_LIVE1")
        self.assertEqual(self.order.payment_amount, 49900)
        self.assertEqual(self.order.payment_method, "upi")
        self.assertEqual(OrderEvent.objects.filter(order=self.order, event=events.ORDER_CONFIRMED).count(), 1)
        self.assertEqual(TransactionLog.objects.filter(order=self.order, action="payment_verified").count(), 1)

    def test_order_found_by_receipt_note(self):
        event = payment_event("payment.captured", self.order, order_id="order_OTHER")

        self.processor.process(event)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)

    def test_failed_payment_is_recorded(self):
        event = payment_event("payment.failed", self.order, status="failed", error_code="CARD_EXPIRED")

        result = self.processor.process(event)

        self.order.refresh_from_db()
        self.assertTrue(result["success"])
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)
        self.assertIn("expired", self.order.payment_failure_reason)
        self.assertEqual(self.order.status, Order.Status.UNCONFIRMED)
        self.assertTrue(OrderEvent.objects.filter(order=self.order, event=events.PAYMENT_FAILED).exists())

    def test_failure_after_capture_does_not_downgrade(self):
        self.processor.process(payment_event("payment.captured", self.order))
        self.processor.process(payment_event("payment.failed", self.order, id="pay_LATE", error_code="GATEWAY_ERROR"))

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(self.order.gateway_payment_id, "pay_LIVE1")

    def test_order_paid_event(self):
        event = payment_event("order.paid", self.order)
        event["payload"]["order"] = {"entity": {"id": "order_LIVE1", "amount_paid": 49900}}

        result = self.processor.process(event)

        self.order.refresh_from_db()
        self.assertEqual(result["message"], "Order paid event processed")
        self.assertEqual(self.order.status, Order.Status.PROCESSING)

    def test_authorized_remembers_payment_id(self):
        self.processor.process(payment_event("payment.authorized", self.order, status="authorized"))

        self.order.refresh_from_db()
        self.assertEqual(self.order.gateway_payment_id, "pay_LIVE1")
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    def test_unknown_event_is_acknowledged(self):
        result = self.processor.process({"event": "refund.speed_changed", "payload": {}})

        self.assertTrue(result["success"])
        self.assertIn("not processed", result["message"])

    def test_missing_order_is_acknowledged(self):
        event = {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_X", "order_id": "order_NOPE", "notes": {}}}},
        }

        result = self.processor.process(event)

        self.assertTrue(result["success"])
        self.assertEqual(result["message"], "No matching order; event ignored")
