from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase
from django.utils import timezone

from transactions import events
from transactions.models import Order, OrderEvent, TransactionLog
from transactions.refund_service import (
    COD_MESSAGE,
    MANUAL_REVIEW_MESSAGE,
    NOT_CANCELLED_MESSAGE,
    RefundEngine,
    get_order_refund_status,
    refund_notification_template,
    refund_receipt,
)
from transactions.tasks import reconcile_pending_refunds, retry_order_refund

from .helpers import FakeGateway, make_order, make_paid_order, make_user, make_vendor


class RefundEngineTests(TestCase):
    def setUp(self):
        self.customer = make_user("customer@test.com")
        self.vendor = make_vendor()
        self.gateway = FakeGateway()
        self.engine = RefundEngine(gateway=self.gateway)

    def test_processed_refund_is_recorded(self):
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED)

        result = self.engine.process_order_cancellation_refund(order.order_id, "changed mind")

        order.refresh_from_db()
        self.assertTrue(result["success"])
        self.assertEqual(result["refund_status"], "processed")
        self.assertEqual(order.refund_id, "rfnd_TEST1")
        self.assertEqual(order.refund_amount, Decimal("499.00"))
        self.assertEqual(order.refund_receipt, refund_receipt(order.order_id))
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertIsNotNone(order.refund_processed_at)
        self.assertEqual(self.gateway.refund_calls[0]["receipt"], f"refund_{order.order_id}")
        event = OrderEvent.objects.get(order=order, event=events.ORDER_REFUND)
        self.assertEqual(event.payload["template"], "refund_processed")

    def test_pending_refund_leaves_payment_paid(self):
        self.gateway.refund_status = "pending"
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED)

        result = self.engine.process_order_cancellation_refund(order.order_id)

        order.refresh_from_db()
        self.assertEqual(result["refund_status"], "pending")
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertIsNone(order.refund_processed_at)

    def test_repeated_calls_reach_gateway_once(self):
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED)

        self.engine.process_order_cancellation_refund(order.order_id)
        again = self.engine.process_order_cancellation_refund(order.order_id)

        self.assertTrue(again["success"])
        self.assertIn("already been processed", again["message"])
        self.assertEqual(len(self.gateway.refund_calls), 1)

    def test_gateway_rejection_marks_refund_failed(self):
        self.gateway.refund_success = False
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED)

        result = self.engine.process_order_cancellation_refund(order.order_id)

        order.refresh_from_db()
        self.assertFalse(result["success"])
        self.assertEqual(order.refund_status, Order.RefundStatus.FAILED)
        self.assertEqual(order.refund_error, "The amount is invalid")
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertTrue(TransactionLog.objects.filter(order=order, level='ERROR', action='refund').exists())
        event = OrderEvent.objects.get(order=order, event=events.ORDER_REFUND)
        self.assertEqual(event.payload["template"], "refund_failed")

    def test_failed_refund_can_be_retried(self):
        self.gateway.refund_success = False
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED)
        self.engine.process_order_cancellation_refund(order.order_id)

        self.gateway.refund_success = True
        result = self.engine.process_order_cancellation_refund(order.order_id)

        self.assertTrue(result["success"])
        self.assertEqual(len(self.gateway.refund_calls), 2)
        # Same receipt both times so the gateway can recognise the retry
        self.assertEqual(self.gateway.refund_calls[0]["receipt"], self.gateway.refund_calls[1]["receipt"])

    def test_cod_order_needs_no_refund(self):
        order = make_order(self.customer, self.vendor, payment_option="COD", status=Order.Status.CANCELLED)

        result = self.engine.process_order_cancellation_refund(order.order_id)

        self.assertTrue(result["success"])
        self.assertEqual(result["message"], COD_MESSAGE)
        self.assertEqual(self.gateway.refund_calls, [])

    def test_paid_order_without_payment_id_goes_to_manual_review(self):
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED, gateway_payment_id="")

        result = self.engine.process_order_cancellation_refund(order.order_id)

        order.refresh_from_db()
        self.assertEqual(result["message"], MANUAL_REVIEW_MESSAGE)
        self.assertEqual(order.refund_status, Order.RefundStatus.MANUAL_REVIEW)
        self.assertEqual(self.gateway.refund_calls, [])
        event = OrderEvent.objects.get(order=order, event=events.ORDER_REFUND)
        self.assertEqual(event.payload["template"], "refund_under_review")

    def test_live_orders_are_not_refunded(self):
        for status in (Order.Status.SHIPPED, Order.Status.DELIVERED):
            with self.subTest(status=status):
                order = make_paid_order(self.customer, self.vendor, status=status)

                result = self.engine.process_order_cancellation_refund(order.order_id)

                order.refresh_from_db()
                self.assertFalse(result["success"])
                self.assertEqual(result["message"], NOT_CANCELLED_MESSAGE)
                self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
                self.assertEqual(order.refund_status, Order.RefundStatus.NONE)
        self.assertEqual(self.gateway.refund_calls, [])

    def test_other_user_cannot_trigger_refund(self):
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED)
        stranger = make_user("stranger@test.com")

        result = self.engine.process_order_cancellation_refund(order.order_id, user_id=stranger.id)

        self.assertFalse(result["success"])
        self.assertEqual(self.gateway.refund_calls, [])

    def test_unknown_order(self):
        result = self.engine.process_order_cancellation_refund("ORD-MISSING")
        self.assertFalse(result["success"])
        self.assertEqual(result["message"], "Order not found")

    def test_refresh_settles_pending_refund(self):
        self.gateway.refund_status = "pending"
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED)
        self.engine.process_order_cancellation_refund(order.order_id)

        self.gateway.refund_status = "processed"
        result = self.engine.refresh_refund_status(order.order_id)

        order.refresh_from_db()
        self.assertEqual(result["refund_status"], "processed")
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(OrderEvent.objects.filter(order=order, event=events.ORDER_REFUND).count(), 2)

    def test_refund_status_summary(self):
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.CANCELLED)
        self.engine.process_order_cancellation_refund(order.order_id)

        summary = get_order_refund_status(order.order_id)

        self.assertEqual(summary["order_id"], order.order_id)
        self.assertEqual(summary["refund_status"], "processed")
        self.assertEqual(summary["refund_amount"], "499.00")
        self.assertFalse(summary["is_cod"])

    def test_templates_for_each_outcome(self):
        self.assertEqual(refund_notification_template("processed"), "refund_processed")
        self.assertEqual(refund_notification_template("pending"), "refund_initiated")
        self.assertEqual(refund_notification_template("manual_review"), "refund_under_review")
        self.assertEqual(refund_notification_template("failed"), "refund_failed")


class RetryOrderRefundTaskTests(TestCase):
    def setUp(self):
        self.customer = make_user("customer@test.com")
        self.vendor = make_vendor()

    def test_retries_failed_refund(self):
        order = make_paid_order(
            self.customer,
            self.vendor,
            status=Order.Status.CANCELLED,
            refund_status=Order.RefundStatus.FAILED,
        )
        gateway = FakeGateway()

        with patch("transactions.refund_service.Razorpay.from_settings", return_value=gateway):
            result = retry_order_refund(order.order_id)

        self.assertTrue(result["success"])
        self.assertEqual(len(gateway.refund_calls), 1)
        self.assertNotIn("refund_info", result)

    def test_unknown_order(self):
        self.assertFalse(retry_order_refund("ORD-NOPE")["success"])

    def test_order_still_with_the_carrier_is_not_refunded(self):
        order = make_paid_order(self.customer, self.vendor, status=Order.Status.SHIPPED)
        gateway = FakeGateway()

        with patch("transactions.refund_service.Razorpay.from_settings", return_value=gateway):
            result = retry_order_refund(order.order_id)

        order.refresh_from_db()
        self.assertFalse(result["success"])
        self.assertEqual(gateway.refund_calls, [])
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)

    def stalled_claim(self, age):
        return make_paid_order(
            self.customer,
            self.vendor,
            status=Order.Status.CANCELLED,
            refund_status=Order.RefundStatus.PENDING,
            refund_receipt="refund_stalled",
            refund_initiated_at=timezone.now() - age,
        )

    def test_stalled_claim_is_sent_to_manual_review(self):
        order = self.stalled_claim(timedelta(hours=1))
        gateway = FakeGateway()

        with patch("transactions.refund_service.Razorpay.from_settings", return_value=gateway):
            first = retry_order_refund(order.order_id)
            second = retry_order_refund(order.order_id)

        order.refresh_from_db()
        self.assertEqual(first["refund_status"], Order.RefundStatus.MANUAL_REVIEW)
        self.assertEqual(first["message"], MANUAL_REVIEW_MESSAGE)
        self.assertEqual(second["refund_status"], Order.RefundStatus.MANUAL_REVIEW)
        self.assertEqual(order.refund_status, Order.RefundStatus.MANUAL_REVIEW)
        self.assertEqual(gateway.refund_calls, [])
        event = OrderEvent.objects.get(order=order, event=events.ORDER_REFUND)
        self.assertEqual(event.payload["template"], "refund_under_review")
        self.assertTrue(TransactionLog.objects.filter(order=order, action="refund", level="WARNING").exists())

    def test_recent_claim_is_left_in_flight(self):
        order = self.stalled_claim(timedelta(minutes=1))

        with patch("transactions.refund_service.Razorpay.from_settings", return_value=FakeGateway()):
            result = retry_order_refund(order.order_id)

        order.refresh_from_db()
        self.assertEqual(result["message"], "Refund request is still in flight")
        self.assertEqual(order.refund_status, Order.RefundStatus.PENDING)
        self.assertFalse(OrderEvent.objects.filter(order=order).exists())

    def test_periodic_sweep_settles_pending_refunds(self):
        stalled = self.stalled_claim(timedelta(hours=1))
        waiting = make_paid_order(
            self.customer,
            self.vendor,
            status=Order.Status.CANCELLED,
            refund_status=Order.RefundStatus.PENDING,
            refund_id="rfnd_WAIT1",
            refund_initiated_at=timezone.now() - timedelta(hours=2),
        )

        with patch("transactions.refund_service.Razorpay.from_settings", return_value=FakeGateway()):
            result = reconcile_pending_refunds()

        stalled.refresh_from_db()
        waiting.refresh_from_db()
        self.assertEqual(result, {"status": "success", "checked": 2, "settled": 2})
        self.assertEqual(stalled.refund_status, Order.RefundStatus.MANUAL_REVIEW)
        self.assertEqual(waiting.refund_status, Order.RefundStatus.PROCESSED)
        self.assertEqual(waiting.payment_status, Order.PaymentStatus.REFUNDED)
