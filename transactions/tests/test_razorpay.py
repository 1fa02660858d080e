import json
from unittest.mock import MagicMock

import requests
from django.test import SimpleTestCase

from transactions.razorpay import (
    DEFAULT_FAILURE_REASON,
    Razorpay,
    compute_signature,
    failure_reason,
    refund_status_from_gateway,
)


def fake_response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.json.return_value = body if body is not None else {}
    return resp


class SignatureTests(SimpleTestCase):
    def setUp(self):
        self.client = Razorpay("rzp_test_key", "key-secret", webhook_secret="hook-secret", session=MagicMock())

    def test_checkout_signature(self):
        signature = compute_signature("key-secret", "order_ABC|pay_XYZ")

        self.assertTrue(self.client.verify_payment_signature("order_ABC", "pay_XYZ", signature))

    def test_checkout_signature_single_byte_change_fails(self):
        signature = compute_signature("key-secret", "order_ABC|pay_XYZ")
        tampered = signature[:-1] + ("0" if signature[-1] != "0" else "1")

        self.assertFalse(self.client.verify_payment_signature("order_ABC", "pay_XYZ", tampered))
        self.assertFalse(self.client.verify_payment_signature("order_ABC", "pay_XYZ2", signature))

    def test_missing_parts_fail(self):
        self.assertFalse(self.client.verify_payment_signature("order_ABC", "pay_XYZ", ""))
        self.assertFalse(self.client.verify_payment_signature("", "pay_XYZ", "abc"))

    def test_webhook_signature_covers_raw_body(self):
        body = json.dumps({"event": "payment.captured", "payload": {}}).encode()
        signature = compute_signature("hook-secret", body)

        self.assertTrue(self.client.verify_webhook_signature(body, signature))
        self.assertFalse(self.client.verify_webhook_signature(body + b" ", signature))
        self.assertFalse(self.client.verify_webhook_signature(body.replace(b"captured", b"capturex"), signature))

    def test_webhook_signature_needs_secret(self):
        client = Razorpay("rzp_test_key", "key-secret", webhook_secret="", session=MagicMock())
        body = b'{"event": "payment.captured"}'

        self.assertFalse(client.verify_webhook_signature(body, compute_signature("", body)))


class RazorpayClientTests(SimpleTestCase):
    def setUp(self):
        self.session = MagicMock()
        self.client = Razorpay(
            "rzp_test_key",
            "key-secret",
            base_url="https://gateway.test/v1/",
            timeout=7,
            session=self.session,
        )

    def test_create_order_sends_paise(self):
        self.session.request.return_value = fake_response(body={"id": "order_ABC", "amount": 49950})

        result = self.client.create_order("499.50", receipt="ORD-1")

        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["id"], "order_ABC")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://gateway.test/v1/orders"))
        self.assertEqual(kwargs["json"]["amount"], 49950)
        self.assertEqual(kwargs["json"]["currency"], "INR")
        self.assertEqual(kwargs["auth"], ("rzp_test_key", "key-secret"))
        self.assertEqual(kwargs["timeout"], 7)

    def test_fetch_order(self):
        self.session.request.return_value = fake_response(body={"id": "order_ABC", "status": "paid", "amount_paid": 49900})

        result = self.client.fetch_order("order_ABC")

        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["status"], "paid")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", "https://gateway.test/v1/orders/order_ABC"))
        self.assertEqual(kwargs["auth"], ("rzp_test_key", "key-secret"))

    def test_refund_payment(self):
        self.session.request.return_value = fake_response(body={"id": "rfnd_1", "status": "processed"})

        result = self.client.refund_payment("pay_XYZ", 49900, receipt="refund_ORD-1")

        self.assertTrue(result["success"])
        self.assertEqual(result["message"], "Refund initiated successfully")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args[1], "https://gateway.test/v1/payments/pay_XYZ/refund")
        self.assertEqual(kwargs["json"]["receipt"], "refund_ORD-1")
        self.assertEqual(kwargs["json"]["amount"], 49900)

    def test_gateway_error_description_is_returned(self):
        self.session.request.return_value = fake_response(
            400, {"error": {"code": "BAD_REQUEST_ERROR", "description": "The amount is invalid"}}
        )

        result = self.client.refund_payment("pay_XYZ", 0, receipt="refund_ORD-1")

        self.assertFalse(result["success"])
        self.assertEqual(result["message"], "The amount is invalid")

    def test_network_errors_do_not_raise(self):
        self.session.request.side_effect = requests.ConnectionError("boom")

        result = self.client.fetch_payment("pay_XYZ")

        self.assertFalse(result["success"])
        self.assertEqual(result["message"], "Could not reach payment gateway")

    def test_unconfigured_client_makes_no_calls(self):
        client = Razorpay("", "", session=self.session)

        result = client.fetch_payment("pay_XYZ")

        self.assertFalse(result["success"])
        self.session.request.assert_not_called()


class GatewayMappingTests(SimpleTestCase):
    def test_refund_status(self):
        self.assertEqual(refund_status_from_gateway({"status": "processed"}), "processed")
        self.assertEqual(refund_status_from_gateway({"status": "pending"}), "pending")
        self.assertEqual(refund_status_from_gateway({"status": "created"}), "pending")
        self.assertEqual(refund_status_from_gateway({"status": "failed"}), "failed")
        self.assertEqual(refund_status_from_gateway(None), "failed")

    def test_failure_reason(self):
        self.assertIn("expired", failure_reason({"error_code": "CARD_EXPIRED"}))
        self.assertEqual(failure_reason({"error_description": "UPI app declined"}), "UPI app declined")
        self.assertEqual(failure_reason(None), DEFAULT_FAILURE_REASON)
