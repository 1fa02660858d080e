import hashlib
import hmac
import logging
from decimal import Decimal

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

FAILURE_REASONS = {
    'PAYMENT_FAILED': 'Payment was declined by your bank. Please check your card details and try again.',
    'GATEWAY_ERROR': 'There was a technical issue with the payment gateway. Please try again.',
    'CARD_EXPIRED': 'Your card has expired. Please use a different card.',
    'INSUFFICIENT_FUNDS': 'Insufficient funds in your account. Please check your balance and try again.',
    'INVALID_CARD': 'Invalid card details. Please check your card number, expiry date, and CVV.',
    'AUTHENTICATION_FAILED': 'Card authentication failed. Please verify your card details.',
    'TRANSACTION_TIMEOUT': 'Transaction timed out. Please try again.',
    'INVALID_CVV': 'Invalid CVV number. Please check and try again.',
    'CARD_BLOCKED': 'Your card is blocked. Please contact your bank.',
    'NETWORK_ERROR': 'Network error occurred. Please check your internet connection and try again.',
}
DEFAULT_FAILURE_REASON = 'Payment failed due to an unknown error. Please try again or contact support.'


def failure_reason(payment):
    """Customer-facing explanation for a failed payment entity."""
    payment = payment or {}
    return (
        FAILURE_REASONS.get(payment.get('error_code') or '')
        or payment.get('error_description')
        or DEFAULT_FAILURE_REASON
    )


def compute_signature(secret, message):
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class Razorpay:
    """
    Thin REST client for the Razorpay API. Every call returns
    {'success': bool, 'message': str, 'data': dict | None} and never raises
    on gateway or network errors.
    """

    def __init__(self, key_id, key_secret, webhook_secret='', base_url='https://api.razorpay.com/v1', timeout=10, session=None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls):
        return cls(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            base_url=settings.RAZORPAY_BASE_URL,
            timeout=settings.RAZORPAY_TIMEOUT,
        )

    @property
    def is_configured(self):
        return bool(self.key_id and self.key_secret)

    def _request(self, method, path, payload=None):
        if not self.is_configured:
            return {'success': False, 'message': 'Razorpay credentials are not configured', 'data': None}

        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.error(f"[Razorpay] {method} {path} timed out after {self.timeout}s")
            return {'success': False, 'message': 'Payment gateway timed out', 'data': None}
        except requests.RequestException as e:
            logger.error(f"[Razorpay] {method} {path} failed: {e}")
            return {'success': False, 'message': 'Could not reach payment gateway', 'data': None}

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.ok:
            return {'success': True, 'message': 'OK', 'data': body}

        error = body.get('error') or {}
        message = error.get('description') or f"Payment gateway returned HTTP {resp.status_code}"
        logger.warning(f"[Razorpay] {method} {path} rejected ({resp.status_code}): {message}")
        return {'success': False, 'message': message, 'data': body}

    # ----------------------
    # Orders & payments
    # ----------------------
    def create_order(self, amount, receipt, notes=None, currency='INR'):
        """Create a gateway order. `amount` is in rupees and is sent in paise."""
        payload = {
            'amount': int((Decimal(amount) * 100).to_integral_value()),
            'currency': currency,
            'receipt': receipt,
            'notes': notes or {},
            'partial_payment': False,
        }
        result = self._request('POST', '/orders', payload)
        if result['success']:
            result['message'] = 'Order created successfully'
        return result

    def fetch_order(self, order_id):
        return self._request('GET', f"/orders/{order_id}")

    def fetch_payment(self, payment_id):
        return self._request('GET', f"/payments/{payment_id}")

    def refund_payment(self, payment_id, amount, receipt, notes=None, speed='normal'):
        """
        Refund a captured payment. `amount` is in paise; `receipt` ties the
        refund back to our order.
        """
        payload = {
            'amount': int(amount),
            'speed': speed,
            'notes': notes or {},
            'receipt': receipt,
        }
        result = self._request('POST', f"/payments/{payment_id}/refund", payload)
        if result['success']:
            result['message'] = 'Refund initiated successfully'
        return result

    def fetch_refund(self, payment_id, refund_id):
        return self._request('GET', f"/payments/{payment_id}/refunds/{refund_id}")

    # ----------------------
    # Signatures
    # ----------------------
    def verify_payment_signature(self, order_id, payment_id, signature):
        """
        True when `signature` is the HMAC-SHA256 of "order_id|payment_id"
        under the key secret. A mismatch is a normal outcome and returns False.
        """
        if not (self.key_secret and order_id and payment_id and signature):
            return False
        expected = compute_signature(self.key_secret, f"{order_id}|{payment_id}")
        return hmac.compare_digest(expected, str(signature))

    def verify_webhook_signature(self, raw_body, signature):
        if not (self.webhook_secret and signature) or raw_body is None:
            return False
        expected = compute_signature(self.webhook_secret, raw_body)
        return hmac.compare_digest(expected, str(signature))


def refund_status_from_gateway(refund):
    """Map a Razorpay refund entity status onto our refund_status values."""
    status = (refund or {}).get('status')
    if status == 'processed':
        return 'processed'
    if status in ('pending', 'created'):
        return 'pending'
    return 'failed'
