import uuid
from decimal import Decimal, ROUND_HALF_UP

from django.db import models
from django.utils import timezone

from authentication.models import CustomUser

COD_PAYMENT_OPTIONS = {'cash-on-delivery', 'cash_on_delivery', 'cod'}


def generate_order_id():
    return f"ORD-{timezone.now():%y%m%d}-{uuid.uuid4().hex[:6].upper()}"


def to_paise(amount):
    return int((Decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


# ========================
# ORDER SYSTEM
# ========================
class Order(models.Model):
    class Status(models.TextChoices):
        UNCONFIRMED = 'unconfirmed', 'Unconfirmed'
        PROCESSING = 'processing', 'Processing'
        READY_TO_SHIP = 'ready_to_ship', 'Ready to ship'
        SHIPPED = 'shipped', 'Shipped'
        OUT_FOR_DELIVERY = 'out_for_delivery', 'Out for delivery'
        DELIVERED = 'delivered', 'Delivered'
        CANCELLED = 'cancelled', 'Cancelled'
        RETURNED = 'returned', 'Returned'

    class PaymentStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PAID = 'paid', 'Paid'
        FAILED = 'failed', 'Failed'
        REFUNDED = 'refunded', 'Refunded'

    class RefundStatus(models.TextChoices):
        NONE = '', 'Not requested'
        PENDING = 'pending', 'Pending'
        PROCESSED = 'processed', 'Processed'
        FAILED = 'failed', 'Failed'
        MANUAL_REVIEW = 'manual_review', 'Manual review'

    order_id = models.CharField(max_length=32, unique=True, default=generate_order_id, editable=False)
    customer = models.ForeignKey(CustomUser, on_delete=models.CASCADE, related_name='orders')
    address = models.ForeignKey('users.Address', on_delete=models.SET_NULL, null=True, blank=True, related_name='orders')
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.UNCONFIRMED, db_index=True)

    # Amounts (INR)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    delivery_charges = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    # Payment
    payment_option = models.CharField(max_length=30, default='razorpay')
    payment_status = models.CharField(max_length=10, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    gateway_order_id = models.CharField(max_length=64, blank=True, db_index=True)
    gateway_payment_id = models.CharField(max_length=64, blank=True)
    payment_amount = models.PositiveIntegerField(null=True, blank=True, help_text="Captured amount in paise")
    payment_method = models.CharField(max_length=30, blank=True)
    payment_verified_at = models.DateTimeField(null=True, blank=True)
    payment_failure_reason = models.CharField(max_length=255, blank=True)

    # Refund
    refund_id = models.CharField(max_length=64, blank=True)
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    refund_status = models.CharField(max_length=20, choices=RefundStatus.choices, default=RefundStatus.NONE, blank=True)
    refund_initiated_at = models.DateTimeField(null=True, blank=True)
    refund_processed_at = models.DateTimeField(null=True, blank=True)
    refund_reason = models.CharField(max_length=255, blank=True)
    refund_receipt = models.CharField(max_length=40, blank=True)
    refund_error = models.TextField(blank=True)

    # Shipping (written once by shipment creation, then by carrier reconciliation)
    carrier_order_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    carrier_shipment_id = models.CharField(max_length=64, blank=True, db_index=True)
    awb_code = models.CharField(max_length=64, blank=True, db_index=True)
    courier_name = models.CharField(max_length=100, blank=True)
    shipping_status = models.CharField(max_length=64, blank=True, help_text="Raw carrier status")
    pickup_location = models.CharField(max_length=64, blank=True)
    etd = models.CharField(max_length=64, blank=True)
    pickup_date = models.DateTimeField(null=True, blank=True)
    delivered_date = models.DateTimeField(null=True, blank=True)
    shipping_last_update = models.DateTimeField(null=True, blank=True, db_index=True)
    shipping_history = models.JSONField(default=list, blank=True)

    cancellation_reason = models.CharField(max_length=255, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'shipping_last_update'], name='order_status_sync_idx'),
        ]

    def __str__(self):
        return f"Order {self.order_id} ({self.status})"

    @property
    def is_cod(self):
        return (self.payment_option or '').strip().lower() in COD_PAYMENT_OPTIONS

    @property
    def is_paid(self):
        return self.payment_status == self.PaymentStatus.PAID

    @property
    def total_in_paise(self):
        return to_paise(self.total)

    @property
    def primary_vendor(self):
        item = self.items.select_related('vendor').order_by('id').first()
        return item.vendor if item else None

    def refund_info(self):
        return {
            'refund_id': self.refund_id or None,
            'refund_amount': str(self.refund_amount) if self.refund_amount is not None else None,
            'refund_status': self.refund_status or None,
            'refund_initiated_at': self.refund_initiated_at.isoformat() if self.refund_initiated_at else None,
            'refund_processed_at': self.refund_processed_at.isoformat() if self.refund_processed_at else None,
            'refund_reason': self.refund_reason or None,
            'refund_receipt': self.refund_receipt or None,
        }

    def shipping_info(self):
        return {
            'carrier_order_id': self.carrier_order_id,
            'shipment_id': self.carrier_shipment_id or None,
            'awb_code': self.awb_code or None,
            'courier_name': self.courier_name or None,
            'status': self.shipping_status or None,
            'pickup_location': self.pickup_location or None,
            'etd': self.etd or None,
            'pickup_date': self.pickup_date.isoformat() if self.pickup_date else None,
            'delivered_date': self.delivered_date.isoformat() if self.delivered_date else None,
            'last_update': self.shipping_last_update.isoformat() if self.shipping_last_update else None,
        }


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey('store.Product', on_delete=models.PROTECT)
    vendor = models.ForeignKey('users.Vendor', on_delete=models.PROTECT, related_name='order_items')
    product_name = models.CharField(max_length=255)
    sku = models.CharField(max_length=64, blank=True)
    quantity = models.PositiveIntegerField()
    price_at_purchase = models.DecimalField(max_digits=10, decimal_places=2)
    selected_size = models.CharField(max_length=20, blank=True)

    @property
    def item_subtotal(self):
        return self.price_at_purchase * self.quantity

    def save(self, *args, **kwargs):
        if not self.product_name:
            self.product_name = self.product.name
        if not self.sku:
            self.sku = self.product.sku or f"SKU-{self.product_id}"
        if self.price_at_purchase is None:
            self.price_at_purchase = self.product.price
        if not self.vendor_id:
            self.vendor_id = self.product.store_id
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.product_name} x {self.quantity}"


# ========================
# OUTBOX / AUDIT
# ========================
class OrderEvent(models.Model):
    """
    Lifecycle event written in the same transaction as the order change it
    describes, and handed to Celery after commit.
    """
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        DISPATCHED = 'dispatched', 'Dispatched'
        FAILED = 'failed', 'Failed'

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='events')
    event = models.CharField(max_length=64, db_index=True)
    payload = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.PENDING)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    dispatched_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['status', 'created_at'], name='orderevent_status_created_idx'),
        ]

    def __str__(self):
        return f"{self.event} [{self.status}] {self.order.order_id}"


class TransactionLog(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='logs')
    action = models.CharField(max_length=50, blank=True)
    message = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    level = models.CharField(max_length=10, default='INFO')  # INFO, WARNING, ERROR

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"[{self.level}] {self.order.order_id}: {self.message[:50]}"
