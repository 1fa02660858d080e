from decimal import Decimal

from django.contrib.auth import get_user_model

from store.models import Product
from transactions.models import Order, OrderItem
from users.models import Address, Vendor

User = get_user_model()


def make_user(email, role=None, **extra):
    return User.objects.create_user(
        email=email,
        password="pass12345",
        role=role or User.Role.CUSTOMER,
        **extra,
    )


def make_vendor(email="vendor@test.com", store_name="Demo Store", **extra):
    user = make_user(email, role=User.Role.VENDOR, full_name="Demo Vendor")
    defaults = {
        "contact": "9876543210",
        "address_line_1": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
    }
    defaults.update(extra)
    return Vendor.objects.create(user=user, store_name=store_name, **defaults)


def make_address(user):
    return Address.objects.create(
        user=user,
        name="Asha Rao",
        contact="9123456780",
        address_line_1="221 Residency Road",
        locality="Bengaluru",
        state="Karnataka",
        pincode="560025",
    )


def make_order(customer, vendor, status=Order.Status.PROCESSING, total=Decimal("499.00"), quantity=1, **fields):
    product = Product.objects.create(
        store=vendor,
        name="Cotton Kurta",
        sku="KURTA-M",
        price=total,
    )
    fields.setdefault("payment_option", "razorpay")
    if "address" not in fields:
        fields["address"] = make_address(customer)
    order = Order.objects.create(
        customer=customer,
        status=status,
        subtotal=total,
        total=total,
        **fields,
    )
    OrderItem.objects.create(order=order, product=product, quantity=quantity, price_at_purchase=total)
    return order


def make_paid_order(customer, vendor, status=Order.Status.PROCESSING, **fields):
    fields.setdefault("payment_status", Order.PaymentStatus.PAID)
    fields.setdefault("gateway_order_id", "order_TEST123")
    fields.setdefault("gateway_payment_id", "pay_TEST123")
    fields.setdefault("payment_amount", 49900)
    return make_order(customer, vendor, status=status, **fields)


# ----------------------
# Fake integrations
# ----------------------
class FakeGateway:
    """Stands in for the Razorpay client; records every refund request."""

    def __init__(self, refund_status="processed", refund_success=True, raise_on_refund=None):
        self.refund_status = refund_status
        self.refund_success = refund_success
        self.raise_on_refund = raise_on_refund
        self.refund_calls = []

    def refund_payment(self, payment_id, amount, receipt, notes=None, speed="normal"):
        self.refund_calls.append({"payment_id": payment_id, "amount": amount, "receipt": receipt, "notes": notes})
        if self.raise_on_refund:
            raise self.raise_on_refund
        if not self.refund_success:
            return {"success": False, "message": "The amount is invalid", "data": None}
        return {
            "success": True,
            "message": "Refund initiated successfully",
            "data": {"id": "rfnd_TEST1", "amount": amount, "status": self.refund_status},
        }

    def fetch_refund(self, payment_id, refund_id):
        return {"success": True, "message": "OK", "data": {"id": refund_id, "status": self.refund_status}}


class FakeCarrier:
    """Stands in for the Shiprocket client."""

    default_pickup_location = "Primary"

    def __init__(self, pickup_results=None, create_result=None, tracking=None):
        self.pickup_results = list(pickup_results or [])
        self.create_result = create_result or {
            "success": True,
            "message": "Shipment created successfully",
            "data": {"order_id": 771234, "shipment_id": 661234, "status": "NEW", "awb_code": "", "courier_name": ""},
        }
        self.tracking = tracking
        self.pickup_calls = []
        self.created_payloads = []
        self.tracked = []

    def add_pickup_location(self, location):
        self.pickup_calls.append(location)
        if self.pickup_results:
            return self.pickup_results.pop(0)
        return {"success": True, "message": "OK", "data": {}}

    def create_order(self, payload):
        self.created_payloads.append(payload)
        return self.create_result

    def track_by_order_id(self, carrier_order_id):
        self.tracked.append(carrier_order_id)
        return self.tracking

    def get_shipment(self, shipment_id):
        return {"success": False, "message": "Not found", "data": None}


def tracking_response(carrier_order_id, current_status, activities, awb="1234567890", delivered_date=None):
    return {
        "success": True,
        "message": "OK",
        "data": {
            str(carrier_order_id): {
                "tracking_data": {
                    "track_status": 1,
                    "shipment_track": [{
                        "current_status": current_status,
                        "awb_code": awb,
                        "courier_name": "Delhivery",
                        "shipment_id": 661234,
                        "delivered_date": delivered_date,
                    }],
                    "shipment_track_activities": activities,
                    "track_url": f"https://shiprocket.co/tracking/{awb}",
                    "etd": "2026-10-24 18:00:00",
                }
            }
        },
    }


def run_inline(task, *args, fallback_sync=True, countdown=None, **kwargs):
    """Drop-in for dispatch_task that runs the task in-process."""
    task(*args, **kwargs)
    return True
