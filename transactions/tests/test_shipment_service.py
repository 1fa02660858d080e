from unittest.mock import patch

from django.test import TestCase

from transactions.exceptions import AddressNotFound, OrderNotFound
from transactions.models import Order, TransactionLog
from transactions.order_state import OrderStateMachine
from transactions.refund_service import RefundEngine
from transactions.shipment_service import ShipmentService
from transactions.tasks import create_shipment_for_order
from users.models import Vendor

from .helpers import (
    FakeCarrier,
    FakeGateway,
    make_paid_order,
    make_user,
    make_vendor,
    tracking_response,
)

REJECTED = {"success": False, "message": "Invalid pincode", "data": None}

ACTIVITIES = [
    {"date": "2026-10-19 09:00:00", "sr-status-label": "PICKED UP", "activity": "Shipment picked up", "location": "Bengaluru"},
    {"date": "2026-10-20 11:30:00", "sr-status-label": "IN TRANSIT", "activity": "Reached hub", "location": "Hyderabad"},
]


class PickupLocationTests(TestCase):
    def setUp(self):
        self.vendor = make_vendor()

    def service(self, carrier):
        return ShipmentService(carrier=carrier, state_machine=OrderStateMachine(refund_engine=RefundEngine(FakeGateway())))

    def test_registered_vendor_location_is_reused(self):
        Vendor.objects.filter(pk=self.vendor.pk).update(pickup_location="Demo_Store_1", pickup_location_added=True)
        self.vendor.refresh_from_db()
        carrier = FakeCarrier()

        name = self.service(carrier).resolve_pickup_location(self.vendor)

        self.assertEqual(name, "Demo_Store_1")
        self.assertEqual(carrier.pickup_calls, [])

    def test_vendor_location_is_registered_once_and_remembered(self):
        carrier = FakeCarrier()

        name = self.service(carrier).resolve_pickup_location(self.vendor)

        self.vendor.refresh_from_db()
        self.assertEqual(name, f"Demo_Store_{self.vendor.pk}")
        self.assertEqual(self.vendor.pickup_location, name)
        self.assertTrue(self.vendor.pickup_location_added)
        self.assertEqual(carrier.pickup_calls[0]["pin_code"], "560001")

    def test_custom_location_wins(self):
        carrier = FakeCarrier()
        custom = {
            "name": "North Warehouse",
            "phone": "9000000000",
            "address": "Plot 7, Industrial Area",
            "city": "Mysuru",
            "state": "Karnataka",
            "pin_code": "570001",
        }

        name = self.service(carrier).resolve_pickup_location(self.vendor, custom)

        self.assertTrue(name.startswith("Admin_North_Warehouse_"))
        self.assertEqual(len(carrier.pickup_calls), 1)

    def test_existing_custom_location_name_is_used_without_registration(self):
        carrier = FakeCarrier()

        name = self.service(carrier).resolve_pickup_location(self.vendor, {"pickup_location_name": "Bengaluru_WH"})

        self.assertEqual(name, "Bengaluru_WH")
        self.assertEqual(carrier.pickup_calls, [])

    def test_falls_back_to_default_when_every_registration_fails(self):
        carrier = FakeCarrier(pickup_results=[REJECTED, REJECTED])
        custom = {"name": "Bad", "address": "x", "city": "y", "state": "z", "pin_code": "000000", "phone": "1"}

        name = self.service(carrier).resolve_pickup_location(self.vendor, custom)

        self.assertEqual(name, "Primary")
        self.assertEqual(len(carrier.pickup_calls), 2)
        self.vendor.refresh_from_db()
        self.assertFalse(self.vendor.pickup_location_added)

    def test_no_vendor_uses_default(self):
        self.assertEqual(self.service(FakeCarrier()).resolve_pickup_location(None), "Primary")


class CreateShipmentTests(TestCase):
    def setUp(self):
        self.customer = make_user("customer@test.com", full_name="Asha Rao")
        self.vendor = make_vendor()
        self.order = make_paid_order(self.customer, self.vendor, status=Order.Status.READY_TO_SHIP)

    def service(self, carrier):
        return ShipmentService(carrier=carrier, state_machine=OrderStateMachine(refund_engine=RefundEngine(FakeGateway())))

    def test_shipment_is_recorded_on_order(self):
        carrier = FakeCarrier()

        result = self.service(carrier).create_shipment(self.order.order_id)

        self.order.refresh_from_db()
        self.assertTrue(result["success"])
        self.assertEqual(self.order.carrier_order_id, "771234")
        self.assertEqual(self.order.carrier_shipment_id, "661234")
        self.assertEqual(self.order.pickup_location, f"Demo_Store_{self.vendor.pk}")
        payload = carrier.created_payloads[0]
        self.assertEqual(payload["order_id"], self.order.order_id)
        self.assertEqual(payload["payment_method"], "Prepaid")
        self.assertEqual(payload["shipping_pincode"], "560025")
        self.assertEqual(payload["order_items"][0]["sku"], "KURTA-M")
        self.assertTrue(TransactionLog.objects.filter(order=self.order, action="shipment_created").exists())

    def test_carrier_rejection_leaves_order_untouched(self):
        carrier = FakeCarrier(create_result=REJECTED)

        result = self.service(carrier).create_shipment(self.order.order_id)

        self.order.refresh_from_db()
        self.assertFalse(result["success"])
        self.assertEqual(result["message"], "Invalid pincode")
        self.assertIsNone(self.order.carrier_order_id)
        self.assertTrue(TransactionLog.objects.filter(order=self.order, action="shipment_failed").exists())

    def test_second_call_returns_recorded_shipment(self):
        carrier = FakeCarrier()
        service = self.service(carrier)

        service.create_shipment(self.order.order_id)
        again = service.create_shipment(self.order.order_id)

        self.assertTrue(again["success"])
        self.assertEqual(again["message"], "Shipment already created")
        self.assertEqual(len(carrier.created_payloads), 1)

    def test_missing_address_raises(self):
        Order.objects.filter(pk=self.order.pk).update(address=None)

        with self.assertRaises(AddressNotFound):
            self.service(FakeCarrier()).create_shipment(self.order.order_id)

    def test_missing_order_raises(self):
        with self.assertRaises(OrderNotFound):
            self.service(FakeCarrier()).create_shipment("ORD-NOPE")

    def test_task_reports_success(self):
        carrier = FakeCarrier()

        with patch("transactions.shipment_service.Shiprocket.from_settings", return_value=carrier):
            result = create_shipment_for_order(self.order.order_id)

        self.assertEqual(result["status"], "success")
        self.assertEqual(result["shipping"]["carrier_order_id"], "771234")

    def test_task_does_not_retry_missing_order(self):
        with patch("transactions.shipment_service.Shiprocket.from_settings", return_value=FakeCarrier()):
            result = create_shipment_for_order("ORD-NOPE")

        self.assertEqual(result["status"], "error")


class TrackShipmentTests(TestCase):
    def setUp(self):
        self.customer = make_user("customer@test.com")
        self.vendor = make_vendor()
        self.order = make_paid_order(
            self.customer,
            self.vendor,
            status=Order.Status.READY_TO_SHIP,
            carrier_order_id="771234",
            carrier_shipment_id="661234",
        )

    def service(self, carrier):
        return ShipmentService(carrier=carrier, state_machine=OrderStateMachine(refund_engine=RefundEngine(FakeGateway())))

    def test_tracking_moves_order_and_returns_latest_first(self):
        carrier = FakeCarrier(tracking=tracking_response("771234", "IN TRANSIT", ACTIVITIES))

        result = self.service(carrier).track_shipment("771234")

        self.order.refresh_from_db()
        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["order_status"], Order.Status.SHIPPED)
        self.assertEqual(result["data"]["activities"][0]["status"], "IN TRANSIT")
        self.assertEqual(self.order.status, Order.Status.SHIPPED)
        self.assertEqual(self.order.awb_code, "1234567890")
        self.assertEqual([h["status"] for h in self.order.shipping_history], ["PICKED UP", "IN TRANSIT"])

    def test_shipment_id_lookup_uses_stored_carrier_order(self):
        carrier = FakeCarrier(tracking=tracking_response("771234", "IN TRANSIT", ACTIVITIES))

        self.service(carrier).track_shipment("661234", id_type="shipment")

        self.assertEqual(carrier.tracked, ["771234"])

    def test_carrier_failure_is_reported(self):
        carrier = FakeCarrier(tracking={"success": False, "message": "Carrier API timed out", "data": None})

        result = self.service(carrier).track_shipment("771234")

        self.assertFalse(result["success"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.READY_TO_SHIP)

    def test_sync_polls_active_shipments(self):
        carrier = FakeCarrier(tracking=tracking_response("771234", "OUT FOR DELIVERY", ACTIVITIES))

        result = self.service(carrier).sync_active_shipments(send_email=False)

        self.assertEqual(result, {"synced": 1, "failed": 0})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.OUT_FOR_DELIVERY)
