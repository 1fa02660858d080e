import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from users.models import Vendor
from .exceptions import AddressNotFound, OrderNotFound, UserNotFound
from .models import Order, TransactionLog
from .order_state import OrderStateMachine
from .shiprocket import (
    Shiprocket,
    admin_pickup_location_name,
    build_order_payload,
    extract_tracking,
    vendor_pickup_location_name,
)

logger = logging.getLogger(__name__)

ACTIVE_SHIPMENT_STATUSES = (
    Order.Status.READY_TO_SHIP,
    Order.Status.SHIPPED,
    Order.Status.OUT_FOR_DELIVERY,
)


class ShipmentService:
    """
    Creates carrier shipments for orders and folds carrier tracking back
    into them. The carrier client and state machine are injectable.
    """

    def __init__(self, carrier=None, state_machine=None):
        self.carrier = carrier or Shiprocket.from_settings()
        self.state_machine = state_machine or OrderStateMachine()

    # ----------------------
    # Pickup locations
    # ----------------------
    def _register_custom_location(self, custom):
        """Admin-supplied pickup address. Returns the location name, or None if registration failed."""
        existing = (custom.get('pickup_location_name') or '').strip()
        if existing:
            logger.info(f"[ShipmentService] Using existing pickup location {existing}")
            return existing

        name = admin_pickup_location_name(custom.get('name') or 'Pickup')
        result = self.carrier.add_pickup_location({
            'pickup_location': name,
            'name': custom.get('name', ''),
            'email': custom.get('email', ''),
            'phone': custom.get('phone', ''),
            'address': custom.get('address', ''),
            'address_2': custom.get('address_2', ''),
            'city': custom.get('city', ''),
            'state': custom.get('state', ''),
            'country': custom.get('country') or 'India',
            'pin_code': custom.get('pin_code', ''),
        })
        if result['success']:
            return name
        logger.warning(f"[ShipmentService] Custom pickup location rejected: {result['message']}")
        return None

    def _register_vendor_location(self, vendor):
        """Register the vendor's store address once and remember it on the vendor."""
        name = vendor_pickup_location_name(vendor.store_name, vendor.pk)
        result = self.carrier.add_pickup_location({
            'pickup_location': name,
            'name': vendor.store_name,
            'email': vendor.user.email,
            'phone': vendor.contact or vendor.user.phone_number or '',
            'address': vendor.address_line_1,
            'address_2': vendor.address_line_2,
            'city': vendor.city,
            'state': vendor.state,
            'country': vendor.country or 'India',
            'pin_code': vendor.pincode,
        })
        if not result['success']:
            logger.warning(f"[ShipmentService] Pickup registration failed for vendor {vendor.pk}: {result['message']}")
            return None

        Vendor.objects.filter(pk=vendor.pk).update(pickup_location=name, pickup_location_added=True)
        vendor.pickup_location = name
        vendor.pickup_location_added = True
        logger.info(f"[ShipmentService] Registered pickup location {name} for vendor {vendor.pk}")
        return name

    def resolve_pickup_location(self, vendor=None, custom_pickup_location=None):
        """
        Admin override, then the vendor's registered location, then a fresh
        vendor registration, then the default location.
        """
        if custom_pickup_location:
            name = self._register_custom_location(custom_pickup_location)
            if name:
                return name

        if vendor is not None:
            if vendor.pickup_location_added and vendor.pickup_location:
                return vendor.pickup_location
            name = self._register_vendor_location(vendor)
            if name:
                return name

        default = self.carrier.default_pickup_location or settings.SHIPROCKET_DEFAULT_PICKUP_LOCATION
        logger.info(f"[ShipmentService] Falling back to default pickup location {default}")
        return default

    # ----------------------
    # Shipment creation
    # ----------------------
    def create_shipment(self, order_id, custom_pickup_location=None, skip_vendor=False):
        """
        Create the carrier shipment for an order. Missing order, customer or
        address raise; a carrier rejection returns success False and leaves
        the order untouched. Calling it again after success returns the
        recorded shipment.
        """
        try:
            order = Order.objects.select_related('customer', 'address').get(order_id=order_id)
        except Order.DoesNotExist:
            raise OrderNotFound(f"Order {order_id} not found.")

        if order.carrier_order_id:
            return {
                'success': True,
                'message': 'Shipment already created',
                'data': order.shipping_info(),
            }

        user = order.customer
        if user is None or not user.is_active:
            raise UserNotFound(f"Customer for order {order_id} not found.")
        address = order.address
        if address is None:
            raise AddressNotFound(f"Delivery address for order {order_id} not found.")

        vendor = None if skip_vendor else order.primary_vendor
        pickup_location = self.resolve_pickup_location(vendor, custom_pickup_location)
        payload = build_order_payload(order, user, address, pickup_location)

        result = self.carrier.create_order(payload)
        if not result['success']:
            TransactionLog.objects.create(
                order=order,
                level='WARNING',
                action='shipment_failed',
                message=f"Carrier rejected shipment: {result['message']}",
                metadata={'pickup_location': pickup_location},
            )
            return {'success': False, 'message': result['message'], 'data': None}

        data = result['data'] or {}
        now = timezone.now()
        with transaction.atomic():
            written = Order.objects.filter(pk=order.pk, carrier_order_id__isnull=True).update(
                carrier_order_id=str(data.get('order_id')),
                carrier_shipment_id=str(data.get('shipment_id') or ''),
                awb_code=data.get('awb_code') or '',
                courier_name=data.get('courier_name') or '',
                shipping_status=data.get('status') or '',
                pickup_location=pickup_location,
                shipping_last_update=now,
                updated_at=now,
            )
            order.refresh_from_db()
            if written:
                TransactionLog.objects.create(
                    order=order,
                    action='shipment_created',
                    message=f"Carrier order {order.carrier_order_id} created",
                    metadata={'pickup_location': pickup_location, 'shipment_id': order.carrier_shipment_id},
                )
            else:
                logger.warning(
                    f"[ShipmentService] {order.order_id} already had a shipment; carrier order "
                    f"{data.get('order_id')} was not recorded"
                )

        logger.info(f"[ShipmentService] Shipment for {order.order_id}: carrier order {order.carrier_order_id}")
        return {'success': True, 'message': result['message'], 'data': order.shipping_info()}

    # ----------------------
    # Tracking
    # ----------------------
    def _carrier_order_id_for(self, identifier, id_type):
        if id_type != 'shipment':
            return str(identifier)

        # Tracking is keyed by carrier order id; a shipment id needs one more lookup
        order = Order.objects.filter(carrier_shipment_id=str(identifier)).only('carrier_order_id').first()
        if order and order.carrier_order_id:
            return order.carrier_order_id
        result = self.carrier.get_shipment(identifier)
        if not result['success']:
            return None
        shipment = (result['data'] or {}).get('data') or result['data'] or {}
        carrier_order_id = shipment.get('order_id')
        return str(carrier_order_id) if carrier_order_id else None

    def track_shipment(self, identifier, id_type='order', send_email=False):
        """
        Fetch tracking for a carrier order id (or shipment id) and reconcile
        it into the order. Activities come back most recent first.
        """
        carrier_order_id = self._carrier_order_id_for(identifier, id_type)
        if not carrier_order_id:
            return {'success': False, 'message': f"Shipment {identifier} not found", 'data': None}

        result = self.carrier.track_by_order_id(carrier_order_id)
        if not result['success']:
            return {'success': False, 'message': result['message'], 'data': None}

        tracking = extract_tracking(result['data'])
        if tracking['error'] and not tracking['activities'] and not tracking['current_status']:
            return {'success': False, 'message': tracking['error'], 'data': None}

        reconcile = self.state_machine.reconcile_from_carrier_event({
            'sr_order_id': carrier_order_id,
            'shipment_id': tracking['shipment_id'],
            'awb_code': tracking['awb_code'],
            'courier_name': tracking['courier_name'],
            'current_status': tracking['current_status'],
            'pickup_date': tracking['pickup_date'],
            'delivered_date': tracking['delivered_date'],
            'etd': tracking['etd'],
            'activities': tracking['activities'],
        }, notify=send_email)

        return {
            'success': True,
            'message': 'Tracking fetched successfully',
            'data': {
                'carrier_order_id': carrier_order_id,
                'current_status': tracking['current_status'],
                'order_status': reconcile.get('status'),
                'awb_code': tracking['awb_code'],
                'courier_name': tracking['courier_name'],
                'etd': tracking['etd'],
                'track_url': tracking['track_url'],
                'activities': list(reversed(tracking['activities'])),
            },
        }

    def sync_active_shipments(self, limit=None, send_email=True):
        """Poll the carrier for the least recently updated in-flight shipments."""
        limit = limit or settings.SHIPMENT_SYNC_BATCH_SIZE
        orders = (
            Order.objects.filter(status__in=ACTIVE_SHIPMENT_STATUSES, carrier_order_id__isnull=False)
            .order_by('shipping_last_update')
            .values_list('order_id', 'carrier_order_id')[:limit]
        )
        synced, failed = 0, 0
        for order_id, carrier_order_id in orders:
            try:
                result = self.track_shipment(carrier_order_id, 'order', send_email=send_email)
            except Exception as e:
                logger.error(f"[ShipmentService] Sync failed for {order_id}: {e}", exc_info=True)
                result = {'success': False}
            if result['success']:
                synced += 1
            else:
                failed += 1
        logger.info(f"[ShipmentService] Shipment sync finished: {synced} synced, {failed} failed")
        return {'synced': synced, 'failed': failed}
