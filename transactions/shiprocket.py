import logging
import re
import time
from decimal import Decimal
from enum import Enum

import requests
from django.conf import settings
from django.core.cache import cache as default_cache

logger = logging.getLogger(__name__)

PICKUP_LOCATION_MAX_LENGTH = 36
DEFAULT_DIMENSION_CM = 10
MIN_WEIGHT_KG = Decimal('0.5')


# ========================
# STATUS VOCABULARY
# ========================
class CarrierStatus(str, Enum):
    NEW = 'NEW'
    PICKUP_SCHEDULED = 'PICKUP_SCHEDULED'
    PICKUP_GENERATED = 'PICKUP_GENERATED'
    PICKED_UP = 'PICKED_UP'
    SHIPPED = 'SHIPPED'
    IN_TRANSIT = 'IN_TRANSIT'
    OUT_FOR_DELIVERY = 'OUT_FOR_DELIVERY'
    DELIVERED = 'DELIVERED'
    CANCELLED = 'CANCELLED'
    LOST = 'LOST'
    DAMAGED = 'DAMAGED'
    RETURNED = 'RETURNED'
    RTO_INITIATED = 'RTO_INITIATED'
    RTO_DELIVERED = 'RTO_DELIVERED'
    UNKNOWN = 'UNKNOWN'

    @classmethod
    def parse(cls, raw):
        """Normalise a free-text carrier status. Unrecognised text is UNKNOWN."""
        if raw is None:
            return cls.UNKNOWN
        key = re.sub(r'[\s\-]+', '_', str(raw).strip().upper())
        key = _STATUS_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return cls.UNKNOWN


_STATUS_ALIASES = {
    'CANCELED': 'CANCELLED',
    'PICKUP_QUEUED': 'PICKUP_SCHEDULED',
    'RTO_IN_TRANSIT': 'RTO_INITIATED',
    'RTO_ACKNOWLEDGED': 'RTO_INITIATED',
}

# Carrier status -> Order.Status value. UNKNOWN is absent on purpose: it never moves an order.
CARRIER_STATUS_MAP = {
    CarrierStatus.NEW: 'ready_to_ship',
    CarrierStatus.PICKUP_SCHEDULED: 'ready_to_ship',
    CarrierStatus.PICKUP_GENERATED: 'ready_to_ship',
    CarrierStatus.PICKED_UP: 'shipped',
    CarrierStatus.SHIPPED: 'shipped',
    CarrierStatus.IN_TRANSIT: 'shipped',
    CarrierStatus.OUT_FOR_DELIVERY: 'out_for_delivery',
    CarrierStatus.DELIVERED: 'delivered',
    CarrierStatus.CANCELLED: 'cancelled',
    CarrierStatus.LOST: 'cancelled',
    CarrierStatus.DAMAGED: 'returned',
    CarrierStatus.RETURNED: 'returned',
    CarrierStatus.RTO_INITIATED: 'returned',
    CarrierStatus.RTO_DELIVERED: 'returned',
}


def map_carrier_status(raw):
    """Internal order status for a raw carrier string, or None when it should not move the order."""
    return CARRIER_STATUS_MAP.get(CarrierStatus.parse(raw))


# ========================
# PICKUP LOCATION NAMES
# ========================
def _clean_name(value):
    value = re.sub(r'[^a-zA-Z0-9\s]', '', (value or '').strip())
    return re.sub(r'\s+', '_', value)


def vendor_pickup_location_name(store_name, vendor_id):
    """`<store>_<vendor id>`, shortened to the carrier's 36 character limit."""
    store = _clean_name(store_name) or 'Store'
    vendor_ref = str(vendor_id)
    name = f"{store}_{vendor_ref}"
    if len(name) > PICKUP_LOCATION_MAX_LENGTH:
        suffix = vendor_ref[-8:]
        store = store[:PICKUP_LOCATION_MAX_LENGTH - 1 - len(suffix)]
        name = f"{store}_{suffix}"
    return re.sub(r'[^a-zA-Z0-9_]', '_', name)[:PICKUP_LOCATION_MAX_LENGTH]


def admin_pickup_location_name(name, now=None):
    """`Admin_<name>_<6 digit time suffix>`, name truncated to fit 36 characters."""
    sanitized = re.sub(r'[^a-zA-Z0-9_]', '_', (name or 'Pickup').strip())
    suffix = str(int((now if now is not None else time.time()) * 1000))[-6:]
    room = PICKUP_LOCATION_MAX_LENGTH - len('Admin_') - len(suffix) - 1
    return f"Admin_{sanitized[:room]}_{suffix}"[:PICKUP_LOCATION_MAX_LENGTH]


def is_existing_location_error(message):
    return 'already exists' in (message or '').lower()


# ========================
# PAYLOAD / RESPONSE SHAPES
# ========================
def _split_name(full_name):
    parts = (full_name or '').split()
    if not parts:
        return 'Customer', ''
    return parts[0], ' '.join(parts[1:])


def build_order_payload(order, user, address, pickup_location):
    """Shiprocket adhoc-order payload for an order with its items' products loaded."""
    first_name, last_name = _split_name(address.name or user.full_name)
    phone = address.contact or user.phone_number or ''

    total_weight = Decimal('0')
    max_length = max_breadth = max_height = Decimal('0')
    order_items = []
    for item in order.items.select_related('product'):
        product = item.product
        total_weight += (product.weight or Decimal('0')) * item.quantity
        max_length = max(max_length, product.length or 0)
        max_breadth = max(max_breadth, product.breadth or 0)
        max_height = max(max_height, product.height or 0)
        order_items.append({
            'name': item.product_name,
            'sku': item.sku,
            'units': item.quantity,
            'selling_price': str(item.price_at_purchase),
            'discount': 0,
            'tax': 0,
            'hsn': product.hsn_code or 0,
            'category': product.category or '',
        })

    address_fields = {
        'customer_name': first_name,
        'last_name': last_name,
        'address': address.address_line_1,
        'address_2': address.address_line_2 or '',
        'city': address.locality,
        'pincode': address.pincode,
        'state': address.state,
        'country': address.country or 'India',
        'email': user.email,
        'phone': phone,
    }
    payload = {
        'order_id': order.order_id,
        'order_date': order.created_at.strftime('%Y-%m-%d %H:%M'),
        'pickup_location': pickup_location,
        'channel_id': 'custom',
        'comment': f"Order {order.order_id}",
        'shipping_is_billing': False,
        'order_items': order_items,
        'payment_method': 'COD' if order.is_cod else 'Prepaid',
        'shipping_charges': str(order.delivery_charges),
        'giftwrap_charges': 0,
        'transaction_charges': 0,
        'total_discount': str(order.discount_amount),
        'sub_total': str(order.subtotal or order.total),
        'length': int(max_length) or DEFAULT_DIMENSION_CM,
        'breadth': int(max_breadth) or DEFAULT_DIMENSION_CM,
        'height': int(max_height) or DEFAULT_DIMENSION_CM,
        'weight': str(max(total_weight, MIN_WEIGHT_KG)),
    }
    for key, value in address_fields.items():
        payload[f"billing_{key}"] = value
        payload[f"shipping_{key}"] = value
    return payload


def normalize_activities(raw_activities):
    """Carrier scans -> [{status, activity, location, date}] in chronological order."""
    activities = []
    for scan in raw_activities or []:
        if not isinstance(scan, dict):
            continue
        activities.append({
            'status': str(scan.get('sr-status-label') or scan.get('status') or scan.get('current_status') or ''),
            'activity': str(scan.get('activity') or ''),
            'location': str(scan.get('location') or ''),
            'date': str(scan.get('date') or ''),
        })
    activities.sort(key=lambda a: a['date'])
    return activities


def extract_tracking(response_data):
    """
    Pull the fields we care about out of a /courier/track response, which
    nests everything under a per-order key and `tracking_data`.
    """
    data = response_data
    if isinstance(data, list):
        data = data[0] if data else {}
    if isinstance(data, dict) and 'tracking_data' not in data and len(data) == 1:
        data = next(iter(data.values()))
    tracking = (data or {}).get('tracking_data') or {}
    shipments = tracking.get('shipment_track') or [{}]
    shipment = shipments[0] or {}
    return {
        'current_status': shipment.get('current_status') or '',
        'awb_code': shipment.get('awb_code') or '',
        'courier_name': shipment.get('courier_name') or '',
        'shipment_id': str(shipment.get('shipment_id') or ''),
        'delivered_date': shipment.get('delivered_date') or None,
        'pickup_date': shipment.get('pickup_date') or None,
        'etd': tracking.get('etd') or shipment.get('edd') or '',
        'activities': normalize_activities(tracking.get('shipment_track_activities')),
        'track_url': tracking.get('track_url') or '',
        'error': tracking.get('error') or '',
    }


# ========================
# CLIENT
# ========================
class Shiprocket:
    """
    Shiprocket external API client. Calls return
    {'success': bool, 'message': str, 'data': ...} and never raise on
    carrier or network errors.
    """
    TOKEN_CACHE_KEY = 'shiprocket:auth_token'
    TOKEN_TTL = 9 * 24 * 60 * 60

    def __init__(self, email, password, base_url='https://apiv2.shiprocket.in/v1/external',
                 timeout=10, default_pickup_location='Primary', cache=None, session=None):
        self.email = email
        self.password = password
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.default_pickup_location = default_pickup_location
        self.cache = cache if cache is not None else default_cache
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls):
        return cls(
            email=settings.SHIPROCKET_EMAIL,
            password=settings.SHIPROCKET_PASSWORD,
            base_url=settings.SHIPROCKET_API_BASE_URL,
            timeout=settings.SHIPROCKET_TIMEOUT,
            default_pickup_location=settings.SHIPROCKET_DEFAULT_PICKUP_LOCATION,
        )

    def authenticate(self, force=False):
        """Return a bearer token, from cache unless `force` is set. None on failure."""
        if not force:
            token = self.cache.get(self.TOKEN_CACHE_KEY)
            if token:
                return token

        try:
            resp = self.session.post(
                f"{self.base_url}/auth/login",
                json={'email': self.email, 'password': self.password},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"[Shiprocket] Authentication request failed: {e}")
            return None

        token = None
        if resp.ok:
            try:
                token = resp.json().get('token')
            except ValueError:
                token = None
        if not token:
            logger.error(f"[Shiprocket] Authentication rejected (HTTP {resp.status_code})")
            return None

        self.cache.set(self.TOKEN_CACHE_KEY, token, self.TOKEN_TTL)
        logger.info("[Shiprocket] Authenticated and cached token")
        return token

    def _request(self, method, path, payload=None, params=None, _retry_auth=True):
        token = self.authenticate()
        if not token:
            return {'success': False, 'message': 'Shiprocket authentication failed', 'data': None}

        try:
            resp = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                params=params,
                headers={'Authorization': f"Bearer {token}", 'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.error(f"[Shiprocket] {method} {path} timed out after {self.timeout}s")
            return {'success': False, 'message': 'Carrier API timed out', 'data': None}
        except requests.RequestException as e:
            logger.error(f"[Shiprocket] {method} {path} failed: {e}")
            return {'success': False, 'message': 'Could not reach carrier API', 'data': None}

        if resp.status_code == 401 and _retry_auth:
            # Token revoked or expired before its cache TTL
            self.cache.delete(self.TOKEN_CACHE_KEY)
            return self._request(method, path, payload, params, _retry_auth=False)

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.ok:
            return {'success': True, 'message': 'OK', 'data': body}

        message = self._error_message(body) or f"Carrier API returned HTTP {resp.status_code}"
        logger.warning(f"[Shiprocket] {method} {path} rejected ({resp.status_code}): {message}")
        return {'success': False, 'message': message, 'data': body}

    @staticmethod
    def _error_message(body):
        if not isinstance(body, dict):
            return ''
        message = body.get('message') or ''
        errors = body.get('errors')
        if isinstance(errors, dict):
            details = '; '.join(
                f"{field}: {', '.join(map(str, msgs)) if isinstance(msgs, list) else msgs}"
                for field, msgs in errors.items()
            )
            message = f"{message} ({details})" if message else details
        return str(message)

    # ----------------------
    # Pickup locations
    # ----------------------
    def add_pickup_location(self, location):
        """Register a pickup location. An 'already exists' answer counts as success."""
        result = self._request('POST', '/settings/company/addpickup', location)
        if not result['success'] and is_existing_location_error(result['message']):
            logger.info(f"[Shiprocket] Pickup location {location.get('pickup_location')} already registered")
            return {'success': True, 'message': result['message'], 'data': result['data']}
        return result

    def get_pickup_locations(self):
        return self._request('GET', '/settings/company/pickup')

    # ----------------------
    # Orders & tracking
    # ----------------------
    def create_order(self, payload):
        result = self._request('POST', '/orders/create/adhoc', payload)
        if not result['success']:
            return result

        data = result['data'] or {}
        if not data.get('order_id'):
            message = self._error_message(data) or 'Carrier did not return an order id'
            return {'success': False, 'message': message, 'data': data}

        result['message'] = 'Shipment created successfully'
        return result

    def track_by_order_id(self, carrier_order_id):
        return self._request('GET', '/courier/track', params={'order_id': carrier_order_id})

    def get_shipment(self, shipment_id):
        return self._request('GET', f"/shipments/{shipment_id}")

    def cancel_orders(self, carrier_order_ids):
        return self._request('POST', '/orders/cancel', {'ids': list(carrier_order_ids)})
