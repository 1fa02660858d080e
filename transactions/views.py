import hmac
import json
import logging

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from drf_yasg import openapi
from drf_yasg.utils import swagger_auto_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated

from authentication.core.base_view import BaseAPIView
from authentication.core.exceptions import InvalidWebhookSignature, ServiceNotConfigured
from authentication.core.permissions import IsAdmin, IsAdminOrVendor, can_view_order
from authentication.core.task_dispatch import dispatch_task

from .exceptions import InvalidTransition, OrderNotFound, OrderOwnershipError
from .models import Order, TransactionLog
from .order_state import OrderStateMachine
from .razorpay import Razorpay
from .refund_service import get_order_refund_status
from .serializers import (
    CancelOrderSerializer,
    CreateGatewayOrderSerializer,
    CreateShipmentSerializer,
    OrderSerializer,
    ReadyToShipSerializer,
    VerifyPaymentSerializer,
)
from .shipment_service import ShipmentService
from .tasks import process_razorpay_webhook, process_shiprocket_webhook

logger = logging.getLogger(__name__)

ORDER_ID_PARAM = openapi.Parameter(
    'order_id', openapi.IN_PATH, description="Order id (e.g. ORD-251019-1A2B3C)", type=openapi.TYPE_STRING
)


def _get_visible_order(user, order_id):
    order = Order.objects.select_related('customer').filter(order_id=order_id).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found.")
    if not can_view_order(user, order):
        raise OrderOwnershipError("You do not have permission to view this order.")
    return order


def _truthy(value):
    return str(value or '').strip().lower() in ('1', 'true', 'yes')


# ----------------------
# Order lifecycle
# ----------------------
class CancelOrderView(BaseAPIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_id="order_cancel",
        operation_summary="Cancel Order",
        operation_description=(
            "Cancel an unconfirmed or processing order (admins may also cancel ready-to-ship orders). "
            "Prepaid orders are refunded to the original payment method."
        ),
        tags=["Orders"],
        manual_parameters=[ORDER_ID_PARAM],
        request_body=CancelOrderSerializer,
        responses={
            200: openapi.Response("Order cancelled"),
            400: openapi.Response("Order cannot be cancelled in its current status"),
            403: openapi.Response("Not your order"),
            404: openapi.Response("Order not found"),
            409: openapi.Response("Concurrent update"),
        },
        security=[{"Bearer": []}],
    )
    def patch(self, request, order_id):
        serializer = CancelOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = OrderStateMachine().cancel_order(order_id, request.user, serializer.validated_data['reason'])
        order = result['order']
        return self.success(
            message=result['message'],
            data={
                'orderId': order.order_id,
                'status': order.status,
                'refundInfo': order.refund_info(),
            },
        )


class ReadyToShipView(BaseAPIView):
    permission_classes = [IsAdminOrVendor]

    @swagger_auto_schema(
        operation_id="order_ready_to_ship",
        operation_summary="Mark Order Ready To Ship",
        operation_description=(
            "Vendor (owning an item in the order) or admin marks a processing order as packed. "
            "Shipment creation with the carrier is queued in the background."
        ),
        tags=["Orders"],
        manual_parameters=[ORDER_ID_PARAM],
        request_body=ReadyToShipSerializer,
        responses={
            200: openapi.Response("Order marked ready to ship"),
            400: openapi.Response("Order is not processing"),
            403: openapi.Response("Not allowed"),
        },
        security=[{"Bearer": []}],
    )
    def patch(self, request, order_id):
        serializer = ReadyToShipSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = OrderStateMachine().advance_to_ready_to_ship(
            order_id,
            request.user,
            custom_pickup_location=serializer.validated_data.get('custom_pickup_location'),
        )
        return self.success(
            message="Order marked as ready to ship. Shipment creation has been queued.",
            data={'orderId': order.order_id, 'status': order.status},
        )


class OrderDetailView(BaseAPIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, order_id):
        order = _get_visible_order(request.user, order_id)
        serializer = OrderSerializer(order, context={'request': request})
        return self.success(message="Order retrieved successfully", data=serializer.data)


class RefundStatusView(BaseAPIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, order_id):
        _get_visible_order(request.user, order_id)
        return self.success(message="Refund status retrieved successfully", data=get_order_refund_status(order_id))


# ----------------------
# Shipments
# ----------------------
class TrackShipmentView(BaseAPIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_id="shipment_track",
        operation_summary="Track Shipment",
        operation_description=(
            "Fetch carrier tracking for a carrier order id (type=order) or shipment id (type=shipment) "
            "and fold new activities into the order. Activities are returned most recent first."
        ),
        tags=["Shipments"],
        manual_parameters=[
            openapi.Parameter('type', openapi.IN_QUERY, type=openapi.TYPE_STRING, enum=['order', 'shipment']),
            openapi.Parameter('sendEmail', openapi.IN_QUERY, type=openapi.TYPE_BOOLEAN),
        ],
        security=[{"Bearer": []}],
    )
    def get(self, request, identifier):
        id_type = request.query_params.get('type', 'order')
        if id_type not in ('order', 'shipment'):
            return self.failure("type must be 'order' or 'shipment'")

        lookup = {'carrier_order_id': str(identifier)} if id_type == 'order' else {'carrier_shipment_id': str(identifier)}
        order = Order.objects.filter(**lookup).first()
        if order is not None and not can_view_order(request.user, order):
            raise OrderOwnershipError("You do not have permission to track this shipment.")
        if order is None and not request.user.is_admin:
            raise OrderNotFound("No order found for this shipment.")

        result = ShipmentService().track_shipment(
            identifier,
            id_type=id_type,
            send_email=_truthy(request.query_params.get('sendEmail')),
        )
        if not result['success']:
            return self.failure(result['message'], status_code=status.HTTP_502_BAD_GATEWAY)
        return self.success(message=result['message'], data=result['data'])


class CreateShipmentView(BaseAPIView):
    permission_classes = [IsAdmin]

    @swagger_auto_schema(
        operation_id="shipment_create",
        operation_summary="Create Shipment (Admin)",
        operation_description="Synchronously create the carrier shipment for a ready-to-ship order.",
        tags=["Shipments"],
        manual_parameters=[ORDER_ID_PARAM],
        request_body=CreateShipmentSerializer,
        security=[{"Bearer": []}],
    )
    def post(self, request, order_id):
        serializer = CreateShipmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = Order.objects.filter(order_id=order_id).only('status').first()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        if order.status != Order.Status.READY_TO_SHIP:
            raise InvalidTransition(
                "Only orders that are ready to ship can be sent to the carrier.",
                current_status=order.status,
            )

        result = ShipmentService().create_shipment(
            order_id,
            custom_pickup_location=serializer.validated_data.get('custom_pickup_location'),
            skip_vendor=serializer.validated_data['skip_vendor'],
        )
        if not result['success']:
            return self.failure(result['message'], status_code=status.HTTP_502_BAD_GATEWAY)
        return self.success(message=result['message'], data=result['data'], status_code=status.HTTP_201_CREATED)


# ----------------------
# Razorpay
# ----------------------
class RazorpayCreateOrderView(BaseAPIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_id="razorpay_create_order",
        operation_summary="Create Razorpay Order",
        operation_description="Create the gateway order the checkout widget pays against.",
        tags=["Payments"],
        request_body=CreateGatewayOrderSerializer,
        security=[{"Bearer": []}],
    )
    def post(self, request):
        serializer = CreateGatewayOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order_id = serializer.validated_data['order_id']

        order = Order.objects.filter(order_id=order_id).first()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        if order.customer_id != request.user.id:
            raise OrderOwnershipError("You do not have permission to pay for this order.")
        if order.is_cod:
            return self.failure("Cash on Delivery orders are paid on delivery.")
        if order.status != Order.Status.UNCONFIRMED or order.payment_status == Order.PaymentStatus.PAID:
            return self.failure("This order is not awaiting payment.")

        gateway = Razorpay.from_settings()
        if not gateway.is_configured:
            raise ServiceNotConfigured("Online payments are not available right now.")

        result = gateway.create_order(
            order.total,
            receipt=order.order_id,
            notes={'order_id': order.order_id, 'customer_id': str(order.customer_id)},
        )
        if not result['success']:
            return self.failure(result['message'], status_code=status.HTTP_502_BAD_GATEWAY)

        gateway_order = result['data']
        Order.objects.filter(pk=order.pk, payment_status__in=[Order.PaymentStatus.PENDING, Order.PaymentStatus.FAILED]).update(
            gateway_order_id=gateway_order['id'],
        )
        TransactionLog.objects.create(
            order=order,
            action='gateway_order',
            message=f"Razorpay order {gateway_order['id']} created",
            metadata={'amount': gateway_order.get('amount')},
        )
        return self.success(
            message=result['message'],
            data={
                'key_id': gateway.key_id,
                'razorpay_order_id': gateway_order['id'],
                'amount': gateway_order.get('amount'),
                'currency': gateway_order.get('currency', 'INR'),
                'order_id': order.order_id,
            },
            status_code=status.HTTP_201_CREATED,
        )


class RazorpayVerifyPaymentView(BaseAPIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        operation_id="razorpay_verify_payment",
        operation_summary="Verify Razorpay Payment",
        operation_description=(
            "Check the checkout signature, confirm the payment with the gateway and confirm the order."
        ),
        tags=["Payments"],
        request_body=VerifyPaymentSerializer,
        security=[{"Bearer": []}],
    )
    def post(self, request):
        serializer = VerifyPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        gateway_order_id = serializer.validated_data['razorpay_order_id']
        payment_id = serializer.validated_data['razorpay_payment_id']

        order = Order.objects.filter(gateway_order_id=gateway_order_id).first()
        if order is None:
            raise OrderNotFound("No order matches this payment.")
        if order.customer_id != request.user.id and not request.user.is_admin:
            raise OrderOwnershipError("You do not have permission to verify this payment.")

        gateway = Razorpay.from_settings()
        if not gateway.verify_payment_signature(gateway_order_id, payment_id, serializer.validated_data['razorpay_signature']):
            logger.warning(f"[RazorpayVerify] Signature mismatch for {order.order_id} (payment {payment_id})")
            return self.failure("Payment verification failed", error_code='invalid_signature')

        result = gateway.fetch_payment(payment_id)
        if not result['success']:
            return self.failure(result['message'], status_code=status.HTTP_502_BAD_GATEWAY)

        payment = result['data'] or {}
        if payment.get('order_id') != gateway_order_id:
            return self.failure("Payment does not belong to this order", error_code='payment_mismatch')
        if payment.get('status') not in ('captured', 'authorized'):
            return self.failure(f"Payment is {payment.get('status') or 'not complete'}", error_code='payment_incomplete')
        if int(payment.get('amount') or 0) != order.total_in_paise:
            logger.error(
                f"[RazorpayVerify] Amount mismatch for {order.order_id}: "
                f"paid {payment.get('amount')} expected {order.total_in_paise}"
            )
            return self.failure("Payment amount does not match the order total", error_code='amount_mismatch')

        recorded = OrderStateMachine().mark_payment_verified(
            order.order_id,
            payment_id=payment_id,
            gateway_order_id=gateway_order_id,
            amount=payment.get('amount'),
            method=payment.get('method') or '',
        )
        order.refresh_from_db()
        return self.success(
            message="Payment verified successfully" if recorded else "Payment already verified",
            data={'orderId': order.order_id, 'status': order.status, 'paymentStatus': order.payment_status},
        )


@method_decorator(csrf_exempt, name="dispatch")
class RazorpayWebhookView(BaseAPIView):
    permission_classes = []
    authentication_classes = []

    def post(self, request):
        # The signature covers the raw bytes, so read them before anything parses the body
        raw_body = request.body
        signature = request.headers.get("x-razorpay-signature", "")

        gateway = Razorpay.from_settings()
        if not gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("[RazorpayWebhook] Rejected webhook with invalid signature")
            raise InvalidWebhookSignature()

        try:
            event = json.loads(raw_body)
        except ValueError:
            return self.failure("Malformed webhook body")

        dispatch_task(process_razorpay_webhook, event)
        return self.success(message=f"Event {event.get('event')} received")


@method_decorator(csrf_exempt, name="dispatch")
class ShiprocketWebhookView(BaseAPIView):
    permission_classes = []
    authentication_classes = []

    def post(self, request):
        expected = settings.SHIPROCKET_WEBHOOK_TOKEN
        token = request.headers.get("x-api-key", "")
        if not expected or not hmac.compare_digest(str(token), expected):
            logger.warning("[ShiprocketWebhook] Rejected webhook with invalid token")
            raise InvalidWebhookSignature("Invalid webhook token")

        payload = request.data if isinstance(request.data, dict) else {}
        # The carrier disables webhooks that do not answer 200, so processing is deferred
        dispatch_task(process_shiprocket_webhook, dict(payload))
        return self.success(message="Webhook received")
