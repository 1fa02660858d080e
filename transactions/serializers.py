from rest_framework import serializers

from .models import Order, OrderItem, TransactionLog


class OrderItemSerializer(serializers.ModelSerializer):
    item_subtotal = serializers.SerializerMethodField()
    vendor = serializers.CharField(source='vendor.store_name', read_only=True)

    class Meta:
        model = OrderItem
        fields = ['id', 'product', 'product_name', 'sku', 'vendor', 'quantity', 'price_at_purchase',
                  'selected_size', 'item_subtotal']
        read_only_fields = fields

    def get_item_subtotal(self, obj):
        return str(obj.item_subtotal)


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    refund_info = serializers.SerializerMethodField()
    shipping = serializers.SerializerMethodField()
    customer_email = serializers.EmailField(source='customer.email', read_only=True)
    logs = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'order_id', 'customer_email', 'status', 'items',
            'subtotal', 'delivery_charges', 'discount_amount', 'total',
            'payment_option', 'payment_status', 'gateway_order_id', 'payment_verified_at',
            'refund_info', 'shipping', 'shipping_history',
            'cancellation_reason', 'cancelled_at', 'created_at', 'updated_at', 'logs',
        ]
        read_only_fields = fields

    def get_refund_info(self, obj):
        return obj.refund_info()

    def get_shipping(self, obj):
        return obj.shipping_info()

    def get_logs(self, obj):
        request = self.context.get('request', None)
        if request and request.user and getattr(request.user, 'is_admin', False):
            return TransactionLogSerializer(obj.logs.all().order_by('-created_at'), many=True).data
        return []


class TransactionLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = TransactionLog
        fields = ['id', 'level', 'action', 'message', 'metadata', 'created_at']
        read_only_fields = fields


# ----------------------
# Request payloads
# ----------------------
class CancelOrderSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')


class CustomPickupLocationSerializer(serializers.Serializer):
    pickup_location_name = serializers.CharField(max_length=36, required=False, allow_blank=True)
    name = serializers.CharField(max_length=150, required=False, allow_blank=True)
    email = serializers.EmailField(required=False, allow_blank=True)
    phone = serializers.CharField(max_length=15, required=False, allow_blank=True)
    address = serializers.CharField(max_length=255, required=False, allow_blank=True)
    address_2 = serializers.CharField(max_length=255, required=False, allow_blank=True)
    city = serializers.CharField(max_length=100, required=False, allow_blank=True)
    state = serializers.CharField(max_length=100, required=False, allow_blank=True)
    country = serializers.CharField(max_length=100, required=False, allow_blank=True)
    pin_code = serializers.CharField(max_length=10, required=False, allow_blank=True)

    def validate(self, attrs):
        if attrs.get('pickup_location_name'):
            return attrs
        missing = [f for f in ('name', 'address', 'city', 'state', 'pin_code', 'phone') if not attrs.get(f)]
        if missing:
            raise serializers.ValidationError(
                f"Provide pickup_location_name or a full address (missing: {', '.join(missing)})"
            )
        return attrs


class ReadyToShipSerializer(serializers.Serializer):
    custom_pickup_location = CustomPickupLocationSerializer(required=False, allow_null=True)


class CreateShipmentSerializer(serializers.Serializer):
    custom_pickup_location = CustomPickupLocationSerializer(required=False, allow_null=True)
    skip_vendor = serializers.BooleanField(required=False, default=False)


class VerifyPaymentSerializer(serializers.Serializer):
    razorpay_order_id = serializers.CharField(max_length=64)
    razorpay_payment_id = serializers.CharField(max_length=64)
    razorpay_signature = serializers.CharField(max_length=128)


class CreateGatewayOrderSerializer(serializers.Serializer):
    order_id = serializers.CharField(max_length=32)
