from django.contrib import admin
from .models import Order, OrderItem, OrderEvent, TransactionLog


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ('product', 'vendor', 'product_name', 'sku', 'quantity', 'price_at_purchase', 'selected_size')


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ('order_id', 'customer', 'status', 'total', 'payment_option', 'payment_status', 'refund_status', 'created_at')
    search_fields = ('order_id', 'customer__email', 'gateway_order_id', 'gateway_payment_id', 'awb_code', 'carrier_order_id')
    list_filter = ('status', 'payment_status', 'refund_status', 'payment_option', 'created_at')
    readonly_fields = ('order_id', 'created_at', 'updated_at', 'shipping_history')
    inlines = [OrderItemInline]
    fieldsets = (
        ('Order', {
            'fields': ('order_id', 'customer', 'address', 'status', 'cancellation_reason', 'cancelled_at')
        }),
        ('Amounts', {
            'fields': ('subtotal', 'delivery_charges', 'discount_amount', 'total')
        }),
        ('Payment', {
            'fields': ('payment_option', 'payment_status', 'gateway_order_id', 'gateway_payment_id',
                       'payment_amount', 'payment_method', 'payment_verified_at', 'payment_failure_reason')
        }),
        ('Refund', {
            'fields': ('refund_status', 'refund_id', 'refund_amount', 'refund_reason', 'refund_receipt',
                       'refund_initiated_at', 'refund_processed_at', 'refund_error')
        }),
        ('Shipping', {
            'fields': ('carrier_order_id', 'carrier_shipment_id', 'awb_code', 'courier_name', 'shipping_status',
                       'pickup_location', 'etd', 'pickup_date', 'delivered_date', 'shipping_last_update',
                       'shipping_history')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )


@admin.register(OrderEvent)
class OrderEventAdmin(admin.ModelAdmin):
    list_display = ('id', 'order', 'event', 'status', 'attempts', 'created_at', 'dispatched_at')
    list_filter = ('event', 'status', 'created_at')
    search_fields = ('order__order_id', 'event')
    readonly_fields = ('created_at', 'dispatched_at')


@admin.register(TransactionLog)
class TransactionLogAdmin(admin.ModelAdmin):
    list_display = ('id', 'order', 'level', 'action', 'created_at', 'message')
    list_filter = ('level', 'action', 'created_at')
    search_fields = ('order__order_id', 'message')
    readonly_fields = ('created_at',)
