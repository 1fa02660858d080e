from django.urls import path
from .views import (
    CancelOrderView, ReadyToShipView, OrderDetailView, RefundStatusView,
    TrackShipmentView, CreateShipmentView,
    RazorpayCreateOrderView, RazorpayVerifyPaymentView, RazorpayWebhookView,
    ShiprocketWebhookView,
)

urlpatterns = [
    # Order endpoints
    path('order/cancel/<str:order_id>/', CancelOrderView.as_view(), name='order-cancel'),
    path('order/<str:order_id>/ready-to-ship/', ReadyToShipView.as_view(), name='order-ready-to-ship'),
    path('order/<str:order_id>/refund/', RefundStatusView.as_view(), name='order-refund-status'),
    path('order/<str:order_id>/', OrderDetailView.as_view(), name='order-detail'),

    # Shipment endpoints
    path('shipment/track/<str:identifier>/', TrackShipmentView.as_view(), name='shipment-track'),
    path('shipment/create/<str:order_id>/', CreateShipmentView.as_view(), name='shipment-create'),

    # Payment endpoints
    path('razorpay/create-order/', RazorpayCreateOrderView.as_view(), name='razorpay-create-order'),
    path('razorpay/verify-payment/', RazorpayVerifyPaymentView.as_view(), name='razorpay-verify-payment'),
    path('razorpay/webhook/', RazorpayWebhookView.as_view(), name='razorpay-webhook'),

    # Carrier webhook
    path('shiprocket/webhook/', ShiprocketWebhookView.as_view(), name='shiprocket-webhook'),
]
