"""
Notification Service Layer
Creates notification records for lifecycle events and hands delivery to Celery.
"""

import logging
from typing import Dict, Any, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction

from .notification_models import Notification, NotificationLog
from authentication.core.task_dispatch import dispatch_task

User = get_user_model()
logger = logging.getLogger(__name__)


# template key -> (subject, body); rendered with the event context
NOTIFICATION_TEMPLATES = {
    'order_confirmed': (
        "Order Confirmed - {order_id}",
        "Hi {customer_name}, thank you for your order {order_id}. "
        "We have received your payment of Rs. {total} and will let you know when it ships.",
    ),
    'order_confirmed_vendor': (
        "New Order - {order_id}",
        "Hi {store_name}, order {order_id} with your items has been paid. "
        "Please pack it and mark it ready to ship.",
    ),
    'order_confirmed_admin': (
        "New Paid Order - {order_id}",
        "Order {order_id} from {customer_name} was paid (Rs. {total}, {payment_option}).",
    ),
    'order_cancelled': (
        "Order Cancelled - {order_id}",
        "Hi {customer_name}, your order {order_id} has been cancelled. Reason: {reason}. {refund_message}",
    ),
    'order_cancelled_vendor': (
        "Order Cancelled - {order_id}",
        "Order {order_id} containing your items has been cancelled. Please do not ship it.",
    ),
    'order_cancelled_admin': (
        "Order Cancelled - {order_id}",
        "Order {order_id} (Rs. {total}, {payment_option}) was cancelled by {cancelled_by}. Reason: {reason}.",
    ),
    'order_ready_to_ship': (
        "Order Ready to Ship - {order_id}",
        "Hi {customer_name}, your order {order_id} has been packed and is ready to ship. "
        "Tracking details will follow once the courier picks it up.",
    ),
    'refund_initiated': (
        "Refund Initiated - {order_id}",
        "A refund of Rs. {refund_amount} for order {order_id} has been initiated. "
        "It will be credited to your original payment method within 5-7 business days.",
    ),
    'refund_processed': (
        "Refund Processed - {order_id}",
        "Your refund of Rs. {refund_amount} for order {order_id} has been processed. Refund id: {refund_id}.",
    ),
    'refund_failed': (
        "Refund Processing Issue - {order_id}",
        "We could not process the refund for order {order_id} automatically. "
        "Our team will process it manually within 2-3 business days.",
    ),
    'refund_under_review': (
        "Refund Under Review - {order_id}",
        "The refund for order {order_id} is under review. Our team will get in touch with you shortly.",
    ),
    'shipping_shipped': (
        "Your Order is on its Way - {order_id}",
        "Good news! Your order {order_id} has been picked up by {courier_name}. Tracking number: {awb_code}.",
    ),
    'shipping_out_for_delivery': (
        "Your Order is Out for Delivery - {order_id}",
        "Your order {order_id} is out for delivery and should reach you today. Tracking number: {awb_code}.",
    ),
    'shipping_delivered': (
        "Your Order has been Delivered - {order_id}",
        "Your order {order_id} was delivered on {delivered_date}. We hope you enjoy it!",
    ),
    'payment_failed': (
        "Payment Failed - {order_id}",
        "Payment for order {order_id} could not be completed: {reason}. You can retry from your orders page.",
    ),
    'user_miss_you': (
        "We miss you at {app_name}",
        "Hi {customer_name}, it has been a while since your last visit. "
        "You have {reward_points} reward points waiting for you.",
    ),
}


class _BlankDefault(dict):
    def __missing__(self, key):
        return ''


def render_notification(template: str, context: Dict[str, Any]) -> tuple:
    """Render (title, message) for a template key. Unknown keys raise KeyError."""
    subject, body = NOTIFICATION_TEMPLATES[template]
    values = _BlankDefault(context or {})
    return subject.format_map(values), body.format_map(values).strip()


class NotificationService:
    """Main service for creating and queueing notifications"""

    @staticmethod
    def create_notification(
        user: User,
        event: str,
        template: str,
        context: Optional[Dict[str, Any]] = None,
        related_object_type: str = '',
        related_object_id: str = '',
        send_email: bool = True,
    ) -> Optional[Notification]:
        """
        Persist a notification and queue its email delivery after commit.

        Returns the Notification, or None when it could not be created.
        Failures are logged and never raised to the caller.
        """
        try:
            context = dict(context or {})
            context.setdefault('customer_name', getattr(user, 'display_name', '') or user.email)
            context.setdefault('app_name', settings.APP_NAME)
            title, message = render_notification(template, context)

            notification = Notification.objects.create(
                user=user,
                event=event,
                template=template,
                title=title,
                message=message,
                metadata=context,
                related_object_type=related_object_type,
                related_object_id=str(related_object_id or ''),
            )
            NotificationLog.objects.create(
                notification=notification,
                event_type='created',
                status='success',
            )

            if send_email:
                transaction.on_commit(lambda: NotificationService.send_email_notification(notification))

            logger.info(f"[NotificationService] {template} queued for {user.email} ({event})")
            return notification

        except Exception as e:
            logger.error(f"[NotificationService] Error creating {template} notification: {str(e)}", exc_info=True)
            return None

    @staticmethod
    def send_email_notification(notification: Notification) -> bool:
        from .notification_tasks import send_notification_email

        return dispatch_task(send_notification_email, str(notification.id))
