"""
Celery tasks for notification delivery
"""

from celery import shared_task
from django.core.mail import send_mail
from django.template.loader import render_to_string
from django.conf import settings
from django.utils import timezone
import logging

from .notification_models import Notification, NotificationLog

logger = logging.getLogger(__name__)

MAX_SEND_ATTEMPTS = 3
# A notification gets at most two full retry cycles before it is left for manual review
RESEND_ATTEMPT_LIMIT = 2 * (MAX_SEND_ATTEMPTS + 1)


@shared_task(bind=True, max_retries=MAX_SEND_ATTEMPTS, name="users.send_notification_email")
def send_notification_email(self, notification_id: str):
    """
    Send one notification by email, retrying with exponential backoff.

    Args:
        notification_id: UUID of notification to send
    """
    try:
        notification = Notification.objects.select_related('user').get(id=notification_id)
    except Notification.DoesNotExist:
        logger.error(f"Notification {notification_id} not found")
        return {'status': 'missing', 'notification_id': notification_id}

    if notification.status == Notification.Status.SENT:
        return {'status': 'already_sent', 'notification_id': notification_id}

    user = notification.user
    try:
        context = {
            'app_name': settings.APP_NAME,
            'user_name': getattr(user, 'display_name', user.email),
            'title': notification.title,
            'message': notification.message,
            'frontend_url': settings.FRONTEND_URL,
            'metadata': notification.metadata,
        }
        html_message = render_to_string('emails/order_notification.html', context)

        send_mail(
            subject=notification.title,
            message=notification.message,
            from_email=settings.NOTIFICATION_EMAIL_FROM,
            recipient_list=[user.email],
            html_message=html_message,
            fail_silently=False,
        )

        notification.status = Notification.Status.SENT
        notification.send_attempts += 1
        notification.sent_at = timezone.now()
        notification.last_error = ''
        notification.save(update_fields=['status', 'send_attempts', 'sent_at', 'last_error'])

        NotificationLog.objects.create(
            notification=notification,
            event_type='sent',
            status='success',
        )
        logger.info(f"Email sent for notification {notification_id} ({notification.template}) to {user.email}")
        return {'status': 'sent', 'notification_id': notification_id}

    except Exception as exc:
        logger.error(f"Error sending notification email {notification_id}: {str(exc)}", exc_info=True)

        will_retry = self.request.retries < self.max_retries
        notification.send_attempts += 1
        notification.last_error = str(exc)[:1000]
        notification.status = Notification.Status.QUEUED if will_retry else Notification.Status.FAILED
        notification.save(update_fields=['send_attempts', 'last_error', 'status'])
        NotificationLog.objects.create(
            notification=notification,
            event_type='failed',
            status='retrying' if will_retry else 'failed',
            error_message=str(exc),
        )

        if will_retry:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))
        return {'status': 'failed', 'notification_id': notification_id, 'error': str(exc)}


@shared_task(name="users.resend_failed_notifications")
def resend_failed_notifications(limit: int = 100):
    """
    Re-queue notifications whose delivery failed and that still have attempts left.
    Run this via Celery Beat scheduler periodically.
    """
    from authentication.core.task_dispatch import dispatch_task

    failed_notifications = Notification.objects.filter(
        status=Notification.Status.FAILED,
        send_attempts__lt=RESEND_ATTEMPT_LIMIT,
    ).order_by('created_at')[:limit]

    count = 0
    for notification in failed_notifications:
        if dispatch_task(send_notification_email, str(notification.id), fallback_sync=False):
            NotificationLog.objects.create(notification=notification, event_type='resent', status='queued')
            count += 1

    logger.info(f"Retry task completed: re-queued {count} notifications")
    return {'status': 'success', 'resent': count}
