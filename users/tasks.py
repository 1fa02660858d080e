import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.contrib.auth import get_user_model
from django.db.models import Q
from django.utils import timezone

from .notification_models import Notification
from .notification_service import NotificationService

logger = logging.getLogger(__name__)
User = get_user_model()

INACTIVE_USER_BATCH_LIMIT = 1000


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_kwargs={
        'max_retries': 2,
        'countdown': 300,
    },
    name="users.send_inactive_user_emails",
)
def send_inactive_user_emails(self):
    """
    Daily re-engagement mail to customers who have not logged in for
    INACTIVE_USER_DAYS days. A user is mailed at most once per window.
    """
    cutoff = timezone.now() - timedelta(days=settings.INACTIVE_USER_DAYS)

    recently_mailed = Notification.objects.filter(
        template='user_miss_you',
        created_at__gte=cutoff,
    ).values('user_id')

    inactive_users = (
        User.objects.filter(is_active=True, role=User.Role.CUSTOMER)
        .filter(
            Q(last_login_at__lt=cutoff)
            | Q(last_login_at__isnull=True, created_at__lt=cutoff)
        )
        .exclude(id__in=recently_mailed)
        .order_by('id')[:INACTIVE_USER_BATCH_LIMIT]
    )

    sent = 0
    for user in inactive_users:
        notification = NotificationService.create_notification(
            user,
            event='user.inactive',
            template='user_miss_you',
            context={'reward_points': user.reward_points},
            related_object_type='user',
            related_object_id=user.id,
        )
        if notification:
            sent += 1

    logger.info(f"[send_inactive_user_emails] queued {sent} re-engagement emails (cutoff {cutoff:%Y-%m-%d})")
    return {'status': 'success', 'queued': sent}
