from django.db import models
from django.conf import settings
import uuid

User = settings.AUTH_USER_MODEL


class Notification(models.Model):
    """
    One outbound message to one user, keyed by the lifecycle event that caused it.
    """
    class Status(models.TextChoices):
        QUEUED = 'queued', 'Queued'
        SENT = 'sent', 'Sent'
        FAILED = 'failed', 'Failed'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='notifications',
        db_index=True,
    )

    event = models.CharField(max_length=64, db_index=True, help_text="e.g. 'order.cancelled'")
    template = models.CharField(max_length=64, help_text="e.g. 'refund_processed'")
    title = models.CharField(max_length=255)
    message = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)

    # Related order, when there is one
    related_object_type = models.CharField(max_length=50, blank=True)
    related_object_id = models.CharField(max_length=100, blank=True)

    status = models.CharField(max_length=10, choices=Status.choices, default=Status.QUEUED, db_index=True)
    send_attempts = models.IntegerField(default=0, help_text="Track retry attempts")
    last_error = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'notifications'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'send_attempts'], name='notif_status_attempts_idx'),
            models.Index(fields=['related_object_type', 'related_object_id'], name='notif_related_object_idx'),
        ]

    def __str__(self):
        return f"{self.template} -> {self.user_id} ({self.status})"


class NotificationLog(models.Model):
    """
    Log all notification events for auditing and debugging.
    """
    EVENT_TYPES = [
        ('created', 'Created'),
        ('sent', 'Sent'),
        ('failed', 'Failed'),
        ('resent', 'Resent'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    notification = models.ForeignKey(
        Notification,
        on_delete=models.CASCADE,
        related_name='logs'
    )
    event_type = models.CharField(max_length=20, choices=EVENT_TYPES)
    channel = models.CharField(max_length=20, default='email')
    status = models.CharField(max_length=50, help_text="Status details")
    error_message = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'notification_logs'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.event_type} - {self.notification.title}"
