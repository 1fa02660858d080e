from smtplib import SMTPException
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.test import SimpleTestCase, TestCase

from users.notification_models import Notification, NotificationLog
from users.notification_service import NotificationService, render_notification
from users.notification_tasks import (
    RESEND_ATTEMPT_LIMIT,
    resend_failed_notifications,
    send_notification_email,
)

User = get_user_model()


class RenderNotificationTests(SimpleTestCase):
    def test_renders_subject_and_body(self):
        title, message = render_notification(
            "refund_processed",
            {"order_id": "ORD-1001", "refund_amount": "499.00", "refund_id": "rfnd_1"},
        )

        self.assertEqual(title, "Refund Processed - ORD-1001")
        self.assertIn("Rs. 499.00", message)
        self.assertIn("rfnd_1", message)

    def test_missing_values_render_blank(self):
        title, message = render_notification("shipping_shipped", {"order_id": "ORD-1"})

        self.assertEqual(title, "Your Order is on its Way - ORD-1")
        self.assertIn("Tracking number: .", message)

    def test_unknown_template(self):
        with self.assertRaises(KeyError):
            render_notification("no_such_template", {})


class CreateNotificationTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="customer@test.com", password="pass12345", full_name="Asha Rao")

    @patch("users.notification_service.dispatch_task", return_value=True)
    def test_email_is_queued_after_commit(self, dispatch):
        with self.captureOnCommitCallbacks(execute=True):
            notification = NotificationService.create_notification(
                self.user,
                event="order.confirmed",
                template="order_confirmed",
                context={"order_id": "ORD-1001", "total": "499.00"},
                related_object_type="order",
                related_object_id="ORD-1001",
            )
            dispatch.assert_not_called()

        self.assertEqual(notification.status, Notification.Status.QUEUED)
        self.assertIn("Hi Asha Rao", notification.message)
        self.assertEqual(notification.metadata["order_id"], "ORD-1001")
        dispatch.assert_called_once_with(send_notification_email, str(notification.id))
        self.assertTrue(NotificationLog.objects.filter(notification=notification, event_type="created").exists())

    @patch("users.notification_service.dispatch_task", return_value=True)
    def test_bad_template_returns_none(self, dispatch):
        result = NotificationService.create_notification(self.user, "order.confirmed", "no_such_template")

        self.assertIsNone(result)
        self.assertFalse(Notification.objects.exists())

    @patch("users.notification_service.dispatch_task", return_value=True)
    def test_email_can_be_skipped(self, dispatch):
        with self.captureOnCommitCallbacks(execute=True):
            NotificationService.create_notification(
                self.user, "order.confirmed", "order_confirmed", {"order_id": "ORD-1"}, send_email=False
            )

        dispatch.assert_not_called()


class SendNotificationEmailTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="customer@test.com", password="pass12345")
        self.notification = Notification.objects.create(
            user=self.user,
            event="order.confirmed",
            template="order_confirmed",
            title="Order Confirmed - ORD-1001",
            message="Thanks for your order",
            metadata={"order_id": "ORD-1001"},
        )

    def test_email_is_sent_once(self):
        result = send_notification_email(str(self.notification.id))
        again = send_notification_email(str(self.notification.id))

        self.notification.refresh_from_db()
        self.assertEqual(result["status"], "sent")
        self.assertEqual(again["status"], "already_sent")
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["customer@test.com"])
        self.assertEqual(mail.outbox[0].subject, "Order Confirmed - ORD-1001")
        self.assertIn("ORD-1001", mail.outbox[0].alternatives[0][0])
        self.assertEqual(self.notification.status, Notification.Status.SENT)
        self.assertEqual(self.notification.send_attempts, 1)

    def test_failure_with_retries_left_stays_queued(self):
        with patch("users.notification_tasks.send_mail", side_effect=SMTPException("connection refused")):
            with self.assertRaises(SMTPException):
                send_notification_email(str(self.notification.id))

        self.notification.refresh_from_db()
        self.assertEqual(self.notification.status, Notification.Status.QUEUED)
        self.assertEqual(self.notification.send_attempts, 1)
        self.assertIn("connection refused", self.notification.last_error)

    def test_last_attempt_marks_failed(self):
        with patch("users.notification_tasks.send_mail", side_effect=SMTPException("connection refused")):
            result = send_notification_email.apply(args=[str(self.notification.id)], retries=3).get()

        self.notification.refresh_from_db()
        self.assertEqual(result["status"], "failed")
        self.assertEqual(self.notification.status, Notification.Status.FAILED)
        self.assertTrue(NotificationLog.objects.filter(notification=self.notification, status="failed").exists())

    def test_missing_notification(self):
        result = send_notification_email("00000000-0000-0000-0000-000000000000")
        self.assertEqual(result["status"], "missing")


class ResendFailedNotificationsTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="customer@test.com", password="pass12345")

    def make(self, status, attempts):
        return Notification.objects.create(
            user=self.user,
            event="order.confirmed",
            template="order_confirmed",
            title="t",
            message="m",
            status=status,
            send_attempts=attempts,
        )

    def test_only_failed_with_attempts_left_are_requeued(self):
        retry = self.make(Notification.Status.FAILED, 4)
        self.make(Notification.Status.FAILED, RESEND_ATTEMPT_LIMIT)
        self.make(Notification.Status.SENT, 1)

        with patch("authentication.core.task_dispatch.dispatch_task", return_value=True) as dispatch:
            result = resend_failed_notifications()

        self.assertEqual(result["resent"], 1)
        dispatch.assert_called_once_with(send_notification_email, str(retry.id), fallback_sync=False)
        self.assertTrue(NotificationLog.objects.filter(notification=retry, event_type="resent").exists())
