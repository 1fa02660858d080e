from django.apps import AppConfig


class UsersConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "users"

    def ready(self):
        # Register notification tasks with the Celery app
        import users.notification_tasks  # noqa: F401
