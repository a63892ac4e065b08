"""Notifications app configuration and signal registration."""

from django.apps import AppConfig

class NotificationsConfig(AppConfig):
    """Django app config for notifications; registers signal handlers."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'notifications'

    def ready(self):
        import notifications.signals  # noqa: F401
