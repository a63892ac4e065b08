"""Payments app configuration and system check registration."""

from django.apps import AppConfig

class PaymentsConfig(AppConfig):
    """Django app config for payments; registers the gateway settings check."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'payments'

    def ready(self):
        import payments.checks  # noqa: F401
