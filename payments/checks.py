from django.core.checks import Warning, register

from .conf import missing_mpesa_settings


@register()
def mpesa_settings_check(app_configs, **kwargs):
    missing = missing_mpesa_settings()
    if not missing:
        return []
    return [
        Warning(
            f"M-Pesa payments are disabled; missing settings: {', '.join(missing)}",
            hint='Set the MPESA_* environment variables before accepting payments.',
            id='payments.W001',
        )
    ]
