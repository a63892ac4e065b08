"""M-Pesa gateway settings, validated once per use."""

from dataclasses import dataclass

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

REQUIRED_SETTINGS = (
    'MPESA_CONSUMER_KEY',
    'MPESA_CONSUMER_SECRET',
    'MPESA_PASSKEY',
    'MPESA_SHORTCODE',
    'MPESA_CALLBACK_BASE_URL',
)

BASE_URLS = {
    'sandbox': 'https://sandbox.safaricom.co.ke',
    'production': 'https://api.safaricom.co.ke',
}


@dataclass(frozen=True)
class MpesaSettings:
    consumer_key: str
    consumer_secret: str
    passkey: str
    shortcode: str
    callback_base_url: str
    base_url: str
    timeout: int = 30


def missing_mpesa_settings() -> list[str]:
    return [name for name in REQUIRED_SETTINGS if not str(getattr(settings, name, '') or '').strip()]


def mpesa_settings() -> MpesaSettings:
    """Return the Daraja settings or raise ``ImproperlyConfigured`` naming every gap."""
    missing = missing_mpesa_settings()
    if missing:
        raise ImproperlyConfigured(f"M-Pesa is not configured; missing: {', '.join(missing)}")

    environment = getattr(settings, 'MPESA_ENVIRONMENT', 'sandbox')
    if environment not in BASE_URLS:
        raise ImproperlyConfigured(
            f"MPESA_ENVIRONMENT must be one of {', '.join(BASE_URLS)}; got {environment!r}"
        )

    return MpesaSettings(
        consumer_key=settings.MPESA_CONSUMER_KEY,
        consumer_secret=settings.MPESA_CONSUMER_SECRET,
        passkey=settings.MPESA_PASSKEY,
        shortcode=str(settings.MPESA_SHORTCODE),
        callback_base_url=settings.MPESA_CALLBACK_BASE_URL.rstrip('/'),
        base_url=BASE_URLS[environment],
        timeout=int(getattr(settings, 'MPESA_TIMEOUT', 30)),
    )
