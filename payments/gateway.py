"""Payment gateway clients.

``MpesaGateway`` talks to Safaricom Daraja (OAuth token + Lipa na M-Pesa
STK push). ``CardGateway`` keeps the same interface for a card backend that
does not exist yet.
"""

import base64
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from zoneinfo import ZoneInfo

import phonenumbers
import requests
from django.core.cache import cache
from django.utils import timezone
from requests.auth import HTTPBasicAuth

from core.exceptions import GatewayError, ValidationError
from orders.models import PaymentMethod
from .conf import MpesaSettings, mpesa_settings

logger = logging.getLogger(__name__)

NAIROBI = ZoneInfo('Africa/Nairobi')


def normalize_msisdn(phone) -> str:
    """Return a Kenyan number as ``2547XXXXXXXX``.

    Accepts ``0712...``, ``712...``, ``254712...``, ``+254 712 ...``.
    """
    digits = re.sub(r'\D', '', str(phone or ''))
    if digits.startswith('00'):
        digits = digits[2:]
    if not digits:
        raise ValidationError('A phone number is required.')

    try:
        if digits.startswith('254'):
            parsed = phonenumbers.parse('+' + digits, None)
        else:
            parsed = phonenumbers.parse(digits, 'KE')
    except phonenumbers.NumberParseException:
        raise ValidationError(f'Phone number {phone} is not valid.')

    if parsed.country_code != 254 or not phonenumbers.is_valid_number(parsed):
        raise ValidationError(f'Phone number {phone} is not a valid Kenyan number.')
    return f'{parsed.country_code}{parsed.national_number}'


@dataclass(frozen=True)
class StkPushResult:
    merchant_request_id: str
    checkout_request_id: str
    response_description: str = ''
    customer_message: str = ''


class MpesaGateway:
    method = PaymentMethod.MPESA

    def __init__(self, config: Optional[MpesaSettings] = None):
        self.config = config or mpesa_settings()

    @property
    def token_cache_key(self) -> str:
        return f'payments:mpesa:token:{self.config.shortcode}'

    def get_access_token(self) -> str:
        """OAuth token, cached until a minute before Daraja expires it."""
        token = cache.get(self.token_cache_key)
        if token:
            return token

        url = f'{self.config.base_url}/oauth/v1/generate'
        try:
            resp = requests.get(
                url,
                params={'grant_type': 'client_credentials'},
                auth=HTTPBasicAuth(self.config.consumer_key, self.config.consumer_secret),
                timeout=self.config.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("M-Pesa token request failed: %s", exc)
            raise GatewayError('Could not authenticate with M-Pesa. Please try again later.') from exc

        token = data.get('access_token')
        if not token:
            logger.error("M-Pesa token response had no access_token: %s", data)
            raise GatewayError('Could not authenticate with M-Pesa. Please try again later.')

        try:
            expires_in = int(data.get('expires_in', 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        cache.set(self.token_cache_key, token, max(expires_in - 60, 1))
        return token

    @staticmethod
    def timestamp(now=None) -> str:
        now = now or timezone.now()
        return now.astimezone(NAIROBI).strftime('%Y%m%d%H%M%S')

    def build_password(self, timestamp: str) -> str:
        raw = f'{self.config.shortcode}{self.config.passkey}{timestamp}'
        return base64.b64encode(raw.encode()).decode()

    def stk_push(self, amount, phone: str, account_reference: str, description: str,
                 callback_url: str) -> StkPushResult:
        """Send a Lipa na M-Pesa Online prompt to ``phone``.

        Raises:
            GatewayError: the request failed, the body was not JSON, or
                Daraja answered with a non-zero ``ResponseCode``.
        """
        token = self.get_access_token()
        timestamp = self.timestamp()
        whole_amount = int(Decimal(str(amount)).to_integral_value(rounding=ROUND_HALF_UP))
        payload = {
            'BusinessShortCode': self.config.shortcode,
            'Password': self.build_password(timestamp),
            'Timestamp': timestamp,
            'TransactionType': 'CustomerPayBillOnline',
            'Amount': whole_amount,
            'PartyA': phone,
            'PartyB': self.config.shortcode,
            'PhoneNumber': phone,
            'CallBackURL': callback_url,
            'AccountReference': account_reference[:12],
            'TransactionDesc': description[:13],
        }

        url = f'{self.config.base_url}/mpesa/stkpush/v1/processrequest'
        try:
            resp = requests.post(
                url,
                json=payload,
                headers={'Authorization': f'Bearer {token}'},
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            logger.error("M-Pesa STK push for %s could not be sent: %s", account_reference, exc)
            raise GatewayError('Payment service unavailable. Please try again later.') from exc

        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("M-Pesa returned non-JSON (HTTP %s): %s", resp.status_code, resp.text[:200])
            raise GatewayError('Payment service returned invalid data. Please try again later.') from exc

        if not resp.ok or str(data.get('ResponseCode')) != '0':
            description = (
                data.get('errorMessage')
                or data.get('ResponseDescription')
                or 'M-PESA payment initiation failed'
            )
            logger.warning(
                "M-Pesa rejected STK push for %s (HTTP %s): %s", account_reference, resp.status_code, description
            )
            raise GatewayError(description)

        return StkPushResult(
            merchant_request_id=data.get('MerchantRequestID', ''),
            checkout_request_id=data.get('CheckoutRequestID', ''),
            response_description=data.get('ResponseDescription', ''),
            customer_message=data.get('CustomerMessage', ''),
        )

    request_payment = stk_push


class CardGateway:
    method = PaymentMethod.CARD

    def request_payment(self, amount, phone, account_reference, description, callback_url) -> StkPushResult:
        raise GatewayError('Card payments not yet configured')


GATEWAYS = {
    PaymentMethod.MPESA: MpesaGateway,
    PaymentMethod.CARD: CardGateway,
}


def get_gateway(method: str):
    """Instantiate the gateway for ``method``.

    Raises ``ValidationError`` for unknown methods and lets
    ``ImproperlyConfigured`` through when M-Pesa settings are missing.
    """
    try:
        gateway_cls = GATEWAYS[method]
    except KeyError:
        raise ValidationError(f'Invalid payment method: {method!r}.')
    return gateway_cls()
