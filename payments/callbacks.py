"""Parsing for Daraja STK push callbacks.

Payload shape::

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...", "CheckoutRequestID": "...",
        "ResultCode": 0, "ResultDesc": "...",
        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 1.0}, ...]}}}}

``CallbackMetadata`` is only present on success and its items come in no
guaranteed order, so values are looked up by name.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from django.utils import timezone

from .gateway import NAIROBI


def metadata_value(items, name: str, default=None):
    """Return the ``Value`` of the metadata item called ``name``."""
    for item in items or []:
        if isinstance(item, dict) and item.get('Name') == name:
            return item.get('Value', default)
    return default


@dataclass(frozen=True)
class StkCallback:
    result_code: int
    result_desc: str
    merchant_request_id: str
    checkout_request_id: str
    metadata: list = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def amount(self) -> Optional[Decimal]:
        value = metadata_value(self.metadata, 'Amount')
        if value is None:
            return None
        try:
            return Decimal(str(value)).quantize(Decimal('0.01'))
        except (InvalidOperation, ValueError):
            return None

    @property
    def receipt_number(self) -> Optional[str]:
        value = metadata_value(self.metadata, 'MpesaReceiptNumber')
        return str(value) if value else None

    @property
    def payer_phone(self) -> Optional[str]:
        value = metadata_value(self.metadata, 'PhoneNumber')
        return str(value) if value else None

    @property
    def transaction_date(self) -> Optional[datetime]:
        # Daraja sends e.g. 20191219102115, Nairobi local time.
        value = metadata_value(self.metadata, 'TransactionDate')
        if value is None:
            return None
        try:
            naive = datetime.strptime(str(value), '%Y%m%d%H%M%S')
        except ValueError:
            return None
        return timezone.make_aware(naive, NAIROBI)


def parse_stk_callback(payload: Any) -> Optional[StkCallback]:
    """Return the parsed callback, or ``None`` if the payload is not one."""
    if not isinstance(payload, dict):
        return None
    body = payload.get('Body')
    stk = body.get('stkCallback') if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        return None

    try:
        result_code = int(stk.get('ResultCode'))
    except (TypeError, ValueError):
        return None

    checkout_request_id = str(stk.get('CheckoutRequestID') or '')
    merchant_request_id = str(stk.get('MerchantRequestID') or '')
    if not checkout_request_id and not merchant_request_id:
        return None

    metadata = stk.get('CallbackMetadata') or {}
    items = metadata.get('Item') if isinstance(metadata, dict) else None

    return StkCallback(
        result_code=result_code,
        result_desc=str(stk.get('ResultDesc') or ''),
        merchant_request_id=merchant_request_id,
        checkout_request_id=checkout_request_id,
        metadata=items if isinstance(items, list) else [],
    )
