"""Payment initiation, callback reconciliation and the stale-attempt sweep.

All order status changes go through :func:`orders.services.set_status`.
Callback-driven writes use ``expected_current_status='processing'`` so an
order an admin already cancelled (or a callback already finalized) is never
moved again.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.urls import reverse
from django.utils import timezone

from accounts.permissions import is_trusted_principal
from core.exceptions import (
    AmountMismatchError,
    AuthorizationError,
    ConflictError,
    GatewayError,
    StateError,
    ValidationError,
)
from orders.models import OrderStatus, PaymentMethod
from orders.services import get_order, set_status, to_money
from .callbacks import StkCallback, parse_stk_callback
from .gateway import get_gateway, normalize_msisdn
from .models import AttemptOutcome, CallbackDisposition, GatewayCallback, PaymentAttempt

logger = logging.getLogger(__name__)

STALE_ATTEMPT_DESC = 'Timed out waiting for gateway callback'


def callback_url() -> str:
    return f"{settings.MPESA_CALLBACK_BASE_URL.rstrip('/')}{reverse('mpesa-callback')}"


def _finalize(attempt: PaymentAttempt, outcome: str, result_desc: str = '', **fields) -> None:
    attempt.outcome = outcome
    attempt.result_desc = (result_desc or '')[:255]
    attempt.finalized_at = timezone.now()
    for name, value in fields.items():
        setattr(attempt, name, value)
    attempt.save()


def initiate_payment(caller, order_id, amount, phone, method: str) -> PaymentAttempt:
    """Start a gateway payment for a ``pending`` order.

    A pending :class:`PaymentAttempt` is reserved before the gateway is
    called; the one-pending-attempt-per-order constraint makes a concurrent
    second initiation fail with :class:`StateError`. On acceptance the gateway
    ids are saved and the order moves ``pending -> processing`` in the same
    transaction; the attempt (carrying the ``checkout_request_id``) is
    returned.

    Raises:
        Order.DoesNotExist: unknown order id.
        AuthorizationError, StateError, AmountMismatchError, ValidationError,
        ConflictError, GatewayError.
        ImproperlyConfigured: M-Pesa settings are missing.
    """
    order = get_order(order_id)

    if order.user_id != getattr(caller, 'pk', None) and not is_trusted_principal(caller):
        raise AuthorizationError()

    if order.status != OrderStatus.PENDING:
        raise StateError(f'Order {order.short_id} is {order.status}; only pending orders can be paid.')

    to_money(amount)
    if Decimal(str(amount)) != order.total:
        raise AmountMismatchError()

    gateway = get_gateway(method)
    if method != order.payment_method:
        raise ValidationError(f'Order {order.short_id} was placed for {order.get_payment_method_display()} payment.')

    msisdn = normalize_msisdn(phone) if method == PaymentMethod.MPESA else str(phone or '')[:15]

    try:
        with transaction.atomic():
            attempt = PaymentAttempt.objects.create(
                order=order,
                method=method,
                amount=order.total,
                phone=msisdn,
            )
    except IntegrityError:
        raise StateError('A payment is already in progress for this order.')

    try:
        result = gateway.request_payment(
            order.total,
            msisdn,
            str(order.pk),
            f'Order {order.short_id}',
            callback_url(),
        )
    except Exception as exc:
        desc = exc.message if isinstance(exc, GatewayError) else 'Gateway request failed'
        _finalize(attempt, AttemptOutcome.FAILED, desc)
        logger.warning("Payment initiation for order %s failed: %s", order.pk, desc)
        raise

    # A callback that can find the attempt by its ids must also find the
    # order in processing, so both are committed together.
    move_error = None
    with transaction.atomic():
        attempt = PaymentAttempt.objects.select_for_update().get(pk=attempt.pk)
        try:
            set_status(order.pk, OrderStatus.PROCESSING, OrderStatus.PENDING, actor=f'payment:{attempt.pk}')
        except (ConflictError, StateError) as exc:
            move_error = exc
        attempt.merchant_request_id = result.merchant_request_id or None
        attempt.checkout_request_id = result.checkout_request_id or None
        attempt.result_desc = result.response_description[:255]
        attempt.save(update_fields=['merchant_request_id', 'checkout_request_id', 'result_desc', 'updated_at'])
    logger.info(
        "STK push accepted for order %s: CheckoutRequestID=%s MerchantRequestID=%s",
        order.pk, attempt.checkout_request_id, attempt.merchant_request_id,
    )

    # The customer may have answered the prompt before the ids were saved.
    if replay_orphan_callbacks(attempt):
        attempt.refresh_from_db()

    if move_error is not None:
        raise move_error
    return attempt


def _record(payload, disposition: str, stk: Optional[StkCallback] = None,
            attempt: Optional[PaymentAttempt] = None, detail: str = '',
            record: Optional[GatewayCallback] = None) -> GatewayCallback:
    if record is not None:
        record.attempt = attempt
        record.disposition = disposition
        record.detail = detail[:255]
        record.save(update_fields=['attempt', 'disposition', 'detail'])
        return record
    return GatewayCallback.objects.create(
        payload=payload,
        attempt=attempt,
        checkout_request_id=(stk.checkout_request_id if stk else '')[:64],
        disposition=disposition,
        detail=detail[:255],
    )


def _locate_attempt(stk: StkCallback) -> Optional[PaymentAttempt]:
    qs = PaymentAttempt.objects.select_for_update()
    if stk.checkout_request_id:
        attempt = qs.filter(checkout_request_id=stk.checkout_request_id).first()
        if attempt is not None:
            return attempt
    if stk.merchant_request_id:
        return qs.filter(merchant_request_id=stk.merchant_request_id).first()
    return None


def _move_order(attempt: PaymentAttempt, target: str, actor: str) -> str:
    try:
        set_status(attempt.order_id, target, OrderStatus.PROCESSING, actor=actor)
    except (ConflictError, StateError) as exc:
        logger.warning(
            "Order %s left unchanged by %s (attempt %s): %s",
            attempt.order_id, actor, attempt.pk, exc.message,
        )
        return f'Order left unchanged: {exc.message}'
    return f'Order marked {target}'


def _apply_callback(payload, stk: StkCallback, record: Optional[GatewayCallback] = None) -> GatewayCallback:
    with transaction.atomic():
        attempt = _locate_attempt(stk)
        if attempt is None:
            logger.warning(
                "Orphan M-Pesa callback: CheckoutRequestID=%s MerchantRequestID=%s ResultCode=%s",
                stk.checkout_request_id, stk.merchant_request_id, stk.result_code,
            )
            return _record(
                payload, CallbackDisposition.ORPHAN, stk,
                detail='No matching payment attempt', record=record,
            )

        if attempt.is_final:
            logger.info("Duplicate M-Pesa callback for attempt %s (%s)", attempt.pk, attempt.outcome)
            return _record(
                payload, CallbackDisposition.DUPLICATE, stk, attempt,
                detail=f'Attempt already {attempt.outcome}', record=record,
            )

        if stk.succeeded:
            paid_amount = stk.amount
            if paid_amount is not None and paid_amount != attempt.amount:
                logger.warning(
                    "M-Pesa amount mismatch for order %s: requested %s, received %s",
                    attempt.order_id, attempt.amount, paid_amount,
                )
            _finalize(
                attempt, AttemptOutcome.SUCCEEDED, stk.result_desc,
                result_code=stk.result_code,
                receipt_number=stk.receipt_number,
                paid_amount=paid_amount,
                payer_phone=stk.payer_phone,
                transaction_date=stk.transaction_date,
            )
            logger.info("Payment succeeded for order %s, receipt %s", attempt.order_id, attempt.receipt_number)
            target = OrderStatus.PAID
        else:
            _finalize(attempt, AttemptOutcome.FAILED, stk.result_desc, result_code=stk.result_code)
            logger.info(
                "Payment failed for order %s: [%s] %s", attempt.order_id, stk.result_code, stk.result_desc
            )
            target = OrderStatus.CANCELLED

        detail = _move_order(attempt, target, actor=f'mpesa:{attempt.checkout_request_id}')
        return _record(payload, CallbackDisposition.APPLIED, stk, attempt, detail=detail, record=record)


def reconcile_callback(payload) -> GatewayCallback:
    """Apply one gateway callback and record it.

    Never raises for bad or unexpected input: every payload ends up as a
    :class:`GatewayCallback` row whose disposition tells operators what
    happened to it.
    """
    stk = parse_stk_callback(payload)
    if stk is None:
        logger.warning("Malformed M-Pesa callback: %.500s", payload)
        return _record(payload, CallbackDisposition.MALFORMED, detail='Not an STK push callback')

    try:
        return _apply_callback(payload, stk)
    except Exception:
        logger.exception("M-Pesa callback %s could not be applied", stk.checkout_request_id)
        return _record(payload, CallbackDisposition.ERROR, stk, detail='Unexpected error; see logs')


def replay_orphan_callbacks(attempt: PaymentAttempt) -> int:
    """Re-apply orphan callbacks that carry ``attempt``'s checkout id.

    A callback can beat the initiation that caused it: the customer answers
    the prompt before the gateway ids are stored. Such callbacks are
    recorded as orphans and replayed here, updating the same
    :class:`GatewayCallback` row. Returns the number replayed.
    """
    if not attempt.checkout_request_id:
        return 0

    orphans = GatewayCallback.objects.filter(
        disposition=CallbackDisposition.ORPHAN,
        checkout_request_id=attempt.checkout_request_id,
    ).order_by('received_at', 'pk')

    replayed = 0
    for record in orphans:
        stk = parse_stk_callback(record.payload)
        try:
            _apply_callback(record.payload, stk, record=record)
        except Exception:
            logger.exception("Orphan M-Pesa callback %s could not be replayed", record.pk)
            _record(
                record.payload, CallbackDisposition.ERROR, stk,
                detail='Unexpected error; see logs', record=record,
            )
        replayed += 1
        logger.info("Replayed orphan M-Pesa callback %s for attempt %s", record.pk, attempt.pk)
    return replayed


def expire_stale_attempts(max_age: Optional[timedelta] = None) -> int:
    """Fail pending attempts older than ``max_age`` and cancel their orders.

    Returns the number of attempts expired.
    """
    if max_age is None:
        max_age = timedelta(minutes=settings.PAYMENT_ATTEMPT_TIMEOUT_MINUTES)
    cutoff = timezone.now() - max_age

    stale = list(PaymentAttempt.objects.filter(outcome=AttemptOutcome.PENDING, created_at__lt=cutoff))

    expired = 0
    for candidate in stale:
        # A success that arrived before the ids were stored must win over the timeout.
        replay_orphan_callbacks(candidate)
        with transaction.atomic():
            attempt = (
                PaymentAttempt.objects.select_for_update()
                .filter(pk=candidate.pk, outcome=AttemptOutcome.PENDING)
                .first()
            )
            if attempt is None:
                # A callback finalized it in the meantime.
                continue
            _finalize(attempt, AttemptOutcome.FAILED, STALE_ATTEMPT_DESC)
            _move_order(attempt, OrderStatus.CANCELLED, actor='sweep')
        expired += 1
        logger.info("Expired payment attempt %s for order %s", attempt.pk, attempt.order_id)

    return expired
