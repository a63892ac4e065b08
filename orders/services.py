"""Order store operations.

``create_order`` writes an order and its items as one unit and
``set_status`` is the single entry point for status changes. Payment
initiation, gateway callbacks, the admin API and the expiry sweep all go
through ``set_status`` so its compare-and-set is the only concurrency
control the order row needs.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Mapping, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from core.exceptions import ConflictError, StateError, StorageError, ValidationError
from .models import Order, OrderItem, OrderStatus, PaymentMethod
from .signals import order_status_changed
from .status import can_transition

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

REQUIRED_ADDRESS_FIELDS = ('name', 'phone', 'address', 'city')


def to_money(value, field: str = 'amount') -> Decimal:
    """Coerce a number or numeric string to a 2-place Decimal."""
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a number.')
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f'{field} must be a number.')
    if not amount.is_finite():
        raise ValidationError(f'{field} must be a number.')
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ItemSnapshot:
    product_id: str
    product_name: str
    product_image: str
    price: Decimal
    quantity: int
    shade: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return (self.price * self.quantity).quantize(CENT, rounding=ROUND_HALF_UP)


def _snapshot_item(raw: Mapping, index: int) -> ItemSnapshot:
    if not isinstance(raw, Mapping):
        raise ValidationError(f'Item {index} is malformed.')

    product_id = str(raw.get('product_id') or '').strip()
    product_name = str(raw.get('product_name') or '').strip()
    if not product_id or not product_name:
        raise ValidationError(f'Item {index} is missing product_id or product_name.')

    quantity = raw.get('quantity')
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        try:
            quantity = int(str(quantity))
        except (TypeError, ValueError):
            raise ValidationError(f'Item {index} has an invalid quantity.')
    if quantity < 1:
        raise ValidationError(f'Item {index} must have a positive quantity.')

    price = to_money(raw.get('price'), field=f'Item {index} price')
    if price < 0:
        raise ValidationError(f'Item {index} price cannot be negative.')

    shade = raw.get('shade')
    return ItemSnapshot(
        product_id=product_id,
        product_name=product_name,
        product_image=str(raw.get('product_image') or ''),
        price=price,
        quantity=quantity,
        shade=str(shade) if shade else None,
    )


def _clean_address(address) -> dict:
    if not isinstance(address, Mapping):
        raise ValidationError('shipping_address must be an object.')
    cleaned = {}
    missing = []
    for key in REQUIRED_ADDRESS_FIELDS:
        value = str(address.get(key) or '').strip()
        if not value:
            missing.append(key)
        cleaned[key] = value
    if missing:
        raise ValidationError(f"shipping_address is missing: {', '.join(missing)}.")
    postal_code = str(address.get('postal_code') or '').strip()
    if postal_code:
        cleaned['postal_code'] = postal_code
    return cleaned


def create_order(owner, items: Iterable[Mapping], shipping_fee, payment_method: str, shipping_address) -> Order:
    """Create a ``pending`` order and its items atomically.

    Raises:
        ValidationError: empty or malformed items, negative fee, unknown
            payment method, incomplete address.
        StorageError: the write failed; no order or item row is left behind.
    """
    items = list(items or [])
    if not items:
        raise ValidationError('An order needs at least one item.')

    snapshots = [_snapshot_item(raw, i) for i, raw in enumerate(items, start=1)]

    fee = to_money(shipping_fee if shipping_fee is not None else 0, field='shipping_fee')
    if fee < 0:
        raise ValidationError('shipping_fee cannot be negative.')

    if payment_method not in PaymentMethod.values:
        raise ValidationError(f'Unsupported payment method: {payment_method!r}.')

    address = _clean_address(shipping_address)

    subtotal = sum((s.line_total for s in snapshots), Decimal('0.00'))
    total = subtotal + fee

    try:
        with transaction.atomic():
            order = Order.objects.create(
                user=owner,
                status=OrderStatus.PENDING,
                subtotal=subtotal,
                shipping_fee=fee,
                total=total,
                payment_method=payment_method,
                shipping_address=address,
            )
            OrderItem.objects.bulk_create([
                OrderItem(
                    order=order,
                    product_id=s.product_id,
                    product_name=s.product_name,
                    product_image=s.product_image,
                    price=s.price,
                    shade=s.shade,
                    quantity=s.quantity,
                )
                for s in snapshots
            ])
    except DatabaseError as exc:
        logger.exception("Order creation failed for user %s", getattr(owner, 'pk', None))
        raise StorageError() from exc

    logger.info(
        "Order %s created: %d items, subtotal=%s shipping=%s total=%s method=%s",
        order.pk, len(snapshots), subtotal, fee, total, payment_method,
    )
    return order


def _parse_order_id(order_id):
    if isinstance(order_id, uuid.UUID):
        return order_id
    try:
        return uuid.UUID(str(order_id))
    except (TypeError, ValueError, AttributeError):
        raise Order.DoesNotExist(f'Order {order_id!r} not found.')


def get_order(order_id) -> Order:
    """Return the order or raise ``Order.DoesNotExist``."""
    return Order.objects.select_related('user').prefetch_related('items').get(pk=_parse_order_id(order_id))


def set_status(order_id, new_status: str, expected_current_status: Optional[str] = None, *,
               actor: str = 'system', notify: bool = True) -> Order:
    """Move an order to ``new_status``.

    When ``expected_current_status`` is given the write is a compare-and-set:
    a stored status that differs raises :class:`ConflictError`. Edges not in
    the state machine raise :class:`StateError`. On success
    ``order_status_changed`` is sent once; the notifier listens to it.
    """
    if new_status not in OrderStatus.values:
        raise ValidationError(f'Unknown order status: {new_status!r}.')

    pk = _parse_order_id(order_id)
    try:
        with transaction.atomic():
            order = Order.objects.select_for_update().select_related('user').get(pk=pk)
            current = order.status

            if expected_current_status is not None and current != expected_current_status:
                raise ConflictError(
                    f'Order {order.short_id} is {current}, expected {expected_current_status}.'
                )
            if not can_transition(current, new_status):
                raise StateError(f'Cannot change order status from {current} to {new_status}.')

            now = timezone.now()
            updated = (
                Order.objects.filter(pk=pk, status=current)
                .update(status=new_status, updated_at=now)
            )
            if updated != 1:
                raise ConflictError(f'Order {order.short_id} changed while updating its status.')

            order.status = new_status
            order.updated_at = now
            logger.info("Order %s status %s -> %s (by %s)", pk, current, new_status, actor)

            order_status_changed.send(
                sender=Order,
                order=order,
                previous_status=current,
                new_status=new_status,
                actor=actor,
                notify=notify,
            )
    except DatabaseError as exc:
        logger.exception("Status update %s for order %s failed", new_status, pk)
        raise StorageError('The order status could not be saved.') from exc

    return order
