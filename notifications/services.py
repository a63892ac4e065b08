"""Order status emails.

``notify_status_change`` sends one email and reports whether it went out;
it never raises. ``dispatch_status_change`` is the fire-and-forget entry
point used after a status transition commits.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.db import connections
from django.template.loader import render_to_string

from orders.models import Order

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    'paid': ('Payment Confirmed', 'Your payment has been confirmed and your order is being processed.'),
    'processing': ('Order Processing', "We're currently processing your order."),
    'shipped': ('Order Shipped', 'Great news! Your order has been shipped and is on its way to you.'),
    'delivered': ('Order Delivered', 'Your order has been delivered. We hope you enjoy your purchase!'),
    'cancelled': ('Order Cancelled', 'Your order has been cancelled. If you have any questions, please contact us.'),
}

_executor = None


def status_email_content(short_id: str, new_status: str) -> tuple[str, str]:
    """Return ``(subject, message)`` for ``new_status``."""
    title, message = STATUS_MESSAGES.get(
        new_status,
        ('Order Update', f'Your order status has been updated to: {new_status}'),
    )
    return f'{title} - Order #{short_id}', message


def format_total(amount) -> str:
    return f"{settings.STORE_CURRENCY} {amount:,.2f}"


def build_status_email(order: Order, new_status: str) -> EmailMultiAlternatives:
    subject, message = status_email_content(order.short_id, new_status)
    context = {
        'store_name': settings.STORE_NAME,
        'message': message,
        'status': new_status,
        'short_id': order.short_id,
        'total': format_total(order.total),
    }
    email = EmailMultiAlternatives(
        subject=subject,
        body=render_to_string('notifications/order_status.txt', context),
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=[order.user.email],
    )
    email.attach_alternative(render_to_string('notifications/order_status.html', context), 'text/html')
    return email


def notify_status_change(order_id, new_status: str) -> bool:
    """Email the order owner about ``new_status``. Returns False on any failure."""
    try:
        order = Order.objects.select_related('user').get(pk=order_id)
        if not order.user.email:
            logger.warning("No email address for the owner of order %s; status email skipped", order_id)
            return False
        build_status_email(order, new_status).send()
    except Exception:
        logger.exception("Status email for order %s (%s) failed", order_id, new_status)
        return False

    logger.info("Status email sent for order %s (%s) to %s", order_id, new_status, order.user.email)
    return True


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='notifications')
    return _executor


def _notify_in_thread(order_id, new_status):
    try:
        notify_status_change(order_id, new_status)
    finally:
        connections.close_all()


def dispatch_status_change(order_id, new_status: str) -> None:
    """Send the status email without making the caller wait for it."""
    if getattr(settings, 'NOTIFICATIONS_ASYNC', True):
        _get_executor().submit(_notify_in_thread, order_id, new_status)
    else:
        notify_status_change(order_id, new_status)
