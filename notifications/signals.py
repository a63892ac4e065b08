"""Signal handlers that email customers when their order status changes."""

from functools import partial

from django.db import transaction
from django.dispatch import receiver

from orders.signals import order_status_changed
from .services import dispatch_status_change


@receiver(order_status_changed)
def queue_status_email(sender, order, previous_status, new_status, actor=None, notify=True, **kwargs):
    """Send the status email once the transition is committed.

    Rolled-back transitions never email anyone.
    """
    if not notify:
        return
    transaction.on_commit(partial(dispatch_status_change, order.pk, new_status))
