"""Signals for order side-effects (e.g., status notification emails)."""

from django.dispatch import Signal

# Sent once per successful status transition, after the row is written.
# kwargs: order, previous_status, new_status, actor, notify
order_status_changed = Signal()
