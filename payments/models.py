"""Database models for payment attempts and inbound gateway callbacks."""

from django.db import models
from django.db.models import Q

from orders.models import Order, PaymentMethod


class AttemptOutcome(models.TextChoices):
    PENDING = 'pending', 'Pending'
    SUCCEEDED = 'succeeded', 'Succeeded'
    FAILED = 'failed', 'Failed'


class PaymentAttempt(models.Model):
    """One request to a payment gateway for an order.

    Callbacks are matched on ``checkout_request_id`` (or
    ``merchant_request_id``), never on the order id. An order has at most one
    ``pending`` attempt at a time.
    """

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='payment_attempts')
    method = models.CharField(max_length=10, choices=PaymentMethod.choices)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    phone = models.CharField(max_length=15)
    outcome = models.CharField(max_length=10, choices=AttemptOutcome.choices, default=AttemptOutcome.PENDING)

    # Gateway correlation ids, known once the gateway accepts the request.
    merchant_request_id = models.CharField(max_length=64, unique=True, null=True, blank=True)
    checkout_request_id = models.CharField(max_length=64, unique=True, null=True, blank=True)

    # Filled from the callback.
    result_code = models.IntegerField(null=True, blank=True)
    result_desc = models.CharField(max_length=255, blank=True, default='')
    receipt_number = models.CharField(max_length=32, null=True, blank=True)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    payer_phone = models.CharField(max_length=15, null=True, blank=True)
    transaction_date = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    finalized_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['order'],
                condition=Q(outcome='pending'),
                name='one_pending_attempt_per_order',
            ),
        ]
        indexes = [
            models.Index(fields=['outcome', 'created_at'], name='attempt_outcome_created_idx'),
        ]

    def __str__(self):
        return f"{self.get_method_display()} attempt for Order #{self.order.short_id} ({self.outcome})"

    @property
    def is_final(self) -> bool:
        return self.outcome != AttemptOutcome.PENDING


class CallbackDisposition(models.TextChoices):
    APPLIED = 'applied', 'Applied'
    DUPLICATE = 'duplicate', 'Duplicate'
    ORPHAN = 'orphan', 'Orphan'
    MALFORMED = 'malformed', 'Malformed'
    ERROR = 'error', 'Error'


class GatewayCallback(models.Model):
    """Every payload the gateway posted to us, kept for manual reconciliation."""

    attempt = models.ForeignKey(
        PaymentAttempt, on_delete=models.SET_NULL, null=True, blank=True, related_name='callbacks'
    )
    checkout_request_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    payload = models.JSONField(null=True, blank=True)
    disposition = models.CharField(max_length=10, choices=CallbackDisposition.choices)
    detail = models.CharField(max_length=255, blank=True, default='')
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-received_at']

    def __str__(self):
        return f"Callback {self.checkout_request_id or '-'} ({self.disposition})"
