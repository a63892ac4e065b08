"""DRF serializers for payment APIs."""

from rest_framework import serializers

from orders.models import PaymentMethod


class InitiatePaymentSerializer(serializers.Serializer):
    """Body of ``POST /api/payments/initiate/`` (camelCase, as the storefront client sends it)."""

    orderId = serializers.CharField(max_length=64)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    phone = serializers.CharField(max_length=20, required=False, allow_blank=True, default='')
    paymentMethod = serializers.ChoiceField(choices=PaymentMethod.choices)


def first_error(errors) -> str:
    """Flatten DRF validation errors to the single ``{"error": ...}`` string the API returns."""
    field, messages = next(iter(errors.items()))
    message = messages[0] if isinstance(messages, list) and messages else messages
    return f'{field}: {message}'
