"""Django admin configuration for payment attempts and gateway callbacks."""

from django.contrib import admin
from .models import GatewayCallback, PaymentAttempt


class ReadOnlyAdminMixin:
    """Rows here are written by the payment flow only."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ('id', 'get_order_id', 'method', 'amount', 'outcome', 'receipt_number', 'created_at')
    list_filter = ('outcome', 'method', 'created_at')
    search_fields = ('order__id', 'checkout_request_id', 'merchant_request_id', 'receipt_number', 'phone')

    def get_order_id(self, obj):
        return f"Order #{obj.order.short_id}"
    get_order_id.short_description = 'Order'


@admin.register(GatewayCallback)
class GatewayCallbackAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ('id', 'checkout_request_id', 'disposition', 'detail', 'received_at')
    list_filter = ('disposition', 'received_at')
    search_fields = ('checkout_request_id',)
