"""Django admin configuration for orders and their payment history."""

from django.contrib import admin, messages

from core.exceptions import CheckoutError
from notifications.services import notify_status_change
from payments.models import PaymentAttempt
from .models import Order, OrderItem, OrderStatus
from .services import set_status


class OrderItemInline(admin.TabularInline):
    """Inline display of the purchased items."""

    model = OrderItem
    extra = 0
    # Items are a checkout snapshot; prices must not be edited afterwards.
    readonly_fields = ('product_id', 'product_name', 'price', 'shade', 'quantity')
    fields = readonly_fields
    can_delete = False


class PaymentAttemptInline(admin.StackedInline):
    """Inline display of the order's payment attempts."""

    model = PaymentAttempt
    extra = 0
    can_delete = False
    # Attempts only come from the payment flow.
    max_num = 0

    def get_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields if f.name not in ('id', 'order')]

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]


def _apply_status(modeladmin, request, queryset, new_status):
    """Move each selected order through ``set_status`` and email its owner."""
    moved = 0
    for order in queryset:
        try:
            set_status(order.pk, new_status, actor=f'admin:{request.user.username}', notify=False)
        except CheckoutError as exc:
            modeladmin.message_user(request, f'Order {order.short_id}: {exc.message}', level=messages.ERROR)
            continue
        moved += 1
        if not notify_status_change(order.pk, new_status):
            modeladmin.message_user(
                request,
                f'Order {order.short_id} updated but email notification failed',
                level=messages.WARNING,
            )
    if moved:
        modeladmin.message_user(request, f'{moved} order(s) marked as {new_status}.', level=messages.SUCCESS)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    """Admin configuration for customer orders."""

    list_display = ('short_id', 'user', 'total', 'payment_method', 'status', 'created_at')
    list_filter = ('status', 'payment_method', 'created_at')
    search_fields = ('id', 'user__username', 'user__email')
    readonly_fields = ('id', 'user', 'status', 'subtotal', 'shipping_fee', 'total', 'payment_method', 'created_at', 'updated_at')
    actions = ['mark_shipped', 'mark_delivered', 'cancel_orders']

    inlines = [OrderItemInline, PaymentAttemptInline]

    def has_add_permission(self, request):
        # Orders are created by checkout only.
        return False

    @admin.action(description='Mark as shipped')
    def mark_shipped(self, request, queryset):
        _apply_status(self, request, queryset, OrderStatus.SHIPPED)

    @admin.action(description='Mark as delivered')
    def mark_delivered(self, request, queryset):
        _apply_status(self, request, queryset, OrderStatus.DELIVERED)

    @admin.action(description='Cancel orders')
    def cancel_orders(self, request, queryset):
        _apply_status(self, request, queryset, OrderStatus.CANCELLED)
