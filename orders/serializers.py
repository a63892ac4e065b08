"""DRF serializers for orders APIs."""

from rest_framework import serializers

from .models import Order, OrderItem, OrderStatus, PaymentMethod
from .status import allowed_next


class OrderItemSerializer(serializers.ModelSerializer):
    """Purchased item as captured at checkout."""

    line_total = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = OrderItem
        fields = ['id', 'product_id', 'product_name', 'product_image', 'price', 'shade', 'quantity', 'line_total']


class OrderSerializer(serializers.ModelSerializer):
    """Read representation of an order with its items and payment state."""

    items = OrderItemSerializer(many=True, read_only=True)
    status_display = serializers.CharField(source='get_status_display', read_only=True)
    payment_status = serializers.SerializerMethodField()
    next_statuses = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id',
            'status',
            'status_display',
            'payment_method',
            'payment_status',
            'subtotal',
            'shipping_fee',
            'total',
            'shipping_address',
            'items',
            'next_statuses',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_payment_status(self, obj):
        """Outcome of the latest payment attempt, or ``None`` if never initiated."""
        attempt = obj.payment_attempts.order_by('-created_at').first()
        if attempt is None:
            return None
        return {
            'outcome': attempt.outcome,
            'checkout_request_id': attempt.checkout_request_id,
            'receipt_number': attempt.receipt_number,
        }

    def get_next_statuses(self, obj):
        return sorted(allowed_next(obj.status))


class ItemInputSerializer(serializers.Serializer):
    product_id = serializers.CharField(max_length=64)
    product_name = serializers.CharField(max_length=255)
    product_image = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    quantity = serializers.IntegerField(min_value=1)
    shade = serializers.CharField(max_length=100, required=False, allow_null=True, allow_blank=True, default=None)


class ShippingAddressSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    phone = serializers.CharField(max_length=20)
    address = serializers.CharField(max_length=500)
    city = serializers.CharField(max_length=100)
    postal_code = serializers.CharField(max_length=20, required=False, allow_blank=True)


class OrderCreateSerializer(serializers.Serializer):
    """Checkout payload: the cart snapshot plus delivery details."""

    items = ItemInputSerializer(many=True, allow_empty=False)
    shipping_fee = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, default=0)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    shipping_address = ShippingAddressSerializer()


class OrderStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OrderStatus.choices)
    expected_status = serializers.ChoiceField(choices=OrderStatus.choices, required=False)
