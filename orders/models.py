"""Database models for orders and their purchased items."""

import uuid

from django.conf import settings
from django.db import models


class OrderStatus(models.TextChoices):
    """Order lifecycle status. Transitions are defined in :mod:`orders.status`."""

    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Processing'
    PAID = 'paid', 'Paid'
    SHIPPED = 'shipped', 'Shipped'
    DELIVERED = 'delivered', 'Delivered'
    CANCELLED = 'cancelled', 'Cancelled'


class PaymentMethod(models.TextChoices):
    CARD = 'card', 'Card'
    MPESA = 'mpesa', 'M-PESA'


class Order(models.Model):
    """A customer's checkout and the source of truth for its payment state.

    ``status`` must only be written through :func:`orders.services.set_status`.
    ``total`` always equals ``subtotal + shipping_fee``.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='orders')
    status = models.CharField(max_length=20, choices=OrderStatus.choices, default=OrderStatus.PENDING)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    shipping_fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    payment_method = models.CharField(max_length=10, choices=PaymentMethod.choices)
    # {name, phone, address, city, postal_code?}
    shipping_address = models.JSONField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'created_at'], name='order_user_created_idx'),
            models.Index(fields=['status', 'created_at'], name='order_status_created_idx'),
        ]

    def __str__(self):
        return f"Order #{self.short_id} - {self.user}"

    @property
    def short_id(self) -> str:
        return str(self.id)[:8]


class OrderItem(models.Model):
    """Line item inside an order.

    Name, image, price and shade are snapshots taken at checkout; they are
    never re-read from the catalog afterwards.
    """

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')
    product_id = models.CharField(max_length=64)
    product_name = models.CharField(max_length=255)
    product_image = models.CharField(max_length=500, blank=True, default='')
    price = models.DecimalField(max_digits=12, decimal_places=2)
    shade = models.CharField(max_length=100, null=True, blank=True)
    quantity = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Order Item"
        verbose_name_plural = "Order Items"
        indexes = [
            models.Index(fields=['order', 'product_id'], name='orderitem_order_product_idx'),
        ]

    def __str__(self):
        return f"{self.quantity} x {self.product_name} (Order #{self.order.short_id})"

    @property
    def line_total(self):
        return self.price * self.quantity
