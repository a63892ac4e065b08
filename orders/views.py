"""Orders API views.

Includes checkout creation, order history, and the back-office status update
that notifies the customer.
"""

from rest_framework import mixins, permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from accounts.permissions import IsOrderOwnerOrStaff, IsStaff, is_trusted_principal
from core.exceptions import CheckoutError
from core.pagination import StandardResultsSetPagination
from notifications.services import notify_status_change
from .models import Order, OrderStatus
from .serializers import OrderCreateSerializer, OrderSerializer, OrderStatusUpdateSerializer
from .services import create_order, set_status
from .status import allowed_next

NOTIFICATION_FAILED_WARNING = 'Order updated but email notification failed'


class OrderViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """Order API endpoints.

    Customers create and list their own orders. Staff see every order and
    are the only ones allowed to move an order's status by hand.
    """

    permission_classes = [permissions.IsAuthenticated, IsOrderOwnerOrStaff]
    serializer_class = OrderSerializer
    pagination_class = StandardResultsSetPagination

    def get_queryset(self):
        user = self.request.user
        qs = Order.objects.select_related('user').prefetch_related('items', 'payment_attempts')
        if is_trusted_principal(user):
            return qs
        return qs.filter(user=user)

    def create(self, request, *args, **kwargs):
        """Checkout: persist the cart snapshot as a ``pending`` order."""
        payload = OrderCreateSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data

        try:
            order = create_order(
                owner=request.user,
                items=data['items'],
                shipping_fee=data['shipping_fee'],
                payment_method=data['payment_method'],
                shipping_address=data['shipping_address'],
            )
        except CheckoutError as exc:
            return Response({'detail': exc.message}, status=exc.status_code)

        order = self.get_queryset().get(pk=order.pk)
        return Response(self.get_serializer(order).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['patch'], url_path='set-status', permission_classes=[IsStaff])
    def update_status(self, request, pk=None):
        """Staff-only: move the order to a new status and email the customer.

        Payload: ``{status, expected_status?}``. The email is attempted after
        the status is saved; a delivery failure is reported as a warning and
        never undoes the update.
        """
        order = self.get_object()
        payload = OrderStatusUpdateSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        new_status = payload.validated_data['status']

        try:
            order = set_status(
                order.pk,
                new_status,
                payload.validated_data.get('expected_status'),
                actor=f'admin:{request.user.username}',
                notify=False,
            )
        except CheckoutError as exc:
            return Response({'detail': exc.message}, status=exc.status_code)

        delivered = notify_status_change(order.pk, new_status)

        data = dict(self.get_serializer(self.get_queryset().get(pk=order.pk)).data)
        data['notification'] = 'sent' if delivered else 'failed'
        if not delivered:
            data['warning'] = NOTIFICATION_FAILED_WARNING
        return Response(data)

    @action(detail=False, methods=['get'], url_path='statuses')
    def statuses(self, request):
        """List all statuses with the statuses reachable from each, for dropdowns."""
        return Response([
            {'status': value, 'label': label, 'next': sorted(allowed_next(value))}
            for value, label in OrderStatus.choices
        ])
