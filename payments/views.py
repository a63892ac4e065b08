"""Payments API views: STK push initiation and the M-Pesa callback."""

import json
import logging

from django.core.exceptions import ImproperlyConfigured
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import CheckoutError
from orders.models import Order, PaymentMethod
from .serializers import InitiatePaymentSerializer, first_error
from .services import initiate_payment, reconcile_callback

logger = logging.getLogger(__name__)

MPESA_PROMPT_MESSAGE = 'Payment initiated. Please enter your M-PESA PIN on your phone.'


class InitiatePaymentView(APIView):
    """Start a payment for one of the caller's pending orders.

    Payload: ``{amount, phone, orderId, paymentMethod}``.
    """

    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = InitiatePaymentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({'error': first_error(serializer.errors)}, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data

        try:
            attempt = initiate_payment(
                request.user,
                data['orderId'],
                data['amount'],
                data['phone'],
                data['paymentMethod'],
            )
        except Order.DoesNotExist:
            return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)
        except ImproperlyConfigured as exc:
            logger.error("Payment initiation for order %s refused: %s", data['orderId'], exc)
            return Response({'error': 'Payment gateway is not configured'}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        except CheckoutError as exc:
            return Response({'error': exc.message}, status=exc.status_code)

        message = MPESA_PROMPT_MESSAGE if attempt.method == PaymentMethod.MPESA else 'Payment initiated.'
        return Response({
            'success': True,
            'message': message,
            'checkoutRequestId': attempt.checkout_request_id,
        }, status=status.HTTP_200_OK)


class MpesaCallbackView(APIView):
    """Daraja posts STK push results here.

    Unauthenticated. Always answers ``200 {"success": true}`` so the gateway
    does not retry; what happened is recorded on the GatewayCallback row.
    """

    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def post(self, request):
        raw = request.body
        try:
            payload = json.loads(raw or b'null')
        except (ValueError, UnicodeDecodeError):
            payload = {'raw': raw.decode('utf-8', errors='replace')[:2000]}

        try:
            reconcile_callback(payload)
        except Exception:
            logger.exception("M-Pesa callback could not be recorded")

        return Response({'success': True}, status=status.HTTP_200_OK)
