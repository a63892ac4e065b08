"""Error taxonomy shared by the order, payment and notification apps.

Each error is a DRF :class:`~rest_framework.exceptions.APIException` so it
carries the HTTP status the API answers with. Views still catch them
explicitly and shape the body for their endpoint.
"""

from rest_framework import status
from rest_framework.exceptions import APIException


class CheckoutError(APIException):
    """Base class for order/payment failures."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'The request could not be processed.'
    default_code = 'checkout_error'

    @property
    def message(self) -> str:
        return str(self.detail)


class ValidationError(CheckoutError):
    """Malformed input; the client can fix and retry."""

    default_detail = 'Invalid input.'
    default_code = 'invalid'


class AuthorizationError(CheckoutError):
    """Caller is neither the order owner nor a trusted principal."""

    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'You are not allowed to act on this order.'
    default_code = 'not_order_owner'


class StateError(CheckoutError):
    """Operation is not valid for the current order or payment state."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = 'The order is not in a state that allows this operation.'
    default_code = 'invalid_state'


class AmountMismatchError(CheckoutError):
    """Client-supplied amount differs from the stored order total."""

    default_detail = 'Payment amount does not match the order total.'
    default_code = 'amount_mismatch'


class ConflictError(CheckoutError):
    """A compare-and-set lost a race. Re-read the order and retry."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = 'The order was modified concurrently.'
    default_code = 'conflict'


class GatewayError(CheckoutError):
    """The payment provider rejected the request or could not be reached."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = 'The payment provider rejected the request.'
    default_code = 'gateway_error'


class StorageError(CheckoutError):
    """The database write failed; nothing was persisted."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'The order could not be saved. Please try again.'
    default_code = 'storage_error'
