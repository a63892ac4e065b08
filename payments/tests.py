"""Payments app tests."""

import base64
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from unittest import mock

import requests
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.cache import cache
from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from core.exceptions import (
	AmountMismatchError,
	AuthorizationError,
	ConflictError,
	GatewayError,
	StateError,
	ValidationError,
)
from orders.models import Order, OrderStatus
from orders.services import create_order, set_status
from payments.callbacks import metadata_value, parse_stk_callback
from payments.checks import mpesa_settings_check
from payments.gateway import CardGateway, MpesaGateway, StkPushResult, get_gateway, normalize_msisdn
from payments.models import AttemptOutcome, CallbackDisposition, GatewayCallback, PaymentAttempt
from payments.services import (
	STALE_ATTEMPT_DESC,
	expire_stale_attempts,
	initiate_payment,
	reconcile_callback,
	replay_orphan_callbacks,
)


MPESA_SETTINGS = {
	'MPESA_ENVIRONMENT': 'sandbox',
	'MPESA_CONSUMER_KEY': 'consumer-key',
	'MPESA_CONSUMER_SECRET': 'consumer-secret',
	'MPESA_PASSKEY': 'passkey',
	'MPESA_SHORTCODE': '174379',
	'MPESA_CALLBACK_BASE_URL': 'https://shop.example.com/',
	'MPESA_TIMEOUT': 5,
}

NO_MPESA_SETTINGS = {
	'MPESA_CONSUMER_KEY': '',
	'MPESA_CONSUMER_SECRET': '',
	'MPESA_PASSKEY': '',
	'MPESA_SHORTCODE': '',
	'MPESA_CALLBACK_BASE_URL': '',
}

ADDRESS = {'name': 'Wanjiku Kamau', 'phone': '0712345678', 'address': 'Moi Avenue 12', 'city': 'Nairobi'}


def _make_order(user, payment_method='mpesa'):
	"""Subtotal 4500 + shipping 500 = 5000."""
	return create_order(
		owner=user,
		items=[
			{'product_id': 'lipstick-01', 'product_name': 'Matte Lipstick', 'price': '1500', 'quantity': 3},
		],
		shipping_fee='500',
		payment_method=payment_method,
		shipping_address=ADDRESS,
	)


def _stk_callback(checkout_id='ws_CO_1', merchant_id='m-1', result_code=0, amount=5000):
	stk = {
		'MerchantRequestID': merchant_id,
		'CheckoutRequestID': checkout_id,
		'ResultCode': result_code,
		'ResultDesc': 'The service request is processed successfully.' if result_code == 0 else 'Request cancelled by user',
	}
	if result_code == 0:
		stk['CallbackMetadata'] = {
			'Item': [
				{'Name': 'MpesaReceiptNumber', 'Value': 'NLJ7RT61SV'},
				{'Name': 'Amount', 'Value': amount},
				{'Name': 'Balance'},
				{'Name': 'TransactionDate', 'Value': 20240102143015},
				{'Name': 'PhoneNumber', 'Value': 254712345678},
			]
		}
	return {'Body': {'stkCallback': stk}}


class FakeGateway:
	"""Stands in for MpesaGateway; optionally runs a hook while the 'request' is in flight."""

	def __init__(self, result=None, error=None, during_call=None):
		self.result = result or StkPushResult(
			merchant_request_id='m-1',
			checkout_request_id='ws_CO_1',
			response_description='Success. Request accepted for processing',
		)
		self.error = error
		self.during_call = during_call
		self.calls = []

	def request_payment(self, amount, phone, account_reference, description, callback_url):
		self.calls.append({
			'amount': amount,
			'phone': phone,
			'account_reference': account_reference,
			'description': description,
			'callback_url': callback_url,
		})
		if self.during_call:
			self.during_call()
		if self.error:
			raise self.error
		return self.result


def _json_response(data, status_code=200):
	resp = mock.Mock()
	resp.status_code = status_code
	resp.ok = status_code < 400
	resp.json.return_value = data
	resp.text = str(data)
	return resp


class PhoneNormalizationTests(TestCase):

	def test_kenyan_formats_normalize(self):
		for phone in ['0712345678', '712345678', '254712345678', '+254712345678', '+254 712 345 678', '00254712345678']:
			with self.subTest(phone=phone):
				self.assertEqual(normalize_msisdn(phone), '254712345678')

	def test_invalid_numbers_rejected(self):
		for phone in ['', '12345', 'abc', '+14155552671']:
			with self.subTest(phone=phone):
				with self.assertRaises(ValidationError):
					normalize_msisdn(phone)


@override_settings(**MPESA_SETTINGS)
class MpesaGatewayTests(TestCase):
	"""Daraja HTTP calls, with requests mocked out."""

	def setUp(self):
		cache.clear()
		self.gateway = MpesaGateway()

	def test_password_is_base64_of_shortcode_passkey_timestamp(self):
		password = self.gateway.build_password('20240102143015')
		self.assertEqual(base64.b64decode(password).decode(), '174379passkey20240102143015')

	def test_timestamp_is_nairobi_time(self):
		now = datetime(2024, 1, 2, 11, 30, 15, tzinfo=dt_timezone.utc)
		self.assertEqual(MpesaGateway.timestamp(now), '20240102143015')

	@mock.patch('payments.gateway.requests.get')
	def test_access_token_is_cached(self, mock_get):
		mock_get.return_value = _json_response({'access_token': 'tok-1', 'expires_in': '3599'})

		self.assertEqual(self.gateway.get_access_token(), 'tok-1')
		self.assertEqual(self.gateway.get_access_token(), 'tok-1')

		mock_get.assert_called_once()
		args, kwargs = mock_get.call_args
		self.assertEqual(args[0], 'https://sandbox.safaricom.co.ke/oauth/v1/generate')
		self.assertEqual(kwargs['params'], {'grant_type': 'client_credentials'})

	@mock.patch('payments.gateway.requests.get')
	def test_token_failure_is_gateway_error(self, mock_get):
		mock_get.side_effect = requests.ConnectionError('no route')

		with self.assertRaises(GatewayError):
			self.gateway.get_access_token()

	@mock.patch('payments.gateway.requests.post')
	@mock.patch('payments.gateway.requests.get')
	def test_stk_push_request(self, mock_get, mock_post):
		mock_get.return_value = _json_response({'access_token': 'tok-1', 'expires_in': 3599})
		mock_post.return_value = _json_response({
			'MerchantRequestID': 'm-1',
			'CheckoutRequestID': 'ws_CO_1',
			'ResponseCode': '0',
			'ResponseDescription': 'Success. Request accepted for processing',
			'CustomerMessage': 'Success. Request accepted for processing',
		})

		result = self.gateway.stk_push(
			Decimal('5000.00'),
			'254712345678',
			'3f2b9c1e-7d4a-4c1b-9a55-1234567890ab',
			'Order 3f2b9c1e',
			'https://shop.example.com/api/payments/mpesa/callback/',
		)

		self.assertEqual(result.checkout_request_id, 'ws_CO_1')
		self.assertEqual(result.merchant_request_id, 'm-1')

		args, kwargs = mock_post.call_args
		self.assertEqual(args[0], 'https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest')
		self.assertEqual(kwargs['headers'], {'Authorization': 'Bearer tok-1'})
		body = kwargs['json']
		self.assertEqual(body['Amount'], 5000)
		self.assertEqual(body['PhoneNumber'], '254712345678')
		self.assertEqual(body['PartyA'], '254712345678')
		self.assertEqual(body['BusinessShortCode'], '174379')
		self.assertEqual(body['TransactionType'], 'CustomerPayBillOnline')
		self.assertEqual(body['AccountReference'], '3f2b9c1e-7d4')
		self.assertEqual(body['TransactionDesc'], 'Order 3f2b9c1')
		self.assertEqual(
			base64.b64decode(body['Password']).decode(),
			'174379passkey' + body['Timestamp'],
		)

	@mock.patch('payments.gateway.requests.post')
	@mock.patch('payments.gateway.requests.get')
	def test_stk_push_rejection_carries_gateway_description(self, mock_get, mock_post):
		mock_get.return_value = _json_response({'access_token': 'tok-1', 'expires_in': 3599})
		mock_post.return_value = _json_response(
			{'requestId': 'r-1', 'errorCode': '400.002.02', 'errorMessage': 'Bad Request - Invalid PhoneNumber'},
			status_code=400,
		)

		with self.assertRaises(GatewayError) as ctx:
			self.gateway.stk_push(100, '254712345678', 'ref', 'desc', 'https://cb')
		self.assertEqual(ctx.exception.message, 'Bad Request - Invalid PhoneNumber')

	@mock.patch('payments.gateway.requests.post')
	@mock.patch('payments.gateway.requests.get')
	def test_non_zero_response_code_is_rejection(self, mock_get, mock_post):
		mock_get.return_value = _json_response({'access_token': 'tok-1', 'expires_in': 3599})
		mock_post.return_value = _json_response({'ResponseCode': '1', 'ResponseDescription': 'Rejected'})

		with self.assertRaises(GatewayError) as ctx:
			self.gateway.stk_push(100, '254712345678', 'ref', 'desc', 'https://cb')
		self.assertEqual(ctx.exception.message, 'Rejected')

	@mock.patch('payments.gateway.requests.post')
	@mock.patch('payments.gateway.requests.get')
	def test_non_json_body_is_gateway_error(self, mock_get, mock_post):
		mock_get.return_value = _json_response({'access_token': 'tok-1', 'expires_in': 3599})
		resp = _json_response(None, status_code=502)
		resp.json.side_effect = ValueError('not json')
		resp.text = '<html>Bad gateway</html>'
		mock_post.return_value = resp

		with self.assertRaises(GatewayError):
			self.gateway.stk_push(100, '254712345678', 'ref', 'desc', 'https://cb')

	@mock.patch('payments.gateway.requests.post')
	@mock.patch('payments.gateway.requests.get')
	def test_transport_failure_is_gateway_error(self, mock_get, mock_post):
		mock_get.return_value = _json_response({'access_token': 'tok-1', 'expires_in': 3599})
		mock_post.side_effect = requests.Timeout('timed out')

		with self.assertRaises(GatewayError):
			self.gateway.stk_push(100, '254712345678', 'ref', 'desc', 'https://cb')

	def test_card_gateway_is_not_configured(self):
		with self.assertRaises(GatewayError) as ctx:
			CardGateway().request_payment(100, '', 'ref', 'desc', 'https://cb')
		self.assertEqual(ctx.exception.message, 'Card payments not yet configured')

	def test_unknown_method(self):
		with self.assertRaises(ValidationError):
			get_gateway('bitcoin')


class ConfigurationTests(TestCase):

	@override_settings(**NO_MPESA_SETTINGS)
	def test_missing_settings_fail_fast(self):
		with self.assertRaises(ImproperlyConfigured) as ctx:
			MpesaGateway()
		for name in NO_MPESA_SETTINGS:
			self.assertIn(name, str(ctx.exception))

	@override_settings(**NO_MPESA_SETTINGS)
	def test_system_check_warns(self):
		messages = mpesa_settings_check(None)
		self.assertEqual([m.id for m in messages], ['payments.W001'])

	@override_settings(**MPESA_SETTINGS)
	def test_system_check_quiet_when_configured(self):
		self.assertEqual(mpesa_settings_check(None), [])

	@override_settings(**dict(MPESA_SETTINGS, MPESA_ENVIRONMENT='staging'))
	def test_unknown_environment(self):
		with self.assertRaises(ImproperlyConfigured):
			MpesaGateway()


@override_settings(**MPESA_SETTINGS)
class InitiatePaymentTests(TestCase):
	"""initiate_payment with the gateway replaced by FakeGateway."""

	@classmethod
	def setUpTestData(cls):
		User = get_user_model()
		cls.customer = User.objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)
		cls.other = User.objects.create_user(
			username='other', email='other@example.com', password='12345678',
		)
		cls.staff = User.objects.create_user(
			username='staff', email='staff@example.com', password='12345678', is_staff=True,
		)

	def setUp(self):
		self.order = _make_order(self.customer)
		self.gateway = FakeGateway()
		patcher = mock.patch('payments.services.get_gateway', return_value=self.gateway)
		patcher.start()
		self.addCleanup(patcher.stop)

	def test_accepted_request_moves_order_to_processing(self):
		attempt = initiate_payment(self.customer, str(self.order.pk), 5000, '0712345678', 'mpesa')

		self.assertEqual(attempt.checkout_request_id, 'ws_CO_1')
		self.assertEqual(attempt.merchant_request_id, 'm-1')
		self.assertEqual(attempt.outcome, AttemptOutcome.PENDING)
		self.assertEqual(attempt.phone, '254712345678')
		self.assertEqual(attempt.amount, Decimal('5000.00'))
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PROCESSING)

		call = self.gateway.calls[0]
		self.assertEqual(call['phone'], '254712345678')
		self.assertEqual(call['amount'], Decimal('5000.00'))
		self.assertEqual(call['account_reference'], str(self.order.pk))
		self.assertEqual(call['callback_url'], 'https://shop.example.com/api/payments/mpesa/callback/')

	def test_amount_mismatch_rejected(self):
		with self.assertRaises(AmountMismatchError):
			initiate_payment(self.customer, self.order.pk, 4000, '0712345678', 'mpesa')

		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PENDING)
		self.assertFalse(PaymentAttempt.objects.exists())
		self.assertEqual(self.gateway.calls, [])

	def test_sub_cent_amount_difference_rejected(self):
		with self.assertRaises(AmountMismatchError):
			initiate_payment(self.customer, self.order.pk, '4999.995', '0712345678', 'mpesa')

		self.assertEqual(self.gateway.calls, [])
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PENDING)

	def test_exact_string_amount_accepted(self):
		initiate_payment(self.customer, self.order.pk, '5000.00', '0712345678', 'mpesa')
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PROCESSING)

	def test_callback_before_status_move_is_applied(self):
		# The customer answers the prompt after the gateway accepted the
		# request but before the order has left pending.
		def set_status_after_callback(order_id, new_status, *args, **kwargs):
			if new_status == OrderStatus.PROCESSING:
				reconcile_callback(_stk_callback())
			return set_status(order_id, new_status, *args, **kwargs)

		with mock.patch('payments.services.set_status', side_effect=set_status_after_callback):
			attempt = initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		self.assertEqual(attempt.outcome, AttemptOutcome.SUCCEEDED)
		self.assertEqual(attempt.receipt_number, 'NLJ7RT61SV')
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PAID)
		record = GatewayCallback.objects.get()
		self.assertEqual(record.disposition, CallbackDisposition.APPLIED)
		self.assertEqual(record.attempt_id, attempt.pk)

		self.assertEqual(expire_stale_attempts(timedelta(0)), 0)
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PAID)

	def test_callback_during_gateway_request_is_applied(self):
		self.gateway.during_call = lambda: reconcile_callback(_stk_callback(result_code=1032))

		attempt = initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		self.assertEqual(attempt.outcome, AttemptOutcome.FAILED)
		self.assertEqual(attempt.result_code, 1032)
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.CANCELLED)
		self.assertEqual(GatewayCallback.objects.get().disposition, CallbackDisposition.APPLIED)

	def test_admin_cancel_during_gateway_request(self):
		self.gateway.during_call = lambda: set_status(self.order.pk, OrderStatus.CANCELLED, notify=False)

		with self.assertRaises(ConflictError):
			initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		attempt = PaymentAttempt.objects.get(order=self.order)
		self.assertEqual(attempt.checkout_request_id, 'ws_CO_1')
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.CANCELLED)

	def test_other_customer_rejected(self):
		with self.assertRaises(AuthorizationError):
			initiate_payment(self.other, self.order.pk, 5000, '0712345678', 'mpesa')
		self.assertFalse(PaymentAttempt.objects.exists())

	def test_staff_may_initiate_for_customer(self):
		initiate_payment(self.staff, self.order.pk, 5000, '0712345678', 'mpesa')
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PROCESSING)

	def test_second_initiation_while_processing_rejected(self):
		initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		with self.assertRaises(StateError):
			initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		self.assertEqual(PaymentAttempt.objects.filter(order=self.order).count(), 1)
		self.assertEqual(len(self.gateway.calls), 1)

	def test_concurrent_initiation_creates_one_attempt(self):
		# The second request arrives while the first is still waiting on the gateway.
		errors = []

		def second_request():
			try:
				initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')
			except StateError as exc:
				errors.append(exc)

		self.gateway.during_call = second_request

		initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		self.assertEqual(len(errors), 1)
		self.assertEqual(len(self.gateway.calls), 1)
		self.assertEqual(PaymentAttempt.objects.filter(order=self.order).count(), 1)
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PROCESSING)

	def test_gateway_rejection_keeps_order_pending(self):
		self.gateway.error = GatewayError('Bad Request - Invalid PhoneNumber')

		with self.assertRaises(GatewayError) as ctx:
			initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		self.assertEqual(ctx.exception.message, 'Bad Request - Invalid PhoneNumber')
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PENDING)
		attempt = PaymentAttempt.objects.get(order=self.order)
		self.assertEqual(attempt.outcome, AttemptOutcome.FAILED)
		self.assertEqual(attempt.result_desc, 'Bad Request - Invalid PhoneNumber')
		self.assertIsNotNone(attempt.finalized_at)

	def test_retry_after_rejection(self):
		self.gateway.error = GatewayError('Rejected')
		with self.assertRaises(GatewayError):
			initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		self.gateway.error = None
		initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

		self.assertEqual(PaymentAttempt.objects.filter(order=self.order).count(), 2)
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PROCESSING)

	def test_cancelled_order_rejected(self):
		set_status(self.order.pk, OrderStatus.CANCELLED, notify=False)

		with self.assertRaises(StateError):
			initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'mpesa')

	def test_invalid_phone_rejected(self):
		with self.assertRaises(ValidationError):
			initiate_payment(self.customer, self.order.pk, 5000, '12345', 'mpesa')
		self.assertFalse(PaymentAttempt.objects.exists())

	def test_method_must_match_order(self):
		with self.assertRaises(ValidationError):
			initiate_payment(self.customer, self.order.pk, 5000, '0712345678', 'card')

	def test_unknown_order(self):
		with self.assertRaises(Order.DoesNotExist):
			initiate_payment(self.customer, '00000000-0000-0000-0000-000000000000', 5000, '0712345678', 'mpesa')


@override_settings(**MPESA_SETTINGS)
class InitiatePaymentApiTests(TestCase):
	"""POST /api/payments/initiate/"""

	@classmethod
	def setUpTestData(cls):
		cls.customer = get_user_model().objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)

	def setUp(self):
		self.order = _make_order(self.customer)
		self.client = APIClient()
		self.client.force_authenticate(user=self.customer)

	def _post(self, **overrides):
		payload = {'amount': 5000, 'phone': '0712345678', 'orderId': str(self.order.pk), 'paymentMethod': 'mpesa'}
		payload.update(overrides)
		return self.client.post('/api/payments/initiate/', data=payload, format='json')

	def test_success(self):
		with mock.patch('payments.services.get_gateway', return_value=FakeGateway()):
			res = self._post()

		self.assertEqual(res.status_code, 200)
		self.assertEqual(res.data, {
			'success': True,
			'message': 'Payment initiated. Please enter your M-PESA PIN on your phone.',
			'checkoutRequestId': 'ws_CO_1',
		})

	def test_amount_mismatch(self):
		with mock.patch('payments.services.get_gateway', return_value=FakeGateway()):
			res = self._post(amount=4000)

		self.assertEqual(res.status_code, 400)
		self.assertIn('error', res.data)
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PENDING)

	def test_unknown_order(self):
		res = self._post(orderId='00000000-0000-0000-0000-000000000000')
		self.assertEqual(res.status_code, 404)
		self.assertEqual(res.data, {'error': 'Order not found'})

	def test_gateway_rejection_is_502(self):
		gateway = FakeGateway(error=GatewayError('Bad Request - Invalid PhoneNumber'))
		with mock.patch('payments.services.get_gateway', return_value=gateway):
			res = self._post()

		self.assertEqual(res.status_code, 502)
		self.assertEqual(res.data, {'error': 'Bad Request - Invalid PhoneNumber'})

	def test_card_not_configured(self):
		order = _make_order(self.customer, payment_method='card')
		res = self._post(orderId=str(order.pk), paymentMethod='card', phone='')

		self.assertEqual(res.status_code, 502)
		self.assertEqual(res.data, {'error': 'Card payments not yet configured'})
		self.assertEqual(Order.objects.get(pk=order.pk).status, OrderStatus.PENDING)

	@override_settings(**NO_MPESA_SETTINGS)
	def test_missing_configuration_is_503(self):
		res = self._post()

		self.assertEqual(res.status_code, 503)
		self.assertEqual(res.data, {'error': 'Payment gateway is not configured'})
		self.assertFalse(PaymentAttempt.objects.exists())

	def test_invalid_payment_method(self):
		res = self._post(paymentMethod='bitcoin')
		self.assertEqual(res.status_code, 400)
		self.assertIn('error', res.data)

	def test_requires_authentication(self):
		res = APIClient().post('/api/payments/initiate/', data={}, format='json')
		self.assertEqual(res.status_code, 401)


class CallbackParsingTests(TestCase):

	def test_metadata_lookup_is_by_name(self):
		items = [{'Name': 'PhoneNumber', 'Value': 254712345678}, {'Name': 'Amount', 'Value': 10}]
		self.assertEqual(metadata_value(items, 'Amount'), 10)
		self.assertEqual(metadata_value(items, 'PhoneNumber'), 254712345678)
		self.assertIsNone(metadata_value(items, 'MpesaReceiptNumber'))

	def test_parse_success_payload(self):
		stk = parse_stk_callback(_stk_callback())

		self.assertTrue(stk.succeeded)
		self.assertEqual(stk.amount, Decimal('5000.00'))
		self.assertEqual(stk.receipt_number, 'NLJ7RT61SV')
		self.assertEqual(stk.payer_phone, '254712345678')
		self.assertEqual(stk.transaction_date.astimezone(dt_timezone.utc), datetime(2024, 1, 2, 11, 30, 15, tzinfo=dt_timezone.utc))

	def test_parse_rejects_other_shapes(self):
		for payload in [None, [], {}, {'Body': {}}, {'Body': {'stkCallback': {'ResultCode': 'x'}}}]:
			with self.subTest(payload=payload):
				self.assertIsNone(parse_stk_callback(payload))


@override_settings(NOTIFICATIONS_ASYNC=False)
class ReconcileCallbackTests(TestCase):
	"""Gateway callbacks are applied exactly once and never resurrect an order."""

	@classmethod
	def setUpTestData(cls):
		cls.customer = get_user_model().objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)

	def setUp(self):
		self.order = _make_order(self.customer)
		Order.objects.filter(pk=self.order.pk).update(status=OrderStatus.PROCESSING)
		self.attempt = PaymentAttempt.objects.create(
			order=self.order,
			method='mpesa',
			amount=Decimal('5000.00'),
			phone='254712345678',
			merchant_request_id='m-1',
			checkout_request_id='ws_CO_1',
		)

	def _status(self):
		return Order.objects.get(pk=self.order.pk).status

	def test_success_marks_paid_and_emails(self):
		with self.captureOnCommitCallbacks(execute=True):
			record = reconcile_callback(_stk_callback())

		self.assertEqual(record.disposition, CallbackDisposition.APPLIED)
		self.assertEqual(self._status(), OrderStatus.PAID)
		self.attempt.refresh_from_db()
		self.assertEqual(self.attempt.outcome, AttemptOutcome.SUCCEEDED)
		self.assertEqual(self.attempt.receipt_number, 'NLJ7RT61SV')
		self.assertEqual(self.attempt.paid_amount, Decimal('5000.00'))
		self.assertEqual(self.attempt.payer_phone, '254712345678')
		self.assertEqual(self.attempt.result_code, 0)
		self.assertIsNotNone(self.attempt.transaction_date)

		self.assertEqual(len(mail.outbox), 1)
		self.assertEqual(mail.outbox[0].subject, f'Payment Confirmed - Order #{self.order.short_id}')

	def test_duplicate_callback_is_a_no_op(self):
		with self.captureOnCommitCallbacks(execute=True):
			reconcile_callback(_stk_callback())
		with self.captureOnCommitCallbacks(execute=True):
			record = reconcile_callback(_stk_callback())

		self.assertEqual(record.disposition, CallbackDisposition.DUPLICATE)
		self.assertEqual(self._status(), OrderStatus.PAID)
		self.assertEqual(len(mail.outbox), 1)
		self.assertEqual(GatewayCallback.objects.count(), 2)

	def test_failure_cancels_order(self):
		with self.captureOnCommitCallbacks(execute=True):
			record = reconcile_callback(_stk_callback(result_code=1032))

		self.assertEqual(record.disposition, CallbackDisposition.APPLIED)
		self.assertEqual(self._status(), OrderStatus.CANCELLED)
		self.attempt.refresh_from_db()
		self.assertEqual(self.attempt.outcome, AttemptOutcome.FAILED)
		self.assertEqual(self.attempt.result_code, 1032)
		self.assertIsNone(self.attempt.receipt_number)
		self.assertEqual(mail.outbox[0].subject, f'Order Cancelled - Order #{self.order.short_id}')

	def test_orphan_callback_is_recorded(self):
		record = reconcile_callback(_stk_callback(checkout_id='ws_CO_unknown', merchant_id='m-unknown'))

		self.assertEqual(record.disposition, CallbackDisposition.ORPHAN)
		self.assertIsNone(record.attempt)
		self.assertEqual(record.checkout_request_id, 'ws_CO_unknown')
		self.assertEqual(self._status(), OrderStatus.PROCESSING)
		self.attempt.refresh_from_db()
		self.assertEqual(self.attempt.outcome, AttemptOutcome.PENDING)

	def test_falls_back_to_merchant_request_id(self):
		record = reconcile_callback(_stk_callback(checkout_id=''))

		self.assertEqual(record.disposition, CallbackDisposition.APPLIED)
		self.assertEqual(record.attempt, self.attempt)
		self.assertEqual(self._status(), OrderStatus.PAID)

	def test_admin_cancel_wins_over_late_success(self):
		set_status(self.order.pk, OrderStatus.CANCELLED, actor='admin:staff', notify=False)

		record = reconcile_callback(_stk_callback())

		self.assertEqual(self._status(), OrderStatus.CANCELLED)
		self.attempt.refresh_from_db()
		self.assertEqual(self.attempt.outcome, AttemptOutcome.SUCCEEDED)
		self.assertEqual(record.disposition, CallbackDisposition.APPLIED)
		self.assertTrue(record.detail.startswith('Order left unchanged'))
		self.assertFalse(PaymentAttempt.objects.filter(outcome=AttemptOutcome.PENDING).exists())

	def test_amount_mismatch_is_logged(self):
		with self.assertLogs('payments.services', level='WARNING') as logs:
			reconcile_callback(_stk_callback(amount=4000))

		self.assertTrue(any('amount mismatch' in line for line in logs.output))
		self.assertEqual(self._status(), OrderStatus.PAID)

	def test_malformed_payload_is_recorded(self):
		record = reconcile_callback({'unexpected': True})

		self.assertEqual(record.disposition, CallbackDisposition.MALFORMED)
		self.assertEqual(self._status(), OrderStatus.PROCESSING)

	def test_unexpected_error_is_recorded(self):
		with mock.patch('payments.services._apply_callback', side_effect=RuntimeError('boom')):
			record = reconcile_callback(_stk_callback())

		self.assertEqual(record.disposition, CallbackDisposition.ERROR)


@override_settings(NOTIFICATIONS_ASYNC=False)
class MpesaCallbackApiTests(TestCase):
	"""POST /api/payments/mpesa/callback/ always acknowledges."""

	@classmethod
	def setUpTestData(cls):
		cls.customer = get_user_model().objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)

	def setUp(self):
		self.client = APIClient()

	def test_success_callback(self):
		order = _make_order(self.customer)
		Order.objects.filter(pk=order.pk).update(status=OrderStatus.PROCESSING)
		PaymentAttempt.objects.create(
			order=order, method='mpesa', amount=Decimal('5000.00'), phone='254712345678',
			merchant_request_id='m-1', checkout_request_id='ws_CO_1',
		)

		res = self.client.post('/api/payments/mpesa/callback/', data=_stk_callback(), format='json')

		self.assertEqual(res.status_code, 200)
		self.assertEqual(res.json(), {'success': True})
		self.assertEqual(Order.objects.get(pk=order.pk).status, OrderStatus.PAID)

	def test_unknown_correlation_id_acknowledged(self):
		res = self.client.post('/api/payments/mpesa/callback/', data=_stk_callback(checkout_id='nope', merchant_id='nope'), format='json')

		self.assertEqual(res.status_code, 200)
		self.assertEqual(GatewayCallback.objects.get().disposition, CallbackDisposition.ORPHAN)

	def test_invalid_json_acknowledged(self):
		res = self.client.post('/api/payments/mpesa/callback/', data='{not json', content_type='application/json')

		self.assertEqual(res.status_code, 200)
		self.assertEqual(res.json(), {'success': True})
		record = GatewayCallback.objects.get()
		self.assertEqual(record.disposition, CallbackDisposition.MALFORMED)
		self.assertEqual(record.payload, {'raw': '{not json'})

	def test_storage_failure_still_acknowledged(self):
		with mock.patch('payments.views.reconcile_callback', side_effect=RuntimeError('db down')):
			res = self.client.post('/api/payments/mpesa/callback/', data=_stk_callback(), format='json')

		self.assertEqual(res.status_code, 200)


@override_settings(**MPESA_SETTINGS, NOTIFICATIONS_ASYNC=False)
class EndToEndTests(TestCase):
	"""Checkout, STK push and callback through the HTTP API."""

	@classmethod
	def setUpTestData(cls):
		cls.customer = get_user_model().objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)

	def setUp(self):
		self.client = APIClient()
		self.client.force_authenticate(user=self.customer)
		res = self.client.post('/api/orders/', data={
			'items': [
				{'product_id': 'lipstick-01', 'product_name': 'Matte Lipstick', 'price': '1500.00', 'quantity': 3},
			],
			'shipping_fee': '500.00',
			'payment_method': 'mpesa',
			'shipping_address': ADDRESS,
		}, format='json')
		self.assertEqual(res.status_code, 201)
		self.order_id = res.data['id']
		self.assertEqual(res.data['total'], '5000.00')

	def _initiate(self):
		gateway = FakeGateway()
		with mock.patch('payments.services.get_gateway', return_value=gateway):
			with self.captureOnCommitCallbacks(execute=True):
				res = self.client.post('/api/payments/initiate/', data={
					'amount': 5000, 'phone': '0712345678', 'orderId': self.order_id, 'paymentMethod': 'mpesa',
				}, format='json')
		self.assertEqual(res.status_code, 200)
		self.assertEqual(gateway.calls[0]['phone'], '254712345678')
		self.assertEqual(Order.objects.get(pk=self.order_id).status, OrderStatus.PROCESSING)
		return res.data['checkoutRequestId']

	def test_paid_flow(self):
		checkout_id = self._initiate()

		with self.captureOnCommitCallbacks(execute=True):
			res = APIClient().post('/api/payments/mpesa/callback/', data=_stk_callback(checkout_id=checkout_id), format='json')

		self.assertEqual(res.status_code, 200)
		self.assertEqual(Order.objects.get(pk=self.order_id).status, OrderStatus.PAID)
		subjects = [m.subject for m in mail.outbox]
		self.assertIn(f'Payment Confirmed - Order #{self.order_id[:8]}', subjects)

		detail = self.client.get(f'/api/orders/{self.order_id}/')
		self.assertEqual(detail.data['payment_status']['outcome'], 'succeeded')
		self.assertEqual(detail.data['payment_status']['receipt_number'], 'NLJ7RT61SV')

	def test_failed_flow(self):
		checkout_id = self._initiate()

		APIClient().post('/api/payments/mpesa/callback/', data=_stk_callback(checkout_id=checkout_id, result_code=1), format='json')

		self.assertEqual(Order.objects.get(pk=self.order_id).status, OrderStatus.CANCELLED)
		self.assertIsNone(PaymentAttempt.objects.get(order_id=self.order_id).receipt_number)


class ExpireStaleAttemptsTests(TestCase):
	"""The sweep for prompts the customer never answered."""

	@classmethod
	def setUpTestData(cls):
		cls.customer = get_user_model().objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)

	def _processing_attempt(self, age_minutes, checkout_id):
		order = _make_order(self.customer)
		Order.objects.filter(pk=order.pk).update(status=OrderStatus.PROCESSING)
		attempt = PaymentAttempt.objects.create(
			order=order, method='mpesa', amount=order.total, phone='254712345678',
			checkout_request_id=checkout_id,
		)
		PaymentAttempt.objects.filter(pk=attempt.pk).update(
			created_at=timezone.now() - timedelta(minutes=age_minutes)
		)
		return attempt

	def test_stale_attempt_cancels_order(self):
		stale = self._processing_attempt(30, 'ws_CO_old')
		fresh = self._processing_attempt(1, 'ws_CO_new')

		self.assertEqual(expire_stale_attempts(timedelta(minutes=10)), 1)

		stale.refresh_from_db()
		fresh.refresh_from_db()
		self.assertEqual(stale.outcome, AttemptOutcome.FAILED)
		self.assertEqual(stale.result_desc, STALE_ATTEMPT_DESC)
		self.assertEqual(stale.order.status, OrderStatus.CANCELLED)
		self.assertEqual(fresh.outcome, AttemptOutcome.PENDING)
		self.assertEqual(fresh.order.status, OrderStatus.PROCESSING)

	def test_already_cancelled_order_is_left_alone(self):
		stale = self._processing_attempt(30, 'ws_CO_old')
		set_status(stale.order_id, OrderStatus.CANCELLED, notify=False)

		self.assertEqual(expire_stale_attempts(timedelta(minutes=10)), 1)

		stale.refresh_from_db()
		self.assertEqual(stale.outcome, AttemptOutcome.FAILED)
		self.assertEqual(stale.order.status, OrderStatus.CANCELLED)

	def test_late_callback_after_expiry_is_duplicate(self):
		stale = self._processing_attempt(30, 'ws_CO_old')
		expire_stale_attempts(timedelta(minutes=10))

		record = reconcile_callback(_stk_callback(checkout_id='ws_CO_old'))

		self.assertEqual(record.disposition, CallbackDisposition.DUPLICATE)
		self.assertEqual(Order.objects.get(pk=stale.order_id).status, OrderStatus.CANCELLED)

	def test_orphan_success_is_replayed_instead_of_cancelling(self):
		order = _make_order(self.customer)
		Order.objects.filter(pk=order.pk).update(status=OrderStatus.PROCESSING)
		attempt = PaymentAttempt.objects.create(
			order=order, method='mpesa', amount=order.total, phone='254712345678',
		)
		orphan = reconcile_callback(_stk_callback(checkout_id='ws_CO_late', merchant_id='m-late'))
		self.assertEqual(orphan.disposition, CallbackDisposition.ORPHAN)
		PaymentAttempt.objects.filter(pk=attempt.pk).update(
			checkout_request_id='ws_CO_late',
			merchant_request_id='m-late',
			created_at=timezone.now() - timedelta(minutes=30),
		)

		self.assertEqual(expire_stale_attempts(timedelta(minutes=10)), 0)

		attempt.refresh_from_db()
		orphan.refresh_from_db()
		self.assertEqual(attempt.outcome, AttemptOutcome.SUCCEEDED)
		self.assertEqual(Order.objects.get(pk=order.pk).status, OrderStatus.PAID)
		self.assertEqual(orphan.disposition, CallbackDisposition.APPLIED)
		self.assertEqual(orphan.attempt_id, attempt.pk)

	def test_replay_ignores_other_checkout_ids(self):
		stale = self._processing_attempt(30, 'ws_CO_old')
		reconcile_callback(_stk_callback(checkout_id='ws_CO_other', merchant_id='m-other'))

		self.assertEqual(replay_orphan_callbacks(stale), 0)
		self.assertEqual(expire_stale_attempts(timedelta(minutes=10)), 1)
		self.assertEqual(
			GatewayCallback.objects.get(checkout_request_id='ws_CO_other').disposition,
			CallbackDisposition.ORPHAN,
		)

	def test_management_command(self):
		self._processing_attempt(30, 'ws_CO_old')
		out = StringIO()

		call_command('expire_payment_attempts', '--minutes', '5', stdout=out)

		self.assertIn('Expired 1 payment attempt(s).', out.getvalue())
