"""Orders app tests."""

from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.core import mail
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework.test import APIClient

from core.exceptions import ConflictError, StateError, StorageError, ValidationError
from orders.models import Order, OrderItem, OrderStatus
from orders.services import create_order, get_order, set_status
from orders.signals import order_status_changed
from orders.status import allowed_next, can_transition


ADDRESS = {'name': 'Wanjiku Kamau', 'phone': '0712345678', 'address': 'Moi Avenue 12', 'city': 'Nairobi'}


def _items():
	return [
		{'product_id': 'lipstick-01', 'product_name': 'Matte Lipstick', 'price': '1500.00', 'quantity': 2, 'shade': 'Ruby'},
		{'product_id': 'serum-02', 'product_name': 'Face Serum', 'price': '1500.00', 'quantity': 1},
	]


def _make_order(user, **overrides):
	kwargs = {
		'owner': user,
		'items': _items(),
		'shipping_fee': '500',
		'payment_method': 'mpesa',
		'shipping_address': ADDRESS,
	}
	kwargs.update(overrides)
	return create_order(**kwargs)


class CreateOrderTests(TestCase):
	"""Order Store creation: totals, validation and atomicity."""

	@classmethod
	def setUpTestData(cls):
		cls.customer = get_user_model().objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)

	def test_total_is_subtotal_plus_shipping(self):
		order = _make_order(self.customer)

		self.assertEqual(order.status, OrderStatus.PENDING)
		self.assertEqual(order.subtotal, Decimal('4500.00'))
		self.assertEqual(order.shipping_fee, Decimal('500.00'))
		self.assertEqual(order.total, Decimal('5000.00'))
		self.assertEqual(order.items.count(), 2)

	def test_fractional_prices_do_not_drift(self):
		items = [{'product_id': 'p1', 'product_name': 'Balm', 'price': 19.99, 'quantity': 3}]
		order = _make_order(self.customer, items=items, shipping_fee='0.10')

		order.refresh_from_db()
		self.assertEqual(order.subtotal, Decimal('59.97'))
		self.assertEqual(order.total, Decimal('60.07'))
		self.assertEqual(order.total, order.subtotal + order.shipping_fee)

	def test_items_are_snapshotted(self):
		order = _make_order(self.customer)
		item = order.items.get(product_id='lipstick-01')

		self.assertEqual(item.product_name, 'Matte Lipstick')
		self.assertEqual(item.shade, 'Ruby')
		self.assertEqual(item.line_total, Decimal('3000.00'))

	def test_empty_items_rejected(self):
		with self.assertRaises(ValidationError):
			_make_order(self.customer, items=[])
		self.assertFalse(Order.objects.exists())

	def test_malformed_items_rejected(self):
		bad_items = [
			{'product_id': 'p1', 'product_name': 'Balm', 'price': '10', 'quantity': 0},
			{'product_id': 'p1', 'product_name': 'Balm', 'price': '-1', 'quantity': 1},
			{'product_id': '', 'product_name': 'Balm', 'price': '10', 'quantity': 1},
			{'product_id': 'p1', 'product_name': 'Balm', 'price': 'ten', 'quantity': 1},
		]
		for item in bad_items:
			with self.subTest(item=item):
				with self.assertRaises(ValidationError):
					_make_order(self.customer, items=[item])
		self.assertFalse(Order.objects.exists())

	def test_negative_shipping_fee_rejected(self):
		with self.assertRaises(ValidationError):
			_make_order(self.customer, shipping_fee='-5')

	def test_unknown_payment_method_rejected(self):
		with self.assertRaises(ValidationError):
			_make_order(self.customer, payment_method='bitcoin')

	def test_incomplete_address_rejected(self):
		with self.assertRaises(ValidationError):
			_make_order(self.customer, shipping_address={'name': 'Wanjiku', 'city': 'Nairobi'})

	def test_failed_item_write_leaves_no_order(self):
		with mock.patch.object(OrderItem.objects, 'bulk_create', side_effect=DatabaseError('disk full')):
			with self.assertRaises(StorageError):
				_make_order(self.customer)

		self.assertFalse(Order.objects.exists())
		self.assertFalse(OrderItem.objects.exists())

	def test_get_order_unknown_id(self):
		with self.assertRaises(Order.DoesNotExist):
			get_order('not-a-uuid')


class OrderStatusTests(TestCase):
	"""Status transitions go through the state machine and the compare-and-set."""

	@classmethod
	def setUpTestData(cls):
		cls.customer = get_user_model().objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)

	def setUp(self):
		self.order = _make_order(self.customer)

	def _force_status(self, status):
		Order.objects.filter(pk=self.order.pk).update(status=status)

	def test_state_machine_edges(self):
		self.assertTrue(can_transition('pending', 'processing'))
		self.assertTrue(can_transition('processing', 'paid'))
		self.assertTrue(can_transition('paid', 'shipped'))
		self.assertTrue(can_transition('shipped', 'delivered'))
		self.assertTrue(can_transition('shipped', 'cancelled'))

		self.assertFalse(can_transition('pending', 'paid'))
		self.assertFalse(can_transition('paid', 'pending'))
		self.assertFalse(can_transition('processing', 'processing'))
		self.assertEqual(allowed_next('delivered'), set())
		self.assertEqual(allowed_next('cancelled'), set())

	def test_every_pair_matches_the_state_machine(self):
		for current in OrderStatus.values:
			for new in OrderStatus.values:
				with self.subTest(current=current, new=new):
					self._force_status(current)
					if can_transition(current, new):
						set_status(self.order.pk, new, notify=False)
						self.assertEqual(Order.objects.get(pk=self.order.pk).status, new)
					else:
						with self.assertRaises(StateError):
							set_status(self.order.pk, new, notify=False)
						self.assertEqual(Order.objects.get(pk=self.order.pk).status, current)

	def test_expected_status_mismatch_is_a_conflict(self):
		self._force_status(OrderStatus.CANCELLED)

		with self.assertRaises(ConflictError):
			set_status(self.order.pk, OrderStatus.PAID, OrderStatus.PROCESSING)

		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.CANCELLED)

	def test_expected_status_match_applies(self):
		order = set_status(self.order.pk, OrderStatus.PROCESSING, OrderStatus.PENDING)

		self.assertEqual(order.status, OrderStatus.PROCESSING)
		self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PROCESSING)

	def test_unknown_status_rejected(self):
		with self.assertRaises(ValidationError):
			set_status(self.order.pk, 'refunded')

	def test_signal_sent_once_per_transition(self):
		received = []

		def handler(sender, **kwargs):
			received.append((kwargs['previous_status'], kwargs['new_status'], kwargs['actor']))

		order_status_changed.connect(handler)
		self.addCleanup(order_status_changed.disconnect, handler)

		set_status(self.order.pk, OrderStatus.PROCESSING, actor='tester')
		with self.assertRaises(StateError):
			set_status(self.order.pk, OrderStatus.PROCESSING, actor='tester')

		self.assertEqual(received, [('pending', 'processing', 'tester')])


@override_settings(NOTIFICATIONS_ASYNC=False)
class OrderApiTests(TestCase):
	"""Checkout, order history and the staff status endpoint."""

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

	def _client(self, user):
		client = APIClient()
		client.force_authenticate(user=user)
		return client

	def test_create_order_returns_201(self):
		payload = {
			'items': _items(),
			'shipping_fee': '500.00',
			'payment_method': 'mpesa',
			'shipping_address': ADDRESS,
		}
		res = self._client(self.customer).post('/api/orders/', data=payload, format='json')

		self.assertEqual(res.status_code, 201)
		self.assertEqual(res.data['status'], 'pending')
		self.assertEqual(res.data['total'], '5000.00')
		self.assertEqual(len(res.data['items']), 2)
		self.assertIsNone(res.data['payment_status'])
		self.assertEqual(Order.objects.get(pk=res.data['id']).user_id, self.customer.id)

	def test_create_order_without_items_returns_400(self):
		payload = {'items': [], 'payment_method': 'mpesa', 'shipping_address': ADDRESS}
		res = self._client(self.customer).post('/api/orders/', data=payload, format='json')

		self.assertEqual(res.status_code, 400)
		self.assertFalse(Order.objects.exists())

	def test_anonymous_cannot_create(self):
		res = APIClient().post('/api/orders/', data={}, format='json')
		self.assertEqual(res.status_code, 401)

	def test_customers_only_see_their_orders(self):
		mine = _make_order(self.customer)
		_make_order(self.other)

		res = self._client(self.customer).get('/api/orders/')
		self.assertEqual(res.status_code, 200)
		self.assertEqual(res.data['count'], 1)
		self.assertEqual(res.data['results'][0]['id'], str(mine.pk))

		res = self._client(self.customer).get(f'/api/orders/{_make_order(self.other).pk}/')
		self.assertEqual(res.status_code, 404)

	def test_staff_see_all_orders(self):
		_make_order(self.customer)
		_make_order(self.other)

		res = self._client(self.staff).get('/api/orders/')
		self.assertEqual(res.data['count'], 2)

	def test_customer_cannot_set_status(self):
		order = _make_order(self.customer)

		res = self._client(self.customer).patch(
			f'/api/orders/{order.pk}/set-status/', data={'status': 'cancelled'}, format='json',
		)
		self.assertEqual(res.status_code, 403)
		self.assertEqual(Order.objects.get(pk=order.pk).status, 'pending')

	def test_staff_set_status_emails_customer(self):
		order = _make_order(self.customer)

		res = self._client(self.staff).patch(
			f'/api/orders/{order.pk}/set-status/', data={'status': 'cancelled'}, format='json',
		)

		self.assertEqual(res.status_code, 200)
		self.assertEqual(res.data['status'], 'cancelled')
		self.assertEqual(res.data['notification'], 'sent')
		self.assertNotIn('warning', res.data)
		self.assertEqual(len(mail.outbox), 1)
		self.assertEqual(mail.outbox[0].to, ['customer@example.com'])
		self.assertEqual(mail.outbox[0].subject, f'Order Cancelled - Order #{order.short_id}')

	def test_failed_email_is_a_warning_not_a_rollback(self):
		order = _make_order(self.customer)

		with mock.patch('notifications.services.EmailMultiAlternatives.send', side_effect=OSError('smtp down')):
			res = self._client(self.staff).patch(
				f'/api/orders/{order.pk}/set-status/', data={'status': 'cancelled'}, format='json',
			)

		self.assertEqual(res.status_code, 200)
		self.assertEqual(res.data['notification'], 'failed')
		self.assertEqual(res.data['warning'], 'Order updated but email notification failed')
		self.assertEqual(Order.objects.get(pk=order.pk).status, 'cancelled')

	def test_invalid_transition_returns_409(self):
		order = _make_order(self.customer)

		res = self._client(self.staff).patch(
			f'/api/orders/{order.pk}/set-status/', data={'status': 'delivered'}, format='json',
		)

		self.assertEqual(res.status_code, 409)
		self.assertIn('detail', res.data)
		self.assertEqual(Order.objects.get(pk=order.pk).status, 'pending')
		self.assertEqual(len(mail.outbox), 0)

	def test_stale_expected_status_returns_409(self):
		order = _make_order(self.customer)

		res = self._client(self.staff).patch(
			f'/api/orders/{order.pk}/set-status/',
			data={'status': 'cancelled', 'expected_status': 'processing'},
			format='json',
		)

		self.assertEqual(res.status_code, 409)
		self.assertEqual(Order.objects.get(pk=order.pk).status, 'pending')

	def test_statuses_lists_next_statuses(self):
		res = self._client(self.staff).get('/api/orders/statuses/')

		self.assertEqual(res.status_code, 200)
		by_status = {row['status']: row['next'] for row in res.data}
		self.assertEqual(by_status['pending'], ['cancelled', 'processing'])
		self.assertEqual(by_status['delivered'], [])


@override_settings(NOTIFICATIONS_ASYNC=False)
class OrderAdminActionTests(TestCase):
	"""Admin actions change status through set_status and email the customer."""

	@classmethod
	def setUpTestData(cls):
		User = get_user_model()
		cls.customer = User.objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)
		cls.admin = User.objects.create_superuser(
			username='admin', email='admin@example.com', password='12345678',
		)

	def test_cancel_action(self):
		order = _make_order(self.customer)
		self.client.force_login(self.admin)

		res = self.client.post(
			reverse('admin:orders_order_changelist'),
			{'action': 'cancel_orders', '_selected_action': [str(order.pk)]},
		)

		self.assertEqual(res.status_code, 302)
		self.assertEqual(Order.objects.get(pk=order.pk).status, 'cancelled')
		self.assertEqual(len(mail.outbox), 1)

	def test_invalid_action_leaves_order(self):
		order = _make_order(self.customer)
		self.client.force_login(self.admin)

		self.client.post(
			reverse('admin:orders_order_changelist'),
			{'action': 'mark_delivered', '_selected_action': [str(order.pk)]},
		)

		self.assertEqual(Order.objects.get(pk=order.pk).status, 'pending')
		self.assertEqual(len(mail.outbox), 0)


class OrdersPackageTests(TestCase):

	def test_orders_is_a_regular_package(self):
		import orders

		self.assertIsNotNone(orders.__file__)
		self.assertTrue(orders.__file__.endswith('__init__.py'))
