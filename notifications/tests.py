"""Notifications app tests."""

from decimal import Decimal
from unittest import mock

import requests
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.mail import EmailMultiAlternatives
from django.db import transaction
from django.test import TestCase, override_settings

from notifications.backends import ResendEmailBackend
from notifications.services import (
	dispatch_status_change,
	format_total,
	notify_status_change,
	status_email_content,
)
from orders.models import Order, OrderStatus
from orders.services import create_order, set_status


ADDRESS = {'name': 'Wanjiku Kamau', 'phone': '0712345678', 'address': 'Moi Avenue 12', 'city': 'Nairobi'}


def _make_order(user):
	return create_order(
		owner=user,
		items=[{'product_id': 'lipstick-01', 'product_name': 'Matte Lipstick', 'price': '1500', 'quantity': 3}],
		shipping_fee='500',
		payment_method='mpesa',
		shipping_address=ADDRESS,
	)


class StatusEmailContentTests(TestCase):

	def test_known_statuses(self):
		expected = {
			'paid': 'Payment Confirmed - Order #abcd1234',
			'processing': 'Order Processing - Order #abcd1234',
			'shipped': 'Order Shipped - Order #abcd1234',
			'delivered': 'Order Delivered - Order #abcd1234',
			'cancelled': 'Order Cancelled - Order #abcd1234',
		}
		for status, subject in expected.items():
			with self.subTest(status=status):
				self.assertEqual(status_email_content('abcd1234', status)[0], subject)

	def test_unknown_status_gets_generic_message(self):
		subject, message = status_email_content('abcd1234', 'on_hold')

		self.assertEqual(subject, 'Order Update - Order #abcd1234')
		self.assertEqual(message, 'Your order status has been updated to: on_hold')

	@override_settings(STORE_CURRENCY='KES')
	def test_total_format(self):
		self.assertEqual(format_total(Decimal('5000')), 'KES 5,000.00')


@override_settings(NOTIFICATIONS_ASYNC=False, STORE_CURRENCY='KES')
class NotifyStatusChangeTests(TestCase):

	@classmethod
	def setUpTestData(cls):
		User = get_user_model()
		cls.customer = User.objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
		)
		cls.no_email = User.objects.create_user(username='noemail', email='', password='12345678')

	def test_sends_html_and_text(self):
		order = _make_order(self.customer)

		self.assertTrue(notify_status_change(order.pk, 'shipped'))

		self.assertEqual(len(mail.outbox), 1)
		message = mail.outbox[0]
		self.assertEqual(message.to, ['customer@example.com'])
		self.assertEqual(message.subject, f'Order Shipped - Order #{order.short_id}')
		self.assertIn('KES 5,000.00', message.body)
		self.assertIn(order.short_id, message.body)
		html, mimetype = message.alternatives[0]
		self.assertEqual(mimetype, 'text/html')
		self.assertIn('Great news! Your order has been shipped', html)

	def test_missing_email_returns_false(self):
		order = _make_order(self.no_email)

		self.assertFalse(notify_status_change(order.pk, 'shipped'))
		self.assertEqual(len(mail.outbox), 0)

	def test_unknown_order_returns_false(self):
		self.assertFalse(notify_status_change('00000000-0000-0000-0000-000000000000', 'paid'))

	def test_delivery_failure_returns_false(self):
		order = _make_order(self.customer)

		with mock.patch.object(EmailMultiAlternatives, 'send', side_effect=OSError('smtp down')):
			self.assertFalse(notify_status_change(order.pk, 'paid'))

	def test_status_change_emails_after_commit(self):
		order = _make_order(self.customer)

		with self.captureOnCommitCallbacks(execute=True) as callbacks:
			set_status(order.pk, OrderStatus.PROCESSING)
			self.assertEqual(len(mail.outbox), 0)

		self.assertEqual(len(callbacks), 1)
		self.assertEqual(len(mail.outbox), 1)
		self.assertEqual(mail.outbox[0].subject, f'Order Processing - Order #{order.short_id}')

	def test_notify_false_sends_nothing(self):
		order = _make_order(self.customer)

		with self.captureOnCommitCallbacks(execute=True) as callbacks:
			set_status(order.pk, OrderStatus.PROCESSING, notify=False)

		self.assertEqual(callbacks, [])
		self.assertEqual(len(mail.outbox), 0)

	def test_rolled_back_transition_sends_nothing(self):
		order = _make_order(self.customer)

		with self.captureOnCommitCallbacks(execute=True):
			try:
				with transaction.atomic():
					set_status(order.pk, OrderStatus.PROCESSING)
					raise RuntimeError('abort')
			except RuntimeError:
				pass

		self.assertEqual(Order.objects.get(pk=order.pk).status, OrderStatus.PENDING)
		self.assertEqual(len(mail.outbox), 0)

	def test_email_failure_keeps_status(self):
		order = _make_order(self.customer)

		with mock.patch.object(EmailMultiAlternatives, 'send', side_effect=OSError('smtp down')):
			with self.captureOnCommitCallbacks(execute=True):
				set_status(order.pk, OrderStatus.CANCELLED)

		self.assertEqual(Order.objects.get(pk=order.pk).status, OrderStatus.CANCELLED)


class DispatchTests(TestCase):

	@override_settings(NOTIFICATIONS_ASYNC=True)
	def test_async_dispatch_uses_executor(self):
		executor = mock.Mock()
		with mock.patch('notifications.services._get_executor', return_value=executor):
			dispatch_status_change('some-id', 'paid')

		executor.submit.assert_called_once()
		self.assertEqual(executor.submit.call_args[0][1:], ('some-id', 'paid'))

	@override_settings(NOTIFICATIONS_ASYNC=False)
	def test_sync_dispatch_runs_inline(self):
		with mock.patch('notifications.services.notify_status_change') as notify:
			dispatch_status_change('some-id', 'paid')

		notify.assert_called_once_with('some-id', 'paid')


@override_settings(RESEND_API_KEY='re_test', RESEND_API_URL='https://api.resend.com/emails')
class ResendEmailBackendTests(TestCase):

	def _message(self):
		message = EmailMultiAlternatives(
			subject='Order Shipped - Order #abcd1234',
			body='plain body',
			from_email='Kenyashipment <onboarding@resend.dev>',
			to=['customer@example.com'],
		)
		message.attach_alternative('<p>html body</p>', 'text/html')
		return message

	@mock.patch('notifications.backends.requests.post')
	def test_posts_to_resend(self, mock_post):
		mock_post.return_value = mock.Mock(status_code=200)

		sent = ResendEmailBackend().send_messages([self._message()])

		self.assertEqual(sent, 1)
		args, kwargs = mock_post.call_args
		self.assertEqual(args[0], 'https://api.resend.com/emails')
		self.assertEqual(kwargs['headers'], {'Authorization': 'Bearer re_test'})
		self.assertEqual(kwargs['json'], {
			'from': 'Kenyashipment <onboarding@resend.dev>',
			'to': ['customer@example.com'],
			'subject': 'Order Shipped - Order #abcd1234',
			'text': 'plain body',
			'html': '<p>html body</p>',
		})

	@mock.patch('notifications.backends.requests.post')
	def test_api_error_raises(self, mock_post):
		response = mock.Mock()
		response.raise_for_status.side_effect = requests.HTTPError('422')
		mock_post.return_value = response

		with self.assertRaises(requests.HTTPError):
			ResendEmailBackend().send_messages([self._message()])

	@mock.patch('notifications.backends.requests.post')
	def test_fail_silently(self, mock_post):
		mock_post.side_effect = requests.ConnectionError('down')

		self.assertEqual(ResendEmailBackend(fail_silently=True).send_messages([self._message()]), 0)
