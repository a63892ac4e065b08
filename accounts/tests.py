"""Accounts app tests."""

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from accounts.permissions import is_trusted_principal


class JwtLoginTests(TestCase):
	"""The bearer token from login identifies the caller to the order APIs."""

	@classmethod
	def setUpTestData(cls):
		cls.customer = get_user_model().objects.create_user(
			username='customer', email='customer@example.com', password='12345678',
			phone_number='0712345678',
		)

	def test_login_returns_tokens_usable_as_bearer(self):
		client = APIClient()
		res = client.post('/api/accounts/login/', data={'username': 'customer', 'password': '12345678'}, format='json')

		self.assertEqual(res.status_code, 200)
		self.assertIn('access', res.data)
		self.assertIn('refresh', res.data)

		client.credentials(HTTP_AUTHORIZATION=f"Bearer {res.data['access']}")
		res2 = client.get('/api/orders/')
		self.assertEqual(res2.status_code, 200)
		self.assertEqual(res2.data['count'], 0)

	def test_wrong_password_rejected(self):
		res = APIClient().post('/api/accounts/login/', data={'username': 'customer', 'password': 'nope'}, format='json')
		self.assertEqual(res.status_code, 401)

	def test_only_staff_are_trusted(self):
		staff = get_user_model().objects.create_user(username='staff', password='12345678', is_staff=True)

		self.assertTrue(is_trusted_principal(staff))
		self.assertFalse(is_trusted_principal(self.customer))
		self.assertFalse(is_trusted_principal(None))
