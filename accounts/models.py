"""Identity model for storefront customers and staff."""

from django.db import models
from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    """Custom user model.

    Extends Django's :class:`~django.contrib.auth.models.AbstractUser` with an
    optional ``phone_number`` used to prefill M-Pesa checkout. Order status
    emails go to ``email``; staff users (``is_staff``) run the back-office.
    """

    phone_number = models.CharField(max_length=15, null=True, blank=True)

    def __str__(self):
        return self.username
