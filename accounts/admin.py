"""Django admin configuration for accounts."""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin
from .models import User


@admin.register(User)
class CustomUserAdmin(UserAdmin):
    """User admin with the contact phone shown next to the email."""

    model = User
    list_display = ['username', 'email', 'phone_number', 'is_staff']

    fieldsets = UserAdmin.fieldsets + (
        ('Contact', {'fields': ('phone_number',)}),
    )
